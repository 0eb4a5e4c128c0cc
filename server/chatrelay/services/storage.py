from __future__ import annotations
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple
import httpx

from chatrelay.config import Settings

logger = logging.getLogger(__name__)


class ObjectStore:
    """Thin client for the attachment object store's REST API."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = (settings.storage_url or "").rstrip("/")
        self.service_key = settings.storage_service_key
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.service_key)

    def locate(self, file: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        """(bucket, path) for an attachment, from explicit fields or its public URL."""
        bucket, path = file.get("bucket"), file.get("path")
        if bucket and path:
            return str(bucket), str(path)
        url = str(file.get("url") or "")
        marker = "/object/public/"
        if self.base_url and url.startswith(self.base_url) and marker in url:
            rest = url.split(marker, 1)[1].split("?", 1)[0]
            if "/" in rest:
                bucket, path = rest.split("/", 1)
                return bucket, path
        return None

    async def remove(self, files: Iterable[Dict[str, Any]]) -> int:
        """Best-effort removal; failures are logged and skipped. Returns objects removed."""
        by_bucket: Dict[str, List[str]] = defaultdict(list)
        for f in files:
            loc = self.locate(f)
            if loc:
                by_bucket[loc[0]].append(loc[1])
        if not by_bucket:
            return 0
        if not self.configured:
            logger.warning("Object store not configured; leaving %d attachment(s) in place",
                           sum(len(p) for p in by_bucket.values()))
            return 0

        headers = {
            "Authorization": f"Bearer {self.service_key}",
            "apikey": str(self.service_key),
            "Content-Type": "application/json",
        }
        removed = 0
        timeout = httpx.Timeout(connect=10.0, read=30.0, write=30.0, pool=10.0)
        async with httpx.AsyncClient(timeout=timeout, trust_env=True, transport=self._transport) as client:
            for bucket, paths in by_bucket.items():
                try:
                    resp = await client.request(
                        "DELETE", f"{self.base_url}/object/{bucket}", headers=headers, json={"prefixes": paths}
                    )
                    resp.raise_for_status()
                    removed += len(paths)
                except httpx.HTTPError as e:
                    logger.warning("Failed to remove %d object(s) from bucket %s: %s", len(paths), bucket, e)
        return removed
