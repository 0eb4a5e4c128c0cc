from __future__ import annotations
import logging
from typing import List, Optional

from chatrelay.config import Settings
from chatrelay.schemas.chat import ModelInfo

logger = logging.getLogger(__name__)


class ModelCatalog:
    """Allow-list of upstream model ids with a default fallback."""

    def __init__(self, allowed: List[str], default: str, web_search_suffix: str = ":online") -> None:
        self.default = default
        self.web_search_suffix = web_search_suffix
        self.allowed = list(dict.fromkeys([default, *allowed]))

    @classmethod
    def from_settings(cls, settings: Settings) -> "ModelCatalog":
        return cls(settings.allowed_models, settings.default_model, settings.web_search_suffix)

    def is_allowed(self, model: Optional[str]) -> bool:
        return bool(model) and model in self.allowed

    def resolve(self, model: Optional[str]) -> str:
        """Return `model` when allow-listed, otherwise the default. Never raises."""
        candidate = (model or "").strip()
        if self.web_search_suffix and candidate.endswith(self.web_search_suffix):
            candidate = candidate[: -len(self.web_search_suffix)]
        if self.is_allowed(candidate):
            return candidate
        logger.info("Model %r not in allow-list, using default %s", model, self.default)
        return self.default

    def with_web_search(self, model: str, enabled: bool) -> str:
        if not enabled or not self.web_search_suffix:
            return model
        if model.endswith(self.web_search_suffix):
            return model
        return model + self.web_search_suffix

    def list_models(self) -> List[ModelInfo]:
        models = []
        for mid in self.allowed:
            # "vendor/name" -> "name"
            name = mid.split("/", 1)[-1]
            models.append(ModelInfo(id=mid, name=name))
        return models
