from fastapi import APIRouter, Request
from typing import Dict, Any

router = APIRouter()


@router.get("/models")
async def get_models(http_request: Request) -> Dict[str, Any]:
    """Models the relay accepts; anything else is replaced by the default."""
    catalog = http_request.app.state.catalog
    return {
        "default": catalog.default,
        "models": [m.model_dump() for m in catalog.list_models()],
    }
