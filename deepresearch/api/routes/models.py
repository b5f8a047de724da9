from __future__ import annotations

from fastapi import APIRouter, Depends

from deepresearch.api.deps import catalog_dep, require_session
from deepresearch.config import ModelCatalog
from deepresearch.models.schemas import ModelsResponse

router = APIRouter(prefix="/api/models", tags=["models"], dependencies=[Depends(require_session)])


@router.get("", response_model=ModelsResponse)
async def list_models(catalog: ModelCatalog = Depends(catalog_dep)):
    """List the configured LLM models and the effective default."""
    return ModelsResponse(models=list(catalog.models), defaultModel=catalog.default.id)
