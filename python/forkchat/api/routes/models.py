"""Model catalog routes.

GET /models lists every catalog model the router has bound: not disabled
in the catalog and its provider enabled. Ordering follows the catalog.

Response envelope: {"data": [...]}
"""

from typing import Annotated

from fastapi import APIRouter, Depends

from forkchat.api.deps import get_llm_router
from forkchat.auth.middleware import Viewer, get_viewer
from forkchat.responses import success_response
from forkchat.services.llm import LLMRouter

router = APIRouter(tags=["models"])


@router.get("/models")
def list_models(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
) -> dict:
    return success_response([spec.to_dict() for spec in llm_router.available_models()])
