"""Admin API endpoints for intents, FAQ embeddings and caches."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from wabot.config import settings
from wabot.database import get_db
from wabot.logging_config import get_logger
from wabot.schemas.admin import BulkLoadRequest, BulkLoadResponse, FaqRefreshResponse, ThresholdUpdate
from wabot.services import registry
from wabot.services.errors import UpstreamUnavailableError
from wabot.services.intent_service import bulk_load_intents, deactivate_intent, update_threshold

logger = get_logger("admin")

router = APIRouter(prefix="/admin", tags=["admin"])


def _require_admin_token(provided: Optional[str]) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not provided or provided != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")


def require_admin(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    _require_admin_token(x_admin_token)


@router.post("/intents/bulk-load", response_model=BulkLoadResponse, dependencies=[Depends(require_admin)])
def bulk_load(request: BulkLoadRequest, db: Session = Depends(get_db)):
    try:
        summary = bulk_load_intents(
            db, registry.get_embedding_provider(), [item.to_loader_dict() for item in request.intents]
        )
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamUnavailableError as e:
        db.rollback()
        logger.error(f"Bulk load failed: {e}")
        raise HTTPException(status_code=503, detail="Embedding provider unavailable")
    # Cached classifications were computed against the old example set.
    registry.get_intent_cache().clear()
    return BulkLoadResponse(**summary)


@router.post("/intents/{name}/deactivate", dependencies=[Depends(require_admin)])
def deactivate(name: str, db: Session = Depends(get_db)):
    if not deactivate_intent(db, name):
        raise HTTPException(status_code=404, detail=f"Intent '{name}' not found")
    registry.get_intent_cache().clear()
    return {"status": "ok", "name": name}


@router.post("/faq/{business_id}/refresh", response_model=FaqRefreshResponse, dependencies=[Depends(require_admin)])
def refresh_faq(business_id: UUID, db: Session = Depends(get_db)):
    result = registry.get_faq_matcher().refresh(db, business_id)
    if not result.ok:
        if result.error_code == "not_found":
            raise HTTPException(status_code=404, detail=result.error)
        return FaqRefreshResponse(success=False, error=result.error)
    return FaqRefreshResponse(success=True, count=result.value)


@router.get("/faq/{business_id}/stats", dependencies=[Depends(require_admin)])
def faq_stats(business_id: UUID, db: Session = Depends(get_db)):
    return registry.get_faq_matcher().stats(db, business_id)


@router.get("/cache/stats", dependencies=[Depends(require_admin)])
def cache_stats():
    return {"caches": [cache.stats() for cache in registry.get_caches()]}


@router.delete("/cache", dependencies=[Depends(require_admin)])
def clear_caches():
    caches = registry.get_caches()
    for cache in caches:
        cache.clear()
    logger.info("Caches cleared via admin")
    return {"status": "ok", "cleared": [cache.namespace for cache in caches]}


@router.post("/intents/{name}/threshold", dependencies=[Depends(require_admin)])
def set_threshold(name: str, request: ThresholdUpdate, db: Session = Depends(get_db)):
    if not update_threshold(db, name, request.threshold):
        raise HTTPException(status_code=404, detail=f"Intent '{name}' not found")
    registry.get_intent_cache().clear()
    return {"status": "ok", "name": name, "threshold": request.threshold}
