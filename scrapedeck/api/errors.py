from fastapi import APIRouter, Depends, HTTPException, Query

from scrapedeck.api.deps import get_user_id
from scrapedeck.core.config import settings
from scrapedeck.core.errors import get_error_handler

router = APIRouter(prefix="/errors", tags=["errors"])


def _public(error) -> dict:
    return error.to_dict(include_message=not settings.is_production)


@router.get("")
def list_errors(
    user_id: str = Depends(get_user_id),
    limit: int = Query(default=50, ge=1, le=200),
):
    handler = get_error_handler()
    return {"ok": True, "errors": [_public(e) for e in reversed(handler.recent(limit, user_id=user_id))]}


@router.get("/analytics")
def error_analytics(user_id: str = Depends(get_user_id)):
    stats = get_error_handler().analytics(user_id=user_id)
    stats["recent_errors"] = [_public(e) for e in stats["recent_errors"]]
    return {"ok": True, **stats}


@router.delete("/{error_id}")
def dismiss_error(error_id: str, user_id: str = Depends(get_user_id)):
    if not get_error_handler().queue.dismiss(error_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="Error not found")
    return {"ok": True, "error_id": error_id}


@router.delete("")
def clear_errors(user_id: str = Depends(get_user_id)):
    get_error_handler().queue.clear(user_id=user_id)
    return {"ok": True}
