from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id, load_owned
from scrapedeck.core.errors import AppError, AppErrorType
from scrapedeck.db.session import get_db
from scrapedeck.services.discovery import (
    SourceDiscoveryRequest,
    add_discovered_sources,
    discover_sources,
    validate_website_url,
)
from scrapedeck.services.repository import Repository, row_to_dict

router = APIRouter(prefix="/websites", tags=["websites"])


class FieldSelectors(BaseModel):
    price: str | None = None
    title: str | None = None
    availability: str | None = None
    image: str | None = None


class ScrapingRules(BaseModel):
    # site-specific keys pass through untouched
    model_config = ConfigDict(extra="allow")

    selectors: FieldSelectors | None = None
    rate_limit_ms: int | None = Field(default=None, ge=0)
    user_agent: str | None = None
    headers: dict[str, str] | None = None


class WebsiteCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    base_url: str = Field(min_length=1)
    category: str = "general"
    scraping_rules: ScrapingRules = ScrapingRules()
    rate_limit_seconds: int = Field(default=1, ge=0)
    requires_auth: bool = False


class SourceDiscoverRequest(BaseModel):
    category: str = Field(min_length=1)
    product_type: str | None = None
    target_region: str | None = None
    include_niche: bool = False
    add_sources: bool = False


@router.get("")
def list_websites(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    category: str | None = Query(default=None),
    active_only: bool = Query(default=False),
):
    repo = Repository(db)
    if active_only and category:
        rows = repo.websites.list_by_category(category, user_id=user_id)
    else:
        rows = repo.websites.list(user_id=user_id, category=category, is_active=True if active_only else None)
    return {"ok": True, "websites": [row_to_dict(w) for w in rows]}


@router.post("")
def create_website(req: WebsiteCreateRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    valid, reason = validate_website_url(req.base_url)
    if not valid:
        raise AppError(AppErrorType.INVALID_URL, reason or "Invalid URL", context={"url": req.base_url})
    website = Repository(db).websites.create(
        user_id=user_id,
        name=req.name.strip(),
        base_url=req.base_url.strip(),
        category=req.category,
        scraping_rules=req.scraping_rules.model_dump(exclude_none=True),
        rate_limit_seconds=req.rate_limit_seconds,
        requires_auth=req.requires_auth,
    )
    return {"ok": True, "website": row_to_dict(website)}


@router.post("/discover")
def discover(req: SourceDiscoverRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    outcome = discover_sources(
        db,
        user_id,
        SourceDiscoveryRequest(
            category=req.category,
            product_type=req.product_type,
            target_region=req.target_region,
            include_niche=req.include_niche,
        ),
    )
    added = []
    if outcome.success and req.add_sources and outcome.sources:
        added = add_discovered_sources(db, user_id, outcome.sources, req.category)
    return {
        "ok": outcome.success,
        "error": outcome.error,
        "session_id": outcome.session_id,
        "sources": [s.to_dict() for s in outcome.sources],
        "added": [row_to_dict(w) for w in added],
    }


@router.get("/sessions")
def list_sessions(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    session_type: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=200),
):
    rows = Repository(db).ai_sessions.list(limit=limit, user_id=user_id, session_type=session_type)
    return {"ok": True, "sessions": [row_to_dict(s) for s in rows]}


@router.post("/{website_id}/validate")
def validate(website_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    repo = Repository(db)
    website = load_owned(repo.websites, website_id, user_id, "Website")
    valid, reason = validate_website_url(website.base_url)
    website = repo.websites.validate(website_id, valid=valid)
    return {"ok": True, "valid": valid, "reason": reason, "website": row_to_dict(website)}


@router.delete("/{website_id}")
def delete_website(website_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    repo = Repository(db)
    load_owned(repo.websites, website_id, user_id, "Website")
    repo.websites.delete(website_id)
    return {"ok": True, "website_id": website_id}
