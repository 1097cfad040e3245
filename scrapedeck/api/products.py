from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from scrapedeck.api.deps import get_user_id, load_owned
from scrapedeck.db.session import get_db
from scrapedeck.services import products as product_service
from scrapedeck.services.discovery import PRODUCT_CATEGORIES, discover_product
from scrapedeck.services.repository import Repository, row_to_dict

router = APIRouter(prefix="/products", tags=["products"])


class ProductCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=512)
    url: str = Field(min_length=1)
    image_url: str | None = None
    current_price: float | None = None
    target_price: float | None = Field(default=None, ge=0)
    currency: str = "USD"
    in_stock: bool = True
    check_frequency_hours: int = Field(default=24, ge=1)
    notifications_enabled: bool = True
    job_id: int | None = None


class PriceObservationRequest(BaseModel):
    price: float = Field(ge=0)
    in_stock: bool = True
    currency: str | None = None
    scraped_from: str | None = None


class ProductDiscoverRequest(BaseModel):
    name: str = Field(min_length=1)
    category: str = "Electronics"


def _product(row) -> dict:
    d = row_to_dict(row)
    d["is_discovery"] = product_service.is_discovery_product(row)
    return d


@router.get("")
def list_products(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
):
    repo = Repository(db)
    rows = repo.products.list(limit=limit, offset=offset, user_id=user_id)
    return {
        "ok": True,
        "total": repo.products.count(user_id=user_id),
        "products": [_product(p) for p in rows],
    }


@router.get("/categories")
def list_categories():
    return {"ok": True, "categories": PRODUCT_CATEGORIES}


@router.post("")
def create_product(req: ProductCreateRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    if req.job_id is not None:
        load_owned(Repository(db).jobs, req.job_id, user_id)
    values = req.model_dump()
    product = product_service.create_product(db, user_id, values.pop("name"), values.pop("url"), **values)
    return {"ok": True, "product": _product(product)}


@router.post("/discover")
def discover(req: ProductDiscoverRequest, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    found = discover_product(db, user_id, req.name.strip(), req.category)
    product = Repository(db).products.get(found.product_id)
    return {
        "ok": True,
        "product": _product(product),
        "sources": [s.to_dict() for s in found.sources],
        "analytics": {
            "average_price": found.average_price,
            "lowest_price": found.lowest_price,
            "highest_price": found.highest_price,
        },
        "availability": found.availability,
        "session_id": found.session_id,
    }


@router.get("/{product_id}")
def get_product(product_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    product = load_owned(Repository(db).products, product_id, user_id, "Product")
    return {"ok": True, "product": _product(product)}


@router.delete("/{product_id}")
def delete_product(product_id: int, db: Session = Depends(get_db), user_id: str = Depends(get_user_id)):
    repo = Repository(db)
    load_owned(repo.products, product_id, user_id, "Product")
    repo.products.delete(product_id)
    return {"ok": True, "product_id": product_id}


@router.post("/{product_id}/prices")
def record_price(
    product_id: int,
    req: PriceObservationRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    load_owned(Repository(db).products, product_id, user_id, "Product")
    entry, notifications = product_service.record_price(
        db,
        product_id,
        req.price,
        in_stock=req.in_stock,
        scraped_from=req.scraped_from,
        currency=req.currency,
    )
    return {
        "ok": True,
        "entry": row_to_dict(entry),
        "notifications": [row_to_dict(n) for n in notifications],
    }


@router.get("/{product_id}/history")
def history(
    product_id: int,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
    limit: int = Query(default=100, ge=1, le=1000),
):
    load_owned(Repository(db).products, product_id, user_id, "Product")
    rows = product_service.price_history(db, product_id, limit=limit)
    return {"ok": True, "product_id": product_id, "history": [row_to_dict(h) for h in rows]}
