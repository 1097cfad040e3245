from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from scrapedeck.core.clock import utcnow
from scrapedeck.core.errors import validation_error
from scrapedeck.models import Notification, PriceHistory, Product
from scrapedeck.models.product import DISCOVERY_URL_PREFIX
from scrapedeck.services.repository import Repository

logger = logging.getLogger(__name__)


def is_discovery_product(product: Product) -> bool:
    return (product.url or "").startswith(DISCOVERY_URL_PREFIX)


def create_product(db: Session, user_id: str, name: str, url: str, **values: Any) -> Product:
    name = (name or "").strip()
    url = (url or "").strip()
    if not name:
        raise validation_error("Product name is required", field="name")
    if not url:
        raise validation_error("Product URL is required", field="url")
    return Repository(db).products.create(user_id=user_id, name=name, url=url, **values)


def _money(value: float, currency: str) -> str:
    return f"{value:.2f} {currency}"


def record_price(
    db: Session,
    product_id: int,
    price: float,
    in_stock: bool = True,
    scraped_from: str | None = None,
    currency: str | None = None,
) -> tuple[PriceHistory, list[Notification]]:
    """
    Append one price observation and update the product.

    Emits `price_drop` when the price is at or below the target and
    `back_in_stock` when stock goes from false to true, if the product has
    notifications enabled.
    """
    if price is None or price < 0:
        raise validation_error("Price must be >= 0", field="price")

    repo = Repository(db)
    product = repo.products.get(product_id)
    currency = currency or product.currency or "USD"
    was_in_stock = bool(product.in_stock)

    entry = repo.price_history.create(
        product_id=product.id,
        user_id=product.user_id,
        price=float(price),
        currency=currency,
        in_stock=bool(in_stock),
        scraped_from=scraped_from,
    )
    product = repo.products.update(
        product.id,
        current_price=float(price),
        currency=currency,
        in_stock=bool(in_stock),
        last_checked_at=utcnow(),
    )

    emitted: list[Notification] = []
    if not product.notifications_enabled:
        return entry, emitted

    if product.target_price is not None and price <= product.target_price:
        emitted.append(
            repo.notifications.create(
                user_id=product.user_id,
                product_id=product.id,
                type="price_drop",
                title=f"Price drop: {product.name}",
                message=f"{product.name} is now {_money(price, currency)} "
                f"(target {_money(product.target_price, currency)}).",
            )
        )
    if in_stock and not was_in_stock:
        emitted.append(
            repo.notifications.create(
                user_id=product.user_id,
                product_id=product.id,
                type="back_in_stock",
                title=f"Back in stock: {product.name}",
                message=f"{product.name} is available again at {_money(price, currency)}.",
            )
        )
    if emitted:
        logger.info("Product %s: %s", product.id, ", ".join(n.type for n in emitted))
    return entry, emitted


def price_history(db: Session, product_id: int, limit: int | None = None) -> list[PriceHistory]:
    repo = Repository(db)
    repo.products.get(product_id)
    return repo.price_history.list(limit=limit, product_id=product_id)
