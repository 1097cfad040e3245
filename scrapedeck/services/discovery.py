"""
AI-assisted discovery of scraping sources and products.

Every discovery run is recorded as an AISession that is completed exactly
once (completed or failed).
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import quote, urlparse

from sqlalchemy.orm import Session

from scrapedeck.core.clock import utcnow
from scrapedeck.core.errors import AppError, AppErrorType, ErrorHandler, get_error_handler
from scrapedeck.models import Product, Website
from scrapedeck.models.product import DISCOVERY_URL_PREFIX
from scrapedeck.services.llm import TextGenerator, get_generator
from scrapedeck.services.llm.prompts import PRODUCT_DISCOVERY_PROMPT, SOURCE_DISCOVERY_PROMPT
from scrapedeck.services.repository import Repository
from scrapedeck.services.scraping import extract_json_array, extract_urls, get_prompt_template, scrape_with_ai

logger = logging.getLogger(__name__)

MAX_SOURCES = 20
MAX_FALLBACK_URLS = 15
FALLBACK_CONFIDENCE = 0.7
MIN_CONFIDENCE = 0.5

PRODUCT_CATEGORIES = [
    "Electronics",
    "Fashion & Clothing",
    "Home & Garden",
    "Sports & Outdoors",
    "Books & Media",
    "Health & Beauty",
    "Toys & Games",
    "Automotive",
    "Tools & Hardware",
    "Food & Beverages",
    "Jewelry & Watches",
    "Pet Supplies",
    "Office Supplies",
    "Musical Instruments",
    "Art & Crafts",
]

_PRICE_RE = re.compile(r"(\d+(?:[.,]\d{3})*(?:\.\d+)?)")


@dataclass
class SourceDiscoveryRequest:
    category: str
    product_type: str | None = None
    target_region: str | None = None
    include_niche: bool = False


@dataclass
class DiscoveredSource:
    name: str
    url: str
    confidence: float
    reasoning: str = ""
    category: str = ""
    estimated_product_count: str | int | None = None
    price_range: str | None = None
    special_features: list[str] = field(default_factory=list)

    @classmethod
    def from_ai(cls, item: dict[str, Any], category: str) -> "DiscoveredSource":
        confidence = item.get("confidence", item.get("confidence_score", 0))
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = 0.0
        return cls(
            name=str(item.get("name") or "").strip(),
            url=str(item.get("url") or "").strip(),
            confidence=confidence,
            reasoning=str(item.get("reasoning") or ""),
            category=str(item.get("category") or category),
            estimated_product_count=item.get("estimatedProductCount", item.get("estimated_product_count")),
            price_range=item.get("priceRange", item.get("price_range")),
            special_features=list(item.get("specialFeatures") or item.get("special_features") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiscoveryOutcome:
    success: bool
    sources: list[DiscoveredSource] = field(default_factory=list)
    error: str | None = None
    session_id: int | None = None


@dataclass
class ProductSource:
    name: str
    url: str
    price: float = 0.0
    currency: str = "USD"
    availability: str = "unknown"  # in-stock|out-of-stock|limited|unknown
    last_checked: str = ""
    shipping: str | None = None
    rating: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DiscoveredProduct:
    product_id: int
    name: str
    category: str
    sources: list[ProductSource]
    average_price: float | None
    lowest_price: float | None
    highest_price: float | None
    availability: str
    discovered_at: str
    session_id: int | None = None


# ----------------------------
# Sources
# ----------------------------

def build_source_prompt(request: SourceDiscoveryRequest) -> str:
    return SOURCE_DISCOVERY_PROMPT.format(
        category=request.category,
        product_type_line=f"- Specific Product Type: {request.product_type}\n" if request.product_type else "",
        region=request.target_region or "Global (prioritize US/EU)",
        niche="niche specialist sites" if request.include_niche else "mainstream sites only",
        niche_focus=" Also include niche hobbyist or specialty sites." if request.include_niche else "",
    )


def parse_sources(text: str, category: str) -> list[DiscoveredSource]:
    """
    JSON array first; if the model answered in prose, fall back to the URLs
    found in the text at a fixed confidence. Then keep entries with a url and
    name and confidence > 0.5, at most 20.
    """
    items = extract_json_array(text)
    if items is not None:
        sources = [DiscoveredSource.from_ai(i, category) for i in items if isinstance(i, dict)]
    else:
        logger.info("Source discovery reply had no JSON array, extracting URLs from text")
        sources = []
        for url in extract_urls(text)[:MAX_FALLBACK_URLS]:
            host = urlparse(url).hostname or url
            sources.append(
                DiscoveredSource(
                    name=host.replace("www.", "", 1),
                    url=url,
                    confidence=FALLBACK_CONFIDENCE,
                    reasoning=f"Discovered through AI analysis for {category}",
                    category=category,
                    estimated_product_count="Unknown",
                    price_range="Unknown",
                )
            )

    sources = [s for s in sources if s.url and s.name]
    sources = [s for s in sources if s.confidence > MIN_CONFIDENCE]
    return sources[:MAX_SOURCES]


def discover_sources(
    db: Session,
    user_id: str,
    request: SourceDiscoveryRequest,
    generator: TextGenerator | None = None,
    error_handler: ErrorHandler | None = None,
) -> DiscoveryOutcome:
    errors = error_handler or get_error_handler()
    try:
        gen = generator or get_generator()
    except Exception as e:
        return DiscoveryOutcome(False, error=errors.handle(e, {"step": "generator"}).message)
    if not gen.configured:
        return DiscoveryOutcome(False, error="AI API key not configured")

    repo = Repository(db)
    session = repo.ai_sessions.create(
        user_id=user_id,
        session_type="source_discovery",
        status="running",
        model_used=getattr(gen, "default_model", None),
        search_query=f"Discover sources for {request.category} products",
        target_category=request.category,
    )

    try:
        generation = gen.generate(build_source_prompt(request))
        sources = parse_sources(generation.text, request.category)
        avg_conf = round(sum(s.confidence for s in sources) / len(sources), 3) if sources else 0.0
        repo.ai_sessions.complete(
            session.id,
            products_found=0,
            sources_discovered=len(sources),
            ai_insights={
                "category": request.category,
                "total_sources_found": len(sources),
                "average_confidence": avg_conf,
                "top_sources": [{"name": s.name, "url": s.url, "confidence": s.confidence} for s in sources[:5]],
                "tokens_used": generation.tokens_used,
            },
        )
        logger.info("Discovered %d source(s) for %s (session %s)", len(sources), request.category, session.id)
        return DiscoveryOutcome(True, sources=sources, session_id=session.id)
    except Exception as e:
        app_error = errors.handle(e, {"session_id": session.id, "user_id": session.user_id, "step": "source_discovery"})
        _fail_session(repo, session.id, app_error, errors)
        return DiscoveryOutcome(False, error=app_error.message, session_id=session.id)


def _fail_session(repo: Repository, session_id: int, app_error: AppError, errors: ErrorHandler) -> None:
    try:
        repo.ai_sessions.complete(session_id, status="failed", error_log=app_error.message)
    except Exception as e:
        errors.handle(e, {"session_id": session_id, "step": "fail_session"})


def add_discovered_sources(
    db: Session,
    user_id: str,
    sources: list[DiscoveredSource],
    category: str,
    error_handler: ErrorHandler | None = None,
) -> list[Website]:
    errors = error_handler or get_error_handler()
    repo = Repository(db)
    added: list[Website] = []
    for s in sources:
        try:
            added.append(
                repo.websites.create(
                    user_id=user_id,
                    name=s.name,
                    base_url=s.url,
                    category=category,
                    discovered_by_ai=True,
                    ai_confidence_score=s.confidence,
                    is_active=True,
                    validation_status="pending",
                    robots_txt_compliant=True,
                    scraping_rules={
                        "discovered_reasoning": s.reasoning,
                        "estimated_products": s.estimated_product_count,
                        "price_range": s.price_range,
                        "special_features": s.special_features,
                    },
                )
            )
        except AppError as e:
            errors.handle(e, {"website": s.url, "step": "add_discovered_source"})
    return added


def validate_website_url(url: str) -> tuple[bool, str | None]:
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return False, "Invalid URL format"
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False, "Invalid URL format"
    if "." not in (parsed.hostname or ""):
        return False, "Invalid domain format"
    return True, None


# ----------------------------
# Products
# ----------------------------

def _to_price(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    m = _PRICE_RE.search(str(value))
    if not m:
        return 0.0
    try:
        return float(m.group(1).replace(",", ""))
    except ValueError:
        return 0.0


def _availability(value: Any) -> str:
    v = str(value or "").lower().replace("_", "-")
    if v in ("in-stock", "out-of-stock", "limited", "unknown"):
        return v
    if v in ("true", "available", "instock"):
        return "in-stock"
    if v in ("false", "unavailable", "sold out", "outofstock"):
        return "out-of-stock"
    return "unknown"


def price_from_data(data: dict[str, Any] | None) -> tuple[float, str]:
    """Pull a (price, currency) pair out of a scraped price payload."""
    if not isinstance(data, dict):
        return 0.0, "USD"
    for key in ("current_price", "price", "sale_price", "currentPrice"):
        if key in data:
            v = data[key]
            if isinstance(v, dict):
                return _to_price(v.get("amount") or v.get("value") or v.get("current")), str(v.get("currency") or data.get("currency") or "USD")
            return _to_price(v), str(data.get("currency") or "USD")
    return 0.0, str(data.get("currency") or "USD")


def deduplicate_sources(sources: list[ProductSource]) -> list[ProductSource]:
    seen: set[str] = set()
    unique: list[ProductSource] = []
    for s in sources:
        key = f"{s.name.lower()}_{s.url.lower()}"
        if key not in seen:
            seen.add(key)
            unique.append(s)
    return unique


def price_analytics(sources: list[ProductSource]) -> dict[str, float | None]:
    prices = [s.price for s in sources if s.price > 0]
    if not prices:
        return {"average": None, "lowest": None, "highest": None}
    return {
        "average": round(sum(prices) / len(prices), 2),
        "lowest": round(min(prices), 2),
        "highest": round(max(prices), 2),
    }


def determine_availability(sources: list[ProductSource]) -> str:
    values = {s.availability for s in sources}
    for v in ("in-stock", "limited", "out-of-stock"):
        if v in values:
            return v
    return "unknown"


def _search_web(gen: TextGenerator, name: str, category: str) -> tuple[list[ProductSource], int]:
    generation = gen.generate(PRODUCT_DISCOVERY_PROMPT.format(name=name, category=category))
    now = utcnow().isoformat()
    out: list[ProductSource] = []
    for item in extract_json_array(generation.text) or []:
        if not isinstance(item, dict) or not item.get("url") or not item.get("name"):
            continue
        out.append(
            ProductSource(
                name=str(item["name"]),
                url=str(item["url"]),
                price=_to_price(item.get("price")),
                currency=str(item.get("currency") or "USD"),
                availability=_availability(item.get("availability", item.get("in_stock"))),
                last_checked=now,
                shipping=item.get("shipping"),
                rating=item.get("rating"),
            )
        )
    return out, generation.tokens_used


def _search_configured(
    repo: Repository,
    gen: TextGenerator,
    user_id: str,
    name: str,
    category: str,
) -> list[ProductSource]:
    out: list[ProductSource] = []
    for site in repo.websites.list_by_category(category, user_id=user_id):
        url = f"{site.base_url.rstrip('/')}/search?q={quote(name)}"
        outcome = scrape_with_ai(url, get_prompt_template("price"), generator=gen)
        if not outcome.success:
            logger.warning("Search failed for source %s: %s", site.name, outcome.error)
            continue
        price, currency = price_from_data(outcome.data)
        data = outcome.data or {}
        out.append(
            ProductSource(
                name=site.name,
                url=url,
                price=price,
                currency=currency,
                availability=_availability(data.get("availability", data.get("in_stock"))),
                last_checked=utcnow().isoformat(),
                shipping=data.get("shipping") if isinstance(data.get("shipping"), str) else None,
            )
        )
    return out


def discover_product(
    db: Session,
    user_id: str,
    name: str,
    category: str,
    generator: TextGenerator | None = None,
    error_handler: ErrorHandler | None = None,
) -> DiscoveredProduct:
    errors = error_handler or get_error_handler()
    gen = generator or get_generator()
    if not gen.configured:
        raise AppError(AppErrorType.CONFIGURATION_ERROR, "AI API key not configured")

    repo = Repository(db)
    session = repo.ai_sessions.create(
        user_id=user_id,
        session_type="product_discovery",
        status="running",
        model_used=getattr(gen, "default_model", None),
        search_query=name,
        target_category=category,
    )
    logger.info("Starting discovery for %s in category %s", name, category)

    try:
        web_sources, tokens = _search_web(gen, name, category)
        configured = _search_configured(repo, gen, user_id, name, category)
        sources = deduplicate_sources(web_sources + configured)
        stats = price_analytics(sources)
        availability = determine_availability(sources)
        discovered_at = utcnow().isoformat()

        product: Product = repo.products.create(
            user_id=user_id,
            name=name,
            url=f"{DISCOVERY_URL_PREFIX}{uuid.uuid4()}",
            current_price=stats["average"],
            target_price=stats["lowest"],
            currency="USD",
            in_stock=availability in ("in-stock", "limited"),
            check_frequency_hours=24,
            notifications_enabled=True,
            sources={
                "category": category,
                "sources": [s.to_dict() for s in sources],
                "analytics": {
                    "average_price": stats["average"],
                    "lowest_price": stats["lowest"],
                    "highest_price": stats["highest"],
                    "total_sources": len(sources),
                },
                "availability": availability,
                "discovered_at": discovered_at,
            },
        )
        repo.ai_sessions.complete(
            session.id,
            products_found=1,
            prices_extracted=sum(1 for s in sources if s.price > 0),
            sources_discovered=len(sources),
            ai_insights={"product_id": product.id, "analytics": stats, "tokens_used": tokens},
        )
    except Exception as e:
        app_error = errors.handle(e, {"session_id": session.id, "user_id": session.user_id, "step": "product_discovery"})
        _fail_session(repo, session.id, app_error, errors)
        raise AppError(
            app_error.type,
            f"Failed to discover product: {app_error.message}",
            context={"session_id": session.id, "product": name},
        ) from e

    return DiscoveredProduct(
        product_id=product.id,
        name=name,
        category=category,
        sources=sources,
        average_price=stats["average"],
        lowest_price=stats["lowest"],
        highest_price=stats["highest"],
        availability=availability,
        discovered_at=discovered_at,
        session_id=session.id,
    )
