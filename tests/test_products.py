import pytest

from conftest import USER
from scrapedeck.core.errors import AppError
from scrapedeck.services.products import create_product, is_discovery_product, price_history, record_price


def test_create_requires_name_and_url(db):
    with pytest.raises(AppError):
        create_product(db, USER, "  ", "https://shop.test/p")
    with pytest.raises(AppError):
        create_product(db, USER, "Widget", "")
    product = create_product(db, USER, " Widget ", "https://shop.test/p")
    assert product.name == "Widget"
    assert not is_discovery_product(product)


def test_back_in_stock_then_price_drop(db):
    product = create_product(db, USER, "Widget", "https://shop.test/p", target_price=100.0, in_stock=False)

    entry, sent = record_price(db, product.id, 120.0, in_stock=True, scraped_from="https://shop.test/p")
    assert entry.price == 120.0
    assert [n.type for n in sent] == ["back_in_stock"]

    _, sent = record_price(db, product.id, 95.0)
    assert [n.type for n in sent] == ["price_drop"]
    assert sent[0].product_id == product.id
    assert "95.00 USD" in sent[0].message


def test_target_price_is_inclusive(db):
    product = create_product(db, USER, "Widget", "https://shop.test/p", target_price=100.0)
    _, sent = record_price(db, product.id, 100.0)
    assert [n.type for n in sent] == ["price_drop"]


def test_notifications_disabled(db):
    product = create_product(db, USER, "Widget", "https://shop.test/p", target_price=100.0,
                             in_stock=False, notifications_enabled=False)
    _, sent = record_price(db, product.id, 50.0)
    assert sent == []


def test_negative_price_rejected(db):
    product = create_product(db, USER, "Widget", "https://shop.test/p")
    with pytest.raises(AppError):
        record_price(db, product.id, -1)


def test_history_newest_first(db):
    product = create_product(db, USER, "Widget", "https://shop.test/p")
    for price in (10.0, 12.0, 11.0):
        record_price(db, product.id, price)

    assert [h.price for h in price_history(db, product.id)] == [11.0, 12.0, 10.0]
    assert [h.price for h in price_history(db, product.id, limit=1)] == [11.0]
