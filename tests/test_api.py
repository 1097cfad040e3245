import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from conftest import USER, FakeGenerator
from scrapedeck.main import app

client = TestClient(app)
HEADERS = {"X-User-Id": USER}
OTHER = {"X-User-Id": "user-2"}


# ---- templates ----

def test_templates_catalogue():
    body = client.get("/templates").json()
    assert len(body["templates"]) == 11
    assert len(body["categories"]) == 6

    news = client.get("/templates", params={"category": "news"}).json()["templates"]
    assert {t["id"] for t in news} == {"news-article", "blog-post"}

    assert client.get("/templates/github-repo").json()["template"]["category"] == "tech"
    assert client.get("/templates/missing").status_code == 404


def test_job_from_template():
    r = client.post("/templates/job-listing/jobs", json={"name": "Backend roles", "url": "https://jobs.test"}, headers=HEADERS)
    assert r.status_code == 200
    job = r.json()["job"]
    assert job["name"] == "Backend roles"
    assert job["url"] == "https://jobs.test"
    assert job["config"]["template_id"] == "job-listing"
    assert job["user_id"] == USER


# ---- products ----

def _product(**body):
    body.setdefault("name", "Widget")
    body.setdefault("url", "https://shop.test/widget")
    r = client.post("/products", json=body, headers=HEADERS)
    assert r.status_code == 200, r.text
    return r.json()["product"]


def test_product_prices_and_history():
    product = _product(target_price=50.0)
    assert product["is_discovery"] is False

    r = client.post(f"/products/{product['id']}/prices", json={"price": 45.0}, headers=HEADERS)
    assert [n["type"] for n in r.json()["notifications"]] == ["price_drop"]

    client.post(f"/products/{product['id']}/prices", json={"price": 60.0}, headers=HEADERS)
    history = client.get(f"/products/{product['id']}/history", headers=HEADERS).json()["history"]
    assert [h["price"] for h in history] == [60.0, 45.0]

    assert client.get(f"/products/{product['id']}", headers=HEADERS).json()["product"]["current_price"] == 60.0
    assert client.post(f"/products/{product['id']}/prices", json={"price": -1}, headers=HEADERS).status_code == 422


def test_products_are_per_user():
    product = _product()
    r = client.get(f"/products/{product['id']}", headers=OTHER)
    assert r.status_code == 404
    assert r.json()["detail"] == "Product not found"
    assert client.get("/products", headers=OTHER).json()["total"] == 0

    assert client.delete(f"/products/{product['id']}", headers=HEADERS).json()["ok"] is True
    assert client.get("/products", headers=HEADERS).json()["total"] == 0


def test_product_linked_to_foreign_job_rejected():
    r = client.post("/jobs", json={"name": "Theirs", "url": "https://x.test"}, headers=OTHER)
    job_id = r.json()["job"]["id"]
    r = client.post("/products", json={"name": "W", "url": "https://x.test", "job_id": job_id}, headers=HEADERS)
    assert r.status_code == 404


def test_product_categories():
    categories = client.get("/products/categories").json()["categories"]
    assert len(categories) == 15
    assert "Electronics" in categories


def test_discover_product(monkeypatch):
    reply = json.dumps([
        {"name": "ShopA", "url": "https://a.test/w", "price": 10, "availability": "in-stock"},
        {"name": "ShopB", "url": "https://b.test/w", "price": 14, "availability": "out-of-stock"},
    ])
    monkeypatch.setattr("scrapedeck.services.discovery.get_generator", lambda: FakeGenerator(reply))

    r = client.post("/products/discover", json={"name": "Widget", "category": "Tools & Hardware"}, headers=HEADERS)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["product"]["is_discovery"] is True
    assert body["analytics"] == {"average_price": 12.0, "lowest_price": 10.0, "highest_price": 14.0}
    assert body["availability"] == "in-stock"

    sessions = client.get("/websites/sessions", headers=HEADERS).json()["sessions"]
    assert sessions[0]["session_type"] == "product_discovery"
    assert sessions[0]["status"] == "completed"


def test_discover_product_without_key(monkeypatch):
    monkeypatch.setattr("scrapedeck.services.discovery.get_generator", lambda: FakeGenerator(configured=False))
    r = client.post("/products/discover", json={"name": "Widget"}, headers=HEADERS)
    assert r.status_code == 500
    assert r.json()["error"]["type"] == "CONFIGURATION_ERROR"


# ---- websites ----

def test_website_lifecycle():
    r = client.post("/websites", json={"name": "Shop", "base_url": "notaurl"}, headers=HEADERS)
    assert r.status_code == 400
    assert r.json()["error"]["type"] == "INVALID_URL"

    r = client.post("/websites", json={"name": "Shop", "base_url": "https://shop.test", "category": "Electronics"}, headers=HEADERS)
    site = r.json()["website"]
    assert site["validation_status"] == "pending"

    r = client.post(f"/websites/{site['id']}/validate", headers=HEADERS)
    assert r.json()["valid"] is True
    assert r.json()["website"]["validation_status"] == "valid"

    listed = client.get("/websites", params={"category": "Electronics"}, headers=HEADERS).json()["websites"]
    assert [w["id"] for w in listed] == [site["id"]]

    assert client.delete(f"/websites/{site['id']}", headers=OTHER).status_code == 404
    assert client.delete(f"/websites/{site['id']}", headers=HEADERS).json()["ok"] is True


def test_discover_sources_and_add(monkeypatch):
    reply = json.dumps([{"name": "Gear", "url": "https://gear.test", "confidence": 0.85}])
    monkeypatch.setattr("scrapedeck.services.discovery.get_generator", lambda: FakeGenerator(reply))

    r = client.post("/websites/discover", json={"category": "Sports & Outdoors", "add_sources": True}, headers=HEADERS)
    body = r.json()
    assert body["ok"] is True
    assert body["sources"][0]["url"] == "https://gear.test"
    assert body["added"][0]["discovered_by_ai"] is True


# ---- notifications ----

def test_notification_settings_round_trip():
    assert client.get(f"/notifications/settings/{USER}").json()["settings"] is None

    r = client.put(
        f"/notifications/settings/{USER}",
        json={"email_address": "me@example.com", "webhook_secret": "s3cret", "max_per_hour": 3},
    )
    settings = r.json()["settings"]
    assert settings["webhook_secret"] == "********"
    assert settings["max_per_hour"] == 3
    # untouched fields keep their defaults
    assert settings["job_completed"] is True

    r = client.put(f"/notifications/settings/{USER}", json={"quiet_hours_start": "25:00"})
    assert r.status_code == 422


def test_send_and_read_notifications(monkeypatch):
    sent = []
    monkeypatch.setattr(
        "scrapedeck.services.notifications.post_to_notify_function",
        lambda payload: sent.append(payload) or {"success": True, "sent": True, "queued": True},
    )
    client.put(f"/notifications/settings/{USER}", json={"email_address": "me@example.com"})

    r = client.post(
        "/notifications/send",
        json={"type": "job_completed", "title": "Done", "body": "All good", "channels": ["email"]},
        headers=HEADERS,
    )
    assert r.json()["ok"] is True
    assert r.json()["statuses"][0]["queued"] is True
    assert sent[0]["recipient"] == "me@example.com"

    listing = client.get("/notifications", headers=HEADERS).json()
    assert listing["unread"] == 1
    note = listing["notifications"][0]
    assert note["type"] == "job_completed"

    r = client.post(f"/notifications/{note['id']}/read", headers=HEADERS)
    assert r.json()["notification"]["read"] is True
    assert client.get("/notifications", params={"unread_only": True}, headers=HEADERS).json()["notifications"] == []


def test_send_without_notify_function_reports_failure():
    client.put(f"/notifications/settings/{USER}", json={"email_address": "me@example.com"})
    r = client.post("/notifications/send", json={"type": "system_alert", "title": "t", "body": "b"}, headers=HEADERS)
    status = r.json()["statuses"][0]
    assert r.json()["ok"] is False
    assert status["message"] == "Failed to send email notification: NOTIFY_FUNCTION_URL is not configured"


def test_test_notifications_reject_unknown_channel():
    r = client.post("/notifications/test", json={"channels": ["fax"]}, headers=HEADERS)
    assert r.status_code == 400


# ---- analytics ----

def test_analytics_endpoints(monkeypatch):
    monkeypatch.setattr("scrapedeck.worker.tasks.get_generator", lambda: FakeGenerator('{"a": [1, 2]}'))
    job = client.post("/jobs", json={"name": "Tracked", "url": "https://x.test"}, headers=HEADERS).json()["job"]
    client.post(f"/jobs/{job['id']}/run", headers=HEADERS)

    body = client.get("/analytics", params={"time_range": "7d"}, headers=HEADERS).json()
    assert body["overview"]["total_executions"] == 1
    assert body["overview"]["success_rate"] == 100.0
    assert body["overview"]["total_items_scraped"] == 2

    assert client.get("/analytics", params={"time_range": "forever"}, headers=HEADERS).status_code == 400

    r = client.get("/analytics/export", params={"format": "csv", "time_range": "7d"}, headers=HEADERS)
    assert r.text.startswith("Date,Total Executions")
    assert len(r.text.splitlines()) == 9

    r = client.get("/analytics/executions/export", params={"format": "json"}, headers=HEADERS)
    assert r.json()["data"][0]["Job Name"] == "Tracked"


# ---- realtime ----

def test_job_snapshot_falls_back_to_database(monkeypatch):
    monkeypatch.setattr("scrapedeck.worker.tasks.get_generator", lambda: FakeGenerator("{}"))
    job = client.post("/jobs", json={"name": "Watched", "url": "https://x.test"}, headers=HEADERS).json()["job"]
    client.post(f"/jobs/{job['id']}/run", headers=HEADERS)

    body = client.get(f"/realtime/jobs/{job['id']}", headers=HEADERS).json()
    assert body["source"] == "database"
    assert body["job_status"] == "completed"
    assert body["execution"]["status"] == "completed"
    assert body["progress"]["progress_percentage"] == 100


def test_realtime_socket():
    mine = client.post("/jobs", json={"name": "Mine", "url": "https://x.test"}, headers=HEADERS).json()["job"]
    other = client.post("/jobs", json={"name": "Theirs", "url": "https://y.test"}, headers=OTHER).json()["job"]
    extra = client.post("/jobs", json={"name": "Mine too", "url": "https://z.test"}, headers=HEADERS).json()["job"]

    with client.websocket_connect(f"/realtime/ws?job_ids={mine['id']},{other['id']}", headers=HEADERS) as ws:
        first = ws.receive_json()
        assert first["monitored_jobs"] == [mine["id"]]

        ws.send_text(json.dumps({"action": "subscribe", "job_id": other["id"]}))
        for _ in range(5):
            msg = ws.receive_json()
            if msg.get("job_id") == other["id"]:
                break
        assert msg == {"error": "Job not found", "job_id": other["id"]}

        ws.send_text(json.dumps({"action": "subscribe", "job_id": extra["id"]}))
        for _ in range(5):
            msg = ws.receive_json()
            if msg.get("job_id") == extra["id"]:
                break
        assert msg["status"] == "connected"


def test_realtime_socket_needs_a_user():
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/realtime/ws"):
            pass
    assert exc.value.code == 1008


def test_realtime_socket_refuses_foreign_jobs():
    other = client.post("/jobs", json={"name": "Theirs", "url": "https://y.test"}, headers=OTHER).json()["job"]
    with client.websocket_connect(f"/realtime/ws?job_ids={other['id']}", headers=HEADERS) as ws:
        assert ws.receive_json() == {"error": "Job not found"}



def test_website_scraping_rules_shape():
    rules = {"selectors": {"price": ".p"}, "rate_limit_ms": 500, "login_flow": {"step": 1}}
    r = client.post("/websites", json={"name": "S", "base_url": "https://s.test", "scraping_rules": rules}, headers=HEADERS)
    assert r.json()["website"]["scraping_rules"] == {"selectors": {"price": ".p"}, "rate_limit_ms": 500, "login_flow": {"step": 1}}

    rules["rate_limit_ms"] = -5
    r = client.post("/websites", json={"name": "S2", "base_url": "https://s.test", "scraping_rules": rules}, headers=HEADERS)
    assert r.status_code == 422
