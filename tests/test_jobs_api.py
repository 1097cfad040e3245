from fastapi.testclient import TestClient

from conftest import USER, FakeGenerator
from scrapedeck.core.errors import get_error_handler
from scrapedeck.main import app
from scrapedeck.services.repository import Repository

client = TestClient(app)
HEADERS = {"X-User-Id": USER}


def _create(name="Nightly prices", **body):
    body.setdefault("url", "https://shop.test/p/1")
    r = client.post("/jobs", json={"name": name, **body}, headers=HEADERS)
    assert r.status_code == 200, r.text
    return r.json()["job"]


def test_user_header_required():
    r = client.get("/jobs")
    assert r.status_code == 422


def test_create_list_get():
    job = _create(scraping_type="price", config={"currency": "EUR"})
    assert job["status"] == "pending"
    assert job["config"] == {"currency": "EUR"}

    r = client.get("/jobs", headers=HEADERS)
    assert r.json()["total"] == 1
    assert r.json()["jobs"][0]["id"] == job["id"]

    r = client.get(f"/jobs/{job['id']}", headers=HEADERS)
    assert r.json()["job"]["name"] == "Nightly prices"


def test_unknown_scraping_type_rejected():
    r = client.post("/jobs", json={"name": "x", "url": "https://x.test", "scraping_type": "videos"}, headers=HEADERS)
    assert r.status_code == 400
    body = r.json()
    assert body["ok"] is False
    assert body["error"]["type"] == "VALIDATION_ERROR"


def test_duplicate_name_conflicts():
    _create()
    r = client.post("/jobs", json={"name": "Nightly prices", "url": "https://x.test"}, headers=HEADERS)
    assert r.status_code == 409
    assert r.json()["error"]["type"] == "DATA_INTEGRITY_ERROR"


def test_other_users_job_is_not_found():
    job = _create()
    r = client.get(f"/jobs/{job['id']}", headers={"X-User-Id": "someone-else"})
    assert r.status_code == 404
    error = r.json()["error"]
    assert error["type"] == "JOB_NOT_FOUND"
    assert error["user_message"]
    # the failure lands in the error queue once
    assert [e.error_id for e in get_error_handler().queue.items()] == [error["error_id"]]


def test_update_job():
    job = _create()
    r = client.patch(f"/jobs/{job['id']}", json={"name": "Renamed", "status": "paused"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["job"]["name"] == "Renamed"
    assert r.json()["job"]["status"] == "paused"

    r = client.patch(f"/jobs/{job['id']}", json={"status": "running"}, headers=HEADERS)
    assert r.status_code == 400
    r = client.patch(f"/jobs/{job['id']}", json={"status": "completed"}, headers=HEADERS)
    assert r.status_code == 400


def test_run_job_eagerly(monkeypatch):
    monkeypatch.setattr("scrapedeck.worker.tasks.get_generator", lambda: FakeGenerator('{"items": [1, 2, 3]}'))
    job = _create()

    r = client.post(f"/jobs/{job['id']}/run", headers=HEADERS)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "completed"
    assert body["task_id"]

    results = client.get(f"/jobs/{job['id']}/results", headers=HEADERS).json()
    assert results["total"] == 1
    assert results["results"][0]["data"] == {"items": [1, 2, 3]}

    executions = client.get(f"/jobs/{job['id']}/executions", headers=HEADERS).json()["executions"]
    assert executions[0]["items_scraped"] == 3


def test_failed_run_reports_failed(monkeypatch):
    monkeypatch.setattr(
        "scrapedeck.worker.tasks.get_generator", lambda: FakeGenerator(error=RuntimeError("rate limit exceeded"))
    )
    job = _create()
    r = client.post(f"/jobs/{job['id']}/run", headers=HEADERS)
    assert r.json()["status"] == "failed"

    results = client.get(f"/jobs/{job['id']}/results", params={"status": "failed"}, headers=HEADERS).json()
    assert results["results"][0]["error_message"] == "rate limit exceeded"


def test_pause_and_cancel():
    job = _create()
    r = client.post(f"/jobs/{job['id']}/cancel", headers=HEADERS)
    assert r.status_code == 409

    r = client.post(f"/jobs/{job['id']}/pause", headers=HEADERS)
    assert r.json()["job"]["status"] == "paused"
    r = client.post(f"/jobs/{job['id']}/pause", headers=HEADERS)
    assert r.status_code == 400


def test_schedule_job():
    job = _create()
    r = client.post(
        f"/jobs/{job['id']}/schedule",
        json={"frequency": "weekly", "time": "07:30", "days": [1, 3], "timezone": "Europe/Berlin"},
        headers=HEADERS,
    )
    assert r.status_code == 200
    scheduled = r.json()["job"]
    assert scheduled["schedule_enabled"] is True
    assert scheduled["next_run_at"]
    assert scheduled["schedule_config"]["days"] == [1, 3]

    r = client.post(f"/jobs/{job['id']}/schedule", json={"frequency": "fortnightly"}, headers=HEADERS)
    assert r.status_code == 400


def test_export_results(monkeypatch):
    monkeypatch.setattr("scrapedeck.worker.tasks.get_generator", lambda: FakeGenerator('{"title": "a, b"}'))
    job = _create()
    client.post(f"/jobs/{job['id']}/run", headers=HEADERS)

    r = client.get(f"/jobs/{job['id']}/results/export", params={"format": "csv"}, headers=HEADERS)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/csv")
    assert f"scraper_results_{job['id']}_" in r.headers["content-disposition"]
    assert r.text.splitlines()[0].startswith("Result ID,Job ID,Status")

    r = client.get(f"/jobs/{job['id']}/results/export", params={"format": "json"}, headers=HEADERS)
    assert r.json()["metadata"]["jobName"] == "Nightly prices"

    r = client.get(f"/jobs/{job['id']}/results/export", params={"format": "pdf"}, headers=HEADERS)
    assert r.status_code == 400


def test_delete_job():
    job = _create()
    r = client.delete(f"/jobs/{job['id']}", headers=HEADERS)
    assert r.json() == {"ok": True, "job_id": job["id"]}
    assert client.get(f"/jobs/{job['id']}", headers=HEADERS).status_code == 404


def test_dry_run(monkeypatch):
    monkeypatch.setattr("scrapedeck.services.scraping.get_generator", lambda: FakeGenerator('{"title": "T"}'))
    r = client.post("/jobs/test", json={"url": "https://x.test", "scraping_type": "content"})
    assert r.json()["ok"] is True
    assert r.json()["result"]["data"] == {"title": "T"}

    r = client.post("/jobs/test", json={"scraping_type": "content"})
    assert r.json()["ok"] is False
    assert r.json()["result"]["error"] == "URL and scraping type are required"


def test_error_queue_endpoints():
    client.get("/jobs/999", headers=HEADERS)
    errors = client.get("/errors", headers=HEADERS).json()["errors"]
    assert errors[0]["type"] == "JOB_NOT_FOUND"

    stats = client.get("/errors/analytics", headers=HEADERS).json()
    assert stats["ok"] is True

    assert client.delete(f"/errors/{errors[0]['error_id']}", headers=HEADERS).status_code == 200
    assert client.delete("/errors/missing", headers=HEADERS).status_code == 404
    assert client.delete("/errors", headers=HEADERS).json() == {"ok": True}
    assert client.get("/errors", headers=HEADERS).json()["errors"] == []


def test_error_queue_is_per_user():
    assert client.get("/errors").status_code == 422

    client.get("/jobs/999", headers=HEADERS)
    other = {"X-User-Id": "someone-else"}
    assert client.get("/errors", headers=other).json()["errors"] == []
    assert client.get("/errors/analytics", headers=other).json()["total_errors"] == 0

    error_id = client.get("/errors", headers=HEADERS).json()["errors"][0]["error_id"]
    assert client.delete(f"/errors/{error_id}", headers=other).status_code == 404
    client.delete("/errors", headers=other)
    assert [e["error_id"] for e in client.get("/errors", headers=HEADERS).json()["errors"]] == [error_id]


def test_cancel_of_running_job_sets_the_flag(db):
    job = _create()
    Repository(db).jobs.claim(job["id"])

    r = client.post(f"/jobs/{job['id']}/cancel", headers=HEADERS)
    assert r.status_code == 200
    assert r.json()["cancel_requested"] is True
    # the run settles the job, not the endpoint
    assert r.json()["status"] == "running"
    assert Repository(db).jobs.cancel_requested(job["id"]) is True


def test_status_patch_refused_while_running(db):
    job = _create()
    Repository(db).jobs.claim(job["id"])

    r = client.patch(f"/jobs/{job['id']}", json={"status": "paused"}, headers=HEADERS)
    assert r.status_code == 409
    assert client.get(f"/jobs/{job['id']}", headers=HEADERS).json()["job"]["status"] == "running"



def test_job_config_known_keys_are_validated():
    r = client.post("/jobs", json={"name": "x", "url": "https://x.test", "config": {"retry_count": -1}}, headers=HEADERS)
    assert r.status_code == 422

    job = _create(config={"retry_count": 2, "custom_flag": "kept"}, selectors={"price": ".price"})
    assert job["config"] == {"retry_count": 2, "custom_flag": "kept"}
    assert job["selectors"] == {"price": ".price"}
