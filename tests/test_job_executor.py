import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from conftest import USER, FakeGenerator
from scrapedeck.core.errors import AppError, AppErrorType
from scrapedeck.db.base import Base
from scrapedeck.db.session import SessionLocal
from scrapedeck.services import job_executor
from scrapedeck.services.job_executor import CancelToken, JobExecutor, check_transition, execute_job, pause_job
from scrapedeck.services.repository import Repository, loads


def test_successful_run_writes_one_result(db, make_job):
    job = make_job(scraping_type="product")
    gen = FakeGenerator('{"products": [{"name": "a"}, {"name": "b"}]}', tokens=321)

    result = execute_job(db, job.id, generator=gen)

    repo = Repository(db)
    assert result.status == "success"
    assert result.tokens_used == 321
    assert loads(result.data_json) == {"products": [{"name": "a"}, {"name": "b"}]}
    assert repo.results.count(job_id=job.id) == 1

    job = repo.jobs.get(job.id)
    assert job.status == "completed"
    assert job.last_run_at is not None

    [execution] = repo.executions.list(job_id=job.id)
    assert execution.status == "completed"
    assert execution.items_scraped == 2
    assert execution.progress_percentage == 100
    assert execution.current_step == "done"

    [progress] = repo.progress.list(job_id=job.id)
    assert progress.execution_id == execution.id
    assert progress.progress_percentage == 100


def test_job_prompt_falls_back_to_type_template(db, make_job):
    job = make_job(scraping_type="price", ai_prompt=None)
    gen = FakeGenerator()
    execute_job(db, job.id, generator=gen)
    assert "Extract pricing and availability information" in gen.prompts[0]


def test_adapter_failure_marks_job_failed(db, make_job):
    job = make_job()
    result = execute_job(db, job.id, generator=FakeGenerator(error=RuntimeError("model overloaded")))

    assert result.status == "failed"
    assert result.error_message == "model overloaded"
    repo = Repository(db)
    assert repo.jobs.get(job.id).status == "failed"
    assert repo.executions.list(job_id=job.id)[0].status == "failed"
    assert repo.results.count(job_id=job.id) == 1


def test_missing_job_raises_without_result(db):
    with pytest.raises(AppError) as exc:
        execute_job(db, 12345, generator=FakeGenerator())
    assert exc.value.type == AppErrorType.JOB_NOT_FOUND
    assert Repository(db).results.count() == 0


def test_running_job_cannot_be_claimed_twice(db, make_job):
    job = make_job()
    Repository(db).jobs.claim(job.id)
    with pytest.raises(AppError) as exc:
        execute_job(db, job.id, generator=FakeGenerator())
    assert exc.value.type == AppErrorType.DATA_INTEGRITY_ERROR
    assert Repository(db).executions.count(job_id=job.id) == 0


def test_cancelled_run_pauses_job(db, make_job):
    job = make_job()
    token = CancelToken()

    def reply(prompt):
        # cancellation arrives while the model is working
        token.cancel()
        return "{}"

    result = execute_job(db, job.id, cancel=token, generator=FakeGenerator(reply))

    repo = Repository(db)
    assert result.status == "failed"
    assert result.error_message == "Execution cancelled"
    assert repo.jobs.get(job.id).status == "paused"
    assert repo.executions.list(job_id=job.id)[0].status == "cancelled"
    assert repo.results.count(job_id=job.id) == 1


def test_result_write_is_retried_then_succeeds(db, make_job, monkeypatch):
    job = make_job()
    executor = JobExecutor(db, generator=FakeGenerator('{"a": 1}'), sleep=lambda s: None)
    real_create = executor.repo.results.create
    attempts = {"n": 0}

    def flaky_create(**values):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise OperationalError("insert", {}, Exception("database is locked"))
        return real_create(**values)

    monkeypatch.setattr(executor.repo.results, "create", flaky_create)
    result = executor.execute(job.id)

    assert attempts["n"] == 2
    assert result.status == "success"
    assert Repository(db).jobs.get(job.id).status == "completed"


def test_exhausted_result_write_fails_job_and_logs_payload(db, make_job, monkeypatch, caplog):
    job = make_job()
    executor = JobExecutor(db, generator=FakeGenerator('{"keep": "me"}'), result_retries=2, sleep=lambda s: None)

    def always_down(**values):
        raise OperationalError("insert", {}, Exception("database is locked"))

    monkeypatch.setattr(executor.repo.results, "create", always_down)
    with caplog.at_level("ERROR"):
        with pytest.raises(AppError) as exc:
            executor.execute(job.id)

    assert exc.value.type == AppErrorType.SERVICE_UNAVAILABLE
    assert Repository(db).jobs.get(job.id).status == "failed"
    assert "'keep': 'me'" in caplog.text


def test_rerun_after_completion(db, make_job):
    job = make_job()
    execute_job(db, job.id, generator=FakeGenerator())
    execute_job(db, job.id, generator=FakeGenerator())
    assert Repository(db).results.count(job_id=job.id) == 2


def test_status_transitions():
    check_transition("pending", "running")
    check_transition("completed", "running")
    check_transition("running", "paused")
    with pytest.raises(AppError):
        check_transition("completed", "paused")
    with pytest.raises(AppError):
        check_transition("paused", "completed")


def test_pause_job(db, make_job):
    job = make_job()
    assert pause_job(db, job.id).status == "paused"
    with pytest.raises(AppError) as exc:
        pause_job(db, job.id)
    assert exc.value.type == AppErrorType.VALIDATION_ERROR


def test_request_cancel_without_run_is_noop():
    assert job_executor.request_cancel(98765) is False


def test_dry_run_requires_url_and_type():
    out = job_executor.test_job({"url": "https://x.test"})
    assert out.success is False
    assert out.error == "URL and scraping type are required"


def test_dry_run_persists_nothing(db):
    gen = FakeGenerator('{"title": "x"}')
    out = job_executor.test_job({"url": "https://x.test", "scraping_type": "content"}, generator=gen)
    assert out.success is True
    assert out.data == {"title": "x"}
    assert Repository(db).results.count() == 0
    assert Repository(db).jobs.count(user_id=USER) == 0


def test_price_job_stores_extracted_price(db, make_job):
    job = make_job(name="Widget price", scraping_type="price")
    result = execute_job(db, job.id, generator=FakeGenerator('{"price": 19.99}'))

    assert result.status == "success"
    assert loads(result.data_json)["price"] == 19.99
    assert Repository(db).jobs.get(job.id).status == "completed"


def test_cancel_from_another_session_stops_the_run(db, make_job):
    job = make_job()
    seen = {}

    def reply(prompt):
        # another process only sees the job row
        other = SessionLocal()
        try:
            repo = Repository(other)
            seen["requested"] = repo.jobs.request_cancel(job.id)
            with pytest.raises(AppError) as exc:
                repo.jobs.claim(job.id)
            seen["second_claim"] = exc.value.type
            seen["status"] = repo.jobs.get(job.id).status
        finally:
            other.close()
        return '{"title": "late"}'

    result = execute_job(db, job.id, generator=FakeGenerator(reply))

    assert seen == {
        "requested": True,
        "second_claim": AppErrorType.DATA_INTEGRITY_ERROR,
        "status": "running",
    }
    repo = Repository(db)
    assert result.error_message == "Execution cancelled"
    job = repo.jobs.get(job.id)
    assert job.status == "paused"
    assert job.cancel_requested is False
    assert repo.executions.list(job_id=job.id)[0].status == "cancelled"
    assert repo.results.count(job_id=job.id) == 1


def test_pause_of_running_job_leaves_it_running_until_the_run_settles(db, make_job):
    job = make_job()
    seen = {}

    def reply(prompt):
        other = SessionLocal()
        try:
            paused = pause_job(other, job.id)
            seen["status"], seen["flag"] = paused.status, paused.cancel_requested
        finally:
            other.close()
        return "{}"

    execute_job(db, job.id, generator=FakeGenerator(reply))

    assert seen == {"status": "running", "flag": True}
    assert Repository(db).jobs.get(job.id).status == "paused"


def test_claim_refused_while_an_execution_is_in_flight(db, make_job):
    job = make_job(status="failed")
    repo = Repository(db)
    repo.executions.create(job_id=job.id, user_id=USER, status="running")

    with pytest.raises(AppError) as exc:
        repo.jobs.claim(job.id)
    assert exc.value.type == AppErrorType.DATA_INTEGRITY_ERROR
    assert repo.jobs.get(job.id).status == "failed"


def test_finish_only_settles_running_jobs(db, make_job):
    job = make_job()
    repo = Repository(db)
    assert repo.jobs.finish(job.id, "completed") is False
    assert repo.jobs.get(job.id).status == "pending"

    repo.jobs.claim(job.id)
    assert repo.jobs.finish(job.id, "completed") is True
    assert repo.jobs.get(job.id).status == "completed"


def test_concurrent_runs_of_one_job_write_one_result(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'runs.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine, expire_on_commit=False)

    setup = Session()
    job_id = Repository(setup).jobs.create(user_id=USER, name="Race", url="https://x.test").id
    setup.close()

    entered, release = threading.Event(), threading.Event()

    def slow_reply(prompt):
        entered.set()
        release.wait(timeout=10)
        return '{"title": "first"}'

    outcomes = {}

    def run(name, generator):
        session = Session()
        try:
            outcomes[name] = execute_job(session, job_id, generator=generator)
        except Exception as e:
            outcomes[name] = e
        finally:
            session.close()

    first = threading.Thread(target=run, args=("first", FakeGenerator(slow_reply)))
    first.start()
    assert entered.wait(timeout=10)

    second = threading.Thread(target=run, args=("second", FakeGenerator('{"title": "second"}')))
    second.start()
    second.join(timeout=10)
    release.set()
    first.join(timeout=10)

    assert outcomes["first"].status == "success"
    assert isinstance(outcomes["second"], AppError)
    assert outcomes["second"].type == AppErrorType.DATA_INTEGRITY_ERROR

    check = Session()
    try:
        assert Repository(check).results.count(job_id=job_id) == 1
        assert Repository(check).jobs.get(job_id).status == "completed"
    finally:
        check.close()
        engine.dispose()
