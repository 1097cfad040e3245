from datetime import datetime, timedelta, timezone

import pytest

from scrapedeck.core.clock import as_utc
from scrapedeck.core.errors import AppError, get_error_handler
from scrapedeck.services.job_executor import pause_job
from scrapedeck.services.repository import Repository, loads
from scrapedeck.services.scheduler import ScheduleConfig, calculate_next_run, run_due_jobs, schedule_job

# a Thursday
NOW = datetime(2024, 3, 14, 10, 15, tzinfo=timezone.utc)


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_manual_has_no_next_run():
    assert calculate_next_run(ScheduleConfig(), NOW) is None


@pytest.mark.parametrize(
    "config, expected",
    [
        (ScheduleConfig(frequency="hourly"), utc(2024, 3, 14, 11, 15)),
        (ScheduleConfig(frequency="daily", time="09:00"), utc(2024, 3, 15, 9, 0)),
        (ScheduleConfig(frequency="daily"), utc(2024, 3, 15, 10, 15)),
        (ScheduleConfig(frequency="weekly", time="08:30", days=[1]), utc(2024, 3, 18, 8, 30)),
        (ScheduleConfig(frequency="weekly", days=[5, 1]), utc(2024, 3, 15, 10, 15)),
        (ScheduleConfig(frequency="weekly"), utc(2024, 3, 21, 10, 15)),
        (ScheduleConfig(frequency="monthly", time="00:00"), utc(2024, 4, 1, 0, 0)),
        (ScheduleConfig(frequency="custom", interval=6), utc(2024, 3, 14, 16, 15)),
        (ScheduleConfig(frequency="custom"), utc(2024, 3, 14, 11, 15)),
    ],
)
def test_next_run(config, expected):
    assert calculate_next_run(config, NOW) == expected


def test_daily_time_is_wall_clock_in_timezone():
    config = ScheduleConfig(frequency="daily", time="09:00", timezone="America/New_York")
    # EDT is UTC-4 in March after the switch
    assert calculate_next_run(config, NOW) == utc(2024, 3, 15, 13, 0)


def test_monthly_rolls_over_year():
    config = ScheduleConfig(frequency="monthly", time="06:00")
    assert calculate_next_run(config, utc(2024, 12, 20, 12, 0)) == utc(2025, 1, 1, 6, 0)


def test_naive_now_is_treated_as_utc():
    assert calculate_next_run(ScheduleConfig(frequency="hourly"), datetime(2024, 3, 14, 10, 15)) == utc(2024, 3, 14, 11, 15)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"frequency": "yearly"},
        {"frequency": "daily", "time": "25:00"},
        {"frequency": "daily", "time": "noon"},
        {"frequency": "weekly", "days": [7]},
        {"frequency": "custom", "interval": 0},
    ],
)
def test_invalid_config(kwargs):
    with pytest.raises(AppError):
        ScheduleConfig(**kwargs)


def test_unknown_timezone():
    with pytest.raises(AppError):
        calculate_next_run(ScheduleConfig(frequency="hourly", timezone="Mars/Olympus"), NOW)


def test_from_dict_defaults():
    config = ScheduleConfig.from_dict(None)
    assert config.frequency == "manual"
    assert config.timezone == "UTC"
    assert ScheduleConfig.from_dict(config.to_dict()) == config


def test_schedule_job_persists_config(db, make_job):
    job = make_job()
    config = ScheduleConfig(frequency="daily", time="09:00")

    job = schedule_job(db, job.id, config, now=NOW, forward=False)

    assert job.schedule_enabled is True
    assert as_utc(job.next_run_at) == utc(2024, 3, 15, 9, 0)
    assert loads(job.schedule_config_json)["time"] == "09:00"


def test_manual_schedule_disables(db, make_job):
    job = make_job()
    schedule_job(db, job.id, ScheduleConfig(frequency="hourly"), now=NOW, forward=False)
    job = schedule_job(db, job.id, ScheduleConfig(), now=NOW, forward=False)
    assert job.schedule_enabled is False
    assert job.next_run_at is None


def test_run_due_jobs_advances_and_hands_off(db, make_job):
    due = make_job(name="due")
    later = make_job(name="later")
    schedule_job(db, due.id, ScheduleConfig(frequency="hourly"), now=NOW - timedelta(hours=2), forward=False)
    schedule_job(db, later.id, ScheduleConfig(frequency="daily"), now=NOW, forward=False)

    ran = []
    assert run_due_jobs(db, ran.append, now=NOW) == [due.id]
    assert ran == [due.id]
    assert as_utc(Repository(db).jobs.get(due.id).next_run_at) == utc(2024, 3, 14, 11, 15)

    # already advanced, nothing due
    assert run_due_jobs(db, ran.append, now=NOW) == []


def test_running_jobs_are_not_due(db, make_job):
    job = make_job()
    schedule_job(db, job.id, ScheduleConfig(frequency="hourly"), now=NOW - timedelta(hours=2), forward=False)
    Repository(db).jobs.update(job.id, status="running")
    assert run_due_jobs(db, lambda job_id: None, now=NOW) == []


def test_paused_jobs_are_not_due(db, make_job):
    job = make_job()
    schedule_job(db, job.id, ScheduleConfig(frequency="hourly"), now=NOW - timedelta(hours=2), forward=False)
    pause_job(db, job.id)

    ran = []
    assert run_due_jobs(db, ran.append, now=NOW + timedelta(hours=2)) == []
    assert ran == []
    assert Repository(db).jobs.get(job.id).status == "paused"


def test_failed_handoff_is_recorded(db, make_job):
    job = make_job()
    schedule_job(db, job.id, ScheduleConfig(frequency="hourly"), now=NOW - timedelta(hours=2), forward=False)

    def broken(job_id):
        raise RuntimeError("broker unreachable")

    assert run_due_jobs(db, broken, now=NOW) == []
    assert get_error_handler().queue.items()[-1].context["job_id"] == job.id
