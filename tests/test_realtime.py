import json
import threading
import time

from scrapedeck.services.realtime import (
    CHANNEL_ERROR,
    EXECUTIONS_TABLE,
    PROGRESS_TABLE,
    SUBSCRIBED,
    ChangeEvent,
    ChangeFeed,
    ConnectionStatus,
    RealtimeJobMonitor,
    RedisChangeRelay,
    connect_change_relay,
)
from scrapedeck.services.repository import Repository


class FakeLoop:
    """Collects call_later callbacks so tests can fire them by hand."""

    def __init__(self):
        self.calls = []

    def call_later(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.calls.append(handle)
        return handle


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeRedis:
    """Shared message bus standing in for one Redis server."""

    def __init__(self):
        self.published = []
        self.subscribers = []

    def publish(self, channel, message):
        self.published.append((channel, message))
        for sub in self.subscribers:
            if channel in sub.channels:
                sub.inbox.append({"type": "message", "channel": channel, "data": message})
        return len(self.subscribers)

    def pubsub(self, ignore_subscribe_messages=False):
        sub = FakePubSub()
        self.subscribers.append(sub)
        return sub


class FakePubSub:
    def __init__(self):
        self.channels = set()
        self.inbox = []
        self.closed = False

    def subscribe(self, channel):
        self.channels.add(channel)

    def get_message(self, timeout=0.0):
        if self.inbox:
            return self.inbox.pop(0)
        time.sleep(min(timeout, 0.01))
        return None

    def close(self):
        self.closed = True

def _event(table, job_id, event_type="INSERT", **row):
    row["job_id"] = job_id
    if event_type == "DELETE":
        return ChangeEvent(event_type=event_type, table=table, new=None, old=row)
    return ChangeEvent(event_type=event_type, table=table, new=row, old=None)


# ---- feed ----

def test_feed_filters_by_table_and_job():
    feed = ChangeFeed()
    seen = []
    statuses = []
    feed.channel("c").on(EXECUTIONS_TABLE, seen.append, job_ids=[1]).subscribe(statuses.append)

    assert statuses == [SUBSCRIBED]
    assert feed.publish(_event(EXECUTIONS_TABLE, 1)) == 1
    assert feed.publish(_event(EXECUTIONS_TABLE, 2)) == 0
    assert feed.publish(_event(PROGRESS_TABLE, 1)) == 0
    assert [e.job_id for e in seen] == [1]


def test_delete_events_match_on_old_row():
    feed = ChangeFeed()
    seen = []
    feed.channel("c").on(PROGRESS_TABLE, seen.append, job_ids=[7]).subscribe()
    feed.publish(_event(PROGRESS_TABLE, 7, event_type="DELETE"))
    assert seen[0].event_type == "DELETE"


def test_failing_listener_does_not_block_others():
    feed = ChangeFeed()
    seen = []

    def boom(event):
        raise RuntimeError("listener bug")

    feed.channel("a").on(EXECUTIONS_TABLE, boom).subscribe()
    feed.channel("b").on(EXECUTIONS_TABLE, seen.append).subscribe()
    assert feed.publish(_event(EXECUTIONS_TABLE, 1)) == 1
    assert len(seen) == 1


def test_closed_feed_reports_channel_error():
    feed = ChangeFeed()
    statuses = []
    feed.channel("c").on(EXECUTIONS_TABLE, lambda e: None).subscribe(statuses.append)
    feed.close()
    assert statuses == [SUBSCRIBED, CHANNEL_ERROR]
    assert feed.channels() == []

    late = []
    feed.channel("d").subscribe(late.append)
    assert late == [CHANNEL_ERROR]
    assert feed.publish(_event(EXECUTIONS_TABLE, 1)) == 0


def test_unsubscribe_stops_delivery():
    feed = ChangeFeed()
    seen = []
    ch = feed.channel("c").on(EXECUTIONS_TABLE, seen.append).subscribe()
    ch.unsubscribe()
    feed.publish(_event(EXECUTIONS_TABLE, 1))
    assert seen == []
    assert ch.subscribed is False


# ---- monitor ----

def test_monitor_connects_and_tracks_rows(db, make_job):
    job = make_job()
    repo = Repository(db)
    monitor = RealtimeJobMonitor(feed=repo.jobs.feed, loop=FakeLoop())
    snapshots = []
    monitor.add_listener(snapshots.append)

    monitor.start_monitoring()
    assert monitor.status == ConnectionStatus.CONNECTED

    execution = repo.executions.create(job_id=job.id, user_id=job.user_id, status="running")
    repo.progress.create(job_id=job.id, execution_id=execution.id, user_id=job.user_id, progress_percentage=10)
    assert monitor.active_executions[job.id]["status"] == "running"
    assert monitor.job_progress[job.id]["progress_percentage"] == 10

    repo.executions.update(execution.id, status="completed")
    assert monitor.snapshot(job.id)["execution"]["status"] == "completed"

    repo.executions.delete(execution.id)
    assert job.id not in monitor.active_executions
    assert snapshots[-1]["status"] == "connected"


def test_monitor_scoped_to_job_ids(db, make_job):
    watched = make_job(name="watched")
    other = make_job(name="other")
    repo = Repository(db)
    monitor = RealtimeJobMonitor(feed=repo.jobs.feed, loop=FakeLoop())
    monitor.start_monitoring([watched.id])

    repo.executions.create(job_id=other.id, user_id=other.user_id, status="running")
    repo.executions.create(job_id=watched.id, user_id=watched.user_id, status="running")
    assert list(monitor.active_executions) == [watched.id]
    assert monitor.snapshot()["monitored_jobs"] == [watched.id]


def test_subscribe_to_job_is_idempotent():
    feed = ChangeFeed()
    monitor = RealtimeJobMonitor(feed=feed, loop=FakeLoop())
    monitor.subscribe_to_job(5)
    monitor.subscribe_to_job(5)
    assert len(feed.channels()) == 1

    feed.publish(_event(EXECUTIONS_TABLE, 5, status="running"))
    assert monitor.active_executions[5]["status"] == "running"

    monitor.unsubscribe_from_job(5)
    assert feed.channels() == []
    assert 5 not in monitor.monitored_jobs
    assert 5 not in monitor.active_executions


def test_stop_monitoring_clears_state():
    feed = ChangeFeed()
    monitor = RealtimeJobMonitor(feed=feed, loop=FakeLoop())
    monitor.start_monitoring([1])
    monitor.subscribe_to_job(2)
    feed.publish(_event(PROGRESS_TABLE, 1, progress_percentage=40))

    monitor.stop_monitoring()
    assert monitor.status == ConnectionStatus.DISCONNECTED
    assert feed.channels() == []
    assert monitor.job_progress == {}
    assert monitor.monitored_jobs == set()


def test_channel_error_schedules_reconnect():
    feed = ChangeFeed()
    loop = FakeLoop()
    monitor = RealtimeJobMonitor(feed=feed, loop=loop, reconnect_delay=5)
    monitor.start_monitoring([3])

    feed.close()
    assert monitor.status == ConnectionStatus.ERROR
    assert monitor.error == "Realtime channel error"
    # both channels report the error but only one reconnect is pending
    assert len(loop.calls) == 1
    assert loop.calls[0].delay == 5

    feed.reopen()
    loop.calls[0].callback()
    assert monitor.status == ConnectionStatus.CONNECTED
    assert monitor.error is None
    assert 3 in monitor.monitored_jobs


def test_no_reconnect_without_watched_jobs():
    feed = ChangeFeed()
    loop = FakeLoop()
    monitor = RealtimeJobMonitor(feed=feed, loop=loop)
    monitor.start_monitoring()
    feed.close()
    assert monitor.status == ConnectionStatus.ERROR
    assert loop.calls == []


def test_stop_cancels_pending_reconnect():
    feed = ChangeFeed()
    loop = FakeLoop()
    monitor = RealtimeJobMonitor(feed=feed, loop=loop)
    monitor.start_monitoring([1])
    feed.close()
    monitor.stop_monitoring()
    assert loop.calls[0].cancelled is True


def test_monitor_ignores_other_users_rows():
    feed = ChangeFeed()
    monitor = RealtimeJobMonitor(feed=feed, loop=FakeLoop(), user_id="user-1")
    monitor.start_monitoring()

    feed.publish(_event(EXECUTIONS_TABLE, 1, status="running", user_id="user-2"))
    feed.publish(_event(PROGRESS_TABLE, 1, progress_percentage=50, user_id="user-2"))
    assert monitor.active_executions == {}
    assert monitor.job_progress == {}

    feed.publish(_event(EXECUTIONS_TABLE, 2, status="running", user_id="user-1"))
    assert list(monitor.active_executions) == [2]


# ---- cross-process relay ----

def test_relay_carries_worker_rows_to_api_monitor():
    bus = FakeRedis()
    worker_feed, api_feed = ChangeFeed(), ChangeFeed()
    worker = connect_change_relay(worker_feed, redis_client=bus)
    api = connect_change_relay(api_feed, redis_client=bus)

    monitor = RealtimeJobMonitor(feed=api_feed, loop=FakeLoop(), user_id="user-1")
    monitor.start_monitoring([7])

    worker_feed.publish(_event(EXECUTIONS_TABLE, 7, status="running", user_id="user-1"))
    channel, message = bus.published[0]
    assert channel == worker.channel
    assert json.loads(message)["origin"] == worker.origin

    assert api.handle_message({"type": "message", "channel": channel, "data": message}) is True
    assert monitor.active_executions[7]["status"] == "running"
    # replayed rows are not sent back out
    assert len(bus.published) == 1


def test_relay_skips_its_own_and_malformed_messages():
    bus = FakeRedis()
    feed = ChangeFeed()
    seen = []
    feed.channel("c").on(EXECUTIONS_TABLE, seen.append).subscribe()
    relay = RedisChangeRelay(feed, redis_client=bus, channel="changes")

    own = json.dumps({"origin": relay.origin, "event_type": "INSERT", "table": EXECUTIONS_TABLE, "new": {"job_id": 1}})
    assert relay.handle_message({"type": "message", "data": own}) is False
    assert relay.handle_message({"type": "message", "data": "not json"}) is False
    assert relay.handle_message({"type": "subscribe", "data": 1}) is False
    assert seen == []


def test_relay_listener_thread_replays_remote_events():
    bus = FakeRedis()
    worker_feed, api_feed = ChangeFeed(), ChangeFeed()
    connect_change_relay(worker_feed, redis_client=bus)
    api = connect_change_relay(api_feed, listen=True, redis_client=bus)

    arrived = threading.Event()
    api_feed.channel("c").on(PROGRESS_TABLE, lambda e: arrived.set()).subscribe()
    try:
        worker_feed.publish(_event(PROGRESS_TABLE, 3, progress_percentage=25))
        assert arrived.wait(timeout=5)
    finally:
        api.stop()
    assert bus.subscribers[0].closed is True


def test_connect_change_relay_once_per_feed():
    feed = ChangeFeed()
    # eager test runs keep everything in one process
    assert connect_change_relay(feed) is None
    assert feed.relay is None

    bus = FakeRedis()
    relay = connect_change_relay(feed, redis_client=bus)
    assert connect_change_relay(feed, redis_client=bus) is relay
    assert feed.relay is relay
