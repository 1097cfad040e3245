"""
Realtime job monitoring.

ChangeFeed is a pub/sub of row changes. The repository publishes one
ChangeEvent after every committed insert/update/delete. Channels register
table listeners (optionally filtered by job id) and are acknowledged with
SUBSCRIBED, or told CHANNEL_ERROR when the feed is closed.

Runs execute in Celery workers, so each process links its feed to Redis
pub/sub with a RedisChangeRelay: local events are published to the shared
channel, and events from other processes are replayed into the local feed.

RealtimeJobMonitor keeps a live view of executions and progress per job on top
of the feed, with a fixed-delay reconnect while jobs are being watched.
"""
from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable

import redis

from scrapedeck.core.celery_settings import is_test_env
from scrapedeck.core.config import settings

logger = logging.getLogger(__name__)

EXECUTIONS_TABLE = "scraper_job_executions"
PROGRESS_TABLE = "scraper_job_progress"

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


@dataclass
class ChangeEvent:
    event_type: str  # INSERT | UPDATE | DELETE
    table: str
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    origin: str | None = None  # relay id of the process that wrote the row; None = this process

    @property
    def row(self) -> dict[str, Any]:
        return (self.old if self.event_type == "DELETE" else self.new) or {}

    @property
    def job_id(self) -> Any:
        return self.row.get("job_id")


EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[str], None]


@dataclass
class _Listener:
    table: str
    callback: EventCallback
    job_ids: frozenset | None = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.job_ids is None:
            return True
        return event.job_id in self.job_ids


@dataclass
class Channel:
    name: str
    feed: "ChangeFeed"
    listeners: list[_Listener] = field(default_factory=list)
    status_callback: StatusCallback | None = None
    subscribed: bool = False

    def on(self, table: str, callback: EventCallback, job_ids: Iterable[Any] | None = None) -> "Channel":
        ids = frozenset(job_ids) if job_ids is not None else None
        self.listeners.append(_Listener(table=table, callback=callback, job_ids=ids))
        return self

    def subscribe(self, status_callback: StatusCallback | None = None) -> "Channel":
        self.status_callback = status_callback
        self.feed._attach(self)
        return self

    def unsubscribe(self) -> None:
        self.feed._detach(self)
        self.subscribed = False

    def _notify_status(self, status: str) -> None:
        if self.status_callback is None:
            return
        try:
            self.status_callback(status)
        except Exception:
            logger.exception("Status callback failed on channel %s", self.name)


class ChangeFeed:
    def __init__(self) -> None:
        self._channels: list[Channel] = []
        self._closed = False
        self._lock = threading.RLock()
        self.relay: RedisChangeRelay | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def channel(self, name: str) -> Channel:
        return Channel(name=name, feed=self)

    def channels(self) -> list[Channel]:
        with self._lock:
            return list(self._channels)

    def _attach(self, channel: Channel) -> None:
        with self._lock:
            if self._closed:
                status = CHANNEL_ERROR
            else:
                if channel not in self._channels:
                    self._channels.append(channel)
                channel.subscribed = True
                status = SUBSCRIBED
        channel._notify_status(status)

    def _detach(self, channel: Channel) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every matching listener in subscription order. Returns deliveries made."""
        with self._lock:
            if self._closed:
                return 0
            targets = [
                listener
                for ch in self._channels
                for listener in ch.listeners
                if listener.matches(event)
            ]

        delivered = 0
        for listener in targets:
            try:
                listener.callback(event)
                delivered += 1
            except Exception:
                logger.exception("Change listener failed for %s %s", event.event_type, event.table)

        # replayed events already went over the wire
        if self.relay is not None and event.origin is None:
            self.relay.send(event)
        return delivered

    def close(self) -> None:
        """Drop every channel; subscribers see CHANNEL_ERROR."""
        with self._lock:
            self._closed = True
            dropped = list(self._channels)
            self._channels.clear()
        for ch in dropped:
            ch.subscribed = False
            ch._notify_status(CHANNEL_ERROR)

    def reopen(self) -> None:
        with self._lock:
            self._closed = False


_feed: ChangeFeed | None = None
_feed_lock = threading.Lock()


def get_change_feed() -> ChangeFeed:
    global _feed
    with _feed_lock:
        if _feed is None:
            _feed = ChangeFeed()
        return _feed


def reset_change_feed() -> ChangeFeed:
    global _feed
    with _feed_lock:
        _feed = ChangeFeed()
        return _feed


# ----------------------------
# Cross-process relay
# ----------------------------

class RedisChangeRelay:
    """
    Links one process's ChangeFeed to a Redis pub/sub channel.

    send() publishes local events; a listener thread replays events from
    other processes into the feed with `origin` set, so they are never
    published back.
    """

    def __init__(self, feed: ChangeFeed, redis_client: Any = None, channel: str | None = None) -> None:
        self.feed = feed
        self._redis = redis_client
        if self._redis is None:
            self._redis = redis.from_url(settings.redis_url, decode_responses=True)
        self.channel = channel or settings.realtime_channel
        self.origin = uuid.uuid4().hex
        self._pubsub: Any = None
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()

    def send(self, event: ChangeEvent) -> None:
        message = json.dumps(
            {
                "origin": self.origin,
                "event_type": event.event_type,
                "table": event.table,
                "new": event.new,
                "old": event.old,
            },
            default=str,
        )
        try:
            self._redis.publish(self.channel, message)
        except redis.RedisError as e:
            # local listeners already have the event
            logger.warning("Change relay publish failed for %s %s: %s", event.event_type, event.table, e)

    def handle_message(self, message: dict[str, Any]) -> bool:
        """Replay one pub/sub message into the feed. Returns False for skipped messages."""
        if message.get("type") != "message":
            return False
        try:
            data = json.loads(message["data"])
        except (TypeError, ValueError, KeyError):
            logger.warning("Dropping malformed change message on %s", self.channel)
            return False
        if data.get("origin") == self.origin:
            return False
        self.feed.publish(
            ChangeEvent(
                event_type=data.get("event_type", ""),
                table=data.get("table", ""),
                new=data.get("new"),
                old=data.get("old"),
                origin=data.get("origin") or "remote",
            )
        )
        return True

    def start_listening(self) -> None:
        if self._thread is not None:
            return
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self.channel)
        self._stop.clear()
        self._thread = threading.Thread(target=self._listen, name="change-relay", daemon=True)
        self._thread.start()
        logger.info("Change relay listening on %s", self.channel)

    def _listen(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=1.0)
            except redis.RedisError as e:
                logger.warning("Change relay lost its subscription: %s", e)
                self._stop.wait(settings.realtime_reconnect_sec)
                continue
            if message:
                self.handle_message(message)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None


def connect_change_relay(feed: ChangeFeed | None = None, listen: bool = False, redis_client: Any = None) -> RedisChangeRelay | None:
    """
    Attach a Redis relay to the feed once per process. Workers only publish;
    the API also listens. Eager test runs share one process and skip it.
    """
    if is_test_env() and redis_client is None:
        return None
    feed = feed or get_change_feed()
    with _feed_lock:
        if feed.relay is None:
            feed.relay = RedisChangeRelay(feed, redis_client=redis_client)
        relay = feed.relay
    if listen:
        relay.start_listening()
    return relay


# ----------------------------
# Monitor
# ----------------------------

class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


Snapshot = dict[str, Any]


class RealtimeJobMonitor:
    def __init__(
        self,
        feed: ChangeFeed | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        reconnect_delay: float | None = None,
        user_id: str | None = None,
    ) -> None:
        self.feed = feed or get_change_feed()
        # rows owned by other users are ignored when set
        self.user_id = user_id
        self.loop = loop
        self.reconnect_delay = settings.realtime_reconnect_sec if reconnect_delay is None else reconnect_delay

        self.status = ConnectionStatus.DISCONNECTED
        self.error: str | None = None
        self.active_executions: dict[Any, dict[str, Any]] = {}
        self.job_progress: dict[Any, dict[str, Any]] = {}
        self.monitored_jobs: set[Any] = set()

        self._channels: list[Channel] = []
        self._job_channels: dict[Any, list[Channel]] = {}
        self._listeners: list[Callable[[Snapshot], None]] = []
        self._reconnect_handle: Any = None
        self._lock = threading.RLock()

    # ---- lifecycle ----

    def start_monitoring(self, job_ids: Iterable[Any] | None = None) -> None:
        ids = list(job_ids) if job_ids is not None else None
        with self._lock:
            self._drop_channels()
            if ids:
                self.monitored_jobs.update(ids)
            self.error = None
            self._set_status(ConnectionStatus.CONNECTING)

        try:
            executions = (
                self.feed.channel("job-executions")
                .on(EXECUTIONS_TABLE, self._on_execution_change, job_ids=ids)
            )
            progress = (
                self.feed.channel("job-progress")
                .on(PROGRESS_TABLE, self._on_progress_change, job_ids=ids)
            )
            with self._lock:
                self._channels = [executions, progress]
            executions.subscribe(self._on_status)
            progress.subscribe(self._on_status)
        except Exception as e:
            logger.exception("Failed to start realtime monitoring")
            self._fail(str(e))

    def stop_monitoring(self) -> None:
        with self._lock:
            self._cancel_reconnect()
            self._drop_channels()
            for channels in self._job_channels.values():
                for ch in channels:
                    ch.unsubscribe()
            self._job_channels.clear()
            self.active_executions.clear()
            self.job_progress.clear()
            self.monitored_jobs.clear()
            self.error = None
            self._set_status(ConnectionStatus.DISCONNECTED)

    def subscribe_to_job(self, job_id: Any) -> None:
        with self._lock:
            if job_id in self._job_channels:
                return
            self.monitored_jobs.add(job_id)
            ch = (
                self.feed.channel(f"job-{job_id}")
                .on(EXECUTIONS_TABLE, self._on_execution_change, job_ids=[job_id])
                .on(PROGRESS_TABLE, self._on_progress_change, job_ids=[job_id])
            )
            self._job_channels[job_id] = [ch]
        ch.subscribe(self._on_status)

    def unsubscribe_from_job(self, job_id: Any) -> None:
        with self._lock:
            for ch in self._job_channels.pop(job_id, []):
                ch.unsubscribe()
            self.monitored_jobs.discard(job_id)
            self.active_executions.pop(job_id, None)
            self.job_progress.pop(job_id, None)
        self._emit()

    # ---- listeners ----

    def add_listener(self, callback: Callable[[Snapshot], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def snapshot(self, job_id: Any = None) -> Snapshot:
        with self._lock:
            if job_id is not None:
                return {
                    "status": self.status.value,
                    "error": self.error,
                    "job_id": job_id,
                    "execution": self.active_executions.get(job_id),
                    "progress": self.job_progress.get(job_id),
                }
            return {
                "status": self.status.value,
                "error": self.error,
                "monitored_jobs": sorted(self.monitored_jobs, key=str),
                "active_executions": dict(self.active_executions),
                "job_progress": dict(self.job_progress),
            }

    # ---- feed callbacks ----

    def _visible(self, event: ChangeEvent) -> bool:
        return self.user_id is None or event.row.get("user_id") == self.user_id

    def _on_execution_change(self, event: ChangeEvent) -> None:
        job_id = event.job_id
        if job_id is None or not self._visible(event):
            return
        with self._lock:
            if event.event_type == "DELETE":
                self.active_executions.pop(job_id, None)
            else:
                self.active_executions[job_id] = dict(event.new or {})
        self._emit()

    def _on_progress_change(self, event: ChangeEvent) -> None:
        job_id = event.job_id
        if job_id is None or not self._visible(event):
            return
        with self._lock:
            if event.event_type == "DELETE":
                self.job_progress.pop(job_id, None)
            else:
                self.job_progress[job_id] = dict(event.new or {})
        self._emit()

    def _on_status(self, status: str) -> None:
        if status == SUBSCRIBED:
            with self._lock:
                if self.status == ConnectionStatus.CONNECTING:
                    self.error = None
                    self._set_status(ConnectionStatus.CONNECTED)
        elif status == CHANNEL_ERROR:
            self._fail("Realtime channel error")

    # ---- internals ----

    def _fail(self, message: str) -> None:
        with self._lock:
            self.error = message
            self._set_status(ConnectionStatus.ERROR)
            if self.monitored_jobs and self._reconnect_handle is None:
                self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        logger.info("Realtime reconnect scheduled in %ss for %d job(s)", self.reconnect_delay, len(self.monitored_jobs))
        loop = self.loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

        if loop is not None:
            self._reconnect_handle = loop.call_later(self.reconnect_delay, self._reconnect)
        else:
            timer = threading.Timer(self.reconnect_delay, self._reconnect)
            timer.daemon = True
            timer.start()
            self._reconnect_handle = timer

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _reconnect(self) -> None:
        with self._lock:
            self._reconnect_handle = None
            if self.status != ConnectionStatus.ERROR or not self.monitored_jobs:
                return
            job_ids = list(self.monitored_jobs)
        self.start_monitoring(job_ids)

    def _drop_channels(self) -> None:
        for ch in self._channels:
            ch.unsubscribe()
        self._channels = []

    def _set_status(self, status: ConnectionStatus) -> None:
        changed = status != self.status
        self.status = status
        if changed:
            self._emit()

    def _emit(self) -> None:
        snap = self.snapshot()
        for cb in list(self._listeners):
            try:
                cb(snap)
            except Exception:
                logger.exception("Realtime listener failed")
