from __future__ import annotations

import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from scrapedeck.api.deps import get_user_id, load_owned
from scrapedeck.db.session import SessionLocal, get_db
from scrapedeck.models import Job
from scrapedeck.services.realtime import RealtimeJobMonitor
from scrapedeck.services.repository import Repository, row_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def _parse_ids(raw: str | None) -> list[int]:
    ids: list[int] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit():
            ids.append(int(part))
    return ids


@router.get("/jobs/{job_id}")
def job_snapshot(
    job_id: int,
    request: Request,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_user_id),
):
    """
    Live state from the app monitor; falls back to the latest persisted
    execution/progress rows when the monitor has not seen the job.
    """
    repo = Repository(db)
    job = load_owned(repo.jobs, job_id, user_id)

    monitor: RealtimeJobMonitor | None = getattr(request.app.state, "monitor", None)
    if monitor is not None:
        snap = monitor.snapshot(job_id)
        if snap["execution"] is not None or snap["progress"] is not None:
            return {"ok": True, "source": "live", "job_status": job.status, **snap}

    executions = repo.executions.list(limit=1, job_id=job_id)
    progress = repo.progress.list(limit=1, job_id=job_id)
    return {
        "ok": True,
        "source": "database",
        "job_status": job.status,
        "status": monitor.status.value if monitor is not None else "disconnected",
        "error": None,
        "job_id": job_id,
        "execution": row_to_dict(executions[0]) if executions else None,
        "progress": row_to_dict(progress[0]) if progress else None,
    }


def _owned_job_ids(user_id: str, job_ids: list[int]) -> set[int]:
    if not job_ids:
        return set()
    db = SessionLocal()
    try:
        rows = db.query(Job.id).filter(Job.user_id == user_id, Job.id.in_(job_ids)).all()
        return {r[0] for r in rows}
    finally:
        db.close()


@router.websocket("/ws")
async def monitor_socket(websocket: WebSocket):
    """
    Streams the caller's monitor snapshots. The caller comes from the
    X-User-Id header (or `user_id` query for browsers); only rows of jobs
    they own are streamed. Query `job_ids=1,2` narrows the stream; the client
    may send {"action": "subscribe"|"unsubscribe", "job_id": N}.
    """
    user_id = (websocket.headers.get("x-user-id") or websocket.query_params.get("user_id") or "").strip()
    if not user_id:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    monitor = RealtimeJobMonitor(loop=loop, user_id=user_id)
    # feed callbacks arrive on request worker threads
    remove = monitor.add_listener(lambda snap: loop.call_soon_threadsafe(queue.put_nowait, snap))
    requested = _parse_ids(websocket.query_params.get("job_ids"))
    owned = await run_in_threadpool(_owned_job_ids, user_id, requested)
    job_ids = [j for j in requested if j in owned]
    if requested and not job_ids:
        await websocket.send_json({"error": "Job not found"})
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        remove()
        return
    monitor.start_monitoring(job_ids or None)

    async def send_snapshots() -> None:
        await websocket.send_json(monitor.snapshot())
        while True:
            await websocket.send_json(await queue.get())

    async def receive_commands() -> None:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
                action, job_id = msg.get("action"), int(msg["job_id"])
            except (ValueError, KeyError, TypeError, AttributeError):
                await websocket.send_json({"error": "Expected {\"action\": ..., \"job_id\": N}"})
                continue
            if action == "subscribe":
                if job_id not in await run_in_threadpool(_owned_job_ids, user_id, [job_id]):
                    await websocket.send_json({"error": "Job not found", "job_id": job_id})
                    continue
                monitor.subscribe_to_job(job_id)
            elif action == "unsubscribe":
                monitor.unsubscribe_from_job(job_id)
            await websocket.send_json(monitor.snapshot(job_id))

    tasks = [asyncio.create_task(send_snapshots()), asyncio.create_task(receive_commands())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in done:
            exc = t.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("Realtime socket closed with error: %s", exc)
    finally:
        for t in tasks:
            t.cancel()
        remove()
        monitor.stop_monitoring()
