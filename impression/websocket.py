from __future__ import annotations

import asyncio
from typing import Dict, Set

from fastapi import WebSocket, WebSocketDisconnect

from .store import JobState, JobStore


class JobEvents:
    """Fans job events out to per-subscriber queues, keyed by job id."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = {}

    def subscribe(self, job_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, set()).add(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(job_id)
        if not queues:
            return
        queues.discard(queue)
        if not queues:
            self._subscribers.pop(job_id, None)

    def publish(self, job_id: str, message: dict) -> None:
        for queue in list(self._subscribers.get(job_id, ())):
            queue.put_nowait(message)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))


def job_event(job: JobState) -> dict:
    if job.status == "done":
        return {"event": "done", "jobId": job.job_id, "status": job.status, "filename": job.filename}
    if job.status == "error":
        return {"event": "error", "jobId": job.job_id, "status": job.status, "message": job.error}
    return {"event": "status", "jobId": job.job_id, "status": job.status}


async def stream_job_events(websocket: WebSocket, events: JobEvents, store: JobStore, job_id: str) -> None:
    # subscribe before reading the snapshot so no transition slips between the two
    queue = events.subscribe(job_id)
    job = store.get(job_id)
    try:
        await websocket.accept()
        if job is None:
            await websocket.send_json({"event": "error", "jobId": job_id, "message": "job not found"})
            return
        await websocket.send_json({"event": "status", "jobId": job.job_id, "status": job.status})
        if job.is_terminal:
            await websocket.send_json(job_event(job))
            return
        while True:
            message = await queue.get()
            await websocket.send_json(message)
            if message.get("event") in ("done", "error"):
                return
    except WebSocketDisconnect:
        return
    finally:
        events.unsubscribe(job_id, queue)
        await _close_quietly(websocket)


async def _close_quietly(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except (RuntimeError, WebSocketDisconnect):
        # already closed by the client
        pass
