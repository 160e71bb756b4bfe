from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Callable, Optional, Set

import httpx

from config import Settings
from .pipeline.prediction_client import (
    SUCCEEDED,
    PredictionCancelled,
    PredictionClient,
    PredictionError,
    PredictionTimeout,
    first_output_url,
)
from .pipeline.presets import Preset, build_model_input
from .pipeline.uploads import to_data_uri
from .store import DONE, ERROR, PROCESSING, JobState, JobStore, new_job_id, utc_now_iso
from .websocket import JobEvents, job_event

ClientFactory = Callable[[], PredictionClient]


class JobManager:
    """Owns the job lifecycle: one asyncio task per accepted upload.

    queued -> processing -> done | error. Each job moves to a terminal state
    exactly once; the uploaded file is removed afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        events: Optional[JobEvents] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events or JobEvents()
        self._client_factory = client_factory or self._default_client
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    def _default_client(self) -> PredictionClient:
        return PredictionClient(
            self.settings.api_token,
            self.settings.api_base,
            timeout=self.settings.http_timeout,
        )

    def start(self) -> None:
        self._stopping = asyncio.Event()

    def credential_missing(self, preset: Preset) -> bool:
        return not preset.passthrough and not self.settings.api_token

    @property
    def active_tasks(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    def create(self, preset: Preset) -> JobState:
        job = JobState(job_id=new_job_id(), preset=preset.name, created_at=utc_now_iso())
        return self.store.create(job)

    def submit(self, job: JobState, upload_path: Path, preset: Preset) -> asyncio.Task:
        task = asyncio.create_task(self.run(job.job_id, upload_path, preset), name=f"job-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _transition(self, job_id: str, **changes) -> JobState:
        job = self.store.update(job_id, **changes)
        self.events.publish(job_id, job_event(job))
        return job

    async def run(self, job_id: str, upload_path: Path, preset: Preset) -> None:
        logging.info("Job %s starting with preset %s", job_id, preset.name)
        try:
            self._transition(job_id, status=PROCESSING, started_at=utc_now_iso())
            if preset.passthrough:
                result = await self._copy_through(job_id, upload_path)
            else:
                result = await self._stylize(job_id, upload_path, preset)
            self._transition(job_id, status=DONE, finished_at=utc_now_iso(), filename=result.name)
            logging.info("Job %s done: %s", job_id, result.name)
        except asyncio.CancelledError:
            self._fail(job_id, "job cancelled at shutdown")
            raise
        except Exception as exc:
            logging.exception("Job %s failed: %s", job_id, exc)
            self._fail(job_id, str(exc))
        finally:
            self._discard_upload(job_id, upload_path)

    def _fail(self, job_id: str, message: str) -> None:
        try:
            self._transition(job_id, status=ERROR, finished_at=utc_now_iso(), error=message)
        except Exception:
            logging.exception("Job %s could not record its error state", job_id)
            # the terminal event goes out even when the record is unwritable
            self.events.publish(job_id, {"event": "error", "jobId": job_id, "status": ERROR, "message": message})

    async def _copy_through(self, job_id: str, upload_path: Path) -> Path:
        self.settings.results_dir.mkdir(parents=True, exist_ok=True)
        dest = self.settings.results_dir / f"{job_id}{upload_path.suffix}"
        await asyncio.to_thread(shutil.copyfile, upload_path, dest)
        return dest

    async def _stylize(self, job_id: str, upload_path: Path, preset: Preset) -> Path:
        async with self._client_factory() as client:
            image_uri = await asyncio.to_thread(to_data_uri, upload_path)
            prediction = await client.create_prediction(
                self.settings.model_version, build_model_input(preset, image_uri)
            )
            prediction_id = prediction["id"]
            self.store.update(job_id, prediction_id=prediction_id)
            logging.info("Job %s submitted prediction %s", job_id, prediction_id)
            if prediction.get("status") != SUCCEEDED:
                prediction = await self._await_prediction(client, prediction_id)
            url = first_output_url(prediction)
            return await client.download(url, self.settings.results_dir, job_id)

    async def _await_prediction(self, client: PredictionClient, prediction_id: str) -> dict:
        try:
            return await client.wait_for_prediction(
                prediction_id,
                interval=self.settings.poll_interval,
                timeout=self.settings.poll_timeout,
                stop_event=self._stopping,
            )
        except PredictionCancelled:
            await self._cancel_remote(client, prediction_id)
            raise
        except PredictionTimeout:
            if self.settings.cancel_on_timeout:
                await self._cancel_remote(client, prediction_id)
            raise

    async def _cancel_remote(self, client: PredictionClient, prediction_id: str) -> None:
        try:
            await client.cancel_prediction(prediction_id)
            logging.info("Cancelled prediction %s", prediction_id)
        except (PredictionError, httpx.HTTPError) as exc:
            logging.warning("Could not cancel prediction %s: %s", prediction_id, exc)

    def _discard_upload(self, job_id: str, upload_path: Path) -> None:
        try:
            upload_path.unlink(missing_ok=True)
        except OSError as exc:
            logging.warning("Job %s could not remove upload %s: %s", job_id, upload_path, exc)

    async def shutdown(self) -> None:
        self._stopping.set()
        pending = list(self._tasks)
        if not pending:
            return
        logging.info("Waiting for %d running job(s)", len(pending))
        _done, still_running = await asyncio.wait(pending, timeout=self.settings.shutdown_grace)
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
