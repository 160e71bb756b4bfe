from __future__ import annotations

import io
import json
import time
from typing import List, Optional, Sequence

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from config import Settings
from impression.main import create_app
from impression.pipeline.prediction_client import PredictionClient

API_BASE = "https://api.test/v1"
OUTPUT_URL = "https://cdn.test/out/styled.png"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        uploads_dir=tmp_path / "uploads",
        results_dir=tmp_path / "results",
        jobs_dir=tmp_path / "jobs",
        api_token="test-token",
        api_base=API_BASE,
        poll_interval=0.01,
        poll_timeout=2.0,
        shutdown_grace=0.5,
        cancel_on_timeout=True,
        token_check="request",
        job_store="memory",
        cors_origins=("*",),
    )
    values.update(overrides)
    return Settings(**values)


class FakeReplicate:
    """In-process stand-in for the prediction API and its output CDN."""

    def __init__(
        self,
        statuses: Sequence[str] = ("processing", "succeeded"),
        output: bytes = b"\x89PNG\r\n\x1a\nstyled",
        output_field=None,
        error: str = "model crashed",
        create_status: int = 201,
        download_status: int = 200,
    ) -> None:
        self.statuses: List[str] = list(statuses)
        self.output = output
        self.output_field = [OUTPUT_URL] if output_field is None else output_field
        self.error = error
        self.create_status = create_status
        self.download_status = download_status
        self.requests: List[httpx.Request] = []
        self.created: Optional[dict] = None
        self.cancelled: List[str] = []
        self.polls = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.url.host == "cdn.test":
            if self.download_status >= 400:
                return httpx.Response(self.download_status)
            return httpx.Response(200, content=self.output, headers={"content-type": "image/png"})
        if request.method == "POST" and path == "/v1/predictions":
            if self.create_status >= 400:
                return httpx.Response(self.create_status, json={"detail": "invalid version"})
            self.created = json.loads(request.content)
            return httpx.Response(201, json={"id": "pred-1", "status": "starting"})
        if request.method == "POST" and path.endswith("/cancel"):
            self.cancelled.append(path.split("/")[-2])
            return httpx.Response(200, json={"id": "pred-1", "status": "canceled"})
        if request.method == "GET" and path.startswith("/v1/predictions/"):
            self.polls += 1
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            body = {"id": path.rsplit("/", 1)[-1], "status": status, "output": None, "error": None}
            if status == "succeeded":
                body["output"] = self.output_field
            if status == "failed":
                body["error"] = self.error
            return httpx.Response(200, json=body)
        return httpx.Response(404, json={"detail": "not found"})

    def client_factory(self, settings: Settings):
        transport = httpx.MockTransport(self)

        def factory() -> PredictionClient:
            return PredictionClient(settings.api_token, settings.api_base, transport=transport)

        return factory


def wait_for_job(client: TestClient, job_id: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/v1/jobs/{job_id}").json()
        if body["status"] in ("done", "error"):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} still {body['status']}")
        time.sleep(0.02)


@pytest.fixture
def jpeg_bytes() -> bytes:
    img = Image.effect_noise((96, 96), 80).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=95)
    return buf.getvalue()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def fake_api() -> FakeReplicate:
    return FakeReplicate()


@pytest.fixture
def client(settings, fake_api):
    app = create_app(settings, client_factory=fake_api.client_factory(settings))
    with TestClient(app) as test_client:
        yield test_client
