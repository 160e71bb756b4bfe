from fastapi.testclient import TestClient

from conftest import FakeReplicate, make_settings, wait_for_job
from impression.main import create_app


def _drain(ws):
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message["event"] in ("done", "error"):
            return messages


def test_unknown_job_gets_error_event(client):
    with client.websocket_connect("/ws/jobs/nope") as ws:
        assert ws.receive_json() == {"event": "error", "jobId": "nope", "message": "job not found"}


def test_finished_job_gets_snapshot_then_terminal_event(client, jpeg_bytes):
    job_id = client.post(
        "/v1/impression", files={"image": ("a.jpg", jpeg_bytes, "image/jpeg")}, data={"preset": "Original"}
    ).json()["jobId"]
    wait_for_job(client, job_id)

    with client.websocket_connect(f"/ws/jobs/{job_id}") as ws:
        messages = _drain(ws)
    assert messages[0] == {"event": "status", "jobId": job_id, "status": "done"}
    assert messages[-1]["event"] == "done"
    assert messages[-1]["filename"] == f"{job_id}.jpg"


def test_live_job_streams_until_done(tmp_path, jpeg_bytes):
    settings = make_settings(tmp_path, poll_interval=0.05)
    fake = FakeReplicate(statuses=("processing", "processing", "processing", "succeeded"))
    app = create_app(settings, client_factory=fake.client_factory(settings))
    with TestClient(app) as client:
        job_id = client.post(
            "/v1/impression", files={"image": ("a.jpg", jpeg_bytes, "image/jpeg")}, data={"preset": "m"}
        ).json()["jobId"]
        with client.websocket_connect(f"/ws/jobs/{job_id}") as ws:
            messages = _drain(ws)

    assert messages[0]["event"] == "status"
    assert messages[-1] == {"event": "done", "jobId": job_id, "status": "done", "filename": f"{job_id}.png"}
    assert app.state.jobs.events.subscriber_count(job_id) == 0
