from __future__ import annotations

import asyncio
import time

import pytest
from fastapi.testclient import TestClient
from filelock import FileLock

from apps.api.app_factory import RUNNER_LOCK_NAME, create_app
from apps.common.settings import AppSettings
from apps.workers.launcher import InProcessLauncher
from services.jobs.models import Job, JobStatus
from services.jobs.store import new_job_id
from services.quota.guard import QuotaGuard

TERMINAL = ("ready", "failed")


class RefusingLauncher:
    async def launch(self, **kwargs):
        raise RuntimeError("queue unavailable")


class BrokenCountStore:
    def count(self, **kwargs):
        raise OSError("disk unavailable")


class SlowClassifier:
    def __init__(self, inner, delay_s):
        self.inner = inner
        self.delay_s = delay_s

    async def classify(self, text, lang):
        await asyncio.sleep(self.delay_s)
        return await self.inner.classify(text, lang)


@pytest.fixture
def make_client(tmp_path, job_store, build_orchestrator):
    def factory(*, launcher=None, quota=None, recover_on_startup=False, **settings_kw):
        # polling helpers would trip the per-IP limiter
        settings_kw.setdefault("rate_limit_enabled", False)
        settings = AppSettings(data_dir=tmp_path, **settings_kw)
        if launcher is None:
            orch, _, _ = build_orchestrator()
            launcher = InProcessLauncher(orch)
        app = create_app(
            store=job_store,
            launcher=launcher,
            settings=settings,
            quota=quota,
            recover_on_startup=recover_on_startup,
        )
        return TestClient(app, raise_server_exceptions=False)

    return factory


def _submit(client, image, *, user="u1", headers=None, **data):
    h = {"x-user-id": user}
    h.update(headers or {})
    return client.post("/jobs", files={"image": ("shot.png", image, "image/png")}, data=data, headers=h)


def _wait_terminal(client, job_id, *, user="u1", timeout_s=5.0):
    deadline = time.monotonic() + timeout_s
    while True:
        r = client.get(f"/jobs/{job_id}", headers={"x-user-id": user})
        assert r.status_code == 200
        body = r.json()
        if body["status"] in TERMINAL or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


def _seed_ready(store, owner, n):
    for _ in range(n):
        store.create(Job(job_id=new_job_id(), owner_id=owner, status=JobStatus.READY, type="note"))


def test_event_screenshot_end_to_end(make_client, png_bytes):
    with make_client() as client:
        r = _submit(client, png_bytes, wantThumb="true", source="share")
        assert r.status_code == 202
        body = r.json()
        assert body["status"] == "received"

        job = _wait_terminal(client, body["jobId"])

    assert job["status"] == "ready"
    assert job["type"] == "event"
    assert job["fields"]["date"] == "2025-01-10"
    assert job["fields"]["location"] == "Cairo"
    assert job["source"] == "share"
    assert job["thumb"] == "dGh1bWI="
    assert job["isFavorite"] is False
    assert job["action"]["applied"] is False
    assert "error" not in job
    assert "ocrText" not in job


def test_blank_image_ends_failed_no_text(make_client, job_store, build_orchestrator, png_bytes):
    orch, _, clf = build_orchestrator(ocr_text="")
    with make_client(launcher=InProcessLauncher(orch)) as client:
        job_id = _submit(client, png_bytes).json()["jobId"]
        job = _wait_terminal(client, job_id)

    assert job["status"] == "failed"
    assert job["error"]["code"] == "no_text_detected"
    assert clf.calls == []
    assert job_store.history[job_id] == ["received", "ocr_in_progress", "failed"]


def test_limit_reached_creates_no_job(make_client, job_store, png_bytes):
    _seed_ready(job_store, "u1", 50)
    with make_client() as client:
        r = _submit(client, png_bytes)
        arabic = _submit(client, png_bytes, headers={"accept-language": "ar-EG"})

    assert r.status_code == 429
    assert r.json()["error"] == "limit_reached"
    assert r.json()["retryable"] is False
    assert "(50)" in r.json()["message"]
    assert arabic.json()["message"] != r.json()["message"]
    assert job_store.count(owner_id="u1") == 50


def test_monthly_limit_from_settings(make_client, job_store, png_bytes):
    _seed_ready(job_store, "u1", 2)
    with make_client(monthly_limit=3) as client:
        r = _submit(client, png_bytes)
        assert r.status_code == 202
        _wait_terminal(client, r.json()["jobId"])
        check = client.get("/jobs/check-limit", headers={"x-user-id": "u1"}).json()
        assert check["allowed"] is False
        assert check["remaining"] == 0
        assert _submit(client, png_bytes).status_code == 429


def test_validation_errors(make_client, make_image, png_bytes):
    with make_client(max_upload_bytes=1024) as client:
        r = client.post("/jobs", files={"image": ("shot.png", png_bytes, "image/png")})
        assert (r.status_code, r.json()["error"]) == (400, "missing_user_id")

        r = client.post("/jobs", data={"wantThumb": "true"}, headers={"x-user-id": "u1"})
        assert (r.status_code, r.json()["error"]) == (400, "missing_image")

        r = client.post("/jobs", files={"image": ("notes.txt", b"hello world", "text/plain")}, headers={"x-user-id": "u1"})
        assert (r.status_code, r.json()["error"]) == (400, "invalid_image")

        r = _submit(client, b"not an image at all")
        assert (r.status_code, r.json()["error"]) == (400, "invalid_image")

        r = _submit(client, make_image("BMP", size=(8, 8)))
        assert (r.status_code, r.json()["error"]) == (400, "invalid_image")

        r = _submit(client, b"\x00" * 2048)
        assert (r.status_code, r.json()["error"]) == (413, "file_too_large")


def test_maintenance_mode_is_retryable_503(make_client, png_bytes):
    with make_client(maintenance_mode=True) as client:
        r = _submit(client, png_bytes)
        missing_user = client.post("/jobs", files={"image": ("shot.png", png_bytes, "image/png")})

    assert r.status_code == 503
    assert r.json() == {
        "error": "maintenance_mode",
        "message": "Service is under maintenance, please try again later",
        "retryable": True,
    }
    assert missing_user.json()["error"] == "missing_user_id"


def test_quota_store_outage_fails_open_by_default(make_client, png_bytes):
    quota = QuotaGuard(BrokenCountStore(), limit=50)
    with make_client(quota=quota) as client:
        r = _submit(client, png_bytes)
        assert r.status_code == 202
        assert _wait_terminal(client, r.json()["jobId"])["status"] == "ready"


def test_quota_store_outage_with_fail_closed_is_server_error(make_client, png_bytes):
    quota = QuotaGuard(BrokenCountStore(), limit=50, fail_open=False)
    with make_client(quota=quota) as client:
        r = _submit(client, png_bytes)
    assert r.status_code == 500
    assert r.json()["error"] == "server_error"


def test_launch_failure_marks_job_failed(make_client, job_store, png_bytes):
    with make_client(launcher=RefusingLauncher()) as client:
        r = _submit(client, png_bytes)

    assert r.status_code == 500
    jobs = job_store.list_by_owner(owner_id="u1", limit=10)
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.FAILED
    assert jobs[0].error["code"] == "processing_failed"


def test_concurrent_submissions_get_distinct_ids(make_client, png_bytes):
    with make_client() as client:
        ids = {_submit(client, png_bytes).json()["jobId"] for _ in range(5)}
        for job_id in ids:
            assert _wait_terminal(client, job_id)["status"] == "ready"
    assert len(ids) == 5


def test_jobs_are_owner_scoped(make_client, png_bytes):
    with make_client() as client:
        job_id = _submit(client, png_bytes, user="alice").json()["jobId"]
        _wait_terminal(client, job_id, user="alice")

        bob = {"x-user-id": "bob"}
        assert client.get(f"/jobs/{job_id}", headers=bob).status_code == 404
        assert client.get(f"/jobs/{job_id}", headers=bob).json()["error"] == "job_not_found"
        assert client.patch(f"/jobs/{job_id}", json={"summary": "x"}, headers=bob).status_code == 404
        assert client.post(f"/jobs/{job_id}/favorite", json={"isFavorite": True}, headers=bob).status_code == 404
        assert client.delete(f"/jobs/{job_id}", headers=bob).status_code == 404
        assert client.get("/jobs/not-a-uuid", headers=bob).status_code == 404
        assert client.get(f"/jobs/{job_id}").json()["error"] == "missing_user_id"


def test_user_edits_never_touch_status(make_client, png_bytes):
    h = {"x-user-id": "u1"}
    with make_client() as client:
        job_id = _submit(client, png_bytes).json()["jobId"]
        _wait_terminal(client, job_id)

        r = client.patch(f"/jobs/{job_id}", json={"fields": {"location": "Giza"}, "summary": "Moved"}, headers=h)
        assert r.status_code == 200
        assert r.json()["success"] is True
        assert r.json()["fields"]["location"] == "Giza"
        assert r.json()["fields"]["date"] == "2025-01-10"

        for _ in range(2):
            r = client.post(f"/jobs/{job_id}/favorite", json={"isFavorite": True}, headers=h)
            assert r.json() == {"isFavorite": True}

        r = client.post(f"/jobs/{job_id}/mark-action", json={"applied": True, "type": "calendar"}, headers=h)
        assert r.json() == {"ok": True}
        r = client.post(f"/jobs/{job_id}/mark-action", json={"applied": True, "type": "teleport"}, headers=h)
        assert (r.status_code, r.json()["error"]) == (422, "validation_error")
        r = client.post(f"/jobs/{job_id}/favorite", json={}, headers=h)
        assert r.status_code == 422

        job = client.get(f"/jobs/{job_id}", headers=h).json()
        assert job["status"] == "ready"
        assert job["summary"] == "Moved"
        assert job["isFavorite"] is True
        assert job["action"]["applied"] is True
        assert job["action"]["type"] == "calendar"
        assert job["action"]["appliedAt"]

        assert client.delete(f"/jobs/{job_id}", headers=h).json() == {"ok": True}
        assert client.get(f"/jobs/{job_id}", headers=h).status_code == 404


def test_check_limit(make_client, job_store):
    _seed_ready(job_store, "u1", 3)
    with make_client(monthly_limit=3) as client:
        full = client.get("/jobs/check-limit", headers={"x-user-id": "u1"}).json()
        fresh = client.get("/jobs/check-limit", headers={"x-user-id": "u2"}).json()

    assert full["allowed"] is False
    assert full["used"] == 3
    assert full["remaining"] == 0
    assert full["resetDate"].endswith("T00:00:00+00:00")
    assert fresh["allowed"] is True
    assert fresh["remaining"] == 3


def test_startup_recovery_fails_orphans(make_client, job_store):
    orphan = job_store.create(Job(job_id=new_job_id(), owner_id="u1", status=JobStatus.AI_IN_PROGRESS))
    with make_client(recover_on_startup=True) as client:
        job = client.get(f"/jobs/{orphan.job_id}", headers={"x-user-id": "u1"}).json()

    assert job["status"] == "failed"
    assert job["error"] == {"code": "processing_failed", "message": "Processing was interrupted"}


def test_health_and_unknown_route(make_client):
    with make_client() as client:
        health = client.get("/health").json()
        missing = client.get("/nope")

    assert health["status"] == "ok"
    assert health["uptime"] >= 0
    assert missing.status_code == 404
    assert missing.json()["error"] == "not_found"


def test_wrong_method_is_not_a_validation_error(make_client):
    with make_client() as client:
        r = client.put("/health")
    assert r.status_code == 405
    assert r.json()["error"] == "method_not_allowed"
    assert r.json()["retryable"] is False


def test_second_inprocess_runner_is_refused(make_client, job_store):
    orphan = job_store.create(Job(job_id=new_job_id(), owner_id="u1", status=JobStatus.OCR_IN_PROGRESS))
    with make_client(recover_on_startup=True) as first:
        running = job_store.create(Job(job_id=new_job_id(), owner_id="u1", status=JobStatus.OCR_IN_PROGRESS))
        with pytest.raises(RuntimeError):
            with make_client(recover_on_startup=True):
                pass
        assert first.get("/health").status_code == 200

    assert job_store.get(job_id=orphan.job_id, owner_id="u1").status == JobStatus.FAILED
    # the refused process never got to fail the first one's work
    assert job_store.get(job_id=running.job_id, owner_id="u1").status == JobStatus.OCR_IN_PROGRESS

    with make_client(recover_on_startup=True):
        pass


def test_runner_lock_held_elsewhere_blocks_startup(make_client, tmp_path):
    with FileLock(str(tmp_path / RUNNER_LOCK_NAME)):
        with pytest.raises(RuntimeError):
            with make_client(recover_on_startup=True):
                pass


def test_shutdown_waits_for_running_jobs(make_client, job_store, build_orchestrator, png_bytes):
    orch, _, clf = build_orchestrator()
    orch.classifier = SlowClassifier(clf, delay_s=0.3)
    with make_client(launcher=InProcessLauncher(orch), shutdown_grace_s=5) as client:
        job_id = _submit(client, png_bytes).json()["jobId"]

    assert job_store.get(job_id=job_id, owner_id="u1").status == JobStatus.READY


def test_rate_limit_per_client_ip(make_client):
    with make_client(rate_limit_enabled=True, rate_limit_max=3, rate_limit_window_s=900) as client:
        codes = [client.get("/health").status_code for _ in range(3)]
        r = client.get("/health")
        other_route = client.get("/jobs/check-limit", headers={"x-user-id": "u1"})

    assert codes == [200, 200, 200]
    assert r.status_code == 429
    assert r.json() == {
        "error": "rate_limit_exceeded",
        "message": "Too many requests, please try again later.",
        "retryable": False,
    }
    assert 0 < int(r.headers["retry-after"]) <= 900
    assert other_route.status_code == 429


def test_cors_allowlist(make_client):
    with make_client(cors_origins=("http://localhost:8081",), cors_origin_regex=r"^picdo://.*$") as client:
        preflight = client.options(
            "/jobs",
            headers={
                "origin": "http://localhost:8081",
                "access-control-request-method": "POST",
                "access-control-request-headers": "x-user-id",
            },
        )
        app_build = client.get("/health", headers={"origin": "picdo://home"})
        stranger = client.get("/health", headers={"origin": "http://evil.example"})

    assert preflight.status_code == 200
    assert preflight.headers["access-control-allow-origin"] == "http://localhost:8081"
    assert preflight.headers["access-control-allow-credentials"] == "true"
    assert app_build.headers["access-control-allow-origin"] == "picdo://home"
    assert "access-control-allow-origin" not in stranger.headers


def test_responses_are_gzipped_when_accepted(make_client):
    with make_client(gzip_min_bytes=10) as client:
        packed = client.get("/health", headers={"accept-encoding": "gzip"})
        plain = client.get("/health", headers={"accept-encoding": "identity"})

    assert packed.headers["content-encoding"] == "gzip"
    assert packed.json()["status"] == "ok"
    assert "content-encoding" not in plain.headers
