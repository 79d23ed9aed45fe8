import asyncio
import io
import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from app.core.config import settings
from app.core.security import Principal, get_principal
from app.main import app
from app.modules.ingestion.jobs import IngestionJob, IngestionJobService
from app.modules.ingestion.orchestrator import IngestionOrchestrator
from app.modules.media import router as media_router
from app.modules.media.keys import MediaRole
from app.modules.media.presign import UploadAuthorizationIssuer
from app.platform.ports.record_store import MediaAssetRef
from conftest import FakeSession, make_image

client = TestClient(app)
API = settings.API_PREFIX
USER_ID = uuid.uuid4()


class QueuedJobs:
    def __init__(self):
        self.jobs = []

    async def enqueue(self, *, public_url, role, owner_id, submission_id, replaces_key=None):
        job = IngestionJob(
            id=uuid.uuid4(), public_url=public_url, role=role.value, owner_id=owner_id,
            submission_id=submission_id, replaces_key=replaces_key, status="pending",
        )
        self.jobs.append(job)
        return job


class FakeJobs:
    def __init__(self):
        self.queued = []

    async def enqueue(self, **job):
        self.queued.append(job)
        return SimpleNamespace(id=uuid.uuid4(), status="pending")


@pytest.fixture
def api(storage, records, media):
    jobs = FakeJobs()
    media.users.add(user_id=USER_ID)
    app.dependency_overrides[get_principal] = lambda: Principal(user_id=USER_ID, scopes=["media:write"])
    app.dependency_overrides[media_router.get_issuer] = lambda: UploadAuthorizationIssuer(
        storage_factory=lambda: storage, record_store=records,
    )
    app.dependency_overrides[media_router.svc] = lambda: media
    app.dependency_overrides[media_router.jobs] = lambda: jobs
    yield SimpleNamespace(storage=storage, records=records, media=media, jobs=jobs)
    app.dependency_overrides.clear()


def test_health():
    r = client.get(f"{API}/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_request_id_is_echoed_or_generated():
    assert client.get(f"{API}/health", headers={"x-request-id": "abc123"}).headers["x-request-id"] == "abc123"
    assert len(client.get(f"{API}/health").headers["x-request-id"]) == 12


def test_presign_returns_credential(api):
    r = client.post(f"{API}/upload/presign", json={"fileType": "image/png", "fileSize": 1234, "type": "profile"})
    assert r.status_code == 200, r.text
    body = r.json()
    assert set(body) >= {"presignedUrl", "publicUrl", "expiresIn"}
    assert body["expiresIn"] == settings.PRESIGN_EXPIRES_SECONDS
    assert body["publicUrl"].startswith(f"{settings.PUBLIC_BASE_URL}/profiles/{USER_ID}/")


def test_presign_errors_map_to_status_codes(api):
    too_big = client.post(f"{API}/upload/presign", json={"fileType": "image/png", "fileSize": 11_000_000})
    assert too_big.status_code == 400

    no_scope = client.post(f"{API}/upload/presign", json={"fileType": "image/png", "fileSize": 10, "type": "progression"})
    assert no_scope.status_code == 400

    sid = uuid.uuid4()
    missing = client.post(f"{API}/upload/presign", json={
        "fileType": "image/png", "fileSize": 10, "type": "reference", "submissionId": str(sid),
    })
    assert missing.status_code == 404

    api.records.submission_owners[sid] = uuid.uuid4()
    forbidden = client.post(f"{API}/upload/presign", json={
        "fileType": "image/png", "fileSize": 10, "type": "reference", "submissionId": str(sid),
    })
    assert forbidden.status_code == 403
    assert api.storage.presigned == []


def test_process_enqueues_job(api):
    sid = uuid.uuid4()
    url = f"{settings.PUBLIC_BASE_URL}/submissions/{USER_ID}/raw.jpg"
    r = client.post(f"{API}/upload/process", json={"publicUrl": url, "type": "submission", "submissionId": str(sid)})
    assert r.status_code == 202, r.text
    assert r.json()["status"] == "pending"
    assert api.jobs.queued[0]["public_url"] == url
    assert api.jobs.queued[0]["owner_id"] == USER_ID


def test_process_rejects_foreign_urls(api):
    r = client.post(f"{API}/upload/process", json={"publicUrl": "https://elsewhere.test/x.jpg", "type": "profile"})
    assert r.status_code == 400
    assert api.jobs.queued == []


def test_process_rejects_another_owners_object(api):
    victim_url = f"{settings.PUBLIC_BASE_URL}/profiles/{uuid.uuid4()}/live.webp"
    r = client.post(f"{API}/upload/process", json={"publicUrl": victim_url, "type": "profile"})
    assert r.status_code == 403
    assert api.jobs.queued == []


def test_process_for_unknown_submission_is_404(api):
    app.dependency_overrides[media_router.jobs] = lambda: IngestionJobService(
        FakeSession(), repo=QueuedJobs(), records=api.records,
    )
    url = f"{settings.PUBLIC_BASE_URL}/submissions/{USER_ID}/raw.jpg"
    r = client.post(f"{API}/upload/process", json={"publicUrl": url, "type": "submission", "submissionId": str(uuid.uuid4())})
    assert r.status_code == 404


def test_presign_then_process_replaces_existing_profile_image(api):
    ref = MediaAssetRef(USER_ID, MediaRole.PROFILE_IMAGE)
    live_key = f"profiles/{USER_ID}/live.webp"
    api.storage.objects[live_key] = (make_image("WEBP"), "image/webp")
    api.records.set_key(ref, live_key)
    queued = QueuedJobs()
    app.dependency_overrides[media_router.jobs] = lambda: IngestionJobService(
        FakeSession(), repo=queued, records=api.records,
    )

    presigned = client.post(f"{API}/upload/presign", json={"fileType": "image/png", "fileSize": 2048, "type": "profile"}).json()
    # the client PUTs the bytes to the signed URL
    api.storage.objects[presigned["key"]] = (make_image("PNG", size=(300, 300)), "image/png")
    accepted = client.post(f"{API}/upload/process", json={"publicUrl": presigned["publicUrl"], "type": "profile"})
    assert accepted.status_code == 202, accepted.text

    orchestrator = IngestionOrchestrator(storage_factory=lambda: api.storage, record_store=api.records)
    result = asyncio.run(orchestrator.run(queued.jobs[0].to_request()))

    assert result.success and not result.skipped
    assert api.records.key_for(ref) == result.storage_key
    assert live_key not in api.storage.objects
    assert presigned["key"] not in api.storage.objects
    assert result.storage_key in api.storage.objects


def test_sync_upload(api):
    files = {"file": ("art.png", make_image("PNG", size=(320, 240)), "image/png")}
    r = client.post(f"{API}/upload", files=files, data={"type": "submission"})
    assert r.status_code == 200, r.text
    body = r.json()
    key = body["publicUrl"][len(settings.PUBLIC_BASE_URL) + 1:]
    assert key in api.storage.objects
    assert body["format"] == "webp"


def test_sync_upload_validation(api):
    bad_type = client.post(f"{API}/upload", files={"file": ("a.bmp", b"BM..", "image/bmp")}, data={"type": "submission"})
    assert bad_type.status_code == 400

    bad_kind = client.post(f"{API}/upload", files={"file": ("a.png", make_image("PNG"), "image/png")}, data={"type": "avatar"})
    assert bad_kind.status_code == 400

    garbage = client.post(f"{API}/upload", files={"file": ("a.png", b"not png", "image/png")}, data={"type": "profile"})
    assert garbage.status_code == 400


def test_replace_and_delete_submission(api):
    sub = api.media.submissions.add(USER_ID)
    files = {"file": ("new.jpg", make_image("JPEG"), "image/jpeg")}

    replaced = client.post(f"{API}/submissions/{sub.id}/image", files=files)
    assert replaced.status_code == 200, replaced.text
    assert replaced.json()["publicUrl"].endswith(sub.image_key)

    deleted = client.delete(f"{API}/submissions/{sub.id}")
    assert deleted.status_code == 200
    assert deleted.json()["deleted"] == 1
    assert client.delete(f"{API}/submissions/{sub.id}").status_code == 404


def test_preview(api):
    sub = api.media.submissions.add(USER_ID, image_key="submissions/x/img.png")
    api.storage.objects[sub.image_key] = (make_image("PNG", size=(500, 500)), "image/png")

    r = client.get(f"{API}/submissions/{sub.id}/preview", params={"width": 64, "height": 32})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    with Image.open(io.BytesIO(r.content)) as img:
        assert img.size == (64, 32)

    assert client.get(f"{API}/submissions/{uuid.uuid4()}/preview").status_code == 404


def test_delete_account(api):
    api.storage.objects[f"profiles/{USER_ID}/me.webp"] = (b"x", "image/webp")
    r = client.delete(f"{API}/account")
    assert r.status_code == 200
    assert r.json()["keys"] == [f"profiles/{USER_ID}/me.webp"]
