import asyncio
import uuid

from app.modules.ingestion.jobs import IngestionJob, IngestionJobService, _settle, process_batch, retry_backoff_seconds
from app.modules.ingestion.result import ErrorKind, IngestionResult, IngestionState, StepError
from app.modules.media.keys import MediaRole
from app.platform.ports.record_store import MediaAssetRef
from conftest import BASE_URL, FakeRecordStore, FakeSession


class RecordingRepo:
    def __init__(self):
        self.done = []
        self.notes = []
        self.failed = []

    async def mark_done(self, job, note=None):
        self.done.append(job)
        self.notes.append(note)

    async def mark_failed(self, job, error, *, permanent=False):
        job.attempts = (job.attempts or 0) + 1
        self.failed.append((job, error, permanent))


def _job():
    return IngestionJob(
        public_url="https://media.test/profiles/u/a.png",
        role="profile",
        owner_id=uuid.uuid4(),
        submission_id=None,
        attempts=0,
    )


def _failure(kind):
    return IngestionResult(success=False, state=IngestionState.FAILED, error=StepError(kind, "fetch", "x"))


def test_job_maps_to_request():
    job = _job()
    request = job.to_request()
    assert request.role == MediaRole.PROFILE_IMAGE
    assert request.public_url == job.public_url
    assert request.ref.owner_id == job.owner_id


def test_backoff_grows_and_caps():
    assert [retry_backoff_seconds(n) for n in (1, 2, 3)] == [2, 4, 8]
    assert retry_backoff_seconds(50) == 300


def test_success_marks_done():
    repo, job = RecordingRepo(), _job()
    asyncio.run(_settle(repo, job, IngestionResult(success=True, state=IngestionState.OLD_RETIRED)))
    assert repo.done == [job]


def test_transient_failures_are_retried():
    for kind in (ErrorKind.SOURCE_UNREADABLE, ErrorKind.ALREADY_RUNNING, ErrorKind.DEADLINE_EXCEEDED, ErrorKind.UPLOAD_FAILED):
        repo = RecordingRepo()
        asyncio.run(_settle(repo, _job(), _failure(kind)))
        assert repo.failed[0][2] is False


def test_permanent_failures_are_not_retried():
    for kind in (ErrorKind.UNREADABLE_IMAGE, ErrorKind.NOT_FOUND, ErrorKind.INCONSISTENCY):
        repo = RecordingRepo()
        asyncio.run(_settle(repo, _job(), _failure(kind)))
        assert repo.failed[0][2] is True


class BatchRepo(RecordingRepo):
    def __init__(self, batch):
        super().__init__()
        self.batch = batch

    async def claim_batch(self, limit=10):
        return self.batch[:limit]


class ScriptedOrchestrator:
    def __init__(self, results):
        self.results = list(results)
        self.seen = []

    async def run(self, request, deadline=None):
        self.seen.append((request, deadline))
        return self.results.pop(0)


def test_process_batch_runs_each_job_with_a_deadline():
    jobs = [_job(), _job()]
    repo = BatchRepo(jobs)
    orchestrator = ScriptedOrchestrator([
        IngestionResult(success=True, state=IngestionState.OLD_RETIRED),
        _failure(ErrorKind.UPLOAD_FAILED),
    ])
    commits = []

    async def commit():
        commits.append(1)

    claimed = asyncio.run(process_batch(repo, orchestrator, commit))

    assert claimed == 2
    assert repo.done == [jobs[0]]
    assert repo.failed[0][0] is jobs[1]
    assert all(deadline is not None for _, deadline in orchestrator.seen)
    # once after the claim, once per job
    assert len(commits) == 3


def test_process_batch_with_nothing_due():
    async def commit():
        pass

    assert asyncio.run(process_batch(BatchRepo([]), ScriptedOrchestrator([]), commit)) == 0


def test_success_with_leftovers_keeps_a_note():
    repo, job = RecordingRepo(), _job()
    result = IngestionResult(
        success=True, state=IngestionState.RECORD_UPDATED,
        warnings=[StepError(ErrorKind.PARTIAL_FAILURE, "retire", "profiles/u/a.png left in storage: timeout")],
    )

    asyncio.run(_settle(repo, job, result))

    assert repo.done == [job]
    assert "profiles/u/a.png left in storage" in repo.notes[0]


class QueueRepo:
    def __init__(self):
        self.jobs = []

    async def enqueue(self, *, public_url, role, owner_id, submission_id, replaces_key=None):
        job = IngestionJob(
            id=uuid.uuid4(), public_url=public_url, role=role.value, owner_id=owner_id,
            submission_id=submission_id, replaces_key=replaces_key, status="pending", attempts=0,
        )
        self.jobs.append(job)
        return job


def _service(records):
    session = FakeSession()
    return IngestionJobService(session, repo=QueueRepo(), records=records, public_base_url=BASE_URL), session


def test_enqueue_remembers_the_live_key_being_replaced():
    records, owner = FakeRecordStore(), uuid.uuid4()
    records.set_key(MediaAssetRef(owner, MediaRole.PROFILE_IMAGE), f"profiles/{owner}/live.webp")
    service, session = _service(records)

    job = asyncio.run(service.enqueue(
        public_url=f"{BASE_URL}/profiles/{owner}/upload.png", role=MediaRole.PROFILE_IMAGE, owner_id=owner,
    ))

    assert job.replaces_key == f"profiles/{owner}/live.webp"
    assert job.to_request().replaces_key == f"profiles/{owner}/live.webp"
    assert session.commits == 1


def test_enqueue_without_a_previous_image():
    records, owner = FakeRecordStore(), uuid.uuid4()
    records.set_key(MediaAssetRef(owner, MediaRole.PROFILE_IMAGE), None)
    service, _ = _service(records)

    job = asyncio.run(service.enqueue(
        public_url=f"{BASE_URL}/profiles/{owner}/upload.png", role=MediaRole.PROFILE_IMAGE, owner_id=owner,
    ))

    assert job.replaces_key is None


def test_enqueue_when_record_already_points_at_the_upload():
    records, owner, sid = FakeRecordStore(), uuid.uuid4(), uuid.uuid4()
    key = f"submissions/{owner}/upload.jpg"
    records.set_key(MediaAssetRef(owner, MediaRole.SUBMISSION_IMAGE, sid), key)
    service, _ = _service(records)

    job = asyncio.run(service.enqueue(
        public_url=f"{BASE_URL}/{key}", role=MediaRole.SUBMISSION_IMAGE, owner_id=owner, submission_id=sid,
    ))

    assert job.replaces_key is None


def test_enqueue_for_a_missing_record_queues_nothing():
    service, session = _service(FakeRecordStore())

    job = asyncio.run(service.enqueue(
        public_url=f"{BASE_URL}/submissions/x/upload.jpg", role=MediaRole.SUBMISSION_IMAGE,
        owner_id=uuid.uuid4(), submission_id=uuid.uuid4(),
    ))

    assert job is None
    assert service.repo.jobs == []
    assert session.commits == 0
