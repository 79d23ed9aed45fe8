import io
import uuid
from types import SimpleNamespace

import pytest
from PIL import Image

from app.platform.ports.object_storage import ObjectNotFound, StorageError
from app.platform.ports.record_store import RecordNotFound

BASE_URL = "https://media.test"


def make_image(fmt="PNG", size=(120, 80), color=(20, 30, 40), mode="RGB", **save_params) -> bytes:
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_params)
    return buf.getvalue()


def make_gif(size=(60, 40), frames=2) -> bytes:
    imgs = [Image.new("P", size, i * 40) for i in range(frames)]
    buf = io.BytesIO()
    imgs[0].save(buf, format="GIF", save_all=frames > 1, append_images=imgs[1:], duration=100, loop=0)
    return buf.getvalue()


class FakeStorage:
    """Dict-backed blob store; put ``"put"``/``"get"``/``"delete"``/``"list"`` in ``fail`` to inject errors."""

    def __init__(self, events=None):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.fail: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.events = events if events is not None else []
        self.presigned: list[tuple] = []

    def _check(self, op, key):
        self.calls.append((op, key))
        self.events.append((op, key))
        if op in self.fail:
            raise StorageError(f"injected {op} failure for {key}")

    def put_bytes(self, key, data, content_type):
        self._check("put", key)
        self.objects[key] = (data, content_type)

    def get_bytes(self, key):
        self._check("get", key)
        if key not in self.objects:
            raise ObjectNotFound(key)
        return self.objects[key][0]

    def delete(self, key):
        self._check("delete", key)
        self.objects.pop(key, None)

    def list_keys(self, prefix):
        self._check("list", prefix)
        return sorted(k for k in self.objects if k.startswith(prefix))

    def presign_put(self, key, content_type, content_length, expires_seconds=300):
        self._check("presign", key)
        self.presigned.append((key, content_type, content_length, expires_seconds))
        return f"https://signed.test/{key}?ct={content_type}&len={content_length}&exp={expires_seconds}"

    def presign_download(self, key, expires_seconds=900):
        return f"https://signed.test/{key}"


class FakeRecordStore:
    def __init__(self, events=None):
        self.keys: dict[tuple, str | None] = {}
        self.patches: list[tuple] = []
        self.protection: dict[uuid.UUID, object] = {}
        self.submission_owners: dict[uuid.UUID, uuid.UUID] = {}
        self.fail_update = False
        self.calls: list[str] = []
        self.events = events if events is not None else []

    @staticmethod
    def _slot(ref):
        return (ref.role, ref.owner_id, ref.submission_id)

    def set_key(self, ref, key):
        self.keys[self._slot(ref)] = key

    def key_for(self, ref):
        return self.keys.get(self._slot(ref))

    async def get_media_key(self, ref):
        self.calls.append("get_media_key")
        if self._slot(ref) not in self.keys:
            raise RecordNotFound(f"no record for {ref}")
        return self.keys[self._slot(ref)]

    async def update_media_asset(self, ref, patch):
        self.calls.append("update_media_asset")
        self.events.append(("update", patch.storage_key))
        if self.fail_update:
            raise RuntimeError("database unavailable")
        if self._slot(ref) not in self.keys:
            raise RecordNotFound(f"no record for {ref}")
        self.keys[self._slot(ref)] = patch.storage_key
        self.patches.append((ref, patch))

    async def get_protection_settings(self, owner_id):
        self.calls.append("get_protection_settings")
        return self.protection.get(owner_id)

    async def get_submission_owner(self, submission_id):
        self.calls.append("get_submission_owner")
        return self.submission_owners.get(submission_id)


class FakeSession:
    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class FakeUserRepo:
    def __init__(self):
        self.rows: dict[uuid.UUID, SimpleNamespace] = {}
        self.fail_set = False

    def add(self, user_id=None, **fields):
        row = SimpleNamespace(
            id=user_id or uuid.uuid4(),
            display_name=fields.get("display_name"),
            profile_image_key=fields.get("profile_image_key"),
            profile_image_processing_metadata=None,
            profile_image_processed_at=None,
            enable_watermark=fields.get("enable_watermark", False),
            watermark_position=fields.get("watermark_position", "bottom-right"),
            protect_from_ai=fields.get("protect_from_ai", False),
            protect_from_download=False,
        )
        self.rows[row.id] = row
        return row

    async def get(self, user_id):
        return self.rows.get(user_id)

    async def set_profile_image(self, user_id, *, key, metadata, processed_at):
        if self.fail_set:
            raise RuntimeError("database unavailable")
        u = self.rows.get(user_id)
        if not u:
            return None
        u.profile_image_key = key
        u.profile_image_processing_metadata = metadata
        u.profile_image_processed_at = processed_at
        return u

    async def delete(self, user_id):
        return self.rows.pop(user_id, None) is not None


class FakeSubmissionRepo:
    def __init__(self):
        self.rows: dict[uuid.UUID, SimpleNamespace] = {}
        self.fail_set = False

    def add(self, user_id, image_key=None, focal_point=(None, None)):
        row = SimpleNamespace(
            id=uuid.uuid4(),
            user_id=user_id,
            image_key=image_key,
            image_processing_metadata=None,
            image_processed_at=None,
            focal_point_x=focal_point[0],
            focal_point_y=focal_point[1],
        )
        self.rows[row.id] = row
        return row

    async def get(self, submission_id):
        return self.rows.get(submission_id)

    async def list_ids_for_user(self, user_id):
        return [s.id for s in self.rows.values() if s.user_id == user_id]

    async def set_image(self, submission_id, *, key, metadata, processed_at):
        if self.fail_set:
            raise RuntimeError("database unavailable")
        s = self.rows.get(submission_id)
        if not s:
            return None
        s.image_key = key
        s.image_processing_metadata = metadata
        s.image_processed_at = processed_at
        return s

    async def delete(self, submission_id):
        return self.rows.pop(submission_id, None) is not None


class FakeOutbox:
    def __init__(self):
        self.events: list[dict] = []

    async def enqueue(self, **event):
        self.events.append(event)


@pytest.fixture
def events():
    return []


@pytest.fixture
def storage(events):
    return FakeStorage(events)


@pytest.fixture
def records(events):
    return FakeRecordStore(events)


@pytest.fixture
def owner_id():
    return uuid.uuid4()


@pytest.fixture
def media(storage):
    """MediaService wired to in-memory repositories."""
    from app.modules.media.service import MediaService
    session = FakeSession()
    service = MediaService(
        session,
        storage=storage,
        users=FakeUserRepo(),
        submissions=FakeSubmissionRepo(),
        outbox=FakeOutbox(),
    )
    return service
