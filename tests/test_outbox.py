import asyncio
import uuid
from datetime import datetime, timezone

from app.modules.events.outbox import (
    MAX_PUBLISH_ATTEMPTS,
    MEDIA_ASSET_PROCESSED,
    EventOutbox,
    OutboxRepository,
    publish_backoff_seconds,
    relay_batch,
)
from app.platform.ports.event_bus import MEDIA_TOPIC


class FlushOnlySession:
    def __init__(self):
        self.flushes = 0

    async def flush(self):
        self.flushes += 1


class ClaimedRepo(OutboxRepository):
    """Real mark_sent/mark_failed over a pre-claimed batch."""

    def __init__(self, batch):
        super().__init__(FlushOnlySession())
        self.batch = batch

    async def claim_batch(self, limit=50):
        return self.batch[:limit]


class RecordingBus:
    def __init__(self, fail_keys=()):
        self.published = []
        self.fail_keys = set(fail_keys)

    async def publish(self, topic, key, value, headers=None):
        if key in self.fail_keys:
            raise ConnectionError("broker down")
        self.published.append((topic, key, value))


def _event(subject_id=None, attempts=0):
    return EventOutbox(
        id=uuid.uuid4(),
        event_type=MEDIA_ASSET_PROCESSED,
        subject_type="submission",
        subject_id=subject_id or str(uuid.uuid4()),
        payload={"storage_key": "submissions/u/a.webp"},
        occurred_at=datetime(2026, 1, 2, tzinfo=timezone.utc),
        status="processing",
        attempts=attempts,
    )


def test_envelope_shape():
    ev = _event(subject_id="abc")
    env = ev.envelope()
    assert env["event_type"] == MEDIA_ASSET_PROCESSED
    assert env["subject"] == {"type": "submission", "id": "abc"}
    assert env["payload"] == {"storage_key": "submissions/u/a.webp"}
    assert env["occurred_at"].startswith("2026-01-02")
    assert env["outbox_id"] == str(ev.id)


def test_relay_publishes_and_marks_sent():
    batch = [_event(), _event()]
    bus = RecordingBus()

    claimed = asyncio.run(relay_batch(ClaimedRepo(batch), bus))

    assert claimed == 2
    assert [ev.status for ev in batch] == ["sent", "sent"]
    assert [p[0] for p in bus.published] == [MEDIA_TOPIC, MEDIA_TOPIC]
    assert bus.published[0][1] == batch[0].subject_id


def test_publish_failure_is_rescheduled():
    ok, bad = _event(), _event()
    bus = RecordingBus(fail_keys={bad.subject_id})

    asyncio.run(relay_batch(ClaimedRepo([bad, ok]), bus))

    assert ok.status == "sent"
    assert bad.status == "pending"
    assert bad.attempts == 1
    assert "broker down" in bad.last_error
    assert bad.next_attempt_at > datetime.now(timezone.utc)


def test_event_goes_dead_after_max_attempts():
    ev = _event(attempts=MAX_PUBLISH_ATTEMPTS - 1)
    bus = RecordingBus(fail_keys={ev.subject_id})

    asyncio.run(relay_batch(ClaimedRepo([ev]), bus))

    assert ev.status == "dead"
    assert ev.attempts == MAX_PUBLISH_ATTEMPTS


def test_empty_batch():
    assert asyncio.run(relay_batch(ClaimedRepo([]), RecordingBus())) == 0


def test_publish_backoff_caps_at_a_minute():
    assert [publish_backoff_seconds(n) for n in (1, 2, 5)] == [2, 4, 32]
    assert publish_backoff_seconds(40) == 60
