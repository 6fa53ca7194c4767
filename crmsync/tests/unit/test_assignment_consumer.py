from __future__ import annotations

import asyncio
import json

import pytest
from redis.exceptions import ResponseError

from crmsync.services.events.consumer import OrganizationAssignmentConsumer
from crmsync.services.events.handlers import AssignmentEventHandler
from crmsync.services.events.schemas import EVENT_CREATED
from crmsync.services.telemetry import get_counters
from crmsync.tests.utils.fakes import FakeStreamRedis, seed_organization


STREAM = "crm:organization-assignments"
GROUP = "org-assignment-consumers"


def _entry(message_id: str, *, event_type: str = EVENT_CREATED, org: str = "SALES") -> tuple[bytes, dict]:
    data = {"assignmentId": f"a-{message_id}", "userId": "u-1", "organizationId": org}
    return (
        message_id.encode(),
        {
            b"eventId": f"evt-{message_id}".encode(),
            b"eventType": event_type.encode(),
            b"tenantId": b"t-1",
            b"data": json.dumps(data).encode(),
        },
    )


class _StubHandler:
    def __init__(self, outcome: str = "created", error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.events = []

    async def handle(self, event) -> str:
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.outcome


def _consumer(redis: FakeStreamRedis, handler) -> OrganizationAssignmentConsumer:
    return OrganizationAssignmentConsumer(
        redis,
        handler,
        stream=STREAM,
        group=GROUP,
        consumer_name="org-consumer-test",
        block_ms=10,
        count=10,
        error_backoff_s=0.01,
    )


@pytest.mark.asyncio
async def test_ensure_group_tolerates_existing_group() -> None:
    redis = FakeStreamRedis()
    consumer = _consumer(redis, _StubHandler())

    await consumer.ensure_group()
    await consumer.ensure_group()

    assert redis.groups == {(STREAM, GROUP)}


@pytest.mark.asyncio
async def test_ensure_group_raises_other_errors() -> None:
    class _BrokenRedis(FakeStreamRedis):
        async def xgroup_create(self, *args, **kwargs):
            raise ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value")

    with pytest.raises(ResponseError):
        await _consumer(_BrokenRedis(), _StubHandler()).ensure_group()


@pytest.mark.asyncio
@pytest.mark.parametrize("resp3", [False, True])
async def test_run_once_handles_and_acks_each_message(resp3: bool) -> None:
    redis = FakeStreamRedis([_entry("1-0"), _entry("2-0")], resp3=resp3)
    handler = _StubHandler()
    consumer = _consumer(redis, handler)

    assert await consumer.run_once() == 2

    assert [event.data.assignment_id for event in handler.events] == ["a-1-0", "a-2-0"]
    assert redis.acked == ["1-0", "2-0"]
    assert await consumer.run_once() == 0


@pytest.mark.asyncio
async def test_invalid_messages_are_acknowledged() -> None:
    redis = FakeStreamRedis()
    handler = _StubHandler()
    consumer = _consumer(redis, handler)

    outcome = await consumer.process_message("9-0", {b"eventType": EVENT_CREATED.encode(), b"tenantId": b"t-1"})

    assert outcome == "invalid"
    assert handler.events == []
    assert redis.acked == ["9-0"]
    assert get_counters()["org_assignment_events_invalid_total"] == 1


@pytest.mark.asyncio
async def test_handler_failures_are_acknowledged() -> None:
    redis = FakeStreamRedis()
    consumer = _consumer(redis, _StubHandler(error=RuntimeError("database unavailable")))

    message_id, fields = _entry("3-0")
    outcome = await consumer.process_message(message_id.decode(), fields)

    assert outcome == "error"
    assert redis.acked == ["3-0"]
    assert get_counters()["org_assignment_events_failed_total"] == 1


@pytest.mark.asyncio
async def test_run_forever_stops_when_event_is_set() -> None:
    stop_event = asyncio.Event()

    class _StoppingHandler(_StubHandler):
        async def handle(self, event) -> str:
            outcome = await super().handle(event)
            stop_event.set()
            return outcome

    redis = FakeStreamRedis([_entry("1-0")])
    handler = _StoppingHandler()
    consumer = _consumer(redis, handler)

    await asyncio.wait_for(consumer.run_forever(stop_event), timeout=5)

    assert len(handler.events) == 1
    assert redis.acked == ["1-0"]
    assert (STREAM, GROUP) in redis.groups


@pytest.mark.asyncio
async def test_consumer_applies_events_to_the_store(session_factory) -> None:
    await seed_organization(session_factory, "t-1", "SALES")
    redis = FakeStreamRedis([_entry("1-0"), _entry("2-0", org="MISSING")])
    handler = AssignmentEventHandler(session_factory, org_retry_delay_s=0)
    consumer = _consumer(redis, handler)

    messages = await consumer.read_batch()
    outcomes = [await consumer.process_message(message_id, fields) for message_id, fields in messages]

    assert outcomes == ["created", "org_missing"]
    assert redis.acked == ["1-0", "2-0"]


@pytest.mark.asyncio
async def test_reclaim_pending_takes_over_idle_messages() -> None:
    _, fields = _entry("1-0")
    pending = [
        (b"1-0", fields, 120_000),
        # Still inside the idle window of its original consumer.
        (b"2-0", _entry("2-0")[1], 1_000),
        (b"3-0", _entry("3-0")[1], 90_000),
        # Trimmed from the stream after delivery.
        (b"4-0", None, 300_000),
    ]
    redis = FakeStreamRedis(pending=pending)
    handler = _StubHandler()
    consumer = OrganizationAssignmentConsumer(
        redis,
        handler,
        stream=STREAM,
        group=GROUP,
        consumer_name="org-consumer-new",
        count=1,
        reclaim_idle_ms=60_000,
    )

    assert await consumer.reclaim_pending() == 2

    assert [event.data.assignment_id for event in handler.events] == ["a-1-0", "a-3-0"]
    assert redis.acked == ["1-0", "3-0", "4-0"]
    assert [entry[0] for entry in redis.pending] == [b"2-0"]
    # One XAUTOCLAIM page per entry with count=1, following the cursor.
    assert [start for _, start in redis.claims] == ["0-0", "3-0", "4-0"]
    assert all(name == "org-consumer-new" for name, _ in redis.claims)
    assert get_counters()["org_assignment_events_reclaimed_total"] == 2


@pytest.mark.asyncio
async def test_run_forever_reclaims_pending_messages_on_startup() -> None:
    stop_event = asyncio.Event()

    class _StoppingHandler(_StubHandler):
        async def handle(self, event) -> str:
            outcome = await super().handle(event)
            stop_event.set()
            return outcome

    _, fields = _entry("7-0")
    redis = FakeStreamRedis(pending=[(b"7-0", fields, 600_000)])
    handler = _StoppingHandler()
    consumer = _consumer(redis, handler)

    await asyncio.wait_for(consumer.run_forever(stop_event), timeout=5)

    assert [event.data.assignment_id for event in handler.events] == ["a-7-0"]
    assert redis.acked == ["7-0"]
    assert redis.reads == 0


@pytest.mark.asyncio
async def test_reclaim_runs_again_only_after_the_interval() -> None:
    now = [100.0]
    stop_event = asyncio.Event()

    class _TickingRedis(FakeStreamRedis):
        # Each read advances the clock 20s; the third read stops the loop.
        async def xreadgroup(self, *args, **kwargs):
            now[0] += 20.0
            if self.reads >= 2:
                stop_event.set()
            return await super().xreadgroup(*args, **kwargs)

    redis = _TickingRedis()
    consumer = OrganizationAssignmentConsumer(
        redis,
        _StubHandler(),
        stream=STREAM,
        group=GROUP,
        consumer_name="org-consumer-test",
        block_ms=10,
        reclaim_interval_s=30.0,
        clock=lambda: now[0],
    )

    await asyncio.wait_for(consumer.run_forever(stop_event), timeout=5)

    # Startup, then once more after 40s of reads; not after 20s.
    assert redis.reads == 3
    assert len(redis.claims) == 2
