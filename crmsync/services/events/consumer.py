from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from redis.exceptions import ResponseError

from crmsync.core.errors import EventPayloadError
from crmsync.services.events.handlers import AssignmentEventHandler
from crmsync.services.events.schemas import decode_stream_fields, parse_assignment_event
from crmsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# XAUTOCLAIM returns this cursor once the pending entries list has been scanned.
PEL_SCAN_DONE = "0-0"


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class OrganizationAssignmentConsumer:
    """Consumer-group reader for the organization assignment stream.

    Delivery is at-least-once. New messages are read with `>`; messages another
    consumer read but never acknowledged (a crashed process, say) are taken over
    with XAUTOCLAIM once they have been idle long enough. Every message is
    acknowledged after one attempt, including messages that fail to parse or to
    apply; there is no dead-letter queue.
    """

    def __init__(
        self,
        redis: Any,
        handler: AssignmentEventHandler,
        *,
        stream: str,
        group: str,
        consumer_name: str,
        block_ms: int = 5000,
        count: int = 10,
        error_backoff_s: float = 5.0,
        reclaim_idle_ms: int = 60000,
        reclaim_interval_s: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._redis = redis
        self._handler = handler
        self._stream = stream
        self._group = group
        self._consumer_name = consumer_name
        self._block_ms = block_ms
        self._count = count
        self._error_backoff_s = error_backoff_s
        self._reclaim_idle_ms = reclaim_idle_ms
        self._reclaim_interval_s = reclaim_interval_s
        self._clock = clock
        self._last_reclaim_at: float | None = None

    @property
    def consumer_name(self) -> str:
        return self._consumer_name

    async def ensure_group(self) -> None:
        # Create the group from the stream start; an existing group is fine.
        try:
            await self._redis.xgroup_create(self._stream, self._group, id="0", mkstream=True)
            logger.info("org_assignment_group_created stream=%s group=%s", self._stream, self._group)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def read_batch(self) -> list[tuple[str, Any]]:
        response = await self._redis.xreadgroup(
            self._group,
            self._consumer_name,
            {self._stream: ">"},
            count=self._count,
            block=self._block_ms,
        )
        if not response:
            return []
        # RESP2 returns [[stream, entries]]; RESP3 returns {stream: [entries]}.
        if isinstance(response, dict):
            batches = [value[0] if value else [] for value in response.values()]
        else:
            batches = [item[1] for item in response]
        messages: list[tuple[str, Any]] = []
        for entries in batches:
            for message_id, fields in entries or []:
                messages.append((_text(message_id), fields))
        return messages

    async def process_message(self, message_id: str, fields: Any) -> str:
        outcome = "error"
        try:
            event = parse_assignment_event(decode_stream_fields(fields))
        except EventPayloadError as exc:
            increment_counter("org_assignment_events_invalid_total")
            logger.warning("org_assignment_event_invalid message_id=%s reason=%s", message_id, exc)
            outcome = "invalid"
        else:
            try:
                outcome = await self._handler.handle(event)
            except Exception:  # noqa: BLE001 - per-message failures are logged and acknowledged
                increment_counter("org_assignment_events_failed_total")
                logger.exception(
                    "org_assignment_event_failed message_id=%s event_type=%s",
                    message_id,
                    event.event_type,
                )
        await self._ack(message_id)
        return outcome

    async def _ack(self, message_id: str) -> None:
        try:
            await self._redis.xack(self._stream, self._group, message_id)
        except Exception as exc:  # noqa: BLE001 - an unacked message is redelivered later
            logger.warning("org_assignment_ack_failed message_id=%s", message_id, exc_info=exc)

    async def reclaim_pending(self, min_idle_ms: int | None = None) -> int:
        """Claim and process group messages left unacknowledged for at least `min_idle_ms`.

        Walks the whole pending entries list with the XAUTOCLAIM cursor. Entries
        trimmed from the stream since delivery come back without fields and are only
        acknowledged. Returns the number of messages processed.
        """
        min_idle_ms = self._reclaim_idle_ms if min_idle_ms is None else min_idle_ms
        self._last_reclaim_at = self._clock()
        start_id = PEL_SCAN_DONE
        reclaimed = 0
        while True:
            response = await self._redis.xautoclaim(
                self._stream,
                self._group,
                self._consumer_name,
                min_idle_ms,
                start_id=start_id,
                count=self._count,
            )
            next_id, entries = _text(response[0]), response[1]
            for message_id, fields in entries or []:
                message_id = _text(message_id)
                if fields is None:
                    await self._ack(message_id)
                    continue
                await self.process_message(message_id, fields)
                reclaimed += 1
            if next_id == PEL_SCAN_DONE:
                break
            start_id = next_id
        if reclaimed:
            increment_counter("org_assignment_events_reclaimed_total", reclaimed)
            logger.info(
                "org_assignment_pending_reclaimed consumer=%s count=%s",
                self._consumer_name,
                reclaimed,
            )
        return reclaimed

    def _reclaim_due(self) -> bool:
        if self._last_reclaim_at is None:
            return True
        return self._clock() - self._last_reclaim_at >= self._reclaim_interval_s

    async def run_once(self) -> int:
        messages = await self.read_batch()
        for message_id, fields in messages:
            await self.process_message(message_id, fields)
        return len(messages)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        # Reclaim on startup and then every reclaim interval between reads.
        stop_event = stop_event or asyncio.Event()
        await self.ensure_group()
        logger.info(
            "org_assignment_consumer_started stream=%s group=%s consumer=%s",
            self._stream,
            self._group,
            self._consumer_name,
        )
        while not stop_event.is_set():
            try:
                if self._reclaim_due():
                    await self.reclaim_pending()
                if stop_event.is_set():
                    break
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - loop-level failures back off and retry
                logger.exception("org_assignment_consumer_loop_failed backoff_s=%s", self._error_backoff_s)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._error_backoff_s)
                except asyncio.TimeoutError:
                    pass
        logger.info("org_assignment_consumer_stopped consumer=%s", self._consumer_name)


@dataclass(frozen=True)
class ConsumerGroupState:
    # status: ok | missing
    status: str
    consumers: int | None = None
    pending: int | None = None
    lag: int | None = None


async def describe_consumer_group(redis: Any, stream: str, group: str) -> ConsumerGroupState:
    # XINFO GROUPS; a missing stream or group is reported, other errors propagate.
    try:
        groups = await redis.xinfo_groups(stream)
    except ResponseError as exc:
        if "no such key" in str(exc).lower():
            return ConsumerGroupState(status="missing")
        raise
    for info in groups:
        fields = {_text(key): value for key, value in info.items()}
        if _text(fields.get("name")) != group:
            continue
        lag = fields.get("lag")
        return ConsumerGroupState(
            status="ok",
            consumers=int(fields.get("consumers") or 0),
            pending=int(fields.get("pending") or 0),
            lag=int(lag) if lag is not None else None,
        )
    return ConsumerGroupState(status="missing")
