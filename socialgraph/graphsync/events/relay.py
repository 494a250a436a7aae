"""
Relay event source over the NIP-01 websocket protocol.

This module talks to a relay directly instead of shelling out to relay
tooling and parsing its text output. It supports:
- Point lookups ("latest kind K event by author A")
- Batched latest-id lookups for the comparison sweep
- A live subscription with automatic reconnection
- A paged full-corpus export

Wire protocol:
    client -> relay: ["REQ", <sub_id>, <filter>], ["CLOSE", <sub_id>]
    relay -> client: ["EVENT", <sub_id>, <event>], ["EOSE", <sub_id>],
                     ["CLOSED", <sub_id>, <message>], ["NOTICE", <message>]

Invariants:
    - Each query uses its own subscription id and is CLOSEd after EOSE
    - Malformed events from the relay are skipped, never raised
    - Connection failures and timeouts surface as TransientIOError
    - Export yields every event once, even when a page ends mid-timestamp

How to change safely:
    - Test against a real relay before deploying
    - Keep filters within common relay limits (authors per REQ, limit)
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from ..errors import MalformedEventError, TransientIOError
from .base import Event, pick_latest

logger = logging.getLogger(__name__)


class RelayEventSource:
    """Relay implementation of EventSource protocol.

    Uses one aiohttp ClientSession; every query opens a short-lived
    websocket, while subscribe() holds one open and reconnects on failure.

    Example:
        >>> source = RelayEventSource(RelayConfig(url="wss://relay.example.com"))
        >>> await source.connect()
        >>> event = await source.get_latest_event(pubkey, 3)
    """

    LOOKUP_LIMIT = 5
    RECONNECT_MAX_DELAY = 60.0
    BOUNDARY_LIMIT_MAX = 50_000

    def __init__(self, config: Any) -> None:
        """Initialize relay source.

        Args:
            config: RelayConfig instance with connection settings
        """
        self.config = config
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return self._session is not None and not self._session.closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        self._closed = False
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.config.timeout_seconds)
        )
        logger.info("Relay event source ready", extra={"relay_url": self.config.url})

    async def close(self) -> None:
        self._closed = True
        if self._session is not None:
            await self._session.close()
            self._session = None
        logger.info("Relay event source closed")

    async def get_latest_event(self, actor_key: str, kind: int) -> Event | None:
        events = await self._query(
            {"kinds": [kind], "authors": [actor_key], "limit": self.LOOKUP_LIMIT}
        )
        latest = pick_latest(e for e in events if e.actor_key == actor_key and e.kind == kind)
        return latest.get((actor_key, kind))

    async def get_latest_ids(self, actor_keys: list[str], kind: int) -> dict[str, str]:
        result: dict[str, str] = {}
        batch_size = self.config.author_batch
        for i in range(0, len(actor_keys), batch_size):
            batch = actor_keys[i : i + batch_size]
            events = await self._query({"kinds": [kind], "authors": batch})
            wanted = set(batch)
            for (actor_key, _), event in pick_latest(
                e for e in events if e.kind == kind and e.actor_key in wanted
            ).items():
                result[actor_key] = event.id
        return result

    async def subscribe(self, kinds: list[int]) -> AsyncIterator[Event]:
        """Yield live events, reconnecting with backoff until close()."""
        delay = 1.0
        while not self._closed:
            sub_id = _new_sub_id()
            try:
                async with self._require_session().ws_connect(self.config.url) as ws:
                    await ws.send_json(["REQ", sub_id, {"kinds": kinds, "limit": 0}])
                    logger.info(
                        "Live subscription open",
                        extra={"relay_url": self.config.url, "kinds": kinds},
                    )
                    delay = 1.0
                    async for msg in ws:
                        if msg.type != aiohttp.WSMsgType.TEXT:
                            if msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                                break
                            continue
                        event = _parse_event_message(msg.data, sub_id)
                        if event is not None:
                            yield event
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Live subscription dropped: {e}", extra={"retry_in": delay})

            if self._closed:
                break
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.RECONNECT_MAX_DELAY)

    async def export(self, kinds: list[int]) -> AsyncIterator[Event]:
        """Page backwards through history with `until`.

        `until` is inclusive, so events sharing the boundary timestamp are
        fetched again and filtered by id. A full page that sits entirely on
        the boundary is drained with a `since`/`until` window on that one
        timestamp before paging continues below it.
        """
        until: int | None = None
        seen_at_boundary: set[str] = set()
        page_size = self.config.export_page_size

        while True:
            flt: dict[str, Any] = {"kinds": kinds, "limit": page_size}
            if until is not None:
                flt["until"] = until
            page = await self._query(flt)
            if not page:
                return

            fresh = [e for e in page if e.id not in seen_at_boundary]
            for event in sorted(fresh, key=lambda e: (-e.created_at, e.id)):
                yield event

            if fresh:
                oldest = min(e.created_at for e in page)
                if oldest != until:
                    seen_at_boundary = set()
                until = oldest
                seen_at_boundary |= {e.id for e in page if e.created_at == oldest}
                continue

            # Every event in the page sits on `until` and was already yielded
            if len(page) < page_size:
                return
            assert until is not None
            async for event in self._drain_timestamp(kinds, until, seen_at_boundary):
                yield event
            until -= 1
            seen_at_boundary = set()

    async def _drain_timestamp(
        self, kinds: list[int], created_at: int, seen: set[str]
    ) -> AsyncIterator[Event]:
        """Yield the unseen events at one timestamp, growing the limit."""
        limit = len(seen) + self.config.export_page_size
        while True:
            page = await self._query(
                {"kinds": kinds, "since": created_at, "until": created_at, "limit": limit}
            )
            fresh = [e for e in page if e.id not in seen]
            for event in sorted(fresh, key=lambda e: e.id):
                yield event
            seen |= {e.id for e in fresh}
            if len(page) < limit:
                return
            if limit >= self.BOUNDARY_LIMIT_MAX:
                raise TransientIOError(
                    f"More than {limit} events share created_at {created_at}; export would be truncated",
                    backend="relay",
                )
            limit = min(limit * 2, self.BOUNDARY_LIMIT_MAX)

    async def _query(self, flt: dict[str, Any]) -> list[Event]:
        """Run one REQ until EOSE and return the parsed events."""
        sub_id = _new_sub_id()
        events: list[Event] = []
        try:
            async with self._require_session().ws_connect(self.config.url) as ws:
                await ws.send_json(["REQ", sub_id, flt])
                while True:
                    msg = await ws.receive(timeout=self.config.timeout_seconds)
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        raise TransientIOError(
                            f"Relay closed connection during query ({msg.type.name})",
                            backend="relay",
                        )
                    frame = _decode_frame(msg.data)
                    if frame is None:
                        continue
                    verb = frame[0]
                    if verb == "EVENT" and len(frame) >= 3 and frame[1] == sub_id:
                        try:
                            events.append(Event.from_dict(frame[2]))
                        except MalformedEventError as e:
                            logger.warning(f"Skipping malformed event from relay: {e}")
                    elif verb == "EOSE" and frame[1:2] == [sub_id]:
                        await ws.send_json(["CLOSE", sub_id])
                        return events
                    elif verb == "CLOSED" and frame[1:2] == [sub_id]:
                        reason = frame[2] if len(frame) > 2 else ""
                        raise TransientIOError(f"Relay closed query: {reason}", backend="relay")
                    elif verb == "NOTICE":
                        logger.info("Relay notice", extra={"notice": frame[1:]})
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientIOError(f"Relay query failed: {e}", backend="relay") from e

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise TransientIOError("Relay event source not connected", backend="relay")
        return self._session


def _new_sub_id() -> str:
    return uuid.uuid4().hex[:16]


def _decode_frame(data: str) -> list[Any] | None:
    try:
        frame = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Ignoring non-JSON relay frame")
        return None
    if not isinstance(frame, list) or not frame:
        return None
    return frame


def _parse_event_message(data: str, sub_id: str) -> Event | None:
    frame = _decode_frame(data)
    if frame is None or frame[0] != "EVENT" or len(frame) < 3 or frame[1] != sub_id:
        return None
    try:
        return Event.from_dict(frame[2])
    except MalformedEventError as e:
        logger.warning(f"Skipping malformed live event: {e}")
        return None
