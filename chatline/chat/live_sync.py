"""
Live Sync Engine.

A ``LiveConversation`` keeps one principal's view of one conversation in
step with the message log. Two producers feed the view: the one-shot
history snapshot and the realtime insert feed. The feed is subscribed
before the snapshot is taken and every message is keyed by id, so a
message that appears in both is kept once and a message committed between
the two is never lost. After a dropped channel the view re-subscribes and
reconciles with the messages stored since the last one it has seen.

State machine::

    DISCONNECTED -> SUBSCRIBING -> LIVE -> RECONNECTING -> LIVE
                                        -> CLOSED
    RECONNECTING -> DISCONNECTED   (retries exhausted)
"""

import bisect
import asyncio
import logging
from enum import Enum
from typing import AsyncIterator, Literal, Optional

from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError
from supabase import Client
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chatline.core.errors import SubscriptionError
from chatline.core.realtime import DROPPED_STATES
from . import membership, messages
from .schemas import ChatMessage, Message

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class FeedEvent(BaseModel):
    type: Literal["message", "status"]
    message: Optional[ChatMessage] = None
    state: Optional[SyncState] = None


class LiveConversation:
    def __init__(
        self,
        client: Client,
        feed,
        principal_id: str,
        chat_id: str,
        max_retries: int = 5,
        retry_delay: float = 0.5,
    ):
        self.client = client
        self.feed = feed
        self.principal_id = str(principal_id)
        self.chat_id = str(chat_id)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self.state = SyncState.DISCONNECTED
        self._messages: list[ChatMessage] = []
        self._keys: list[tuple] = []
        self._seen: set[str] = set()

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._updates: asyncio.Queue = asyncio.Queue()
        self._merge_lock = asyncio.Lock()
        self._subscription = None
        self._generation = 0
        self._dropped = False
        self._opened = False
        self._pump_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def messages(self) -> list[ChatMessage]:
        """Current merged view, non-decreasing in ``created_at``."""
        return list(self._messages)

    async def __aenter__(self) -> "LiveConversation":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> "LiveConversation":
        if self.state != SyncState.DISCONNECTED or self._opened:
            raise RuntimeError("LiveConversation can only be opened once.")

        await run_in_threadpool(
            membership.require_member, self.client, self.chat_id, self.principal_id
        )

        self._set_state(SyncState.SUBSCRIBING)

        try:
            self._subscription = await self._subscribe()

            snapshot = await run_in_threadpool(
                messages.history, self.client, self.chat_id, self.principal_id
            )
            enriched = await run_in_threadpool(messages.enrich, self.client, snapshot)

            async with self._merge_lock:
                for message in enriched:
                    self._merge(message)

        except BaseException:
            if self._reconnect_task:
                self._reconnect_task.cancel()
                await asyncio.gather(self._reconnect_task, return_exceptions=True)
            await self._release(self._subscription)
            self._subscription = None
            self._set_state(SyncState.DISCONNECTED)
            raise

        self._opened = True
        self._pump_task = asyncio.create_task(self._pump())
        self._pump_task.add_done_callback(self._pump_stopped)

        # A drop reported while the snapshot was loading is handled here.
        if self.state == SyncState.SUBSCRIBING:
            self._set_state(SyncState.LIVE)

        logger.info(
            f"live_view_opened chat_id={self.chat_id} user_id={self.principal_id} "
            f"messages={len(self._messages)}"
        )
        return self

    async def close(self) -> None:
        if self.state == SyncState.CLOSED:
            return

        self._set_state(SyncState.CLOSED)

        tasks = [task for task in (self._reconnect_task, self._pump_task) if task]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self._release(self._subscription)
        self._subscription = None

        # Nothing queued before close is delivered after it.
        while not self._updates.empty():
            self._updates.get_nowait()
        self._updates.put_nowait(None)

        logger.info(f"live_view_closed chat_id={self.chat_id} user_id={self.principal_id}")

    async def updates(self) -> AsyncIterator[FeedEvent]:
        """New messages and state changes after ``open``; ends on close."""
        while True:
            event = await self._updates.get()
            if event is None:
                return
            yield event

    async def _subscribe(self):
        self._generation += 1
        self._dropped = False
        generation = self._generation

        return await self.feed.subscribe(
            self.chat_id,
            lambda record: self._on_insert(record),
            lambda state, error=None: self._on_status(generation, state, error),
        )

    def _on_insert(self, record: dict) -> None:
        if self.state == SyncState.CLOSED:
            return
        self._inbox.put_nowait(record)

    def _on_status(self, generation: int, state: str, error=None) -> None:
        if generation != self._generation or state not in DROPPED_STATES:
            return

        # The channel opened by a reconnect attempt failed before it went live.
        if self.state == SyncState.RECONNECTING:
            self._dropped = True
            return
        if self.state not in (SyncState.SUBSCRIBING, SyncState.LIVE):
            return

        logger.warning(f"live_feed_dropped chat_id={self.chat_id} state={state} error={error}")
        self._set_state(SyncState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _pump(self) -> None:
        while True:
            record = await self._inbox.get()

            try:
                message = Message(**record)
            except ValidationError:
                logger.warning(f"live_event_malformed chat_id={self.chat_id}")
                continue

            if message.chat_id != self.chat_id or message.id in self._seen:
                continue

            enriched = await run_in_threadpool(messages.enrich, self.client, [message])

            async with self._merge_lock:
                if self._merge(enriched[0]):
                    self._publish(FeedEvent(type="message", message=enriched[0]))

    async def _reconnect(self) -> None:
        await self._release(self._subscription)
        self._subscription = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_delay),
            retry=retry_if_not_exception_type(asyncio.CancelledError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        self._subscription = await self._subscribe()
                        await self._reconcile()
                        if self._dropped:
                            raise SubscriptionError(
                                f"Channel for {self.chat_id} dropped while reconnecting."
                            )
                    except Exception:
                        await self._release(self._subscription)
                        self._subscription = None
                        raise

        except RetryError:
            logger.error(
                f"live_feed_unavailable chat_id={self.chat_id} retries={self.max_retries}"
            )
            self._set_state(SyncState.DISCONNECTED)
            return

        self._set_state(SyncState.LIVE)

    def _pump_stopped(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return

        logger.error(
            f"live_pump_failed chat_id={self.chat_id}", exc_info=task.exception()
        )
        if self.state != SyncState.CLOSED:
            self._set_state(SyncState.DISCONNECTED)

    async def _reconcile(self) -> None:
        """Fetch what was stored while the feed was down."""
        if self._keys:
            missed = await run_in_threadpool(
                messages.history_since,
                self.client,
                self.chat_id,
                self.principal_id,
                self._keys[-1][0],
            )
        else:
            missed = await run_in_threadpool(
                messages.history, self.client, self.chat_id, self.principal_id
            )

        fresh = [message for message in missed if message.id not in self._seen]
        enriched = await run_in_threadpool(messages.enrich, self.client, fresh)

        async with self._merge_lock:
            for message in enriched:
                if self._merge(message):
                    self._publish(FeedEvent(type="message", message=message))

        logger.info(f"live_feed_reconciled chat_id={self.chat_id} recovered={len(enriched)}")

    def _merge(self, message: ChatMessage) -> bool:
        if message.id in self._seen:
            return False

        key = (message.created_at, message.id)
        index = bisect.bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._messages.insert(index, message)
        self._seen.add(message.id)
        return True

    def _publish(self, event: FeedEvent) -> None:
        if self._opened and self.state != SyncState.CLOSED:
            self._updates.put_nowait(event)

    def _set_state(self, state: SyncState) -> None:
        if state == self.state:
            return

        logger.debug(f"live_view_state chat_id={self.chat_id} {self.state.value}->{state.value}")
        self.state = state
        self._publish(FeedEvent(type="status", state=state))

    async def _release(self, subscription) -> None:
        if subscription is None:
            return

        try:
            await self.feed.unsubscribe(subscription)
        except Exception:
            logger.warning(f"live_unsubscribe_failed chat_id={self.chat_id}", exc_info=True)
