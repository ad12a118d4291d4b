"""Supabase realtime feed of committed message inserts."""

import os
import uuid
import asyncio
import logging
from functools import lru_cache
from typing import Callable, Optional

from dotenv import load_dotenv
from supabase import acreate_client, AsyncClient

from chatline.core.errors import SubscriptionError
from chatline.utils.env_helper import env_number

load_dotenv()
logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
# Channel states after which no more inserts will arrive on that channel.
DROPPED_STATES = {"CHANNEL_ERROR", "TIMED_OUT", "CLOSED"}


def _record_from(payload) -> Optional[dict]:
    """Row of an INSERT notification; the payload layout differs between
    realtime client versions."""
    if not isinstance(payload, dict):
        return None

    data = payload.get("data", payload)
    return data.get("record") or data.get("new")


class SupabaseMessageFeed:
    """
    Subscribes to INSERTs on ``public.messages`` for one conversation.

    ``subscribe`` returns only once the channel reports ``SUBSCRIBED``, so a
    history snapshot taken afterwards cannot miss a message that was
    committed in between.
    """

    def __init__(self, url: str, key: str, subscribe_timeout: float = 10.0):
        self._url = url
        self._key = key
        self._subscribe_timeout = subscribe_timeout
        self._client: Optional[AsyncClient] = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> AsyncClient:
        async with self._lock:
            if self._client is None:
                self._client = await acreate_client(self._url, self._key)
        return self._client

    async def subscribe(
        self,
        chat_id: str,
        on_insert: Callable[[dict], None],
        on_status: Callable[[str, Optional[Exception]], None],
    ):
        client = await self._get_client()
        channel = client.channel(f"chat-{chat_id}-{uuid.uuid4().hex[:8]}")
        ready = asyncio.get_running_loop().create_future()

        def handle_insert(payload):
            record = _record_from(payload)
            if record is None:
                logger.warning(f"realtime_payload_without_record chat_id={chat_id}")
                return
            on_insert(record)

        def handle_status(status, error=None):
            state = getattr(status, "value", status)

            if not ready.done():
                if state == SUBSCRIBED:
                    ready.set_result(None)
                else:
                    ready.set_exception(
                        SubscriptionError(f"Channel for {chat_id} reported {state}.")
                    )
                return

            on_status(state, error)

        channel.on_postgres_changes(
            "INSERT",
            schema="public",
            table="messages",
            filter=f"chat_id=eq.{chat_id}",
            callback=handle_insert,
        )

        try:
            await channel.subscribe(handle_status)
            await asyncio.wait_for(ready, self._subscribe_timeout)
        except (asyncio.TimeoutError, SubscriptionError) as error:
            await client.remove_channel(channel)
            raise SubscriptionError(f"Could not subscribe to chat {chat_id}: {error}")
        except BaseException:
            # Cancelled or failed mid-subscribe: the channel must not outlive the caller.
            await client.remove_channel(channel)
            raise

        logger.info(f"realtime_subscribed chat_id={chat_id}")
        return channel

    async def unsubscribe(self, subscription) -> None:
        client = await self._get_client()
        await client.remove_channel(subscription)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.remove_all_channels()


@lru_cache(maxsize=1)
def get_message_feed() -> SupabaseMessageFeed:
    return SupabaseMessageFeed(
        os.getenv("PUBLIC_SUPABASE_URL"),
        os.getenv("SECRET_API_KEY"),
        subscribe_timeout=env_number("REALTIME_SUBSCRIBE_TIMEOUT", 10.0),
    )


async def shutdown_message_feed() -> None:
    if get_message_feed.cache_info().currsize:
        await get_message_feed().close()
