"""
In-memory stand-ins for the Supabase client and the realtime message feed.

``FakeSupabase`` implements the subset of the postgrest query builder the
service uses (``select/insert/update/delete`` with ``eq``, ``neq``, ``in_``,
``gte``, ``ilike``, ``order`` and ``limit``). Inserted messages are pushed
to the attached ``FakeMessageFeed`` the way Supabase realtime would.
"""

import re
import uuid
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from chatline.core.errors import SubscriptionError


class FakeAPIError(Exception):
    pass


class FakeResponse:
    def __init__(self, data):
        self.data = data
        self.count = len(data)


class FakeQuery:
    def __init__(self, store, table):
        self.store = store
        self.table = table
        self.operation = "select"
        self.columns = None
        self.payload = None
        self.filters = []
        self.orders = []
        self.limit_count = None

    def select(self, columns="*"):
        self.operation = "select"
        if columns.strip() != "*":
            self.columns = [column.strip() for column in columns.split(",")]
        return self

    def insert(self, payload):
        self.operation = "insert"
        self.payload = payload
        return self

    def update(self, changes):
        self.operation = "update"
        self.payload = changes
        return self

    def delete(self):
        self.operation = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row[column] >= value)
        return self

    def ilike(self, column, pattern):
        regex = re.compile(
            "^" + ".*".join(re.escape(part) for part in pattern.split("%")) + "$",
            re.IGNORECASE,
        )
        self.filters.append(lambda row: bool(regex.match(row.get(column) or "")))
        return self

    def order(self, column, desc=False):
        self.orders.append((column, desc))
        return self

    def limit(self, count):
        self.limit_count = count
        return self

    def execute(self):
        return self.store._execute(self)


class FakeSupabase:
    def __init__(self, feed=None):
        self.tables = {"profiles": [], "chats": [], "chat_members": [], "messages": []}
        self.feed = feed
        self.auth = MagicMock()
        self.failures = {}
        self.calls = []
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.RLock()

    def table(self, name):
        return FakeQuery(self, name)

    def fail(self, table, operation, times=1):
        """Make the next ``times`` matching operations raise."""
        self.failures[(table, operation)] = times

    def now(self):
        with self._lock:
            self._clock += timedelta(seconds=1)
            return self._clock.isoformat()

    def add_profile(self, username, display_name=None, avatar_url=None, user_id=None):
        row = {
            "id": user_id or str(uuid.uuid4()),
            "username": username,
            "display_name": display_name or username.title(),
            "avatar_url": avatar_url,
            "created_at": self.now(),
            "updated_at": self.now(),
        }
        self.tables["profiles"].append(row)
        return row

    def remove_profile(self, user_id):
        self.tables["profiles"] = [
            row for row in self.tables["profiles"] if row["id"] != user_id
        ]

    def rows(self, table, **match):
        return [
            dict(row)
            for row in self.tables[table]
            if all(row.get(key) == value for key, value in match.items())
        ]

    def _execute(self, query):
        with self._lock:
            self.calls.append((query.table, query.operation))

            remaining = self.failures.get((query.table, query.operation), 0)
            if remaining:
                self.failures[(query.table, query.operation)] = remaining - 1
                raise FakeAPIError(f"{query.operation} on {query.table} failed")

            handler = getattr(self, f"_{query.operation}")
            return FakeResponse(handler(query))

    def _matching(self, query):
        return [
            row
            for row in self.tables[query.table]
            if all(check(row) for check in query.filters)
        ]

    def _select(self, query):
        rows = [dict(row) for row in self._matching(query)]

        for column, desc in reversed(query.orders):
            rows.sort(key=lambda row: row.get(column) or "", reverse=desc)

        if query.limit_count is not None:
            rows = rows[: query.limit_count]

        if query.columns:
            rows = [{column: row.get(column) for column in query.columns} for row in rows]

        return rows

    def _insert(self, query):
        payload = query.payload if isinstance(query.payload, list) else [query.payload]
        created = []

        for item in payload:
            row = dict(item)
            row.setdefault("id", str(uuid.uuid4()))

            if query.table == "chat_members":
                if self.rows("chat_members", chat_id=row["chat_id"], user_id=row["user_id"]):
                    raise FakeAPIError("duplicate key value violates unique constraint")
                row.setdefault("joined_at", self.now())
            else:
                row.setdefault("created_at", self.now())
                if query.table in ("chats", "profiles"):
                    row.setdefault("updated_at", row["created_at"])

            created.append(row)

        self.tables[query.table].extend(created)

        if query.table == "messages" and self.feed is not None:
            for row in created:
                self.feed.publish(dict(row))

        return [dict(row) for row in created]

    def _update(self, query):
        updated = []
        for row in self._matching(query):
            row.update(query.payload)
            row["updated_at"] = self.now()
            updated.append(dict(row))
        return updated

    def _delete(self, query):
        doomed = self._matching(query)
        ids = {row["id"] for row in doomed}
        self.tables[query.table] = [
            row for row in self.tables[query.table] if row["id"] not in ids
        ]

        if query.table == "chats":
            for child in ("chat_members", "messages"):
                self.tables[child] = [
                    row for row in self.tables[child] if row["chat_id"] not in ids
                ]

        return [dict(row) for row in doomed]


class FakeSubscription:
    def __init__(self, chat_id, on_insert, on_status, loop):
        self.chat_id = chat_id
        self.on_insert = on_insert
        self.on_status = on_status
        self.loop = loop
        self.active = True

    def deliver(self, record):
        if self.active:
            self.on_insert(record)

    def report(self, state):
        if self.active:
            self.on_status(state, None)


class FakeMessageFeed:
    """Realtime feed double; delivers on the subscriber's event loop."""

    def __init__(self):
        self.subscriptions = []
        self.unsubscribed = []
        self.fail_subscribe = 0
        self.after_subscribe = None

    @property
    def active(self):
        return [sub for sub in self.subscriptions if sub.active]

    async def subscribe(self, chat_id, on_insert, on_status):
        if self.fail_subscribe:
            self.fail_subscribe -= 1
            raise SubscriptionError(f"Could not subscribe to chat {chat_id}")

        subscription = FakeSubscription(
            chat_id, on_insert, on_status, asyncio.get_running_loop()
        )
        self.subscriptions.append(subscription)

        if self.after_subscribe is not None:
            self.after_subscribe(chat_id)

        return subscription

    async def unsubscribe(self, subscription):
        subscription.active = False
        self.unsubscribed.append(subscription)

    def publish(self, record):
        for subscription in self.active:
            if subscription.chat_id == record["chat_id"]:
                subscription.loop.call_soon_threadsafe(subscription.deliver, record)

    def drop(self, chat_id, state="CHANNEL_ERROR"):
        for subscription in self.active:
            if subscription.chat_id == chat_id:
                subscription.loop.call_soon_threadsafe(subscription.report, state)

    async def close(self):
        for subscription in self.active:
            subscription.active = False
