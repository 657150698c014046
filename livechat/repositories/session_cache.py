"""Redis-backed local cache of chat sessions and their messages.

The cache mirrors the remote chat API for availability and keeps the one
field the backend never returns (the user's display name). Sessions live in
a single hash keyed by session id; each session's messages are stored as one
JSON list in a second hash. Unread counters, and the message ids behind
them, are kept per owner, so a user cache and an agent cache sharing one
Redis each count the other side's messages exactly once. Every record
write is a WATCH/MULTI transaction so concurrent writers never lose updates.
"""

import bisect
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError, WatchError

from livechat.core.settings import CacheConfig
from livechat.schemas.chat_schema import (
    COUNTERPART,
    ChatMessage,
    ChatRole,
    ChatSession,
    SenderType,
    SessionStatus,
)

logger = structlog.get_logger()

DEFAULT_SUBJECT = "Support Request"

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _message_order(message: ChatMessage) -> datetime:
    return message.created_at or datetime.min.replace(tzinfo=UTC)


class SessionCache:
    """Local session store owned by one chat party.

    The owner decides which side's messages count as unread: an agent-owned
    cache counts USER messages, a user-owned cache counts AGENT messages.
    Session records are shared between owners; unread counters are not.
    """

    def __init__(
        self,
        redis_client: redis.Redis,  # type: ignore[type-arg]
        config: CacheConfig,
        owner: ChatRole,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._redis = redis_client
        self._config = config
        self._owner = owner
        self._clock = clock
        self._unread_key = config.unread_key(owner)
        self._counted_key = config.counted_key(owner)
        self._owner_keys = [
            key
            for role in COUNTERPART
            for key in (config.unread_key(role), config.counted_key(role))
        ]

    @classmethod
    async def create(
        cls,
        redis_client: redis.Redis,  # type: ignore[type-arg]
        config: CacheConfig,
        owner: ChatRole,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "SessionCache":
        """Build a cache and run rate-limited garbage collection."""
        cache = cls(redis_client, config, owner, clock)
        await cache.maybe_cleanup()
        return cache

    @property
    def owner(self) -> ChatRole:
        return self._owner

    # --- Parsing ---

    @staticmethod
    def _parse_session(raw: str | None) -> ChatSession | None:
        if raw is None:
            return None
        try:
            return ChatSession.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed cached session")
            return None

    @staticmethod
    def _parse_messages(raw: str | None) -> list[ChatMessage]:
        if raw is None:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.warning("Discarding malformed cached message list")
            return []
        if not isinstance(items, list):
            return []
        messages: list[ChatMessage] = []
        for item in items:
            try:
                messages.append(ChatMessage.model_validate(item))
            except ValidationError:
                continue
        return messages

    @staticmethod
    def _dump_session(session: ChatSession) -> str:
        return session.model_dump_json(by_alias=True)

    @staticmethod
    def _dump_messages(messages: list[ChatMessage]) -> str:
        return json.dumps([m.model_dump(mode="json", by_alias=True) for m in messages])

    # --- Transactions ---

    async def _transact(
        self,
        key: str,
        field: str,
        mutate: Callable[[str | None], tuple[T, str | None]],
    ) -> T:
        """Optimistic read-modify-write of one hash field.

        ``mutate`` returns the caller's result and the new raw value, or None
        to skip the write.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.hget(key, field)
                    result, new_raw = mutate(raw)
                    if new_raw is None:
                        return result
                    pipe.multi()
                    pipe.hset(key, field, new_raw)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.debug("Cache write conflict, retrying", key=key, field=field)
                    continue

    async def _update_session(
        self,
        session_id: str,
        mutate: Callable[[ChatSession | None], ChatSession | None],
    ) -> ChatSession | None:
        """Apply ``mutate`` to one session.

        Returning the input unchanged skips the write.
        """

        def _apply(raw: str | None) -> tuple[ChatSession | None, str | None]:
            current = self._parse_session(raw)
            updated = mutate(current)
            if updated is None or updated is current:
                return current, None
            return updated, self._dump_session(updated)

        updated = await self._transact(self._config.sessions_key, session_id, _apply)
        return await self._with_unread(updated)

    async def _update_messages(
        self,
        session_id: str,
        mutate: Callable[[list[ChatMessage]], list[ChatMessage] | None],
    ) -> bool:
        """Apply ``mutate`` to a session's message list. Returns True if written."""

        def _apply(raw: str | None) -> tuple[bool, str | None]:
            updated = mutate(self._parse_messages(raw))
            if updated is None:
                return False, None
            return True, self._dump_messages(updated)

        return await self._transact(self._config.messages_key, session_id, _apply)

    # --- Unread counters ---

    async def _unread(self, session_id: str) -> int:
        raw = await self._redis.hget(self._unread_key, session_id)
        return int(raw) if raw else 0

    async def _with_unread(self, session: ChatSession | None) -> ChatSession | None:
        """Overlay this owner's unread counter on a shared session record."""
        if session is None:
            return None
        count = await self._unread(session.session_id)
        return session.model_copy(update={"unread_count": count})

    async def _mark_counted(self, session_id: str, message_id: str) -> bool:
        """Record a message as counted by this owner. False if it already was."""

        def _mark(raw: str | None) -> tuple[bool, str | None]:
            counted = json.loads(raw) if raw else []
            if message_id in counted:
                return False, None
            counted.append(message_id)
            return True, json.dumps(counted)

        return await self._transact(self._counted_key, session_id, _mark)

    async def _count_unread(
        self, session_id: str, message_id: str | None = None
    ) -> int | None:
        """Increment this owner's counter, once per message id.

        Returns the new count, or None if the message was already counted.
        """
        if message_id is not None and not await self._mark_counted(
            session_id, message_id
        ):
            return None
        return await self._redis.hincrby(self._unread_key, session_id, 1)

    # --- Sessions ---

    async def _load_sessions(self) -> dict[str, ChatSession]:
        raw_sessions = await self._redis.hgetall(self._config.sessions_key)
        counters = await self._redis.hgetall(self._unread_key)
        sessions: dict[str, ChatSession] = {}
        for session_id, raw in raw_sessions.items():
            session = self._parse_session(raw)
            if session is not None:
                sessions[session_id] = session.model_copy(
                    update={"unread_count": int(counters.get(session_id) or 0)}
                )
        return sessions

    async def get_sessions(self) -> list[ChatSession]:
        """All cached sessions, most recently updated first."""
        sessions = await self._load_sessions()
        return sorted(sessions.values(), key=lambda s: s.sort_key, reverse=True)

    async def get_sessions_by_status(self, status: str | None) -> list[ChatSession]:
        sessions = await self.get_sessions()
        if not status or status == "ALL":
            return sessions
        return [s for s in sessions if s.status == status]

    async def get_sessions_by_account(self, account_id: str) -> list[ChatSession]:
        sessions = await self.get_sessions()
        return [s for s in sessions if s.account_id == account_id]

    async def get_session(self, session_id: str) -> ChatSession | None:
        raw = await self._redis.hget(self._config.sessions_key, session_id)
        return await self._with_unread(self._parse_session(raw))

    async def save_session(self, session: ChatSession) -> ChatSession:
        """Upsert a session, merging only the fields set on ``session``.

        A missing display name never erases the cached one, and a closed
        session stays closed. An explicit ``unread_count`` sets this owner's
        counter.
        """
        incoming = session.model_dump(exclude_unset=True)
        if incoming.get("display_name") is None:
            incoming.pop("display_name", None)
        unread = incoming.pop("unread_count", None)
        now = self._clock()

        def _merge(raw: str | None) -> tuple[ChatSession, str]:
            existing = self._parse_session(raw)
            if existing is None:
                data = {"status": "WAITING", "created_at": now, **incoming}
                if not data.get("subject"):
                    data["subject"] = DEFAULT_SUBJECT
                if data.get("created_at") is None:
                    data["created_at"] = now
            else:
                data = {**existing.model_dump(), **incoming}
                if existing.status == "CLOSED":
                    data["status"] = "CLOSED"
                    data["closed_at"] = existing.closed_at or data.get("closed_at")
            data["updated_at"] = now
            data["unread_count"] = 0
            merged = ChatSession.model_validate(data)
            return merged, self._dump_session(merged)

        saved = await self._transact(
            self._config.sessions_key, session.session_id, _merge
        )
        if unread is not None:
            await self._redis.hset(self._unread_key, session.session_id, unread)
        count = await self._unread(session.session_id)
        return saved.model_copy(update={"unread_count": count})

    async def update_session_status(
        self, session_id: str, status: SessionStatus
    ) -> ChatSession | None:
        """Set the session status. Closing is terminal and keeps the first closed_at."""
        now = self._clock()

        def _set_status(existing: ChatSession | None) -> ChatSession | None:
            if existing is None:
                return None
            if existing.status == "CLOSED":
                if status != "CLOSED":
                    logger.warning(
                        "Ignoring status change on closed session",
                        session_id=session_id,
                        requested=status,
                    )
                return existing
            update: dict[str, object] = {"status": status, "updated_at": now}
            if status == "CLOSED":
                update["closed_at"] = now
            return existing.model_copy(update=update)

        return await self._update_session(session_id, _set_status)

    async def update_agent(self, session_id: str, agent_id: str) -> ChatSession | None:
        """Record the agent assigned to a session."""
        now = self._clock()

        def _set_agent(existing: ChatSession | None) -> ChatSession | None:
            if existing is None or existing.agent_id == agent_id:
                return existing
            return existing.model_copy(update={"agent_id": agent_id, "updated_at": now})

        return await self._update_session(session_id, _set_agent)

    async def update_last_message(
        self,
        session_id: str,
        content: str,
        sender_type: SenderType,
        message_id: str | None = None,
    ) -> ChatSession | None:
        """Refresh the list-view preview and count unread counterpart messages.

        With a ``message_id``, the message is counted at most once per owner.
        """
        now = self._clock()

        def _set_last(existing: ChatSession | None) -> ChatSession | None:
            if existing is None:
                return None
            return existing.model_copy(
                update={
                    "last_message": content,
                    "last_message_at": now,
                    "updated_at": now,
                }
            )

        updated = await self._update_session(session_id, _set_last)
        if updated is None or sender_type != COUNTERPART[self._owner]:
            return updated
        count = await self._count_unread(session_id, message_id)
        if count is None:
            return updated
        return updated.model_copy(update={"unread_count": count})

    async def mark_session_as_read(self, session_id: str) -> ChatSession | None:
        await self._redis.hdel(self._unread_key, session_id)
        return await self.get_session(session_id)

    async def delete_session(self, session_id: str) -> None:
        """Remove a session, its messages and every owner's unread state."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._config.sessions_key, session_id)
            pipe.hdel(self._config.messages_key, session_id)
            for key in self._owner_keys:
                pipe.hdel(key, session_id)
            await pipe.execute()

    # --- Messages ---

    async def save_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """Store a message unless one with the same id is already cached."""
        stored = message.model_copy(
            update={
                "session_id": session_id,
                "created_at": message.created_at or self._clock(),
            }
        )

        def _insert(messages: list[ChatMessage]) -> list[ChatMessage] | None:
            if any(m.message_id == stored.message_id for m in messages):
                return None
            bisect.insort_right(messages, stored, key=_message_order)
            return messages

        added = await self._update_messages(session_id, _insert)
        if added:
            await self.update_last_message(
                session_id, stored.content, stored.sender_type, stored.message_id
            )
        elif stored.sender_type == COUNTERPART[self._owner]:
            # Already stored through the other owner's cache.
            if await self._redis.hexists(self._config.sessions_key, session_id):
                await self._count_unread(session_id, stored.message_id)
        return stored

    async def confirm_message(
        self, session_id: str, temp_id: str, confirmed: ChatMessage
    ) -> ChatMessage:
        """Swap an optimistic message for the backend-confirmed copy."""
        replaced = False

        def _swap(messages: list[ChatMessage]) -> list[ChatMessage] | None:
            nonlocal replaced
            index = next(
                (i for i, m in enumerate(messages) if m.message_id == temp_id), None
            )
            if index is None:
                return None
            replaced = True
            temp = messages.pop(index)
            if any(m.message_id == confirmed.message_id for m in messages):
                return messages
            final = confirmed.model_copy(
                update={
                    "session_id": session_id,
                    "created_at": confirmed.created_at or temp.created_at,
                }
            )
            bisect.insort_right(messages, final, key=_message_order)
            return messages

        await self._update_messages(session_id, _swap)
        if not replaced:
            return await self.save_message(session_id, confirmed)
        return confirmed

    async def get_messages(self, session_id: str) -> list[ChatMessage]:
        """Cached messages of a session in created_at order."""
        raw = await self._redis.hget(self._config.messages_key, session_id)
        return self._parse_messages(raw)

    # --- Garbage collection ---

    async def maybe_cleanup(self, force: bool = False) -> bool:
        """Run garbage collection at most once per cleanup interval.

        Returns True if a collection ran.
        """
        interval = int(self._config.cleanup_interval.total_seconds())
        try:
            if force:
                await self._redis.set(
                    self._config.last_cleanup_key,
                    self._clock().isoformat(),
                    ex=interval,
                )
            else:
                acquired = await self._redis.set(
                    self._config.last_cleanup_key,
                    self._clock().isoformat(),
                    ex=interval,
                    nx=True,
                )
                if not acquired:
                    return False
            await self.cleanup_old_data()
        except RedisError:
            logger.warning("Cache cleanup failed", exc_info=True)
            return False
        return True

    async def cleanup_old_data(self) -> int:
        """Purge closed sessions past retention, orphaned data and bad entries.

        Open (WAITING/ACTIVE) sessions are kept regardless of age. Returns the
        number of sessions removed.
        """
        cutoff = self._clock() - self._config.retention
        sessions_key = self._config.sessions_key
        messages_key = self._config.messages_key

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(sessions_key, messages_key, *self._owner_keys)
                    raw_sessions = await pipe.hgetall(sessions_key)
                    message_owners = await pipe.hkeys(messages_key)
                    owner_fields = {
                        key: await pipe.hkeys(key) for key in self._owner_keys
                    }

                    removed: list[str] = []
                    kept: set[str] = set()
                    for session_id, raw in raw_sessions.items():
                        session = self._parse_session(raw)
                        if session is None:
                            removed.append(session_id)
                        elif session.is_open or session.sort_key > cutoff:
                            kept.add(session_id)
                        else:
                            removed.append(session_id)
                    orphans = [sid for sid in message_owners if sid not in kept]
                    stale_fields = {
                        key: [sid for sid in owners if sid not in kept]
                        for key, owners in owner_fields.items()
                    }
                    has_stale = any(stale_fields.values())

                    if not removed and not orphans and not has_stale:
                        return 0
                    pipe.multi()
                    if removed:
                        pipe.hdel(sessions_key, *removed)
                    if orphans:
                        pipe.hdel(messages_key, *orphans)
                    for key, stale in stale_fields.items():
                        if stale:
                            pipe.hdel(key, *stale)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.info(
            "Cache cleanup",
            sessions_removed=len(removed),
            message_lists_removed=len(orphans),
        )
        return len(removed)

    # --- Maintenance ---

    async def clear_all(self) -> None:
        await self._redis.delete(
            self._config.sessions_key,
            self._config.messages_key,
            self._config.last_cleanup_key,
            *self._owner_keys,
        )

    async def get_counts(self) -> dict[str, int]:
        sessions = await self.get_sessions()
        return {
            "all": len(sessions),
            "waiting": sum(1 for s in sessions if s.status == "WAITING"),
            "active": sum(1 for s in sessions if s.status == "ACTIVE"),
            "closed": sum(1 for s in sessions if s.status == "CLOSED"),
        }

    def get_retention_info(self) -> dict[str, int]:
        return {
            "retention_minutes": self._config.retention_minutes,
            "cleanup_interval_minutes": self._config.cleanup_interval_minutes,
        }
