"""
persistence.py — transcript mirror collaborators
=================================================
The synchronizer mirrors every transcript transition through `upsert`,
which must be idempotent by item id (create-if-absent, else update).
Text-mode messages without an item id go through `create`.  `list_messages`
feeds the replay that runs when a session re-attaches to an existing thread.

Two implementations:
  • InMemoryMessageStore — process-local, used when no chat API is configured
  • HttpMessageStore     — the chat API's /api/chat/messages endpoints
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from voice_session.errors import PersistenceError
from voice_session.models import Role

log = logging.getLogger("voice_session.persistence")


@dataclass
class StoredMessage:
    item_id: Optional[str]
    role: Role
    text: str


class MessageStore(Protocol):
    async def upsert(self, item_id: str, role: Role, text: str) -> None: ...

    async def create(self, thread_id: str, role: Role, text: str) -> None: ...

    async def list_messages(self, thread_id: str) -> list[StoredMessage]: ...


class InMemoryMessageStore:
    """Dict-backed store.  Upserts land in `thread_id`."""

    def __init__(self, thread_id: str = "default") -> None:
        self.thread_id = thread_id
        self._threads: dict[str, list[StoredMessage]] = {}
        self._by_item: dict[str, StoredMessage] = {}

    async def upsert(self, item_id: str, role: Role, text: str) -> None:
        existing = self._by_item.get(item_id)
        if existing is not None:
            existing.role = role
            existing.text = text
            return
        message = StoredMessage(item_id=item_id, role=role, text=text)
        self._by_item[item_id] = message
        self._threads.setdefault(self.thread_id, []).append(message)

    async def create(self, thread_id: str, role: Role, text: str) -> None:
        self._threads.setdefault(thread_id, []).append(StoredMessage(item_id=None, role=role, text=text))

    async def list_messages(self, thread_id: str) -> list[StoredMessage]:
        return list(self._threads.get(thread_id, []))


_DB_ROLES = {Role.USER: "USER", Role.ASSISTANT: "ASSISTANT"}


class HttpMessageStore:
    """Mirror to the chat API.

        GET  /api/chat/messages?threadId=…   → {"messages": [...]}
        POST /api/chat/messages              → create (no external id)
        PUT  /api/chat/messages              → upsert keyed by externalId
    """

    def __init__(
        self,
        base_url: str,
        thread_id: str,
        *,
        timeout_sec: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.thread_id = thread_id
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_sec)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, "/api/chat/messages", **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            raise PersistenceError(f"{method} /api/chat/messages failed: {exc}") from exc

    async def upsert(self, item_id: str, role: Role, text: str) -> None:
        await self._request("PUT", json={
            "threadId": self.thread_id,
            "externalId": item_id,
            "role": _DB_ROLES[role],
            "content": text,
            "contentType": "TEXT",
        })
        log.debug("event=message_upserted item_id=%s role=%s len=%d", item_id, role.value, len(text))

    async def create(self, thread_id: str, role: Role, text: str) -> None:
        await self._request("POST", json={
            "threadId": thread_id,
            "role": _DB_ROLES[role],
            "content": text,
            "contentType": "TEXT",
        })

    async def list_messages(self, thread_id: str) -> list[StoredMessage]:
        response = await self._request("GET", params={"threadId": thread_id})
        try:
            rows = response.json().get("messages")
        except (ValueError, AttributeError) as exc:
            raise PersistenceError(f"GET /api/chat/messages returned an unreadable body: {exc}") from exc
        if rows is None:
            rows = []
        if not isinstance(rows, list):
            raise PersistenceError(f"GET /api/chat/messages returned messages of type {type(rows).__name__}")
        messages: list[StoredMessage] = []
        for row in rows:
            if not isinstance(row, dict):
                log.warning("event=stored_message_skipped reason=not_an_object type=%s", type(row).__name__)
                continue
            try:
                role = Role.parse(row.get("role"))
            except ValueError:
                continue  # SYSTEM / TOOL rows
            item_id = row.get("externalId") or row.get("id")
            content = row.get("content")
            messages.append(StoredMessage(
                item_id=str(item_id) if item_id else None,
                role=role,
                text=content if isinstance(content, str) else "",
            ))
        return messages
