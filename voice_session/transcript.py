"""
transcript.py — Transcript Synchronizer
========================================
Sole writer of TranscriptEntry objects.  Turns per-item partial events into
one authoritative entry per item id:

    first delta on a PENDING entry   → replace placeholder, PENDING → STREAMING
    further deltas                   → append
    completion                       → replace with final text, → DONE
    completion with empty / "\\n"     → INAUDIBLE_TEXT sentinel
    completion on a DONE entry       → no-op
    item created with typed text     → straight to DONE, one upsert

Every lifecycle step is mirrored to the message store with a fire-and-forget
upsert.  Writes for the same item are chained so the mirror never ends on a
stale partial; writes for different items never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Optional

from voice_session.events import TranscriptCompleted, TranscriptDelta
from voice_session.models import GuardrailResult, Lifecycle, Role, TranscriptEntry
from voice_session.persistence import MessageStore, StoredMessage

log = logging.getLogger("voice_session.transcript")

PLACEHOLDER_TEXT = "[Transcribing...]"
INAUDIBLE_TEXT = "[inaudible]"


class TranscriptSynchronizer:

    def __init__(
        self,
        store: Optional[MessageStore] = None,
        on_update: Optional[Callable[[TranscriptEntry], None]] = None,
    ) -> None:
        self._store = store
        self._on_update = on_update
        self._entries: dict[str, TranscriptEntry] = {}
        self._next_order = 0
        self._latest_assistant_id: Optional[str] = None
        # Item ids the client created itself and keeps out of the mirror
        self._hidden: set[str] = set()

        # Mirror writes in flight; the per-item tail keeps one item's writes ordered
        self._pending_writes: set[asyncio.Task] = set()
        self._write_tail: dict[str, asyncio.Task] = {}

    # -----------------------------------------------------------------------
    # Read side
    # -----------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._entries

    def get(self, item_id: str) -> Optional[TranscriptEntry]:
        return self._entries.get(item_id)

    def entries(self) -> list[TranscriptEntry]:
        """All entries in creation order."""
        return sorted(self._entries.values(), key=lambda e: e.order)

    def latest_assistant(self) -> Optional[TranscriptEntry]:
        """The assistant entry with the greatest creation order."""
        if self._latest_assistant_id is None:
            return None
        return self._entries[self._latest_assistant_id]

    # -----------------------------------------------------------------------
    # Write side
    # -----------------------------------------------------------------------

    def register(self, item_id: str, role: Role, text: str = PLACEHOLDER_TEXT) -> bool:
        """Create a PENDING entry.  Returns False if the item is already known."""
        if item_id in self._entries:
            log.debug("event=item_already_known item_id=%s", item_id)
            return False
        self._create(item_id, role, text, Lifecycle.PENDING)
        log.info("event=item_registered item_id=%s role=%s", item_id, role.value)
        self._mirror(self._entries[item_id])
        return True

    def hide(self, item_id: str) -> None:
        """Mark an item the client is about to create as hidden."""
        self._hidden.add(item_id)

    def apply_delta(self, event: TranscriptDelta) -> None:
        entry = self._entries.get(event.item_id)
        if entry is None:
            if event.role is None:
                log.warning("event=delta_dropped reason=unknown_item_without_role item_id=%s", event.item_id)
                return
            entry = self._create(event.item_id, event.role, PLACEHOLDER_TEXT, Lifecycle.PENDING)
            log.info("event=item_registered item_id=%s role=%s reason=first_delta", entry.item_id, entry.role.value)

        if entry.lifecycle is Lifecycle.DONE:
            log.debug("event=late_delta_ignored item_id=%s", entry.item_id)
            return

        if self._advance(entry, Lifecycle.STREAMING):
            entry.text = event.text
            log.debug("event=item_streaming item_id=%s", entry.item_id)
            self._mirror(entry)
        else:
            entry.text += event.text
        self._notify(entry)

    def apply_completed(self, event: TranscriptCompleted) -> None:
        final_text = event.text if event.text.strip() else INAUDIBLE_TEXT

        entry = self._entries.get(event.item_id)
        if entry is None:
            if event.role is None:
                log.warning("event=completion_dropped reason=unknown_item_without_role item_id=%s", event.item_id)
                return
            entry = self._create(event.item_id, event.role, final_text, Lifecycle.PENDING)

        if entry.lifecycle is Lifecycle.DONE:
            if entry.text != final_text:
                log.warning(
                    "event=late_completion_ignored item_id=%s kept_len=%d dropped_len=%d",
                    entry.item_id, len(entry.text), len(final_text),
                )
            return

        entry.text = final_text
        self._advance(entry, Lifecycle.DONE)
        log.info("event=item_done item_id=%s role=%s len=%d", entry.item_id, entry.role.value, len(final_text))
        self._mirror(entry)
        self._notify(entry)

    def attach_guardrail(self, result: GuardrailResult) -> Optional[TranscriptEntry]:
        """Attach a verdict to the most recently created assistant entry."""
        entry = self.latest_assistant()
        if entry is None:
            return None
        entry.guardrail = result
        self._notify(entry)
        return entry

    def replay(self, messages: Iterable[StoredMessage]) -> int:
        """Merge persisted messages as DONE entries.  Known item ids are left alone."""
        merged = 0
        for index, message in enumerate(messages):
            item_id = message.item_id or f"persisted-{index}"
            if item_id in self._entries:
                continue
            self._create(item_id, message.role, message.text, Lifecycle.DONE)
            merged += 1
        log.info("event=transcript_replayed merged=%d total=%d", merged, len(self._entries))
        return merged

    async def drain(self) -> None:
        """Wait for every mirror write dispatched so far."""
        while self._pending_writes:
            await asyncio.wait(set(self._pending_writes))

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _create(self, item_id: str, role: Role, text: str, lifecycle: Lifecycle) -> TranscriptEntry:
        entry = TranscriptEntry(
            item_id=item_id,
            role=role,
            text=text,
            lifecycle=lifecycle,
            order=self._next_order,
            hidden=item_id in self._hidden,
        )
        self._hidden.discard(item_id)
        self._next_order += 1
        self._entries[item_id] = entry
        if role is Role.ASSISTANT:
            self._latest_assistant_id = item_id
        self._notify(entry)
        return entry

    @staticmethod
    def _advance(entry: TranscriptEntry, lifecycle: Lifecycle) -> bool:
        if not entry.lifecycle.can_advance_to(lifecycle):
            return False
        entry.lifecycle = lifecycle
        return True

    def _notify(self, entry: TranscriptEntry) -> None:
        if self._on_update is not None:
            self._on_update(entry)

    def _mirror(self, entry: TranscriptEntry) -> None:
        if self._store is None or entry.hidden:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning("event=upsert_skipped reason=no_event_loop item_id=%s", entry.item_id)
            return
        previous = self._write_tail.get(entry.item_id)
        task = loop.create_task(
            self._upsert(previous, entry.item_id, entry.role, entry.text),
            name=f"upsert_{entry.item_id}",
        )
        self._write_tail[entry.item_id] = task
        self._pending_writes.add(task)
        task.add_done_callback(self._write_done)

    def _write_done(self, task: asyncio.Task) -> None:
        self._pending_writes.discard(task)
        for item_id, tail in list(self._write_tail.items()):
            if tail is task:
                del self._write_tail[item_id]

    async def _upsert(self, previous: Optional[asyncio.Task], item_id: str, role: Role, text: str) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await self._store.upsert(item_id, role, text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # In-session state stays authoritative; the mirror catches up on the next write
            log.error("event=upsert_failed item_id=%s role=%s error=%s", item_id, role.value, exc)
