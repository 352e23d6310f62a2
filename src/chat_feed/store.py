"""Disk-backed authoritative message list with a change-event log (thread-safe, atomic)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, List, Optional

from . import reconciler
from .models import Message, MessageEvent, MessageId, Mutation, Snapshot

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def _clean_text(text: str) -> str:
    if not isinstance(text, str):
        raise TypeError(f"message text must be a str, got {type(text).__name__}")
    text = text.strip()
    if not text:
        raise ValueError("message text cannot be empty")
    return text


@dataclass
class StorePolicy:
    """Controls how much history the store keeps around."""
    max_events: int = 1000          # events kept in memory for polling subscribers


# -----------------------------
# MessageStore
# -----------------------------
class MessageStore:
    """JSON-persisted message list, the single writer for the server snapshot.

    Layout:
        data_dir/
          messages.json         # {"next_id": int, "seq": int, "messages": [...]}
          (optional) logs/events.jsonl  # append-only change log if JSONL enabled

    Every mutation goes through :mod:`chat_feed.reconciler` and, when it
    changes the list, is recorded as a :class:`MessageEvent` with a strictly
    increasing ``seq``.
    """

    def __init__(self, data_dir: str, *, max_events: int = 1000, use_jsonl: bool = False) -> None:
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.logs_dir = self.root / "logs"
        if use_jsonl:
            self.logs_dir.mkdir(parents=True, exist_ok=True)

        self.policy = StorePolicy(max_events=max(1, int(max_events)))
        self.use_jsonl = use_jsonl
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._events: Deque[MessageEvent] = deque(maxlen=self.policy.max_events)

        self._snapshot: Snapshot = ()
        self._next_id = 1
        self._seq = 0
        self._load()

    # --------- paths ----------
    @property
    def path(self) -> Path:
        return self.root / "messages.json"

    @property
    def jsonl_path(self) -> Path:
        return self.logs_dir / "events.jsonl"

    # --------- read API ----------
    def snapshot(self) -> Snapshot:
        """Current list, newest first."""
        return self._snapshot

    def get(self, message_id: MessageId) -> Optional[Message]:
        for m in self._snapshot:
            if m.id == message_id:
                return m
        return None

    @property
    def last_seq(self) -> int:
        return self._seq

    def events_since(self, seq: int) -> List[MessageEvent]:
        """Events newer than ``seq`` still held in memory, oldest first."""
        with self._lock:
            return [e for e in self._events if (e.seq or 0) > seq]

    def wait_for_events(self, seq: int, timeout: float) -> List[MessageEvent]:
        """Block until events newer than ``seq`` exist or ``timeout`` seconds pass."""
        with self._changed:
            self._changed.wait_for(lambda: self._seq > seq, timeout=timeout)
            return self.events_since(seq)

    # --------- write API ----------
    def add(
        self,
        text: str,
        user_id: Optional[MessageId] = None,
        username: Optional[str] = None,
    ) -> Message:
        """Create a message with a server-assigned id and timestamp."""
        text = _clean_text(text)
        with self._lock:
            message = Message(
                id=self._next_id,
                text=text,
                user_id=user_id,
                username=username,
                created_at=_utc_now(),
            )
            self._next_id += 1
            self._commit(Mutation.CREATED, message, reconciler.apply_create(self._snapshot, message))
            return message

    def edit(self, message_id: MessageId, text: str, user_id: Optional[MessageId] = None) -> Optional[Message]:
        """Replace the text of an existing message. Returns None if it does not exist."""
        text = _clean_text(text)
        with self._lock:
            current = self.get(message_id)
            if current is None:
                logger.info("Edit of unknown message %r ignored", message_id)
                return None
            changes: dict = {"text": text}
            if user_id is not None:
                changes["user_id"] = user_id
            message = current.model_copy(update=changes)
            self._commit(Mutation.UPDATED, message, reconciler.apply_update(self._snapshot, message))
            return message

    def delete(self, message_id: MessageId) -> bool:
        """Remove a message. Deleting an absent id is a no-op and returns False."""
        with self._lock:
            current = self.get(message_id)
            updated = reconciler.apply_delete(self._snapshot, message_id)
            if current is None or updated is self._snapshot:
                return False
            self._commit(Mutation.DELETED, current, updated)
            return True

    # --------- internals ----------
    def _commit(self, mutation: Mutation, message: Message, updated: Any) -> None:
        if not isinstance(message, Message):
            raise TypeError(f"expected a Message, got {type(message).__name__}")
        if updated is self._snapshot:
            return
        self._snapshot = tuple(updated)
        self._seq += 1
        event = MessageEvent.of(mutation, message, seq=self._seq)
        self._events.append(event)
        self._persist()
        if self.use_jsonl:
            self._append_jsonl(event)
        logger.debug("Recorded %s for message %r (seq=%d)", mutation.value, message.id, self._seq)
        self._changed.notify_all()

    def _persist(self) -> None:
        _write_json(
            self.path,
            {
                "next_id": self._next_id,
                "seq": self._seq,
                "messages": [m.to_wire() for m in self._snapshot],
            },
        )

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = _read_json(self.path)
            messages = tuple(Message.model_validate(m) for m in data.get("messages", []))
            next_id = int(data.get("next_id", 1))
            seq = int(data.get("seq", 0))
        except Exception as e:
            # Corruption fallback: keep a backup and start fresh.
            logger.warning("Could not read %s (%s); starting with an empty list", self.path, e)
            try:
                self.path.rename(self.path.with_suffix(".corrupt.json"))
            except OSError as rename_err:
                logger.warning("Could not move corrupt file aside: %s", rename_err)
            return

        deduped: Snapshot = ()
        # Stored newest first; rebuild oldest to newest so create order is preserved.
        for m in reversed(messages):
            deduped = tuple(reconciler.apply_create(deduped, m))
        self._snapshot = deduped
        int_ids = [m.id for m in deduped if isinstance(m.id, int)]
        self._next_id = max([next_id] + [i + 1 for i in int_ids])
        self._seq = seq

    def _append_jsonl(self, event: MessageEvent) -> None:
        try:
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(event.model_dump(), ensure_ascii=False) + "\n")
        except OSError as e:
            # Non-fatal; the JSON snapshot is authoritative.
            logger.warning("Failed to append to %s: %s", self.jsonl_path, e)
