"""HTTP client that keeps a local message list with optimistic updates."""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import httpx

from . import reconciler
from .models import (
    Message,
    MessageEvent,
    MessageId,
    Mutation,
    Snapshot,
    message_actions,
    to_display,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:8000"
TIMEOUT = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)


class ChatClient:
    """Local view of the server's message list.

    The list shown to callers is the last confirmed server state with every
    in-flight optimistic mutation replayed on top. When a mutation returns,
    its optimistic entry is dropped and the server's answer is applied to the
    confirmed state; a failed mutation simply drops the optimistic entry.
    Remote change events from :meth:`poll` or :meth:`listen` go through the
    same reconciler, so a create seen both as a response and as an event
    appears once.

    ``http`` may be any ``httpx.Client`` (FastAPI's ``TestClient`` included).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        http: Optional[httpx.Client] = None,
        user_id: Optional[MessageId] = None,
        username: Optional[str] = None,
    ) -> None:
        self._owns_http = http is None
        self._http = http or httpx.Client(base_url=base_url, timeout=TIMEOUT)
        self.user_id = user_id
        self.username = username
        self.seq = 0
        self._confirmed: Snapshot = ()
        self._pending: List[Tuple[str, MessageEvent]] = []
        self._lock = threading.RLock()

    # -------------------------
    # Read side
    # -------------------------
    @property
    def messages(self) -> Snapshot:
        """Confirmed messages with pending optimistic changes applied, newest first."""
        with self._lock:
            events = [event for _, event in self._pending]
            return tuple(reconciler.apply_events(self._confirmed, events))

    @property
    def confirmed(self) -> Snapshot:
        return self._confirmed

    @property
    def pending(self) -> int:
        return len(self._pending)

    def display_messages(self) -> List[Dict[str, Any]]:
        return [to_display(m) for m in self.messages]

    def actions_for(self, message: Message) -> List[str]:
        return message_actions(message, self.user_id)

    # -------------------------
    # Query
    # -------------------------
    def refresh(self) -> Snapshot:
        """Replace the confirmed list with the server's current one."""
        r = self._http.get("/messages")
        r.raise_for_status()
        data = r.json()
        with self._lock:
            self._confirmed = tuple(Message.model_validate(m) for m in data.get("messages", []))
            self.seq = int(data.get("seq", 0))
        return self._confirmed

    # -------------------------
    # Mutations
    # -------------------------
    def add_message(self, text: str) -> Message:
        provisional = Message(
            id=uuid.uuid4().hex,
            text=text,
            user_id=self.user_id,
            username=self.username,
            created_at=datetime.now(timezone.utc),
        )
        token = self._push(MessageEvent.of(Mutation.CREATED, provisional))
        payload = {"text": text, "userId": self.user_id, "username": self.username}
        node = self._send(token, "POST", "/messages", json=payload)
        message = Message.model_validate(node)
        self._confirm(token, lambda snap: reconciler.apply_create(snap, message))
        return message

    def edit_message(self, message: Message, text: str) -> Message:
        optimistic = message.model_copy(update={"text": text})
        token = self._push(MessageEvent.of(Mutation.UPDATED, optimistic))
        payload = {"text": text, "userId": message.user_id}
        node = self._send(token, "PATCH", f"/messages/{message.id}", json=payload)
        edited = Message.model_validate(node)
        self._confirm(token, lambda snap: reconciler.apply_update(snap, edited))
        return edited

    def delete_message(self, message_id: MessageId) -> None:
        token = self._push(MessageEvent(mutation=Mutation.DELETED.value, node={"id": message_id}))
        node = self._send(token, "DELETE", f"/messages/{message_id}")
        deleted_id = node.get("id", message_id)
        self._confirm(token, lambda snap: reconciler.apply_delete(snap, deleted_id))

    # -------------------------
    # Subscription
    # -------------------------
    def poll(self) -> List[MessageEvent]:
        """Fetch and apply change events published since the last one seen."""
        r = self._http.get("/messages/events", params={"after": self.seq})
        r.raise_for_status()
        data = r.json()
        events = [MessageEvent.model_validate(e) for e in data.get("events", [])]
        self.apply_remote(events)
        server_seq = int(data.get("seq", 0))
        if server_seq > self.seq:
            # The server's log no longer reaches back to our cursor (e.g. after a restart).
            logger.info("Event log behind server (have %d, server at %d); refreshing", self.seq, server_seq)
            self.refresh()
        return events

    def listen(self, *, follow: bool = False) -> Iterator[MessageEvent]:
        """Consume the streaming feed, applying and yielding each event.

        Catches up through :meth:`poll` first so a cursor the server's log
        no longer covers is resynced before streaming.
        """
        for event in self.poll():
            yield event
        params = {"after": self.seq, "follow": "true" if follow else "false"}
        with self._http.stream("GET", "/subscriptions/messages", params=params) as r:
            r.raise_for_status()
            for line in r.iter_lines():
                if not line.strip():
                    continue
                event = MessageEvent.model_validate_json(line)
                self.apply_remote([event])
                yield event

    def apply_remote(self, events: Iterable[MessageEvent]) -> None:
        """Apply server events in delivery order, skipping ones already seen."""
        events = list(events)
        gap_at = self._apply_until_gap(events, check_gaps=True)
        if gap_at is None:
            return
        # Events were dropped from the server's log; resync outside the lock.
        logger.warning("Event gap (have %d, got %s); refreshing", self.seq, events[gap_at].seq)
        self.refresh()
        self._apply_until_gap(events[gap_at:], check_gaps=False)

    def _apply_until_gap(self, events: List[MessageEvent], *, check_gaps: bool) -> Optional[int]:
        """Apply events under the lock; return the index of the first gap, if any."""
        with self._lock:
            for i, event in enumerate(events):
                if event.seq is not None:
                    if event.seq <= self.seq:
                        continue
                    if check_gaps and event.seq > self.seq + 1:
                        return i
                self._confirmed = tuple(reconciler.apply_event(self._confirmed, event))
                if event.seq is not None:
                    self.seq = event.seq
        return None

    # -------------------------
    # Internals
    # -------------------------
    def _push(self, event: MessageEvent) -> str:
        token = uuid.uuid4().hex
        with self._lock:
            self._pending.append((token, event))
        return token

    def _drop(self, token: str) -> None:
        with self._lock:
            self._pending = [(t, e) for t, e in self._pending if t != token]

    def _send(self, token: str, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            r = self._http.request(method, url, **kwargs)
            r.raise_for_status()
        except httpx.HTTPError:
            logger.warning("%s %s failed; rolling back optimistic change", method, url)
            self._drop(token)
            raise
        return r.json()

    def _confirm(self, token: str, update) -> None:
        with self._lock:
            self._pending = [(t, e) for t, e in self._pending if t != token]
            self._confirmed = tuple(update(self._confirmed))

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "ChatClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()
