"""Pure create/update/delete transforms over a message snapshot.

Every function returns a new tuple when something changed and the input object
itself when nothing did, so callers can compare with ``is`` to detect no-ops.
The same functions serve the server store, optimistic client updates and the
subscription feed.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from .models import Message, MessageEvent, MessageId, Mutation

logger = logging.getLogger(__name__)

Node = Union[Message, Mapping[str, Any], MessageId]


def _index_of(snapshot: Sequence[Message], message_id: MessageId) -> int:
    for i, m in enumerate(snapshot):
        if m.id == message_id:
            return i
    return -1


def apply_create(snapshot: Sequence[Message], message: Message) -> Sequence[Message]:
    """Prepend ``message`` unless its id is already present."""
    if _index_of(snapshot, message.id) >= 0:
        logger.debug("Ignoring duplicate create for message %r", message.id)
        return snapshot
    return (message, *snapshot)


def apply_delete(snapshot: Sequence[Message], message_id: MessageId) -> Sequence[Message]:
    """Remove the entry with ``message_id``; absent ids are a no-op."""
    idx = _index_of(snapshot, message_id)
    if idx < 0:
        logger.debug("Ignoring delete of absent message %r", message_id)
        return snapshot
    return (*snapshot[:idx], *snapshot[idx + 1:])


def apply_update(snapshot: Sequence[Message], message: Message) -> Sequence[Message]:
    """Replace the entry sharing ``message.id`` in place; absent ids are a no-op."""
    idx = _index_of(snapshot, message.id)
    if idx < 0:
        logger.debug("Ignoring update of absent message %r", message.id)
        return snapshot
    return (*snapshot[:idx], message, *snapshot[idx + 1:])


def _as_message(node: Node) -> Message:
    if isinstance(node, Message):
        return node
    if not isinstance(node, Mapping):
        raise TypeError(f"expected a message mapping, got {type(node).__name__}")
    return Message.model_validate(dict(node))


def _node_id(node: Node) -> Optional[MessageId]:
    if isinstance(node, Message):
        return node.id
    if isinstance(node, Mapping):
        return node.get("id")
    # DELETED payloads may be the bare id.
    if isinstance(node, (int, str)) and not isinstance(node, bool):
        return node
    return None


def dispatch(snapshot: Sequence[Message], mutation: Union[Mutation, str], node: Node) -> Sequence[Message]:
    """Route a discriminated change to the matching transform.

    Unknown discriminators leave the snapshot untouched.
    """
    kind = mutation.value if isinstance(mutation, Mutation) else str(mutation)
    if kind in (Mutation.CREATED.value, Mutation.UPDATED.value):
        try:
            message = _as_message(node)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning("Ignoring %s event with malformed node: %s", kind, e)
            return snapshot
        if kind == Mutation.CREATED.value:
            return apply_create(snapshot, message)
        return apply_update(snapshot, message)
    if kind == Mutation.DELETED.value:
        message_id = _node_id(node)
        if message_id is None:
            logger.debug("Ignoring delete event without an id")
            return snapshot
        return apply_delete(snapshot, message_id)
    logger.warning("Ignoring unknown mutation kind %r", kind)
    return snapshot


def apply_event(snapshot: Sequence[Message], event: MessageEvent) -> Sequence[Message]:
    return dispatch(snapshot, event.mutation, event.node)


def apply_events(snapshot: Sequence[Message], events: Iterable[MessageEvent]) -> Sequence[Message]:
    """Fold events over ``snapshot`` in the order given."""
    for event in events:
        snapshot = apply_event(snapshot, event)
    return snapshot
