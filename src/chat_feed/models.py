"""Message types shared by the store, the server and the client."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

ANONYMOUS = "Anonymous"

MessageId = Union[int, str]


class Mutation(str, Enum):
    """Discriminator carried by every change event."""

    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"


class Message(BaseModel):
    """A single chat message. Immutable; edits produce a new instance."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: MessageId
    text: str
    user_id: Optional[MessageId] = Field(default=None, alias="userId")
    username: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    def to_wire(self) -> Dict[str, Any]:
        """Return the camelCase JSON payload used on the wire."""
        return self.model_dump(by_alias=True, mode="json")


# Newest first, ids unique.
Snapshot = Tuple[Message, ...]


class MessageEvent(BaseModel):
    """A change event as published by the server feed.

    ``node`` stays a raw mapping so that ``DELETED`` events may carry only the
    id, and unknown mutation kinds still parse.
    """

    mutation: str
    node: Dict[str, Any] = Field(default_factory=dict)
    seq: Optional[int] = None

    @classmethod
    def of(cls, mutation: Mutation, message: Message, seq: Optional[int] = None) -> "MessageEvent":
        if mutation is Mutation.DELETED:
            node: Dict[str, Any] = {"id": message.id}
        else:
            node = message.to_wire()
        return cls(mutation=mutation.value, node=node, seq=seq)


# -----------------------------
# Read side
# -----------------------------
def to_display(message: Message) -> Dict[str, Any]:
    """Shape a message the way chat widgets expect it."""
    return {
        "_id": message.id,
        "text": message.text,
        "createdAt": message.created_at.isoformat() if message.created_at else None,
        "user": {"_id": message.user_id, "name": message.username or ANONYMOUS},
    }


def message_actions(message: Message, current_user_id: Optional[MessageId]) -> List[str]:
    """Actions offered on long-press: anyone may copy, only the author may edit or delete."""
    actions = ["Copy Text"]
    if current_user_id is not None and message.user_id == current_user_id:
        actions += ["Edit", "Delete"]
    return actions
