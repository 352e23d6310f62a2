"""FastAPI application exposing the message list, its mutations and its change feed."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, Optional, Union

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import load_config
from .models import MessageEvent
from .store import MessageStore

logger = logging.getLogger(__name__)

UserId = Union[int, str]


# -----------------------------
# Pydantic request bodies
# -----------------------------
class AddMessageInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1)
    user_id: Optional[UserId] = Field(default=None, alias="userId")
    username: Optional[str] = Field(default=None, max_length=128)


class EditMessageInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = Field(..., min_length=1)
    user_id: Optional[UserId] = Field(default=None, alias="userId")


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> MessageStore:
    store_cfg = cfg["store"]
    return MessageStore(
        str(store_cfg["data_dir"]),
        max_events=int(store_cfg["max_events"]),
        use_jsonl=bool(store_cfg["use_jsonl"]),
    )


def _event_line(event: MessageEvent) -> str:
    return json.dumps(event.model_dump(), ensure_ascii=False) + "\n"


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[MessageStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)
    server_cfg = cfg["server"]

    cors_origins = server_cfg["cors_origins"]
    if isinstance(cors_origins, str):
        # Env overrides arrive as "a,b,c"
        cors_origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    poll_seconds = float(server_cfg["stream_poll_seconds"])

    store = store or _make_store(cfg)

    app = FastAPI(title="Chat Feed Server", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "messages": len(store.snapshot()),
            "last_seq": store.last_seq,
        }

    @app.get("/messages")
    def list_messages() -> Dict[str, Any]:
        # Read seq first so a concurrent write is replayed by the feed rather than lost.
        seq = store.last_seq
        return {
            "messages": [m.to_wire() for m in store.snapshot()],
            "seq": seq,
        }

    @app.post("/messages")
    def add_message(body: AddMessageInput) -> Dict[str, Any]:
        try:
            message = store.add(body.text, user_id=body.user_id, username=body.username)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        logger.info("Message %r added by user %r", message.id, message.user_id)
        return message.to_wire()

    @app.patch("/messages/{message_id}")
    def edit_message(message_id: int, body: EditMessageInput) -> Dict[str, Any]:
        try:
            message = store.edit(message_id, body.text, user_id=body.user_id)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if message is None:
            raise HTTPException(status_code=404, detail=f"Message {message_id} not found.")
        return message.to_wire()

    @app.delete("/messages/{message_id}")
    def delete_message(message_id: int) -> Dict[str, Any]:
        removed = store.delete(message_id)
        if not removed:
            logger.debug("Delete of absent message %r", message_id)
        return {"id": message_id}

    @app.get("/messages/events")
    def message_events(after: int = Query(default=0, ge=0)) -> Dict[str, Any]:
        events = store.events_since(after)
        return {"events": [e.model_dump() for e in events], "seq": store.last_seq}

    @app.get("/subscriptions/messages")
    def subscribe(
        after: int = Query(default=0, ge=0),
        follow: bool = Query(default=True),
    ) -> StreamingResponse:
        def event_stream() -> Iterator[str]:
            cursor = after
            for event in store.events_since(cursor):
                cursor = event.seq or cursor
                yield _event_line(event)
            while follow:
                events = store.wait_for_events(cursor, timeout=poll_seconds)
                if not events:
                    # Keep-alive so intermediaries do not close an idle stream.
                    yield "\n"
                    continue
                for event in events:
                    cursor = event.seq or cursor
                    yield _event_line(event)

        return StreamingResponse(event_stream(), media_type="application/x-ndjson")

    return app
