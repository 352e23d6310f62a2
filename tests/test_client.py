from __future__ import annotations

import threading
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from chat_feed.client import ChatClient
from chat_feed.models import Message
from chat_feed.server import create_app
from chat_feed.store import MessageStore


@pytest.fixture
def http(store: MessageStore, missing_config: str, clean_env) -> TestClient:
    return TestClient(create_app(config_path=missing_config, store=store))


def _mock_client(handler, **kw) -> ChatClient:
    transport = httpx.MockTransport(handler)
    return ChatClient(http=httpx.Client(transport=transport, base_url="http://test"), **kw)


def test_optimistic_message_visible_while_request_in_flight():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["texts"] = [m.text for m in client.messages]
        seen["ids"] = [m.id for m in client.messages]
        return httpx.Response(
            200,
            json={"id": 7, "text": "hi", "userId": 1, "username": "alice", "createdAt": "2024-01-01T00:00:00+00:00"},
        )

    client = _mock_client(handler, user_id=1, username="alice")
    confirmed = client.add_message("hi")

    # During the request the provisional record was displayed.
    assert seen["texts"] == ["hi"]
    assert isinstance(seen["ids"][0], str)
    # Afterwards only the server's record remains.
    assert confirmed.id == 7
    assert [m.id for m in client.messages] == [7]
    assert client.pending == 0


def test_failed_mutation_rolls_back():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"detail": "boom"})

    client = _mock_client(handler)
    with pytest.raises(httpx.HTTPStatusError):
        client.add_message("lost")
    assert client.messages == ()
    assert client.pending == 0


def test_optimistic_edit_and_delete_in_flight():
    base = Message(id=1, text="a", user_id=1, username="alice")
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append([m.text for m in client.messages])
        if request.method == "PATCH":
            return httpx.Response(200, json={"id": 1, "text": "a2", "userId": 1, "username": "alice"})
        return httpx.Response(200, json={"id": 1})

    client = _mock_client(handler, user_id=1)
    client._confirmed = (base,)

    client.edit_message(base, "a2")
    assert client.messages[0].text == "a2"
    client.delete_message(1)
    assert client.messages == ()
    assert seen == [["a2"], []]


def test_add_then_poll_does_not_duplicate(http: TestClient):
    client = ChatClient(http=http, user_id=1, username="alice")
    client.add_message("hello")
    events = client.poll()

    # The CREATED event for our own message arrives after the response.
    assert [e.mutation for e in events] == ["CREATED"]
    assert [m.text for m in client.messages] == ["hello"]
    assert client.seq == 1


def test_second_client_sees_remote_changes(http: TestClient):
    alice = ChatClient(http=http, user_id=1, username="alice")
    bob = ChatClient(http=http, user_id=2, username="bob")
    bob.refresh()

    first = alice.add_message("one")
    alice.add_message("two")
    alice.edit_message(first, "one (edited)")
    alice.delete_message(2)

    bob.poll()
    assert [m.text for m in bob.messages] == ["one (edited)"]
    assert bob.messages == alice.messages


def test_listen_applies_stream(http: TestClient):
    writer = ChatClient(http=http, user_id=1)
    writer.add_message("x")
    writer.add_message("y")

    reader = ChatClient(http=http)
    events = list(reader.listen(follow=False))
    assert [e.seq for e in events] == [1, 2]
    assert [m.text for m in reader.messages] == ["y", "x"]

    # Re-listening from the cursor yields nothing new.
    assert list(reader.listen(follow=False)) == []


def test_gap_in_event_log_triggers_refresh(tmp_path: Path, missing_config: str, clean_env):
    store = MessageStore(str(tmp_path / "data"), max_events=2)
    http = TestClient(create_app(config_path=missing_config, store=store))
    for i in range(4):
        store.add(f"m{i}")

    client = ChatClient(http=http)
    client.poll()
    assert [m.text for m in client.messages] == ["m3", "m2", "m1", "m0"]
    assert client.seq == 4


def test_display_and_actions():
    client = ChatClient(http=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(404))), user_id=1)
    mine = Message(id=1, text="mine", user_id=1, username="alice")
    theirs = Message(id=2, text="theirs", user_id=2)
    client._confirmed = (theirs, mine)

    display = client.display_messages()
    assert display[0]["user"] == {"_id": 2, "name": "Anonymous"}
    assert display[1]["user"] == {"_id": 1, "name": "alice"}
    assert client.actions_for(mine) == ["Copy Text", "Edit", "Delete"]
    assert client.actions_for(theirs) == ["Copy Text"]


def _restarted_server(data_dir: Path, missing_config: str) -> TestClient:
    """Write through one store, then serve from a fresh store over the same files."""
    before = MessageStore(str(data_dir))
    before.add("before restart", user_id=1)
    before.add("also before", user_id=1)
    reloaded = MessageStore(str(data_dir))
    assert reloaded.events_since(0) == []
    return TestClient(create_app(config_path=missing_config, store=reloaded))


def test_poll_resyncs_when_server_log_was_emptied(tmp_path: Path, missing_config: str, clean_env):
    http = _restarted_server(tmp_path / "data", missing_config)

    client = ChatClient(http=http)
    assert client.poll() == []
    assert [m.text for m in client.messages] == ["also before", "before restart"]
    assert client.seq == 2

    # Caught up: the next poll does not refetch.
    assert client.poll() == []
    assert client.seq == 2


def test_listen_resyncs_when_server_log_was_emptied(tmp_path: Path, missing_config: str, clean_env):
    http = _restarted_server(tmp_path / "data", missing_config)

    client = ChatClient(http=http)
    assert list(client.listen(follow=False)) == []
    assert [m.text for m in client.messages] == ["also before", "before restart"]


def test_gap_refresh_does_not_hold_the_lock(tmp_path: Path, missing_config: str, clean_env):
    store = MessageStore(str(tmp_path / "data"), max_events=1)
    app_client = TestClient(create_app(config_path=missing_config, store=store))
    store.add("a")
    store.add("b")
    lock_free_during_refresh = []

    def try_lock() -> None:
        # Checked from another thread: the client lock is reentrant.
        acquired = client._lock.acquire(blocking=False)
        if acquired:
            client._lock.release()
        lock_free_during_refresh.append(acquired)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/messages":
            t = threading.Thread(target=try_lock)
            t.start()
            t.join()
        r = app_client.request(request.method, request.url.path, params=request.url.params)
        return httpx.Response(r.status_code, json=r.json())

    client = _mock_client(handler)
    client.poll()
    assert [m.text for m in client.messages] == ["b", "a"]
    assert lock_free_during_refresh == [True]
