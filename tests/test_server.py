import os

import pytest

from common.crypto import encrypt_body
from server.main import ChatServer


class RecordingClient:
    def __init__(self, username):
        self.username = username
        self.aes_key = os.urandom(32)
        self.sent = []

    def send_encrypted(self, type_, body):
        self.sent.append((type_, body))


@pytest.fixture(scope="module")
def server():
    return ChatServer("127.0.0.1", 0)


def _request(server, client, action, params):
    body = {"id": 7, "action": action, "params": params}
    server.handle_request(client, {"payload": encrypt_body(client.aes_key, body)})
    [(kind, res)] = client.sent
    assert kind == "res" and res["id"] == 7
    return res


@pytest.mark.parametrize("params", [["alice"], "alice", 42])
def test_non_object_params_are_a_bad_request(server, params):
    res = _request(server, RecordingClient("alice"), "messages.list", params)
    assert res["ok"] is False
    assert res["error"]["code"] == "BAD_REQUEST"


def test_wrongly_typed_message_is_a_bad_request(server):
    server.store.ensure_account("bob", "Bob")
    res = _request(server, RecordingClient("alice"), "messages.send", {"userId": "bob", "message": ["hi"]})
    assert res["ok"] is False
    assert res["error"]["code"] == "BAD_REQUEST"


def test_unknown_action(server):
    res = _request(server, RecordingClient("alice"), "rooms.explode", {})
    assert res["error"]["code"] == "UNKNOWN_ACTION"


def test_valid_request_still_answers(server):
    server.store.ensure_account("alice", "Alice")
    res = _request(server, RecordingClient("alice"), "auth.me", {})
    assert res["ok"] is True
    assert res["data"]["_id"] == "alice"
