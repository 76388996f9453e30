from client.account import AccountManager
from client.keystore import KeyStore
from client.session import SessionState
from common import crypto
from common.schema import Account
from helpers import run


class KeysNet:
    def __init__(self):
        self.stored = []

    async def store_keys(self, public_key, private_key=None):
        self.stored.append((public_key, private_key))


def _manager(tmp_path):
    net = KeysNet()
    session = SessionState(lambda _id: None)
    return AccountManager(net, KeyStore(tmp_path), session), net, session


def test_first_login_enrolls(tmp_path):
    mgr, net, session = _manager(tmp_path)
    pair = run(mgr.restore_session(Account(id="dave")))
    assert net.stored == [(pair.public_key, pair.private_key)]
    assert mgr.keystore.has_keys()
    assert mgr.keystore.path.name.endswith(".dave.pem")
    assert session.public_key == pair.public_key
    assert "dave" in session.keys


def test_local_key_is_reused(tmp_path, alice):
    mgr, net, session = _manager(tmp_path)
    KeyStore(tmp_path, "alice").persist_private_key(alice.pair)
    pair = run(mgr.restore_session(Account(id="alice", public_key=alice.public_pem)))
    assert pair.public_key == alice.public_pem
    assert net.stored == []
    assert session.public_key == alice.public_pem


def test_unpublished_local_key_is_published(tmp_path, alice):
    mgr, net, _ = _manager(tmp_path)
    KeyStore(tmp_path, "alice").persist_private_key(alice.pair)
    run(mgr.restore_session(Account(id="alice")))
    assert net.stored == [(alice.public_pem, alice.pair.private_key)]


def test_new_device_recovers_escrowed_key(tmp_path, alice):
    mgr, net, session = _manager(tmp_path)
    account = Account(id="alice", public_key=alice.public_pem, private_key=alice.pair.private_key)
    pair = run(mgr.restore_session(account))
    assert pair.private_key == alice.pair.private_key
    assert net.stored == []
    assert crypto.rsa_public_pem(mgr.keystore.private_key_object()) == alice.public_pem


def test_logout_keeps_keys(tmp_path, alice):
    mgr, _, session = _manager(tmp_path)
    KeyStore(tmp_path, "alice").persist_private_key(alice.pair)
    run(mgr.restore_session(Account(id="alice", public_key=alice.public_pem)))
    mgr.logout()
    assert session.account is None
    assert mgr.keystore.has_keys()
    mgr.forget_keys()
    assert not mgr.keystore.has_keys()
