import stat

import pytest
from cryptography.exceptions import UnsupportedAlgorithm

from client.keystore import KeyStore, STORAGE_KEY
from common import crypto
from common.errors import KeyGenerationError


def test_empty_store(tmp_path):
    ks = KeyStore(tmp_path, "alice")
    assert not ks.has_keys()
    assert ks.load_private_key() is None
    assert ks.private_key_object() is None


def test_persist_and_load_in_a_new_instance(tmp_path, alice):
    KeyStore(tmp_path, "alice").persist_private_key(alice.pair)

    again = KeyStore(tmp_path, "alice")
    assert again.has_keys()
    loaded = again.load_private_key()
    assert loaded.private_key == alice.pair.private_key
    assert loaded.public_key == alice.public_pem
    assert again.private_key_object() is not None


def test_key_file_is_private(tmp_path, alice):
    ks = KeyStore(tmp_path, "alice")
    ks.persist_private_key(alice.pair)
    assert ks.path.name == f"{STORAGE_KEY}.alice.pem"
    assert stat.S_IMODE(ks.path.stat().st_mode) == 0o600


def test_persist_replaces_the_previous_key(tmp_path, alice, bob):
    ks = KeyStore(tmp_path, "alice")
    ks.persist_private_key(alice.pair)
    ks.persist_private_key(bob.pair)
    assert KeyStore(tmp_path, "alice").load_private_key().public_key == bob.public_pem
    assert len(list(tmp_path.iterdir())) == 1


def test_accounts_do_not_share_keys(tmp_path, alice):
    ks = KeyStore(tmp_path, "alice")
    ks.persist_private_key(alice.pair)
    ks.bind("bob")
    assert not ks.has_keys()
    assert ks.private_key_object() is None


def test_clear(tmp_path, alice):
    ks = KeyStore(tmp_path, "alice")
    ks.persist_private_key(alice.pair)
    ks.clear_private_key()
    assert not ks.has_keys()
    assert ks.private_key_object() is None
    ks.clear_private_key()


def test_unreadable_key_file_is_ignored(tmp_path):
    ks = KeyStore(tmp_path, "alice")
    ks.path.write_text("garbage", encoding="utf-8")
    assert ks.load_private_key() is None


def test_persist_rejects_a_broken_key(tmp_path, alice):
    broken = alice.pair.model_copy(update={"private_key": "nope"})
    with pytest.raises(ValueError):
        KeyStore(tmp_path, "alice").persist_private_key(broken)


def test_generate_key_pair():
    pair = KeyStore.generate_key_pair()
    priv = crypto.load_private_key(pair.private_key)
    assert priv.key_size == crypto.RSA_BITS
    assert crypto.rsa_public_pem(priv) == pair.public_key


def test_generation_failure_is_surfaced(monkeypatch):
    def unavailable(**kwargs):
        raise UnsupportedAlgorithm("no RSA backend")

    monkeypatch.setattr(crypto.rsa, "generate_private_key", unavailable)
    with pytest.raises(KeyGenerationError):
        KeyStore.generate_key_pair()


def test_preferences_are_per_account(tmp_path):
    ks = KeyStore(tmp_path, "alice")
    assert ks.preference("sound") is None
    ks.save_preference("sound", True)
    assert KeyStore(tmp_path, "alice").preference("sound") is True
    assert KeyStore(tmp_path, "bob").preference("sound", False) is False


def test_unreadable_preferences_fall_back_to_default(tmp_path):
    ks = KeyStore(tmp_path, "alice")
    ks.prefs_path.write_text("{not json", encoding="utf-8")
    assert ks.preference("sound", False) is False
    ks.save_preference("sound", True)
    assert ks.preference("sound") is True
