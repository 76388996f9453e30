from dataclasses import dataclass
from typing import Dict

import pytest

from common import crypto
from common.schema import KeyPair


@dataclass
class Party:
    name: str
    pair: KeyPair
    private: object

    @property
    def public_pem(self) -> str:
        return self.pair.public_key


# RSA generation is slow, so every test shares these three accounts
@pytest.fixture(scope="session")
def parties() -> Dict[str, Party]:
    out = {}
    for name in ("alice", "bob", "carol"):
        priv = crypto.rsa_generate()
        pair = KeyPair(public_key=crypto.rsa_public_pem(priv), private_key=crypto.rsa_private_pem(priv))
        out[name] = Party(name, pair, priv)
    return out


@pytest.fixture
def alice(parties):
    return parties["alice"]


@pytest.fixture
def bob(parties):
    return parties["bob"]


@pytest.fixture
def carol(parties):
    return parties["carol"]
