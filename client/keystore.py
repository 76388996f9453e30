import json
import logging
import os
from pathlib import Path
from typing import Optional

from common import crypto
from common.errors import KeyGenerationError
from common.schema import KeyPair

log = logging.getLogger(__name__)

STORAGE_KEY = "closer_private_key"
PREFS_KEY = "closer_prefs"


class KeyStore:
    '''
    Local durable storage for one account's private key.
    The key lives in <root>/<STORAGE_KEY>[.<account>].pem; persisting a key replaces
    the previous one, so at most one key is resident per account context.
    '''
    def __init__(self, root: Path, account_id: Optional[str] = None):
        self.root = Path(root)
        self.account_id = account_id
        self._private = None   # imported key object, cached after first load

    @property
    def path(self) -> Path:
        name = STORAGE_KEY if not self.account_id else f"{STORAGE_KEY}.{self.account_id}"
        return self.root / f"{name}.pem"

    @property
    def prefs_path(self) -> Path:
        name = PREFS_KEY if not self.account_id else f"{PREFS_KEY}.{self.account_id}"
        return self.root / f"{name}.json"

    def bind(self, account_id: str) -> None:
        ''' Switch the store to another account context '''
        if account_id != self.account_id:
            self.account_id = account_id
            self._private = None

    @staticmethod
    def generate_key_pair() -> KeyPair:
        '''
        Generate a fresh RSA keypair.
        Raises KeyGenerationError if the crypto provider is unavailable.
        '''
        priv = crypto.rsa_generate()
        try:
            return KeyPair(public_key=crypto.rsa_public_pem(priv), private_key=crypto.rsa_private_pem(priv))
        except ValueError as e:
            raise KeyGenerationError(f"could not export generated key: {e}") from e

    def persist_private_key(self, key_pair: KeyPair) -> None:
        priv = crypto.load_private_key(key_pair.private_key)
        self.root.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(key_pair.private_key, encoding="utf-8")
        os.chmod(tmp, 0o600)
        os.replace(tmp, self.path)
        self._private = priv
        log.debug("stored private key at %s", self.path)

    def load_private_key(self) -> Optional[KeyPair]:
        if not self.path.exists():
            return None
        pem = self.path.read_text(encoding="utf-8")
        try:
            priv = crypto.load_private_key(pem)
        except ValueError:
            log.warning("ignoring unreadable private key at %s", self.path)
            return None
        self._private = priv
        return KeyPair(public_key=crypto.rsa_public_pem(priv), private_key=pem)

    def private_key_object(self):
        ''' The imported private key, or None when no key is stored '''
        if self._private is None:
            self.load_private_key()
        return self._private

    def clear_private_key(self) -> None:
        self._private = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def has_keys(self) -> bool:
        return self.path.exists()

    # ---------- preferences ----------
    # small per-account settings kept next to the key, e.g. {"sound": true}

    def _read_prefs(self) -> dict:
        try:
            prefs = json.loads(self.prefs_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            log.warning("ignoring unreadable preferences at %s", self.prefs_path)
            return {}
        return prefs if isinstance(prefs, dict) else {}

    def preference(self, name: str, default=None):
        return self._read_prefs().get(name, default)

    def save_preference(self, name: str, value) -> None:
        prefs = self._read_prefs()
        prefs[name] = value
        self.root.mkdir(parents=True, exist_ok=True)
        self.prefs_path.write_text(json.dumps(prefs), encoding="utf-8")
