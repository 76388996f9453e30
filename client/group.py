"""Group message encryption: one ciphertext, one wrapped key per member."""
import logging
from typing import Iterable, List, Optional, Protocol

from cryptography.exceptions import UnsupportedAlgorithm

from common import crypto
from common.errors import EncryptionError, NoKeyForViewer, SignatureMismatch
from common.schema import Envelope, WrappedKey
from client.direct import unwrap_and_open

log = logging.getLogger(__name__)


class KeySource(Protocol):
    async def get(self, identity: str) -> Optional[str]: ...


async def encrypt_for_group(plaintext: str, member_ids: Iterable[str], sender_private_key,
                            sender_public_key: str, key_source: KeySource,
                            sender_id: Optional[str] = None) -> Envelope:
    '''
    Encrypt plaintext once and wrap its key for every member whose public key can be found.
    Members without a key are skipped and will not be able to read this message.
    The returned envelope is_encrypted only if at least one key was wrapped.
    Raises EncryptionError if the text itself cannot be encrypted.
    '''
    try:
        key = crypto.aes_key()
        iv, ciphertext = crypto.seal_text(key, plaintext)
        auth_signature = crypto.sign_digest(sender_private_key, plaintext) if sender_private_key is not None else None
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncryptionError(f"group encryption failed: {e}") from e

    wrapped: List[WrappedKey] = []
    seen = set()
    for member_id in member_ids:
        if member_id in seen:
            continue
        seen.add(member_id)
        if member_id == sender_id and sender_public_key:
            public_key = sender_public_key
        else:
            public_key = await key_source.get(member_id)
        if not public_key:
            log.info("no public key for %s; they will not be able to read this message", member_id)
            continue
        try:
            wrapped.append(WrappedKey(recipient_id=member_id,
                                      encrypted_key=crypto.rsa_wrap_key(public_key, key)))
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            log.warning("skipping %s, unusable public key: %s", member_id, e)

    return Envelope(
        ciphertext=ciphertext,
        iv=iv,
        signature=crypto.hash_text(plaintext),
        encrypted_keys=wrapped,
        auth_signature=auth_signature,
    )


async def decrypt_for_group(envelope: Envelope, viewer_id: str, private_key) -> str:
    '''
    Decrypt a group envelope using the viewer's own entry, then check the stored digest.
    Raises NoKeyForViewer, DecryptionError, or SignatureMismatch (which carries the text).
    '''
    wrapped = envelope.key_for(viewer_id)
    if not wrapped:
        raise NoKeyForViewer(f"no wrapped key for {viewer_id}")
    plaintext = unwrap_and_open(envelope, wrapped, private_key)
    if not crypto.verify_hash(plaintext, envelope.signature):
        raise SignatureMismatch(plaintext)
    return plaintext
