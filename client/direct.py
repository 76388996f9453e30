"""Hybrid encryption of direct messages.

One AES-256-GCM key per message encrypts the text; the key is wrapped twice
with RSA-OAEP, once for the recipient and once for the sender, so both sides
can read the stored message later without anyone keeping the plaintext.
"""
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm

from common import crypto
from common.errors import DecryptionError, EncryptionError, NoKeyForViewer
from common.schema import Envelope

log = logging.getLogger(__name__)


async def encrypt_for_direct(plaintext: str, recipient_public_key: str,
                             sender_private_key, sender_public_key: str) -> Envelope:
    '''
    Encrypt plaintext for a recipient and for the sender's own copy.
    Input:
        - recipient_public_key, sender_public_key: PEM text
        - sender_private_key: RSA private key object, or None to skip the RSA-PSS signature
    Output: Envelope with both wrapped-key slots filled
    Raises EncryptionError if a key cannot be imported or a crypto operation fails.
    '''
    try:
        key = crypto.aes_key()
        iv, ciphertext = crypto.seal_text(key, plaintext)
        encrypted_key = crypto.rsa_wrap_key(recipient_public_key, key)
        sender_encrypted_key = crypto.rsa_wrap_key(sender_public_key, key)
        auth_signature = crypto.sign_digest(sender_private_key, plaintext) if sender_private_key is not None else None
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncryptionError(f"direct encryption failed: {e}") from e

    return Envelope(
        ciphertext=ciphertext,
        iv=iv,
        signature=crypto.hash_text(plaintext),
        encrypted_key=encrypted_key,
        sender_encrypted_key=sender_encrypted_key,
        auth_signature=auth_signature,
    )


def unwrap_and_open(envelope: Envelope, wrapped: str, private_key) -> str:
    ''' Unwrap the message key with private_key and decrypt the envelope text '''
    if private_key is None:
        raise DecryptionError("no private key loaded")
    try:
        key = crypto.rsa_unwrap_key(private_key, wrapped)
        return crypto.open_text(key, envelope.iv, envelope.ciphertext)
    except (InvalidTag, ValueError, TypeError, UnicodeDecodeError) as e:
        raise DecryptionError(f"could not decrypt message: {e.__class__.__name__}") from e


async def decrypt_for_direct(envelope: Envelope, private_key, viewer_is_sender: bool) -> str:
    '''
    Decrypt a direct envelope with the slot that belongs to the viewer.
    Raises NoKeyForViewer if that slot is empty, DecryptionError if decryption fails.
    '''
    wrapped: Optional[str] = envelope.sender_encrypted_key if viewer_is_sender else envelope.encrypted_key
    if not wrapped:
        raise NoKeyForViewer("no wrapped key for the %s" % ("sender" if viewer_is_sender else "recipient"))
    return unwrap_and_open(envelope, wrapped, private_key)


def verify(plaintext: str, stored_hash: str) -> bool:
    return crypto.verify_hash(plaintext, stored_hash)
