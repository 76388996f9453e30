from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat client and its ciphers."""


class KeyGenerationError(ChatError):
    """Raised when the crypto provider cannot produce a keypair."""


class EncryptionError(ChatError):
    """Raised when a message cannot be encrypted; callers send it unencrypted instead."""


class DecryptionError(ChatError):
    """Raised when an envelope cannot be opened with the viewer's private key."""


class NoKeyForViewer(DecryptionError):
    """Raised when an envelope carries no wrapped key for the viewer."""


class SignatureMismatch(ChatError):
    """Raised when decrypted text does not match the stored digest.

    The decrypted text is kept on the exception so it can still be shown
    with a warning.
    """

    def __init__(self, plaintext: str, message: str = "signature mismatch"):
        super().__init__(message)
        self.plaintext = plaintext


class RequestError(ChatError):
    """Raised when the server rejects a request, or the request times out."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class DuplicateUsernameError(RequestError):
    """Raised when the server rejects an auth because the username is already in use."""

    def __init__(self, message: str = "Username already exists"):
        super().__init__("DUPLICATE_USERNAME", message)
