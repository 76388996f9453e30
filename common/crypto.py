import base64, binascii, hashlib, hmac, json, os
from typing import Tuple

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa, padding
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from common.errors import KeyGenerationError

RSA_BITS = 2048
IV_BYTES = 12   # 96-bit nonce for AES-GCM
TAG_BYTES = 16

_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()),
                     algorithm=hashes.SHA256(),
                     label=None)


# ==================== TRANSPORT FORM ====================

def to_transport_form(b: bytes) -> str:
    ''' This function encodes bytes to a Base64 string for the wire '''
    return base64.b64encode(b).decode()

def from_transport_form(s: str) -> bytes:
    '''
    This function decodes a Base64 string produced by to_transport_form.
    Input: Base64 text
    Output: the original bytes
    Raises ValueError when the text is not valid Base64.
    '''
    try:
        return base64.b64decode(s.encode(), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid transport encoding: {e}") from e


# ==================== HASHING ====================

def hash_text(plaintext: str) -> str:
    '''
    This function returns the hex SHA-256 digest of a message text.
    The digest is stored as the message "signature"; anyone who can read the
    plaintext can recompute it, so it only detects corruption.
    '''
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()

def verify_hash(plaintext: str, digest: str) -> bool:
    ''' This function recomputes the digest of plaintext and compares it with the stored one '''
    if not digest:
        return False
    return hmac.compare_digest(hash_text(plaintext), digest)


# ==================== RSA ====================

def rsa_generate(bits: int = RSA_BITS):
    '''
    The function generates an RSA private key.
        Input: key size in bits (default 2048)
        Output: private key object
    '''
    try:
        return rsa.generate_private_key(public_exponent=65537, key_size=bits)
    except (UnsupportedAlgorithm, ValueError) as e:
        raise KeyGenerationError(f"RSA key generation failed: {e}") from e

def rsa_public_pem(priv) -> str:
    '''
    The function returns the  public key from a private key.
        Input:
            - RSA private key object
        Output:
            - PEM string of the public key
    '''
    pub = priv.public_key()
    pem = pub.public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo
    )
    return pem.decode()

def rsa_private_pem(priv) -> str:
    ''' The function returns the private key as unencrypted PKCS#8 PEM text '''
    pem = priv.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption()
    )
    return pem.decode()

def load_public_key(pub_pem: str):
    ''' This function imports an RSA public key from PEM text '''
    pub = serialization.load_pem_public_key(pub_pem.encode())
    if not isinstance(pub, rsa.RSAPublicKey):
        raise ValueError("not an RSA public key")
    return pub

def load_private_key(priv_pem: str):
    ''' This function imports an RSA private key from PEM text '''
    priv = serialization.load_pem_private_key(priv_pem.encode(), password=None)
    if not isinstance(priv, rsa.RSAPrivateKey):
        raise ValueError("not an RSA private key")
    return priv

def rsa_wrap_key(pub_pem: str, key_bytes: bytes) -> str:
    '''
    This function encrypt a AES key using the recipient's RSA public key.
    Input:
        - pub_pem: recipient’s RSA public key in PEM format (string)
        - key_bytes: the AES key (binary)
    Output: Base64 string of the wrapped key
    '''
    pub = load_public_key(pub_pem)
    wrapped = pub.encrypt(key_bytes, _OAEP)
    return to_transport_form(wrapped)

def rsa_unwrap_key(priv, wrapped_b64: str) -> bytes:
    '''
    This function decrypts AES key using the recipient's RSA private key.
    Input:
        - priv: recipient’s RSA private key object
        - wrapped_b64: Base64 string of the wrapped AES key
    Output: the unwrapped AES key in bytes
    '''
    wrapped = from_transport_form(wrapped_b64)
    return priv.decrypt(wrapped, _OAEP)

def sign_digest(priv, plaintext: str) -> str:
    ''' This function signs the SHA-256 digest of a message with RSA-PSS and returns Base64 '''
    sig = priv.sign(
        hash_text(plaintext).encode(),
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
        hashes.SHA256()
    )
    return to_transport_form(sig)

def verify_digest(pub_pem: str, plaintext: str, sig_b64: str) -> bool:
    ''' This function checks an RSA-PSS signature made by sign_digest '''
    try:
        load_public_key(pub_pem).verify(
            from_transport_form(sig_b64),
            hash_text(plaintext).encode(),
            padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
            hashes.SHA256()
        )
        return True
    except (InvalidSignature, ValueError, UnsupportedAlgorithm):
        return False


# ==================== AES ====================

def aes_key() -> bytes:
    '''This function generates a random 256-bit AES key'''
    return AESGCM.generate_key(bit_length=256)

def seal_text(key: bytes, plaintext: str) -> Tuple[str, str]:
    '''
    This function encrypts a message text with AES-GCM under a fresh IV.
    Input:
        - key: AES key in bytes (256 bits)
        - plaintext: message text
    Output: tuple of Base64 strings (iv, ciphertext with the tag appended)
    '''
    iv = os.urandom(IV_BYTES)
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return to_transport_form(iv), to_transport_form(ct)

def open_text(key: bytes, iv_b64: str, ct_b64: str) -> str:
    ''' This function reverses seal_text; raises InvalidTag if anything was altered '''
    iv = from_transport_form(iv_b64)
    ct = from_transport_form(ct_b64)
    return AESGCM(key).decrypt(iv, ct, None).decode("utf-8")


# ==================== SESSION FRAMES ====================
# After the handshake every req/res/event payload is {"enc": {"n", "c", "t"}}:
# nonce, ciphertext and GCM tag, each Base64, under the connection's session key.

def encrypt_body(key: bytes, body: dict) -> dict:
    '''
    This function encrypts a frame body with the connection's session key.
    Input:
        - key: 32-byte session key
        - body: JSON-serializable dictionary
    Output: {"enc": {"n": nonce, "c": ciphertext, "t": tag}}
    '''
    nonce = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(nonce, json.dumps(body, ensure_ascii=False).encode("utf-8"), None)
    return {"enc": {"n": to_transport_form(nonce),
                    "c": to_transport_form(sealed[:-TAG_BYTES]),
                    "t": to_transport_form(sealed[-TAG_BYTES:])}}

def decrypt_body(key: bytes, payload: dict) -> dict:
    '''
    This function reverses encrypt_body.
    Raises InvalidTag if the frame was altered or sealed with another key,
    KeyError or ValueError if the payload is malformed.
    '''
    enc = payload["enc"]
    sealed = from_transport_form(enc["c"]) + from_transport_form(enc["t"])
    data = AESGCM(key).decrypt(from_transport_form(enc["n"]), sealed, None)
    return json.loads(data.decode("utf-8"))
