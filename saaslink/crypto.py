"""
crypto.py — RSA-2048 + AES-GCM helpers for the control-plane channel.

Why this exists:
- Keep all key handling in one place so the handshake and the dispatcher can
  call `seal/open_sealed` without worrying about padding details.
- Use URL-safe Base64 without '=' padding so values drop cleanly into JSON.
- Enforce RSA-2048 everywhere so we don't end up mixing key sizes.

Notes:
- RSA-OAEP+SHA256 only ever wraps a fresh AES-256 key; the body itself is
  AES-GCM. Replies such as a server snapshot are far too big for raw RSA.
- `derive_artifact_name` is the deterministic temp-file naming used by the
  file sync pipeline.
"""

import base64
import hashlib
import json
import os
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537

# Temp artifact naming (PBKDF2-HMAC-SHA256).
DERIVE_ITERATIONS = 4096
DERIVE_LENGTH = 32

NONCE_SIZE = 12  # 96-bit GCM nonce

# -----------------------------
# Base64 URL helpers (no padding)
# -----------------------------

def b64url_encode(data: bytes) -> str:
    """URL-safe Base64 without '=' padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    """Decode our URL-safe, no-padding Base64 back to bytes."""
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len)


# -------------
# RSA key utils
# -------------

def enforce_rsa2048(key) -> None:
    """Only RSA keys, only 2048-bit ones."""
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        if key.key_size != KEY_SIZE:
            raise InvalidKey(f"Key must be RSA-{KEY_SIZE} bits.")
    else:
        raise InvalidKey("Key must be RSA public/private key.")


def generate_keypair() -> Tuple[rsa.RSAPrivateKey, rsa.RSAPublicKey]:
    """Generate a fresh RSA-2048 keypair (public exponent 65537)."""
    priv = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
    return priv, priv.public_key()


def export_pubkey_pem(pub: rsa.RSAPublicKey) -> str:
    """Public key as a PEM (SubjectPublicKeyInfo) string, the form the peer imports."""
    pem = pub.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode("ascii")


def import_pubkey_pem(data: str) -> rsa.RSAPublicKey:
    """
    Inverse of export_pubkey_pem().

    Raises ValueError/InvalidKey for anything that is not an RSA-2048 public key.
    """
    if not isinstance(data, (str, bytes)):
        raise ValueError("Public key must be a PEM string.")
    pem = data.encode("ascii") if isinstance(data, str) else data
    pub = serialization.load_pem_public_key(pem)
    enforce_rsa2048(pub)
    return pub


# ---------------------------
# Encryption & Decryption API
# ---------------------------

def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def rsa_encrypt(pub: rsa.RSAPublicKey, plaintext: bytes) -> str:
    """
    Encrypt bytes with RSA-OAEP(SHA-256) and return Base64url ciphertext.

    Keep plaintext small (190 bytes max for 2048-bit keys); use seal() for data.
    """
    enforce_rsa2048(pub)
    return b64url_encode(pub.encrypt(plaintext, _oaep()))


def rsa_decrypt(priv: rsa.RSAPrivateKey, ct_b64: str) -> bytes:
    """Reverse of rsa_encrypt(). Takes Base64url ciphertext, returns bytes."""
    enforce_rsa2048(priv)
    return priv.decrypt(b64url_decode(ct_b64), _oaep())


def seal(pub: rsa.RSAPublicKey, obj: Any) -> Dict[str, str]:
    """
    Encrypt a JSON-serializable object for the holder of `pub`.

    A one-off AES-256 key encrypts the JSON body; RSA-OAEP wraps that key.
    Returns {"key", "nonce", "ciphertext"}, all Base64url.
    """
    body = json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    key = AESGCM.generate_key(bit_length=256)
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, body, None)
    return {
        "key": rsa_encrypt(pub, key),
        "nonce": b64url_encode(nonce),
        "ciphertext": b64url_encode(ct),
    }


def open_sealed(priv: rsa.RSAPrivateKey, box: Dict[str, str]) -> Any:
    """
    Reverse of seal(). Raises ValueError on any malformed or tampered box.

    Callers treat every failure the same way, so the underlying cause
    (wrong key, bad tag, broken JSON) is collapsed into one error type.
    """
    if not isinstance(box, dict):
        raise ValueError("Sealed box must be an object.")
    try:
        key = rsa_decrypt(priv, box["key"])
        nonce = b64url_decode(box["nonce"])
        body = AESGCM(key).decrypt(nonce, b64url_decode(box["ciphertext"]), None)
        return json.loads(body.decode("utf-8"))
    except Exception as exc:
        raise ValueError(f"Unable to open sealed box: {type(exc).__name__}") from exc


# ---------------------------------------
# Deterministic temp artifact naming
# ---------------------------------------

def derive_artifact_name(file_token: str, session_token: str) -> str:
    """
    PBKDF2-HMAC-SHA256(file_token, salt=session_token), 4096 rounds, 32 bytes, hex.

    Same inputs always give the same 64-char name, so a transfer's scratch
    file can be found again for cleanup or debugging.
    """
    derived = hashlib.pbkdf2_hmac(
        "sha256",
        file_token.encode("utf-8"),
        session_token.encode("utf-8"),
        DERIVE_ITERATIONS,
        DERIVE_LENGTH,
    )
    return derived.hex()
