"""Device identity: a stable device id plus an RSA keypair.

The keypair is generated once and kept encrypted at rest. Key material
that cannot be read back is treated as missing and regenerated; the
gateway re-authorizes the new public key on the next handshake.

An assertion signs ``deviceId:nonce:signedAt`` with RSA PKCS#1 v1.5 over
SHA-256; the gateway verifies it against the same canonical string.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import platform
import re
import secrets
import socket
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from .config import SettingsStore
from .protocol import DeviceInfo

logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
NONCE_BYTES = 16


class IdentityError(Exception):
    """Raised when key material cannot be generated or used for signing."""


@dataclass(frozen=True)
class DeviceIdentity:
    id: str
    public_key: bytes  # DER SubjectPublicKeyInfo

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key).decode("ascii")


@dataclass(frozen=True)
class SignedAssertion:
    device_id: str
    public_key: str  # base64 DER
    signature: str  # base64
    signed_at: int  # unix ms
    nonce: str

    def to_device_info(self) -> DeviceInfo:
        return DeviceInfo(
            id=self.device_id,
            public_key=self.public_key,
            signature=self.signature,
            signed_at=self.signed_at,
            nonce=self.nonce,
        )


def canonical_string(device_id: str, nonce: str, signed_at: int) -> str:
    return f"{device_id}:{nonce}:{signed_at}"


def generate_nonce() -> str:
    return base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")


def verify_assertion(assertion: SignedAssertion, public_key: bytes | str | None = None) -> bool:
    """Check *assertion* against *public_key* (defaults to the key it carries).

    Returns ``False`` for a bad signature or any malformed input.
    """
    try:
        if public_key is None:
            public_key = assertion.public_key
        if isinstance(public_key, str):
            public_key = base64.b64decode(public_key, validate=True)
        key = serialization.load_der_public_key(public_key)
        if not isinstance(key, rsa.RSAPublicKey):
            return False
        signature = base64.b64decode(assertion.signature, validate=True)
        data = canonical_string(assertion.device_id, assertion.nonce, assertion.signed_at)
        key.verify(signature, data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        return True
    except (InvalidSignature, ValueError, TypeError, UnsupportedAlgorithm):
        return False


def derive_device_id() -> str:
    """Build a device id from stable platform attributes."""
    system = platform.system() or "unknown"
    machine = platform.machine() or "unknown"
    hostname = socket.gethostname() or "host"
    node = hashlib.sha256(str(uuid.getnode()).encode()).hexdigest()[:8]
    raw = f"{system}-{machine}-{hostname}-{node}".lower().replace(" ", "-")
    return re.sub(r"[^a-z0-9._-]", "-", raw)


def machine_passphrase() -> bytes:
    """Machine-bound passphrase for the key file when none is configured."""
    components = [
        platform.node(),
        platform.machine(),
        socket.gethostname(),
        str(uuid.getnode()),
    ]
    return hashlib.sha256("|".join(components).encode()).hexdigest().encode()


class DeviceIdentityManager:
    """Owns the device id and keypair; hands out signed assertions."""

    def __init__(
        self,
        store: SettingsStore,
        key_path: str | Path | None = None,
        passphrase: bytes | str | None = None,
    ):
        self.store = store
        self.key_path = Path(key_path) if key_path else store.config.key_path
        if passphrase is None:
            passphrase = os.environ.get("CLAWNODE_KEY_PASSPHRASE") or machine_passphrase()
        self._passphrase = passphrase.encode() if isinstance(passphrase, str) else passphrase
        self._lock = threading.Lock()
        self._private_key: rsa.RSAPrivateKey | None = None
        self._identity: DeviceIdentity | None = None

    def identity(self) -> DeviceIdentity:
        """Return the device identity, creating id and keys on first use."""
        return self._material()[0]

    def _material(self) -> tuple[DeviceIdentity, rsa.RSAPrivateKey]:
        with self._lock:
            if self._identity is None:
                device_id = self._device_id()
                key = self._load_or_create_key()
                public_der = key.public_key().public_bytes(
                    encoding=serialization.Encoding.DER,
                    format=serialization.PublicFormat.SubjectPublicKeyInfo,
                )
                self._private_key = key
                self._identity = DeviceIdentity(id=device_id, public_key=public_der)
            return self._identity, self._private_key

    def sign_assertion(self, nonce: str | None = None, challenge: str | None = None) -> SignedAssertion:
        """Produce a fresh assertion for one connection attempt.

        *challenge* is only used for logging context; the signed data is
        always the canonical ``deviceId:nonce:signedAt`` string.
        """
        identity, key = self._material()
        if not nonce:
            nonce = generate_nonce()
        signed_at = int(time.time() * 1000)
        data = canonical_string(identity.id, nonce, signed_at)
        try:
            signature = key.sign(
                data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
            )
        except Exception as exc:
            raise IdentityError(f"Signing failed: {exc}") from exc
        if challenge is not None:
            logger.debug("Signed assertion for challenge (%d chars)", len(challenge))
        return SignedAssertion(
            device_id=identity.id,
            public_key=identity.public_key_b64,
            signature=base64.b64encode(signature).decode("ascii"),
            signed_at=signed_at,
            nonce=nonce,
        )

    def reset(self) -> None:
        """Forget the cached identity so the next call reloads from disk."""
        with self._lock:
            self._identity = None
            self._private_key = None

    # ── Internals ─────────────────────────────────────────────────

    def _device_id(self) -> str:
        cfg = self.store.config
        if cfg.device_id:
            return cfg.device_id
        device_id = derive_device_id()
        self.store.save_device_info(device_id, cfg.device_token)
        logger.info("Created device id %s", device_id)
        return device_id

    def _load_or_create_key(self) -> rsa.RSAPrivateKey:
        key = self._load_key()
        if key is not None:
            return key
        try:
            key = rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)
        except Exception as exc:
            raise IdentityError(f"Key generation failed: {exc}") from exc
        self._write_key(key)
        logger.info("Generated new %d-bit device key at %s", KEY_SIZE, self.key_path)
        return key

    def _load_key(self) -> rsa.RSAPrivateKey | None:
        if not self.key_path.exists():
            return None
        try:
            key = serialization.load_pem_private_key(
                self.key_path.read_bytes(), password=self._passphrase
            )
        except (OSError, ValueError, TypeError, UnsupportedAlgorithm) as exc:
            logger.warning("Stored device key unusable (%s), regenerating", exc)
            return None
        if not isinstance(key, rsa.RSAPrivateKey):
            logger.warning("Stored device key is not RSA, regenerating")
            return None
        return key

    def _write_key(self, key: rsa.RSAPrivateKey) -> None:
        pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(self._passphrase),
        )
        try:
            self.key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(pem)
        except OSError as exc:
            raise IdentityError(f"Cannot persist device key to {self.key_path}: {exc}") from exc
        try:
            self.key_path.chmod(0o600)
        except PermissionError:
            # chmod unsupported here
            pass
