"""Worker identity: a persisted Ed25519 keypair and result signing."""
from __future__ import annotations

import base64
import binascii
import json
import math
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .config import KEY_NAMESPACE
from .logs import log, warn
from .schemas import SignatureBlock

SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32


class CorruptKeyMaterial(ValueError):
    """Raised internally when a stored keypair cannot be used."""


# ---------------------------------------------------------------------------
# Key stores
# ---------------------------------------------------------------------------


class KeyStore(Protocol):
    """Byte store keyed by a namespace string."""

    def load(self, namespace: str) -> Optional[bytes]:
        ...

    def save(self, namespace: str, data: bytes) -> None:
        ...


class MemoryKeyStore:
    """In-process key store, mostly for tests and embedding."""

    def __init__(self, records: Optional[Dict[str, bytes]] = None) -> None:
        self.records: Dict[str, bytes] = dict(records or {})

    def load(self, namespace: str) -> Optional[bytes]:
        return self.records.get(namespace)

    def save(self, namespace: str, data: bytes) -> None:
        self.records[namespace] = bytes(data)


class FileKeyStore:
    """Stores each namespace as ``<directory>/<namespace>.json``."""

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory).expanduser()

    def path_for(self, namespace: str) -> Path:
        return self.directory / f"{namespace}.json"

    def load(self, namespace: str) -> Optional[bytes]:
        path = self.path_for(namespace)
        if not path.exists():
            return None
        return path.read_bytes()

    def save(self, namespace: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(namespace)
        # mkstemp creates the file 0600; os.replace swaps it in whole.
        fd, tmp_name = tempfile.mkstemp(prefix=f".{namespace}.", suffix=".tmp", dir=str(self.directory))
        replaced = False
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
            replaced = True
        finally:
            if not replaced and os.path.exists(tmp_name):
                os.unlink(tmp_name)


# ---------------------------------------------------------------------------
# Keypair
# ---------------------------------------------------------------------------


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _raw_public_bytes(public_key: Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)


@dataclass(frozen=True)
class Keypair:
    """Ed25519 signing key plus its raw public key bytes."""

    private_key: Ed25519PrivateKey
    public_key: bytes

    @classmethod
    def generate(cls) -> "Keypair":
        return cls.from_seed(
            Ed25519PrivateKey.generate().private_bytes(
                serialization.Encoding.Raw,
                serialization.PrivateFormat.Raw,
                serialization.NoEncryption(),
            )
        )

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        return cls(private_key=private_key, public_key=_raw_public_bytes(private_key.public_key()))

    @property
    def seed(self) -> bytes:
        return self.private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.public_key)

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)

    def to_record(self) -> bytes:
        # secretKey uses the seed || public key layout of tweetnacl exports.
        record = {
            "publicKey": b64encode(self.public_key),
            "secretKey": b64encode(self.seed + self.public_key),
        }
        return json.dumps(record).encode("utf-8")

    @classmethod
    def from_record(cls, data: bytes) -> "Keypair":
        try:
            parsed = json.loads(data.decode("utf-8"))
            public = base64.b64decode(parsed["publicKey"], validate=True)
            secret = base64.b64decode(parsed["secretKey"], validate=True)
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, binascii.Error) as exc:
            raise CorruptKeyMaterial(f"unreadable key record: {exc}") from exc
        if len(secret) == SEED_SIZE * 2:
            seed, embedded = secret[:SEED_SIZE], secret[SEED_SIZE:]
        elif len(secret) == SEED_SIZE:
            seed, embedded = secret, None
        else:
            raise CorruptKeyMaterial(f"secret key has unexpected length {len(secret)}")
        keypair = cls.from_seed(seed)
        if public != keypair.public_key or (embedded is not None and embedded != keypair.public_key):
            raise CorruptKeyMaterial("stored public key does not match the secret key")
        return keypair


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    if len(public_key) != PUBLIC_KEY_SIZE:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


class IdentityManager:
    """Owns the worker keypair for the lifetime of the process."""

    def __init__(self, store: KeyStore, namespace: str = KEY_NAMESPACE) -> None:
        self.store = store
        self.namespace = namespace
        self._lock = threading.Lock()
        self._keypair: Optional[Keypair] = None

    def get_or_create_identity(self) -> Keypair:
        """Return the persisted keypair, generating and saving one if needed.

        A record that cannot be parsed is replaced by a fresh keypair. The
        worker loses any standing tied to the old key in that case.
        """

        with self._lock:
            if self._keypair is not None:
                return self._keypair
            stored = self.store.load(self.namespace)
            if stored:
                try:
                    self._keypair = Keypair.from_record(stored)
                    return self._keypair
                except CorruptKeyMaterial as exc:
                    warn(f"Stored keypair unusable, regenerating: {exc}", namespace=self.namespace)
            keypair = Keypair.generate()
            self.store.save(self.namespace, keypair.to_record())
            log("Generated new worker keypair", prefix="🔐", namespace=self.namespace)
            self._keypair = keypair
            return keypair

    @property
    def public_key_b64(self) -> str:
        return self.get_or_create_identity().public_key_b64

    def sign(self, message: bytes) -> bytes:
        return self.get_or_create_identity().sign(message)

    def sign_result(self, task_id: str, worker_id: str, output: float) -> SignatureBlock:
        keypair = self.get_or_create_identity()
        signature = keypair.sign(canonical_result_message(task_id, worker_id, output))
        return SignatureBlock(signature=b64encode(signature), public_key=keypair.public_key_b64)


# ---------------------------------------------------------------------------
# Canonical message
# ---------------------------------------------------------------------------

_HTML_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def format_number(value: float) -> str:
    """Render a float the way the coordinator's JSON encoder does.

    Integral values carry no fraction and exponent notation is used only
    below 1e-6 or from 1e21 upward, matching ECMAScript number formatting.
    """

    value = float(value)
    if not math.isfinite(value):
        raise ValueError("cannot encode a non-finite number")
    sign = "-" if math.copysign(1.0, value) < 0 else ""
    if value == 0:
        return f"{sign}0"
    parts = Decimal(repr(abs(value))).as_tuple()
    all_digits = "".join(str(d) for d in parts.digits)
    point = len(all_digits) + int(parts.exponent)
    digits = all_digits.rstrip("0")
    k = len(digits)
    if k <= point <= 21:
        body = digits + "0" * (point - k)
    elif 0 < point <= 21:
        body = f"{digits[:point]}.{digits[point:]}"
    elif -6 < point <= 0:
        body = "0." + "0" * (-point) + digits
    else:
        exponent = point - 1
        exp_sign = "+" if exponent >= 0 else "-"
        mantissa = digits if k == 1 else f"{digits[0]}.{digits[1:]}"
        body = f"{mantissa}e{exp_sign}{abs(exponent)}"
    return sign + body


# A surrogate left unpaired after JSON decoding; the coordinator reads it as U+FFFD.
_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def _encode_string(value: str) -> str:
    text = _LONE_SURROGATE.sub("\ufffd", str(value))
    encoded = json.dumps(text, ensure_ascii=False)
    for char, escape in _HTML_ESCAPES.items():
        encoded = encoded.replace(char, escape)
    return encoded


def canonical_result_message(task_id: str, worker_id: str, output: float) -> bytes:
    """Bytes signed for a result: compact ``{"id","worker","output"}`` JSON."""

    text = "{" + ",".join(
        [
            f'"id":{_encode_string(task_id)}',
            f'"worker":{_encode_string(worker_id)}',
            f'"output":{format_number(output)}',
        ]
    ) + "}"
    return text.encode("utf-8")


__all__ = [
    "CorruptKeyMaterial",
    "FileKeyStore",
    "IdentityManager",
    "KeyStore",
    "Keypair",
    "MemoryKeyStore",
    "b64encode",
    "canonical_result_message",
    "format_number",
    "verify_signature",
]
