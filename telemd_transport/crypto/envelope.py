"""
Symmetric envelope encryption and request signing.

Envelopes are AES-CBC with PKCS7 padding under the pre-shared key. Every
encryption draws a fresh 16-byte IV which travels in front of the
ciphertext, and the whole thing is base64 encoded.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import parse_qsl, urlencode

from Crypto.Cipher import AES
from Crypto.Hash import HMAC, SHA256
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

from telemd_transport.core.config import ApiConfig, CryptoConfig
from telemd_transport.core.exceptions import ConfigurationError, EnvelopeError, ValidationError
from telemd_transport.core.models import BodyFormat, ParamValue, RequestEnvelope

IV_SIZE = AES.block_size


def _form_value(value: ParamValue) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def serialize_params(params: Mapping[str, ParamValue], body_format: BodyFormat = BodyFormat.JSON) -> bytes:
    """Serialize params with a stable key order."""
    if body_format is BodyFormat.FORM:
        pairs = [(key, _form_value(params[key])) for key in sorted(params)]
        return urlencode(pairs).encode("utf-8")
    return json.dumps(
        dict(params), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def validate_params(params: Mapping[str, Any]) -> Dict[str, ParamValue]:
    """Reject keys and values the wire format cannot carry."""
    checked: Dict[str, ParamValue] = {}
    for key, value in params.items():
        if not isinstance(key, str) or not key:
            raise ValidationError("Parameter names must be non-empty strings", details={"key": repr(key)})
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValidationError(
                f"Parameter '{key}' must be a primitive; serialize nested values to a JSON string first",
                details={"key": key, "type": type(value).__name__},
            )
        checked[key] = value
    return checked


def _normalize_base64(text: str) -> str:
    normalized = "".join(text.split()).replace("-", "+").replace("_", "/")
    remainder = len(normalized) % 4
    if remainder:
        normalized += "=" * (4 - remainder)
    return normalized


class EnvelopeCipher:
    """AES envelope codec bound to one shared key."""

    def __init__(self, key: bytes | str, iv_factory: Callable[[int], bytes] = get_random_bytes):
        if isinstance(key, str):
            key = key.encode("utf-8")
        if len(key) not in (16, 24, 32):
            raise ConfigurationError("Encryption key must be 16, 24 or 32 bytes")
        self._key = key
        self._iv_factory = iv_factory

    @classmethod
    def from_config(cls, config: CryptoConfig) -> "EnvelopeCipher":
        if not config.encryption_key:
            raise ConfigurationError("TELEMD_ENCRYPTION_KEY is not set")
        return cls(config.encryption_key)

    def encrypt(self, plaintext: bytes | str) -> str:
        if isinstance(plaintext, str):
            plaintext = plaintext.encode("utf-8")
        iv = self._iv_factory(IV_SIZE)
        cipher = AES.new(self._key, AES.MODE_CBC, iv)
        return base64.b64encode(iv + cipher.encrypt(pad(plaintext, AES.block_size))).decode("ascii")

    def decrypt(self, ciphertext: str) -> bytes:
        if not isinstance(ciphertext, str) or not ciphertext.strip():
            raise EnvelopeError("Empty ciphertext")
        try:
            raw = base64.b64decode(_normalize_base64(ciphertext), validate=True)
        except (binascii.Error, ValueError) as e:
            raise EnvelopeError(f"Ciphertext is not valid base64: {e}") from e

        if len(raw) < 2 * IV_SIZE or len(raw) % AES.block_size:
            raise EnvelopeError("Ciphertext has an invalid length", details={"length": len(raw)})

        iv, body = raw[:IV_SIZE], raw[IV_SIZE:]
        try:
            return unpad(AES.new(self._key, AES.MODE_CBC, iv).decrypt(body), AES.block_size)
        except ValueError as e:
            raise EnvelopeError("Ciphertext padding is invalid (wrong key?)") from e

    def encrypt_json(self, obj: Any) -> str:
        return self.encrypt(json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False))

    def decrypt_json(self, ciphertext: str) -> Any:
        # Some servers pad plaintext with NUL bytes before encrypting
        text = self.decrypt(ciphertext).decode("utf-8", errors="replace").replace("\0", "").strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise EnvelopeError(f"Decrypted payload is not JSON: {e}") from e

    def seal(
        self,
        operation: str,
        params: Mapping[str, ParamValue],
        body_format: BodyFormat = BodyFormat.JSON,
    ) -> RequestEnvelope:
        """Build the encrypted envelope for one request."""
        checked = validate_params(params)
        return RequestEnvelope(
            operation=operation,
            params=checked,
            body_format=body_format,
            ciphertext=self.encrypt(serialize_params(checked, body_format)),
        )

    def open_params(self, envelope: RequestEnvelope) -> Dict[str, Any]:
        """Decrypt an envelope back into its params mapping."""
        plaintext = self.decrypt(envelope.ciphertext).decode("utf-8")
        if envelope.body_format is BodyFormat.FORM:
            return dict(parse_qsl(plaintext, keep_blank_values=True))
        return json.loads(plaintext)


def decode_payload(raw: Any, cipher: EnvelopeCipher) -> Any:
    """
    Turn a server payload into Python data.

    Accepts already-decoded dicts/lists, plain JSON strings, and encrypted
    strings; anything else is an EnvelopeError.
    """
    if isinstance(raw, (dict, list)):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise EnvelopeError("Unsupported payload type", details={"type": type(raw).__name__})

    text = raw.strip()
    if text.startswith("{") or text.startswith("["):
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise EnvelopeError(f"Payload is not JSON: {e}") from e
    return cipher.decrypt_json(text)


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """yyyyMMddHHmmss in UTC."""
    return (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")


class RequestSigner:
    """Builds the HMAC auth headers expected by the backend."""

    def __init__(self, app_name: str, auth_scheme: str, secret: str, device_id: str):
        if not secret:
            raise ConfigurationError("Request signing secret is not set")
        self.app_name = app_name
        self.auth_scheme = auth_scheme
        self.device_id = device_id
        self._secret = secret.encode("utf-8")

    @classmethod
    def from_config(cls, config: ApiConfig) -> "RequestSigner":
        return cls(
            app_name=config.app_name,
            auth_scheme=config.auth_scheme,
            secret=config.hmac_secret or "",
            device_id=config.device_id,
        )

    def signature(self, timestamp: str) -> str:
        message = f"POST\n{timestamp}\n{self.device_id}\n".encode("utf-8")
        digest = HMAC.new(self._secret, message, digestmod=SHA256).digest()
        return base64.b64encode(digest).decode("ascii")

    def headers(self, now: Optional[datetime] = None) -> Dict[str, str]:
        timestamp = utc_timestamp(now)
        return {
            "APP": self.app_name,
            "DATED": timestamp,
            "DEVICEID": self.device_id,
            "AUTH": f"{self.auth_scheme}:{self.signature(timestamp)}",
            "ISENCRYPTED": "yes",
            "AUTHENCRYPTED": "yes",
        }
