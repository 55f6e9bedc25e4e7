"""
Credential Codec

Reversible, binary-safe text encoding of a session's credential material.

Byte strings are tagged as ``{"type": "Buffer", "data": "<base64>"}`` inside
JSON, the convention the multi-device protocol client uses for its own auth
state, so a blob written by either side decodes on the other. Maps with
non-string keys and tuples are tagged the same way (``Map``, ``Tuple``).
When an encryption key is configured the JSON text is additionally sealed
with Fernet.
"""

import base64
import json
import secrets
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey


class CredentialDecodeError(Exception):
    """Stored credential blob cannot be turned back into credentials."""


def _to_json_safe(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"type": "Buffer", "data": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        if all(isinstance(k, str) for k in value):
            return {k: _to_json_safe(v) for k, v in value.items()}
        # Key stores are keyed by numeric ids; JSON objects only take strings
        return {"type": "Map", "entries": [[_to_json_safe(k), _to_json_safe(v)] for k, v in value.items()]}
    if isinstance(value, tuple):
        return {"type": "Tuple", "items": [_to_json_safe(v) for v in value]}
    if isinstance(value, list):
        return [_to_json_safe(v) for v in value]
    return value


def _revive(obj: dict[str, Any]) -> Any:
    if len(obj) != 2:
        return obj

    kind = obj.get("type")
    if kind == "Buffer" and "data" in obj:
        data = obj["data"]
        if isinstance(data, str):
            return base64.b64decode(data.encode("ascii"), validate=True)
        if isinstance(data, list):
            return bytes(data)
    elif kind == "Map" and isinstance(obj.get("entries"), list):
        return {key: value for key, value in obj["entries"]}
    elif kind == "Tuple" and isinstance(obj.get("items"), list):
        return tuple(obj["items"])
    return obj


class CredentialCodec:
    """
    Encodes credentials to text and back.

    Args:
        encryption_key: Fernet key; when set, blobs are encrypted at rest
    """

    def __init__(self, encryption_key: str | None = None):
        self._fernet = Fernet(encryption_key.encode()) if encryption_key else None

    @property
    def encrypted(self) -> bool:
        return self._fernet is not None

    def encode(self, credentials: dict[str, Any]) -> str:
        text = json.dumps(_to_json_safe(credentials), separators=(",", ":"))
        if self._fernet:
            return self._fernet.encrypt(text.encode("utf-8")).decode("ascii")
        return text

    def decode(self, blob: str) -> dict[str, Any]:
        """
        Decode a stored blob.

        Raises:
            CredentialDecodeError: Bad token, bad JSON or wrong shape
        """
        text = blob
        if self._fernet:
            try:
                text = self._fernet.decrypt(blob.encode("ascii")).decode("utf-8")
            except (InvalidToken, UnicodeError, ValueError) as e:
                raise CredentialDecodeError(f"Cannot decrypt credentials: {e!r}") from e

        try:
            credentials = json.loads(text, object_hook=_revive)
        except (ValueError, TypeError) as e:
            raise CredentialDecodeError(f"Cannot parse credentials: {e}") from e

        if (
            not isinstance(credentials, dict)
            or not isinstance(credentials.get("creds"), dict)
            or not isinstance(credentials.get("keys", {}), dict)
        ):
            raise CredentialDecodeError("Credentials must be an object with 'creds' and 'keys'")

        credentials.setdefault("keys", {})
        return credentials


def _key_pair() -> dict[str, bytes]:
    private = X25519PrivateKey.generate()
    return {
        "private": private.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        ),
        "public": private.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ),
    }


def fresh_credentials() -> dict[str, Any]:
    """
    Brand-new, unregistered credential identity.

    Using it to open a session leads to a pairing challenge.
    """
    return {
        "creds": {
            "noise_key": _key_pair(),
            "pairing_ephemeral_key_pair": _key_pair(),
            "signed_identity_key": _key_pair(),
            "signed_pre_key": {
                "key_pair": _key_pair(),
                "signature": secrets.token_bytes(64),
                "key_id": 1,
            },
            "registration_id": secrets.randbelow(16380) + 1,
            "adv_secret_key": base64.b64encode(secrets.token_bytes(32)).decode("ascii"),
            "next_pre_key_id": 1,
            "first_unuploaded_pre_key_id": 1,
            "account_sync_counter": 0,
            "registered": False,
            "me": None,
        },
        "keys": {},
    }


def is_registered(credentials: dict[str, Any]) -> bool:
    """True once the identity has been paired with a phone."""
    return bool(credentials.get("creds", {}).get("registered"))
