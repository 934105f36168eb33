"""URL-safe base64 helpers and EC public key handling."""

import base64
import binascii

from holopush.notifications.errors import MalformedKeyError

_UNCOMPRESSED_POINT = 0x04
_POINT_LEN = 65
_COORD_LEN = 32


def urlsafe_b64encode(data: bytes | str) -> str:
    """Encode bytes (or UTF-8 text) as unpadded URL-safe base64."""
    if isinstance(data, str):
        data = data.encode()
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def urlsafe_b64decode(data: str) -> bytes:
    """Decode unpadded URL-safe base64, restoring padding first."""
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.b64decode(padded.encode(), altchars=b"-_", validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedKeyError(f"invalid base64url data: {e}") from e


def extract_public_key_coordinates(public_key: str) -> tuple[str, str]:
    """Split an uncompressed P-256 point into base64url (x, y).

    Raises:
        MalformedKeyError: key is shorter than 65 bytes or is not
            an uncompressed point.
    """
    raw = urlsafe_b64decode(public_key)
    if len(raw) < _POINT_LEN:
        raise MalformedKeyError(
            f"public key is {len(raw)} bytes, expected {_POINT_LEN}"
        )
    if raw[0] != _UNCOMPRESSED_POINT:
        raise MalformedKeyError("public key is not an uncompressed EC point")
    x = raw[1 : 1 + _COORD_LEN]
    y = raw[1 + _COORD_LEN : _POINT_LEN]
    return urlsafe_b64encode(x), urlsafe_b64encode(y)
