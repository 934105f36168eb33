"""VAPID key management and token signing for Web Push."""

import json
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlsplit

import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)
from py_vapid import Vapid02

from holopush.notifications.codec import (
    extract_public_key_coordinates,
    urlsafe_b64decode,
    urlsafe_b64encode,
)
from holopush.notifications.errors import SigningError

logger = structlog.get_logger()

TOKEN_LIFETIME_S = 12 * 60 * 60

_JWT_HEADER = {"alg": "ES256", "typ": "JWT"}
_DEFAULT_PORTS = {"http": 80, "https": 443}
_SCALAR_LEN = 32


@dataclass(frozen=True)
class VapidKeyPair:
    """Application server key pair, both halves base64url encoded.

    public_key is the 65-byte uncompressed point, private_key the
    32-byte scalar ``d``.
    """

    public_key: str
    private_key: str


def _compact_json(obj: dict) -> str:
    return json.dumps(obj, separators=(",", ":"))


def _subject(contact: str) -> str:
    if contact.startswith(("mailto:", "https:")):
        return contact
    return f"mailto:{contact}"


def audience_for(endpoint: str) -> str:
    """Origin (scheme://host[:port]) of a push endpoint.

    Raises:
        ValueError: endpoint is not an absolute http(s) URL.
    """
    parts = urlsplit(endpoint)
    if parts.scheme not in _DEFAULT_PORTS or not parts.hostname:
        raise ValueError(f"not an absolute http(s) URL: {endpoint!r}")
    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    port = parts.port
    if port is None or port == _DEFAULT_PORTS[parts.scheme]:
        return f"{parts.scheme}://{host}"
    return f"{parts.scheme}://{host}:{port}"


def _import_private_key(jwk: dict[str, str]) -> ec.EllipticCurvePrivateKey:
    """Build a P-256 signing key from a JWK-shaped dict (d, x, y)."""
    d = urlsafe_b64decode(jwk["d"])
    if len(d) != _SCALAR_LEN:
        raise SigningError(f"private key is {len(d)} bytes, expected {_SCALAR_LEN}")
    public_numbers = ec.EllipticCurvePublicNumbers(
        int.from_bytes(urlsafe_b64decode(jwk["x"]), "big"),
        int.from_bytes(urlsafe_b64decode(jwk["y"]), "big"),
        ec.SECP256R1(),
    )
    try:
        return ec.EllipticCurvePrivateNumbers(
            int.from_bytes(d, "big"), public_numbers
        ).private_key()
    except ValueError as e:
        # Point off the curve, or d does not match (x, y)
        raise SigningError(f"invalid VAPID key pair: {e}") from e


def sign_vapid_token(
    audience: str,
    keys: VapidKeyPair,
    contact: str,
    *,
    now: float | None = None,
) -> str:
    """Build and sign a compact ES256 JWT for one push service origin.

    Args:
        audience: Push service origin, never the full endpoint URL.
        keys: VAPID key pair used for signing.
        contact: Operator contact; ``mailto:`` is prefixed when missing.
        now: Override for the current Unix time.

    Returns:
        ``header.payload.signature``, each segment base64url.

    Raises:
        MalformedKeyError: key material is not valid base64url or the
            public key is not an uncompressed point.
        SigningError: the private scalar does not form a valid key
            with the public point.
    """
    issued = time.time() if now is None else now
    claims = {
        "aud": audience,
        "exp": int(issued) + TOKEN_LIFETIME_S,
        "sub": _subject(contact),
    }
    signing_input = (
        f"{urlsafe_b64encode(_compact_json(_JWT_HEADER))}"
        f".{urlsafe_b64encode(_compact_json(claims))}"
    )

    x, y = extract_public_key_coordinates(keys.public_key)
    private_key = _import_private_key(
        {"kty": "EC", "crv": "P-256", "d": keys.private_key, "x": x, "y": y}
    )

    der = private_key.sign(signing_input.encode(), ec.ECDSA(hashes.SHA256()))
    r, s = decode_dss_signature(der)
    raw = r.to_bytes(_SCALAR_LEN, "big") + s.to_bytes(_SCALAR_LEN, "big")
    return f"{signing_input}.{urlsafe_b64encode(raw)}"


def generate_vapid_keys() -> VapidKeyPair:
    """Create a fresh P-256 key pair in base64url form."""
    vapid = Vapid02()
    vapid.generate_keys()
    d = vapid.private_key.private_numbers().private_value
    point = vapid.public_key.public_bytes(
        encoding=Encoding.X962,
        format=PublicFormat.UncompressedPoint,
    )
    return VapidKeyPair(
        public_key=urlsafe_b64encode(point),
        private_key=urlsafe_b64encode(d.to_bytes(_SCALAR_LEN, "big")),
    )


def load_or_create_vapid_keys(state_dir: str | Path) -> VapidKeyPair:
    """Load the persisted key pair, generating one on first use.

    Args:
        state_dir: Directory for persistent state files.
    """
    state_dir = Path(state_dir)
    state_dir.mkdir(parents=True, exist_ok=True)
    json_path = state_dir / "vapid_keys.json"

    if json_path.exists():
        data = json.loads(json_path.read_text())
        return VapidKeyPair(
            public_key=data["public_key"],
            private_key=data["private_key"],
        )

    keys = generate_vapid_keys()
    tmp = json_path.with_suffix(".json.tmp")
    tmp.unlink(missing_ok=True)
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(asdict(keys), f, indent=2)
    os.replace(tmp, json_path)
    logger.info("vapid_keys_generated", path=str(json_path))
    return keys
