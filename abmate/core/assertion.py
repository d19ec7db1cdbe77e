import base64
import binascii
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

import jwt  # pip install pyjwt cryptography
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_private_key,
)

from abmate.config import ASSERTION_AUDIENCE
from abmate.errors import EncodingFailure, InvalidKeyFormat
from abmate.models import ServiceCredentials

logger = logging.getLogger("abmate.assertion")

ALGORITHM = "ES256"
ASSERTION_LIFETIME_SECONDS = 180 * 86400

# Length of the PKCS#8 wrapper in front of the key material of a P-256 key.
PKCS8_PREFIX_LENGTH = 36
X963_PRIVATE_LENGTH = 97
RAW_SCALAR_LENGTH = 32

_PEM_ARMOR = re.compile(r"-----(BEGIN|END)[^-]*-----")

Timestamp = Union[datetime, int, float, None]


def _pem_body(pem_string: str) -> bytes:
    body = _PEM_ARMOR.sub("", pem_string or "")
    body = "".join(body.split())
    if not body:
        raise InvalidKeyFormat("Private key is empty.")
    try:
        return base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidKeyFormat(f"Invalid base64 in private key: {e}") from e


def _from_der(blob: bytes) -> Optional[ec.EllipticCurvePrivateKey]:
    try:
        key = load_der_private_key(blob, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        return None
    if isinstance(key, ec.EllipticCurvePrivateKey) and isinstance(key.curve, ec.SECP256R1):
        return key
    logger.debug("DER key parsed but is not a P-256 EC key; trying other encodings.")
    return None


def _from_raw_scalar(blob: bytes) -> Optional[ec.EllipticCurvePrivateKey]:
    if len(blob) != RAW_SCALAR_LENGTH:
        return None
    try:
        return ec.derive_private_key(int.from_bytes(blob, "big"), ec.SECP256R1())
    except ValueError:
        return None


def _from_x963(blob: bytes) -> Optional[ec.EllipticCurvePrivateKey]:
    """04 || X || Y || K, with the public point checked against K."""
    if len(blob) != X963_PRIVATE_LENGTH or blob[0] != 0x04:
        return None
    point, scalar = blob[:65], blob[65:]
    key = _from_raw_scalar(scalar)
    if key is None:
        return None
    derived = key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    if derived != point:
        return None
    return key


def load_signing_key(pem_string: str) -> ec.EllipticCurvePrivateKey:
    """
    Decodes a P-256 private key from the text pasted into the credentials form.
    Accepted, in order: DER (PKCS#8 / SEC1), X9.63 behind a PKCS#8 prefix, bare 32-byte scalar.
    """
    blob = _pem_body(pem_string)

    key = _from_der(blob)
    if key is not None:
        return key

    if len(blob) > 26:
        key = _from_x963(blob[PKCS8_PREFIX_LENGTH:])
        if key is not None:
            return key

    if len(blob) == RAW_SCALAR_LENGTH:
        key = _from_raw_scalar(blob)
        if key is not None:
            return key

    raise InvalidKeyFormat("Unable to parse private key")


def _unix_seconds(now: Timestamp) -> int:
    if now is None:
        return int(time.time())
    if isinstance(now, datetime):
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return int(now.timestamp())
    return int(now)


class AssertionSigner:
    """
    Builds the ES256 client assertion that stands in for a client secret
    when requesting an access token.
    """

    def __init__(self, audience: str = ASSERTION_AUDIENCE, lifetime: int = ASSERTION_LIFETIME_SECONDS):
        self.audience = audience
        self.lifetime = lifetime

    def claims(self, client_id: str, issued_at: int) -> dict:
        # Insertion order is the wire order.
        return {
            "sub": client_id,
            "aud": self.audience,
            "iat": issued_at,
            "exp": issued_at + self.lifetime,
            "jti": str(uuid.uuid4()),
            "iss": client_id,
        }

    def sign(self, credentials: ServiceCredentials, now: Timestamp = None) -> str:
        key = load_signing_key(credentials.private_key_pem)
        issued_at = _unix_seconds(now)
        payload = self.claims(credentials.client_id, issued_at)

        try:
            assertion = jwt.encode(
                payload,
                key,
                algorithm=ALGORITHM,
                headers={"kid": credentials.key_id, "typ": "JWT"},
            )
        except (jwt.PyJWTError, TypeError, ValueError) as e:
            raise EncodingFailure(f"Failed to encode client assertion: {e}") from e

        if isinstance(assertion, bytes):
            assertion = assertion.decode("utf-8")

        logger.info(
            f"🔏 Client assertion generated for {credentials.client_id} (kid={credentials.key_id}, "
            f"expires {datetime.fromtimestamp(payload['exp'], timezone.utc).date().isoformat()})"
        )
        return assertion


def sign_assertion(credentials: ServiceCredentials, now: Timestamp = None) -> str:
    return AssertionSigner().sign(credentials, now)


def decode_unverified(assertion: str) -> Tuple[dict, dict]:
    """Returns (header, claims) without checking the signature."""
    header = jwt.get_unverified_header(assertion)
    claims = jwt.decode(
        assertion,
        options={"verify_signature": False, "verify_exp": False, "verify_aud": False},
    )
    return header, claims


def assertion_expires_at(assertion: str) -> Optional[datetime]:
    try:
        _, claims = decode_unverified(assertion)
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.fromtimestamp(int(exp), timezone.utc)
