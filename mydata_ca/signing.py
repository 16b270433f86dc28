"""
Ed25519 signing of consent items.

A signed consent is a compact, URL-safe token:

    b64url(canonical_json(payload)) "." b64url(ed25519_signature)

The payload binds the consent text, type and length to its tx_id, cert_tx_id
and the user. The CA key is stored as JSON:

    {"kid": "...", "private_key_b64": "...", "public_key_b64": "..."}
"""

import json
import os
from typing import Any, Dict, Optional, Tuple

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .errors import SigningKeyError
from .records import Certificate, ConsentItem, SignedConsent
from .util import b64d, b64e, b64url_decode, b64url_encode, canonicalize


def consent_payload(certificate: Certificate, item: ConsentItem, kid: str) -> Dict[str, Any]:
    """The document covered by a consent signature."""
    return {
        "kid": kid,
        "cert_tx_id": certificate.cert_tx_id,
        "tx_id": item.tx_id,
        "user_ci": certificate.user_ci,
        "consent": item.consent,
        "consent_type": item.consent_type,
        "consent_len": item.consent_len,
        "issued_at": certificate.issued_at,
    }


class ConsentSigner:
    """Signs and verifies consent items with one CA Ed25519 key."""

    def __init__(self, signing_key: SigningKey, kid: str):
        self._sk = signing_key
        self._vk = signing_key.verify_key
        self._kid = kid

    @classmethod
    def generate(cls, kid: str = "ca-ed25519-1") -> "ConsentSigner":
        return cls(SigningKey.generate(), kid)

    @classmethod
    def from_file(cls, path: str) -> "ConsentSigner":
        """Load a CA key file; raises SigningKeyError when it is missing or malformed."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return cls(SigningKey(b64d(raw["private_key_b64"])), raw["kid"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise SigningKeyError(f"cannot load CA signing key from {path}: {e}") from e

    @property
    def kid(self) -> str:
        return self._kid

    @property
    def public_key_b64(self) -> str:
        return b64e(bytes(self._vk))

    def key_document(self) -> Dict[str, str]:
        return {
            "kid": self._kid,
            "private_key_b64": b64e(bytes(self._sk)),
            "public_key_b64": self.public_key_b64,
        }

    def write_key_file(self, path: str) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.key_document(), f, indent=2)

    def sign(self, certificate: Certificate, item: ConsentItem) -> SignedConsent:
        payload = canonicalize(consent_payload(certificate, item, self._kid))
        sig = self._sk.sign(payload).signature
        token = b64url_encode(payload) + "." + b64url_encode(sig)
        return SignedConsent(
            tx_id=item.tx_id,
            signed_consent=token,
            signed_consent_len=len(token),
            cert_tx_id=certificate.cert_tx_id,
        )

    def open(self, signed_consent: str) -> Optional[Dict[str, Any]]:
        """Return the signed payload, or None if the token is malformed or the signature is bad."""
        payload, sig = _split(signed_consent)
        if payload is None:
            return None
        try:
            self._vk.verify(payload, sig)
            return json.loads(payload.decode("utf-8"))
        except (BadSignatureError, ValueError):
            return None

    def verify(
        self,
        signed_consent: str,
        cert_tx_id: str,
        tx_id: str,
        consent: str,
        consent_type: str,
        consent_len: int
    ) -> bool:
        """True when the token carries a valid signature over exactly these consent values."""
        doc = self.open(signed_consent)
        if doc is None:
            return False
        return (
            doc.get("cert_tx_id") == cert_tx_id
            and doc.get("tx_id") == tx_id
            and doc.get("consent") == consent
            and doc.get("consent_type") == consent_type
            and doc.get("consent_len") == consent_len
        )


def _split(signed_consent: str) -> Tuple[Optional[bytes], Optional[bytes]]:
    parts = signed_consent.split(".")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None, None
    try:
        return b64url_decode(parts[0]), b64url_decode(parts[1])
    except ValueError:
        return None, None


def verify_with_public_key(signed_consent: str, public_key_b64: str) -> bool:
    """Check a signed consent against a published CA public key."""
    payload, sig = _split(signed_consent)
    if payload is None:
        return False
    try:
        VerifyKey(b64d(public_key_b64)).verify(payload, sig)
        return True
    except (BadSignatureError, ValueError):
        return False
