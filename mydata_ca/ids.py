"""
Transaction identifier generation.

MyData uses four fixed-format identifiers:

    x-api-tran-id   25 alphanumerics, one per API call
    sign_tx_id      <= 49 chars, orgCode_caCode_timestamp_serial (client supplied)
    cert_tx_id      40 chars, issued by the CA on sign_request
    tx_id           74 chars, one per consent item

Generated values always satisfy the length and charset rules enforced by
mydata_ca.fields. Uniqueness is probabilistic.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .util import utc_timestamp14

CERT_TX_ID_LENGTH = 40
TX_ID_LENGTH = 74
API_TRAN_ID_LENGTH = 25
CERT_TX_ID_RANDOM_LENGTH = 10

UPPER_ALNUM = string.ascii_uppercase + string.digits
BASE62 = string.digits + string.ascii_uppercase + string.ascii_lowercase


def _random_chars(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def cert_timestamp(now: Optional[datetime] = None) -> str:
    """The 14-digit YYYYMMDDHHMMSS UTC stamp that prefixes a cert_tx_id."""
    return utc_timestamp14(now)


def new_cert_tx_id(now: Optional[datetime] = None) -> str:
    """
    Generate a cert_tx_id.

    14-digit UTC timestamp followed by a 10-character uppercase alphanumeric
    suffix, right-padded with further random characters and cut at 40.
    """
    value = cert_timestamp(now) + _random_chars(UPPER_ALNUM, CERT_TX_ID_RANDOM_LENGTH)
    if len(value) < CERT_TX_ID_LENGTH:
        value += _random_chars(UPPER_ALNUM, CERT_TX_ID_LENGTH - len(value))
    return value[:CERT_TX_ID_LENGTH]


def new_tx_id() -> str:
    """Generate an opaque 74-character tx_id: 32 random hex chars, then base62 filler."""
    head = secrets.token_hex(16)
    return head + _random_chars(BASE62, TX_ID_LENGTH - len(head))


def new_api_tran_id() -> str:
    """Generate a 25-character x-api-tran-id."""
    return _random_chars(UPPER_ALNUM, API_TRAN_ID_LENGTH)


@dataclass(frozen=True)
class SignTxIdParts:
    """Components of a sign_tx_id; absent components are empty strings."""
    org_code: str
    ca_code: str
    timestamp: str
    serial: str


def parse_sign_tx_id(sign_tx_id: str) -> SignTxIdParts:
    """Split orgCode_caCode_timestamp_serial. Extra underscores stay in the serial."""
    parts = sign_tx_id.split("_", 3)
    parts += [""] * (4 - len(parts))
    return SignTxIdParts(org_code=parts[0], ca_code=parts[1], timestamp=parts[2], serial=parts[3])
