"""
Error taxonomy and response codes for the MyData CA protocol.

Validators never raise for an ordinary rejection: they return a result object
carrying one of the error kinds below. Exceptions are reserved for system
faults (an unavailable registry, an unreadable log, a missing signing key).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


class AuthError(str, Enum):
    """Credential and authorization failures."""
    UNAUTHORIZED = "UNAUTHORIZED"      # no usable Bearer header
    INVALID_TOKEN = "INVALID_TOKEN"    # bad signature, claims, expiry or revoked
    FORBIDDEN = "FORBIDDEN"            # valid token, wrong scope


class FieldError(str, Enum):
    """Field format failures, in the order they are checked."""
    MISSING = "MISSING"
    TOO_LONG = "TOO_LONG"
    WRONG_LENGTH = "WRONG_LENGTH"
    WRONG_TYPE = "WRONG_TYPE"
    COUNT_MISMATCH = "COUNT_MISMATCH"


class ProtocolError(str, Enum):
    """Consent lifecycle precedence failures."""
    OUT_OF_SEQUENCE = "OUT_OF_SEQUENCE"
    NOT_FOUND = "NOT_FOUND"


class SystemErrorKind(str, Enum):
    """Infrastructure failures. Safe to retry with backoff."""
    UNAVAILABLE = "UNAVAILABLE"


@dataclass(frozen=True)
class ResponseCode:
    """A protocol response: 5-character rsp_code, HTTP status and default message."""
    name: str
    code: str
    status: int
    message: str


RESPONSE_CODES: Dict[str, ResponseCode] = {
    rc.name: rc for rc in (
        ResponseCode("SUCCESS", "00000", 200, "Success"),
        ResponseCode("INVALID_PARAMETERS", "40001", 400, "Invalid request parameters"),
        ResponseCode("INVALID_API_TRAN_ID", "40002", 400, "Invalid x-api-tran-id"),
        ResponseCode("INVALID_SIGN_TX_ID", "40003", 400, "Invalid sign_tx_id"),
        ResponseCode("INVALID_CERT_TX_ID", "40004", 400, "Invalid cert_tx_id"),
        ResponseCode("INVALID_TX_ID", "40005", 400, "Invalid tx_id"),
        ResponseCode("UNAUTHORIZED", "40101", 401, "Unauthorized"),
        ResponseCode("INVALID_TOKEN", "40102", 401, "Invalid or expired access token"),
        ResponseCode("FORBIDDEN", "40301", 403, "Token scope does not permit this operation"),
        ResponseCode("NO_CERTIFICATE_FOUND", "40401", 404, "No certificate found for cert_tx_id"),
        ResponseCode("NOT_FOUND", "40402", 404, "Referenced transaction not found"),
        ResponseCode("NO_ORGANIZATION_FOUND", "40403", 404, "No organization found"),
        ResponseCode("OUT_OF_SEQUENCE", "40901", 409, "Operation called out of sequence"),
        ResponseCode("TOO_MANY_REQUESTS", "42901", 429, "Too many requests"),
        ResponseCode("INTERNAL_SERVER_ERROR", "50001", 500, "Internal server error"),
        ResponseCode("DATABASE_ERROR", "50002", 500, "Registry unavailable"),
    )
}

# rsp_msg is capped by the protocol
MAX_RSP_MSG_LENGTH = 450

AUTH_ERROR_CODES: Dict[AuthError, str] = {
    AuthError.UNAUTHORIZED: "UNAUTHORIZED",
    AuthError.INVALID_TOKEN: "INVALID_TOKEN",
    AuthError.FORBIDDEN: "FORBIDDEN",
}


def response_code(name: str) -> ResponseCode:
    """Look up a response code by name; unknown names map to INTERNAL_SERVER_ERROR."""
    return RESPONSE_CODES.get(name, RESPONSE_CODES["INTERNAL_SERVER_ERROR"])


class RegistryUnavailable(Exception):
    """Raised when the consent registry cannot be reached or a transaction fails."""
    kind = SystemErrorKind.UNAVAILABLE


class LogLoadError(Exception):
    """Raised when a detection or ground-truth log cannot be read."""

    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"Error reading {path}: {message}")


class SigningKeyError(Exception):
    """Raised when the CA signing key cannot be loaded."""
