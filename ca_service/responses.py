"""
Response envelope and rejection mapping.

Every body carries rsp_code and rsp_msg. Core validators return result
objects; handlers turn a failed result into a Rejection, and one exception
handler renders it, so every rejection is audit-logged the same way.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from mydata_ca.errors import (
    AUTH_ERROR_CODES,
    MAX_RSP_MSG_LENGTH,
    ProtocolError,
    RegistryUnavailable,
    response_code,
)
from mydata_ca.fields import FieldCheck
from mydata_ca.flow import FlowDecision
from mydata_ca.tokens import AuthResult
from mydata_ca.util import mask_sensitive

from .logging_config import audit_log

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ("client_secret", "token")


def envelope(name: str, message: Optional[str] = None, **data) -> Dict[str, Any]:
    rc = response_code(name)
    body = {"rsp_code": rc.code, "rsp_msg": (message or rc.message)[:MAX_RSP_MSG_LENGTH]}
    body.update(data)
    return body


def respond(name: str = "SUCCESS", message: Optional[str] = None, headers: Optional[Dict[str, str]] = None, **data) -> JSONResponse:
    """Render an envelope with the HTTP status that belongs to its response code."""
    return JSONResponse(
        status_code=response_code(name).status,
        content=envelope(name, message, **data),
        headers=headers,
    )


def redact(payload: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Copy of a request payload that is safe to log."""
    if not payload:
        return payload
    safe = dict(payload)
    for key in SENSITIVE_FIELDS:
        if isinstance(safe.get(key), str):
            safe[key] = mask_sensitive(safe[key])
    return safe


class Rejection(Exception):
    """A request refused with a protocol response code."""

    def __init__(
        self,
        name: str,
        detail: Optional[str] = None,
        phase: str = "",
        client_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        self.name = name
        self.detail = detail
        self.phase = phase
        self.client_id = client_id
        self.payload = payload
        self.headers = headers
        super().__init__(f"{name}: {detail}" if detail else name)

    @property
    def message(self) -> str:
        rc = response_code(self.name)
        return f"{rc.message} ({self.detail})" if self.detail else rc.message


def auth_rejection(phase: str, result: AuthResult) -> Rejection:
    return Rejection(
        AUTH_ERROR_CODES[result.error],
        detail=result.detail,
        phase=phase,
        client_id=result.client_id,
    )


def field_rejection(
    phase: str,
    check: FieldCheck,
    payload: Optional[Dict[str, Any]] = None,
    client_id: Optional[str] = None
) -> Rejection:
    detail = f"{check.field}: {check.detail}" if check.field else check.detail
    return Rejection(check.response_code, detail=detail, phase=phase, client_id=client_id, payload=payload)


def flow_rejection(
    phase: str,
    decision: FlowDecision,
    payload: Optional[Dict[str, Any]] = None,
    client_id: Optional[str] = None
) -> Rejection:
    if decision.error == ProtocolError.NOT_FOUND:
        name = "NO_CERTIFICATE_FOUND" if decision.subject == "certificate" else "NOT_FOUND"
    else:
        name = "OUT_OF_SEQUENCE"
    return Rejection(name, detail=decision.detail, phase=phase, client_id=client_id, payload=payload)


# ============================================================
# Exception handlers
# ============================================================

async def rejection_handler(request: Request, exc: Rejection) -> JSONResponse:
    rc = response_code(exc.name)
    body = envelope(exc.name, exc.message)
    audit_log.request_rejected(
        phase=exc.phase or request.url.path,
        rsp_code=rc.code,
        reason=exc.detail or exc.name,
        status=rc.status,
        client_id=exc.client_id,
        request=redact(exc.payload),
        response=body,
    )
    if exc.client_id:
        request.state.client_id = exc.client_id
    return JSONResponse(status_code=rc.status, content=body, headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    location = ".".join(str(p) for p in errors[0]["loc"]) if errors else "body"
    return await rejection_handler(request, Rejection("INVALID_PARAMETERS", detail=f"{location}: malformed"))


async def registry_error_handler(request: Request, exc: RegistryUnavailable) -> JSONResponse:
    logger.error("registry unavailable while serving %s: %s", request.url.path, exc)
    return await rejection_handler(request, Rejection("DATABASE_ERROR", detail="registry unavailable, retry later"))


def install_handlers(app: FastAPI) -> None:
    app.add_exception_handler(Rejection, rejection_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(RegistryUnavailable, registry_error_handler)
