"""
Logging configuration for the MyData CA service.

Provides structured JSON logging and typed audit events. Every audit event
carries the x-api-tran-id of the request being served.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Optional

from mydata_ca.ids import new_api_tran_id

# Context variable for request ID tracking (the x-api-tran-id)
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    One JSON object per line, suitable for log aggregation.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class AuditLogger:
    """
    Specialized logger for audit events.

    Token issuance, completed lifecycle phases, rejections and security
    events each get their own event type.
    """

    def __init__(self, name: str = "mydata_ca.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def token_issued(self, client_id: str, scope: str, jti: str, org_code: Optional[str] = None) -> None:
        self._log(
            logging.INFO,
            "TOKEN_ISSUED",
            client_id=client_id,
            scope=scope,
            jti=jti,
            org_code=org_code,
            message=f"{scope} token issued to {client_id}"
        )

    def token_revoked(self, client_id: Optional[str], jti: str) -> None:
        self._log(
            logging.INFO,
            "TOKEN_REVOKED",
            client_id=client_id,
            jti=jti,
            message=f"Token {jti} revoked"
        )

    def phase_completed(
        self,
        phase: str,
        client_id: Optional[str] = None,
        cert_tx_id: Optional[str] = None,
        tx_id: Optional[str] = None,
        **details
    ) -> None:
        """Log a successful lifecycle phase."""
        self._log(
            logging.INFO,
            "PHASE_COMPLETED",
            phase=phase,
            client_id=client_id,
            cert_tx_id=cert_tx_id,
            tx_id=tx_id,
            **details,
            message=f"{phase} completed"
        )

    def request_rejected(
        self,
        phase: str,
        rsp_code: str,
        reason: str,
        status: int,
        client_id: Optional[str] = None,
        request: Optional[dict] = None,
        response: Optional[dict] = None
    ) -> None:
        """Log a rejected request together with the response sent back."""
        level = logging.ERROR if status >= 500 else logging.WARNING
        self._log(
            level,
            "REQUEST_REJECTED",
            phase=phase,
            rsp_code=rsp_code,
            status=status,
            reason=reason,
            client_id=client_id,
            request=request,
            response=response,
            message=f"{phase} rejected with {rsp_code}: {reason}"
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(
        self,
        client_id: str,
        endpoint: str
    ) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: The caller's x-api-tran-id, or None to generate one

    Returns:
        The request ID that was set
    """
    if not request_id:
        request_id = new_api_tran_id()
    request_id_var.set(request_id)
    return request_id


# Global audit logger instance
audit_log = AuditLogger()
