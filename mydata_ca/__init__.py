"""
MyData CA Protocol Core

Version: 1.0.0

Conformance and detection core for a MyData / Open-Banking consent
certification authority.

An organization obtains a management token, discovers counter-parties,
obtains a CA token, requests signed consents, collects the signatures and has
them verified before a bank releases data. Every inbound call passes three
checks, in order:

    TokenScopeGuard        -> who is calling, with which scope
    FieldFormatValidator   -> is every field well formed
    ProtocolFlowValidator  -> do the predecessor artifacts exist

Offline, DetectionMetricsEngine scores the signature, specification and
hybrid detector logs against the ground-truth API exchange log.

Usage:
    from mydata_ca import (
        TokenScopeGuard,
        validate_payload,
        ProtocolFlowValidator,
        InMemoryFlowStore,
    )

    guard = TokenScopeGuard(secret, issuer, audience)
    auth = guard.authenticate(request.headers.get("Authorization"), "ca")
    if not auth.passed():
        ...

    check = validate_payload("IA102", body)
    if not check.passed():
        ...  # check.response_code, check.field, check.error

    decision = ProtocolFlowValidator(store).admit_sign_result(cert_tx_id, sign_tx_id)
"""

__version__ = "1.0.0"

from .errors import (
    AuthError,
    FieldError,
    ProtocolError,
    SystemErrorKind,
    ResponseCode,
    RESPONSE_CODES,
    response_code,
    RegistryUnavailable,
    LogLoadError,
    SigningKeyError,
)

from .ids import (
    new_cert_tx_id,
    new_tx_id,
    new_api_tran_id,
    parse_sign_tx_id,
    SignTxIdParts,
)

from .fields import (
    FieldRule,
    FieldCheck,
    FIELD_RULES,
    OPERATION_RULES,
    check,
    check_field,
    check_api_tran_id,
    validate_payload,
)

from .tokens import (
    TokenIssuer,
    TokenScopeGuard,
    IssuedToken,
    AuthResult,
    RevocationStore,
    InMemoryRevocationStore,
    SCOPE_MANAGE,
    SCOPE_CA,
)

from .records import (
    Certificate,
    ConsentItem,
    SignedConsent,
    Verification,
)

from .flow import (
    Phase,
    FlowState,
    FlowMachine,
    FlowDecision,
    FlowStore,
    InMemoryFlowStore,
    ProtocolFlowValidator,
    phase_for,
)

from .signing import ConsentSigner

from .metrics import (
    ConfusionMatrix,
    DetectionMetrics,
    DetectionMetricsEngine,
    AnalysisSummary,
    LogPaths,
    compute_metrics,
)

from .detectors import (
    SignatureDetector,
    SpecificationDetector,
    HybridDetector,
    RateLimitDetector,
    run_detectors,
)

from .rate_limit import RateLimiter, RateLimitResult


__all__ = [
    "__version__",

    # Errors
    "AuthError",
    "FieldError",
    "ProtocolError",
    "SystemErrorKind",
    "ResponseCode",
    "RESPONSE_CODES",
    "response_code",
    "RegistryUnavailable",
    "LogLoadError",
    "SigningKeyError",

    # Identifiers
    "new_cert_tx_id",
    "new_tx_id",
    "new_api_tran_id",
    "parse_sign_tx_id",
    "SignTxIdParts",

    # Field validation
    "FieldRule",
    "FieldCheck",
    "FIELD_RULES",
    "OPERATION_RULES",
    "check",
    "check_field",
    "check_api_tran_id",
    "validate_payload",

    # Tokens
    "TokenIssuer",
    "TokenScopeGuard",
    "IssuedToken",
    "AuthResult",
    "RevocationStore",
    "InMemoryRevocationStore",
    "SCOPE_MANAGE",
    "SCOPE_CA",

    # Records
    "Certificate",
    "ConsentItem",
    "SignedConsent",
    "Verification",

    # Flow
    "Phase",
    "FlowState",
    "FlowMachine",
    "FlowDecision",
    "FlowStore",
    "InMemoryFlowStore",
    "ProtocolFlowValidator",
    "phase_for",

    # Signing
    "ConsentSigner",

    # Metrics
    "ConfusionMatrix",
    "DetectionMetrics",
    "DetectionMetricsEngine",
    "AnalysisSummary",
    "LogPaths",
    "compute_metrics",

    # Detectors
    "SignatureDetector",
    "SpecificationDetector",
    "HybridDetector",
    "RateLimitDetector",
    "run_detectors",

    # Rate limiting
    "RateLimiter",
    "RateLimitResult",
]
