import logging
import math
from typing import Any, Dict, Optional, Union
from urllib.parse import parse_qsl

from fastapi import APIRouter, Body, Depends, FastAPI, Header, Request
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from mydata_ca.errors import SigningKeyError
from mydata_ca.fields import check_api_tran_id, validate_payload
from mydata_ca.flow import Phase, ProtocolFlowValidator
from mydata_ca.ids import new_cert_tx_id, new_tx_id, parse_sign_tx_id
from mydata_ca.logs import ApiLogWriter, utc_iso
from mydata_ca.rate_limit import RateLimiter
from mydata_ca.records import CERTIFICATE_VALIDITY_SECONDS, Certificate, ConsentItem, Verification
from mydata_ca.signing import ConsentSigner
from mydata_ca.tokens import SCOPE_CA, SCOPE_MANAGE, AuthResult, TokenIssuer, TokenScopeGuard
from mydata_ca.util import now_epoch, parse_json_or_empty, utc_timestamp14

from .config import Settings, validate_config
from .db import ConsentRegistry
from .logging_config import audit_log, configure_logging, set_request_id
from .models import (
    DataAccessRequest,
    RevokeRequest,
    SignRequest,
    SignResultRequest,
    SignVerificationRequest,
    TokenRequest,
)
from .responses import (
    Rejection,
    auth_rejection,
    field_rejection,
    flow_rejection,
    install_handlers,
    redact,
    respond,
)

logger = logging.getLogger(__name__)

APP_SCHEME_URL = "mydataauth://auth"
ATTACK_TYPE_HEADER = "attack-type"

router = APIRouter()


# ============================================================
# Dependencies
# ============================================================

def get_registry(request: Request) -> ConsentRegistry:
    return request.app.state.registry


def get_flow(request: Request) -> ProtocolFlowValidator:
    return request.app.state.flow


def get_signer(request: Request) -> ConsentSigner:
    return request.app.state.signer


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_token(phase: Union[Phase, str], scope: Optional[str] = None):
    """Dependency that admits a bearer token carrying `scope` (any verified token when None)."""
    label = getattr(phase, "value", phase)

    def dependency(request: Request, authorization: Optional[str] = Header(None)) -> AuthResult:
        result = request.app.state.guard.authenticate(authorization, scope)
        if not result.passed():
            raise auth_rejection(label, result)
        request.state.client_id = result.client_id
        return result
    return dependency


def check_request(
    phase: Union[Phase, str],
    request: Request,
    payload: Dict[str, Any],
    client_id: Optional[str] = None,
    tran_id_required: bool = False
) -> None:
    """x-api-tran-id first, then the operation's field table."""
    label = getattr(phase, "value", phase)
    tran_id = check_api_tran_id(request.headers.get("x-api-tran-id"), tran_id_required)
    if not tran_id.passed():
        raise field_rejection(label, tran_id, payload, client_id)
    result = validate_payload(phase, payload)
    if not result.passed():
        raise field_rejection(label, result, payload, client_id)


# ============================================================
# Token endpoints (Support001, IA101)
# ============================================================

async def read_token_form(request: Request) -> Dict[str, Any]:
    """Token requests are form-encoded; JSON bodies are accepted as well."""
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            raise Rejection("INVALID_PARAMETERS", detail="body is not valid JSON")
        if not isinstance(data, dict):
            raise Rejection("INVALID_PARAMETERS", detail="body must be an object")
        return data
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def issue_token(request: Request, phase: Phase, scope: str, payload: Dict[str, Any]) -> Response:
    state = request.app.state
    check_request(phase, request, payload)
    req = TokenRequest.model_validate(payload)
    request.state.client_id = req.client_id

    limit = state.token_limiter.check(req.client_id)
    if not limit.allowed:
        audit_log.rate_limit_exceeded(req.client_id, request.url.path)
        raise Rejection(
            "TOO_MANY_REQUESTS",
            phase=phase.value,
            client_id=req.client_id,
            headers={"Retry-After": str(int(math.ceil(limit.retry_after or 0)))},
        )

    org_code = state.registry.authenticate_client(req.client_id, req.client_secret)
    if org_code is None:
        audit_log.security_event("client_authentication_failed", client_id=req.client_id, phase=phase.value)
        raise Rejection(
            "UNAUTHORIZED",
            detail="invalid client credentials",
            phase=phase.value,
            client_id=req.client_id,
            payload=payload,
        )

    if phase == Phase.IA101:
        decision = state.flow.admit_ca_token(org_code)
        if not decision.admitted:
            raise flow_rejection(phase.value, decision, payload, req.client_id)

    token = state.issuer.issue(req.client_id, scope, org_code=org_code)
    state.flow.record(org_code, phase)
    audit_log.token_issued(req.client_id, scope, token.jti, org_code)
    return respond(**token.to_dict())


@router.post("/mgmts/oauth/token")
async def management_token(request: Request):
    payload = await read_token_form(request)
    return await run_in_threadpool(issue_token, request, Phase.SUPPORT001, SCOPE_MANAGE, payload)


@router.post("/oauth/token")
async def ca_token(request: Request):
    payload = await read_token_form(request)
    return await run_in_threadpool(issue_token, request, Phase.IA101, SCOPE_CA, payload)


@router.post("/mgmts/oauth/revoke")
def revoke_token(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    auth: AuthResult = Depends(require_token("REVOKE", SCOPE_MANAGE)),
    registry: ConsentRegistry = Depends(get_registry),
):
    payload = body or {}
    check_request("REVOKE", request, payload, auth.client_id)
    req = RevokeRequest.model_validate(payload)

    target = request.app.state.guard.verify_token(req.token)
    if not target.passed():
        # unknown, expired or already revoked tokens need no action
        return respond(revoked=False)
    if target.client_id != auth.client_id:
        raise Rejection(
            "FORBIDDEN",
            detail="token belongs to another client",
            phase="REVOKE",
            client_id=auth.client_id,
        )

    registry.revoke(target.claims["jti"], int(target.claims["exp"]))
    audit_log.token_revoked(auth.client_id, target.claims["jti"])
    return respond(revoked=True)


# ============================================================
# Organization discovery (Support002)
# ============================================================

@router.get("/mgmts/orgs")
def list_organizations(
    request: Request,
    auth: AuthResult = Depends(require_token(Phase.SUPPORT002, SCOPE_MANAGE)),
    registry: ConsentRegistry = Depends(get_registry),
    flow: ProtocolFlowValidator = Depends(get_flow),
):
    check_request(Phase.SUPPORT002, request, {}, auth.client_id, tran_id_required=True)
    orgs = registry.list_organizations()

    org_code = auth.claims.get("org_code")
    if org_code:
        flow.record(org_code, Phase.SUPPORT002)
    audit_log.phase_completed(Phase.SUPPORT002.value, auth.client_id, org_cnt=len(orgs))
    return respond(search_timestamp=utc_timestamp14(), org_cnt=len(orgs), org_list=orgs)


# ============================================================
# Consent lifecycle (IA102 - IA104)
# ============================================================

@router.post("/ca/sign_request")
def sign_request(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    auth: AuthResult = Depends(require_token(Phase.IA102, SCOPE_CA)),
    registry: ConsentRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    payload = body or {}
    check_request(Phase.IA102, request, payload, auth.client_id)
    req = SignRequest.model_validate(payload)

    tx_ids = [item.tx_id or new_tx_id() for item in req.consent_list]
    if len(set(tx_ids)) != len(tx_ids):
        raise Rejection(
            "INVALID_PARAMETERS",
            detail="consent_list: duplicate tx_id",
            phase=Phase.IA102.value,
            client_id=auth.client_id,
            payload=payload,
        )

    now = now_epoch()
    parts = parse_sign_tx_id(req.sign_tx_id)
    cert = Certificate(
        cert_tx_id=new_cert_tx_id(),
        sign_tx_id=req.sign_tx_id,
        org_code=auth.claims.get("org_code") or parts.org_code,
        ca_code=settings.ca_code,
        serial_number=parts.serial,
        user_ci=req.user_ci,
        real_name=req.real_name,
        phone_num=req.phone_num,
        request_title=req.request_title,
        device_code=req.device_code,
        device_browser=req.device_browser,
        return_app_scheme_url=req.return_app_scheme_url,
        consent_type=req.consent_type,
        issued_at=now,
        expires_at=now + CERTIFICATE_VALIDITY_SECONDS,
        consent_items=[
            ConsentItem(
                tx_id=tx_id,
                consent_title=item.consent_title,
                consent=item.consent,
                consent_len=item.consent_len,
                consent_type=req.consent_type,
            )
            for tx_id, item in zip(tx_ids, req.consent_list)
        ],
    )
    if not registry.save_certificate(cert):
        raise Rejection(
            "INVALID_PARAMETERS",
            detail="consent_list: tx_id already issued",
            phase=Phase.IA102.value,
            client_id=auth.client_id,
            payload=payload,
        )
    audit_log.phase_completed(
        Phase.IA102.value, auth.client_id, cert.cert_tx_id,
        sign_tx_id=cert.sign_tx_id, consent_cnt=len(cert.consent_items),
    )

    link = f"cert_tx_id={cert.cert_tx_id}"
    return respond(
        cert_tx_id=cert.cert_tx_id,
        sign_ios_app_scheme_url=f"{APP_SCHEME_URL}?{link}",
        sign_aos_app_scheme_url=f"{APP_SCHEME_URL}?{link}",
        sign_web_url=f"{settings.sign_web_base_url}?{link}",
    )


@router.post("/ca/sign_result")
def sign_result(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    auth: AuthResult = Depends(require_token(Phase.IA103)),
    registry: ConsentRegistry = Depends(get_registry),
    flow: ProtocolFlowValidator = Depends(get_flow),
    signer: ConsentSigner = Depends(get_signer),
):
    payload = body or {}
    check_request(Phase.IA103, request, payload, auth.client_id)
    req = SignResultRequest.model_validate(payload)

    decision = flow.admit_sign_result(req.cert_tx_id, req.sign_tx_id)
    if not decision.admitted:
        raise flow_rejection(Phase.IA103.value, decision, payload, auth.client_id)

    cert = decision.certificate
    signed = [signer.sign(cert, item) for item in cert.consent_items]
    if not registry.save_signed_consents(cert.cert_tx_id, signed):
        raise Rejection(
            "OUT_OF_SEQUENCE",
            detail="consents already signed",
            phase=Phase.IA103.value,
            client_id=auth.client_id,
            payload=payload,
        )

    audit_log.phase_completed(Phase.IA103.value, auth.client_id, cert.cert_tx_id, signed_consent_cnt=len(signed))
    return respond(
        signed_consent_cnt=len(signed),
        signed_consent_list=[s.to_dict() for s in signed],
    )


@router.post("/ca/sign_verification")
def sign_verification(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    auth: AuthResult = Depends(require_token(Phase.IA104)),
    registry: ConsentRegistry = Depends(get_registry),
    flow: ProtocolFlowValidator = Depends(get_flow),
    signer: ConsentSigner = Depends(get_signer),
):
    payload = body or {}
    check_request(Phase.IA104, request, payload, auth.client_id)
    req = SignVerificationRequest.model_validate(payload)

    decision = flow.admit_sign_verification(req.cert_tx_id, req.tx_id)
    if not decision.admitted:
        raise flow_rejection(Phase.IA104.value, decision, payload, auth.client_id)

    cert = decision.certificate
    now = now_epoch()
    result = (
        cert.expires_at > now
        and req.signed_consent_len == len(req.signed_consent)
        and signer.verify(
            req.signed_consent, req.cert_tx_id, req.tx_id,
            req.consent, req.consent_type, req.consent_len,
        )
    )
    registry.save_verification(Verification(
        tx_id=req.tx_id,
        cert_tx_id=req.cert_tx_id,
        result=result,
        verified_at=now,
    ))

    if not result:
        audit_log.security_event(
            "consent_verification_failed",
            severity="low",
            cert_tx_id=req.cert_tx_id,
            tx_id=req.tx_id,
            client_id=auth.client_id,
        )
    audit_log.phase_completed(Phase.IA104.value, auth.client_id, req.cert_tx_id, req.tx_id, result=result)
    return respond(tx_id=req.tx_id, result=result, user_ci=cert.user_ci if result else "")


# ============================================================
# Data access (IA002)
# ============================================================

@router.post("/bank/data_access")
def data_access(
    request: Request,
    body: Optional[Dict[str, Any]] = Body(None),
    auth: AuthResult = Depends(require_token(Phase.IA002)),
    flow: ProtocolFlowValidator = Depends(get_flow),
):
    payload = body or {}
    check_request(Phase.IA002, request, payload, auth.client_id)
    req = DataAccessRequest.model_validate(payload)

    decision = flow.admit_data_access(req.tx_id)
    if not decision.admitted:
        raise flow_rejection(Phase.IA002.value, decision, payload, auth.client_id)

    cert = decision.certificate
    item = cert.item(req.tx_id) if cert else None
    if item is None:
        raise Rejection(
            "NO_CERTIFICATE_FOUND",
            detail="certificate for tx_id no longer exists",
            phase=Phase.IA002.value,
            client_id=auth.client_id,
            payload=payload,
        )

    audit_log.phase_completed(Phase.IA002.value, auth.client_id, cert.cert_tx_id, req.tx_id)
    return respond(
        tx_id=req.tx_id,
        cert_tx_id=cert.cert_tx_id,
        user_ci=cert.user_ci,
        consent_title=item.consent_title,
    )


@router.get("/health")
def health(
    registry: ConsentRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    return respond(status="ok", registry=registry.stats(), config=validate_config(settings))


# ============================================================
# API exchange log
# ============================================================

def logged_body(raw: bytes, content_type: str) -> Any:
    """Request body as written to the exchange log, with secrets masked."""
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="replace")
    if content_type.startswith("application/x-www-form-urlencoded"):
        return redact(dict(parse_qsl(text, keep_blank_values=True)))
    doc = parse_json_or_empty(text)
    if isinstance(doc, dict) and doc:
        return redact(doc)
    return text


async def exchange_log(request: Request, call_next):
    """Tag the request with its x-api-tran-id and record the exchange in the API log."""
    request_id = set_request_id(request.headers.get("x-api-tran-id"))
    api_log: Optional[ApiLogWriter] = request.app.state.api_log

    raw = await request.body() if api_log is not None else b""
    response = await call_next(request)
    response.headers["x-api-tran-id"] = request_id
    if api_log is None:
        return response

    content = b"".join([chunk async for chunk in response.body_iterator])
    await run_in_threadpool(
        api_log.append,
        utc_iso(now_epoch()),
        request.headers.get(ATTACK_TYPE_HEADER, ""),
        request_id,
        request.method,
        str(request.url),
        getattr(request.state, "client_id", None) or "",
        logged_body(raw, request.headers.get("content-type", "")),
        response.status_code,
        content.decode("utf-8", errors="replace"),
    )
    return Response(
        content=content,
        status_code=response.status_code,
        headers=dict(response.headers),
        media_type=response.media_type,
    )


# ============================================================
# Application
# ============================================================

def create_app(
    settings: Optional[Settings] = None,
    registry: Optional[ConsentRegistry] = None,
    signer: Optional[ConsentSigner] = None
) -> FastAPI:
    """
    Build the CA service.

    The registry is opened on startup and closed on shutdown. Without an
    injected signer the CA key is loaded from settings.ca_signing_key_path.
    """
    settings = settings or Settings.from_env()
    settings.check()

    app = FastAPI(title="MyData CA")
    app.state.settings = settings
    app.state.registry = registry or ConsentRegistry(settings.db_path)
    app.state.signer = signer
    app.state.issuer = TokenIssuer(
        settings.jwt_secret, settings.jwt_issuer, settings.jwt_audience, settings.token_ttl_seconds
    )
    app.state.guard = TokenScopeGuard(
        settings.jwt_secret, settings.jwt_issuer, settings.jwt_audience,
        revocation_store=app.state.registry,
    )
    app.state.flow = ProtocolFlowValidator(app.state.registry, strict_discovery=settings.strict_discovery)
    app.state.token_limiter = RateLimiter(settings.token_rpm)
    app.state.api_log = ApiLogWriter(settings.api_log_path) if settings.api_log_path else None

    @app.on_event("startup")
    def _startup():
        configure_logging(settings.log_level, settings.log_json)
        app.state.registry.open()
        if app.state.signer is None:
            try:
                app.state.signer = ConsentSigner.from_file(settings.ca_signing_key_path)
            except SigningKeyError:
                logger.critical("CA signing key unavailable; run tools/gen_ca_keys.py")
                raise
        logger.info("MyData CA started (env=%s, kid=%s)", settings.env, app.state.signer.kid)

    @app.on_event("shutdown")
    def _shutdown():
        app.state.registry.close()

    install_handlers(app)
    app.middleware("http")(exchange_log)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ca_service.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=app.state.settings.log_level.lower(),
    )
