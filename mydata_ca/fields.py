"""
Field format validation for MyData CA requests.

The protocol's length, charset and enumeration rules are kept as data: one
FieldRule per field, grouped into ordered tables per operation, consulted by a
single generic validator. Checks are deterministic and side-effect free and
return a FieldCheck instead of raising.

For every field the checks run in a fixed order and the first violation wins:

    1. presence        -> FieldError.MISSING
    2. length bound    -> FieldError.TOO_LONG / FieldError.WRONG_LENGTH
    3. type and shape  -> FieldError.WRONG_TYPE / FieldError.COUNT_MISMATCH

Fields of an operation are checked in table order, so the first failing field
decides the response code.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Pattern, Tuple

from .errors import FieldError


class FieldKind(str, Enum):
    STRING = "string"
    INTEGER = "integer"
    LIST = "list"


ALNUM = re.compile(r'^[A-Za-z0-9]+$')
TX_CHARSET = re.compile(r'^[A-Za-z0-9_\-.:]+$')
TX_ID_CHARSET = re.compile(r'^[A-Za-z0-9_]+$')
BASE64_CHARSET = re.compile(r'^[A-Za-z0-9+/]+={0,2}$')
SIGNED_CONSENT_CHARSET = re.compile(r'^[A-Za-z0-9_\-.]+$')
KR_PHONE = re.compile(r'^\+82[0-9]+$')
# Longest digit string any integer rule accepts (10000).
_MAX_INT_DIGITS = 5


@dataclass(frozen=True)
class FieldRule:
    """Declarative format rule for one protocol field."""
    name: str
    required: bool = True
    kind: FieldKind = FieldKind.STRING
    max_length: Optional[int] = None
    exact_length: Optional[int] = None
    pattern: Optional[Pattern] = None
    choices: Optional[FrozenSet[str]] = None
    min_value: Optional[int] = None
    max_value: Optional[int] = None
    count_of: Optional[str] = None
    item_rules: Tuple["FieldRule", ...] = ()
    response_code: str = "INVALID_PARAMETERS"


@dataclass
class FieldCheck:
    """Outcome of validating a field or a whole payload."""
    field: Optional[str] = None
    error: Optional[FieldError] = None
    response_code: str = "SUCCESS"
    detail: Optional[str] = None

    def passed(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        d = {"passed": self.passed(), "response_code": self.response_code}
        if self.field:
            d["field"] = self.field
        if self.error:
            d["error"] = self.error.value
        if self.detail:
            d["detail"] = self.detail
        return d


PASSED = FieldCheck()


# ============================================================
# Rule table
# ============================================================

API_TRAN_ID_RULE = FieldRule(
    "x-api-tran-id", exact_length=25, pattern=ALNUM, response_code="INVALID_API_TRAN_ID"
)

GRANT_TYPE_RULE = FieldRule("grant_type", choices=frozenset({"client_credentials"}))
CLIENT_ID_RULE = FieldRule("client_id", max_length=50)
CLIENT_SECRET_RULE = FieldRule("client_secret", max_length=100)
MANAGE_SCOPE_RULE = FieldRule("scope", choices=frozenset({"manage"}))
CA_SCOPE_RULE = FieldRule("scope", choices=frozenset({"ca"}))

SIGN_TX_ID_RULE = FieldRule(
    "sign_tx_id", max_length=49, pattern=TX_CHARSET, response_code="INVALID_SIGN_TX_ID"
)
CERT_TX_ID_RULE = FieldRule(
    "cert_tx_id", exact_length=40, pattern=TX_CHARSET, response_code="INVALID_CERT_TX_ID"
)
TX_ID_RULE = FieldRule(
    "tx_id", exact_length=74, pattern=TX_ID_CHARSET, response_code="INVALID_TX_ID"
)

CONSENT_TYPE_RULE = FieldRule("consent_type", exact_length=1, choices=frozenset({"0", "1"}))
CONSENT_RULE = FieldRule("consent", max_length=500)
CONSENT_LEN_RULE = FieldRule("consent_len", kind=FieldKind.INTEGER, min_value=0, max_value=999)

CONSENT_ITEM_RULES: Tuple[FieldRule, ...] = (
    FieldRule("tx_id", required=False, exact_length=74, pattern=TX_ID_CHARSET),
    FieldRule("consent_title", max_length=100),
    CONSENT_RULE,
    CONSENT_LEN_RULE,
)

FIELD_RULES: Dict[str, FieldRule] = {
    rule.name: rule for rule in (
        API_TRAN_ID_RULE,
        GRANT_TYPE_RULE,
        CLIENT_ID_RULE,
        CLIENT_SECRET_RULE,
        SIGN_TX_ID_RULE,
        FieldRule("user_ci", max_length=100, pattern=BASE64_CHARSET),
        FieldRule("real_name", max_length=30),
        FieldRule("phone_num", max_length=15, pattern=KR_PHONE),
        FieldRule("request_title", max_length=200),
        FieldRule("device_code", choices=frozenset({"PC", "TB", "MO"})),
        FieldRule("device_browser", choices=frozenset({"WB", "NA", "HY"})),
        FieldRule("return_app_scheme_url", max_length=200),
        FieldRule("consent_cnt", kind=FieldKind.INTEGER, min_value=1, max_value=9999),
        FieldRule(
            "consent_list", kind=FieldKind.LIST, max_length=9999,
            count_of="consent_cnt", item_rules=CONSENT_ITEM_RULES,
        ),
        CONSENT_TYPE_RULE,
        FieldRule("consent_title", max_length=100),
        CONSENT_RULE,
        CONSENT_LEN_RULE,
        CERT_TX_ID_RULE,
        TX_ID_RULE,
        FieldRule("signed_consent", max_length=10000, pattern=SIGNED_CONSENT_CHARSET),
        FieldRule("signed_consent_len", kind=FieldKind.INTEGER, min_value=1, max_value=10000),
        FieldRule("token", max_length=4096),
    )
}


def _rules(*names: str) -> Tuple[FieldRule, ...]:
    return tuple(FIELD_RULES[n] for n in names)


# Ordered per operation; the order decides which error a caller sees first.
OPERATION_RULES: Dict[str, Tuple[FieldRule, ...]] = {
    "SUPPORT001": (GRANT_TYPE_RULE, CLIENT_ID_RULE, CLIENT_SECRET_RULE, MANAGE_SCOPE_RULE),
    "SUPPORT002": (),
    "IA101": (GRANT_TYPE_RULE, CLIENT_ID_RULE, CLIENT_SECRET_RULE, CA_SCOPE_RULE),
    "IA102": _rules(
        "sign_tx_id", "user_ci", "real_name", "phone_num", "request_title",
        "device_code", "device_browser", "return_app_scheme_url",
        "consent_cnt", "consent_list", "consent_type",
    ),
    "IA103": _rules("cert_tx_id", "sign_tx_id"),
    "IA104": _rules(
        "cert_tx_id", "tx_id", "signed_consent", "signed_consent_len",
        "consent", "consent_type", "consent_len",
    ),
    "IA002": _rules("tx_id"),
    "REVOKE": _rules("token"),
}


# ============================================================
# Generic validator
# ============================================================

def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, int):
        return str(value)
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not (text.isascii() and text.isdigit()) or len(text) > _MAX_INT_DIGITS:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _fail(rule: FieldRule, error: FieldError, detail: str, field: Optional[str] = None) -> FieldCheck:
    return FieldCheck(field=field or rule.name, error=error, response_code=rule.response_code, detail=detail)


def check_field(rule: FieldRule, value: Any, payload: Optional[Mapping[str, Any]] = None) -> FieldCheck:
    """
    Validate one value against its rule.

    Args:
        rule: The field rule
        value: The raw value from the request (may be None)
        payload: The enclosing payload, needed for cross-field counts

    Returns:
        FieldCheck; passed() is True when the value satisfies the rule
    """
    if _is_missing(value):
        if rule.required:
            return _fail(rule, FieldError.MISSING, "is required")
        return PASSED

    if rule.kind == FieldKind.LIST:
        return _check_list(rule, value, payload or {})

    if rule.kind == FieldKind.INTEGER:
        number = _as_int(value)
        if number is None:
            return _fail(rule, FieldError.WRONG_TYPE, "must be an integer")
        if rule.max_value is not None and number > rule.max_value:
            return _fail(rule, FieldError.TOO_LONG, f"must not exceed {rule.max_value}")
        if rule.min_value is not None and number < rule.min_value:
            return _fail(rule, FieldError.WRONG_TYPE, f"must be at least {rule.min_value}")
        return PASSED

    text = _as_text(value)
    if text is None:
        return _fail(rule, FieldError.WRONG_TYPE, "must be a string")
    if rule.max_length is not None and len(text) > rule.max_length:
        return _fail(rule, FieldError.TOO_LONG, f"must not exceed {rule.max_length} characters")
    if rule.exact_length is not None and len(text) != rule.exact_length:
        return _fail(rule, FieldError.WRONG_LENGTH, f"must be exactly {rule.exact_length} characters")
    if rule.choices is not None and text not in rule.choices:
        return _fail(rule, FieldError.WRONG_TYPE, f"must be one of {sorted(rule.choices)}")
    if rule.pattern is not None and not rule.pattern.match(text):
        return _fail(rule, FieldError.WRONG_TYPE, "contains characters outside the allowed set")
    return PASSED


def _check_list(rule: FieldRule, value: Any, payload: Mapping[str, Any]) -> FieldCheck:
    if not isinstance(value, (list, tuple)):
        return _fail(rule, FieldError.WRONG_TYPE, "must be a list")
    if rule.max_length is not None and len(value) > rule.max_length:
        return _fail(rule, FieldError.TOO_LONG, f"must not exceed {rule.max_length} items")
    if rule.count_of:
        expected = _as_int(payload.get(rule.count_of))
        if expected is None or len(value) != expected:
            return _fail(rule, FieldError.COUNT_MISMATCH, f"length must equal {rule.count_of}")
    for i, item in enumerate(value):
        if not isinstance(item, Mapping):
            return _fail(rule, FieldError.WRONG_TYPE, "items must be objects", f"{rule.name}[{i}]")
        for item_rule in rule.item_rules:
            result = check_field(item_rule, item.get(item_rule.name), item)
            if not result.passed():
                return FieldCheck(
                    field=f"{rule.name}[{i}].{item_rule.name}",
                    error=result.error,
                    response_code=rule.response_code,
                    detail=result.detail,
                )
    return PASSED


def check(name: str, value: Any, payload: Optional[Mapping[str, Any]] = None) -> FieldCheck:
    """Validate a single named field, e.g. check("phone_num", "+821012345678")."""
    rule = FIELD_RULES.get(name)
    if rule is None:
        raise KeyError(f"no format rule for field {name!r}")
    return check_field(rule, value, payload)


def validate_rules(rules: Tuple[FieldRule, ...], payload: Mapping[str, Any]) -> FieldCheck:
    """Validate a payload against an ordered rule tuple; first failure wins."""
    for rule in rules:
        result = check_field(rule, payload.get(rule.name), payload)
        if not result.passed():
            return result
    return PASSED


def validate_payload(operation: str, payload: Mapping[str, Any]) -> FieldCheck:
    """Validate a request payload for a named operation (e.g. "IA102")."""
    rules = OPERATION_RULES.get(getattr(operation, "value", operation))
    if rules is None:
        raise KeyError(f"unknown operation {operation!r}")
    return validate_rules(rules, payload)


def check_api_tran_id(value: Optional[str], required: bool) -> FieldCheck:
    """Validate the x-api-tran-id header; when not required only a supplied value is checked."""
    if not required and _is_missing(value):
        return PASSED
    return check_field(API_TRAN_ID_RULE, value)
