"""
Consent lifecycle records.

A Certificate owns its ConsentItems, SignedConsents and Verifications; they
share its lifetime. Everything except the certificate's signed flag is
immutable once created.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

CERTIFICATE_VALIDITY_SECONDS = 365 * 24 * 3600


@dataclass(frozen=True)
class ConsentItem:
    tx_id: str
    consent_title: str
    consent: str
    consent_len: int
    consent_type: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Certificate:
    """Created by sign_request; only the signed flag changes afterwards."""
    cert_tx_id: str
    sign_tx_id: str
    org_code: str
    ca_code: str
    serial_number: str
    user_ci: str
    real_name: str
    phone_num: str
    request_title: str
    device_code: str
    device_browser: str
    return_app_scheme_url: str
    consent_type: str
    issued_at: int
    expires_at: int
    consent_items: List[ConsentItem] = field(default_factory=list)
    signed: bool = False

    def tx_ids(self) -> List[str]:
        return [item.tx_id for item in self.consent_items]

    def item(self, tx_id: str) -> Optional[ConsentItem]:
        for consent_item in self.consent_items:
            if consent_item.tx_id == tx_id:
                return consent_item
        return None


@dataclass(frozen=True)
class SignedConsent:
    tx_id: str
    signed_consent: str
    signed_consent_len: int
    cert_tx_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "signed_consent": self.signed_consent,
            "signed_consent_len": self.signed_consent_len,
        }


@dataclass(frozen=True)
class Verification:
    tx_id: str
    cert_tx_id: str
    result: bool
    verified_at: int
