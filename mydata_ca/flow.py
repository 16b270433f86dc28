"""
Consent lifecycle enforcement.

The MyData CA flow runs in seven phases:

    Support001  management token       START       -> MANAGED
    Support002  organization discovery MANAGED     -> DISCOVERED
    IA101       CA token               DISCOVERED  -> CA_AUTHENTICATED
    IA102       sign request           CA_AUTH.    -> CONSENT_REQUESTED
    IA103       sign result            REQUESTED   -> CONSENT_SIGNED
    IA104       sign verification      SIGNED      -> CONSENT_VERIFIED
    IA002       bank data access       VERIFIED    -> TERMINAL

Two layers enforce it:

- FlowMachine applies the transition table to one key's state. It is pure and
  is used wherever only the call sequence is known (offline detection).
- ProtocolFlowValidator checks that the artifacts produced by the previous
  phase exist in a FlowStore. This is what the service uses on every call.

Neither raises for a rejected call; both return a FlowDecision. FlowStore
implementations raise RegistryUnavailable on infrastructure failure and the
validator lets it propagate.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .errors import ProtocolError
from .records import Certificate, SignedConsent, Verification


class Phase(str, Enum):
    SUPPORT001 = "SUPPORT001"
    SUPPORT002 = "SUPPORT002"
    IA101 = "IA101"
    IA102 = "IA102"
    IA103 = "IA103"
    IA104 = "IA104"
    IA002 = "IA002"


class FlowState(str, Enum):
    START = "START"
    MANAGED = "MANAGED"
    DISCOVERED = "DISCOVERED"
    CA_AUTHENTICATED = "CA_AUTHENTICATED"
    CONSENT_REQUESTED = "CONSENT_REQUESTED"
    CONSENT_SIGNED = "CONSENT_SIGNED"
    CONSENT_VERIFIED = "CONSENT_VERIFIED"
    TERMINAL = "TERMINAL"


# Forward edges of the lifecycle
TRANSITIONS: Dict[Tuple[FlowState, Phase], FlowState] = {
    (FlowState.START, Phase.SUPPORT001): FlowState.MANAGED,
    (FlowState.MANAGED, Phase.SUPPORT002): FlowState.DISCOVERED,
    (FlowState.DISCOVERED, Phase.IA101): FlowState.CA_AUTHENTICATED,
    (FlowState.CA_AUTHENTICATED, Phase.IA102): FlowState.CONSENT_REQUESTED,
    (FlowState.CONSENT_REQUESTED, Phase.IA103): FlowState.CONSENT_SIGNED,
    (FlowState.CONSENT_SIGNED, Phase.IA104): FlowState.CONSENT_VERIFIED,
    (FlowState.CONSENT_VERIFIED, Phase.IA104): FlowState.CONSENT_VERIFIED,
    (FlowState.CONSENT_VERIFIED, Phase.IA002): FlowState.TERMINAL,
    (FlowState.TERMINAL, Phase.IA104): FlowState.TERMINAL,
    (FlowState.TERMINAL, Phase.IA002): FlowState.TERMINAL,
}

_ORDER = list(FlowState)

# Token and discovery calls may be repeated once their phase has been reached
_REPEATABLE_FROM: Dict[Phase, FlowState] = {
    Phase.SUPPORT001: FlowState.MANAGED,
    Phase.SUPPORT002: FlowState.DISCOVERED,
    Phase.IA101: FlowState.CA_AUTHENTICATED,
}

# (method, path) -> phase
ENDPOINT_PHASES: Dict[Tuple[str, str], Phase] = {
    ("POST", "/mgmts/oauth/token"): Phase.SUPPORT001,
    ("GET", "/mgmts/orgs"): Phase.SUPPORT002,
    ("POST", "/oauth/token"): Phase.IA101,
    ("POST", "/ca/sign_request"): Phase.IA102,
    ("POST", "/ca/sign_result"): Phase.IA103,
    ("POST", "/ca/sign_verification"): Phase.IA104,
    ("POST", "/bank/data_access"): Phase.IA002,
}


def phase_for(method: str, path: str) -> Optional[Phase]:
    """Map an HTTP method and path to its lifecycle phase, or None for other endpoints."""
    return ENDPOINT_PHASES.get((method.upper(), path.rstrip("/") or "/"))


@dataclass
class FlowDecision:
    """Outcome of a lifecycle check."""
    admitted: bool
    error: Optional[ProtocolError] = None
    detail: Optional[str] = None
    state: Optional[FlowState] = None
    subject: Optional[str] = None  # artifact that was missing or in the wrong state
    certificate: Optional[Certificate] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "admitted": self.admitted,
            "error": self.error.value if self.error else None,
            "detail": self.detail,
            "state": self.state.value if self.state else None,
            "subject": self.subject,
        }


def _admit(state: FlowState, certificate: Optional[Certificate] = None) -> FlowDecision:
    return FlowDecision(admitted=True, state=state, certificate=certificate)


def _reject(error: ProtocolError, subject: str, detail: str) -> FlowDecision:
    return FlowDecision(admitted=False, error=error, subject=subject, detail=detail)


# ============================================================
# State machine
# ============================================================

def next_state(state: FlowState, phase: Phase) -> Optional[FlowState]:
    """Apply the transition table; None means the phase is out of sequence."""
    target = TRANSITIONS.get((state, phase))
    if target is not None:
        return target

    reached = _ORDER.index(state)
    if phase in _REPEATABLE_FROM and reached >= _ORDER.index(_REPEATABLE_FROM[phase]):
        return state

    # each IA102 opens a new consent flow
    if phase == Phase.IA102 and reached >= _ORDER.index(FlowState.CA_AUTHENTICATED):
        return FlowState.CONSENT_REQUESTED

    return None


class FlowMachine:
    """Lifecycle state of a single key (client or organization)."""

    def __init__(self, state: FlowState = FlowState.START):
        self.state = state
        self.history: List[Phase] = []

    def advance(self, phase: Phase) -> FlowDecision:
        target = next_state(self.state, phase)
        if target is None:
            return FlowDecision(
                admitted=False,
                error=ProtocolError.OUT_OF_SEQUENCE,
                subject="flow",
                detail=f"{phase.value} not allowed in state {self.state.value}",
                state=self.state,
            )
        self.state = target
        self.history.append(phase)
        return _admit(target)

    def reset(self) -> None:
        self.state = FlowState.START
        self.history = []


# ============================================================
# Artifact store
# ============================================================

class FlowStore(ABC):
    """
    Read side of the consent registry needed to admit a phase.

    Implementations must raise RegistryUnavailable (never return a default)
    when the backing store fails.
    """

    @abstractmethod
    def record_phase(self, key: str, phase: Phase) -> None:
        pass

    @abstractmethod
    def has_phase(self, key: str, phase: Phase) -> bool:
        pass

    @abstractmethod
    def get_certificate(self, cert_tx_id: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    def signed_tx_ids(self, cert_tx_id: str) -> Set[str]:
        """tx_ids with a signed consent under the certificate; empty before sign_result."""
        pass

    @abstractmethod
    def get_verification(self, tx_id: str) -> Optional[Verification]:
        pass


class InMemoryFlowStore(FlowStore):
    """Process-local FlowStore. Suitable for tests and offline tools."""

    def __init__(self):
        self._lock = threading.RLock()
        self._phases: Dict[str, Set[Phase]] = {}
        self._certificates: Dict[str, Certificate] = {}
        self._signed: Dict[str, Dict[str, SignedConsent]] = {}
        self._verifications: Dict[str, Verification] = {}

    def record_phase(self, key: str, phase: Phase) -> None:
        with self._lock:
            self._phases.setdefault(key, set()).add(phase)

    def has_phase(self, key: str, phase: Phase) -> bool:
        with self._lock:
            return phase in self._phases.get(key, set())

    def save_certificate(self, certificate: Certificate) -> bool:
        with self._lock:
            issued = {tx_id for cert in self._certificates.values() for tx_id in cert.tx_ids()}
            if issued.intersection(certificate.tx_ids()):
                return False
            self._certificates[certificate.cert_tx_id] = certificate
            return True

    def get_certificate(self, cert_tx_id: str) -> Optional[Certificate]:
        with self._lock:
            return self._certificates.get(cert_tx_id)

    def save_signed_consents(self, cert_tx_id: str, consents: List[SignedConsent]) -> bool:
        with self._lock:
            cert = self._certificates[cert_tx_id]
            if cert.signed:
                return False
            self._signed[cert_tx_id] = {c.tx_id: c for c in consents}
            cert.signed = True
            return True

    def get_signed_consent(self, cert_tx_id: str, tx_id: str) -> Optional[SignedConsent]:
        with self._lock:
            return self._signed.get(cert_tx_id, {}).get(tx_id)

    def signed_tx_ids(self, cert_tx_id: str) -> Set[str]:
        with self._lock:
            return set(self._signed.get(cert_tx_id, {}))

    def save_verification(self, verification: Verification) -> None:
        with self._lock:
            self._verifications[verification.tx_id] = verification

    def get_verification(self, tx_id: str) -> Optional[Verification]:
        with self._lock:
            return self._verifications.get(tx_id)


# ============================================================
# Validator
# ============================================================

class ProtocolFlowValidator:
    """
    Admits a phase only when its predecessor artifacts exist.

    NOT_FOUND means the referenced artifact does not exist (yet) and the call
    may be retried. OUT_OF_SEQUENCE means the artifact exists but is in the
    wrong state for this phase.

    With strict_discovery, IA101 additionally requires that the organization
    completed Support002.
    """

    def __init__(self, store: FlowStore, strict_discovery: bool = False):
        self._store = store
        self._strict_discovery = strict_discovery

    def record(self, key: str, phase: Phase) -> None:
        self._store.record_phase(key, phase)

    def admit_ca_token(self, org_key: str) -> FlowDecision:
        if self._strict_discovery and not self._store.has_phase(org_key, Phase.SUPPORT002):
            return _reject(ProtocolError.OUT_OF_SEQUENCE, "organization", "organization discovery (Support002) required first")
        return _admit(FlowState.CA_AUTHENTICATED)

    def admit_sign_result(self, cert_tx_id: str, sign_tx_id: str) -> FlowDecision:
        cert = self._store.get_certificate(cert_tx_id)
        if cert is None:
            return _reject(ProtocolError.NOT_FOUND, "certificate", "no certificate for cert_tx_id")
        if cert.sign_tx_id != sign_tx_id:
            return _reject(ProtocolError.OUT_OF_SEQUENCE, "certificate", "sign_tx_id does not match the sign request")
        if cert.signed or self._store.signed_tx_ids(cert_tx_id):
            return _reject(ProtocolError.OUT_OF_SEQUENCE, "certificate", "consents already signed")
        return _admit(FlowState.CONSENT_SIGNED, cert)

    def admit_sign_verification(self, cert_tx_id: str, tx_id: str) -> FlowDecision:
        cert = self._store.get_certificate(cert_tx_id)
        if cert is None:
            return _reject(ProtocolError.NOT_FOUND, "certificate", "no certificate for cert_tx_id")
        signed = self._store.signed_tx_ids(cert_tx_id)
        if not signed:
            return _reject(ProtocolError.OUT_OF_SEQUENCE, "certificate", "sign result not yet obtained")
        if tx_id not in signed:
            return _reject(ProtocolError.NOT_FOUND, "tx_id", "tx_id has no signed consent")
        return _admit(FlowState.CONSENT_VERIFIED, cert)

    def admit_data_access(self, tx_id: str) -> FlowDecision:
        verification = self._store.get_verification(tx_id)
        if verification is None:
            return _reject(ProtocolError.NOT_FOUND, "verification", "consent not verified")
        if not verification.result:
            return _reject(ProtocolError.OUT_OF_SEQUENCE, "verification", "consent verification failed")
        return _admit(FlowState.TERMINAL, self._store.get_certificate(verification.cert_tx_id))
