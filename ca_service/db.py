"""
Database module for the MyData CA service.

ConsentRegistry is the SQLite-backed store for organizations, OAuth clients,
certificates and their consents, signed consents, verifications, revoked
tokens and per-organization flow phases. It implements both FlowStore and
RevocationStore, so the core validators read it directly.

Each phase's writes run in one transaction. Any sqlite3 failure surfaces as
RegistryUnavailable with the transaction rolled back.
"""

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from mydata_ca.errors import RegistryUnavailable
from mydata_ca.flow import FlowStore, Phase
from mydata_ca.records import Certificate, ConsentItem, SignedConsent, Verification
from mydata_ca.tokens import RevocationStore
from mydata_ca.util import constant_time_compare, sha256_hex

TABLES = [
    "organizations",
    "oauth_clients",
    "certificates",
    "consents",
    "signed_consents",
    "verifications",
    "revoked_tokens",
    "flow_phases",
]

ORGANIZATION_FIELDS = ["org_code", "name", "org_type", "industry", "serial_num", "auth_type", "op_type"]

CERTIFICATE_FIELDS = [
    "cert_tx_id", "sign_tx_id", "org_code", "ca_code", "serial_number", "user_ci",
    "real_name", "phone_num", "request_title", "device_code", "device_browser",
    "return_app_scheme_url", "consent_type", "issued_at", "expires_at",
]


class _TxIdTaken(Exception):
    """A consent tx_id collided with one already stored."""


class ConsentRegistry(FlowStore, RevocationStore):
    """
    SQLite consent registry.

    Connections are thread-local and reused within a thread. open() creates
    the schema; close() closes every connection this registry opened.
    """

    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._lock = threading.Lock()

    # ============================================================
    # Connection management
    # ============================================================

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            try:
                self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
                conn.execute("PRAGMA foreign_keys=ON;")
                conn.execute("PRAGMA busy_timeout=5000;")
            except (sqlite3.Error, OSError) as e:
                raise RegistryUnavailable(f"cannot open registry at {self._db_path}: {e}") from e
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions.
        Commits on success, rolls back on failure.
        """
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RegistryUnavailable(str(e)) from e
        except Exception:
            conn.rollback()
            raise

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise RegistryUnavailable(str(e)) from e

    def open(self) -> None:
        """
        Initialize database schema with indexes.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                org_code TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                org_type TEXT NOT NULL DEFAULT '',
                industry TEXT NOT NULL DEFAULT '',
                serial_num TEXT NOT NULL DEFAULT '',
                auth_type TEXT NOT NULL DEFAULT '',
                op_type TEXT NOT NULL DEFAULT 'I',
                created_at INTEGER DEFAULT (strftime('%s', 'now'))
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS oauth_clients (
                client_id TEXT PRIMARY KEY,
                secret_hash TEXT NOT NULL,
                org_code TEXT NOT NULL REFERENCES organizations(org_code),
                created_at INTEGER DEFAULT (strftime('%s', 'now'))
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS certificates (
                cert_tx_id TEXT PRIMARY KEY,
                sign_tx_id TEXT NOT NULL,
                org_code TEXT NOT NULL,
                ca_code TEXT NOT NULL,
                serial_number TEXT NOT NULL,
                user_ci TEXT NOT NULL,
                real_name TEXT NOT NULL,
                phone_num TEXT NOT NULL,
                request_title TEXT NOT NULL,
                device_code TEXT NOT NULL,
                device_browser TEXT NOT NULL,
                return_app_scheme_url TEXT NOT NULL,
                consent_type TEXT NOT NULL,
                issued_at INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                signed INTEGER NOT NULL DEFAULT 0
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_certificates_sign_tx_id
            ON certificates(sign_tx_id);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS consents (
                cert_tx_id TEXT NOT NULL REFERENCES certificates(cert_tx_id) ON DELETE CASCADE,
                tx_id TEXT NOT NULL,
                position INTEGER NOT NULL,
                consent_title TEXT NOT NULL,
                consent TEXT NOT NULL,
                consent_len INTEGER NOT NULL,
                consent_type TEXT NOT NULL,
                PRIMARY KEY (cert_tx_id, tx_id)
            );""")
            # A tx_id names one consent across all certificates.
            conn.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_consents_tx_id
            ON consents(tx_id);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS signed_consents (
                cert_tx_id TEXT NOT NULL REFERENCES certificates(cert_tx_id) ON DELETE CASCADE,
                tx_id TEXT NOT NULL,
                signed_consent TEXT NOT NULL,
                signed_consent_len INTEGER NOT NULL,
                PRIMARY KEY (cert_tx_id, tx_id)
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_signed_consents_tx_id
            ON signed_consents(tx_id);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS verifications (
                tx_id TEXT PRIMARY KEY,
                cert_tx_id TEXT NOT NULL REFERENCES certificates(cert_tx_id) ON DELETE CASCADE,
                result INTEGER NOT NULL,
                verified_at INTEGER NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS revoked_tokens (
                jti TEXT PRIMARY KEY,
                expires_at INTEGER NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_revoked_tokens_expires
            ON revoked_tokens(expires_at);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS flow_phases (
                flow_key TEXT NOT NULL,
                phase TEXT NOT NULL,
                recorded_at INTEGER NOT NULL,
                PRIMARY KEY (flow_key, phase)
            );""")

    def close(self) -> None:
        """Close every connection opened by this registry."""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections = []
        self._local = threading.local()

    def reset(self) -> None:
        """
        Reset the database for test isolation.
        Clears all tables but preserves schema.
        """
        with self._transaction() as conn:
            for table in reversed(TABLES):
                conn.execute(f"DELETE FROM {table}")

    def stats(self) -> Dict[str, int]:
        """Row counts per table for health reporting."""
        stats = {}
        for table in TABLES:
            rows = self._query(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = rows[0]["cnt"]
        return stats

    # ============================================================
    # Organizations and clients
    # ============================================================

    def add_organization(self, org: Dict[str, Any]) -> None:
        values = [str(org.get(f, "")) for f in ORGANIZATION_FIELDS]
        if not values[-1]:
            values[-1] = "I"
        with self._transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO organizations({', '.join(ORGANIZATION_FIELDS)}) "
                f"VALUES({', '.join('?' for _ in ORGANIZATION_FIELDS)})",
                values
            )

    def list_organizations(self) -> List[Dict[str, str]]:
        rows = self._query(
            f"SELECT {', '.join(ORGANIZATION_FIELDS)} FROM organizations ORDER BY org_code"
        )
        return [dict(row) for row in rows]

    def get_organization(self, org_code: str) -> Optional[Dict[str, str]]:
        rows = self._query(
            f"SELECT {', '.join(ORGANIZATION_FIELDS)} FROM organizations WHERE org_code=?",
            (org_code,)
        )
        return dict(rows[0]) if rows else None

    def add_client(self, client_id: str, client_secret: str, org_code: str) -> None:
        """Register an OAuth client. Only the SHA-256 of the secret is stored."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO oauth_clients(client_id, secret_hash, org_code) VALUES(?,?,?)",
                (client_id, sha256_hex(client_secret), org_code)
            )

    def authenticate_client(self, client_id: str, client_secret: str) -> Optional[str]:
        """Return the client's org_code when the credentials match, else None."""
        rows = self._query(
            "SELECT secret_hash, org_code FROM oauth_clients WHERE client_id=?",
            (client_id,)
        )
        if not rows:
            return None
        if not constant_time_compare(rows[0]["secret_hash"], sha256_hex(client_secret)):
            return None
        return rows[0]["org_code"]

    # ============================================================
    # Certificates and consents
    # ============================================================

    def save_certificate(self, cert: Certificate) -> bool:
        """
        Store a certificate with all its consent items atomically.

        Returns False (and writes nothing) if any of its tx_ids already
        belongs to a stored consent.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    f"INSERT INTO certificates({', '.join(CERTIFICATE_FIELDS)}) "
                    f"VALUES({', '.join('?' for _ in CERTIFICATE_FIELDS)})",
                    [getattr(cert, f) for f in CERTIFICATE_FIELDS]
                )
                try:
                    conn.executemany(
                        "INSERT INTO consents(cert_tx_id, tx_id, position, consent_title, consent, "
                        "consent_len, consent_type) VALUES(?,?,?,?,?,?,?)",
                        [
                            (cert.cert_tx_id, item.tx_id, i, item.consent_title, item.consent,
                             item.consent_len, item.consent_type)
                            for i, item in enumerate(cert.consent_items)
                        ]
                    )
                except sqlite3.IntegrityError as e:
                    raise _TxIdTaken(str(e)) from e
        except _TxIdTaken:
            return False
        return True

    def get_certificate(self, cert_tx_id: str) -> Optional[Certificate]:
        rows = self._query(
            f"SELECT {', '.join(CERTIFICATE_FIELDS)}, signed FROM certificates WHERE cert_tx_id=?",
            (cert_tx_id,)
        )
        if not rows:
            return None
        row = dict(rows[0])
        signed = bool(row.pop("signed"))
        items = self._query(
            "SELECT tx_id, consent_title, consent, consent_len, consent_type "
            "FROM consents WHERE cert_tx_id=? ORDER BY position",
            (cert_tx_id,)
        )
        return Certificate(
            **row,
            consent_items=[ConsentItem(**dict(item)) for item in items],
            signed=signed,
        )

    def save_signed_consents(self, cert_tx_id: str, consents: List[SignedConsent]) -> bool:
        """
        Store all signed consents of a certificate in one transaction.

        Returns False (and writes nothing) if the certificate was signed
        concurrently.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE certificates SET signed=1 WHERE cert_tx_id=? AND signed=0",
                (cert_tx_id,)
            )
            if cur.rowcount != 1:
                return False
            conn.executemany(
                "INSERT INTO signed_consents(cert_tx_id, tx_id, signed_consent, signed_consent_len) "
                "VALUES(?,?,?,?)",
                [(cert_tx_id, c.tx_id, c.signed_consent, c.signed_consent_len) for c in consents]
            )
            return True

    def signed_tx_ids(self, cert_tx_id: str) -> Set[str]:
        rows = self._query("SELECT tx_id FROM signed_consents WHERE cert_tx_id=?", (cert_tx_id,))
        return {row["tx_id"] for row in rows}

    def get_signed_consent(self, cert_tx_id: str, tx_id: str) -> Optional[SignedConsent]:
        rows = self._query(
            "SELECT tx_id, signed_consent, signed_consent_len, cert_tx_id FROM signed_consents "
            "WHERE cert_tx_id=? AND tx_id=?",
            (cert_tx_id, tx_id)
        )
        return SignedConsent(**dict(rows[0])) if rows else None

    # ============================================================
    # Verifications
    # ============================================================

    def save_verification(self, verification: Verification) -> None:
        """Record the latest verification outcome for a tx_id."""
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO verifications(tx_id, cert_tx_id, result, verified_at) "
                "VALUES(?,?,?,?)",
                (verification.tx_id, verification.cert_tx_id, int(verification.result),
                 verification.verified_at)
            )

    def get_verification(self, tx_id: str) -> Optional[Verification]:
        rows = self._query(
            "SELECT tx_id, cert_tx_id, result, verified_at FROM verifications WHERE tx_id=?",
            (tx_id,)
        )
        if not rows:
            return None
        row = rows[0]
        return Verification(
            tx_id=row["tx_id"],
            cert_tx_id=row["cert_tx_id"],
            result=bool(row["result"]),
            verified_at=row["verified_at"],
        )

    # ============================================================
    # Flow phases
    # ============================================================

    def record_phase(self, key: str, phase: Phase) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO flow_phases(flow_key, phase, recorded_at) VALUES(?,?,?)",
                (key, phase.value, int(time.time()))
            )

    def has_phase(self, key: str, phase: Phase) -> bool:
        rows = self._query(
            "SELECT 1 FROM flow_phases WHERE flow_key=? AND phase=?",
            (key, phase.value)
        )
        return bool(rows)

    # ============================================================
    # Token revocation
    # ============================================================

    def revoke(self, jti: str, expires_at: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM revoked_tokens WHERE expires_at < ?", (int(time.time()),))
            conn.execute(
                "INSERT OR REPLACE INTO revoked_tokens(jti, expires_at) VALUES(?,?)",
                (jti, int(expires_at))
            )

    def is_revoked(self, jti: str) -> bool:
        rows = self._query("SELECT 1 FROM revoked_tokens WHERE jti=?", (jti,))
        return bool(rows)
