"""
Configuration module for the MyData CA service.

Module-level constants are read from environment variables once at import;
Settings bundles them so create_app() and tests can inject their own values.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("MYDATA_ENV", "dev")  # dev|stage|prod

DEV_JWT_SECRET = "dev-only-mydata-ca-secret-change-me"

# OAuth token issuance
JWT_SECRET = os.getenv("JWT_SECRET", DEV_JWT_SECRET)
JWT_ISSUER = os.getenv("JWT_ISSUER", "mydata-ca")
JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "mydata-api")
TOKEN_TTL_SECONDS = int(os.getenv("TOKEN_TTL_SECONDS", "3600"))

# Rate limits (requests per minute per client)
TOKEN_RPM = int(os.getenv("TOKEN_RPM", "60"))

# Paths
DB_PATH = os.getenv("DB_PATH", "mydata_ca.db")
CA_SIGNING_KEY_PATH = os.getenv("CA_SIGNING_KEY_PATH", "secrets/ca_signing_key.json")
API_LOG_PATH = os.getenv("API_LOG_PATH", "")

# CA identity
CA_CODE = os.getenv("CA_CODE", "CA00000001")
SIGN_WEB_BASE_URL = os.getenv("SIGN_WEB_BASE_URL", "https://ca.mydata.example/sign")

# Require Support002 before a CA token is issued
STRICT_DISCOVERY = os.getenv("STRICT_DISCOVERY", "").lower() in ("1", "true", "yes")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Runtime configuration of one application instance."""
    env: str = ENV
    jwt_secret: str = JWT_SECRET
    jwt_issuer: str = JWT_ISSUER
    jwt_audience: str = JWT_AUDIENCE
    token_ttl_seconds: int = TOKEN_TTL_SECONDS
    token_rpm: int = TOKEN_RPM
    db_path: str = DB_PATH
    ca_signing_key_path: str = CA_SIGNING_KEY_PATH
    api_log_path: str = API_LOG_PATH
    ca_code: str = CA_CODE
    sign_web_base_url: str = SIGN_WEB_BASE_URL
    strict_discovery: bool = STRICT_DISCOVERY
    log_level: str = LOG_LEVEL
    log_json: bool = LOG_JSON

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment (re-reads os.environ)."""
        return cls(
            env=os.getenv("MYDATA_ENV", "dev"),
            jwt_secret=os.getenv("JWT_SECRET", DEV_JWT_SECRET),
            jwt_issuer=os.getenv("JWT_ISSUER", "mydata-ca"),
            jwt_audience=os.getenv("JWT_AUDIENCE", "mydata-api"),
            token_ttl_seconds=int(os.getenv("TOKEN_TTL_SECONDS", "3600")),
            token_rpm=int(os.getenv("TOKEN_RPM", "60")),
            db_path=os.getenv("DB_PATH", "mydata_ca.db"),
            ca_signing_key_path=os.getenv("CA_SIGNING_KEY_PATH", "secrets/ca_signing_key.json"),
            api_log_path=os.getenv("API_LOG_PATH", ""),
            ca_code=os.getenv("CA_CODE", "CA00000001"),
            sign_web_base_url=os.getenv("SIGN_WEB_BASE_URL", "https://ca.mydata.example/sign"),
            strict_discovery=os.getenv("STRICT_DISCOVERY", "").lower() in ("1", "true", "yes"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_json=os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes"),
        )

    def is_production(self) -> bool:
        return self.env == "prod"

    def check(self) -> None:
        """Raise ValueError for settings that must not reach production."""
        if self.is_production() and self.jwt_secret == DEV_JWT_SECRET:
            raise ValueError("JWT_SECRET must be set in production")
        if self.token_ttl_seconds <= 0:
            raise ValueError("TOKEN_TTL_SECONDS must be positive")


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Settings = None) -> Dict[str, bool]:
    """
    Validate that all required configuration files exist.
    Returns dict of name -> exists.
    """
    settings = settings or Settings()
    paths = {"ca_signing_key": settings.ca_signing_key_path}
    return {name: Path(path).exists() for name, path in paths.items()}

