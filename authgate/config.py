# authgate/config.py
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str
    secret_key: str
    env: Literal["dev", "stage", "prod"] = "dev"
    debug: bool = False
    log_level: str = "INFO"
    audit_log_level: str = "INFO"
    access_log: bool = True
    sql_echo: bool = False
    auto_init_db: bool = True

    # Role/scope encoding. Order matters in bitwise mode: position n is flag 1 << n.
    role_encoding: Literal["string", "bitwise"] = "string"
    client_roles: list[str] = ["internal", "system", "partner"]
    user_roles: list[str] = ["sysadmin", "employee", "admin", "billing", "support"]
    oauth_scopes: list[str] = ["read:profile", "read:billing", "write:billing"]

    # Token and session lifetimes
    access_token_ttl_minutes: int = 15
    refresh_token_ttl_days: int = 30
    session_ttl_days: int = 30

    password_hash_iterations: int = 210_000

    # Login flow
    login_state_ttl_minutes: int = 15
    max_login_attempts: int = 5
    verification_code_ttl_minutes: int = 15
    max_code_attempts: int = 5
    totp_issuer: str = "authgate"
    totp_valid_window: int = 1
    totp_encryption_key: Optional[str] = None  # Fernet key; derived from secret_key when unset

    # Debug key unlocks debug-mode observability on a request; never an auth bypass
    debug_key: Optional[str] = None

    # Email delivery
    resend_api_key: Optional[str] = None
    email_from_address: str = "no-reply@authgate.local"

    @property
    def is_dev(self) -> bool:
        return self.env == "dev" or self.debug is True

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()  # type: ignore[call-arg]
