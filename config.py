"""
Application configuration via Pydantic Settings.
All values can be overridden by environment variables or a .env file.
"""
from __future__ import annotations

from typing import List, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class _CommaFallbackMixin:
    """Return the raw string when JSON parsing fails.

    pydantic-settings calls json.loads() on complex-typed fields (e.g.
    List[str]) before field_validators run.  A plain comma-separated value
    like ``letsencrypt.org,pki.goog`` is not valid JSON, so hand the raw
    string on to the field_validator which splits it.
    """

    def prepare_field_value(self, field_name, field, value, value_is_complex):  # type: ignore[override]
        try:
            return super().prepare_field_value(field_name, field, value, value_is_complex)  # type: ignore[misc]
        except ValueError:
            return value


class _CSVEnvSource(_CommaFallbackMixin, EnvSettingsSource):
    pass


class _CSVDotEnvSource(_CommaFallbackMixin, DotEnvSettingsSource):
    pass


_PRESETS = {
    "letsencrypt":         "https://acme-v02.api.letsencrypt.org/directory",
    "letsencrypt_staging": "https://acme-staging-v02.api.letsencrypt.org/directory",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── CA Provider ────────────────────────────────────────────────────────
    CA_PROVIDER: Literal["letsencrypt", "letsencrypt_staging", "custom"] = "letsencrypt"
    # Only consulted when CA_PROVIDER="custom"
    ACME_DIRECTORY_URL: str = ""

    # ── ACME account ───────────────────────────────────────────────────────
    ACME_ACCOUNT_KEY_ID: str = "default"
    ACME_CONTACT_EMAIL: str = ""
    ACME_KEY_BITS: int = 2048
    ACME_KEY_EXPONENT: int = 65537
    ACME_AUTO_REGISTER: bool = True   # False = never create accounts, skip renewal instead

    # ── Domain eligibility ─────────────────────────────────────────────────
    ACME_CAA_DOMAINS: List[str] = ["letsencrypt.org"]
    DNS_NAMESERVERS: List[str] = []   # empty = system resolver

    # ── Storage ────────────────────────────────────────────────────────────
    CERT_STORE_PATH: str = "./certs"

    # ── Cluster coordination ───────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    LOCK_LEASE_TTL_SECONDS: int = 600
    LOCK_MAX_WAIT_SECONDS: int = 180
    COOLDOWN_TTL_SECONDS: int = 3600

    # ── ACME TLS (for testing against Pebble / self-signed CAs) ───────────
    ACME_CA_BUNDLE: str = ""       # Path to CA cert bundle; empty = system default
    ACME_INSECURE: bool = False    # Skip TLS verification (never use in production)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _CSVEnvSource(settings_cls),
            _CSVDotEnvSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("ACME_CAA_DOMAINS", "DNS_NAMESERVERS", mode="before")
    @classmethod
    def parse_csv(cls, v: object) -> List[str]:
        """Accept comma-separated string or list."""
        if isinstance(v, str):
            return [d.strip() for d in v.split(",") if d.strip()]
        return v  # type: ignore[return-value]

    @field_validator("LOCK_LEASE_TTL_SECONDS", "LOCK_MAX_WAIT_SECONDS", "COOLDOWN_TTL_SECONDS")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("lock and cooldown durations must be positive")
        return v

    @model_validator(mode="after")
    def resolve_acme_directory(self) -> "Settings":
        if self.CA_PROVIDER in _PRESETS:
            self.ACME_DIRECTORY_URL = _PRESETS[self.CA_PROVIDER]
        elif not self.ACME_DIRECTORY_URL:
            raise ValueError("ACME_DIRECTORY_URL must be set when CA_PROVIDER='custom'")
        return self


# Module-level singleton; import and use everywhere.
settings = Settings()
