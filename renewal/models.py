"""
Data model shared by the renewal layer.

  - CertificateRecord carries the private key in the same record as the
    certificate; the key is created once and reused across renewals.
  - AcmeAccountRecord is persisted once per configured account key id.
  - RenewalResult makes the "do we have something to fall back to" decision
    explicit instead of hiding it in exception handling.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from config import Settings

_TIMESTAMP_FIELDS = ("valid_from", "expires", "last_check")


@dataclass
class CertificateRecord:
    id: str
    servername: str
    private_key: Optional[str] = None      # PEM; None until first generated
    cert: Optional[str] = None             # Leaf certificate PEM
    ca: List[str] = field(default_factory=list)   # Intermediate chain, leaf-side first
    valid_from: Optional[datetime] = None
    expires: Optional[datetime] = None     # Only moves forward on successful renewal
    alt_names: List[str] = field(default_factory=list)
    issuer: Optional[str] = None           # Issuer common name
    status: str = "pending"                # pending | valid | error
    last_check: Optional[datetime] = None

    @property
    def has_certificate(self) -> bool:
        """True when the record holds certificate data usable as a fallback."""
        return bool(self.cert) and self.expires is not None

    def to_dict(self) -> dict:
        data = asdict(self)
        for name in _TIMESTAMP_FIELDS:
            if data[name] is not None:
                data[name] = data[name].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CertificateRecord":
        values = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name in _TIMESTAMP_FIELDS:
            if isinstance(values.get(name), str):
                values[name] = datetime.fromisoformat(values[name])
        return cls(**values)


@dataclass
class AcmeAccountRecord:
    key: str                  # Account private key PEM
    account: Dict[str, Any]   # CA account handle: {"url": ..., "contact": [...]}

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AcmeAccountRecord":
        return cls(key=data["key"], account=dict(data["account"]))


@dataclass(frozen=True)
class AcmeOptions:
    account_key_id: str
    directory_url: str
    contact_email: str = ""
    key_bits: int = 2048
    key_exponent: int = 65537

    @classmethod
    def from_settings(cls, settings: "Settings") -> "AcmeOptions":
        return cls(
            account_key_id=settings.ACME_ACCOUNT_KEY_ID,
            directory_url=settings.ACME_DIRECTORY_URL,
            contact_email=settings.ACME_CONTACT_EMAIL,
            key_bits=settings.ACME_KEY_BITS,
            key_exponent=settings.ACME_KEY_EXPONENT,
        )


class RenewalOutcome(str, Enum):
    RENEWED = "renewed"      # new certificate issued and stored
    CURRENT = "current"      # no issuance needed or attempt gated; record as found
    FALLBACK = "fallback"    # issuance failed, previous certificate still usable
    FAILED = "failed"        # issuance failed, nothing to fall back to
    SKIPPED = "skipped"      # no ACME account available


@dataclass
class RenewalResult:
    outcome: RenewalOutcome
    record: Optional[CertificateRecord] = None
    error: Optional[BaseException] = None

    @classmethod
    def renewed(cls, record: CertificateRecord) -> "RenewalResult":
        return cls(RenewalOutcome.RENEWED, record)

    @classmethod
    def current(cls, record: Optional[CertificateRecord]) -> "RenewalResult":
        return cls(RenewalOutcome.CURRENT, record)

    @classmethod
    def skipped(cls) -> "RenewalResult":
        return cls(RenewalOutcome.SKIPPED)

    @classmethod
    def degrade(cls, fallback: Optional[CertificateRecord], error: BaseException) -> "RenewalResult":
        """Keep serving *fallback* if it carries a certificate, else fail with *error*."""
        if fallback is not None and fallback.has_certificate:
            return cls(RenewalOutcome.FALLBACK, fallback, error)
        return cls(RenewalOutcome.FAILED, None, error)

    def unwrap(self) -> Optional[CertificateRecord]:
        """Return the record, raising the stored error for terminal failures."""
        if self.outcome is RenewalOutcome.FAILED and self.error is not None:
            raise self.error
        return self.record
