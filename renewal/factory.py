"""
Wiring for the certificate service.

Centralises collaborator construction so the CLI and any embedding server
share one code path.  Late-imports config to avoid circular imports.
"""
from __future__ import annotations

import redis

from ca.client import AcmeCertificateAuthority
from renewal.accounts import AccountProvisioner
from renewal.coordination import CooldownGate, RedisLeaseLock
from renewal.coordinator import RenewalCoordinator
from renewal.dispatcher import CertificateService
from renewal.validator import DnsCaaResolver, DomainValidator
from storage.filesystem import FileCertStore


def make_store() -> FileCertStore:
    from config import settings  # noqa: PLC0415

    return FileCertStore(settings.CERT_STORE_PATH)


def make_certificate_service() -> CertificateService:
    """Build a CertificateService from the current application settings."""
    from config import settings  # noqa: PLC0415

    store = make_store()
    ca = AcmeCertificateAuthority(
        ca_bundle=settings.ACME_CA_BUNDLE,
        insecure=settings.ACME_INSECURE,
    )
    redis_client = redis.Redis.from_url(settings.REDIS_URL)

    coordinator = RenewalCoordinator(
        store=store,
        ca=ca,
        lock=RedisLeaseLock(redis_client),
        cooldown=CooldownGate(redis_client, ttl=settings.COOLDOWN_TTL_SECONDS),
        validator=DomainValidator(
            DnsCaaResolver(settings.DNS_NAMESERVERS),
            caa_domains=settings.ACME_CAA_DOMAINS,
        ),
        accounts=AccountProvisioner(ca, store, auto_register=settings.ACME_AUTO_REGISTER),
        lease_ttl=settings.LOCK_LEASE_TTL_SECONDS,
        lease_max_wait=settings.LOCK_MAX_WAIT_SECONDS,
    )
    return CertificateService(store, coordinator)
