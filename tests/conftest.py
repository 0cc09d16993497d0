"""
Shared pytest fixtures.

The renewal layer talks to five collaborators (store, CA, lease lock,
cooldown gate, CAA resolver).  Tests use the real FileCertStore under
tmp_path and thread-safe in-memory fakes for the rest, so no Redis, DNS or
ACME server is needed.
"""
from __future__ import annotations

import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from ca.client import AcmeError, IssuedCertificate
from renewal.accounts import AccountProvisioner
from renewal.coordinator import RenewalCoordinator
from renewal.dispatcher import CertificateService
from renewal.errors import LeaseTimeout
from renewal.models import AcmeAccountRecord, AcmeOptions
from renewal.validator import DomainValidator
from storage.filesystem import FileCertStore


# ─── Certificate helpers ──────────────────────────────────────────────────────

_ISSUER_KEY = ec.generate_private_key(ec.SECP256R1())


def make_key_pem() -> str:
    """EC keys keep the suite fast; the CSR code is key-type agnostic."""
    return ec.generate_private_key(ec.SECP256R1()).private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def make_cert_pem(domain: str, valid_days: int = 90, issuer_cn: str = "Fake Test CA") -> str:
    now = datetime.now(tz=timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn)]))
        .public_key(_ISSUER_KEY.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(_ISSUER_KEY, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode()


# ─── Fakes ────────────────────────────────────────────────────────────────────


class FakeCA:
    def __init__(self, fail: bool = False, init_error: Exception | None = None, delay: float = 0.0) -> None:
        self.fail = fail
        self.init_error = init_error
        self.delay = delay
        self.init_calls = 0
        self.account_calls = 0
        self.issue_calls = 0
        self.issued = threading.Event()
        self._lock = threading.Lock()

    def init(self, directory_url: str) -> None:
        with self._lock:
            self.init_calls += 1
        time.sleep(self.delay)
        if self.init_error is not None:
            raise self.init_error

    def create_account(self, account_key_pem: str, contact_email: str = "") -> dict:
        with self._lock:
            self.account_calls += 1
            n = self.account_calls
        time.sleep(self.delay)
        return {"url": f"https://ca.test/acme/acct/{n}", "contact": [f"mailto:{contact_email}"]}

    def issue_certificate(self, account, account_key_pem, csr_pem, domains, challenge_responder) -> IssuedCertificate:
        with self._lock:
            self.issue_calls += 1
        try:
            time.sleep(self.delay)
            if self.fail:
                raise AcmeError(403, {"type": "urn:ietf:params:acme:error:unauthorized", "detail": "boom"})
            return IssuedCertificate(cert=make_cert_pem(domains[0], valid_days=90), chain=[])
        finally:
            self.issued.set()


class FakeLeaseLock:
    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.Lock()
        self.acquire_calls = 0
        self.released: list[str] = []

    def acquire(self, key: str, lease_ttl: float, max_wait: float):
        with self._guard:
            self.acquire_calls += 1
            lock = self._locks[key]
        if not lock.acquire(timeout=max_wait):
            raise LeaseTimeout(f"Timed out waiting for lease {key}")
        return key, lock

    def release(self, token) -> None:
        key, lock = token
        with self._guard:
            self.released.append(key)
        lock.release()

    def is_held(self, key: str) -> bool:
        return self._locks[key].locked()


class FakeCooldown:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.blocked: set[str] = set()

    def is_blocked(self, domain: str) -> bool:
        return domain in self.blocked

    def block(self, domain: str) -> None:
        if self.fail:
            raise ConnectionError("redis down")
        self.blocked.add(domain)


class FakeResolver:
    """Maps names to CAA record lists or to an exception to raise."""

    def __init__(self, answers: dict | None = None) -> None:
        self.answers = answers or {}
        self.queried: list[str] = []

    def resolve_caa(self, name: str):
        self.queried.append(name)
        answer = self.answers.get(name, [])
        if isinstance(answer, Exception):
            raise answer
        return answer


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def options() -> AcmeOptions:
    return AcmeOptions(
        account_key_id="test-account",
        directory_url="https://ca.test/directory",
        contact_email="ops@example.com",
        key_bits=2048,
        key_exponent=65537,
    )


@pytest.fixture()
def store(tmp_path) -> FileCertStore:
    return FileCertStore(str(tmp_path / "certs"))


@pytest.fixture()
def ca() -> FakeCA:
    return FakeCA()


@pytest.fixture()
def lease_lock() -> FakeLeaseLock:
    return FakeLeaseLock()


@pytest.fixture()
def cooldown() -> FakeCooldown:
    return FakeCooldown()


@pytest.fixture()
def resolver() -> FakeResolver:
    return FakeResolver()


@pytest.fixture()
def account(store, options) -> AcmeAccountRecord:
    """Pre-provisioned account so renewal tests skip account key generation."""
    record = AcmeAccountRecord(key=make_key_pem(), account={"url": "https://ca.test/acme/acct/1"})
    store.put_account(options.account_key_id, record)
    return record


@pytest.fixture()
def coordinator(store, ca, lease_lock, cooldown, resolver, account) -> RenewalCoordinator:
    return RenewalCoordinator(
        store=store,
        ca=ca,
        lock=lease_lock,
        cooldown=cooldown,
        validator=DomainValidator(resolver, caa_domains=["letsencrypt.org"]),
        accounts=AccountProvisioner(ca, store),
        lease_ttl=30,
        lease_max_wait=10,
    )


@pytest.fixture()
def service(store, coordinator) -> CertificateService:
    return CertificateService(store, coordinator)


@pytest.fixture()
def make_record(store):
    """Create a stored record for *domain* expiring in *days* (None = never issued)."""

    def _make(domain: str = "shop.example.com", days: float | None = 60, with_key: bool = True):
        record = store.create_record(domain)
        fields: dict = {}
        if with_key:
            fields["private_key"] = make_key_pem()
        if days is not None:
            now = datetime.now(tz=timezone.utc)
            fields.update(
                cert=make_cert_pem(domain),
                valid_from=now - timedelta(days=30),
                expires=now + timedelta(days=days),
                status="valid",
            )
        if fields:
            store.update({"id": record.id}, fields)
        return store.get_record({"id": record.id}, include_secrets=True)

    return _make
