"""
Error taxonomy for certificate lookup and renewal.

Every error carries a machine-readable ``code`` and an HTTP-equivalent
``response_code`` so a front-end can map it to a response.  Only
``invalid_domain``, ``caa_mismatch`` and ``missing_certificate`` are meant to
be shown to callers; the rest are opaque internal failures.
"""
from __future__ import annotations


class CertificateError(Exception):
    """Base class for all renewal-layer errors."""

    code = "internal_error"
    response_code = 500

    def __init__(self, message: str, domain: str = "") -> None:
        self.domain = domain
        super().__init__(message)


class InvalidDomain(CertificateError):
    code = "invalid_domain"
    response_code = 400


class CaaMismatch(CertificateError):
    code = "caa_mismatch"
    response_code = 403


class MissingCertificate(CertificateError):
    code = "missing_certificate"
    response_code = 404


class LeaseTimeout(CertificateError):
    """The per-domain operation lease could not be acquired in time."""

    code = "lease_timeout"
    response_code = 503


class IssuanceFailure(CertificateError):
    """A CA or crypto step failed while issuing a certificate."""

    code = "issuance_failure"
    response_code = 500
