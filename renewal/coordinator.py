"""
Renewal coordinator: issues a certificate for one domain under the
cluster-wide operation lease.

Order of checks matters:
  cooldown  → no lease, no DNS, no CA while a recent failure is cooling down
  validate  → a bad or CAA-forbidden domain never reaches the CA; the caller
              keeps what it has
  lease     → at most one issuance per domain across all nodes; a timeout
              propagates and does NOT set the cooldown
  re-check  → whoever held the lease before us may already have renewed
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ca.crypto import create_csr, parse_certificate
from ca.http_challenge import StoreChallengeResponder
from renewal.accounts import AccountProvisioner
from renewal.coordination import lease_key
from renewal.errors import CertificateError, IssuanceFailure
from renewal.models import AcmeOptions, CertificateRecord, RenewalResult
from renewal.validator import DomainValidator

logger = logging.getLogger(__name__)

# Wider than the dispatcher's 30-day FRESHNESS_HORIZON.
RENEWAL_HORIZON = timedelta(days=30, seconds=10)


class RenewalCoordinator:
    def __init__(
        self,
        store,
        ca,
        lock,
        cooldown,
        validator: DomainValidator,
        accounts: AccountProvisioner,
        lease_ttl: float = 600,
        lease_max_wait: float = 180,
        renewal_horizon: timedelta = RENEWAL_HORIZON,
    ) -> None:
        self.store = store
        self.ca = ca
        self.lock = lock
        self.cooldown = cooldown
        self.validator = validator
        self.accounts = accounts
        self.lease_ttl = lease_ttl
        self.lease_max_wait = lease_max_wait
        self.renewal_horizon = renewal_horizon

    def acquire_certificate(
        self,
        domain: str,
        options: AcmeOptions,
        current: CertificateRecord,
    ) -> Optional[CertificateRecord]:
        """
        Renew *domain* if needed and return the record to serve.  Returns None
        when no ACME account is available; raises when issuance failed and
        *current* has no certificate to fall back to.
        """
        return self.renew(domain, options, current).unwrap()

    def renew(self, domain: str, options: AcmeOptions, current: CertificateRecord) -> RenewalResult:
        if self.cooldown.is_blocked(domain):
            logger.info("Renewal blocked by failsafe lock for %s", domain)
            return RenewalResult.current(current)

        try:
            self.validator.validate(domain)
            logger.info("Domain validation for %s passed", domain)
        except CertificateError as exc:
            logger.error("Failed to validate domain %s: %s", domain, exc)
            return RenewalResult.current(current)

        # LeaseTimeout propagates to the caller
        token = self.lock.acquire(lease_key(domain), self.lease_ttl, self.lease_max_wait)
        try:
            return self._renew_locked(domain, options, current)
        finally:
            try:
                self.lock.release(token)
            except Exception as exc:
                logger.error("Failed to release lease for %s: %s", domain, exc)

    def _renew_locked(self, domain: str, options: AcmeOptions, current: CertificateRecord) -> RenewalResult:
        query = {"servername": current.servername, "id": current.id}
        try:
            latest = self.store.get_record(query, include_secrets=True)
            if latest is None:
                raise IssuanceFailure(f"Certificate record for {domain} disappeared", domain)
            if latest.expires and latest.expires > datetime.now(tz=timezone.utc) + self.renewal_horizon:
                logger.info("Certificate for %s already renewed, expires %s", domain, latest.expires)
                return RenewalResult.current(latest)

            private_key = latest.private_key
            if not private_key:
                logger.info("Provision new private key for %s", domain)
                private_key = self.store.reset_private_key(query, options)

            csr = create_csr(private_key, [domain])

            account = self.accounts.get_account(options)
            if account is None:
                logger.info("Skip certificate renewal for %s, ACME account not found", domain)
                return RenewalResult.skipped()

            logger.info("Generate ACME cert for %s (account=%s)",
                        domain, account.account.get("url", "").split("/acct/")[-1])
            issued = self.ca.issue_certificate(
                account=account.account,
                account_key_pem=account.key,
                csr_pem=csr,
                domains=[domain],
                challenge_responder=StoreChallengeResponder(self.store),
            )
            if not issued or not issued.cert:
                raise IssuanceFailure(f"CA returned no certificate for {domain}", domain)

            logger.info("Received certificate from ACME for %s", domain)
            parsed = parse_certificate(issued.cert)
            updates = {
                "cert": issued.cert,
                "ca": list(issued.chain or []),
                "valid_from": parsed.valid_from,
                "expires": parsed.valid_to,
                "alt_names": parsed.dns_names,
                "issuer": parsed.issuer,
                "last_check": datetime.now(tz=timezone.utc),
                "status": "valid",
            }
            if not self.store.update(query, updates):
                raise IssuanceFailure(f"Failed to store certificate for {domain}", domain)

            logger.info("Certificate successfully generated for %s (expires %s)", domain, parsed.valid_to)
            return RenewalResult.renewed(self.store.get_record(query, include_secrets=True))

        except Exception as exc:
            try:
                self.cooldown.block(domain)
            except Exception as cooldown_exc:
                logger.error("Failed to set failsafe lock for %s: %s", domain, cooldown_exc)

            logger.error("Failed to generate cert domains=%s error=%s", domain, exc)
            return RenewalResult.degrade(current, exc)
