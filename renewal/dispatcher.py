"""
Certificate lookup entry point.

Classifies the cached record by time to expiry:

  FRESH    expires > now + 30d          → serve cached, nothing else
  STALE    now < expires <= now + 30d   → serve cached, renew in background
  EXPIRED  expires <= now (or unset)    → renew synchronously, serve result

Background renewals run in daemon threads; their failures are logged and
never reach the caller that triggered them.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from renewal.coordinator import RenewalCoordinator
from renewal.errors import MissingCertificate
from renewal.models import AcmeOptions, CertificateRecord
from renewal.validator import normalize_domain

logger = logging.getLogger(__name__)

FRESHNESS_HORIZON = timedelta(days=30)


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


def classify(record: CertificateRecord, now: Optional[datetime] = None,
             horizon: timedelta = FRESHNESS_HORIZON) -> Freshness:
    now = now or datetime.now(tz=timezone.utc)
    if record.expires is None or record.expires <= now:
        return Freshness.EXPIRED
    if record.expires > now + horizon:
        return Freshness.FRESH
    return Freshness.STALE


class CertificateService:
    def __init__(self, store, coordinator: RenewalCoordinator,
                 freshness_horizon: timedelta = FRESHNESS_HORIZON) -> None:
        self.store = store
        self.coordinator = coordinator
        self.freshness_horizon = freshness_horizon
        self._background: set[threading.Thread] = set()
        self._background_lock = threading.Lock()

    def get_certificate(self, domain: str, options: AcmeOptions) -> CertificateRecord:
        domain = normalize_domain(domain)
        if not domain:
            raise MissingCertificate("Missing certificate info for empty domain", domain)

        record = self.store.get_record({"servername": domain}, include_secrets=True)
        if record is None:
            raise MissingCertificate(f"Missing certificate info for {domain}", domain)

        freshness = classify(record, horizon=self.freshness_horizon)
        if freshness is Freshness.FRESH:
            return record

        if freshness is Freshness.STALE:
            self._renew_in_background(domain, options, record)
            return record

        renewed = self.coordinator.acquire_certificate(domain, options, record)
        return renewed if renewed is not None else record

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Join running background renewals; False if some are still running."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._background_lock:
            threads = list(self._background)
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in threads)

    # ── Internal ──────────────────────────────────────────────────────────

    def _renew_in_background(self, domain: str, options: AcmeOptions, record: CertificateRecord) -> None:
        thread = threading.Thread(
            target=self._background_renewal,
            args=(domain, options, record),
            name=f"renew-{domain}",
            daemon=True,
        )
        with self._background_lock:
            self._background.add(thread)
        thread.start()

    def _background_renewal(self, domain: str, options: AcmeOptions, record: CertificateRecord) -> None:
        try:
            self.coordinator.acquire_certificate(domain, options, record)
        except Exception as exc:
            logger.error("Cert renewal error %s: %s", domain, exc)
        finally:
            with self._background_lock:
                self._background.discard(threading.current_thread())
