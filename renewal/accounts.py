"""
ACME account provisioning.

The CA client needs a one-time initialization (directory discovery) before
any account can be used.  The first caller performs it; callers arriving
while it runs wait on the same Future and are resolved or rejected together.
A failed initialization resets the state so a later call can retry.

Security note: account keys are only ever kept in the store and in the
returned AcmeAccountRecord, never logged.
"""
from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Future
from typing import Dict, Optional

from renewal.models import AcmeAccountRecord, AcmeOptions

logger = logging.getLogger(__name__)


class InitState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


class AccountProvisioner:
    def __init__(self, ca, store, auto_register: bool = True) -> None:
        self.ca = ca
        self.store = store
        self.auto_register = auto_register
        self.state = InitState.UNINITIALIZED
        self._lock = threading.Lock()
        self._init_future: Optional[Future] = None
        self._provisioning: Dict[str, Future] = {}

    def ensure_ready(self, options: AcmeOptions) -> bool:
        """Initialize the CA client once per process; concurrent callers share the outcome."""
        with self._lock:
            if self.state is InitState.READY:
                return True
            if self.state is InitState.INITIALIZING:
                future = self._init_future
                owner = False
            else:
                future = self._init_future = Future()
                self.state = InitState.INITIALIZING
                owner = True

        if not owner:
            return future.result()

        try:
            self.ca.init(options.directory_url)
        except BaseException as exc:
            with self._lock:
                self.state = InitState.UNINITIALIZED
                self._init_future = None
            future.set_exception(exc)
            raise

        with self._lock:
            self.state = InitState.READY
        future.set_result(True)
        return True

    def get_account(self, options: AcmeOptions) -> Optional[AcmeAccountRecord]:
        """
        Return the account for options.account_key_id, registering a new one
        with the CA when none is stored yet.  Returns None when the account is
        missing and auto registration is disabled.
        """
        self.ensure_ready(options)

        existing = self.store.get_account(options.account_key_id)
        if existing is not None:
            return existing

        if not self.auto_register:
            logger.warning("ACME account for %s not found and auto registration is off",
                           options.account_key_id)
            return None

        with self._lock:
            future = self._provisioning.get(options.account_key_id)
            owner = future is None
            if owner:
                future = self._provisioning[options.account_key_id] = Future()

        if not owner:
            return future.result()

        try:
            record = self._provision(options)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(record)
            return record
        finally:
            with self._lock:
                self._provisioning.pop(options.account_key_id, None)

    def _provision(self, options: AcmeOptions) -> AcmeAccountRecord:
        # Re-check: another in-process caller may have finished just before us.
        existing = self.store.get_account(options.account_key_id)
        if existing is not None:
            return existing

        logger.info("ACME account for %s not found, provisioning new one from %s",
                    options.account_key_id, options.directory_url)
        account_key = self.store.generate_key(options.key_bits, options.key_exponent)
        logger.info("Generated ACME account key for %s", options.account_key_id)

        account = self.ca.create_account(account_key, options.contact_email)
        record = AcmeAccountRecord(key=account_key, account=account)
        self.store.put_account(options.account_key_id, record)

        logger.info("ACME account provisioned for %s (%s)",
                    options.account_key_id, account.get("url", "?"))
        return record
