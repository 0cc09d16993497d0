"""
ACME RFC 8555 HTTP client and the certificate-authority facade used by the
renewal layer.

AcmeClient is **stateless** apart from its HTTP session: account keys and
nonces are passed in by the caller, so one client can be shared by
concurrent renewals running in different threads.

RFC 8555 compliance notes
--------------------------
* POST-as-GET: authorizations, orders and certificates are fetched with a
  signed empty payload, not plain GET.
* badNonce retry: ACME servers return a fresh `Replay-Nonce` header even on
  error responses.  `_post_signed` retries up to `_NONCE_RETRIES` times.
"""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

import requests
from josepy.jwk import JWKRSA

from ca import jws as jwslib
from ca.crypto import csr_pem_to_der, split_pem_chain

logger = logging.getLogger(__name__)

_NONCE_RETRIES = 3


class AcmeError(Exception):
    """Raised when the ACME server returns an error response."""

    def __init__(self, status_code: int, body: dict, new_nonce: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.new_nonce = new_nonce
        problem_type = body.get("type", "unknown")
        detail = body.get("detail", str(body))
        super().__init__(f"ACME {status_code}: {problem_type} — {detail}")


class AcmeClient:
    def __init__(
        self,
        directory_url: str,
        timeout: int = 30,
        ca_bundle: str = "",
        insecure: bool = False,
    ) -> None:
        self.directory_url = directory_url
        self.timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"User-Agent": "acme-renewal/1.0"})

        if insecure:
            import urllib3
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
            self._session.verify = False
        elif ca_bundle:
            self._session.verify = ca_bundle

    # ── Directory & nonce ─────────────────────────────────────────────────

    def get_directory(self) -> dict:
        """GET /directory — discover ACME endpoint URLs."""
        resp = self._session.get(self.directory_url, timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def get_nonce(self, directory: dict) -> str:
        """HEAD /newNonce — fetch a fresh anti-replay nonce."""
        resp = self._session.head(directory["newNonce"], timeout=self.timeout)
        nonce = resp.headers.get("Replay-Nonce")
        if not nonce:
            raise AcmeError(resp.status_code, {"detail": "No Replay-Nonce header"})
        return nonce

    # ── Account ───────────────────────────────────────────────────────────

    def create_account(
        self,
        account_key: JWKRSA,
        contact_email: str,
        nonce: str,
        directory: dict,
    ) -> tuple[str, str]:
        """
        POST /newAccount.  An already registered key yields the existing
        account (RFC 8555 §7.3.1).  Returns (account_url, new_nonce).
        """
        payload: dict = {"termsOfServiceAgreed": True}
        if contact_email:
            payload["contact"] = [f"mailto:{contact_email}"]

        resp = self._post_signed(payload, account_key, nonce, directory["newAccount"], directory=directory)
        return resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    # ── Orders ────────────────────────────────────────────────────────────

    def create_order(
        self,
        domains: list[str],
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        directory: dict,
    ) -> tuple[dict, str, str]:
        """
        POST /newOrder — create a certificate order for one or more domains.
        Returns (order_body, order_url, new_nonce).
        """
        payload = {"identifiers": [{"type": "dns", "value": d} for d in domains]}
        resp = self._post_signed(payload, account_key, nonce, directory["newOrder"], account_url, directory=directory)
        return resp.json(), resp.headers.get("Location", ""), resp.headers.get("Replay-Nonce", "")

    def fetch(
        self,
        url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """POST-as-GET an order or authorization.  Returns (body, new_nonce)."""
        resp = self._post_signed(None, account_key, nonce, url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    # ── Challenges ────────────────────────────────────────────────────────

    def respond_to_challenge(
        self,
        challenge_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST challenge URL with empty payload {} to tell the CA to verify.
        Returns (challenge_body, new_nonce).
        """
        resp = self._post_signed({}, account_key, nonce, challenge_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_authorization(
        self,
        auth_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        max_attempts: int = 10,
        poll_interval: float = 2.0,
    ) -> str:
        """
        Poll an authorization until status is 'valid'.
        Returns the last nonce; raises AcmeError on 'invalid' or timeout.
        """
        for _ in range(max_attempts):
            authz, nonce = self.fetch(auth_url, account_key, account_url, nonce)
            status = authz.get("status", "pending")
            if status == "valid":
                return nonce
            if status == "invalid":
                raise AcmeError(
                    200,
                    {
                        "type": "urn:ietf:params:acme:error:unauthorized",
                        "detail": f"Authorization invalid: {authz}",
                    },
                )
            time.sleep(poll_interval)

        raise AcmeError(
            0,
            {
                "type": "timeout",
                "detail": f"Authorization did not become valid after {max_attempts} polls",
            },
        )

    # ── Finalization & certificate download ───────────────────────────────

    def finalize_order(
        self,
        finalize_url: str,
        csr_der: bytes,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[dict, str]:
        """
        POST /finalize — submit DER-encoded CSR.
        Returns (finalize_response_body, new_nonce).
        """
        csr_b64 = base64.urlsafe_b64encode(csr_der).rstrip(b"=").decode()
        resp = self._post_signed({"csr": csr_b64}, account_key, nonce, finalize_url, account_url)
        return resp.json(), resp.headers.get("Replay-Nonce", "")

    def poll_order_for_certificate(
        self,
        order_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
        max_attempts: int = 20,
        poll_interval: float = 3.0,
    ) -> tuple[str, str]:
        """
        Poll order until status is 'valid' (certificate ready).
        Returns (certificate_url, new_nonce).
        """
        for _ in range(max_attempts):
            order, nonce = self.fetch(order_url, account_key, account_url, nonce)
            status = order.get("status")
            if status == "valid":
                cert_url = order.get("certificate")
                if not cert_url:
                    raise AcmeError(0, {"detail": "Order valid but no certificate URL"})
                return cert_url, nonce
            if status == "invalid":
                raise AcmeError(
                    0,
                    {"type": "invalid", "detail": f"Order became invalid: {order}"},
                )
            time.sleep(poll_interval)

        raise AcmeError(
            0,
            {"type": "timeout", "detail": "Order did not become valid (certificate not issued)"},
        )

    def download_certificate(
        self,
        cert_url: str,
        account_key: JWKRSA,
        account_url: str,
        nonce: str,
    ) -> tuple[str, str]:
        """POST-as-GET the certificate URL and return (full_chain_pem, new_nonce)."""
        resp = self._post_signed(
            None, account_key, nonce, cert_url, account_url,
            accept="application/pem-certificate-chain",
        )
        return resp.text, resp.headers.get("Replay-Nonce", "")

    # ── Internal ──────────────────────────────────────────────────────────

    def _post_signed(
        self,
        payload: dict | None,
        account_key: JWKRSA,
        nonce: str,
        url: str,
        account_url: str | None = None,
        accept: str = "application/json",
        directory: dict | None = None,
    ) -> requests.Response:
        """
        Sign *payload* with *account_key* and POST to *url*, retrying up to
        `_NONCE_RETRIES` times on `badNonce` responses.
        """
        current_nonce = nonce
        for attempt in range(_NONCE_RETRIES):
            body = jwslib.sign_request(payload, account_key, current_nonce, url, account_url)
            resp = self._session.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/jose+json",
                    "Accept": accept,
                },
                timeout=self.timeout,
            )
            if resp.ok:
                return resp

            try:
                error_body = resp.json()
            except ValueError:
                error_body = {"detail": resp.text}

            if "badNonce" in error_body.get("type", "") and attempt < _NONCE_RETRIES - 1:
                fresh = resp.headers.get("Replay-Nonce")
                if fresh:
                    current_nonce = fresh
                    continue
                if directory is None:
                    directory = self.get_directory()
                current_nonce = self.get_nonce(directory)
                continue

            raise AcmeError(resp.status_code, error_body, resp.headers.get("Replay-Nonce", ""))

        # Should never reach here, but satisfy the type checker
        raise AcmeError(0, {"detail": "Exceeded nonce retry limit"})


# ─── Certificate-authority facade ──────────────────────────────────────────────


@dataclass(frozen=True)
class IssuedCertificate:
    cert: str          # Leaf certificate PEM
    chain: List[str]   # Intermediate PEMs


class AcmeCertificateAuthority:
    """
    The three operations the renewal layer needs from a CA: init (directory
    discovery), account creation and HTTP-01 certificate issuance.
    """

    def __init__(
        self,
        ca_bundle: str = "",
        insecure: bool = False,
        timeout: int = 30,
        poll_interval: float = 2.0,
    ) -> None:
        self._ca_bundle = ca_bundle
        self._insecure = insecure
        self._timeout = timeout
        self.poll_interval = poll_interval
        self.client: Optional[AcmeClient] = None
        self.directory: Optional[dict] = None

    def init(self, directory_url: str) -> None:
        client = AcmeClient(
            directory_url,
            timeout=self._timeout,
            ca_bundle=self._ca_bundle,
            insecure=self._insecure,
        )
        self.directory = client.get_directory()
        self.client = client
        logger.info("ACME directory loaded from %s", directory_url)

    def _require_client(self) -> AcmeClient:
        if self.client is None or self.directory is None:
            raise RuntimeError("AcmeCertificateAuthority.init() has not been called")
        return self.client

    def create_account(self, account_key_pem: str, contact_email: str = "") -> dict:
        client = self._require_client()
        jwk = jwslib.jwk_from_pem(account_key_pem)
        nonce = client.get_nonce(self.directory)
        account_url, _ = client.create_account(jwk, contact_email, nonce, self.directory)
        if not account_url:
            raise AcmeError(0, {"detail": "newAccount response carried no Location header"})
        return {
            "url": account_url,
            "contact": [f"mailto:{contact_email}"] if contact_email else [],
        }

    def issue_certificate(
        self,
        account: dict,
        account_key_pem: str,
        csr_pem: str,
        domains: List[str],
        challenge_responder,
    ) -> IssuedCertificate:
        """
        Run one full order: newOrder, HTTP-01 authorization for every
        identifier, finalize with *csr_pem*, download the chain.
        """
        client = self._require_client()
        jwk = jwslib.jwk_from_pem(account_key_pem)
        account_url = account["url"]

        nonce = client.get_nonce(self.directory)
        order, order_url, nonce = client.create_order(domains, jwk, account_url, nonce, self.directory)
        logger.info("Created ACME order %s for %s", order_url, ", ".join(domains))

        for auth_url in order.get("authorizations", []):
            nonce = self._authorize(client, jwk, account_url, auth_url, nonce, challenge_responder)

        _, nonce = client.finalize_order(order["finalize"], csr_pem_to_der(csr_pem), jwk, account_url, nonce)
        cert_url, nonce = client.poll_order_for_certificate(
            order_url, jwk, account_url, nonce, poll_interval=self.poll_interval
        )
        full_chain, _ = client.download_certificate(cert_url, jwk, account_url, nonce)

        cert, chain = split_pem_chain(full_chain)
        return IssuedCertificate(cert=cert, chain=chain)

    def _authorize(self, client, jwk, account_url, auth_url, nonce, challenge_responder) -> str:
        authz, nonce = client.fetch(auth_url, jwk, account_url, nonce)
        domain = authz.get("identifier", {}).get("value", "")

        # Servers may reuse a previous authorization (RFC 8555 §7.5); answering
        # a valid challenge again fails with 'malformed'.
        if authz.get("status") == "valid":
            logger.info("Authorization for %s already valid", domain)
            return nonce

        challenge = next((c for c in authz.get("challenges", []) if c.get("type") == "http-01"), None)
        if challenge is None:
            raise AcmeError(0, {"type": "unsupported", "detail": f"No http-01 challenge offered for {domain}"})

        token = challenge["token"]
        challenge_responder.set(domain, token, jwslib.compute_key_authorization(token, jwk))
        try:
            _, nonce = client.respond_to_challenge(challenge["url"], jwk, account_url, nonce)
            nonce = client.poll_authorization(
                auth_url, jwk, account_url, nonce, poll_interval=self.poll_interval
            )
        finally:
            challenge_responder.remove(domain, token)

        logger.info("Authorization for %s valid", domain)
        return nonce
