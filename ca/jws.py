"""
JWK / JWS utilities for the ACME protocol (RFC 8555).

Uses *josepy* (the library powering Certbot) for the JWK representation.

Responsibilities (boundary with ca/crypto.py):
  - Wrap a stored account key PEM as a JWK
  - Compute the JWK thumbprint (for HTTP-01 key-authorizations)
  - Sign ACME POST bodies as JWS (with jwk or kid header)
"""
from __future__ import annotations

import base64
import json
from typing import Any

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from josepy.jwk import JWKRSA

from ca.crypto import load_private_key


def jwk_from_pem(pem: str) -> JWKRSA:
    """Wrap an RSA account key PEM in a josepy JWKRSA."""
    return JWKRSA(key=load_private_key(pem))


def public_jwk(jwk: JWKRSA) -> dict:
    fields = jwk.public_key().fields_to_partial_json()
    fields["kty"] = "RSA"
    return fields


def compute_jwk_thumbprint(jwk: JWKRSA) -> str:
    """
    Base64url SHA-256 thumbprint of the public JWK (RFC 7638).
      key_authorization = token + "." + thumbprint
    """
    return _b64url(jwk.public_key().thumbprint(hash_function=hashes.SHA256))


def compute_key_authorization(token: str, jwk: JWKRSA) -> str:
    """Return the HTTP-01 key-authorization string for *token*."""
    return f"{token}.{compute_jwk_thumbprint(jwk)}"


def sign_request(
    payload: dict | None,
    account_key: JWKRSA,
    nonce: str,
    url: str,
    account_url: str | None = None,
) -> dict:
    """
    Sign an ACME request payload and return the JWS dict to POST.

    If *account_url* is None the JWS header uses the full JWK (used for
    newAccount).  Otherwise the header uses the shorter "kid" form.
    A None payload produces a POST-as-GET body.
    """
    header: dict[str, Any] = {
        "alg": "RS256",
        "nonce": nonce,
        "url": url,
    }
    if account_url:
        header["kid"] = account_url
    else:
        header["jwk"] = public_jwk(account_key)

    protected = _b64url(json.dumps(header).encode())
    payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode())

    signing_input = f"{protected}.{payload_b64}".encode()
    signature = account_key.key.sign(signing_input, padding.PKCS1v15(), hashes.SHA256())

    return {
        "protected": protected,
        "payload": payload_b64,
        "signature": _b64url(signature),
    }


def _b64url(data: bytes) -> str:
    """URL-safe base64 encoding with no padding (as required by JOSE)."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()
