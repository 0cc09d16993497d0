"""
HTTP-01 challenge responder backed by the shared record store.

Key authorizations are written to the store rather than served by this
process, so whichever cluster node receives the CA's validation request for
  /.well-known/acme-challenge/<token>
can answer it via lookup().
"""
from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


class StoreChallengeResponder:
    def __init__(self, store) -> None:
        self.store = store

    def set(self, domain: str, token: str, key_authorization: str) -> None:
        self.store.put_challenge(token, domain, key_authorization)
        logger.info("Stored HTTP-01 challenge token %s for %s", token, domain)

    def remove(self, domain: str, token: str) -> None:
        self.store.remove_challenge(token)
        logger.debug("Removed HTTP-01 challenge token %s for %s", token, domain)

    def lookup(self, token: str) -> Optional[str]:
        """Return the key authorization for *token*, or None if unknown."""
        if not token or "/" in token or token.startswith("."):
            return None
        entry = self.store.get_challenge(token)
        return entry["key_authorization"] if entry else None

    def lookup_path(self, path: str) -> Optional[str]:
        """Resolve a request path like /.well-known/acme-challenge/<token>."""
        if not path.startswith(CHALLENGE_PATH_PREFIX):
            return None
        return self.lookup(path[len(CHALLENGE_PATH_PREFIX):])
