"""
Domain eligibility checks run before any CA contact.

  1. Syntax: the name must be a well-formed DNS hostname (any TLD).
  2. CAA:    when an allow-list of CA identifiers is configured, the most
             specific suffix that publishes CAA records decides whether we
             may request a certificate (RFC 8659 tree climbing, stopping
             short of the bare TLD).
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol

import dns.exception
import dns.resolver

from renewal.errors import CaaMismatch, InvalidDomain

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_TLD_RE = re.compile(r"^[a-z](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_domain(domain: Optional[str]) -> str:
    """Lowercase, trim and IDNA-encode *domain*; return "" for unusable input."""
    domain = (domain or "").strip().lower().rstrip(".")
    if not domain:
        return ""
    try:
        return domain.encode("idna").decode("ascii")
    except UnicodeError:
        return domain


def is_valid_domain(domain: str) -> bool:
    if not domain or len(domain) > 253:
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    if not all(_LABEL_RE.match(label) for label in labels[:-1]):
        return False
    return bool(_TLD_RE.match(labels[-1]))


@dataclass(frozen=True)
class CaaRecord:
    flags: int
    tag: str
    value: str

    @property
    def issuer(self) -> str:
        """CA identifier of an ``issue`` record, without parameters."""
        if self.tag != "issue":
            return ""
        return normalize_domain(self.value.split(";", 1)[0])


class CaaResolver(Protocol):
    def resolve_caa(self, name: str) -> List[CaaRecord]: ...


class DnsCaaResolver:
    """CAA lookups through dnspython, optionally against fixed nameservers."""

    def __init__(self, nameservers: Iterable[str] = (), lifetime: float = 5.0) -> None:
        nameservers = list(nameservers)
        if nameservers:
            self._resolver = dns.resolver.Resolver(configure=False)
            self._resolver.nameservers = nameservers
        else:
            self._resolver = dns.resolver.Resolver()
        self._resolver.lifetime = lifetime

    def resolve_caa(self, name: str) -> List[CaaRecord]:
        try:
            answer = self._resolver.resolve(name, "CAA")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        return [
            CaaRecord(
                flags=rdata.flags,
                tag=rdata.tag.decode("ascii", "replace").lower(),
                value=rdata.value.decode("utf-8", "replace"),
            )
            for rdata in answer
        ]


class DomainValidator:
    def __init__(self, resolver: CaaResolver, caa_domains: Iterable[str] = ()) -> None:
        self.resolver = resolver
        self.caa_domains = {d for d in (normalize_domain(x) for x in caa_domains) if d}

    def validate(self, domain: str) -> bool:
        """
        Raise InvalidDomain or CaaMismatch if we must not request a certificate
        for *domain*; return True otherwise.
        """
        if not is_valid_domain(domain):
            raise InvalidDomain(f"{domain} is not a valid domain name", domain)

        if not self.caa_domains:
            return True

        labels = domain.split(".")
        for i in range(len(labels) - 1):
            name = ".".join(labels[i:])
            try:
                records = self.resolver.resolve_caa(name)
            except (dns.exception.DNSException, OSError) as exc:
                logger.debug("CAA lookup for %s failed, assuming no record: %s", name, exc)
                continue

            if not records:
                continue

            if not any(r.issuer in self.caa_domains for r in records):
                raise CaaMismatch(
                    f"No allowed CA listed in the CAA record for {name} ({domain})", domain
                )
            logger.info("Found matching CAA record for %s (%s)", name, domain)
            break

        return True
