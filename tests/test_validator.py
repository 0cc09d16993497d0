"""
Tests for domain syntax checks and the CAA tree walk.
"""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import dns.exception
import dns.resolver
import pytest

from renewal.errors import CaaMismatch, InvalidDomain
from renewal.validator import (
    CaaRecord,
    DnsCaaResolver,
    DomainValidator,
    is_valid_domain,
    normalize_domain,
)
from tests.conftest import FakeResolver


def issue(value: str) -> CaaRecord:
    return CaaRecord(flags=0, tag="issue", value=value)


# ── Syntax ────────────────────────────────────────────────────────────────


@pytest.mark.parametrize("domain", ["example.com", "a.b.example.com", "xn--bcher-kva.example", "my-shop.store", "x.co"])
def test_valid_domains(domain):
    assert is_valid_domain(domain)


@pytest.mark.parametrize(
    "domain",
    ["", "localhost", "-bad.example.com", "bad-.example.com", "under_score.example.com",
     "*.example.com", "example.123", "a..example.com", "a" * 64 + ".com"],
)
def test_invalid_domains(domain):
    assert not is_valid_domain(domain)


def test_validate_raises_invalid_domain():
    validator = DomainValidator(FakeResolver(), caa_domains=["letsencrypt.org"])
    with pytest.raises(InvalidDomain) as exc_info:
        validator.validate("not a domain")
    assert exc_info.value.code == "invalid_domain"
    assert exc_info.value.response_code == 400


def test_normalize_domain():
    assert normalize_domain("  WWW.Example.COM. ") == "www.example.com"
    assert normalize_domain("bücher.example") == "xn--bcher-kva.example"
    assert normalize_domain(None) == ""


# ── CAA walk ──────────────────────────────────────────────────────────────


def test_no_allow_list_skips_caa_lookups():
    resolver = FakeResolver({"example.com": [issue("other.test")]})
    assert DomainValidator(resolver).validate("a.b.example.com")
    assert resolver.queried == []


def test_no_caa_records_anywhere_is_allowed():
    resolver = FakeResolver()
    assert DomainValidator(resolver, ["letsencrypt.org"]).validate("a.b.example.com")
    # Walk stops short of the bare TLD
    assert resolver.queried == ["a.b.example.com", "b.example.com", "example.com"]


def test_mismatch_at_ancestor_is_rejected():
    resolver = FakeResolver({"example.com": [issue("x.test")]})
    with pytest.raises(CaaMismatch) as exc_info:
        DomainValidator(resolver, ["letsencrypt.org"]).validate("a.b.example.com")
    assert exc_info.value.code == "caa_mismatch"
    assert exc_info.value.response_code == 403


def test_most_specific_match_wins_without_querying_ancestors():
    resolver = FakeResolver({
        "b.example.com": [issue("letsencrypt.org")],
        "example.com": [issue("x.test")],
    })
    assert DomainValidator(resolver, ["letsencrypt.org"]).validate("a.b.example.com")
    assert "example.com" not in resolver.queried


def test_one_matching_record_among_many_is_enough():
    resolver = FakeResolver({"example.com": [issue("x.test"), issue("LetsEncrypt.org")]})
    assert DomainValidator(resolver, ["letsencrypt.org"]).validate("example.com")


def test_issuer_parameters_are_ignored():
    resolver = FakeResolver({"example.com": [issue("letsencrypt.org; validationmethods=http-01")]})
    assert DomainValidator(resolver, ["letsencrypt.org"]).validate("www.example.com")


def test_records_without_issue_tag_do_not_authorize():
    resolver = FakeResolver({"example.com": [CaaRecord(0, "iodef", "mailto:sec@example.com")]})
    with pytest.raises(CaaMismatch):
        DomainValidator(resolver, ["letsencrypt.org"]).validate("example.com")


def test_resolution_failure_means_no_policy_at_that_level():
    resolver = FakeResolver({
        "a.b.example.com": dns.exception.Timeout(),
        "b.example.com": dns.resolver.NoNameservers(),
        "example.com": [issue("letsencrypt.org")],
    })
    assert DomainValidator(resolver, ["letsencrypt.org"]).validate("a.b.example.com")
    assert resolver.queried == ["a.b.example.com", "b.example.com", "example.com"]


# ── DnsCaaResolver ────────────────────────────────────────────────────────


def test_dns_resolver_converts_rdata():
    rdata = MagicMock(flags=0, tag=b"issue", value=b"letsencrypt.org")
    with patch("dns.resolver.Resolver.resolve", return_value=[rdata]) as resolve:
        records = DnsCaaResolver(nameservers=["192.0.2.53"]).resolve_caa("example.com")

    resolve.assert_called_once_with("example.com", "CAA")
    assert records == [CaaRecord(flags=0, tag="issue", value="letsencrypt.org")]
    assert records[0].issuer == "letsencrypt.org"


@pytest.mark.parametrize("error", [dns.resolver.NXDOMAIN(), dns.resolver.NoAnswer()])
def test_dns_resolver_missing_records_are_empty(error):
    with patch("dns.resolver.Resolver.resolve", side_effect=error):
        assert DnsCaaResolver(nameservers=["192.0.2.53"]).resolve_caa("example.com") == []


def test_dns_resolver_lifetime_is_configurable():
    resolver = DnsCaaResolver(nameservers=["192.0.2.53"], lifetime=2.0)
    assert resolver._resolver.lifetime == 2.0
