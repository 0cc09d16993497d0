"""
On-demand certificate renewal — CLI entry point.

Usage:
  python main.py --provision a.com b.com   # Create pending records for new tenant domains
  python main.py --get a.com               # Look up (and if needed renew) a certificate
  python main.py --challenge TOKEN         # Print the stored HTTP-01 key authorization
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

# ── Logging setup ─────────────────────────────────────────────────────────────

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger(__name__)


# ── Commands ──────────────────────────────────────────────────────────────────


def provision(domains: list[str]) -> int:
    """Create pending certificate records so lookups can trigger issuance."""
    from renewal.factory import make_store
    from renewal.validator import is_valid_domain, normalize_domain

    store = make_store()
    status = 0
    for raw in domains:
        domain = normalize_domain(raw)
        if not is_valid_domain(domain):
            log.error("Refusing to provision invalid domain %r", raw)
            status = 1
            continue
        record = store.create_record(domain)
        log.info("Record %s for %s is %s", record.id, domain, record.status)
    return status


def get_certificates(domains: list[str]) -> int:
    """Run the lookup path for each domain and report the served certificate."""
    from config import settings
    from renewal.errors import CertificateError
    from renewal.factory import make_certificate_service
    from renewal.models import AcmeOptions

    service = make_certificate_service()
    options = AcmeOptions.from_settings(settings)
    status = 0

    for domain in domains:
        try:
            record = service.get_certificate(domain, options)
        except CertificateError as exc:
            log.error("%s: %s (%s)", domain, exc, exc.code)
            status = 1
            continue
        expires = record.expires.isoformat() if record.expires else "never issued"
        log.info("%s → status=%s expires=%s issuer=%s", domain, record.status, expires, record.issuer or "-")

    # Background renewals are daemon threads; let them finish before exiting.
    if not service.wait_for_background(timeout=settings.LOCK_LEASE_TTL_SECONDS):
        log.warning("Background renewals still running at exit")
    return status


def show_challenge(token: str) -> int:
    from ca.http_challenge import StoreChallengeResponder
    from renewal.factory import make_store

    key_authorization = StoreChallengeResponder(make_store()).lookup(token)
    if key_authorization is None:
        log.error("No pending challenge for token %s", token)
        return 1
    print(key_authorization)
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def main() -> None:
    parser = argparse.ArgumentParser(
        description="On-demand ACME certificate renewal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --provision shop.example.com
  python main.py --get shop.example.com api.example.com
  python main.py --challenge Xj3f...
        """,
    )
    parser.add_argument(
        "--provision",
        nargs="+",
        metavar="DOMAIN",
        help="Create pending certificate records for one or more domains",
    )
    parser.add_argument(
        "--get",
        nargs="+",
        metavar="DOMAIN",
        help="Look up certificates, renewing them when stale or expired",
    )
    parser.add_argument(
        "--challenge",
        metavar="TOKEN",
        help="Print the key authorization stored for an HTTP-01 token",
    )

    args = parser.parse_args()

    if args.provision:
        sys.exit(provision(args.provision))
    elif args.get:
        sys.exit(get_certificates(args.get))
    elif args.challenge:
        sys.exit(show_challenge(args.challenge))

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
