"""
Key generation, CSR creation and certificate parsing.

Boundary: this module owns everything cryptographic that is *domain*-specific
plus account key generation.  JWK / JWS signing lives in ca/jws.py.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


@dataclass(frozen=True)
class ParsedCertificate:
    valid_from: datetime
    valid_to: datetime
    dns_names: List[str]
    issuer: str


def generate_key_pem(key_size: int = 2048, public_exponent: int = 65537) -> str:
    """Generate an RSA private key and return it as unencrypted PKCS8 PEM."""
    key = rsa.generate_private_key(public_exponent=public_exponent, key_size=key_size)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key(pem: str):
    return serialization.load_pem_private_key(pem.encode(), password=None)


def create_csr(private_key_pem: str, domains: List[str]) -> str:
    """
    Create a PEM-encoded CSR for *domains*.  The first domain becomes the
    subject CN; all of them are listed as SubjectAlternativeNames.
    """
    if not domains:
        raise ValueError("create_csr needs at least one domain")
    all_domains = list(dict.fromkeys(domains))

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, all_domains[0])])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in all_domains]),
            critical=False,
        )
    )

    csr = builder.sign(load_private_key(private_key_pem), hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM).decode()


def csr_pem_to_der(csr_pem: str) -> bytes:
    csr = x509.load_pem_x509_csr(csr_pem.encode())
    return csr.public_bytes(serialization.Encoding.DER)


def parse_certificate(pem_text: str) -> ParsedCertificate:
    """Extract validity window, DNS SANs and issuer CN from a PEM certificate."""
    cert = x509.load_pem_x509_certificate(pem_text.encode())

    valid_from, valid_to = cert.not_valid_before_utc, cert.not_valid_after_utc

    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        dns_names = san.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        dns_names = []

    cn = cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
    issuer = cn[0].value if cn else cert.issuer.rfc4514_string()

    return ParsedCertificate(
        valid_from=valid_from,
        valid_to=valid_to,
        dns_names=list(dns_names),
        issuer=str(issuer),
    )


def split_pem_chain(full_chain: str) -> tuple[str, List[str]]:
    """
    Split a PEM chain into (leaf_cert_pem, [intermediate_pem, ...]).

    ACME servers return: [leaf] [intermediate1] [intermediate2] ...
    """
    blocks = []
    current: list[str] = []
    for line in full_chain.splitlines(keepends=True):
        current.append(line)
        if "-----END CERTIFICATE-----" in line:
            blocks.append("".join(current).strip() + "\n")
            current = []

    if not blocks:
        return full_chain, []

    return blocks[0], blocks[1:]
