import ipaddress
import logging

from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

from bundle_errors import FetchFailure
from cert_records import Certificate


def _builder(cn, issuer_cn, key):
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn or cn)]))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
    )


def build_cert(cn, issuer_cn=None, aia=(), ocsp=(), dns_names=None, ip_addresses=None):
    """Create a certificate record; self-signed unless `issuer_cn` differs from `cn`."""
    key = ec.generate_private_key(ec.SECP256R1())
    builder = _builder(cn, issuer_cn, key)

    descriptions = [
        x509.AccessDescription(AuthorityInformationAccessOID.OCSP, x509.UniformResourceIdentifier(u))
        for u in ocsp
    ] + [
        x509.AccessDescription(AuthorityInformationAccessOID.CA_ISSUERS, x509.UniformResourceIdentifier(u))
        for u in aia
    ]
    if descriptions:
        builder = builder.add_extension(x509.AuthorityInformationAccess(descriptions), critical=False)

    names = [x509.DNSName(n) for n in dns_names or []]
    names += [x509.IPAddress(ipaddress.ip_address(a)) for a in ip_addresses or []]
    if names:
        builder = builder.add_extension(x509.SubjectAlternativeName(names), critical=False)

    return Certificate.from_x509(builder.sign(key, hashes.SHA256()))


SKI_OID_DER = b"\x06\x03\x55\x1d\x0e"
KEY_USAGE_OID_DER = b"\x06\x03\x55\x1d\x0f"


def build_duplicate_extension_der(cn="Broken CA", issuer_cn="Test Root CA"):
    """DER certificate whose keyUsage OID is rewritten into a second subjectKeyIdentifier."""
    key = ec.generate_private_key(ec.SECP256R1())
    cert = (
        _builder(cn, issuer_cn, key)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )
    der = cert.public_bytes(serialization.Encoding.DER)
    return der.replace(KEY_USAGE_OID_DER, SKI_OID_DER, 1)


class FakeFetcher:
    """Serves canned AIA payloads; a missing URL behaves like an HTTP 404."""

    def __init__(self, responses=None):
        self.responses = dict(responses or {})
        self.calls = []

    def __call__(self, url):
        self.calls.append(url)
        payload = self.responses.get(url)
        if payload is None:
            raise FetchFailure(url, "HTTP 404")
        if isinstance(payload, Exception):
            raise payload
        if callable(payload):
            return payload(url)
        return payload

    fetch = __call__

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return None


@pytest.fixture
def make_cert():
    return build_cert


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def pki():
    """Root -> intermediate -> leaf, linked through AIA URIs."""
    root = build_cert("Test Root CA")
    intermediate = build_cert("Test Intermediate CA", issuer_cn="Test Root CA",
                              aia=["http://ca.example.test/root.cer"])
    leaf = build_cert("www.example.test", issuer_cn="Test Intermediate CA",
                      aia=["http://ca.example.test/intermediate.cer"],
                      dns_names=["www.example.test", "example.test"])
    return {"root": root, "intermediate": intermediate, "leaf": leaf}


@pytest.fixture(autouse=True)
def reset_warning_capture():
    yield
    logging.captureWarnings(False)
