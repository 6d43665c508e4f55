"""
Certificate records and fingerprint bookkeeping.

Everything the resolver knows about a certificate is derived once, when the
raw bytes are normalized, and kept on an immutable `Certificate`. Identity is
the SHA-256 fingerprint of the DER encoding, so two PEM renderings of the same
certificate (different line wrapping, trailing whitespace) are the same entity.
"""

from __future__ import annotations

import enum
import logging
import re
import threading

from dataclasses import dataclass, field
from typing import List, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import AuthorityInformationAccessOID, ExtensionOID

from bundle_errors import MalformedCertificate

logger = logging.getLogger(__name__)

PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----.+?-----END CERTIFICATE-----", re.DOTALL
)
PEM_PKCS7_MARKER = b"-----BEGIN PKCS7-----"

RawCertificate = Union[bytes, str]

# cryptography decodes extensions lazily; these are what a bad encoding raises.
EXTENSION_ERRORS = (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType)


@dataclass(frozen=True)
class Certificate:
    pem: str
    der: bytes = field(repr=False)
    subject: str
    issuer: str
    fingerprint: str
    ca_issuer_urls: Tuple[str, ...]
    self_signed: bool
    x509_cert: x509.Certificate = field(repr=False, compare=False)

    @classmethod
    def from_x509(cls, cert: x509.Certificate) -> "Certificate":
        """
        Raises:
            MalformedCertificate: if the extensions cannot be decoded.
        """
        try:
            cert.extensions
        except EXTENSION_ERRORS as e:
            raise MalformedCertificate(f"undecodable extensions: {e}") from e
        return cls(
            pem=cert.public_bytes(serialization.Encoding.PEM).decode("ascii"),
            der=cert.public_bytes(serialization.Encoding.DER),
            subject=cert.subject.rfc4514_string(),
            issuer=cert.issuer.rfc4514_string(),
            fingerprint=cert.fingerprint(hashes.SHA256()).hex(),
            ca_issuer_urls=tuple(ca_issuer_urls(cert)),
            self_signed=cert.subject == cert.issuer,
            x509_cert=cert,
        )

    @property
    def subject_name(self) -> x509.Name:
        return self.x509_cert.subject

    @property
    def issuer_name(self) -> x509.Name:
        return self.x509_cert.issuer


def ca_issuer_urls(cert: x509.Certificate) -> List[str]:
    """Return the AIA "CA Issuers" URIs of `cert`, in extension order."""
    try:
        aia = cert.extensions.get_extension_for_oid(
            ExtensionOID.AUTHORITY_INFORMATION_ACCESS
        ).value
    except x509.ExtensionNotFound:
        return []
    except EXTENSION_ERRORS as e:
        logger.debug("Unreadable extensions on %s: %s", cert.subject.rfc4514_string(), e)
        return []

    urls = []
    for desc in aia:
        if desc.access_method != AuthorityInformationAccessOID.CA_ISSUERS:
            continue
        if isinstance(desc.access_location, x509.UniformResourceIdentifier):
            urls.append(desc.access_location.value)
    return urls


def _as_bytes(data: RawCertificate) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def normalize_certificate(data: RawCertificate) -> Certificate:
    """
    Turn one raw certificate (PEM text or DER bytes) into a Certificate.

    PEM is tried first, then DER.

    Raises:
        MalformedCertificate: if neither interpretation succeeds.
    """
    raw = _as_bytes(data)
    try:
        cert = x509.load_pem_x509_certificate(raw)
    except ValueError:
        try:
            cert = x509.load_der_x509_certificate(raw)
        except ValueError as e:
            raise MalformedCertificate(f"not a PEM or DER certificate: {e}") from e
    return Certificate.from_x509(cert)


def split_pem_blocks(data: RawCertificate) -> List[bytes]:
    return PEM_CERT_RE.findall(_as_bytes(data))


def parse_certificates(data: RawCertificate) -> List[Certificate]:
    """
    Parse a payload that may hold several certificates.

    Handles concatenated PEM blocks, a lone DER certificate, and PKCS#7
    certs-only structures (the `.p7c` files many CAs publish behind their
    AIA URIs) in either PEM or DER form. Bad PEM blocks are skipped.

    Raises:
        MalformedCertificate: if nothing in the payload can be parsed.
    """
    raw = _as_bytes(data)

    blocks = split_pem_blocks(raw)
    if blocks:
        certs = []
        for i, block in enumerate(blocks):
            try:
                certs.append(normalize_certificate(block))
            except MalformedCertificate as e:
                logger.warning("Skipping PEM block %d: %s", i, e)
        if not certs:
            raise MalformedCertificate("no parseable certificate in PEM data")
        return certs

    if PEM_PKCS7_MARKER in raw:
        try:
            return _from_pkcs7(pkcs7.load_pem_pkcs7_certificates(raw))
        except ValueError as e:
            raise MalformedCertificate(f"bad PKCS#7 PEM structure: {e}") from e

    try:
        cert = x509.load_der_x509_certificate(raw)
    except ValueError:
        cert = None
    if cert is not None:
        return [Certificate.from_x509(cert)]

    try:
        certs = pkcs7.load_der_pkcs7_certificates(raw)
    except ValueError as e:
        raise MalformedCertificate("not a PEM, DER or PKCS#7 certificate payload") from e
    return _from_pkcs7(certs)


def _from_pkcs7(certs: List[x509.Certificate]) -> List[Certificate]:
    records = []
    for i, cert in enumerate(certs):
        try:
            records.append(Certificate.from_x509(cert))
        except MalformedCertificate as e:
            logger.warning("Skipping PKCS#7 member %d: %s", i, e)
    if not records:
        raise MalformedCertificate("PKCS#7 structure carries no usable certificates")
    return records


class Observation(enum.Enum):
    NEW = "new"
    DUPLICATE = "duplicate"


class FingerprintSet:
    """Set of SHA-256 fingerprints seen during one resolution run."""

    def __init__(self):
        self._seen = set()
        self._lock = threading.Lock()

    def observe(self, cert: Certificate) -> Observation:
        with self._lock:
            if cert.fingerprint in self._seen:
                return Observation.DUPLICATE
            self._seen.add(cert.fingerprint)
            return Observation.NEW

    def __contains__(self, cert) -> bool:
        fp = cert.fingerprint if isinstance(cert, Certificate) else cert
        with self._lock:
            return fp in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
