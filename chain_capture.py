import ipaddress
import logging
import select
import socket
import time

from typing import List, Tuple
from urllib.parse import urlparse

from cryptography import x509
from cryptography.x509.oid import NameOID
from OpenSSL import SSL, crypto

from bundle_errors import ChainCaptureError, MalformedCertificate, NoCertificatesFound
from cert_records import Certificate, normalize_certificate

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443


def parse_target(target: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """Split "host", "host:port", "[v6]:port" or a URL into (host, port)."""
    target = target.strip()
    parsed = urlparse(target if "://" in target else f"//{target}")
    host = parsed.hostname
    try:
        port = parsed.port
    except ValueError as e:
        raise ValueError(f"Invalid port in target {target!r}") from e
    if not host:
        raise ValueError(f"Invalid host in target {target!r}")
    if port == 0:
        raise ValueError(f"Port 0 is not connectable in target {target!r}")
    return host, default_port if port is None else port


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _do_handshake(conn, sock, timeout):
    # The socket carries a timeout, so OpenSSL sees it as non-blocking.
    deadline = time.monotonic() + timeout
    while True:
        try:
            conn.do_handshake()
            return
        except (SSL.WantReadError, SSL.WantWriteError) as e:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("TLS handshake timed out")
            if isinstance(e, SSL.WantReadError):
                ready = select.select([sock], [], [], remaining)[0]
            else:
                ready = select.select([], [sock], [], remaining)[1]
            if not ready:
                raise socket.timeout("TLS handshake timed out")


def get_cert_chain(hostname, port=DEFAULT_PORT, timeout=10.0):
    """
    Handshake with `hostname:port` and return the presented chain as PEM strings.

    Peer verification is off: the point is to see what the server sends,
    including chains a verifying client would reject.
    """
    context = SSL.Context(SSL.TLS_CLIENT_METHOD)
    context.set_verify(SSL.VERIFY_NONE, lambda *args: True)

    try:
        sock = socket.create_connection((hostname, port), timeout=timeout)
    except (OSError, UnicodeError) as e:
        # UnicodeError: the name cannot be IDNA-encoded for the resolver.
        raise ChainCaptureError(f"Cannot connect to {hostname}:{port}: {e}") from e

    try:
        conn = SSL.Connection(context, sock)
        if not _is_ip_literal(hostname):
            conn.set_tlsext_host_name(hostname.encode("idna"))
        conn.set_connect_state()
        _do_handshake(conn, sock, timeout)
        cert_chain = conn.get_peer_cert_chain()
    except (SSL.Error, OSError, UnicodeError) as e:
        raise ChainCaptureError(f"TLS handshake with {hostname}:{port} failed: {e}") from e
    finally:
        sock.close()

    pem_chain = []
    for cert in cert_chain or []:
        pem_data = crypto.dump_certificate(crypto.FILETYPE_PEM, cert)
        pem_chain.append(pem_data.decode("utf-8"))
    return pem_chain


def capture_chain(host: str, port: int = DEFAULT_PORT, timeout: float = 10.0) -> List[Certificate]:
    """
    Capture the chain presented by `host:port`, leaf first, in server order.

    Raises:
        ChainCaptureError: the handshake could not be completed.
        NoCertificatesFound: the handshake succeeded but nothing could be parsed.
    """
    pem_chain = get_cert_chain(host, port, timeout)

    chain = []
    for i, pem in enumerate(pem_chain):
        try:
            chain.append(normalize_certificate(pem))
        except MalformedCertificate as e:
            logger.warning("Skipping presented certificate %d from %s:%d: %s", i, host, port, e)

    if not chain:
        raise NoCertificatesFound(f"{host}:{port} presented no parseable certificates")

    logger.info("Captured %d certificate(s) from %s:%d", len(chain), host, port)
    return chain


def _dns_name_matches(pattern: str, hostname: str) -> bool:
    pattern = pattern.lower().rstrip(".")
    if pattern.startswith("*."):
        suffix = pattern[1:]
        label = hostname[: -len(suffix)]
        return hostname.endswith(suffix) and bool(label) and "." not in label
    return pattern == hostname


def leaf_matches_hostname(leaf: Certificate, hostname: str) -> bool:
    """Check SAN (or CN when there is no SAN) of `leaf` against `hostname`."""
    cert = leaf.x509_cert
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        dns_names = san.get_values_for_type(x509.DNSName)
        ip_addresses = san.get_values_for_type(x509.IPAddress)
    except x509.ExtensionNotFound:
        dns_names = [a.value for a in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
        ip_addresses = []

    if _is_ip_literal(hostname):
        return ipaddress.ip_address(hostname) in ip_addresses

    hostname = hostname.lower().rstrip(".")
    return any(_dns_name_matches(name, hostname) for name in dns_names)
