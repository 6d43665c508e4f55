import logging
import os
import sys
import warnings

from typing import Iterable, List, Optional

import certifi

from bundle_errors import EmptyBundleWarning
from cert_records import Certificate, FingerprintSet, Observation, parse_certificates

logger = logging.getLogger(__name__)


def load_trust_bundle(path: Optional[str] = None) -> List[Certificate]:
    """Load a system trust bundle, certifi's by default."""
    path = path or certifi.where()
    with open(path, "rb") as f:
        certs = parse_certificates(f.read())
    logger.info("Loaded %d certificate(s) from trust bundle %s", len(certs), path)
    return certs


def render_bundle(certs: Iterable[Certificate], extra: Iterable[Certificate] = ()) -> str:
    """
    Render `certs`, then `extra`, as PEM blocks each followed by a blank line.

    Order is preserved; a certificate already rendered is not repeated.
    """
    seen = FingerprintSet()
    blocks = []
    for cert in list(certs) + list(extra):
        if seen.observe(cert) is Observation.NEW:
            blocks.append(cert.pem.rstrip("\n") + "\n\n")
    return "".join(blocks)


def write_bundle(certs: List[Certificate], sink, extra: Iterable[Certificate] = ()) -> int:
    """
    Write the bundle to `sink`: a path, "-" for stdout, or a text stream.

    An empty `certs` is legal and only triggers an EmptyBundleWarning.
    Returns the number of certificates written.
    """
    if not certs:
        warnings.warn(
            EmptyBundleWarning(
                "No intermediate certificates found; the server may already send "
                "a complete chain or publish no AIA information"
            ),
            stacklevel=2,
        )

    data = render_bundle(certs, extra)
    count = data.count("-----BEGIN CERTIFICATE-----")

    if sink == "-":
        sys.stdout.write(data)
        sys.stdout.flush()
    elif isinstance(sink, (str, os.PathLike)):
        with open(sink, "w", encoding="ascii") as f:
            f.write(data)
        logger.info("Wrote %d certificate(s) to %s", count, sink)
    else:
        sink.write(data)
    return count
