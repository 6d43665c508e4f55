import argparse
import logging
import os
import sys

from aia_resolver import AIAFetcher, AIAResolver, Resolution, ResolverConfig
from bundle_errors import ChainCaptureError, LeafHostnameMismatch, NoCertificatesFound
from bundle_writer import load_trust_bundle, write_bundle
from chain_capture import DEFAULT_PORT, capture_chain, leaf_matches_hostname, parse_target

DEFAULT_OUTPUT = "ca-bundle.pem"
DEFAULT_MAX_FETCHES = 50

logger = logging.getLogger("extract_ca")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Build a CA bundle for a host by chasing AIA CA Issuers URIs"
    )
    parser.add_argument("target", help="Host to connect to, as host[:port] or a URL")
    parser.add_argument("--port", type=int, help=f"Port to connect to (default: {DEFAULT_PORT})")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT,
                        help=f"Output PEM bundle, '-' for stdout (default: {DEFAULT_OUTPUT})")
    parser.add_argument("--merge-system-bundle", action="store_true",
                        help="Append the system trust bundle to the output")
    parser.add_argument("--system-bundle", default=os.environ.get("SSL_CERT_FILE"),
                        help="Trust bundle to merge (default: $SSL_CERT_FILE or certifi's bundle)")
    parser.add_argument("--include-roots", action="store_true",
                        help="Keep self-signed roots in the bundle")
    parser.add_argument("--timeout", type=float, default=15.0,
                        help="Total time allowed per AIA fetch in seconds (default: 15)")
    parser.add_argument("--connect-timeout", type=float, default=10.0,
                        help="Timeout for the TLS handshake in seconds (default: 10)")
    parser.add_argument("--max-fetches", type=int, default=DEFAULT_MAX_FETCHES,
                        help=f"Cap on AIA fetches, 0 for unlimited (default: {DEFAULT_MAX_FETCHES})")
    parser.add_argument("--verify-hostname", action="store_true",
                        help="Abort if the presented leaf does not name the host")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    return parser


def configure_logging(verbose=False, quiet=False):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s", stream=sys.stderr)
    logging.captureWarnings(True)


def print_summary(resolution: Resolution, stream=None):
    stream = stream or sys.stderr
    print(f"\nLeaf: {resolution.leaf.subject}", file=stream)
    print(f"Number of certificates in the bundle: {len(resolution.bundle)}", file=stream)
    for i, cert in enumerate(resolution.bundle, 1):
        print(f"\nCertificate {i}:", file=stream)
        print(f"  Subject: {cert.subject}", file=stream)
        print(f"  Issuer: {cert.issuer}", file=stream)
        print(f"  SHA256: {cert.fingerprint}", file=stream)
        print(f"  Source: {resolution.sources.get(cert.fingerprint, 'unknown')}", file=stream)
    for url, reason in resolution.failures:
        print(f"\nUnresolved AIA URI: {url} ({reason})", file=stream)


def run(args) -> int:
    try:
        host, port = parse_target(args.target)
    except ValueError as e:
        logger.error("%s", e)
        return 1
    if args.port is not None:
        if not 0 < args.port < 65536:
            logger.error("Port must be between 1 and 65535, got %d", args.port)
            return 1
        port = args.port

    config = ResolverConfig(
        fetch_timeout=args.timeout,
        max_fetches=args.max_fetches or None,
        include_roots=args.include_roots,
    )

    try:
        chain = capture_chain(host, port, timeout=args.connect_timeout)
        if not leaf_matches_hostname(chain[0], host):
            message = f"Leaf certificate {chain[0].subject} does not match {host}"
            if args.verify_hostname:
                raise LeafHostnameMismatch(message)
            logger.warning("%s", message)
    except (ChainCaptureError, NoCertificatesFound, LeafHostnameMismatch) as e:
        logger.error("%s", e)
        return 1

    with AIAFetcher(timeout=config.fetch_timeout, user_agent=config.user_agent) as fetcher:
        resolution = AIAResolver(fetcher, config).resolve(chain)

    extra = []
    if args.merge_system_bundle:
        try:
            extra = load_trust_bundle(args.system_bundle)
        except (OSError, ValueError) as e:
            logger.error("Cannot load trust bundle: %s", e)
            return 1

    try:
        write_bundle(resolution.bundle, args.output, extra=extra)
    except OSError as e:
        logger.error("Cannot write %s: %s", args.output, e)
        return 1

    if not args.quiet:
        print_summary(resolution)
        if args.output != "-":
            print(f"\nCA certificate bundle saved to {args.output}", file=sys.stderr)
    return 0


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
