import argparse
import logging
import sys

from cryptography import x509

from bundle_errors import MalformedCertificate
from cert_records import Certificate, parse_certificates

logger = logging.getLogger("print_bundle_info")


def load_bundle(filename):
    with open(filename, "rb") as f:
        return parse_certificates(f.read())


def print_cert_info(record: Certificate, index, stream=None):
    stream = stream or sys.stdout
    cert = record.x509_cert
    print(f"\nCertificate {index}:", file=stream)
    print("=" * 20, file=stream)
    print(f"Version: {cert.version.name}", file=stream)
    print(f"Serial Number: {cert.serial_number}", file=stream)
    print(f"Subject: {record.subject}", file=stream)
    print(f"Issuer: {record.issuer}", file=stream)
    print(f"Not Valid Before: {cert.not_valid_before_utc}", file=stream)
    print(f"Not Valid After: {cert.not_valid_after_utc}", file=stream)
    print(f"SHA256 Fingerprint: {record.fingerprint}", file=stream)
    print(f"Self-signed: {'yes' if record.self_signed else 'no'}", file=stream)

    public_key = cert.public_key()
    print(f"Public Key Algorithm: {public_key.__class__.__name__}", file=stream)
    key_size = getattr(public_key, "key_size", None)
    if key_size is not None:
        print(f"Key Size: {key_size} bits", file=stream)

    if record.ca_issuer_urls:
        print("CA Issuers:", file=stream)
        for url in record.ca_issuer_urls:
            print(f"  {url}", file=stream)

    print("Extensions:", file=stream)
    for extension in cert.extensions:
        value = extension.value
        # CA Issuers are listed above.
        if isinstance(value, x509.AuthorityInformationAccess):
            continue
        print(f"  {extension.oid._name}:", file=stream)
        if isinstance(value, x509.BasicConstraints):
            print(f"    CA: {value.ca}", file=stream)
            if value.ca and value.path_length is not None:
                print(f"    Path Length Constraint: {value.path_length}", file=stream)
        elif isinstance(value, x509.SubjectAlternativeName):
            print("    Subject Alternative Names:", file=stream)
            for name in value:
                print(f"      {type(name).__name__}: {name.value}", file=stream)
        else:
            print(f"    {value}", file=stream)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Display the certificates of a PEM bundle")
    parser.add_argument("pem_file", help="Path to the PEM file containing the certificate(s)")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    try:
        certs = load_bundle(args.pem_file)
    except OSError as e:
        logger.error("Cannot read %s: %s", args.pem_file, e)
        return 1
    except MalformedCertificate as e:
        logger.error("No certificates in %s: %s", args.pem_file, e)
        return 1

    print(f"Found {len(certs)} certificate(s) in the PEM file.")
    for i, cert in enumerate(certs, 1):
        print_cert_info(cert, i)
    return 0


if __name__ == "__main__":
    sys.exit(main())
