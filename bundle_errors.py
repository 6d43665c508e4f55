class ChainCaptureError(ConnectionError):
    """Raised when the TLS handshake against the target cannot be completed."""


class NoCertificatesFound(Exception):
    """Raised when a handshake succeeded but no certificate could be parsed."""


class MalformedCertificate(ValueError):
    """Raised when data is neither a PEM nor a DER encoded certificate."""


class FetchFailure(Exception):
    """Raised when an AIA CA Issuers URI cannot be retrieved."""

    def __init__(self, url, reason):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class LeafHostnameMismatch(Exception):
    """Raised when the presented leaf does not name the requested host."""


class EmptyBundleWarning(UserWarning):
    pass
