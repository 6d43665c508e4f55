"""
Breadth-first AIA chasing.

Starting from the leaf, every certificate taken off the queue has its
Authority Information Access "CA Issuers" URIs fetched; whatever comes back
is normalized and either recorded as a root candidate (self-signed), admitted
to the bundle and queued (new intermediate), or dropped (already seen).
The fingerprint set is what makes the walk terminate on AIA cycles;
`max_fetches` bounds the network work against servers that hand out an
endless stream of distinct certificates.
"""

from __future__ import annotations

import collections
import logging
import time

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import requests
import urllib3

from bundle_errors import FetchFailure, MalformedCertificate, NoCertificatesFound
from cert_records import Certificate, FingerprintSet, Observation, parse_certificates

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = 15.0
DEFAULT_USER_AGENT = "aia-ca-bundle/1.0"
DEFAULT_MAX_RESPONSE_BYTES = 1024 * 1024
READ_CHUNK_SIZE = 16 * 1024
SERVER_CHAIN = "Server Chain"


@dataclass(frozen=True)
class ResolverConfig:
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    max_fetches: Optional[int] = None
    include_roots: bool = False
    user_agent: str = DEFAULT_USER_AGENT


class AIAFetcher:
    """Fetches AIA CA Issuers URIs over HTTP(S) through a requests session."""

    def __init__(self, timeout: float = DEFAULT_FETCH_TIMEOUT,
                 user_agent: str = DEFAULT_USER_AGENT,
                 session: Optional[requests.Session] = None,
                 max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": user_agent})

    def fetch(self, url: str) -> bytes:
        """
        Return the body at `url`.

        `timeout` bounds the whole fetch, not just each socket read, and the
        body may not exceed `max_bytes`.

        Raises:
            FetchFailure: unsupported scheme, transport error, timeout, an
                oversized body, or a non-200 response.
        """
        scheme = urlparse(url).scheme.lower()
        if scheme not in ("http", "https"):
            raise FetchFailure(url, f"unsupported URI scheme {scheme!r}")

        logger.info("Fetching %s", url)
        deadline = time.monotonic() + self.timeout
        try:
            response = self.session.get(url, timeout=self.timeout, allow_redirects=True, stream=True)
        except requests.RequestException as e:
            raise FetchFailure(url, str(e)) from e

        try:
            if response.status_code != 200:
                raise FetchFailure(url, f"HTTP {response.status_code}")
            return self._read_body(url, response, deadline)
        finally:
            response.close()

    def _read_body(self, url, response, deadline) -> bytes:
        body = bytearray()
        while True:
            try:
                chunk = response.raw.read1(READ_CHUNK_SIZE, decode_content=True)
            except (urllib3.exceptions.HTTPError, OSError) as e:
                raise FetchFailure(url, str(e)) from e
            if not chunk:
                return bytes(body)
            body += chunk
            if len(body) > self.max_bytes:
                raise FetchFailure(url, f"response larger than {self.max_bytes} bytes")
            if time.monotonic() > deadline:
                raise FetchFailure(url, f"fetch exceeded {self.timeout}s")

    __call__ = fetch

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@dataclass
class Resolution:
    leaf: Certificate
    bundle: List[Certificate] = field(default_factory=list)
    roots: List[Certificate] = field(default_factory=list)
    sources: Dict[str, str] = field(default_factory=dict)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    fetch_count: int = 0


class AIAResolver:
    """
    Owns the state of one resolution run: fingerprint set, queue, visited
    set, and the URIs already fetched.
    """

    def __init__(self, fetcher: Callable[[str], bytes], config: Optional[ResolverConfig] = None):
        self.fetcher = fetcher
        self.config = config or ResolverConfig()
        self._reset()

    def _reset(self):
        self._tracker = FingerprintSet()
        self._queue = collections.deque()
        self._visited = set()
        self._known_subjects = set()
        self._fetched_urls = set()
        self._limit_reported = False
        self._result = None

    def resolve(self, chain: Sequence[Certificate]) -> Resolution:
        """
        Resolve missing intermediates for `chain` (leaf first).

        Only the per-branch failures are absorbed; they end up in
        `Resolution.failures`.
        """
        if not chain:
            raise NoCertificatesFound("cannot resolve an empty chain")

        self._reset()
        leaf = chain[0]
        self._result = Resolution(leaf=leaf)
        self._tracker.observe(leaf)
        self._known_subjects.add(leaf.subject_name)
        self._queue.append(leaf)

        for cert in chain[1:]:
            self._admit(cert, SERVER_CHAIN)

        while self._queue:
            cert = self._queue.popleft()
            if cert.fingerprint in self._visited:
                continue
            self._expand(cert)
            self._visited.add(cert.fingerprint)

        result = self._result
        logger.info(
            "Resolution finished: %d bundled, %d root candidate(s), %d fetch(es), %d failure(s)",
            len(result.bundle), len(result.roots), result.fetch_count, len(result.failures),
        )
        return result

    def _admit(self, cert: Certificate, source: str):
        if self._tracker.observe(cert) is Observation.DUPLICATE:
            logger.debug("Already seen %s (%s)", cert.subject, cert.fingerprint[:16])
            return

        self._known_subjects.add(cert.subject_name)
        self._result.sources[cert.fingerprint] = source

        if cert.self_signed:
            logger.info("Root candidate from %s: %s", source, cert.subject)
            self._result.roots.append(cert)
            if self.config.include_roots:
                self._result.bundle.append(cert)
            return

        logger.info("Intermediate from %s: %s", source, cert.subject)
        self._result.bundle.append(cert)
        self._queue.append(cert)

    def _fetch_limit_reached(self) -> bool:
        limit = self.config.max_fetches
        if limit is None or self._result.fetch_count < limit:
            return False
        if not self._limit_reported:
            logger.warning("Fetch limit of %d reached; not following further AIA URIs", limit)
            self._limit_reported = True
        return True

    def _expand(self, cert: Certificate):
        if cert.self_signed:
            return
        if cert.issuer_name in self._known_subjects:
            logger.debug("Issuer of %s already known, no AIA fetch needed", cert.subject)
            return
        if not cert.ca_issuer_urls:
            logger.debug("No AIA CA Issuers URI on %s", cert.subject)
            return

        for url in cert.ca_issuer_urls:
            if url in self._fetched_urls:
                continue
            if self._fetch_limit_reached():
                return
            self._fetched_urls.add(url)
            self._result.fetch_count += 1

            try:
                found = parse_certificates(self.fetcher(url))
            except FetchFailure as e:
                logger.warning("Abandoning AIA branch %s: %s", url, e.reason)
                self._result.failures.append((url, e.reason))
                continue
            except MalformedCertificate as e:
                logger.warning("Abandoning AIA branch %s: %s", url, e)
                self._result.failures.append((url, str(e)))
                continue

            for issuer in found:
                self._admit(issuer, f"AIA {url}")
