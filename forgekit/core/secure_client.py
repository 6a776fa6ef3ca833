"""Hardened HTTP client for the deploy API.

All outbound calls go through :class:`SecureClient`, which pins TLS >= 1.2,
re-checks the peer certificate after the handshake, restricts targets to the
ForgeKit domain family, stamps security headers on every request and validates
responses before handing them to callers.
"""
import base64
import hashlib
import json
import re
import ssl
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode, urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter

from forgekit import __version__
from forgekit.core.config import ForgeConfig
from forgekit.core.errors import (
    CertificateError,
    HTTPStatusError,
    NetworkError,
    ResponseValidationError,
    SecurityError,
    ServerError,
    SuspiciousResponseError,
    UntrustedHostError,
)
from forgekit.core.logger import get_logger

logger = get_logger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")

SECURITY_RESPONSE_HEADERS = (
    "x-content-type-options",
    "x-frame-options",
    "x-xss-protection",
)

SUSPICIOUS_PATTERNS = (
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
)

REQUIRED_DEPLOYMENT_FIELDS = ("url",)

READ_CHUNK_SIZE = 64 * 1024
# Error bodies are only logged or shown, so a short prefix is enough
ERROR_BODY_LIMIT = 64 * 1024


def is_local_host(hostname: str) -> bool:
    return (hostname or "").lower() in LOCAL_HOSTS


def is_allowed_host(hostname: str, allowed_domains: Iterable[str]) -> bool:
    """True when ``hostname`` is in the allowed domain family or local."""
    host = (hostname or "").lower().rstrip(".")
    if is_local_host(host):
        return True
    return any(host == domain or host.endswith("." + domain) for domain in allowed_domains)


def validate_peer_certificate(
    hostname: str,
    cert: Optional[dict],
    allowed_domains: Iterable[str],
    chain_length: Optional[int] = None,
    max_chain_depth: int = 5,
    now: Optional[float] = None,
) -> None:
    """Extra checks on a certificate the TLS stack already accepted.

    Args:
        hostname: Server name the connection was made to
        cert: Decoded peer certificate (``SSLSocket.getpeercert()``)
        allowed_domains: Domain family the client may talk to
        chain_length: Number of certificates in the verified chain, if known
        max_chain_depth: Maximum issuers above the leaf
        now: Current UNIX time (injected in tests)

    Raises:
        UntrustedHostError: Hostname outside the allowed family
        CertificateError: Certificate missing, outside its validity window,
            or chain too long
    """
    if not is_allowed_host(hostname, allowed_domains):
        raise UntrustedHostError(
            f"Invalid hostname: {hostname}. Only ForgeKit domains are allowed."
        )

    if not cert:
        raise CertificateError(f"No peer certificate presented by {hostname}")

    current = time.time() if now is None else now
    try:
        not_before = ssl.cert_time_to_seconds(cert["notBefore"])
        not_after = ssl.cert_time_to_seconds(cert["notAfter"])
    except (KeyError, ValueError) as e:
        raise CertificateError(f"Certificate validity period unreadable for {hostname}") from e

    if current < not_before or current > not_after:
        raise CertificateError(f"Certificate expired or not yet valid for {hostname}")

    # chain_length counts the leaf, depth counts issuers above it
    if chain_length is not None and chain_length - 1 > max_chain_depth:
        raise CertificateError("Certificate chain too long")


class ValidatingSSLSocket(ssl.SSLSocket):
    """SSLSocket that runs :func:`validate_peer_certificate` after handshake."""

    def do_handshake(self, block=False):
        super().do_handshake(block)
        context = self.context
        chain = None
        get_chain = getattr(self, "get_verified_chain", None)
        if get_chain is not None:
            chain = get_chain()
        try:
            validate_peer_certificate(
                self.server_hostname,
                self.getpeercert(),
                allowed_domains=getattr(context, "allowed_domains", ()),
                chain_length=len(chain) if chain is not None else None,
                max_chain_depth=getattr(context, "max_chain_depth", 5),
            )
        except SecurityError as e:
            raise ssl.SSLCertVerificationError(str(e)) from e


class HardenedSSLContext(ssl.SSLContext):
    """Client context carrying the allow-list used by the socket checks."""

    allowed_domains: tuple = ()
    max_chain_depth: int = 5


def build_ssl_context(config: ForgeConfig) -> HardenedSSLContext:
    """TLS >= 1.2 client context with certificate and hostname checks."""
    context = HardenedSSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = True
    context.load_default_certs(ssl.Purpose.SERVER_AUTH)
    context.sslsocket_class = ValidatingSSLSocket
    context.allowed_domains = tuple(config.allowed_domains)
    context.max_chain_depth = config.max_chain_depth
    return context


class HardenedAdapter(HTTPAdapter):
    """Transport adapter that installs the hardened SSL context."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = self._ssl_context
        return super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)


def integrity_hash(body) -> Optional[str]:
    """``sha256-<base64>`` digest of a request body."""
    if body is None:
        return None
    if isinstance(body, str):
        payload = body.encode("utf-8")
    elif isinstance(body, (bytes, bytearray)):
        payload = bytes(body)
    else:
        payload = json.dumps(body).encode("utf-8")
    return "sha256-" + base64.b64encode(hashlib.sha256(payload).digest()).decode("ascii")


def validate_deployment_response(data: Any) -> None:
    """Reject deployment responses a trustworthy backend would never send.

    Raises:
        ResponseValidationError: Empty body or missing required field
        SuspiciousResponseError: Non-HTTPS URL or injection indicators
    """
    if not data or not isinstance(data, dict):
        raise ResponseValidationError("Empty deployment response")

    for name in REQUIRED_DEPLOYMENT_FIELDS:
        if not data.get(name):
            raise ResponseValidationError(
                f"Missing required field in deployment response: {name}"
            )

    url = data["url"]
    parsed = urlparse(str(url))
    if not parsed.scheme or not parsed.hostname:
        raise SuspiciousResponseError(f"Invalid deployment URL format: {url}")
    if parsed.scheme != "https" and not is_local_host(parsed.hostname):
        raise SuspiciousResponseError("Deployment URL must use HTTPS")

    serialized = json.dumps(data)
    for pattern in SUSPICIOUS_PATTERNS:
        if pattern.search(serialized):
            raise SuspiciousResponseError("Suspicious content detected in response")


@dataclass
class ApiResponse:
    """Validated response returned by :class:`SecureClient`."""

    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    data: Any = None


class SecureClient:
    """Secure HTTP client with certificate validation and integrity checking."""

    def __init__(self, config: ForgeConfig, session: Optional[requests.Session] = None):
        """Initialize client.

        Args:
            config: Runtime configuration (allow-list, limits, timeouts)
            session: Pre-built session (tests); a hardened one is created otherwise
        """
        self.config = config
        self.session = session or self._build_session()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.mount("https://", HardenedAdapter(build_ssl_context(self.config)))
        return session

    def security_headers(self) -> Dict[str, str]:
        return {
            "User-Agent": f"ForgeKit-CLI/{__version__}",
            "X-Requested-With": "ForgeKit-CLI",
            "Cache-Control": "no-cache",
            "X-Request-Timestamp": str(int(time.time() * 1000)),
        }

    def _check_target(self, url: str) -> None:
        hostname = urlparse(url).hostname
        if not hostname or not is_allowed_host(hostname, self.config.allowed_domains):
            logger.error(f"Refusing request to untrusted host: {hostname}")
            raise UntrustedHostError(
                f"Invalid hostname: {hostname}. Only ForgeKit domains are allowed."
            )

    def request(
        self,
        method: str,
        url: str,
        json_body: Any = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        deployment: bool = False,
    ) -> ApiResponse:
        """Send a request and validate the response.

        Redirects are followed by hand so every hop is checked against the
        allow-list before anything is sent to it.

        Args:
            method: HTTP method
            url: Absolute URL (must be in the allowed domain family)
            json_body: Body serialized as JSON (gets an integrity header)
            data: Form fields (multipart when ``files`` is given)
            files: Multipart files
            headers: Extra headers (e.g. Authorization)
            timeout: Seconds; defaults to the configured request timeout
            deployment: Apply deployment-response integrity checks

        Raises:
            SecurityError: Untrusted host, bad certificate, suspicious response,
                redirect off the allow-list or too many redirects
            NetworkError: Connection failure or timeout
            ServerError: 5xx response
            HTTPStatusError: 4xx response
            ResponseValidationError: Missing, oversized or malformed body
        """
        self._check_target(url)

        request_headers = self.security_headers()
        request_headers.update(headers or {})

        body = None
        if json_body is not None:
            body = json.dumps(json_body)
            request_headers["Content-Type"] = "application/json"
            request_headers["X-Content-Integrity"] = integrity_hash(body)
        elif data is not None and not files:
            # Encode the form here so the digest covers the exact bytes sent
            body = urlencode(data, doseq=True)
            request_headers["Content-Type"] = "application/x-www-form-urlencoded"
            request_headers["X-Content-Integrity"] = integrity_hash(body)

        current = url
        for _ in range(self.config.max_redirects + 1):
            response = self._send(
                method,
                current,
                data=body if body is not None else data,
                files=files,
                headers=dict(request_headers),
                timeout=timeout or self.config.request_timeout,
            )
            if not response.is_redirect:
                return self.validate_response(response, deployment=deployment)

            location = urljoin(current, response.headers["location"])
            response.close()
            self._check_redirect(current, location)
            logger.debug(f"Following {response.status_code} redirect to {location}")

            if response.status_code in (301, 302, 303) and method.upper() != "HEAD":
                method, body, data, files = "GET", None, None, None
                for name in ("Content-Type", "X-Content-Integrity"):
                    request_headers.pop(name, None)
            elif files:
                _rewind(files)
            if urlparse(location).hostname != urlparse(current).hostname:
                request_headers.pop("Authorization", None)
            current = location

        raise SecurityError("Too many redirects from the deploy API")

    def _check_redirect(self, current: str, location: str) -> None:
        self._check_target(location)
        target = urlparse(location)
        if urlparse(current).scheme == "https" and target.scheme != "https":
            logger.error(f"Refusing redirect that downgrades to {target.scheme}: {location}")
            raise SecurityError(f"Refusing insecure redirect to {location}")

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, url, allow_redirects=False, stream=True, **kwargs)
        except requests.exceptions.SSLError as e:
            logger.error(f"🔒 Certificate validation failed: {e}")
            logger.error("This could indicate a man-in-the-middle attack. Connection rejected.")
            raise CertificateError(
                "Certificate validation failed; connection rejected",
                hints=["Check for proxies or network interception, then retry"],
            ) from e
        except requests.exceptions.Timeout as e:
            raise NetworkError("Request timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"Cannot reach deployment server: {e}") from e

    def _read_body(self, response: requests.Response, limit: int, truncate: bool = False) -> bytes:
        """Read a streamed body, stopping as soon as it exceeds ``limit`` bytes."""
        chunks = []
        size = 0
        try:
            for chunk in response.iter_content(chunk_size=READ_CHUNK_SIZE):
                size += len(chunk)
                if size > limit:
                    if truncate:
                        chunks.append(chunk[: len(chunk) - (size - limit)])
                        break
                    raise ResponseValidationError("Response too large")
                chunks.append(chunk)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Connection lost while reading response: {e}") from e
        finally:
            response.close()
        return b"".join(chunks)

    def validate_response(self, response: requests.Response, deployment: bool = False) -> ApiResponse:
        """Classify status, enforce size limits and parse the body."""
        status = response.status_code
        if status >= 400:
            content = self._read_body(response, ERROR_BODY_LIMIT, truncate=True)
            if status >= 500:
                logger.debug(f"Server error {status}: {_decode(response, content)[:500]}")
                raise ServerError(status)
            raise HTTPStatusError(
                status, f"Server returned status {status}", body=_safe_body(response, content)
            )
        if status == 204 and not deployment:
            response.close()
            return ApiResponse(status=status, headers=dict(response.headers), data=None)

        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.config.max_response_bytes:
            response.close()
            raise ResponseValidationError("Response too large")

        content = self._read_body(response, self.config.max_response_bytes)
        if not content:
            raise ResponseValidationError("Invalid response structure")

        for header in SECURITY_RESPONSE_HEADERS:
            if header not in response.headers:
                logger.debug(f"Missing security header: {header}")

        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            try:
                payload = json.loads(content)
            except (ValueError, UnicodeDecodeError) as e:
                raise ResponseValidationError("Invalid JSON response format") from e
        else:
            payload = _decode(response, content)

        if deployment:
            try:
                validate_deployment_response(payload)
            except SuspiciousResponseError:
                logger.error("🔒 Deployment response failed integrity checks; discarding it")
                raise

        return ApiResponse(status=status, headers=dict(response.headers), data=payload)

    def get(self, url: str, **kwargs) -> ApiResponse:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs) -> ApiResponse:
        return self.request("POST", url, **kwargs)

    def put(self, url: str, **kwargs) -> ApiResponse:
        return self.request("PUT", url, **kwargs)

    def delete(self, url: str, **kwargs) -> ApiResponse:
        return self.request("DELETE", url, **kwargs)


def _rewind(files: Dict[str, Any]) -> None:
    for value in files.values():
        fileobj = value[1] if isinstance(value, tuple) else value
        if hasattr(fileobj, "seek"):
            fileobj.seek(0)


def _decode(response: requests.Response, content: bytes) -> str:
    return content.decode(response.encoding or "utf-8", errors="replace")


def _safe_body(response: requests.Response, content: bytes):
    try:
        return json.loads(content)
    except ValueError:
        return _decode(response, content)[:500]
