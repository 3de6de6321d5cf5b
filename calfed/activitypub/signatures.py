# calfed/activitypub/signatures.py
"""
HTTP Signatures for ActivityPub deliveries.

Uses RSA-SHA256 over the (request-target), host, date and digest headers,
as Mastodon and most ActivityPub servers expect:

    Signature: keyId="https://a.example/calendars/main#main-key",
               algorithm="rsa-sha256",
               headers="(request-target) host date digest",
               signature="<base64>"

Both sides are pluggable: the outbox takes any object with a ``sign``
method and the inbox any object with a ``verify`` method.
"""

import base64
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from email.utils import formatdate, parsedate_to_datetime
from typing import Callable, Dict, List, Mapping, Optional
from urllib.parse import urlsplit

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .actor import CalendarActorStore

logger = logging.getLogger(__name__)

SIGNED_HEADERS = ["(request-target)", "host", "date", "digest"]
_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass
class SignedRequest:
    """
    An inbound HTTP request as seen by signature verification.

    Header names are stored lower-cased.
    """
    method: str
    path: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())


def build_digest(body: bytes) -> str:
    """Digest header value for a request body."""
    return "SHA-256=" + base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


def parse_signature_header(header: str) -> Dict[str, str]:
    """
    Parse a Signature header into its parameters.

    Returns:
        Mapping of parameter name to value (keyId, algorithm, headers, signature)
    """
    return {key: value for key, value in _PARAM_RE.findall(header or "")}


def key_id_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """keyId of a request's Signature header, if any."""
    for name, value in headers.items():
        if name.lower() == "signature":
            return parse_signature_header(value).get("keyId")
    return None


def _signing_string(method: str, path: str, headers: Mapping[str, str],
                    signed_headers: List[str]) -> str:
    lines = []
    for name in signed_headers:
        if name == "(request-target)":
            lines.append(f"(request-target): {method.lower()} {path}")
        else:
            value = headers.get(name)
            if value is None:
                raise KeyError(name)
            lines.append(f"{name}: {value}")
    return "\n".join(lines)


def sign_request(method: str, url: str, body: bytes, key_id: str,
                 private_key_pem: bytes, date: str = None) -> Dict[str, str]:
    """
    Produce the headers for a signed request.

    Args:
        method: HTTP method
        url: Full target URL
        body: Request body
        key_id: Public key id advertised in the actor document
        private_key_pem: PEM-encoded private key
        date: HTTP date to sign (defaults to now)

    Returns:
        Headers to send: Host, Date, Digest, Signature
    """
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path = f"{path}?{parts.query}"

    headers = {
        "host": parts.netloc,
        "date": date or formatdate(usegmt=True),
        "digest": build_digest(body),
    }
    signing_string = _signing_string(method, path, headers, SIGNED_HEADERS)

    private_key = serialization.load_pem_private_key(private_key_pem, password=None)
    signature_bytes = private_key.sign(
        signing_string.encode("utf-8"),
        padding.PKCS1v15(),
        hashes.SHA256(),
    )
    signature = base64.b64encode(signature_bytes).decode("ascii")

    return {
        "Host": headers["host"],
        "Date": headers["date"],
        "Digest": headers["digest"],
        "Signature": (
            f'keyId="{key_id}",algorithm="rsa-sha256",'
            f'headers="{" ".join(SIGNED_HEADERS)}",signature="{signature}"'
        ),
    }


class HttpSigner:
    """
    Signs outgoing deliveries with the sending calendar's key.

    Args:
        actors: Store holding each local calendar's key pair
    """

    def __init__(self, actors: CalendarActorStore):
        self.actors = actors

    def sign(self, actor_id: str, method: str, url: str, body: bytes) -> Dict[str, str]:
        calendar_id = self.actors.urls.calendar_id_for(actor_id)
        if calendar_id is None:
            raise ValueError(f"Not a local actor: {actor_id}")
        actor = self.actors.get_or_create(calendar_id)
        return sign_request(method, url, body, actor.key_id, actor.private_key)


class HttpSignatureVerifier:
    """
    Verifies inbound HTTP signatures.

    Args:
        max_age: Reject requests whose Date is further than this from now
        clock: Time source (seconds since epoch)
    """

    def __init__(self, max_age: float = 3600.0, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self.clock = clock

    def verify(self, public_key_pem: str | bytes, request: SignedRequest) -> bool:
        """
        Check a request's signature against a public key.

        Returns:
            True if the signature, digest and date are all valid
        """
        header = request.header("signature")
        if not header:
            return False

        params = parse_signature_header(header)
        signature = params.get("signature")
        if not signature:
            logger.debug("Signature header without signature value")
            return False

        algorithm = params.get("algorithm", "rsa-sha256").lower()
        if algorithm not in ("rsa-sha256", "hs2019"):
            logger.debug(f"Unsupported signature algorithm: {algorithm}")
            return False

        signed_headers = params.get("headers", "date").lower().split()
        if "(request-target)" not in signed_headers or "date" not in signed_headers:
            return False
        if request.body and "digest" not in signed_headers:
            return False

        if "digest" in signed_headers:
            if request.header("digest") != build_digest(request.body):
                logger.debug("Digest header does not match body")
                return False

        if not self._date_is_fresh(request.header("date")):
            logger.debug("Signed request date is missing or stale")
            return False

        if isinstance(public_key_pem, str):
            public_key_pem = public_key_pem.encode("utf-8")

        try:
            signing_string = _signing_string(
                request.method, request.path, request.headers, signed_headers
            )
            public_key = serialization.load_pem_public_key(public_key_pem)
            public_key.verify(
                base64.b64decode(signature),
                signing_string.encode("utf-8"),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
            return True
        except (InvalidSignature, UnsupportedAlgorithm, KeyError, ValueError, TypeError):
            return False

    def _date_is_fresh(self, value: Optional[str]) -> bool:
        if not value:
            return False
        try:
            signed_at = parsedate_to_datetime(value).timestamp()
        except (TypeError, ValueError):
            return False
        return abs(self.clock() - signed_at) <= self.max_age
