# calfed/activitypub/actor.py
"""
ActivityPub actors.

Two kinds of actor meet in federation:
- RemoteActor: another server's calendar, learned through WebFinger and
  its actor document, cached for a while
- CalendarActor: one of our own calendars, with the RSA key pair used to
  sign its outgoing activities

FederationUrls is the local URL scheme tying calendar ids to actor,
inbox and activity URLs.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlsplit, urlunsplit

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..errors import InvalidRemoteCalendarIdentifierError
from ..identifier import RemoteCalendarIdentifier
from .activity import AS_CONTEXT

ACTIVITY_JSON = "application/activity+json"
SECURITY_CONTEXT = "https://w3id.org/security/v1"
DEFAULT_PORTS = {"http": 80, "https": 443}


def normalize_actor_url(url: str) -> str:
    """
    Canonical form of an actor URL for comparisons.

    Lower-cases scheme and host, drops default ports, fragments, queries
    and trailing slashes, and compares the path case-insensitively.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host if port in (None, DEFAULT_PORTS.get(scheme)) else f"{host}:{port}"
    path = unquote(parts.path).rstrip("/").casefold()
    return urlunsplit((scheme, netloc, path, "", ""))


def generate_keypair() -> tuple[bytes, bytes]:
    """Generate RSA key pair for signing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


class FederationUrls:
    """
    Local URL scheme.

    Usage:
        urls = FederationUrls("https://events.example.org")
        urls.actor("main")      # https://events.example.org/calendars/main
        urls.inbox("main")      # .../calendars/main/inbox
    """

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/")
        parts = urlsplit(self.base_url)
        self.domain = parts.netloc.lower()

    def actor(self, calendar_id: str) -> str:
        return f"{self.base_url}/calendars/{calendar_id}"

    def inbox(self, calendar_id: str) -> str:
        return f"{self.actor(calendar_id)}/inbox"

    def outbox(self, calendar_id: str) -> str:
        return f"{self.actor(calendar_id)}/outbox"

    def key_id(self, calendar_id: str) -> str:
        return f"{self.actor(calendar_id)}#main-key"

    @property
    def shared_inbox(self) -> str:
        return f"{self.base_url}/inbox"

    def event(self, event_id: str) -> str:
        return f"{self.base_url}/events/{event_id}"

    def new_activity_id(self) -> str:
        return f"{self.base_url}/activities/{uuid.uuid4()}"

    def calendar_id_for(self, reference: str) -> Optional[str]:
        """
        Local calendar id named by an acct: URI or an actor URL.

        Returns None when the reference points at another server.
        """
        if not reference:
            return None

        if "://" not in reference:
            try:
                identifier = RemoteCalendarIdentifier.parse(reference)
            except InvalidRemoteCalendarIdentifierError:
                return None
            if identifier.domain != self.domain:
                return None
            return identifier.local_part

        normalized = normalize_actor_url(reference)
        prefix = normalize_actor_url(self.base_url) + "/calendars/"
        if not normalized.startswith(prefix):
            return None
        # path ends in /calendars/<id>
        segments = urlsplit(reference.strip()).path.rstrip("/").split("/")
        if len(segments) < 3 or segments[-2].lower() != "calendars":
            return None
        return unquote(segments[-1])

    def is_local(self, url: str) -> bool:
        return normalize_actor_url(url).startswith(normalize_actor_url(self.base_url) + "/")


@dataclass
class RemoteActor:
    """
    A resolved remote calendar identity.

    Attributes:
        identifier: The user@domain handle
        actor_id: Actor document URL (canonical identity)
        inbox_url: Where activities for this actor are POSTed
        outbox_url: The actor's outbox collection
        public_key: PEM-encoded public key
        key_id: Id of the public key, as used in signature headers
        shared_inbox_url: Server-wide inbox, if advertised
        supports_activitypub: Whether the server spoke ActivityPub
        resolved_at: When the actor was fetched
    """
    identifier: RemoteCalendarIdentifier
    actor_id: str
    inbox_url: str
    outbox_url: str
    public_key: str
    key_id: str = ""
    shared_inbox_url: Optional[str] = None
    supports_activitypub: bool = True
    resolved_at: float = field(default_factory=time.time)

    @property
    def domain(self) -> str:
        return self.identifier.domain

    @property
    def delivery_inbox(self) -> str:
        """Inbox to deliver to, preferring the shared inbox."""
        return self.shared_inbox_url or self.inbox_url

    def is_same_actor(self, url: str) -> bool:
        return normalize_actor_url(self.actor_id) == normalize_actor_url(url)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage."""
        return {
            "identifier": str(self.identifier),
            "actor_id": self.actor_id,
            "inbox_url": self.inbox_url,
            "outbox_url": self.outbox_url,
            "public_key": self.public_key,
            "key_id": self.key_id,
            "shared_inbox_url": self.shared_inbox_url,
            "supports_activitypub": self.supports_activitypub,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteActor":
        """Deserialize from storage."""
        return cls(
            identifier=RemoteCalendarIdentifier.parse(data["identifier"]),
            actor_id=data["actor_id"],
            inbox_url=data["inbox_url"],
            outbox_url=data["outbox_url"],
            public_key=data["public_key"],
            key_id=data.get("key_id", ""),
            shared_inbox_url=data.get("shared_inbox_url"),
            supports_activitypub=data.get("supports_activitypub", True),
            resolved_at=data.get("resolved_at", time.time()),
        )


@dataclass
class CalendarActor:
    """
    One of this server's calendars as an ActivityPub actor.

    Attributes:
        calendar_id: Local calendar id (also its public name)
        urls: Local URL scheme
        public_key: PEM-encoded public key
        private_key: PEM-encoded private key (kept secret)
        display_name: Human-readable name
    """
    calendar_id: str
    urls: FederationUrls
    public_key: bytes
    private_key: bytes
    display_name: str = ""

    @property
    def id(self) -> str:
        """ActivityPub actor ID (URL)."""
        return self.urls.actor(self.calendar_id)

    @property
    def key_id(self) -> str:
        """Key ID for HTTP Signatures."""
        return self.urls.key_id(self.calendar_id)

    @property
    def handle(self) -> str:
        return f"{self.calendar_id}@{self.urls.domain}"

    def to_activitypub(self) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        return {
            "@context": [AS_CONTEXT, SECURITY_CONTEXT],
            "type": "Group",
            "id": self.id,
            "preferredUsername": self.calendar_id,
            "name": self.display_name or self.calendar_id,
            "inbox": self.urls.inbox(self.calendar_id),
            "outbox": self.urls.outbox(self.calendar_id),
            "endpoints": {"sharedInbox": self.urls.shared_inbox},
            "publicKey": {
                "id": self.key_id,
                "owner": self.id,
                "publicKeyPem": self.public_key.decode("utf-8"),
            },
        }

    def webfinger(self) -> Dict[str, Any]:
        """WebFinger (JRD) document for this calendar."""
        return {
            "subject": f"acct:{self.handle}",
            "aliases": [self.id],
            "links": [
                {"rel": "self", "type": ACTIVITY_JSON, "href": self.id},
            ],
        }

    @classmethod
    def create(cls, calendar_id: str, urls: FederationUrls,
               display_name: str = None) -> "CalendarActor":
        """Create a calendar actor with freshly generated keys."""
        private_pem, public_pem = generate_keypair()
        return cls(
            calendar_id=calendar_id,
            urls=urls,
            public_key=public_pem,
            private_key=private_pem,
            display_name=display_name or calendar_id,
        )


class CalendarActorStore:
    """
    Key material for local calendars.

    Keys are generated the first time a calendar federates. With a
    store_dir they persist across restarts:

        store_dir/
            actors.json     # calendar id -> PEM key pair
    """

    def __init__(self, urls: FederationUrls, store_dir: Path | str = None):
        self.urls = urls
        self.store_dir = Path(store_dir) if store_dir else None
        self._actors: Dict[str, CalendarActor] = {}
        if self.store_dir:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _index_path(self) -> Path:
        return self.store_dir / "actors.json"

    def _load(self):
        """Load actors from disk."""
        index_path = self._index_path()
        if index_path.exists():
            with open(index_path) as f:
                data = json.load(f)
            self._actors = {
                calendar_id: CalendarActor(
                    calendar_id=calendar_id,
                    urls=self.urls,
                    public_key=entry["public_key"].encode("utf-8"),
                    private_key=entry["private_key"].encode("utf-8"),
                    display_name=entry.get("display_name", ""),
                )
                for calendar_id, entry in data.get("actors", {}).items()
            }

    def _save(self):
        """Save actors to disk."""
        if not self.store_dir:
            return
        data = {
            "version": "1.0",
            "domain": self.urls.domain,
            "actors": {
                calendar_id: {
                    "public_key": actor.public_key.decode("utf-8"),
                    "private_key": actor.private_key.decode("utf-8"),
                    "display_name": actor.display_name,
                }
                for calendar_id, actor in self._actors.items()
            },
        }
        with open(self._index_path(), "w") as f:
            json.dump(data, f, indent=2)

    def get(self, calendar_id: str) -> Optional[CalendarActor]:
        return self._actors.get(calendar_id)

    def get_or_create(self, calendar_id: str, display_name: str = None) -> CalendarActor:
        """Return the calendar's actor, generating keys on first use."""
        actor = self._actors.get(calendar_id)
        if actor is None:
            actor = CalendarActor.create(calendar_id, self.urls, display_name)
            self._actors[calendar_id] = actor
            self._save()
        return actor

    def by_actor_id(self, actor_id: str) -> Optional[CalendarActor]:
        calendar_id = self.urls.calendar_id_for(actor_id)
        if calendar_id is None:
            return None
        return self._actors.get(calendar_id)

    def __contains__(self, calendar_id: str) -> bool:
        return calendar_id in self._actors

    def __len__(self) -> int:
        return len(self._actors)
