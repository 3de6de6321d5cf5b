# calfed/activitypub/resolver.py
"""
Remote actor resolution.

Turns a ``user@domain`` handle into a RemoteActor:
1. GET https://domain/.well-known/webfinger?resource=acct:user@domain
2. Follow the ``rel=self`` link of type application/activity+json
3. GET the actor document and read inbox, outbox and public key

Results are cached. Concurrent lookups of the same handle share one
in-flight request so a burst of activity from one server does not turn
into a burst of lookups against it.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit

import httpx

from ..cache import ActorCache
from ..errors import (
    ActivityPubNotSupportedError,
    InvalidRemoteCalendarIdentifierError,
    RemoteCalendarNotFoundError,
    RemoteDomainUnreachableError,
    RemoteProfileFetchError,
)
from ..identifier import RemoteCalendarIdentifier
from ..netguard import LOCALHOST_NAMES, UrlGuard
from .actor import ACTIVITY_JSON, RemoteActor, normalize_actor_url

logger = logging.getLogger(__name__)

JRD_ACCEPT = "application/jrd+json, application/json"
ACTOR_ACCEPT = (
    'application/activity+json, '
    'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
)
ACTIVITY_CONTENT_TYPES = {ACTIVITY_JSON, "application/ld+json"}
GONE_STATUSES = (404, 410)


def _identifier_key(identifier: RemoteCalendarIdentifier) -> str:
    return f"acct:{identifier.local_part.casefold()}@{identifier.domain}"


def _url_key(url: str) -> str:
    return f"url:{normalize_actor_url(url)}"


def _origin(url: str) -> str:
    """scheme://host[:port] of a URL, normalised."""
    parts = urlsplit(normalize_actor_url(url))
    return f"{parts.scheme}://{parts.netloc}"


def _self_link(data: Any) -> Optional[str]:
    """The ActivityPub actor link of a WebFinger document."""
    if not isinstance(data, dict):
        return None
    links = data.get("links")
    if not isinstance(links, list):
        return None
    for link in links:
        if not isinstance(link, dict) or link.get("rel") != "self":
            continue
        link_type = (link.get("type") or "").split(";")[0].strip().lower()
        href = link.get("href")
        if link_type in ACTIVITY_CONTENT_TYPES and isinstance(href, str) and href:
            return href
    return None


class ActorResolver:
    """
    Resolves and caches remote actors.

    Args:
        client: Shared async HTTP client
        cache: Actor cache (owns TTL and clock)
        guard: URL safety checks applied before every request
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: ActorCache,
        guard: UrlGuard = None,
        timeout: float = 5.0,
    ):
        self.client = client
        self.cache = cache
        self.guard = guard or UrlGuard()
        self.timeout = timeout
        self._in_flight: Dict[str, asyncio.Future] = {}

    async def resolve(self, identifier: RemoteCalendarIdentifier | str) -> RemoteActor:
        """
        Resolve a handle to its actor, using the cache when fresh.

        Raises:
            InvalidRemoteCalendarIdentifierError: Malformed handle
            RemoteDomainUnreachableError: DNS, connect or timeout failure
            RemoteCalendarNotFoundError: The remote server has no such calendar
            ActivityPubNotSupportedError: The remote server does not speak ActivityPub
            RemoteProfileFetchError: The remote answered with something unparseable
            UnsafeUrlError: The lookup would target an internal address
        """
        if isinstance(identifier, str):
            identifier = RemoteCalendarIdentifier.parse(identifier)

        key = _identifier_key(identifier)
        actor = self.cache.get(key)
        if actor is not None:
            return actor

        return await self._coalesce(key, lambda: self._discover(identifier))

    async def resolve_actor_url(self, url: str, refresh: bool = False) -> RemoteActor:
        """
        Resolve an actor by its document URL (e.g. a signature keyId owner).

        Args:
            url: Actor URL
            refresh: Bypass the cache and refetch
        """
        key = _url_key(url)
        if not refresh:
            actor = self.cache.get(key)
            if actor is not None:
                return actor
        else:
            self.cache.invalidate(key)

        return await self._coalesce(key, lambda: self._fetch_and_store(url))

    def cached(self, identifier: RemoteCalendarIdentifier) -> Optional[RemoteActor]:
        return self.cache.peek(_identifier_key(identifier))

    def is_cached_url(self, url: str) -> bool:
        return self.cache.has(_url_key(url))

    def invalidate(self, identifier: RemoteCalendarIdentifier | str) -> None:
        """Forget a resolved actor so the next lookup refetches it."""
        if isinstance(identifier, str):
            identifier = RemoteCalendarIdentifier.parse(identifier)
        actor = self.cache.peek(_identifier_key(identifier))
        self.cache.invalidate(_identifier_key(identifier))
        if actor is not None:
            self.cache.invalidate(_url_key(actor.actor_id))
        logger.debug(f"Invalidated actor {identifier}")

    def invalidate_url(self, url: str) -> None:
        actor = self.cache.peek(_url_key(url))
        self.cache.invalidate(_url_key(url))
        if actor is not None:
            self.cache.invalidate(_identifier_key(actor.identifier))

    def invalidate_inbox(self, inbox_url: str) -> int:
        """Forget every actor delivered to through an inbox (e.g. after 410 Gone)."""
        removed = self.cache.invalidate_actor(
            lambda a: inbox_url in (a.inbox_url, a.shared_inbox_url)
        )
        if removed:
            logger.info(f"Invalidated {removed} cached actor entries for {inbox_url}")
        return removed

    async def _coalesce(self, key: str,
                        factory: Callable[[], Awaitable[RemoteActor]]) -> RemoteActor:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda t: self._finished(key, t))
        # A cancelled caller must not cancel the lookup others are waiting on
        return await asyncio.shield(task)

    def _finished(self, key: str, task: asyncio.Future):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved even if every waiter went away
            task.exception()

    def _discovery_url(self, identifier: RemoteCalendarIdentifier) -> str:
        scheme = "https"
        if self.guard.allow_insecure_localhost and identifier.host in LOCALHOST_NAMES:
            scheme = "http"
        return f"{scheme}://{identifier.domain}/.well-known/webfinger"

    async def _get(self, url: str, accept: str, params: Dict[str, str] = None) -> httpx.Response:
        await self.guard.ensure_safe(url)
        host = urlsplit(url).netloc
        try:
            return await self.client.get(
                url,
                params=params,
                headers={"Accept": accept},
                timeout=self.timeout,
            )
        except httpx.TransportError as e:
            logger.warning(f"Remote domain {host} unreachable: {type(e).__name__}")
            raise RemoteDomainUnreachableError(f"Cannot connect to {host}") from e
        except httpx.RequestError as e:
            logger.warning(f"Request to {host} failed: {type(e).__name__}")
            raise RemoteProfileFetchError() from e

    async def _discover(self, identifier: RemoteCalendarIdentifier) -> RemoteActor:
        logger.info(f"Resolving remote calendar {identifier}")
        response = await self._get(
            self._discovery_url(identifier),
            accept=JRD_ACCEPT,
            params={"resource": identifier.acct},
        )

        if response.status_code in GONE_STATUSES:
            raise RemoteCalendarNotFoundError(f"Remote calendar {identifier} not found")
        if not response.is_success:
            raise RemoteProfileFetchError(
                f"Identity lookup for {identifier} failed with HTTP {response.status_code}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteProfileFetchError(f"Unreadable identity document for {identifier}") from e

        actor_url = _self_link(data)
        if actor_url is None:
            raise ActivityPubNotSupportedError()

        actor = await self._fetch_actor(actor_url, identifier)
        self._store(actor)
        return actor

    async def _fetch_and_store(self, url: str) -> RemoteActor:
        actor = await self._fetch_actor(url)
        self._store(actor)
        return actor

    def _store(self, actor: RemoteActor):
        # No await between the two writes: both keys land or neither does
        self.cache.put(_identifier_key(actor.identifier), actor)
        self.cache.put(_url_key(actor.actor_id), actor)
        logger.info(f"Resolved {actor.identifier} -> {actor.actor_id}")

    async def _fetch_actor(self, url: str,
                           identifier: RemoteCalendarIdentifier = None) -> RemoteActor:
        response = await self._get(url, accept=ACTOR_ACCEPT)

        if response.status_code in GONE_STATUSES:
            raise RemoteCalendarNotFoundError()
        if not response.is_success:
            raise RemoteProfileFetchError(
                f"Actor fetch failed with HTTP {response.status_code}"
            )

        content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type not in ACTIVITY_CONTENT_TYPES:
            raise ActivityPubNotSupportedError()

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteProfileFetchError() from e
        if not isinstance(data, dict):
            raise RemoteProfileFetchError()

        inbox = data.get("inbox")
        outbox = data.get("outbox")
        public_key = data.get("publicKey")
        if isinstance(public_key, list) and public_key:
            public_key = public_key[0]
        if not isinstance(public_key, dict):
            public_key = {}
        public_key_pem = public_key.get("publicKeyPem")

        if not (isinstance(inbox, str) and inbox
                and isinstance(outbox, str) and outbox
                and isinstance(public_key_pem, str) and public_key_pem):
            raise ActivityPubNotSupportedError(
                "Remote actor is missing an inbox, outbox or public key"
            )

        actor_id = self._claimed_id(data, url)
        key_id = self._key_id(public_key, actor_id)
        self.guard.check_url(inbox)

        if identifier is None:
            username = data.get("preferredUsername")
            try:
                identifier = RemoteCalendarIdentifier.parse(
                    f"{username}@{urlsplit(actor_id).netloc}"
                )
            except InvalidRemoteCalendarIdentifierError as e:
                raise RemoteProfileFetchError("Remote actor has no usable username") from e

        endpoints = data.get("endpoints")
        shared_inbox = endpoints.get("sharedInbox") if isinstance(endpoints, dict) else None

        return RemoteActor(
            identifier=identifier,
            actor_id=actor_id,
            inbox_url=inbox,
            outbox_url=outbox,
            public_key=public_key_pem,
            key_id=key_id,
            shared_inbox_url=shared_inbox if isinstance(shared_inbox, str) else None,
            supports_activitypub=True,
            resolved_at=self.cache.clock(),
        )

    @staticmethod
    def _claimed_id(data: Dict[str, Any], url: str) -> str:
        """
        The document's actor id, which must be the URL it was fetched from.

        Raises:
            RemoteProfileFetchError: The document claims another actor's id
        """
        claimed = data.get("id")
        if claimed is None:
            return url
        if not isinstance(claimed, str) or normalize_actor_url(claimed) != normalize_actor_url(url):
            logger.warning(f"Actor document at {url} claims id {claimed!r}")
            raise RemoteProfileFetchError("Actor document id does not match its URL")
        return claimed

    @staticmethod
    def _key_id(public_key: Dict[str, Any], actor_id: str) -> str:
        """
        The public key id, checked to belong to the actor.

        Raises:
            RemoteProfileFetchError: The key is owned by, or hosted with, someone else
        """
        owner = public_key.get("owner")
        if owner is not None and (
                not isinstance(owner, str)
                or normalize_actor_url(owner) != normalize_actor_url(actor_id)):
            raise RemoteProfileFetchError("Actor public key has another owner")

        key_id = public_key.get("id")
        if key_id is None:
            return f"{actor_id}#main-key"
        if not isinstance(key_id, str) or _origin(key_id) != _origin(actor_id):
            raise RemoteProfileFetchError("Actor public key is hosted elsewhere")
        return key_id
