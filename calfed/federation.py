# calfed/federation.py
"""
Federation facade.

Wires the resolver, follow state machine, event sharing, inbox and outbox
around one shared HTTP client and exposes the operations the calendar
application calls.

Usage:
    config = FederationConfig(domain="events.example.org")
    async with Federation(config, store_dir="./federation") as federation:
        federation.add_calendar("main")
        follow = await federation.initiate_follow("main", "alice@remote.example")

        # from the web layer
        result = await federation.receive(body, headers, path="/calendars/main/inbox")
"""

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from .activitypub.activity import Activity
from .activitypub.actor import CalendarActor, CalendarActorStore, FederationUrls, RemoteActor
from .activitypub.event import FederatedEvent
from .activitypub.resolver import ActorResolver
from .activitypub.signatures import HttpSignatureVerifier, HttpSigner
from .cache import ActorCache
from .config import FederationConfig
from .errors import CalendarNotFoundError
from .follow import FollowManager, FollowRelationship, FollowState, FollowStore, RepostPolicy
from .identifier import RemoteCalendarIdentifier
from .inbox import ActivityLedger, InboxDispatcher, InboxResult
from .netguard import DnsLookup, UrlGuard
from .notify import NotificationSink
from .outbox import DeliveryAttempt, OutboxDispatcher, OutboxQueue
from .sharing import EventShareHandler, EventSink

logger = logging.getLogger(__name__)


class Federation:
    """
    One server's federation core.

    Args:
        config: Federation settings
        client: HTTP client to use (one is created and owned otherwise)
        store_dir: Directory for persistent state (in memory if None)
        clock: Time source for caches, retries and signatures
        notifier: Told about every state transition
        event_sink: Where inbound federated events are stored
        remote_domain_is_blocked: Domain block policy
        calendar_exists: Whether a local calendar exists (defaults to
            calendars registered with add_calendar)
        signer: Outbound request signer
        verifier: Inbound signature verifier
        dns_lookup: Async host resolver used when config.check_dns is set
        run_worker: Start the delivery worker on enter
    """

    def __init__(
        self,
        config: FederationConfig,
        client: httpx.AsyncClient = None,
        store_dir: Path | str = None,
        clock: Callable[[], float] = time.time,
        notifier: NotificationSink = None,
        event_sink: EventSink = None,
        remote_domain_is_blocked: Callable[[str], bool] = None,
        calendar_exists: Callable[[str], bool] = None,
        signer=None,
        verifier=None,
        dns_lookup: DnsLookup = None,
        run_worker: bool = True,
    ):
        self.config = config
        self.urls = FederationUrls(config.base_url)
        self.store_dir = Path(store_dir) if store_dir else None
        self.run_worker = run_worker

        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            headers={"User-Agent": config.user_agent},
            follow_redirects=False,
        )

        self.guard = UrlGuard(
            allow_insecure_localhost=config.allow_insecure_localhost,
            check_dns=config.check_dns,
            dns_lookup=dns_lookup,
        )
        self.actors = CalendarActorStore(self.urls, self._subdir("actors"))
        self.cache = ActorCache(
            ttl=config.actor_cache_ttl,
            max_size=config.actor_cache_max_size,
            clock=clock,
            cache_dir=self._subdir("cache"),
        )
        self.resolver = ActorResolver(self.client, self.cache, self.guard, config.resolve_timeout)

        calendar_exists = calendar_exists or self.has_calendar
        self.outbox = OutboxDispatcher(
            self.client,
            signer or HttpSigner(self.actors),
            OutboxQueue(self._subdir("outbox")),
            retry_base_delay=config.retry_base_delay,
            retry_max_delay=config.retry_max_delay,
            max_attempts=config.max_delivery_attempts,
            workers=config.delivery_workers,
            timeout=config.delivery_timeout,
            guard=self.guard,
            clock=clock,
            notifier=notifier,
            on_gone=self.resolver.invalidate_inbox,
        )
        self.follows = FollowManager(
            self.urls,
            self.resolver,
            self.outbox,
            FollowStore(self._subdir("follows")),
            calendar_exists=calendar_exists,
            remote_domain_is_blocked=remote_domain_is_blocked or (lambda domain: False),
            notifier=notifier,
            clock=clock,
        )
        self.outbox.on_failure = self.follows.handle_delivery_failure
        self.sharing = EventShareHandler(
            self.urls,
            self.follows.store,
            self.outbox,
            sink=event_sink,
            calendar_exists=calendar_exists,
            notifier=notifier,
            clock=clock,
        )
        self.inbox = InboxDispatcher(
            self.resolver,
            self.follows,
            self.sharing,
            verifier=verifier or HttpSignatureVerifier(config.signature_max_age, clock),
            ledger=ActivityLedger(self._subdir("ledger"), clock),
        )

    def _subdir(self, name: str) -> Optional[Path]:
        return self.store_dir / name if self.store_dir else None

    async def __aenter__(self) -> "Federation":
        if self.run_worker:
            self.outbox.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Stop delivering and release the HTTP client."""
        await self.outbox.stop()
        if self._owns_client:
            await self.client.aclose()
        pending = len(self.outbox.queue)
        if pending:
            logger.info(f"Closed with {pending} deliveries still queued")

    # Local calendars

    def add_calendar(self, calendar_id: str, display_name: str = None) -> CalendarActor:
        """Register a local calendar for federation, generating its keys."""
        actor = self.actors.get_or_create(calendar_id, display_name)
        logger.debug(f"Calendar {calendar_id} federates as {actor.id}")
        return actor

    def has_calendar(self, calendar_id: str) -> bool:
        return calendar_id in self.actors

    def actor_document(self, calendar_id: str) -> Dict[str, Any]:
        """
        The ActivityPub actor document served at a calendar's actor URL.

        Raises:
            CalendarNotFoundError: Unknown calendar
        """
        actor = self.actors.get(calendar_id)
        if actor is None:
            raise CalendarNotFoundError()
        return actor.to_activitypub()

    def webfinger(self, resource: str) -> Dict[str, Any]:
        """
        Answer a WebFinger query for ``acct:id@domain`` or an actor URL.

        Raises:
            CalendarNotFoundError: The resource names no local calendar
        """
        calendar_id = self.urls.calendar_id_for(resource)
        actor = self.actors.get(calendar_id) if calendar_id is not None else None
        if actor is None:
            raise CalendarNotFoundError()
        return actor.webfinger()

    # Remote calendars

    async def resolve(self, identifier: RemoteCalendarIdentifier | str) -> RemoteActor:
        return await self.resolver.resolve(identifier)

    # Follows

    async def initiate_follow(self, calendar_id: str,
                              identifier: RemoteCalendarIdentifier | str,
                              repost_policy: RepostPolicy | str = RepostPolicy.MANUAL,
                              ) -> FollowRelationship:
        return await self.follows.initiate_follow(calendar_id, identifier, repost_policy)

    async def undo_follow(self, relationship_id: str) -> FollowRelationship:
        return await self.follows.undo_follow(relationship_id)

    def update_repost_policy(self, relationship_id: str,
                             policy: RepostPolicy | str) -> FollowRelationship:
        return self.follows.update_repost_policy(relationship_id, policy)

    def get_follow(self, relationship_id: str) -> FollowRelationship:
        return self.follows.get(relationship_id)

    def following(self, calendar_id: str, state: FollowState = None) -> List[FollowRelationship]:
        return self.follows.following(calendar_id, state)

    def followers(self, calendar_id: str, state: FollowState = None) -> List[FollowRelationship]:
        return self.follows.followers(calendar_id, state)

    # Events

    async def share_event(self, calendar_id: str,
                          event_url: str) -> Tuple[Activity, List[DeliveryAttempt]]:
        return await self.sharing.share_event(calendar_id, event_url)

    async def publish_event(self, calendar_id: str, event: FederatedEvent,
                            update: bool = False) -> Tuple[Activity, List[DeliveryAttempt]]:
        return await self.sharing.publish_event(calendar_id, event, update)

    # Inbox / outbox

    async def receive(self, raw_body: bytes, headers: Mapping[str, str], *,
                      method: str = "POST", path: str = "/inbox") -> InboxResult:
        return await self.inbox.receive(raw_body, headers, method=method, path=path)

    async def enqueue(self, activity: Activity, target_inbox_url: str) -> DeliveryAttempt:
        return await self.outbox.enqueue(activity, target_inbox_url)

    async def deliver_due(self) -> int:
        return await self.outbox.deliver_due()

    async def flush(self) -> int:
        """Deliver everything currently due, including follow-up activities."""
        return await self.outbox.flush()
