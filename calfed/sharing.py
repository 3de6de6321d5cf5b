# calfed/sharing.py
"""
Federated event sharing.

Inbound, remote calendars tell us about their events:
- Create / Update / Delete of events they own
- Announce of events they repost (and Undo of an Announce)

Outbound, our calendars publish their own events (Create) and repost
others' (Announce) to their followers. A followed calendar's events can
be reposted automatically, depending on the follow's repost policy:

    manual    nothing
    original  events the followed calendar created
    all       created and announced events
"""

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

from .activitypub.activity import Activity
from .activitypub.actor import FederationUrls, RemoteActor, normalize_actor_url
from .activitypub.event import FederatedEvent, validate_event_url
from .errors import CalendarNotFoundError, InvalidActivityError
from .follow import FollowDirection, FollowState, FollowStore
from .notify import Notice, NotificationSink
from .outbox import DeliveryAttempt, OutboxDispatcher

logger = logging.getLogger(__name__)


def _same_host(url: str, actor: RemoteActor) -> bool:
    host = urlsplit(normalize_actor_url(url)).netloc
    return host == urlsplit(normalize_actor_url(actor.actor_id)).netloc


@dataclass
class Announcement:
    """A remote actor's repost of an event."""
    activity_id: str
    actor_id: str
    event_url: str
    received_at: float = field(default_factory=time.time)


class EventSink:
    """
    Where federated events end up.

    The default keeps everything in memory; the calendar application
    subclasses it to write into its own event storage.
    """

    def __init__(self):
        self.events: Dict[str, FederatedEvent] = {}
        self.announcements: Dict[str, Announcement] = {}
        self.reposts: Set[Tuple[str, str]] = set()

    def get_event(self, event_id: str) -> Optional[FederatedEvent]:
        return self.events.get(event_id)

    def store_event(self, event: FederatedEvent) -> None:
        self.events[event.id] = event

    def remove_event(self, event_id: str) -> bool:
        return self.events.pop(event_id, None) is not None

    def record_announcement(self, announcement: Announcement) -> None:
        self.announcements[announcement.activity_id] = announcement

    def remove_announcement(self, activity_id: str) -> Optional[Announcement]:
        return self.announcements.pop(activity_id, None)

    def record_repost(self, calendar_id: str, event_url: str) -> bool:
        """Remember a local repost. Returns False if it was already reposted."""
        key = (calendar_id, event_url)
        if key in self.reposts:
            return False
        self.reposts.add(key)
        return True

    def has_repost(self, calendar_id: str, event_url: str) -> bool:
        return (calendar_id, event_url) in self.reposts


class EventShareHandler:
    """
    Handles event activities in both directions.

    Args:
        urls: Local URL scheme
        follows: Follow relationships (for fan-out and repost policies)
        outbox: Delivery queue
        sink: Event storage
        calendar_exists: Whether a local calendar id exists
        notifier: Told about stored and reposted events
        clock: Time source
    """

    def __init__(
        self,
        urls: FederationUrls,
        follows: FollowStore,
        outbox: OutboxDispatcher,
        sink: EventSink = None,
        calendar_exists: Callable[[str], bool] = None,
        notifier: NotificationSink = None,
        clock: Callable[[], float] = time.time,
    ):
        self.urls = urls
        self.follows = follows
        self.outbox = outbox
        self.sink = sink if sink is not None else EventSink()
        self.calendar_exists = calendar_exists or (lambda _: True)
        self.notifier = notifier or NotificationSink()
        self.clock = clock

    # Inbound

    def _owned_event(self, activity: Activity, sender: RemoteActor) -> FederatedEvent:
        event = activity.obj
        if not isinstance(event, FederatedEvent):
            raise InvalidActivityError(f"{activity.type.value} must carry an inline Event")
        validate_event_url(event.id)
        if event.attributed_to is not None and not sender.is_same_actor(event.attributed_to):
            raise InvalidActivityError("Event is not attributed to the sending actor")
        return event

    async def receive_create(self, activity: Activity, sender: RemoteActor) -> FederatedEvent:
        """
        Store a remote calendar's new event, and repost it where followers
        of that calendar asked for originals.

        Raises:
            InvalidActivityError: No inline event, or the event belongs to someone else
            InvalidSharedEventUrlError: The event id is not an event URL
        """
        event = self._owned_event(activity, sender)
        if self.sink.get_event(event.id) is None:
            self.sink.store_event(event)
            logger.info(f"Stored event {event.id} from {sender.identifier}")
            self.notifier.notify(Notice("event.created", event.id,
                                        {"remote": str(sender.identifier)}, self.clock()))
        await self._auto_repost(sender, event.id, original=True)
        return event

    async def receive_update(self, activity: Activity, sender: RemoteActor) -> Optional[FederatedEvent]:
        """Replace a stored remote event. Updates for unknown events are ignored."""
        event = self._owned_event(activity, sender)
        existing = self.sink.get_event(event.id)
        if existing is None:
            logger.debug(f"Ignoring update of unknown event {event.id}")
            return None
        if existing.attributed_to and not sender.is_same_actor(existing.attributed_to):
            raise InvalidActivityError("Event is not attributed to the sending actor")

        self.sink.store_event(event)
        logger.info(f"Updated event {event.id} from {sender.identifier}")
        self.notifier.notify(Notice("event.updated", event.id,
                                    {"remote": str(sender.identifier)}, self.clock()))
        return event

    async def receive_delete(self, activity: Activity, sender: RemoteActor) -> bool:
        """Remove a stored remote event. Returns whether anything was removed."""
        event_id = activity.object_id
        existing = self.sink.get_event(event_id)
        if existing is None:
            return False
        if existing.attributed_to and not sender.is_same_actor(existing.attributed_to):
            raise InvalidActivityError("Event is not attributed to the sending actor")

        self.sink.remove_event(event_id)
        logger.info(f"Deleted event {event_id} from {sender.identifier}")
        self.notifier.notify(Notice("event.deleted", event_id,
                                    {"remote": str(sender.identifier)}, self.clock()))
        return True

    async def receive_announce(self, activity: Activity, sender: RemoteActor) -> Announcement:
        """
        Record a remote repost.

        Raises:
            InvalidSharedEventUrlError: The shared object is not an event URL
        """
        event_url = validate_event_url(activity.object_id)
        event = activity.obj
        if isinstance(event, FederatedEvent) and self.sink.get_event(event_url) is None:
            # Only the event's own author can vouch for its inline copy
            if (event.attributed_to is not None and sender.is_same_actor(event.attributed_to)
                    and _same_host(event_url, sender)):
                self.sink.store_event(event)
            else:
                logger.debug(f"Not storing inline copy of {event_url} shared by {sender.identifier}")

        announcement = Announcement(
            activity_id=activity.id,
            actor_id=sender.actor_id,
            event_url=event_url,
            received_at=self.clock(),
        )
        self.sink.record_announcement(announcement)
        logger.info(f"{sender.identifier} shared {event_url}")
        self.notifier.notify(Notice("event.shared", event_url,
                                    {"remote": str(sender.identifier)}, self.clock()))
        await self._auto_repost(sender, event_url, original=False)
        return announcement

    async def receive_undo_announce(self, activity: Activity,
                                    sender: RemoteActor) -> Optional[Announcement]:
        """Forget a remote repost. Unknown reposts are ignored."""
        announcement = self.sink.announcements.get(activity.object_id)
        if announcement is None:
            return None
        if normalize_actor_url(announcement.actor_id) != normalize_actor_url(sender.actor_id):
            raise InvalidActivityError("Only the announcing actor can undo an announcement")

        self.sink.remove_announcement(activity.object_id)
        logger.info(f"{sender.identifier} unshared {announcement.event_url}")
        self.notifier.notify(Notice("event.unshared", announcement.event_url,
                                    {"remote": str(sender.identifier)}, self.clock()))
        return announcement

    def is_announcement(self, activity_id: str) -> bool:
        return activity_id in self.sink.announcements

    async def _auto_repost(self, sender: RemoteActor, event_url: str, original: bool):
        follows = self.follows.list(
            direction=FollowDirection.FOLLOWING,
            state=FollowState.ACCEPTED,
            actor_id=sender.actor_id,
        )
        for relationship in follows:
            policy = relationship.repost_policy
            wanted = policy.reposts_originals if original else policy.reposts_shares
            if not wanted:
                continue
            calendar_id = relationship.local_calendar_id
            if self.sink.has_repost(calendar_id, event_url):
                continue
            logger.info(f"Auto-reposting {event_url} to calendar {calendar_id} ({policy.value})")
            await self.share_event(calendar_id, event_url)

    # Outbound

    def follower_inboxes(self, calendar_id: str) -> List[str]:
        """Distinct inboxes of a calendar's accepted followers."""
        inboxes = []
        for relationship in self.follows.list(calendar_id, FollowDirection.FOLLOWER,
                                              FollowState.ACCEPTED):
            inbox = relationship.remote_actor.delivery_inbox
            if inbox not in inboxes:
                inboxes.append(inbox)
        return inboxes

    async def _fan_out(self, activity: Activity, calendar_id: str) -> List[DeliveryAttempt]:
        return [
            await self.outbox.enqueue(activity, inbox)
            for inbox in self.follower_inboxes(calendar_id)
        ]

    async def share_event(self, calendar_id: str,
                          event_url: str) -> Tuple[Activity, List[DeliveryAttempt]]:
        """
        Repost an event to a calendar's followers.

        Raises:
            CalendarNotFoundError: No such local calendar
            InvalidSharedEventUrlError: Not an event URL
        """
        if not self.calendar_exists(calendar_id):
            raise CalendarNotFoundError()
        validate_event_url(event_url)

        announce = Activity.announce(self.urls.new_activity_id(),
                                     self.urls.actor(calendar_id), event_url)
        attempts = await self._fan_out(announce, calendar_id)
        self.sink.record_repost(calendar_id, event_url)
        self.notifier.notify(Notice("event.reposted", event_url,
                                    {"calendar": calendar_id, "deliveries": len(attempts)},
                                    self.clock()))
        return announce, attempts

    async def publish_event(self, calendar_id: str, event: FederatedEvent,
                            update: bool = False) -> Tuple[Activity, List[DeliveryAttempt]]:
        """
        Send one of our calendar's events to its followers.

        Args:
            calendar_id: Owning local calendar
            event: The event, attributed to the calendar if not already
            update: Send an Update instead of a Create

        Raises:
            CalendarNotFoundError: No such local calendar
            InvalidActivityError: The event is attributed to another actor
        """
        if not self.calendar_exists(calendar_id):
            raise CalendarNotFoundError()
        validate_event_url(event.id)

        actor = self.urls.actor(calendar_id)
        if event.attributed_to is None:
            event = dataclasses.replace(event, attributed_to=actor)
        elif normalize_actor_url(event.attributed_to) != normalize_actor_url(actor):
            raise InvalidActivityError("Event is attributed to another calendar")

        build = Activity.update if update else Activity.create
        activity = build(self.urls.new_activity_id(), actor, event)
        attempts = await self._fan_out(activity, calendar_id)
        logger.info(f"Published {activity.type.value} for {event.id} to {len(attempts)} inboxes")
        return activity, attempts
