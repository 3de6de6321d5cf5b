# calfed - Calendar federation over ActivityPub
#
# Lets calendars on different servers follow each other and share events.
#
# Core concepts:
# - RemoteCalendarIdentifier: a user@domain handle for a calendar elsewhere
# - ActorResolver: WebFinger + actor document lookup, cached
# - FollowManager: the follow/accept/reject/undo lifecycle
# - InboxDispatcher: verifies and routes signed inbound activities
# - OutboxDispatcher: delivers outbound activities with retry
# - Federation: all of the above wired around one HTTP client

__version__ = "0.1.0"

from .errors import FederationError
from .config import FederationConfig
from .identifier import RemoteCalendarIdentifier
from .activitypub import (
    Activity,
    ActivityType,
    ActorResolver,
    CalendarActor,
    FederatedEvent,
    RemoteActor,
)
from .cache import ActorCache
from .follow import FollowDirection, FollowManager, FollowRelationship, FollowState, RepostPolicy
from .outbox import DeliveryAttempt, OutboxDispatcher, OutboxQueue
from .sharing import EventShareHandler, EventSink
from .inbox import ActivityLedger, InboxDispatcher, InboxResult
from .notify import CollectingNotificationSink, LoggingNotificationSink, Notice, NotificationSink
from .federation import Federation

__all__ = [
    "FederationError",
    "FederationConfig",
    "RemoteCalendarIdentifier",
    "Activity",
    "ActivityType",
    "ActorResolver",
    "CalendarActor",
    "FederatedEvent",
    "RemoteActor",
    "ActorCache",
    "FollowDirection",
    "FollowManager",
    "FollowRelationship",
    "FollowState",
    "RepostPolicy",
    "DeliveryAttempt",
    "OutboxDispatcher",
    "OutboxQueue",
    "EventShareHandler",
    "EventSink",
    "ActivityLedger",
    "InboxDispatcher",
    "InboxResult",
    "Notice",
    "NotificationSink",
    "LoggingNotificationSink",
    "CollectingNotificationSink",
    "Federation",
]
