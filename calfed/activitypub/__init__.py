# calfed/activitypub/__init__.py
"""
ActivityPub layer for calendar federation.

Core concepts:
- FederatedEvent: the wire form of a calendar event
- Activity: Follow, Accept, Reject, Create, Update, Delete, Announce, Undo
- CalendarActor / RemoteActor: our calendars and theirs
- Signatures: HTTP Signatures on inbox deliveries
- ActorResolver: WebFinger discovery of remote calendars
"""

from .event import EventContent, FederatedEvent, validate_event_url
from .activity import AS_CONTEXT, AS_PUBLIC, Activity, ActivityType
from .actor import (
    ACTIVITY_JSON,
    CalendarActor,
    CalendarActorStore,
    FederationUrls,
    RemoteActor,
    generate_keypair,
    normalize_actor_url,
)
from .signatures import HttpSignatureVerifier, HttpSigner, SignedRequest, sign_request
from .resolver import ActorResolver

__all__ = [
    "EventContent",
    "FederatedEvent",
    "validate_event_url",
    "AS_CONTEXT",
    "AS_PUBLIC",
    "Activity",
    "ActivityType",
    "ACTIVITY_JSON",
    "CalendarActor",
    "CalendarActorStore",
    "FederationUrls",
    "RemoteActor",
    "generate_keypair",
    "normalize_actor_url",
    "HttpSignatureVerifier",
    "HttpSigner",
    "SignedRequest",
    "sign_request",
    "ActorResolver",
]
