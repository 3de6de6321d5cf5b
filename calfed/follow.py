# calfed/follow.py
"""
Follow relationships between local and remote calendars.

A relationship is directional:
- following: a local calendar follows a remote one (we sent the Follow)
- follower: a remote calendar follows a local one (we received it)

Lifecycle:

    pending --Accept--> accepted --Undo--> undone
       \\
        --Reject--> rejected

rejected and undone are terminal. At most one non-terminal relationship
exists per (local calendar, remote actor, direction).
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .activitypub.activity import Activity, ActivityType
from .activitypub.actor import FederationUrls, RemoteActor, normalize_actor_url
from .activitypub.resolver import ActorResolver
from .errors import (
    CalendarNotFoundError,
    DuplicateFollowError,
    FollowRelationshipNotFoundError,
    InvalidFollowTransitionError,
    InvalidRepostPolicyError,
    SelfFollowError,
)
from .identifier import RemoteCalendarIdentifier
from .notify import Notice, NotificationSink
from .outbox import DeliveryAttempt, OutboxDispatcher

logger = logging.getLogger(__name__)


class FollowState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNDONE = "undone"

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self]


TRANSITIONS = {
    FollowState.PENDING: {FollowState.ACCEPTED, FollowState.REJECTED},
    FollowState.ACCEPTED: {FollowState.UNDONE},
    FollowState.REJECTED: set(),
    FollowState.UNDONE: set(),
}


class FollowDirection(str, Enum):
    FOLLOWING = "following"
    FOLLOWER = "follower"


class RepostPolicy(str, Enum):
    """What a followed calendar's events are automatically reposted as."""
    MANUAL = "manual"       # nothing is reposted automatically
    ORIGINAL = "original"   # events the calendar created
    ALL = "all"             # created and shared events

    @classmethod
    def parse(cls, value: "RepostPolicy | str") -> "RepostPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidRepostPolicyError()

    @property
    def reposts_originals(self) -> bool:
        return self in (RepostPolicy.ORIGINAL, RepostPolicy.ALL)

    @property
    def reposts_shares(self) -> bool:
        return self is RepostPolicy.ALL


@dataclass
class FollowRelationship:
    """
    A follow between one local calendar and one remote actor.

    Attributes:
        id: Local relationship id
        local_calendar_id: The local calendar
        remote_actor: The remote side, as resolved
        direction: following (outbound) or follower (inbound)
        state: Lifecycle state
        follow_activity_id: Id of the Follow activity that started it
        target: The Follow's object (acct: URI or actor URL)
        created_at: When the relationship was created
        responded_at: When it was accepted or rejected
        response_activity_id: Id of the Accept or Reject
        ended_at: When it was undone
        repost_policy: Auto-repost policy (outbound follows only)
        last_error: Why it failed, if it did
    """
    id: str
    local_calendar_id: str
    remote_actor: RemoteActor
    direction: FollowDirection
    state: FollowState
    follow_activity_id: str
    target: str
    created_at: float
    responded_at: Optional[float] = None
    response_activity_id: Optional[str] = None
    ended_at: Optional[float] = None
    repost_policy: RepostPolicy = RepostPolicy.MANUAL
    last_error: Optional[str] = None

    @property
    def active(self) -> bool:
        return not self.state.terminal

    def can_transition(self, new_state: FollowState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def transition(self, new_state: FollowState, at: float,
                   activity_id: str = None) -> None:
        """
        Move to a new state.

        Raises:
            InvalidFollowTransitionError: If the lifecycle does not allow it
        """
        if not self.can_transition(new_state):
            raise InvalidFollowTransitionError(
                f"Cannot move follow {self.id} from {self.state.value} to {new_state.value}"
            )
        if self.state is FollowState.PENDING:
            self.responded_at = at
            self.response_activity_id = activity_id
        else:
            self.ended_at = at
        self.state = new_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "local_calendar_id": self.local_calendar_id,
            "remote_actor": self.remote_actor.to_dict(),
            "direction": self.direction.value,
            "state": self.state.value,
            "follow_activity_id": self.follow_activity_id,
            "target": self.target,
            "created_at": self.created_at,
            "responded_at": self.responded_at,
            "response_activity_id": self.response_activity_id,
            "ended_at": self.ended_at,
            "repost_policy": self.repost_policy.value,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FollowRelationship":
        return cls(
            id=data["id"],
            local_calendar_id=data["local_calendar_id"],
            remote_actor=RemoteActor.from_dict(data["remote_actor"]),
            direction=FollowDirection(data["direction"]),
            state=FollowState(data["state"]),
            follow_activity_id=data["follow_activity_id"],
            target=data["target"],
            created_at=data["created_at"],
            responded_at=data.get("responded_at"),
            response_activity_id=data.get("response_activity_id"),
            ended_at=data.get("ended_at"),
            repost_policy=RepostPolicy(data.get("repost_policy", "manual")),
            last_error=data.get("last_error"),
        )


class FollowStore:
    """
    Storage for follow relationships.

    In memory by default; with a store_dir:

        store_dir/
            follows.json
    """

    def __init__(self, store_dir: Path | str = None):
        self.store_dir = Path(store_dir) if store_dir else None
        self._follows: Dict[str, FollowRelationship] = {}
        if self.store_dir:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _index_path(self) -> Path:
        return self.store_dir / "follows.json"

    def _load(self):
        index_path = self._index_path()
        if index_path.exists():
            with open(index_path) as f:
                data = json.load(f)
            self._follows = {
                raw["id"]: FollowRelationship.from_dict(raw)
                for raw in data.get("follows", [])
            }

    def _save(self):
        if not self.store_dir:
            return
        data = {
            "version": "1.0",
            "follows": [r.to_dict() for r in self._follows.values()],
        }
        with open(self._index_path(), "w") as f:
            json.dump(data, f, indent=2)

    def save(self, relationship: FollowRelationship) -> None:
        """Insert or update a relationship."""
        self._follows[relationship.id] = relationship
        self._save()

    def get(self, relationship_id: str) -> Optional[FollowRelationship]:
        return self._follows.get(relationship_id)

    def by_follow_activity(self, activity_id: str) -> Optional[FollowRelationship]:
        for relationship in self._follows.values():
            if relationship.follow_activity_id == activity_id:
                return relationship
        return None

    def by_response_activity(self, activity_id: str) -> Optional[FollowRelationship]:
        for relationship in self._follows.values():
            if relationship.response_activity_id == activity_id:
                return relationship
        return None

    def find_active(self, calendar_id: str, actor_id: str,
                    direction: FollowDirection) -> Optional[FollowRelationship]:
        """The non-terminal relationship for a (calendar, actor, direction), if any."""
        actor = normalize_actor_url(actor_id)
        for relationship in self._follows.values():
            if (relationship.active
                    and relationship.direction is direction
                    and relationship.local_calendar_id == calendar_id
                    and normalize_actor_url(relationship.remote_actor.actor_id) == actor):
                return relationship
        return None

    def list(self, calendar_id: str = None, direction: FollowDirection = None,
             state: FollowState = None, actor_id: str = None) -> List[FollowRelationship]:
        """Relationships matching every given filter, oldest first."""
        actor = normalize_actor_url(actor_id) if actor_id else None
        results = [
            r for r in self._follows.values()
            if (calendar_id is None or r.local_calendar_id == calendar_id)
            and (direction is None or r.direction is direction)
            and (state is None or r.state is state)
            and (actor is None or normalize_actor_url(r.remote_actor.actor_id) == actor)
        ]
        return sorted(results, key=lambda r: r.created_at)

    def __len__(self) -> int:
        return len(self._follows)


def _always(_: str) -> bool:
    return True


def _never(_: str) -> bool:
    return False


class FollowManager:
    """
    Drives follow relationships through their lifecycle.

    Outbound operations resolve the remote calendar and queue activities
    through the outbox; inbound operations are called by the inbox with the
    verified sender.

    Args:
        urls: Local URL scheme
        resolver: Remote actor resolver
        outbox: Delivery queue for outgoing activities
        store: Relationship storage
        calendar_exists: Whether a local calendar id exists
        remote_domain_is_blocked: Domain block policy
        notifier: Told about every state transition
        clock: Time source
    """

    def __init__(
        self,
        urls: FederationUrls,
        resolver: ActorResolver,
        outbox: OutboxDispatcher,
        store: FollowStore = None,
        calendar_exists: Callable[[str], bool] = _always,
        remote_domain_is_blocked: Callable[[str], bool] = _never,
        notifier: NotificationSink = None,
        clock: Callable[[], float] = time.time,
    ):
        self.urls = urls
        self.resolver = resolver
        self.outbox = outbox
        self.store = store if store is not None else FollowStore()
        self.calendar_exists = calendar_exists
        self.remote_domain_is_blocked = remote_domain_is_blocked
        self.notifier = notifier or NotificationSink()
        self.clock = clock

    def _notify(self, kind: str, relationship: FollowRelationship, **details):
        details.setdefault("calendar", relationship.local_calendar_id)
        details.setdefault("remote", str(relationship.remote_actor.identifier))
        self.notifier.notify(Notice(kind, relationship.id, details, self.clock()))

    def _require_calendar(self, calendar_id: Optional[str]) -> str:
        if calendar_id is None or not self.calendar_exists(calendar_id):
            raise CalendarNotFoundError()
        return calendar_id

    def _names_calendar(self, identifier: RemoteCalendarIdentifier, calendar_id: str) -> bool:
        return (
            identifier.domain == self.urls.domain
            and identifier.local_part.casefold() == calendar_id.casefold()
        )

    # Outbound

    async def initiate_follow(self, calendar_id: str,
                              identifier: RemoteCalendarIdentifier | str,
                              repost_policy: RepostPolicy | str = RepostPolicy.MANUAL,
                              ) -> FollowRelationship:
        """
        Follow a remote calendar.

        Creates a pending relationship and queues a Follow for the remote
        inbox. Nothing is stored if resolution fails.

        Args:
            calendar_id: Local calendar doing the following
            identifier: Remote calendar handle (user@domain)
            repost_policy: manual, original or all

        Raises:
            InvalidRemoteCalendarIdentifierError: Malformed handle
            InvalidRepostPolicyError: Unknown policy
            CalendarNotFoundError: No such local calendar
            SelfFollowError: The handle names the calendar itself
            DuplicateFollowError: An active follow already exists
            RemoteError / RemoteCalendarNotFoundError: Resolution failed
        """
        if isinstance(identifier, str):
            identifier = RemoteCalendarIdentifier.parse(identifier)
        policy = RepostPolicy.parse(repost_policy)
        self._require_calendar(calendar_id)

        # Rejected before any network traffic
        if self._names_calendar(identifier, calendar_id):
            raise SelfFollowError()

        remote = await self.resolver.resolve(identifier)

        local_actor = self.urls.actor(calendar_id)
        if remote.is_same_actor(local_actor):
            raise SelfFollowError()

        if self.store.find_active(calendar_id, remote.actor_id, FollowDirection.FOLLOWING):
            raise DuplicateFollowError()

        follow = Activity.follow(self.urls.new_activity_id(), local_actor, identifier.acct)
        relationship = FollowRelationship(
            id=str(uuid.uuid4()),
            local_calendar_id=calendar_id,
            remote_actor=remote,
            direction=FollowDirection.FOLLOWING,
            state=FollowState.PENDING,
            follow_activity_id=follow.id,
            target=follow.object_id,
            created_at=self.clock(),
            repost_policy=policy,
        )

        await self.outbox.enqueue(follow, remote.inbox_url)
        self.store.save(relationship)
        logger.info(f"Calendar {calendar_id} is following {identifier} (pending)")
        self._notify("follow.requested", relationship)
        return relationship

    async def undo_follow(self, relationship_id: str) -> FollowRelationship:
        """
        Stop following a remote calendar.

        Raises:
            FollowRelationshipNotFoundError: Unknown relationship
            InvalidFollowTransitionError: Not an accepted outbound follow
        """
        relationship = self.get(relationship_id)
        if relationship.direction is not FollowDirection.FOLLOWING:
            raise InvalidFollowTransitionError("Only outbound follows can be undone locally")
        if not relationship.can_transition(FollowState.UNDONE):
            raise InvalidFollowTransitionError(
                f"Cannot undo a {relationship.state.value} follow"
            )

        local_actor = self.urls.actor(relationship.local_calendar_id)
        follow = Activity.follow(relationship.follow_activity_id, local_actor, relationship.target)
        undo = Activity.undo(self.urls.new_activity_id(), local_actor, follow)

        await self.outbox.enqueue(undo, relationship.remote_actor.inbox_url)
        relationship.transition(FollowState.UNDONE, self.clock(), undo.id)
        self.store.save(relationship)
        logger.info(
            f"Calendar {relationship.local_calendar_id} unfollowed "
            f"{relationship.remote_actor.identifier}"
        )
        self._notify("follow.undone", relationship)
        return relationship

    def update_repost_policy(self, relationship_id: str,
                             policy: RepostPolicy | str) -> FollowRelationship:
        """
        Change what is automatically reposted from a followed calendar.

        Raises:
            InvalidRepostPolicyError: Unknown policy
            FollowRelationshipNotFoundError: No active outbound follow with that id
        """
        policy = RepostPolicy.parse(policy)
        relationship = self.get(relationship_id)
        if relationship.direction is not FollowDirection.FOLLOWING or not relationship.active:
            raise FollowRelationshipNotFoundError()

        relationship.repost_policy = policy
        self.store.save(relationship)
        self._notify("follow.policy_changed", relationship, policy=policy.value)
        return relationship

    def handle_delivery_failure(self, attempt: DeliveryAttempt) -> Optional[FollowRelationship]:
        """
        React to an activity that could not be delivered.

        A Follow that can never be delivered will never be answered, so its
        pending relationship is rejected.
        """
        if attempt.activity_type != ActivityType.FOLLOW.value:
            return None

        relationship = self.store.by_follow_activity(attempt.activity_id)
        if relationship is None or relationship.state is not FollowState.PENDING:
            return None

        relationship.last_error = attempt.last_error
        relationship.transition(FollowState.REJECTED, self.clock())
        self.store.save(relationship)
        logger.warning(
            f"Follow of {relationship.remote_actor.identifier} by "
            f"{relationship.local_calendar_id} undeliverable: {attempt.last_error}"
        )
        self._notify("follow.failed", relationship, error=attempt.last_error)
        return relationship

    # Inbound

    async def receive_follow(self, activity: Activity,
                             sender: RemoteActor) -> Optional[FollowRelationship]:
        """
        Handle a remote calendar following one of ours.

        Follows are accepted automatically unless the sender's domain is
        blocked, in which case the Follow is dropped without an answer.

        Returns:
            The follower relationship, or None if the Follow was dropped

        Raises:
            CalendarNotFoundError: The Follow targets no local calendar
        """
        calendar_id = self._require_calendar(self.urls.calendar_id_for(activity.object_id))

        if self.remote_domain_is_blocked(sender.identifier.host):
            logger.warning(f"Dropped Follow from blocked domain {sender.identifier.host}")
            self.notifier.notify(Notice(
                "follow.blocked", activity.id,
                {"calendar": calendar_id, "remote": str(sender.identifier)},
                self.clock(),
            ))
            return None

        now = self.clock()
        local_actor = self.urls.actor(calendar_id)
        accept = Activity.accept(self.urls.new_activity_id(), local_actor, activity)

        relationship = self.store.find_active(calendar_id, sender.actor_id,
                                              FollowDirection.FOLLOWER)
        if relationship is None:
            relationship = FollowRelationship(
                id=str(uuid.uuid4()),
                local_calendar_id=calendar_id,
                remote_actor=sender,
                direction=FollowDirection.FOLLOWER,
                state=FollowState.PENDING,
                follow_activity_id=activity.id,
                target=activity.object_id,
                created_at=now,
            )
            relationship.transition(FollowState.ACCEPTED, now, accept.id)
        else:
            # Re-sent Follow, e.g. our Accept was lost: answer it again
            relationship.remote_actor = sender
            relationship.follow_activity_id = activity.id
            relationship.response_activity_id = accept.id
            relationship.responded_at = now

        await self.outbox.enqueue(accept, sender.inbox_url)
        self.store.save(relationship)
        logger.info(f"{sender.identifier} now follows calendar {calendar_id}")
        self._notify("follower.accepted", relationship)
        return relationship

    async def receive_accept(self, activity: Activity, sender: RemoteActor) -> FollowRelationship:
        """
        Handle a remote calendar accepting our Follow.

        Raises:
            FollowRelationshipNotFoundError: No pending follow of the sender matches
        """
        return self._answer(activity, sender, FollowState.ACCEPTED)

    async def receive_reject(self, activity: Activity, sender: RemoteActor) -> FollowRelationship:
        """
        Handle a remote calendar rejecting our Follow.

        Raises:
            FollowRelationshipNotFoundError: No pending follow of the sender matches
        """
        return self._answer(activity, sender, FollowState.REJECTED)

    def _answer(self, activity: Activity, sender: RemoteActor,
                new_state: FollowState) -> FollowRelationship:
        replayed = self.store.by_response_activity(activity.id)
        if replayed is not None and replayed.remote_actor.is_same_actor(sender.actor_id):
            logger.debug(f"Ignoring replayed {activity.type.value} {activity.id}")
            return replayed

        relationship = self.store.by_follow_activity(activity.object_id)
        if (relationship is None
                or relationship.direction is not FollowDirection.FOLLOWING
                or relationship.state is not FollowState.PENDING
                or not relationship.remote_actor.is_same_actor(sender.actor_id)):
            raise FollowRelationshipNotFoundError()

        inner = activity.inner_activity
        local_actor = self.urls.actor(relationship.local_calendar_id)
        if inner is not None and normalize_actor_url(inner.actor) != normalize_actor_url(local_actor):
            raise FollowRelationshipNotFoundError()

        relationship.transition(new_state, self.clock(), activity.id)
        self.store.save(relationship)
        logger.info(
            f"Follow of {relationship.remote_actor.identifier} by "
            f"{relationship.local_calendar_id} {new_state.value}"
        )
        self._notify(f"follow.{new_state.value}", relationship)
        return relationship

    async def receive_undo(self, activity: Activity, sender: RemoteActor) -> FollowRelationship:
        """
        Handle a remote follower unfollowing one of our calendars.

        Raises:
            FollowRelationshipNotFoundError: The sender does not follow us
        """
        relationship = self.store.by_follow_activity(activity.object_id)
        inner = activity.inner_activity
        if relationship is None and inner is not None:
            # Follow ids are not always kept by the remote; fall back to the pair
            calendar_id = self.urls.calendar_id_for(inner.object_id)
            if calendar_id is not None:
                relationship = self.store.find_active(calendar_id, sender.actor_id,
                                                      FollowDirection.FOLLOWER)

        if (relationship is None
                or relationship.direction is not FollowDirection.FOLLOWER
                or not relationship.remote_actor.is_same_actor(sender.actor_id)):
            raise FollowRelationshipNotFoundError()

        if relationship.state is FollowState.UNDONE:
            return relationship

        relationship.transition(FollowState.UNDONE, self.clock(), activity.id)
        self.store.save(relationship)
        logger.info(f"{sender.identifier} unfollowed calendar {relationship.local_calendar_id}")
        self._notify("follower.undone", relationship)
        return relationship

    # Read access

    def get(self, relationship_id: str) -> FollowRelationship:
        """
        Raises:
            FollowRelationshipNotFoundError: Unknown relationship id
        """
        relationship = self.store.get(relationship_id)
        if relationship is None:
            raise FollowRelationshipNotFoundError()
        return relationship

    def following(self, calendar_id: str, state: FollowState = None) -> List[FollowRelationship]:
        """Remote calendars a local calendar follows."""
        return self.store.list(calendar_id, FollowDirection.FOLLOWING, state)

    def followers(self, calendar_id: str, state: FollowState = None) -> List[FollowRelationship]:
        """Remote calendars following a local calendar."""
        return self.store.list(calendar_id, FollowDirection.FOLLOWER, state)
