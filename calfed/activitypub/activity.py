# calfed/activitypub/activity.py
"""
ActivityPub Activity types.

Activities are a single closed type discriminated by ``type``. Each type
constrains what its ``object`` may be:

- Follow: URI of the followed calendar (acct: or actor URL)
- Accept / Reject: the Follow being answered, or its id
- Undo: the activity being undone, or its id
- Create / Update: an inline Event, or its URI
- Announce: URI of the shared event, or an inline Event
- Delete: URI of the deleted object

Activities are immutable once built; delivery state is tracked separately
by the outbox.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from ..errors import InvalidActivityError, UnsupportedActivityTypeError
from .event import EVENT_TYPE, FederatedEvent

AS_CONTEXT = "https://www.w3.org/ns/activitystreams"
AS_PUBLIC = "https://www.w3.org/ns/activitystreams#Public"
MAX_NESTING = 3


class ActivityType(str, Enum):
    FOLLOW = "Follow"
    ACCEPT = "Accept"
    REJECT = "Reject"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    ANNOUNCE = "Announce"
    UNDO = "Undo"


# What each activity type may carry as its object
_URI = "uri"
_ACTIVITY = "activity"
_EVENT = "event"

OBJECT_KINDS = {
    ActivityType.FOLLOW: {_URI},
    ActivityType.ACCEPT: {_ACTIVITY, _URI},
    ActivityType.REJECT: {_ACTIVITY, _URI},
    ActivityType.UNDO: {_ACTIVITY, _URI},
    ActivityType.CREATE: {_EVENT, _URI},
    ActivityType.UPDATE: {_EVENT, _URI},
    ActivityType.ANNOUNCE: {_URI, _EVENT},
    ActivityType.DELETE: {_URI},
}


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def _object_kind(obj: Any) -> Optional[str]:
    if isinstance(obj, Activity):
        return _ACTIVITY
    if isinstance(obj, FederatedEvent):
        return _EVENT
    if isinstance(obj, str) and obj:
        return _URI
    return None


ActivityObject = Union["Activity", FederatedEvent, str]


@dataclass(frozen=True)
class Activity:
    """
    A federation activity.

    Attributes:
        id: Globally unique URI assigned by the origin server
        type: Activity type discriminant
        actor: URI of the actor performing the activity
        obj: Nested activity, inline event, or URI reference
        published: ISO timestamp
        to: Primary recipients
    """
    id: str
    type: ActivityType
    actor: str
    obj: ActivityObject
    published: str = field(default_factory=_now)
    to: Tuple[str, ...] = ()

    def __post_init__(self):
        if not isinstance(self.type, ActivityType):
            try:
                object.__setattr__(self, "type", ActivityType(self.type))
            except ValueError:
                raise UnsupportedActivityTypeError(f"Activity type not supported: {self.type!r}")
        if not isinstance(self.id, str) or not self.id:
            raise InvalidActivityError("Activity has no id")
        if not isinstance(self.actor, str) or not self.actor:
            raise InvalidActivityError("Activity has no actor")
        kind = _object_kind(self.obj)
        if kind not in OBJECT_KINDS[self.type]:
            raise InvalidActivityError(
                f"{self.type.value} cannot carry a {kind or 'missing'} object"
            )

    @property
    def object_id(self) -> str:
        """URI of the object, whether embedded or referenced."""
        if isinstance(self.obj, str):
            return self.obj
        return self.obj.id

    @property
    def object_type(self) -> Optional[str]:
        """Type of an embedded object, None for bare references."""
        if isinstance(self.obj, Activity):
            return self.obj.type.value
        if isinstance(self.obj, FederatedEvent):
            return EVENT_TYPE
        return None

    @property
    def inner_activity(self) -> Optional["Activity"]:
        return self.obj if isinstance(self.obj, Activity) else None

    def to_activitypub(self, with_context: bool = True) -> Dict[str, Any]:
        """Return ActivityPub JSON-LD representation."""
        if isinstance(self.obj, Activity):
            obj = self.obj.to_activitypub(with_context=False)
        elif isinstance(self.obj, FederatedEvent):
            obj = self.obj.to_activitypub()
        else:
            obj = self.obj

        data: Dict[str, Any] = {}
        if with_context:
            data["@context"] = AS_CONTEXT
        data.update({
            "id": self.id,
            "type": self.type.value,
            "actor": self.actor,
            "object": obj,
            "published": self.published,
        })
        if self.to:
            data["to"] = list(self.to)
        return data

    def to_json(self) -> bytes:
        return json.dumps(self.to_activitypub(), separators=(",", ":")).encode()

    @classmethod
    def from_activitypub(cls, data: Any, _depth: int = 0) -> "Activity":
        """
        Parse an ActivityPub activity.

        Raises:
            UnsupportedActivityTypeError: For activity types outside ActivityType
            InvalidActivityError: For any other structural problem
        """
        if _depth > MAX_NESTING:
            raise InvalidActivityError("Activity nested too deeply")
        if not isinstance(data, dict):
            raise InvalidActivityError("Activity must be a JSON object")

        raw_type = data.get("type")
        if not isinstance(raw_type, str):
            raise InvalidActivityError("Activity has no type")
        try:
            activity_type = ActivityType(raw_type)
        except ValueError:
            raise UnsupportedActivityTypeError(f"Activity type not supported: {raw_type}")

        actor = data.get("actor")
        if isinstance(actor, dict):
            actor = actor.get("id")

        raw_object = data.get("object")
        if isinstance(raw_object, dict):
            if raw_object.get("type") == EVENT_TYPE:
                obj = FederatedEvent.from_activitypub(raw_object)
            else:
                obj = cls.from_activitypub(raw_object, _depth + 1)
        else:
            obj = raw_object

        to = data.get("to") or ()
        if isinstance(to, str):
            to = (to,)

        return cls(
            id=data.get("id"),
            type=activity_type,
            actor=actor,
            obj=obj,
            published=data.get("published") or "",
            to=tuple(t for t in to if isinstance(t, str)),
        )

    @classmethod
    def from_json(cls, raw: bytes | str) -> "Activity":
        """Parse a raw request body."""
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            raise InvalidActivityError("Activity body is not valid JSON")
        return cls.from_activitypub(data)

    # Constructors for locally generated activities

    @classmethod
    def follow(cls, activity_id: str, actor: str, target: str) -> "Activity":
        return cls(id=activity_id, type=ActivityType.FOLLOW, actor=actor, obj=target)

    @classmethod
    def accept(cls, activity_id: str, actor: str, follow: "Activity") -> "Activity":
        return cls(id=activity_id, type=ActivityType.ACCEPT, actor=actor, obj=follow)

    @classmethod
    def reject(cls, activity_id: str, actor: str, follow: "Activity") -> "Activity":
        return cls(id=activity_id, type=ActivityType.REJECT, actor=actor, obj=follow)

    @classmethod
    def undo(cls, activity_id: str, actor: str, activity: "Activity") -> "Activity":
        return cls(id=activity_id, type=ActivityType.UNDO, actor=actor, obj=activity)

    @classmethod
    def create(cls, activity_id: str, actor: str, event: FederatedEvent) -> "Activity":
        return cls(id=activity_id, type=ActivityType.CREATE, actor=actor, obj=event,
                   to=(AS_PUBLIC,))

    @classmethod
    def update(cls, activity_id: str, actor: str, event: FederatedEvent) -> "Activity":
        return cls(id=activity_id, type=ActivityType.UPDATE, actor=actor, obj=event,
                   to=(AS_PUBLIC,))

    @classmethod
    def delete(cls, activity_id: str, actor: str, object_id: str) -> "Activity":
        return cls(id=activity_id, type=ActivityType.DELETE, actor=actor, obj=object_id,
                   to=(AS_PUBLIC,))

    @classmethod
    def announce(cls, activity_id: str, actor: str, event_url: str) -> "Activity":
        return cls(id=activity_id, type=ActivityType.ANNOUNCE, actor=actor, obj=event_url,
                   to=(AS_PUBLIC,))
