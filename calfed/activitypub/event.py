# calfed/activitypub/event.py
"""
Federated event objects.

The wire form of a calendar event, as embedded in Create/Update/Announce
activities:

    {
        "type": "Event",
        "id": "https://events.example.org/events/42",
        "startTime": "2025-06-01T18:00:00Z",
        "location": {"name": "Town Hall", "address": "1 Main St"},
        "categories": ["music"],
        "content": {"en": {"name": "Concert", "description": "..."}},
        "attributedTo": "https://events.example.org/calendars/main"
    }

The authoritative event record lives in the calendar application; this is
only the transport projection.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit

from ..errors import InvalidActivityError, InvalidSharedEventUrlError

EVENT_TYPE = "Event"
LANGUAGE_CODE_RE = re.compile(r"^[a-z]{2,3}(-[A-Za-z0-9]{2,8})*$")


def validate_event_url(url: Any) -> str:
    """
    Check that a shared object reference is a well-formed event URI.

    An event URI is an absolute http(s) URL with a host and a non-root path.

    Raises:
        InvalidSharedEventUrlError: If the reference is not an event URI
    """
    if not isinstance(url, str) or not url:
        raise InvalidSharedEventUrlError()
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        raise InvalidSharedEventUrlError()
    if parts.scheme not in ("http", "https") or not host:
        raise InvalidSharedEventUrlError()
    if parts.path in ("", "/") or parts.fragment:
        raise InvalidSharedEventUrlError()
    return url


@dataclass(frozen=True)
class EventContent:
    """Localised name and description."""
    name: str
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "description": self.description}


@dataclass(frozen=True)
class FederatedEvent:
    """
    A calendar event as exchanged between servers.

    Attributes:
        id: Event URI on its origin server
        date: Start time (ISO 8601)
        end_date: End time (ISO 8601)
        location: Free-form location mapping (name, address, ...)
        parent_event: URI of the series this event belongs to
        child_events: URIs of instances in this series
        categories: Category names
        content: Language code -> EventContent
        attributed_to: Actor URI of the owning calendar
    """
    id: str
    date: Optional[str] = None
    end_date: Optional[str] = None
    location: Optional[Dict[str, Any]] = None
    parent_event: Optional[str] = None
    child_events: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()
    content: Dict[str, EventContent] = field(default_factory=dict)
    attributed_to: Optional[str] = None

    def __post_init__(self):
        for language in self.content:
            if not LANGUAGE_CODE_RE.match(language):
                raise InvalidActivityError(f"Invalid language code: {language!r}")

    def name(self, language: str = "en") -> str:
        """Event name in a language, falling back to any available."""
        if language in self.content:
            return self.content[language].name
        for content in self.content.values():
            return content.name
        return ""

    def to_activitypub(self) -> Dict[str, Any]:
        """Return the ActivityStreams object."""
        data: Dict[str, Any] = {
            "type": EVENT_TYPE,
            "id": self.id,
            "content": {lang: c.to_dict() for lang, c in self.content.items()},
            "categories": list(self.categories),
            "childEvents": list(self.child_events),
        }
        if self.date:
            data["startTime"] = self.date
        if self.end_date:
            data["endTime"] = self.end_date
        if self.location is not None:
            data["location"] = self.location
        if self.parent_event:
            data["parentEvent"] = self.parent_event
        if self.attributed_to:
            data["attributedTo"] = self.attributed_to
        return data

    @classmethod
    def from_activitypub(cls, data: Dict[str, Any]) -> "FederatedEvent":
        """
        Parse an ActivityStreams Event object.

        Raises:
            InvalidActivityError: If required fields are missing or mistyped
        """
        if not isinstance(data, dict) or data.get("type") != EVENT_TYPE:
            raise InvalidActivityError("Object is not an Event")

        event_id = data.get("id")
        if not isinstance(event_id, str) or not event_id:
            raise InvalidActivityError("Event has no id")

        raw_content = data.get("content") or {}
        if not isinstance(raw_content, dict):
            raise InvalidActivityError("Event content must be a mapping")
        content = {}
        for language, value in raw_content.items():
            if (not isinstance(value, dict)
                    or not isinstance(value.get("name", ""), str)
                    or not isinstance(value.get("description") or "", str)):
                raise InvalidActivityError(f"Invalid event content for {language!r}")
            content[language] = EventContent(
                name=value.get("name", ""),
                description=value.get("description", "") or "",
            )

        location = data.get("location")
        if location is not None and not isinstance(location, dict):
            location = {"name": str(location)}

        return cls(
            id=event_id,
            date=_optional_string(data, "startTime"),
            end_date=_optional_string(data, "endTime"),
            location=location,
            parent_event=_optional_string(data, "parentEvent"),
            child_events=tuple(_string_list(data.get("childEvents"), "childEvents")),
            categories=tuple(_string_list(data.get("categories"), "categories")),
            content=content,
            attributed_to=_optional_string(data, "attributedTo"),
        )


def _optional_string(data: Dict[str, Any], name: str) -> Optional[str]:
    value = data.get(name)
    if value is not None and not isinstance(value, str):
        raise InvalidActivityError(f"Event {name} must be a string")
    return value


def _string_list(value: Any, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidActivityError(f"Event {name} must be a list of strings")
    return value
