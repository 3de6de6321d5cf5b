# calfed/identifier.py
"""
Remote calendar identifiers.

A remote calendar is addressed as ``username@domain``, the same handle
WebFinger resolves as ``acct:username@domain``.
"""

import re
from dataclasses import dataclass

from .errors import InvalidRemoteCalendarIdentifierError

LOCAL_PART_RE = re.compile(r"[\w.\-]+")
HOST_LABEL_RE = re.compile(r"(?!-)[A-Za-z0-9-]{1,63}(?<!-)")
MAX_HOSTNAME_LENGTH = 253


def is_valid_domain(domain: str) -> bool:
    """
    Check a domain is a bare hostname with an optional port.

    Schemes, paths, credentials and empty labels are rejected.
    """
    if not domain:
        return False

    host, sep, port = domain.partition(":")
    if sep:
        if not (port.isascii() and port.isdigit()) or not 0 < int(port) < 65536:
            return False

    if not host or len(host) > MAX_HOSTNAME_LENGTH:
        return False

    return all(HOST_LABEL_RE.fullmatch(label) for label in host.split("."))


@dataclass(frozen=True)
class RemoteCalendarIdentifier:
    """
    A validated ``local_part@domain`` handle.

    The domain is stored lower-cased since host names are case-insensitive;
    the local part is kept as written.
    """
    local_part: str
    domain: str

    @classmethod
    def parse(cls, raw: str) -> "RemoteCalendarIdentifier":
        """
        Parse and validate a raw identifier.

        Accepts ``user@domain`` and ``acct:user@domain``.

        Raises:
            InvalidRemoteCalendarIdentifierError: On any malformed input
        """
        if not isinstance(raw, str):
            raise InvalidRemoteCalendarIdentifierError()

        value = raw.strip()
        if value.lower().startswith("acct:"):
            value = value[len("acct:"):]

        if value.count("@") != 1:
            raise InvalidRemoteCalendarIdentifierError()

        local_part, domain = value.split("@")
        if not LOCAL_PART_RE.fullmatch(local_part):
            raise InvalidRemoteCalendarIdentifierError(
                f"Invalid remote calendar name: {local_part!r}"
            )
        if not is_valid_domain(domain):
            raise InvalidRemoteCalendarIdentifierError(
                f"Invalid remote calendar domain: {domain!r}"
            )

        return cls(local_part=local_part, domain=domain.lower())

    @property
    def acct(self) -> str:
        """WebFinger resource form."""
        return f"acct:{self}"

    @property
    def host(self) -> str:
        """Domain without any port."""
        return self.domain.partition(":")[0]

    def same_calendar(self, other: "RemoteCalendarIdentifier") -> bool:
        """Case-insensitive comparison of two handles."""
        return (
            self.local_part.casefold() == other.local_part.casefold()
            and self.domain == other.domain
        )

    def __str__(self) -> str:
        return f"{self.local_part}@{self.domain}"
