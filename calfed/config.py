# calfed/config.py
"""
Federation configuration.

Loaded from YAML (or a plain dict) into a FederationConfig:

    domain: events.example.org
    actor_cache_ttl: 86400
    retry_base_delay: 30
    max_delivery_attempts: 8
"""

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict

import yaml

from . import __version__


@dataclass
class FederationConfig:
    """
    Settings for one federating server.

    Attributes:
        domain: Public host name of this server (optionally with :port)
        scheme: URL scheme used for local actor and activity URLs
        actor_cache_ttl: Seconds a resolved remote actor stays fresh
        actor_cache_max_size: Maximum cached actors (0 = unlimited)
        resolve_timeout: Per-request timeout for identity lookups
        delivery_timeout: Per-request timeout for inbox deliveries
        retry_base_delay: First retry delay for transient delivery failures
        retry_max_delay: Cap on the retry delay
        max_delivery_attempts: Attempts before a delivery becomes permanent failure
        delivery_workers: Inboxes delivered to concurrently
        allow_insecure_localhost: Permit http:// for localhost (development)
        check_dns: Resolve remote hosts and refuse private addresses
        signature_max_age: Maximum age of a signed request's Date header
        user_agent: User-Agent sent on outbound requests
    """
    domain: str
    scheme: str = "https"
    actor_cache_ttl: float = 86400.0
    actor_cache_max_size: int = 1000
    resolve_timeout: float = 5.0
    delivery_timeout: float = 10.0
    retry_base_delay: float = 30.0
    retry_max_delay: float = 3600.0
    max_delivery_attempts: int = 8
    delivery_workers: int = 4
    allow_insecure_localhost: bool = False
    check_dns: bool = False
    signature_max_age: float = 3600.0
    user_agent: str = f"calfed/{__version__}"

    def __post_init__(self):
        if not self.domain or "/" in self.domain:
            raise ValueError(f"Invalid domain: {self.domain!r}")
        self.domain = self.domain.lower()
        if self.scheme not in ("http", "https"):
            raise ValueError(f"Invalid scheme: {self.scheme!r}")
        for name in ("actor_cache_ttl", "resolve_timeout", "delivery_timeout",
                     "retry_base_delay", "retry_max_delay", "signature_max_age"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_delivery_attempts < 1:
            raise ValueError("max_delivery_attempts must be at least 1")
        if self.delivery_workers < 1:
            raise ValueError("delivery_workers must be at least 1")
        if self.actor_cache_max_size < 0:
            raise ValueError("actor_cache_max_size cannot be negative")

    @property
    def base_url(self) -> str:
        """Root URL of this server."""
        return f"{self.scheme}://{self.domain}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FederationConfig":
        """Build config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "FederationConfig":
        """Parse config from YAML content."""
        data = yaml.safe_load(yaml_content)
        if not isinstance(data, dict):
            raise ValueError("Config must be a YAML mapping")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Path | str) -> "FederationConfig":
        """Load config from a YAML file."""
        with open(path) as f:
            return cls.from_yaml(f.read())
