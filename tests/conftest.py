# tests/conftest.py
"""Shared fixtures: a fake clock and a fake remote ActivityPub server."""

import asyncio
import json
import tempfile
import time
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest

from calfed import CollectingNotificationSink, Federation, FederationConfig
from calfed.activitypub.actor import ACTIVITY_JSON, generate_keypair
from calfed.activitypub.signatures import sign_request

LOCAL_DOMAIN = "local.example"
REMOTE_DOMAIN = "remote.example"


def run(coro):
    """Run a coroutine to completion."""
    return asyncio.run(coro)


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = None):
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RemoteServer:
    """
    A remote ActivityPub server behind httpx.MockTransport.

    Serves WebFinger and actor documents for its registered actors and
    records everything POSTed to its inboxes.
    """

    def __init__(self, domain: str = REMOTE_DOMAIN):
        self.domain = domain
        self.actors: Dict[str, dict] = {}
        self.keys: Dict[str, bytes] = {}
        self.requests: List[httpx.Request] = []
        self.received: List[dict] = []
        self.inbox_statuses: List[int] = []
        self.webfinger_status: Optional[int] = None
        self.actor_status: Optional[int] = None
        self.actor_content_type = ACTIVITY_JSON
        self.delay = 0.0
        self.unreachable = False

    def actor_url(self, name: str) -> str:
        return f"https://{self.domain}/users/{name}"

    def inbox_url(self, name: str) -> str:
        return f"{self.actor_url(name)}/inbox"

    def add_actor(self, name: str, keypair, shared_inbox: bool = False) -> dict:
        private_pem, public_pem = keypair
        actor_url = self.actor_url(name)
        document = {
            "@context": "https://www.w3.org/ns/activitystreams",
            "type": "Group",
            "id": actor_url,
            "preferredUsername": name,
            "inbox": self.inbox_url(name),
            "outbox": f"{actor_url}/outbox",
            "publicKey": {
                "id": f"{actor_url}#main-key",
                "owner": actor_url,
                "publicKeyPem": public_pem.decode("utf-8"),
            },
        }
        if shared_inbox:
            document["endpoints"] = {"sharedInbox": f"https://{self.domain}/inbox"}
        self.actors[name] = document
        self.keys[name] = private_pem
        return document

    def rotate_key(self, name: str, keypair):
        private_pem, public_pem = keypair
        self.actors[name]["publicKey"]["publicKeyPem"] = public_pem.decode("utf-8")
        self.keys[name] = private_pem

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, path: str, method: str = None) -> int:
        return sum(
            1 for r in self.requests
            if r.url.path == path and (method is None or r.method == method)
        )

    def sign(self, name: str, body: bytes, path: str = "/inbox",
             host: str = LOCAL_DOMAIN, date: str = None) -> Dict[str, str]:
        """Headers for a POST of body to one of our inboxes, signed by name."""
        return sign_request(
            "POST", f"https://{host}{path}", body,
            f"{self.actor_url(name)}#main-key", self.keys[name], date=date,
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        if path == "/.well-known/webfinger":
            if self.webfinger_status:
                return httpx.Response(self.webfinger_status)
            resource = request.url.params.get("resource", "")
            name = resource.split(":", 1)[-1].split("@")[0]
            if name not in self.actors:
                return httpx.Response(404)
            return httpx.Response(200, json={
                "subject": resource,
                "links": [
                    {"rel": "self", "type": ACTIVITY_JSON, "href": self.actor_url(name)},
                ],
            })

        if request.method == "GET" and path.startswith("/users/"):
            if self.actor_status:
                return httpx.Response(self.actor_status)
            name = path.split("/")[2]
            if name not in self.actors:
                return httpx.Response(404)
            return httpx.Response(
                200,
                content=json.dumps(self.actors[name]).encode(),
                headers={"content-type": self.actor_content_type},
            )

        if request.method == "POST" and path.endswith("/inbox"):
            self.received.append(json.loads(request.content))
            status = self.inbox_statuses.pop(0) if self.inbox_statuses else 202
            return httpx.Response(status)

        return httpx.Response(404)


@pytest.fixture(scope="session")
def remote_keypair():
    """One RSA key pair shared by remote actors across the session."""
    return generate_keypair()


@pytest.fixture(scope="session")
def rotated_keypair():
    return generate_keypair()


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def remote(remote_keypair):
    """Remote server with one calendar, alice."""
    server = RemoteServer()
    server.add_actor("alice", remote_keypair)
    return server


@pytest.fixture
def notices():
    return CollectingNotificationSink()


@pytest.fixture
def config():
    return FederationConfig(domain=LOCAL_DOMAIN, retry_base_delay=30, retry_max_delay=600,
                            max_delivery_attempts=4)


@pytest.fixture
def federation(config, remote, clock, notices):
    """Local server with calendar cal-1, talking to the fake remote."""
    fed = Federation(
        config,
        client=remote.client(),
        clock=clock,
        notifier=notices,
        run_worker=False,
    )
    fed.add_calendar("cal-1")
    return fed
