# tests/test_resolver.py
"""Tests for WebFinger resolution of remote calendars."""

import asyncio
import json

import httpx
import pytest

from conftest import FakeClock, run

from calfed.activitypub.actor import ACTIVITY_JSON
from calfed.activitypub.resolver import ActorResolver
from calfed.cache import ActorCache
from calfed.errors import (
    ActivityPubNotSupportedError,
    InvalidRemoteCalendarIdentifierError,
    RemoteCalendarNotFoundError,
    RemoteDomainUnreachableError,
    RemoteProfileFetchError,
    UnsafeUrlError,
)
from calfed.identifier import RemoteCalendarIdentifier

WEBFINGER = "/.well-known/webfinger"


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def resolver(remote, clock):
    return ActorResolver(remote.client(), ActorCache(ttl=3600, clock=clock))


def static_resolver(routes, clock=None):
    """Resolver against a server answering fixed responses per path."""
    def handler(request):
        response = routes.get(request.url.path)
        return response() if response else httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ActorResolver(client, ActorCache(clock=clock or FakeClock(0.0)))


def webfinger_json(href="https://remote.example/users/alice", link_type=ACTIVITY_JSON):
    return lambda: httpx.Response(200, json={
        "subject": "acct:alice@remote.example",
        "links": [{"rel": "self", "type": link_type, "href": href}],
    })


def actor_json(document, content_type=ACTIVITY_JSON):
    body = document if isinstance(document, bytes) else json.dumps(document).encode()
    return lambda: httpx.Response(200, content=body, headers={"content-type": content_type})


class TestResolve:

    def test_resolves_actor(self, resolver, remote):
        actor = run(resolver.resolve("alice@remote.example"))

        assert actor.identifier == RemoteCalendarIdentifier("alice", "remote.example")
        assert actor.actor_id == "https://remote.example/users/alice"
        assert actor.inbox_url == "https://remote.example/users/alice/inbox"
        assert actor.outbox_url == "https://remote.example/users/alice/outbox"
        assert actor.key_id == "https://remote.example/users/alice#main-key"
        assert actor.public_key.startswith("-----BEGIN PUBLIC KEY-----")
        assert actor.supports_activitypub
        assert actor.resolved_at == 1000.0

        discovery = remote.requests[0]
        assert discovery.url.params["resource"] == "acct:alice@remote.example"
        assert remote.requests[1].headers["accept"].startswith(ACTIVITY_JSON)

    def test_cache_hit(self, resolver, remote):
        run(resolver.resolve("alice@remote.example"))
        run(resolver.resolve("alice@remote.example"))
        assert remote.count(WEBFINGER) == 1

    def test_cache_expiry(self, resolver, remote, clock):
        run(resolver.resolve("alice@remote.example"))
        clock.advance(3601)
        run(resolver.resolve("alice@remote.example"))
        assert remote.count(WEBFINGER) == 2

    def test_invalidate(self, resolver, remote):
        run(resolver.resolve("alice@remote.example"))
        resolver.invalidate("alice@remote.example")
        assert resolver.cached(RemoteCalendarIdentifier("alice", "remote.example")) is None
        assert not resolver.is_cached_url("https://remote.example/users/alice")
        run(resolver.resolve("alice@remote.example"))
        assert remote.count(WEBFINGER) == 2

    def test_shared_inbox(self, remote, remote_keypair, clock):
        remote.add_actor("bob", remote_keypair, shared_inbox=True)
        resolver = ActorResolver(remote.client(), ActorCache(clock=clock))
        actor = run(resolver.resolve("bob@remote.example"))
        assert actor.shared_inbox_url == "https://remote.example/inbox"
        assert actor.delivery_inbox == "https://remote.example/inbox"

    def test_invalid_identifier_makes_no_request(self, resolver, remote):
        with pytest.raises(InvalidRemoteCalendarIdentifierError):
            run(resolver.resolve("not-an-identifier"))
        assert remote.requests == []


class TestCoalescing:

    def test_concurrent_resolutions_share_one_request(self, resolver, remote):
        """Two concurrent callers cause a single discovery request."""
        remote.delay = 0.01

        async def both():
            return await asyncio.gather(
                resolver.resolve("alice@remote.example"),
                resolver.resolve("alice@remote.example"),
            )

        first, second = run(both())
        assert first is second
        assert remote.count(WEBFINGER) == 1

    def test_cancelled_caller_does_not_cancel_lookup(self, resolver, remote):
        remote.delay = 0.01

        async def scenario():
            first = asyncio.ensure_future(resolver.resolve("alice@remote.example"))
            await asyncio.sleep(0)
            second = asyncio.ensure_future(resolver.resolve("alice@remote.example"))
            await asyncio.sleep(0)
            first.cancel()
            actor = await second
            with pytest.raises(asyncio.CancelledError):
                await first
            return actor

        actor = run(scenario())
        assert actor.inbox_url == "https://remote.example/users/alice/inbox"
        assert remote.count(WEBFINGER) == 1
        assert resolver.cached(actor.identifier) is actor

    def test_failure_shared_and_not_cached(self, resolver, remote):
        remote.delay = 0.01
        remote.unreachable = True

        async def both():
            return await asyncio.gather(
                resolver.resolve("alice@remote.example"),
                resolver.resolve("alice@remote.example"),
                return_exceptions=True,
            )

        results = run(both())
        assert all(isinstance(r, RemoteDomainUnreachableError) for r in results)
        assert remote.count(WEBFINGER) == 1

        remote.unreachable = False
        remote.delay = 0
        assert run(resolver.resolve("alice@remote.example")).actor_id.endswith("/alice")


class TestFailureClassification:

    def test_unreachable(self, resolver, remote):
        remote.unreachable = True
        with pytest.raises(RemoteDomainUnreachableError):
            run(resolver.resolve("alice@remote.example"))

    def test_timeout_is_unreachable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = ActorResolver(client, ActorCache())
        with pytest.raises(RemoteDomainUnreachableError):
            run(resolver.resolve("alice@remote.example"))

    def test_unknown_calendar(self, resolver):
        with pytest.raises(RemoteCalendarNotFoundError):
            run(resolver.resolve("nobody@remote.example"))

    @pytest.mark.parametrize("status", [404, 410])
    def test_actor_gone(self, resolver, remote, status):
        remote.actor_status = status
        with pytest.raises(RemoteCalendarNotFoundError):
            run(resolver.resolve("alice@remote.example"))

    def test_server_error_is_fetch_failure(self, resolver, remote):
        remote.webfinger_status = 500
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve("alice@remote.example"))

    def test_wrong_content_type(self, resolver, remote):
        remote.actor_content_type = "text/html"
        with pytest.raises(ActivityPubNotSupportedError):
            run(resolver.resolve("alice@remote.example"))

    def test_ld_json_accepted(self, resolver, remote):
        remote.actor_content_type = (
            'application/ld+json; profile="https://www.w3.org/ns/activitystreams"'
        )
        assert run(resolver.resolve("alice@remote.example")).inbox_url

    def test_no_activitypub_link(self):
        resolver = static_resolver({
            "/.well-known/webfinger": webfinger_json(link_type="text/html"),
        })
        with pytest.raises(ActivityPubNotSupportedError):
            run(resolver.resolve("alice@remote.example"))

    def test_missing_fields(self, remote):
        document = dict(remote.actors["alice"])
        del document["inbox"]
        resolver = static_resolver({
            "/.well-known/webfinger": webfinger_json(),
            "/users/alice": actor_json(document),
        })
        with pytest.raises(ActivityPubNotSupportedError):
            run(resolver.resolve("alice@remote.example"))

    def test_malformed_actor_body(self):
        resolver = static_resolver({
            "/.well-known/webfinger": webfinger_json(),
            "/users/alice": actor_json(b"{not json"),
        })
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve("alice@remote.example"))

    def test_malformed_webfinger_body(self):
        resolver = static_resolver({
            "/.well-known/webfinger": lambda: httpx.Response(200, content=b"<html>"),
        })
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve("alice@remote.example"))

    def test_unsafe_inbox(self, remote):
        document = dict(remote.actors["alice"])
        document["inbox"] = "https://10.0.0.1/inbox"
        resolver = static_resolver({
            "/.well-known/webfinger": webfinger_json(),
            "/users/alice": actor_json(document),
        })
        with pytest.raises(UnsafeUrlError):
            run(resolver.resolve("alice@remote.example"))

    def test_unsafe_actor_link_not_fetched(self):
        fetched = []

        def handler(request):
            fetched.append(request.url.host)
            return webfinger_json(href="https://192.168.0.10/users/alice")()

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        resolver = ActorResolver(client, ActorCache())
        with pytest.raises(UnsafeUrlError):
            run(resolver.resolve("alice@remote.example"))
        assert fetched == ["remote.example"]


class TestResolveActorUrl:

    def test_by_url(self, resolver, remote):
        actor = run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        assert str(actor.identifier) == "alice@remote.example"
        assert remote.count(WEBFINGER) == 0
        assert resolver.is_cached_url("https://REMOTE.example/users/alice/")

    def test_refresh(self, resolver, remote):
        run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        run(resolver.resolve_actor_url("https://remote.example/users/alice", refresh=True))
        assert remote.count("/users/alice") == 2

    def test_shares_cache_with_handle(self, resolver, remote):
        run(resolver.resolve("alice@remote.example"))
        run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        assert remote.count("/users/alice") == 1

    def test_invalidate_inbox(self, resolver):
        actor = run(resolver.resolve("alice@remote.example"))
        assert resolver.invalidate_inbox(actor.inbox_url) == 2
        assert resolver.cached(actor.identifier) is None
        assert resolver.invalidate_inbox(actor.inbox_url) == 0


class TestActorIdentity:

    def forged(self, remote, **public_key):
        document = dict(remote.actors["alice"])
        document["publicKey"] = dict(document["publicKey"], **public_key)
        return document

    def test_document_claiming_another_id(self, remote):
        document = dict(remote.actors["alice"])
        document["id"] = "https://remote.example/users/bob"
        resolver = static_resolver({"/users/alice": actor_json(document)})
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        assert not resolver.is_cached_url("https://remote.example/users/bob")

    def test_document_claiming_id_on_another_host(self, remote):
        document = dict(remote.actors["alice"])
        document["id"] = "https://victim.example/users/alice"
        resolver = static_resolver({
            "/.well-known/webfinger": webfinger_json(),
            "/users/alice": actor_json(document),
        })
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve("alice@remote.example"))

    def test_id_compared_normalised(self, remote):
        document = dict(remote.actors["alice"])
        document["id"] = "https://remote.example/users/Alice/"
        resolver = static_resolver({"/users/alice": actor_json(document)})
        actor = run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        assert actor.is_same_actor("https://remote.example/users/alice")

    def test_key_with_another_owner(self, remote):
        document = self.forged(remote, owner="https://remote.example/users/bob")
        resolver = static_resolver({"/users/alice": actor_json(document)})
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve_actor_url("https://remote.example/users/alice"))

    def test_key_hosted_elsewhere(self, remote):
        document = self.forged(remote, id="https://evil.example/keys/alice")
        resolver = static_resolver({"/users/alice": actor_json(document)})
        with pytest.raises(RemoteProfileFetchError):
            run(resolver.resolve_actor_url("https://remote.example/users/alice"))

    def test_key_id_defaults_to_main_key(self, remote):
        document = dict(remote.actors["alice"])
        document["publicKey"] = {"publicKeyPem": document["publicKey"]["publicKeyPem"]}
        resolver = static_resolver({"/users/alice": actor_json(document)})
        actor = run(resolver.resolve_actor_url("https://remote.example/users/alice"))
        assert actor.key_id == "https://remote.example/users/alice#main-key"
