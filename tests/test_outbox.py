# tests/test_outbox.py
"""Tests for outbound delivery with retry."""

import asyncio
import json

import httpx
import pytest

from conftest import FakeClock, run

from calfed.activitypub.activity import Activity
from calfed.activitypub.actor import CalendarActorStore, FederationUrls
from calfed.activitypub.signatures import HttpSignatureVerifier, HttpSigner, SignedRequest
from calfed.errors import UnsafeUrlError
from calfed.notify import CollectingNotificationSink
from calfed.outbox import (
    DeliveryOutcome,
    DeliveryStatus,
    OutboxDispatcher,
    OutboxQueue,
    classify_status,
)

ALICE_INBOX = "https://remote.example/users/alice/inbox"
BOB_INBOX = "https://other.example/users/bob/inbox"


@pytest.fixture(scope="module")
def actors():
    store = CalendarActorStore(FederationUrls("https://local.example"))
    store.get_or_create("cal-1")
    return store


@pytest.fixture
def urls(actors):
    return actors.urls


class Recorder:
    """Inbox server with a scripted status sequence per inbox path."""

    def __init__(self):
        self.statuses = {}
        self.posts = []
        self.fail_transport = set()
        self.crash = set()

    def script(self, inbox_url, *statuses):
        self.statuses[httpx.URL(inbox_url).path] = list(statuses)

    async def handler(self, request):
        path = request.url.path
        self.posts.append((path, json.loads(request.content), request))
        if path in self.fail_transport:
            raise httpx.ConnectTimeout("timed out", request=request)
        if path in self.crash:
            raise RuntimeError("handler crashed")
        statuses = self.statuses.get(path)
        return httpx.Response(statuses.pop(0) if statuses else 202)

    def ids(self, inbox_url=None):
        path = httpx.URL(inbox_url).path if inbox_url else None
        return [body["id"] for p, body, _ in self.posts if path is None or p == path]


@pytest.fixture
def server():
    return Recorder()


@pytest.fixture
def clock():
    return FakeClock(10_000.0)


@pytest.fixture
def failures():
    return []


@pytest.fixture
def gone():
    return []


@pytest.fixture
def notices():
    return CollectingNotificationSink()


@pytest.fixture
def outbox(server, actors, clock, failures, gone, notices):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    return OutboxDispatcher(
        client,
        HttpSigner(actors),
        retry_base_delay=30,
        retry_max_delay=100,
        max_attempts=4,
        clock=clock,
        notifier=notices,
        on_failure=failures.append,
        on_gone=gone.append,
    )


def follow(urls, n=1):
    return Activity.follow(f"https://local.example/activities/{n}", urls.actor("cal-1"),
                           "acct:alice@remote.example")


class TestClassifyStatus:

    @pytest.mark.parametrize("status,outcome", [
        (200, DeliveryOutcome.SUCCESS),
        (202, DeliveryOutcome.SUCCESS),
        (400, DeliveryOutcome.PERMANENT),
        (401, DeliveryOutcome.PERMANENT),
        (404, DeliveryOutcome.PERMANENT),
        (410, DeliveryOutcome.PERMANENT),
        (429, DeliveryOutcome.TRANSIENT),
        (500, DeliveryOutcome.TRANSIENT),
        (503, DeliveryOutcome.TRANSIENT),
        (302, DeliveryOutcome.PERMANENT),
    ])
    def test_classification(self, status, outcome):
        assert classify_status(status) is outcome


class TestDelivery:

    def test_enqueue_does_not_send(self, outbox, server, urls):
        attempt = run(outbox.enqueue(follow(urls), ALICE_INBOX))
        assert attempt.status is DeliveryStatus.QUEUED
        assert attempt.attempt_count == 0
        assert len(outbox.queue) == 1
        assert server.posts == []

    def test_success(self, outbox, server, urls, actors, notices):
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        assert run(outbox.deliver_due()) == 1

        assert len(outbox.queue) == 0
        path, body, request = server.posts[0]
        assert body["type"] == "Follow"
        assert request.headers["content-type"] == "application/activity+json"
        signed = SignedRequest("POST", path, dict(request.headers), request.content)
        assert HttpSignatureVerifier().verify(actors.get("cal-1").public_key, signed)
        assert "delivery.delivered" in notices.kinds()

    def test_gone_is_permanent(self, outbox, server, urls, clock, failures, gone):
        """410 is a recipient failure: reported once, never retried."""
        server.script(ALICE_INBOX, 410)
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        run(outbox.deliver_due())
        clock.advance(10_000)
        assert run(outbox.deliver_due()) == 0

        assert len(server.posts) == 1
        assert len(outbox.queue) == 0
        assert [f.activity_id for f in failures] == [follow(urls).id]
        assert failures[0].status is DeliveryStatus.FAILED
        assert failures[0].last_status == 410
        assert gone == [ALICE_INBOX]

    def test_client_error_is_permanent(self, outbox, server, urls, failures, gone):
        server.script(ALICE_INBOX, 400)
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        run(outbox.deliver_due())
        assert len(failures) == 1
        assert gone == []

    def test_unavailable_is_retried_with_backoff(self, outbox, server, urls, clock, failures):
        """503 is retried, each time after a longer delay."""
        server.script(ALICE_INBOX, 503, 503)
        attempt = run(outbox.enqueue(follow(urls), ALICE_INBOX))

        run(outbox.deliver_due())
        assert attempt.attempt_count == 1
        assert attempt.next_attempt_at == clock() + 30
        assert attempt.last_error == "HTTP 503"

        assert run(outbox.deliver_due()) == 0
        clock.advance(30)
        run(outbox.deliver_due())
        assert attempt.next_attempt_at == clock() + 60

        clock.advance(60)
        run(outbox.deliver_due())
        assert attempt.status is DeliveryStatus.DELIVERED
        assert len(server.posts) == 3
        assert failures == []

    def test_rate_limited_is_retried(self, outbox, server, urls, clock):
        server.script(ALICE_INBOX, 429)
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        run(outbox.deliver_due())
        clock.advance(30)
        run(outbox.deliver_due())
        assert len(outbox.queue) == 0
        assert len(server.posts) == 2

    def test_transport_error_is_retried(self, outbox, server, urls):
        server.fail_transport.add(httpx.URL(ALICE_INBOX).path)
        attempt = run(outbox.enqueue(follow(urls), ALICE_INBOX))
        run(outbox.deliver_due())
        assert attempt.status is DeliveryStatus.QUEUED
        assert attempt.last_error == "transport error: ConnectTimeout"

    def test_gives_up_after_max_attempts(self, outbox, server, urls, clock, failures):
        server.script(ALICE_INBOX, 500, 500, 500, 500, 500)
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        for _ in range(6):
            run(outbox.deliver_due())
            clock.advance(1000)

        assert len(server.posts) == 4
        assert len(failures) == 1
        assert "gave up after 4 attempts" in failures[0].last_error

    def test_retry_delay_capped(self, outbox):
        assert [outbox.retry_delay(n) for n in range(1, 6)] == [30, 60, 100, 100, 100]

    def test_unexpected_client_error_is_retried(self, outbox, server, urls, clock):
        """An error outside httpx's hierarchy does not stall other inboxes."""
        server.crash.add(httpx.URL(ALICE_INBOX).path)
        run(outbox.enqueue(follow(urls, 1), ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 2), BOB_INBOX))

        assert run(outbox.deliver_due()) == 2

        head = outbox.queue.head(ALICE_INBOX)
        assert head.status is DeliveryStatus.QUEUED
        assert head.last_error == "unexpected error: RuntimeError"
        assert head.next_attempt_at == clock() + 30
        assert server.ids(BOB_INBOX) == [follow(urls, 2).id]

        server.crash.clear()
        clock.advance(30)
        run(outbox.deliver_due())
        assert len(outbox.queue) == 0


class TestOrdering:

    def test_fifo_per_inbox_across_retries(self, outbox, server, urls, clock):
        """A later activity never overtakes an earlier one to the same inbox."""
        server.script(ALICE_INBOX, 503)
        first = follow(urls, 1)
        second = Activity.undo("https://local.example/activities/2", urls.actor("cal-1"), first)
        run(outbox.enqueue(first, ALICE_INBOX))
        run(outbox.enqueue(second, ALICE_INBOX))

        run(outbox.deliver_due())
        assert server.ids() == [first.id]

        clock.advance(30)
        run(outbox.flush())
        assert server.ids() == [first.id, first.id, second.id]

    def test_failing_inbox_does_not_block_others(self, outbox, server, urls):
        server.script(ALICE_INBOX, 503)
        run(outbox.enqueue(follow(urls, 1), ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 2), BOB_INBOX))

        run(outbox.deliver_due())

        assert server.ids(BOB_INBOX) == [follow(urls, 2).id]
        assert [a.target_inbox_url for a in outbox.queue.pending()] == [ALICE_INBOX]

    def test_permanent_failure_unblocks_queue(self, outbox, server, urls, failures):
        server.script(ALICE_INBOX, 403)
        run(outbox.enqueue(follow(urls, 1), ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 2), ALICE_INBOX))
        run(outbox.flush())
        assert len(failures) == 1
        assert len(outbox.queue) == 0

    def test_signer_error_is_isolated(self, outbox, server, urls, failures):
        foreign = Activity.follow("https://local.example/activities/9",
                                  "https://elsewhere.example/users/x", "acct:a@b.example")
        run(outbox.enqueue(foreign, ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 2), BOB_INBOX))

        run(outbox.flush())

        assert [f.last_error for f in failures] == ["signing failed"]
        assert server.ids() == [follow(urls, 2).id]


class TestEnqueue:

    @pytest.mark.parametrize("inbox", [
        "http://remote.example/inbox",
        "https://127.0.0.1/inbox",
        "https://192.168.1.20/inbox",
    ])
    def test_unsafe_target(self, outbox, urls, inbox):
        with pytest.raises(UnsafeUrlError):
            run(outbox.enqueue(follow(urls), inbox))
        assert len(outbox.queue) == 0

    def test_failure_handler_errors_contained(self, outbox, server, urls):
        def broken(attempt):
            raise RuntimeError("boom")

        outbox.on_failure = broken
        server.script(ALICE_INBOX, 400)
        run(outbox.enqueue(follow(urls), ALICE_INBOX))
        assert run(outbox.deliver_due()) == 1


class TestWorker:

    def test_background_worker_delivers(self, outbox, server, urls):
        async def scenario():
            outbox.start()
            await outbox.enqueue(follow(urls), ALICE_INBOX)
            for _ in range(100):
                if server.posts:
                    break
                await asyncio.sleep(0.01)
            await outbox.stop()

        run(scenario())
        assert server.ids() == [follow(urls).id]

    def test_worker_survives_failed_pass(self, outbox, server, urls, monkeypatch):
        deliver_due = outbox.deliver_due
        passes = []

        async def flaky_pass():
            passes.append(1)
            if len(passes) == 1:
                raise RuntimeError("queue unreadable")
            return await deliver_due()

        monkeypatch.setattr(outbox, "deliver_due", flaky_pass)
        outbox.retry_base_delay = 0.01

        async def scenario():
            await outbox.enqueue(follow(urls), ALICE_INBOX)
            outbox.start()
            for _ in range(100):
                if server.posts:
                    break
                await asyncio.sleep(0.01)
            await outbox.stop()

        run(scenario())
        assert len(passes) >= 2
        assert server.ids() == [follow(urls).id]


class TestOutboxQueue:

    def test_persistence(self, temp_dir, outbox, urls):
        queue = OutboxQueue(temp_dir)
        outbox.queue = queue
        run(outbox.enqueue(follow(urls, 1), ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 2), ALICE_INBOX))
        run(outbox.enqueue(follow(urls, 3), BOB_INBOX))

        reloaded = OutboxQueue(temp_dir)
        assert [a.activity_id for a in reloaded.pending()] == [
            follow(urls, n).id for n in (1, 2, 3)
        ]
        assert reloaded.head(ALICE_INBOX).activity_id == follow(urls, 1).id
        assert (temp_dir / "outbox.json").exists()

    def test_sequence_survives_reload(self, temp_dir, outbox, urls):
        outbox.queue = OutboxQueue(temp_dir)
        run(outbox.enqueue(follow(urls, 1), ALICE_INBOX))
        reloaded = OutboxQueue(temp_dir)
        outbox.queue = reloaded
        attempt = run(outbox.enqueue(follow(urls, 2), ALICE_INBOX))
        assert attempt.sequence == 2
