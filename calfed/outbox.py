# calfed/outbox.py
"""
Outbound activity delivery.

Activities are queued durably, then signed and POSTed to remote inboxes
by a background worker:
- 2xx: delivered
- 429, 5xx, network errors: retried with exponential backoff
- other 4xx: permanent failure, reported and never retried

Each target inbox is a FIFO: an activity is not attempted until everything
queued before it for the same inbox has been delivered or given up on, so
an Accept never overtakes the Follow it answers. Different inboxes are
delivered to concurrently.
"""

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from .activitypub.activity import Activity
from .activitypub.actor import ACTIVITY_JSON
from .errors import UnsafeUrlError
from .locks import KeyedLock
from .netguard import UrlGuard
from .notify import Notice, NotificationSink

logger = logging.getLogger(__name__)

GONE_STATUS = 410
TOO_MANY_REQUESTS = 429


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryOutcome(Enum):
    SUCCESS = "success"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_status(status_code: int) -> DeliveryOutcome:
    """Classify an inbox response status."""
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code == TOO_MANY_REQUESTS or status_code >= 500:
        return DeliveryOutcome.TRANSIENT
    return DeliveryOutcome.PERMANENT


@dataclass
class DeliveryAttempt:
    """
    One activity queued for one inbox.

    Attributes:
        activity_id: Id of the activity being delivered
        target_inbox_url: Remote inbox
        actor_id: Local actor whose key signs the delivery
        payload: Serialized activity
        activity_type: Activity type, for reporting
        sequence: Queue order
        attempt_count: Attempts made so far
        next_attempt_at: Earliest time of the next attempt
        last_error: Classified reason of the last failure
        last_status: HTTP status of the last attempt, if any
        status: queued, delivered or failed
    """
    activity_id: str
    target_inbox_url: str
    actor_id: str
    payload: Dict[str, Any]
    activity_type: str = ""
    sequence: int = 0
    attempt_count: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None
    last_status: Optional[int] = None
    status: DeliveryStatus = DeliveryStatus.QUEUED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activity_id": self.activity_id,
            "target_inbox_url": self.target_inbox_url,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "activity_type": self.activity_type,
            "sequence": self.sequence,
            "attempt_count": self.attempt_count,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
            "last_status": self.last_status,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryAttempt":
        return cls(
            activity_id=data["activity_id"],
            target_inbox_url=data["target_inbox_url"],
            actor_id=data["actor_id"],
            payload=data["payload"],
            activity_type=data.get("activity_type", ""),
            sequence=data.get("sequence", 0),
            attempt_count=data.get("attempt_count", 0),
            next_attempt_at=data.get("next_attempt_at", 0.0),
            last_error=data.get("last_error"),
            last_status=data.get("last_status"),
            status=DeliveryStatus(data.get("status", "queued")),
        )


class OutboxQueue:
    """
    Per-inbox FIFO queues of pending deliveries.

    In memory by default; with a store_dir every change is written through
    before the call returns:

        store_dir/
            outbox.json
    """

    def __init__(self, store_dir: Path | str = None):
        self.store_dir = Path(store_dir) if store_dir else None
        self._queues: Dict[str, List[DeliveryAttempt]] = {}
        self._sequence = 0
        if self.store_dir:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _path(self) -> Path:
        return self.store_dir / "outbox.json"

    def _load(self):
        path = self._path()
        if not path.exists():
            return
        try:
            with open(path) as f:
                data = json.load(f)
            for raw in data.get("deliveries", []):
                attempt = DeliveryAttempt.from_dict(raw)
                self._queues.setdefault(attempt.target_inbox_url, []).append(attempt)
            for queue in self._queues.values():
                queue.sort(key=lambda a: a.sequence)
            self._sequence = data.get("sequence", 0)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Failed to load outbox queue: {e}")
            self._queues = {}

    def _save(self):
        if not self.store_dir:
            return
        data = {
            "version": "1.0",
            "sequence": self._sequence,
            "deliveries": [a.to_dict() for a in self.pending()],
        }
        tmp_path = self._path().with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self._path())

    def push(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        """Append a delivery to its inbox's queue."""
        self._sequence += 1
        attempt.sequence = self._sequence
        self._queues.setdefault(attempt.target_inbox_url, []).append(attempt)
        self._save()
        return attempt

    def head(self, inbox_url: str) -> Optional[DeliveryAttempt]:
        queue = self._queues.get(inbox_url)
        return queue[0] if queue else None

    def heads(self) -> List[DeliveryAttempt]:
        """The first pending delivery of every inbox."""
        return [queue[0] for queue in self._queues.values() if queue]

    def update(self, attempt: DeliveryAttempt) -> None:
        """Persist changes made to a queued delivery."""
        self._save()

    def remove(self, attempt: DeliveryAttempt) -> None:
        queue = self._queues.get(attempt.target_inbox_url, [])
        if attempt in queue:
            queue.remove(attempt)
        if not queue:
            self._queues.pop(attempt.target_inbox_url, None)
        self._save()

    def pending(self, inbox_url: str = None) -> List[DeliveryAttempt]:
        if inbox_url is not None:
            return list(self._queues.get(inbox_url, []))
        attempts = [a for queue in self._queues.values() for a in queue]
        return sorted(attempts, key=lambda a: a.sequence)

    def next_due_at(self) -> Optional[float]:
        heads = self.heads()
        if not heads:
            return None
        return min(a.next_attempt_at for a in heads)

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())


class OutboxDispatcher:
    """
    Delivers queued activities to remote inboxes.

    Args:
        client: Shared async HTTP client
        signer: Object with ``sign(actor_id, method, url, body) -> headers``
        queue: Durable delivery queue
        retry_base_delay: Delay after the first transient failure
        retry_max_delay: Cap on the retry delay
        max_attempts: Attempts before a transient failure becomes permanent
        workers: Inboxes delivered to concurrently
        timeout: Per-request timeout
        guard: URL safety checks
        clock: Time source
        notifier: Sink for delivery notices
        on_failure: Called with each permanently failed DeliveryAttempt
        on_gone: Called with the inbox URL when a remote answers 410 Gone
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        signer,
        queue: OutboxQueue = None,
        retry_base_delay: float = 30.0,
        retry_max_delay: float = 3600.0,
        max_attempts: int = 8,
        workers: int = 4,
        timeout: float = 10.0,
        guard: UrlGuard = None,
        clock: Callable[[], float] = time.time,
        notifier: NotificationSink = None,
        on_failure: Callable[[DeliveryAttempt], None] = None,
        on_gone: Callable[[str], None] = None,
    ):
        self.client = client
        self.signer = signer
        self.queue = queue if queue is not None else OutboxQueue()
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_attempts = max_attempts
        self.workers = workers
        self.timeout = timeout
        self.guard = guard or UrlGuard()
        self.clock = clock
        self.notifier = notifier or NotificationSink()
        self.on_failure = on_failure
        self.on_gone = on_gone
        self._inbox_locks = KeyedLock()
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def enqueue(self, activity: Activity, target_inbox_url: str) -> DeliveryAttempt:
        """
        Queue an activity for delivery.

        Returns once the delivery is recorded in the queue, not once it
        has been delivered.

        Raises:
            UnsafeUrlError: If the inbox URL is not an allowed target
        """
        self.guard.check_url(target_inbox_url)
        attempt = DeliveryAttempt(
            activity_id=activity.id,
            target_inbox_url=target_inbox_url,
            actor_id=activity.actor,
            payload=activity.to_activitypub(),
            activity_type=activity.type.value,
            next_attempt_at=self.clock(),
        )
        self.queue.push(attempt)
        self._wake.set()
        logger.info(f"Queued {attempt.activity_type} {activity.id} for {target_inbox_url}")
        return attempt

    def retry_delay(self, attempt_count: int) -> float:
        """Backoff after the given number of failed attempts."""
        delay = self.retry_base_delay * (2 ** max(attempt_count - 1, 0))
        return min(delay, self.retry_max_delay)

    async def deliver_due(self) -> int:
        """
        Attempt every inbox whose next delivery is due.

        Returns:
            Number of delivery attempts made
        """
        now = self.clock()
        due = [a for a in self.queue.heads() if a.next_attempt_at <= now]
        if not due:
            return 0

        slots = asyncio.Semaphore(self.workers)

        async def deliver(attempt: DeliveryAttempt) -> bool:
            async with slots:
                try:
                    return await self._deliver(attempt)
                except Exception:
                    logger.exception(f"Delivery pass for {attempt.target_inbox_url} failed")
                    return False

        results = await asyncio.gather(*(deliver(a) for a in due))
        return sum(1 for attempted in results if attempted)

    async def flush(self, max_passes: int = 100) -> int:
        """Deliver until nothing is due right now. Returns attempts made."""
        total = 0
        for _ in range(max_passes):
            attempted = await self.deliver_due()
            if not attempted:
                break
            total += attempted
        return total

    async def _deliver(self, attempt: DeliveryAttempt) -> bool:
        url = attempt.target_inbox_url
        async with self._inbox_locks.hold(url):
            # Another worker may have handled this head meanwhile
            if self.queue.head(url) is not attempt or attempt.next_attempt_at > self.clock():
                return False

            body = json.dumps(attempt.payload, separators=(",", ":")).encode()
            try:
                await self.guard.ensure_safe(url)
                headers = self.signer.sign(attempt.actor_id, "POST", url, body)
            except UnsafeUrlError as e:
                self._fail(attempt, str(e))
                return True
            except Exception:
                logger.exception(f"Could not sign delivery of {attempt.activity_id}")
                self._fail(attempt, "signing failed")
                return True

            headers["Content-Type"] = ACTIVITY_JSON
            attempt.attempt_count += 1
            try:
                response = await self.client.post(
                    url, content=body, headers=headers, timeout=self.timeout
                )
            except httpx.TransportError as e:
                self._retry_or_fail(attempt, f"transport error: {type(e).__name__}")
                return True
            except httpx.RequestError as e:
                self._fail(attempt, f"request error: {type(e).__name__}")
                return True
            except Exception as e:
                logger.exception(f"Delivery of {attempt.activity_id} to {url} raised")
                self._retry_or_fail(attempt, f"unexpected error: {type(e).__name__}")
                return True

            attempt.last_status = response.status_code
            outcome = classify_status(response.status_code)
            if outcome is DeliveryOutcome.SUCCESS:
                attempt.status = DeliveryStatus.DELIVERED
                self.queue.remove(attempt)
                logger.info(f"Delivered {attempt.activity_type} {attempt.activity_id} to {url}")
                self.notifier.notify(Notice(
                    "delivery.delivered", attempt.activity_id,
                    {"inbox": url, "attempts": attempt.attempt_count},
                ))
            elif outcome is DeliveryOutcome.TRANSIENT:
                self._retry_or_fail(attempt, f"HTTP {response.status_code}")
            else:
                self._fail(attempt, f"HTTP {response.status_code}", response.status_code)
            return True

    def _retry_or_fail(self, attempt: DeliveryAttempt, error: str):
        if attempt.attempt_count >= self.max_attempts:
            self._fail(attempt, f"{error} (gave up after {attempt.attempt_count} attempts)")
            return

        delay = self.retry_delay(attempt.attempt_count)
        attempt.last_error = error
        attempt.next_attempt_at = self.clock() + delay
        self.queue.update(attempt)
        logger.warning(
            f"Delivery of {attempt.activity_id} to {attempt.target_inbox_url} failed "
            f"({error}); retry {attempt.attempt_count} in {delay:.0f}s"
        )
        self.notifier.notify(Notice(
            "delivery.retrying", attempt.activity_id,
            {"inbox": attempt.target_inbox_url, "error": error, "delay": delay},
        ))

    def _fail(self, attempt: DeliveryAttempt, error: str, status_code: int = None):
        attempt.status = DeliveryStatus.FAILED
        attempt.last_error = error
        self.queue.remove(attempt)
        logger.warning(
            f"Delivery of {attempt.activity_type} {attempt.activity_id} to "
            f"{attempt.target_inbox_url} failed permanently: {error}"
        )
        self.notifier.notify(Notice(
            "delivery.failed", attempt.activity_id,
            {"inbox": attempt.target_inbox_url, "error": error},
        ))

        callbacks = []
        if status_code == GONE_STATUS and self.on_gone:
            callbacks.append(lambda: self.on_gone(attempt.target_inbox_url))
        if self.on_failure:
            callbacks.append(lambda: self.on_failure(attempt))
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception(f"Delivery failure handler raised for {attempt.activity_id}")

    async def run(self):
        """Deliver forever, sleeping until the next delivery is due."""
        logger.info("Outbox worker started")
        while True:
            self._wake.clear()
            try:
                await self.deliver_due()
                next_due = self.queue.next_due_at()
                timeout = None if next_due is None else max(next_due - self.clock(), 0.0)
            except Exception:
                logger.exception("Outbox delivery pass failed")
                timeout = self.retry_base_delay
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def start(self):
        """Run the worker as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())

    async def stop(self):
        """Stop the background worker; queued deliveries stay queued."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Outbox worker stopped")
