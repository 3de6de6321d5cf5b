# calfed/inbox.py
"""
Inbound activity processing.

Every request to a calendar inbox or the shared inbox goes through
InboxDispatcher.receive:

1. The HTTP signature is verified against the signer's published key
   (unsigned or badly signed requests are refused outright)
2. The body is parsed into an Activity whose actor must be the signer
3. Activities already processed are acknowledged without side effects
4. The activity is routed to the follow or event-sharing handlers
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .activitypub.activity import Activity, ActivityType
from .activitypub.actor import RemoteActor
from .activitypub.resolver import ActorResolver
from .activitypub.signatures import HttpSignatureVerifier, SignedRequest, key_id_from_headers
from .errors import (
    FederationError,
    InboxProcessingError,
    SignatureVerificationError,
    UnsupportedActivityTypeError,
)
from .follow import FollowManager
from .locks import KeyedLock
from .sharing import EventShareHandler

logger = logging.getLogger(__name__)


class ActivityLedger:
    """
    Ids of activities already processed.

    In memory by default; with a store_dir:

        store_dir/
            ledger.json     # activity id -> type, actor, processed_at
    """

    def __init__(self, store_dir: Path | str = None, clock: Callable[[], float] = time.time):
        self.store_dir = Path(store_dir) if store_dir else None
        self.clock = clock
        self._processed: Dict[str, Dict[str, Any]] = {}
        if self.store_dir:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _path(self) -> Path:
        return self.store_dir / "ledger.json"

    def _load(self):
        path = self._path()
        if path.exists():
            with open(path) as f:
                self._processed = json.load(f).get("processed", {})

    def _save(self):
        if not self.store_dir:
            return
        tmp_path = self._path().with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump({"version": "1.0", "processed": self._processed}, f, indent=2)
        os.replace(tmp_path, self._path())

    def mark_processed(self, activity: Activity) -> None:
        self._processed[activity.id] = {
            "type": activity.type.value,
            "actor": activity.actor,
            "processed_at": self.clock(),
        }
        self._save()

    def get(self, activity_id: str) -> Optional[Dict[str, Any]]:
        return self._processed.get(activity_id)

    def __contains__(self, activity_id: str) -> bool:
        return activity_id in self._processed

    def __len__(self) -> int:
        return len(self._processed)


@dataclass
class InboxResult:
    """
    Outcome of one inbound request.

    Attributes:
        activity: The parsed activity
        sender: The verified sender
        duplicate: True if the activity had already been processed
        result: What the handler returned (relationship, event, ...)
    """
    activity: Activity
    sender: RemoteActor
    duplicate: bool = False
    result: Any = None


class InboxDispatcher:
    """
    Verifies, deduplicates and routes inbound activities.

    Args:
        resolver: Fetches signers' actor documents and keys
        follows: Follow state machine
        sharing: Event sharing handler
        verifier: Object with ``verify(public_key_pem, request) -> bool``
        ledger: Processed activity ids
    """

    def __init__(
        self,
        resolver: ActorResolver,
        follows: FollowManager,
        sharing: EventShareHandler,
        verifier=None,
        ledger: ActivityLedger = None,
    ):
        self.resolver = resolver
        self.follows = follows
        self.sharing = sharing
        self.verifier = verifier or HttpSignatureVerifier()
        self.ledger = ledger if ledger is not None else ActivityLedger()
        self._locks = KeyedLock()

    async def receive(self, raw_body: bytes, headers: Mapping[str, str], *,
                      method: str = "POST", path: str = "/inbox") -> InboxResult:
        """
        Process one inbound request.

        Args:
            raw_body: Request body exactly as received
            headers: Request headers
            method: HTTP method (part of the signed string)
            path: Request path and query (part of the signed string)

        Raises:
            SignatureVerificationError: Missing, invalid or mismatched signature
            InvalidActivityError / UnsupportedActivityTypeError: Bad activity
            FederationError: Whatever the handler classified
            InboxProcessingError: Anything unexpected (details only in the log)
        """
        try:
            return await self._receive(raw_body, headers, method, path)
        except FederationError:
            raise
        except Exception as e:
            logger.exception("Unexpected error processing inbound activity")
            raise InboxProcessingError() from e

    async def _receive(self, raw_body: bytes, headers: Mapping[str, str],
                       method: str, path: str) -> InboxResult:
        request = SignedRequest(method=method, path=path, headers=dict(headers), body=raw_body)
        key_id = key_id_from_headers(request.headers)
        if not key_id:
            logger.warning(f"Refused unsigned request to {path}")
            raise SignatureVerificationError("Request is not signed")

        sender = await self._verified_sender(key_id, request)

        activity = Activity.from_json(raw_body)
        if not sender.is_same_actor(activity.actor):
            logger.warning(f"Activity {activity.id} claims actor {activity.actor} "
                           f"but was signed by {sender.actor_id}")
            raise SignatureVerificationError("Activity actor does not match the signer")

        async with self._locks.hold(activity.id):
            if activity.id in self.ledger:
                logger.info(f"Duplicate {activity.type.value} {activity.id} acknowledged")
                return InboxResult(activity=activity, sender=sender, duplicate=True)

            result = await self._dispatch(activity, sender)
            self.ledger.mark_processed(activity)

        logger.info(f"Processed {activity.type.value} {activity.id} from {sender.identifier}")
        return InboxResult(activity=activity, sender=sender, result=result)

    async def _verified_sender(self, key_id: str, request: SignedRequest) -> RemoteActor:
        owner = key_id.split("#", 1)[0]
        was_cached = self.resolver.is_cached_url(owner)
        sender = await self._signer(owner)
        if self._verify(sender, request):
            return sender

        if was_cached:
            # The remote may have rotated its key since we cached it
            logger.info(f"Signature from {owner} failed against cached key, refetching")
            sender = await self._signer(owner, refresh=True)
            if self._verify(sender, request):
                return sender

        logger.warning(f"Invalid signature from {owner} on {request.path}")
        raise SignatureVerificationError()

    async def _signer(self, owner: str, refresh: bool = False) -> RemoteActor:
        try:
            signer = await self.resolver.resolve_actor_url(owner, refresh=refresh)
        except FederationError as e:
            logger.warning(f"Could not fetch signing key of {owner}: {e.message}")
            raise SignatureVerificationError("Could not fetch the signing key") from e
        # keyId owner and sender identity must be the same actor
        if not signer.is_same_actor(owner):
            logger.warning(f"Signing key {owner} resolved to another actor {signer.actor_id}")
            raise SignatureVerificationError()
        return signer

    def _verify(self, sender: RemoteActor, request: SignedRequest) -> bool:
        try:
            return bool(self.verifier.verify(sender.public_key, request))
        except Exception:
            logger.exception(f"Signature verifier failed for {sender.actor_id}")
            return False

    async def _dispatch(self, activity: Activity, sender: RemoteActor) -> Any:
        kind = activity.type
        if kind is ActivityType.FOLLOW:
            return await self.follows.receive_follow(activity, sender)
        if kind is ActivityType.ACCEPT:
            return await self.follows.receive_accept(activity, sender)
        if kind is ActivityType.REJECT:
            return await self.follows.receive_reject(activity, sender)
        if kind is ActivityType.UNDO:
            return await self._dispatch_undo(activity, sender)
        if kind is ActivityType.CREATE:
            return await self.sharing.receive_create(activity, sender)
        if kind is ActivityType.UPDATE:
            return await self.sharing.receive_update(activity, sender)
        if kind is ActivityType.DELETE:
            return await self.sharing.receive_delete(activity, sender)
        if kind is ActivityType.ANNOUNCE:
            return await self.sharing.receive_announce(activity, sender)
        raise UnsupportedActivityTypeError(f"Activity type not supported: {kind.value}")

    async def _dispatch_undo(self, activity: Activity, sender: RemoteActor) -> Any:
        inner = activity.inner_activity
        if inner is None:
            if self.sharing.is_announcement(activity.object_id):
                return await self.sharing.receive_undo_announce(activity, sender)
            return await self.follows.receive_undo(activity, sender)
        if inner.type is ActivityType.FOLLOW:
            return await self.follows.receive_undo(activity, sender)
        if inner.type is ActivityType.ANNOUNCE:
            return await self.sharing.receive_undo_announce(activity, sender)
        raise UnsupportedActivityTypeError(f"Undo of {inner.type.value} not supported")
