# calfed/errors.py
"""
Federation error taxonomy.

Every error carries:
- kind: the classification that is safe to expose to remote servers
- http_status: the status an HTTP layer should answer with
- a default message, overridable per instance

Classes:
- ValidationError: caller-fixable input problems
- NotFoundError: the referenced calendar or relationship does not exist
- RemoteError: the remote server is unreachable or non-conformant
- OperationError: the request is well-formed but not allowed
- SignatureVerificationError: the sender could not be authenticated
- InboxProcessingError: a local bug while handling an inbound activity
"""

from typing import Optional


class FederationError(Exception):
    """Base class for all federation errors."""
    kind = "federation"
    http_status = 500
    default_message = "Federation error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return self.args[0]


class ValidationError(FederationError):
    kind = "validation"
    http_status = 400
    default_message = "Invalid federation input"


class NotFoundError(FederationError):
    kind = "not_found"
    http_status = 404
    default_message = "Not found"


class RemoteError(FederationError):
    kind = "federation"
    http_status = 502
    default_message = "Remote server error"


class OperationError(FederationError):
    kind = "operation"
    http_status = 409
    default_message = "Operation not allowed"


# Validation

class InvalidRemoteCalendarIdentifierError(ValidationError):
    default_message = "Invalid remote calendar identifier format. Expected username@domain"


class InvalidRepostPolicyError(ValidationError):
    default_message = "Invalid auto-repost policy value"


class InvalidSharedEventUrlError(ValidationError):
    default_message = "Invalid event URL for sharing"


class InvalidActivityError(ValidationError):
    default_message = "Malformed activity"


class UnsupportedActivityTypeError(ValidationError):
    default_message = "Activity type not supported"


class UnsafeUrlError(ValidationError):
    default_message = "URL targets a disallowed address"


# Not found

class FollowRelationshipNotFoundError(NotFoundError):
    default_message = "Follow relationship not found"


class RemoteCalendarNotFoundError(NotFoundError):
    default_message = "Remote calendar not found"


class CalendarNotFoundError(NotFoundError):
    default_message = "Calendar not found"


# Federation / network

class RemoteDomainUnreachableError(RemoteError):
    default_message = "Cannot connect to remote domain"


class ActivityPubNotSupportedError(RemoteError):
    default_message = "Remote server does not support ActivityPub"


class RemoteProfileFetchError(RemoteError):
    default_message = "Failed to fetch remote actor profile"


# Operation

class SelfFollowError(OperationError):
    http_status = 400
    default_message = "Calendar cannot follow itself"


class DuplicateFollowError(OperationError):
    default_message = "Already following this calendar"


class InvalidFollowTransitionError(OperationError):
    default_message = "Follow relationship cannot make this transition"


# Authentication / local failures

class SignatureVerificationError(FederationError):
    kind = "unauthorized"
    http_status = 401
    default_message = "Request signature could not be verified"


class InboxProcessingError(FederationError):
    kind = "internal"
    http_status = 500
    default_message = "Activity could not be processed"
