"""Error taxonomy for the federated store core.

Caller-facing operations raise the not-found, conflict, invalid-input and
auth families directly. ``StoreUnreachable`` and ``PartialFailure`` raised
inside fan-out steps are caught and logged by the services; only the
initiator's own store write decides whether an operation succeeded.
"""

from __future__ import annotations

from typing import List, Optional


class OpenChatError(Exception):
    """Base class for all core errors."""

    code = "error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# Not found

class NotFoundError(OpenChatError):
    code = "not_found"


class UserNotFound(NotFoundError):
    code = "user_not_found"


class UnknownCaller(NotFoundError):
    code = "unknown_caller"


class AuthenticatorNotFound(NotFoundError):
    code = "authenticator_not_found"


class GroupNotFound(NotFoundError):
    code = "group_not_found"


# Conflict

class ConflictError(OpenChatError):
    code = "conflict"


class DuplicateUsername(ConflictError):
    code = "duplicate_username"


class AlreadyLinked(ConflictError):
    code = "already_linked"


class SelfLinkRejected(ConflictError):
    code = "self_link_rejected"


# Invalid input

class InvalidInputError(OpenChatError):
    code = "invalid_input"


class InvalidLocation(InvalidInputError):
    code = "invalid_location"


class MissingField(InvalidInputError):
    code = "missing_field"


class WeakPassword(InvalidInputError):
    code = "weak_password"


# Authentication

class AuthError(OpenChatError):
    code = "auth_failed"


class InvalidPassword(AuthError):
    code = "invalid_password"


class IncompleteAccount(AuthError):
    code = "incomplete_account"


class PasswordNotSet(AuthError):
    code = "password_not_set"


class NotAuthenticated(AuthError):
    code = "not_authenticated"


# Permission

class PermissionDenied(OpenChatError):
    code = "permission_denied"


class NotAMember(PermissionDenied):
    code = "not_a_member"


class NotCreator(PermissionDenied):
    code = "not_creator"


# Key material / directory exhaustion

class MissingKeys(OpenChatError):
    code = "missing_keys"


class AuthenticatorExhausted(OpenChatError):
    code = "authenticator_exhausted"


# Availability

class StoreUnreachable(OpenChatError):
    code = "store_unreachable"

    def __init__(self, message: str = "", location: Optional[str] = None, **details):
        super().__init__(message, **details)
        self.location = location


class PartialFailure(OpenChatError):
    code = "partial_failure"

    def __init__(self, message: str = "", failed: Optional[List[str]] = None, **details):
        super().__init__(message, **details)
        self.failed = list(failed or [])


class PartialLink(PartialFailure):
    """The caller's side of a link was written but the peer's side was not."""

    code = "partial_link"
