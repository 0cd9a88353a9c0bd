"""Lifecycle error taxonomy.

Every error is an expected outcome of concurrent multi-party interaction and
terminal for the single request. The ``code`` is stable and surfaced to
clients so they can tell "wrong state" from "not your order".
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all order lifecycle rejections."""

    code: str = "LIFECYCLE_ERROR"
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class OrderNotFound(LifecycleError):
    code = "ORDER_NOT_FOUND"
    status_code = 404


class InvalidTransition(LifecycleError):
    """Edge does not exist from the persisted status; retry after a fresh read."""

    code = "INVALID_TRANSITION"
    status_code = 409


class Unauthorized(LifecycleError):
    """Role or ownership mismatch; never retryable by the same caller."""

    code = "UNAUTHORIZED_TRANSITION"
    status_code = 403


class AlreadyClaimed(LifecycleError):
    """Caller lost a first-claim race."""

    code = "ALREADY_CLAIMED"
    status_code = 409


class ChallengeExpired(LifecycleError):
    code = "CHALLENGE_EXPIRED"
    status_code = 410


class VerificationFailed(LifecycleError):
    code = "VERIFICATION_FAILED"
    status_code = 400


class NoChallengeIssued(LifecycleError):
    code = "NO_CHALLENGE_ISSUED"
    status_code = 404
