"""
mentorhub.errors — Error Taxonomy
==================================

Every failure that crosses a component boundary is one of five kinds.
Services raise them; the API layer maps them onto HTTP responses via
:func:`mentorhub.api.main.handle_mentorhub_error`.

Each error carries two messages:

* ``message`` — operator-facing detail, written to the logs.
* ``user_message`` — the actionable text an end user may see.  Malformed
  webhooks and invariant violations never expose anything beyond a
  generic line.
"""

from __future__ import annotations


class MentorhubError(Exception):
    """Base class for all domain errors."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        if user_message is not None:
            self.user_message = user_message


class NoCredentialError(MentorhubError):
    """The mentor has no stored scheduling credential."""

    user_message = "Connect your scheduling account to continue."

    def __init__(self, mentor_id: int):
        super().__init__(f"No scheduling credential stored for mentor {mentor_id}")
        self.mentor_id = mentor_id


class AuthError(MentorhubError):
    """Every token refresh path has been exhausted."""

    user_message = "Please reconnect your scheduling account."

    def __init__(self, message: str, *, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class MalformedWebhookError(MentorhubError):
    """An inbound webhook failed shape validation or authentication."""

    user_message = "Invalid webhook payload."


class ProcessorError(MentorhubError):
    """A payment processor or scheduling provider call failed.

    ``retryable`` is True for timeouts and for failures of idempotent
    (GET-style or idempotency-keyed) calls.  State-mutating calls without
    an idempotency key are never retried automatically.
    """

    user_message = "The request could not be completed. Please try again shortly."

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        body: str = "",
        retryable: bool = False,
        user_message: str | None = None,
    ):
        super().__init__(message, user_message=user_message)
        self.provider = provider
        self.status_code = status_code
        self.body = body
        self.retryable = retryable


class InvariantViolation(MentorhubError):
    """A write would break a structural invariant.  Always a bug."""

    user_message = "Internal error."
