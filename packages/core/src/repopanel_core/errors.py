"""Error taxonomy for model invocation and routing.

Provider SDKs raise their own exception hierarchies. ``classify_error``
folds any of them into the small set the pipeline reacts to: an
authentication problem is fatal at the Lead stage, everything else is a
recoverable ``InvocationFailure``.
"""

from __future__ import annotations

import asyncio

_AUTH_MARKERS = ("401", "403", "authentication", "invalid api key", "unauthorized", "permission denied")


class RepoPanelError(Exception):
    """Base class for every error raised by repopanel_core."""


class InvocationFailure(RepoPanelError):
    """A model invocation did not produce usable text."""

    def __init__(self, message: str, model_id: str | None = None):
        super().__init__(message)
        self.model_id = model_id


class AuthenticationFailure(InvocationFailure):
    """The provider rejected the credential."""


class InvocationTimeout(InvocationFailure):
    """The invocation exceeded its per-call or per-run budget."""


class ProviderError(InvocationFailure):
    """Any other provider-side failure (rate limits, 5xx, malformed responses)."""


class NoModelAvailable(RepoPanelError):
    """No enabled, credentialed model can serve the requested role."""

    def __init__(self, role: str, mode: str):
        super().__init__(f"No model available for role {role!r} in mode {mode!r}")
        self.role = role
        self.mode = mode


class ParseFailure(RepoPanelError):
    """Raised inside the normalizer when a strategy cannot use its input."""


def classify_error(exc: BaseException, model_id: str | None = None) -> InvocationFailure:
    """Map an arbitrary exception onto the invocation taxonomy."""
    if isinstance(exc, InvocationFailure):
        if exc.model_id is None:
            exc.model_id = model_id
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return InvocationTimeout(f"Invocation timed out: {exc}" if str(exc) else "Invocation timed out", model_id)

    status = getattr(exc, "status_code", None)
    if status in (401, 403):
        return AuthenticationFailure(str(exc), model_id)

    message = str(exc)
    lowered = message.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationFailure(message, model_id)
    return ProviderError(message or exc.__class__.__name__, model_id)
