"""Model invocation port.

The pipeline talks to models only through ``ModelInvoker``. Every call it
makes goes through ``invoke_bounded``, which applies the per-call timeout,
caps it by the run-wide ``Deadline`` and folds whatever the invoker raised
into the ``InvocationFailure`` taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from repopanel_core.errors import InvocationTimeout, ProviderError, classify_error

if TYPE_CHECKING:
    from repopanel_core.router import ModelHandle

logger = logging.getLogger(__name__)

DEFAULT_INVOCATION_TIMEOUT = 30.0


@dataclass(frozen=True)
class Invocation:
    text: str
    model_id: str
    tokens_used: int | None = None
    latency_ms: int = 0


class ModelInvoker(ABC):
    @abstractmethod
    async def invoke(self, handle: ModelHandle, prompt: str, system_prompt: str | None = None) -> Invocation:
        """Send one prompt to the model behind ``handle`` and return its text.

        Implementations raise on failure; callers classify the exception.
        """


class Deadline:
    """Run-wide time budget and cancellation token.

    ``seconds=None`` means unbounded. ``cancel()`` expires the deadline
    immediately: calls in flight through ``invoke_bounded`` are abandoned and
    every later call fails fast.
    """

    def __init__(self, seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds
        self._cancelled = False
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._cancelled = True
        self._event.set()

    async def wait_cancelled(self) -> None:
        await self._event.wait()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def remaining(self) -> float | None:
        if self._cancelled:
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def budget(self, per_call: float | None) -> float | None:
        remaining = self.remaining()
        if remaining is None:
            return per_call
        if per_call is None:
            return remaining
        return min(per_call, remaining)


async def invoke_bounded(
    invoker: ModelInvoker,
    handle: ModelHandle,
    prompt: str,
    system_prompt: str | None = None,
    *,
    timeout: float | None = DEFAULT_INVOCATION_TIMEOUT,
    deadline: Deadline | None = None,
) -> Invocation:
    """Invoke with a timeout and return non-empty text or raise InvocationFailure."""
    if deadline is not None and deadline.expired():
        reason = "cancelled" if deadline.cancelled else "exceeded"
        raise InvocationTimeout(f"Run deadline {reason} before invoking {handle.model_id}", handle.model_id)

    budget = deadline.budget(timeout) if deadline is not None else timeout
    call = asyncio.ensure_future(asyncio.wait_for(invoker.invoke(handle, prompt, system_prompt), timeout=budget))
    if deadline is not None:
        cancelled = asyncio.ensure_future(deadline.wait_cancelled())
        try:
            done, _ = await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not call.done():
                call.cancel()
        if call not in done:
            logger.warning("Run deadline cancelled while invoking %s", handle.model_id)
            raise InvocationTimeout(f"Run deadline cancelled while invoking {handle.model_id}", handle.model_id)

    try:
        result = await call
    except asyncio.CancelledError:
        raise
    except Exception as e:
        failure = classify_error(e, handle.model_id)
        logger.warning("Invocation of %s failed: %s: %s", handle.model_id, failure.__class__.__name__, failure)
        raise failure from e

    if not result.text or not result.text.strip():
        raise ProviderError(f"{handle.model_id} returned an empty response", handle.model_id)
    return result
