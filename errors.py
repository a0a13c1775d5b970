"""
Pipeline error kinds.

Per-image and per-query failures are absorbed by the stage that sees them;
stage-level failures are turned into Scan.error_message by the orchestrator
and never raised past it.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PipelineError(Exception):
    """Base class. `kind` is the stable name stored with failures."""
    retryable: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class AnalysisFailed(PipelineError):
    """One image could not be analysed (provider error or malformed response)."""


class NoUsableAnalysis(PipelineError):
    """The merger was given nothing to merge."""


class AllImagesFailed(PipelineError):
    """Every image analysis in a run failed."""


class ResearchUnavailable(PipelineError):
    """No research query succeeded. Resumable from the research stage."""
    retryable = True


class RefinementFailed(PipelineError):
    """The AI refinement path failed. Resumable from the refinement stage."""
    retryable = True


class ProviderUnavailable(PipelineError):
    """A search provider call failed or timed out."""
    retryable = True


class ImageLoadError(PipelineError):
    """An image reference could not be read from storage."""


class IllegalTransition(PipelineError):
    """A status write that is not an edge of the scan state machine."""


# ── User-facing messages ──────────────────────────────────────────────────────

def format_user_error(exc: BaseException) -> str:
    """Map an exception to the message stored on the Scan."""
    message = str(exc).lower()

    if isinstance(exc, AllImagesFailed):
        return "None of the photos could be analysed. Please try again with clearer photos."
    if isinstance(exc, ResearchUnavailable):
        return "Market research is temporarily unavailable. You can retry from the research step."
    if "rate_limit" in message or "429" in message:
        return "Service is temporarily busy. Please try again in a moment."
    if isinstance(exc, asyncio.TimeoutError) or "timeout" in message or "timed out" in message:
        return "Request timed out. Please try again."
    if "api key" in message or "unauthorized" in message:
        return "Service configuration error. Please contact support."
    if "not found" in message:
        return "Image could not be found. Please try uploading again."
    if "parse" in message or "json" in message:
        return "Could not read the item details. Please try with a clearer image."
    if isinstance(exc, PipelineError) and str(exc):
        return str(exc)
    return "An error occurred processing your item. Please try again."


def error_kind(exc: BaseException) -> str:
    """Stable failure name stored on the Scan and in the audit log."""
    return exc.kind if isinstance(exc, PipelineError) else type(exc).__name__


# ── Retry with backoff ────────────────────────────────────────────────────────

_TRANSIENT_MARKERS = (
    "rate_limit", "rate limit", "timeout", "timed out", "429",
    "500", "502", "503", "overloaded", "connection reset",
)


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
) -> T:
    """
    Await fn(), retrying transient failures with exponential backoff + jitter.
    Non-transient errors are raised immediately.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not is_transient(exc):
                raise
            delay = base_delay * (2 ** attempt)
            delay = min(delay + random.random() * 0.3 * delay, max_delay)
            logger.warning(
                "Attempt %d/%d failed: %s, retrying in %.1fs",
                attempt + 1, max_retries, exc, delay,
            )
            await asyncio.sleep(delay)
            attempt += 1
