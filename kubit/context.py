"""Utilities for tracing the phases of a reconciliation attempt."""

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[tuple[str, ...]] = contextvars.ContextVar(
    "trace", default=()
)


@dataclass
class Span:
    """Timing of a single traced section."""

    label: str
    start: float
    elapsed: float | None = None


@contextmanager
def trace_context(name: str) -> Generator[Span, None, None]:
    """Log entry and exit of a named section, nested under the current one.

    Sections nest per asyncio task since the stack lives in a context var.
    """
    stack = trace.get()
    token = trace.set(stack + (name,))
    span = Span(label=" > ".join(stack + (name,)), start=perf_counter())
    _LOGGER.debug("[Trace] > %s", span.label)
    try:
        yield span
    finally:
        span.elapsed = perf_counter() - span.start
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", span.label, span.elapsed)
