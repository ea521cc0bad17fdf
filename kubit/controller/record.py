"""Per installation bookkeeping of reconciliation attempts."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging

from kubit.exceptions import ConflictError, KubitException
from kubit.manifest import NamedResource

__all__ = [
    "AttemptState",
    "AttemptRecord",
]

_LOGGER = logging.getLogger(__name__)


class AttemptState(str, Enum):
    """Where an installation is in its reconciliation cycle."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    SETTLED = "settled"


@dataclass
class AttemptRecord:
    """State of the attempts on one installation.

    At most one attempt is in flight per record. Triggers arriving while it
    runs set `pending`, a one slot mailbox, so any number of them result in
    a single follow up attempt.
    """

    resource_id: NamedResource
    state: AttemptState = AttemptState.IDLE

    generation: int | None = None
    """Generation the current or last attempt reconciles."""

    pending: bool = False
    force: bool = False
    """Run the next attempt even if the generation was already observed."""

    failures: int = 0
    """Consecutive failed attempts, driving the retry backoff."""

    last_error: KubitException | None = None
    succeeded: bool | None = None

    terminal_generation: int | None = None
    """Generation that failed with a terminal error and is not retried."""

    paused: bool | None = None
    """Pause flag seen by the last check, to detect toggles."""

    retry: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def in_flight(self) -> bool:
        return self.state in (AttemptState.PLANNING, AttemptState.EXECUTING)

    def begin(self, generation: int) -> None:
        """Move from Idle to Planning for an attempt on `generation`.

        Raises ConflictError if an attempt is already in flight.
        """
        if self.in_flight:
            raise ConflictError(
                f"Attempt on {self.resource_id} for generation {self.generation} "
                "is already in flight"
            )
        self.state = AttemptState.PLANNING
        self.generation = generation
        self.force = False
        _LOGGER.debug("%s: planning generation %d", self.resource_id, generation)

    def executing(self) -> None:
        self.state = AttemptState.EXECUTING

    def settle(self, error: KubitException | None) -> None:
        """Record the outcome of the attempt in flight."""
        self.state = AttemptState.SETTLED
        self.succeeded = error is None
        self.last_error = error
        if error is None:
            self.failures = 0
            self.terminal_generation = None
        elif error.retryable:
            self.failures += 1
        else:
            self.terminal_generation = self.generation

    def idle(self) -> None:
        self.state = AttemptState.IDLE

    def cancel_retry(self) -> None:
        if self.retry is not None and not self.retry.done():
            self.retry.cancel()
        self.retry = None
