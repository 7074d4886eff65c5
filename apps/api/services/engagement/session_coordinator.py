"""
Session Coordinator

Guards client-scoped async work against subject switches. Every operation
gets a ticket (subject, kind, epoch, sequence) at issue time; its result is
applied only while the ticket is still current:

- the subject it was issued for is still selected
- no re-selection happened since (epoch unchanged)
- no newer operation of the same kind was issued for that subject

Anything else is a stale result and is dropped without touching state.
Cancellation is cooperative: the underlying work is never interrupted,
only the application of its result is suppressed.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationOutcome(str, Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"


@dataclass(frozen=True)
class OperationTicket:
    subject_id: str
    kind: str
    epoch: int
    sequence: int


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    ticket: OperationTicket
    outcome: OperationOutcome
    value: Optional[T] = None

    @property
    def applied(self) -> bool:
        return self.outcome == OperationOutcome.APPLIED


class NoSubjectSelectedError(RuntimeError):
    pass


class SessionCoordinator:
    def __init__(self):
        self._subject_id: Optional[str] = None
        self._epoch = 0
        self._sequence = 0
        self._latest: Dict[Tuple[str, str], int] = {}

    @property
    def subject_id(self) -> Optional[str]:
        return self._subject_id

    @property
    def epoch(self) -> int:
        return self._epoch

    def select(self, subject_id: Optional[str]) -> int:
        """
        Make `subject_id` the active subject and start a new epoch.

        Re-selecting the same subject also starts a new epoch, so A -> B -> A
        still drops results issued during the first A.
        """
        previous = self._subject_id
        self._subject_id = subject_id
        self._epoch += 1
        if previous != subject_id:
            logger.debug(f"Active subject changed: {previous} -> {subject_id} (epoch {self._epoch})")
        return self._epoch

    def issue(self, kind: str, subject_id: Optional[str] = None) -> OperationTicket:
        subject_id = subject_id or self._subject_id
        if subject_id is None:
            raise NoSubjectSelectedError(f"Cannot issue '{kind}' without a selected subject")
        self._sequence += 1
        self._latest[(subject_id, kind)] = self._sequence
        return OperationTicket(subject_id=subject_id, kind=kind, epoch=self._epoch, sequence=self._sequence)

    def is_current(self, ticket: OperationTicket) -> bool:
        return (
            ticket.subject_id == self._subject_id
            and ticket.epoch == self._epoch
            and self._latest.get((ticket.subject_id, ticket.kind)) == ticket.sequence
        )

    def _discard(self, ticket: OperationTicket, what: str) -> OperationResult:
        logger.debug(
            f"Discarding stale {what} for '{ticket.kind}' (subject {ticket.subject_id}, "
            f"active {self._subject_id})"
        )
        return OperationResult(ticket=ticket, outcome=OperationOutcome.DISCARDED)

    async def run(
        self,
        kind: str,
        operation: Callable[[], Awaitable[T]],
        apply: Callable[[T], Any],
        ticket: Optional[OperationTicket] = None,
    ) -> OperationResult[T]:
        """
        Await `operation` and hand its value to `apply` if the ticket is still current.

        Failures of a current operation propagate to the caller; failures of a
        stale one are dropped like any other stale result.
        """
        ticket = ticket or self.issue(kind)
        try:
            value = await operation()
        except Exception:
            if not self.is_current(ticket):
                return self._discard(ticket, "failure")
            raise

        if not self.is_current(ticket):
            return self._discard(ticket, "result")

        apply(value)
        return OperationResult(ticket=ticket, outcome=OperationOutcome.APPLIED, value=value)

    async def run_optimistic(
        self,
        kind: str,
        update: "OptimisticUpdate",
        operation: Callable[[], Awaitable[T]],
    ) -> OperationResult[T]:
        """
        Apply `update` tentatively, then confirm or revert it on the outcome of `operation`.

        A stale outcome neither commits nor reverts: the state the update
        touched belongs to a subject that is no longer shown.
        """
        ticket = self.issue(kind)
        update.apply()
        try:
            value = await operation()
        except Exception:
            if not self.is_current(ticket):
                return self._discard(ticket, "failure")
            update.revert()
            raise

        if not self.is_current(ticket):
            return self._discard(ticket, "result")

        update.commit(value)
        return OperationResult(ticket=ticket, outcome=OperationOutcome.APPLIED, value=value)


class OptimisticUpdate:
    """
    Two-phase local mutation.

    apply() performs the tentative change; exactly one of commit(value) or
    revert() finishes it.
    """

    def __init__(
        self,
        apply: Callable[[], Any],
        revert: Callable[[], Any],
        commit: Optional[Callable[[Any], Any]] = None,
    ):
        self._apply = apply
        self._revert = revert
        self._commit = commit
        self.state = "idle"

    def apply(self) -> None:
        if self.state != "idle":
            raise RuntimeError(f"Optimistic update already {self.state}")
        self._apply()
        self.state = "applied"

    def commit(self, value: Any = None) -> None:
        if self.state != "applied":
            raise RuntimeError(f"Cannot commit an update that is {self.state}")
        if self._commit is not None:
            self._commit(value)
        self.state = "committed"

    def revert(self) -> None:
        if self.state != "applied":
            raise RuntimeError(f"Cannot revert an update that is {self.state}")
        self._revert()
        self.state = "reverted"
