"""
Mutation Coordinator

Serializes writes to the board. Every mutation names the critical sections
it needs ("job:<id>" for each job it reads or writes, "resource:<id>" for each
resource whose cross-job constraints it checks) and goes through:

    Proposed -> Validated -> Applied
    Proposed -> Rejected

Locks are taken in sorted key order, so two mutations can never wait on each
other in a cycle, and are held only for validate + apply. Rule loading,
database access and cache access never happen while a lock is held.

Mutations on disjoint jobs run concurrently; mutations on the same job are
totally ordered. The loser of a race sees the winner's state and is rejected
on its own merits, or with ConcurrentModification if the state it was
derived from moved underneath it. Nothing is retried on the caller's behalf.
"""

import itertools
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set, TypeVar, Union

from crewboard.engine.board_state import BoardState
from crewboard.engine.custom_constraints import MutationKind
from crewboard.engine.rule_registry import RuleRegistry, RuleSnapshot
from crewboard.engine.validator import Decision
from crewboard.models.verdict import ErrorKind, MutationRejected, Outcome, Verdict

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationStatus(str, Enum):
    PROPOSED = "proposed"
    VALIDATED = "validated"
    APPLIED = "applied"
    REJECTED = "rejected"


@dataclass
class MutationRecord:
    id: int
    kind: MutationKind
    keys: List[str] = field(default_factory=list)
    status: MutationStatus = MutationStatus.PROPOSED
    verdict: Optional[Verdict] = None


def job_key(job_id: str) -> str:
    return f"job:{job_id}"


def resource_key(resource_id: str) -> str:
    return f"resource:{resource_id}"


class LockTable:
    """One lock per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, keys: Iterable[str], timeout: float):
        acquired: List[threading.Lock] = []
        try:
            for key in sorted(set(keys)):
                lock = self.lock_for(key)
                if not lock.acquire(timeout=timeout):
                    raise MutationRejected.of(
                        ErrorKind.CONCURRENT_MODIFICATION,
                        f"Timed out waiting for {key}; another edit is in progress",
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


KeyFn = Callable[[], Set[str]]
ValidateFn = Callable[[RuleSnapshot], Union[Decision, Verdict]]
ApplyFn = Callable[[RuleSnapshot, Decision], T]


class MutationCoordinator:
    def __init__(self, state: BoardState, registry: RuleRegistry, lock_timeout: float = 5.0, history_size: int = 500):
        self.state = state
        self.registry = registry
        self.lock_timeout = lock_timeout
        self.locks = LockTable()
        self.history: Deque[MutationRecord] = deque(maxlen=history_size)
        self._ids = itertools.count(1)

    def execute(
        self,
        kind: MutationKind,
        keys: KeyFn,
        validate: ValidateFn,
        apply: ApplyFn,
        expected_versions: Optional[Dict[str, int]] = None,
    ) -> Outcome[T]:
        """
        Run one mutation. ``keys`` is evaluated before and again after the locks are
        taken; if the set grew in between, or an assignment it named vanished before
        the locks were held, the board changed shape under the caller.
        """
        record = MutationRecord(id=next(self._ids), kind=kind)
        self.history.append(record)
        try:
            rules = self.registry.snapshot()
            wanted = self._resolve_keys(keys)
            record.keys = sorted(wanted)
            with self.locks.hold(wanted, self.lock_timeout):
                if not self._resolve_keys(keys) <= wanted:
                    raise MutationRejected.of(
                        ErrorKind.CONCURRENT_MODIFICATION,
                        "The assignments involved changed while waiting; reload and try again",
                    )
                self._check_versions(expected_versions)
                decision = validate(rules)
                if isinstance(decision, Verdict):
                    decision = Decision(decision)
                if not decision.accepted:
                    raise MutationRejected(decision.verdict)
                record.status = MutationStatus.VALIDATED
                value = apply(rules, decision)
                self.state.bump(k.split(":", 1)[1] for k in wanted if k.startswith("job:"))
                record.status = MutationStatus.APPLIED
                record.verdict = decision.verdict
        except MutationRejected as rejected:
            record.status = MutationStatus.REJECTED
            record.verdict = rejected.verdict
            logger.warning(f"Mutation #{record.id} {kind.value} rejected: {rejected}")
            return Outcome.failure(rejected.verdict)
        logger.info(f"Mutation #{record.id} {kind.value} applied ({', '.join(record.keys)})")
        return Outcome.success(value, warnings=decision.verdict.warnings)

    def read(self, keys: Iterable[str], fn: Callable[[], T]) -> T:
        """Run a read-only function against a consistent view of the given keys."""
        with self.locks.hold(keys, self.lock_timeout):
            return fn()

    @staticmethod
    def _resolve_keys(keys: KeyFn) -> Set[str]:
        try:
            return keys()
        except KeyError as exc:
            raise MutationRejected.of(
                ErrorKind.CONCURRENT_MODIFICATION,
                f"Assignment {exc} was removed while the edit was being prepared; reload and try again",
            )

    def _check_versions(self, expected_versions: Optional[Dict[str, int]]) -> None:
        for job_id, expected in (expected_versions or {}).items():
            current = self.state.job_version(job_id)
            if current != expected:
                raise MutationRejected.of(
                    ErrorKind.CONCURRENT_MODIFICATION,
                    f"Job {job_id} changed (version {current}, expected {expected}); reload and try again",
                )
