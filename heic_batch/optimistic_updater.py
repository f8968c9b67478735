"""
Optimistic read-modify-write over the record store.

Each cycle does a strongly consistent read, computes the change with a pure
mutation function, and writes it conditionally on the version it read. Lost
races are retried with a growing, jittered delay so that dozens of workers
finishing at once spread out instead of re-colliding on every retry.

Mutation contract: `mutation(record) -> Optional[dict]`
  - a dict of field changes to write (snake_case field names)
  - None or {} when nothing needs to change (no write, no version bump)
  - raise BusinessRuleViolation to abort without retrying
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from heic_batch.exceptions import RetriesExhausted, VersionMismatch
from heic_batch.models import BatchRecord
from heic_batch.record_store import RecordStore

logger = logging.getLogger(__name__)

Mutation = Callable[[BatchRecord], Optional[Dict[str, Any]]]


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 15
    initial_delay: float = 0.025
    growth_factor: float = 1.5
    jitter_floor: float = 0.8

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError('max_attempts must be at least 1')
        if self.growth_factor <= 1:
            raise ValueError('growth_factor must be greater than 1')
        if not 0 < self.jitter_floor <= 1:
            raise ValueError('jitter_floor must be in (0, 1]')

    def delays(self, rng: random.Random) -> Iterator[float]:
        """Yield the sleep before each retry: uniform in [floor*d, d], d *= growth."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield rng.uniform(self.jitter_floor * delay, delay)
            delay *= self.growth_factor


@dataclass(frozen=True)
class UpdateResult:
    record: BatchRecord
    previous: BatchRecord
    attempts: int
    changed: bool


class OptimisticUpdater:

    def __init__(self, store: RecordStore, policy: Optional[BackoffPolicy] = None,
                 sleep: Callable[[float], None] = time.sleep, rng: Optional[random.Random] = None):
        self.store = store
        self.policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def read(self, request_id: str) -> BatchRecord:
        """Strongly consistent read of the current record."""
        return self.store.get(request_id, consistent_read=True)

    def update(self, request_id: str, mutation: Mutation) -> UpdateResult:
        """Apply `mutation` to the record, retrying lost races.

        BatchNotFound and BusinessRuleViolation propagate immediately;
        RetriesExhausted is raised once the attempt budget is spent.
        """
        delays = self.policy.delays(self._rng)
        for attempt in range(1, self.policy.max_attempts + 1):
            current = self.read(request_id)
            changes = mutation(current)
            if not changes:
                logger.debug(f"No change needed for {request_id} at version {current.version}")
                return UpdateResult(record=current, previous=current, attempts=attempt, changed=False)

            try:
                updated = self.store.conditional_update(request_id, changes, current.version)
            except VersionMismatch as e:
                logger.debug(f"CAS conflict on {request_id} (attempt {attempt}): {e}")
                delay = next(delays, None)
                if delay is None:
                    break
                logger.info(f"Retrying update of {request_id} in {delay * 1000:.1f}ms "
                            f"(attempt {attempt}/{self.policy.max_attempts})")
                self._sleep(delay)
                continue

            logger.debug(f"Updated {request_id}: version {current.version} -> {updated.version}")
            return UpdateResult(record=updated, previous=current, attempts=attempt, changed=True)

        logger.error(f"Out of retries updating {request_id} after {self.policy.max_attempts} attempts")
        raise RetriesExhausted(request_id, self.policy.max_attempts)
