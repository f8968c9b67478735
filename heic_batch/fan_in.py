"""
Fan-in counters on a batch record.

Each increment is one optimistic cycle that adds exactly 1 to a counter read
in a strongly consistent snapshot together with `nbFiles`. Since every
accepted write bumps the version and moves the counter by one, the value
`nbFiles` is produced by exactly one winning write, and only that caller sees
`reached_total`.

A `converted_files` increment that reaches the total also moves the batch to
ZIPPING inside the same conditional write.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from heic_batch.exceptions import BatchTerminated, CounterOverflow
from heic_batch.lifecycle import BatchEvent, BatchState, accepts_increments, next_state
from heic_batch.models import BatchRecord, Counter
from heic_batch.optimistic_updater import OptimisticUpdater

logger = logging.getLogger(__name__)

# Counters whose first increment means a file has started converting
_CONVERSION_COUNTERS = frozenset({Counter.UPLOADED_FILES, Counter.CONVERTED_FILES})


@dataclass(frozen=True)
class IncrementResult:
    reached_total: bool
    new_count: int
    record: BatchRecord


def increment_mutation(counter: Counter):
    counter = Counter(counter)

    def mutation(record: BatchRecord) -> Dict[str, Any]:
        if not accepts_increments(record.state):
            raise BatchTerminated(record.request_id, record.state.value)

        new_count = record.counter(counter) + 1
        if new_count > record.nb_files:
            raise CounterOverflow(record.request_id, counter.value, record.nb_files)

        changes: Dict[str, Any] = {counter.value: new_count}
        state = record.state
        if counter in _CONVERSION_COUNTERS and state == BatchState.CREATED:
            state = next_state(state, BatchEvent.CONVERSION_STARTED)
        if counter == Counter.CONVERTED_FILES and new_count == record.nb_files:
            state = next_state(state, BatchEvent.ALL_CONVERTED)
        if state != record.state:
            changes['state'] = state
        return changes

    return mutation


class FanInCounter:

    def __init__(self, updater: OptimisticUpdater):
        self.updater = updater

    def current(self, request_id: str) -> BatchRecord:
        return self.updater.read(request_id)

    def increment(self, request_id: str, counter: Counter) -> IncrementResult:
        counter = Counter(counter)
        result = self.updater.update(request_id, increment_mutation(counter))
        record = result.record
        new_count = record.counter(counter)
        reached_total = new_count == record.nb_files

        logger.info(f"{counter.value} of {request_id}: {new_count}/{record.nb_files} "
                    f"(state={record.state.value}, attempts={result.attempts})")
        if reached_total:
            logger.info(f"{counter.value} of {request_id} reached total {record.nb_files}")
        return IncrementResult(reached_total=reached_total, new_count=new_count, record=record)
