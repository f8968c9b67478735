"""
Batch state machine.

    CREATED -> CONVERTING -> ZIPPING -> DONE
                   |            |
                   +-> FAILED <-+

FAILED -> ZIPPING is only taken by the archival worker when a redelivered
archive task finds a batch whose conversions all completed.
"""

from enum import Enum
from typing import Dict, Tuple

from heic_batch.exceptions import IllegalTransition


class BatchState(str, Enum):
    CREATED = 'CREATED'
    CONVERTING = 'CONVERTING'
    ZIPPING = 'ZIPPING'
    DONE = 'DONE'
    FAILED = 'FAILED'


class BatchEvent(str, Enum):
    CONVERSION_STARTED = 'CONVERSION_STARTED'
    ALL_CONVERTED = 'ALL_CONVERTED'
    CONVERSION_FAILED = 'CONVERSION_FAILED'
    ARCHIVE_STORED = 'ARCHIVE_STORED'
    ARCHIVE_FAILED = 'ARCHIVE_FAILED'
    ARCHIVE_RETRIED = 'ARCHIVE_RETRIED'


TRANSITIONS: Dict[Tuple[BatchState, BatchEvent], BatchState] = {
    (BatchState.CREATED, BatchEvent.CONVERSION_STARTED): BatchState.CONVERTING,
    (BatchState.CONVERTING, BatchEvent.ALL_CONVERTED): BatchState.ZIPPING,
    (BatchState.CONVERTING, BatchEvent.CONVERSION_FAILED): BatchState.FAILED,
    (BatchState.ZIPPING, BatchEvent.ARCHIVE_STORED): BatchState.DONE,
    (BatchState.ZIPPING, BatchEvent.ARCHIVE_FAILED): BatchState.FAILED,
    (BatchState.FAILED, BatchEvent.ARCHIVE_RETRIED): BatchState.ZIPPING,
}

TERMINAL_STATES = frozenset({BatchState.DONE, BatchState.FAILED})


def next_state(state: BatchState, event: BatchEvent) -> BatchState:
    """Return the state reached from `state` on `event`, or raise IllegalTransition."""
    try:
        return TRANSITIONS[(BatchState(state), event)]
    except KeyError:
        raise IllegalTransition(BatchState(state).value, event.value) from None


def can_transition(state: BatchState, event: BatchEvent) -> bool:
    return (BatchState(state), event) in TRANSITIONS


def accepts_increments(state: BatchState) -> bool:
    """Counters stop moving once a batch is DONE or FAILED."""
    return BatchState(state) not in TERMINAL_STATES
