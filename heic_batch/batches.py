"""
Request-level operations used by the API handlers and workers.
"""

import logging
from typing import Any, Dict, Optional

from heic_batch.exceptions import BusinessRuleViolation
from heic_batch.lifecycle import BatchEvent, BatchState, next_state
from heic_batch.models import MAX_FILES_PER_REQUEST, BatchRecord, new_batch_record
from heic_batch.optimistic_updater import OptimisticUpdater, UpdateResult
from heic_batch.record_store import RecordStore

logger = logging.getLogger(__name__)

STATUS_FIELDS = ('state', 'nb_files', 'uploaded_files', 'converted_files')


def create_batch(store: RecordStore, nb_files: int, ttl_days: int,
                 request_id: Optional[str] = None) -> BatchRecord:
    """Create the CREATED record of a new request. The only unconditional write."""
    if isinstance(nb_files, bool) or not isinstance(nb_files, int):
        raise BusinessRuleViolation('nbFiles must be an integer')
    if not 1 <= nb_files <= MAX_FILES_PER_REQUEST:
        raise BusinessRuleViolation(f'nbFiles must be between 1 and {MAX_FILES_PER_REQUEST}')
    return store.put(new_batch_record(nb_files, ttl_days, request_id=request_id))


def get_status(store: RecordStore, request_id: str) -> Dict[str, Any]:
    """Read-only projection for the status API; reflects the last committed write."""
    fields = store.project(request_id, STATUS_FIELDS, consistent_read=True)
    return {
        'requestId': request_id,
        'state': BatchState(fields['state']).value,
        'nbFiles': fields.get('nb_files', 0),
        'uploaded': fields.get('uploaded_files', 0),
        'processed': fields.get('converted_files', 0),
    }


def _conversion_failed(record: BatchRecord):
    if record.state == BatchState.FAILED:
        return None
    state = record.state
    if state == BatchState.CREATED:
        state = next_state(state, BatchEvent.CONVERSION_STARTED)
    return {'state': next_state(state, BatchEvent.CONVERSION_FAILED)}


def fail_conversion(updater: OptimisticUpdater, request_id: str) -> UpdateResult:
    """Move a batch to FAILED after an unrecoverable conversion error.

    Counters are left as they are. Raises IllegalTransition if the batch
    already moved past CONVERTING.
    """
    result = updater.update(request_id, _conversion_failed)
    if result.changed:
        logger.warning(f"Request {request_id} marked FAILED after a conversion error")
    return result
