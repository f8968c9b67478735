"""
Archival worker: zip the converted files of a batch and finalise its state.

Tasks may be delivered more than once. Idempotence is checked against the
batch state, not the message id: a task for a DONE batch is acknowledged
without touching storage. A task whose batch no longer exists is acknowledged
as stale.
"""

import io
import logging
import os
import zipfile
from enum import Enum
from typing import Dict, List

from heic_batch.blob_store import BlobStore
from heic_batch.exceptions import (
    ArchiveFailed,
    BatchNotFound,
    BusinessRuleViolation,
    HeicBatchError,
    IllegalTransition,
)
from heic_batch.lifecycle import BatchEvent, BatchState, next_state
from heic_batch.models import ArchiveTask, BatchRecord, archive_key
from heic_batch.optimistic_updater import OptimisticUpdater

logger = logging.getLogger(__name__)


class ArchiveOutcome(str, Enum):
    ARCHIVED = 'archived'
    DUPLICATE = 'duplicate'
    STALE = 'stale'


def _begin_zipping(record: BatchRecord):
    if record.state in (BatchState.ZIPPING, BatchState.DONE):
        return None
    if record.state == BatchState.FAILED and record.converted_files < record.nb_files:
        # Conversion failed, there is nothing complete to archive
        raise IllegalTransition(record.state.value, BatchEvent.ARCHIVE_RETRIED.value)
    return {'state': next_state(record.state, BatchEvent.ARCHIVE_RETRIED)}


def _finish(event: BatchEvent):
    def mutation(record: BatchRecord):
        target = next_state(BatchState.ZIPPING, event)
        if record.state == target:
            return None
        return {'state': next_state(record.state, event)}
    return mutation


def unique_entry_name(name: str, taken: Dict[str, int]) -> str:
    """Return `name`, or `stem (n).ext` if an earlier entry already used it."""
    if name not in taken:
        taken[name] = 1
        return name
    stem, ext = os.path.splitext(name)
    while True:
        candidate = f"{stem} ({taken[name]}){ext}"
        taken[name] += 1
        if candidate not in taken:
            taken[candidate] = 1
            return candidate


class ArchiveCoordinator:

    def __init__(self, updater: OptimisticUpdater, blob_store: BlobStore):
        self.updater = updater
        self.blob_store = blob_store

    def handle(self, task: ArchiveTask) -> ArchiveOutcome:
        request_id = task.request_id
        try:
            begin = self.updater.update(request_id, _begin_zipping)
        except BatchNotFound as e:
            logger.error(f"Dropping archive task for {request_id}: {e}")
            return ArchiveOutcome.STALE
        except BusinessRuleViolation as e:
            logger.warning(f"Ignoring archive task for {request_id}: {e}")
            return ArchiveOutcome.STALE

        record = begin.record
        if record.state == BatchState.DONE:
            logger.info(f"Request {request_id} already DONE, duplicate archive task acknowledged")
            return ArchiveOutcome.DUPLICATE
        if begin.changed:
            logger.info(f"Request {request_id} re-entered ZIPPING for another archive attempt")

        try:
            keys = self._write_archive(task, record)
        except Exception as e:
            logger.error(f"Archive of {request_id} failed: {e}", exc_info=True)
            self._mark_failed(request_id)
            if isinstance(e, ArchiveFailed):
                raise
            raise ArchiveFailed(request_id, str(e)) from e

        self.updater.update(request_id, _finish(BatchEvent.ARCHIVE_STORED))
        logger.info(f"Request {request_id} DONE")

        # Intermediates only matter until the archive exists
        try:
            self.blob_store.delete_objects(task.bucket_name, keys)
        except Exception:
            logger.warning(f"Could not delete converted files under {task.prefix}", exc_info=True)
        return ArchiveOutcome.ARCHIVED

    def _write_archive(self, task: ArchiveTask, record: BatchRecord) -> List[str]:
        keys = sorted(self.blob_store.list_keys(task.bucket_name, task.prefix))
        if len(keys) < record.nb_files:
            raise ArchiveFailed(task.request_id,
                                f"expected {record.nb_files} converted files under {task.prefix}, found {len(keys)}")

        buffer = io.BytesIO()
        taken: Dict[str, int] = {}
        with zipfile.ZipFile(buffer, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
            for key in keys:
                obj = self.blob_store.get_object(task.bucket_name, key)
                extension = os.path.splitext(key)[1]
                base_name = obj.metadata.original_name or os.path.splitext(os.path.basename(key))[0]
                zf.writestr(unique_entry_name(base_name + extension, taken), obj.body)

        self.blob_store.put_archive(task.bucket_name, archive_key(task.request_id), buffer.getvalue())
        logger.info(f"Archived {len(keys)} files for {task.request_id}")
        return keys

    def _mark_failed(self, request_id: str) -> None:
        try:
            self.updater.update(request_id, _finish(BatchEvent.ARCHIVE_FAILED))
        except HeicBatchError:
            logger.error(f"Could not mark {request_id} FAILED", exc_info=True)
