"""
Pytest configuration and fixtures for heic-batch-converter tests

In-memory stand-ins for DynamoDB, SQS and S3 that keep the same contracts
as the real adapters: the record store applies conditional writes
atomically, so the core's concurrency behaviour can be exercised with real
threads.
"""
import io
import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest
from PIL import Image

from heic_batch.blob_store import BlobStore, ObjectMetadata, StoredObject
from heic_batch.completion import ArchiveQueue
from heic_batch.config import Settings
from heic_batch.exceptions import BatchAlreadyExists, BatchNotFound, VersionMismatch
from heic_batch.lambdas.common import Services, wire_services
from heic_batch.models import ArchiveTask, BatchRecord, utc_now_iso
from heic_batch.record_store import RecordStore


# =======================
# PYTEST CONFIGURATION
# =======================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Unit tests that don't require external services"
    )
    config.addinivalue_line(
        "markers", "e2e: End-to-end tests that run the Lambda handlers over in-memory services"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take more than 5 seconds to run"
    )


# =======================
# IN-MEMORY COLLABORATORS
# =======================

class InMemoryRecordStore(RecordStore):
    """Record store with atomic version-checked writes.

    `read_latency` sleeps between reading a record and returning it, which
    widens the window between a CAS read and its write so that concurrent
    callers actually collide.
    """

    def __init__(self, read_latency: float = 0.0):
        self._records: Dict[str, BatchRecord] = {}
        self._lock = threading.Lock()
        self.read_latency = read_latency
        self.conditional_writes = 0
        self.version_mismatches = 0
        self.consistent_reads = 0

    def get(self, request_id: str, consistent_read: bool = False) -> BatchRecord:
        with self._lock:
            record = self._records.get(request_id)
            if consistent_read:
                self.consistent_reads += 1
        if record is None:
            raise BatchNotFound(request_id)
        if self.read_latency:
            time.sleep(self.read_latency)
        return record

    def project(self, request_id, field_names, consistent_read=False):
        record = self.get(request_id, consistent_read)
        return {name: getattr(record, name) for name in field_names}

    def put(self, record: BatchRecord) -> BatchRecord:
        with self._lock:
            if record.request_id in self._records:
                raise BatchAlreadyExists(record.request_id)
            self._records[record.request_id] = record
        return record

    def conditional_update(self, request_id, changes, expected_version):
        with self._lock:
            current = self._records.get(request_id)
            if current is None:
                raise BatchNotFound(request_id)
            if current.version != expected_version:
                self.version_mismatches += 1
                raise VersionMismatch(request_id, expected_version, current.version)
            updated = current.with_changes(
                **changes, version=expected_version + 1, modified_at=utc_now_iso()
            )
            self._records[request_id] = updated
            self.conditional_writes += 1
            return updated


class InMemoryArchiveQueue(ArchiveQueue):

    def __init__(self):
        self.tasks: List[ArchiveTask] = []
        self._lock = threading.Lock()
        self.fail_sends = False

    def enqueue(self, task: ArchiveTask) -> Optional[str]:
        if self.fail_sends:
            raise ConnectionError('queue unavailable')
        with self._lock:
            self.tasks.append(task)
            return f"msg-{len(self.tasks)}"

    def as_sqs_event(self) -> dict:
        return {
            'Records': [
                {'messageId': f"msg-{i}", 'body': task.to_message()}
                for i, task in enumerate(self.tasks, 1)
            ]
        }


class InMemoryBlobStore(BlobStore):

    def __init__(self):
        self.objects: Dict[Tuple[str, str], StoredObject] = {}
        self.archive_writes: List[Tuple[str, str]] = []
        self.fail_archive_writes = False
        self._lock = threading.Lock()

    def add(self, bucket: str, key: str, body: bytes, original_name: str = '',
            target_mime: Optional[str] = None) -> None:
        self.objects[(bucket, key)] = StoredObject(
            key=key, body=body, metadata=ObjectMetadata(original_name=original_name, target_format=target_mime)
        )

    def _lookup(self, bucket: str, key: str) -> StoredObject:
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise FileNotFoundError(f"s3://{bucket}/{key}") from None

    def get_object_metadata(self, bucket, key):
        return self._lookup(bucket, key).metadata

    def get_object(self, bucket, key):
        return self._lookup(bucket, key)

    def put_object(self, bucket, key, body, metadata, content_type=None):
        with self._lock:
            self.objects[(bucket, key)] = StoredObject(key=key, body=body, metadata=metadata)

    def put_archive(self, bucket, key, body):
        if self.fail_archive_writes:
            raise ConnectionError('S3 unavailable')
        with self._lock:
            self.objects[(bucket, key)] = StoredObject(key=key, body=body)
            self.archive_writes.append((bucket, key))

    def list_keys(self, bucket, prefix):
        return [key for (b, key) in list(self.objects) if b == bucket and key.startswith(prefix)]

    def delete_objects(self, bucket, keys):
        with self._lock:
            for key in keys:
                self.objects.pop((bucket, key), None)

    def presigned_put_url(self, bucket, key, metadata, expires_in):
        return f"https://{bucket}.s3.test/{key}?X-Amz-Expires={expires_in}&method=PUT"

    def presigned_get_url(self, bucket, key, expires_in):
        return f"https://{bucket}.s3.test/{key}?X-Amz-Expires={expires_in}"


# =======================
# FIXTURES
# =======================

BUCKET = 'heic-bucket'


@pytest.fixture
def settings() -> Settings:
    # 50 concurrent writers can make one caller lose at most 49 races
    return Settings(
        table_name='requests-test',
        bucket_name=BUCKET,
        queue_url='https://sqs.test/archive-queue',
        cas_max_attempts=60,
        cas_initial_delay_ms=1,
    )


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def archive_queue() -> InMemoryArchiveQueue:
    return InMemoryArchiveQueue()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def services(settings, record_store, blob_store, archive_queue, sleeps) -> Services:
    return wire_services(settings, record_store, blob_store, archive_queue, sleep=sleeps.append)


def image_bytes(fmt: str = 'PNG', color: str = 'red', size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', size, color).save(buffer, format=fmt)
    return buffer.getvalue()


@pytest.fixture
def png_bytes() -> bytes:
    return image_bytes('PNG')


@pytest.fixture
def make_image():
    return image_bytes


@pytest.fixture
def contended_store() -> InMemoryRecordStore:
    # widens the read-to-write window so concurrent writers collide
    return InMemoryRecordStore(read_latency=0.0005)
