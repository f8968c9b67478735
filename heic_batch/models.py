"""
Batch record and archive task data types.

Items are stored in DynamoDB with camelCase attribute names; in Python the
record is a plain dataclass with snake_case fields.
"""

import json
import time
import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from heic_batch.lifecycle import BatchState

# Soft limit on files per request, presigned listing never needs pagination below it
MAX_FILES_PER_REQUEST = 50


class Counter(str, Enum):
    PRESIGNED_URLS = 'presigned_urls'
    UPLOADED_FILES = 'uploaded_files'
    CONVERTED_FILES = 'converted_files'


ATTRIBUTE_NAMES = {
    'request_id': 'requestId',
    'nb_files': 'nbFiles',
    'presigned_urls': 'presignedUrls',
    'uploaded_files': 'uploadedFiles',
    'converted_files': 'convertedFiles',
    'state': 'state',
    'version': 'version',
    'created_at': 'createdAt',
    'modified_at': 'modifiedAt',
    'expires_at': 'expiresAt',
}
FIELD_NAMES = {attribute: field for field, attribute in ATTRIBUTE_NAMES.items()}

_INT_FIELDS = {'nb_files', 'presigned_urls', 'uploaded_files', 'converted_files', 'version', 'expires_at'}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_attribute_value(field_name: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def from_attribute_value(field_name: str, value: Any) -> Any:
    if field_name in _INT_FIELDS and isinstance(value, (Decimal, float, str)):
        return int(value)
    if field_name == 'state':
        return BatchState(value)
    return value


@dataclass(frozen=True)
class BatchRecord:
    request_id: str
    nb_files: int
    presigned_urls: int = 0
    uploaded_files: int = 0
    converted_files: int = 0
    state: BatchState = BatchState.CREATED
    version: int = 0
    created_at: str = ''
    modified_at: str = ''
    expires_at: int = 0

    def counter(self, counter: Counter) -> int:
        return getattr(self, Counter(counter).value)

    def with_changes(self, **changes) -> 'BatchRecord':
        return replace(self, **changes)

    def to_item(self) -> Dict[str, Any]:
        return {
            ATTRIBUTE_NAMES[f.name]: to_attribute_value(f.name, getattr(self, f.name))
            for f in fields(self)
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'BatchRecord':
        values = {
            FIELD_NAMES[attribute]: from_attribute_value(FIELD_NAMES[attribute], value)
            for attribute, value in item.items()
            if attribute in FIELD_NAMES
        }
        return cls(**values)


def new_batch_record(nb_files: int, ttl_days: int, request_id: Optional[str] = None,
                     now: Optional[float] = None) -> BatchRecord:
    """Build the initial CREATED record for a new request."""
    now = time.time() if now is None else now
    created_at = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
    return BatchRecord(
        request_id=request_id or str(uuid.uuid4()),
        nb_files=nb_files,
        state=BatchState.CREATED,
        version=0,
        created_at=created_at,
        modified_at=created_at,
        expires_at=int(now) + (ttl_days * 24 * 60 * 60),
    )


@dataclass(frozen=True)
class ArchiveTask:
    """Message handed from the completion trigger to the archival worker."""

    request_id: str
    bucket_name: str
    prefix: str

    @classmethod
    def for_request(cls, request_id: str, bucket_name: str) -> 'ArchiveTask':
        return cls(request_id=request_id, bucket_name=bucket_name, prefix=converted_prefix(request_id))

    def to_message(self) -> str:
        return json.dumps({
            'requestId': self.request_id,
            'bucketName': self.bucket_name,
            'prefix': self.prefix,
        })

    @classmethod
    def from_message(cls, body: str) -> 'ArchiveTask':
        payload = json.loads(body)
        return cls(
            request_id=payload['requestId'],
            bucket_name=payload['bucketName'],
            prefix=payload['prefix'],
        )


def original_key(request_id: str, file_id: str, extension: str) -> str:
    return f"OriginalImages/{request_id}/{file_id}{extension}"


def converted_prefix(request_id: str) -> str:
    return f"Converted/{request_id}/"


def archive_key(request_id: str) -> str:
    return f"Archives/{request_id}/converted.zip"


def request_id_from_key(key: str) -> str:
    """Extract the request id from `<Folder>/<requestId>/<file>`."""
    parts = key.split('/')
    if len(parts) < 3 or not parts[1]:
        raise ValueError(f"Key {key} does not follow <folder>/<requestId>/<file>")
    return parts[1]
