"""
Wiring shared by the Lambda entry points.

Each invocation builds its own Services from Settings; handlers take the
Services explicitly so tests can pass in-memory collaborators.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3

from heic_batch.archive_coordinator import ArchiveCoordinator
from heic_batch.blob_store import BlobStore, S3BlobStore
from heic_batch.completion import ArchiveQueue, CompletionTrigger, SqsArchiveQueue
from heic_batch.config import Settings
from heic_batch.fan_in import FanInCounter
from heic_batch.optimistic_updater import OptimisticUpdater
from heic_batch.record_store import DynamoDBRecordStore, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: RecordStore
    updater: OptimisticUpdater
    counter: FanInCounter
    blob_store: BlobStore
    queue: Optional[ArchiveQueue] = None

    @property
    def trigger(self) -> CompletionTrigger:
        if self.queue is None:
            raise RuntimeError('No archive queue configured (QUEUE_URL)')
        return CompletionTrigger(self.counter, self.queue)

    @property
    def coordinator(self) -> ArchiveCoordinator:
        return ArchiveCoordinator(self.updater, self.blob_store)


def wire_services(settings: Settings, store: RecordStore, blob_store: BlobStore,
                  queue: Optional[ArchiveQueue] = None, **updater_kwargs) -> Services:
    updater = OptimisticUpdater(store, settings.backoff_policy(), **updater_kwargs)
    return Services(
        settings=settings,
        store=store,
        updater=updater,
        counter=FanInCounter(updater),
        blob_store=blob_store,
        queue=queue,
    )


def build_services(settings: Settings) -> Services:
    """Create fresh AWS clients for one invocation."""
    session = boto3.session.Session(region_name=settings.region)
    table = session.resource('dynamodb').Table(settings.table_name)
    queue = None
    if settings.queue_url:
        queue = SqsArchiveQueue(session.client('sqs'), settings.queue_url)
    return wire_services(
        settings,
        store=DynamoDBRecordStore(table),
        blob_store=S3BlobStore(session.client('s3')),
        queue=queue,
    )


def _json_default(obj):
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    raise TypeError(f"{type(obj).__name__} is not JSON serializable")


def api_response(status_code: int, body: Any) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {
            'Content-Type': 'application/json',
            'Access-Control-Allow-Origin': '*',
            'Access-Control-Allow-Headers': '*',
        },
        'body': json.dumps(body, default=_json_default),
        'isBase64Encoded': False,
    }


def parse_json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Decode an API Gateway body; raises ValueError when it is not a JSON object."""
    raw = event.get('body') or '{}'
    body = json.loads(raw)
    if not isinstance(body, dict):
        raise ValueError('body must be a JSON object')
    return body


def sqs_batch_response(failed_message_ids: List[str]) -> Dict[str, Any]:
    """Partial batch response: only the listed messages go back to the queue."""
    return {'batchItemFailures': [{'itemIdentifier': message_id} for message_id in failed_message_ids]}
