"""
Durable store for per-request batch records.

Every mutation after creation is a conditional write keyed on the record's
`version`, so two writers that read the same version cannot both succeed.
"""

import abc
import logging
from typing import Any, Dict, Iterable, Optional

from botocore.exceptions import ClientError

from heic_batch.exceptions import BatchAlreadyExists, BatchNotFound, VersionMismatch
from heic_batch.models import ATTRIBUTE_NAMES, BatchRecord, from_attribute_value, to_attribute_value, utc_now_iso

logger = logging.getLogger(__name__)

CONDITIONAL_CHECK_FAILED = 'ConditionalCheckFailedException'


class RecordStore(abc.ABC):

    @abc.abstractmethod
    def get(self, request_id: str, consistent_read: bool = False) -> BatchRecord:
        """Return the full record or raise BatchNotFound."""

    @abc.abstractmethod
    def project(self, request_id: str, field_names: Iterable[str],
                consistent_read: bool = False) -> Dict[str, Any]:
        """Return only `field_names` of the record or raise BatchNotFound."""

    @abc.abstractmethod
    def put(self, record: BatchRecord) -> BatchRecord:
        """Create the record or raise BatchAlreadyExists. The only unconditional-content write."""

    @abc.abstractmethod
    def conditional_update(self, request_id: str, changes: Dict[str, Any],
                           expected_version: int) -> BatchRecord:
        """Apply `changes` if the stored version is `expected_version`.

        Returns the record after the write, whose version is
        `expected_version + 1`. Raises VersionMismatch when another writer got
        there first and BatchNotFound when the record is gone.
        """


class DynamoDBRecordStore(RecordStore):
    """RecordStore over a DynamoDB table keyed by `requestId`."""

    def __init__(self, table):
        self.table = table

    def _key(self, request_id: str) -> Dict[str, str]:
        return {'requestId': request_id}

    def get(self, request_id: str, consistent_read: bool = False) -> BatchRecord:
        response = self.table.get_item(Key=self._key(request_id), ConsistentRead=consistent_read)
        item = response.get('Item')
        if not item:
            raise BatchNotFound(request_id)
        return BatchRecord.from_item(item)

    def project(self, request_id: str, field_names: Iterable[str],
                consistent_read: bool = False) -> Dict[str, Any]:
        field_names = list(field_names)
        expr_names = {f'#p{i}': ATTRIBUTE_NAMES[name] for i, name in enumerate(field_names)}
        response = self.table.get_item(
            Key=self._key(request_id),
            ProjectionExpression=','.join(expr_names),
            ExpressionAttributeNames=expr_names,
            ConsistentRead=consistent_read,
        )
        item = response.get('Item')
        if not item:
            raise BatchNotFound(request_id)
        return {
            name: from_attribute_value(name, item[ATTRIBUTE_NAMES[name]])
            for name in field_names
            if ATTRIBUTE_NAMES[name] in item
        }

    def put(self, record: BatchRecord) -> BatchRecord:
        try:
            self.table.put_item(
                Item=record.to_item(),
                ConditionExpression='attribute_not_exists(requestId)',
            )
        except ClientError as e:
            if e.response['Error']['Code'] == CONDITIONAL_CHECK_FAILED:
                raise BatchAlreadyExists(record.request_id) from e
            raise
        logger.info(f"Created request {record.request_id} with nbFiles={record.nb_files}")
        return record

    def conditional_update(self, request_id: str, changes: Dict[str, Any],
                           expected_version: int) -> BatchRecord:
        changes = dict(changes)
        changes['version'] = expected_version + 1
        changes['modified_at'] = utc_now_iso()

        set_clauses = []
        expr_names = {'#version': 'version'}
        expr_values = {':expected': expected_version}
        for i, (name, value) in enumerate(sorted(changes.items())):
            set_clauses.append(f'#f{i} = :v{i}')
            expr_names[f'#f{i}'] = ATTRIBUTE_NAMES[name]
            expr_values[f':v{i}'] = to_attribute_value(name, value)

        try:
            response = self.table.update_item(
                Key=self._key(request_id),
                UpdateExpression='SET ' + ', '.join(set_clauses),
                ConditionExpression='attribute_exists(requestId) AND #version = :expected',
                ExpressionAttributeNames=expr_names,
                ExpressionAttributeValues=expr_values,
                ReturnValues='ALL_NEW',
                ReturnValuesOnConditionCheckFailure='ALL_OLD',
            )
        except ClientError as e:
            if e.response['Error']['Code'] != CONDITIONAL_CHECK_FAILED:
                raise
            old_item = e.response.get('Item')
            if not old_item:
                raise BatchNotFound(request_id) from e
            raise VersionMismatch(request_id, expected_version, _stored_version(old_item)) from e

        return BatchRecord.from_item(response['Attributes'])


def _stored_version(item: Dict[str, Any]) -> Optional[int]:
    # ALL_OLD on a failed condition comes back in wire format, e.g. {'N': '3'}
    value = item.get('version')
    if isinstance(value, dict):
        value = value.get('N')
    return None if value is None else int(value)
