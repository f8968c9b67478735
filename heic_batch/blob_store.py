"""
Object storage used by the conversion and archival workers.
"""

import abc
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ORIGINAL_NAME = 'original-name'
TARGET_MIME = 'target-mime'


@dataclass(frozen=True)
class ObjectMetadata:
    original_name: str
    target_format: Optional[str] = None

    @classmethod
    def from_s3(cls, metadata: Dict[str, str]) -> 'ObjectMetadata':
        return cls(original_name=metadata.get(ORIGINAL_NAME, ''),
                   target_format=metadata.get(TARGET_MIME))

    def to_s3(self) -> Dict[str, str]:
        metadata = {ORIGINAL_NAME: self.original_name}
        if self.target_format:
            metadata[TARGET_MIME] = self.target_format
        return metadata


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    metadata: ObjectMetadata = field(default_factory=lambda: ObjectMetadata(original_name=''))


class BlobStore(abc.ABC):

    @abc.abstractmethod
    def get_object_metadata(self, bucket: str, key: str) -> ObjectMetadata:
        pass

    @abc.abstractmethod
    def get_object(self, bucket: str, key: str) -> StoredObject:
        pass

    @abc.abstractmethod
    def put_object(self, bucket: str, key: str, body: bytes, metadata: ObjectMetadata,
                   content_type: Optional[str] = None) -> None:
        pass

    @abc.abstractmethod
    def put_archive(self, bucket: str, key: str, body: bytes) -> None:
        pass

    @abc.abstractmethod
    def list_keys(self, bucket: str, prefix: str) -> List[str]:
        pass

    @abc.abstractmethod
    def delete_objects(self, bucket: str, keys: List[str]) -> None:
        pass

    @abc.abstractmethod
    def presigned_put_url(self, bucket: str, key: str, metadata: ObjectMetadata, expires_in: int) -> str:
        pass

    @abc.abstractmethod
    def presigned_get_url(self, bucket: str, key: str, expires_in: int) -> str:
        pass


class S3BlobStore(BlobStore):

    # S3 DeleteObjects accepts at most 1000 keys per call
    DELETE_BATCH_SIZE = 1000

    def __init__(self, s3_client, object_ttl_hours: int = 1):
        self.s3_client = s3_client
        self.object_ttl_hours = object_ttl_hours

    def _expires(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(hours=self.object_ttl_hours)

    def get_object_metadata(self, bucket: str, key: str) -> ObjectMetadata:
        response = self.s3_client.head_object(Bucket=bucket, Key=key)
        return ObjectMetadata.from_s3(response.get('Metadata', {}))

    def get_object(self, bucket: str, key: str) -> StoredObject:
        response = self.s3_client.get_object(Bucket=bucket, Key=key)
        body = response['Body'].read()
        return StoredObject(key=key, body=body, metadata=ObjectMetadata.from_s3(response.get('Metadata', {})))

    def put_object(self, bucket: str, key: str, body: bytes, metadata: ObjectMetadata,
                   content_type: Optional[str] = None) -> None:
        params = {
            'Bucket': bucket,
            'Key': key,
            'Body': body,
            'Metadata': metadata.to_s3(),
            'Expires': self._expires(),
        }
        if content_type:
            params['ContentType'] = content_type
        self.s3_client.put_object(**params)
        logger.debug(f"Wrote s3://{bucket}/{key} ({len(body)} bytes)")

    def put_archive(self, bucket: str, key: str, body: bytes) -> None:
        self.s3_client.put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            ContentType='application/zip',
            Expires=self._expires(),
        )
        logger.info(f"Archive uploaded: s3://{bucket}/{key} ({len(body) / 1024:.1f} KB)")

    def list_keys(self, bucket: str, prefix: str) -> List[str]:
        keys = []
        paginator = self.s3_client.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get('Contents', []):
                keys.append(obj['Key'])
        return keys

    def delete_objects(self, bucket: str, keys: List[str]) -> None:
        for start in range(0, len(keys), self.DELETE_BATCH_SIZE):
            chunk = keys[start:start + self.DELETE_BATCH_SIZE]
            response = self.s3_client.delete_objects(
                Bucket=bucket,
                Delete={'Objects': [{'Key': key} for key in chunk], 'Quiet': True},
            )
            for error in response.get('Errors', []):
                logger.warning(f"Could not delete s3://{bucket}/{error.get('Key')}: {error.get('Message')}")

    def presigned_put_url(self, bucket: str, key: str, metadata: ObjectMetadata, expires_in: int) -> str:
        return self.s3_client.generate_presigned_url(
            'put_object',
            Params={'Bucket': bucket, 'Key': key, 'Metadata': metadata.to_s3()},
            ExpiresIn=expires_in,
        )

    def presigned_get_url(self, bucket: str, key: str, expires_in: int) -> str:
        return self.s3_client.generate_presigned_url(
            'get_object',
            Params={'Bucket': bucket, 'Key': key},
            ExpiresIn=expires_in,
        )
