"""
Lambda: Converter
=================

SQS-triggered worker, one S3 ObjectCreated notification per uploaded file.
Converts OriginalImages/<requestId>/<fileId>.heic to the target format
recorded in the object metadata and reports progress on the request record:

  1. uploadedFiles += 1 (first one moves the request CREATED -> CONVERTING)
  2. convert and write Converted/<requestId>/<fileId>.<ext>
  3. convertedFiles += 1; the increment that reaches nbFiles moves the
     request to ZIPPING and enqueues the archive task

Failure handling per S3 record:
  - undecodable image / unsupported target  -> request FAILED, message failed
  - CAS retries exhausted, S3 errors        -> message failed, SQS redelivers
  - duplicate/stale event (business rule)   -> logged and acknowledged
  - unknown or expired request              -> logged and acknowledged
  - redelivered upload of a ZIPPING request -> archive task re-sent, no reconversion

Author: Data Engineering Team
Version: 1.0.0
"""

import json
import logging
import os
import traceback
from enum import Enum
from typing import Any, Dict, List
from urllib.parse import unquote_plus

from heic_batch.batches import fail_conversion
from heic_batch.blob_store import ObjectMetadata
from heic_batch.codec import SOURCE_EXTENSIONS, convert_image, extension_for
from heic_batch.config import Settings, configure_logging
from heic_batch.exceptions import (
    BatchNotFound,
    BatchTerminated,
    BusinessRuleViolation,
    ConversionFailed,
    CounterOverflow,
)
from heic_batch.lambdas.common import Services, build_services, sqs_batch_response
from heic_batch.models import Counter, converted_prefix, request_id_from_key

logger = configure_logging()


class ConversionOutcome(str, Enum):
    CONVERTED = 'converted'
    SKIPPED = 'skipped'
    DUPLICATE = 'duplicate'
    MISSING = 'missing'


def convert_s3_object(services: Services, bucket: str, key: str) -> ConversionOutcome:
    extension = os.path.splitext(key)[1].lstrip('.').lower()
    if extension not in SOURCE_EXTENSIONS:
        logger.info(f"Not a heic file, skipping: s3://{bucket}/{key}")
        return ConversionOutcome.SKIPPED

    request_id = request_id_from_key(key)

    try:
        services.counter.increment(request_id, Counter.UPLOADED_FILES)
    except BatchNotFound as e:
        # Never created or expired by TTL, redelivery cannot bring it back
        logger.error(f"Dropping s3://{bucket}/{key}: {e}")
        return ConversionOutcome.MISSING
    except CounterOverflow as e:
        # Redelivered event: the upload was counted by an earlier attempt
        if services.trigger.resend_if_zipping(request_id, bucket):
            return ConversionOutcome.DUPLICATE
        logger.warning(f"Upload already counted ({e}), converting anyway")
    except BatchTerminated as e:
        logger.warning(f"Skipping s3://{bucket}/{key}: {e}")
        return ConversionOutcome.DUPLICATE

    try:
        metadata = services.blob_store.get_object_metadata(bucket, key)
        target_mime = metadata.target_format or ''
        target_extension = extension_for(target_mime)
        original = services.blob_store.get_object(bucket, key)
        converted = convert_image(original.body, target_mime)
    except ConversionFailed as e:
        logger.error(f"Conversion of s3://{bucket}/{key} failed: {e}")
        try:
            fail_conversion(services.updater, request_id)
        except BusinessRuleViolation as rule_error:
            logger.warning(f"Could not mark {request_id} FAILED: {rule_error}")
        raise

    file_id = os.path.splitext(os.path.basename(key))[0]
    target_key = f"{converted_prefix(request_id)}{file_id}.{target_extension}"
    services.blob_store.put_object(
        bucket,
        target_key,
        converted,
        ObjectMetadata(original_name=metadata.original_name),
        content_type=target_mime,
    )
    logger.info(f"Converted s3://{bucket}/{key} -> {target_key}")

    try:
        services.trigger.converted(request_id, bucket)
    except BatchNotFound as e:
        logger.error(f"Conversion of {key} not counted: {e}")
        return ConversionOutcome.MISSING
    except BusinessRuleViolation as e:
        logger.warning(f"Conversion of {key} not counted, treating as duplicate: {e}")
        return ConversionOutcome.DUPLICATE
    return ConversionOutcome.CONVERTED


def _s3_records(body: str) -> List[Dict[str, Any]]:
    s3_event = json.loads(body)
    return s3_event.get('Records', [])


def handle(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    records = event.get('Records', [])
    logger.info(f"Processing {len(records)} SQS records")

    failed_message_ids = []
    for idx, record in enumerate(records, 1):
        message_id = record.get('messageId', str(idx))
        try:
            for s3_record in _s3_records(record['body']):
                bucket = s3_record['s3']['bucket']['name']
                key = unquote_plus(s3_record['s3']['object']['key'])
                outcome = convert_s3_object(services, bucket, key)
                logger.debug(f"s3://{bucket}/{key}: {outcome.value}")
        except Exception as e:
            logger.error(f"Error processing SQS record {idx} ({message_id}): {e}")
            logger.error(f"Traceback: {traceback.format_exc()}")
            failed_message_ids.append(message_id)

    if failed_message_ids:
        logger.warning(f"{len(failed_message_ids)}/{len(records)} messages returned to the queue")
    return sqs_batch_response(failed_message_ids)


def lambda_handler(event, context):
    """Convert uploaded HEIC files.

    Input event (SQS, body is an S3 event notification):
    {
        "Records": [
            {"messageId": "...", "body": "{\"Records\": [{\"s3\": {\"bucket\": {\"name\": \"...\"},
                                                          \"object\": {\"key\": \"OriginalImages/<id>/<f>.heic\"}}}]}"}
        ]
    }

    Returns:
    {
        "batchItemFailures": [{"itemIdentifier": "<messageId>"}, ...]
    }
    """
    services = build_services(Settings.from_env())
    return handle(event, services)
