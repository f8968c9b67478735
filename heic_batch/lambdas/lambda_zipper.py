"""
Lambda: Zipper
==============

SQS-triggered archival worker. Each message is an archive task
{"requestId", "bucketName", "prefix"} sent once a request's last file was
converted. Delivery is at-least-once; a task for a request that is already
DONE is acknowledged without writing a second archive.

Author: Data Engineering Team
Version: 1.0.0
"""

import logging
import traceback
from typing import Any, Dict

from heic_batch.config import Settings, configure_logging
from heic_batch.lambdas.common import Services, build_services, sqs_batch_response
from heic_batch.models import ArchiveTask

logger = configure_logging()


def handle(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    records = event.get('Records', [])
    logger.info(f"Processing {len(records)} archive tasks")

    coordinator = services.coordinator
    failed_message_ids = []
    for idx, record in enumerate(records, 1):
        message_id = record.get('messageId', str(idx))
        try:
            task = ArchiveTask.from_message(record['body'])
            outcome = coordinator.handle(task)
            logger.info(f"Archive task {message_id} for {task.request_id}: {outcome.value}")
        except Exception as e:
            # ArchiveFailed has already moved the request to FAILED
            logger.error(f"Error processing archive task {message_id}: {e}")
            logger.error(f"Traceback: {traceback.format_exc()}")
            failed_message_ids.append(message_id)

    return sqs_batch_response(failed_message_ids)


def lambda_handler(event, context):
    """Archive converted requests.

    Input event (SQS):
    {
        "Records": [
            {"messageId": "...", "body": "{\"requestId\": \"...\", \"bucketName\": \"...\", \"prefix\": \"Converted/<id>/\"}"}
        ]
    }
    """
    services = build_services(Settings.from_env())
    return handle(event, services)
