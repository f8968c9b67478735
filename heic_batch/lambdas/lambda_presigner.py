"""
Lambda: Pre-Signer
==================

API Gateway handler issuing one presigned upload URL per file of a request.
Each URL bumps the request's presignedUrls counter, so a request never hands
out more upload slots than the nbFiles it was created with.

The upload key carries the request id (OriginalImages/<requestId>/<fileId>.heic)
and the object metadata the converter needs: original-name, target-mime.

Author: Data Engineering Team
Version: 1.0.0
"""

import logging
import os
import uuid
from typing import Any, Dict

from heic_batch.blob_store import ObjectMetadata
from heic_batch.codec import VALID_TARGET_MIMES
from heic_batch.config import Settings, configure_logging
from heic_batch.exceptions import BatchNotFound, BusinessRuleViolation, RetriesExhausted
from heic_batch.lambdas.common import Services, api_response, build_services, parse_json_body
from heic_batch.models import Counter, archive_key, original_key

logger = configure_logging()


def validate_request(body: Dict[str, Any]) -> str:
    request_id = body.get('requestId')
    file_name = body.get('fileName')
    target_mime = body.get('targetMime')
    if not request_id or not file_name or not target_mime:
        return 'body must have all the properties: requestId, fileName, targetMime'
    if target_mime not in VALID_TARGET_MIMES:
        return f"{target_mime} targetMime is not supported, valid values are: {', '.join(VALID_TARGET_MIMES)}"
    if not os.path.splitext(file_name)[1]:
        return 'fileName must have an extension'
    return ''


def handle(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    try:
        body = parse_json_body(event)
    except ValueError as e:
        return api_response(400, {'errMessage': f'Invalid JSON body: {e}'})

    error = validate_request(body)
    if error:
        return api_response(400, {'errMessage': error})

    request_id = body['requestId']
    name_without_extension, extension = os.path.splitext(body['fileName'])
    bucket = services.settings.require('bucket_name')

    try:
        result = services.counter.increment(request_id, Counter.PRESIGNED_URLS)
    except BatchNotFound:
        return api_response(404, {'errMessage': f'RequestId {request_id} is invalid'})
    except BusinessRuleViolation as e:
        logger.warning(f"Refusing presigned URL for {request_id}: {e}")
        return api_response(409, {'errMessage': str(e)})
    except RetriesExhausted:
        return api_response(503, {'errMessage': 'Request is busy, retry later'})

    key = original_key(request_id, str(uuid.uuid4()), extension.lower())
    metadata = ObjectMetadata(original_name=name_without_extension, target_format=body['targetMime'])
    expires_in = services.settings.presign_expires_seconds
    put_url = services.blob_store.presigned_put_url(bucket, key, metadata, expires_in)
    get_url = services.blob_store.presigned_get_url(bucket, archive_key(request_id), expires_in)

    logger.info(f"Presigned URL {result.new_count}/{result.record.nb_files} issued for {request_id}: {key}")
    return api_response(200, {
        'requestId': request_id,
        'key': key,
        'putObjectSignedUrl': put_url,
        'getObjectSignedUrl': get_url,
    })


def lambda_handler(event, context):
    """Issue a presigned upload URL.

    Input event (API Gateway proxy):
    {
        "body": "{\"requestId\": \"...\", \"fileName\": \"IMG_0001.HEIC\", \"targetMime\": \"image/jpeg\"}"
    }
    """
    services = build_services(Settings.from_env())
    return handle(event, services)
