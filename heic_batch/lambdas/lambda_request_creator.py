"""
Lambda: Request Creator
=======================

API Gateway handler that opens a new conversion request. Writes the initial
CREATED record (all counters at 0, nbFiles fixed) with the single
unconditional-content PutItem of the pipeline.

Author: Data Engineering Team
Version: 1.0.0
"""

import logging
import traceback
from typing import Any, Dict, Optional, Tuple

from heic_batch.batches import create_batch
from heic_batch.config import Settings, configure_logging
from heic_batch.exceptions import BatchAlreadyExists, BusinessRuleViolation
from heic_batch.lambdas.common import Services, api_response, build_services, parse_json_body
from heic_batch.models import MAX_FILES_PER_REQUEST

logger = configure_logging()


def parse_total_files(total_files: Any) -> Tuple[Optional[int], str]:
    """Return (totalFiles, '') when valid, else (None, error message)."""
    if total_files is None or total_files == '':
        return None, 'body must have the property: totalFiles'
    if isinstance(total_files, bool):
        return None, 'totalFiles should be a number'
    if isinstance(total_files, float) and total_files.is_integer():
        total_files = int(total_files)
    try:
        total = int(str(total_files).strip())
    except ValueError:
        return None, 'totalFiles should be a whole number'
    if total < 1:
        return None, 'totalFiles should be at least 1'
    if total > MAX_FILES_PER_REQUEST:
        return None, f"totalFiles can't be higher than {MAX_FILES_PER_REQUEST}"
    return total, ''


def handle(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    try:
        body = parse_json_body(event)
    except ValueError as e:
        return api_response(400, {'errMessage': f'Invalid JSON body: {e}'})

    total_files, error = parse_total_files(body.get('totalFiles'))
    if error:
        logger.warning(f"Rejected request creation: {error}")
        return api_response(400, {'errMessage': error})

    try:
        record = create_batch(services.store, total_files, services.settings.ttl_days)
    except BatchAlreadyExists as e:
        logger.error(f"Request id collision: {e}")
        return api_response(409, {'errMessage': 'Request id collision, retry'})
    except BusinessRuleViolation as e:
        return api_response(400, {'errMessage': str(e)})
    except Exception as e:
        logger.error(f"Error while generating requestId: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return api_response(500, {'errMessage': 'Error while generating requestId'})

    logger.info(f"Generated request {record.request_id} for {record.nb_files} files")
    return api_response(200, {'requestId': record.request_id, 'nbFiles': record.nb_files})


def lambda_handler(event, context):
    """Create a conversion request.

    Input event (API Gateway proxy):
    {
        "body": "{\"totalFiles\": 3}"
    }

    Returns:
    {
        "statusCode": 200,
        "body": "{\"requestId\": \"...\", \"nbFiles\": 3}"
    }
    """
    services = build_services(Settings.from_env())
    return handle(event, services)
