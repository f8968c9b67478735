"""
Lambda: Status
==============

GET /status?requestId=<id>. Read-only projection of the request record:
{"requestId", "state", "nbFiles", "uploaded", "processed"}.

Author: Data Engineering Team
Version: 1.0.0
"""

import logging
from typing import Any, Dict

from heic_batch.batches import get_status
from heic_batch.config import Settings, configure_logging
from heic_batch.exceptions import BatchNotFound
from heic_batch.lambdas.common import Services, api_response, build_services

logger = configure_logging()


def handle(event: Dict[str, Any], services: Services) -> Dict[str, Any]:
    request_id = (event.get('queryStringParameters') or {}).get('requestId')
    if not request_id:
        return api_response(400, {'errMessage': 'requestId query parameter is required'})

    try:
        status = get_status(services.store, request_id)
    except BatchNotFound:
        logger.warning(f"Status requested for unknown request {request_id}")
        return api_response(404, {'errMessage': f'RequestId {request_id} is invalid'})

    return api_response(200, status)


def lambda_handler(event, context):
    services = build_services(Settings.from_env())
    return handle(event, services)
