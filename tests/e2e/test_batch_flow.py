"""
End-to-end tests: the Lambda handlers driven through a whole request over
in-memory DynamoDB, SQS and S3 stand-ins.

Uploaded "HEIC" objects carry PNG bytes; the Pillow opener identifies images
by content, so the conversion path is the same one a real HEIC takes.
"""
import io
import json
import zipfile
from concurrent.futures import ThreadPoolExecutor

import pytest

from heic_batch.lambdas import (
    lambda_converter,
    lambda_presigner,
    lambda_request_creator,
    lambda_status,
    lambda_zipper,
)
from heic_batch.lambdas.lambda_converter import ConversionOutcome, convert_s3_object
from heic_batch.lifecycle import BatchState
from heic_batch.models import ArchiveTask, archive_key, new_batch_record

BUCKET = 'heic-bucket'
COLORS = ['red', 'green', 'blue', 'white', 'black']


def _create_request(services, total_files):
    response = lambda_request_creator.handle({'body': json.dumps({'totalFiles': total_files})}, services)
    assert response['statusCode'] == 200
    return json.loads(response['body'])['requestId']


def _presign(services, request_id, file_name, target_mime='image/jpeg'):
    body = {'requestId': request_id, 'fileName': file_name, 'targetMime': target_mime}
    response = lambda_presigner.handle({'body': json.dumps(body)}, services)
    assert response['statusCode'] == 200
    return json.loads(response['body'])['key']


def _upload(blob_store, key, body, file_name, target_mime='image/jpeg'):
    """What the client's PUT to the presigned URL leaves in the bucket."""
    blob_store.add(BUCKET, key, body, original_name=file_name.rsplit('.', 1)[0], target_mime=target_mime)


def _s3_notification(key, message_id):
    s3_event = {'Records': [{'s3': {'bucket': {'name': BUCKET}, 'object': {'key': key}}}]}
    return {'Records': [{'messageId': message_id, 'body': json.dumps(s3_event)}]}


def _status(services, request_id):
    response = lambda_status.handle({'queryStringParameters': {'requestId': request_id}}, services)
    assert response['statusCode'] == 200
    return json.loads(response['body'])


def _upload_batch(services, blob_store, make_image, nb_files):
    request_id = _create_request(services, nb_files)
    keys = []
    for i in range(nb_files):
        file_name = f"IMG_{i:04d}.HEIC"
        key = _presign(services, request_id, file_name)
        _upload(blob_store, key, make_image('PNG', color=COLORS[i % len(COLORS)]), file_name)
        keys.append(key)
    return request_id, keys


def _convert_concurrently(services, keys):
    events = [_s3_notification(key, f"s3-msg-{i}") for i, key in enumerate(keys)]
    with ThreadPoolExecutor(max_workers=len(events)) as executor:
        return list(executor.map(lambda event: lambda_converter.handle(event, services), events))


@pytest.mark.e2e
def test_three_file_request_end_to_end(services, record_store, blob_store, archive_queue, make_image):
    """Test create -> presign -> concurrent conversion -> one archive task -> DONE"""
    request_id, keys = _upload_batch(services, blob_store, make_image, 3)
    assert _status(services, request_id)['state'] == 'CREATED'

    responses = _convert_concurrently(services, keys)

    assert all(r == {'batchItemFailures': []} for r in responses)
    assert len(archive_queue.tasks) == 1
    task = archive_queue.tasks[0]
    assert task.request_id == request_id
    assert task.prefix == f"Converted/{request_id}/"
    assert record_store.get(request_id).state == BatchState.ZIPPING

    zip_response = lambda_zipper.handle(archive_queue.as_sqs_event(), services)

    assert zip_response == {'batchItemFailures': []}
    status = _status(services, request_id)
    assert status['state'] == 'DONE'
    assert status['processed'] == 3
    assert status['uploaded'] <= 3

    body = blob_store.objects[(BUCKET, archive_key(request_id))].body
    with zipfile.ZipFile(io.BytesIO(body)) as zf:
        assert sorted(zf.namelist()) == ['IMG_0000.jpeg', 'IMG_0001.jpeg', 'IMG_0002.jpeg']
        assert zf.read('IMG_0000.jpeg')[:2] == b'\xff\xd8'


@pytest.mark.e2e
def test_redelivered_events_after_completion_are_acknowledged(services, record_store, blob_store,
                                                              archive_queue, make_image):
    """Test that duplicate archive tasks and conversion events change nothing"""
    request_id, keys = _upload_batch(services, blob_store, make_image, 2)
    _convert_concurrently(services, keys)
    event = archive_queue.as_sqs_event()
    lambda_zipper.handle(event, services)
    done = record_store.get(request_id)

    assert lambda_zipper.handle(event, services) == {'batchItemFailures': []}
    assert lambda_converter.handle(_s3_notification(keys[0], 'again'), services) == {'batchItemFailures': []}

    assert len(blob_store.archive_writes) == 1
    assert len(archive_queue.tasks) == 1
    assert record_store.get(request_id) == done


@pytest.mark.e2e
@pytest.mark.slow
def test_many_files_finish_at_once(services, record_store, blob_store, archive_queue, make_image):
    """Test the fan-in with a full request of concurrently converted files"""
    request_id, keys = _upload_batch(services, blob_store, make_image, 50)

    responses = _convert_concurrently(services, keys)

    assert all(not r['batchItemFailures'] for r in responses)
    assert len(archive_queue.tasks) == 1
    record = record_store.get(request_id)
    assert record.converted_files == 50
    assert record.uploaded_files == 50
    assert record.state == BatchState.ZIPPING

    lambda_zipper.handle(archive_queue.as_sqs_event(), services)

    assert _status(services, request_id)['state'] == 'DONE'


@pytest.mark.e2e
def test_undecodable_upload_fails_the_request(services, record_store, blob_store, archive_queue, make_image):
    request_id = _create_request(services, 2)
    bad_key = _presign(services, request_id, 'broken.heic')
    good_key = _presign(services, request_id, 'fine.heic')
    _upload(blob_store, bad_key, b'not an image', 'broken.heic')
    _upload(blob_store, good_key, make_image('PNG'), 'fine.heic')

    bad = lambda_converter.handle(_s3_notification(bad_key, 'bad'), services)
    good = lambda_converter.handle(_s3_notification(good_key, 'good'), services)

    assert bad == {'batchItemFailures': [{'itemIdentifier': 'bad'}]}
    assert good == {'batchItemFailures': []}
    record = record_store.get(request_id)
    assert record.state == BatchState.FAILED
    assert record.converted_files == 0
    assert archive_queue.tasks == []
    assert _status(services, request_id)['state'] == 'FAILED'


@pytest.mark.e2e
def test_missing_target_format_fails_the_request(services, record_store, blob_store, make_image):
    request_id = _create_request(services, 1)
    key = _presign(services, request_id, 'a.heic')
    blob_store.add(BUCKET, key, make_image('PNG'), original_name='a')

    response = lambda_converter.handle(_s3_notification(key, 'm1'), services)

    assert response['batchItemFailures'] == [{'itemIdentifier': 'm1'}]
    assert record_store.get(request_id).state == BatchState.FAILED


@pytest.mark.e2e
def test_storage_error_is_redelivered_without_failing_request(services, record_store, blob_store,
                                                             archive_queue, make_image):
    """Test that an object not yet readable leaves the request alive for redelivery"""
    request_id = _create_request(services, 1)
    key = _presign(services, request_id, 'late.heic')
    event = _s3_notification(key, 'm1')

    first = lambda_converter.handle(event, services)
    assert first['batchItemFailures'] == [{'itemIdentifier': 'm1'}]
    assert record_store.get(request_id).state == BatchState.CONVERTING

    _upload(blob_store, key, make_image('PNG'), 'late.heic')
    second = lambda_converter.handle(event, services)

    assert second == {'batchItemFailures': []}
    record = record_store.get(request_id)
    assert record.uploaded_files == 1
    assert record.converted_files == 1
    assert record.state == BatchState.ZIPPING
    assert len(archive_queue.tasks) == 1


@pytest.mark.e2e
def test_non_heic_objects_are_skipped(services, record_store):
    record_store.put(new_batch_record(1, ttl_days=1, request_id='req-1'))

    outcome = convert_s3_object(services, BUCKET, 'OriginalImages/req-1/readme.txt')

    assert outcome == ConversionOutcome.SKIPPED
    assert record_store.get('req-1').version == 0


@pytest.mark.e2e
def test_url_encoded_keys_are_decoded(services, record_store, blob_store, archive_queue, make_image):
    record_store.put(new_batch_record(1, ttl_days=1, request_id='req-1'))
    key = 'OriginalImages/req-1/my photo.heic'
    _upload(blob_store, key, make_image('PNG'), 'my photo.heic')

    response = lambda_converter.handle(_s3_notification('OriginalImages/req-1/my+photo.heic', 'm1'), services)

    assert response == {'batchItemFailures': []}
    assert (BUCKET, 'Converted/req-1/my photo.jpeg') in blob_store.objects
    assert len(archive_queue.tasks) == 1


@pytest.mark.e2e
def test_malformed_archive_task_is_reported(services):
    event = {'Records': [{'messageId': 'm1', 'body': '{"requestId": "req-1"}'}]}

    assert lambda_zipper.handle(event, services) == {'batchItemFailures': [{'itemIdentifier': 'm1'}]}


@pytest.mark.e2e
def test_conversion_for_unknown_request_is_dropped(services, blob_store, archive_queue, make_image):
    """Test that an expired request's upload is acknowledged, not redelivered"""
    key = 'OriginalImages/expired-req/f.heic'
    _upload(blob_store, key, make_image('PNG'), 'f.heic')

    response = lambda_converter.handle(_s3_notification(key, 'm1'), services)

    assert response == {'batchItemFailures': []}
    assert convert_s3_object(services, BUCKET, key) == ConversionOutcome.MISSING
    assert blob_store.list_keys(BUCKET, 'Converted/expired-req/') == []
    assert archive_queue.tasks == []


@pytest.mark.e2e
def test_archive_task_for_unknown_request_is_dropped(services, blob_store):
    event = {'Records': [{'messageId': 'm1', 'body': ArchiveTask.for_request('gone', BUCKET).to_message()}]}

    assert lambda_zipper.handle(event, services) == {'batchItemFailures': []}
    assert blob_store.archive_writes == []


@pytest.mark.e2e
def test_redelivered_upload_of_zipping_request_is_not_reconverted(services, record_store, blob_store,
                                                                 archive_queue, make_image):
    """Test that a duplicate event after completion only re-sends the archive task"""
    request_id, keys = _upload_batch(services, blob_store, make_image, 1)
    lambda_converter.handle(_s3_notification(keys[0], 'm1'), services)
    assert record_store.get(request_id).state == BatchState.ZIPPING
    converted_prefix = f"Converted/{request_id}/"
    blob_store.delete_objects(BUCKET, blob_store.list_keys(BUCKET, converted_prefix))
    before = record_store.get(request_id)

    outcome = convert_s3_object(services, BUCKET, keys[0])

    assert outcome == ConversionOutcome.DUPLICATE
    assert blob_store.list_keys(BUCKET, converted_prefix) == []
    assert len(archive_queue.tasks) == 2
    assert archive_queue.tasks[1] == archive_queue.tasks[0]
    assert record_store.get(request_id) == before
