"""
Completion trigger: count a converted file and, for the one increment that
completes the batch, enqueue the archival task.

The CONVERTING -> ZIPPING transition is written by the same conditional
update that recorded the final increment, so only one caller ever gets here
with `reached_total`. The queue contract is at-least-once and the archival
worker is idempotent, so sending a task twice is safe; sending it zero
times is not.
"""

import abc
import logging
from typing import Optional

from heic_batch.exceptions import CounterOverflow
from heic_batch.fan_in import FanInCounter, IncrementResult
from heic_batch.lifecycle import BatchState
from heic_batch.models import ArchiveTask, Counter

logger = logging.getLogger(__name__)


class ArchiveQueue(abc.ABC):

    @abc.abstractmethod
    def enqueue(self, task: ArchiveTask) -> Optional[str]:
        """Send `task` downstream and return the message id, if any."""


class SqsArchiveQueue(ArchiveQueue):

    def __init__(self, sqs_client, queue_url: str):
        self.sqs_client = sqs_client
        self.queue_url = queue_url

    def enqueue(self, task: ArchiveTask) -> Optional[str]:
        response = self.sqs_client.send_message(
            QueueUrl=self.queue_url,
            MessageBody=task.to_message(),
        )
        message_id = response.get('MessageId')
        logger.info(f"Archive task for {task.request_id} sent, MessageId={message_id}")
        return message_id


class CompletionTrigger:

    def __init__(self, counter: FanInCounter, queue: ArchiveQueue):
        self.counter = counter
        self.queue = queue

    def converted(self, request_id: str, bucket_name: str) -> IncrementResult:
        """Record one converted file; enqueue the archive task if it was the last one.

        A redelivered conversion event that overflows a batch already in
        ZIPPING re-sends the archive task before the overflow propagates, which
        covers a crash between the final write and the first enqueue.
        """
        try:
            result = self.counter.increment(request_id, Counter.CONVERTED_FILES)
        except CounterOverflow:
            self.resend_if_zipping(request_id, bucket_name)
            raise
        if not result.reached_total:
            return result

        task = ArchiveTask.for_request(request_id, bucket_name)
        logger.info(f"All {result.record.nb_files} files of {request_id} converted, "
                    f"state={result.record.state.value}; enqueueing archive of {task.prefix}")
        try:
            self.queue.enqueue(task)
        except Exception:
            logger.error(f"Request {request_id} is ZIPPING but its archive task was not sent",
                         exc_info=True)
            raise
        return result

    def resend_if_zipping(self, request_id: str, bucket_name: str) -> bool:
        """Re-send the archive task of a batch already handed to archival.

        Returns False, sending nothing, when the batch is not ZIPPING.
        """
        record = self.counter.current(request_id)
        if record.state != BatchState.ZIPPING:
            return False
        logger.warning(f"Duplicate conversion event for ZIPPING request {request_id}, "
                       f"re-sending archive task")
        self.queue.enqueue(ArchiveTask.for_request(request_id, bucket_name))
        return True
