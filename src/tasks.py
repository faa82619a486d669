"""Polling of asynchronous server-side tasks.

Mutating API calls answer with a task id (Headers.MessageId for compute
calls, QueuedMessageId for storage calls). The task is polled at
/TaskInfo/<id> on a fixed interval until it reports a terminal state:

    State 4  succeeded, Result holds the correlated value (often a new id)
    State 1  failed, Errors holds a map of error descriptions
    other    still pending

There is no upper bound on how long a pending task is polled; long-running
server jobs are expected to finish eventually.
"""

import json
import logging
import threading
from typing import Optional

from common import Clock, poll_until
from config import DriverConfig
from errors import GenericBusinessFailure, ResourceNotFound, TransientFailure
from transport import Transport

logger = logging.getLogger(__name__)

STATE_FAILED = 1
STATE_SUCCEEDED = 4
TASK_NOT_FOUND = 'Task not found'


def truncate_error(message: str) -> str:
    """Cut an error blob at the first ':"' (compatibility with older clients).

    A message without the delimiter is returned unchanged.
    """
    position = message.find(':"')
    if position < 0:
        logger.debug("No ':\"' delimiter in task error, surfacing it untruncated")
        return message
    return message[:position]


class TaskTracker:
    """Waits for tasks to reach a terminal state."""

    def __init__(self, transport: Transport, config: DriverConfig, clock: Optional[Clock] = None):
        self.transport = transport
        self.config = config
        self.clock = clock or Clock()

    def wait(self, task_id: str, cancel: Optional[threading.Event] = None) -> Optional[str]:
        """Poll a task until it succeeds or fails.

        Args:
            task_id: Opaque task id
            cancel: Optional event that aborts the wait with PollCancelled

        Returns:
            The task's Result value. When the task itself cannot be found,
            'Task not found' under the sentinel policy, or None once the
            retry policy has used up its retries.

        Raises:
            ResourceNotFound: Task failed with a "not found" error
            GenericBusinessFailure: Task failed with any other error
            TransientFailure: I/O error under the sentinel policy
        """
        retry = self.config.not_found_policy == 'retry'
        budget = {'retries': self.config.not_found_retries, 'polls': 0}

        def check() -> tuple[bool, Optional[str]]:
            budget['polls'] += 1
            try:
                data = self.transport.get_json(f"/TaskInfo/{task_id}")
            except TransientFailure as e:
                if not retry or budget['retries'] <= 0:
                    raise
                budget['retries'] -= 1
                logger.warning(f"Task {task_id} poll failed ({e}), {budget['retries']} retries left")
                return False, None

            if not data:
                if not retry:
                    logger.warning(f"Task {task_id} not found")
                    return True, TASK_NOT_FOUND
                if budget['retries'] <= 0:
                    logger.error(f"Task {task_id} not found after {budget['polls']} polls")
                    return True, None
                budget['retries'] -= 1
                logger.debug(f"Task {task_id} not found, {budget['retries']} retries left")
                return False, None

            state = data.get('State')
            if state == STATE_SUCCEEDED:
                logger.debug(f"Task {task_id} succeeded after {budget['polls']} polls")
                return True, data.get('Result')
            if state == STATE_FAILED:
                self._raise_failure(task_id, data.get('Errors') or {})
            return False, None

        logger.debug(f"Waiting for task {task_id}...")
        _, (_, result) = poll_until(
            check,
            lambda outcome: outcome[0],
            interval=self.config.poll_interval,
            cancel=cancel,
            clock=self.clock,
            delay_first=True,
            what=f"task {task_id}",
        )
        return result

    def _raise_failure(self, task_id: str, errors: dict) -> None:
        for key, value in errors.items():
            if 'not found' in key:
                logger.error(f"Task {task_id} failed: {key}: {value}")
                raise ResourceNotFound(key, str(value))

        message = json.dumps(errors, separators=(',', ':'))
        if self.config.truncate_task_errors:
            message = truncate_error(message)
        logger.error(f"Task {task_id} failed: {message}")
        raise GenericBusinessFailure(errors, message)

    def wait_for_response(self, response: Optional[dict]) -> Optional[str]:
        """Wait for the task referenced by a compute response (Headers.MessageId).

        Returns None when the response carries no task id.
        """
        headers = (response or {}).get('Headers') or {}
        task_id = headers.get('MessageId')
        if not task_id:
            return None
        return self.wait(task_id)

    def wait_for_storage_response(self, response: Optional[dict]) -> Optional[str]:
        """Wait for the task referenced by a storage response (QueuedMessageId)."""
        task_id = (response or {}).get('QueuedMessageId')
        if not task_id:
            return None
        return self.wait(task_id)
