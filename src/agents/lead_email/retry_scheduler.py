"""Deferred re-invocation of the lead email function via EventBridge Scheduler."""

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from src.common.errors import SchedulerError

from .models import SERVER_RETRY_REASON

logger = logging.getLogger(__name__)

SCHEDULE_PREFIX = "lead-retry-"
MAX_SCHEDULE_NAME_LENGTH = 64
NAME_DIGEST_LENGTH = 12

_UNSAFE_NAME_CHARS = re.compile(r"[^0-9A-Za-z_.-]")


def schedule_name_for_thread(thread_id: str) -> str:
    """Deterministic schedule name, so concurrent callers for one thread collide on purpose.

    Ids that have to be rewritten or shortened get a digest of the raw id appended,
    so two threads never share a schedule.
    """
    safe_id = _UNSAFE_NAME_CHARS.sub("-", thread_id)
    name = f"{SCHEDULE_PREFIX}{safe_id}"
    if safe_id == thread_id and len(name) <= MAX_SCHEDULE_NAME_LENGTH:
        return name
    digest = hashlib.sha256(thread_id.encode("utf-8")).hexdigest()[:NAME_DIGEST_LENGTH]
    return f"{name[:MAX_SCHEDULE_NAME_LENGTH - NAME_DIGEST_LENGTH - 1]}-{digest}"


def compute_retry_at(last_activity_at: int, idle_threshold_seconds: int, margin_seconds: int) -> int:
    return last_activity_at + idle_threshold_seconds + margin_seconds


def _at_expression(epoch_seconds: int) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return f"at({moment.strftime('%Y-%m-%dT%H:%M:%S')})"


@dataclass(frozen=True)
class ScheduleResult:
    name: str
    run_at: int
    action: str  # "created" or "updated"


class LeadRetryScheduler:
    """Creates, re-times and deletes one-time retry schedules per thread."""

    def __init__(self, scheduler_client, target_arn: str, role_arn: str, group_name: str = "default"):
        self.client = scheduler_client
        self.target_arn = target_arn
        self.role_arn = role_arn
        self.group_name = group_name

    def _schedule_args(self, name: str, payload: Dict[str, Any], run_at: int) -> Dict[str, Any]:
        retry_payload = dict(payload)
        retry_payload["reason"] = SERVER_RETRY_REASON
        return {
            "Name": name,
            "GroupName": self.group_name,
            "ScheduleExpression": _at_expression(run_at),
            "ScheduleExpressionTimezone": "UTC",
            "FlexibleTimeWindow": {"Mode": "OFF"},
            "Target": {
                "Arn": self.target_arn,
                "RoleArn": self.role_arn,
                "Input": json.dumps(retry_payload),
            },
            "ActionAfterCompletion": "DELETE",
            "State": "ENABLED",
        }

    def schedule_retry(self, thread_id: str, payload: Dict[str, Any], run_at: int) -> ScheduleResult:
        """Create the retry schedule, or re-enable and re-time an existing one.

        Raises:
            SchedulerError: The scheduler rejected both create and update.
        """
        name = schedule_name_for_thread(thread_id)
        args = self._schedule_args(name, payload, run_at)
        try:
            self.client.create_schedule(**args)
            logger.info(f"[{thread_id}] Created retry schedule {name} at {run_at}")
            return ScheduleResult(name=name, run_at=run_at, action="created")
        except ClientError as e:
            if e.response["Error"]["Code"] != "ConflictException":
                logger.error(f"[{thread_id}] Failed to create retry schedule: {e}")
                raise SchedulerError(f"Failed to create retry schedule: {e}") from e
        except BotoCoreError as e:
            raise SchedulerError(f"Failed to create retry schedule: {e}") from e

        # Already scheduled; re-enable and move it to the new time
        try:
            self.client.update_schedule(**args)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"[{thread_id}] Failed to update retry schedule: {e}")
            raise SchedulerError(f"Failed to update retry schedule: {e}") from e
        logger.info(f"[{thread_id}] Updated retry schedule {name} to {run_at}")
        return ScheduleResult(name=name, run_at=run_at, action="updated")

    def cancel_retry(self, thread_id: str) -> bool:
        """Delete the thread's schedule.

        Returns:
            True if a schedule was deleted, False if none existed.
        """
        name = schedule_name_for_thread(thread_id)
        try:
            self.client.delete_schedule(Name=name, GroupName=self.group_name)
        except ClientError as e:
            if e.response["Error"]["Code"] == "ResourceNotFoundException":
                return False
            raise SchedulerError(f"Failed to delete retry schedule: {e}") from e
        except BotoCoreError as e:
            raise SchedulerError(f"Failed to delete retry schedule: {e}") from e
        logger.info(f"[{thread_id}] Deleted retry schedule {name}")
        return True
