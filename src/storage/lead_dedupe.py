"""Per-thread idempotency and lease records for lead email delivery.

Every coordination decision between concurrent invocations for the same
conversation goes through ``LeaseStore.try_transition``, a compare-and-set
evaluated atomically by the backing store. Nothing here reads a record and
then writes based on what it saw.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.common.errors import LeaseStoreError

from .models import STATUS_ERROR, STATUS_SENDING, STATUS_SENT, DedupeRecord

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

OUTCOME_ALREADY_SENT = "already_sent"
OUTCOME_IN_PROGRESS = "in_progress"
OUTCOME_COOLDOWN = "cooldown"


@dataclass(frozen=True)
class TransitionGuard:
    """Conditions that must hold on the stored record for a transition to apply.

    Args:
        allow_missing: Apply when no record exists yet (other clauses then only
            constrain an existing record).
        expected_states: Current status must be one of these.
        excluded_states: Current status must not be any of these.
        lock_expired_at: No lock is held, or the lock expired at or before this
            epoch second.
        lease_id: Stored lease id must equal this value.
    """

    allow_missing: bool = False
    expected_states: Tuple[str, ...] = ()
    excluded_states: Tuple[str, ...] = ()
    lock_expired_at: Optional[int] = None
    lease_id: Optional[str] = None


class LeaseStore(ABC):
    """Durable store offering an atomic conditional transition."""

    @abstractmethod
    def get(self, thread_id: str) -> Optional[Dict[str, Any]]:
        """Strongly consistent read of the record, or None."""

    @abstractmethod
    def try_transition(
        self,
        thread_id: str,
        new_status: str,
        guard: TransitionGuard,
        set_fields: Optional[Dict[str, Any]] = None,
        set_if_missing: Optional[Dict[str, Any]] = None,
        remove_fields: Iterable[str] = (),
        increment: Optional[Dict[str, int]] = None,
    ) -> bool:
        """Apply the update only if ``guard`` holds.

        Returns:
            True when applied, False when the guard did not hold.

        Raises:
            LeaseStoreError: The store could not evaluate the write.
        """


class DynamoLeaseStore(LeaseStore):
    """DynamoDB table keyed by ``thread_id`` with a ``ttl`` attribute."""

    def __init__(self, table_name: str, table=None):
        """Initialize with DynamoDB table.

        Args:
            table_name: Name of DynamoDB table
            table: Optional boto3 Table resource (for testing)
        """
        self.table_name = table_name
        if table is None:
            table = boto3.resource("dynamodb").Table(table_name)
        self.table = table

    def get(self, thread_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.table.get_item(Key={"thread_id": thread_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Dedupe read failed for {thread_id}: {e}")
            raise LeaseStoreError(f"Dedupe read failed: {e}") from e
        return response.get("Item")

    def try_transition(
        self,
        thread_id: str,
        new_status: str,
        guard: TransitionGuard,
        set_fields: Optional[Dict[str, Any]] = None,
        set_if_missing: Optional[Dict[str, Any]] = None,
        remove_fields: Iterable[str] = (),
        increment: Optional[Dict[str, int]] = None,
    ) -> bool:
        names: Dict[str, str] = {"#status": "status"}
        values: Dict[str, Any] = {":status": new_status}

        set_parts = ["#status = :status"]
        for key, value in (set_fields or {}).items():
            if value is None:
                continue
            names[f"#{key}"] = key
            values[f":{key}"] = value
            set_parts.append(f"#{key} = :{key}")
        for key, value in (set_if_missing or {}).items():
            names[f"#{key}"] = key
            values[f":{key}_init"] = value
            set_parts.append(f"#{key} = if_not_exists(#{key}, :{key}_init)")

        update_expression = "SET " + ", ".join(set_parts)

        removals = []
        for key in remove_fields:
            names[f"#{key}"] = key
            removals.append(f"#{key}")
        if removals:
            update_expression += " REMOVE " + ", ".join(removals)

        additions = []
        for key, amount in (increment or {}).items():
            names[f"#{key}"] = key
            values[f":{key}_inc"] = Decimal(amount)
            additions.append(f"#{key} :{key}_inc")
        if additions:
            update_expression += " ADD " + ", ".join(additions)

        condition = self._build_condition(guard, names, values)

        kwargs: Dict[str, Any] = {
            "Key": {"thread_id": thread_id},
            "UpdateExpression": update_expression,
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        if condition:
            kwargs["ConditionExpression"] = condition

        try:
            self.table.update_item(**kwargs)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"Dedupe condition failed for {thread_id} -> {new_status}")
                return False
            logger.error(f"Dedupe write failed for {thread_id}: {e}")
            raise LeaseStoreError(f"Dedupe write failed: {e}") from e
        except BotoCoreError as e:
            logger.error(f"Dedupe write failed for {thread_id}: {e}")
            raise LeaseStoreError(f"Dedupe write failed: {e}") from e

    @staticmethod
    def _build_condition(
        guard: TransitionGuard, names: Dict[str, str], values: Dict[str, Any]
    ) -> Optional[str]:
        clauses = []
        if guard.expected_states:
            placeholders = []
            for index, state in enumerate(guard.expected_states):
                values[f":expected{index}"] = state
                placeholders.append(f":expected{index}")
            clauses.append(f"#status IN ({', '.join(placeholders)})")
        for index, state in enumerate(guard.excluded_states):
            values[f":excluded{index}"] = state
            clauses.append(f"#status <> :excluded{index}")
        if guard.lock_expired_at is not None:
            names["#lock_expires_at"] = "lock_expires_at"
            values[":lock_now"] = guard.lock_expired_at
            clauses.append(
                "(attribute_not_exists(#lock_expires_at) OR #lock_expires_at <= :lock_now)"
            )
        if guard.lease_id is not None:
            names["#lease_id"] = "lease_id"
            values[":guard_lease"] = guard.lease_id
            clauses.append("#lease_id = :guard_lease")

        existing = " AND ".join(clauses)
        if guard.allow_missing:
            if not existing:
                return None
            return f"attribute_not_exists(thread_id) OR ({existing})"
        if not existing:
            return "attribute_exists(thread_id)"
        return f"attribute_exists(thread_id) AND {existing}"


class InMemoryLeaseStore(LeaseStore):
    """Process-local store for local development and tests.

    The guard is evaluated and the update applied under one lock, which gives
    the same compare-and-set semantics as the DynamoDB backend.
    """

    def __init__(self):
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, thread_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._items.get(thread_id)
            return dict(item) if item is not None else None

    def try_transition(
        self,
        thread_id: str,
        new_status: str,
        guard: TransitionGuard,
        set_fields: Optional[Dict[str, Any]] = None,
        set_if_missing: Optional[Dict[str, Any]] = None,
        remove_fields: Iterable[str] = (),
        increment: Optional[Dict[str, int]] = None,
    ) -> bool:
        with self._lock:
            current = self._items.get(thread_id)
            if not self._guard_holds(current, guard):
                return False

            item = dict(current) if current is not None else {"thread_id": thread_id}
            item["status"] = new_status
            for key, value in (set_fields or {}).items():
                if value is not None:
                    item[key] = value
            for key, value in (set_if_missing or {}).items():
                item.setdefault(key, value)
            for key in remove_fields:
                item.pop(key, None)
            for key, amount in (increment or {}).items():
                item[key] = int(item.get(key, 0)) + amount
            self._items[thread_id] = item
            return True

    @staticmethod
    def _guard_holds(current: Optional[Dict[str, Any]], guard: TransitionGuard) -> bool:
        if current is None:
            return guard.allow_missing
        status = current.get("status")
        if guard.expected_states and status not in guard.expected_states:
            return False
        if status in guard.excluded_states:
            return False
        if guard.lock_expired_at is not None:
            lock = current.get("lock_expires_at")
            if lock is not None and int(lock) > guard.lock_expired_at:
                return False
        if guard.lease_id is not None and current.get("lease_id") != guard.lease_id:
            return False
        return True


@dataclass
class LeaseResult:
    """Outcome of ``LeadLeaseManager.acquire``."""

    acquired: bool
    lease_id: Optional[str] = None
    record: Optional[DedupeRecord] = None


class LeadLeaseManager:
    """Send-once state machine over a ``LeaseStore``.

    States: (absent) -> sending -> sent | error; error -> sending after the
    cooldown; sending -> sending once the lease has expired. ``sent`` is
    terminal.
    """

    def __init__(
        self,
        store: LeaseStore,
        lease_seconds: int = 120,
        cooldown_seconds: int = 60,
        ttl_days: int = 30,
        now: Optional[Callable[[], int]] = None,
    ):
        self.store = store
        self.lease_seconds = lease_seconds
        self.cooldown_seconds = cooldown_seconds
        self.ttl_days = ttl_days
        self._now = now or (lambda: int(time.time()))

    def _ttl(self, now: int) -> int:
        return now + self.ttl_days * 86400

    def read(self, thread_id: str) -> Optional[DedupeRecord]:
        item = self.store.get(thread_id)
        return DedupeRecord.from_item(item) if item else None

    def fast_path_outcome(self, record: Optional[DedupeRecord]) -> Optional[str]:
        """Outcome that short-circuits an invocation, or None to proceed."""
        if record is None:
            return None
        if record.status == STATUS_SENT:
            return OUTCOME_ALREADY_SENT
        now = self._now()
        if record.status == STATUS_SENDING and record.lock_active(now):
            return OUTCOME_IN_PROGRESS
        if record.status == STATUS_ERROR and record.lock_active(now):
            return OUTCOME_COOLDOWN
        return None

    def acquire(self, thread_id: str, reason: str) -> LeaseResult:
        now = self._now()
        lease_id = str(uuid4())
        acquired = self.store.try_transition(
            thread_id,
            STATUS_SENDING,
            TransitionGuard(
                allow_missing=True,
                excluded_states=(STATUS_SENT,),
                lock_expired_at=now,
            ),
            set_fields={
                "lease_id": lease_id,
                "lock_expires_at": now + self.lease_seconds,
                "updated_at": now,
                "last_reason": reason,
                "ttl": self._ttl(now),
            },
            set_if_missing={"created_at": now},
            increment={"attempts": 1},
        )
        if acquired:
            logger.info(f"[{thread_id}] Lease {lease_id} acquired ({reason})")
            return LeaseResult(acquired=True, lease_id=lease_id)

        record = self.read(thread_id)
        logger.info(
            f"[{thread_id}] Lease not acquired; current status "
            f"{record.status if record else 'missing'}"
        )
        return LeaseResult(acquired=False, record=record)

    def mark_sent(self, thread_id: str, lease_id: str, message_id: Optional[str] = None) -> bool:
        now = self._now()
        applied = self.store.try_transition(
            thread_id,
            STATUS_SENT,
            TransitionGuard(expected_states=(STATUS_SENDING,), lease_id=lease_id),
            set_fields={
                "sent_at": now,
                "message_id": message_id,
                "updated_at": now,
                "ttl": self._ttl(now),
            },
            remove_fields=("lease_id", "lock_expires_at", "last_error"),
        )
        if not applied:
            logger.warning(f"[{thread_id}] mark_sent rejected; lease {lease_id} no longer held")
        return applied

    def mark_error(self, thread_id: str, lease_id: str, message: str) -> bool:
        now = self._now()
        applied = self.store.try_transition(
            thread_id,
            STATUS_ERROR,
            TransitionGuard(expected_states=(STATUS_SENDING,), lease_id=lease_id),
            set_fields={
                "lock_expires_at": now + self.cooldown_seconds,
                "last_error": (message or "unknown error")[:MAX_ERROR_LENGTH],
                "updated_at": now,
                "ttl": self._ttl(now),
            },
            remove_fields=("lease_id",),
        )
        if not applied:
            logger.warning(f"[{thread_id}] mark_error rejected; lease {lease_id} no longer held")
        return applied
