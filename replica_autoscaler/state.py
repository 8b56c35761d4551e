"""
State management for the autoscaler.

ServiceScalingState is the only data that survives between cycles. Stores
expose load/save plus a per-service scaling lock. The DynamoDB store uses a
conditional write for the lock so two orchestrator processes can never scale
the same service at once; the local stores always grant it.
"""

import json
import logging
import os
import tempfile
import threading
import time
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from replica_autoscaler.errors import StateStoreError
from replica_autoscaler.models import ServiceIdentity, ServiceScalingState

logger = logging.getLogger()


class InMemoryStateStore:
    """Process-local store. State is lost on restart."""

    def __init__(self, initial: Optional[Dict[ServiceIdentity, ServiceScalingState]] = None):
        self._states = dict(initial or {})
        self._lock = threading.Lock()

    def load(self, service: ServiceIdentity) -> Optional[ServiceScalingState]:
        with self._lock:
            return self._states.get(service)

    def save(self, state: ServiceScalingState) -> None:
        with self._lock:
            self._states[state.service] = state

    def acquire_lock(self, service: ServiceIdentity) -> bool:
        return True

    def release_lock(self, service: ServiceIdentity) -> None:
        pass


class JsonFileStateStore:
    """Stores every service's state in one JSON document, rewritten atomically."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _read_all(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as e:
            raise StateStoreError(f"Failed to read state file {self.path}: {e}") from e

    def load(self, service: ServiceIdentity) -> Optional[ServiceScalingState]:
        with self._lock:
            data = self._read_all().get(service)
        if data is None:
            return None
        try:
            return ServiceScalingState.from_dict(data)
        except (KeyError, ValueError) as e:
            raise StateStoreError(f"Corrupt state for {service} in {self.path}: {e}") from e

    def save(self, state: ServiceScalingState) -> None:
        with self._lock:
            data = self._read_all()
            data[state.service] = state.to_dict()
            directory = os.path.dirname(os.path.abspath(self.path))
            try:
                os.makedirs(directory, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state-")
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=2, sort_keys=True)
                os.replace(tmp_path, self.path)
            except OSError as e:
                raise StateStoreError(f"Failed to write state file {self.path}: {e}") from e
        logger.info(f"Saved state for {state.service}: {state.current_replicas} replicas")

    def acquire_lock(self, service: ServiceIdentity) -> bool:
        return True

    def release_lock(self, service: ServiceIdentity) -> None:
        pass


class DynamoDBStateStore:
    """
    Manages service scaling state in DynamoDB.

    The scaling lock is a lease: acquire_lock writes lock_expires_at (epoch
    seconds) and a lock whose lease has run out can be taken over, so a
    process that dies while holding it does not block the service forever.
    """

    def __init__(self, table_name: str = None, table=None, lease_seconds: float = 300, clock=time.time):
        if table is None:
            dynamodb = boto3.resource("dynamodb")
            table = dynamodb.Table(table_name or os.environ.get("DYNAMODB_TABLE", "autoscaler-service-state"))
        self.table = table
        self.lease_seconds = lease_seconds
        self.clock = clock

    def load(self, service: ServiceIdentity) -> Optional[ServiceScalingState]:
        """Get stored state for a service, or None if it was never scaled."""
        try:
            response = self.table.get_item(Key={"service": service})
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to get state for {service}: {e}")
            raise StateStoreError(f"Failed to get state for {service}: {e}") from e

        item = response.get("Item")
        if not item or "current_replicas" not in item:
            return None
        return ServiceScalingState.from_dict({
            "service": service,
            "current_replicas": int(item["current_replicas"]),
            "last_scale_at": item.get("last_scale_at"),
            "last_scale_direction": item.get("last_scale_direction"),
        })

    def save(self, state: ServiceScalingState) -> None:
        """Update replica count and last scale time."""
        data = state.to_dict()
        try:
            self.table.update_item(
                Key={"service": state.service},
                UpdateExpression=(
                    "SET current_replicas = :count, last_scale_at = :time, last_scale_direction = :direction"
                ),
                ExpressionAttributeValues={
                    ":count": data["current_replicas"],
                    ":time": data["last_scale_at"],
                    ":direction": data["last_scale_direction"],
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to save state for {state.service}: {e}")
            raise StateStoreError(f"Failed to save state for {state.service}: {e}") from e
        logger.info(f"Updated {state.service} replica count to {state.current_replicas}")

    def acquire_lock(self, service: ServiceIdentity) -> bool:
        """
        Acquire the scaling lock using a DynamoDB conditional write.
        Returns True if lock acquired, False if another holder's lease is still valid.
        """
        # boto3 rejects floats for DynamoDB numbers
        now = int(self.clock())
        try:
            response = self.table.update_item(
                Key={"service": service},
                UpdateExpression="SET scaling_in_progress = :val, lock_expires_at = :expires",
                ConditionExpression=(
                    "attribute_not_exists(scaling_in_progress) OR scaling_in_progress = :false "
                    "OR attribute_not_exists(lock_expires_at) OR lock_expires_at < :now"
                ),
                ExpressionAttributeValues={
                    ":val": True,
                    ":false": False,
                    ":now": now,
                    ":expires": now + int(self.lease_seconds),
                },
                ReturnValues="UPDATED_OLD",
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.warning(f"Failed to acquire lock for {service} - scaling already in progress")
                return False
            logger.error(f"Failed to acquire lock for {service}: {e}")
            raise StateStoreError(f"Failed to acquire lock for {service}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"Failed to acquire lock for {service}: {e}")
            raise StateStoreError(f"Failed to acquire lock for {service}: {e}") from e

        previous = (response or {}).get("Attributes", {})
        if previous.get("scaling_in_progress"):
            logger.warning(
                f"Took over expired scaling lock for {service} (lease ended at {previous.get('lock_expires_at')})"
            )
        else:
            logger.info(f"Acquired scaling lock for {service}")
        return True

    def release_lock(self, service: ServiceIdentity) -> None:
        """Release the scaling lock."""
        try:
            self.table.update_item(
                Key={"service": service},
                UpdateExpression="SET scaling_in_progress = :val REMOVE lock_expires_at",
                ExpressionAttributeValues={
                    ":val": False,
                },
            )
            logger.info(f"Released scaling lock for {service}")
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to release lock for {service}: {e}")
            raise StateStoreError(f"Failed to release lock for {service}: {e}") from e
