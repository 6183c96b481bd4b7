"""Cleanup: converge the registry with what actually exists in AWS.

Every tracked entry is checked against AWS. Entries whose resource is already
gone are dropped without any delete call; live resources are deleted and then
dropped. A delete that fails (typically a dependency still in place) is logged
and the entry stays tracked for the next run.

Phases run in a fixed order: instances, key pairs, security groups, buckets.
Security groups can't be deleted while an instance still uses them, so
between the instance and security-group phases the reconciler waits for the
terminations it issued and then sleeps for a fixed settle delay.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .cloud import CloudProvider
from .errors import error_code, is_not_found
from .logging_setup import log_success
from .registry import StateStore, TrackedCollection
from .state import FirewallGroup, ObjectContainer

logger = logging.getLogger(__name__)

PROTECTED_GROUP_NAMES = {"default"}

# Outcomes of reconciling one entry
DELETED = "deleted"
ALREADY_GONE = "already_gone"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class PhaseTally:
    """Counts for one resource kind."""

    label: str
    deleted: int = 0
    already_gone: int = 0
    skipped: int = 0
    failed: int = 0
    remaining: int = 0
    failures: List[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        setattr(self, outcome, getattr(self, outcome) + 1)


@dataclass
class CleanupReport:
    phases: Dict[str, PhaseTally] = field(default_factory=dict)

    @property
    def failed(self) -> int:
        return sum(p.failed for p in self.phases.values())

    @property
    def succeeded(self) -> bool:
        return self.failed == 0


class Reconciler:
    """Deletes tracked resources and prunes the registry to match AWS."""

    def __init__(
        self,
        store: StateStore,
        cloud: CloudProvider,
        settle_seconds: float = 5.0,
        state_bucket: Optional[str] = None,
        key_dir: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the reconciler.

        Args:
            store: Registry to reconcile
            cloud: AWS operations
            settle_seconds: Fixed pause before the security-group phase
            state_bucket: Bucket holding the state document; never deleted
            key_dir: Directory holding <key_name>.pem files to remove
            sleep: Sleep function, replaceable in tests
        """
        self.store = store
        self.cloud = cloud
        self.settle_seconds = settle_seconds
        self.state_bucket = state_bucket if state_bucket is not None else store.bucket
        self.key_dir = key_dir
        self.sleep = sleep
        self._terminated: List[str] = []

    def reconcile_all(self) -> CleanupReport:
        report = CleanupReport()
        self._terminated = []

        logger.info("[1/4] Reconciling EC2 instances...")
        instances = self._reconcile(
            self.store.instances, self._instance_exists, self._terminate_instance
        )
        report.phases["instances"] = instances

        logger.info("[2/4] Reconciling key pairs...")
        report.phases["key_pairs"] = self._reconcile(
            self.store.key_pairs, self._key_pair_exists, self._delete_key_pair
        )

        self._wait_for_instances()

        logger.info("[3/4] Reconciling security groups...")
        report.phases["security_groups"] = self._reconcile(
            self.store.security_groups,
            self._security_group_exists,
            self.cloud.delete_security_group,
            protected=self._is_protected_group,
        )

        logger.info("[4/4] Reconciling S3 buckets...")
        report.phases["buckets"] = self._reconcile(
            self.store.buckets,
            self.cloud.bucket_exists,
            self.cloud.delete_bucket,
            protected=self._is_state_bucket,
        )
        return report

    def _reconcile(
        self,
        collection: TrackedCollection,
        exists: Callable[[str], bool],
        delete: Callable[[str], None],
        protected: Optional[Callable] = None,
    ) -> PhaseTally:
        tally = PhaseTally(label=collection.label)
        entries = collection.list()
        if not entries:
            log_success(logger, f"No tracked {collection.label.lower()}s")

        for record in entries:
            outcome = self.reconcile_entry(collection, record, exists, delete, protected)
            tally.record(outcome)
            if outcome == FAILED:
                tally.failures.append(record.key)

        tally.remaining = collection.count()
        return tally

    def reconcile_entry(self, collection, record, exists, delete, protected=None) -> str:
        """Move one registry entry to a terminal state and return the outcome."""
        key = record.key
        label = collection.label

        if protected is not None and protected(record):
            logger.warning(f"{label} {key} cannot be deleted; untracking it")
            collection.remove(key)
            return SKIPPED

        try:
            live = exists(key)
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Could not check {label} {key}: {e}")
            return FAILED

        if not live:
            collection.remove(key)
            logger.info(f"{label} {key} removed from state because it is already gone")
            return ALREADY_GONE

        try:
            delete(key)
        except ClientError as e:
            if is_not_found(e):
                collection.remove(key)
                logger.info(f"{label} {key} disappeared before deletion; removed from state")
                return ALREADY_GONE
            logger.warning(
                f"Could not delete {label} {key} ({error_code(e) or 'error'}): "
                "it stays tracked for the next cleanup"
            )
            return FAILED
        except BotoCoreError as e:
            logger.warning(f"Could not delete {label} {key}: {e}")
            return FAILED

        collection.remove(key)
        if self.cloud.dry_run:
            logger.info(f"[DRY-RUN] Would delete {label.lower()}: {key}")
        else:
            log_success(logger, f"Deleted {label.lower()}: {key}")
        return DELETED

    # Per-kind hooks

    def _instance_exists(self, instance_id: str) -> bool:
        return self.cloud.instance_state(instance_id) is not None

    def _terminate_instance(self, instance_id: str) -> None:
        self.cloud.terminate_instance(instance_id)
        self._terminated.append(instance_id)

    def _key_pair_exists(self, key_name: str) -> bool:
        return self.cloud.key_pair_exists(key_name)

    def _delete_key_pair(self, key_name: str) -> None:
        self.cloud.delete_key_pair(key_name)
        if self.key_dir is None or self.cloud.dry_run:
            return
        pem_path = os.path.join(self.key_dir, f"{key_name}.pem")
        if os.path.exists(pem_path):
            os.remove(pem_path)
            logger.info(f"Removed local file: {pem_path}")

    def _security_group_exists(self, group_id: str) -> bool:
        return self.cloud.describe_security_group(group_id) is not None

    def _is_protected_group(self, record: FirewallGroup) -> bool:
        return record.group_name in PROTECTED_GROUP_NAMES

    def _is_state_bucket(self, record: ObjectContainer) -> bool:
        return record.bucket_name == self.state_bucket

    def _wait_for_instances(self) -> None:
        if self._terminated:
            self.cloud.wait_until_terminated(list(self._terminated))
            if self.settle_seconds > 0 and not self.cloud.dry_run:
                logger.info(
                    f"Waiting {self.settle_seconds:g}s before removing security groups..."
                )
                self.sleep(self.settle_seconds)
