"""Create flows for lab resources.

Each flow registers what it creates in the state store as soon as AWS has
accepted the create call. If a later step fails, the resources created by
that flow are rolled back (in AWS and in the registry) before the error is
re-raised.
"""

import logging
import os
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .cloud import CloudProvider
from .config import LabConfig, validate_bucket_name
from .logging_setup import log_success
from .registry import StateStore
from .state import ComputeInstance, CredentialPair, FirewallGroup, ObjectContainer

logger = logging.getLogger(__name__)

KEY_PAIR_PREFIX = "devops-keypair"
SAMPLE_OBJECT_KEY = "welcome.txt"

SAMPLE_OBJECT_TEMPLATE = """Welcome to DevOps Automation Lab!
==================================

This file was automatically uploaded by awslab.

Bucket: {bucket}
Region: {region}
Created: {created}

Project: {project}
"""


class Provisioner:
    """Creates EC2 instances, key pairs, security groups and buckets."""

    def __init__(
        self,
        store: StateStore,
        cloud: CloudProvider,
        config: LabConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.cloud = cloud
        self.config = config
        self.clock = clock
        self.created_resources: Dict[str, List[str]] = {
            "instances": [],
            "key_pairs": [],
            "buckets": [],
        }
        self.outputs: Dict[str, str] = {}

    @property
    def region(self) -> str:
        return self.config.region

    def create_instance(
        self,
        name: str = "AutomationLab-EC2",
        instance_type: str = "t3.micro",
        key_name: Optional[str] = None,
        ami_id: Optional[str] = None,
    ) -> ComputeInstance:
        """Launch an instance with a fresh key pair in the default VPC.

        Args:
            name: Name tag of the instance
            instance_type: EC2 instance type
            key_name: Key pair to create; defaults to a timestamped name
            ami_id: AMI to launch; defaults to the latest Amazon Linux 2023

        Returns:
            The registered instance record

        Raises:
            FatalError: If prerequisites (credentials, VPC, AMI) are missing
            ClientError: If an AWS call fails; created resources are rolled back
        """
        if key_name is None:
            key_name = f"{KEY_PAIR_PREFIX}-{int(self.clock())}"

        self.cloud.verify_credentials()

        logger.info("[1/6] Fetching AMI...")
        if ami_id is None:
            ami_id = self.cloud.latest_ami()
        logger.info("[2/6] Getting default VPC...")
        vpc_id = self.cloud.default_vpc()
        logger.info("[3/6] Getting security group...")
        group_id = self.cloud.default_security_group(vpc_id)

        try:
            logger.info("[4/6] Creating EC2 key pair...")
            self._create_key_pair(key_name)

            logger.info("[5/6] Launching EC2 instance...")
            instance_id = self.cloud.launch_instance(
                name=name,
                ami_id=ami_id,
                instance_type=instance_type,
                key_name=key_name,
                security_group_ids=[group_id],
            )
            self.created_resources["instances"].append(instance_id)
            record = ComputeInstance(
                instance_id=instance_id,
                name=name,
                instance_type=instance_type,
                key_pair=key_name,
                security_groups=[group_id],
                region=self.region,
                state="pending",
                created_at=self.clock(),
            )
            self.store.instances.upsert(record)

            logger.info("[6/6] Waiting for instance...")
            self.cloud.wait_until_running(instance_id)
            record.state = "running"
            self.store.instances.upsert(record)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Instance creation failed: {e}")
            self.rollback_resources()
            raise

        addresses = self.cloud.instance_addresses(instance_id)
        logger.info(f"Public IP: {addresses['public_ip']}")
        logger.info(f"Private IP: {addresses['private_ip']}")
        self.outputs = {
            "INSTANCE_ID": instance_id,
            "INSTANCE_TYPE": instance_type,
            "AMI_ID": ami_id,
            "PUBLIC_IP": addresses["public_ip"],
            "PRIVATE_IP": addresses["private_ip"],
            "KEY_NAME": key_name,
            "VPC_ID": vpc_id,
            "REGION": self.region,
        }

        if self.cloud.dry_run:
            logger.info(f"[DRY-RUN] EC2 instance creation previewed: {instance_id}")
        else:
            log_success(logger, f"EC2 instance creation completed: {instance_id}")
        return record

    def _create_key_pair(self, key_name: str) -> None:
        key_material = self.cloud.create_key_pair(key_name)
        self.created_resources["key_pairs"].append(key_name)
        self.store.key_pairs.upsert(
            CredentialPair(key_name=key_name, region=self.region, created_at=self.clock())
        )

        pem_path = os.path.join(self.config.key_dir, f"{key_name}.pem")
        if self.cloud.dry_run:
            logger.info(f"[DRY-RUN] Key pair would be saved to: {pem_path}")
            return
        with open(pem_path, "w") as f:
            f.write(key_material)
        os.chmod(pem_path, 0o400)
        log_success(logger, f"Private key saved: {pem_path}")

    def create_security_group(
        self, group_name: str, description: str = "Security group for AutomationLab"
    ) -> FirewallGroup:
        """Create a security group in the default VPC, or adopt an existing one.

        Returns:
            The registered security group record
        """
        self.cloud.verify_credentials()
        vpc_id = self.cloud.default_vpc()

        existing = self.cloud.find_security_group(group_name, vpc_id)
        if existing is not None:
            group_id = existing["GroupId"]
            logger.info(f"Security group {group_name} already exists: {group_id}")
            if group_id not in self.store.security_groups:
                self.store.security_groups.upsert(
                    FirewallGroup(
                        group_id=group_id,
                        group_name=group_name,
                        vpc_id=vpc_id,
                        region=self.region,
                        created_at=self.clock(),
                    )
                )
            record = self.store.security_groups.get(group_id)
        else:
            group_id = self.cloud.create_security_group(group_name, description, vpc_id)
            record = FirewallGroup(
                group_id=group_id,
                group_name=group_name,
                vpc_id=vpc_id,
                region=self.region,
                created_at=self.clock(),
            )
            self.store.security_groups.upsert(record)

        self.outputs = {
            "SG_ID": record.group_id,
            "SG_NAME": record.group_name,
            "VPC_ID": record.vpc_id,
            "REGION": self.region,
        }
        return record

    def create_bucket(self, bucket_name: str) -> ObjectContainer:
        """Create a versioned, tagged bucket holding a sample object.

        An existing bucket gets no create call; it is only registered if the
        registry doesn't track it yet.

        Raises:
            FatalError: If the bucket name is invalid
            ClientError: If creation fails; a half-configured bucket is deleted
        """
        validate_bucket_name(bucket_name)
        self.cloud.verify_credentials()

        if self.cloud.bucket_exists(bucket_name):
            logger.info(f"Bucket {bucket_name} already exists, skipping creation")
            if bucket_name not in self.store.buckets:
                self.store.buckets.upsert(
                    ObjectContainer(
                        bucket_name=bucket_name,
                        region=self.region,
                        created_at=self.clock(),
                    )
                )
            record = self.store.buckets.get(bucket_name)
            self.outputs = {"BUCKET_NAME": bucket_name, "REGION": self.region}
            return record

        try:
            self.cloud.create_bucket(bucket_name)
            self.cloud.put_public_read_policy(bucket_name)
            self.cloud.upload_object(
                bucket_name, SAMPLE_OBJECT_KEY, self._sample_object(bucket_name)
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Bucket creation failed: {e}")
            self.created_resources["buckets"].append(bucket_name)
            self.rollback_resources()
            raise

        record = ObjectContainer(
            bucket_name=bucket_name, region=self.region, created_at=self.clock()
        )
        self.store.buckets.upsert(record)
        self.outputs = {
            "BUCKET_NAME": bucket_name,
            "REGION": self.region,
            "SAMPLE_FILE": SAMPLE_OBJECT_KEY,
        }
        return record

    def _sample_object(self, bucket_name: str) -> str:
        return SAMPLE_OBJECT_TEMPLATE.format(
            bucket=bucket_name,
            region=self.region,
            created=datetime.fromtimestamp(self.clock()).strftime("%Y-%m-%d %H:%M:%S"),
            project=self.config.project_tag,
        )

    def export_outputs(self, output_file: str, action: str) -> Optional[str]:
        """Write the ids from the last create flow as shell exports.

        Args:
            output_file: Path of the env file to write
            action: Name of the command, recorded in the header line

        Returns:
            The path written, or None when there was nothing to write or in dry-run
        """
        if not self.outputs:
            return None
        if self.cloud.dry_run:
            logger.info(f"[DRY-RUN] Would export outputs to {output_file}")
            return None

        directory = os.path.dirname(output_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        stamp = datetime.fromtimestamp(self.clock()).strftime("%Y-%m-%d %H:%M:%S")
        with open(output_file, "w") as f:
            f.write(f"# Generated by awslab {action} on {stamp}\n")
            for name, value in self.outputs.items():
                f.write(f'export {name}="{value}"\n')
        log_success(logger, f"Outputs exported to {output_file}")
        return output_file

    def rollback_resources(self) -> None:
        """Remove everything this provisioner created, in AWS and in the registry."""
        logger.info("Rolling back created resources...")

        for instance_id in self.created_resources["instances"]:
            try:
                self.cloud.terminate_instance(instance_id)
                logger.info(f"Terminated instance: {instance_id}")
            except ClientError as e:
                logger.error(f"Failed to terminate instance {instance_id}: {e}")
                continue
            self.store.instances.remove(instance_id)

        for key_name in self.created_resources["key_pairs"]:
            try:
                self.cloud.delete_key_pair(key_name)
                logger.info(f"Deleted key pair: {key_name}")
            except ClientError as e:
                logger.error(f"Failed to delete key pair {key_name}: {e}")
                continue
            self.store.key_pairs.remove(key_name)
            pem_path = os.path.join(self.config.key_dir, f"{key_name}.pem")
            if os.path.exists(pem_path):
                os.remove(pem_path)

        for bucket_name in self.created_resources["buckets"]:
            try:
                if self.cloud.bucket_exists(bucket_name):
                    self.cloud.delete_bucket(bucket_name)
                    logger.info(f"Deleted bucket: {bucket_name}")
            except ClientError as e:
                logger.error(f"Failed to delete bucket {bucket_name}: {e}")

        self.created_resources = {"instances": [], "key_pairs": [], "buckets": []}

    def adopt(self) -> Dict[str, int]:
        """Register project-tagged resources that the registry doesn't know about.

        Returns:
            Number of newly registered entries per resource kind
        """
        adopted = {"instances": 0, "key_pairs": 0, "security_groups": 0, "buckets": 0}
        now = self.clock()

        for instance in self.cloud.list_tagged_instances():
            instance_id = instance["InstanceId"]
            if instance_id in self.store.instances:
                continue
            self.store.instances.upsert(
                ComputeInstance(
                    instance_id=instance_id,
                    name=_tag_value(instance, "Name"),
                    instance_type=instance.get("InstanceType", "unknown"),
                    key_pair=instance.get("KeyName", "unknown"),
                    security_groups=[g["GroupId"] for g in instance.get("SecurityGroups", [])],
                    region=self.region,
                    state=instance["State"]["Name"],
                    created_at=now,
                )
            )
            adopted["instances"] += 1

        for key_name in self.cloud.list_key_pairs(KEY_PAIR_PREFIX):
            if key_name in self.store.key_pairs:
                continue
            self.store.key_pairs.upsert(
                CredentialPair(key_name=key_name, region=self.region, created_at=now)
            )
            adopted["key_pairs"] += 1

        for group in self.cloud.list_tagged_security_groups():
            if group["GroupId"] in self.store.security_groups:
                continue
            self.store.security_groups.upsert(
                FirewallGroup(
                    group_id=group["GroupId"],
                    group_name=group.get("GroupName", "unknown"),
                    vpc_id=group.get("VpcId", "unknown"),
                    region=self.region,
                    created_at=now,
                )
            )
            adopted["security_groups"] += 1

        for bucket_name in self.cloud.list_tagged_buckets():
            if bucket_name in self.store.buckets or bucket_name == self.store.bucket:
                continue
            self.store.buckets.upsert(
                ObjectContainer(bucket_name=bucket_name, region=self.region, created_at=now)
            )
            adopted["buckets"] += 1

        logger.info(f"Adopted untracked resources: {adopted}")
        return adopted


def _tag_value(resource: Dict[str, Any], key: str, default: str = "unknown") -> str:
    for tag in resource.get("Tags", []):
        if tag["Key"] == key:
            return tag["Value"]
    return default
