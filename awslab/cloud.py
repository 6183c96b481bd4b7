"""Thin AWS API layer used by the create and cleanup flows.

Lookups report absence as ``None``/``False`` rather than raising; anything
else AWS complains about is left to propagate as ``ClientError``.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError, NoCredentialsError, WaiterError

from .config import LabConfig
from .errors import FatalError, is_not_found
from .execution import ExecutionContext
from .logging_setup import log_success

logger = logging.getLogger(__name__)

AMI_NAME_PATTERN = "al2023-ami-2023.*-x86_64"
LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped", "shutting-down"]
MANAGED_BY = "awslab"

# Documentation addresses reported for instances in dry-run
DRY_RUN_PUBLIC_IP = "203.0.113.1"
DRY_RUN_PRIVATE_IP = "10.0.1.10"


class CloudProvider:
    """EC2, S3 and STS operations for lab resources."""

    def __init__(
        self,
        ec2_client: Any,
        s3_client: Any,
        sts_client: Any,
        region: str,
        project_tag: str = "AutomationLab",
        dry_run: bool = False,
    ):
        self.ec2_client = ec2_client
        self.s3_client = s3_client
        self.sts_client = sts_client
        self.region = region
        self.project_tag = project_tag
        self.dry_run = dry_run

    @classmethod
    def from_config(cls, config: LabConfig) -> "CloudProvider":
        context = ExecutionContext(
            region=config.region, dry_run=config.dry_run, profile=config.profile
        )
        return cls(
            ec2_client=context.client("ec2"),
            s3_client=context.client("s3"),
            sts_client=context.client("sts"),
            region=config.region,
            project_tag=config.project_tag,
            dry_run=config.dry_run,
        )

    def tags(self, name: str) -> List[Dict[str, str]]:
        return [
            {"Key": "Name", "Value": name},
            {"Key": "Project", "Value": self.project_tag},
            {"Key": "Environment", "Value": "Development"},
            {"Key": "ManagedBy", "Value": MANAGED_BY},
            {
                "Key": "CreatedAt",
                "Value": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        ]

    def _done(self, message: str) -> None:
        """Log a SUCCESS line for a mutation, unless it only happened in dry-run."""
        if not self.dry_run:
            log_success(logger, message)

    # Identity

    def verify_credentials(self) -> str:
        """Confirm the credentials work.

        Runs in dry-run too; the identity call is read-only.

        Returns:
            The AWS account id

        Raises:
            FatalError: If the credentials are missing or rejected
        """
        logger.info(f"Verifying AWS credentials for region: {self.region}")
        try:
            identity = self.sts_client.get_caller_identity()
        except (ClientError, NoCredentialsError) as e:
            raise FatalError(f"AWS credentials are not configured properly: {e}") from e
        account_id = identity["Account"]
        log_success(logger, f"AWS credentials verified (Account: {account_id})")
        return account_id

    # Networking lookups

    def default_vpc(self) -> str:
        """Return the id of the region's default VPC.

        Raises:
            FatalError: If the region has no default VPC
        """
        response = self.ec2_client.describe_vpcs(
            Filters=[{"Name": "isDefault", "Values": ["true"]}]
        )
        vpcs = response.get("Vpcs", [])
        if not vpcs:
            raise FatalError(f"No default VPC found in {self.region}")
        vpc_id = vpcs[0]["VpcId"]
        log_success(logger, f"Using VPC: {vpc_id}")
        return vpc_id

    def find_security_group(self, group_name: str, vpc_id: str) -> Optional[Dict[str, Any]]:
        response = self.ec2_client.describe_security_groups(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "group-name", "Values": [group_name]},
            ]
        )
        groups = response.get("SecurityGroups", [])
        return groups[0] if groups else None

    def default_security_group(self, vpc_id: str) -> str:
        group = self.find_security_group("default", vpc_id)
        if group is None:
            raise FatalError(f"Could not find default security group in {vpc_id}")
        log_success(logger, f"Using security group: {group['GroupId']}")
        return group["GroupId"]

    def latest_ami(self) -> str:
        """Return the newest Amazon Linux 2023 x86_64 AMI in the region."""
        logger.info(f"Fetching latest Amazon Linux 2023 AMI for {self.region}")
        response = self.ec2_client.describe_images(
            Owners=["amazon"],
            Filters=[
                {"Name": "name", "Values": [AMI_NAME_PATTERN]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(response.get("Images", []), key=lambda i: i["CreationDate"])
        if not images:
            raise FatalError(f"Could not find suitable AMI in region {self.region}")
        ami_id = images[-1]["ImageId"]
        log_success(logger, f"Found AMI: {ami_id}")
        return ami_id

    # Instances

    def instance_state(self, instance_id: str) -> Optional[str]:
        """Return the instance state name, or None if it no longer exists."""
        try:
            response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                state = instance["State"]["Name"]
                return None if state == "terminated" else state
        return None

    def launch_instance(
        self,
        name: str,
        ami_id: str,
        instance_type: str,
        key_name: str,
        security_group_ids: List[str],
    ) -> str:
        """Launch one instance and return its id."""
        response = self.ec2_client.run_instances(
            ImageId=ami_id,
            InstanceType=instance_type,
            KeyName=key_name,
            SecurityGroupIds=security_group_ids,
            MinCount=1,
            MaxCount=1,
            TagSpecifications=[{"ResourceType": "instance", "Tags": self.tags(name)}],
        )
        instance_id = response["Instances"][0]["InstanceId"]
        self._done(f"Instance launched: {instance_id} ({name})")
        return instance_id

    def wait_until_running(self, instance_id: str) -> None:
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would wait for instance {instance_id}")
            return
        logger.info(f"Waiting for instance {instance_id} to be running...")
        waiter = self.ec2_client.get_waiter("instance_running")
        waiter.wait(InstanceIds=[instance_id], WaiterConfig={"Delay": 5, "MaxAttempts": 60})
        log_success(logger, f"Instance {instance_id} is now running")

    def wait_until_terminated(self, instance_ids: List[str]) -> bool:
        """Block until the instances are terminated.

        Returns:
            False if the waiter gave up; the caller decides what that means
        """
        if not instance_ids:
            return True
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would wait for termination of {instance_ids}")
            return True
        logger.info(f"Waiting for instances to terminate: {instance_ids}")
        waiter = self.ec2_client.get_waiter("instance_terminated")
        try:
            waiter.wait(InstanceIds=instance_ids, WaiterConfig={"Delay": 10, "MaxAttempts": 60})
        except WaiterError as e:
            logger.warning(f"Instances did not finish terminating: {e}")
            return False
        return True

    def terminate_instance(self, instance_id: str) -> None:
        self.ec2_client.terminate_instances(InstanceIds=[instance_id])

    def list_tagged_instances(self) -> List[Dict[str, Any]]:
        response = self.ec2_client.describe_instances(
            Filters=[
                {"Name": "tag:Project", "Values": [self.project_tag]},
                {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
            ]
        )
        instances = []
        for reservation in response.get("Reservations", []):
            instances.extend(reservation.get("Instances", []))
        return instances

    def instance_addresses(self, instance_id: str) -> Dict[str, str]:
        """Return the public and private IP of an instance.

        Returns:
            Dictionary with ``public_ip`` and ``private_ip``; an address the
            instance doesn't have is reported as "N/A"
        """
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would retrieve addresses of {instance_id}")
            return {"public_ip": DRY_RUN_PUBLIC_IP, "private_ip": DRY_RUN_PRIVATE_IP}

        response = self.ec2_client.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return {
                    "public_ip": instance.get("PublicIpAddress", "N/A"),
                    "private_ip": instance.get("PrivateIpAddress", "N/A"),
                }
        return {"public_ip": "N/A", "private_ip": "N/A"}

    # Key pairs

    def key_pair_exists(self, key_name: str) -> bool:
        try:
            response = self.ec2_client.describe_key_pairs(KeyNames=[key_name])
        except ClientError as e:
            if is_not_found(e):
                return False
            raise
        return bool(response.get("KeyPairs"))

    def create_key_pair(self, key_name: str) -> str:
        """Create a key pair and return its private key material."""
        response = self.ec2_client.create_key_pair(
            KeyName=key_name,
            TagSpecifications=[{"ResourceType": "key-pair", "Tags": self.tags(key_name)}],
        )
        self._done(f"Key pair created: {key_name}")
        return response.get("KeyMaterial", "")

    def delete_key_pair(self, key_name: str) -> None:
        self.ec2_client.delete_key_pair(KeyName=key_name)

    def list_key_pairs(self, prefix: str) -> List[str]:
        response = self.ec2_client.describe_key_pairs()
        return [
            kp["KeyName"]
            for kp in response.get("KeyPairs", [])
            if kp["KeyName"].startswith(prefix)
        ]

    # Security groups

    def describe_security_group(self, group_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.ec2_client.describe_security_groups(GroupIds=[group_id])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        groups = response.get("SecurityGroups", [])
        return groups[0] if groups else None

    def create_security_group(self, group_name: str, description: str, vpc_id: str) -> str:
        response = self.ec2_client.create_security_group(
            GroupName=group_name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=[
                {"ResourceType": "security-group", "Tags": self.tags(group_name)}
            ],
        )
        group_id = response["GroupId"]
        self._done(f"Security group created: {group_id}")
        return group_id

    def delete_security_group(self, group_id: str) -> None:
        self.ec2_client.delete_security_group(GroupId=group_id)

    def list_tagged_security_groups(self) -> List[Dict[str, Any]]:
        response = self.ec2_client.describe_security_groups(
            Filters=[{"Name": "tag:Project", "Values": [self.project_tag]}]
        )
        return response.get("SecurityGroups", [])

    # Buckets

    def bucket_exists(self, bucket_name: str) -> bool:
        try:
            self.s3_client.head_bucket(Bucket=bucket_name)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise

    def create_bucket(self, bucket_name: str) -> None:
        """Create a tagged, versioned bucket."""
        create_args = {"Bucket": bucket_name}
        if self.region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region
            }
        self.s3_client.create_bucket(**create_args)
        self._done(f"Bucket created: {bucket_name}")

        tag_set = [t for t in self.tags(bucket_name) if t["Key"] != "CreatedAt"]
        tag_set.append({"Key": "CreatedBy", "Value": os.environ.get("USER", "unknown")})
        self.s3_client.put_bucket_tagging(Bucket=bucket_name, Tagging={"TagSet": tag_set})
        self.s3_client.put_bucket_versioning(
            Bucket=bucket_name, VersioningConfiguration={"Status": "Enabled"}
        )
        self._done(f"Tags and versioning applied to bucket: {bucket_name}")

    def put_public_read_policy(self, bucket_name: str) -> bool:
        """Allow anonymous GetObject on the bucket's objects.

        Accounts usually block public policies, so a refusal is only a warning.

        Returns:
            True if the policy was applied
        """
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "AllowPublicRead",
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": "s3:GetObject",
                    "Resource": f"arn:aws:s3:::{bucket_name}/*",
                }
            ],
        }
        try:
            self.s3_client.put_bucket_policy(Bucket=bucket_name, Policy=json.dumps(policy))
        except ClientError as e:
            logger.warning(
                f"Bucket policy not applied (public access might be blocked by default): {e}"
            )
            return False
        self._done(f"Bucket policy applied: {bucket_name}")
        return True

    def upload_object(self, bucket_name: str, key: str, body: str) -> None:
        self.s3_client.put_object(
            Bucket=bucket_name, Key=key, Body=body.encode("utf-8"), ContentType="text/plain"
        )
        self._done(f"File uploaded: s3://{bucket_name}/{key}")

    def bucket_details(self, bucket_name: str) -> Dict[str, Any]:
        """Return the versioning status and object keys of a bucket."""
        if self.dry_run:
            logger.info(f"[DRY-RUN] Would retrieve details of bucket {bucket_name}")
            return {"versioning": "Enabled", "objects": []}

        versioning = self.s3_client.get_bucket_versioning(Bucket=bucket_name)
        keys = []
        paginator = self.s3_client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=bucket_name):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
        return {"versioning": versioning.get("Status", "Disabled"), "objects": keys}

    def delete_bucket(self, bucket_name: str) -> None:
        """Delete every object version and delete marker, then the bucket."""
        paginator = self.s3_client.get_paginator("list_object_versions")
        for page in paginator.paginate(Bucket=bucket_name):
            objects = [
                {"Key": v["Key"], "VersionId": v["VersionId"]}
                for v in page.get("Versions", []) + page.get("DeleteMarkers", [])
            ]
            if objects:
                self.s3_client.delete_objects(
                    Bucket=bucket_name, Delete={"Objects": objects, "Quiet": True}
                )
                logger.info(f"Removed {len(objects)} object versions from {bucket_name}")
        self.s3_client.delete_bucket(Bucket=bucket_name)

    def list_tagged_buckets(self) -> List[str]:
        """Return names of buckets tagged with this project."""
        tagged = []
        for bucket in self.s3_client.list_buckets().get("Buckets", []):
            name = bucket["Name"]
            try:
                tag_set = self.s3_client.get_bucket_tagging(Bucket=name)["TagSet"]
            except ClientError:
                # Untagged buckets answer NoSuchTagSet; foreign-region ones may 301.
                continue
            if any(t["Key"] == "Project" and t["Value"] == self.project_tag for t in tag_set):
                tagged.append(name)
        return tagged
