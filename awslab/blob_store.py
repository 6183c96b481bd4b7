"""Persist a single object in S3."""

import logging
from typing import Any, Optional

from botocore.exceptions import ClientError

from .errors import is_not_found
from .execution import DryRunClient
from .logging_setup import log_success

logger = logging.getLogger(__name__)


class S3BlobStore:
    """Reads and writes one object per (bucket, key) pair.

    The S3 client may be wrapped for dry-run; in that case bucket creation and
    object writes are logged instead of performed.
    """

    def __init__(self, s3_client: Any, region: str):
        self.s3_client = s3_client
        self.region = region
        self.dry_run = isinstance(s3_client, DryRunClient)

    def bucket_exists(self, bucket: str) -> bool:
        """Check whether a bucket exists and is reachable.

        Raises:
            ClientError: For failures other than "not found"
        """
        try:
            self.s3_client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise

    def load(self, bucket: str, key: str) -> Optional[bytes]:
        """Read the object at bucket/key.

        Returns:
            The object body, or None if the bucket or the object does not exist

        Raises:
            ClientError: For network or permission failures
        """
        if not self.bucket_exists(bucket):
            logger.info(f"State bucket s3://{bucket} does not exist yet")
            return None

        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                logger.info(f"No state object at s3://{bucket}/{key}")
                return None
            raise

        body = response["Body"].read()
        logger.info(f"State loaded from s3://{bucket}/{key}")
        return body

    def save(self, bucket: str, key: str, data: bytes) -> None:
        """Write data to bucket/key, creating the bucket first if needed.

        Concurrent writers are not coordinated; the last write wins.
        """
        if not self.bucket_exists(bucket):
            self.create_versioned_bucket(bucket)

        self.s3_client.put_object(
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType="application/json",
        )
        if self.dry_run:
            logger.info(f"[DRY-RUN] State would be saved to s3://{bucket}/{key}")
        else:
            logger.debug(f"State saved to s3://{bucket}/{key}")

    def create_versioned_bucket(self, bucket: str) -> None:
        logger.info(f"Creating state bucket s3://{bucket} in {self.region}")
        create_args = {"Bucket": bucket}
        # us-east-1 rejects an explicit LocationConstraint
        if self.region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {
                "LocationConstraint": self.region
            }
        self.s3_client.create_bucket(**create_args)
        self.s3_client.put_bucket_versioning(
            Bucket=bucket, VersioningConfiguration={"Status": "Enabled"}
        )
        if self.dry_run:
            logger.info(f"[DRY-RUN] State bucket would be created with versioning: {bucket}")
        else:
            log_success(logger, f"State bucket created with versioning: {bucket}")
