import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from awslab.blob_store import S3BlobStore
from awslab.registry import StateStore


def _client_error(code, operation="Operation", message="error"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


class InMemoryS3:
    """Just enough of an S3 client for the state store, with call tracking."""

    def __init__(self):
        self.buckets = {}
        self.versioning = {}
        self.head_bucket = MagicMock(side_effect=self._head_bucket)
        self.get_object = MagicMock(side_effect=self._get_object)
        self.put_object = MagicMock(side_effect=self._put_object)
        self.create_bucket = MagicMock(side_effect=self._create_bucket)
        self.put_bucket_versioning = MagicMock(side_effect=self._put_bucket_versioning)

    def _head_bucket(self, Bucket):
        if Bucket not in self.buckets:
            raise _client_error("404", "HeadBucket", "Not Found")
        return {}

    def _get_object(self, Bucket, Key):
        if Bucket not in self.buckets:
            raise _client_error("NoSuchBucket", "GetObject")
        if Key not in self.buckets[Bucket]:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.buckets[Bucket][Key])}

    def _put_object(self, Bucket, Key, Body, **kwargs):
        if Bucket not in self.buckets:
            raise _client_error("NoSuchBucket", "PutObject")
        self.buckets[Bucket][Key] = Body
        return {}

    def _create_bucket(self, Bucket, **kwargs):
        self.buckets.setdefault(Bucket, {})
        return {}

    def _put_bucket_versioning(self, Bucket, VersioningConfiguration):
        self.versioning[Bucket] = VersioningConfiguration["Status"]
        return {}


@pytest.fixture
def client_error():
    """Factory for botocore ClientErrors with a given error code."""
    return _client_error


@pytest.fixture
def memory_s3():
    return InMemoryS3()


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(memory_s3, clock):
    """A loaded, empty state store over the in-memory S3."""
    state_store = StateStore(
        S3BlobStore(memory_s3, "eu-west-1"),
        bucket="lab-state",
        key="aws_state.json",
        region="eu-west-1",
        clock=clock,
    )
    state_store.load()
    return state_store
