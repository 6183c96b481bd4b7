from unittest.mock import MagicMock, patch

from awslab.blob_store import S3BlobStore
from awslab.execution import (
    DRY_RUN_INSTANCE_ID,
    DryRunClient,
    ExecutionContext,
    wrap_client,
)


class TestDryRunClient:
    def test_read_only_calls_pass_through(self):
        raw = MagicMock()
        raw.describe_instances.return_value = {"Reservations": []}
        client = DryRunClient(raw, "ec2")

        assert client.describe_instances(InstanceIds=["i-1"]) == {"Reservations": []}
        raw.describe_instances.assert_called_once_with(InstanceIds=["i-1"])

    def test_mutating_calls_are_only_logged(self, caplog):
        raw = MagicMock()
        client = DryRunClient(raw, "ec2")

        with caplog.at_level("INFO"):
            response = client.terminate_instances(InstanceIds=["i-1"])

        raw.terminate_instances.assert_not_called()
        assert "TerminatingInstances" in response
        assert client.calls == [("terminate_instances", {"InstanceIds": ["i-1"]})]
        assert "[DRY-RUN] Would call ec2.terminate_instances" in caplog.text

    def test_run_instances_returns_placeholder_id(self):
        client = DryRunClient(MagicMock(), "ec2")

        response = client.run_instances(ImageId="ami-1", MinCount=1, MaxCount=1)

        assert response["Instances"][0]["InstanceId"] == DRY_RUN_INSTANCE_ID

    def test_create_key_pair_echoes_name(self):
        client = DryRunClient(MagicMock(), "ec2")

        response = client.create_key_pair(KeyName="kp-1")

        assert response == {"KeyName": "kp-1", "KeyMaterial": ""}

    def test_canned_responses_are_not_shared(self):
        client = DryRunClient(MagicMock(), "ec2")

        client.create_key_pair(KeyName="kp-1")["KeyName"] = "mutated"

        assert client.create_key_pair(KeyName="kp-2")["KeyName"] == "kp-2"

    def test_waiters_and_paginators_pass_through(self):
        raw = MagicMock()
        client = DryRunClient(raw, "s3")

        client.get_paginator("list_object_versions")

        raw.get_paginator.assert_called_once_with("list_object_versions")

    def test_large_bodies_are_summarised(self, caplog):
        client = DryRunClient(MagicMock(), "s3")

        with caplog.at_level("INFO"):
            client.put_object(Bucket="b", Key="k", Body=b"x" * 5000)

        assert "<5000 bytes>" in caplog.text

    def test_wrap_client_without_dry_run_is_identity(self):
        raw = MagicMock()

        assert wrap_client(raw, "ec2", dry_run=False) is raw
        assert isinstance(wrap_client(raw, "ec2", dry_run=True), DryRunClient)


class TestDryRunBlobStore:
    def test_save_never_reaches_s3(self, memory_s3, caplog):
        blob_store = S3BlobStore(DryRunClient(memory_s3, "s3"), "eu-west-1")

        with caplog.at_level("DEBUG"):
            blob_store.save("lab-state", "aws_state.json", b"{}")

        memory_s3.head_bucket.assert_called_once()
        memory_s3.create_bucket.assert_not_called()
        memory_s3.put_bucket_versioning.assert_not_called()
        memory_s3.put_object.assert_not_called()
        assert memory_s3.buckets == {}
        assert not [r for r in caplog.records if r.levelname == "SUCCESS"]
        assert "[DRY-RUN] State bucket would be created with versioning: lab-state" in caplog.text
        assert "State saved to" not in caplog.text


class TestExecutionContext:
    @patch("awslab.execution.boto3.Session")
    def test_profile_usage_in_constructor(self, mock_session):
        """Test that a profile is passed to the boto3 session."""
        ExecutionContext(region="us-east-1", profile="test-profile")

        mock_session.assert_called_once_with(profile_name="test-profile")

    @patch("awslab.execution.boto3.Session")
    def test_default_credentials_without_profile(self, mock_session):
        context = ExecutionContext(region="us-east-1")

        mock_session.assert_called_once_with()
        assert context.profile is None
        assert context.region == "us-east-1"

    @patch("awslab.execution.boto3.Session")
    def test_clients_are_wrapped_in_dry_run(self, mock_session):
        context = ExecutionContext(region="eu-west-1", dry_run=True)

        client = context.client("ec2")

        mock_session.return_value.client.assert_called_once_with("ec2", region_name="eu-west-1")
        assert isinstance(client, DryRunClient)

    @patch("awslab.execution.boto3.Session")
    def test_clients_are_plain_without_dry_run(self, mock_session):
        context = ExecutionContext(region="eu-west-1")

        assert context.client("s3") is mock_session.return_value.client.return_value
