from unittest.mock import MagicMock

import pytest

from awslab.blob_store import S3BlobStore
from awslab.cloud import CloudProvider
from awslab.execution import DryRunClient
from awslab.reconciler import ALREADY_GONE, DELETED, FAILED, SKIPPED, Reconciler
from awslab.registry import StateStore
from awslab.state import ComputeInstance, CredentialPair, FirewallGroup, ObjectContainer


@pytest.fixture
def cloud():
    fake = MagicMock()
    fake.dry_run = False
    fake.instance_state.return_value = "running"
    fake.key_pair_exists.return_value = True
    fake.describe_security_group.return_value = {"GroupId": "sg-1"}
    fake.bucket_exists.return_value = True
    fake.wait_until_terminated.return_value = True
    return fake


@pytest.fixture
def sleep():
    return MagicMock()


@pytest.fixture
def reconciler(store, cloud, sleep):
    return Reconciler(store, cloud, settle_seconds=5, sleep=sleep)


class TestDriftResolution:
    def test_gone_instance_is_untracked_without_delete(self, store, cloud, reconciler, caplog):
        store.instances.upsert(ComputeInstance(instance_id="i-1", state="running"))
        cloud.instance_state.return_value = None

        with caplog.at_level("INFO"):
            report = reconciler.reconcile_all()

        assert store.instances.count() == 0
        cloud.terminate_instance.assert_not_called()
        gone_lines = [r for r in caplog.records if "already gone" in r.getMessage()]
        assert len(gone_lines) == 1
        assert report.phases["instances"].already_gone == 1

    def test_gone_bucket_is_untracked_without_delete(self, store, cloud, reconciler):
        store.buckets.upsert(ObjectContainer(bucket_name="lab-bucket"))
        cloud.bucket_exists.return_value = False

        reconciler.reconcile_all()

        assert "lab-bucket" not in store.buckets
        cloud.delete_bucket.assert_not_called()

    def test_not_found_during_delete_counts_as_gone(self, store, cloud, reconciler, client_error):
        store.key_pairs.upsert(CredentialPair(key_name="kp"))
        cloud.delete_key_pair.side_effect = client_error("InvalidKeyPair.NotFound")

        report = reconciler.reconcile_all()

        assert store.key_pairs.count() == 0
        assert report.phases["key_pairs"].already_gone == 1


class TestDeletion:
    def test_live_resources_are_deleted_and_untracked(self, store, cloud, reconciler):
        store.instances.upsert(ComputeInstance(instance_id="i-1"))
        store.key_pairs.upsert(CredentialPair(key_name="kp"))
        store.security_groups.upsert(FirewallGroup(group_id="sg-1", group_name="web"))
        store.buckets.upsert(ObjectContainer(bucket_name="lab-bucket"))

        report = reconciler.reconcile_all()

        cloud.terminate_instance.assert_called_once_with("i-1")
        cloud.delete_key_pair.assert_called_once_with("kp")
        cloud.delete_security_group.assert_called_once_with("sg-1")
        cloud.delete_bucket.assert_called_once_with("lab-bucket")
        assert store.summary() == {
            "EC2 instance": 0,
            "Key pair": 0,
            "Security group": 0,
            "S3 bucket": 0,
        }
        assert report.succeeded
        assert all(p.deleted == 1 for p in report.phases.values())

    def test_failed_delete_keeps_entry_and_warns(self, store, cloud, reconciler, client_error, caplog):
        store.security_groups.upsert(FirewallGroup(group_id="sg-1", group_name="web"))
        store.security_groups.upsert(FirewallGroup(group_id="sg-2", group_name="api"))
        cloud.delete_security_group.side_effect = [
            client_error("DependencyViolation", "DeleteSecurityGroup"),
            None,
        ]

        report = reconciler.reconcile_all()

        assert [g.group_id for g in store.security_groups.list()] == ["sg-1"]
        tally = report.phases["security_groups"]
        assert (tally.failed, tally.deleted, tally.remaining) == (1, 1, 1)
        assert tally.failures == ["sg-1"]
        assert not report.succeeded
        warnings = [r for r in caplog.records if r.levelname == "WARNING"]
        assert any("sg-1" in r.getMessage() for r in warnings)
        assert not [r for r in caplog.records if r.levelname == "ERROR"]

    def test_each_removal_is_persisted(self, store, cloud, reconciler, memory_s3):
        store.buckets.upsert(ObjectContainer(bucket_name="b1"))
        store.buckets.upsert(ObjectContainer(bucket_name="b2"))
        writes_before = memory_s3.put_object.call_count

        reconciler.reconcile_all()

        assert memory_s3.put_object.call_count == writes_before + 2

    def test_lookup_failure_keeps_entry(self, store, cloud, reconciler, client_error):
        store.instances.upsert(ComputeInstance(instance_id="i-1"))
        cloud.instance_state.side_effect = client_error("UnauthorizedOperation")

        outcome = reconciler.reconcile_all().phases["instances"]

        assert outcome.failed == 1
        assert "i-1" in store.instances
        cloud.terminate_instance.assert_not_called()

    def test_pem_file_removed_with_key_pair(self, store, cloud, sleep, tmp_path):
        pem = tmp_path / "kp.pem"
        pem.write_text("secret")
        store.key_pairs.upsert(CredentialPair(key_name="kp"))

        Reconciler(store, cloud, key_dir=str(tmp_path), sleep=sleep).reconcile_all()

        assert not pem.exists()


class TestProtectedEntries:
    def test_default_security_group_is_never_deleted(self, store, cloud, reconciler):
        store.security_groups.upsert(FirewallGroup(group_id="sg-default", group_name="default"))

        report = reconciler.reconcile_all()

        cloud.delete_security_group.assert_not_called()
        cloud.describe_security_group.assert_not_called()
        assert store.security_groups.count() == 0
        assert report.phases["security_groups"].skipped == 1

    def test_state_bucket_is_never_deleted(self, store, cloud, reconciler):
        store.buckets.upsert(ObjectContainer(bucket_name=store.bucket))

        outcome = reconciler.reconcile_entry(
            store.buckets,
            store.buckets.get(store.bucket),
            cloud.bucket_exists,
            cloud.delete_bucket,
            protected=reconciler._is_state_bucket,
        )

        assert outcome == SKIPPED
        cloud.delete_bucket.assert_not_called()


class TestOrdering:
    def test_security_groups_wait_for_instance_termination(self, store, cloud, sleep):
        events = []
        cloud.terminate_instance.side_effect = lambda i: events.append(("terminate", i))
        cloud.wait_until_terminated.side_effect = lambda ids: events.append(("wait", tuple(ids)))
        sleep.side_effect = lambda s: events.append(("sleep", s))
        cloud.delete_security_group.side_effect = lambda g: events.append(("delete_sg", g))
        store.instances.upsert(ComputeInstance(instance_id="i-1"))
        store.security_groups.upsert(FirewallGroup(group_id="sg-1", group_name="web"))

        Reconciler(store, cloud, settle_seconds=5, sleep=sleep).reconcile_all()

        assert events == [
            ("terminate", "i-1"),
            ("wait", ("i-1",)),
            ("sleep", 5),
            ("delete_sg", "sg-1"),
        ]

    def test_no_wait_when_nothing_was_terminated(self, store, cloud, reconciler, sleep):
        store.security_groups.upsert(FirewallGroup(group_id="sg-1", group_name="web"))

        reconciler.reconcile_all()

        cloud.wait_until_terminated.assert_not_called()
        sleep.assert_not_called()

    def test_reconcile_entry_outcomes(self, store, cloud, reconciler):
        store.buckets.upsert(ObjectContainer(bucket_name="b1"))
        record = store.buckets.get("b1")

        assert reconciler.reconcile_entry(store.buckets, record, lambda k: True, lambda k: None) == DELETED
        store.buckets.upsert(record)
        assert reconciler.reconcile_entry(store.buckets, record, lambda k: False, lambda k: None) == ALREADY_GONE


class TestDryRunCleanup:
    def test_dry_run_changes_nothing(self, memory_s3, clock, sleep, caplog):
        seed = StateStore(
            S3BlobStore(memory_s3, "eu-west-1"),
            bucket="lab-state",
            key="aws_state.json",
            region="eu-west-1",
            clock=clock,
        )
        seed.load()
        seed.instances.upsert(ComputeInstance(instance_id="i-1", state="running"))
        saved = dict(memory_s3.buckets["lab-state"])
        memory_s3.put_object.reset_mock()
        memory_s3.create_bucket.reset_mock()

        raw_ec2 = MagicMock()
        raw_ec2.describe_instances.return_value = {
            "Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": "running"}}]}]
        }
        dry_s3 = DryRunClient(memory_s3, "s3")
        cloud = CloudProvider(
            ec2_client=DryRunClient(raw_ec2, "ec2"),
            s3_client=dry_s3,
            sts_client=DryRunClient(MagicMock(), "sts"),
            region="eu-west-1",
            dry_run=True,
        )
        store = StateStore(
            S3BlobStore(dry_s3, "eu-west-1"),
            bucket="lab-state",
            key="aws_state.json",
            region="eu-west-1",
            clock=clock,
        )
        store.load()

        with caplog.at_level("INFO"):
            report = Reconciler(store, cloud, sleep=sleep).reconcile_all()

        assert report.phases["instances"].deleted == 1
        raw_ec2.terminate_instances.assert_not_called()
        raw_ec2.get_waiter.assert_not_called()
        memory_s3.put_object.assert_not_called()
        memory_s3.create_bucket.assert_not_called()
        assert memory_s3.buckets["lab-state"] == saved
        sleep.assert_not_called()
        assert "[DRY-RUN] Would delete ec2 instance: i-1" in caplog.text
        assert not [
            r for r in caplog.records
            if r.levelname == "SUCCESS" and r.getMessage().startswith("Deleted")
        ]


def test_failed_outcome_constant_matches_tally_field():
    # PhaseTally.record relies on outcome names matching its fields.
    from awslab.reconciler import PhaseTally

    tally = PhaseTally(label="x")
    for outcome in (DELETED, ALREADY_GONE, SKIPPED, FAILED):
        tally.record(outcome)
    assert (tally.deleted, tally.already_gone, tally.skipped, tally.failed) == (1, 1, 1, 1)
