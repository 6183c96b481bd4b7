"""Execution mode: real AWS calls, or dry-run previews.

Dry-run is a property of the clients rather than of the code using them.
Every boto3 client handed to the rest of awslab is wrapped once here; in
dry-run mode read-only operations still reach AWS, while every mutating
operation is replaced by a stub that logs what it would have done and returns
a plausible successful response.
"""

import logging
from typing import Any, Dict, Optional

import boto3

logger = logging.getLogger(__name__)

READ_ONLY_PREFIXES = ("describe_", "list_", "get_", "head_")
PASSTHROUGH_ATTRIBUTES = {
    "meta",
    "exceptions",
    "can_paginate",
    "get_paginator",
    "get_waiter",
    "waiter_names",
}

DRY_RUN_INSTANCE_ID = "i-dry-run-67890"
DRY_RUN_GROUP_ID = "sg-dry-run-67890"

# Responses returned by stubbed operations; anything not listed gets {}.
CANNED_RESPONSES: Dict[str, Dict[str, Any]] = {
    "run_instances": {
        "Instances": [
            {"InstanceId": DRY_RUN_INSTANCE_ID, "State": {"Name": "pending"}}
        ]
    },
    "terminate_instances": {
        "TerminatingInstances": [{"CurrentState": {"Name": "shutting-down"}}]
    },
    "create_security_group": {"GroupId": DRY_RUN_GROUP_ID},
    "create_key_pair": {"KeyName": "", "KeyMaterial": ""},
    "create_bucket": {"Location": ""},
    "delete_objects": {"Deleted": []},
}


def _summarize(value: Any, limit: int = 80) -> str:
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text


def is_read_only(operation: str) -> bool:
    return operation.startswith(READ_ONLY_PREFIXES)


class DryRunClient:
    """Wraps a boto3 client so that mutating calls are only logged."""

    def __init__(self, client: Any, service_name: str):
        self._client = client
        self._service_name = service_name
        self.calls = []

    def __getattr__(self, name: str) -> Any:
        attribute = getattr(self._client, name)
        if name.startswith("_") or name in PASSTHROUGH_ATTRIBUTES:
            return attribute
        if is_read_only(name) or not callable(attribute):
            return attribute
        return self._stub(name)

    def _stub(self, operation: str):
        def stub(**kwargs: Any) -> Dict[str, Any]:
            args = ", ".join(f"{k}={_summarize(v)}" for k, v in kwargs.items())
            logger.info(f"[DRY-RUN] Would call {self._service_name}.{operation}({args})")
            self.calls.append((operation, kwargs))
            response = CANNED_RESPONSES.get(operation, {})
            return _fill_names(operation, response, kwargs)

        return stub


def _fill_names(
    operation: str, response: Dict[str, Any], kwargs: Dict[str, Any]
) -> Dict[str, Any]:
    # Copy so callers can't mutate the shared canned response.
    filled = dict(response)
    if operation == "create_key_pair":
        filled["KeyName"] = kwargs.get("KeyName", "")
    return filled


def wrap_client(client: Any, service_name: str, dry_run: bool) -> Any:
    """Return client unchanged, or wrapped for dry-run."""
    if dry_run:
        return DryRunClient(client, service_name)
    return client


class ExecutionContext:
    """Creates the AWS clients for a run, honouring profile and dry-run."""

    def __init__(self, region: str, dry_run: bool = False, profile: Optional[str] = None):
        """Initialize the execution context.

        Args:
            region: AWS region to operate in
            dry_run: Whether mutating calls should only be logged
            profile: AWS profile name to use for authentication
        """
        self.region = region
        self.dry_run = dry_run
        self.profile = profile

        if profile:
            self.session = boto3.Session(profile_name=profile)
            logger.info(f"Using AWS profile: {profile}")
        else:
            self.session = boto3.Session()
            logger.info(
                "Using default AWS credentials (environment variables or default profile)"
            )

        if dry_run:
            logger.info("[DRY-RUN] Dry-run mode enabled: no changes will be made")

    def client(self, service_name: str) -> Any:
        raw = self.session.client(service_name, region_name=self.region)
        return wrap_client(raw, service_name, self.dry_run)
