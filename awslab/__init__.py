"""Provision and clean up AWS lab resources, tracked in a JSON state file in S3."""

__version__ = "0.1.0"
