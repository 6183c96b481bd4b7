"""Exception types and AWS error-code helpers."""

from botocore.exceptions import ClientError

# Error codes AWS returns when the thing being looked up simply does not exist.
NOT_FOUND_CODES = {
    "404",
    "NotFound",
    "NoSuchBucket",
    "NoSuchKey",
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
    "InvalidGroup.NotFound",
    "InvalidGroupId.Malformed",
    "InvalidKeyPair.NotFound",
    "InvalidVpcID.NotFound",
}


class LabError(Exception):
    """Base class for errors raised by awslab."""


class FatalError(LabError):
    """The run cannot continue: bad credentials, missing prerequisites, bad input."""


class CorruptStateError(LabError):
    """The persisted state document could not be parsed."""


def error_code(error: Exception) -> str:
    """Return the AWS error code carried by a ClientError, or an empty string."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "")
    return ""


def is_not_found(error: Exception) -> bool:
    """True when the error means the resource does not exist."""
    return error_code(error) in NOT_FOUND_CODES
