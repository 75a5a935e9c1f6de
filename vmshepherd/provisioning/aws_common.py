"""boto3 session construction and ClientError code matching."""

import boto3
from botocore.exceptions import ClientError


def make_session(access_key, secret_key, region):
    """Build an explicit boto3 session; nothing is read from process-wide config."""
    return boto3.Session(
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
    )


def error_code(exc) -> str | None:
    """Return the AWS error code of a ClientError, or None for anything else."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def matching_codes(*codes):
    """Predicate for ``transient_errors``: matches ClientErrors with one of *codes*."""

    def _match(exc):
        code = error_code(exc)
        return code if code in codes else None

    return _match
