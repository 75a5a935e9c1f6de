"""CLI logging setup: plain %(message)s output with secret redaction."""

import logging
import sys

from vmshepherd.redact import SecretRedactingFilter

# SDK loggers that are too chatty at INFO
_QUIET_LOGGERS = ("botocore", "boto3", "urllib3", "httpx", "httpcore", "openstack", "keystoneauth")


def setup_cli_logging(verbose=False):
    """Configure the root logger for CLI commands.

    Messages go to stdout unprefixed. With *verbose*, DEBUG records from
    vmshepherd are shown; SDK loggers stay at WARNING either way.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
