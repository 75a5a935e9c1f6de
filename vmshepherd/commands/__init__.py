"""CLI command handlers and the settings-to-shepherd glue they share."""

import logging
import sys

from vmshepherd.errors import ShepherdError
from vmshepherd.settings import load_settings
from vmshepherd.shepherd import Shepherd

logger = logging.getLogger(__name__)


def add_settings_argument(parser):
    parser.add_argument("--settings", required=True, help="Path to the vm_shepherd settings YAML file")


def run_shepherd(args, action):
    """Load settings, build a Shepherd and run *action* on it.

    Exits with status 1 after logging the message of any ShepherdError.
    """
    try:
        shepherd = Shepherd(load_settings(args.settings))
        return action(shepherd)
    except ShepherdError as e:
        logger.error(f"ERROR: {e}")
        sys.exit(1)
