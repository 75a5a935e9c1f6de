"""Deploy command: one artifact per configured VM."""

import logging

from vmshepherd.commands import add_settings_argument, run_shepherd

logger = logging.getLogger(__name__)


def handle_deploy(args):
    """CLI handler for 'deploy'."""
    results = run_shepherd(args, lambda shepherd: shepherd.deploy(args.paths))
    for path, result in zip(args.paths, results):
        if result:
            logger.info(f"{path}: {result}")


def register_deploy_command(subparsers):
    """Register the deploy subcommand."""
    parser = subparsers.add_parser("deploy", help="Deploy VMs from image artifacts")
    add_settings_argument(parser)
    parser.add_argument(
        "paths",
        nargs="+",
        help="Image artifact per VM config, in order (AMI map, qcow2, OVA or vApp template tar)",
    )
    parser.set_defaults(func=handle_deploy)
