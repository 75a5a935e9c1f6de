#!/usr/bin/env python3
"""vmshepherd: deploy and tear down VMs on AWS, OpenStack, vSphere and vCloud."""

import argparse

from vmshepherd.commands.deploy import register_deploy_command
from vmshepherd.commands.destroy import register_destroy_command
from vmshepherd.commands.environment import register_clean_command, register_prepare_command
from vmshepherd.logging_setup import setup_cli_logging


def build_parser():
    parser = argparse.ArgumentParser(description="Deploy and tear down VMs across IaaS providers")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    register_prepare_command(subparsers)
    register_deploy_command(subparsers)
    register_destroy_command(subparsers)
    register_clean_command(subparsers)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_cli_logging(verbose=args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
