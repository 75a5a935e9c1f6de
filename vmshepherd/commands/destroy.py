"""Destroy command: tear down every configured VM."""

from vmshepherd.commands import add_settings_argument, run_shepherd


def handle_destroy(args):
    run_shepherd(args, lambda shepherd: shepherd.destroy())


def register_destroy_command(subparsers):
    """Register the destroy subcommand."""
    parser = subparsers.add_parser("destroy", help="Destroy the configured VMs")
    add_settings_argument(parser)
    parser.set_defaults(func=handle_destroy)
