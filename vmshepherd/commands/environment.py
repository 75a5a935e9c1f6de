"""Environment commands: prepare and clean the shared provider environment."""

from vmshepherd.commands import add_settings_argument, run_shepherd


def handle_prepare(args):
    """CLI handler for 'prepare-environment'."""
    run_shepherd(args, lambda shepherd: shepherd.prepare_environment(args.template))


def handle_clean(args):
    """CLI handler for 'clean-environment'."""
    run_shepherd(args, lambda shepherd: shepherd.clean_environment())


# ── Registration ───────────────────────────────────────────────────


def register_prepare_command(subparsers):
    """Register the prepare-environment subcommand."""
    parser = subparsers.add_parser("prepare-environment", help="Create the environment VMs are deployed into")
    add_settings_argument(parser)
    parser.add_argument(
        "template",
        nargs="?",
        default=None,
        help="Stack template (AWS only; defaults to env_config.json_file)",
    )
    parser.set_defaults(func=handle_prepare)


def register_clean_command(subparsers):
    """Register the clean-environment subcommand."""
    parser = subparsers.add_parser(
        "clean-environment",
        help="Remove everything left in the environment, including the environment itself",
    )
    add_settings_argument(parser)
    parser.set_defaults(func=handle_clean)
