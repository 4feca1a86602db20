# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

import argparse
import sys
import traceback

from dbaflow.action import execute_action, list_actions, registered_actions
from dbaflow.context import Context
from dbaflow.errors import DbaflowError
from dbaflow.interface_methods import get_config_path
from dbaflow.logging import setup_dbaflow_logger

# registers the actions
import dbaflow.scripts.master_actions  # noqa: F401

DBAFLOW_VERSION = "0.1.0"


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dbaflow")
    parser.add_argument("action", help="Name of the action to be run.", type=str)
    parser.add_argument(
        "config_filename",
        help="Path to the config file. The parameter is optional if the config path is defined in environment variable DBAFLOW_CONFIG_PATH.",
        type=str,
        nargs="?",
    )
    parser.add_argument(
        "-v",
        "--version",
        help="Display the version of dbaflow.",
        action="version",
        version=f"%(prog)s {DBAFLOW_VERSION}",
    )
    parser.add_argument("--source", type=str, help="Source instance.", required=False)
    parser.add_argument("--destination", nargs="+", help="Destination instances.", required=False)
    parser.add_argument("--database", nargs="+", help="Databases to process.", required=False)
    parser.add_argument(
        "--exclude-database",
        nargs="+",
        help="Databases to leave out.",
        required=False,
    )
    parser.add_argument(
        "--all-databases",
        action="store_true",
        help="Process all eligible databases.",
        required=False,
    )
    parser.add_argument("--exclude", nargs="+", help="Objects or categories to leave out.", required=False)
    parser.add_argument(
        "--force",
        action="store_true",
        help="Drop and recreate objects that already exist on destination.",
        required=False,
    )
    parser.add_argument(
        "-ni",
        "--non-interactive",
        action="store_true",
        help="Optional parameter to run dbaflow in a non-interactive mode.",
        required=False,
    )
    return parser


def parse_rest_args(rest_args: list) -> dict:
    """Collect unknown '--key value value' arguments to a dict of lists."""
    rest_args_dict = {}
    i = 0
    while i < len(rest_args):
        curr_arg = rest_args[i]
        if curr_arg.startswith("-"):
            key = curr_arg[2:] if curr_arg.startswith("--") else curr_arg[1:]
            key = key.replace("-", "_")
            rest_args_dict[key] = []
            i += 1
            while i < len(rest_args) and not rest_args[i].startswith("-"):
                rest_args_dict[key].append(rest_args[i])
                i += 1
        else:
            i += 1
    return rest_args_dict


def main(argv: list = None):

    parser = create_parser()
    args, rest_args = parser.parse_known_args(argv)
    dbaflow_action = args.action
    args_dict = {k: v for k, v in args._get_kwargs()}
    args_dict.update(parse_rest_args(rest_args))

    info_msg = f"    dbaflow - SQL Server administration workflows v{DBAFLOW_VERSION}   "
    line = "-" * len(info_msg)
    print(line)
    print(info_msg)
    print(line)

    config_path = get_config_path(args.config_filename)
    try:
        context = Context(config_path, command_line_args=args_dict)
    except DbaflowError as error:
        print(f"Error reading configuration: {str(error)}")
        sys.exit(1)

    try:
        logger = setup_dbaflow_logger(
            log_file=context.configuration.get("log_file"),
            enable_sqlalchemy_log=context.configuration.get("enable_sqlalchemy_logging", False),
        )
    except Exception as error:
        print(f"Error setting up logger: {str(error)}")
        sys.exit(1)

    if dbaflow_action == "list":
        list_actions()
        sys.exit(0)

    if registered_actions.get(dbaflow_action) is None:
        print(f"Action '{dbaflow_action}' not found.")
        sys.exit(1)

    action_succeeded = False
    try:
        execute_action(dbaflow_action, context, skip_confirmation=args.non_interactive)
        action_succeeded = True
    except DbaflowError as error:
        logger.error(str(error))
    except Exception:
        logger.error(traceback.format_exc())

    reporter = context.get_reporter()
    if reporter.results:
        print(reporter.to_table())
        logger.info(', '.join(f'{status}: {count}' for status, count in reporter.summary().items()))

    sys.exit(0) if action_succeeded else sys.exit(1)


if __name__ == "__main__":
    main()
