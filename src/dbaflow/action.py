# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Module for commands and other callable actions, that can be defined in a modular way."""

from logging import getLogger
from typing import Any, Callable, Union

from dbaflow.context import Context
from dbaflow.interface_methods import are_you_sure
from dbaflow.operation_manager import OperationManager

logger = getLogger('dbaflow')

# dict containing information of all defined actions
registered_actions = {}


def action(name: str = None, affects_database: bool = False) -> Callable[[Context, Any], Any]:
    """Wrapper function for actions.

    Creates and registers an action.

    Arguments:
    ----------
    name
        The name of the action, that acts as a key.
        Also used in printed messages.
    affects_database
        If true, confirmation for the action is asked at the start.
    """
    def wrapper(func):
        action_name = name
        if action_name is None:
            action_name = func.__name__.replace('_', '-')
        ActionRegisteration(func, action_name, affects_database)
        return func
    return wrapper


class ActionRegisteration:
    """The registeration information of an action."""

    def __init__(self, function: Callable[[Context, Any], Any], name: str, affects_database: bool):
        self.function = function
        self.name = name
        self.affects_database = affects_database
        self.register()

    def register(self):
        """Adds self to a global dictionary of all actions."""
        registered_actions[self.name] = self

    def pre_exec_check(self, context: Context) -> bool:
        """Asks permission for actions that change instances."""
        if self.affects_database is True:
            destinations = context.configuration.get('destination_instances') or context.get_cli_arg('destination')
            warning_message = f"Warning! You are about to commit changes to {destinations or 'the given instances'}"
            if not are_you_sure(warning_message):
                return False
        return True


def check_action_validity(action_name: str, allowed_actions: Union[str, list], skipped_actions: list = None) -> bool:
    """Check if given action is permitted and registered.

    Arguments
    ---------
    action_name
        The name of the action to execute
    allowed_actions
        The actions allowed in the configuration file.
    skipped_actions
        The actions that are skipped.
    Returns
    -------
    bool
        Is the action valid or not?
    """
    if isinstance(allowed_actions, str) and allowed_actions != "ALL" and action_name != allowed_actions:
        logger.error("Action " + action_name + " is not permitted, allowed action: " + allowed_actions)
        return False
    if isinstance(allowed_actions, list) and allowed_actions and action_name not in allowed_actions:
        logger.error("Action " + action_name + " is not permitted, allowed actions: " + ', '.join(allowed_actions))
        return False
    if isinstance(skipped_actions, list) and action_name in skipped_actions:
        logger.info("Action " + action_name + " was skipped.")
        return False
    if len(registered_actions) == 0:
        logger.error("No actions defined")
        return False
    if registered_actions.get(action_name) is None:
        logger.error("No action " + action_name + " found.")
        logger.error("Available actions: " + ', '.join(registered_actions.keys()))
        return False
    return True


def execute_action(action_name: str, context: Context, skip_confirmation: bool = False, *args, **kwargs):
    """Prepare and execute given action.

    Does the logging and error handling for preparation.

    Arguments
    ---------
    action_name: str
        The name of the action to execute
    context: dbaflow.context.Context
        Context object of the invocation.
    skip_confirmation: bool
        If True, user confirmation is disabled.
    """
    logger.info('------')
    with OperationManager('Starting to execute "' + action_name + '"'):
        action_valid = check_action_validity(
            action_name,
            context.configuration.get('allowed_actions', 'ALL'),
            skipped_actions=context.configuration.get('skipped_actions', [])
        )
        if not action_valid:
            return None
        registration = registered_actions.get(action_name)
        if not skip_confirmation and not registration.pre_exec_check(context):
            return None
    try:
        return registration.function(context, *args, **kwargs)
    finally:
        context.dispose()


def list_actions():
    logger.info('-------------------------------')
    logger.info('List of available actions')
    logger.info('-------------------------------')
    for key, registeration in sorted(registered_actions.items()):
        logger.info(f"'{key}': {registeration.function.__doc__ or 'No description available.'}")
