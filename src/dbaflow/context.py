# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

from logging import getLogger
from typing import Callable, List, Union

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.errors import ConfigurationError
from dbaflow.executor import always_confirm
from dbaflow.interface_methods import are_you_sure, load_conf
from dbaflow.operations.general.remote import DirectoryService, RemoteExecutor
from dbaflow.status import StatusReporter

logger = getLogger('dbaflow')


class Context:
    """All the default stuff that is passed to actions, like configuration."""

    def __init__(self, config_filename: str = None, command_line_args: dict = None, configuration: dict = None,
            resolver: ConnectionResolver = None, remote: RemoteExecutor = None):
        self.config_filename = config_filename
        if configuration is None:
            configuration = load_conf(config_filename) if config_filename else {}
        if configuration is None:
            raise ConfigurationError("No configuration found")
        self.configuration = configuration
        self.command_line_args = command_line_args or {}
        self.resolver = resolver
        self.remote = remote
        self.directory = None
        self.reporter = None

    def get_resolver(self) -> ConnectionResolver:
        """Create the connection resolver when needed first time."""
        if self.resolver is None:
            self.resolver = ConnectionResolver(self.configuration)
        return self.resolver

    def get_remote(self) -> RemoteExecutor:
        if self.remote is None:
            self.remote = RemoteExecutor(self.configuration)
        return self.remote

    def get_directory(self) -> DirectoryService:
        if self.directory is None:
            self.directory = DirectoryService(self.get_remote(), self.configuration.get('directory_search_computer'))
        return self.directory

    def get_reporter(self) -> StatusReporter:
        if self.reporter is None:
            self.reporter = StatusReporter()
        return self.reporter

    def get_confirm(self) -> Callable[[str], bool]:
        """Confirmation asked before each change, unless running non-interactively."""
        if self.command_line_args.get('non_interactive'):
            return always_confirm
        return lambda description: are_you_sure(description + '.')

    def get_source(self) -> str:
        source = self.get_cli_arg('source') or self.configuration.get('source_instance')
        if not source:
            raise ConfigurationError('Source instance is not given (--source or source_instance).')
        return source

    def get_destinations(self) -> List[str]:
        destinations = self.get_cli_list('destination') or self.configuration.get('destination_instances')
        if not destinations:
            raise ConfigurationError('Destination instances are not given (--destination or destination_instances).')
        return [destinations] if isinstance(destinations, str) else list(destinations)

    def get_cli_list(self, key: str) -> List[str]:
        """ Command line argument as a list, empty if not given. """
        value = self.command_line_args.get(key)
        if value is None or value is True:
            return []
        return [value] if isinstance(value, str) else list(value)

    def get_cli_arg(self, key: str) -> Union[str, list, bool, None]:
        """ Get command line argument value by key.

        Arguments:
        ----------
        key : str
            Key of the command line argument

        Returns:
        --------
        Union[str, list, bool, None]
            One value, a list of values, or True for flags given without a value.
        """
        reserved_keys = {"action", "config_filename", "non_interactive"}
        cli_args = self.command_line_args.get(key, None)
        if key in reserved_keys:
            return cli_args
        if isinstance(cli_args, list):
            if len(cli_args) == 1:
                return cli_args[0]
            if len(cli_args) > 1:
                return cli_args
            return True
        return cli_args

    def dispose(self):
        if self.resolver is not None:
            self.resolver.dispose_all()
