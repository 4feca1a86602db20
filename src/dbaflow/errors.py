# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Exceptions raised by dbaflow commands.

Only ConfigurationError (and a failed connection to the source instance)
is allowed to stop a whole command. The other errors are caught per target
object or per destination and turned into status records.
"""


class DbaflowError(Exception):
    """Base class for all dbaflow errors."""


class ConfigurationError(DbaflowError):
    """Missing or conflicting parameters. Raised before any work is done."""


class InstanceConnectionError(DbaflowError):
    """Instance could not be reached, the login was rejected or the
    server version is too old for the requested feature."""

    def __init__(self, target: str, message: str):
        super().__init__(f"Failure connecting to {target}: {message}")
        self.target = target
        self.message = message


class DependencyMissing(DbaflowError):
    """Object referenced by the copied object does not exist on the destination."""

    def __init__(self, dependency: str, dependency_type: str):
        super().__init__(f"{dependency_type} {dependency} does not exist on destination")
        self.dependency = dependency
        self.dependency_type = dependency_type


class RemoteExecutionError(DbaflowError):
    """Remote PowerShell invocation failed or reported errors."""

    def __init__(self, computer: str, message: str):
        super().__init__(f"Remote execution on {computer} failed: {message}")
        self.computer = computer
        self.message = message
