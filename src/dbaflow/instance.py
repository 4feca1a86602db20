# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Identification of SQL Server instances given by the user."""
import re
from dataclasses import dataclass
from typing import Optional, Union

from dbaflow.errors import ConfigurationError

DEFAULT_INSTANCE = 'MSSQLSERVER'

# host[\instance][,port]
INSTANCE_PATTERN = re.compile(
    r'^(?P<host>[^\\,\s]+)(?:\\(?P<instance>[^\\,\s]+))?(?:,(?P<port>\d+))?$'
)


@dataclass(frozen=True)
class InstanceRef:
    """Server and instance, as given by the user.

    Arguments
    ---------
    computer_name
        Host name or address of the server.
    instance_name
        Named instance or None for the default instance.
    port
        TCP port, if given explicitly.
    credential_key
        Key used to look up stored credentials for the instance.
    """
    computer_name: str
    instance_name: Optional[str] = None
    port: Optional[int] = None
    credential_key: Optional[str] = None

    @property
    def is_default_instance(self) -> bool:
        return self.instance_name is None or self.instance_name.upper() == DEFAULT_INSTANCE

    @property
    def full_name(self) -> str:
        """Name in host\\instance form, without the port."""
        if self.is_default_instance:
            return self.computer_name
        return f'{self.computer_name}\\{self.instance_name}'

    @property
    def service_instance_name(self) -> str:
        """Instance name as used by the SQL Server service (MSSQLSERVER for default)."""
        return DEFAULT_INSTANCE if self.is_default_instance else self.instance_name.upper()

    @property
    def server_string(self) -> str:
        """Server string accepted by the ODBC driver."""
        if self.port:
            return f'{self.full_name},{self.port}'
        return self.full_name

    def __str__(self) -> str:
        return self.full_name


def parse_instance(value: Union[str, InstanceRef], credential_key: str = None) -> InstanceRef:
    """Parse host, host\\instance, host,port or host\\instance,port to InstanceRef.

    Raises ConfigurationError if the value is empty or malformed.
    """
    if isinstance(value, InstanceRef):
        return value
    if value is None or not str(value).strip():
        raise ConfigurationError('Instance name must not be empty.')
    match = INSTANCE_PATTERN.match(str(value).strip())
    if match is None:
        raise ConfigurationError(f'Invalid instance name: {value}')
    host = match.group('host')
    if host in ('.', '(local)', 'localhost'):
        host = 'localhost'
    port = match.group('port')
    return InstanceRef(
        computer_name=host,
        instance_name=match.group('instance'),
        port=int(port) if port is not None else None,
        credential_key=credential_key
    )
