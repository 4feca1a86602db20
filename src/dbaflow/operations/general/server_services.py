# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Services and network settings of an instance, as seen by the instance itself."""
import re
from dataclasses import dataclass
from typing import List, Optional

QUERIES = {
    'get_services': """
        SELECT servicename, service_account, filename, status_desc
        FROM sys.dm_server_services
        ORDER BY servicename
    """,
    'get_tcp_settings': r"""
        SELECT registry_key, value_name, CAST(value_data AS NVARCHAR(256)) AS value_data
        FROM sys.dm_server_registry
        WHERE (registry_key LIKE N'%\SuperSocketNetLib\Tcp\IPAll' AND value_name IN (N'TcpPort', N'TcpDynamicPorts'))
            OR (registry_key LIKE N'%\MSSQLServer\SuperSocketNetLib\AdminConnection\Tcp' AND value_name = N'TcpDynamicPorts')
    """
}

ENGINE_SERVICE = re.compile(r'^SQL Server \(', re.IGNORECASE)
AGENT_SERVICE = re.compile(r'^SQL Server Agent \(', re.IGNORECASE)


@dataclass
class ServerService:
    name: str
    service_account: str
    filename: str

    @property
    def program(self) -> str:
        """Executable path without the command line arguments."""
        match = re.match(r'\s*"([^"]+)"', self.filename or '')
        if match:
            return match.group(1)
        return (self.filename or '').split(' -', 1)[0].strip()

    @property
    def is_engine(self) -> bool:
        return bool(ENGINE_SERVICE.match(self.name))

    @property
    def is_agent(self) -> bool:
        return bool(AGENT_SERVICE.match(self.name))


@dataclass
class TcpSettings:
    static_port: Optional[int] = None
    dynamic_port: Optional[int] = None
    dac_port: Optional[int] = None


def _port(value: Optional[str]) -> Optional[int]:
    # the registry value may hold a list of ports, the first one is used
    value = (value or '').split(',')[0].strip()
    return int(value) if value.isdigit() and int(value) > 0 else None


def get_services(connection) -> List[ServerService]:
    return [
        ServerService(row.servicename, row.service_account, row.filename)
        for row in connection.query(QUERIES['get_services'])
    ]


def get_engine_service(connection) -> Optional[ServerService]:
    for service in get_services(connection):
        if service.is_engine:
            return service
    return None


def get_tcp_settings(connection) -> TcpSettings:
    settings = TcpSettings()
    for row in connection.query(QUERIES['get_tcp_settings']):
        if row.registry_key.lower().endswith('\\adminconnection\\tcp'):
            settings.dac_port = _port(row.value_data)
        elif row.value_name == 'TcpPort':
            settings.static_port = _port(row.value_data)
        else:
            settings.dynamic_port = _port(row.value_data)
    return settings
