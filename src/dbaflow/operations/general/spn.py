# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for checking the service principal names of instances.

Kerberos authentication to an instance needs the SPNs

    MSSQLSvc/<fqdn>                 default instance
    MSSQLSvc/<fqdn>:<instance>      named instance
    MSSQLSvc/<fqdn>:<port>          instance listening on TCP

registered on the account running the database engine. Local accounts
(virtual accounts, LocalSystem, NetworkService) register them on the computer
account.'''
from dataclasses import dataclass
from logging import getLogger
from typing import Iterable, List, Tuple

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.errors import RemoteExecutionError
from dbaflow.instance import DEFAULT_INSTANCE
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.general.remote import DirectoryService, RemoteExecutor
from dbaflow.operations.general.server_services import get_engine_service, get_tcp_settings
from dbaflow.status import OperationStatus, StatusReporter, failed, host_status, successful

logger = getLogger('dbaflow')

OBJECT_TYPE = 'SPN'
LOCAL_ACCOUNT_PREFIXES = ('nt service\\', 'nt authority\\', 'localsystem', '.\\')

FQDN_SCRIPT = """
ConvertTo-Json -Compress -InputObject ([System.Net.Dns]::GetHostEntry($env:COMPUTERNAME).HostName)
"""


@dataclass(frozen=True)
class SpnRequirement:
    spn: str
    account: str
    object_type: str = 'User'


def required_spns(fqdn: str, instance_name: str, port: int = None) -> List[str]:
    is_default = not instance_name or instance_name.upper() == DEFAULT_INSTANCE
    spns = [f'MSSQLSvc/{fqdn}' if is_default else f'MSSQLSvc/{fqdn}:{instance_name}']
    if port:
        spns.append(f'MSSQLSvc/{fqdn}:{port}')
    return spns


def spn_account(service_account: str, computer_name: str) -> Tuple[str, str]:
    """Directory account holding the SPNs, with its object type."""
    account = (service_account or '').strip()
    if not account or account.lower().startswith(LOCAL_ACCOUNT_PREFIXES):
        return f'{computer_name}$', 'Computer'
    if account.endswith('$'):
        return account, 'Computer'
    return account, 'User'


def test_spn(instances: Iterable, resolver: ConnectionResolver = None, remote: RemoteExecutor = None,
        directory: DirectoryService = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Check that the SPNs required by each instance are registered.

    Returns
    -------
    list
        One status record per required SPN: Successful when registered on the
        service account, Failed when missing or the check could not be made.
    '''
    resolver = resolver or ConnectionResolver()
    remote = remote or RemoteExecutor()
    directory = directory or DirectoryService(remote)
    results = []
    with OperationManager('Testing service principal names'):
        for connection in connect_each(resolver, instances, reporter=reporter):
            statuses = _test_instance(connection, remote, directory)
            if reporter is not None:
                reporter.extend(statuses)
            results.extend(statuses)
    return results


def _test_instance(connection, remote: RemoteExecutor, directory: DirectoryService) -> List[OperationStatus]:
    service = get_engine_service(connection)
    tcp_settings = get_tcp_settings(connection)
    account, object_type = spn_account(service.service_account if service else None, connection.computer_name)
    try:
        fqdn = remote.invoke(connection.computer_name, FQDN_SCRIPT) or connection.computer_name
    except RemoteExecutionError as err:
        return [host_status(failed, connection, connection.name, OBJECT_TYPE, str(err))]
    spns = required_spns(fqdn, connection.instance_name, tcp_settings.static_port or tcp_settings.dynamic_port)
    try:
        principal = directory.lookup(account, object_type, computer=connection.computer_name)
    except RemoteExecutionError as err:
        return [host_status(failed, connection, spn, OBJECT_TYPE, str(err)) for spn in spns]
    if principal is None:
        return [
            host_status(failed, connection, spn, OBJECT_TYPE, f'Account {account} not found in Active Directory')
            for spn in spns
        ]
    registered = {item.lower() for item in principal.service_principal_names}
    statuses = []
    for spn in spns:
        if spn.lower() in registered:
            statuses.append(host_status(successful, connection, spn, OBJECT_TYPE, f'Registered on {account}'))
        else:
            statuses.append(host_status(failed, connection, spn, OBJECT_TYPE, f'Not registered on {account}'))
    return statuses
