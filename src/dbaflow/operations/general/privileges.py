# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for granting local security policy privileges to the SQL Server
service accounts.

The policy is exported with secedit, the [Privilege Rights] section is changed
here and the result is applied with secedit again. The temporary files on the
remote computer have random names and are removed by the scripts.'''
import re
from logging import getLogger
from typing import Callable, Dict, Iterable, List, Tuple

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.errors import ConfigurationError, RemoteExecutionError
from dbaflow.executor import always_confirm
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.general.remote import RemoteExecutor
from dbaflow.operations.general.server_services import get_services
from dbaflow.status import OperationStatus, StatusReporter, failed, skipped, successful

logger = getLogger('dbaflow')

OBJECT_TYPE = 'Privilege'
SECTION = '[Privilege Rights]'

PRIVILEGES = {
    'IFI': 'SeManageVolumePrivilege',
    'LPIM': 'SeLockMemoryPrivilege',
    'BatchLogon': 'SeBatchLogonRight',
    'SecAudit': 'SeAuditPrivilege',
    'ServiceLogon': 'SeServiceLogonRight'
}
# privileges given to the agent service account too
AGENT_PRIVILEGES = ('BatchLogon', 'ServiceLogon')

EXPORT_SCRIPT = """
$name = [System.IO.Path]::GetRandomFileName()
$cfg = Join-Path $env:TEMP "$name.inf"
try {
    $output = secedit /export /cfg $cfg /areas USER_RIGHTS /quiet
    if ($LASTEXITCODE -ne 0) { throw "secedit /export failed: $output" }
    ConvertTo-Json -Compress -InputObject ((Get-Content -Path $cfg -Encoding Unicode) -join "`r`n")
}
finally {
    Remove-Item -Path $cfg -ErrorAction SilentlyContinue
}
"""

CONFIGURE_SCRIPT = """
$name = [System.IO.Path]::GetRandomFileName()
$cfg = Join-Path $env:TEMP "$name.inf"
$db = Join-Path $env:TEMP "$name.sdb"
try {
    Set-Content -Path $cfg -Value $arguments.content -Encoding Unicode
    $output = secedit /configure /db $db /cfg $cfg /areas USER_RIGHTS /quiet
    if ($LASTEXITCODE -ne 0) { throw "secedit /configure failed: $output" }
}
finally {
    Remove-Item -Path $cfg, $db -ErrorAction SilentlyContinue
}
"""

_SECTION_HEADER = re.compile(r'^\s*\[.*\]\s*$')


def _split_values(value: str) -> List[str]:
    return [item.strip() for item in value.split(',') if item.strip()]


def read_privilege_rights(content: str) -> Dict[str, List[str]]:
    """Privilege Rights section of a secedit export as a dict."""
    rights = {}
    in_section = False
    for line in content.splitlines():
        if _SECTION_HEADER.match(line):
            in_section = line.strip().lower() == SECTION.lower()
            continue
        if in_section and '=' in line:
            name, value = line.split('=', 1)
            rights[name.strip()] = _split_values(value)
    return rights


def grant_privilege(content: str, privilege: str, accounts: Iterable[str]) -> Tuple[str, List[str]]:
    '''Add accounts to privilege in secedit content.

    Returns
    -------
    tuple
        The changed content and the accounts that were added. The content
        is unchanged if every account already had the privilege.
    '''
    current = read_privilege_rights(content).get(privilege, [])
    current_lower = {item.lower() for item in current}
    added = []
    for account in accounts:
        if account.lower() not in current_lower and account not in added:
            added.append(account)
            current_lower.add(account.lower())
    if not added:
        return content, []
    new_line = f'{privilege} = ' + ','.join(current + added)

    lines = content.splitlines()
    section_start = None
    for index, line in enumerate(lines):
        if line.strip().lower() == SECTION.lower():
            section_start = index
            break
    if section_start is None:
        lines.extend([SECTION, new_line])
        return '\r\n'.join(lines) + '\r\n', added

    section_end = len(lines)
    for index in range(section_start + 1, len(lines)):
        if _SECTION_HEADER.match(lines[index]):
            section_end = index
            break
    for index in range(section_start + 1, section_end):
        if '=' in lines[index] and lines[index].split('=', 1)[0].strip().lower() == privilege.lower():
            lines[index] = new_line
            break
    else:
        lines.insert(section_start + 1, new_line)
    return '\r\n'.join(lines) + '\r\n', added


def service_accounts(connection, privilege_type: str) -> List[str]:
    accounts = []
    for service in get_services(connection):
        if service.is_engine or (service.is_agent and privilege_type in AGENT_PRIVILEGES):
            if service.service_account and service.service_account not in accounts:
                accounts.append(service.service_account)
    return accounts


def set_privilege(instances: Iterable, privilege_type: Iterable[str] = ('IFI',), confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, remote: RemoteExecutor = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Grant privileges to the service accounts of instances.

    Arguments
    ---------
    instances
        Instances whose service accounts get the privileges. Instances on
        the same computer are handled together.
    privilege_type
        Any of IFI, LPIM, BatchLogon, SecAudit and ServiceLogon.

    Returns
    -------
    list
        One status record per privilege per computer.
    '''
    privilege_type = list(privilege_type)
    unknown = [item for item in privilege_type if item not in PRIVILEGES]
    if unknown:
        raise ConfigurationError(f"Unknown privilege types: {', '.join(unknown)}")
    resolver = resolver or ConnectionResolver()
    remote = remote or RemoteExecutor()
    confirm = confirm or always_confirm
    computers = {}
    for connection in connect_each(resolver, instances, reporter=reporter):
        accounts = computers.setdefault(connection.computer_name, {item: [] for item in privilege_type})
        for item in privilege_type:
            accounts[item].extend(account for account in service_accounts(connection, item) if account not in accounts[item])
    results = []
    with OperationManager('Setting privileges'):
        for computer, accounts in computers.items():
            statuses = _set_privileges(computer, accounts, confirm, remote)
            if reporter is not None:
                reporter.extend(statuses)
            results.extend(statuses)
    return results


def _status(factory, computer: str, privilege_type: str, notes: str) -> OperationStatus:
    return factory(None, None, privilege_type, OBJECT_TYPE, notes, computer_name=computer)


def _set_privileges(computer: str, accounts: Dict[str, List[str]], confirm, remote: RemoteExecutor) -> List[OperationStatus]:
    try:
        content = remote.invoke(computer, EXPORT_SCRIPT)
    except RemoteExecutionError as err:
        return [_status(failed, computer, item, str(err)) for item in accounts]
    statuses = []
    changed = []
    for privilege_type, names in accounts.items():
        new_content, added = grant_privilege(content, PRIVILEGES[privilege_type], names)
        if not added:
            statuses.append(_status(skipped, computer, privilege_type, 'Privilege already granted'))
            continue
        if not confirm(f'Granting {PRIVILEGES[privilege_type]} to {", ".join(added)} on {computer}'):
            statuses.append(_status(skipped, computer, privilege_type, 'Not confirmed'))
            continue
        content = new_content
        changed.append((privilege_type, added))
    if not changed:
        return statuses
    try:
        remote.invoke(computer, CONFIGURE_SCRIPT, {'content': content})
    except RemoteExecutionError as err:
        return statuses + [_status(failed, computer, item, str(err)) for item, _ in changed]
    return statuses + [
        _status(successful, computer, item, f'Granted to {", ".join(added)}') for item, added in changed
    ]
