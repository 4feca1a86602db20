# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for changing the startup parameters of the database engine.

Startup parameters are stored as registry values SQLArg0, SQLArg1, ... under
the Parameters key of the instance. They are shown to the user as one string
delimited with semicolons, e.g.

    -dC:\\data\\master.mdf;-eC:\\log\\ERRORLOG;-lC:\\data\\mastlog.ldf;-T1117

The new values take effect when the service is restarted.'''
from dataclasses import dataclass, field, replace
from logging import getLogger
from typing import Callable, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.errors import ConfigurationError, RemoteExecutionError
from dbaflow.executor import always_confirm
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.general.remote import RemoteExecutor
from dbaflow.status import OperationStatus, StatusReporter, failed, host_status, skipped, successful

logger = getLogger('dbaflow')

OBJECT_TYPE = 'Startup Parameters'

QUERIES = {
    'get_startup_parameters': r"""
        SELECT registry_key, value_name, CAST(value_data AS NVARCHAR(1024)) AS value_data
        FROM sys.dm_server_registry
        WHERE registry_key LIKE N'%\MSSQLServer\Parameters' AND value_name LIKE N'SQLArg%'
        ORDER BY value_name
    """
}

WRITE_SCRIPT = """
$key = $arguments.registry_key
$old = @((Get-Item -Path $key).Property | Where-Object { $_ -like 'SQLArg*' })
foreach ($name in $old) {
    Remove-ItemProperty -Path $key -Name $name
}
$index = 0
foreach ($parameter in $arguments.parameters) {
    New-ItemProperty -Path $key -Name "SQLArg$index" -Value $parameter -PropertyType String | Out-Null
    $index++
}
"""

# flags without a value
SWITCHES = {'c': 'command_prompt_start', 'f': 'minimal_start', 'n': 'no_event_log', 'x': 'disable_monitoring',
            'E': 'increased_extents'}


@dataclass(frozen=True)
class StartupParameters:
    master_data: Optional[str] = None
    error_log: Optional[str] = None
    master_log: Optional[str] = None
    trace_flags: tuple = ()
    command_prompt_start: bool = False
    minimal_start: bool = False
    memory_to_reserve: Optional[int] = None
    single_user: bool = False
    single_user_details: Optional[str] = None
    no_event_log: bool = False
    startup_instance: Optional[str] = None
    disable_monitoring: bool = False
    increased_extents: bool = False
    additional: tuple = field(default=())

    def to_list(self) -> List[str]:
        """Parameters in SQLArg order: -d, -e and -l first."""
        parameters = []
        for flag, value in (('d', self.master_data), ('e', self.error_log), ('l', self.master_log)):
            if value:
                parameters.append(f'-{flag}{value}')
        parameters.extend(f'-T{trace_flag}' for trace_flag in self.trace_flags)
        for flag, attribute in SWITCHES.items():
            if getattr(self, attribute):
                parameters.append(f'-{flag}')
        if self.memory_to_reserve is not None:
            parameters.append(f'-g{self.memory_to_reserve}')
        if self.single_user:
            parameters.append(f'-m{self.single_user_details or ""}')
        if self.startup_instance:
            parameters.append(f'-s{self.startup_instance}')
        parameters.extend(self.additional)
        return parameters

    def __str__(self) -> str:
        return ';'.join(self.to_list())


def parse_startup_parameters(value) -> StartupParameters:
    '''Parse the semicolon delimited string or a list of SQLArg values.

    Parameters not known here are kept as they are.'''
    parts = value.split(';') if isinstance(value, str) else list(value)
    values = {'trace_flags': [], 'additional': []}
    for part in (part.strip() for part in parts):
        if not part:
            continue
        if len(part) < 2 or part[0] not in '-/':
            values['additional'].append(part)
            continue
        flag, argument = part[1], part[2:]
        if flag == 'd':
            values['master_data'] = argument
        elif flag == 'e':
            values['error_log'] = argument
        elif flag == 'l':
            values['master_log'] = argument
        elif flag == 'T' and argument.isdigit():
            values['trace_flags'].append(int(argument))
        elif flag in SWITCHES and not argument:
            values[SWITCHES[flag]] = True
        elif flag == 'g' and argument.isdigit():
            values['memory_to_reserve'] = int(argument)
        elif flag == 'm':
            values['single_user'] = True
            values['single_user_details'] = argument or None
        elif flag == 's':
            values['startup_instance'] = argument
        else:
            values['additional'].append(part)
    values['trace_flags'] = tuple(values['trace_flags'])
    values['additional'] = tuple(values['additional'])
    return StartupParameters(**values)


def apply_changes(current: StartupParameters, trace_flag: Iterable[int] = None, trace_flag_override: bool = False,
        **changes) -> StartupParameters:
    '''Return current with the given changes.

    Trace flags are added to the current ones unless trace_flag_override is
    set, in which case they replace them. Changes with value None are ignored.'''
    changes = {name: value for name, value in changes.items() if value is not None}
    if trace_flag is not None:
        flags = [int(flag) for flag in trace_flag]
        if not trace_flag_override:
            flags = list(current.trace_flags) + [flag for flag in flags if flag not in current.trace_flags]
        changes['trace_flags'] = tuple(flags)
    elif trace_flag_override:
        changes['trace_flags'] = ()
    return replace(current, **changes)


def read_startup_parameters(connection) -> tuple:
    """Return registry key of the parameters and the current parameters."""
    rows = connection.query(QUERIES['get_startup_parameters'])
    if not rows:
        raise ConfigurationError(f'Startup parameters of {connection.name} could not be read')
    rows = sorted(rows, key=lambda row: int(row.value_name[len('SQLArg'):] or 0))
    registry_key = rows[0].registry_key.replace('HKLM\\', 'HKLM:\\', 1)
    return registry_key, parse_startup_parameters([row.value_data for row in rows])


def set_startup_parameter(instances: Iterable, startup_config: str = None, trace_flag: Iterable[int] = None,
        trace_flag_override: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, remote: RemoteExecutor = None, reporter: StatusReporter = None,
        **changes) -> List[OperationStatus]:
    '''Change the startup parameters of instances.

    Arguments
    ---------
    startup_config
        The whole parameter string. Replaces the current parameters.
    trace_flag
        Trace flags to add, or to set with trace_flag_override.
    changes
        Attributes of StartupParameters to change, e.g. master_data or
        single_user.

    The master database and error log parameters (-d, -e and -l) can not be
    removed.
    '''
    unknown = [name for name in changes if name not in StartupParameters.__dataclass_fields__]
    if unknown:
        raise ConfigurationError(f"Unknown startup parameters: {', '.join(unknown)}")
    resolver = resolver or ConnectionResolver()
    remote = remote or RemoteExecutor()
    confirm = confirm or always_confirm
    results = []
    with OperationManager('Setting startup parameters'):
        for connection in connect_each(resolver, instances, reporter=reporter):
            status = _set_parameters(connection, startup_config, trace_flag, trace_flag_override, changes,
                                     confirm, remote)
            if reporter is not None:
                reporter.emit(status)
            results.append(status)
    return results


def _set_parameters(connection, startup_config, trace_flag, trace_flag_override, changes, confirm,
        remote: RemoteExecutor) -> OperationStatus:
    try:
        registry_key, current = read_startup_parameters(connection)
    except ConfigurationError as err:
        return host_status(failed, connection, OBJECT_TYPE, OBJECT_TYPE, str(err))
    new = parse_startup_parameters(startup_config) if startup_config else current
    new = apply_changes(new, trace_flag=trace_flag, trace_flag_override=trace_flag_override, **changes)
    if not (new.master_data and new.error_log and new.master_log):
        return host_status(failed, connection, OBJECT_TYPE, OBJECT_TYPE,
                           'Master data file, master log file and error log parameters are required')
    if new == current:
        return host_status(skipped, connection, OBJECT_TYPE, OBJECT_TYPE, 'Startup parameters already set')
    if not confirm(f'Changing startup parameters of {connection.name} from {current} to {new}'):
        return host_status(skipped, connection, OBJECT_TYPE, OBJECT_TYPE, 'Not confirmed')
    try:
        remote.invoke(connection.computer_name, WRITE_SCRIPT,
                      {'registry_key': registry_key, 'parameters': new.to_list()})
    except RemoteExecutionError as err:
        return host_status(failed, connection, OBJECT_TYPE, OBJECT_TYPE, str(err))
    return host_status(successful, connection, OBJECT_TYPE, OBJECT_TYPE,
                       f'Changed to {new}, restart the service for the change to take effect')
