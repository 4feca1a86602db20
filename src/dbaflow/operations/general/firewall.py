# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for creating Windows firewall rules for SQL Server.

Rule types:

Engine
    TCP rule for the database engine. Uses the static port when one is
    configured, otherwise the program of the service (dynamic ports).
Browser
    UDP 1434 for the SQL Server Browser. Added by default for named instances.
DAC
    TCP rule for the dedicated admin connection, when its port is known.
'''
from dataclasses import dataclass
from logging import getLogger
from typing import Callable, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.errors import ConfigurationError, RemoteExecutionError
from dbaflow.executor import always_confirm
from dbaflow.instance import DEFAULT_INSTANCE
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.general.remote import RemoteExecutor
from dbaflow.operations.general.server_services import TcpSettings, get_engine_service, get_tcp_settings
from dbaflow.status import OperationStatus, StatusReporter, failed, host_status, skipped, successful

logger = getLogger('dbaflow')

RULE_TYPES = ('Engine', 'Browser', 'DAC')
RULE_GROUP = 'SQL Server'
BROWSER_PORT = 1434

GET_RULES_SCRIPT = """
$rules = @(Get-NetFirewallRule -ErrorAction SilentlyContinue | Where-Object { $arguments.names -contains $_.Name })
ConvertTo-Json -Compress -InputObject @($rules | ForEach-Object { $_.Name })
"""

NEW_RULE_SCRIPT = """
$parameters = @{}
$arguments.parameters.PSObject.Properties | ForEach-Object { $parameters[$_.Name] = $_.Value }
if ($arguments.replace) {
    Remove-NetFirewallRule -Name $parameters.Name -ErrorAction SilentlyContinue
}
New-NetFirewallRule @parameters | Out-Null
"""


@dataclass(frozen=True)
class FirewallRule:
    type: str
    name: str
    display_name: str
    protocol: str = 'TCP'
    local_port: Optional[str] = None
    program: Optional[str] = None

    def parameters(self) -> dict:
        """Parameters of New-NetFirewallRule."""
        parameters = {
            'Name': self.name,
            'DisplayName': self.display_name,
            'Group': RULE_GROUP,
            'Enabled': 'True',
            'Direction': 'Inbound',
            'Protocol': self.protocol
        }
        if self.local_port is not None:
            parameters['LocalPort'] = self.local_port
        if self.program is not None:
            parameters['Program'] = self.program
        return parameters


def instance_rule_name(instance_name: str) -> str:
    if not instance_name or instance_name.upper() == DEFAULT_INSTANCE:
        return 'SQL Server default instance'
    return f'SQL Server instance {instance_name}'


def build_firewall_rules(instance_name: str, tcp_settings: TcpSettings, program: str = None,
        rule_types: Iterable[str] = None) -> List[FirewallRule]:
    '''Firewall rules of one instance.

    Arguments
    ---------
    instance_name
        Name of the instance, MSSQLSERVER or None for the default instance.
    tcp_settings
        Ports of the instance.
    program
        Path of sqlservr.exe, used when no static port is configured.
    rule_types
        Any of Engine, Browser and DAC. Engine, and Browser for named
        instances, if not given.
    '''
    is_default = not instance_name or instance_name.upper() == DEFAULT_INSTANCE
    if rule_types is None:
        rule_types = ['Engine'] if is_default else ['Engine', 'Browser']
    rule_types = list(rule_types)
    unknown = [rule_type for rule_type in rule_types if rule_type not in RULE_TYPES]
    if unknown:
        raise ConfigurationError(f"Unknown firewall rule types: {', '.join(unknown)}")
    name = instance_rule_name(instance_name)
    rules = []
    if 'Engine' in rule_types:
        if tcp_settings.static_port:
            rules.append(FirewallRule('Engine', name, name, 'TCP', local_port=str(tcp_settings.static_port)))
        elif program:
            rules.append(FirewallRule('Engine', name, name, 'TCP', program=program))
        else:
            raise ConfigurationError(f'No static port or program path known for {name}')
    if 'Browser' in rule_types:
        rules.append(FirewallRule('Browser', 'SQL Server Browser', 'SQL Server Browser', 'UDP', local_port=str(BROWSER_PORT)))
    if 'DAC' in rule_types:
        dac_port = tcp_settings.dac_port or (BROWSER_PORT if is_default else None)
        if dac_port:
            rules.append(FirewallRule('DAC', f'{name} (DAC)', f'{name} (DAC)', 'TCP', local_port=str(dac_port)))
        else:
            logger.warning(f'DAC port of {name} is not known, no DAC rule created')
    return rules


def new_firewall_rule(instances: Iterable, rule_type: Iterable[str] = None, force: bool = False,
        confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None, remote: RemoteExecutor = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Create firewall rules on the computers of instances.

    Ports and the program path are read from the instance. Existing rules
    with the same name are replaced only with force.'''
    if rule_type is not None:
        unknown = [item for item in rule_type if item not in RULE_TYPES]
        if unknown:
            raise ConfigurationError(f"Unknown firewall rule types: {', '.join(unknown)}")
    resolver = resolver or ConnectionResolver()
    remote = remote or RemoteExecutor()
    confirm = confirm or always_confirm
    results = []
    with OperationManager('Creating firewall rules'):
        for connection in connect_each(resolver, instances, reporter=reporter):
            statuses = _new_rules(connection, rule_type, force, confirm, remote)
            if reporter is not None:
                reporter.extend(statuses)
            results.extend(statuses)
    return results


def _new_rules(connection, rule_type, force: bool, confirm, remote: RemoteExecutor) -> List[OperationStatus]:
    object_type = 'Firewall Rule'
    service = get_engine_service(connection)
    try:
        rules = build_firewall_rules(
            connection.instance_name, get_tcp_settings(connection), service.program if service else None, rule_type
        )
    except ConfigurationError as err:
        return [host_status(failed, connection, instance_rule_name(connection.instance_name), object_type, str(err))]
    computer = connection.computer_name
    try:
        existing = {name.lower() for name in remote.invoke(
            computer, GET_RULES_SCRIPT, {'names': [rule.name for rule in rules]}
        ) or []}
    except RemoteExecutionError as err:
        return [host_status(failed, connection, rule.name, object_type, str(err)) for rule in rules]

    statuses = []
    for rule in rules:
        exists = rule.name.lower() in existing
        if exists and not force:
            statuses.append(host_status(skipped, connection, rule.name, object_type, 'Already exists on destination'))
            continue
        if not confirm(f'Creating firewall rule {rule.name} on {computer}'):
            statuses.append(host_status(skipped, connection, rule.name, object_type, 'Not confirmed'))
            continue
        try:
            remote.invoke(computer, NEW_RULE_SCRIPT, {'parameters': rule.parameters(), 'replace': exists})
        except RemoteExecutionError as err:
            statuses.append(host_status(failed, connection, rule.name, object_type, str(err)))
            continue
        target = f'port {rule.local_port}/{rule.protocol}' if rule.local_port else f'program {rule.program}'
        statuses.append(host_status(successful, connection, rule.name, object_type, f'{rule.type} rule for {target}'))
    return statuses
