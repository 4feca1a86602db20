# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for copying Database Mail.

Database Mail is copied in four categories, in this order: configuration
values, accounts, profiles and mail servers. Each category returns its own
list of status records.

Fields of accounts and servers that contain the name of the source instance
(e.g. the display name 'SQL01 alerts') are rewritten for the destination one
field at a time.

Global variable QUERIES holds the msdb queries used by the module.'''
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Dict, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.database_utilities.tsql import exec_procedure
from dbaflow.errors import ConfigurationError, DependencyMissing
from dbaflow.executor import SAME_INSTANCE, CopyOperation, Strategy, rewrite_identity, run_operation, skip_all
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.tsql.server_objects import set_configuration
from dbaflow.status import OperationStatus, StatusReporter, failed, skipped, successful
from dbaflow.targets import select_names

logger = getLogger('dbaflow')

CATEGORIES = ('ConfigurationValues', 'Accounts', 'Profiles', 'MailServers')
CONFIGURATION_TYPE = 'Database Mail Configuration'

QUERIES = {
    'get_configuration': 'SELECT paramname, paramvalue FROM msdb.dbo.sysmail_configuration ORDER BY paramname',
    'get_mail_xps': "SELECT CAST(value_in_use AS INT) AS value_in_use FROM sys.configurations WHERE name = 'Database Mail XPs'",
    'get_accounts': """
        SELECT a.name, a.description, a.email_address, a.display_name, a.replyto_address
        FROM msdb.dbo.sysmail_account a
        ORDER BY a.name
    """,
    'get_servers': """
        SELECT a.name AS account_name, s.servername, s.servertype, s.port, s.username,
            s.use_default_credentials, s.enable_ssl
        FROM msdb.dbo.sysmail_server s
        JOIN msdb.dbo.sysmail_account a ON a.account_id = s.account_id
        ORDER BY a.name, s.servername
    """,
    'get_profiles': 'SELECT p.name, p.description FROM msdb.dbo.sysmail_profile p ORDER BY p.name',
    'get_profile_accounts': """
        SELECT p.name AS profile_name, a.name AS account_name, pa.sequence_number
        FROM msdb.dbo.sysmail_profileaccount pa
        JOIN msdb.dbo.sysmail_profile p ON p.profile_id = pa.profile_id
        JOIN msdb.dbo.sysmail_account a ON a.account_id = pa.account_id
        ORDER BY p.name, pa.sequence_number
    """,
    'get_profile_principals': """
        SELECT p.name AS profile_name, pp.principal_sid, pp.is_default,
            CASE WHEN pp.principal_sid = 0x00 THEN 'public' ELSE dp.name END AS principal_name
        FROM msdb.dbo.sysmail_principalprofile pp
        JOIN msdb.dbo.sysmail_profile p ON p.profile_id = pp.profile_id
        LEFT JOIN msdb.sys.database_principals dp ON dp.sid = pp.principal_sid
        ORDER BY p.name
    """,
    'account_exists': 'SELECT name FROM msdb.dbo.sysmail_account WHERE name = :name',
    'profile_exists': 'SELECT name FROM msdb.dbo.sysmail_profile WHERE name = :name',
    'get_account_names': 'SELECT name FROM msdb.dbo.sysmail_account',
    'server_exists': """
        SELECT s.servername FROM msdb.dbo.sysmail_server s
        JOIN msdb.dbo.sysmail_account a ON a.account_id = s.account_id
        WHERE a.name = :account_name AND s.servername = :servername
    """
}


@dataclass
class MailAccount:
    name: str
    description: Optional[str] = None
    email_address: Optional[str] = None
    display_name: Optional[str] = None
    replyto_address: Optional[str] = None


@dataclass
class MailProfile:
    name: str
    description: Optional[str] = None
    accounts: List[tuple] = field(default_factory=list)
    principals: List[tuple] = field(default_factory=list)


@dataclass
class MailServer:
    account_name: str
    servername: str
    servertype: Optional[str] = 'SMTP'
    port: Optional[int] = 25
    username: Optional[str] = None
    use_default_credentials: bool = False
    enable_ssl: bool = False

    @property
    def name(self) -> str:
        return self.servername


def read_accounts(connection) -> List[MailAccount]:
    return [
        MailAccount(row.name, row.description, row.email_address, row.display_name, row.replyto_address)
        for row in connection.query(QUERIES['get_accounts'])
    ]


def read_profiles(connection) -> List[MailProfile]:
    profiles = {row.name.lower(): MailProfile(row.name, row.description) for row in connection.query(QUERIES['get_profiles'])}
    for row in connection.query(QUERIES['get_profile_accounts']):
        if row.profile_name.lower() in profiles:
            profiles[row.profile_name.lower()].accounts.append((row.account_name, row.sequence_number))
    for row in connection.query(QUERIES['get_profile_principals']):
        if row.profile_name.lower() in profiles and row.principal_name:
            profiles[row.profile_name.lower()].principals.append((row.principal_name, bool(row.is_default)))
    return list(profiles.values())


def read_servers(connection) -> List[MailServer]:
    return [
        MailServer(row.account_name, row.servername, row.servertype, row.port, row.username,
                   bool(row.use_default_credentials), bool(row.enable_ssl))
        for row in connection.query(QUERIES['get_servers'])
    ]


class _MailCopy(CopyOperation):
    """Mail objects with identity rewriting from source to destination instance."""

    def rewrite(self, value: Optional[str]) -> Optional[str]:
        for old, new in ((self.source.name, self.destination.name),
                         (self.source.computer_name, self.destination.computer_name)):
            value = rewrite_identity(value, old, new)
        return value

    def _exists(self, query: str, **variables) -> bool:
        return len(self.destination.query(QUERIES[query], variables=variables)) > 0


class MailAccountCopy(_MailCopy):
    object_type = 'Database Mail Account'

    def exists(self, account: MailAccount) -> bool:
        return self._exists('account_exists', name=account.name)

    def drop(self, account: MailAccount):
        self.destination.execute(exec_procedure('msdb.dbo.sysmail_delete_account_sp', account_name=account.name))

    def create_strategies(self, account: MailAccount) -> List[Strategy]:
        statement = exec_procedure(
            'msdb.dbo.sysmail_add_account_sp',
            account_name=account.name,
            email_address=self.rewrite(account.email_address),
            display_name=self.rewrite(account.display_name),
            replyto_address=self.rewrite(account.replyto_address),
            description=self.rewrite(account.description)
        )
        return [Strategy('sysmail_add_account_sp', lambda: self.destination.execute(statement))]


class MailProfileCopy(_MailCopy):
    object_type = 'Database Mail Profile'

    def exists(self, profile: MailProfile) -> bool:
        return self._exists('profile_exists', name=profile.name)

    def missing_dependencies(self, profile: MailProfile) -> List[DependencyMissing]:
        accounts = {row.name.lower() for row in self.destination.query(QUERIES['get_account_names'])}
        return [
            DependencyMissing(account_name, 'Account')
            for account_name, _ in profile.accounts
            if account_name.lower() not in accounts
        ]

    def drop(self, profile: MailProfile):
        self.destination.execute(exec_procedure('msdb.dbo.sysmail_delete_profile_sp', profile_name=profile.name))

    def script(self, profile: MailProfile) -> List[str]:
        statements = [exec_procedure(
            'msdb.dbo.sysmail_add_profile_sp',
            profile_name=profile.name,
            description=self.rewrite(profile.description)
        )]
        for account_name, sequence_number in profile.accounts:
            statements.append(exec_procedure(
                'msdb.dbo.sysmail_add_profileaccount_sp',
                profile_name=profile.name,
                account_name=account_name,
                sequence_number=sequence_number
            ))
        for principal_name, is_default in profile.principals:
            statements.append(exec_procedure(
                'msdb.dbo.sysmail_add_principalprofile_sp',
                profile_name=profile.name,
                principal_name=principal_name,
                is_default=is_default
            ))
        return statements

    def create_strategies(self, profile: MailProfile) -> List[Strategy]:
        # profile, account links and principals are created together or not at all
        return [Strategy(
            'sysmail_add_profile_sp',
            lambda: self.destination.execute_in_transaction(self.script(profile))
        )]


class MailServerCopy(_MailCopy):
    '''Mail server settings of an account.

    sysmail_add_account_sp creates the server row of an account, so the
    server is applied by updating the account on destination.'''
    object_type = 'Database Mail Server'

    def server_name(self, server: MailServer) -> str:
        return self.rewrite(server.servername)

    def item_name(self, server: MailServer) -> str:
        return f"{self.server_name(server)} ({server.account_name})"

    def exists(self, server: MailServer) -> bool:
        return self._exists('server_exists', account_name=server.account_name, servername=self.server_name(server))

    def missing_dependencies(self, server: MailServer) -> List[DependencyMissing]:
        if not self._exists('account_exists', name=server.account_name):
            return [DependencyMissing(server.account_name, 'Account')]
        return []

    def drop(self, server: MailServer):
        pass

    def create_strategies(self, server: MailServer) -> List[Strategy]:
        statement = exec_procedure(
            'msdb.dbo.sysmail_update_account_sp',
            account_name=server.account_name,
            mailserver_name=self.server_name(server),
            mailserver_type=server.servertype,
            port=server.port,
            username=server.username,
            use_default_credentials=server.use_default_credentials,
            enable_ssl=server.enable_ssl
        )
        return [Strategy('sysmail_update_account_sp', lambda: self.destination.execute(statement))]


def copy_mail_configuration(source, destination, force: bool = False,
        confirm: Callable[[str], bool] = None) -> List[OperationStatus]:
    '''Copy the sysmail_configuration values and the Database Mail XPs setting.

    Values that already match are left alone. Values that differ are changed
    only with force.'''
    results = []
    confirm = confirm or (lambda description: True)
    current = {row.paramname.lower(): row.paramvalue for row in destination.query(QUERIES['get_configuration'])}
    for row in source.query(QUERIES['get_configuration']):
        name = row.paramname
        if current.get(name.lower()) == row.paramvalue:
            results.append(skipped(source, destination, name, CONFIGURATION_TYPE, 'Value already in use'))
            continue
        if name.lower() in current and not force:
            results.append(skipped(source, destination, name, CONFIGURATION_TYPE,
                                   f'Destination value {current[name.lower()]} differs, use force to change it'))
            continue
        if not confirm(f'Setting Database Mail parameter {name} on {destination.name}'):
            results.append(skipped(source, destination, name, CONFIGURATION_TYPE, 'Not confirmed'))
            continue
        try:
            destination.execute(exec_procedure(
                'msdb.dbo.sysmail_configure_sp', parameter_name=name, parameter_value=row.paramvalue
            ))
            results.append(successful(source, destination, name, CONFIGURATION_TYPE))
        except Exception as err:
            results.append(failed(source, destination, name, CONFIGURATION_TYPE, str(err)))

    source_xps = source.query(QUERIES['get_mail_xps'])
    destination_xps = destination.query(QUERIES['get_mail_xps'])
    if source_xps and source_xps[0].value_in_use == 1 and not (destination_xps and destination_xps[0].value_in_use == 1):
        try:
            set_configuration(destination, 'Database Mail XPs', 1, advanced=True)
            results.append(successful(source, destination, 'Database Mail XPs', CONFIGURATION_TYPE, 'Enabled'))
        except Exception as err:
            results.append(failed(source, destination, 'Database Mail XPs', CONFIGURATION_TYPE, str(err)))
    return results


def _skip_instance(source, destination, results: Dict[str, List[OperationStatus]], accounts, profiles, servers,
        reporter: StatusReporter = None):
    """Report every object of the selected categories as Skipped on destination."""
    items = {
        'Accounts': (MailAccountCopy, accounts),
        'Profiles': (MailProfileCopy, profiles),
        'MailServers': (MailServerCopy, servers)
    }
    for category in results:
        if category == 'ConfigurationValues':
            statuses = [
                skipped(source, destination, row.paramname, CONFIGURATION_TYPE, SAME_INSTANCE)
                for row in source.query(QUERIES['get_configuration'])
            ]
            if reporter is not None:
                reporter.extend(statuses)
        else:
            operation_class, category_items = items[category]
            statuses = skip_all(operation_class(source, destination), category_items, SAME_INSTANCE, reporter)
        results[category].extend(statuses)


def copy_db_mail(source, destinations: Iterable, categories: Iterable[str] = None, account: Iterable[str] = None,
        exclude_account: Iterable[str] = None, profile: Iterable[str] = None, exclude_profile: Iterable[str] = None,
        force: bool = False, confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> Dict[str, List[OperationStatus]]:
    '''Copy Database Mail from source to destinations.

    Arguments
    ---------
    categories
        Any of ConfigurationValues, Accounts, Profiles and MailServers.
        All of them if not given.
    account, exclude_account
        Account filters for Accounts and MailServers.
    profile, exclude_profile
        Profile filters for Profiles.

    Returns
    -------
    dict
        Status records per category. Every selected category has an entry,
        also when it did not produce any records.
    '''
    selected = list(categories) if categories else list(CATEGORIES)
    unknown = [category for category in selected if category not in CATEGORIES]
    if unknown:
        raise ConfigurationError(f"Unknown Database Mail categories: {', '.join(unknown)}")
    resolver = resolver or ConnectionResolver()
    results = {category: [] for category in CATEGORIES if category in selected}
    with OperationManager('Copying Database Mail', target=str(source)):
        source = resolver.resolve(source)
        accounts = read_accounts(source)
        account_names = select_names([item.name for item in accounts], include=account, exclude=exclude_account,
                                     object_type='mail account')
        accounts = [item for item in accounts if item.name in account_names]
        profiles = []
        if 'Profiles' in results:
            profiles = read_profiles(source)
            profile_names = select_names([item.name for item in profiles], include=profile, exclude=exclude_profile,
                                         object_type='mail profile')
            profiles = [item for item in profiles if item.name in profile_names]
        servers = [item for item in read_servers(source) if item.account_name in account_names] \
            if 'MailServers' in results else []

        for destination in connect_each(resolver, destinations, reporter=reporter):
            if destination.name.lower() == source.name.lower():
                logger.warning(f'{SAME_INSTANCE} ({source.name}), skipping.')
                _skip_instance(source, destination, results, accounts, profiles, servers, reporter)
                continue
            if 'ConfigurationValues' in results:
                statuses = copy_mail_configuration(source, destination, force=force, confirm=confirm)
                if reporter is not None:
                    reporter.extend(statuses)
                results['ConfigurationValues'].extend(statuses)
            if 'Accounts' in results:
                operation = MailAccountCopy(source, destination, force=force, confirm=confirm)
                results['Accounts'].extend(run_operation(operation, accounts, reporter))
            if 'Profiles' in results:
                operation = MailProfileCopy(source, destination, force=force, confirm=confirm)
                results['Profiles'].extend(run_operation(operation, profiles, reporter))
            if 'MailServers' in results:
                # server settings are always applied over the ones created with the account
                operation = MailServerCopy(source, destination, force=True, confirm=confirm)
                results['MailServers'].extend(run_operation(operation, servers, reporter))
    return results
