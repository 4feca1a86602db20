# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for copying logins between instances.

SQL logins are created with the password hash and SID of the source login,
so that database users of restored databases stay mapped to them. If the SID
is already taken on the destination, the login is created without it.

Global variable QUERIES holds the catalog queries used by the module.'''
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.database_utilities.tsql import exec_procedure, hex_literal, quote_name
from dbaflow.executor import CopyOperation, Strategy, run_copy
from dbaflow.operation_manager import OperationManager
from dbaflow.status import OperationStatus, StatusReporter
from dbaflow.targets import select_names

logger = getLogger('dbaflow')

QUERIES = {
    'get_logins': r"""
        SELECT p.name, p.sid, p.type, p.is_disabled, p.default_database_name, p.default_language_name,
            l.is_policy_checked, l.is_expiration_checked,
            CAST(LOGINPROPERTY(p.name, 'PasswordHash') AS VARBINARY(256)) AS password_hash
        FROM sys.server_principals p
        LEFT JOIN sys.sql_logins l ON l.principal_id = p.principal_id
        WHERE p.type IN ('S', 'U', 'G')
            AND p.name NOT LIKE '##%##'
            AND p.name NOT LIKE 'NT SERVICE\%'
            AND p.name NOT LIKE 'NT AUTHORITY\%'
        ORDER BY p.name
    """,
    'get_server_role_members': """
        SELECT m.name AS login_name, r.name AS role_name
        FROM sys.server_role_members rm
        JOIN sys.server_principals r ON r.principal_id = rm.role_principal_id
        JOIN sys.server_principals m ON m.principal_id = rm.member_principal_id
        WHERE r.name <> 'public'
        ORDER BY m.name, r.name
    """,
    'get_login': 'SELECT name FROM sys.server_principals WHERE name = :login_name',
    'get_database_names': 'SELECT name FROM sys.databases',
    'get_sa_name': 'SELECT SUSER_SNAME(0x01) AS sa_name',
    'get_login_sessions': 'SELECT session_id FROM sys.dm_exec_sessions WHERE login_name = :login_name',
    'get_owned_databases': 'SELECT name FROM sys.databases WHERE SUSER_SNAME(owner_sid) = :login_name',
    'get_owned_jobs': 'SELECT name FROM msdb.dbo.sysjobs WHERE SUSER_SNAME(owner_sid) = :login_name'
}


@dataclass
class Login:
    name: str
    type: str
    sid: Optional[bytes] = None
    is_disabled: bool = False
    default_database: Optional[str] = 'master'
    default_language: Optional[str] = None
    is_policy_checked: bool = False
    is_expiration_checked: bool = False
    password_hash: Optional[bytes] = None
    server_roles: List[str] = field(default_factory=list)

    @property
    def is_sql_login(self) -> bool:
        return self.type.strip() == 'S'


def read_logins(connection) -> List[Login]:
    """Return logins of connection with their server role memberships."""
    roles = {}
    for row in connection.query(QUERIES['get_server_role_members']):
        roles.setdefault(row.login_name.lower(), []).append(row.role_name)
    return [
        Login(
            name=row.name,
            type=row.type,
            sid=row.sid,
            is_disabled=bool(row.is_disabled),
            default_database=row.default_database_name,
            default_language=row.default_language_name,
            is_policy_checked=bool(row.is_policy_checked),
            is_expiration_checked=bool(row.is_expiration_checked),
            password_hash=row.password_hash,
            server_roles=roles.get(row.name.lower(), [])
        )
        for row in connection.query(QUERIES['get_logins'])
    ]


def destination_login_name(login: Login, source_computer: str, destination_computer: str) -> str:
    """Local Windows accounts of the source computer map to the destination computer."""
    if login.is_sql_login or '\\' not in login.name:
        return login.name
    domain, account = login.name.split('\\', 1)
    if domain.lower() == (source_computer or '').lower():
        return f'{destination_computer}\\{account}'
    return login.name


def create_login_statement(login: Login, login_name: str, default_database: str, include_sid: bool = True) -> str:
    options = [f'DEFAULT_DATABASE = {quote_name(default_database)}']
    if login.default_language:
        options.append(f'DEFAULT_LANGUAGE = {quote_name(login.default_language)}')
    if not login.is_sql_login:
        return f'CREATE LOGIN {quote_name(login_name)} FROM WINDOWS WITH ' + ', '.join(options)
    password_options = [f'PASSWORD = {hex_literal(login.password_hash)} HASHED']
    if include_sid:
        password_options.append(f'SID = {hex_literal(login.sid)}')
    options.append(f"CHECK_POLICY = {'ON' if login.is_policy_checked else 'OFF'}")
    options.append(f"CHECK_EXPIRATION = {'ON' if login.is_expiration_checked else 'OFF'}")
    return f'CREATE LOGIN {quote_name(login_name)} WITH ' + ', '.join(password_options + options)


class LoginCopy(CopyOperation):
    object_type = 'Login'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None):
        super().__init__(source, destination, force=force, confirm=confirm)
        self._database_names = None

    def destination_name(self, login: Login) -> str:
        return destination_login_name(login, self.source.computer_name, self.destination.computer_name)

    def skip_reason(self, login: Login) -> Optional[str]:
        if (self.destination.login_name or '').lower() == self.destination_name(login).lower():
            return 'Login is the current user on destination'
        if login.is_sql_login and login.password_hash is None:
            return 'Password hash of the login could not be read'
        return None

    def exists(self, login: Login) -> bool:
        return len(self.destination.query(
            QUERIES['get_login'], variables={'login_name': self.destination_name(login)}
        )) > 0

    def default_database(self, login: Login) -> str:
        if self._database_names is None:
            self._database_names = {
                row.name.lower() for row in self.destination.query(QUERIES['get_database_names'])
            }
        if login.default_database and login.default_database.lower() in self._database_names:
            return login.default_database
        return 'master'

    def drop(self, login: Login):
        '''Give owned databases and jobs to sa, kill the sessions of the login and drop it.'''
        login_name = self.destination_name(login)
        variables = {'login_name': login_name}
        sa_name = self.destination.query(QUERIES['get_sa_name'])[0].sa_name
        for row in self.destination.query(QUERIES['get_owned_databases'], variables=variables):
            self.destination.execute(f'ALTER AUTHORIZATION ON DATABASE::{quote_name(row.name)} TO {quote_name(sa_name)}')
        for row in self.destination.query(QUERIES['get_owned_jobs'], variables=variables):
            self.destination.execute(
                exec_procedure('msdb.dbo.sp_update_job', job_name=row.name, owner_login_name=sa_name)
            )
        for row in self.destination.query(QUERIES['get_login_sessions'], variables=variables):
            self.destination.execute(f'KILL {int(row.session_id)}')
        self.destination.execute(f'DROP LOGIN {quote_name(login_name)}')

    def create_strategies(self, login: Login) -> List[Strategy]:
        login_name = self.destination_name(login)
        default_database = self.default_database(login)
        strategies = [Strategy(
            'CREATE LOGIN',
            lambda: self.destination.execute(create_login_statement(login, login_name, default_database))
        )]
        if login.is_sql_login:
            strategies.append(Strategy(
                'CREATE LOGIN without SID',
                lambda: self.destination.execute(
                    create_login_statement(login, login_name, default_database, include_sid=False)
                )
            ))
        return strategies

    def after_create(self, login: Login) -> Optional[str]:
        login_name = self.destination_name(login)
        notes = []
        if login_name != login.name:
            notes.append(f'Created as {login_name}')
        if self.default_database(login) != login.default_database:
            notes.append(f'Default database {login.default_database} does not exist on destination, master used')
        if login.is_disabled:
            self.destination.execute(f'ALTER LOGIN {quote_name(login_name)} DISABLE')
        for role in login.server_roles:
            try:
                self.destination.execute(
                    f'ALTER SERVER ROLE {quote_name(role)} ADD MEMBER {quote_name(login_name)}'
                )
            except Exception as err:
                notes.append(f'Could not add to server role {role}: {err}')
        return '; '.join(notes) or None


def copy_logins(source, destinations: Iterable, login: Iterable[str] = None, exclude_login: Iterable[str] = None,
        force: bool = False, confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy logins from source to destinations.

    Arguments
    ---------
    source
        Source instance.
    destinations
        Destination instances, processed in the given order.
    login
        Names of the logins to copy. All logins if not given.
    exclude_login
        Names of the logins not to copy.
    force
        Drop and recreate logins that exist on destination.
        Databases and jobs owned by the login are given to sa first.
    confirm
        Called before each change, returns False to skip the change.
    resolver
        Connection resolver of the command invocation.
    reporter
        Receives every status record.

    Returns
    -------
    list
        One status record per login per destination.
    '''
    resolver = resolver or ConnectionResolver()
    with OperationManager('Copying logins', target=str(source)):
        source = resolver.resolve(source)
        logins = {item.name: item for item in read_logins(source)}
        names = select_names(logins.keys(), include=login, exclude=exclude_login, object_type='login')
        return run_copy(
            LoginCopy, source, destinations, [logins[name] for name in names],
            resolver=resolver, force=force, confirm=confirm, reporter=reporter
        )
