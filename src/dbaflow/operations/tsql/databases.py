# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for copying, owning and removing user databases.

Databases are copied with backup and restore through a folder shared by the
source and the destination instances. The restored files are placed in the
default data and log folders of the destination, or in the folders the files
had on source if the defaults do not work.

Global variable QUERIES holds the catalog queries used by the module.'''
import ntpath
import time
from datetime import datetime
from logging import getLogger
from typing import Callable, Dict, Iterable, List, Optional, Union

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.database_utilities.tsql import exec_procedure, quote_name, quote_string
from dbaflow.errors import ConfigurationError, DependencyMissing
from dbaflow.executor import CopyOperation, Strategy, always_confirm, run_copy
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.tsql.agent import start_agent_job_and_wait
from dbaflow.status import OperationStatus, Status, StatusReporter, failed, skipped, successful
from dbaflow.targets import TargetObject, enumerate_databases, get_database_rows

logger = getLogger('dbaflow')

QUERIES = {
    'get_database_files': """
        SELECT name AS logical_name, physical_name, type_desc
        FROM sys.master_files
        WHERE database_id = DB_ID(:database_name)
        ORDER BY file_id
    """,
    'database_exists': 'SELECT name FROM sys.databases WHERE name = :database_name',
    'login_exists': 'SELECT name FROM sys.server_principals WHERE name = :login_name',
    'get_sa_name': 'SELECT SUSER_SNAME(0x01) AS sa_name',
    'job_exists': 'SELECT name FROM msdb.dbo.sysjobs WHERE name = :job_name'
}

VERIFY_JOB_NAME = 'Rationalised Database Restore Script for {database}'


def backup_file_name(folder: str, database: str, timestamp: datetime = None) -> str:
    timestamp = (timestamp or datetime.now()).strftime('%Y%m%d%H%M%S')
    return ntpath.join(folder, f'{database}_{timestamp}.bak')


def backup_statement(database: str, filename: str, copy_only: bool = True) -> str:
    options = ['CHECKSUM', 'INIT', 'FORMAT']
    if copy_only:
        options.insert(0, 'COPY_ONLY')
    return f'BACKUP DATABASE {quote_name(database)} TO DISK = {quote_string(filename)} WITH ' + ', '.join(options)


def restore_statement(database: str, filename: str, moves: List[tuple]) -> str:
    options = [f'MOVE {quote_string(logical)} TO {quote_string(physical)}' for logical, physical in moves]
    options.append('CHECKSUM')
    return f'RESTORE DATABASE {quote_name(database)} FROM DISK = {quote_string(filename)} WITH ' + ', '.join(options)


def drop_database_statements(database: str) -> List[str]:
    return [
        f'ALTER DATABASE {quote_name(database)} SET SINGLE_USER WITH ROLLBACK IMMEDIATE',
        f'DROP DATABASE {quote_name(database)}'
    ]


def _exists(connection, query: str, **variables) -> bool:
    return len(connection.query(QUERIES[query], variables=variables)) > 0


class DatabaseCopy(CopyOperation):
    '''Backup on source, restore on destination.

    One backup per database is taken for the whole command, before an
    existing destination database is dropped. The backup files are not
    removed.'''
    object_type = 'Database'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None,
            shared_path: str = None, backups: Dict[str, Union[str, Exception]] = None):
        super().__init__(source, destination, force=force, confirm=confirm)
        self.shared_path = shared_path
        self.backups = backups if backups is not None else {}
        self._source_databases = None

    def source_row(self, database: TargetObject):
        if self._source_databases is None:
            self._source_databases = get_database_rows(self.source)
        return self._source_databases.get(database.name.lower())

    def skip_reason(self, database: TargetObject) -> Optional[str]:
        row = self.source_row(database)
        if row is not None and row.state_desc != 'ONLINE':
            return f'Database is {row.state_desc} on source'
        return None

    def exists(self, database: TargetObject) -> bool:
        return _exists(self.destination, 'database_exists', database_name=database.name)

    def drop(self, database: TargetObject):
        for statement in drop_database_statements(database.name):
            self.destination.execute(statement)

    def prepare(self, database: TargetObject):
        self.backup(database)

    def backup(self, database: TargetObject) -> str:
        '''Back up database to the shared path once for all destinations.

        A failed backup is remembered and raised again for the next
        destinations.'''
        key = database.name.lower()
        if key not in self.backups:
            filename = backup_file_name(self.shared_path, database.name)
            try:
                self.source.execute(backup_statement(database.name, filename))
            except Exception as err:
                self.backups[key] = err
                raise
            logger.info(f'Database {database.name} backed up to {filename}')
            self.backups[key] = filename
        if isinstance(self.backups[key], Exception):
            raise self.backups[key]
        return self.backups[key]

    def source_files(self, database: TargetObject) -> List[tuple]:
        return [
            (row.logical_name, row.physical_name, row.type_desc)
            for row in self.source.query(QUERIES['get_database_files'], variables={'database_name': database.name})
        ]

    def restore(self, database: TargetObject, moves: List[tuple]):
        self.destination.execute(restore_statement(database.name, self.backup(database), moves))

    def default_path_moves(self, database: TargetObject) -> List[tuple]:
        data_path = self.destination.server_info.get('default_data_path')
        log_path = self.destination.server_info.get('default_log_path') or data_path
        if not data_path:
            raise ConfigurationError(f'Default data path of {self.destination.name} is not known')
        return [
            (logical, ntpath.join(log_path if type_desc == 'LOG' else data_path, ntpath.basename(physical)))
            for logical, physical, type_desc in self.source_files(database)
        ]

    def create_strategies(self, database: TargetObject) -> List[Strategy]:
        return [
            Strategy('restore to default paths', lambda: self.restore(database, self.default_path_moves(database))),
            Strategy(
                'restore to source paths',
                lambda: self.restore(database, [(logical, physical) for logical, physical, _ in self.source_files(database)])
            )
        ]

    def after_create(self, database: TargetObject) -> Optional[str]:
        row = self.source_row(database)
        owner = row.owner_name if row is not None else None
        if not owner:
            return None
        if not _exists(self.destination, 'login_exists', login_name=owner):
            return f'Owner {owner} does not exist on destination'
        self.destination.execute(f'ALTER AUTHORIZATION ON DATABASE::{quote_name(database.name)} TO {quote_name(owner)}')
        return None


class DatabaseOwnerSync(CopyOperation):
    object_type = 'Database Owner'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None):
        super().__init__(source, destination, force=force, confirm=confirm)
        self.source_rows = get_database_rows(source)
        self.destination_rows = get_database_rows(destination)

    def skip_reason(self, database: TargetObject) -> Optional[str]:
        destination_row = self.destination_rows.get(database.name.lower())
        if destination_row is None:
            return 'Database does not exist on destination'
        if destination_row.state_desc != 'ONLINE':
            return f'Database is {destination_row.state_desc} on destination'
        source_owner = self.source_rows[database.name.lower()].owner_name
        if (destination_row.owner_name or '').lower() == (source_owner or '').lower():
            return 'Owner already set'
        return None

    def exists(self, database: TargetObject) -> bool:
        return False

    def missing_dependencies(self, database: TargetObject) -> List[DependencyMissing]:
        owner = self.source_rows[database.name.lower()].owner_name
        if owner and not _exists(self.destination, 'login_exists', login_name=owner):
            return [DependencyMissing(owner, 'Login')]
        return []

    def create_strategies(self, database: TargetObject) -> List[Strategy]:
        owner = self.source_rows[database.name.lower()].owner_name
        statement = f'ALTER AUTHORIZATION ON DATABASE::{quote_name(database.name)} TO {quote_name(owner)}'
        return [Strategy('ALTER AUTHORIZATION', lambda: self.destination.execute(statement))]

    def after_create(self, database: TargetObject) -> Optional[str]:
        return f'Owner set to {self.source_rows[database.name.lower()].owner_name}'


def copy_databases(source, destinations: Iterable, database: Iterable[str] = None,
        exclude_database: Iterable[str] = None, all_databases: bool = False, shared_path: str = None,
        force: bool = False, confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy user databases from source to destinations with backup and restore.

    Arguments
    ---------
    database, exclude_database, all_databases
        Database filters. One of them is required.
    shared_path
        Folder (UNC path) that both the source and the destination service
        accounts can access.
    force
        Drop and restore databases that exist on destination.

    Raises ConfigurationError if no database filter or no shared path is given.
    '''
    if not shared_path:
        raise ConfigurationError('Copying databases requires a shared backup path.')
    resolver = resolver or ConnectionResolver()
    with OperationManager('Copying databases', target=str(source)):
        source = resolver.resolve(source)
        databases = enumerate_databases(source, include=database, exclude=exclude_database, all_databases=all_databases)
        return run_copy(
            DatabaseCopy, source, destinations, databases, resolver=resolver, force=force, confirm=confirm,
            reporter=reporter, shared_path=shared_path, backups={}
        )


def sync_database_owners(source, destinations: Iterable, database: Iterable[str] = None,
        exclude_database: Iterable[str] = None, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Set the owner of each database on destinations to its owner on source."""
    resolver = resolver or ConnectionResolver()
    with OperationManager('Synchronizing database owners', target=str(source)):
        source = resolver.resolve(source)
        databases = enumerate_databases(source, include=database, exclude=exclude_database, require_filter=False)
        return run_copy(
            DatabaseOwnerSync, source, destinations, databases, resolver=resolver, confirm=confirm, reporter=reporter
        )


def verify_job_statements(job_name: str, filename: str, owner: str) -> List[str]:
    """Agent job with one step that verifies the backup file."""
    command = f'RESTORE VERIFYONLY FROM DISK = {quote_string(filename)} WITH CHECKSUM'
    return [
        exec_procedure('msdb.dbo.sp_add_job', job_name=job_name, owner_login_name=owner,
                       description='Verifies the last backup of a removed database'),
        exec_procedure('msdb.dbo.sp_add_jobstep', job_name=job_name, step_name='Verify backup', subsystem='TSQL',
                       database_name='master', command=command),
        exec_procedure('msdb.dbo.sp_add_jobserver', job_name=job_name, server_name='(local)')
    ]


def remove_database_safely(instance, database: Iterable[str] = None, all_databases: bool = False,
        backup_folder: str = None, destination=None, job_owner: str = None, no_dbcc_check: bool = False,
        confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None, poll_interval: int = 15,
        sleep: Callable[[float], None] = time.sleep, reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Check, back up, verify and drop databases.

    For each database: DBCC CHECKDB, backup with checksum to backup_folder,
    an agent job on destination that verifies the backup file, and if the job
    succeeds, the database is dropped. A failure in any step leaves the
    database in place. The agent job is kept for later restores.

    Arguments
    ---------
    instance
        Instance of the databases.
    backup_folder
        Folder for the backup files, reachable from destination too.
    destination
        Instance running the verification job, the instance itself by default.
    job_owner
        Owner of the verification job, sa by default.
    '''
    if not backup_folder:
        raise ConfigurationError('Removing databases safely requires a backup folder.')
    if not database and not all_databases:
        raise ConfigurationError('You must specify databases or all databases.')
    resolver = resolver or ConnectionResolver()
    confirm = confirm or always_confirm
    results = []
    with OperationManager('Removing databases safely', target=str(instance)):
        connection = resolver.resolve(instance)
        verifier = resolver.resolve(destination) if destination is not None else connection
        owner = job_owner or verifier.query(QUERIES['get_sa_name'])[0].sa_name
        for target in enumerate_databases(connection, include=database, all_databases=all_databases):
            status = _remove_one(connection, verifier, target.name, backup_folder, owner, no_dbcc_check, confirm,
                                 resolver, poll_interval, sleep)
            if reporter is not None:
                reporter.emit(status)
            results.append(status)
    return results


def _remove_one(connection, verifier, database: str, backup_folder: str, owner: str, no_dbcc_check: bool, confirm,
        resolver, poll_interval: int, sleep) -> OperationStatus:
    object_type = 'Database'
    if not confirm(f'Removing database {database} on {connection.name}'):
        return skipped(connection, verifier, database, object_type, 'Not confirmed')
    if not no_dbcc_check:
        try:
            connection.execute(f'DBCC CHECKDB({quote_name(database)}) WITH NO_INFOMSGS, ALL_ERRORMSGS')
        except Exception as err:
            return failed(connection, verifier, database, object_type, f'DBCC CHECKDB failed: {err}')
    filename = backup_file_name(backup_folder, database)
    try:
        connection.execute(backup_statement(database, filename, copy_only=False))
    except Exception as err:
        return failed(connection, verifier, database, object_type, f'Backup failed: {err}')

    job_name = VERIFY_JOB_NAME.format(database=database)
    try:
        if _exists(verifier, 'job_exists', job_name=job_name):
            verifier.execute(exec_procedure('msdb.dbo.sp_delete_job', job_name=job_name))
        verifier.execute_in_transaction(verify_job_statements(job_name, filename, owner))
    except Exception as err:
        return failed(connection, verifier, database, object_type, f'Could not create job {job_name}: {err}')
    job_status = start_agent_job_and_wait(verifier, job_name, resolver=resolver, poll_interval=poll_interval,
                                          sleep=sleep)
    if job_status.status != Status.SUCCESSFUL:
        return failed(connection, verifier, database, object_type, f'Backup verification failed: {job_status.notes}')

    try:
        for statement in drop_database_statements(database):
            connection.execute(statement)
    except Exception as err:
        return failed(connection, verifier, database, object_type, f'Drop failed: {err}')
    return successful(connection, verifier, database, object_type, f'Backed up to {filename}, verified and dropped')
