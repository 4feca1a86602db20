# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Module for creating database snapshots."""
import ntpath
from dataclasses import dataclass
from datetime import datetime
from logging import getLogger
from typing import Callable, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.database_utilities.tsql import quote_name, quote_string
from dbaflow.errors import ConfigurationError
from dbaflow.executor import CopyOperation, Strategy, run_operation
from dbaflow.operation_manager import OperationManager
from dbaflow.status import OperationStatus, StatusReporter
from dbaflow.targets import as_list, enumerate_databases, get_database_rows

logger = getLogger('dbaflow')

SNAPSHOT_INELIGIBLE = ('master', 'model', 'tempdb')
DEFAULT_SUFFIX = '_{timestamp}'

QUERIES = {
    'get_data_files': 'SELECT name, physical_name FROM {database}.sys.database_files WHERE type = 0 ORDER BY file_id',
    'database_exists': 'SELECT name FROM sys.databases WHERE name = :name'
}


@dataclass
class SnapshotTarget:
    name: str
    database: str


def snapshot_name(database: str, name: str = None, name_suffix: str = None, timestamp: datetime = None) -> str:
    '''Name of the snapshot of database.

    name_suffix may contain {0} for the database name, in which case it is the
    whole name template, and {timestamp} for the creation time (yyyyMMdd_HHmmss).'''
    if name:
        return name
    timestamp = (timestamp or datetime.now()).strftime('%Y%m%d_%H%M%S')
    suffix = name_suffix or DEFAULT_SUFFIX
    if '{0}' in suffix:
        return suffix.replace('{0}', database).replace('{timestamp}', timestamp)
    return database + suffix.replace('{timestamp}', timestamp)


def create_snapshot_statement(snapshot: str, database: str, files: List[tuple], path: str = None) -> str:
    """CREATE DATABASE ... AS SNAPSHOT OF with one sparse file per data file."""
    file_specs = []
    for logical_name, physical_name in files:
        directory = path or ntpath.dirname(physical_name)
        filename = ntpath.join(directory, f'{snapshot}_{logical_name}.ss')
        file_specs.append(f'(NAME = {quote_name(logical_name)}, FILENAME = {quote_string(filename)})')
    return (
        f'CREATE DATABASE {quote_name(snapshot)} ON ' + ', '.join(file_specs)
        + f' AS SNAPSHOT OF {quote_name(database)}'
    )


class SnapshotCreate(CopyOperation):
    object_type = 'Database Snapshot'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None,
            path: str = None):
        super().__init__(source, destination, force=force, confirm=confirm)
        self.path = path
        self._databases = None

    def skip_reason(self, target: SnapshotTarget) -> Optional[str]:
        if self._databases is None:
            self._databases = get_database_rows(self.destination)
        row = self._databases.get(target.database.lower())
        if row is not None and row.state_desc != 'ONLINE':
            return f'Database is {row.state_desc}'
        return None

    def exists(self, target: SnapshotTarget) -> bool:
        return len(self.destination.query(QUERIES['database_exists'], variables={'name': target.name})) > 0

    def drop(self, target: SnapshotTarget):
        self.destination.execute(f'DROP DATABASE {quote_name(target.name)}')

    def create_strategies(self, target: SnapshotTarget) -> List[Strategy]:
        files = [
            (row.name, row.physical_name)
            for row in self.destination.query(QUERIES['get_data_files'].format(database=quote_name(target.database)))
        ]
        statement = create_snapshot_statement(target.name, target.database, files, self.path)
        return [Strategy('CREATE DATABASE AS SNAPSHOT', lambda: self.destination.execute(statement))]

    def after_create(self, target: SnapshotTarget) -> Optional[str]:
        return f'Snapshot of {target.database}'


def new_db_snapshot(instances: Iterable, database: Iterable[str] = None, exclude_database: Iterable[str] = None,
        all_databases: bool = False, name: str = None, name_suffix: str = None, path: str = None,
        force: bool = False, confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Create a snapshot of each selected database.

    Arguments
    ---------
    instances
        Instances to work on.
    database, exclude_database, all_databases
        Database filters. One of them is required.
    name
        Snapshot name. Allowed only when one database is selected.
    name_suffix
        Suffix or name template of the snapshots, see snapshot_name.
    path
        Directory of the snapshot files. The directory of each data file by default.
    force
        Drop and recreate snapshots that already exist.

    System databases master, model and tempdb and existing snapshots are
    never snapshotted.
    '''
    if name and (all_databases or exclude_database or len(as_list(database)) != 1):
        raise ConfigurationError('Snapshot name can be given only when exactly one database is selected.')
    if not database and not exclude_database and not all_databases:
        raise ConfigurationError('You must specify databases, databases to exclude or all databases.')
    resolver = resolver or ConnectionResolver()
    timestamp = datetime.now()
    results = []
    with OperationManager('Creating database snapshots'):
        for connection in connect_each(resolver, instances, reporter=reporter):
            databases = enumerate_databases(
                connection, include=database, exclude=exclude_database, all_databases=all_databases,
                exclude_system=SNAPSHOT_INELIGIBLE
            )
            targets = [
                SnapshotTarget(snapshot_name(item.name, name, name_suffix, timestamp), item.name)
                for item in databases
            ]
            operation = SnapshotCreate(connection, connection, force=force, confirm=confirm, path=path)
            results.extend(run_operation(operation, targets, reporter))
    return results
