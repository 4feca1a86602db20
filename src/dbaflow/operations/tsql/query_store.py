# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for copying Query Store options from one database to others.

The option set depends on the SQL Server version. The set is chosen once per
destination by its major version: 13 (2016), 14 (2017) or 15 and later.
Options the source version does not have are left as they are on destination.'''
from dataclasses import dataclass, fields
from logging import getLogger
from typing import Callable, Iterable, List, Optional, Union

from dbaflow.database_utilities.connection import ConnectionResolver, connect_each
from dbaflow.database_utilities.tsql import quote_name
from dbaflow.errors import ConfigurationError
from dbaflow.executor import CopyOperation, Strategy, run_operation
from dbaflow.operation_manager import OperationManager
from dbaflow.status import OperationStatus, StatusReporter, not_supported
from dbaflow.targets import enumerate_databases, get_database_rows

logger = getLogger('dbaflow')

OBJECT_TYPE = 'QueryStore Configuration'
MINIMUM_VERSION = 13

QUERY_COLUMNS = {
    13: """desired_state_desc, flush_interval_seconds, interval_length_minutes, max_storage_size_mb,
        query_capture_mode_desc, size_based_cleanup_mode_desc, stale_query_threshold_days,
        max_plans_per_query""",
    14: 'wait_stats_capture_mode_desc',
    15: """capture_policy_execution_count, capture_policy_total_compile_cpu_time_ms,
        capture_policy_total_execution_cpu_time_ms, capture_policy_stale_threshold_hours"""
}


@dataclass(frozen=True)
class QueryStoreOptionsV13:
    desired_state: Optional[str] = None
    flush_interval_seconds: Optional[int] = None
    interval_length_minutes: Optional[int] = None
    max_storage_size_mb: Optional[int] = None
    query_capture_mode: Optional[str] = None
    size_based_cleanup_mode: Optional[str] = None
    stale_query_threshold_days: Optional[int] = None
    max_plans_per_query: Optional[int] = None

    def settings(self) -> List[str]:
        settings = []
        if self.desired_state:
            settings.append(f'OPERATION_MODE = {self.desired_state}')
        for option, value in (
                ('DATA_FLUSH_INTERVAL_SECONDS', self.flush_interval_seconds),
                ('INTERVAL_LENGTH_MINUTES', self.interval_length_minutes),
                ('MAX_STORAGE_SIZE_MB', self.max_storage_size_mb),
                ('QUERY_CAPTURE_MODE', self.query_capture_mode),
                ('SIZE_BASED_CLEANUP_MODE', self.size_based_cleanup_mode)):
            if value is not None:
                settings.append(f'{option} = {value}')
        if self.stale_query_threshold_days is not None:
            settings.append(f'CLEANUP_POLICY = (STALE_QUERY_THRESHOLD_DAYS = {self.stale_query_threshold_days})')
        if self.max_plans_per_query is not None:
            settings.append(f'MAX_PLANS_PER_QUERY = {self.max_plans_per_query}')
        return settings

    def alter_statement(self, database: str) -> str:
        if (self.desired_state or '').upper() == 'OFF':
            return f'ALTER DATABASE {quote_name(database)} SET QUERY_STORE = OFF'
        statement = f'ALTER DATABASE {quote_name(database)} SET QUERY_STORE = ON'
        settings = self.settings()
        if settings:
            statement += ' (' + ', '.join(settings) + ')'
        return statement


@dataclass(frozen=True)
class QueryStoreOptionsV14(QueryStoreOptionsV13):
    wait_stats_capture_mode: Optional[str] = None

    def settings(self) -> List[str]:
        settings = super().settings()
        if self.wait_stats_capture_mode is not None:
            settings.append(f'WAIT_STATS_CAPTURE_MODE = {self.wait_stats_capture_mode}')
        return settings


@dataclass(frozen=True)
class QueryStoreOptionsV15(QueryStoreOptionsV14):
    capture_policy_execution_count: Optional[int] = None
    capture_policy_total_compile_cpu_time_ms: Optional[int] = None
    capture_policy_total_execution_cpu_time_ms: Optional[int] = None
    capture_policy_stale_threshold_hours: Optional[int] = None

    def settings(self) -> List[str]:
        settings = super().settings()
        # capture policy is valid only with the custom capture mode
        if (self.query_capture_mode or '').upper() != 'CUSTOM':
            return settings
        policy = []
        for option, value in (
                ('EXECUTION_COUNT', self.capture_policy_execution_count),
                ('TOTAL_COMPILE_CPU_TIME_MS', self.capture_policy_total_compile_cpu_time_ms),
                ('TOTAL_EXECUTION_CPU_TIME_MS', self.capture_policy_total_execution_cpu_time_ms)):
            if value is not None:
                policy.append(f'{option} = {value}')
        if self.capture_policy_stale_threshold_hours is not None:
            policy.append(f'STALE_CAPTURE_POLICY_THRESHOLD = {self.capture_policy_stale_threshold_hours} HOURS')
        if policy:
            settings.append('QUERY_CAPTURE_POLICY = (' + ', '.join(policy) + ')')
        return settings


QueryStoreOptions = Union[QueryStoreOptionsV13, QueryStoreOptionsV14, QueryStoreOptionsV15]


def options_class(version_major: int):
    """Option set for a server version. None if Query Store is not available."""
    if version_major < MINIMUM_VERSION:
        return None
    if version_major == 13:
        return QueryStoreOptionsV13
    if version_major == 14:
        return QueryStoreOptionsV14
    return QueryStoreOptionsV15


def read_options_query(database: str, version_major: int) -> str:
    columns = ', '.join(
        ' '.join(columns.split()) for version, columns in QUERY_COLUMNS.items() if version <= version_major
    )
    return f'SELECT {columns} FROM {quote_name(database)}.sys.database_query_store_options'


def read_options(connection, database: str) -> dict:
    """Return the Query Store options of database as a dict of option values."""
    rows = connection.query(read_options_query(database, connection.version_major))
    if not rows:
        raise ConfigurationError(f'Query Store options of database {database} could not be read on {connection.name}')
    row = rows[0]
    values = {}
    for column in ', '.join(QUERY_COLUMNS.values()).replace('\n', ' ').split(','):
        column = column.strip()
        if not hasattr(row, column):
            continue
        value = getattr(row, column)
        values[column[:-len('_desc')] if column.endswith('_desc') else column] = value
    return values


def build_options(values: dict, version_major: int) -> Optional[QueryStoreOptions]:
    """Options of the class matching version_major, filled from values."""
    cls = options_class(version_major)
    if cls is None:
        return None
    names = {item.name for item in fields(cls)}
    return cls(**{name: value for name, value in values.items() if name in names})


class QueryStoreCopy(CopyOperation):
    object_type = OBJECT_TYPE

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None,
            values: dict = None):
        super().__init__(source, destination, force=force, confirm=confirm)
        self.options = build_options(values or {}, destination.version_major)
        self._databases = None

    def skip_reason(self, database) -> Optional[str]:
        if self._databases is None:
            self._databases = get_database_rows(self.destination)
        row = self._databases.get(database.name.lower())
        if row is not None and row.state_desc != 'ONLINE':
            return f'Database is {row.state_desc}'
        if row is not None and row.is_read_only:
            return 'Database is read only'
        return None

    def exists(self, database) -> bool:
        return False

    def create_strategies(self, database) -> List[Strategy]:
        statement = self.options.alter_statement(database.name)
        return [Strategy('ALTER DATABASE', lambda: self.destination.execute(statement))]


def copy_query_store_options(source, source_database: str, destinations: Iterable,
        destination_database: Iterable[str] = None, exclude: Iterable[str] = None, all_databases: bool = False,
        confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy Query Store options of source_database to databases on destinations.

    Arguments
    ---------
    source
        Source instance.
    source_database
        Database whose options are copied.
    destinations
        Destination instances. The source instance may be one of them,
        source_database itself is never a target.
    destination_database
        Databases to configure.
    exclude
        Databases not to configure.
    all_databases
        Configure all user databases.

    Raises ConfigurationError if none of destination_database, exclude and
    all_databases is given.
    '''
    if not destination_database and not exclude and not all_databases:
        raise ConfigurationError(
            'You must specify destination databases, databases to exclude or all databases.'
        )
    resolver = resolver or ConnectionResolver()
    results = []
    with OperationManager('Copying Query Store options', target=f'{source}.{source_database}'):
        source = resolver.resolve(source, minimum_version=MINIMUM_VERSION)
        values = read_options(source, source_database)
        for destination in connect_each(resolver, destinations, reporter=reporter):
            if destination.version_major < MINIMUM_VERSION:
                status = not_supported(source, destination, source_database, OBJECT_TYPE,
                                       'Query Store requires SQL Server 2016 or higher')
                if reporter is not None:
                    reporter.emit(status)
                results.append(status)
                continue
            ineligible = [source_database] if destination.name.lower() == source.name.lower() else []
            databases = enumerate_databases(
                destination, include=destination_database, exclude=exclude, all_databases=all_databases,
                ineligible=ineligible
            )
            operation = QueryStoreCopy(source, destination, confirm=confirm, values=values)
            results.extend(run_operation(operation, databases, reporter))
    return results
