# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Migration of a whole instance to one or more destinations.

The categories are copied in a fixed order, so that objects are created
before the objects that depend on them (e.g. logins before database owners,
databases before agent jobs running in them). Each category returns its own
CategoryResult. A failure in one category is recorded and the next category
is started.'''
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Dict, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.errors import ConfigurationError
from dbaflow.operation_manager import OperationManager
from dbaflow.operations.tsql import agent, databases, dbmail, logins, server_objects
from dbaflow.status import OperationStatus, StatusReporter, not_supported

logger = getLogger('dbaflow')

CATEGORIES = (
    'SpConfigure',
    'Certificates',
    'CustomErrors',
    'Credentials',
    'DatabaseMail',
    'CentralManagementServer',
    'BackupDevices',
    'SystemTriggers',
    'Databases',
    'Logins',
    'DatabaseOwner',
    'LinkedServers',
    'DataCollector',
    'Audits',
    'ServerAuditSpecifications',
    'Endpoints',
    'PolicyManagement',
    'ResourceGovernor',
    'SysDbUserObjects',
    'ExtendedEvents',
    'AgentServer',
    'StartupProcedures'
)


@dataclass
class CategoryResult:
    """Result of one migration category."""
    category: str
    statuses: List[OperationStatus] = field(default_factory=list)
    error: Optional[Exception] = None
    skipped: bool = False
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class MigrationResult:
    source: str
    destinations: List[str]
    categories: List[CategoryResult] = field(default_factory=list)

    @property
    def statuses(self) -> List[OperationStatus]:
        return [status for category in self.categories for status in category.statuses]

    @property
    def errors(self) -> Dict[str, Exception]:
        return {category.category: category.error for category in self.categories if category.error is not None}

    def category(self, name: str) -> CategoryResult:
        for category in self.categories:
            if category.category.lower() == name.lower():
                return category
        raise KeyError(name)


@dataclass
class MigrationContext:
    """Arguments shared by the category handlers."""
    source: object
    destinations: List[object]
    resolver: ConnectionResolver
    reporter: Optional[StatusReporter] = None
    force: bool = False
    confirm: Optional[Callable[[str], bool]] = None
    options: dict = field(default_factory=dict)

    def common(self) -> dict:
        return {'resolver': self.resolver, 'reporter': self.reporter, 'confirm': self.confirm}


def _sp_configure(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_sp_configure(context.source, context.destinations, **context.common())


def _custom_errors(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_custom_errors(context.source, context.destinations, force=context.force,
                                             **context.common())


def _database_mail(context: MigrationContext) -> List[OperationStatus]:
    results = dbmail.copy_db_mail(context.source, context.destinations, force=context.force, **context.common())
    return [status for category in dbmail.CATEGORIES for status in results.get(category, [])]


def _backup_devices(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_backup_devices(context.source, context.destinations, force=context.force,
                                              **context.common())


def _system_triggers(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_server_triggers(context.source, context.destinations, force=context.force,
                                               **context.common())


def _databases(context: MigrationContext) -> List[OperationStatus]:
    database = context.options.get('database')
    return databases.copy_databases(
        context.source, context.destinations,
        database=database,
        exclude_database=context.options.get('exclude_database'),
        all_databases=not database,
        shared_path=context.options.get('shared_path'),
        force=context.force,
        **context.common()
    )


def _logins(context: MigrationContext) -> List[OperationStatus]:
    return logins.copy_logins(context.source, context.destinations,
                              exclude_login=context.options.get('exclude_login'), force=context.force,
                              **context.common())


def _database_owner(context: MigrationContext) -> List[OperationStatus]:
    return databases.sync_database_owners(context.source, context.destinations,
                                          database=context.options.get('database'),
                                          exclude_database=context.options.get('exclude_database'),
                                          **context.common())


def _sysdb_user_objects(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_sysdb_user_objects(context.source, context.destinations, force=context.force,
                                                  **context.common())


def _agent_server(context: MigrationContext) -> List[OperationStatus]:
    # operators first, jobs notify them
    statuses = agent.copy_agent_operators(context.source, context.destinations, force=context.force,
                                          **context.common())
    statuses += agent.copy_agent_jobs(
        context.source, context.destinations, force=context.force,
        disable_on_destination=context.options.get('disable_jobs_on_destination', False),
        disable_on_source=context.options.get('disable_jobs_on_source', False),
        **context.common()
    )
    return statuses


def _startup_procedures(context: MigrationContext) -> List[OperationStatus]:
    return server_objects.copy_startup_procedures(context.source, context.destinations, force=context.force,
                                                  **context.common())


DEFAULT_HANDLERS = {
    'SpConfigure': _sp_configure,
    'CustomErrors': _custom_errors,
    'DatabaseMail': _database_mail,
    'BackupDevices': _backup_devices,
    'SystemTriggers': _system_triggers,
    'Databases': _databases,
    'Logins': _logins,
    'DatabaseOwner': _database_owner,
    'SysDbUserObjects': _sysdb_user_objects,
    'AgentServer': _agent_server,
    'StartupProcedures': _startup_procedures
}


def validate_exclude(exclude: Iterable[str]) -> set:
    """Return the excluded categories. Raises ConfigurationError for unknown names."""
    known = {category.lower(): category for category in CATEGORIES}
    unknown = [name for name in exclude if name.lower() not in known]
    if unknown:
        raise ConfigurationError(
            f"Unknown migration categories: {', '.join(unknown)}. Valid categories are {', '.join(CATEGORIES)}."
        )
    return {known[name.lower()] for name in exclude}


def start_migration(source, destinations: Iterable, exclude: Iterable[str] = (), options: dict = None,
        force: bool = False, confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        handlers: Dict[str, Callable[[MigrationContext], List[OperationStatus]]] = None,
        reporter: StatusReporter = None) -> MigrationResult:
    '''Migrate source to destinations category by category.

    Arguments
    ---------
    source
        Source instance. A connection failure stops the migration.
    destinations
        Destination instances.
    exclude
        Categories not to migrate.
    options
        Options of the categories: database, exclude_database, shared_path,
        exclude_login, disable_jobs_on_source and disable_jobs_on_destination.
    handlers
        Implementations of the categories by name. Categories without an
        implementation report NotSupported for each destination.

    Returns
    -------
    MigrationResult
        One CategoryResult per category, in migration order.
    '''
    excluded = validate_exclude(exclude)
    handlers = dict(DEFAULT_HANDLERS if handlers is None else handlers)
    resolver = resolver or ConnectionResolver()
    reporter = reporter or StatusReporter()
    destinations = list(destinations)
    with OperationManager('Starting migration', target=str(source)):
        source = resolver.resolve(source)
        context = MigrationContext(source, destinations, resolver, reporter, force, confirm, dict(options or {}))
        result = MigrationResult(source.name, [str(destination) for destination in destinations])
        for category in CATEGORIES:
            result.categories.append(_run_category(category, context, handlers, excluded))
    return result


def _run_category(category: str, context: MigrationContext, handlers: dict, excluded: set) -> CategoryResult:
    if category in excluded:
        return CategoryResult(category, skipped=True, reason='Excluded')
    if category == 'DatabaseOwner' and ({'Databases', 'Logins'} & excluded):
        return CategoryResult(category, skipped=True, reason='Databases or Logins excluded')
    handler = handlers.get(category)
    if handler is None:
        statuses = [
            not_supported(context.source, destination, category, category, 'Migration of this category is not supported')
            for destination in context.destinations
        ]
        if context.reporter is not None:
            context.reporter.extend(statuses)
        return CategoryResult(category, statuses)
    logger.info(f'Migrating {category}')
    try:
        return CategoryResult(category, list(handler(context)))
    except Exception as err:
        logger.error(f'Migration of {category} failed: {err}')
        return CategoryResult(category, error=err)
