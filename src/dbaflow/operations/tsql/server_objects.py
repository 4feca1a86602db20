# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for copying server level objects.

Covers configuration values (sp_configure), custom error messages, backup
devices, server triggers, startup procedures and user objects of the system
databases master, model and msdb.

Global variable QUERIES holds the catalog queries used by the module.'''
from dataclasses import dataclass, field
from operator import attrgetter
from logging import getLogger
from typing import Callable, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.database_utilities.tsql import exec_procedure, quote_name, quote_string
from dbaflow.executor import CopyOperation, Strategy, run_copy
from dbaflow.operation_manager import OperationManager
from dbaflow.status import OperationStatus, StatusReporter, not_supported
from dbaflow.targets import select_names

logger = getLogger('dbaflow')

US_ENGLISH = 1033
SYSTEM_DATABASES = ('master', 'model', 'msdb')
SHOW_ADVANCED_OPTIONS = 'show advanced options'

QUERIES = {
    'get_configurations': """
        SELECT name, CAST(value AS BIGINT) AS value, CAST(value_in_use AS BIGINT) AS value_in_use,
            is_dynamic, is_advanced
        FROM sys.configurations
        ORDER BY name
    """,
    'get_configuration': 'SELECT CAST(value AS BIGINT) AS value FROM sys.configurations WHERE name = :name',
    'get_custom_errors': """
        SELECT m.message_id, m.language_id, l.alias AS language, m.severity, m.is_event_logged, m.text
        FROM sys.messages m
        JOIN sys.syslanguages l ON l.msglangid = m.language_id
        WHERE m.message_id >= 50000
        ORDER BY m.message_id, CASE WHEN m.language_id = 1033 THEN 0 ELSE 1 END, m.language_id
    """,
    'custom_error_exists': 'SELECT message_id FROM sys.messages WHERE message_id = :message_id AND language_id = 1033',
    'get_backup_devices': 'SELECT name, type_desc, physical_name FROM sys.backup_devices ORDER BY name',
    'backup_device_exists': 'SELECT name FROM sys.backup_devices WHERE name = :name',
    'get_server_triggers': """
        SELECT t.name, t.is_disabled, m.definition
        FROM sys.server_triggers t
        JOIN sys.server_sql_modules m ON m.object_id = t.object_id
        ORDER BY t.name
    """,
    'server_trigger_exists': 'SELECT name FROM sys.server_triggers WHERE name = :name',
    'get_startup_procedures': """
        SELECT SCHEMA_NAME(p.schema_id) AS schema_name, p.name, OBJECT_DEFINITION(p.object_id) AS definition
        FROM master.sys.procedures p
        WHERE p.is_auto_executed = 1
        ORDER BY schema_name, p.name
    """,
    'procedure_exists': """
        SELECT p.name FROM master.sys.procedures p
        WHERE SCHEMA_NAME(p.schema_id) = :schema_name AND p.name = :name
    """,
    'get_sysdb_user_objects': """
        SELECT s.name AS schema_name, o.name, o.type, o.type_desc, m.definition
        FROM {database}.sys.objects o
        JOIN {database}.sys.schemas s ON s.schema_id = o.schema_id
        LEFT JOIN {database}.sys.sql_modules m ON m.object_id = o.object_id
        WHERE o.is_ms_shipped = 0 AND o.parent_object_id = 0
        ORDER BY o.type, schema_name, o.name
    """,
    'sysdb_object_exists': """
        SELECT o.name FROM {database}.sys.objects o
        JOIN {database}.sys.schemas s ON s.schema_id = o.schema_id
        WHERE s.name = :schema_name AND o.name = :name
    """
}

# object types of sys.objects with their DROP keyword
MODULE_TYPES = {
    'P': 'PROCEDURE',
    'V': 'VIEW',
    'FN': 'FUNCTION',
    'IF': 'FUNCTION',
    'TF': 'FUNCTION'
}


def configure_statement(name: str, value: int) -> str:
    return f'EXEC sp_configure {quote_string(name)}, {int(value)}; RECONFIGURE WITH OVERRIDE;'


def set_configuration(connection, name: str, value: int, advanced: bool = False):
    '''Change one sp_configure option.

    For an advanced option, show advanced options is switched on for the
    change and set back to its previous value afterwards.'''
    shown = 1
    if advanced:
        rows = connection.query(QUERIES['get_configuration'], variables={'name': SHOW_ADVANCED_OPTIONS})
        shown = rows[0].value if rows else 0
        if shown != 1:
            connection.execute(configure_statement(SHOW_ADVANCED_OPTIONS, 1))
    try:
        connection.execute(configure_statement(name, value))
        logger.debug(f'{name} set to {value} on {connection.name}')
    finally:
        if shown != 1:
            connection.execute(configure_statement(SHOW_ADVANCED_OPTIONS, shown))


@dataclass
class ConfigurationValue:
    name: str
    value: int
    is_dynamic: bool = True
    is_advanced: bool = False


class SpConfigureCopy(CopyOperation):
    '''Configuration values are always applied, there is nothing to drop.
    Values that already match are skipped.'''
    object_type = 'Configuration Value'

    def skip_reason(self, item: ConfigurationValue) -> Optional[str]:
        rows = self.destination.query(QUERIES['get_configuration'], variables={'name': item.name})
        if not rows:
            return 'Configuration option does not exist on destination'
        if rows[0].value == item.value:
            return 'Value already set'
        return None

    def exists(self, item: ConfigurationValue) -> bool:
        return False

    def create_strategies(self, item: ConfigurationValue) -> List[Strategy]:
        return [Strategy(
            'sp_configure', lambda: set_configuration(self.destination, item.name, item.value, advanced=item.is_advanced)
        )]

    def after_create(self, item: ConfigurationValue) -> Optional[str]:
        if not item.is_dynamic:
            return 'Configuration option has been updated, but requires a restart of SQL Server to take effect'
        return None


@dataclass
class CustomError:
    message_id: int
    messages: List[tuple] = field(default_factory=list)

    @property
    def name(self) -> str:
        return str(self.message_id)


class CustomErrorCopy(CopyOperation):
    object_type = 'Custom Error'

    def skip_reason(self, item: CustomError) -> Optional[str]:
        if not item.messages or item.messages[0][0] != US_ENGLISH:
            return 'Message has no us_english version'
        return None

    def exists(self, item: CustomError) -> bool:
        return len(self.destination.query(
            QUERIES['custom_error_exists'], variables={'message_id': item.message_id}
        )) > 0

    def drop(self, item: CustomError):
        self.destination.execute(exec_procedure('sp_dropmessage', msgnum=item.message_id, lang='all'))

    def script(self, item: CustomError) -> List[str]:
        # us_english first, other languages require it
        return [
            exec_procedure(
                'sp_addmessage', msgnum=item.message_id, severity=severity, msgtext=text, lang=language,
                with_log='TRUE' if is_event_logged else 'FALSE'
            )
            for _, language, severity, is_event_logged, text in item.messages
        ]

    def create_strategies(self, item: CustomError) -> List[Strategy]:
        return [Strategy('sp_addmessage', lambda: self.destination.execute_in_transaction(self.script(item)))]


@dataclass
class BackupDevice:
    name: str
    type_desc: str
    physical_name: str


class BackupDeviceCopy(CopyOperation):
    object_type = 'Backup Device'

    def exists(self, item: BackupDevice) -> bool:
        return len(self.destination.query(QUERIES['backup_device_exists'], variables={'name': item.name})) > 0

    def drop(self, item: BackupDevice):
        self.destination.execute(exec_procedure('sp_dropdevice', logicalname=item.name))

    def create_strategies(self, item: BackupDevice) -> List[Strategy]:
        statement = exec_procedure(
            'sp_addumpdevice', devtype=item.type_desc.lower(), logicalname=item.name, physicalname=item.physical_name
        )
        return [Strategy('sp_addumpdevice', lambda: self.destination.execute(statement))]


@dataclass
class ServerTrigger:
    name: str
    definition: str
    is_disabled: bool = False


class ServerTriggerCopy(CopyOperation):
    object_type = 'Server Trigger'

    def exists(self, item: ServerTrigger) -> bool:
        return len(self.destination.query(QUERIES['server_trigger_exists'], variables={'name': item.name})) > 0

    def drop(self, item: ServerTrigger):
        self.destination.execute(f'DROP TRIGGER {quote_name(item.name)} ON ALL SERVER')

    def create_strategies(self, item: ServerTrigger) -> List[Strategy]:
        return [Strategy('definition', lambda: self.destination.execute_batches(item.definition))]

    def after_create(self, item: ServerTrigger) -> Optional[str]:
        if item.is_disabled:
            self.destination.execute(f'DISABLE TRIGGER {quote_name(item.name)} ON ALL SERVER')
            return 'Created disabled'
        return None


@dataclass
class ModuleObject:
    schema_name: str
    object_name: str
    definition: str
    database: str = 'master'
    type: str = 'P'
    type_desc: str = 'SQL_STORED_PROCEDURE'

    @property
    def name(self) -> str:
        return f'{quote_name(self.schema_name)}.{quote_name(self.object_name)}'

    @property
    def qualified_name(self) -> str:
        return f'{self.database}.{self.name}'


class StartupProcedureCopy(CopyOperation):
    object_type = 'Startup Procedure'

    def exists(self, item: ModuleObject) -> bool:
        return len(self.destination.query(
            QUERIES['procedure_exists'], variables={'schema_name': item.schema_name, 'name': item.object_name}
        )) > 0

    def drop(self, item: ModuleObject):
        self.destination.execute_batches(f'USE master\nGO\nDROP PROCEDURE {item.name}')

    def create_strategies(self, item: ModuleObject) -> List[Strategy]:
        return [Strategy('definition', lambda: self.destination.execute_batches(f'USE master\nGO\n{item.definition}'))]

    def after_create(self, item: ModuleObject) -> Optional[str]:
        self.destination.execute(exec_procedure(
            'master.dbo.sp_procoption', ProcName=item.name, OptionName='startup', OptionValue='on'
        ))
        return None


class SysDbUserObjectCopy(CopyOperation):
    object_type = 'User Object in System Database'

    def item_name(self, item: ModuleObject) -> str:
        return item.qualified_name

    def execute(self, item: ModuleObject) -> OperationStatus:
        if item.type not in MODULE_TYPES or not item.definition:
            return self.status(not_supported, item, f'Objects of type {item.type_desc} are not copied')
        return super().execute(item)

    def exists(self, item: ModuleObject) -> bool:
        return len(self.destination.query(
            QUERIES['sysdb_object_exists'].format(database=quote_name(item.database)),
            variables={'schema_name': item.schema_name, 'name': item.object_name}
        )) > 0

    def drop(self, item: ModuleObject):
        self.destination.execute_batches(
            f'USE {quote_name(item.database)}\nGO\nDROP {MODULE_TYPES[item.type]} {item.name}'
        )

    def create_strategies(self, item: ModuleObject) -> List[Strategy]:
        script = f'USE {quote_name(item.database)}\nGO\n{item.definition}'
        return [Strategy('definition', lambda: self.destination.execute_batches(script))]


def read_configuration_values(connection) -> List[ConfigurationValue]:
    return [
        ConfigurationValue(row.name, row.value, bool(row.is_dynamic), bool(row.is_advanced))
        for row in connection.query(QUERIES['get_configurations'])
    ]


def read_custom_errors(connection) -> List[CustomError]:
    errors = {}
    for row in connection.query(QUERIES['get_custom_errors']):
        error = errors.setdefault(row.message_id, CustomError(row.message_id))
        error.messages.append((row.language_id, row.language, row.severity, bool(row.is_event_logged), row.text))
    return list(errors.values())


def read_sysdb_user_objects(connection, databases: Iterable[str] = SYSTEM_DATABASES) -> List[ModuleObject]:
    objects = []
    for database in databases:
        for row in connection.query(QUERIES['get_sysdb_user_objects'].format(database=quote_name(database))):
            objects.append(ModuleObject(row.schema_name, row.name, row.definition, database, row.type.strip(),
                                        row.type_desc))
    return objects


def _copy(message: str, operation_class, read, source, destinations, include, exclude, object_type, force, confirm,
        resolver, reporter, key=attrgetter('name')) -> List[OperationStatus]:
    resolver = resolver or ConnectionResolver()
    with OperationManager(message, target=str(source)):
        source = resolver.resolve(source)
        items = {key(item): item for item in read(source)}
        names = select_names(items.keys(), include=include, exclude=exclude, object_type=object_type)
        return run_copy(
            operation_class, source, destinations, [items[name] for name in names],
            resolver=resolver, force=force, confirm=confirm, reporter=reporter
        )


def copy_sp_configure(source, destinations: Iterable, config_name: Iterable[str] = None,
        exclude_config_name: Iterable[str] = None, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Copy configuration values that differ from source to destinations."""
    return _copy('Copying configuration values', SpConfigureCopy, read_configuration_values, source, destinations,
                 config_name, exclude_config_name, 'configuration value', False, confirm, resolver, reporter)


def copy_custom_errors(source, destinations: Iterable, custom_error: Iterable[str] = None,
        exclude_custom_error: Iterable[str] = None, force: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Copy custom error messages (id 50000 and up) in all their languages."""
    return _copy('Copying custom errors', CustomErrorCopy, read_custom_errors, source, destinations,
                 [str(item) for item in custom_error or []], [str(item) for item in exclude_custom_error or []],
                 'custom error', force, confirm, resolver, reporter)


def copy_backup_devices(source, destinations: Iterable, backup_device: Iterable[str] = None,
        exclude_backup_device: Iterable[str] = None, force: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy backup devices. The device files are not copied, the path of
    the device must be valid on destination.'''
    read = lambda connection: [
        BackupDevice(row.name, row.type_desc, row.physical_name)
        for row in connection.query(QUERIES['get_backup_devices'])
    ]
    return _copy('Copying backup devices', BackupDeviceCopy, read, source, destinations,
                 backup_device, exclude_backup_device, 'backup device', force, confirm, resolver, reporter)


def copy_server_triggers(source, destinations: Iterable, server_trigger: Iterable[str] = None,
        exclude_server_trigger: Iterable[str] = None, force: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    read = lambda connection: [
        ServerTrigger(row.name, row.definition, bool(row.is_disabled))
        for row in connection.query(QUERIES['get_server_triggers'])
    ]
    return _copy('Copying server triggers', ServerTriggerCopy, read, source, destinations,
                 server_trigger, exclude_server_trigger, 'server trigger', force, confirm, resolver, reporter)


def copy_startup_procedures(source, destinations: Iterable, procedure: Iterable[str] = None,
        exclude_procedure: Iterable[str] = None, force: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy procedures of master that are run at startup.

    Procedure filters use the [schema].[name] form.'''
    read = lambda connection: [
        ModuleObject(row.schema_name, row.name, row.definition)
        for row in connection.query(QUERIES['get_startup_procedures'])
    ]
    return _copy('Copying startup procedures', StartupProcedureCopy, read, source, destinations,
                 procedure, exclude_procedure, 'startup procedure', force, confirm, resolver, reporter)


def copy_sysdb_user_objects(source, destinations: Iterable, force: bool = False,
        confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy procedures, views and functions created by users in master, model and msdb.

    Other user objects of the system databases, such as tables and triggers,
    are reported as NotSupported.'''
    return _copy('Copying user objects of system databases', SysDbUserObjectCopy, read_sysdb_user_objects,
                 source, destinations, None, None, 'user object', force, confirm, resolver, reporter,
                 key=attrgetter('qualified_name'))
