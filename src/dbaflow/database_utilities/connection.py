# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Live connections to SQL Server instances.

ConnectionResolver turns user given instance names into SqlInstance objects.
One resolver is used per command invocation and it caches the connections,
so the source is connected once and every destination once.
"""
from logging import getLogger
from typing import Callable, Dict, Iterable, Iterator, List, Union

from dbaflow.credential_handler import Credential
from dbaflow.database_utilities.conn_info import create_conn_info
from dbaflow.database_utilities.sqla_utilities import (
    create_sqlalchemy_engine,
    create_sqlalchemy_url,
    execute_batches,
    execute_in_transaction,
    execute_query,
    test_connection
)
from dbaflow.errors import InstanceConnectionError
from dbaflow.instance import DEFAULT_INSTANCE, InstanceRef, parse_instance
from sqlalchemy.engine import Engine

logger = getLogger('dbaflow')

SERVER_INFO_QUERY = """
SELECT
    CAST(SERVERPROPERTY('MachineName') AS NVARCHAR(128)) AS machine_name,
    CAST(SERVERPROPERTY('ServerName') AS NVARCHAR(256)) AS server_name,
    CAST(SERVERPROPERTY('InstanceName') AS NVARCHAR(128)) AS instance_name,
    CAST(SERVERPROPERTY('ComputerNamePhysicalNetBIOS') AS NVARCHAR(128)) AS physical_name,
    CAST(SERVERPROPERTY('ProductVersion') AS NVARCHAR(128)) AS product_version,
    CAST(SERVERPROPERTY('Edition') AS NVARCHAR(128)) AS edition,
    CAST(SERVERPROPERTY('IsClustered') AS INT) AS is_clustered,
    CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS NVARCHAR(512)) AS default_data_path,
    CAST(SERVERPROPERTY('InstanceDefaultLogPath') AS NVARCHAR(512)) AS default_log_path,
    SUSER_SNAME() AS login_name
"""


class SqlInstance:
    """Live connection to one instance.

    Arguments
    ---------
    instance_ref
        The instance as given by the user.
    engine
        SQL Alchemy engine connected to the master database of the instance.
    server_info
        Server properties loaded with SERVER_INFO_QUERY.
    """

    def __init__(self, instance_ref: InstanceRef, engine: Engine, server_info: dict):
        self.instance_ref = instance_ref
        self.engine = engine
        self.server_info = server_info

    @property
    def name(self) -> str:
        return self.instance_ref.full_name

    @property
    def computer_name(self) -> str:
        return self.server_info.get('machine_name') or self.instance_ref.computer_name

    @property
    def instance_name(self) -> str:
        return self.server_info.get('instance_name') or DEFAULT_INSTANCE

    @property
    def login_name(self) -> str:
        return self.server_info.get('login_name')

    @property
    def version_major(self) -> int:
        product_version = self.server_info.get('product_version') or '0'
        return int(product_version.split('.')[0])

    @property
    def is_clustered(self) -> bool:
        return bool(self.server_info.get('is_clustered'))

    def query(self, sql: str, variables: dict = None) -> List[Iterable]:
        """Run a query and return the rows."""
        return execute_query(self.engine, sql, variables=variables)

    def execute(self, sql: str, variables: dict = None):
        """Run a statement in autocommit mode."""
        execute_query(self.engine, sql, variables=variables)

    def execute_batches(self, script: str):
        """Run a script that may contain GO batch separators."""
        execute_batches(self.engine, script)

    def execute_in_transaction(self, statements: List[Union[str, tuple]]):
        """Run statements in one transaction, nothing is left behind if one fails."""
        execute_in_transaction(self.engine, statements)

    def dispose(self):
        self.engine.dispose()

    def __str__(self) -> str:
        return self.name


class ConnectionResolver:
    """Resolves instance names to live connections and caches them.

    Arguments
    ---------
    configuration
        Configuration with driver, credential file and engine settings.
    credentials
        Credentials by instance name, used instead of the credential files.
    engine_factory
        Function creating an engine from URL and engine parameters.
    """

    def __init__(self, configuration: dict = None, credentials: Dict[str, Credential] = None,
            engine_factory: Callable[..., Engine] = create_sqlalchemy_engine):
        self.configuration = configuration or {}
        self.credentials = {key.lower(): value for key, value in (credentials or {}).items()}
        self.engine_factory = engine_factory
        self.connections: Dict[str, SqlInstance] = {}

    def resolve(self, instance: Union[str, InstanceRef, SqlInstance], minimum_version: int = None) -> SqlInstance:
        """Return live connection to instance.

        Raises InstanceConnectionError if the instance can not be reached or
        its major version is lower than minimum_version.
        """
        if hasattr(instance, 'query'):
            connection = instance
        else:
            instance_ref = parse_instance(instance)
            cache_key = instance_ref.server_string.lower()
            connection = self.connections.get(cache_key)
            if connection is None:
                connection = self._connect(instance_ref)
                self.connections[cache_key] = connection
        if minimum_version is not None and connection.version_major < minimum_version:
            raise InstanceConnectionError(
                connection.name,
                f'SQL Server version {minimum_version} or higher required, '
                f'instance is version {connection.version_major}'
            )
        return connection

    def _connect(self, instance_ref: InstanceRef) -> SqlInstance:
        logger.debug(f'Connecting to {instance_ref.server_string}')
        try:
            conn_info = create_conn_info(
                self.configuration,
                instance_ref,
                credential=self.credentials.get((instance_ref.credential_key or instance_ref.full_name).lower())
            )
            engine = self.engine_factory(
                create_sqlalchemy_url(conn_info),
                **conn_info.get('sqla_engine_params')
            )
            error = test_connection(
                engine,
                retry_attempts=self.configuration.get('connect_retry_count', 1),
                retry_interval=self.configuration.get('connect_retry_interval', 10)
            )
            if error is not None:
                engine.dispose()
                raise InstanceConnectionError(instance_ref.full_name, str(error))
            server_info = dict(execute_query(engine, SERVER_INFO_QUERY)[0]._mapping)
        except InstanceConnectionError:
            raise
        except Exception as err:
            raise InstanceConnectionError(instance_ref.full_name, str(err)) from err
        return SqlInstance(instance_ref, engine, server_info)

    def dispose_all(self):
        for connection in self.connections.values():
            connection.dispose()
        self.connections = {}


def connect_each(resolver: ConnectionResolver, instances: Iterable, reporter=None,
        minimum_version: int = None) -> Iterator[SqlInstance]:
    """Yield live connections in the given order.

    Instances that can not be connected are logged (and recorded in reporter)
    and skipped, so that one unreachable destination does not stop the others.
    """
    for instance in instances:
        try:
            yield resolver.resolve(instance, minimum_version=minimum_version)
        except InstanceConnectionError as err:
            if reporter is not None:
                reporter.record_error(str(instance), err)
            else:
                logger.error(str(err))
