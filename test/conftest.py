"""Pytest configuration.

Most tests run against in-memory fakes of the live connection, the connection
resolver and the remote executor. Tests marked with 'mssql' need a live
instance, and the login must have sysadmin rights:
pytest -- --mssql_host localhost --mssql_port 14330 --mssql_username sa --mssql_password SALA_kala12
"""
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import URL

from dbaflow.credential_handler import Credential
from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.errors import InstanceConnectionError


def pytest_addoption(parser):
    parser.addoption(
        '--mssql_host',
        action='store',
        dest='mssql_host',
        help='SQL Server hostname used for tests.'
        )
    parser.addoption(
        '--mssql_port',
        action='store',
        default=1433,
        dest='mssql_port',
        help='SQL Server port number used for tests.'
        )
    parser.addoption(
        '--mssql_username',
        action='store',
        dest='mssql_username',
        default='',
        help='Username for SQL Server. Do not use for Win authentication.'
        )
    parser.addoption(
        '--mssql_password',
        action='store',
        dest='mssql_password',
        default='',
        help='Password for SQL Server. Do not use for Win authentication.'
        )
    parser.addoption(
        '--mssql_driver',
        action='store',
        dest='mssql_driver',
        default='ODBC Driver 18 for SQL Server',
        help='ODBC driver used for tests.'
        )


def pytest_configure(config):
    config.addinivalue_line("markers", "mssql: mark tests that require SQL server to run")


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with 'mssql' if MSSQL hostname was not given
    or connection to MSSQL can not be established using the given
    hostname, port number and credentials.
    """
    if not any("mssql" in item.keywords for item in items):
        return
    if ensure_mssql_ready_for_tests(config):
        return
    skip_mssql = pytest.mark.skip(reason="requires SQL Server")
    for item in items:
        if "mssql" in item.keywords:
            item.add_marker(skip_mssql)


def ensure_mssql_ready_for_tests(config):
    """Test connection to MSSQL instance."""
    if not config.getoption('mssql_host'):
        return False
    try:
        engine = create_engine(mssql_url(config))
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        engine.dispose()
        return True
    except Exception:
        return False


def mssql_url(config):
    return URL.create(
        drivername="mssql+pyodbc",
        username=config.getoption('mssql_username') or None,
        password=config.getoption('mssql_password') or None,
        host=config.getoption('mssql_host'),
        port=int(config.getoption('mssql_port')),
        database='master',
        query={'driver': config.getoption('mssql_driver'), 'TrustServerCertificate': 'yes'}
    )


@pytest.fixture(scope='session')
def mssql_config(request):
    """Configuration and instance name for the live test instance."""
    options = request.config
    configuration = {
        'sql_driver': options.getoption('mssql_driver'),
        'sqla_url_query_map': {'TrustServerCertificate': 'yes'},
        'windows_authentication': not options.getoption('mssql_username')
    }
    instance = f"{options.getoption('mssql_host')},{options.getoption('mssql_port')}"
    return configuration, instance


@pytest.fixture
def mssql_resolver(request, mssql_config):
    """Resolver for the live test instance, using the login given in options."""
    configuration, _ = mssql_config
    options = request.config
    credentials = {}
    if options.getoption('mssql_username'):
        credentials[options.getoption('mssql_host')] = Credential(
            options.getoption('mssql_username'), options.getoption('mssql_password')
        )
    resolver = ConnectionResolver(configuration, credentials=credentials)
    yield resolver
    resolver.dispose_all()


class FakeInstance:
    """In-memory stand-in for a live SqlInstance.

    Query results are registered with on(), later registrations win. A query
    matching a registered text exactly gets its rows, otherwise a registered
    text contained in the query is used. Unknown queries return no rows. Statements are recorded in
    executed, and fail() makes statements containing a text raise.
    """

    def __init__(self, name, computer_name=None, instance_name='MSSQLSERVER', version_major=15,
            login_name='dbaflow_admin', server_info=None):
        self.name = name
        self.computer_name = computer_name or name.split('\\')[0].split(',')[0].upper()
        self.instance_name = instance_name
        self.version_major = version_major
        self.login_name = login_name
        self.server_info = server_info or {
            'default_data_path': 'D:\\Data\\',
            'default_log_path': 'L:\\Log\\'
        }
        self.responses = []
        self.failures = []
        self.queries = []
        self.executed = []
        self.disposed = False

    def on(self, sql, rows):
        """Register rows (list of dicts or objects) or a callable taking the variables."""
        self.responses.insert(0, (sql, rows))
        return self

    def fail(self, sql_fragment, message='statement failed'):
        self.failures.append((sql_fragment, message))
        return self

    def _check(self, sql):
        for fragment, message in self.failures:
            if fragment in sql:
                raise RuntimeError(message)

    def query(self, sql, variables=None):
        self.queries.append((sql, variables))
        self._check(sql)
        rows = None
        for registered, result in self.responses:
            if registered == sql:
                rows = result
                break
        if rows is None:
            for registered, result in self.responses:
                if registered in sql:
                    rows = result
                    break
        if rows is None:
            return []
        if callable(rows):
            rows = rows(variables or {})
        return [SimpleNamespace(**row) if isinstance(row, dict) else row for row in rows]

    def execute(self, sql, variables=None):
        self._check(sql)
        self.executed.append(sql)

    def execute_batches(self, script):
        self._check(script)
        self.executed.append(script)

    def execute_in_transaction(self, statements):
        for statement in statements:
            self._check(statement[0] if isinstance(statement, tuple) else statement)
        self.executed.extend(statement[0] if isinstance(statement, tuple) else statement for statement in statements)

    def executed_text(self):
        return '\n'.join(self.executed)

    def dispose(self):
        self.disposed = True

    def __str__(self):
        return self.name


class FakeResolver:
    """Resolves names to registered FakeInstances. Unknown names can not be connected."""

    def __init__(self, *instances):
        self.instances = {instance.name.lower(): instance for instance in instances}
        self.disposed = False

    def resolve(self, instance, minimum_version=None):
        if hasattr(instance, 'query'):
            connection = instance
        else:
            connection = self.instances.get(str(instance).lower())
            if connection is None:
                raise InstanceConnectionError(str(instance), 'Login timeout expired')
        if minimum_version is not None and connection.version_major < minimum_version:
            raise InstanceConnectionError(
                connection.name,
                f'SQL Server version {minimum_version} or higher required, '
                f'instance is version {connection.version_major}'
            )
        return connection

    def dispose_all(self):
        self.disposed = True


class FakeRemote:
    """Stand-in for RemoteExecutor. Results are registered by a text of the script."""

    def __init__(self):
        self.responses = []
        self.calls = []

    def on(self, script_fragment, result):
        """result is a value, an exception to raise or a callable taking computer and arguments."""
        self.responses.append((script_fragment, result))
        return self

    def invoke(self, computer, script, arguments=None):
        self.calls.append((computer, script, arguments))
        for fragment, result in self.responses:
            if fragment in script:
                if isinstance(result, Exception):
                    raise result
                if callable(result):
                    return result(computer, arguments or {})
                return result
        return None


@pytest.fixture
def make_instance():
    return FakeInstance


@pytest.fixture
def make_resolver():
    return FakeResolver


@pytest.fixture
def fake_remote():
    return FakeRemote()


@pytest.fixture
def source(make_instance):
    return make_instance('SQL01', login_name='CONTOSO\\dba')


@pytest.fixture
def destination(make_instance):
    return make_instance('SQL02', login_name='CONTOSO\\dba')


@pytest.fixture
def resolver(make_resolver, source, destination):
    return make_resolver(source, destination)


@pytest.fixture
def no_input(monkeypatch):
    """Fail the test if anything asks for confirmation."""
    def fail_input(prompt=''):
        raise AssertionError(f'Unexpected input prompt: {prompt}')
    monkeypatch.setattr('builtins.input', fail_input)
