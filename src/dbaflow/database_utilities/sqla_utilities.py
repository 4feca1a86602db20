# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Utility functions for sqlalchemy
"""
import importlib
import time
from logging import getLogger
from re import DOTALL, sub
from typing import Iterable, List, Union

from pyparsing import (CaselessKeyword, Combine, LineStart, QuotedString,
                       Regex, Word, nums, restOfLine)
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.engine.url import URL
from sqlalchemy.sql import text

logger = getLogger('dbaflow')

# Disable pyodbc pooling (https://docs.sqlalchemy.org/en/20/dialects/mssql.html#pyodbc-pooling-connection-close-behavior)
pyodbc = importlib.import_module("pyodbc") if importlib.util.find_spec("pyodbc") is not None else None
if pyodbc is not None:
    pyodbc.pooling = False


def create_sqlalchemy_url(conn_info: dict, database: str = None) -> URL:
    """Create url for sqlalchemy.

    Arguments
    ---------
    conn_info
        Dictionary holding information needed to establish connection to an instance.
    database
        Database to connect to, overrides the database of conn_info.

    Returns
    -------
    sqlalchemy.engine.url.URL
        Connection url for sqlalchemy.
    """
    query = {}
    driver = conn_info.get('driver')
    if isinstance(driver, str):
        query["driver"] = driver
    sqla_url_query_map = conn_info.get("sqla_url_query_map")
    if bool(sqla_url_query_map):
        query.update(sqla_url_query_map)

    return URL.create(
        drivername=conn_info.get('dialect'),
        username=conn_info.get('username'),
        password=conn_info.get('password'),
        host=conn_info.get('host'),
        port=conn_info.get('port'),
        database=database or conn_info.get('database'),
        query=query
    )


def create_sqlalchemy_engine(sqlalchemy_url: URL, **kwargs) -> Engine:
    """Create a new SQL Alchemy engine.

    Arguments
    ---------
    sqlalchemy_url
        Connection url for sqlalchemy.
    kwargs
        Named arguments passed to create_engine().
    """
    return create_engine(sqlalchemy_url, **kwargs)


def test_connection(engine: Engine, retry_attempts: int = 1, retry_interval: int = 10, sleep=time.sleep) -> Exception:
    """ Test connection with retry attempts.

    Arguments
    ---------
    engine
        SQL Alchemy engine.
    retry_attempts
        Number of connection attempts.
    retry_interval
        Interval between attempts in seconds.

    Returns
    -------
    Exception
        None if connection succeeded, otherwise the error of the last attempt.
    """
    error = None
    for attempt in range(retry_attempts):
        try:
            with engine.connect():
                return None
        except Exception as err:
            error = err
            if attempt + 1 < retry_attempts:
                logger.debug(f"Connection failed. Retrying in {retry_interval} seconds. Error: {err}")
                sleep(retry_interval)
    return error


def escape_bind_markers(sql: str) -> str:
    """Escape colons so that SQLAlchemy does not treat them as bind parameters."""
    return sub(':', r'\:', sql)


def execute_query(connectable: Union[Engine, Connection], query: str, variables: dict = None,
        isolation_level: str = 'AUTOCOMMIT', include_headers: bool = False) -> List[Iterable]:
    """Execute query with chosen isolation level.

    Arguments
    ---------
    connectable
        SQL Alchemy Engine or Connection.
    query
        SQL query or statement to be executed.
        Colons are escaped if no variables are given.
    variables
        Bind variables for query (:name style).
    isolation_level
        Transaction isolation level, used when connectable is Engine.
    include_headers
        Indicator to add result headers to first returned row.

    Returns
    -------
    list
        Query output as list. If query returns no output, empty list is returned.
    """
    if isinstance(connectable, Engine):
        connection_obj = connectable.connect()
        connection_obj = connection_obj.execution_options(isolation_level=isolation_level)
    else:
        connection_obj = connectable
    try:
        if variables:
            result_set = connection_obj.execute(text(query), variables)
        else:
            result_set = connection_obj.execute(text(escape_bind_markers(query)))
        query_output = []
        if result_set.returns_rows:
            if include_headers is True:
                query_output.append(list(result_set.keys()))
            query_output.extend([row for row in result_set])
    finally:
        if isinstance(connectable, Engine):
            connection_obj.close()
    return query_output


def execute_in_transaction(engine: Engine, statements: List[Union[str, tuple]]):
    """Execute statements in one transaction. Rollback if any of them fails.

    Arguments
    ---------
    engine
        SQL Alchemy engine.
    statements
        SQL strings or (sql, variables) tuples.
    """
    with engine.begin() as connection:
        for statement in statements:
            if isinstance(statement, tuple):
                sql, variables = statement
                connection.execute(text(sql), variables)
            else:
                connection.execute(text(escape_bind_markers(statement)))


def execute_batches(engine: Engine, script: str):
    """Split script to batches by GO separators and execute them one by one."""
    batches = split_to_batches(script)
    with engine.connect() as connection:
        connection = connection.execution_options(isolation_level='AUTOCOMMIT')
        for batch in batches:
            if not batch.strip():
                continue
            connection.execute(text(escape_bind_markers(batch)))


def split_to_batches(sql: str, dialect_name: str = 'mssql') -> List[str]:
    """Split SQL into batches according to batch separator,
    which depends on dialect. Ignore comments and literals while parsing.
    If no batch separator instance found in SQL, do not split SQL.
    """
    dialect_patterns = get_dialect_patterns(dialect_name)
    sql_batch = dialect_patterns.get('batch_separator')
    if not sql_batch:
        return [sql]
    # look for batch separators while ignoring comments and literals
    sql_batch.ignore(dialect_patterns.get('one_line_comment'))
    sql_batch.ignore(dialect_patterns.get('multiline_comment'))
    for quote_str in dialect_patterns.get('quoted_strings'):
        sql_batch.ignore(quote_str)

    # Override default behavior of converting tabs to spaces before parsing the input string
    sql_batch.parseWithTabs()

    scan_matches = list(sql_batch.scanString(sql))
    if not scan_matches:
        return [sql]
    batches = []
    for i, _ in enumerate(scan_matches):
        try:
            count = int(scan_matches[i][0][1])
        except IndexError:
            count = 1
        for _ in range(0, count):
            if i == 0:
                batches.append(sql[:scan_matches[i][1]])
            else:
                batches.append(sql[scan_matches[i-1][2]:scan_matches[i][1]])
    batches.append(sql[scan_matches[-1][2]:])
    return [batch for batch in batches if batch.strip()]


def get_dialect_patterns(dialect_name: str) -> dict:
    """Return dialect patterns (used in SQL parsing), given dialect name.
    If dialect name not recorded, return empty dictionary.
    """
    # Notice, that if DIALECT_PATTERS is a global variable, pyparsing slows down remarkably.
    DIALECT_PATTERNS = {
        'mssql': {
            'quoted_strings': [    # depends on how QUOTED_IDENTIFIER is set
                QuotedString("'", escQuote="''", multiline=True),
                QuotedString('"', escQuote='""', multiline=True)
            ],
            'one_line_comment': Combine('--' + restOfLine),
            'multiline_comment': Regex(r'/\*.+?\*/', flags=DOTALL),
            # GO must be on its own line
            'batch_separator': LineStart().leaveWhitespace() + ((CaselessKeyword('GO') + Word(nums)) | CaselessKeyword('GO')),
        }
    }
    return DIALECT_PATTERNS.get(dialect_name, {})
