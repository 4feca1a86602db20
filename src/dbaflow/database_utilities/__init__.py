# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Low-level utility functions for database operations and connection handling.
"""

from dbaflow.database_utilities.conn_info import create_conn_info
from dbaflow.database_utilities.connection import (
    ConnectionResolver,
    SqlInstance,
    connect_each
)
from dbaflow.database_utilities.sqla_utilities import (
    create_sqlalchemy_url,
    create_sqlalchemy_engine,
    execute_query,
    execute_in_transaction,
    split_to_batches,
    test_connection
)
from dbaflow.database_utilities.tsql import (
    exec_procedure,
    hex_literal,
    quote_name,
    quote_string,
    quote_value
)
