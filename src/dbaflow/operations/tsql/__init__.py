# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0


"""Module for operations requiring SQLServer backend."""
from dbaflow.operations.tsql.agent import copy_agent_jobs, copy_agent_operators, start_agent_job_and_wait
from dbaflow.operations.tsql.databases import copy_databases, remove_database_safely, sync_database_owners
from dbaflow.operations.tsql.dbmail import copy_db_mail
from dbaflow.operations.tsql.logins import copy_logins
from dbaflow.operations.tsql.query_store import copy_query_store_options
from dbaflow.operations.tsql.server_objects import (
    copy_backup_devices,
    copy_custom_errors,
    copy_server_triggers,
    copy_sp_configure,
    copy_startup_procedures,
    copy_sysdb_user_objects
)
from dbaflow.operations.tsql.snapshots import new_db_snapshot
