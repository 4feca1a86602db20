# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0



"""Pre-defined logged scripts for various uses.
"""
from dbaflow.operations.general import (
    new_firewall_rule,
    set_privilege,
    set_startup_parameter,
    test_spn
)

from dbaflow.operations.tsql import (
    copy_agent_jobs,
    copy_agent_operators,
    copy_backup_devices,
    copy_custom_errors,
    copy_databases,
    copy_db_mail,
    copy_logins,
    copy_query_store_options,
    copy_server_triggers,
    copy_sp_configure,
    copy_startup_procedures,
    copy_sysdb_user_objects,
    new_db_snapshot,
    remove_database_safely,
    start_agent_job_and_wait,
    sync_database_owners
)
