# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""This script defines the actions of dbaflow.
The actions are imported to master.py, where they are executed.

Every action reads its targets from the command line or the configuration,
runs one command and leaves the status records to the reporter of the context.
"""
from logging import getLogger

import dbaflow.operations as op
from dbaflow.action import action
from dbaflow.errors import ConfigurationError
from dbaflow import migration
from dbaflow.operations.general.startup_parameters import StartupParameters

logger = getLogger('dbaflow')

# startup parameters that can be given as --key value
STARTUP_PARAMETER_OPTIONS = tuple(
    name for name in StartupParameters.__dataclass_fields__ if name not in ('trace_flags', 'additional')
)


def _common(context) -> dict:
    return {
        'resolver': context.get_resolver(),
        'reporter': context.get_reporter(),
        'confirm': context.get_confirm()
    }


def _copy_args(context) -> dict:
    return dict(
        source=context.get_source(),
        destinations=context.get_destinations(),
        force=bool(context.get_cli_arg('force')),
        **_common(context)
    )


def _flag(context, key: str) -> bool:
    return bool(context.get_cli_arg(key))


def _required(context, key: str) -> str:
    value = context.get_cli_arg(key)
    if not value or value is True:
        raise ConfigurationError(f"Argument --{key.replace('_', '-')} is required.")
    return value


def _exclude(context):
    return context.get_cli_list('exclude') or None


@action()
def copy_logins(context):
    """Copy logins with their SID, password and server roles (--login, --exclude)."""
    op.copy_logins(login=context.get_cli_list('login') or None, exclude_login=_exclude(context),
                   **_copy_args(context))


@action()
def copy_agent_operators(context):
    """Copy SQL Server Agent operators (--operator, --exclude)."""
    op.copy_agent_operators(operator=context.get_cli_list('operator') or None, exclude_operator=_exclude(context),
                            **_copy_args(context))


@action()
def copy_agent_jobs(context):
    """Copy SQL Server Agent jobs (--job, --exclude, --disable-on-source, --disable-on-destination)."""
    op.copy_agent_jobs(
        job=context.get_cli_list('job') or None,
        exclude_job=_exclude(context),
        disable_on_source=_flag(context, 'disable_on_source'),
        disable_on_destination=_flag(context, 'disable_on_destination'),
        **_copy_args(context)
    )


@action()
def start_agent_job(context):
    """Start an agent job on destinations and wait until it has finished (--job)."""
    job_name = _required(context, 'job')
    poll_interval = int(context.get_cli_arg('poll_interval') or 15)
    for destination in context.get_destinations():
        op.start_agent_job_and_wait(destination, job_name, resolver=context.get_resolver(),
                                    poll_interval=poll_interval, reporter=context.get_reporter())


@action()
def copy_db_mail(context):
    """Copy Database Mail configuration, accounts, profiles and mail servers (--category)."""
    op.copy_db_mail(
        categories=context.get_cli_list('category') or None,
        account=context.get_cli_list('account') or None,
        exclude_account=context.get_cli_list('exclude_account') or None,
        profile=context.get_cli_list('profile') or None,
        exclude_profile=context.get_cli_list('exclude_profile') or None,
        **_copy_args(context)
    )


@action()
def copy_query_store_options(context):
    """Copy the Query Store options of one database (--source-database, --database, --all-databases)."""
    op.copy_query_store_options(
        context.get_source(),
        _required(context, 'source_database'),
        context.get_destinations(),
        destination_database=context.get_cli_list('database') or None,
        exclude=context.get_cli_list('exclude_database') or None,
        all_databases=_flag(context, 'all_databases'),
        **_common(context)
    )


@action()
def new_db_snapshot(context):
    """Create database snapshots on destinations (--database, --all-databases, --name, --name-suffix, --path)."""
    op.new_db_snapshot(
        context.get_destinations(),
        database=context.get_cli_list('database') or None,
        exclude_database=context.get_cli_list('exclude_database') or None,
        all_databases=_flag(context, 'all_databases'),
        name=context.get_cli_arg('name'),
        name_suffix=context.get_cli_arg('name_suffix'),
        path=context.get_cli_arg('path'),
        force=_flag(context, 'force'),
        **_common(context)
    )


@action()
def copy_sp_configure(context):
    """Copy sp_configure values (--config-name, --exclude)."""
    args = _copy_args(context)
    args.pop('force')
    op.copy_sp_configure(config_name=context.get_cli_list('config_name') or None,
                         exclude_config_name=_exclude(context), **args)


@action()
def copy_custom_errors(context):
    """Copy user defined error messages (--custom-error, --exclude)."""
    op.copy_custom_errors(custom_error=context.get_cli_list('custom_error') or None,
                          exclude_custom_error=_exclude(context), **_copy_args(context))


@action()
def copy_backup_devices(context):
    """Copy backup devices (--backup-device, --exclude)."""
    op.copy_backup_devices(backup_device=context.get_cli_list('backup_device') or None,
                           exclude_backup_device=_exclude(context), **_copy_args(context))


@action()
def copy_server_triggers(context):
    """Copy server level triggers (--server-trigger, --exclude)."""
    op.copy_server_triggers(server_trigger=context.get_cli_list('server_trigger') or None,
                            exclude_server_trigger=_exclude(context), **_copy_args(context))


@action()
def copy_startup_procedures(context):
    """Copy startup procedures of master (--procedure, --exclude)."""
    op.copy_startup_procedures(procedure=context.get_cli_list('procedure') or None,
                               exclude_procedure=_exclude(context), **_copy_args(context))


@action()
def copy_sysdb_user_objects(context):
    """Copy user procedures, views and functions of master, model and msdb."""
    op.copy_sysdb_user_objects(**_copy_args(context))


@action()
def copy_databases(context):
    """Copy databases by backup and restore through a shared path (--database, --all-databases, --shared-path)."""
    op.copy_databases(
        database=context.get_cli_list('database') or None,
        exclude_database=context.get_cli_list('exclude_database') or None,
        all_databases=_flag(context, 'all_databases'),
        shared_path=context.get_cli_arg('shared_path') or context.configuration.get('backup_share'),
        **_copy_args(context)
    )


@action()
def sync_database_owners(context):
    """Set the owners of destination databases to the owners on source (--database)."""
    op.sync_database_owners(
        context.get_source(),
        context.get_destinations(),
        database=context.get_cli_list('database') or None,
        exclude_database=context.get_cli_list('exclude_database') or None,
        **_common(context)
    )


@action(affects_database=True)
def remove_database_safely(context):
    """Check, back up, verify and drop databases of source (--database, --backup-folder, --job-owner)."""
    destinations = context.get_cli_list('destination')
    op.remove_database_safely(
        context.get_source(),
        database=context.get_cli_list('database') or None,
        all_databases=_flag(context, 'all_databases'),
        backup_folder=context.get_cli_arg('backup_folder') or context.configuration.get('backup_share'),
        destination=destinations[0] if destinations else None,
        job_owner=context.get_cli_arg('job_owner'),
        no_dbcc_check=_flag(context, 'no_dbcc_check'),
        **_common(context)
    )


@action(affects_database=True)
def start_migration(context):
    """Migrate the whole source instance to destinations (--exclude categories)."""
    options = {
        'database': context.get_cli_list('database') or None,
        'exclude_database': context.get_cli_list('exclude_database') or None,
        'shared_path': context.get_cli_arg('shared_path') or context.configuration.get('backup_share'),
        'exclude_login': context.get_cli_list('exclude_login') or None,
        'disable_jobs_on_source': _flag(context, 'disable_jobs_on_source'),
        'disable_jobs_on_destination': _flag(context, 'disable_jobs_on_destination')
    }
    result = migration.start_migration(
        context.get_source(),
        context.get_destinations(),
        exclude=context.get_cli_list('exclude'),
        options=options,
        force=_flag(context, 'force'),
        **_common(context)
    )
    for category in result.categories:
        if category.skipped:
            logger.info(f'{category.category}: skipped ({category.reason})')
        elif category.error is not None:
            logger.error(f'{category.category}: failed ({category.error})')
    return result


@action()
def new_firewall_rule(context):
    """Create Windows firewall rules for the instances (--rule-type Engine Browser DAC)."""
    op.new_firewall_rule(
        context.get_destinations(),
        rule_type=context.get_cli_list('rule_type') or None,
        force=_flag(context, 'force'),
        remote=context.get_remote(),
        **_common(context)
    )


@action()
def set_startup_parameter(context):
    """Change the startup parameters of the instances (--trace-flag, --startup-config, --master-data, ...)."""
    changes = {}
    for name in STARTUP_PARAMETER_OPTIONS:
        value = context.get_cli_arg(name)
        if value is None:
            continue
        if name == 'memory_to_reserve':
            value = int(value)
        changes[name] = value
    trace_flag = [int(flag) for flag in context.get_cli_list('trace_flag')] or None
    op.set_startup_parameter(
        context.get_destinations(),
        startup_config=context.get_cli_arg('startup_config'),
        trace_flag=trace_flag,
        trace_flag_override=_flag(context, 'trace_flag_override'),
        remote=context.get_remote(),
        **_common(context),
        **changes
    )


@action()
def set_privilege(context):
    """Grant local privileges to the service accounts (--privilege-type IFI LPIM BatchLogon SecAudit ServiceLogon)."""
    op.set_privilege(
        context.get_destinations(),
        privilege_type=context.get_cli_list('privilege_type') or ('IFI',),
        remote=context.get_remote(),
        **_common(context)
    )


@action()
def test_spn(context):
    """Check that the service principal names of the instances are registered."""
    op.test_spn(
        context.get_destinations(),
        resolver=context.get_resolver(),
        remote=context.get_remote(),
        directory=context.get_directory(),
        reporter=context.get_reporter()
    )
