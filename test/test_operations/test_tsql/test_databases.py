from datetime import datetime

import pytest

import dbaflow.operations.tsql.databases as databases
from dbaflow.errors import ConfigurationError
from dbaflow.operations.tsql.agent import QUERIES as AGENT_QUERIES
from dbaflow.status import Status
from dbaflow.targets import QUERIES as TARGET_QUERIES

SHARE = '\\\\fileserver\\migration'


def database_row(name, owner_name='sa', state_desc='ONLINE'):
    return {'name': name, 'database_id': 5, 'source_database_id': None, 'state_desc': state_desc,
            'is_read_only': False, 'owner_name': owner_name}


def database_files(variables):
    name = variables['database_name']
    return [
        {'logical_name': name, 'physical_name': f'E:\\SQLData\\{name}.mdf', 'type_desc': 'ROWS'},
        {'logical_name': f'{name}_log', 'physical_name': f'F:\\SQLLog\\{name}_log.ldf', 'type_desc': 'LOG'},
    ]


def logins(*names):
    return lambda variables: [{'name': variables['login_name']}] if variables['login_name'] in names else []


@pytest.fixture
def database_source(source):
    source.on(TARGET_QUERIES['get_databases'], [
        database_row('master'),
        database_row('Sales', owner_name='CONTOSO\\app'),
        database_row('HR', state_desc='RESTORING'),
    ])
    source.on(databases.QUERIES['get_database_files'], database_files)
    return source


def test_backup_and_restore_statements():
    assert databases.backup_statement('Sales', 'B:\\Sales.bak') == \
        "BACKUP DATABASE [Sales] TO DISK = N'B:\\Sales.bak' WITH COPY_ONLY, CHECKSUM, INIT, FORMAT"
    assert databases.backup_statement('Sales', 'B:\\Sales.bak', copy_only=False) == \
        "BACKUP DATABASE [Sales] TO DISK = N'B:\\Sales.bak' WITH CHECKSUM, INIT, FORMAT"
    assert databases.restore_statement('Sales', 'B:\\Sales.bak', [('Sales', 'D:\\Sales.mdf')]) == \
        "RESTORE DATABASE [Sales] FROM DISK = N'B:\\Sales.bak' WITH MOVE N'Sales' TO N'D:\\Sales.mdf', CHECKSUM"


def test_copy_databases_should_restore_to_default_paths(database_source, destination, resolver):
    destination.on(databases.QUERIES['login_exists'], logins('CONTOSO\\app'))
    results = databases.copy_databases(database_source, ['SQL02'], all_databases=True, shared_path=SHARE,
                                       resolver=resolver)
    assert [(result.name, result.status) for result in results] == [
        ('Sales', Status.SUCCESSFUL),
        ('HR', Status.SKIPPED),
    ]
    assert results[0].notes is None
    assert results[1].notes == 'Database is RESTORING on source'
    assert len(database_source.executed) == 1
    assert database_source.executed[0].startswith(
        "BACKUP DATABASE [Sales] TO DISK = N'\\\\fileserver\\migration\\Sales_"
    )
    restore, authorization = destination.executed
    assert "MOVE N'Sales' TO N'D:\\Data\\Sales.mdf'" in restore
    assert "MOVE N'Sales_log' TO N'L:\\Log\\Sales_log.ldf'" in restore
    assert authorization == 'ALTER AUTHORIZATION ON DATABASE::[Sales] TO [CONTOSO\\app]'


def test_copy_databases_should_fall_back_to_source_paths(database_source, destination, resolver):
    destination.fail('D:\\Data\\Sales.mdf', 'Directory lookup for the file failed')
    results = databases.copy_databases(database_source, ['SQL02'], database=['Sales'], shared_path=SHARE,
                                       resolver=resolver)
    assert results[0].status == Status.SUCCESSFUL
    assert results[0].notes == (
        'Created with restore to source paths; Owner CONTOSO\\app does not exist on destination'
    )
    assert "MOVE N'Sales' TO N'E:\\SQLData\\Sales.mdf'" in destination.executed[0]


def test_one_backup_should_serve_all_destinations(database_source, destination, make_instance, make_resolver):
    third = make_instance('SQL03')
    resolver = make_resolver(database_source, destination, third)
    results = databases.copy_databases(database_source, ['SQL02', 'SQL03'], database=['Sales'], shared_path=SHARE,
                                       resolver=resolver)
    assert [result.destination_server for result in results] == ['SQL02', 'SQL03']
    assert len(database_source.executed) == 1
    backup_file = database_source.executed[0].split("DISK = N'")[1].split("'")[0]
    assert backup_file in destination.executed[0]
    assert backup_file in third.executed[0]


def test_existing_database_should_be_dropped_with_force(database_source, destination, resolver):
    destination.on(databases.QUERIES['database_exists'], [{'name': 'Sales'}])
    results = databases.copy_databases(database_source, ['SQL02'], database=['Sales'], shared_path=SHARE,
                                       resolver=resolver)
    assert results[0].status == Status.SKIPPED
    assert database_source.executed == []

    results = databases.copy_databases(database_source, ['SQL02'], database=['Sales'], shared_path=SHARE,
                                       force=True, resolver=resolver)
    assert results[0].status == Status.SUCCESSFUL
    assert destination.executed[:2] == databases.drop_database_statements('Sales')


def test_failed_backup_should_keep_existing_database(database_source, destination, make_instance, make_resolver):
    third = make_instance('SQL03')
    for instance in (destination, third):
        instance.on(databases.QUERIES['database_exists'], [{'name': 'Sales'}])
    database_source.fail('BACKUP DATABASE', 'backup device unreachable')
    results = databases.copy_databases(database_source, ['SQL02', 'SQL03'], database=['Sales'], shared_path=SHARE,
                                       force=True, resolver=make_resolver(database_source, destination, third))
    assert [(result.destination_server, result.status) for result in results] == [
        ('SQL02', Status.FAILED),
        ('SQL03', Status.FAILED),
    ]
    assert results[0].notes == 'Could not prepare Sales: backup device unreachable'
    assert destination.executed == []
    assert third.executed == []


def test_copy_databases_should_require_shared_path(database_source, resolver):
    with pytest.raises(ConfigurationError):
        databases.copy_databases(database_source, ['SQL02'], all_databases=True, resolver=resolver)


def test_sync_database_owners(source, destination, resolver):
    source.on(TARGET_QUERIES['get_databases'], [
        database_row('Sales', owner_name='CONTOSO\\app'),
        database_row('HR'),
        database_row('Reports', owner_name='CONTOSO\\report'),
        database_row('Archive', owner_name='CONTOSO\\archive'),
    ])
    destination.on(TARGET_QUERIES['get_databases'], [
        database_row('Sales'),
        database_row('HR'),
        database_row('Archive'),
    ])
    destination.on(databases.QUERIES['login_exists'], logins('CONTOSO\\app'))
    results = databases.sync_database_owners(source, ['SQL02'], resolver=resolver)
    assert [(result.name, result.status, result.notes) for result in results] == [
        ('Sales', Status.SUCCESSFUL, 'Owner set to CONTOSO\\app'),
        ('HR', Status.SKIPPED, 'Owner already set'),
        ('Reports', Status.SKIPPED, 'Database does not exist on destination'),
        ('Archive', Status.SKIPPED, 'Login CONTOSO\\archive does not exist on destination'),
    ]
    assert destination.executed == ['ALTER AUTHORIZATION ON DATABASE::[Sales] TO [CONTOSO\\app]']


@pytest.fixture
def removable(source, destination):
    source.on(TARGET_QUERIES['get_databases'], [database_row('Sales'), database_row('HR')])
    destination.on(databases.QUERIES['get_sa_name'], [{'sa_name': 'sa'}])
    return source


def no_sleep(seconds):
    pass


def verification_run(instance, run_status, message):
    """The verification job has not run before and has finished by the first poll."""
    started = datetime(2024, 1, 1, 10, 0)
    polls = [[], [{'start_execution_date': started, 'stop_execution_date': datetime(2024, 1, 1, 10, 1)}]]
    instance.on(AGENT_QUERIES['get_job_activity'], lambda variables: polls.pop(0) if len(polls) > 1 else polls[0])
    instance.on(AGENT_QUERIES['get_job_outcome'], [{'run_status': run_status, 'message': message}])


def test_remove_database_safely_should_verify_before_drop(removable, destination, resolver):
    verification_run(destination, 1, 'The job succeeded.')
    results = databases.remove_database_safely(removable, database=['Sales'], backup_folder='B:\\Removed',
                                               destination='SQL02', resolver=resolver, sleep=no_sleep)
    assert len(results) == 1
    assert results[0].status == Status.SUCCESSFUL
    assert results[0].notes.startswith('Backed up to B:\\Removed\\Sales_')
    assert removable.executed[0] == 'DBCC CHECKDB([Sales]) WITH NO_INFOMSGS, ALL_ERRORMSGS'
    assert removable.executed[1].startswith("BACKUP DATABASE [Sales] TO DISK = N'B:\\Removed\\Sales_")
    assert removable.executed[2:] == databases.drop_database_statements('Sales')
    job_name = 'Rationalised Database Restore Script for Sales'
    assert destination.executed[0].startswith(
        f"EXEC msdb.dbo.sp_add_job @job_name = N'{job_name}', @owner_login_name = N'sa'"
    )
    assert 'RESTORE VERIFYONLY FROM DISK' in destination.executed[1]
    assert destination.executed[-1] == f"EXEC msdb.dbo.sp_start_job @job_name = N'{job_name}'"


def test_failed_verification_should_keep_database(removable, destination, resolver):
    verification_run(destination, 0, 'The media set is damaged.')
    results = databases.remove_database_safely(removable, database=['Sales'], backup_folder='B:\\Removed',
                                               destination='SQL02', resolver=resolver, sleep=no_sleep)
    assert results[0].status == Status.FAILED
    assert results[0].notes == 'Backup verification failed: Job run outcome Failed: The media set is damaged.'
    assert not any(statement.startswith('DROP DATABASE') for statement in removable.executed)


def test_failed_dbcc_check_should_stop_before_backup(removable, resolver):
    removable.fail('DBCC CHECKDB', 'Table error: page (1:153) is corrupt')
    results = databases.remove_database_safely(removable, all_databases=True, backup_folder='B:\\Removed',
                                               job_owner='CONTOSO\\dba', resolver=resolver, sleep=no_sleep)
    assert [result.status for result in results] == [Status.FAILED, Status.FAILED]
    assert results[0].notes == 'DBCC CHECKDB failed: Table error: page (1:153) is corrupt'
    assert removable.executed == []


def test_existing_verification_job_should_be_replaced(removable, destination, resolver):
    destination.on(databases.QUERIES['job_exists'], [{'name': 'Rationalised Database Restore Script for Sales'}])
    verification_run(destination, 1, 'The job succeeded.')
    databases.remove_database_safely(removable, database=['Sales'], backup_folder='B:\\Removed',
                                     destination='SQL02', no_dbcc_check=True, resolver=resolver, sleep=no_sleep)
    assert destination.executed[0] == \
        "EXEC msdb.dbo.sp_delete_job @job_name = N'Rationalised Database Restore Script for Sales'"
    assert not removable.executed[0].startswith('DBCC')


def test_remove_database_safely_should_require_backup_folder_and_databases(removable, resolver):
    with pytest.raises(ConfigurationError):
        databases.remove_database_safely(removable, database=['Sales'], resolver=resolver)
    with pytest.raises(ConfigurationError):
        databases.remove_database_safely(removable, backup_folder='B:\\Removed', resolver=resolver)
