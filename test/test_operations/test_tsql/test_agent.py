from datetime import datetime

import pytest

import dbaflow.operations.tsql.agent as agent
from dbaflow.status import Status, StatusReporter


def job_row(name, **kwargs):
    row = {
        'job_name': name, 'enabled': 1, 'description': None, 'category_name': 'Database Maintenance',
        'owner_login_name': 'sa', 'start_step_id': 1, 'notify_level_eventlog': 2, 'notify_level_email': 0,
        'notify_level_page': 0, 'delete_level': 0, 'notify_email_operator_name': None,
        'notify_page_operator_name': None
    }
    row.update(kwargs)
    return row


def step_row(job_name, step_id=1, **kwargs):
    row = {
        'job_name': job_name, 'step_id': step_id, 'step_name': f'step {step_id}', 'subsystem': 'TSQL',
        'command': 'EXEC dbo.Cleanup', 'database_name': 'Sales', 'on_success_action': 1,
        'on_success_step_id': 0, 'on_fail_action': 2, 'on_fail_step_id': 0, 'retry_attempts': 0,
        'retry_interval': 0, 'output_file_name': None, 'proxy_name': None
    }
    row.update(kwargs)
    return row


@pytest.fixture
def source_jobs(source):
    source.on(agent.QUERIES['get_jobs'], [
        job_row('Cleanup', notify_email_operator_name='DBA Team'),
        job_row('PSJob', category_name=None),
    ])
    source.on(agent.QUERIES['get_job_steps'], [
        step_row('Cleanup'),
        step_row('PSJob', subsystem='PowerShell', database_name='Reports', command='Get-Date'),
    ])
    source.on(agent.QUERIES['get_job_schedules'], [{
        'job_name': 'Cleanup', 'name': 'Nightly', 'enabled': 1, 'freq_type': 4, 'freq_interval': 1,
        'freq_subday_type': 1, 'freq_subday_interval': 0, 'freq_relative_interval': 0,
        'freq_recurrence_factor': 0, 'active_start_date': 20240101, 'active_end_date': 99991231,
        'active_start_time': 10000, 'active_end_time': 235959
    }])
    return source


@pytest.fixture
def destination_catalog(destination):
    destination.on(agent.QUERIES['get_database_names'], [{'name': 'Sales'}])
    destination.on(agent.QUERIES['get_login_names'], [{'name': 'sa'}])
    destination.on(agent.QUERIES['get_proxy_names'], [])
    destination.on(agent.QUERIES['get_operator_names'], [{'name': 'DBA Team'}])
    return destination


def existing_jobs(*names):
    return lambda variables: [{'name': variables['job_name']}] if variables['job_name'] in names else []


def test_read_jobs_should_attach_steps_and_schedules(source_jobs):
    jobs = agent.read_jobs(source_jobs)
    assert [job.name for job in jobs] == ['Cleanup', 'PSJob']
    assert jobs[0].steps[0]['step_name'] == 'step 1'
    assert jobs[0].schedules[0]['name'] == 'Nightly'
    assert jobs[0].operators == ['DBA Team']
    assert jobs[0].owner == 'sa'


def test_script_job_should_create_category_job_steps_schedules_and_server(source_jobs):
    job = agent.read_jobs(source_jobs)[0]
    statements = agent.script_job(job, enabled=False)
    assert statements[0].startswith('IF NOT EXISTS (SELECT 1 FROM msdb.dbo.syscategories')
    assert "@name = N'Database Maintenance'" in statements[0]
    assert statements[1].startswith("EXEC msdb.dbo.sp_add_job @job_name = N'Cleanup', @enabled = 0")
    assert statements[2].startswith("EXEC msdb.dbo.sp_add_jobstep @job_name = N'Cleanup', @step_id = 1")
    assert statements[3] == "EXEC msdb.dbo.sp_update_job @job_name = N'Cleanup', @start_step_id = 1"
    assert statements[4].startswith("EXEC msdb.dbo.sp_add_jobschedule @job_name = N'Cleanup', @name = N'Nightly'")
    assert statements[5] == "EXEC msdb.dbo.sp_add_jobserver @job_name = N'Cleanup', @server_name = N'(local)'"


def test_existing_job_should_be_left_unchanged_without_force(source_jobs, destination_catalog, resolver):
    destination_catalog.on(agent.QUERIES['job_exists'], existing_jobs('PSJob'))
    results = agent.copy_agent_jobs('SQL01', ['SQL02'], job='PSJob', resolver=resolver)
    assert len(results) == 1
    assert results[0].status is Status.SKIPPED
    assert results[0].notes == 'Already exists on destination'
    assert destination_catalog.executed == []


def test_missing_database_should_skip_tsql_job_only(source_jobs, destination_catalog, resolver):
    destination_catalog.on(agent.QUERIES['job_exists'], existing_jobs())
    destination_catalog.on(agent.QUERIES['get_database_names'], [])
    results = agent.copy_agent_jobs('SQL01', ['SQL02'], resolver=resolver)
    by_name = {result.name: result for result in results}
    assert by_name['Cleanup'].status is Status.SKIPPED
    assert by_name['Cleanup'].notes == 'Database Sales does not exist on destination'
    # PowerShell steps do not need the database
    assert by_name['PSJob'].status is Status.SUCCESSFUL


def test_missing_owner_and_operator_should_be_listed(source_jobs, destination_catalog, resolver):
    destination_catalog.responses.clear()
    destination_catalog.on(agent.QUERIES['get_database_names'], [{'name': 'Sales'}])
    results = agent.copy_agent_jobs('SQL01', ['SQL02'], job=['Cleanup'], resolver=resolver)
    assert results[0].notes == 'Login sa does not exist on destination; Operator DBA Team does not exist on destination'


def test_forced_copy_should_drop_and_disable(source_jobs, destination_catalog, resolver):
    destination_catalog.on(agent.QUERIES['job_exists'], existing_jobs('Cleanup'))
    results = agent.copy_agent_jobs('SQL01', ['SQL02'], job='Cleanup', force=True, disable_on_source=True,
                                    disable_on_destination=True, resolver=resolver)
    assert results[0].status is Status.SUCCESSFUL
    assert results[0].notes == 'Disabled on source'
    assert destination_catalog.executed[0] == (
        "EXEC msdb.dbo.sp_delete_job @job_name = N'Cleanup', @delete_unused_schedule = 1"
    )
    assert "@enabled = 0" in destination_catalog.executed[2]
    assert source_jobs.executed == ["EXEC msdb.dbo.sp_update_job @job_name = N'Cleanup', @enabled = 0"]


def test_failed_transaction_should_fail_job(source_jobs, destination_catalog, resolver):
    destination_catalog.on(agent.QUERIES['job_exists'], existing_jobs())
    destination_catalog.fail('sp_add_jobschedule', 'The specified @freq_type is invalid')
    results = agent.copy_agent_jobs('SQL01', ['SQL02'], job='Cleanup', resolver=resolver)
    assert results[0].status is Status.FAILED
    assert 'freq_type' in results[0].notes
    assert destination_catalog.executed == []


def test_copy_operators_should_create_missing_operators(source, destination, resolver):
    source.on(agent.QUERIES['get_operators'], [{
        'name': 'DBA Team', 'enabled': 1, 'email_address': 'dba@contoso.com', 'pager_address': None,
        'netsend_address': None, 'weekday_pager_start_time': 90000, 'weekday_pager_end_time': 180000,
        'saturday_pager_start_time': 90000, 'saturday_pager_end_time': 180000,
        'sunday_pager_start_time': 90000, 'sunday_pager_end_time': 180000, 'pager_days': 0,
        'category_name': None
    }])
    results = agent.copy_agent_operators('SQL01', ['SQL02'], resolver=resolver)
    assert results[0].status is Status.SUCCESSFUL
    assert results[0].type == 'Agent Operator'
    assert destination.executed[0].startswith(
        "EXEC msdb.dbo.sp_add_operator @name = N'DBA Team', @enabled = 1, @email_address = N'dba@contoso.com'"
    )


def activity(*polls):
    """Return one activity row (or no row for None) per query, then no rows."""
    remaining = list(polls)

    def rows(variables):
        row = remaining.pop(0) if remaining else None
        return [row] if row is not None else []
    return rows


def run(start, stop=None):
    return {'start_execution_date': start, 'stop_execution_date': stop}


def history(*runs):
    """Job history rows as (started, run_status, message), filtered like sysjobhistory."""
    return lambda variables: [
        {'run_status': run_status, 'message': message}
        for started, run_status, message in reversed(runs) if started >= variables['run_started']
    ]


def test_start_job_should_poll_until_job_stops(destination, resolver):
    started = datetime(2024, 1, 1, 10, 0)
    destination.on(agent.QUERIES['get_job_activity'], activity(
        None,
        run(started),
        run(started),
        run(started, datetime(2024, 1, 1, 10, 1)),
    ))
    destination.on(agent.QUERIES['get_job_outcome'], history((started, 1, 'The job succeeded.')))
    sleeps = []
    reporter = StatusReporter()
    status = agent.start_agent_job_and_wait('SQL02', 'Cleanup', resolver=resolver, poll_interval=5,
                                            sleep=sleeps.append, reporter=reporter)
    assert status.status is Status.SUCCESSFUL
    assert status.notes == 'Job run succeeded'
    assert sleeps == [5, 5, 5]
    assert destination.executed == ["EXEC msdb.dbo.sp_start_job @job_name = N'Cleanup'"]
    assert reporter.results == [status]


def test_queued_job_should_not_report_the_previous_run(destination, resolver):
    previous = datetime(2024, 1, 1, 9, 0)
    started = datetime(2024, 1, 1, 10, 0, 0, 750000)
    polls = activity(
        run(previous, datetime(2024, 1, 1, 9, 5)),
        run(None),
        run(started),
        run(started, datetime(2024, 1, 1, 10, 2)),
    )
    destination.on(agent.QUERIES['get_job_activity'], polls)
    destination.on(agent.QUERIES['get_job_outcome'], history(
        (previous, 1, 'The job succeeded.'),
        (datetime(2024, 1, 1, 10, 0), 0, 'Step 1 failed.'),
    ))
    sleeps = []
    status = agent.start_agent_job_and_wait('SQL02', 'Cleanup', resolver=resolver, poll_interval=5,
                                            sleep=sleeps.append)
    assert sleeps == [5, 5, 5]
    assert status.status is Status.FAILED
    assert status.notes == 'Job run outcome Failed: Step 1 failed.'
    outcome_query = [variables for sql, variables in destination.queries if sql == agent.QUERIES['get_job_outcome']]
    assert outcome_query[0]['run_started'] == datetime(2024, 1, 1, 10, 0)


def test_previous_finished_run_should_not_end_the_wait(destination, resolver):
    previous = run(datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 1, 9, 5))
    destination.on(agent.QUERIES['get_job_activity'], lambda variables: [previous])
    status = agent.start_agent_job_and_wait('SQL02', 'Cleanup', resolver=resolver, poll_interval=10, timeout=30,
                                            sleep=lambda seconds: None)
    assert status.status is Status.FAILED
    assert status.notes == 'Job not finished after 30 seconds'


def test_failed_job_run_should_report_outcome(destination, resolver):
    started = datetime(2024, 1, 1, 10, 0)
    destination.on(agent.QUERIES['get_job_activity'], activity(None, run(started, datetime(2024, 1, 1, 10, 1))))
    destination.on(agent.QUERIES['get_job_outcome'], history((started, 0, 'Step 1 failed.')))
    status = agent.start_agent_job_and_wait('SQL02', 'Cleanup', resolver=resolver, sleep=lambda seconds: None)
    assert status.status is Status.FAILED
    assert status.notes == 'Job run outcome Failed: Step 1 failed.'


def test_running_job_should_fail_on_timeout(destination, resolver):
    destination.on(agent.QUERIES['get_job_activity'], activity(
        None, run(datetime(2024, 1, 1)), run(datetime(2024, 1, 1)), run(datetime(2024, 1, 1))
    ))
    status = agent.start_agent_job_and_wait('SQL02', 'Cleanup', resolver=resolver, poll_interval=10, timeout=30,
                                            sleep=lambda seconds: None)
    assert status.status is Status.FAILED
    assert status.notes == 'Job not finished after 30 seconds'
