# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

'''Module for SQL Server Agent operators and jobs.

Jobs are copied by scripting the msdb definition of the job (job, steps,
schedules and the target server) into msdb procedure calls, which are run on
the destination in one transaction. A job is not copied if a database, login,
proxy or operator it refers to is missing on the destination.

Global variable QUERIES holds the msdb queries used by the module.'''
import time
from dataclasses import dataclass, field
from datetime import datetime
from logging import getLogger
from typing import Callable, Dict, Iterable, List, Optional

from dbaflow.database_utilities.connection import ConnectionResolver
from dbaflow.database_utilities.tsql import exec_procedure, quote_string
from dbaflow.errors import DependencyMissing
from dbaflow.executor import CopyOperation, Strategy, run_copy
from dbaflow.operation_manager import OperationManager
from dbaflow.status import OperationStatus, StatusReporter, failed, successful
from dbaflow.targets import select_names

logger = getLogger('dbaflow')

QUERIES = {
    'get_jobs': """
        SELECT j.name AS job_name, j.enabled, j.description, c.name AS category_name,
            SUSER_SNAME(j.owner_sid) AS owner_login_name, j.start_step_id,
            j.notify_level_eventlog, j.notify_level_email, j.notify_level_page, j.delete_level,
            oe.name AS notify_email_operator_name, op.name AS notify_page_operator_name
        FROM msdb.dbo.sysjobs j
        JOIN msdb.dbo.syscategories c ON c.category_id = j.category_id
        LEFT JOIN msdb.dbo.sysoperators oe ON oe.id = j.notify_email_operator_id
        LEFT JOIN msdb.dbo.sysoperators op ON op.id = j.notify_page_operator_id
        ORDER BY j.name
    """,
    'get_job_steps': """
        SELECT j.name AS job_name, s.step_id, s.step_name, s.subsystem, s.command, s.database_name,
            s.on_success_action, s.on_success_step_id, s.on_fail_action, s.on_fail_step_id,
            s.retry_attempts, s.retry_interval, s.output_file_name, p.name AS proxy_name
        FROM msdb.dbo.sysjobsteps s
        JOIN msdb.dbo.sysjobs j ON j.job_id = s.job_id
        LEFT JOIN msdb.dbo.sysproxies p ON p.proxy_id = s.proxy_id
        ORDER BY j.name, s.step_id
    """,
    'get_job_schedules': """
        SELECT j.name AS job_name, s.name, s.enabled, s.freq_type, s.freq_interval,
            s.freq_subday_type, s.freq_subday_interval, s.freq_relative_interval,
            s.freq_recurrence_factor, s.active_start_date, s.active_end_date,
            s.active_start_time, s.active_end_time
        FROM msdb.dbo.sysjobschedules js
        JOIN msdb.dbo.sysschedules s ON s.schedule_id = js.schedule_id
        JOIN msdb.dbo.sysjobs j ON j.job_id = js.job_id
        ORDER BY j.name, s.name
    """,
    'job_exists': 'SELECT name FROM msdb.dbo.sysjobs WHERE name = :job_name',
    'get_database_names': 'SELECT name FROM sys.databases',
    'get_login_names': "SELECT name FROM sys.server_principals WHERE type IN ('S', 'U', 'G')",
    'get_proxy_names': 'SELECT name FROM msdb.dbo.sysproxies',
    'get_operator_names': 'SELECT name FROM msdb.dbo.sysoperators',
    'get_operators': """
        SELECT o.name, o.enabled, o.email_address, o.pager_address, o.netsend_address,
            o.weekday_pager_start_time, o.weekday_pager_end_time,
            o.saturday_pager_start_time, o.saturday_pager_end_time,
            o.sunday_pager_start_time, o.sunday_pager_end_time, o.pager_days,
            c.name AS category_name
        FROM msdb.dbo.sysoperators o
        LEFT JOIN msdb.dbo.syscategories c ON c.category_id = o.category_id
        ORDER BY o.name
    """,
    'operator_exists': 'SELECT name FROM msdb.dbo.sysoperators WHERE name = :operator_name',
    'get_job_activity': """
        SELECT TOP 1 a.start_execution_date, a.stop_execution_date
        FROM msdb.dbo.sysjobactivity a
        JOIN msdb.dbo.sysjobs j ON j.job_id = a.job_id
        WHERE j.name = :job_name
            AND a.session_id = (SELECT MAX(session_id) FROM msdb.dbo.syssessions)
        ORDER BY a.start_execution_date DESC
    """,
    'get_job_outcome': """
        SELECT TOP 1 h.run_status, h.message
        FROM msdb.dbo.sysjobhistory h
        JOIN msdb.dbo.sysjobs j ON j.job_id = h.job_id
        WHERE j.name = :job_name AND h.step_id = 0
            AND msdb.dbo.agent_datetime(h.run_date, h.run_time) >= :run_started
        ORDER BY h.instance_id DESC
    """
}

JOB_COLUMNS = (
    'enabled', 'description', 'category_name', 'owner_login_name', 'notify_level_eventlog',
    'notify_level_email', 'notify_level_page', 'delete_level', 'notify_email_operator_name',
    'notify_page_operator_name'
)
STEP_COLUMNS = (
    'step_id', 'step_name', 'subsystem', 'command', 'database_name', 'on_success_action',
    'on_success_step_id', 'on_fail_action', 'on_fail_step_id', 'retry_attempts', 'retry_interval',
    'output_file_name', 'proxy_name'
)
SCHEDULE_COLUMNS = (
    'name', 'enabled', 'freq_type', 'freq_interval', 'freq_subday_type', 'freq_subday_interval',
    'freq_relative_interval', 'freq_recurrence_factor', 'active_start_date', 'active_end_date',
    'active_start_time', 'active_end_time'
)
OPERATOR_COLUMNS = (
    'enabled', 'email_address', 'pager_address', 'netsend_address', 'weekday_pager_start_time',
    'weekday_pager_end_time', 'saturday_pager_start_time', 'saturday_pager_end_time',
    'sunday_pager_start_time', 'sunday_pager_end_time', 'pager_days', 'category_name'
)

# run_status of sysjobhistory
JOB_OUTCOMES = {0: 'Failed', 1: 'Succeeded', 2: 'Retry', 3: 'Canceled', 4: 'In progress'}


def _columns(row, columns: Iterable[str]) -> dict:
    return {column: getattr(row, column) for column in columns}


def _names(connection, query: str) -> set:
    return {row.name.lower() for row in connection.query(query)}


@dataclass
class AgentJob:
    name: str
    properties: dict
    start_step_id: int = 1
    steps: List[dict] = field(default_factory=list)
    schedules: List[dict] = field(default_factory=list)

    @property
    def owner(self) -> Optional[str]:
        return self.properties.get('owner_login_name')

    @property
    def operators(self) -> List[str]:
        names = [self.properties.get('notify_email_operator_name'), self.properties.get('notify_page_operator_name')]
        return [name for name in names if name]


@dataclass
class AgentOperator:
    name: str
    properties: dict


def read_jobs(connection) -> List[AgentJob]:
    """Return the jobs of connection with their steps and schedules."""
    jobs = {}
    for row in connection.query(QUERIES['get_jobs']):
        jobs[row.job_name.lower()] = AgentJob(row.job_name, _columns(row, JOB_COLUMNS), row.start_step_id or 1)
    for row in connection.query(QUERIES['get_job_steps']):
        if row.job_name.lower() in jobs:
            jobs[row.job_name.lower()].steps.append(_columns(row, STEP_COLUMNS))
    for row in connection.query(QUERIES['get_job_schedules']):
        if row.job_name.lower() in jobs:
            jobs[row.job_name.lower()].schedules.append(_columns(row, SCHEDULE_COLUMNS))
    return list(jobs.values())


def read_operators(connection) -> List[AgentOperator]:
    return [AgentOperator(row.name, _columns(row, OPERATOR_COLUMNS)) for row in connection.query(QUERIES['get_operators'])]


def script_job(job: AgentJob, enabled: bool = None) -> List[str]:
    '''Script job as msdb procedure calls.

    Arguments
    ---------
    job
        The job definition read from the source.
    enabled
        Overrides the enabled state of the source job.

    Returns
    -------
    list
        Statements in execution order.
    '''
    properties = dict(job.properties)
    if enabled is not None:
        properties['enabled'] = enabled
    category = properties.get('category_name')
    statements = []
    if category:
        statements.append(
            'IF NOT EXISTS (SELECT 1 FROM msdb.dbo.syscategories '
            f'WHERE name = {quote_string(category)} AND category_class = 1) '
            + exec_procedure('msdb.dbo.sp_add_category', **{'class': 'JOB', 'type': 'LOCAL', 'name': category})
        )
    statements.append(exec_procedure('msdb.dbo.sp_add_job', job_name=job.name, **properties))
    for step in job.steps:
        statements.append(exec_procedure('msdb.dbo.sp_add_jobstep', job_name=job.name, **step))
    if job.steps:
        statements.append(exec_procedure('msdb.dbo.sp_update_job', job_name=job.name, start_step_id=job.start_step_id))
    for schedule in job.schedules:
        statements.append(exec_procedure('msdb.dbo.sp_add_jobschedule', job_name=job.name, **schedule))
    statements.append(exec_procedure('msdb.dbo.sp_add_jobserver', job_name=job.name, server_name='(local)'))
    return statements


class AgentJobCopy(CopyOperation):
    object_type = 'Agent Job'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None,
            disable_on_source: bool = False, disable_on_destination: bool = False):
        super().__init__(source, destination, force=force, confirm=confirm)
        self.disable_on_source = disable_on_source
        self.disable_on_destination = disable_on_destination
        self._catalog = None

    def catalog(self) -> Dict[str, set]:
        if self._catalog is None:
            self._catalog = {
                'Database': _names(self.destination, QUERIES['get_database_names']),
                'Login': _names(self.destination, QUERIES['get_login_names']),
                'Proxy': _names(self.destination, QUERIES['get_proxy_names']),
                'Operator': _names(self.destination, QUERIES['get_operator_names'])
            }
        return self._catalog

    def exists(self, job: AgentJob) -> bool:
        return len(self.destination.query(QUERIES['job_exists'], variables={'job_name': job.name})) > 0

    def missing_dependencies(self, job: AgentJob) -> List[DependencyMissing]:
        catalog = self.catalog()
        required = []
        for step in job.steps:
            if step.get('database_name') and (step.get('subsystem') or 'TSQL').upper() == 'TSQL':
                required.append((step['database_name'], 'Database'))
            if step.get('proxy_name'):
                required.append((step['proxy_name'], 'Proxy'))
        if job.owner:
            required.append((job.owner, 'Login'))
        required.extend((operator, 'Operator') for operator in job.operators)
        missing = []
        for name, dependency_type in required:
            dependency = DependencyMissing(name, dependency_type)
            if name.lower() not in catalog[dependency_type] and str(dependency) not in map(str, missing):
                missing.append(dependency)
        return missing

    def drop(self, job: AgentJob):
        self.destination.execute(
            exec_procedure('msdb.dbo.sp_delete_job', job_name=job.name, delete_unused_schedule=1)
        )

    def create_strategies(self, job: AgentJob) -> List[Strategy]:
        enabled = False if self.disable_on_destination else None
        return [Strategy(
            'msdb procedures',
            lambda: self.destination.execute_in_transaction(script_job(job, enabled=enabled))
        )]

    def after_create(self, job: AgentJob) -> Optional[str]:
        if self.disable_on_source:
            self.source.execute(exec_procedure('msdb.dbo.sp_update_job', job_name=job.name, enabled=False))
            return 'Disabled on source'
        return None


class AgentOperatorCopy(CopyOperation):
    object_type = 'Agent Operator'

    def exists(self, operator: AgentOperator) -> bool:
        return len(self.destination.query(
            QUERIES['operator_exists'], variables={'operator_name': operator.name}
        )) > 0

    def drop(self, operator: AgentOperator):
        self.destination.execute(exec_procedure('msdb.dbo.sp_delete_operator', name=operator.name))

    def create_strategies(self, operator: AgentOperator) -> List[Strategy]:
        return [Strategy(
            'sp_add_operator',
            lambda: self.destination.execute(
                exec_procedure('msdb.dbo.sp_add_operator', name=operator.name, **operator.properties)
            )
        )]


def copy_agent_jobs(source, destinations: Iterable, job: Iterable[str] = None, exclude_job: Iterable[str] = None,
        disable_on_source: bool = False, disable_on_destination: bool = False, force: bool = False,
        confirm: Callable[[str], bool] = None, resolver: ConnectionResolver = None,
        reporter: StatusReporter = None) -> List[OperationStatus]:
    '''Copy SQL Server Agent jobs from source to destinations.

    Arguments
    ---------
    source
        Source instance.
    destinations
        Destination instances.
    job
        Names of the jobs to copy. All jobs if not given.
    exclude_job
        Names of the jobs not to copy.
    disable_on_source
        Disable each copied job on source.
    disable_on_destination
        Create the jobs disabled on destination.
    force
        Drop and recreate jobs that exist on destination.

    Returns
    -------
    list
        One status record per job per destination.
    '''
    resolver = resolver or ConnectionResolver()
    with OperationManager('Copying agent jobs', target=str(source)):
        source = resolver.resolve(source)
        jobs = {item.name: item for item in read_jobs(source)}
        names = select_names(jobs.keys(), include=job, exclude=exclude_job, object_type='job')
        return run_copy(
            AgentJobCopy, source, destinations, [jobs[name] for name in names],
            resolver=resolver, force=force, confirm=confirm, reporter=reporter,
            disable_on_source=disable_on_source, disable_on_destination=disable_on_destination
        )


def copy_agent_operators(source, destinations: Iterable, operator: Iterable[str] = None,
        exclude_operator: Iterable[str] = None, force: bool = False, confirm: Callable[[str], bool] = None,
        resolver: ConnectionResolver = None, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Copy SQL Server Agent operators from source to destinations."""
    resolver = resolver or ConnectionResolver()
    with OperationManager('Copying agent operators', target=str(source)):
        source = resolver.resolve(source)
        operators = {item.name: item for item in read_operators(source)}
        names = select_names(operators.keys(), include=operator, exclude=exclude_operator, object_type='operator')
        return run_copy(
            AgentOperatorCopy, source, destinations, [operators[name] for name in names],
            resolver=resolver, force=force, confirm=confirm, reporter=reporter
        )


def _job_activity(connection, variables: dict):
    rows = connection.query(QUERIES['get_job_activity'], variables=variables)
    return rows[0] if rows else None


def start_agent_job_and_wait(instance, job_name: str, resolver: ConnectionResolver = None, poll_interval: int = 15,
        timeout: int = None, sleep: Callable[[float], None] = time.sleep,
        reporter: StatusReporter = None) -> OperationStatus:
    '''Start an agent job and wait until the started run has finished.

    The job activity is polled every poll_interval seconds. A run counts as
    finished when its start time differs from the last run before the start
    request and it has a stop time; a queued job has no new start time yet.
    The outcome is read from the history of that run only.

    Returns
    -------
    OperationStatus
        Successful if the job run succeeded, Failed otherwise or on timeout.
    '''
    resolver = resolver or ConnectionResolver()
    connection = resolver.resolve(instance)
    variables = {'job_name': job_name}
    previous = _job_activity(connection, variables)
    previous_start = previous.start_execution_date if previous is not None else None
    connection.execute(exec_procedure('msdb.dbo.sp_start_job', job_name=job_name))
    logger.info(f'Started job {job_name} on {connection.name}')
    waited = 0
    while True:
        sleep(poll_interval)
        waited += poll_interval
        activity = _job_activity(connection, variables)
        started = activity.start_execution_date if activity is not None else None
        if started is not None and started != previous_start:
            if activity.stop_execution_date is not None:
                break
            logger.debug(f'Job {job_name} running, waited {waited} seconds')
        else:
            logger.debug(f'Job {job_name} queued, waited {waited} seconds')
        if timeout is not None and waited >= timeout:
            status = failed(None, connection, job_name, 'Agent Job', f'Job not finished after {waited} seconds')
            return reporter.emit(status) if reporter is not None else status
    # job history has a precision of one second
    run_started = started.replace(microsecond=0) if isinstance(started, datetime) else started
    outcome = connection.query(QUERIES['get_job_outcome'], variables={**variables, 'run_started': run_started})
    if outcome and outcome[0].run_status == 1:
        status = successful(None, connection, job_name, 'Agent Job', 'Job run succeeded')
    else:
        run_status = JOB_OUTCOMES.get(outcome[0].run_status, outcome[0].run_status) if outcome else 'Unknown'
        message = outcome[0].message if outcome else 'No job history found'
        status = failed(None, connection, job_name, 'Agent Job', f'Job run outcome {run_status}: {message}')
    return reporter.emit(status) if reporter is not None else status
