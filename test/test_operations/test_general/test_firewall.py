import pytest

import dbaflow.operations.general.firewall as firewall
import dbaflow.operations.general.server_services as server_services
from dbaflow.errors import ConfigurationError, RemoteExecutionError
from dbaflow.status import Status, StatusReporter

ENGINE_FILENAME = '"C:\\Program Files\\Microsoft SQL Server\\MSSQL15.MSSQLSERVER\\MSSQL\\Binn\\sqlservr.exe" -sMSSQLSERVER'


def tcp_rows(instance_id, static_port='', dynamic_port='', dac_port=None):
    base = f'HKLM\\Software\\Microsoft\\Microsoft SQL Server\\{instance_id}\\MSSQLServer\\SuperSocketNetLib'
    rows = [
        {'registry_key': base + '\\Tcp\\IPAll', 'value_name': 'TcpPort', 'value_data': static_port},
        {'registry_key': base + '\\Tcp\\IPAll', 'value_name': 'TcpDynamicPorts', 'value_data': dynamic_port},
    ]
    if dac_port is not None:
        rows.append({'registry_key': base + '\\AdminConnection\\Tcp', 'value_name': 'TcpDynamicPorts',
                     'value_data': dac_port})
    return rows


@pytest.fixture
def named_instance(make_instance):
    connection = make_instance('SQL01\\INST1', instance_name='INST1')
    connection.on(server_services.QUERIES['get_services'], [
        {'servicename': 'SQL Server (INST1)', 'service_account': 'CONTOSO\\svc_sql',
         'filename': '"C:\\Program Files\\Microsoft SQL Server\\MSSQL15.INST1\\MSSQL\\Binn\\sqlservr.exe" -sINST1',
         'status_desc': 'Running'},
    ])
    connection.on(server_services.QUERIES['get_tcp_settings'], tcp_rows('MSSQL15.INST1', static_port='50123'))
    return connection


@pytest.fixture
def default_instance(make_instance):
    connection = make_instance('SQL02')
    connection.on(server_services.QUERIES['get_services'], [
        {'servicename': 'SQL Server Agent (MSSQLSERVER)', 'service_account': 'CONTOSO\\svc_agent',
         'filename': '"C:\\Program Files\\SQLAGENT.EXE" -i MSSQLSERVER', 'status_desc': 'Running'},
        {'servicename': 'SQL Server (MSSQLSERVER)', 'service_account': 'CONTOSO\\svc_sql',
         'filename': ENGINE_FILENAME, 'status_desc': 'Running'},
    ])
    connection.on(server_services.QUERIES['get_tcp_settings'], tcp_rows('MSSQL15.MSSQLSERVER', dynamic_port='0'))
    return connection


@pytest.fixture
def firewall_resolver(make_resolver, named_instance, default_instance):
    return make_resolver(named_instance, default_instance)


def test_service_program_should_strip_arguments():
    service = server_services.ServerService('SQL Server (MSSQLSERVER)', 'NT Service\\MSSQLSERVER', ENGINE_FILENAME)
    assert service.program == 'C:\\Program Files\\Microsoft SQL Server\\MSSQL15.MSSQLSERVER\\MSSQL\\Binn\\sqlservr.exe'
    assert service.is_engine
    assert not service.is_agent
    unquoted = server_services.ServerService('SQL Server (X)', 'svc', 'C:\\Binn\\sqlservr.exe -sX')
    assert unquoted.program == 'C:\\Binn\\sqlservr.exe'


def test_tcp_settings_should_read_ports(make_instance):
    connection = make_instance('SQL01').on(
        server_services.QUERIES['get_tcp_settings'],
        tcp_rows('MSSQL15.MSSQLSERVER', static_port='1433,1533', dynamic_port='', dac_port='51000')
    )
    settings = server_services.get_tcp_settings(connection)
    assert settings == server_services.TcpSettings(static_port=1433, dynamic_port=None, dac_port=51000)


def test_engine_service_should_be_found_among_services(default_instance):
    assert server_services.get_engine_service(default_instance).name == 'SQL Server (MSSQLSERVER)'


def test_named_instance_with_static_port(named_instance, firewall_resolver, fake_remote):
    fake_remote.on('Get-NetFirewallRule', [])
    reporter = StatusReporter()
    results = firewall.new_firewall_rule(['SQL01\\INST1'], resolver=firewall_resolver, remote=fake_remote,
                                         reporter=reporter)
    assert [(result.name, result.status) for result in results] == [
        ('SQL Server instance INST1', Status.SUCCESSFUL),
        ('SQL Server Browser', Status.SUCCESSFUL),
    ]
    assert results[0].notes == 'Engine rule for port 50123/TCP'
    assert results[0].computer_name == 'SQL01'
    assert results[0].instance_name == 'INST1'
    assert results[0].sql_instance == 'SQL01\\INST1'
    engine = fake_remote.calls[1][2]['parameters']
    assert engine['LocalPort'] == '50123'
    assert engine['Name'] == engine['DisplayName'] == 'SQL Server instance INST1'
    assert 'Program' not in engine
    browser = fake_remote.calls[2][2]['parameters']
    assert (browser['Protocol'], browser['LocalPort']) == ('UDP', '1434')
    assert len(reporter.results) == 2


def test_default_instance_with_dynamic_port_should_use_program(default_instance, firewall_resolver, fake_remote):
    fake_remote.on('Get-NetFirewallRule', [])
    results = firewall.new_firewall_rule(['SQL02'], rule_type=['Engine', 'DAC'], resolver=firewall_resolver,
                                         remote=fake_remote)
    assert [result.name for result in results] == ['SQL Server default instance', 'SQL Server default instance (DAC)']
    engine = fake_remote.calls[1][2]['parameters']
    assert engine['Program'].endswith('sqlservr.exe')
    assert 'LocalPort' not in engine
    assert fake_remote.calls[2][2]['parameters']['LocalPort'] == '1434'


def test_existing_rule_should_be_replaced_only_with_force(default_instance, firewall_resolver, fake_remote):
    fake_remote.on('Get-NetFirewallRule', ['SQL Server default instance'])
    results = firewall.new_firewall_rule(['SQL02'], resolver=firewall_resolver, remote=fake_remote)
    assert results[0].status == Status.SKIPPED
    assert results[0].notes == 'Already exists on destination'
    assert len(fake_remote.calls) == 1

    results = firewall.new_firewall_rule(['SQL02'], force=True, resolver=firewall_resolver, remote=fake_remote)
    assert results[0].status == Status.SUCCESSFUL
    assert fake_remote.calls[-1][2]['replace'] is True


def test_unreachable_computer_should_fail_each_rule(named_instance, firewall_resolver, fake_remote):
    fake_remote.on('Get-NetFirewallRule', RemoteExecutionError('SQL01', 'WinRM cannot complete the operation'))
    results = firewall.new_firewall_rule(['SQL01\\INST1'], resolver=firewall_resolver, remote=fake_remote)
    assert [result.status for result in results] == [Status.FAILED, Status.FAILED]
    assert 'WinRM cannot complete the operation' in results[0].notes


def test_unknown_port_should_fail(make_instance, make_resolver, fake_remote):
    connection = make_instance('SQL03')
    results = firewall.new_firewall_rule(['SQL03'], resolver=make_resolver(connection), remote=fake_remote)
    assert results[0].status == Status.FAILED
    assert fake_remote.calls == []


def test_unknown_rule_type_should_raise(firewall_resolver, fake_remote):
    with pytest.raises(ConfigurationError):
        firewall.new_firewall_rule(['SQL02'], rule_type=['Engine', 'Replication'], resolver=firewall_resolver,
                                   remote=fake_remote)
