import pytest

import dbaflow.operations.tsql.dbmail as dbmail
from dbaflow.errors import ConfigurationError
from dbaflow.status import Status, StatusReporter


@pytest.fixture
def mail_source(source):
    source.on(dbmail.QUERIES['get_accounts'], [{
        'name': 'AcctX', 'description': 'Alerts from SQL01', 'email_address': 'sql01@contoso.com',
        'display_name': 'SQL01 alerts', 'replyto_address': None
    }])
    source.on(dbmail.QUERIES['get_profiles'], [{'name': 'Alerts', 'description': None}])
    source.on(dbmail.QUERIES['get_profile_accounts'], [
        {'profile_name': 'Alerts', 'account_name': 'AcctX', 'sequence_number': 1}
    ])
    source.on(dbmail.QUERIES['get_profile_principals'], [
        {'profile_name': 'Alerts', 'principal_sid': b'\x00', 'is_default': True, 'principal_name': 'public'}
    ])
    source.on(dbmail.QUERIES['get_servers'], [{
        'account_name': 'AcctX', 'servername': 'smtp.contoso.com', 'servertype': 'SMTP', 'port': 587,
        'username': None, 'use_default_credentials': False, 'enable_ssl': True
    }])
    return source


def test_read_profiles_should_attach_accounts_and_principals(mail_source):
    profiles = dbmail.read_profiles(mail_source)
    assert len(profiles) == 1
    assert profiles[0].accounts == [('AcctX', 1)]
    assert profiles[0].principals == [('public', True)]


def test_profile_with_missing_account_should_be_skipped(mail_source, destination, resolver):
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Profiles'], resolver=resolver)
    assert list(results) == ['Profiles']
    status = results['Profiles'][0]
    assert status.status == Status.SKIPPED
    assert 'AcctX' in status.notes
    assert destination.executed == []


def test_profile_should_be_created_in_one_transaction(mail_source, destination, resolver):
    destination.on(dbmail.QUERIES['get_account_names'], [{'name': 'AcctX'}])
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Profiles'], resolver=resolver)
    assert results['Profiles'][0].status == Status.SUCCESSFUL
    assert destination.executed == [
        "EXEC msdb.dbo.sysmail_add_profile_sp @profile_name = N'Alerts'",
        "EXEC msdb.dbo.sysmail_add_profileaccount_sp @profile_name = N'Alerts', @account_name = N'AcctX', "
        "@sequence_number = 1",
        "EXEC msdb.dbo.sysmail_add_principalprofile_sp @profile_name = N'Alerts', @principal_name = N'public', "
        "@is_default = 1",
    ]


def test_failed_profile_script_should_leave_nothing_behind(mail_source, destination, resolver):
    destination.on(dbmail.QUERIES['get_account_names'], [{'name': 'AcctX'}])
    destination.fail('sysmail_add_principalprofile_sp', 'principal not found')
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Profiles'], resolver=resolver)
    assert results['Profiles'][0].status == Status.FAILED
    assert 'principal not found' in results['Profiles'][0].notes
    assert destination.executed == []


def test_account_should_be_rewritten_for_destination(mail_source, destination, resolver):
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Accounts'], resolver=resolver)
    assert results['Accounts'][0].status == Status.SUCCESSFUL
    statement = destination.executed[0]
    assert statement.startswith('EXEC msdb.dbo.sysmail_add_account_sp')
    assert "@display_name = N'SQL02 alerts'" in statement
    assert "@email_address = N'SQL02@contoso.com'" in statement
    assert "@description = N'Alerts from SQL02'" in statement


def test_existing_account_should_be_skipped_without_force(mail_source, destination, resolver):
    destination.on(dbmail.QUERIES['account_exists'], [{'name': 'AcctX'}])
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Accounts'], resolver=resolver)
    assert results['Accounts'][0].status == Status.SKIPPED
    assert results['Accounts'][0].notes == 'Already exists on destination'


def test_mail_server_should_update_account(mail_source, destination, resolver):
    destination.on(dbmail.QUERIES['account_exists'], [{'name': 'AcctX'}])
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['MailServers'], resolver=resolver)
    status = results['MailServers'][0]
    assert status.status == Status.SUCCESSFUL
    assert status.name == 'smtp.contoso.com (AcctX)'
    assert destination.executed == [
        "EXEC msdb.dbo.sysmail_update_account_sp @account_name = N'AcctX', "
        "@mailserver_name = N'smtp.contoso.com', @mailserver_type = N'SMTP', @port = 587, "
        "@use_default_credentials = 0, @enable_ssl = 1"
    ]


def test_configuration_values_should_respect_force(source, destination):
    source.on(dbmail.QUERIES['get_configuration'], [
        {'paramname': 'AccountRetryAttempts', 'paramvalue': '1'},
        {'paramname': 'MaxFileSize', 'paramvalue': '2000000'},
        {'paramname': 'LoggingLevel', 'paramvalue': '2'},
    ])
    destination.on(dbmail.QUERIES['get_configuration'], [
        {'paramname': 'AccountRetryAttempts', 'paramvalue': '1'},
        {'paramname': 'MaxFileSize', 'paramvalue': '1000000'},
    ])
    results = dbmail.copy_mail_configuration(source, destination)
    assert [(result.name, result.status) for result in results] == [
        ('AccountRetryAttempts', Status.SKIPPED),
        ('MaxFileSize', Status.SKIPPED),
        ('LoggingLevel', Status.SUCCESSFUL),
    ]
    assert 'use force' in results[1].notes
    assert destination.executed == [
        "EXEC msdb.dbo.sysmail_configure_sp @parameter_name = N'LoggingLevel', @parameter_value = N'2'"
    ]

    forced = dbmail.copy_mail_configuration(source, destination, force=True)
    assert forced[1].status == Status.SUCCESSFUL


def test_mail_xps_should_be_enabled_when_enabled_on_source(source, destination):
    source.on(dbmail.QUERIES['get_mail_xps'], [{'value_in_use': 1}])
    destination.on(dbmail.QUERIES['get_mail_xps'], [{'value_in_use': 0}])
    results = dbmail.copy_mail_configuration(source, destination)
    assert [(result.name, result.notes) for result in results] == [('Database Mail XPs', 'Enabled')]
    assert destination.executed == [
        "EXEC sp_configure N'show advanced options', 1; RECONFIGURE WITH OVERRIDE;",
        "EXEC sp_configure N'Database Mail XPs', 1; RECONFIGURE WITH OVERRIDE;",
        "EXEC sp_configure N'show advanced options', 0; RECONFIGURE WITH OVERRIDE;",
    ]


def test_all_categories_should_be_returned_in_order(mail_source, destination, resolver):
    reporter = StatusReporter()
    results = dbmail.copy_db_mail(mail_source, ['SQL02'], resolver=resolver, reporter=reporter)
    assert list(results) == ['ConfigurationValues', 'Accounts', 'Profiles', 'MailServers']
    assert results['ConfigurationValues'] == []
    assert len(reporter.results) == 3


def test_unknown_category_should_raise(mail_source, resolver):
    with pytest.raises(ConfigurationError):
        dbmail.copy_db_mail(mail_source, ['SQL02'], categories=['Operators'], resolver=resolver)


def test_source_as_destination_should_skip_every_object(mail_source, resolver):
    mail_source.on(dbmail.QUERIES['get_configuration'], [{'paramname': 'LoggingLevel', 'paramvalue': '2'}])
    reporter = StatusReporter()
    results = dbmail.copy_db_mail(mail_source, ['SQL01'], resolver=resolver, reporter=reporter)
    assert {category: [(result.name, result.status) for result in statuses]
            for category, statuses in results.items()} == {
        'ConfigurationValues': [('LoggingLevel', Status.SKIPPED)],
        'Accounts': [('AcctX', Status.SKIPPED)],
        'Profiles': [('Alerts', Status.SKIPPED)],
        'MailServers': [('smtp.contoso.com (AcctX)', Status.SKIPPED)],
    }
    assert {result.notes for result in reporter.results} == {'Source and destination are the same instance'}
    assert mail_source.executed == []
