from logging import getLogger

import pytest

import dbaflow.operation_manager as operation_manager
from dbaflow.logging import build_log_config, setup_dbaflow_logger


def test_build_log_config_should_use_given_log_file():
    config = build_log_config(log_file='logs/dbaflow_run.log', console_level='WARNING')
    assert config['handlers']['handler_file']['filename'] == 'logs/dbaflow_run.log'
    assert config['handlers']['handler_console']['level'] == 'WARNING'
    assert 'sqlalchemy.engine' not in config['loggers']


def test_build_log_config_should_not_change_defaults():
    build_log_config(log_file='other.log')
    assert build_log_config()['handlers']['handler_file']['filename'] == 'dbaflow.log'


def test_sqlalchemy_logging_should_be_optional():
    config = build_log_config(enable_sqlalchemy_log=True)
    assert config['loggers']['sqlalchemy.engine']['handlers'] == ['handler_sqlalchemy_console', 'handler_file']
    assert config['loggers']['sqlalchemy.engine']['propagate'] is False


def test_setup_dbaflow_logger_should_configure_dbaflow_logger(tmp_path):
    log_file = tmp_path / 'dbaflow.log'
    logger = setup_dbaflow_logger(log_file=str(log_file))
    assert logger is getLogger('dbaflow')
    logger.debug('written to file only')
    for handler in logger.handlers:
        handler.flush()
    assert 'written to file only' in log_file.read_text(encoding='utf-8')
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


@pytest.fixture
def logged(monkeypatch):
    messages = {'info': [], 'error': []}
    monkeypatch.setattr(operation_manager.logger, 'info', messages['info'].append)
    monkeypatch.setattr(operation_manager.logger, 'error', messages['error'].append)
    return messages


def test_operation_manager_should_log_banner(logged):
    with operation_manager.OperationManager('Copying logins', target='SQL01'):
        pass
    assert logged['info'][0].endswith('] Copying logins (SQL01)')
    assert logged['info'][-1] == '------'
    assert logged['error'] == []


def test_operation_manager_should_log_and_reraise(logged):
    with pytest.raises(ValueError):
        with operation_manager.OperationManager('Copying logins'):
            raise ValueError('broken catalog')
    assert 'ValueError: broken catalog' in logged['error'][0]
