import pytest

import dbaflow.instance as instance
from dbaflow.errors import ConfigurationError


@pytest.mark.parametrize("value,computer,name,port", [
    ("SQL01", "SQL01", None, None),
    ("SQL01\\SALES", "SQL01", "SALES", None),
    ("SQL01,14330", "SQL01", None, 14330),
    ("sql01.contoso.com\\SALES,1500", "sql01.contoso.com", "SALES", 1500),
    ("(local)", "localhost", None, None),
    (".\\DEV", "localhost", "DEV", None),
])
def test_parse_instance_should_split_host_instance_and_port(value, computer, name, port):
    ref = instance.parse_instance(value)
    assert ref.computer_name == computer
    assert ref.instance_name == name
    assert ref.port == port


def test_default_instance_name_should_be_mssqlserver():
    ref = instance.parse_instance("SQL01")
    assert ref.is_default_instance
    assert ref.service_instance_name == 'MSSQLSERVER'
    assert ref.full_name == 'SQL01'


def test_explicit_mssqlserver_should_be_default_instance():
    ref = instance.parse_instance("SQL01\\MSSQLSERVER")
    assert ref.is_default_instance
    assert ref.full_name == 'SQL01'


def test_server_string_should_include_port():
    assert instance.parse_instance("SQL01\\SALES,1500").server_string == 'SQL01\\SALES,1500'
    assert str(instance.parse_instance("SQL01\\SALES,1500")) == 'SQL01\\SALES'


def test_parse_instance_should_return_given_instance_ref():
    ref = instance.InstanceRef('SQL01')
    assert instance.parse_instance(ref) is ref


@pytest.mark.parametrize("value", ["", "   ", None, "SQL01\\A\\B", "SQL01,port"])
def test_parse_instance_should_raise_for_invalid_names(value):
    with pytest.raises(ConfigurationError):
        instance.parse_instance(value)
