# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Utility for building connection info of an instance from configuration.
"""
from logging import getLogger

from dbaflow.credential_handler import Credential, get_credentials
from dbaflow.instance import InstanceRef

logger = getLogger('dbaflow')

DEFAULT_DRIVER = 'ODBC Driver 18 for SQL Server'


def create_conn_info(conf: dict, instance: InstanceRef, credential: Credential = None, database: str = 'master') -> dict:
    """Create a dictionary holding all important items for creating a connection to an instance.
    Call get_credentials to either read credentials from file or ask them from user,
    unless a credential is given or integrated authentication is configured.

    Arguments
    ---------
    conf
        Configuration loaded from file.
    instance
        The instance to connect to.
    credential
        Credential to use instead of the stored ones.
    database
        Initial database of the connection.

    Returns
    -------
    dict
        Dictionary with the following keys: instance, host, port, server, database, driver,
        dialect, username, password, sqla_url_query_map and sqla_engine_params.
    """
    driver = conf.get('sql_driver', DEFAULT_DRIVER)
    dialect = conf.get('sql_dialect', 'mssql+pyodbc')
    sqla_url_query_map = dict(conf.get('sqla_url_query_map', {}))
    sqla_engine_params = {}

    # Driver specific default settings
    if isinstance(driver, str):
        driver_lower = driver.lower()
        if driver_lower.startswith("odbc driver"):
            if "Encrypt" not in sqla_url_query_map:
                sqla_url_query_map["Encrypt"] = "yes" if driver_lower == "odbc driver 18 for sql server" else "no"
            if driver_lower == "odbc driver 18 for sql server":
                sqla_url_query_map["LongAsMax"] = "Yes"
                sqla_url_query_map.setdefault("TrustServerCertificate", "yes")

    # Parameters for sqlalchemy engine
    for key, value in conf.items():
        if key.startswith("sqlalchemy."):
            sqla_engine_params[key[11:]] = value

    if credential is None:
        if conf.get('windows_authentication', False):
            credential = Credential('', '')
        else:
            credential = get_credentials(
                cred_key=instance.credential_key or instance.full_name,
                usrn_file_path=conf.get('username_file'),
                pw_file_path=conf.get('password_file')
            )

    return {
        'instance': instance,
        'host': instance.full_name,
        'port': instance.port,
        'server': instance.server_string,
        'database': database,
        'driver': driver,
        'dialect': dialect,
        'username': credential.username or None,
        'password': credential.password or None,
        'sqla_url_query_map': sqla_url_query_map,
        'sqla_engine_params': sqla_engine_params
    }
