# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

import os
from logging import getLogger
from pathlib import Path
from typing import Iterable, List, Union

import commentjson as cjson
import yaml

logger = getLogger('dbaflow')

CONFIG_KEY = 'DBAFLOW'


def load_conf(conf_file: str, key: str = CONFIG_KEY) -> dict:
    """Read configuration from JSON, JSONC or YAML file.

    Return contents of 'key' block, or the whole document if the block does not exist.
    """
    if str(conf_file).lower().endswith(('.yaml', '.yml')):
        return load_yaml_conf(conf_file, key=key)
    return load_json_conf(conf_file, key=key)


def load_json_conf(conf_file: str, key: str = CONFIG_KEY) -> dict:
    """Read configuration from file (JSON or JSONC)."""
    f_path = Path(conf_file)
    if not f_path.is_file():
        logger.error("No such file: " + f_path.absolute().as_posix())
        return None
    with open(f_path, encoding='utf-8') as f:
        data = cjson.loads(f.read())
    return _select_block(data, key)


def load_yaml_conf(conf_file: str, key: str = CONFIG_KEY) -> dict:
    """Read configuration from YAML file."""
    f_path = Path(conf_file)
    if not f_path.is_file():
        logger.error("No such file: " + f_path.absolute().as_posix())
        return None
    with open(f_path, encoding='utf-8') as f:
        data = yaml.safe_load(f)
    return _select_block(data, key)


def _select_block(data: dict, key: str) -> dict:
    if data is None:
        return {}
    if key:
        key_value = data.get(key, None)
        if key_value:
            return key_value
    return data


def get_config_path(config_filename: str) -> str:
    '''Get configuration filename from environment variable if not given as argument.'''
    if config_filename is None and 'DBAFLOW_CONFIG_PATH' in os.environ:
        return os.environ.get('DBAFLOW_CONFIG_PATH')
    return config_filename


def are_you_sure(message: Union[str, list], use_logger: bool = True) -> bool:
    """Ask confirmation for action.

    Arguments
    ---------
    message: str or list
        Message(s) to display before user confirmation.
    use_logger: bool
        If false, logger is disabled.

    Returns
    -------
    bool
        True if the action is going to happen, False if the user does not permit the action.
    """
    display_message(message, use_logger)
    display_message("Are you sure you want to proceed?", use_logger)
    choise = input('[Y/N] (N): ')
    if choise == 'y' or choise == 'Y':
        display_message('confirmed', use_logger)
        return True
    display_message('cancelled', use_logger)
    return False


def display_message(message: Union[str, list], use_logger: bool = True):
    """ Print or log a message (str) or multiple messages (list). """
    if isinstance(message, list):
        for msg in message:
            logger.info(msg) if use_logger else print(msg)
    else:
        logger.info(message) if use_logger else print(message)


def format_to_table(lst_of_iter: List[Iterable]) -> str:
    """Format list of iterables to nice human-readable table."""
    if not lst_of_iter:
        return 'No output.'
    col_widths = [0]*len(lst_of_iter[0])
    for row in lst_of_iter:
        for i, cell in enumerate(row):
            col_widths[i] = max(col_widths[i], len(str(cell)))
    col_formats = [f"{{:<{width + 2}}}" for width in col_widths]
    formatted_output = ''
    for row in lst_of_iter:
        for i, cell in enumerate(row):
            formatted_output += col_formats[i].format(str(cell))
        formatted_output += '\n'
    return formatted_output
