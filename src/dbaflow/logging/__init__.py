# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

import copy
from logging import getLogger, Logger
from logging.config import dictConfig


DBAFLOW_LOG_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "loggers": {
        "root": {
            "level": "WARN",
            "handlers": ["handler_console"]
        },
        "dbaflow": {
            "level": "DEBUG",
            "handlers": ["handler_file", "handler_console"],
            "propagate": False
        }
    },
    "handlers": {
        "handler_console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "level": "INFO",
            "formatter": "formatter_console"
        },
        "handler_file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": "dbaflow.log",
            "mode": "a+",
            "maxBytes": 1000000,
            "backupCount": 1,
            "level": "DEBUG",
            "formatter": "formatter_file"
        }
    },
    "formatters": {
        "formatter_console": {
            "format": "%(message)s"
        },
        "formatter_sqlalchemy": {
            "format": "%(levelname).7s [%(name)s] %(message)s",
            "datefmt": "%H:%M:%S"
        },
        "formatter_file": {
            "format": "[%(asctime)s] [%(name)s] %(levelname).7s %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S"
        }
    }
}


def build_log_config(log_file: str = None, enable_sqlalchemy_log: bool = False, console_level: str = "INFO") -> dict:
    """ Return the logging configuration of dbaflow.

    Parameters:
    -----------
    log_file: str
        Path of the rotating log file. dbaflow.log in the working directory by default.
    enable_sqlalchemy_log: bool
        Log the SQL statements run by SQLAlchemy engines.
    console_level: str
        Level of the console handler.
    """
    config = copy.deepcopy(DBAFLOW_LOG_CONFIG)
    if log_file:
        config["handlers"]["handler_file"]["filename"] = log_file
    config["handlers"]["handler_console"]["level"] = console_level
    if enable_sqlalchemy_log:
        config["handlers"]["handler_sqlalchemy_console"] = {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "level": "INFO",
            "formatter": "formatter_sqlalchemy"
        }
        config["loggers"]["sqlalchemy.engine"] = {
            "level": "INFO",
            "handlers": ["handler_sqlalchemy_console", "handler_file"],
            "propagate": False
        }
    return config


def setup_dbaflow_logger(log_file: str = None, enable_sqlalchemy_log: bool = False,
        console_level: str = "INFO") -> Logger:
    """ Set up the logger configuration for dbaflow.

    Returns:
    -----------
    logging.Logger:
        Logger object for dbaflow.
    """
    dictConfig(build_log_config(log_file, enable_sqlalchemy_log, console_level))
    return getLogger('dbaflow')
