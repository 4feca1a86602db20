# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Module for logging the progress of commands."""
from datetime import datetime
from logging import getLogger
from time import perf_counter
from traceback import format_exception

logger = getLogger('dbaflow')


class OperationManager:
    """Context for one step of a command.

    Logs a timestamped banner when entered and the elapsed time when left.
    An escaping exception is logged with its traceback and re-raised.

    Arguments
    ---------
    message
        Description of the step.
    target
        Instance or object the step works on, appended to the banner.
    """

    def __init__(self, message: str, target: str = None):
        self.message = message if target is None else f'{message} ({target})'
        self.started = None

    def __enter__(self):
        self.started = perf_counter()
        logger.info(format_message(self.message))
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if traceback is not None:
            logger.error(''.join(format_exception(
                exc_type, exc_value, traceback)))
        logger.debug(f'{self.message} finished in {perf_counter() - self.started:.1f} s')
        logger.info('------')


def format_message(mssg: str) -> str:
    '''Add timestamp before the message.'''
    time_string = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    return f'[{time_string}] {mssg}'
