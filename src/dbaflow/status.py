# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Status records returned by every command.

A command emits exactly one OperationStatus per target object per destination,
also when the object was skipped or the operation failed. Callers inspect
Status and Notes of each record instead of a single result for the whole call.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging import getLogger
from typing import Callable, Dict, List, Optional

from dbaflow.interface_methods import format_to_table

logger = getLogger('dbaflow')


class Status(str, Enum):
    SUCCESSFUL = 'Successful'
    SKIPPED = 'Skipped'
    FAILED = 'Failed'
    NOT_SUPPORTED = 'NotSupported'

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class OperationStatus:
    """Result of one operation on one target object on one destination."""
    source_server: Optional[str]
    destination_server: Optional[str]
    name: str
    type: str
    status: Status
    notes: Optional[str] = None
    date_time: datetime = field(default_factory=datetime.now)
    computer_name: Optional[str] = None
    instance_name: Optional[str] = None
    sql_instance: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.status, Status):
            # accepts 'Successful' etc., raises ValueError for anything else
            object.__setattr__(self, 'status', Status(self.status))

    @property
    def key(self) -> tuple:
        return (
            (self.destination_server or self.sql_instance or self.computer_name or '').lower(),
            self.type.lower(),
            self.name.lower()
        )

    def to_dict(self) -> Dict[str, object]:
        """Record in the uniform output shape shared by all commands."""
        output = {}
        if self.computer_name is not None:
            output['ComputerName'] = self.computer_name
        if self.instance_name is not None:
            output['InstanceName'] = self.instance_name
        if self.sql_instance is not None:
            output['SqlInstance'] = self.sql_instance
        if self.source_server is not None:
            output['SourceServer'] = self.source_server
        if self.destination_server is not None:
            output['DestinationServer'] = self.destination_server
        output.update({
            'Name': self.name,
            'Type': self.type,
            'Status': str(self.status),
            'Notes': self.notes,
            'DateTime': self.date_time
        })
        return output


def successful(source, destination, name: str, object_type: str, notes: str = None, **kwargs) -> OperationStatus:
    return OperationStatus(_server_name(source), _server_name(destination), name, object_type,
                           Status.SUCCESSFUL, notes, **kwargs)


def skipped(source, destination, name: str, object_type: str, notes: str = None, **kwargs) -> OperationStatus:
    return OperationStatus(_server_name(source), _server_name(destination), name, object_type,
                           Status.SKIPPED, notes, **kwargs)


def failed(source, destination, name: str, object_type: str, notes: str = None, **kwargs) -> OperationStatus:
    return OperationStatus(_server_name(source), _server_name(destination), name, object_type,
                           Status.FAILED, notes, **kwargs)


def not_supported(source, destination, name: str, object_type: str, notes: str = None, **kwargs) -> OperationStatus:
    return OperationStatus(_server_name(source), _server_name(destination), name, object_type,
                           Status.NOT_SUPPORTED, notes, **kwargs)


def _server_name(server) -> Optional[str]:
    """Accept a live connection, an InstanceRef or a plain name."""
    if server is None:
        return None
    return getattr(server, 'name', None) or str(server)


class StatusReporter:
    """Collects the status records of one command invocation.

    Arguments
    ---------
    callback
        Called with every emitted record, e.g. for printing progress.
    """

    def __init__(self, callback: Callable[[OperationStatus], None] = None):
        self.callback = callback
        self.results: List[OperationStatus] = []
        self.errors: List[tuple] = []
        self._keys = set()

    def emit(self, status: OperationStatus) -> OperationStatus:
        """Record one status. Every (destination, type, name) is reported only once."""
        if status.key in self._keys:
            raise ValueError(f'Status already reported for {status.type} {status.name} '
                             f'on {status.destination_server or status.sql_instance}')
        self._keys.add(status.key)
        self.results.append(status)
        message = f'{status.type} {status.name}: {status.status}'
        if status.notes:
            message += f' ({status.notes})'
        if status.status == Status.FAILED:
            logger.error(message)
        else:
            logger.info(message)
        if self.callback is not None:
            self.callback(status)
        return status

    def extend(self, statuses: List[OperationStatus]) -> List[OperationStatus]:
        return [self.emit(status) for status in statuses]

    def record_error(self, target: str, error: Exception):
        """Store an error that prevented processing a whole target (e.g. connection failure)."""
        logger.error(str(error))
        self.errors.append((target, error))

    def count(self, status: Status) -> int:
        return len([result for result in self.results if result.status == status])

    def summary(self) -> Dict[str, int]:
        return {str(status): self.count(status) for status in Status}

    def to_dicts(self) -> List[dict]:
        return [result.to_dict() for result in self.results]

    def to_table(self) -> str:
        if not self.results:
            return format_to_table([])
        rows = [['Source', 'Destination', 'Type', 'Name', 'Status', 'Notes']]
        for result in self.results:
            rows.append([
                result.source_server or result.computer_name or '',
                result.destination_server or result.sql_instance or '',
                result.type,
                result.name,
                str(result.status),
                result.notes or ''
            ])
        return format_to_table(rows)


def host_status(factory, connection, name: str, object_type: str, notes: str = None) -> OperationStatus:
    """Record of a host level command, identified by computer and instance instead of source and destination."""
    return factory(
        None, None, name, object_type, notes,
        computer_name=connection.computer_name,
        instance_name=connection.instance_name,
        sql_instance=connection.name
    )
