# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Generic copy operation: existence check, dependency check, drop and create.

Every copy command implements a subclass of CopyOperation. The state machine
for one object on one destination is

    exists and not force    -> Skipped ("Already exists on destination")
    missing dependency      -> Skipped (note names the dependency)
    not confirmed           -> Skipped
    prepare fails           -> Failed, nothing dropped
    exists and force        -> drop, create -> Successful or Failed
    does not exist          -> create -> Successful or Failed

Dependencies are checked and the source side is prepared (for example a
backup taken) before the drop, so a forced copy never removes the
destination object when it could not be recreated. Create is an ordered list
of strategies; the first one that succeeds wins.
"""
import re
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Iterable, List, Optional, Tuple

from dbaflow.database_utilities.connection import connect_each
from dbaflow.errors import DependencyMissing
from dbaflow.status import OperationStatus, StatusReporter, failed, skipped, successful

logger = getLogger('dbaflow')

ALREADY_EXISTS = 'Already exists on destination'
NOT_CONFIRMED = 'Not confirmed'
SAME_INSTANCE = 'Source and destination are the same instance'


@dataclass
class Strategy:
    """One way of creating an object."""
    name: str
    function: Callable[[], None]


@dataclass
class StrategyResult:
    succeeded: bool
    strategy: Optional[str] = None
    errors: List[Tuple[str, Exception]] = field(default_factory=list)

    @property
    def error_message(self) -> str:
        return '; '.join(f'{name}: {error}' for name, error in self.errors)


def try_strategies(strategies: Iterable[Strategy]) -> StrategyResult:
    """Run strategies in order until one of them succeeds."""
    errors = []
    for strategy in strategies:
        try:
            strategy.function()
        except Exception as err:
            logger.debug(f'Strategy {strategy.name} failed: {err}')
            errors.append((strategy.name, err))
            continue
        return StrategyResult(True, strategy.name, errors)
    return StrategyResult(False, None, errors)


def always_confirm(description: str) -> bool:
    return True


def rewrite_identity(value: Optional[str], old_name: str, new_name: str) -> Optional[str]:
    """Replace old_name with new_name in one field value.

    Only whole names are replaced: 'SQL01' is rewritten in 'SQL01 mail' and
    'sql01@contoso.com', but not in 'SQL011'. Comparison is case insensitive.
    """
    if value is None or not old_name or old_name.lower() == new_name.lower():
        return value
    pattern = re.compile(r'(?<![A-Za-z0-9_])' + re.escape(old_name) + r'(?![A-Za-z0-9_])', re.IGNORECASE)
    return pattern.sub(lambda _: new_name, value)


class CopyOperation:
    """Base class for copying objects of one type from source to one destination.

    Arguments
    ---------
    source
        Live connection to the source instance.
    destination
        Live connection to the destination instance.
    force
        Drop and recreate objects that already exist on destination.
    confirm
        Called with a description before each change, returns False to skip the change.
    """

    object_type = 'Object'

    def __init__(self, source, destination, force: bool = False, confirm: Callable[[str], bool] = None):
        self.source = source
        self.destination = destination
        self.force = force
        self.confirm = confirm or always_confirm

    def item_name(self, item) -> str:
        return item.name

    def skip_reason(self, item) -> Optional[str]:
        """Reason to leave the object alone regardless of force, or None."""
        return None

    def exists(self, item) -> bool:
        raise NotImplementedError

    def missing_dependencies(self, item) -> List[DependencyMissing]:
        return []

    def prepare(self, item):
        """Work on source needed by create, run before anything is dropped on destination."""
        return None

    def drop(self, item):
        raise NotImplementedError

    def create_strategies(self, item) -> List[Strategy]:
        raise NotImplementedError

    def after_create(self, item) -> Optional[str]:
        """Follow-up work after a successful create. Returns a note or None."""
        return None

    def status(self, factory, item, notes: str = None) -> OperationStatus:
        return factory(self.source, self.destination, self.item_name(item), self.object_type, notes)

    def execute(self, item) -> OperationStatus:
        """Copy one object and return its status. Never raises."""
        name = self.item_name(item)
        try:
            reason = self.skip_reason(item)
            if reason is not None:
                return self.status(skipped, item, reason)

            exists = self.exists(item)
            if exists and not self.force:
                return self.status(skipped, item, ALREADY_EXISTS)

            missing = self.missing_dependencies(item)
            if missing:
                return self.status(skipped, item, '; '.join(str(dependency) for dependency in missing))

            action = 'Dropping and recreating' if exists else 'Creating'
            if not self.confirm(f'{action} {self.object_type.lower()} {name} on {self.destination.name}'):
                return self.status(skipped, item, NOT_CONFIRMED)

            try:
                self.prepare(item)
            except Exception as err:
                return self.status(failed, item, f'Could not prepare {name}: {err}')

            if exists:
                try:
                    self.drop(item)
                except Exception as err:
                    return self.status(failed, item, f'Could not drop {name} on destination: {err}')

            result = try_strategies(self.create_strategies(item))
            if not result.succeeded:
                return self.status(failed, item, result.error_message)

            notes = []
            if result.errors:
                notes.append(f'Created with {result.strategy}')
            try:
                note = self.after_create(item)
            except Exception as err:
                note = f'Follow-up failed: {err}'
                logger.warning(f'{self.object_type} {name}: {note}')
            if note:
                notes.append(note)
            return self.status(successful, item, '; '.join(notes) or None)
        except Exception as err:
            return self.status(failed, item, str(err))


def run_operation(operation: CopyOperation, items: Iterable, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Execute operation for every item in order and report the statuses."""
    results = []
    for item in items:
        status = operation.execute(item)
        if reporter is not None:
            reporter.emit(status)
        results.append(status)
    return results


def skip_all(operation: CopyOperation, items: Iterable, notes: str, reporter: StatusReporter = None) -> List[OperationStatus]:
    """Report every item as Skipped on the destination of operation."""
    results = [operation.status(skipped, item, notes) for item in items]
    if reporter is not None:
        reporter.extend(results)
    return results


def run_copy(operation_class, source, destinations: Iterable, items: Iterable, resolver, force: bool = False,
        confirm: Callable[[str], bool] = None, reporter: StatusReporter = None, minimum_version: int = None,
        **options) -> List[OperationStatus]:
    """Run operation_class for every destination in the given order.

    Destinations that can not be connected are skipped, the others are processed.
    On a destination that is the source itself every item is Skipped.
    """
    items = list(items)
    results = []
    for destination in connect_each(resolver, destinations, reporter=reporter, minimum_version=minimum_version):
        operation = operation_class(source, destination, force=force, confirm=confirm, **options)
        if destination.name.lower() == source.name.lower():
            logger.warning(f'{SAME_INSTANCE} ({source.name}), skipping.')
            results.extend(skip_all(operation, items, SAME_INSTANCE, reporter))
            continue
        results.extend(run_operation(operation, items, reporter))
    return results
