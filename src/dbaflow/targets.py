# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Expansion of include/exclude filters to the objects a command works on.

The order of precedence is: all eligible objects, then intersection with the
include filter, then subtraction of the exclude filter. Exclude always wins.
Names are compared case insensitively.
"""
from dataclasses import dataclass
from logging import getLogger
from typing import Iterable, List, Optional

from dbaflow.errors import ConfigurationError

logger = getLogger('dbaflow')

SYSTEM_DATABASES = ('master', 'model', 'msdb', 'tempdb')

QUERIES = {
    'get_databases': """
        SELECT name, database_id, source_database_id, state_desc, is_read_only,
            SUSER_SNAME(owner_sid) AS owner_name
        FROM sys.databases
        ORDER BY name
    """
}


@dataclass(frozen=True)
class TargetObject:
    """A named object on one instance."""
    name: str
    type: str
    instance: Optional[str] = None


def as_list(names) -> List[str]:
    if names is None:
        return []
    if isinstance(names, str):
        return [names]
    return list(names)


def select_names(candidates: Iterable[str], include: Iterable[str] = None, exclude: Iterable[str] = None,
        all_objects: bool = False, require_filter: bool = False, ineligible: Iterable[str] = (),
        object_type: str = 'object') -> List[str]:
    """Filter candidate names.

    Arguments
    ---------
    candidates
        All object names in enumeration order.
    include
        Names to keep. If empty, all eligible candidates are kept.
    exclude
        Names to remove, applied after include.
    all_objects
        Explicit request for every eligible object.
    require_filter
        If True, one of include, exclude and all_objects must be given.
    ineligible
        Names that are never selected, whatever the filters say.
    object_type
        Used in messages only.

    Returns
    -------
    list
        Selected names in enumeration order. Empty list if nothing matched.
    """
    include = as_list(include)
    exclude = as_list(exclude)
    if require_filter and not include and not exclude and not all_objects:
        raise ConfigurationError(
            f'You must specify the {object_type}s to work on, exclude some of them or request all of them.'
        )
    ineligible_set = {name.lower() for name in ineligible}
    include_set = {name.lower() for name in include}
    exclude_set = {name.lower() for name in exclude}

    selected = [name for name in candidates if name.lower() not in ineligible_set]
    if include_set:
        selected = [name for name in selected if name.lower() in include_set]
    selected = [name for name in selected if name.lower() not in exclude_set]

    if not selected:
        logger.warning(f'No matching {object_type}s found.')
    return selected


def enumerate_databases(connection, include: Iterable[str] = None, exclude: Iterable[str] = None,
        all_databases: bool = False, require_filter: bool = True, exclude_system: Iterable[str] = SYSTEM_DATABASES,
        exclude_snapshots: bool = True, ineligible: Iterable[str] = ()) -> List[TargetObject]:
    """Return the databases of connection selected by the filters.

    System databases (exclude_system), database snapshots and the names in
    ineligible are never returned.
    """
    rows = connection.query(QUERIES['get_databases'])
    policy_excluded = {name.lower() for name in exclude_system} | {name.lower() for name in ineligible}
    candidates = []
    for row in rows:
        if exclude_snapshots and row.source_database_id is not None:
            continue
        candidates.append(row.name)
    names = select_names(
        candidates,
        include=include,
        exclude=exclude,
        all_objects=all_databases,
        require_filter=require_filter,
        ineligible=policy_excluded,
        object_type='database'
    )
    return [TargetObject(name, 'Database', connection.name) for name in names]


def get_database_rows(connection) -> dict:
    """Return sys.databases rows of connection by lower case name."""
    return {row.name.lower(): row for row in connection.query(QUERIES['get_databases'])}
