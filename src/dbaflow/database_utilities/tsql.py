# dbaflow - SQL Server administration workflows
#
# Copyright 2019 - 2024 ALM Partners Oy
# SPDX-License-Identifier: Apache-2.0

"""Helpers for generating T-SQL text from catalog values."""
from typing import Optional, Union


def quote_name(name: str) -> str:
    """Delimit identifier with brackets, as QUOTENAME does."""
    return '[' + str(name).replace(']', ']]') + ']'


def quote_string(value: Optional[str]) -> str:
    """Unicode string literal, or NULL."""
    if value is None:
        return 'NULL'
    return "N'" + str(value).replace("'", "''") + "'"


def quote_value(value: Union[str, int, bool, None]) -> str:
    """Literal for a procedure parameter value."""
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, int):
        return str(value)
    return quote_string(value)


def hex_literal(value: Union[bytes, bytearray, str, None]) -> str:
    """Binary literal (0x...) for SIDs and password hashes."""
    if value is None:
        return 'NULL'
    if isinstance(value, str):
        return value if value.lower().startswith('0x') else '0x' + value
    return '0x' + bytes(value).hex().upper()


def exec_procedure(procedure: str, **parameters) -> str:
    """EXEC statement with named parameters. None values are left out."""
    arguments = [f'@{name} = {quote_value(value)}' for name, value in parameters.items() if value is not None]
    if not arguments:
        return f'EXEC {procedure}'
    return f'EXEC {procedure} ' + ', '.join(arguments)
