"""Row image serialization for change records.

snapshot_row() turns a database row into a JSON document keyed by column
name. restore_row() re-derives typed Python values from such a document using
each column's declared Python type, so that

    restore_row(table, snapshot_row(table, row)) == row

holds for every supported column type (numeric, text, boolean, temporal,
UUID, enum, binary and JSON values).
"""

from __future__ import annotations

import base64
import functools
import math
from collections.abc import Mapping
from typing import Any

from pydantic import TypeAdapter
from pydantic_core import PydanticSerializationError, to_jsonable_python
from sqlalchemy import Column, Table

from datastore_custodian.change_capture.records import RowDocument
from datastore_custodian.errors import CaptureSerializationError


def _reject_non_finite(value: Any) -> None:
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"non-finite float {value!r} has no JSON representation")
    if isinstance(value, dict):
        for item in value.values():
            _reject_non_finite(item)
    elif isinstance(value, list):
        for item in value:
            _reject_non_finite(item)


def _to_document_value(value: Any) -> Any:
    document_value = to_jsonable_python(value, bytes_mode="base64")
    _reject_non_finite(document_value)
    return document_value


def snapshot_row(table: Table, row: Mapping[str, Any]) -> RowDocument:
    """Serialize one row image into a JSON-compatible document.

    Args:
        table: The table the row belongs to.
        row: Row mapping keyed by column name.

    Returns:
        Dict of column name to JSON-compatible value.

    Raises:
        CaptureSerializationError: If any column value has no JSON form.
    """
    document: RowDocument = {}
    for column in table.columns:
        value = row[column.name]
        try:
            document[column.name] = _to_document_value(value)
        except (PydanticSerializationError, ValueError, TypeError) as exc:
            raise CaptureSerializationError(table.name, column.name, str(exc)) from exc
    return document


@functools.lru_cache(maxsize=128)
def _adapter_for(python_type: type) -> TypeAdapter[Any]:
    return TypeAdapter(python_type)


def _from_document_value(column: Column[Any], value: Any) -> Any:
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return value
    if python_type is bytes:
        return base64.b64decode(value)
    if python_type in (dict, list):
        return value
    return _adapter_for(python_type).validate_python(value)


def restore_row(table: Table, document: RowDocument) -> dict[str, Any]:
    """Re-derive typed row values from a change record document.

    Columns absent from the document (e.g. added after the record was
    written) are omitted; keys not matching a current column are returned
    unchanged.

    Args:
        table: The table the document was captured from.
        document: An old_state or new_state document.

    Returns:
        Dict of column name to Python value.
    """
    columns = {column.name: column for column in table.columns}
    row: dict[str, Any] = {}
    for name, value in document.items():
        column = columns.get(name)
        if value is None or column is None:
            row[name] = value
        else:
            row[name] = _from_document_value(column, value)
    return row
