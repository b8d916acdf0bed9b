"""Change capture - synchronous row mutation auditing.

Every mutation of a captured table produces exactly one immutable
ChangeRecord, co-committed with the mutation in the same transaction.
"""

from __future__ import annotations

from datastore_custodian.change_capture.engine import (
    ACTOR_INFO_KEY,
    CaptureHandle,
    ChangeCaptureEngine,
    acting_as,
)
from datastore_custodian.change_capture.records import ChangeOperation, ChangeRecord
from datastore_custodian.change_capture.serialization import restore_row, snapshot_row
from datastore_custodian.change_capture.store import ChangeLogStore

__all__ = [
    "ACTOR_INFO_KEY",
    "CaptureHandle",
    "ChangeCaptureEngine",
    "ChangeLogStore",
    "ChangeOperation",
    "ChangeRecord",
    "acting_as",
    "restore_row",
    "snapshot_row",
]
