"""Runtime records produced while replaying an operation log."""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, List, Optional

from scenario import Number, Operation

# Synthetic transaction that owns every seed version. Always committed.
INITIAL_TX_ID = 0


class TransactionStatus(Enum):
    """
    Enumeration of transaction lifecycle states.

    ACTIVE: Transaction has begun and may still read and write
    COMMITTED: Transaction has committed; terminal
    ABORTED: Transaction has been rolled back; terminal
    """
    ACTIVE = "active"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class Version:
    """
    One value of a data item in a multi-version store.

    ``tx_min`` is the creating transaction. ``tx_max`` is the transaction
    that superseded this version, or None while it is current.
    """

    id: str
    item: str
    value: Number
    tx_min: int
    tx_max: Optional[int] = None


@dataclass
class DataCell:
    """The single, in-place value of an item when no isolation is used."""

    value: Number
    last_writer_id: int = INITIAL_TX_ID
    committed: bool = True


@dataclass(frozen=True)
class ReadRecord:
    item: str
    value_observed: Optional[Number]
    time: Number
    version_id_observed: Optional[str] = None
    dirty: bool = False


@dataclass(frozen=True)
class WriteRecord:
    item: str
    value: Number
    time: Number
    new_version_id: Optional[str] = None
    old_version_id: Optional[str] = None
    overwrote_uncommitted: bool = False


@dataclass(frozen=True)
class UndoRecord:
    """Pre-transaction contents of a cell, captured on the first write."""

    item: str
    old_value: Number
    old_writer_id: int
    old_committed: bool


@dataclass
class Transaction:
    """
    Runtime record of a transaction, created when its begin is replayed.

    Attributes:
        id: Integer id assigned in replay order, starting at 1
        name: Transaction name from the scenario (e.g. "T1")
        start_time: Time of the begin operation
        status: Lifecycle state; only ACTIVE transactions act
        snapshot_committed_ids: Ids committed when the transaction began
        reads: Every read in replay order
        writes: Every accepted write in replay order
        undo_log: Before-images for rollback (no-isolation mode only)
    """

    id: int
    name: str
    start_time: Number
    status: TransactionStatus = TransactionStatus.ACTIVE
    snapshot_committed_ids: FrozenSet[int] = frozenset()
    reads: List[ReadRecord] = field(default_factory=list)
    writes: List[WriteRecord] = field(default_factory=list)
    undo_log: List[UndoRecord] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status is TransactionStatus.ACTIVE


@dataclass(frozen=True)
class IgnoredOperation:
    """An operation the replay dropped, and why."""

    step: int
    operation: Operation
    reason: str


@dataclass(frozen=True)
class WriteConflict:
    """A write rejected because its base version was already superseded."""

    step: int
    operation: Operation
    version_id: str
    holder_id: int
