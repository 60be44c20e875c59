"""
Visibility rules: which value a read sees and which version a write supersedes.

One resolver per isolation mode. Resolvers are pure: they inspect the item's
version history (or its single cell), the acting transaction and the global
committed set, and never modify any of them.
"""

from dataclasses import dataclass
from typing import AbstractSet, Dict, List, Optional

from models import DataCell, Transaction, Version
from scenario import IsolationMode, Number


@dataclass(frozen=True)
class ResolvedRead:
    value: Optional[Number]
    version_id: Optional[str] = None
    dirty: bool = False


def _latest(versions: List[Version]) -> Optional[Version]:
    # Greatest creator id wins; later creation breaks ties.
    best = None
    for version in versions:
        if best is None or version.tx_min >= best.tx_min:
            best = version
    return best


def _read_version(version: Optional[Version], transaction: Transaction, committed_ids: AbstractSet[int]) -> ResolvedRead:
    if version is None:
        return ResolvedRead(value=None)
    dirty = version.tx_min != transaction.id and version.tx_min not in committed_ids
    return ResolvedRead(value=version.value, version_id=version.id, dirty=dirty)


class SnapshotResolver:
    """
    Snapshot isolation.

    A version is visible to transaction T if T created it or its creator was
    committed when T began, and it was not superseded by a transaction that
    was committed when T began.
    """

    mode = IsolationMode.SNAPSHOT

    @staticmethod
    def is_visible(version: Version, transaction: Transaction, committed_ids: AbstractSet[int]) -> bool:
        snapshot = transaction.snapshot_committed_ids
        if version.tx_min != transaction.id and version.tx_min not in snapshot:
            return False
        return version.tx_max is None or version.tx_max not in snapshot

    def visible_version(self, history: List[Version], transaction: Transaction, committed_ids: AbstractSet[int]) -> Optional[Version]:
        return _latest([v for v in history if self.is_visible(v, transaction, committed_ids)])

    def resolve_read(self, history: List[Version], transaction: Transaction, committed_ids: AbstractSet[int]) -> ResolvedRead:
        return _read_version(self.visible_version(history, transaction, committed_ids), transaction, committed_ids)

    def resolve_write_base(self, history: List[Version], transaction: Transaction, committed_ids: AbstractSet[int]) -> Optional[Version]:
        return self.visible_version(history, transaction, committed_ids)


class ReadCommittedResolver(SnapshotResolver):
    """
    Read committed.

    Visibility is evaluated against the committed set at the moment of each
    read, so two reads by the same transaction can see different values.
    """

    mode = IsolationMode.READ_COMMITTED

    @staticmethod
    def is_visible(version: Version, transaction: Transaction, committed_ids: AbstractSet[int]) -> bool:
        if version.tx_min not in committed_ids:
            return False
        return version.tx_max is None or version.tx_max not in committed_ids


class NoIsolationResolver:
    """No isolation: one shared cell per item, uncommitted values are readable."""

    mode = IsolationMode.NONE

    def resolve_read(self, cell: DataCell, transaction: Transaction, committed_ids: AbstractSet[int]) -> ResolvedRead:
        dirty = not cell.committed and cell.last_writer_id != transaction.id
        return ResolvedRead(value=cell.value, dirty=dirty)

    def resolve_write_base(self, cell: DataCell, transaction: Transaction, committed_ids: AbstractSet[int]) -> None:
        return None


_RESOLVERS: Dict[IsolationMode, object] = {
    IsolationMode.SNAPSHOT: SnapshotResolver(),
    IsolationMode.READ_COMMITTED: ReadCommittedResolver(),
    IsolationMode.NONE: NoIsolationResolver(),
}


def resolver_for(mode: IsolationMode):
    """Return the resolver that implements ``mode``."""
    return _RESOLVERS[IsolationMode.parse(mode)]
