"""
Replay engine.

Folds a prefix of the operation log into a fresh SimulationState. Nothing is
patched incrementally: the state for step N is always rebuilt from step 0,
which makes stepping backwards exactly as correct as stepping forwards.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Union

from tabulate import tabulate

from models import (
    INITIAL_TX_ID,
    DataCell,
    IgnoredOperation,
    ReadRecord,
    Transaction,
    TransactionStatus,
    UndoRecord,
    Version,
    WriteConflict,
    WriteRecord,
)
from scenario import (
    IsolationMode,
    Number,
    Operation,
    OperationKind,
    Scenario,
    SeedItem,
    assign_seed_items,
    version_prefix,
)
from visibility import resolver_for

logger = logging.getLogger(__name__)


@dataclass
class SimulationState:
    """
    Database and transaction state after replaying ``step`` operations.

    Exactly one of ``versions`` (multi-version modes) and ``cells``
    (no-isolation mode) is populated.
    """

    mode: IsolationMode
    step: int = 0
    versions: Dict[str, List[Version]] = field(default_factory=dict)
    cells: Dict[str, DataCell] = field(default_factory=dict)
    transactions: Dict[str, Transaction] = field(default_factory=dict)
    committed_ids: Set[int] = field(default_factory=lambda: {INITIAL_TX_ID})
    next_tx_id: int = 1
    applied: List[Operation] = field(default_factory=list)
    ignored: List[IgnoredOperation] = field(default_factory=list)
    conflicts: List[WriteConflict] = field(default_factory=list)
    version_counters: Dict[str, int] = field(default_factory=dict)
    version_prefixes: Dict[str, str] = field(default_factory=dict)

    @property
    def items(self) -> List[str]:
        return list(self.versions if self.mode.is_multiversion else self.cells)

    @property
    def current_operation(self) -> Optional[Operation]:
        return self.applied[-1] if self.applied else None

    @property
    def time(self) -> Number:
        return self.applied[-1].time if self.applied else 0

    def transaction_by_id(self, tx_id: Optional[int]) -> Optional[Transaction]:
        return next((tx for tx in self.transactions.values() if tx.id == tx_id), None)

    def tx_label(self, tx_id: Optional[int]) -> str:
        if tx_id is None:
            return "-"
        if tx_id == INITIAL_TX_ID:
            return "initial"
        tx = self.transaction_by_id(tx_id)
        return tx.name if tx else f"Tx{tx_id}"

    def committed_value(self, item: str) -> Optional[Number]:
        """
        The value a transaction starting now would see as committed.

        Multi-version modes pick the newest version whose creator committed
        and whose invalidator has not. In no-isolation mode an uncommitted
        cell is traced back through its writers' undo logs.
        """
        if self.mode.is_multiversion:
            committed = [
                v for v in self.versions.get(item, [])
                if v.tx_min in self.committed_ids
                and (v.tx_max is None or v.tx_max not in self.committed_ids)
            ]
            if not committed:
                return None
            return max(enumerate(committed), key=lambda pair: (pair[1].tx_min, pair[0]))[1].value

        cell = self.cells.get(item)
        if cell is None:
            return None
        value, writer_id, committed = cell.value, cell.last_writer_id, cell.committed
        while not committed:
            writer = self.transaction_by_id(writer_id)
            undo = next((u for u in writer.undo_log if u.item == item), None) if writer else None
            if undo is None:
                return None
            value, writer_id, committed = undo.old_value, undo.old_writer_id, undo.old_committed
        return value

    def version_status(self, version: Version) -> str:
        if version.tx_min not in self.committed_ids:
            return f"uncommitted (by {self.tx_label(version.tx_min)})"
        if version.tx_max is None:
            return "current"
        if version.tx_max in self.committed_ids:
            return f"superseded (by {self.tx_label(version.tx_max)})"
        return f"current, marked by uncommitted {self.tx_label(version.tx_max)}"


def clamp_step(step: int, length: int) -> int:
    """Clamp a requested step into ``[0, length]``."""
    clamped = max(0, min(int(step), length))
    if clamped != step:
        logger.debug("Step %s out of range, clamped to %d (log length %d)", step, clamped, length)
    return clamped


def _normalize_seeds(initial: Optional[Mapping[str, Union[Number, SeedItem]]], log: List[Operation]) -> Dict[str, SeedItem]:
    if initial is None:
        initial = {op.target: 0 for op in log if op.target is not None}
    return assign_seed_items(initial)


def initial_state(seeds: Mapping[str, SeedItem], mode: IsolationMode) -> SimulationState:
    """State at step 0: every item owned by the committed transaction 0."""
    state = SimulationState(mode=mode)
    for item, seed in seeds.items():
        if mode.is_multiversion:
            state.versions[item] = [Version(id=seed.version_id, item=item, value=seed.value, tx_min=INITIAL_TX_ID)]
            state.version_counters[item] = 0
            state.version_prefixes[item] = version_prefix(seed.version_id)
        else:
            state.cells[item] = DataCell(value=seed.value)
    return state


class ReplayEngine:
    """
    Applies operations one at a time to a SimulationState.

    Dispatches each operation through the transaction lifecycle rules and the
    visibility resolver of the state's isolation mode. Operations that name a
    transaction which is not active, or an item with no seed, are recorded
    as ignored and otherwise have no effect.
    """

    def __init__(self, state: SimulationState, strict_writes: bool = False):
        """
        Args:
            state: State to fold into; modified in place
            strict_writes: Reject writes whose base version was already
                superseded by another transaction (first-updater-wins)
        """
        self.state = state
        self.strict_writes = strict_writes
        self.resolver = resolver_for(state.mode)
        self.handlers = {
            OperationKind.READ: self._read,
            OperationKind.WRITE: self._write,
            OperationKind.COMMIT: self._commit,
            OperationKind.ABORT: self._abort,
        }

    def apply(self, step: int, op: Operation) -> None:
        """
        Apply one operation.

        Args:
            step: 1-based position of the operation in the log
            op: The operation to apply

        Side effects:
            - Appends op to state.applied and sets state.step
            - May create a transaction, versions, read/write/undo records
            - May record an IgnoredOperation or WriteConflict
        """
        self.state.applied.append(op)
        self.state.step = step

        if op.kind is OperationKind.BEGIN:
            self._begin(step, op)
            return

        tx = self.state.transactions.get(op.tx_name)
        if tx is None:
            self._ignore(step, op, f"{op.tx_name} has not begun")
            return
        if not tx.is_active:
            self._ignore(step, op, f"{op.tx_name} is already {tx.status.value}")
            return
        if op.kind in (OperationKind.READ, OperationKind.WRITE) and op.target not in self.state.items:
            self._ignore(step, op, f"unknown item '{op.target}'")
            return
        self.handlers[op.kind](step, op, tx)

    def _ignore(self, step: int, op: Operation, reason: str) -> None:
        logger.debug("Step %d: ignoring %s: %s", step, op.describe(), reason)
        self.state.ignored.append(IgnoredOperation(step=step, operation=op, reason=reason))

    def _begin(self, step: int, op: Operation) -> None:
        if op.tx_name in self.state.transactions:
            self._ignore(step, op, f"{op.tx_name} has already begun")
            return
        tx_id = self.state.next_tx_id
        self.state.next_tx_id += 1
        self.state.transactions[op.tx_name] = Transaction(
            id=tx_id,
            name=op.tx_name,
            start_time=op.time,
            snapshot_committed_ids=frozenset(self.state.committed_ids),
        )

    def _read(self, step: int, op: Operation, tx: Transaction) -> None:
        source = self._source(op.target)
        resolved = self.resolver.resolve_read(source, tx, self.state.committed_ids)
        tx.reads.append(
            ReadRecord(
                item=op.target,
                value_observed=resolved.value,
                version_id_observed=resolved.version_id,
                time=op.time,
                dirty=resolved.dirty,
            )
        )

    def _write(self, step: int, op: Operation, tx: Transaction) -> None:
        if self.state.mode.is_multiversion:
            self._write_version(step, op, tx)
        else:
            self._write_cell(op, tx)

    def _write_version(self, step: int, op: Operation, tx: Transaction) -> None:
        history = self.state.versions[op.target]
        base = self.resolver.resolve_write_base(history, tx, self.state.committed_ids)
        superseded_by_other = base is not None and base.tx_max is not None and base.tx_max != tx.id

        if superseded_by_other and self.strict_writes:
            logger.debug(
                "Step %d: rejecting %s, %s already superseded by %s",
                step, op.describe(), base.id, self.state.tx_label(base.tx_max),
            )
            self.state.conflicts.append(
                WriteConflict(step=step, operation=op, version_id=base.id, holder_id=base.tx_max)
            )
            return

        overwrote_uncommitted = base is not None and (
            (superseded_by_other and base.tx_max not in self.state.committed_ids)
            or (base.tx_min != tx.id and base.tx_min not in self.state.committed_ids)
        )
        if base is not None:
            base.tx_max = tx.id

        self.state.version_counters[op.target] += 1
        version = Version(
            id=f"{self.state.version_prefixes[op.target]}{self.state.version_counters[op.target]}",
            item=op.target,
            value=op.value,
            tx_min=tx.id,
        )
        history.append(version)
        tx.writes.append(
            WriteRecord(
                item=op.target,
                value=op.value,
                time=op.time,
                new_version_id=version.id,
                old_version_id=base.id if base else None,
                overwrote_uncommitted=overwrote_uncommitted,
            )
        )

    def _write_cell(self, op: Operation, tx: Transaction) -> None:
        cell = self.state.cells[op.target]
        # Only the first write of an item is logged, so rollback restores
        # the value from before this transaction touched it.
        if not any(entry.item == op.target for entry in tx.undo_log):
            tx.undo_log.append(
                UndoRecord(
                    item=op.target,
                    old_value=cell.value,
                    old_writer_id=cell.last_writer_id,
                    old_committed=cell.committed,
                )
            )
        tx.writes.append(
            WriteRecord(
                item=op.target,
                value=op.value,
                time=op.time,
                overwrote_uncommitted=not cell.committed and cell.last_writer_id != tx.id,
            )
        )
        cell.value = op.value
        cell.last_writer_id = tx.id
        cell.committed = False

    def _commit(self, step: int, op: Operation, tx: Transaction) -> None:
        self.state.committed_ids.add(tx.id)
        tx.status = TransactionStatus.COMMITTED
        for cell in self.state.cells.values():
            if cell.last_writer_id == tx.id:
                cell.committed = True

    def _abort(self, step: int, op: Operation, tx: Transaction) -> None:
        tx.status = TransactionStatus.ABORTED
        if self.state.mode.is_multiversion:
            for item, history in self.state.versions.items():
                kept = [v for v in history if v.tx_min != tx.id]
                for version in kept:
                    # Markers already overwritten by another writer stay put.
                    if version.tx_max == tx.id:
                        version.tx_max = None
                self.state.versions[item] = kept
            return
        for entry in reversed(tx.undo_log):
            cell = self.state.cells[entry.item]
            cell.value = entry.old_value
            cell.last_writer_id = entry.old_writer_id
            cell.committed = entry.old_committed

    def _source(self, item: str):
        if self.state.mode.is_multiversion:
            return self.state.versions[item]
        return self.state.cells[item]


def compute_state_at_step(
    log: Iterable[Operation],
    step: int,
    mode: Union[IsolationMode, str] = IsolationMode.SNAPSHOT,
    initial: Optional[Mapping[str, Union[Number, SeedItem]]] = None,
    strict_writes: bool = False,
) -> SimulationState:
    """
    Replay the first ``step`` operations of ``log`` from scratch.

    Args:
        log: Merged operation log, in replay order
        step: Number of operations to apply; clamped into [0, len(log)]
        mode: Isolation mode to replay under
        initial: Seed value (or SeedItem) per data item; when omitted every
            item the log mentions is seeded with 0
        strict_writes: Reject writes that hit a version already superseded
            by another transaction

    Returns:
        A freshly allocated SimulationState; equal inputs give equal states
    """
    log = list(log)
    mode = IsolationMode.parse(mode)
    step = clamp_step(step, len(log))
    state = initial_state(_normalize_seeds(initial, log), mode)
    engine = ReplayEngine(state, strict_writes=strict_writes)
    for position, op in enumerate(log[:step], start=1):
        engine.apply(position, op)
    state.step = step
    return state


def compute_scenario_state(
    scenario: Scenario,
    step: int,
    mode: Optional[Union[IsolationMode, str]] = None,
    strict_writes: bool = False,
) -> SimulationState:
    """Replay a scenario up to ``step``, under its own mode unless overridden."""
    return compute_state_at_step(
        scenario.log,
        step,
        mode=scenario.mode if mode is None else mode,
        initial=scenario.initial,
        strict_writes=strict_writes,
    )


def _format_reads(tx: Transaction) -> str:
    parts = []
    for read in tx.reads:
        seen = f"{read.item}={read.value_observed}"
        if read.version_id_observed:
            seen += f" ({read.version_id_observed})"
        if read.dirty:
            seen += " DIRTY"
        parts.append(seen)
    return ", ".join(parts)


def _format_writes(tx: Transaction) -> str:
    parts = []
    for write in tx.writes:
        text = f"{write.item}={write.value}"
        if write.new_version_id:
            text += f" ({write.old_version_id or '-'} -> {write.new_version_id})"
        if write.overwrote_uncommitted:
            text += " DIRTY"
        parts.append(text)
    return ", ".join(parts)


def format_state(state: SimulationState) -> str:
    """
    Render the state as text tables for the command line.

    Returns:
        Data table (versions or cells), transaction table and the committed
        set, formatted with tabulate's grid style
    """
    if state.mode.is_multiversion:
        rows = [
            [item, v.id, v.value, state.tx_label(v.tx_min), state.tx_label(v.tx_max), state.version_status(v)]
            for item, history in state.versions.items()
            for v in history
        ]
        data = tabulate(rows, headers=["Item", "Version", "Value", "txMin", "txMax", "Status"], tablefmt="grid")
    else:
        rows = [
            [item, cell.value, state.tx_label(cell.last_writer_id), "yes" if cell.committed else "no"]
            for item, cell in state.cells.items()
        ]
        data = tabulate(rows, headers=["Item", "Value", "Last writer", "Committed"], tablefmt="grid")

    sections = [data]
    if state.transactions:
        tx_rows = [
            [
                tx.name,
                tx.id,
                tx.status.value,
                "{" + ", ".join(str(i) for i in sorted(tx.snapshot_committed_ids)) + "}",
                _format_reads(tx),
                _format_writes(tx),
            ]
            for tx in sorted(state.transactions.values(), key=lambda t: t.id)
        ]
        sections.append(
            tabulate(tx_rows, headers=["Tx", "Id", "Status", "Snapshot", "Reads", "Writes"], tablefmt="grid")
        )
    sections.append("Committed: {" + ", ".join(str(i) for i in sorted(state.committed_ids)) + "}")
    return "\n".join(sections)
