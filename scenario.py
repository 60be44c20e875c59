"""Scenario definitions: the fixed operation log replayed by the engine.

A scenario names the data items and their seed values, the transactions
with their ordered operations, and the key moments a player should stop at.
Scenarios are loaded from plain dicts, JSON files or the line-oriented
command script format (``begin(T1)``, ``R(T1,x)``, ``W(T1,x,10)``,
``commit(T1)``, ``abort(T1)``) and validated before any step is computed.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, TextIO, Union

logger = logging.getLogger(__name__)

Number = Union[int, float]

# Spacing between script lines that carry no explicit "@time" prefix.
SCRIPT_TIME_STEP = 10


class ScenarioDefinitionError(ValueError):
    """Raised when a scenario cannot be replayed as written."""


class OperationKind(Enum):
    """
    Kinds of operations a transaction can issue.

    BEGIN: Start the transaction and take its snapshot
    READ: Read one named data item
    WRITE: Write a new value to one named data item
    COMMIT: Make the transaction's writes permanent
    ABORT: Roll the transaction's writes back
    """
    BEGIN = "begin"
    READ = "read"
    WRITE = "write"
    COMMIT = "commit"
    ABORT = "abort"

    @classmethod
    def parse(cls, raw: str) -> "OperationKind":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ScenarioDefinitionError(f"Unknown operation type '{raw}'") from None


class IsolationMode(Enum):
    """
    Concurrency-control disciplines the engine can replay under.

    SNAPSHOT: Multi-version snapshot isolation
    READ_COMMITTED: Multi-version read committed
    NONE: Single value per item, in-place writes and undo logs
    """
    SNAPSHOT = "snapshot"
    READ_COMMITTED = "read_committed"
    NONE = "none"

    @property
    def is_multiversion(self) -> bool:
        return self is not IsolationMode.NONE

    @classmethod
    def parse(cls, raw: Union[str, "IsolationMode"]) -> "IsolationMode":
        """
        Accept a mode, its value, or one of the common spellings.

        Args:
            raw: An IsolationMode or a string such as "snapshot", "rc",
                "read-committed" or "no_isolation"

        Returns:
            The matching IsolationMode

        Raises:
            ScenarioDefinitionError: If the string names no known mode
        """
        if isinstance(raw, cls):
            return raw
        key = str(raw).strip().lower().replace("-", "_")
        aliases = {
            "si": cls.SNAPSHOT,
            "mvcc": cls.SNAPSHOT,
            "snapshot_isolation": cls.SNAPSHOT,
            "rc": cls.READ_COMMITTED,
            "no_isolation": cls.NONE,
            "dirty": cls.NONE,
        }
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError:
            raise ScenarioDefinitionError(f"Unknown isolation mode '{raw}'") from None


@dataclass(frozen=True)
class Operation:
    """One entry of the operation log. Immutable scenario input."""

    time: Number
    kind: OperationKind
    tx_name: str
    target: Optional[str] = None
    value: Optional[Number] = None
    note: Optional[str] = None

    def describe(self) -> str:
        if self.kind is OperationKind.READ:
            return f"R({self.tx_name},{self.target})"
        if self.kind is OperationKind.WRITE:
            return f"W({self.tx_name},{self.target},{self.value})"
        return f"{self.kind.value}({self.tx_name})"


@dataclass(frozen=True)
class SeedItem:
    """Initial value of a data item, committed by the synthetic transaction 0."""

    value: Number
    version_id: str


@dataclass(frozen=True)
class KeyMoment:
    """
    An annotated step of the replay.

    The player pauses here when ``auto_pause`` is set. ``highlight_refs`` is
    opaque to the engine and handed to the presentation layer untouched.
    """

    step: int
    text: str
    auto_pause: bool = True
    highlight_refs: Any = None


@dataclass
class TransactionSpec:
    name: str
    operations: List[Operation]
    color: Optional[str] = None


@dataclass
class Scenario:
    """
    A complete, validated replay input.

    Attributes:
        name: Display name
        initial: Seed value and version id for every data item
        transactions: Transactions in declaration order
        key_moments: Annotated steps, sorted by step
        mode: Isolation mode the scenario was written for
        description: Free-form explanation for the reader
    """

    name: str
    initial: Dict[str, SeedItem]
    transactions: List[TransactionSpec]
    key_moments: List[KeyMoment] = field(default_factory=list)
    mode: IsolationMode = IsolationMode.SNAPSHOT
    description: str = ""

    @property
    def log(self) -> List[Operation]:
        return merge_operations(self.transactions)

    def key_moment_at(self, step: int) -> Optional[KeyMoment]:
        return next((km for km in self.key_moments if km.step == step), None)

    def color_of(self, tx_name: str) -> Optional[str]:
        return next((tx.color for tx in self.transactions if tx.name == tx_name), None)


def merge_operations(transactions: Iterable[TransactionSpec]) -> List[Operation]:
    """
    Merge per-transaction operation lists into one global log.

    Operations are ordered by ascending time. Ties keep declaration order,
    first by transaction and then by position in the transaction's list.

    Args:
        transactions: Transactions in declaration order

    Returns:
        The merged operation log
    """
    declared = [op for tx in transactions for op in tx.operations]
    return sorted(declared, key=lambda op: op.time)


def default_version_id(item: str) -> str:
    """Preferred seed version id for an item: "v" + first letter + "0", e.g. vB0."""
    letter = next((ch for ch in item if ch.isalpha()), "X")
    return f"v{letter.upper()}0"


def version_prefix(version_id: str) -> str:
    """Strip the trailing counter from a version id ("vB0" -> "vB")."""
    return version_id.rstrip("0123456789") or version_id


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _fallback_version_id(item: str, taken: Set[str]) -> str:
    prefix = f"v{item}_"
    n = 2
    while prefix in taken:
        prefix = f"v{item}_{n}_"
        n += 1
    return f"{prefix}0"


def assign_seed_items(initial: Mapping[str, Any]) -> Dict[str, SeedItem]:
    """
    Turn raw seed data into SeedItems whose version id prefixes are unique.

    Explicit version ids claim their prefixes first. Every other item gets
    ``default_version_id``; when that prefix is already taken (``x1`` and
    ``x2`` both want ``vX``) the whole item name is used instead, giving
    ``vx2_0``, ``vx2_1``, ...

    Args:
        initial: Item name -> number, {"value", "version_id"} dict or SeedItem

    Returns:
        One SeedItem per item, in input order

    Raises:
        ScenarioDefinitionError: If a seed value is not a number
    """
    values: Dict[str, Any] = {}
    requested: Dict[str, Optional[str]] = {}
    for item, raw in initial.items():
        if isinstance(raw, SeedItem):
            value, version_id = raw.value, raw.version_id
        elif isinstance(raw, dict):
            value, version_id = raw.get("value"), raw.get("version_id") or raw.get("id")
        else:
            value, version_id = raw, None
        if not _is_number(value):
            raise ScenarioDefinitionError(f"Initial value of '{item}' must be a number, got {value!r}")
        values[item] = value
        requested[item] = str(version_id) if version_id else None

    taken: Set[str] = set()
    seeds: Dict[str, SeedItem] = {}
    for item in sorted(initial, key=lambda name: requested[name] is None):
        version_id = requested[item] or default_version_id(item)
        if version_prefix(version_id) in taken:
            fallback = _fallback_version_id(item, taken)
            if requested[item]:
                logger.warning("Version id %s of '%s' clashes with another item, using %s", version_id, item, fallback)
            version_id = fallback
        taken.add(version_prefix(version_id))
        seeds[item] = SeedItem(value=values[item], version_id=version_id)
    return {item: seeds[item] for item in initial}


def _parse_operation(tx_name: str, raw: Any) -> Operation:
    if not isinstance(raw, dict):
        raise ScenarioDefinitionError(f"Operation of {tx_name} must be a mapping, got {raw!r}")
    if "type" not in raw and "kind" not in raw:
        raise ScenarioDefinitionError(f"Operation of {tx_name} has no type: {raw!r}")
    kind = OperationKind.parse(raw.get("type", raw.get("kind")))
    time = raw.get("time")
    if not _is_number(time):
        raise ScenarioDefinitionError(
            f"{kind.value} of {tx_name} has a non-numeric time {time!r}"
        )
    touches_item = kind in (OperationKind.READ, OperationKind.WRITE)
    target = raw.get("target")
    value = raw.get("value")
    if touches_item and not target:
        raise ScenarioDefinitionError(f"{kind.value} of {tx_name} at t={time} has no target")
    if kind is OperationKind.WRITE and not _is_number(value):
        raise ScenarioDefinitionError(
            f"write of {tx_name} at t={time} needs a numeric value, got {value!r}"
        )
    return Operation(
        time=time,
        kind=kind,
        tx_name=tx_name,
        target=str(target) if touches_item else None,
        value=value if kind is OperationKind.WRITE else None,
        note=raw.get("comment", raw.get("note")),
    )


def _transaction_entries(raw: Any) -> List[Dict[str, Any]]:
    # Both {"T1": {...}} and [{"name": "T1", ...}] shapes are accepted.
    if isinstance(raw, dict):
        entries = []
        for name, body in raw.items():
            if not isinstance(body, dict):
                raise ScenarioDefinitionError(f"Transaction {name} must be a mapping, got {body!r}")
            entries.append(dict(body, name=name))
        return entries
    if isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                raise ScenarioDefinitionError(f"Transaction entry must be a mapping, got {entry!r}")
        return list(raw)
    raise ScenarioDefinitionError("'transactions' must be a list or a mapping")


def _parse_key_moment(raw: Any) -> KeyMoment:
    if not isinstance(raw, dict):
        raise ScenarioDefinitionError(f"Key moment must be a mapping, got {raw!r}")
    step = raw.get("step")
    if not isinstance(step, int) or isinstance(step, bool):
        raise ScenarioDefinitionError(f"Key moment needs an integer step, got {step!r}")
    return KeyMoment(
        step=step,
        text=str(raw.get("text", "")),
        auto_pause=bool(raw.get("auto_pause", raw.get("autoPause", True))),
        highlight_refs=raw.get("highlight_refs", raw.get("highlight")),
    )


def load_scenario(definition: Dict[str, Any]) -> Scenario:
    """
    Build and validate a Scenario from its dict definition.

    Args:
        definition: Mapping with keys "name", "initial", "transactions" and
            optionally "description", "mode" and "key_moments"

    Returns:
        A validated Scenario

    Raises:
        ScenarioDefinitionError: If the definition is malformed
    """
    if not isinstance(definition, dict):
        raise ScenarioDefinitionError(f"Scenario must be a mapping, got {type(definition).__name__}")
    initial_raw = definition.get("initial", definition.get("initial_data", {}))
    if not isinstance(initial_raw, dict) or not initial_raw:
        raise ScenarioDefinitionError("Scenario must declare at least one initial data item")
    initial = assign_seed_items(initial_raw)

    transactions = []
    seen = set()
    for entry in _transaction_entries(definition.get("transactions", [])):
        name = entry.get("name")
        if not name:
            raise ScenarioDefinitionError(f"Transaction without a name: {entry!r}")
        if name in seen:
            raise ScenarioDefinitionError(f"Duplicate transaction name '{name}'")
        seen.add(name)
        raw_operations = entry.get("operations", [])
        if not isinstance(raw_operations, list):
            raise ScenarioDefinitionError(f"Operations of {name} must be a list")
        operations = [_parse_operation(name, op) for op in raw_operations]
        transactions.append(TransactionSpec(name=name, operations=operations, color=entry.get("color")))

    raw_moments = definition.get("key_moments", definition.get("keyMoments", []))
    if not isinstance(raw_moments, list):
        raise ScenarioDefinitionError("'key_moments' must be a list")
    key_moments = sorted((_parse_key_moment(km) for km in raw_moments), key=lambda km: km.step)

    scenario = Scenario(
        name=definition.get("name", "unnamed scenario"),
        description=definition.get("description", ""),
        initial=initial,
        transactions=transactions,
        key_moments=key_moments,
        mode=IsolationMode.parse(definition.get("mode", IsolationMode.SNAPSHOT)),
    )
    validate_scenario(scenario)
    return scenario


def validate_scenario(scenario: Scenario) -> None:
    """
    Reject scenarios the replay would otherwise silently skip through.

    Checks that every transaction begins exactly once and before any of its
    other operations (in merged-log order), that every read/write targets a
    declared item, and that key moments fall inside the log.

    Raises:
        ScenarioDefinitionError: On the first problem found
    """
    begun = set()
    log = scenario.log
    for position, op in enumerate(log, start=1):
        if op.kind is OperationKind.BEGIN:
            if op.tx_name in begun:
                raise ScenarioDefinitionError(f"Transaction {op.tx_name} begins more than once")
            begun.add(op.tx_name)
            continue
        if op.tx_name not in begun:
            raise ScenarioDefinitionError(
                f"Step {position}: {op.describe()} at t={op.time} comes before begin({op.tx_name})"
            )
        if op.target is not None and op.target not in scenario.initial:
            raise ScenarioDefinitionError(
                f"Step {position}: {op.describe()} targets unknown item '{op.target}'"
            )

    for km in scenario.key_moments:
        if not 0 <= km.step <= len(log):
            raise ScenarioDefinitionError(
                f"Key moment at step {km.step} is outside the log (0..{len(log)})"
            )
    logger.debug("Validated scenario %r: %d operations", scenario.name, len(log))


def parse_command(line: str) -> Optional[Dict[str, Any]]:
    """
    Parse one command-script line into a structured command dictionary.

    Supported commands:
        - init(x,100): Seed data item x with value 100
        - begin(T1): Start transaction T1
        - R(T1,x): Read item x in transaction T1
        - W(T1,x,100): Write value 100 to item x in transaction T1
        - commit(T1) or end(T1): Commit transaction T1
        - abort(T1): Abort transaction T1

    Any command may be prefixed with "@<time>" to pin its timestamp, and
    may carry a trailing "// comment" that becomes the operation note.

    Args:
        line: A string containing a single command

    Returns:
        A dictionary with 'type' and the parsed fields ('tx', 'target',
        'value', 'time', 'comment'), or None for blank and comment lines

    Raises:
        ScenarioDefinitionError: If the line is not a recognised command
    """
    line = line.strip()
    if not line or line.startswith("//") or line.startswith("==="):
        return None

    comment = None
    if "//" in line:
        line, comment = (part.strip() for part in line.split("//", 1))

    time = None
    if match := re.match(r"@(-?\d+(?:\.\d+)?)\s+(.*)$", line):
        time = float(match.group(1)) if "." in match.group(1) else int(match.group(1))
        line = match.group(2)

    command: Optional[Dict[str, Any]] = None
    if match := re.fullmatch(r"init\(\s*(\w+)\s*,\s*(-?\d+(?:\.\d+)?)\s*\)", line, re.IGNORECASE):
        raw = match.group(2)
        command = {"type": "init", "target": match.group(1), "value": float(raw) if "." in raw else int(raw)}
    elif match := re.fullmatch(r"begin\(\s*(\w+)\s*\)", line, re.IGNORECASE):
        command = {"type": "begin", "tx": match.group(1)}
    elif match := re.fullmatch(r"R\(\s*(\w+)\s*,\s*(\w+)\s*\)", line, re.IGNORECASE):
        command = {"type": "read", "tx": match.group(1), "target": match.group(2)}
    elif match := re.fullmatch(r"W\(\s*(\w+)\s*,\s*(\w+)\s*,\s*(-?\d+(?:\.\d+)?)\s*\)", line, re.IGNORECASE):
        raw = match.group(3)
        command = {
            "type": "write",
            "tx": match.group(1),
            "target": match.group(2),
            "value": float(raw) if "." in raw else int(raw),
        }
    elif match := re.fullmatch(r"(commit|end)\(\s*(\w+)\s*\)", line, re.IGNORECASE):
        command = {"type": "commit", "tx": match.group(2)}
    elif match := re.fullmatch(r"abort\(\s*(\w+)\s*\)", line, re.IGNORECASE):
        command = {"type": "abort", "tx": match.group(1)}

    if command is None:
        raise ScenarioDefinitionError(f"Cannot parse command '{line}'")
    if time is not None:
        command["time"] = time
    if comment:
        command["comment"] = comment
    return command


def parse_script(lines: Iterable[str], name: str = "script", mode: IsolationMode = IsolationMode.SNAPSHOT) -> List[Scenario]:
    """
    Parse a command script into one scenario per "// Test" section.

    Commands without an explicit "@time" get 10 x their position within the
    section, so the merged log follows line order.

    Args:
        lines: Script lines
        name: Base name for the produced scenarios
        mode: Isolation mode recorded on each scenario

    Returns:
        List of validated scenarios; a script without "// Test" markers
        produces a single scenario

    Raises:
        ScenarioDefinitionError: If a line or a resulting scenario is invalid
    """
    sections = []
    title, section = name, []
    for line in lines:
        line = line.strip()
        if line.startswith("// Test"):
            sections.append((title, section))
            title, section = line[2:].strip(), []
            continue
        section.append(line)
    sections.append((title, section))

    scenarios = []
    for title, section in sections:
        commands = [cmd for cmd in (parse_command(line) for line in section) if cmd]
        if not commands:
            continue
        initial: Dict[str, Any] = {}
        transactions: Dict[str, Dict[str, Any]] = {}
        position = 0
        for cmd in commands:
            if cmd["type"] == "init":
                initial[cmd["target"]] = cmd["value"]
                continue
            position += 1
            op = {
                "type": cmd["type"],
                "time": cmd.get("time", position * SCRIPT_TIME_STEP),
                "target": cmd.get("target"),
                "value": cmd.get("value"),
                "comment": cmd.get("comment"),
            }
            transactions.setdefault(cmd["tx"], {"operations": []})["operations"].append(op)
        # Items used without an init() line start at zero.
        for body in transactions.values():
            for op in body["operations"]:
                if op["target"] and op["target"] not in initial:
                    initial[op["target"]] = 0
        scenarios.append(
            load_scenario({"name": title, "initial": initial, "transactions": transactions, "mode": mode})
        )
    return scenarios


def load_scenario_file(source: TextIO, mode: Optional[IsolationMode] = None) -> List[Scenario]:
    """
    Load scenarios from an open file: JSON when it parses as JSON, command
    script otherwise.

    A JSON document may hold one scenario object or a list of them. ``mode``
    overrides the mode stored in the file when given.
    """
    text = source.read()
    name = getattr(source, "name", "script")
    if text.lstrip().startswith(("{", "[")):
        try:
            document = json.loads(text)
        except json.JSONDecodeError as e:
            raise ScenarioDefinitionError(f"Invalid JSON in {name}: {e}") from e
        definitions = document if isinstance(document, list) else [document]
        scenarios = [load_scenario(definition) for definition in definitions]
    else:
        scenarios = parse_script(text.splitlines(), name=str(name), mode=mode or IsolationMode.SNAPSHOT)
    if mode is not None:
        for scenario in scenarios:
            scenario.mode = mode
    return scenarios
