"""Built-in anomaly demonstrations. Scenarios are data; the engine is shared."""

from typing import Any, Dict, List

from scenario import Scenario, ScenarioDefinitionError, load_scenario

DEMOS: Dict[str, Dict[str, Any]] = {
    "dirty_read": {
        "name": "Dirty Read without isolation",
        "description": "T2 writes x in place and later aborts. In between, T1 reads the "
                       "uncommitted value, a value the database never committed.",
        "mode": "none",
        "initial": {"x": 50},
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 20},
                    {"type": "read", "time": 30, "target": "x", "comment": "Sees T2's uncommitted write"},
                    {"type": "commit", "time": 50},
                ],
            },
            {
                "name": "T2",
                "color": "#ef4444",
                "operations": [
                    {"type": "begin", "time": 0},
                    {"type": "write", "time": 10, "target": "x", "value": 80},
                    {"type": "abort", "time": 40},
                ],
            },
        ],
        "key_moments": [
            {"step": 2, "text": "T2 writes x=80 in place. The old value 50 goes to T2's undo log.", "auto_pause": True},
            {"step": 4, "text": "DIRTY READ: T1 reads x=80, a value T2 has not committed.", "auto_pause": True},
            {"step": 5, "text": "T2 aborts and its undo log restores x=50. T1 has acted on a value that never existed.",
             "auto_pause": True},
        ],
    },
    "mvcc_dirty_write": {
        "name": "MVCC Lost Update (dirty write variation)",
        "description": "T2 supersedes the version T1 already marked. When T1 aborts, its "
                       "invalidation marker cannot be restored because T2 overwrote it. "
                       "Replay with strict writes to see first-updater-wins reject T2.",
        "mode": "snapshot",
        "initial": {"DataA": {"value": 100, "version_id": "vA0"}},
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 10},
                    {"type": "write", "time": 30, "target": "DataA", "value": 110},
                    {"type": "abort", "time": 80, "comment": "Rolls back its version"},
                ],
            },
            {
                "name": "T2",
                "color": "#10b981",
                "operations": [
                    {"type": "begin", "time": 20},
                    {"type": "write", "time": 50, "target": "DataA", "value": 120,
                     "comment": "Conflicts with T1's uncommitted write"},
                    {"type": "commit", "time": 70},
                ],
            },
        ],
        "key_moments": [
            {"step": 3, "text": "T1 writes DataA=110: new version vA1, vA0 marked superseded by T1.",
             "auto_pause": True, "highlight_refs": {"versions": ["vA0", "vA1"]}},
            {"step": 4, "text": "T2 writes DataA=120 on the same base version and overwrites T1's marker on vA0.",
             "auto_pause": True, "highlight_refs": {"versions": ["vA0", "vA1", "vA2"]}},
            {"step": 5, "text": "T2 commits. vA2 and its invalidation of vA0 are permanent.", "auto_pause": True},
            {"step": 6, "text": "T1 aborts. vA1 is discarded, but the marker on vA0 now belongs to T2 and stays.",
             "auto_pause": True},
        ],
    },
    "read_committed_lost_update": {
        "name": "Read Committed: Lost Update",
        "description": "Both transactions read Balance=1000 and write a new balance derived from "
                       "it. The second commit silently discards the first withdrawal.",
        "mode": "read_committed",
        "initial": {"Balance": {"value": 1000, "version_id": "vB0"}},
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 0, "comment": "Withdraw 100"},
                    {"type": "read", "time": 5, "target": "Balance"},
                    {"type": "write", "time": 15, "target": "Balance", "value": 900, "comment": "1000 - 100"},
                    {"type": "commit", "time": 25},
                ],
            },
            {
                "name": "T2",
                "color": "#ef4444",
                "operations": [
                    {"type": "begin", "time": 10, "comment": "Withdraw 200"},
                    {"type": "read", "time": 12, "target": "Balance", "comment": "T1 has not committed"},
                    {"type": "write", "time": 20, "target": "Balance", "value": 800, "comment": "1000 - 200"},
                    {"type": "commit", "time": 30},
                ],
            },
        ],
        "key_moments": [
            {"step": 2, "text": "T1 reads Balance=1000 and plans to withdraw 100.", "auto_pause": True},
            {"step": 4, "text": "T2 also reads Balance=1000; T1's change is not committed yet.", "auto_pause": True},
            {"step": 7, "text": "T1 commits. Balance is 900.", "auto_pause": True},
            {"step": 8, "text": "LOST UPDATE: T2 commits 800 and T1's withdrawal is gone. The right answer was 700.",
             "auto_pause": True},
        ],
    },
    "snapshot_lost_update": {
        "name": "Snapshot Isolation: Lost Update without write-conflict checks",
        "description": "Two transactions read the same seed version, write and commit in turn. "
                       "Without first-updater-wins the later committer overwrites the earlier one.",
        "mode": "snapshot",
        "initial": {"x": 100},
        "transactions": [
            {
                "name": "T1",
                "operations": [
                    {"type": "begin", "time": 0},
                    {"type": "read", "time": 10, "target": "x"},
                    {"type": "write", "time": 20, "target": "x", "value": 110},
                    {"type": "commit", "time": 30},
                ],
            },
            {
                "name": "T2",
                "operations": [
                    {"type": "begin", "time": 5},
                    {"type": "read", "time": 15, "target": "x"},
                    {"type": "write", "time": 25, "target": "x", "value": 120},
                    {"type": "commit", "time": 35},
                ],
            },
        ],
        "key_moments": [
            {"step": 6, "text": "T2 supersedes vX0 although T1 already did; T1's marker is overwritten.",
             "auto_pause": True},
            {"step": 8, "text": "Both committed. The final value is T2's 120; T1's update is lost.",
             "auto_pause": True},
        ],
    },
    "non_repeatable_read": {
        "name": "Non-Repeatable Read",
        "description": "T1 reads balance twice while T2 updates and commits it in between. Under "
                       "snapshot isolation both reads agree; under read committed they differ.",
        "mode": "snapshot",
        "initial": {"balance": {"value": 100, "version_id": "v0"}},
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 0},
                    {"type": "read", "time": 10, "target": "balance"},
                    {"type": "read", "time": 50, "target": "balance", "comment": "Second read by T1"},
                    {"type": "commit", "time": 60},
                ],
            },
            {
                "name": "T2",
                "color": "#10b981",
                "operations": [
                    {"type": "begin", "time": 5},
                    {"type": "read", "time": 20, "target": "balance"},
                    {"type": "write", "time": 30, "target": "balance", "value": 150},
                    {"type": "commit", "time": 40},
                ],
            },
        ],
        "key_moments": [
            {"step": 3, "text": "T1 reads balance=100 from v0.", "auto_pause": True},
            {"step": 5, "text": "T2 writes balance=150: new version v1, v0 marked superseded by T2.",
             "auto_pause": True},
            {"step": 6, "text": "T2 commits. v1 is now the latest committed version.", "auto_pause": True},
            {"step": 7, "text": "T1 reads balance again. Its snapshot still sees v0 (100); read committed "
                                "would return 150.", "auto_pause": True},
            {"step": 8, "text": "T1 commits.", "auto_pause": False},
        ],
    },
    "no_isolation_combined": {
        "name": "Combined Anomaly: Dirty Read Leads to Lost Update",
        "description": "T2 reads T1's uncommitted balance and commits a value derived from it. "
                       "When T1 aborts, its undo log erases T2's committed update.",
        "mode": "none",
        "initial": {"Balance": 1000},
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 10},
                    {"type": "write", "time": 30, "target": "Balance", "value": 900, "comment": "Withdrawal of 100"},
                    {"type": "abort", "time": 100, "comment": "Transaction is cancelled"},
                ],
            },
            {
                "name": "T2",
                "color": "#e11d48",
                "operations": [
                    {"type": "begin", "time": 20},
                    {"type": "read", "time": 50, "target": "Balance", "comment": "Reads T1's uncommitted value"},
                    {"type": "write", "time": 60, "target": "Balance", "value": 990,
                     "comment": "Applies 10% interest to the dirty value"},
                    {"type": "commit", "time": 80},
                ],
            },
            {
                "name": "T3",
                "color": "#f59e0b",
                "operations": [
                    {"type": "begin", "time": 40},
                    {"type": "read", "time": 70, "target": "Balance", "comment": "Reads T2's uncommitted value"},
                    {"type": "commit", "time": 90},
                ],
            },
        ],
        "key_moments": [
            {"step": 3, "text": "T1 writes Balance=900 in place; 1000 goes to its undo log.", "auto_pause": True},
            {"step": 5, "text": "DIRTY READ: T2 sees T1's uncommitted 900.", "auto_pause": True},
            {"step": 6, "text": "T2 writes 990 over T1's uncommitted data (dirty write).", "auto_pause": True},
            {"step": 7, "text": "T3 reads T2's uncommitted 990.", "auto_pause": True},
            {"step": 8, "text": "T2 commits. Balance=990 looks permanent.", "auto_pause": True},
            {"step": 10, "text": "LOST UPDATE: T1 aborts and restores 1000, erasing T2's committed update.",
             "auto_pause": True},
        ],
    },
    "mvcc_visibility_rules": {
        "name": "MVCC Visibility Rules",
        "description": "Own writes are visible, uncommitted writes of others are not, and a "
                       "snapshot taken before a commit keeps seeing the older versions.",
        "mode": "snapshot",
        "initial": {
            "DataA": {"value": 100, "version_id": "vA0"},
            "DataB": {"value": 500, "version_id": "vB0"},
        },
        "transactions": [
            {
                "name": "T1",
                "color": "#3b82f6",
                "operations": [
                    {"type": "begin", "time": 0},
                    {"type": "read", "time": 5, "target": "DataA"},
                    {"type": "write", "time": 10, "target": "DataA", "value": 110},
                    {"type": "read", "time": 15, "target": "DataA", "comment": "Reads its own write"},
                    {"type": "commit", "time": 45},
                ],
            },
            {
                "name": "T2",
                "color": "#10b981",
                "operations": [
                    {"type": "begin", "time": 20},
                    {"type": "read", "time": 25, "target": "DataA", "comment": "T1's write is uncommitted"},
                    {"type": "write", "time": 30, "target": "DataB", "value": 520},
                    {"type": "read", "time": 35, "target": "DataB", "comment": "Reads its own write"},
                    {"type": "commit", "time": 50},
                ],
            },
            {
                "name": "T3",
                "color": "#f59e0b",
                "operations": [
                    {"type": "begin", "time": 40, "comment": "Snapshot taken before T1 and T2 commit"},
                    {"type": "read", "time": 55, "target": "DataA"},
                    {"type": "read", "time": 60, "target": "DataB"},
                    {"type": "commit", "time": 70},
                ],
            },
        ],
        "key_moments": [
            {"step": 3, "text": "T1 writes DataA=110: vA1 created, vA0 marked by T1 (uncommitted).",
             "auto_pause": True},
            {"step": 4, "text": "T1 reads DataA and sees its own uncommitted vA1.", "auto_pause": True},
            {"step": 6, "text": "T2 reads DataA. T1 is not in T2's snapshot, so T2 still sees vA0.",
             "auto_pause": True},
            {"step": 10, "text": "T1 commits. The committed set is {0, 1}.", "auto_pause": True},
            {"step": 11, "text": "T2 commits. The committed set is {0, 1, 2}.", "auto_pause": True},
            {"step": 12, "text": "T3 reads DataA. Its snapshot is {0}, so it sees vA0 despite T1's commit.",
             "auto_pause": True},
            {"step": 13, "text": "T3 reads DataB and sees vB0 for the same reason.", "auto_pause": False},
        ],
    },
}


def demo_names() -> List[str]:
    return sorted(DEMOS)


def load_demo(name: str) -> Scenario:
    """
    Load a built-in demo by name.

    Raises:
        ScenarioDefinitionError: If no demo has that name
    """
    if name not in DEMOS:
        raise ScenarioDefinitionError(
            f"Unknown demo '{name}'. Available: {', '.join(demo_names())}"
        )
    return load_scenario(DEMOS[name])
