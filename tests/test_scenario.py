"""Unit tests for scenario loading, validation and command scripts."""

import io
import json

import pytest

from scenario import (
    IsolationMode,
    OperationKind,
    ScenarioDefinitionError,
    SeedItem,
    TransactionSpec,
    Operation,
    assign_seed_items,
    default_version_id,
    load_scenario,
    load_scenario_file,
    merge_operations,
    parse_command,
    parse_script,
    version_prefix,
)


@pytest.fixture
def definition():
    """A small valid two-transaction scenario."""
    return {
        "name": "two writers",
        "initial": {"x": 10, "y": {"value": 20, "version_id": "vQ0"}},
        "mode": "rc",
        "transactions": [
            {"name": "T1", "operations": [
                {"type": "begin", "time": 0},
                {"type": "write", "time": 10, "target": "x", "value": 11, "comment": "first"},
                {"type": "commit", "time": 30},
            ]},
            {"name": "T2", "operations": [
                {"type": "begin", "time": 10},
                {"type": "read", "time": 20, "target": "y"},
                {"type": "abort", "time": 30},
            ]},
        ],
        "key_moments": [
            {"step": 4, "text": "later", "autoPause": False},
            {"step": 2, "text": "first write", "highlight": {"versions": ["vX1"]}},
        ],
    }


class TestMergeOperations:
    """Test building the global operation log."""

    def test_orders_by_time(self, definition):
        log = load_scenario(definition).log
        assert [op.time for op in log] == [0, 10, 10, 20, 30, 30]

    def test_ties_keep_declaration_order(self, definition):
        """Test that equal times follow transaction, then position, order."""
        log = load_scenario(definition).log
        assert [(op.tx_name, op.kind) for op in log] == [
            ("T1", OperationKind.BEGIN),
            ("T1", OperationKind.WRITE),
            ("T2", OperationKind.BEGIN),
            ("T2", OperationKind.READ),
            ("T1", OperationKind.COMMIT),
            ("T2", OperationKind.ABORT),
        ]

    def test_same_transaction_ties(self):
        ops = [
            Operation(time=5, kind=OperationKind.BEGIN, tx_name="T1"),
            Operation(time=5, kind=OperationKind.READ, tx_name="T1", target="x"),
        ]
        merged = merge_operations([TransactionSpec(name="T1", operations=ops)])
        assert merged == ops


class TestLoadScenario:
    """Test dict definitions."""

    def test_fields(self, definition):
        scenario = load_scenario(definition)

        assert scenario.name == "two writers"
        assert scenario.mode is IsolationMode.READ_COMMITTED
        assert scenario.initial == {
            "x": SeedItem(value=10, version_id="vX0"),
            "y": SeedItem(value=20, version_id="vQ0"),
        }
        assert scenario.log[1].note == "first"
        assert scenario.log[1].value == 11

    def test_key_moments_sorted_with_aliases(self, definition):
        moments = load_scenario(definition).key_moments
        assert [km.step for km in moments] == [2, 4]
        assert moments[0].auto_pause is True
        assert moments[0].highlight_refs == {"versions": ["vX1"]}
        assert moments[1].auto_pause is False

    def test_mapping_form_of_transactions(self, definition):
        definition["transactions"] = {
            tx["name"]: {"operations": tx["operations"]} for tx in definition["transactions"]
        }
        scenario = load_scenario(definition)
        assert [tx.name for tx in scenario.transactions] == ["T1", "T2"]
        assert len(scenario.log) == 6

    def test_key_moment_lookup(self, definition):
        scenario = load_scenario(definition)
        assert scenario.key_moment_at(2).text == "first write"
        assert scenario.key_moment_at(3) is None

    def test_color_lookup(self, definition):
        definition["transactions"][0]["color"] = "#3b82f6"
        scenario = load_scenario(definition)
        assert scenario.color_of("T1") == "#3b82f6"
        assert scenario.color_of("T2") is None

    def test_read_has_no_value(self, definition):
        definition["transactions"][1]["operations"][1]["value"] = 99
        read = load_scenario(definition).log[3]
        assert read.kind is OperationKind.READ
        assert read.value is None

    def test_stray_target_dropped_outside_reads_and_writes(self, definition):
        definition["transactions"][0]["operations"][0]["target"] = "ghost"
        begin = load_scenario(definition).log[0]
        assert begin.kind is OperationKind.BEGIN
        assert begin.target is None


class TestValidation:
    """Test that malformed scenarios are rejected before replay."""

    def test_operation_before_begin(self, definition):
        definition["transactions"][1]["operations"][0]["time"] = 25
        with pytest.raises(ScenarioDefinitionError, match="before begin"):
            load_scenario(definition)

    def test_begin_twice(self, definition):
        definition["transactions"][0]["operations"].append({"type": "begin", "time": 40})
        with pytest.raises(ScenarioDefinitionError, match="more than once"):
            load_scenario(definition)

    def test_unknown_item(self, definition):
        definition["transactions"][1]["operations"][1]["target"] = "z"
        with pytest.raises(ScenarioDefinitionError, match="unknown item 'z'"):
            load_scenario(definition)

    def test_write_without_value(self, definition):
        del definition["transactions"][0]["operations"][1]["value"]
        with pytest.raises(ScenarioDefinitionError, match="numeric value"):
            load_scenario(definition)

    def test_unknown_operation_type(self, definition):
        definition["transactions"][0]["operations"][1]["type"] = "upsert"
        with pytest.raises(ScenarioDefinitionError, match="Unknown operation type"):
            load_scenario(definition)

    def test_non_numeric_time(self, definition):
        definition["transactions"][0]["operations"][0]["time"] = "soon"
        with pytest.raises(ScenarioDefinitionError, match="non-numeric time"):
            load_scenario(definition)

    def test_duplicate_transaction_name(self, definition):
        definition["transactions"][1]["name"] = "T1"
        with pytest.raises(ScenarioDefinitionError, match="Duplicate"):
            load_scenario(definition)

    def test_key_moment_without_step(self, definition):
        definition["key_moments"].append({"text": "no step"})
        with pytest.raises(ScenarioDefinitionError, match="integer step"):
            load_scenario(definition)

    @pytest.mark.parametrize("moment", ["step 2", 2, None])
    def test_key_moment_not_a_mapping(self, definition, moment):
        definition["key_moments"].append(moment)
        with pytest.raises(ScenarioDefinitionError, match="Key moment must be a mapping"):
            load_scenario(definition)

    def test_transaction_entry_not_a_mapping(self, definition):
        definition["transactions"].append("T3")
        with pytest.raises(ScenarioDefinitionError, match="Transaction entry must be a mapping"):
            load_scenario(definition)

    def test_transaction_body_not_a_mapping(self, definition):
        definition["transactions"] = {"T1": ["begin"]}
        with pytest.raises(ScenarioDefinitionError, match="Transaction T1 must be a mapping"):
            load_scenario(definition)

    def test_operation_not_a_mapping(self, definition):
        definition["transactions"][0]["operations"].append("commit")
        with pytest.raises(ScenarioDefinitionError, match="must be a mapping"):
            load_scenario(definition)

    def test_definition_not_a_mapping(self):
        with pytest.raises(ScenarioDefinitionError, match="Scenario must be a mapping"):
            load_scenario(["not", "a", "scenario"])

    def test_key_moment_out_of_range(self, definition):
        definition["key_moments"].append({"step": 7, "text": "too late"})
        with pytest.raises(ScenarioDefinitionError, match="outside the log"):
            load_scenario(definition)

    def test_no_initial_items(self, definition):
        definition["initial"] = {}
        with pytest.raises(ScenarioDefinitionError):
            load_scenario(definition)

    def test_non_numeric_seed(self, definition):
        definition["initial"]["x"] = "ten"
        with pytest.raises(ScenarioDefinitionError, match="must be a number"):
            load_scenario(definition)

    def test_error_is_a_value_error(self, definition):
        definition["mode"] = "serializable"
        with pytest.raises(ValueError):
            load_scenario(definition)


class TestVersionIds:
    """Test seed version ids and their prefixes."""

    @pytest.mark.parametrize("item, expected", [("Balance", "vB0"), ("x", "vX0"), ("DataA", "vD0"), ("_1", "vX0")])
    def test_default_version_id(self, item, expected):
        assert default_version_id(item) == expected

    @pytest.mark.parametrize("version_id, expected", [("vB0", "vB"), ("v0", "v"), ("vA12", "vA"), ("seed", "seed")])
    def test_version_prefix(self, version_id, expected):
        assert version_prefix(version_id) == expected

    def test_shared_first_letter_falls_back_to_item_name(self):
        seeds = assign_seed_items({"balance": 1, "bonus": 2, "Bravo": {"value": 3, "version_id": "vB0"}})

        assert list(seeds) == ["balance", "bonus", "Bravo"]
        assert seeds["Bravo"] == SeedItem(value=3, version_id="vB0")
        assert seeds["balance"].version_id == "vbalance_0"
        assert seeds["bonus"].version_id == "vbonus_0"

    def test_clashing_explicit_ids_are_separated(self):
        seeds = assign_seed_items({
            "a": {"value": 1, "version_id": "vA0"},
            "b": SeedItem(value=2, version_id="vA0"),
        })
        assert seeds["a"].version_id == "vA0"
        assert seeds["b"].version_id == "vb_0"

    def test_prefixes_are_unique(self):
        seeds = assign_seed_items({f"x{n}": n for n in range(1, 21)})
        prefixes = [version_prefix(seed.version_id) for seed in seeds.values()]
        assert len(set(prefixes)) == 20
        assert seeds["x1"].version_id == "vX0"
        assert seeds["x12"].version_id == "vx12_0"


class TestIsolationModeParse:
    """Test isolation mode spellings."""

    @pytest.mark.parametrize("raw, expected", [
        ("snapshot", IsolationMode.SNAPSHOT),
        ("SI", IsolationMode.SNAPSHOT),
        ("mvcc", IsolationMode.SNAPSHOT),
        ("read-committed", IsolationMode.READ_COMMITTED),
        ("rc", IsolationMode.READ_COMMITTED),
        ("none", IsolationMode.NONE),
        ("no_isolation", IsolationMode.NONE),
        (IsolationMode.NONE, IsolationMode.NONE),
    ])
    def test_aliases(self, raw, expected):
        assert IsolationMode.parse(raw) is expected

    def test_unknown_mode(self):
        with pytest.raises(ScenarioDefinitionError, match="Unknown isolation mode"):
            IsolationMode.parse("serializable")

    def test_multiversion_flag(self):
        assert IsolationMode.SNAPSHOT.is_multiversion
        assert IsolationMode.READ_COMMITTED.is_multiversion
        assert not IsolationMode.NONE.is_multiversion


class TestParseCommand:
    """Test single command-script lines."""

    @pytest.mark.parametrize("line, expected", [
        ("begin(T1)", {"type": "begin", "tx": "T1"}),
        ("R(T1, x)", {"type": "read", "tx": "T1", "target": "x"}),
        ("w(T2,x,-5)", {"type": "write", "tx": "T2", "target": "x", "value": -5}),
        ("W(T2,x,2.5)", {"type": "write", "tx": "T2", "target": "x", "value": 2.5}),
        ("end(T1)", {"type": "commit", "tx": "T1"}),
        ("commit(T1)", {"type": "commit", "tx": "T1"}),
        ("abort(T3)", {"type": "abort", "tx": "T3"}),
        ("init(balance, 100)", {"type": "init", "target": "balance", "value": 100}),
    ])
    def test_commands(self, line, expected):
        assert parse_command(line) == expected

    def test_time_prefix_and_comment(self):
        assert parse_command("@25 R(T1,x) // second read") == {
            "type": "read", "tx": "T1", "target": "x", "time": 25, "comment": "second read",
        }

    @pytest.mark.parametrize("line", ["", "   ", "// just a note", "=== Test 1 ==="])
    def test_blank_and_comment_lines(self, line):
        assert parse_command(line) is None

    @pytest.mark.parametrize("line", ["read(T1,x)", "W(T1,x)", "begin T1", "fail(1)"])
    def test_garbage(self, line):
        with pytest.raises(ScenarioDefinitionError, match="Cannot parse"):
            parse_command(line)


class TestParseScript:
    """Test multi-line command scripts."""

    @pytest.fixture
    def script(self):
        return [
            "init(x, 100)",
            "begin(T1)",
            "R(T1,x)",
            "W(T1,x,110) // plus ten",
            "end(T1)",
            "// Test 2",
            "begin(T2)",
            "@5 begin(T3)",
            "R(T2,y)",
            "abort(T2)",
            "end(T3)",
        ]

    def test_one_scenario_per_section(self, script):
        scenarios = parse_script(script, name="demo.txt", mode=IsolationMode.READ_COMMITTED)

        assert [s.name for s in scenarios] == ["demo.txt", "Test 2"]
        assert all(s.mode is IsolationMode.READ_COMMITTED for s in scenarios)

    def test_times_follow_line_order(self, script):
        first = parse_script(script)[0]
        assert [op.time for op in first.log] == [10, 20, 30, 40]
        assert first.log[2].note == "plus ten"
        assert first.initial["x"] == SeedItem(value=100, version_id="vX0")

    def test_explicit_time_and_zero_seed(self, script):
        second = parse_script(script)[1]
        assert [(op.tx_name, op.kind.value) for op in second.log] == [
            ("T3", "begin"), ("T2", "begin"), ("T2", "read"), ("T2", "abort"), ("T3", "commit"),
        ]
        assert second.initial["y"].value == 0

    def test_script_without_sections(self):
        scenarios = parse_script(["begin(T1)", "R(T1,x)"])
        assert len(scenarios) == 1
        assert scenarios[0].name == "script"

    def test_numbered_items_load(self):
        """Test that a script over x1..x20 loads and keeps every item apart."""
        lines = ["begin(T1)"] + [f"W(T1,x{n},{n * 10})" for n in range(1, 21)] + ["end(T1)"]
        scenario = parse_script(lines)[0]
        assert len(scenario.initial) == 20
        assert len({version_prefix(seed.version_id) for seed in scenario.initial.values()}) == 20


class TestLoadScenarioFile:
    """Test loading from open files."""

    def test_json_object(self, definition):
        scenarios = load_scenario_file(io.StringIO(json.dumps(definition)))
        assert len(scenarios) == 1
        assert scenarios[0].mode is IsolationMode.READ_COMMITTED

    def test_json_list_with_mode_override(self, definition):
        source = io.StringIO(json.dumps([definition, dict(definition, name="copy")]))
        scenarios = load_scenario_file(source, mode=IsolationMode.NONE)
        assert [s.name for s in scenarios] == ["two writers", "copy"]
        assert all(s.mode is IsolationMode.NONE for s in scenarios)

    def test_invalid_json(self):
        with pytest.raises(ScenarioDefinitionError, match="Invalid JSON"):
            load_scenario_file(io.StringIO('{"name": '))

    def test_script_text(self):
        scenarios = load_scenario_file(io.StringIO("init(x,1)\nbegin(T1)\nW(T1,x,2)\nend(T1)\n"))
        assert len(scenarios[0].log) == 3
        assert scenarios[0].mode is IsolationMode.SNAPSHOT
