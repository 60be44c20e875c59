import sys
import argparse
import logging
import threading
from typing import Optional, TextIO, List

from demos import demo_names, load_demo
from playback import PlaybackController, PlaybackState, StepSnapshot, DEFAULT_INTERVAL
from replay import SimulationState, compute_scenario_state, format_state
from scenario import (
    IsolationMode,
    OperationKind,
    Scenario,
    ScenarioDefinitionError,
    load_scenario_file,
)


class ReplayCLI:
    """
    Command-line front end for the transaction replay engine.

    Prints what every operation of a scenario did, the key-moment notes, and
    tables of the resulting database and transaction state.
    """

    def __init__(self, mode: Optional[IsolationMode] = None, strict_writes: bool = False, out: Optional[TextIO] = None):
        """
        Args:
            mode: Isolation mode overriding each scenario's own mode
            strict_writes: Reject writes on versions already superseded by
                another transaction
            out: Stream to print to; defaults to sys.stdout
        """
        self.mode = mode
        self.strict_writes = strict_writes
        self.out = out if out is not None else sys.stdout

    def _print(self, text: str = "") -> None:
        print(text, file=self.out)

    def state_at(self, scenario: Scenario, step: int) -> SimulationState:
        return compute_scenario_state(scenario, step, mode=self.mode, strict_writes=self.strict_writes)

    def describe_step(self, state: SimulationState) -> str:
        """
        Describe the outcome of the last operation applied to ``state``.

        Args:
            state: State right after the operation

        Returns:
            One line such as "T1 reads x: 100 [vX0]" or
            "W(T2,x,5) ignored: T2 is already committed"
        """
        op = state.current_operation
        if op is None:
            return "initial state"
        if (ignored := next((i for i in state.ignored if i.step == state.step), None)) is not None:
            return f"{op.describe()} ignored: {ignored.reason}"
        if (conflict := next((c for c in state.conflicts if c.step == state.step), None)) is not None:
            return (
                f"{op.describe()} rejected: write-write conflict on {conflict.version_id} "
                f"held by {state.tx_label(conflict.holder_id)}"
            )

        tx = state.transactions[op.tx_name]
        if op.kind is OperationKind.BEGIN:
            snapshot = ", ".join(str(i) for i in sorted(tx.snapshot_committed_ids))
            return f"begin {tx.name} (id {tx.id}, snapshot {{{snapshot}}})"
        if op.kind is OperationKind.READ:
            read = tx.reads[-1]
            line = f"{tx.name} reads {read.item}: {read.value_observed}"
            if read.version_id_observed:
                line += f" [{read.version_id_observed}]"
            return line + (" DIRTY READ" if read.dirty else "")
        if op.kind is OperationKind.WRITE:
            write = tx.writes[-1]
            line = f"{tx.name} writes {write.item}: {write.value}"
            if write.new_version_id:
                line += f" [{write.new_version_id} supersedes {write.old_version_id or '-'}]"
            return line + (" DIRTY WRITE" if write.overwrote_uncommitted else "")
        if op.kind is OperationKind.COMMIT:
            return f"{tx.name} commits"
        return f"{tx.name} aborts"

    def run_scenario(self, scenario: Scenario, step: Optional[int] = None) -> SimulationState:
        """
        Replay a scenario and print the result.

        Without ``step`` every operation is printed followed by the final
        state. With ``step`` only the state at that step is printed.

        Returns:
            The last state printed
        """
        mode = self.mode or scenario.mode
        log = scenario.log
        self._print(f"=== {scenario.name} [{mode.value}] ===")
        if scenario.description:
            self._print(scenario.description)

        if step is not None:
            state = self.state_at(scenario, step)
            self._print(f"\nState at step {state.step}/{len(log)} (t={state.time}):")
            self._print(format_state(state))
            return state

        state = self.state_at(scenario, 0)
        for position in range(1, len(log) + 1):
            state = self.state_at(scenario, position)
            self._print(f"{position:>3}  t={state.time:<5} {self.describe_step(state)}")
            moment = scenario.key_moment_at(position)
            if moment is not None:
                self._print(f"     >> {moment.text}")
        self._print("\nFinal state:")
        self._print(format_state(state))
        return state

    def play(self, scenario: Scenario, speed: float = 1.0, interval: float = DEFAULT_INTERVAL, wait: bool = True) -> None:
        """
        Play a scenario in real time with a PlaybackController.

        At every auto-pause key moment the note is printed and playback waits
        for Enter (or resumes at once when ``wait`` is False).
        """
        changed = threading.Event()
        printed = set()

        def on_change(snapshot: StepSnapshot) -> None:
            if snapshot.current_operation is not None and snapshot.step not in printed:
                printed.add(snapshot.step)
                self._print(f"{snapshot.step:>3}/{snapshot.total_steps}  {self.describe_step(snapshot.state)}")
            changed.set()

        controller = PlaybackController(
            scenario,
            mode=self.mode,
            strict_writes=self.strict_writes,
            on_change=on_change,
            base_interval=interval,
            speed=speed,
        )
        self._print(f"=== {scenario.name} [{controller.mode.value}] ===")
        controller.start()
        try:
            while True:
                changed.wait()
                changed.clear()
                snapshot = controller.snapshot()
                if snapshot.playback_state is PlaybackState.PAUSED_AT_KEY_MOMENT:
                    self._print(f"     >> {snapshot.key_moment.text}")
                    if wait:
                        input("     (Enter to continue) ")
                    controller.resume()
                elif snapshot.playback_state is PlaybackState.FINISHED:
                    break
        finally:
            controller.close()
        self._print("\nFinal state:")
        self._print(format_state(controller.state))


def parse_args(argv: Optional[List[str]] = None):
    """
    Parse command-line arguments.

    Returns:
        argparse.Namespace with the input file (or None for stdin), the
        selected demo, isolation mode override and playback options
    """
    parser = argparse.ArgumentParser(
        description="Replay transaction schedules under different isolation levels"
    )
    parser.add_argument(
        "input_file",
        nargs="?",
        type=argparse.FileType("r"),
        default=None,
        help="Scenario JSON or command script (default: stdin)",
    )
    parser.add_argument("--demo", choices=demo_names(), help="Run a built-in demo scenario")
    parser.add_argument("--list-demos", action="store_true", help="List built-in demos and exit")
    parser.add_argument(
        "--mode",
        type=IsolationMode.parse,
        default=None,
        help="Isolation mode: snapshot, read_committed or none (default: the scenario's own)",
    )
    parser.add_argument(
        "--strict-writes",
        action="store_true",
        help="Reject writes whose base version another transaction already superseded",
    )
    parser.add_argument("--step", type=int, default=None, help="Only show the state at this step")
    parser.add_argument("--play", action="store_true", help="Play the scenario in real time")
    parser.add_argument("--speed", type=float, default=1.0, help="Playback speed multiplier")
    parser.add_argument(
        "--interval", type=float, default=DEFAULT_INTERVAL, help="Seconds per step at speed 1.0"
    )
    parser.add_argument("--no-wait", action="store_true", help="Do not wait for Enter at key moments")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for engine diagnostics",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point.

    Loads scenarios from a demo, a file or stdin, then prints each replay or
    plays it in real time. Scenario errors are reported on stderr and exit
    with status 2.
    """
    args = parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(levelname)s %(name)s: %(message)s")

    if args.list_demos:
        for name in demo_names():
            print(f"{name:<28} {load_demo(name).name}")
        return

    cli = ReplayCLI(mode=args.mode, strict_writes=args.strict_writes)
    try:
        if args.demo:
            scenarios = [load_demo(args.demo)]
        else:
            source = args.input_file if args.input_file else sys.stdin
            scenarios = load_scenario_file(source)
        for index, scenario in enumerate(scenarios):
            if index:
                print()
            if args.play:
                cli.play(scenario, speed=args.speed, interval=args.interval, wait=not args.no_wait)
            else:
                cli.run_scenario(scenario, step=args.step)
    except ScenarioDefinitionError as e:
        print(f"Invalid scenario: {e}", file=sys.stderr)
        sys.exit(2)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    finally:
        # Close file if we opened one
        if args.input_file:
            args.input_file.close()


if __name__ == "__main__":
    main()
