"""
Playback controller: owns the current step of one replay and its timer.

The controller never patches state. Every step change asks the replay
engine for a fresh SimulationState, so stepping backwards is exact. Each
visualization gets its own controller; controllers share nothing.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Set, Union

from replay import SimulationState, clamp_step, compute_scenario_state
from scenario import IsolationMode, KeyMoment, Operation, Scenario

logger = logging.getLogger(__name__)

# Seconds between ticks at speed 1.0.
DEFAULT_INTERVAL = 1.2
DEFAULT_SPEED = 1.0


class PlaybackState(Enum):
    """
    States of the playback state machine.

    IDLE: Not playing; initial state and the state after reset
    PLAYING: The timer advances one step per tick
    PAUSED_BY_USER: Playback paused with pause()
    PAUSED_AT_KEY_MOMENT: Playback stopped itself at an annotated step
    FINISHED: Playback reached the end of the log
    """
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED_BY_USER = "paused_by_user"
    PAUSED_AT_KEY_MOMENT = "paused_at_key_moment"
    FINISHED = "finished"

    @property
    def is_paused(self) -> bool:
        return self in (PlaybackState.PAUSED_BY_USER, PlaybackState.PAUSED_AT_KEY_MOMENT)


@dataclass(frozen=True)
class StepSnapshot:
    """Everything a presentation layer needs to draw one step."""

    step: int
    total_steps: int
    playback_state: PlaybackState
    state: SimulationState
    current_operation: Optional[Operation]
    key_moment: Optional[KeyMoment]


class PlaybackController:
    """
    Drives one replay: start/pause/resume, stepping, seeking and speed.

    All public methods are safe to call from any thread. Transitions run
    under a single lock and each scheduled tick carries a generation number,
    so a tick whose timer was cancelled does nothing when it fires late.
    """

    def __init__(
        self,
        scenario: Scenario,
        mode: Optional[Union[IsolationMode, str]] = None,
        strict_writes: bool = False,
        on_change: Optional[Callable[[StepSnapshot], None]] = None,
        base_interval: float = DEFAULT_INTERVAL,
        speed: float = DEFAULT_SPEED,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        """
        Args:
            scenario: Scenario to replay
            mode: Isolation mode; defaults to the scenario's own mode
            strict_writes: Replay with write-write conflict detection
            on_change: Called with a StepSnapshot after every change
            base_interval: Seconds between ticks at speed 1.0
            speed: Initial speed multiplier
            timer_factory: Callable with threading.Timer's signature
        """
        if base_interval <= 0:
            raise ValueError(f"base_interval must be positive, got {base_interval}")
        self.scenario = scenario
        self.mode = IsolationMode.parse(mode if mode is not None else scenario.mode)
        self.strict_writes = strict_writes
        self.on_change = on_change
        self.base_interval = base_interval
        self._speed = DEFAULT_SPEED
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._timer = None
        self._generation = 0
        self._step = 0
        self._playback_state = PlaybackState.IDLE
        self._cleared_moments: Set[int] = set()
        self._log_length = len(scenario.log)
        self._state = self._compute()
        self.set_speed(speed)

    # ─── Read-only views ────────────────────────────────────────────────

    @property
    def step(self) -> int:
        return self._step

    @property
    def total_steps(self) -> int:
        return self._log_length

    @property
    def playback_state(self) -> PlaybackState:
        return self._playback_state

    @property
    def state(self) -> SimulationState:
        return self._state

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def interval(self) -> float:
        return self.base_interval / self._speed

    def snapshot(self) -> StepSnapshot:
        with self._lock:
            return StepSnapshot(
                step=self._step,
                total_steps=self._log_length,
                playback_state=self._playback_state,
                state=self._state,
                current_operation=self._state.current_operation,
                key_moment=self.scenario.key_moment_at(self._step),
            )

    # ─── Controls ───────────────────────────────────────────────────────

    def start(self) -> None:
        """Begin playing from IDLE or FINISHED; a finished replay rewinds first."""
        with self._lock:
            if self._playback_state not in (PlaybackState.IDLE, PlaybackState.FINISHED):
                return
            if self._playback_state is PlaybackState.FINISHED or self._step >= self._log_length:
                self._cleared_moments.clear()
                self._move_to(0)
            self._transition(PlaybackState.PLAYING)
            self._emit()
            self._schedule()

    def pause(self) -> None:
        with self._lock:
            if self._playback_state is not PlaybackState.PLAYING:
                return
            self._cancel()
            self._transition(PlaybackState.PAUSED_BY_USER)
            self._emit()

    def resume(self) -> None:
        """
        Continue after a pause.

        The key moment at the current step is disarmed so playback does not
        stop on it again straight away.
        """
        with self._lock:
            if not self._playback_state.is_paused:
                return
            self._cleared_moments.add(self._step)
            self._transition(PlaybackState.PLAYING)
            self._emit()
            self._schedule()

    def reset(self) -> None:
        with self._lock:
            self._cancel()
            self._cleared_moments.clear()
            self._move_to(0)
            self._transition(PlaybackState.IDLE)
            self._emit()

    def tick(self) -> None:
        """
        Advance one step while playing.

        Side effects:
            - Recomputes the state for the new step from scratch
            - Pauses at an armed auto-pause key moment, finishes at the end
              of the log, otherwise schedules the next tick
            - Calls on_change
        """
        with self._lock:
            if self._playback_state is not PlaybackState.PLAYING:
                return
            if self._step >= self._log_length:
                self._transition(PlaybackState.FINISHED)
                self._emit()
                return
            self._move_to(self._step + 1)
            moment = self.scenario.key_moment_at(self._step)
            if moment is not None and moment.auto_pause and self._step not in self._cleared_moments:
                self._transition(PlaybackState.PAUSED_AT_KEY_MOMENT)
            elif self._step >= self._log_length:
                self._transition(PlaybackState.FINISHED)
            self._emit()
            if self._playback_state is PlaybackState.PLAYING:
                self._schedule()

    def step_forward(self) -> None:
        self.seek(self._step + 1)

    def step_backward(self) -> None:
        self.seek(self._step - 1)

    def seek(self, step: int) -> None:
        """Jump to ``step`` (clamped). Ignored while playing."""
        with self._lock:
            if self._playback_state is PlaybackState.PLAYING:
                return
            target = clamp_step(step, self._log_length)
            if target == self._step:
                return
            self._move_to(target)
            self._emit()

    def set_speed(self, multiplier: float) -> None:
        if multiplier <= 0:
            raise ValueError(f"Speed multiplier must be positive, got {multiplier}")
        with self._lock:
            self._speed = float(multiplier)
            if self._playback_state is PlaybackState.PLAYING and self._timer is not None:
                self._cancel()
                self._schedule()

    def set_isolation_mode(self, mode: Union[IsolationMode, str]) -> None:
        with self._lock:
            self.mode = IsolationMode.parse(mode)
            self._state = self._compute()
            self._emit()

    def set_strict_writes(self, strict_writes: bool) -> None:
        with self._lock:
            self.strict_writes = strict_writes
            self._state = self._compute()
            self._emit()

    def close(self) -> None:
        """Cancel any pending tick. Call when the host view goes away."""
        with self._lock:
            self._cancel()
            if self._playback_state is PlaybackState.PLAYING:
                self._transition(PlaybackState.PAUSED_BY_USER)

    # ─── Internals ──────────────────────────────────────────────────────

    def _compute(self) -> SimulationState:
        return compute_scenario_state(self.scenario, self._step, mode=self.mode, strict_writes=self.strict_writes)

    def _move_to(self, step: int) -> None:
        self._step = step
        self._state = self._compute()

    def _transition(self, new_state: PlaybackState) -> None:
        if new_state is not self._playback_state:
            logger.debug("Playback %s -> %s at step %d", self._playback_state.value, new_state.value, self._step)
        self._playback_state = new_state

    def _emit(self) -> None:
        if self.on_change is not None:
            self.on_change(self.snapshot())

    def _schedule(self) -> None:
        self._cancel()
        timer = self._timer_factory(self.interval, self._on_timer, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _cancel(self) -> None:
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self.tick()
