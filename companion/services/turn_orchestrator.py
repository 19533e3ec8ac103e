# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Turn orchestrator: drives controlled units through their turns.

The orchestrator is a small state machine fed by two triggers:

- World events (combat start/end, unit turn start/end) delivered through
  the WorldEventListener callbacks
- A periodic ``tick()`` that polls whether the acting unit's command
  queue has drained and whether a pending decision may run

The oracle request is the only long wait. It runs as an asyncio task
next to the tick loop and is guarded by a CancellationToken; responses
that arrive after cancellation, or for a unit whose turn has moved on,
are dropped.

Two rules keep the oracle from acting on a stale picture of the battle:
at most one oracle request is outstanding at a time, and no request is
made while the unit is still carrying out queued commands.
"""

import asyncio
import uuid
from enum import Enum
from typing import List, Optional, Set

from companion.config import Settings
from companion.logging import (
    StructuredLogger,
    PhaseTimer,
    clear_context,
    redact_secrets,
    sanitize_for_log,
    set_decision_id,
    set_unit_id,
)
from companion.metrics import MetricsTimer, get_metrics_collector
from companion.models import (
    Action,
    Delay,
    EndTurn,
    Move,
    MoveThenAct,
    Position,
    Sequence,
    UnitInfo,
)
from companion.prompting.prompt_builder import PromptBuilder
from companion.services.action_executor import ActionExecutor
from companion.services.action_parser import PARSE_ERROR_PREFIX, ActionParser
from companion.services.action_validator import ActionValidator
from companion.services.oracle_client import (
    CancellationToken,
    OracleCancelledError,
    OracleClient,
    OracleClientError,
    OracleTimeoutError,
)
from companion.services.snapshot_builder import SnapshotUnavailable, StateSnapshotBuilder
from companion.world import WorldAdapter

logger = StructuredLogger(__name__)

# Maximum prompt/response length written to logs
MAX_LOGGED_TEXT_LENGTH = 2000

EXECUTION_MODES = ("auto", "manual")


class OrchestratorState(str, Enum):
    """Where the acting unit's turn currently stands."""
    IDLE = "idle"
    AWAITING_DECISION = "awaiting_decision"
    DECISION_PENDING = "decision_pending"
    EXECUTING = "executing"
    TURN_DONE = "turn_done"


def _truncate_for_log(text: str) -> str:
    redacted = redact_secrets(text)
    if len(redacted) > MAX_LOGGED_TEXT_LENGTH:
        return redacted[:MAX_LOGGED_TEXT_LENGTH] + "... (truncated)"
    return redacted


class TurnOrchestrator:
    """Central state machine coordinating oracle, validator and world.

    Flow for one decision:
    1. A controlled unit's turn starts: its autonomy is switched off
    2. A snapshot is taken, the prompt built and the oracle asked
    3. The answer is decoded and validated into the pending action
    4. Auto mode executes it at once; manual mode waits for approve_pending()
    5. While the unit's command queue is busy, nothing happens
    6. When the queue drains: ask again if AP remain, else end the turn

    No exception escapes event handlers or tick(); failures are logged
    and kept in ``last_error``.
    """

    def __init__(
        self,
        world: WorldAdapter,
        oracle: OracleClient,
        settings: Settings,
        snapshot_builder: Optional[StateSnapshotBuilder] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        parser: Optional[ActionParser] = None,
        validator: Optional[ActionValidator] = None,
        executor: Optional[ActionExecutor] = None,
        enabled: bool = True
    ):
        """Initialize the orchestrator and subscribe to world events.

        Args:
            world: Adapter to the running battle
            oracle: Client used to obtain decisions
            settings: Control preferences (mode, controlled units, prompt hints)
            snapshot_builder: Optional override, defaults to one over ``world``
            prompt_builder: Optional override, defaults to one built from settings
            parser: Optional override of the action codec
            validator: Optional override of the validator
            executor: Optional override, defaults to one over ``world``
            enabled: Whether the orchestrator starts enabled
        """
        self.world = world
        self.oracle = oracle
        self.settings = settings
        self.snapshot_builder = snapshot_builder or StateSnapshotBuilder(world)
        self.prompt_builder = prompt_builder or PromptBuilder(
            preferred_combat_style=settings.preferred_combat_style,
            defensive_health_threshold=settings.defensive_health_threshold,
            use_heroic_acts=settings.use_heroic_acts,
            use_consumables=settings.use_consumables
        )
        self.parser = parser or ActionParser()
        self.validator = validator or ActionValidator()
        self.executor = executor or ActionExecutor(world)

        self._enabled = enabled
        self._in_combat = False
        self._state = OrchestratorState.IDLE
        self._execution_mode = settings.execution_mode
        self._current_unit_id: Optional[str] = None
        self._pending_action: Optional[Action] = None
        self._remaining_steps: List[Action] = []
        self._truncated_move: Optional[Position] = None

        self._request_task: Optional[asyncio.Task] = None
        self._cancel_token: Optional[CancellationToken] = None

        # Units whose autonomy this orchestrator switched off
        self._controlled_units: Set[str] = set()
        self._controlled_names: Set[str] = {
            name.strip().lower() for name in settings.controlled_companions if name.strip()
        }

        self._last_error: Optional[str] = None
        self._last_prompt: Optional[str] = None
        self._last_response: Optional[str] = None
        self._running = False

        world.subscribe(self)
        logger.info(
            "Turn orchestrator initialized",
            execution_mode=self._execution_mode,
            enabled=self._enabled
        )

    # ------------------------------------------------------------------
    # UI-facing state
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def pending_action(self) -> Optional[Action]:
        return self._pending_action

    @property
    def is_processing(self) -> bool:
        """True while an oracle request is outstanding."""
        return self._request_task is not None and not self._request_task.done()

    @property
    def is_executing(self) -> bool:
        return self._state == OrchestratorState.EXECUTING

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def in_combat(self) -> bool:
        return self._in_combat

    @property
    def execution_mode(self) -> str:
        return self._execution_mode

    @property
    def current_unit_id(self) -> Optional[str]:
        return self._current_unit_id

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def last_prompt(self) -> Optional[str]:
        return self._last_prompt

    @property
    def last_response(self) -> Optional[str]:
        return self._last_response

    @property
    def controlled_units(self) -> Set[str]:
        return set(self._controlled_units)

    # ------------------------------------------------------------------
    # World events
    # ------------------------------------------------------------------

    def on_combat_started(self) -> None:
        self._in_combat = True
        self._pending_action = None
        logger.info("Combat started", enabled=self._enabled)

    def on_combat_ended(self) -> None:
        try:
            self._in_combat = False
            self._reset_turn()
            self._release_all_autonomy()
            logger.info("Combat ended")
        except Exception as e:
            self._record_error("combat_end_failed", e)
        finally:
            clear_context()

    def on_unit_turn_started(self, unit_id: str) -> None:
        """Take over a controlled unit's turn and ask the oracle.

        Ignored when disabled, out of combat, or when the unit is not
        controlled. While an oracle request is outstanding this is a
        logged no-op.
        """
        try:
            if not self._enabled or not self._in_combat:
                return
            if self.is_processing:
                logger.warning(
                    "Oracle request already outstanding, ignoring turn start",
                    requested_unit=unit_id
                )
                return

            unit = self.world.query_unit(unit_id)
            if unit is None or not self.should_control_unit(unit):
                return

            self._reset_turn()
            self._current_unit_id = unit_id
            set_unit_id(unit_id)

            # Brain switch first so the world's own AI cannot act meanwhile
            self.world.set_autonomy_enabled(unit_id, False)
            self._controlled_units.add(unit_id)
            logger.info("Taking control of unit", unit_name=sanitize_for_log(unit.name))

            if unit.action_points <= 0:
                logger.info("Unit has no action points, turn will end on next idle tick")
                self._state = OrchestratorState.EXECUTING
                return

            self._request_decision()
        except Exception as e:
            self._record_error("turn_start_failed", e)

    def on_unit_turn_ended(self, unit_id: str) -> None:
        if unit_id != self._current_unit_id:
            return
        try:
            logger.info("Unit turn ended")
            self._reset_turn()
        except Exception as e:
            self._record_error("turn_end_failed", e)
        finally:
            clear_context()

    # ------------------------------------------------------------------
    # Operator controls
    # ------------------------------------------------------------------

    def approve_pending(self) -> bool:
        """Execute the pending decision (manual mode).

        Returns:
            True if a pending decision was executed
        """
        try:
            if self._state != OrchestratorState.DECISION_PENDING or self._pending_action is None:
                logger.info("Nothing pending to approve", state=self._state.value)
                return False
            self._execute_pending()
            return True
        except Exception as e:
            self._record_error("approve_failed", e)
            return False

    def skip_turn(self) -> None:
        """Give the current turn back to the world's own AI."""
        try:
            unit_id = self._current_unit_id
            self._reset_turn()
            if unit_id is not None:
                self._restore_autonomy(unit_id)
                logger.info("Turn skipped, autonomy restored", skipped_unit=unit_id)
                self._record_decision("skipped")
        except Exception as e:
            self._record_error("skip_failed", e)
        finally:
            clear_context()

    def cancel_pending(self) -> None:
        """Discard the pending decision and end the unit's turn."""
        try:
            unit_id = self._current_unit_id
            self._cancel_request()
            self._pending_action = None
            self._remaining_steps = []
            if unit_id is None:
                self._state = OrchestratorState.IDLE
                return
            self.executor.end_turn(unit_id)
            self._state = OrchestratorState.TURN_DONE
            self._record_decision("cancelled")
            logger.info("Pending decision cancelled, turn ended")
        except Exception as e:
            self._record_error("cancel_failed", e)

    def set_execution_mode(self, mode: str) -> None:
        """Switch between auto and manual execution.

        Raises:
            ValueError: If mode is not "auto" or "manual"
        """
        if mode not in EXECUTION_MODES:
            raise ValueError(f"execution mode must be one of {EXECUTION_MODES}, got: {mode}")
        self._execution_mode = mode
        logger.info("Execution mode changed", execution_mode=mode)

    def enable(self) -> None:
        self._enabled = True
        logger.info("Turn orchestrator enabled")

    def disable(self) -> None:
        """Stop driving units and hand every controlled unit back to the world."""
        try:
            self._enabled = False
            self._reset_turn()
            self._release_all_autonomy()
            logger.info("Turn orchestrator disabled")
        except Exception as e:
            self._record_error("disable_failed", e)
        finally:
            clear_context()

    def should_control_unit(self, unit: UnitInfo) -> bool:
        """Decide whether the orchestrator drives this unit's turns.

        Only player-faction units qualify. With control_all_companions on,
        every companion does (the main character only if
        control_player_character is set); otherwise the unit's name or id
        must be in the controlled companions list.
        """
        if not self._enabled or not unit.is_player_faction:
            return False
        if self.settings.control_all_companions:
            if unit.is_main_character and not self.settings.control_player_character:
                return False
            return True
        return (
            unit.name.lower() in self._controlled_names
            or unit.id.lower() in self._controlled_names
        )

    def add_controlled_companion(self, name: str) -> None:
        if name and name.strip():
            self._controlled_names.add(name.strip().lower())

    def remove_controlled_companion(self, name: str) -> None:
        self._controlled_names.discard(name.strip().lower())

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Advance the state machine by polling the world.

        Safe to call at any rate. In EXECUTING with a busy command queue
        this never dispatches an oracle request.
        """
        try:
            if not self._enabled or not self._in_combat or self._current_unit_id is None:
                return

            if self._state == OrchestratorState.DECISION_PENDING:
                if self._pending_action is not None and self._execution_mode == "auto":
                    self._execute_pending()
                return

            if self._state != OrchestratorState.EXECUTING:
                return

            unit_id = self._current_unit_id
            if not self.world.is_command_queue_empty(unit_id):
                return

            if self._remaining_steps:
                self._run_next_step()
                return

            unit = self.world.query_unit(unit_id)
            if unit is not None and unit.action_points > 0:
                logger.debug("Unit idle with AP remaining, asking for next decision")
                self._request_decision()
            else:
                logger.info("Unit idle with no AP remaining, ending turn")
                self.executor.end_turn(unit_id)
                self._state = OrchestratorState.TURN_DONE
        except Exception as e:
            self._record_error("tick_failed", e)

    async def run(self, interval: Optional[float] = None) -> None:
        """Call tick() periodically until stop() is called."""
        interval = interval if interval is not None else self.settings.tick_interval
        self._running = True
        logger.info("Tick loop started", tick_interval=interval)
        while self._running:
            self.tick()
            await asyncio.sleep(interval)
        logger.info("Tick loop stopped")

    def stop(self) -> None:
        self._running = False

    # ------------------------------------------------------------------
    # Decision cycle
    # ------------------------------------------------------------------

    def _request_decision(self) -> bool:
        if self.is_processing:
            logger.warning("Oracle request already outstanding, not dispatching another")
            return False

        unit_id = self._current_unit_id
        try:
            with PhaseTimer("snapshot", logger), MetricsTimer("snapshot"):
                state = self.snapshot_builder.build()
        except SnapshotUnavailable as e:
            logger.warning("Snapshot unavailable, aborting decision", reason=str(e))
            self._last_error = f"Snapshot unavailable: {e}"
            self._record_decision("snapshot_unavailable")
            self._state = OrchestratorState.IDLE
            return False

        prompt = self.prompt_builder.build(state, notes=self._consume_notes(state))
        self._last_prompt = prompt
        self._last_error = None
        if self.settings.log_prompts:
            logger.debug("Oracle prompt", prompt=_truncate_for_log(prompt))

        set_decision_id(uuid.uuid4().hex[:12])
        token = CancellationToken()
        self._cancel_token = token
        self._state = OrchestratorState.AWAITING_DECISION
        self._request_task = asyncio.get_running_loop().create_task(
            self._await_decision(prompt, state, token, unit_id)
        )
        logger.info("Oracle request dispatched")
        return True

    async def _await_decision(self, prompt, state, token: CancellationToken, unit_id: str) -> None:
        try:
            try:
                raw = await self.oracle.request_action(prompt, token)
            except asyncio.CancelledError:
                logger.debug("Oracle request task cancelled")
                raise
            except OracleCancelledError:
                logger.debug("Oracle request cancelled, discarding")
                return
            except OracleTimeoutError as e:
                self._last_error = f"Oracle timed out: {e}"
                logger.warning("Oracle timed out, ending turn", error=str(e))
                action: Action = EndTurn(reason="Oracle request timed out")
                outcome = "timeout"
            except OracleClientError as e:
                self._last_error = f"Oracle request failed: {e}"
                logger.error(
                    "Oracle request failed, ending turn",
                    error_type=type(e).__name__,
                    error=str(e)
                )
                action = EndTurn(reason="Oracle request failed")
                outcome = "transport_error"
            else:
                if token.cancelled:
                    logger.info("Discarding oracle response that arrived after cancellation")
                    self._record_decision("discarded")
                    return
                self._last_response = raw
                if self.settings.log_responses:
                    logger.debug("Oracle response", response=_truncate_for_log(raw))
                action = self.validator.validate(self.parser.decode(raw), state)
                outcome = self._classify(action)

            if token.cancelled or unit_id != self._current_unit_id:
                logger.info("Discarding decision for a turn that has moved on")
                self._record_decision("discarded")
                return

            self._pending_action = action
            self._state = OrchestratorState.DECISION_PENDING
            self._record_decision(outcome)
            logger.info(
                f"Oracle decided: {self.parser.describe(action)}",
                confidence=action.confidence,
                validation_error=action.validation_error
            )

            if self._execution_mode == "auto":
                self._execute_pending()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._record_error("decision_failed", e)
            self._fall_back_to_end_turn(token, unit_id)

    def _fall_back_to_end_turn(self, token: CancellationToken, unit_id: str) -> None:
        """Replace a decision that blew up before reaching the world with EndTurn."""
        if token.cancelled or unit_id != self._current_unit_id:
            return
        if self._pending_action is not None or self._state not in (
            OrchestratorState.AWAITING_DECISION,
            OrchestratorState.DECISION_PENDING,
        ):
            return
        try:
            self._pending_action = EndTurn(reason="Oracle request failed")
            self._state = OrchestratorState.DECISION_PENDING
            self._record_decision("error")
            logger.warning("Decision failed unexpectedly, ending turn")
            if self._execution_mode == "auto":
                self._execute_pending()
        except Exception as e:
            self._record_error("decision_fallback_failed", e)

    def _execute_pending(self) -> None:
        action = self._pending_action
        self._pending_action = None
        if action is None or self._current_unit_id is None:
            return

        if isinstance(action, Sequence) and action.steps:
            self._remaining_steps = list(action.steps[1:])
            action = action.steps[0]

        self._execute(action)

    def _run_next_step(self) -> None:
        """Validate the next sequence step against a fresh snapshot and run it."""
        step = self._remaining_steps.pop(0)
        try:
            state = self.snapshot_builder.build()
        except SnapshotUnavailable as e:
            logger.warning("Snapshot unavailable before sequence step", reason=str(e))
            self._remaining_steps = []
            self._last_error = f"Snapshot unavailable: {e}"
            self._state = OrchestratorState.IDLE
            return
        self._execute(self.validator.validate(step, state))

    def _execute(self, action: Action) -> None:
        unit_id = self._current_unit_id
        self._state = OrchestratorState.EXECUTING

        with MetricsTimer("execution"):
            success = self.executor.execute(action, unit_id)

        if isinstance(action, (EndTurn, Delay)):
            if not success:
                self._last_error = f"Execution failed: {self.parser.describe(action)}"
            self._remaining_steps = []
            self._state = OrchestratorState.TURN_DONE
            logger.info("Turn finished", final_action=self.parser.describe(action))
            return

        if not success:
            self._remaining_steps = []
            self._last_error = f"Execution failed: {self.parser.describe(action)}"
            if self.world.is_command_queue_empty(unit_id):
                logger.warning("Execution failed with nothing queued, ending turn")
                self.executor.end_turn(unit_id)
                self._state = OrchestratorState.TURN_DONE
            else:
                logger.warning("Execution failed after commands were queued, treating as executed")
            return

        if isinstance(action, (Move, MoveThenAct)) and action.partial_move:
            self._truncated_move = action.target_position
        logger.info("Action executed", executed_action=self.parser.describe(action))

    def _consume_notes(self, state) -> List[str]:
        notes: List[str] = []
        if self._truncated_move is not None and state.current_unit is not None:
            notes.append(
                f"Your previous move toward {self._truncated_move} was cut short by your "
                f"remaining movement; you are now at {state.current_unit.position}."
            )
        self._truncated_move = None
        return notes

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _cancel_request(self) -> None:
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        if self._request_task is not None and not self._request_task.done():
            self._request_task.cancel()
            logger.info("Outstanding oracle request cancelled")
        self._cancel_token = None
        self._request_task = None

    def _reset_turn(self) -> None:
        self._cancel_request()
        self._pending_action = None
        self._remaining_steps = []
        self._truncated_move = None
        self._current_unit_id = None
        self._state = OrchestratorState.IDLE

    def _restore_autonomy(self, unit_id: str) -> None:
        self._controlled_units.discard(unit_id)
        try:
            self.world.set_autonomy_enabled(unit_id, True)
        except Exception as e:
            self._record_error("autonomy_restore_failed", e)

    def _release_all_autonomy(self) -> None:
        for unit_id in list(self._controlled_units):
            self._restore_autonomy(unit_id)
        self._controlled_units.clear()

    @staticmethod
    def _classify(action: Action) -> str:
        if isinstance(action, EndTurn):
            if action.validation_error:
                return "rejected"
            if action.reason.startswith(PARSE_ERROR_PREFIX):
                return "parse_error"
        return "accepted"

    def _record_decision(self, outcome: str) -> None:
        collector = get_metrics_collector()
        if collector:
            collector.record_decision(outcome)

    def _record_error(self, error_type: str, error: Exception) -> None:
        self._last_error = f"{type(error).__name__}: {error}"
        logger.error(
            "Orchestrator error",
            error_type=error_type,
            error=str(error)
        )
        collector = get_metrics_collector()
        if collector:
            collector.record_error(error_type)
