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
"""Translate Actions into WorldAdapter commands.

Execution only queues commands; it never waits for the world to carry
them out. The orchestrator watches ``is_command_queue_empty`` to learn
when the unit is done.
"""

from typing import Optional

from companion.logging import StructuredLogger
from companion.models import (
    Action,
    Delay,
    EndTurn,
    Move,
    MoveThenAct,
    Position,
    Sequence,
    UseAbility,
    UseItem,
)
from companion.world import (
    MoveToCommand,
    UseAbilityCommand,
    UseItemCommand,
    WorldAdapter,
)

logger = StructuredLogger(__name__)


class ActionExecutor:
    """Issues world commands for validated Actions.

    Every adapter exception is caught here, logged, and reported as a
    False return so that a misbehaving world cannot crash the loop.
    """

    def __init__(self, world: WorldAdapter):
        self.world = world

    def execute(self, action: Action, unit_id: str) -> bool:
        """Execute an action for a unit.

        Args:
            action: Action to carry out (normally validated)
            unit_id: Id of the acting unit

        Returns:
            True if the world accepted every command, False otherwise
        """
        if not action.validated:
            logger.warning(
                "Executing unvalidated action",
                action_type=type(action).__name__
            )

        try:
            return self._dispatch(action, unit_id)
        except Exception as e:
            logger.error(
                "World adapter failed during execution",
                action_type=type(action).__name__,
                error_type=type(e).__name__,
                error=str(e)
            )
            return False

    def end_turn(self, unit_id: str) -> bool:
        """End the unit's turn directly.

        Returns:
            True on success, False if the adapter raised
        """
        try:
            self.world.end_unit_turn(unit_id)
            logger.info("Ended unit turn", target_unit=unit_id)
            return True
        except Exception as e:
            logger.error(
                "World adapter failed to end turn",
                target_unit=unit_id,
                error_type=type(e).__name__,
                error=str(e)
            )
            return False

    def _dispatch(self, action: Action, unit_id: str) -> bool:
        if isinstance(action, UseAbility):
            return self._use_ability(action, unit_id)
        if isinstance(action, Move):
            return self._move(action.target_position, unit_id)
        if isinstance(action, MoveThenAct):
            if action.target_position is not None:
                if not self._move(action.target_position, unit_id):
                    return False
            # The world runs queued commands in order; no need to wait for the move
            return self._use_ability(action, unit_id)
        if isinstance(action, UseItem):
            return self._use_item(action, unit_id)
        if isinstance(action, EndTurn):
            self.world.end_unit_turn(unit_id)
            logger.info("Ended unit turn", reason=action.reason)
            return True
        if isinstance(action, Delay):
            self.world.delay_unit_turn(unit_id)
            logger.info("Delayed unit turn")
            return True
        if isinstance(action, Sequence):
            for index, step in enumerate(action.steps):
                if not self._dispatch(step, unit_id):
                    logger.warning("Sequence stopped at failed step", step_index=index)
                    return False
            return True

        logger.error("Unknown action type", action_type=type(action).__name__)
        return False

    def _use_ability(self, action, unit_id: str) -> bool:
        ability_id = action.ability_id or action.ability_name
        target_id = action.target_id or unit_id
        # For MoveThenAct the position is the move destination, not an ability target
        target_position = action.target_position if isinstance(action, UseAbility) else None
        command = UseAbilityCommand(
            ability_id=ability_id,
            target_id=target_id,
            target_position=target_position
        )
        self.world.issue_command(unit_id, command)
        logger.info("Queued ability", ability_id=ability_id, target_id=target_id)
        return True

    def _move(self, target: Optional[Position], unit_id: str) -> bool:
        if target is None:
            logger.warning("Move has no target position")
            return False
        path = self.world.find_path(unit_id, target)
        if path is None:
            logger.warning("No path to target position", target=str(target))
            return False
        self.world.issue_command(unit_id, MoveToCommand(path=path))
        logger.info("Queued move", target=str(target))
        return True

    def _use_item(self, action: UseItem, unit_id: str) -> bool:
        unit = self.world.query_unit(unit_id)
        if unit is None:
            logger.warning("Acting unit disappeared before item use")
            return False

        wanted = action.item_name.strip().lower()
        item = next((i for i in unit.consumables if i.name.lower() == wanted), None)
        if item is None:
            logger.warning("Item not carried by unit", item_name=action.item_name)
            return False

        target_id = action.target_id or unit_id
        self.world.issue_command(unit_id, UseItemCommand(item_id=item.id, target_id=target_id))
        logger.info("Queued item use", item_id=item.id, target_id=target_id)
        return True
