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
"""Rule checks applied to oracle decisions before they reach the world.

The validator never asks the oracle again. A decision that breaks the
rules is replaced by an ``EndTurn`` carrying the reason in both
``reason`` and ``validation_error`` so the approval UI can show what the
oracle got wrong.
"""

from typing import Optional, Union

from companion.logging import StructuredLogger
from companion.models import (
    AbilityInfo,
    Action,
    CombatState,
    Delay,
    EndTurn,
    Move,
    MoveThenAct,
    Position,
    Sequence,
    TargetingType,
    UseAbility,
    UseItem,
)

logger = StructuredLogger(__name__)


def _reject(reason: str) -> EndTurn:
    logger.info("Action rejected by validator", reason=reason)
    return EndTurn(reason=reason, validation_error=reason)


def _reachable_point(unit, target: Position) -> Position:
    """Where a straight move toward ``target`` stops once movement runs out."""
    start = unit.position
    distance = start.distance_to(target)
    if distance <= unit.movement_points or distance == 0:
        return target
    ratio = unit.movement_points / distance
    return Position(
        x=start.x + (target.x - start.x) * ratio,
        y=start.y + (target.y - start.y) * ratio
    )


class ActionValidator:
    """Checks Actions against a CombatState.

    ``validate`` returns either the same action object, annotated with
    ``validated=True`` (plus ``ability_id`` or ``partial_move`` where
    they apply), or a fresh rejected ``EndTurn``.
    """

    def validate(self, action: Action, state: CombatState) -> Action:
        """Validate an action for the acting unit of ``state``.

        Args:
            action: Decoded oracle decision
            state: Snapshot the decision was made against

        Returns:
            The validated action or a rejection EndTurn
        """
        if action is None:
            return _reject("No action provided")
        if state.current_unit is None:
            return _reject("No acting unit")

        if isinstance(action, (EndTurn, Delay)):
            action.validated = True
            return action

        action.validated = False
        action.validation_error = None

        if isinstance(action, UseAbility):
            return self._validate_ability(action, state, origin=state.current_unit.position)
        if isinstance(action, Move):
            return self._validate_move(action, state)
        if isinstance(action, MoveThenAct):
            return self._validate_move_then_act(action, state)
        if isinstance(action, UseItem):
            return self._validate_item(action, state)
        if isinstance(action, Sequence):
            return self._validate_sequence(action, state)
        return _reject(f"Unknown action type: {type(action).__name__}")

    def _validate_ability(
        self,
        action: Union[UseAbility, MoveThenAct],
        state: CombatState,
        origin: Position
    ) -> Action:
        unit = state.current_unit
        if not action.ability_name or not action.ability_name.strip():
            return _reject("No ability name specified")

        ability = self._find_ability(action.ability_name, unit.abilities)
        if ability is None:
            return _reject(f"Ability not found: {action.ability_name}")
        if not ability.is_available:
            return _reject(f"Ability unavailable: {ability.unavailable_reason or 'unknown reason'}")
        if ability.ap_cost > unit.action_points:
            return _reject(f"Not enough AP ({unit.action_points}/{ability.ap_cost})")

        action.ability_id = ability.id

        if ability.targeting != TargetingType.SELF and action.target_id:
            target = state.find_unit(action.target_id)
            if target is None:
                return _reject(f"Target not found: {action.target_id}")
            distance = origin.distance_to(target.position)
            if distance > ability.range:
                return _reject(f"Target out of range ({distance:.0f} > {ability.range:.0f})")
            # Canonical id from here on, even if the oracle used a display name
            action.target_id = target.id

        action.validated = True
        return action

    def _validate_move(self, action: Union[Move, MoveThenAct], state: CombatState) -> Action:
        unit = state.current_unit
        if action.target_position is None:
            return _reject("No target position specified")
        if unit.movement_points <= 0:
            return _reject("No movement points remaining")

        distance = unit.position.distance_to(action.target_position)
        if distance > unit.movement_points:
            logger.warning(
                "Move exceeds remaining movement, unit will stop short",
                requested_distance=f"{distance:.1f}",
                movement_points=unit.movement_points
            )
            action.partial_move = True

        action.validated = True
        return action

    def _validate_move_then_act(self, action: MoveThenAct, state: CombatState) -> Action:
        origin = state.current_unit.position
        if action.target_position is not None:
            moved = self._validate_move(action, state)
            if moved is not action:
                return moved
            action.validated = False
            if action.partial_move:
                origin = _reachable_point(state.current_unit, action.target_position)
            else:
                origin = action.target_position
        return self._validate_ability(action, state, origin=origin)

    def _validate_item(self, action: UseItem, state: CombatState) -> Action:
        if not action.item_name or not action.item_name.strip():
            return _reject("No item name specified")

        wanted = action.item_name.strip().lower()
        consumables = state.current_unit.consumables
        item = next((i for i in consumables if i.name.lower() == wanted), None)
        if item is None:
            return _reject(f"Item not found: {action.item_name}")

        action.validated = True
        return action

    def _validate_sequence(self, action: Sequence, state: CombatState) -> Action:
        if not action.steps:
            return _reject("Empty action sequence")
        if any(isinstance(step, Sequence) for step in action.steps):
            return _reject("Nested action sequences are not supported")

        first = self.validate(action.steps[0], state)
        if first.validation_error is not None:
            return first

        # Later steps are validated one at a time, right before they run
        action.steps[0] = first
        action.validated = True
        return action

    @staticmethod
    def _find_ability(name: str, abilities) -> Optional[AbilityInfo]:
        wanted = name.strip().lower()
        for ability in abilities:
            if ability.name.lower() == wanted:
                return ability
        return None
