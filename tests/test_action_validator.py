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
"""Tests for ActionValidator rule checks."""

import pytest

from companion.models import (
    CombatState,
    Delay,
    EndTurn,
    Move,
    MoveThenAct,
    Position,
    Sequence,
    UseAbility,
    UseItem,
)
from companion.services.action_validator import ActionValidator
from tests.fakes import make_companion, make_enemy


@pytest.fixture
def validator():
    return ActionValidator()


@pytest.fixture
def state():
    return CombatState(
        round_number=2,
        current_unit=make_companion(),
        friendly_units=(make_companion(id="C2", name="Idira", position=Position(x=0, y=3)),),
        enemy_units=(
            make_enemy(),
            make_enemy(id="E2", name="Heretek", position=Position(x=30, y=0)),
        ),
    )


def assert_rejected(action, reason):
    assert isinstance(action, EndTurn)
    assert action.validation_error == reason
    assert action.reason == reason
    assert action.validated is True


class TestAbilityValidation:

    def test_valid_strike(self, validator, state):
        action = UseAbility(ability_name="Strike", target_id="E1")
        result = validator.validate(action, state)

        assert result is action
        assert result.validated is True
        assert result.ability_id == "abl_strike"
        assert result.validation_error is None

    def test_ability_name_case_insensitive(self, validator, state):
        result = validator.validate(UseAbility(ability_name="  strike ", target_id="E1"), state)
        assert result.ability_id == "abl_strike"

    def test_target_name_normalized_to_id(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Strike", target_id="cultist"), state)
        assert result.target_id == "E1"

    def test_missing_ability_name(self, validator, state):
        assert_rejected(validator.validate(UseAbility(ability_name=""), state), "No ability name specified")

    def test_ability_not_found(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Smite", target_id="E1"), state)
        assert_rejected(result, "Ability not found: Smite")

    def test_ability_unavailable(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Heroic Strike", target_id="E1"), state)
        assert_rejected(result, "Ability unavailable: Not enough momentum")

    def test_not_enough_ap(self, validator, state):
        low_ap = state.model_copy(update={"current_unit": make_companion(action_points=1)})
        result = validator.validate(UseAbility(ability_name="Inferno", target_id="E1"), low_ap)
        assert_rejected(result, "Not enough AP (1/2)")

    def test_target_not_found(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Strike", target_id="E9"), state)
        assert_rejected(result, "Target not found: E9")

    def test_target_out_of_range(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Strike", target_id="E2"), state)
        assert_rejected(result, "Target out of range (30 > 20)")

    def test_self_targeting_skips_target_checks(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Brace", target_id="E9"), state)
        assert result.validated is True
        assert result.ability_id == "abl_brace"

    def test_no_target_is_allowed(self, validator, state):
        result = validator.validate(UseAbility(ability_name="Strike"), state)
        assert result.validated is True

    def test_no_acting_unit(self, validator):
        result = validator.validate(UseAbility(ability_name="Strike"), CombatState())
        assert_rejected(result, "No acting unit")

    def test_none_action(self, validator, state):
        assert_rejected(validator.validate(None, state), "No action provided")

    def test_revalidation_clears_previous_error(self, validator, state):
        action = UseAbility(ability_name="Strike", target_id="E1", validation_error="stale")
        assert validator.validate(action, state).validation_error is None


class TestMoveValidation:

    def test_valid_move(self, validator, state):
        result = validator.validate(Move(target_position=Position(x=3, y=4)), state)
        assert result.validated is True
        assert result.partial_move is False

    def test_move_beyond_movement_points_is_partial(self, validator, state):
        result = validator.validate(Move(target_position=Position(x=50, y=0)), state)
        assert isinstance(result, Move)
        assert result.validated is True
        assert result.partial_move is True

    def test_missing_position(self, validator, state):
        assert_rejected(validator.validate(Move(), state), "No target position specified")

    def test_no_movement_points(self, validator, state):
        stuck = state.model_copy(update={"current_unit": make_companion(movement_points=0)})
        result = validator.validate(Move(target_position=Position(x=1, y=0)), stuck)
        assert_rejected(result, "No movement points remaining")


class TestMoveThenActValidation:

    def test_range_measured_from_destination(self, validator, state):
        # Inferno (range 8) cannot reach E1 at 10 from (0, 0), but can from (5, 0)
        action = MoveThenAct(
            target_position=Position(x=5, y=0), ability_name="Inferno", target_id="E1"
        )
        result = validator.validate(action, state)
        assert result.validated is True
        assert result.ability_id == "abl_fireball"
        assert result.partial_move is False

    def test_partial_move_measures_from_reachable_point(self, validator, state):
        action = MoveThenAct(
            target_position=Position(x=9, y=0), ability_name="Inferno", target_id="E1"
        )
        result = validator.validate(action, state)
        assert result.validated is True
        assert result.partial_move is True

    def test_partial_move_cannot_reach_target(self, validator, state):
        # Destination (28, 0) would be in range of E2, but only (5, 0) is reachable
        action = MoveThenAct(
            target_position=Position(x=28, y=0), ability_name="Strike", target_id="E2"
        )
        assert_rejected(validator.validate(action, state), "Target out of range (25 > 20)")

    def test_partial_move_reachable_point_follows_direction(self, validator, state):
        action = MoveThenAct(
            target_position=Position(x=0, y=40), ability_name="Strike", target_id="E2"
        )
        # Stops at (0, 5): distance to E2 at (30, 0) is about 30.4
        assert_rejected(validator.validate(action, state), "Target out of range (30 > 20)")

    def test_out_of_range_from_destination(self, validator, state):
        action = MoveThenAct(
            target_position=Position(x=-5, y=0), ability_name="Strike", target_id="E2"
        )
        assert_rejected(validator.validate(action, state), "Target out of range (35 > 20)")

    def test_move_failure_reported(self, validator, state):
        stuck = state.model_copy(update={"current_unit": make_companion(movement_points=0)})
        action = MoveThenAct(target_position=Position(x=1, y=0), ability_name="Strike")
        assert_rejected(validator.validate(action, stuck), "No movement points remaining")

    def test_without_position_acts_in_place(self, validator, state):
        action = MoveThenAct(ability_name="Strike", target_id="E1")
        assert validator.validate(action, state).validated is True


class TestOtherActions:

    def test_item_found(self, validator, state):
        result = validator.validate(UseItem(item_name="medikit"), state)
        assert result.validated is True

    def test_item_not_found(self, validator, state):
        assert_rejected(validator.validate(UseItem(item_name="Stimm"), state), "Item not found: Stimm")

    def test_item_name_missing(self, validator, state):
        assert_rejected(validator.validate(UseItem(), state), "No item name specified")

    def test_end_turn_and_delay_always_valid(self, validator, state):
        assert validator.validate(EndTurn(reason="done"), state).validated is True
        delay = Delay()
        assert validator.validate(delay, state) is delay
        assert delay.validated is True

    def test_sequence_validates_first_step_only(self, validator, state):
        sequence = Sequence(steps=[
            UseAbility(ability_name="Strike", target_id="Cultist"),
            UseAbility(ability_name="Smite", target_id="E1"),
        ])
        result = validator.validate(sequence, state)

        assert result is sequence
        assert result.validated is True
        assert result.steps[0].target_id == "E1"
        assert result.steps[1].validated is False

    def test_sequence_with_invalid_first_step(self, validator, state):
        sequence = Sequence(steps=[UseAbility(ability_name="Smite")])
        assert_rejected(validator.validate(sequence, state), "Ability not found: Smite")

    def test_nested_sequence_rejected(self, validator, state):
        sequence = Sequence(steps=[
            Sequence(steps=[UseAbility(ability_name="Brace")]),
            UseAbility(ability_name="Strike", target_id="E1"),
        ])
        assert_rejected(
            validator.validate(sequence, state), "Nested action sequences are not supported"
        )

    def test_empty_sequence(self, validator, state):
        assert_rejected(validator.validate(Sequence(), state), "Empty action sequence")
