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
"""Tests for StateSnapshotBuilder and threat scoring."""

import pytest

from companion.services.snapshot_builder import (
    SnapshotUnavailable,
    StateSnapshotBuilder,
    calculate_threat,
)
from tests.fakes import make_battle, make_enemy


class TestCalculateThreat:

    def test_healthy_melee_enemy(self):
        # 50 base + 10 healthy + 30//5 + 25//5
        assert calculate_threat(make_enemy()) == 71

    def test_badly_wounded_enemy(self):
        enemy = make_enemy(current_hp=4, max_hp=20, weapon_skill=0, ballistic_skill=0)
        assert calculate_threat(enemy) == 30

    def test_mid_health_no_modifier(self):
        enemy = make_enemy(current_hp=10, max_hp=20, weapon_skill=0, ballistic_skill=0)
        assert calculate_threat(enemy) == 50

    def test_skill_bonus_capped(self):
        enemy = make_enemy(current_hp=10, max_hp=20, weapon_skill=90, ballistic_skill=90)
        assert calculate_threat(enemy) == 70

    def test_clamped_to_100(self):
        enemy = make_enemy(is_psyker=True, has_ranged_attack=True, weapon_skill=60, ballistic_skill=60)
        assert calculate_threat(enemy) == 100


class TestStateSnapshotBuilder:

    def test_build(self, world):
        state = StateSnapshotBuilder(world).build()

        assert state.round_number == 1
        assert state.current_unit.id == "C1"
        assert [u.id for u in state.friendly_units] == ["P1"]
        assert state.momentum == 20
        assert state.environment.area_name == "Footfall Docks"
        assert state.turn_order == ("Pasqal", "Lord Captain", "Cultist", "Heretek")

    def test_enemies_ranked_by_threat(self, world):
        state = StateSnapshotBuilder(world).build()

        assert [u.id for u in state.enemy_units] == ["E2", "E1"]
        assert state.enemy_units[0].threat_score == 100
        assert state.enemy_units[1].threat_score == 71

    def test_equal_threat_keeps_roster_order(self, world):
        world.units["E2"] = make_enemy(id="E2", name="Cultist Two")
        state = StateSnapshotBuilder(world).build()
        assert [u.id for u in state.enemy_units] == ["E1", "E2"]

    def test_dead_units_excluded(self, world):
        world.units["E1"] = make_enemy(is_dead=True, current_hp=0)
        world.units["P1"] = world.units["P1"].model_copy(update={"is_dead": True})

        state = StateSnapshotBuilder(world).build()

        assert [u.id for u in state.enemy_units] == ["E2"]
        assert state.friendly_units == ()

    def test_world_units_are_not_modified(self, world):
        StateSnapshotBuilder(world).build()
        assert world.units["E1"].threat_score == 0

    def test_no_battle(self, world):
        world.battle = None
        with pytest.raises(SnapshotUnavailable, match="no active battle"):
            StateSnapshotBuilder(world).build()

    def test_no_acting_unit(self, world):
        world.battle = make_battle(current_unit_id=None)
        with pytest.raises(SnapshotUnavailable, match="no acting unit"):
            StateSnapshotBuilder(world).build()

    def test_acting_unit_missing(self, world):
        world.battle = make_battle(current_unit_id="C9")
        with pytest.raises(SnapshotUnavailable, match="acting unit not found: C9"):
            StateSnapshotBuilder(world).build()

    def test_adapter_failure_wrapped(self, world):
        world.fail_queries = True
        with pytest.raises(SnapshotUnavailable, match="world query failed: world is loading"):
            StateSnapshotBuilder(world).build()
