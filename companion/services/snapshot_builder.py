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
"""Build immutable combat snapshots from the live world."""

from typing import List

from companion.logging import StructuredLogger
from companion.models import CombatState, UnitInfo
from companion.world import Faction, WorldAdapter

logger = StructuredLogger(__name__)

BASE_THREAT = 50
MIN_THREAT = 0
MAX_THREAT = 100


class SnapshotUnavailable(Exception):
    """Raised when no consistent snapshot can be taken right now.

    Covers "no active battle", "no acting unit" and adapter failures
    while querying. The current decision request is aborted; the next
    turn-start event tries again.
    """
    pass


def calculate_threat(enemy: UnitInfo) -> int:
    """Score how dangerous an enemy is, 0-100.

    Args:
        enemy: Enemy unit summary

    Returns:
        Threat score clamped to [0, 100]
    """
    threat = BASE_THREAT
    health = enemy.health_percent
    if health < 25:
        threat -= 20
    elif health > 75:
        threat += 10
    if enemy.is_psyker:
        threat += 20
    if enemy.has_ranged_attack:
        threat += 10
    threat += min(enemy.weapon_skill // 5, 10)
    threat += min(enemy.ballistic_skill // 5, 10)
    return max(MIN_THREAT, min(MAX_THREAT, threat))


class StateSnapshotBuilder:
    """Turns WorldAdapter queries into a CombatState.

    The builder is read-only: it issues no commands and keeps no state
    between calls.
    """

    def __init__(self, world: WorldAdapter):
        self.world = world

    def build(self) -> CombatState:
        """Take a snapshot of the battle for the acting unit.

        Returns:
            A fresh CombatState

        Raises:
            SnapshotUnavailable: No active battle, no acting unit, or the
                adapter failed while being queried
        """
        try:
            battle = self.world.query_battle()
            if battle is None:
                raise SnapshotUnavailable("no active battle")
            if not battle.current_unit_id:
                raise SnapshotUnavailable("no acting unit")

            current = self.world.query_unit(battle.current_unit_id)
            if current is None:
                raise SnapshotUnavailable(
                    f"acting unit not found: {battle.current_unit_id}"
                )

            friendly = [
                unit for unit in self.world.query_roster(Faction.PLAYER)
                if not unit.is_dead and unit.id != current.id
            ]
            enemies = self._rank_enemies(self.world.query_roster(Faction.ENEMY))
            turn_order = list(self.world.query_turn_order())
        except SnapshotUnavailable:
            raise
        except Exception as e:
            logger.error(
                "World adapter failed while building snapshot",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise SnapshotUnavailable(f"world query failed: {e}") from e

        state = CombatState(
            round_number=battle.round_number,
            current_unit=current,
            friendly_units=tuple(friendly),
            enemy_units=tuple(enemies),
            turn_order=tuple(turn_order),
            momentum=battle.momentum,
            desperate_measure=battle.desperate_measure,
            environment=battle.environment,
            difficulty=battle.difficulty,
        )

        logger.debug(
            "Snapshot built",
            round=state.round_number,
            friendly_count=len(state.friendly_units),
            enemy_count=len(state.enemy_units)
        )
        return state

    @staticmethod
    def _rank_enemies(roster: List[UnitInfo]) -> List[UnitInfo]:
        scored = [
            enemy.model_copy(update={"threat_score": calculate_threat(enemy)})
            for enemy in roster
            if not enemy.is_dead
        ]
        # sorted() is stable, so equal scores keep roster order
        return sorted(scored, key=lambda enemy: enemy.threat_score, reverse=True)
