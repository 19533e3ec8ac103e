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
"""Prompt builder for turning combat snapshots into oracle prompts."""

from typing import List, Optional, Sequence

from companion.models import CombatState, UnitInfo

COMBAT_STYLE_HINTS = {
    "aggressive": "Player prefers aggressive tactics when viable",
    "defensive": "Player prefers cautious, defensive play",
    "support": "Player prefers support and crowd control",
    "balanced": "Player prefers balanced, adaptive tactics",
}

HEROIC_MOMENTUM_THRESHOLD = 100


def threat_label(score: int) -> str:
    """Map a 0-100 threat score onto the label shown to the oracle."""
    if score >= 80:
        return "CRITICAL"
    if score >= 60:
        return "HIGH"
    if score >= 40:
        return "MEDIUM"
    if score >= 20:
        return "LOW"
    return "MINIMAL"


class PromptBuilder:
    """Builds the per-decision user prompt for the oracle.

    The prompt is plain text organised in headed sections:
    - Combat overview (round, location, shared resources)
    - The acting unit with abilities, weapons and (optionally) consumables
    - Allies, enemies ranked by threat, remaining turn order, nearby cover
    - Tactical guidance driven by the player's preferences
    - Notes about the previous step (e.g. a move that fell short)

    The JSON answer format lives in the oracle clients' system prompt,
    so this builder only describes the battle.
    """

    def __init__(
        self,
        preferred_combat_style: str = "balanced",
        defensive_health_threshold: int = 30,
        use_heroic_acts: bool = True,
        use_consumables: bool = False
    ):
        self.preferred_combat_style = preferred_combat_style
        self.defensive_health_threshold = defensive_health_threshold
        self.use_heroic_acts = use_heroic_acts
        self.use_consumables = use_consumables

    def build(self, state: CombatState, notes: Optional[Sequence[str]] = None) -> str:
        """Build the prompt for one decision.

        Args:
            state: Snapshot of the battle for the acting unit
            notes: Extra lines about what happened since the last decision

        Returns:
            Prompt text
        """
        lines: List[str] = []
        self._overview(lines, state)

        unit = state.current_unit
        if unit is not None:
            lines.append("=== CURRENT UNIT (YOUR TURN) ===")
            self._unit_section(lines, unit, detailed=True)
            lines.append("")
            self._abilities_section(lines, unit)
            self._weapons_section(lines, unit)
            if self.use_consumables and unit.consumables:
                lines.append("CONSUMABLE ITEMS:")
                for item in unit.consumables:
                    lines.append(f"  - {item.name} x{item.quantity}: {item.effect} (AP: {item.ap_cost})")
                lines.append("")

        if state.friendly_units:
            lines.append("=== ALLIED UNITS ===")
            for ally in state.friendly_units:
                self._unit_section(lines, ally, detailed=False)
            lines.append("")

        if state.enemy_units:
            lines.append("=== ENEMY UNITS ===")
            for enemy in state.enemy_units:
                self._enemy_section(lines, enemy, unit)
            lines.append("")

        if state.turn_order:
            lines.append("=== TURN ORDER (Remaining) ===")
            lines.append(" -> ".join(state.turn_order))
            lines.append("")

        if state.environment.nearby_cover:
            lines.append("=== NEARBY COVER POSITIONS ===")
            for cover in state.environment.nearby_cover:
                lines.append(
                    f"  - {cover.type.value} cover at {cover.position} ({cover.distance:.0f} away)"
                )
            lines.append("")

        if notes:
            lines.append("=== NOTES SINCE LAST DECISION ===")
            for note in notes:
                lines.append(f"- {note}")
            lines.append("")

        lines.append("=== TACTICAL GUIDANCE ===")
        self._guidance(lines, state)
        lines.append("")

        lines.append("=== YOUR ACTION ===")
        lines.append("Analyze the situation and choose the best action. Respond with a JSON object.")
        return "\n".join(lines) + "\n"

    def _overview(self, lines: List[str], state: CombatState) -> None:
        lines.append("=== COMBAT SITUATION ===")
        lines.append(f"Round: {state.round_number}")
        lines.append(f"Location: {state.environment.area_name or 'Unknown'}")
        if state.environment.is_void_combat:
            lines.append("Environment: Void Ship Combat")
        if state.environment.hazards:
            lines.append(f"Hazards: {', '.join(state.environment.hazards)}")
        lines.append(f"Difficulty: {state.difficulty}")
        lines.append(f"Party Momentum: {state.momentum}")
        if state.desperate_measure > 0:
            lines.append(f"Desperate Measure Points: {state.desperate_measure}")
        lines.append("")

    def _unit_section(self, lines: List[str], unit: UnitInfo, detailed: bool) -> None:
        lines.append(f"[{unit.id}] {unit.name} ({unit.unit_type or unit.archetype})")
        lines.append(f"  HP: {unit.current_hp}/{unit.max_hp} ({unit.health_percent}%)")
        lines.append(
            f"  AP: {unit.action_points}/{unit.max_action_points}, "
            f"MP: {unit.movement_points:.0f}/{unit.max_movement_points:.0f}"
        )
        lines.append(f"  Position: {unit.position}, Cover: {unit.cover.value}")
        if detailed:
            lines.append(f"  WS: {unit.weapon_skill}, BS: {unit.ballistic_skill}")
            lines.append(
                f"  Armor: {unit.armor}, Deflection: {unit.deflection}, Dodge: {unit.dodge_chance}%"
            )
        if unit.status_effects:
            effects = " ".join(
                f"[{'!' if effect.is_debuff else ''}{effect.name}:{effect.remaining_rounds}r]"
                for effect in unit.status_effects
            )
            lines.append(f"  Status: {effects}")
        if unit.wounds > 0:
            lines.append(f"  WOUNDS: {unit.wounds} (critical injuries)")

    def _abilities_section(self, lines: List[str], unit: UnitInfo) -> None:
        lines.append("AVAILABLE ABILITIES:")
        available = [a for a in unit.abilities if a.is_available]
        unavailable = [a for a in unit.abilities if not a.is_available]
        if not available:
            lines.append("  None available")
        for ability in available:
            lines.append(ability.to_summary())
        if unavailable:
            lines.append("Unavailable (for reference):")
            for ability in unavailable:
                lines.append(f"  - {ability.name}: {ability.unavailable_reason or 'unavailable'}")
        lines.append("")

    def _weapons_section(self, lines: List[str], unit: UnitInfo) -> None:
        if not unit.weapons:
            return
        lines.append("EQUIPPED WEAPONS:")
        for weapon in unit.weapons:
            traits = f" [{', '.join(weapon.traits)}]" if weapon.traits else ""
            lines.append(
                f"  - {weapon.name} ({weapon.type}): {weapon.damage}, "
                f"Range: {weapon.range:.0f}, AP: {weapon.ap_cost}{traits}"
            )
        lines.append("")

    def _enemy_section(self, lines: List[str], enemy: UnitInfo, unit: Optional[UnitInfo]) -> None:
        distance = unit.position.distance_to(enemy.position) if unit is not None else 0.0
        tags = ""
        if enemy.is_psyker:
            tags += " [PSYKER]"
        if enemy.has_ranged_attack:
            tags += " [RANGED]"
        lines.append(f"[{enemy.id}] {enemy.name} ({enemy.unit_type}){tags}")
        lines.append(
            f"  HP: {enemy.current_hp}/{enemy.max_hp} ({enemy.health_percent}%) "
            f"- Threat: {threat_label(enemy.threat_score)}"
        )
        lines.append(
            f"  Position: {enemy.position}, Distance: {distance:.0f}, Cover: {enemy.cover.value}"
        )
        lines.append(f"  Armor: {enemy.armor}, Dodge: {enemy.dodge_chance}%")
        debuffs = [e for e in enemy.status_effects if e.is_debuff]
        if debuffs:
            lines.append(
                "  Debuffs: " + " ".join(f"[{e.name}:{e.remaining_rounds}r]" for e in debuffs)
            )

    def _guidance(self, lines: List[str], state: CombatState) -> None:
        lines.append("Analyze the battlefield and decide the optimal action.")
        lines.append(
            "Consider enemy positions, threat levels, ally status, cover, abilities and resources."
        )
        hint = COMBAT_STYLE_HINTS.get(self.preferred_combat_style, COMBAT_STYLE_HINTS["balanced"])
        lines.append(f"- STYLE HINT: {hint}")
        lines.append("")
        lines.append("DECISION FACTORS (decide priorities yourself based on situation):")
        lines.append("- Which enemies are the biggest threat RIGHT NOW?")
        lines.append("- Are any allies in critical danger?")
        lines.append("- What's the most efficient use of AP this turn?")
        lines.append("- Is positioning/cover more important than attacking?")

        unit = state.current_unit
        if unit is not None and unit.health_percent <= self.defensive_health_threshold:
            lines.append("")
            lines.append(
                f"WARNING: Current unit at {unit.health_percent}% HP! Prioritize survival."
            )

        if self.use_heroic_acts and state.momentum >= HEROIC_MOMENTUM_THRESHOLD:
            lines.append("")
            lines.append(f"MOMENTUM: {state.momentum} - Heroic Acts available if needed!")
