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
"""Pydantic models for the combat companion.

This module defines the battle snapshot handed to the oracle (units,
abilities, environment), the Action variants an oracle decision decodes
into, and the JSON wire payload the oracle is asked to answer with.

Snapshot models are frozen: a CombatState is built once per decision
request and never mutated afterwards. Action models are mutable because
the validator annotates them in place (validated, ability_id,
partial_move).
"""

import math
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Position(BaseModel):
    """A point on the battle map."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(0.0, description="Horizontal map coordinate")
    y: float = Field(0.0, description="Vertical map coordinate")

    def distance_to(self, other: "Position") -> float:
        """Straight-line 2D distance to another position."""
        return math.hypot(self.x - other.x, self.y - other.y)

    def __str__(self) -> str:
        return f"({self.x:.1f}, {self.y:.1f})"


class CoverType(str, Enum):
    """Cover available at a position."""
    NONE = "none"
    HALF = "half"
    FULL = "full"


class AbilityType(str, Enum):
    """Broad category of an ability, used for prompt grouping."""
    ATTACK = "attack"
    RANGED = "ranged"
    MELEE = "melee"
    PSYCHIC = "psychic"
    BUFF = "buff"
    DEBUFF = "debuff"
    HEAL = "heal"
    MOVE = "move"
    DEFENSIVE = "defensive"
    UTILITY = "utility"
    HEROIC = "heroic"
    DESPERATE = "desperate"


class TargetingType(str, Enum):
    """How an ability picks its target."""
    SELF = "self"
    SINGLE = "single"
    AREA = "area"
    CONE = "cone"
    LINE = "line"
    POINT = "point"
    ALL_ENEMIES = "all_enemies"
    ALL_ALLIES = "all_allies"


class StatusEffect(BaseModel):
    """An active buff or debuff on a unit."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    remaining_rounds: int = 0
    is_debuff: bool = False


class WeaponInfo(BaseModel):
    """An equipped weapon."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["melee", "ranged", "psychic"] = "melee"
    damage: str = ""
    range: float = 0.0
    ap_cost: int = 0
    traits: Tuple[str, ...] = ()


class ItemInfo(BaseModel):
    """A consumable item carried by a unit."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    effect: str = ""
    quantity: int = 1
    ap_cost: int = 1


class AbilityInfo(BaseModel):
    """An ability a unit may use, as reported by the world.

    Attributes:
        id: World identifier of the ability
        name: Display name; the oracle refers to abilities by this name
        type: Broad category of the ability
        ap_cost: Action points consumed on use
        mp_cost: Movement points consumed on use
        momentum_cost: Shared momentum consumed on use
        range: Maximum distance to the target (0 for melee reach)
        targeting: How the ability picks its target
        is_available: False when the world forbids the ability right now
        unavailable_reason: Why the ability is unavailable, if it is
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    type: AbilityType = AbilityType.ATTACK
    ap_cost: int = Field(1, ge=0)
    mp_cost: float = Field(0.0, ge=0.0)
    momentum_cost: int = Field(0, ge=0)
    range: float = Field(0.0, ge=0.0)
    min_range: float = Field(0.0, ge=0.0)
    area_of_effect: float = Field(0.0, ge=0.0)
    targeting: TargetingType = TargetingType.SINGLE
    can_target_enemies: bool = True
    can_target_allies: bool = False
    can_target_self: bool = False
    requires_line_of_sight: bool = True
    damage: str = ""
    is_available: bool = True
    unavailable_reason: Optional[str] = None
    cooldown_remaining: int = 0
    uses_remaining: int = -1

    def to_summary(self) -> str:
        """One-line summary used in prompts."""
        cost = f"AP:{self.ap_cost}"
        if self.mp_cost > 0:
            cost += f", MP:{self.mp_cost:.0f}"
        if self.momentum_cost > 0:
            cost += f", Momentum:{self.momentum_cost}"
        reach = f"Range:{self.range:.0f}" if self.range > 0 else "Melee"
        damage = f", Dmg:{self.damage}" if self.damage else ""
        available = "" if self.is_available else f" [UNAVAILABLE: {self.unavailable_reason}]"
        return f"- {self.name}: [{cost}] {reach}{damage}{available}"


class UnitInfo(BaseModel):
    """Summary of one unit taking part in the battle.

    ``threat_score`` is only meaningful for enemies; the snapshot builder
    fills it in and leaves it at 0 for everyone else.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    unit_type: str = ""
    archetype: str = ""
    current_hp: int = Field(0, ge=0)
    max_hp: int = Field(0, ge=0)
    temp_hp: int = 0
    wounds: int = 0
    action_points: int = Field(0, ge=0)
    max_action_points: int = Field(0, ge=0)
    movement_points: float = Field(0.0, ge=0.0)
    max_movement_points: float = Field(0.0, ge=0.0)
    position: Position = Field(default_factory=Position)
    cover: CoverType = CoverType.NONE
    is_prone: bool = False
    is_hidden: bool = False
    is_player_faction: bool = False
    is_main_character: bool = False
    is_psyker: bool = False
    has_ranged_attack: bool = False
    is_dead: bool = False
    weapon_skill: int = 0
    ballistic_skill: int = 0
    armor: int = 0
    deflection: int = 0
    dodge_chance: int = 0
    status_effects: Tuple[StatusEffect, ...] = ()
    abilities: Tuple[AbilityInfo, ...] = ()
    weapons: Tuple[WeaponInfo, ...] = ()
    consumables: Tuple[ItemInfo, ...] = ()
    threat_score: int = Field(0, ge=0, le=100)

    @property
    def health_percent(self) -> int:
        if self.max_hp <= 0:
            return 0
        return round(self.current_hp * 100 / self.max_hp)

    def to_summary(self) -> str:
        """One-line summary used in prompts and logs."""
        statuses = ", ".join(effect.name for effect in self.status_effects)
        status_str = f" [{statuses}]" if statuses else ""
        return (
            f"{self.name} ({self.unit_type}): HP {self.current_hp}/{self.max_hp}, "
            f"AP {self.action_points}, MP {self.movement_points:.0f}, "
            f"Pos {self.position}{status_str}"
        )


class CoverPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: Position
    type: CoverType = CoverType.HALF
    distance: float = 0.0


class EnvironmentInfo(BaseModel):
    """Battlefield surroundings of the acting unit."""
    model_config = ConfigDict(frozen=True)

    area_name: str = ""
    nearby_cover: Tuple[CoverPosition, ...] = ()
    hazards: Tuple[str, ...] = ()
    is_void_combat: bool = False


class BattleInfo(BaseModel):
    """Battle-wide facts reported by the world adapter.

    ``current_unit_id`` is None between turns.
    """
    model_config = ConfigDict(frozen=True)

    round_number: int = 0
    current_unit_id: Optional[str] = None
    momentum: int = 0
    desperate_measure: int = 0
    environment: EnvironmentInfo = Field(default_factory=EnvironmentInfo)
    difficulty: str = "normal"


class CombatState(BaseModel):
    """Immutable snapshot of the battle taken for one decision request.

    Attributes:
        round_number: Current combat round
        current_unit: The unit whose turn is being decided
        friendly_units: Living allies of the acting unit (acting unit excluded)
        enemy_units: Living enemies, highest threat first
        turn_order: Names of the units still to act this round
        momentum: Shared momentum pool
        desperate_measure: Shared desperate measure pool
        environment: Surroundings of the acting unit
        difficulty: Difficulty tag of the battle
    """
    model_config = ConfigDict(frozen=True)

    round_number: int = 0
    current_unit: Optional[UnitInfo] = None
    friendly_units: Tuple[UnitInfo, ...] = ()
    enemy_units: Tuple[UnitInfo, ...] = ()
    turn_order: Tuple[str, ...] = ()
    momentum: int = 0
    desperate_measure: int = 0
    environment: EnvironmentInfo = Field(default_factory=EnvironmentInfo)
    difficulty: str = "normal"

    def find_unit(self, key: str) -> Optional[UnitInfo]:
        """Resolve a unit by id, falling back to display name.

        Matching is case-insensitive and searches enemies, then allies,
        then the acting unit.

        Args:
            key: Unit id or display name as written by the oracle

        Returns:
            The matching unit, or None
        """
        if not key:
            return None
        wanted = key.strip().lower()
        candidates = list(self.enemy_units) + list(self.friendly_units)
        if self.current_unit is not None:
            candidates.append(self.current_unit)
        for unit in candidates:
            if unit.id.lower() == wanted:
                return unit
        for unit in candidates:
            if unit.name.lower() == wanted:
                return unit
        return None


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class Action(BaseModel):
    """Base of all oracle decisions.

    Attributes:
        rationale: Free text explanation from the oracle
        confidence: Oracle's confidence, 0-100
        validated: Set by the validator once the action passed the rules
        validation_error: Reason a rejected action was replaced by EndTurn
    """
    rationale: Optional[str] = None
    confidence: int = Field(100, ge=0, le=100)
    validated: bool = False
    validation_error: Optional[str] = None


class UseAbility(Action):
    ability_name: str = ""
    ability_id: Optional[str] = None
    target_id: Optional[str] = None
    target_position: Optional[Position] = None


class Move(Action):
    target_position: Optional[Position] = None
    partial_move: bool = False


class MoveThenAct(Action):
    """Move to a position, then use an ability from there."""
    target_position: Optional[Position] = None
    ability_name: str = ""
    ability_id: Optional[str] = None
    target_id: Optional[str] = None
    partial_move: bool = False


class UseItem(Action):
    item_name: str = ""
    target_id: Optional[str] = None


class EndTurn(Action):
    """End the unit's turn. Always legal, so it is validated on creation."""
    reason: str = "No valid actions available"
    validated: bool = True


class Delay(Action):
    pass


class Sequence(Action):
    steps: List["ActionVariant"] = Field(default_factory=list)


ActionVariant = Union[UseAbility, Move, MoveThenAct, UseItem, EndTurn, Delay, Sequence]

Sequence.model_rebuild()


# ---------------------------------------------------------------------------
# Wire payload
# ---------------------------------------------------------------------------

ActionTag = Literal[
    "ability", "attack", "move", "move_and_attack", "use_item",
    "end_turn", "delay", "sequence"
]


class PositionPayload(BaseModel):
    x: float
    y: float


class ActionPayload(BaseModel):
    """JSON object the oracle answers with.

    Unknown keys are ignored; an unknown ``action`` tag fails validation.
    """
    model_config = ConfigDict(extra="ignore")

    action: ActionTag = Field(..., description="Kind of action to take")
    ability_name: Optional[str] = Field(None, description="Ability to use, by display name")
    target_id: Optional[str] = Field(None, description="Target unit id or name")
    target_position: Optional[PositionPayload] = Field(None, description="Destination or target point")
    item_name: Optional[str] = Field(None, description="Consumable to use, by name")
    reasoning: Optional[str] = Field(None, description="Short tactical explanation")
    confidence: int = Field(100, description="Confidence 0-100")
    action_sequence: Optional[List["ActionPayload"]] = Field(
        None, description="Ordered steps for the sequence action"
    )

    @field_validator('target_id', mode='before')
    @classmethod
    def coerce_target_id(cls, v):
        """Numeric unit ids are accepted and treated as strings."""
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v)) if float(v).is_integer() else str(v)
        return v

    @field_validator('confidence', mode='before')
    @classmethod
    def clamp_confidence(cls, v):
        """Missing confidence means 100; out-of-range values are clamped."""
        if v is None:
            return 100
        try:
            value = int(float(v))
        except (TypeError, ValueError):
            raise ValueError(f"confidence must be a number, got: {v!r}")
        return max(0, min(100, value))


ActionPayload.model_rebuild()


# ============================================================================
# Control API Models
# ============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoint.

    Attributes:
        status: Service status ("healthy" or "degraded")
        service: Service name
        orchestrator_enabled: Whether the orchestrator is currently driving units
    """
    status: str = Field(
        ...,
        description="Service health status",
        examples=["healthy", "degraded"]
    )
    service: str = Field(
        default="combat-companion",
        description="Service name"
    )
    orchestrator_enabled: Optional[bool] = Field(
        None,
        description="Whether the turn orchestrator is enabled"
    )


class StatusResponse(BaseModel):
    """Snapshot of the orchestrator for the approval UI."""
    state: str = Field(..., description="Orchestrator state", examples=["decision_pending"])
    enabled: bool = Field(..., description="Whether the orchestrator drives units")
    in_combat: bool = Field(..., description="Whether a battle is running")
    execution_mode: Literal["auto", "manual"] = Field(..., description="Current execution mode")
    current_unit_id: Optional[str] = Field(None, description="Unit whose turn is being driven")
    is_processing: bool = Field(..., description="True while an oracle request is outstanding")
    is_executing: bool = Field(..., description="True while the unit carries out commands")
    pending_action: Optional[Dict[str, Any]] = Field(
        None, description="Pending decision in wire format"
    )
    pending_action_display: Optional[str] = Field(
        None, description="One-line description of the pending decision",
        examples=["Strike -> E1"]
    )
    validation_error: Optional[str] = Field(
        None, description="Why the oracle's decision was replaced by End Turn"
    )
    last_error: Optional[str] = Field(None, description="Most recent error, if any")
    last_prompt: Optional[str] = Field(None, description="Most recent prompt sent to the oracle")
    last_response: Optional[str] = Field(None, description="Most recent raw oracle response")
    controlled_units: List[str] = Field(
        default_factory=list, description="Units whose autonomy is switched off"
    )


class ExecutionModeRequest(BaseModel):
    mode: Literal["auto", "manual"] = Field(..., description="New execution mode")


class ApproveResponse(BaseModel):
    approved: bool = Field(..., description="Whether a pending decision was executed")
    status: StatusResponse


class DebugParseRequest(BaseModel):
    """Request model for debug parse endpoint.

    Attributes:
        oracle_response: Raw text as the oracle would return it
    """
    oracle_response: str = Field(
        ...,
        description="Raw oracle output to decode",
        min_length=1
    )
