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
"""Boundary between the companion and the battle simulation.

The companion never touches the game directly. Everything it reads or
does goes through a WorldAdapter supplied by the host: unit and roster
queries, path finding, command issuance, the per-unit autonomy switch
and turn lifecycle events.

Commands are queued by the world and carried out over time (movement and
animations take real time); ``is_command_queue_empty`` tells the caller
when a unit has finished everything it was told to do.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union, runtime_checkable

from companion.models import BattleInfo, Position, UnitInfo


class Faction(str, Enum):
    """Roster selector for query_roster."""
    PLAYER = "player"
    ENEMY = "enemy"


@dataclass(frozen=True)
class Path:
    """A walkable route computed by the world.

    ``reachable`` is the last point the unit can get to with its
    remaining movement; it may fall short of ``destination``.
    """
    waypoints: Tuple[Position, ...]
    destination: Position
    length: float = 0.0
    reachable: Optional[Position] = None


@dataclass(frozen=True)
class UseAbilityCommand:
    ability_id: str
    target_id: str
    target_position: Optional[Position] = None


@dataclass(frozen=True)
class MoveToCommand:
    path: Path


@dataclass(frozen=True)
class UseItemCommand:
    item_id: str
    target_id: str


WorldCommand = Union[UseAbilityCommand, MoveToCommand, UseItemCommand]


@runtime_checkable
class WorldEventListener(Protocol):
    """Receiver of battle lifecycle events."""

    def on_combat_started(self) -> None: ...

    def on_combat_ended(self) -> None: ...

    def on_unit_turn_started(self, unit_id: str) -> None: ...

    def on_unit_turn_ended(self, unit_id: str) -> None: ...


@runtime_checkable
class WorldAdapter(Protocol):
    """Host-provided access to the running battle.

    Query methods return None (or an empty list) when the thing asked for
    does not exist; they may raise if the world is in a broken state, and
    callers treat such exceptions as "unavailable".
    """

    def query_battle(self) -> Optional[BattleInfo]:
        """Battle-wide facts, or None when no battle is active."""
        ...

    def query_unit(self, unit_id: str) -> Optional[UnitInfo]: ...

    def query_roster(self, faction: Faction) -> List[UnitInfo]: ...

    def query_turn_order(self) -> List[str]:
        """Names of the units still to act this round, in order."""
        ...

    def find_path(self, unit_id: str, target: Position) -> Optional[Path]: ...

    def issue_command(self, unit_id: str, command: WorldCommand) -> None:
        """Queue a command for the unit. Returns immediately."""
        ...

    def is_command_queue_empty(self, unit_id: str) -> bool: ...

    def set_autonomy_enabled(self, unit_id: str, enabled: bool) -> None:
        """Switch the unit's built-in AI on or off."""
        ...

    def end_unit_turn(self, unit_id: str) -> None: ...

    def delay_unit_turn(self, unit_id: str) -> None: ...

    def subscribe(self, listener: WorldEventListener) -> None: ...
