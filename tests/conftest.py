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
"""Shared test fixtures for the combat companion.

This module provides pytest fixtures for:
- settings: Settings using the stub oracle, isolated from any .env file
- world: a FakeWorld holding a small skirmish (see tests/fakes.py)
- metrics isolation between tests

Usage:
    pytest tests/
    pytest tests/test_turn_orchestrator.py -v
"""

import pytest

from companion.config import Settings
from companion.metrics import disable_metrics_collector
from companion.models import Position
from tests.fakes import FakeWorld, make_battle, make_companion, make_enemy


@pytest.fixture(autouse=True)
def reset_metrics():
    """Keep the global metrics collector from leaking between tests."""
    disable_metrics_collector()
    yield
    disable_metrics_collector()


@pytest.fixture
def settings():
    """Settings using the stub oracle and auto execution, ignoring .env."""
    return Settings(
        _env_file=None,
        oracle_provider="stub",
        execution_mode="auto",
        tick_interval=0.01,
    )


@pytest.fixture
def companion():
    return make_companion()


@pytest.fixture
def enemy():
    return make_enemy()


@pytest.fixture
def world():
    """Skirmish: companion C1, main character P1, enemies E1 and E2."""
    return FakeWorld(
        units=[
            make_companion(),
            make_companion(
                id="P1",
                name="Lord Captain",
                unit_type="Rogue Trader",
                is_main_character=True,
                position=Position(x=1, y=1),
            ),
            make_enemy(),
            make_enemy(
                id="E2",
                name="Heretek",
                is_psyker=True,
                has_ranged_attack=True,
                position=Position(x=30, y=0),
            ),
        ],
        battle=make_battle(),
    )
