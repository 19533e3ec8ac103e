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
"""Tests for configuration loading and validation."""

import pytest
from unittest.mock import patch
import os
from pydantic import ValidationError

from companion.config import Settings, get_settings


def test_config_defaults():
    """Test that config loads with default values."""
    with patch.dict(os.environ, {"ORACLE_API_KEY": "sk-test-key"}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.oracle_provider == "openai"
        assert settings.oracle_model == "gpt-4o-mini"
        assert settings.oracle_timeout == 30
        assert settings.oracle_max_retries == 2
        assert settings.execution_mode == "manual"
        assert settings.control_all_companions is True
        assert settings.control_player_character is False
        assert settings.controlled_companions == []
        assert settings.preferred_combat_style == "balanced"
        assert settings.defensive_health_threshold == 30
        assert settings.use_heroic_acts is True
        assert settings.use_consumables is False
        assert settings.tick_interval == 0.1
        assert settings.enable_metrics is False
        assert settings.enable_debug_endpoints is False


def test_config_custom_values():
    """Test that config accepts custom values from the environment."""
    test_env = {
        "ORACLE_PROVIDER": "local",
        "ORACLE_LOCAL_ENDPOINT": "http://localhost:1234/v1/chat/completions",
        "EXECUTION_MODE": "auto",
        "CONTROL_ALL_COMPANIONS": "false",
        "CONTROLLED_COMPANIONS": '["Pasqal", "Idira"]',
        "PREFERRED_COMBAT_STYLE": "aggressive",
        "DEFENSIVE_HEALTH_THRESHOLD": "50",
        "TICK_INTERVAL": "0.25",
        "LOG_LEVEL": "debug",
    }

    with patch.dict(os.environ, test_env, clear=True):
        settings = Settings(_env_file=None)

        assert settings.oracle_provider == "local"
        assert settings.oracle_local_endpoint == "http://localhost:1234/v1/chat/completions"
        assert settings.execution_mode == "auto"
        assert settings.control_all_companions is False
        assert settings.controlled_companions == ["Pasqal", "Idira"]
        assert settings.preferred_combat_style == "aggressive"
        assert settings.defensive_health_threshold == 50
        assert settings.tick_interval == 0.25
        assert settings.log_level == "DEBUG"


def test_openai_provider_requires_api_key():
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ValidationError, match="oracle_api_key cannot be empty"):
            Settings(_env_file=None)


def test_stub_provider_needs_no_api_key():
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None, oracle_provider="stub")
        assert settings.oracle_api_key is None


def test_base_url_validation():
    settings = Settings(
        _env_file=None,
        oracle_api_key="sk-test",
        oracle_base_url="https://proxy.example.com/v1/"
    )
    assert settings.oracle_base_url == "https://proxy.example.com/v1"

    assert Settings(_env_file=None, oracle_api_key="sk-test", oracle_base_url="").oracle_base_url is None

    with pytest.raises(ValidationError, match="must start with http"):
        Settings(_env_file=None, oracle_api_key="sk-test", oracle_base_url="proxy.example.com")


def test_local_endpoint_validation():
    with pytest.raises(ValidationError, match="must start with http"):
        Settings(_env_file=None, oracle_provider="local", oracle_local_endpoint="localhost:11434")


def test_invalid_enumerations_rejected():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, oracle_provider="anthropic")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, oracle_provider="stub", execution_mode="turbo")
    with pytest.raises(ValidationError):
        Settings(_env_file=None, oracle_provider="stub", preferred_combat_style="reckless")


def test_numeric_bounds():
    """Test that numeric settings are range checked."""
    with pytest.raises(ValidationError, match="less than or equal to 100"):
        Settings(_env_file=None, oracle_provider="stub", defensive_health_threshold=150)

    with pytest.raises(ValidationError, match="greater than 0"):
        Settings(_env_file=None, oracle_provider="stub", tick_interval=0)

    with pytest.raises(ValidationError, match="less than or equal to 2"):
        Settings(_env_file=None, oracle_provider="stub", oracle_temperature=3.0)


def test_invalid_log_level():
    with pytest.raises(ValidationError, match="log_level must be one of"):
        Settings(_env_file=None, oracle_provider="stub", log_level="VERBOSE")


def test_get_settings_wraps_errors():
    get_settings.cache_clear()
    try:
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="Configuration error"):
                get_settings()
    finally:
        get_settings.cache_clear()


def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        with patch.dict(os.environ, {"ORACLE_PROVIDER": "stub"}, clear=True):
            assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
