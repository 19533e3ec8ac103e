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
"""Configuration module for the combat companion.

This module loads and validates configuration from environment variables.
All settings are validated at startup to fail fast if configuration is invalid.
"""

from functools import lru_cache
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    See .env.example for detailed documentation of each setting.
    """

    # Oracle Configuration
    oracle_provider: Literal["openai", "local", "stub"] = Field(
        default="openai",
        description="Which oracle client to use for turn decisions"
    )
    oracle_api_key: Optional[str] = Field(
        default=None,
        description="API key for the OpenAI provider"
    )
    oracle_model: str = Field(
        default="gpt-4o-mini",
        description="Model name sent to the oracle"
    )
    oracle_base_url: Optional[str] = Field(
        default=None,
        description="Optional base URL for OpenAI-compatible servers"
    )
    oracle_local_endpoint: str = Field(
        default="http://localhost:11434/api/generate",
        description="Endpoint for the local provider (Ollama or OpenAI-compatible)"
    )
    oracle_timeout: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Timeout for a single oracle request in seconds"
    )
    oracle_max_tokens: int = Field(
        default=500,
        ge=1,
        le=8192,
        description="Maximum tokens the oracle may generate per decision"
    )
    oracle_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Sampling temperature for the oracle"
    )
    oracle_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries of transient transport errors inside the OpenAI client"
    )

    # Turn Control Configuration
    execution_mode: Literal["auto", "manual"] = Field(
        default="manual",
        description="auto executes decisions immediately; manual waits for approval"
    )
    control_all_companions: bool = Field(
        default=True,
        description="Drive every companion in the player faction"
    )
    control_player_character: bool = Field(
        default=False,
        description="Also drive the main character when control_all_companions is on"
    )
    controlled_companions: List[str] = Field(
        default_factory=list,
        description="Names or ids of companions to drive when control_all_companions is off"
    )
    preferred_combat_style: Literal["aggressive", "defensive", "balanced", "support"] = Field(
        default="balanced",
        description="Tactical style hint included in every prompt"
    )
    defensive_health_threshold: int = Field(
        default=30,
        ge=0,
        le=100,
        description="Health percent at or below which the prompt asks for defensive play"
    )
    use_heroic_acts: bool = Field(
        default=True,
        description="Remind the oracle about heroic acts when momentum is high"
    )
    use_consumables: bool = Field(
        default=False,
        description="Include consumables in prompts"
    )
    tick_interval: float = Field(
        default=0.1,
        gt=0.0,
        le=5.0,
        description="Seconds between orchestrator ticks"
    )

    # Service Configuration
    service_name: str = Field(
        default="combat-companion",
        description="Service name for logging and identification"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_json_format: bool = Field(
        default=False,
        description="Enable JSON structured logging output"
    )
    log_prompts: bool = Field(
        default=False,
        description="Log the prompts sent to the oracle (redacted and truncated)"
    )
    log_responses: bool = Field(
        default=False,
        description="Log raw oracle responses (redacted and truncated)"
    )

    # Metrics Configuration
    enable_metrics: bool = Field(
        default=False,
        description="Enable metrics collection and /metrics endpoint"
    )

    # Debug Configuration
    enable_debug_endpoints: bool = Field(
        default=False,
        description="Enable debug endpoints like /debug/parse_action (for local development only)"
    )

    @field_validator('oracle_base_url')
    @classmethod
    def validate_base_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the optional OpenAI-compatible base URL."""
        if v is None or v.strip() == "":
            return None
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError(
                f"oracle_base_url must start with http:// or https://, got: {v}"
            )
        return v.rstrip('/')

    @field_validator('oracle_local_endpoint')
    @classmethod
    def validate_local_endpoint(cls, v: str) -> str:
        if not (v.startswith('http://') or v.startswith('https://')):
            raise ValueError(
                f"oracle_local_endpoint must start with http:// or https://, got: {v}"
            )
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a recognized value."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(
                f"log_level must be one of {valid_levels}, got: {v}"
            )
        return v_upper

    @model_validator(mode='after')
    def validate_provider_credentials(self) -> 'Settings':
        """The OpenAI provider cannot run without an API key."""
        if self.oracle_provider == "openai":
            if not self.oracle_api_key or self.oracle_api_key.strip() == "":
                raise ValueError(
                    "oracle_api_key cannot be empty when oracle_provider is 'openai'. "
                    "Set ORACLE_API_KEY or choose the 'local' or 'stub' provider."
                )
        return self

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False
    )


@lru_cache
def get_settings() -> Settings:
    """Get the settings instance with LRU caching.

    The cache can be cleared for testing using get_settings.cache_clear().

    Returns:
        Settings instance with validated configuration

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    try:
        return Settings()
    except Exception as e:
        raise ValueError(
            f"Configuration error: {e}. "
            "Ensure all required environment variables are set. "
            "See .env.example for required configuration."
        ) from e
