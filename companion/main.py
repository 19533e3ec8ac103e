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
"""FastAPI application factory for the combat companion.

The game host owns the battle, so the application is built around a
WorldAdapter it supplies:

    app = create_app(world)
    run_server(app)

``create_app`` wires:
- Logging and metrics configured from Settings
- The oracle client selected by ORACLE_PROVIDER
- A TurnOrchestrator subscribed to the world's events
- A background task calling ``tick()`` every TICK_INTERVAL seconds
- CORS middleware and the control API routes
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from companion.api.routes import get_turn_orchestrator, router
from companion.config import Settings, get_settings
from companion.logging import configure_logging
from companion.metrics import disable_metrics_collector, init_metrics_collector
from companion.services.oracle_client import OracleClient, create_oracle_client
from companion.services.turn_orchestrator import TurnOrchestrator
from companion.world import WorldAdapter

# Will be configured in lifespan
logger = logging.getLogger(__name__)


def build_orchestrator(
    world: WorldAdapter,
    settings: Settings,
    oracle: Optional[OracleClient] = None
) -> TurnOrchestrator:
    """Create a TurnOrchestrator for ``world`` from settings.

    Args:
        world: Adapter to the running battle
        settings: Service settings
        oracle: Optional oracle client; built from settings when omitted

    Returns:
        Orchestrator subscribed to the world's events
    """
    if oracle is None:
        oracle = create_oracle_client(settings)
    return TurnOrchestrator(world=world, oracle=oracle, settings=settings)


def create_app(
    world: WorldAdapter,
    settings: Optional[Settings] = None,
    oracle: Optional[OracleClient] = None
) -> FastAPI:
    """Create the control API application for a world.

    Args:
        world: Adapter to the running battle
        settings: Optional settings; loaded from the environment when omitted
        oracle: Optional oracle client; built from settings when omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        - Startup: configure logging and metrics, build the oracle client
          and orchestrator, start the tick loop
        - Shutdown: stop the tick loop, hand units back, close the oracle
        """
        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json_format,
            service_name=settings.service_name
        )
        logger.info("Starting combat companion service...")
        logger.info(f"Oracle provider: {settings.oracle_provider} (model={settings.oracle_model})")
        logger.info(f"Execution mode: {settings.execution_mode}")

        if settings.enable_metrics:
            init_metrics_collector()
            logger.info("Metrics collector initialized")
        else:
            disable_metrics_collector()
            logger.info("Metrics collection disabled")

        app.state.oracle_client = oracle if oracle is not None else create_oracle_client(settings)
        app.state.turn_orchestrator = build_orchestrator(world, settings, app.state.oracle_client)
        app.state.tick_task = asyncio.get_running_loop().create_task(
            app.state.turn_orchestrator.run(settings.tick_interval)
        )
        logger.info("Turn orchestrator initialized")

        yield

        logger.info("Shutting down combat companion service...")
        orchestrator = app.state.turn_orchestrator
        orchestrator.stop()
        orchestrator.disable()
        app.state.tick_task.cancel()
        try:
            await app.state.tick_task
        except asyncio.CancelledError:
            pass
        await app.state.oracle_client.aclose()
        logger.info("Oracle client closed")

    app = FastAPI(
        title="Combat Companion API",
        description=(
            "Drives companion units through turn-based battles by asking an "
            "LLM oracle for each decision and validating it before execution."
        ),
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    # The approval UI is served from the game's embedded browser
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, tags=["companion"])

    def get_turn_orchestrator_override() -> TurnOrchestrator:
        """Dependency override that provides the TurnOrchestrator from app state.

        Raises:
            RuntimeError: If turn_orchestrator is not initialized in app state
        """
        if not hasattr(app.state, 'turn_orchestrator'):
            raise RuntimeError(
                "Turn orchestrator not initialized. "
                "Ensure the application lifespan has started."
            )
        return app.state.turn_orchestrator

    app.dependency_overrides[get_turn_orchestrator] = get_turn_orchestrator_override
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.settings = settings

    return app


def run_server(app: FastAPI, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Serve the control API with uvicorn (blocking)."""
    import uvicorn

    settings = app.state.settings
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
