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
"""HTTP control API for the combat companion.

These endpoints are the approval UI's view of the turn orchestrator:
- GET /status shows the pending decision and the orchestrator state
- POST /approve, /skip and /cancel act on the pending decision
- PUT /execution-mode switches between auto and manual execution
- POST /enable and /disable toggle whether units are driven at all

Operational endpoints (/health, /metrics, /debug/parse_action) follow
the same conventions as the rest of the service.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from companion.config import Settings, get_settings
from companion.logging import StructuredLogger
from companion.metrics import get_metrics_collector
from companion.models import (
    ApproveResponse,
    DebugParseRequest,
    EndTurn,
    ExecutionModeRequest,
    HealthResponse,
    StatusResponse,
)
from companion.services.action_parser import PARSE_ERROR_PREFIX, ActionParser
from companion.services.turn_orchestrator import TurnOrchestrator

logger = StructuredLogger(__name__)

router = APIRouter()

_parser = ActionParser()


def get_turn_orchestrator():
    """Dependency that provides the TurnOrchestrator driving the battle.

    This is a placeholder that must be overridden by the application.
    ``create_app`` in companion.main provides the actual implementation.

    Raises:
        NotImplementedError: If not overridden by the application
    """
    raise NotImplementedError(
        "get_turn_orchestrator dependency must be overridden. "
        "This should be configured in companion.main module."
    )


def build_status(orchestrator: TurnOrchestrator, settings: Settings) -> StatusResponse:
    """Collect the orchestrator's UI-facing state into a StatusResponse.

    Prompt and response text is only included when the matching
    LOG_PROMPTS / LOG_RESPONSES flag is on.
    """
    pending = orchestrator.pending_action
    return StatusResponse(
        state=orchestrator.state.value,
        enabled=orchestrator.is_enabled,
        in_combat=orchestrator.in_combat,
        execution_mode=orchestrator.execution_mode,
        current_unit_id=orchestrator.current_unit_id,
        is_processing=orchestrator.is_processing,
        is_executing=orchestrator.is_executing,
        pending_action=_parser.encode(pending) if pending is not None else None,
        pending_action_display=_parser.describe(pending) if pending is not None else None,
        validation_error=pending.validation_error if pending is not None else None,
        last_error=orchestrator.last_error,
        last_prompt=orchestrator.last_prompt if settings.log_prompts else None,
        last_response=orchestrator.last_response if settings.log_responses else None,
        controlled_units=sorted(orchestrator.controlled_units)
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check endpoint",
    description=(
        "Check service health status. Returns 200 with status='healthy' while the "
        "orchestrator is enabled and 'degraded' while it is disabled."
    ),
    responses={
        200: {
            "description": "Service is healthy or degraded",
            "content": {
                "application/json": {
                    "examples": {
                        "healthy": {
                            "value": {
                                "status": "healthy",
                                "service": "combat-companion",
                                "orchestrator_enabled": True
                            }
                        },
                        "degraded": {
                            "value": {
                                "status": "degraded",
                                "service": "combat-companion",
                                "orchestrator_enabled": False
                            }
                        }
                    }
                }
            }
        }
    }
)
async def health_check(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> HealthResponse:
    logger.debug("Health check requested")
    enabled = orchestrator.is_enabled
    return HealthResponse(
        status="healthy" if enabled else "degraded",
        service=settings.service_name,
        orchestrator_enabled=enabled
    )


@router.get(
    "/status",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Orchestrator status",
    description=(
        "Current orchestrator state, the pending decision in wire format with a "
        "one-line description, and the most recent error."
    )
)
async def get_status(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    return build_status(orchestrator, settings)


@router.post(
    "/approve",
    response_model=ApproveResponse,
    status_code=status.HTTP_200_OK,
    summary="Approve the pending decision",
    description=(
        "Execute the pending decision. Used in manual execution mode. "
        "Returns 409 when no decision is pending."
    ),
    responses={409: {"description": "No decision pending"}}
)
async def approve_pending(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> ApproveResponse:
    """Execute the pending decision.

    Raises:
        HTTPException: 409 if nothing is pending approval
    """
    if orchestrator.pending_action is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No decision is pending approval"
        )
    approved = orchestrator.approve_pending()
    logger.info("Pending decision approval requested", approved=approved)
    return ApproveResponse(approved=approved, status=build_status(orchestrator, settings))


@router.post(
    "/skip",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Skip the current turn",
    description="Discard any pending decision and hand the unit back to the game's own AI."
)
async def skip_turn(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    orchestrator.skip_turn()
    return build_status(orchestrator, settings)


@router.post(
    "/cancel",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel the pending decision",
    description="Cancel any outstanding oracle request or pending decision and end the unit's turn."
)
async def cancel_pending(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    orchestrator.cancel_pending()
    return build_status(orchestrator, settings)


@router.put(
    "/execution-mode",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Set execution mode",
    description=(
        "Switch between 'auto' (decisions run immediately) and 'manual' "
        "(decisions wait for /approve)."
    )
)
async def set_execution_mode(
    request: ExecutionModeRequest,
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    try:
        orchestrator.set_execution_mode(request.mode)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        ) from e
    return build_status(orchestrator, settings)


@router.post(
    "/enable",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Enable the orchestrator"
)
async def enable_orchestrator(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    orchestrator.enable()
    return build_status(orchestrator, settings)


@router.post(
    "/disable",
    response_model=StatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Disable the orchestrator",
    description="Stop driving units and restore the game's own AI on every controlled unit."
)
async def disable_orchestrator(
    orchestrator: TurnOrchestrator = Depends(get_turn_orchestrator),
    settings: Settings = Depends(get_settings)
) -> StatusResponse:
    orchestrator.disable()
    return build_status(orchestrator, settings)


@router.get(
    "/metrics",
    status_code=status.HTTP_200_OK,
    summary="Metrics endpoint",
    description=(
        "Get decision outcome counts, error counts, latencies and decode conformance. "
        "Only available when ENABLE_METRICS is true. Returns 404 if metrics are disabled."
    ),
    responses={
        200: {
            "description": "Metrics collected",
            "content": {
                "application/json": {
                    "example": {
                        "uptime_seconds": 3600.0,
                        "decisions": {
                            "total": 42,
                            "by_outcome": {
                                "accepted": 36,
                                "rejected": 4,
                                "timeout": 2
                            }
                        },
                        "errors": {
                            "by_type": {
                                "tick_failed": 1
                            }
                        },
                        "latencies": {
                            "oracle_call": {
                                "count": 42,
                                "avg_ms": 950.3,
                                "min_ms": 600.1,
                                "max_ms": 2500.5
                            }
                        },
                        "schema_conformance": {
                            "total_decodes": 40,
                            "successful_decodes": 38,
                            "failed_decodes": 2,
                            "conformance_rate": 0.95
                        }
                    }
                }
            }
        },
        404: {"description": "Metrics disabled"}
    }
)
async def get_metrics(settings: Settings = Depends(get_settings)):
    """Get service metrics.

    Raises:
        HTTPException: If metrics are disabled
    """
    if not settings.enable_metrics:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics endpoint is disabled. Set ENABLE_METRICS=true to enable."
        )

    collector = get_metrics_collector()
    if not collector:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Metrics collector not initialized"
        )

    return collector.get_metrics()


@router.post(
    "/debug/parse_action",
    status_code=status.HTTP_200_OK,
    summary="Debug endpoint to test oracle response decoding",
    description=(
        "Decode raw oracle output into an Action. "
        "Only available when ENABLE_DEBUG_ENDPOINTS is true. "
        "Returns the decoded action in wire format, its one-line description, "
        "and whether decoding fell back to End Turn."
    ),
    responses={
        200: {
            "description": "Decode results",
            "content": {
                "application/json": {
                    "example": {
                        "action_type": "UseAbility",
                        "action": {
                            "action": "ability",
                            "ability_name": "Strike",
                            "target_id": "E1",
                            "confidence": 80
                        },
                        "description": "Strike -> E1",
                        "is_parse_error": False,
                        "error": None
                    }
                }
            }
        },
        404: {"description": "Debug endpoints disabled"}
    }
)
async def debug_parse_action(
    request: DebugParseRequest,
    settings: Settings = Depends(get_settings)
):
    """Decode raw oracle output the same way a live decision would be.

    Only available when ENABLE_DEBUG_ENDPOINTS configuration is enabled.
    This endpoint should NOT be enabled in production environments.

    Raises:
        HTTPException: If debug endpoints are disabled
    """
    if not settings.enable_debug_endpoints:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Debug endpoints are disabled. Set ENABLE_DEBUG_ENDPOINTS=true to enable."
        )

    action = _parser.decode(request.oracle_response)
    is_parse_error = isinstance(action, EndTurn) and action.reason.startswith(PARSE_ERROR_PREFIX)

    return {
        "action_type": type(action).__name__,
        "action": _parser.encode(action),
        "description": _parser.describe(action),
        "is_parse_error": is_parse_error,
        "error": action.reason[len(PARSE_ERROR_PREFIX):] if is_parse_error else None
    }
