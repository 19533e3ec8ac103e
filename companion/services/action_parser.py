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
"""Codec between oracle text and Action objects.

Decoding is defensive: the oracle often wraps its JSON answer in prose
or markdown fences, sometimes answers with something that is not JSON
at all, and sometimes invents action types. None of that may escape as
an exception. Every failure becomes an ``EndTurn`` whose reason starts
with ``"parse error: "``, which the rest of the pipeline treats as a
regular, already-validated decision.
"""

import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from companion.logging import StructuredLogger, redact_secrets
from companion.metrics import get_metrics_collector
from companion.models import (
    Action,
    ActionPayload,
    Delay,
    EndTurn,
    Move,
    MoveThenAct,
    Position,
    Sequence,
    UseAbility,
    UseItem,
)

logger = StructuredLogger(__name__)

# Maximum payload size to log (to prevent log flooding and secret leakage)
MAX_PAYLOAD_LOG_LENGTH = 500

PARSE_ERROR_PREFIX = "parse error: "


class ActionDecodeError(Exception):
    """Internal signal for a payload that cannot become an Action."""
    pass


def find_json_object(text: str) -> Optional[str]:
    """Locate the outermost balanced ``{...}`` span in free text.

    Braces inside double-quoted strings are ignored, so an object whose
    string values contain braces is still matched correctly. If an
    opening brace is never closed, the search resumes after it.

    Args:
        text: Raw oracle output

    Returns:
        The first outermost balanced object span, or None
    """
    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        start = text.find('{', start + 1)
    return None


class ActionParser:
    """Decode oracle responses into Actions and encode Actions back.

    The parser:
    - Extracts the JSON object from surrounding prose or fences
    - Validates it against ActionPayload
    - Maps wire tags onto Action variants
    - Never raises from decode(); failures become EndTurn
    - Tracks decode successes and failures for the conformance metric
    """

    _TAGS = {
        UseAbility: "ability",
        Move: "move",
        MoveThenAct: "move_and_attack",
        UseItem: "use_item",
        EndTurn: "end_turn",
        Delay: "delay",
        Sequence: "sequence",
    }

    def decode(self, raw_text: Optional[str]) -> Action:
        """Decode raw oracle text into an Action.

        Args:
            raw_text: Raw text returned by the oracle (may be None or empty)

        Returns:
            The decoded Action, or a validated EndTurn describing the
            parse error
        """
        try:
            action = self._decode(raw_text or "")
        except Exception as e:
            detail = self._describe_error(e)
            logger.warning(
                "Failed to decode oracle response",
                error_type=type(e).__name__,
                error_details=detail,
                payload_preview=self._truncate_for_log(raw_text or "")
            )
            self._record_decode(success=False)
            return EndTurn(reason=f"{PARSE_ERROR_PREFIX}{detail}")

        self._record_decode(success=True)
        logger.debug("Decoded oracle response", action=self.describe(action))
        return action

    def encode(self, action: Action) -> Dict[str, Any]:
        """Encode an Action as the wire object the oracle answers with.

        Keys that do not apply to the action are left out.

        Args:
            action: Action to encode

        Returns:
            JSON-compatible dictionary
        """
        tag = self._TAGS.get(type(action))
        if tag is None:
            raise ValueError(f"Unknown action type: {type(action).__name__}")

        payload: Dict[str, Any] = {"action": tag}

        if isinstance(action, (UseAbility, MoveThenAct)):
            payload["ability_name"] = action.ability_name
            if action.target_id is not None:
                payload["target_id"] = action.target_id
        if isinstance(action, UseItem):
            payload["item_name"] = action.item_name
            if action.target_id is not None:
                payload["target_id"] = action.target_id

        position = getattr(action, "target_position", None)
        if position is not None:
            payload["target_position"] = {"x": position.x, "y": position.y}

        if isinstance(action, Sequence):
            payload["action_sequence"] = [self.encode(step) for step in action.steps]

        reasoning = action.reason if isinstance(action, EndTurn) else action.rationale
        if reasoning is not None:
            payload["reasoning"] = reasoning
        payload["confidence"] = action.confidence
        return payload

    def encode_json(self, action: Action) -> str:
        return json.dumps(self.encode(action))

    def describe(self, action: Action) -> str:
        """Render a one-line display string for the approval UI.

        Examples: "Strike -> E1", "Move to (3, 4)", "Use Stimm", "End Turn".
        """
        if isinstance(action, UseAbility):
            target = f" -> {action.target_id}" if action.target_id else ""
            return f"{action.ability_name}{target}"
        if isinstance(action, Move):
            return self._describe_move(action.target_position)
        if isinstance(action, MoveThenAct):
            target = f" -> {action.target_id}" if action.target_id else ""
            return f"{self._describe_move(action.target_position)}, then {action.ability_name}{target}"
        if isinstance(action, UseItem):
            return f"Use {action.item_name}"
        if isinstance(action, EndTurn):
            return "End Turn"
        if isinstance(action, Delay):
            return "Delay Turn"
        if isinstance(action, Sequence):
            if not action.steps:
                return "Sequence"
            return " then ".join(self.describe(step) for step in action.steps)
        return type(action).__name__

    def _decode(self, raw_text: str) -> Action:
        span = find_json_object(raw_text.strip())
        if span is None:
            raise ActionDecodeError("no JSON object found in response")
        data = json.loads(span)
        payload = ActionPayload.model_validate(data)
        return self._from_payload(payload)

    def _from_payload(self, payload: ActionPayload) -> Action:
        position = None
        if payload.target_position is not None:
            position = Position(x=payload.target_position.x, y=payload.target_position.y)

        common = {"rationale": payload.reasoning, "confidence": payload.confidence}
        tag = payload.action

        if tag in ("ability", "attack"):
            return UseAbility(
                ability_name=payload.ability_name or "",
                target_id=payload.target_id,
                target_position=position,
                **common
            )
        if tag == "move":
            return Move(target_position=position, **common)
        if tag == "move_and_attack":
            return MoveThenAct(
                target_position=position,
                ability_name=payload.ability_name or "",
                target_id=payload.target_id,
                **common
            )
        if tag == "use_item":
            return UseItem(
                item_name=payload.item_name or "",
                target_id=payload.target_id,
                **common
            )
        if tag == "end_turn":
            reason = payload.reasoning or "Oracle chose to end the turn"
            return EndTurn(reason=reason, confidence=payload.confidence)
        if tag == "delay":
            return Delay(**common)
        if tag == "sequence":
            steps: List[Action] = []
            for step_payload in payload.action_sequence or []:
                step = self._from_payload(step_payload)
                # Nested sequences are flattened into one ordered list of steps
                steps.extend(step.steps if isinstance(step, Sequence) else [step])
            return Sequence(steps=steps, **common)
        raise ActionDecodeError(f"unsupported action type: {tag}")

    def _describe_move(self, position: Optional[Position]) -> str:
        if position is None:
            return "Move"
        return f"Move to ({position.x:.0f}, {position.y:.0f})"

    def _describe_error(self, error: Exception) -> str:
        if isinstance(error, json.JSONDecodeError):
            return f"JSON decode error at line {error.lineno}, column {error.colno}: {error.msg}"
        if isinstance(error, ValidationError):
            return "; ".join(self._extract_validation_errors(error))
        return str(error) or type(error).__name__

    def _extract_validation_errors(self, error: ValidationError) -> List[str]:
        """Extract human-readable error messages from ValidationError.

        Args:
            error: Pydantic ValidationError

        Returns:
            List of error descriptions
        """
        error_list = []
        for err in error.errors():
            field_path = ".".join(str(loc) for loc in err["loc"]) or "payload"
            error_list.append(f"{field_path}: {err['msg']}")
        return error_list

    def _truncate_for_log(self, text: str) -> str:
        """Truncate text for safe logging.

        Args:
            text: Text to truncate

        Returns:
            Truncated and redacted text
        """
        redacted = redact_secrets(text)
        if len(redacted) > MAX_PAYLOAD_LOG_LENGTH:
            return redacted[:MAX_PAYLOAD_LOG_LENGTH] + "... (truncated)"
        return redacted

    def _record_decode(self, success: bool) -> None:
        collector = get_metrics_collector()
        if collector:
            collector.record_decode(success)
