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
"""Structured logging utilities for the combat companion.

This module provides:
- Context management for unit_id and decision_id correlation
- Structured log helpers for decision phases
- Secret redaction for API keys and sensitive data
- JSON logging formatter option
"""

import logging
import re
import time
from contextvars import ContextVar
from typing import Optional, Dict, Any
import json

# Context variables for decision correlation
unit_id_ctx: ContextVar[Optional[str]] = ContextVar('unit_id', default=None)
decision_id_ctx: ContextVar[Optional[str]] = ContextVar('decision_id', default=None)

# Attributes of logging.LogRecord that cannot be passed through `extra`
RESERVED_LOG_RECORD_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'asctime', 'taskName'
})


def set_unit_id(unit_id: Optional[str]) -> None:
    """Set the acting unit ID in context for correlation.

    Args:
        unit_id: Identifier of the unit whose turn is being driven
    """
    unit_id_ctx.set(unit_id)


def get_unit_id() -> Optional[str]:
    """Get the current unit ID from context.

    Returns:
        Current unit ID or None if not set
    """
    return unit_id_ctx.get()


def set_decision_id(decision_id: Optional[str]) -> None:
    """Set the decision ID in context for correlation.

    A decision ID is minted for every oracle request so that the prompt,
    the response, validation and execution of one decision can be tied
    together in the logs.

    Args:
        decision_id: Unique identifier for the decision cycle
    """
    decision_id_ctx.set(decision_id)


def get_decision_id() -> Optional[str]:
    """Get the current decision ID from context.

    Returns:
        Current decision ID or None if not set
    """
    return decision_id_ctx.get()


def clear_context() -> None:
    """Clear all context variables.

    Should be called when a unit's turn is over to avoid leaking ids
    into unrelated log lines.
    """
    unit_id_ctx.set(None)
    decision_id_ctx.set(None)


def redact_secrets(text: str) -> str:
    """Redact API keys and secrets from text for safe logging.

    Redacts:
    - OpenAI API keys (sk-...)
    - Generic API keys patterns
    - Bearer tokens

    Args:
        text: Text that may contain secrets

    Returns:
        Text with secrets redacted
    """
    # Redact OpenAI API keys
    text = re.sub(r'sk-[a-zA-Z0-9]{32,}', 'sk-***REDACTED***', text)

    # Redact generic API key patterns
    text = re.sub(r'api[_-]?key["\']?\s*[:=]\s*["\']?([a-zA-Z0-9_\-]{16,})',
                  'api_key=***REDACTED***', text, flags=re.IGNORECASE)

    # Redact Bearer tokens
    text = re.sub(r'Bearer\s+[a-zA-Z0-9\-._~+/]+', 'Bearer ***REDACTED***', text, flags=re.IGNORECASE)

    return text


def sanitize_for_log(text: str, max_length: int = 200) -> str:
    """Sanitize text for safe logging (prevents log injection).

    Removes control characters and truncates to prevent log flooding.
    This is different from redact_secrets() which focuses on sensitive data.

    Args:
        text: Text to sanitize
        max_length: Maximum length to truncate to

    Returns:
        Sanitized text safe for logging
    """
    sanitized = re.sub(r'[\r\n\t\x00-\x1f\x7f-\x9f]', '', str(text))
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length] + "..."
    return sanitized


def get_structured_extras() -> Dict[str, Any]:
    """Get structured logging extras with correlation IDs.

    Returns:
        Dictionary with unit_id and decision_id if available
    """
    extras: Dict[str, Any] = {}

    unit_id = get_unit_id()
    if unit_id:
        extras['unit_id'] = unit_id

    decision_id = get_decision_id()
    if decision_id:
        extras['decision_id'] = decision_id

    return extras


class StructuredLogger:
    """Structured logger with correlation IDs.

    Automatically includes unit_id and decision_id from context
    in all log messages. Keyword fields that collide with LogRecord
    attributes (``name``, ``msg``, ...) are renamed with a ``field_``
    prefix and a warning is emitted instead of raising KeyError.
    """

    def __init__(self, name: str):
        """Initialize structured logger.

        Args:
            name: Logger name (usually __name__)
        """
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **kwargs) -> None:
        """Internal logging method that adds correlation IDs.

        Args:
            level: Logging level (e.g., logging.INFO)
            message: Log message
            **kwargs: Additional fields to include in log
        """
        extras = get_structured_extras()
        for key, value in kwargs.items():
            if key in RESERVED_LOG_RECORD_ATTRS:
                self.logger.warning(
                    f"Log field '{key}' is a reserved LogRecord attribute; "
                    f"renamed to 'field_{key}'"
                )
                key = f"field_{key}"
            extras[key] = value

        if extras:
            extra_str = ' '.join(f'{k}={v}' for k, v in extras.items() if v is not None)
            if extra_str:
                message = f"{message} | {extra_str}"

        self.logger.log(level, message, extra=extras)

    def debug(self, message: str, **kwargs) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs) -> None:
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs) -> None:
        self._log(logging.CRITICAL, message, **kwargs)


class PhaseTimer:
    """Context manager for timing and logging decision phases.

    Usage:
        with PhaseTimer("snapshot", logger):
            state = builder.build()
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        """Initialize phase timer.

        Args:
            phase: Name of the phase (e.g., "snapshot", "oracle_call")
            logger: Structured logger instance
        """
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.time()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.time() - self.start_time) * 1000

        if exc_type:
            self.logger.error(
                f"Phase failed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}",
                error_type=exc_type.__name__
            )
        else:
            self.logger.debug(
                f"Phase completed: {self.phase}",
                duration_ms=f"{self.duration_ms:.2f}"
            )


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging.

    Outputs logs as JSON with consistent fields:
    - timestamp
    - level
    - logger
    - message
    - unit_id / decision_id (if available)
    - additional fields from extra
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage()
        }

        for key, value in record.__dict__.items():
            if key not in RESERVED_LOG_RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "combat-companion"
) -> None:
    """Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: If True, use JSON formatter; otherwise use standard formatter
        service_name: Service name to include in logs
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    root_logger.info(
        f"Logging configured: level={level}, json_format={json_format}, service={service_name}"
    )
