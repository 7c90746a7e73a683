"""
Structured logging with trace IDs for observability.
Every agent turn, quota decision, tool call and delivery is logged.
"""

import logging
import json
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, List
from pathlib import Path
from contextlib import contextmanager
from pythonjsonlogger import jsonlogger

from config import settings


_current_trace_id: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


class TraceLogger:
    """Structured logger with trace ID support for agent observability."""

    def __init__(self, name: str = "crm_agent", log_file: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, settings.log_level))
        self.logger.propagate = False

        if not self.logger.handlers:
            log_file = log_file if log_file is not None else settings.log_file
            if log_file:
                # Ensure log directory exists
                log_file_path = Path(log_file)
                log_file_path.parent.mkdir(parents=True, exist_ok=True)

                # File handler with JSON formatting
                file_handler = logging.FileHandler(log_file)
                json_formatter = jsonlogger.JsonFormatter(
                    fmt='%(asctime)s %(name)s %(levelname)s %(message)s',
                    rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
                )
                file_handler.setFormatter(json_formatter)
                self.logger.addHandler(file_handler)

            # Console handler with readable formatting
            console_handler = logging.StreamHandler()
            console_formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

    def generate_trace_id(self) -> str:
        """Generate a new trace ID."""
        return str(uuid.uuid4())

    @contextmanager
    def trace(self, trace_id: Optional[str] = None):
        """Context manager binding a trace ID to the current thread/task."""
        token = _current_trace_id.set(trace_id or self.generate_trace_id())
        try:
            yield _current_trace_id.get()
        finally:
            _current_trace_id.reset(token)

    def _log(self, level: str, event: str, **kwargs):
        """Internal log method with trace ID."""
        log_data = {
            "trace_id": _current_trace_id.get() or "unknown",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            **kwargs
        }

        log_method = getattr(self.logger, level.lower())
        log_method(json.dumps(log_data, default=str), extra={"event_data": log_data})

    def webhook_received(
        self,
        organization_id: str,
        provider: str,
        message_id: Optional[str],
        **kwargs
    ):
        """Log an accepted, normalized webhook delivery."""
        self._log(
            "info",
            "webhook_received",
            organization_id=organization_id,
            provider=provider,
            message_id=message_id,
            **kwargs
        )

    def duplicate_delivery(
        self,
        organization_id: str,
        message_id: str,
        **kwargs
    ):
        """Log a redelivered message that was already processed."""
        self._log(
            "info",
            "duplicate_delivery",
            organization_id=organization_id,
            message_id=message_id,
            **kwargs
        )

    def quota_checked(
        self,
        organization_id: str,
        allowed: bool,
        used: int,
        limit: Optional[int],
        period: str,
        **kwargs
    ):
        """Log a quota reservation attempt."""
        self._log(
            "info" if allowed else "warning",
            "quota_checked",
            organization_id=organization_id,
            allowed=allowed,
            used=used,
            limit=limit,
            period=period,
            **kwargs
        )

    def turn_phase(
        self,
        conversation_id: Optional[str],
        phase: str,
        **kwargs
    ):
        """Log an orchestrator state transition."""
        self._log(
            "debug",
            "turn_phase",
            conversation_id=conversation_id,
            phase=phase,
            **kwargs
        )

    def model_round(
        self,
        round_number: int,
        model: str,
        tool_calls: List[str],
        tokens_input: int,
        tokens_output: int,
        **kwargs
    ):
        """Log one model round of the tool loop."""
        if not settings.enable_trace_logging:
            return
        self._log(
            "info",
            "model_round",
            round_number=round_number,
            model=model,
            tool_calls=tool_calls,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            **kwargs
        )

    def tool_called(
        self,
        tool_name: str,
        parameters: Dict[str, Any],
        **kwargs
    ):
        """Log tool invocation."""
        self._log(
            "info",
            "tool_called",
            tool_name=tool_name,
            parameters=parameters,
            **kwargs
        )

    def tool_result(
        self,
        tool_name: str,
        success: bool,
        data: Optional[Dict] = None,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        **kwargs
    ):
        """Log tool result."""
        self._log(
            "info" if success else "warning",
            "tool_result",
            tool_name=tool_name,
            success=success,
            data=data,
            error=error,
            error_kind=error_kind,
            **kwargs
        )

    def escalation_triggered(
        self,
        reason: str,
        conversation_id: str,
        context: Dict[str, Any],
        **kwargs
    ):
        """Log human handoff."""
        self._log(
            "warning",
            "escalation_triggered",
            reason=reason,
            conversation_id=conversation_id,
            context=context,
            **kwargs
        )

    def delivery_result(
        self,
        organization_id: str,
        to: str,
        success: bool,
        message_id: Optional[str] = None,
        error: Optional[str] = None,
        **kwargs
    ):
        """Log outbound delivery outcome."""
        self._log(
            "info" if success else "warning",
            "delivery_result",
            organization_id=organization_id,
            to=to,
            success=success,
            message_id=message_id,
            error=error,
            **kwargs
        )

    def error_occurred(
        self,
        error_type: str,
        error_message: str,
        context: Optional[Dict] = None,
        **kwargs
    ):
        """Log error."""
        self._log(
            "error",
            "error_occurred",
            error_type=error_type,
            error_message=error_message,
            context=context or {},
            **kwargs
        )

    def agent_run_started(
        self,
        organization_id: str,
        lead_identity: str,
        message: str,
        **kwargs
    ):
        """Log agent turn start."""
        self._log(
            "info",
            "agent_run_started",
            organization_id=organization_id,
            lead_identity=lead_identity,
            message_preview=message[:100],
            **kwargs
        )

    def agent_run_completed(
        self,
        conversation_id: Optional[str],
        outcome: str,
        duration_ms: float,
        **kwargs
    ):
        """Log agent turn completion."""
        self._log(
            "info" if outcome != "failed" else "warning",
            "agent_run_completed",
            conversation_id=conversation_id,
            outcome=outcome,
            duration_ms=duration_ms,
            **kwargs
        )

    def debug(self, message: str, **kwargs):
        """Debug level log."""
        self._log("debug", "debug", message=message, **kwargs)

    def info(self, message: str, **kwargs):
        """Info level log."""
        self._log("info", "info", message=message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Warning level log."""
        self._log("warning", "warning", message=message, **kwargs)

    def error(self, message: str, **kwargs):
        """Error level log."""
        self._log("error", "error", message=message, **kwargs)


# Global logger instance
trace_logger = TraceLogger()
