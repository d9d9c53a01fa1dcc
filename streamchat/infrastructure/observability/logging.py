import structlog
import logging
import sys
from typing import Dict, Any, Optional
import os

# tool payloads can be whole documents; keep log lines readable
MAX_FIELD_CHARS = 2000

_NOISY_LOGGERS = ("httpx", "httpcore", "openai")


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "streamchat"
) -> None:
    """Configure structlog on top of stdlib logging for the whole process"""

    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            truncate_long_fields,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development")
    )


def truncate_long_fields(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Cut string fields (tool arguments, outputs, upstream messages) to MAX_FIELD_CHARS"""

    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_FIELD_CHARS:
            event_dict[key] = f"{value[:MAX_FIELD_CHARS]}... ({len(value)} chars)"
    return event_dict


class TurnLogger:
    """Structured records for turn lifecycle, tool calls and orchestrator hops"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn_event(
        self,
        event_type: str,
        thread_id: str,
        message_id: str,
        data: Optional[Dict[str, Any]] = None
    ):
        self.logger.info(
            "turn_event",
            event_type=event_type,
            thread_id=thread_id,
            message_id=message_id,
            **(data or {})
        )

    def log_tool_execution(
        self,
        tool_name: str,
        thread_id: str,
        call_id: str,
        arguments: str,
        output: Optional[str] = None,
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        log = self.logger.info if success else self.logger.warning
        log(
            "tool_execution",
            tool_name=tool_name,
            thread_id=thread_id,
            call_id=call_id,
            arguments=arguments,
            output=output,
            duration_ms=round(duration_ms, 1) if duration_ms is not None else None,
            success=success,
            error=error
        )

    def log_transition(self, thread_id: str, from_node: str, to_node: str, **details):
        """One hop of the continuation state machine"""
        self.logger.debug(
            "turn_transition",
            thread_id=thread_id,
            from_node=from_node,
            to_node=to_node,
            **details
        )


turn_logger = TurnLogger("streamchat.turn")
