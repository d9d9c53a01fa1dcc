from typing import Optional
import re


_STALE_CODES = {"container_expired", "container_not_found"}
_STALE_MESSAGE = re.compile(r"container\b.*\b(expired|not found|no longer (exists|available))", re.IGNORECASE)


class StreamChatError(Exception):
    """Base error for the streaming engine"""


class ToolRegistrationError(StreamChatError):
    """Raised when a built-in tool name is registered twice"""


class ToolExecutionError(StreamChatError):
    """Raised by tool handlers; always converted into a structured tool output"""


class AnnotationResolutionError(StreamChatError):
    """Raised when a referenced artifact cannot be downloaded or stored"""


class TurnCancelled(StreamChatError):
    """Raised when the turn's cancellation token fires"""


class UpstreamStreamError(StreamChatError):
    """Transport or protocol error reported by the upstream completion service"""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def is_stale_resource(self) -> bool:
        """True when the error points at an expired execution container"""
        if self.code and self.code in _STALE_CODES:
            return True
        return bool(_STALE_MESSAGE.search(self.message or ""))
