"""Service settings loaded from the environment (prefix STREAMCHAT_)."""

from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Streaming engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="STREAMCHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Upstream completion service
    openai_api_key: str = Field(default="", description="API key for the upstream completion service")
    openai_base_url: Optional[str] = Field(default=None, description="Override for compatible endpoints")
    model: str = "gpt-4.1"
    image_model: str = "gpt-image-1"
    reasoning_effort: Literal["minimal", "low", "medium", "high"] = "medium"
    supports_reasoning: bool = Field(
        default=False,
        description="Send a reasoning configuration (only for reasoning-capable models)",
    )
    parallel_tool_calls: bool = False

    # Hosted tools
    enable_code_interpreter: bool = True
    enable_image_generation: bool = False
    enable_web_search: bool = False
    code_interpreter_container_id: Optional[str] = Field(
        default=None,
        description="Reuse an existing execution container; empty lets the upstream create one",
    )

    # Turn limits
    max_continuations: int = Field(default=8, ge=1, description="Continuation streams allowed per turn")
    event_queue_size: int = Field(default=256, ge=1)
    drain_timeout_seconds: float = Field(default=5.0, gt=0)
    tool_timeout_seconds: float = Field(default=60.0, gt=0)

    # Storage
    storage_dir: str = "./data/files"
    public_base_url: str = "http://localhost:8000"

    system_prompt: str = (
        "You are a helpful assistant. Use the available tools when they help answer the user."
    )

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"
    service_name: str = "streamchat"

    @field_validator("public_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    def hosted_tools(self) -> List[Dict[str, Any]]:
        """Upstream-hosted tool configuration for every request"""

        tools: List[Dict[str, Any]] = []
        if self.enable_code_interpreter:
            container: Any = self.code_interpreter_container_id or {"type": "auto"}
            tools.append({"type": "code_interpreter", "container": container})
        if self.enable_image_generation:
            tools.append({"type": "image_generation"})
        if self.enable_web_search:
            tools.append({"type": "web_search_preview"})
        return tools


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
