from typing import Dict, List, Any, Optional, Callable, Awaitable
import asyncio
import json
import time

import structlog

from streamchat.domain.errors import ToolRegistrationError, TurnCancelled
from streamchat.domain.models.conversation_state import ToolCallRecord, ToolResult, TurnContext
from streamchat.domain.tool.tool_executor import DynamicToolDescriptor, DynamicToolExecutor
from streamchat.domain.tool.tool_validator import normalize_schema, ToolParameterValidator
from streamchat.infrastructure.observability.logging import turn_logger

logger = structlog.get_logger(__name__)

ToolHandler = Callable[[Dict[str, Any], TurnContext], Awaitable[Any]]


class RegisteredTool:
    """A named handler plus its strict-mode parameter schema"""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: Dict[str, Any],
        handler: ToolHandler,
        builtin: bool = False,
        descriptor: Optional[DynamicToolDescriptor] = None
    ):
        self.name = name
        self.description = description
        self.parameters = normalize_schema(parameters)
        self.handler = handler
        self.builtin = builtin
        self.descriptor = descriptor

    def definition(self) -> Dict[str, Any]:
        """Function definition in the upstream strict function-calling format"""
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
            "strict": True,
        }


def _error_output(message: str) -> str:
    return json.dumps({"error": message})


def _serialize_output(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class ToolRegistry:
    """Registry for managing available tools

    One base registry per process holds the built-ins; every request works on a
    `fork()` so that dynamic tools and their headers never leak across requests.
    """

    def __init__(
        self,
        executor: Optional[DynamicToolExecutor] = None,
        timeout_seconds: float = 60.0
    ):
        self.tools: Dict[str, RegisteredTool] = {}
        self.executor = executor or DynamicToolExecutor()
        self.timeout_seconds = timeout_seconds
        self.validator = ToolParameterValidator()

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
        builtin: bool = True
    ) -> RegisteredTool:
        """Register a tool handler; built-in names can only be registered once"""

        existing = self.tools.get(name)
        if existing is not None and (existing.builtin or builtin):
            raise ToolRegistrationError(f"Tool {name} is already registered")

        tool = RegisteredTool(
            name=name,
            description=description,
            parameters=parameters or {"type": "object", "properties": {}},
            handler=handler,
            builtin=builtin
        )
        self.tools[name] = tool
        logger.debug("Registered tool", tool_name=name, builtin=builtin)
        return tool

    def register_dynamic(self, descriptor: DynamicToolDescriptor) -> RegisteredTool:
        """Register (or replace) an HTTP-backed tool described by `descriptor`"""

        async def _handler(arguments: Dict[str, Any], context: TurnContext) -> Any:
            return await self.executor.execute(descriptor, arguments, context)

        tool = self.register(
            descriptor.name,
            _handler,
            description=descriptor.description,
            parameters=descriptor.parameters,
            builtin=False
        )
        tool.descriptor = descriptor
        return tool

    def fork(self) -> "ToolRegistry":
        """Request-scoped copy sharing the built-in handlers"""

        forked = ToolRegistry(executor=self.executor, timeout_seconds=self.timeout_seconds)
        forked.tools = dict(self.tools)
        return forked

    def get_tool(self, name: str) -> Optional[RegisteredTool]:
        return self.tools.get(name)

    def get_tool_definitions(self) -> List[Dict[str, Any]]:
        return [tool.definition() for tool in self.tools.values()]

    async def execute(self, call: ToolCallRecord, context: TurnContext) -> ToolResult:
        """Run one tool call; every failure becomes a structured error output

        Only cancellation of the turn propagates.
        """

        tool = self.tools.get(call.name)
        if tool is None:
            logger.warning("Tool not found", tool_name=call.name, call_id=call.call_id)
            return ToolResult(call_id=call.call_id, output=_error_output(f"Function {call.name} not found"), success=False)

        try:
            arguments = json.loads(call.arguments) if call.arguments.strip() else {}
        except json.JSONDecodeError as e:
            return ToolResult(
                call_id=call.call_id,
                output=_error_output(f"Invalid function arguments: {e}"),
                success=False
            )
        if not isinstance(arguments, dict):
            return ToolResult(
                call_id=call.call_id,
                output=_error_output("Invalid function arguments: expected a JSON object"),
                success=False
            )

        errors = self.validator.validate_arguments(tool.parameters, arguments)
        if errors:
            return ToolResult(
                call_id=call.call_id,
                output=_error_output(f"Invalid function arguments: {'; '.join(errors)}"),
                success=False
            )

        start_time = time.perf_counter()
        error: Optional[str] = None
        try:
            result = await context.cancel_token.run(
                asyncio.wait_for(tool.handler(arguments, context), timeout=self.timeout_seconds)
            )
            output = _serialize_output(result)
        except TurnCancelled:
            raise
        except asyncio.TimeoutError:
            error = "Tool execution timeout"
            output = _error_output(error)
        except Exception as e:
            error = f"Function execution failed: {e}"
            output = _error_output(error)
            logger.error("Tool execution failed", tool_name=call.name, call_id=call.call_id, error=str(e))

        turn_logger.log_tool_execution(
            tool_name=call.name,
            thread_id=context.thread_id,
            call_id=call.call_id,
            arguments=call.arguments,
            output=output if error is None else None,
            duration_ms=(time.perf_counter() - start_time) * 1000,
            success=error is None,
            error=error
        )

        return ToolResult(call_id=call.call_id, output=output, success=error is None)
