"""Tool Registry for the gateway.

Tools are actions a provider may ask for with a structured tool call.
Each tool has a JSON Schema for its arguments and a sync or async handler.
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Optional, Union

from shared.errors import ToolExecutionFailed
from shared.logging import get_logger
from shared.models import ToolDefinition, ToolResult, ToolResultStatus
from shared.schema import build_parameters_schema, validate_schema

logger = get_logger(__name__)

ToolHandler = Callable[..., Union[Any, Awaitable[Any]]]


class ToolRegistry:
    """
    Registry and executor for gateway tools.

    Responsibilities:
    - Register tools with their handlers
    - Validate arguments against each tool's input schema
    - Execute tools, converting every failure into a ToolResult
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def __contains__(self, tool_name: str) -> bool:
        return tool_name in self._tools

    def register(self, tool: ToolDefinition, handler: ToolHandler) -> None:
        """
        Register a tool.

        Args:
            tool: Tool definition
            handler: Called with the validated arguments as keyword arguments

        Raises:
            ValueError: If tool name is already registered
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")

        self._tools[tool.name] = tool
        self._handlers[tool.name] = handler

        logger.info("Tool registered", tool=tool.name)

    def register_function(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        parameters: Optional[list[dict[str, Any]]] = None,
        tags: Optional[list[str]] = None
    ) -> ToolDefinition:
        """Register a handler from short parameter declarations."""
        tool = ToolDefinition(
            name=name,
            description=description,
            input_schema=build_parameters_schema(parameters or []),
            tags=list(tags or []),
        )
        self.register(tool, handler)
        return tool

    def unregister(self, tool_name: str) -> bool:
        """
        Unregister a tool.

        Returns:
            True if tool was removed, False if not found
        """
        if tool_name in self._tools:
            del self._tools[tool_name]
            del self._handlers[tool_name]
            logger.info("Tool unregistered", tool=tool_name)
            return True
        return False

    def get(self, tool_name: str) -> Optional[ToolDefinition]:
        return self._tools.get(tool_name)

    def list_tools(self, tag: Optional[str] = None) -> list[ToolDefinition]:
        tools = list(self._tools.values())
        if tag:
            tools = [t for t in tools if tag in t.tags]
        return tools

    def validate_input(
        self,
        tool_name: str,
        parameters: dict[str, Any]
    ) -> tuple[bool, list[str]]:
        """
        Validate input parameters against tool's input schema.

        Returns:
            Tuple of (is_valid, list of error messages)
        """
        tool = self.get(tool_name)
        if not tool:
            return False, [f"Tool '{tool_name}' not found"]

        if not tool.input_schema:
            return True, []

        return validate_schema(parameters, tool.input_schema)

    def get_tools_for_llm(self) -> list[dict[str, Any]]:
        """Tool definitions in OpenAI function calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema or {
                        "type": "object",
                        "properties": {},
                        "required": []
                    }
                }
            }
            for tool in self._tools.values()
        ]

    async def invoke(self, tool_name: str, args: Optional[dict[str, Any]] = None) -> ToolResult:
        """
        Execute a tool. Never raises.

        Args:
            tool_name: Registered tool name
            args: Tool arguments

        Returns:
            NOT_FOUND, VALIDATION_ERROR, ERROR or SUCCESS result
        """
        start_time = time.time()
        parameters = args or {}

        if tool_name not in self._tools:
            return ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.NOT_FOUND,
                error=f"Tool '{tool_name}' not found",
                error_code="TOOL_NOT_FOUND"
            )

        is_valid, errors = self.validate_input(tool_name, parameters)
        if not is_valid:
            return ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.VALIDATION_ERROR,
                error=f"Validation failed: {'; '.join(errors)}",
                error_code="VALIDATION_ERROR"
            )

        try:
            data = self._handlers[tool_name](**parameters)
            if inspect.isawaitable(data):
                data = await data
            result = ToolResult(tool_name=tool_name, status=ToolResultStatus.SUCCESS, data=data)
        except Exception as e:
            failure = ToolExecutionFailed(tool_name, str(e))
            logger.error("Tool execution failed", tool=tool_name, error=str(e), exc_info=True)
            result = ToolResult(
                tool_name=tool_name,
                status=ToolResultStatus.ERROR,
                error=failure.message,
                error_code=failure.code
            )

        result.execution_time_ms = (time.time() - start_time) * 1000
        logger.info(
            "Tool executed",
            tool=tool_name,
            status=result.status.value,
            execution_time_ms=result.execution_time_ms
        )
        return result
