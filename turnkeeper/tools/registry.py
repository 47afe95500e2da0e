"""Tool registry: one descriptor table rendered for two tool-calling protocols."""

import json
import re
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, create_model, model_validator

from turnkeeper.exceptions import ToolNotFoundError
from turnkeeper.llm import ToolProtocol
from turnkeeper.logging import get_logger
from turnkeeper.tools.loop_detector import LoopDetector

log = get_logger(__name__)

# Result text starting with one of these words (or containing "rejected:") is a failure.
_FAILURE_PREFIX_RE = re.compile(r"^(Unknown|Failed|Error|rejected|denied)", re.IGNORECASE)

_JSON_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "array": list,
    "object": dict,
}

ToolExecutor = Callable[[dict[str, Any]], Awaitable[str]]
ResultKind = Literal["success", "failure", "unknown_tool", "bad_arguments", "loop_detected"]


class ToolCategory(str, Enum):
    """Visibility category of a tool."""

    ALWAYS = "always"
    CONDITIONAL = "conditional"


class ToolResult(BaseModel):
    """Tagged result of one tool dispatch."""

    ok: bool = True
    text: str = ""
    kind: ResultKind = "success"

    @model_validator(mode="after")
    def _non_success_is_not_ok(self) -> "ToolResult":
        if self.kind != "success":
            self.ok = False
        return self

    @classmethod
    def from_text(cls, text: str) -> "ToolResult":
        """Classify an executor's plain-text result."""
        failed = bool(_FAILURE_PREFIX_RE.match(text)) or "rejected:" in text
        return cls(ok=not failed, text=text, kind="failure" if failed else "success")

    @classmethod
    def failure(cls, text: str, kind: ResultKind = "failure") -> "ToolResult":
        return cls(ok=False, text=text, kind=kind)


@dataclass(frozen=True)
class ToolParameter:
    """One named parameter of a tool."""

    name: str
    type: str = "string"
    description: str = ""
    required: bool = True
    enum: tuple[str, ...] | None = None

    def json_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type}
        if self.description:
            schema["description"] = self.description
        if self.enum:
            schema["enum"] = list(self.enum)
        return schema

    def annotation(self) -> Any:
        if self.enum:
            return Literal[tuple(self.enum)]
        return _JSON_TYPES.get(self.type, Any)


@dataclass
class ToolDescriptor:
    """Protocol-agnostic definition of a callable capability.

    The executor receives parsed arguments and returns a string. It must not
    raise: failures are reported in the returned text.
    """

    name: str
    description: str
    executor: ToolExecutor
    parameters: list[ToolParameter] = field(default_factory=list)
    category: ToolCategory = ToolCategory.ALWAYS
    _args_model: type[BaseModel] | None = field(default=None, init=False, repr=False, compare=False)

    def json_schema(self) -> dict[str, Any]:
        """JSON Schema for the function-calling protocol."""
        return {
            "type": "object",
            "required": [param.name for param in self.parameters if param.required],
            "properties": {param.name: param.json_schema() for param in self.parameters},
        }

    def args_model(self) -> type[BaseModel]:
        """Typed pydantic model for the typed-schema protocol.

        Fields are positional placeholders aliased to the parameter names, so
        names pydantic reserves (leading underscores, ``model_*``) still work.
        """
        if self._args_model is None:
            fields: dict[str, Any] = {}
            for index, param in enumerate(self.parameters):
                annotation = param.annotation()
                info = dict(alias=param.name, title=param.name, description=param.description or None)
                if param.required:
                    fields[f"arg_{index}"] = (annotation, Field(..., **info))
                else:
                    fields[f"arg_{index}"] = (Optional[annotation], Field(None, **info))
            self._args_model = create_model(
                f"{self.name}_arguments",
                __config__=ConfigDict(extra="allow"),
                **fields,
            )
        return self._args_model

    def parse_arguments(self, raw_arguments: str, typed: bool = False) -> dict[str, Any]:
        """Parse raw argument text into a JSON object.

        With ``typed`` the object is also validated and coerced against
        ``args_model()``; otherwise checking values is left to the executor.

        Raises:
            ValueError (including JSONDecodeError and pydantic ValidationError)
        """
        parsed = json.loads(raw_arguments)
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
        if not typed:
            return parsed
        coerced = self.args_model().model_validate(parsed).model_dump(by_alias=True)
        return {key: coerced.get(key, value) for key, value in parsed.items()}


@dataclass
class WrappedTool:
    """A tool pre-wrapped for the typed-schema protocol.

    Calling it runs loop detection, typed validation and the executor, and
    returns a ToolResult whose ``ok`` flag becomes the protocol error flag.
    """

    name: str
    description: str
    args_model: type[BaseModel]
    runner: Callable[[str], Awaitable[ToolResult]] = field(repr=False)

    def definition(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.args_model.model_json_schema(),
        }

    async def __call__(self, raw_arguments: str) -> ToolResult:
        return await self.runner(raw_arguments)


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, loop_detector: LoopDetector | None = None):
        self._tools: dict[str, ToolDescriptor] = {}
        self.loop_detector = loop_detector or LoopDetector()

    def register(self, descriptor: ToolDescriptor) -> None:
        """Register a tool. Registering an existing name replaces it."""
        if not descriptor.name:
            raise ValueError("Tool must have a name")
        names = [param.name for param in descriptor.parameters]
        if not all(names) or len(set(names)) != len(names):
            raise ValueError(f"Tool {descriptor.name} has empty or duplicate parameter names")
        try:
            descriptor.args_model()
        except Exception as e:
            raise ValueError(f"Tool {descriptor.name} has an invalid parameter schema: {e}") from e
        if self.has_tool(descriptor.name):
            log.debug("Replacing registered tool", tool=descriptor.name)
        else:
            log.debug("Registering tool", tool=descriptor.name)
        self._tools[descriptor.name] = descriptor

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> ToolDescriptor:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def descriptors(self, include_conditional: bool = True) -> list[ToolDescriptor]:
        """Registered descriptors in registration order, optionally without conditional ones."""
        return [
            descriptor
            for descriptor in self._tools.values()
            if include_conditional or descriptor.category == ToolCategory.ALWAYS
        ]

    def list_tools(self, include_conditional: bool = True) -> list[str]:
        return [descriptor.name for descriptor in self.descriptors(include_conditional)]

    def render(
        self,
        protocol: ToolProtocol,
        *,
        include_conditional: bool = True,
        loop_detector: LoopDetector | None = None,
        conversation_key: Hashable | None = None,
    ) -> list[Any]:
        """Render the table for the given tool-calling protocol."""
        if protocol is ToolProtocol.TYPED_SCHEMA:
            return self.render_protocol_a(
                include_conditional=include_conditional,
                loop_detector=loop_detector,
                conversation_key=conversation_key,
            )
        if protocol is ToolProtocol.JSON_SCHEMA:
            return self.render_protocol_b(include_conditional=include_conditional)
        raise ValueError(f"Unsupported tool protocol: {protocol!r}")

    def render_protocol_a(
        self,
        *,
        include_conditional: bool = True,
        loop_detector: LoopDetector | None = None,
        conversation_key: Hashable | None = None,
    ) -> list[WrappedTool]:
        """Wrapped executors with typed schemas for the typed-schema protocol."""
        detector = loop_detector or self.loop_detector

        def make_runner(descriptor: ToolDescriptor) -> Callable[[str], Awaitable[ToolResult]]:
            async def run(raw_arguments: str) -> ToolResult:
                return await self._run(descriptor, raw_arguments, detector, conversation_key, typed=True)
            return run

        return [
            WrappedTool(
                name=descriptor.name,
                description=descriptor.description,
                args_model=descriptor.args_model(),
                runner=make_runner(descriptor),
            )
            for descriptor in self.descriptors(include_conditional)
        ]

    def render_protocol_b(self, *, include_conditional: bool = True) -> list[dict[str, Any]]:
        """JSON-Schema function-calling descriptors; execute through dispatch()."""
        return [
            {
                "type": "function",
                "function": {
                    "name": descriptor.name,
                    "description": descriptor.description,
                    "parameters": descriptor.json_schema(),
                },
            }
            for descriptor in self.descriptors(include_conditional)
        ]

    async def execute(
        self,
        name: str,
        raw_arguments: str,
        *,
        loop_detector: LoopDetector | None = None,
        conversation_key: Hashable | None = None,
    ) -> ToolResult:
        """Run a tool by name and return the tagged result. Never raises."""
        try:
            descriptor = self.get(name)
        except ToolNotFoundError:
            log.warning("Unknown tool requested", tool=name)
            return ToolResult.failure(f"Unknown tool: {name}", kind="unknown_tool")
        return await self._run(descriptor, raw_arguments, loop_detector or self.loop_detector, conversation_key)

    async def dispatch(
        self,
        name: str,
        raw_arguments: str,
        *,
        loop_detector: LoopDetector | None = None,
        conversation_key: Hashable | None = None,
    ) -> str:
        """Run a tool by name and return its text result. Never raises."""
        result = await self.execute(
            name,
            raw_arguments,
            loop_detector=loop_detector,
            conversation_key=conversation_key,
        )
        return result.text

    async def _run(
        self,
        descriptor: ToolDescriptor,
        raw_arguments: str,
        detector: LoopDetector,
        conversation_key: Hashable | None,
        typed: bool = False,
    ) -> ToolResult:
        name = descriptor.name
        loop_message = detector.check(name, raw_arguments, key=conversation_key)
        if loop_message:
            return ToolResult.failure(loop_message, kind="loop_detected")

        try:
            arguments = descriptor.parse_arguments(raw_arguments, typed=typed)
        except (ValueError, TypeError) as e:
            log.warning("Bad tool call arguments", tool=name, arguments=(raw_arguments or "")[:200])
            return ToolResult.failure(f"Failed to parse tool arguments: {e}", kind="bad_arguments")

        log.info("Executing tool", tool=name, args=json.dumps(arguments)[:100])
        try:
            text = await descriptor.executor(arguments)
        except Exception as e:
            log.error("Tool executor raised", tool=name, error=str(e))
            return ToolResult.failure(f"Error: tool {name} failed: {e}")

        result = ToolResult.from_text(str(text))
        log.info("Tool executed", tool=name, success=result.ok)
        return result


# Global registry
_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get the global tool registry."""
    global _registry
    if _registry is None:
        _registry = ToolRegistry()
    return _registry


def set_tool_registry(registry: ToolRegistry) -> None:
    """Set the global tool registry."""
    global _registry
    _registry = registry
