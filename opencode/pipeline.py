"""Tool invocation pipeline: parse, look up, validate, gate, execute, envelope.

Argument and tool failures never escape ``ToolExecutor``: they are turned
into ``{"tool_name", "error"}`` envelopes so the model sees its own mistakes
on the next round.
"""

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable

import jsonschema
from jsonschema.exceptions import SchemaError

from .errors import AgentError, SchemaCompileError, ToolNotFoundError
from .messages import ChatCompletionResponse, Message, ToolCall, ValidatedToolCall
from .registry import ToolRegistry
from .tools import InvalidArgumentsError, Tool, ToolError

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "Execution denied by user"
DEFAULT_GATED_TOOLS = frozenset({"FileWriteTool", "ShellCommandTool", "GitTool"})


# --- Validation steps ---


def parse_arguments(call: ToolCall) -> Any:
    """Stage one of the two-stage parse: raw string -> generic JSON value."""
    raw = call.function.arguments
    if not isinstance(raw, str):
        raise InvalidArgumentsError(
            call.function.name,
            f"Expected arguments as a JSON string, got {type(raw).__name__}",
        )
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidArgumentsError(
            call.function.name, f"Failed to parse JSON arguments: {e}. Raw: '{raw}'"
        ) from e


def lookup_tool(name: str, registry: ToolRegistry) -> Tool:
    tool = registry.get(name)
    if tool is None:
        raise ToolNotFoundError(name)
    return tool


def compile_schema(tool: Tool):
    """Return a validator for the tool's parameter schema."""
    schema = tool.parameters_schema()
    try:
        cls = jsonschema.validators.validator_for(schema)
        cls.check_schema(schema)
    except SchemaError as e:
        raise SchemaCompileError(tool.name, e.message) from e
    return cls(schema)


def _describe(error: jsonschema.ValidationError) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    return f"/{path}: {error.message}" if path else error.message


def check_arguments(tool_name: str, validator, arguments: Any) -> None:
    errors = sorted(
        validator.iter_errors(arguments),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    if errors:
        details = "; ".join(_describe(e) for e in errors)
        raise InvalidArgumentsError(tool_name, f"Schema validation failed: {details}")


def validate_tool_call(call: ToolCall, registry: ToolRegistry) -> ValidatedToolCall:
    """Run every validation step, short-circuiting on the first failure.

    Raises InvalidArgumentsError, ToolNotFoundError or SchemaCompileError.
    """
    name = call.function.name
    arguments = parse_arguments(call)
    tool = lookup_tool(name, registry)
    validator = compile_schema(tool)
    check_arguments(name, validator, arguments)
    return ValidatedToolCall(id=call.id, name=name, arguments=arguments)


def validate_all(
    response: ChatCompletionResponse, registry: ToolRegistry
) -> list[ValidatedToolCall]:
    """Validate every tool call of a non-streaming response.

    Only responses that finished with ``tool_calls`` are considered; anything
    else yields an empty list.
    """
    choice = response.first
    if choice is None or choice.finish_reason != "tool_calls":
        return []
    return [validate_tool_call(tc, registry) for tc in choice.message.tool_calls or ()]


# --- Security policy ---


class PolicyMode(str, Enum):
    ALLOW_ALL = "allow_all"
    CONFIRM_WRITES = "confirm_writes"


@dataclass(frozen=True)
class SecurityPolicy:
    mode: PolicyMode = PolicyMode.CONFIRM_WRITES
    gated_tools: frozenset = DEFAULT_GATED_TOOLS

    @classmethod
    def allow_all(cls) -> "SecurityPolicy":
        return cls(mode=PolicyMode.ALLOW_ALL)

    @classmethod
    def confirm_writes(cls, extra: Iterable[str] = ()) -> "SecurityPolicy":
        return cls(
            mode=PolicyMode.CONFIRM_WRITES,
            gated_tools=DEFAULT_GATED_TOOLS | frozenset(extra),
        )

    def requires_confirmation(self, tool_name: str) -> bool:
        return self.mode == PolicyMode.CONFIRM_WRITES and tool_name in self.gated_tools


# --- Execution ---


def format_tool_result(tool_name: str, result: Any = None, error: str | None = None) -> dict:
    if error is not None:
        return {"tool_name": tool_name, "error": error}
    return {"tool_name": tool_name, "result": result}


@dataclass
class ToolOutcome:
    call_id: str
    tool_name: str
    envelope: dict
    exception: Exception | None = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return "error" not in self.envelope

    def to_message(self) -> Message:
        return Message.tool(
            self.call_id, json.dumps(self.envelope, ensure_ascii=False)
        )


class ToolExecutor:
    """Validate and run tool calls against a frozen registry under a policy."""

    def __init__(
        self,
        registry: ToolRegistry,
        policy: SecurityPolicy | None = None,
        confirm: Callable[[str], bool] | None = None,
    ):
        self.registry = registry
        self.policy = policy or SecurityPolicy()
        self.confirm = confirm

    def _approved(self, validated: ValidatedToolCall) -> bool:
        if not self.policy.requires_confirmation(validated.name):
            return True
        if self.confirm is None:
            logger.warning(
                "no confirmation handler; denying gated tool %s", validated.name
            )
            return False
        args = json.dumps(validated.arguments, ensure_ascii=False)
        return self.confirm(f"Allow {validated.name} with args: {args}?")

    def run(self, call: ToolCall) -> ToolOutcome:
        name = call.function.name
        start = time.monotonic()

        def done(envelope, exc=None):
            return ToolOutcome(
                call_id=call.id,
                tool_name=name,
                envelope=envelope,
                exception=exc,
                elapsed=time.monotonic() - start,
            )

        try:
            validated = validate_tool_call(call, self.registry)
        except (ToolError, AgentError) as e:
            if isinstance(e, SchemaCompileError):
                logger.error("%s", e)
            else:
                logger.info("tool call %s rejected: %s", name, e)
            return done(format_tool_result(name, error=str(e)), e)

        if not self._approved(validated):
            logger.info("execution of %s denied", name)
            return done(format_tool_result(name, error=DENIED_MESSAGE))

        tool = self.registry.get(name)
        logger.debug("executing %s with %r", name, validated.arguments)
        try:
            result = tool.execute(validated.arguments)
        except ToolError as e:
            logger.info("tool %s failed: %s", name, e)
            return done(format_tool_result(name, error=str(e)), e)
        except Exception as e:
            logger.warning("tool %s raised %s", name, type(e).__name__, exc_info=True)
            err = ToolError(str(e) or type(e).__name__)
            return done(format_tool_result(name, error=str(err)), err)
        return done(format_tool_result(name, result=result))

    def execute(self, call: ToolCall) -> dict:
        return self.run(call).envelope
