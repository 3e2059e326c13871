import argparse
import asyncio
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata
from pathlib import Path

from . import fmt
from .client import ApiClient
from .commands import CommandPlan, plan_from_args
from .config import global_config_dir, load_config, require_api_key
from .context import ConversationWindow
from .errors import AgentError, TokenBudgetError
from .messages import ChatCompletionRequest, Message
from .pipeline import SecurityPolicy, ToolExecutor, ToolOutcome
from .registry import ToolRegistry, build_registry
from .streaming import accumulate_stream
from .tools import ResourceNotFoundError

logger = logging.getLogger(__name__)

MAX_ITERATIONS = 5
DEFAULT_COMPLETION_PHRASES = ("task complete", "task finished")
MAX_ARG_LOG = 1000
MAX_PREVIEW = 200

SYSTEM_PROMPT_TEMPLATE = (
    "You are an AI assistant tasked with completing the following objective: "
    "'{task}'. Break down the task into steps and use the available tools to "
    "execute those steps. Respond with the next single tool call required, or "
    "indicate if the task is complete."
)

STALLED_MESSAGE = "Agentic task stalled: AI provided no action or completion signal."
EMPTY_MESSAGES = "Cannot send empty message list to API."


class AgentState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STALLED = "stalled"
    FAILED = "failed"


EXIT_CODES = {
    AgentState.COMPLETED: 0,
    AgentState.FAILED: 1,
    AgentState.STALLED: 2,
}


@dataclass
class AgentOutcome:
    state: AgentState
    iterations: int
    message: str = ""
    final_text: str | None = None
    tool_calls: int = 0

    @property
    def exit_code(self) -> int:
        return EXIT_CODES.get(self.state, 1)


@dataclass
class AgentSession:
    """Everything one conversation needs; each session owns its window."""

    client: ApiClient
    window: ConversationWindow
    registry: ToolRegistry
    executor: ToolExecutor
    model: str
    stream: bool = False
    verbose: bool = True
    completion_phrases: tuple[str, ...] = DEFAULT_COMPLETION_PHRASES
    use_tools: bool = True


@dataclass
class RoundResult:
    message: Message
    finish_reason: str | None
    outcomes: list[ToolOutcome] = field(default_factory=list)

    @property
    def text(self) -> str:
        return (self.message.content or "").strip()

    @property
    def failures(self) -> list[ToolOutcome]:
        return [o for o in self.outcomes if not o.ok]


def contains_completion_phrase(text: str, phrases) -> bool:
    """Case-insensitive substring match of any completion phrase.

    This is a heuristic: a model saying "the task is not complete" matches
    nothing, but "task complete?" does.
    """
    lowered = text.lower()
    return any(p.lower() in lowered for p in phrases if p)


# --- One request/response/tool round ---


async def _send(
    session: AgentSession, messages: list[Message]
) -> tuple[Message, str | None]:
    tools = session.registry.definitions() if session.use_tools else []
    request = ChatCompletionRequest(
        model=session.model,
        messages=messages,
        tools=tools or None,
        tool_choice="auto" if tools else None,
    )
    start = time.monotonic()
    if session.stream:
        started = False

        def on_content(fragment: str) -> None:
            nonlocal started
            if not started:
                started = True
                if session.verbose:
                    fmt.stream_start()
            fmt.stream_text(fragment)

        try:
            result = await accumulate_stream(
                session.client.chat_completion_stream(request), on_content
            )
        finally:
            if started:
                fmt.stream_end()
        message, finish_reason = result.message, result.finish_reason
    else:
        if session.verbose:
            with fmt.llm_spinner():
                response = await session.client.chat_completion(request)
        else:
            response = await session.client.chat_completion(request)
        choice = response.first
        if choice is None:
            raise AgentError(
                f"No choices received from API for model {session.model}"
            )
        message, finish_reason = choice.message, choice.finish_reason
    if session.verbose:
        fmt.llm_timing(time.monotonic() - start, finish_reason)
    return message, finish_reason


def _report_outcome(outcome: ToolOutcome) -> None:
    if outcome.ok:
        preview = json.dumps(outcome.envelope["result"], ensure_ascii=False)
        if len(preview) > MAX_PREVIEW:
            preview = preview[:MAX_PREVIEW] + "..."
        fmt.tool_result(outcome.tool_name, outcome.elapsed, preview)
    else:
        fmt.tool_error(outcome.tool_name, outcome.envelope["error"])
    if isinstance(outcome.exception, ResourceNotFoundError):
        fmt.info("hint: FileSearchTool can locate files by partial name")


async def run_round(session: AgentSession) -> RoundResult:
    """Render the window, call the endpoint, run any requested tools.

    Tool calls run sequentially and each reply is appended right after the
    assistant message, in request order. Raises AgentError for empty
    windows, budget exhaustion and transport/decode failures.
    """
    messages = session.window.construct_messages()
    if not messages:
        raise AgentError(EMPTY_MESSAGES)

    message, finish_reason = await _send(session, messages)
    result = RoundResult(message=message, finish_reason=finish_reason)
    if not message.tool_calls:
        if result.text:
            session.window.add_message(message)
        return result

    session.window.add_message(message)
    for call in message.tool_calls:
        if session.verbose:
            args_text = str(call.function.arguments)[:MAX_ARG_LOG]
            fmt.tool_call(call.function.name, args_text)
        outcome = session.executor.run(call)
        # Every call gets a reply even if an earlier call in the batch failed.
        session.window.add_message(outcome.to_message())
        result.outcomes.append(outcome)
        if session.verbose:
            _report_outcome(outcome)
    return result


def _failure_message(failures: list[ToolOutcome]) -> str:
    parts = [f"{o.tool_name}: {o.envelope['error']}" for o in failures]
    return "Tool execution failed: " + "; ".join(parts)


# --- Agent loop ---


async def run_agent_loop(
    task: str,
    session: AgentSession,
    max_iterations: int = MAX_ITERATIONS,
) -> AgentOutcome:
    """Drive request/tool rounds until completion, stall, failure or the cap."""
    window = session.window
    window.clear_history()
    window.clear_snippets()

    iteration = 0
    try:
        window.add_message(Message.system(SYSTEM_PROMPT_TEMPLATE.format(task=task)))
    except TokenBudgetError as e:
        return AgentOutcome(AgentState.FAILED, iteration, str(e))

    while iteration < max_iterations:
        iteration += 1
        logger.info("iteration %d/%d", iteration, max_iterations)
        if session.verbose:
            fmt.iteration_header(iteration, max_iterations, window.total_token_count)

        try:
            result = await run_round(session)
        except AgentError as e:
            logger.info("iteration %d failed: %s", iteration, e)
            return AgentOutcome(AgentState.FAILED, iteration, str(e))

        if not result.message.tool_calls:
            if not result.text:
                return AgentOutcome(AgentState.STALLED, iteration, STALLED_MESSAGE)
            if session.verbose and not session.stream:
                fmt.assistant_text(result.text)
            if contains_completion_phrase(result.text, session.completion_phrases):
                return AgentOutcome(
                    AgentState.COMPLETED,
                    iteration,
                    "Agentic task completed.",
                    final_text=result.text,
                )
            continue

        if result.failures:
            return AgentOutcome(
                AgentState.FAILED,
                iteration,
                _failure_message(result.failures),
                final_text=result.text or None,
            )

    return AgentOutcome(
        AgentState.STALLED,
        iteration,
        f"Agentic task stopped after {max_iterations} iterations.",
    )


async def run_single_turn(prompt: str, session: AgentSession) -> AgentOutcome:
    """One request and at most one tool batch, with no continuation."""
    try:
        session.window.add_message(Message.user(prompt))
        result = await run_round(session)
    except AgentError as e:
        return AgentOutcome(AgentState.FAILED, 1, str(e))

    ran = len(result.outcomes)
    if result.failures:
        return AgentOutcome(
            AgentState.FAILED,
            1,
            _failure_message(result.failures),
            result.text or None,
            tool_calls=ran,
        )
    if not result.message.tool_calls and not result.text:
        return AgentOutcome(
            AgentState.STALLED, 1, "Assistant response content was empty."
        )
    return AgentOutcome(
        AgentState.COMPLETED, 1, "", final_text=result.text or None, tool_calls=ran
    )


async def run_command(plan: CommandPlan, session: AgentSession) -> AgentOutcome:
    """Load the plan's files as snippets, then answer its prompt in one turn."""
    window = session.window
    for source, content in plan.snippets:
        try:
            window.add_snippet(source, content)
        except TokenBudgetError as e:
            return AgentOutcome(AgentState.FAILED, 0, str(e))
        if not any(s.source == source for s in window.snippets):
            return AgentOutcome(
                AgentState.FAILED,
                0,
                f"Content from {source} does not fit in the "
                f"{window.max_tokens} token context window.",
            )

    logger.info("running %s command with model %s", plan.name, session.model)
    outcome = await run_single_turn(plan.prompt, session)
    if (
        plan.expects_tool_call
        and outcome.state == AgentState.COMPLETED
        and not outcome.tool_calls
    ):
        return AgentOutcome(
            AgentState.STALLED,
            outcome.iterations,
            "Model did not request an edit via tool call.",
            final_text=outcome.final_text,
        )
    return outcome


# --- Interactive chat ---


async def chat_turn(
    line: str, session: AgentSession, max_iterations: int
) -> AgentOutcome:
    """Answer one user line, following tool calls up to max_iterations rounds."""
    try:
        session.window.add_message(Message.user(line))
    except TokenBudgetError as e:
        return AgentOutcome(AgentState.FAILED, 0, str(e))

    for iteration in range(1, max_iterations + 1):
        try:
            result = await run_round(session)
        except AgentError as e:
            return AgentOutcome(AgentState.FAILED, iteration, str(e))
        if result.failures:
            return AgentOutcome(
                AgentState.FAILED, iteration, _failure_message(result.failures)
            )
        if not result.message.tool_calls:
            if not result.text:
                return AgentOutcome(AgentState.STALLED, iteration, STALLED_MESSAGE)
            return AgentOutcome(AgentState.COMPLETED, iteration, final_text=result.text)
    return AgentOutcome(
        AgentState.STALLED,
        max_iterations,
        f"Stopped following tool calls after {max_iterations} rounds.",
    )


def _repl_add(path_str: str, window: ConversationWindow) -> None:
    if not path_str:
        fmt.warning("/add requires a file path")
        return
    path = Path(path_str).expanduser()
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        fmt.error(f"could not read {path}: {e}")
        return
    try:
        window.add_snippet(str(path), content)
    except TokenBudgetError as e:
        fmt.error(str(e))
        return
    fmt.context_stats(f"added {path}", window.total_token_count, window.max_tokens)


async def chat_loop(
    session: AgentSession, max_iterations: int, prompt_session=None
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    if prompt_session is None:
        history_path = global_config_dir() / "repl_history"
        history_path.parent.mkdir(parents=True, exist_ok=True)
        prompt_session = PromptSession(
            history=FileHistory(str(history_path)),
            enable_history_search=True,
        )
    prompt_text = FormattedText([("bold fg:ansigreen", ">> ")])

    fmt.repl_banner()
    while True:
        try:
            line = await prompt_session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            fmt.repl_help()
            continue
        if cmd == "/clear":
            session.window.clear_history()
            fmt.info("Conversation history cleared.")
            continue
        if cmd == "/add":
            _repl_add(cmd_arg, session.window)
            continue

        outcome = await chat_turn(line, session, max_iterations)
        if outcome.state == AgentState.FAILED:
            fmt.error(outcome.message)
        elif outcome.state == AgentState.STALLED:
            fmt.warning(outcome.message)
        elif not session.stream and outcome.final_text:
            fmt.result(outcome.final_text)


# --- CLI ---


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="opencode",
        description=(
            "A CLI coding assistant with tool calling over an "
            "OpenRouter-style chat API."
        ),
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {_version()}"
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Model ID (default: api.default_model from config).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=None,
        help="Token budget for the conversation window (default: 4000).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        help="Run every tool without asking for confirmation.",
    )
    parser.add_argument(
        "--no-color", action="store_true", help="Disable colored output."
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging."
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Only print the final answer."
    )

    streaming = argparse.ArgumentParser(add_help=False)
    streaming.add_argument(
        "--stream", action="store_true", help="Print the answer as it arrives."
    )

    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", parents=[streaming], help="Ask a single question.")
    ask.add_argument("prompt", help="The question to send.")

    gen = sub.add_parser(
        "generate", parents=[streaming], help="Generate code from a description."
    )
    gen.add_argument("description", help="What the code should do.")
    gen.add_argument("--file", default=None, help="A file to use as context.")

    explain = sub.add_parser(
        "explain", parents=[streaming], help="Explain a file or a range of lines."
    )
    explain.add_argument("--file", required=True, help="The file to explain.")
    explain.add_argument(
        "--lines", default=None, help="A line (N) or inclusive range (N-M), 1-based."
    )

    edit = sub.add_parser("edit", help="Edit a file through FileWriteTool.")
    edit.add_argument("instruction", help="How to change the file.")
    edit.add_argument("--file", required=True, help="The file to edit.")

    debug = sub.add_parser(
        "debug", parents=[streaming], help="Get help with an error message."
    )
    debug.add_argument("--error", required=True, help="The error text.")
    debug.add_argument("--file", default=None, help="Related code for context.")

    test = sub.add_parser(
        "test", parents=[streaming], help="Generate unit tests for a file."
    )
    test.add_argument("--file", required=True, help="The file to test.")

    doc = sub.add_parser(
        "doc", parents=[streaming], help="Generate documentation comments for a file."
    )
    doc.add_argument("--file", required=True, help="The file to document.")

    shell = sub.add_parser("shell", help="Explain or suggest shell commands.")
    shell_sub = shell.add_subparsers(dest="shell_command", required=True)
    shell_explain = shell_sub.add_parser(
        "explain", parents=[streaming], help="Explain a shell command."
    )
    shell_explain.add_argument("command_string", help="The command to explain.")
    shell_suggest = shell_sub.add_parser(
        "suggest", parents=[streaming], help="Suggest a shell command for a task."
    )
    shell_suggest.add_argument("description", help="What the command should do.")

    run = sub.add_parser("run", help="Run a multi-step agentic task.")
    run.add_argument("task", help="The objective for the agent.")
    run.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum request/tool rounds (default: 5).",
    )
    run.add_argument("--stream", action="store_true", help="Stream responses.")

    chat = sub.add_parser("chat", help="Start an interactive session.")
    chat.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum tool rounds per message (default: 5).",
    )

    sub.add_parser("tools", help="List the registered tools.")
    return parser


def _version() -> str:
    try:
        return metadata.version("opencode-cli")
    except metadata.PackageNotFoundError:
        return "unknown"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_policy(args, config: dict) -> SecurityPolicy:
    user_tool_names = [t["name"] for t in config["usertools"]]
    if args.yolo or config["agent"]["security_policy"] == "allow_all":
        return SecurityPolicy.allow_all()
    return SecurityPolicy.confirm_writes(user_tool_names)


async def _run_main(args, config: dict) -> int:
    registry = build_registry(os.getcwd(), config["usertools"])
    if args.command == "tools":
        fmt.tool_table(registry.definitions())
        return 0

    api = config["api"]
    agent_cfg = config["agent"]
    plan = plan_from_args(args)
    model = plan.model(api, args.model) if plan else args.model or api["default_model"]
    window = ConversationWindow(
        max_tokens=args.max_context_tokens or api["max_context_tokens"]
    )
    executor = ToolExecutor(registry, _build_policy(args, config), confirm=fmt.confirm)
    max_iterations = (
        getattr(args, "max_iterations", None) or agent_cfg["max_iterations"]
    )
    verbose = not args.quiet

    async with ApiClient(
        require_api_key(config), base_url=api["base_url"], timeout=api["timeout"]
    ) as client:
        session = AgentSession(
            client=client,
            window=window,
            registry=registry,
            executor=executor,
            model=model,
            stream=args.command == "chat" or getattr(args, "stream", False),
            verbose=verbose,
            completion_phrases=tuple(agent_cfg["completion_phrases"]),
            use_tools=plan.use_tools if plan else True,
        )
        logger.debug("model=%s tools=%s", session.model, registry.names())

        if args.command == "chat":
            await chat_loop(session, max_iterations)
            return 0

        if plan is not None:
            outcome = await run_command(plan, session)
        elif args.command == "ask":
            outcome = await run_single_turn(args.prompt, session)
        else:
            outcome = await run_agent_loop(args.task, session, max_iterations)
            if verbose:
                fmt.completion(outcome.iterations, outcome.state.value)

    if outcome.state == AgentState.FAILED:
        fmt.error(outcome.message)
    elif outcome.state == AgentState.STALLED:
        fmt.warning(outcome.message)
    if outcome.final_text and not session.stream:
        fmt.result(outcome.final_text)
    return outcome.exit_code


def main():
    parser = build_parser()
    args = parser.parse_args()

    fmt.init(no_color=args.no_color)
    _configure_logging(args.verbose)

    try:
        config = load_config(Path.cwd())
        code = asyncio.run(_run_main(args, config))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
