"""Single-shot commands built on one request and at most one tool batch.

Each ``plan_*`` function turns CLI arguments into a ``CommandPlan``: the
user prompt, the files to load as context snippets, which configured model
to use, and whether tool definitions are sent. Running a plan is the
agent's job (``agent.run_command``).
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from . import fmt
from .errors import CommandError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommandPlan:
    name: str
    prompt: str
    # Key into the [api] config section; falls back to default_model when unset.
    model_key: str = "big_model"
    snippets: list[tuple[str, str]] = field(default_factory=list)
    use_tools: bool = False
    expects_tool_call: bool = False

    def model(self, api_config: dict, override: str | None = None) -> str:
        return override or api_config.get(self.model_key) or api_config["default_model"]


# --- File helpers ---


def read_source(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise CommandError(f"Could not read file '{path}': {e}") from e


def read_optional(path: str | None) -> str | None:
    """Like read_source, but a missing or unreadable file only warns."""
    if path is None:
        return None
    try:
        return read_source(path)
    except CommandError as e:
        logger.warning("%s", e)
        fmt.warning(f"{e}. Proceeding without file context.")
        return None


def parse_lines(text: str) -> tuple[int, int | None]:
    """Parse ``N`` or ``N-M`` (1-based, inclusive) into ``(start, end)``."""
    if "-" in text:
        start_s, end_s = text.split("-", 1)
        try:
            start = int(start_s.strip())
        except ValueError:
            raise CommandError(
                f"Invalid lines format '{text}': invalid start line number"
            ) from None
        try:
            end = int(end_s.strip())
        except ValueError:
            raise CommandError(
                f"Invalid lines format '{text}': invalid end line number"
            ) from None
        if start < 1 or end < 1:
            raise CommandError(
                f"Invalid lines format '{text}': line numbers must be 1 or greater"
            )
        if start > end:
            raise CommandError(
                f"Invalid lines format '{text}': start line cannot be greater than end line"
            )
        return start, end

    try:
        start = int(text.strip())
    except ValueError:
        raise CommandError(f"Invalid lines format '{text}': invalid line number") from None
    if start < 1:
        raise CommandError(
            f"Invalid lines format '{text}': line number must be 1 or greater"
        )
    return start, None


def extract_lines(content: str, start: int, end: int | None = None) -> str:
    lines = content.splitlines()
    total = len(lines)
    if start > total:
        raise CommandError(
            f"Start line {start} is out of bounds (total lines: {total})"
        )
    if end is None:
        end = start
    elif end > total:
        raise CommandError(f"End line {end} is out of bounds (total lines: {total})")
    return "\n".join(lines[start - 1 : end])


# --- Plans ---


def plan_generate(description: str, file: str | None = None) -> CommandPlan:
    prompt = f"Generate code based on the following description:\n{description}"
    snippets = []
    content = read_optional(file)
    if content is not None:
        snippets.append((file, content))
        prompt += f"\n\nUse the content from {file} above as context."
    return CommandPlan("generate", prompt, snippets=snippets)


def plan_explain(file: str, lines: str | None = None) -> CommandPlan:
    content = read_source(file)
    source = file
    if lines is not None:
        start, end = parse_lines(lines)
        content = extract_lines(content, start, end)
        source = f"{file} (lines {lines})"
    prompt = (
        f"Explain the code from {source} shown above. "
        "Identify the programming language if possible."
    )
    return CommandPlan("explain", prompt, snippets=[(source, content)])


def plan_edit(instruction: str, file: str) -> CommandPlan:
    content = read_source(file)
    prompt = (
        "Apply the following edit instruction to the file shown above. "
        "You MUST call FileWriteTool with the complete updated file content "
        "to apply the changes. Output ONLY the tool call.\n\n"
        f"Instruction: {instruction}\n\n"
        f"File Path: {file}"
    )
    return CommandPlan(
        "edit",
        prompt,
        model_key="edit_model",
        snippets=[(file, content)],
        use_tools=True,
        expects_tool_call=True,
    )


def plan_debug(error: str, file: str | None = None) -> CommandPlan:
    prompt = f"Help me debug the following error:\n\n```\n{error}\n```\n\n"
    snippets = []
    content = read_optional(file)
    if content is not None:
        snippets.append((file, content))
        prompt += f"The relevant code from '{file}' is shown above.\n\n"
    prompt += "What could be the cause and how can I fix it?"
    return CommandPlan("debug", prompt, snippets=snippets)


def plan_test(file: str) -> CommandPlan:
    return CommandPlan(
        "test",
        "Generate unit tests for the code shown above, using the appropriate "
        "testing framework for the language.",
        snippets=[(file, read_source(file))],
    )


def plan_doc(file: str) -> CommandPlan:
    return CommandPlan(
        "doc",
        "Generate documentation comments (e.g., Javadoc, Docstrings, Rustdoc) for "
        "the code shown above, following the conventions of the detected language.",
        snippets=[(file, read_source(file))],
    )


def plan_shell_explain(command: str) -> CommandPlan:
    return CommandPlan(
        "shell explain",
        f"Explain the following shell command:\n\n```sh\n{command}\n```",
        model_key="default_model",
    )


def plan_shell_suggest(description: str) -> CommandPlan:
    return CommandPlan(
        "shell suggest",
        f"Suggest a shell command that does the following:\n\n{description}",
        model_key="default_model",
    )


def plan_from_args(args) -> CommandPlan | None:
    """Build the plan for a parsed single-shot subcommand, or None for others."""
    command = args.command
    if command == "generate":
        return plan_generate(args.description, args.file)
    if command == "explain":
        return plan_explain(args.file, args.lines)
    if command == "edit":
        return plan_edit(args.instruction, args.file)
    if command == "debug":
        return plan_debug(args.error, args.file)
    if command == "test":
        return plan_test(args.file)
    if command == "doc":
        return plan_doc(args.file)
    if command == "shell":
        if args.shell_command == "explain":
            return plan_shell_explain(args.command_string)
        return plan_shell_suggest(args.description)
    return None
