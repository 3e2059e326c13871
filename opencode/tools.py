"""Tool capability interface, tool errors, and the built-in tools."""

import json
import logging
import os
import re
import subprocess
from pathlib import Path

import httpx

from .errors import ConfigError
from .messages import ToolDefinition

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_GREP_MATCHES = 100
COMMAND_TIMEOUT = 120
FETCH_TIMEOUT = 30

# --- Errors ---


class ToolError(Exception):
    """Unclassified tool failure. Subclasses name the specific kind."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self._render())

    def _render(self) -> str:
        return f"An unexpected error occurred: {self.message}"


class InvalidArgumentsError(ToolError):
    def __init__(self, tool_name: str, details: str):
        self.tool_name = tool_name
        self.details = details
        super().__init__(details)

    def _render(self) -> str:
        return f"Invalid arguments for tool '{self.tool_name}': {self.details}"


class ExecutionFailedError(ToolError):
    def __init__(self, command: str, stderr: str):
        self.command = command
        self.stderr = stderr
        super().__init__(stderr)

    def _render(self) -> str:
        return f"Execution failed for command '{self.command}': {self.stderr}"


class ResourceNotFoundError(ToolError):
    def __init__(self, path: str):
        self.path = path
        super().__init__(path)

    def _render(self) -> str:
        return f"File not found at path: {self.path}"


class PermissionDeniedError(ToolError):
    def __init__(self, resource: str):
        self.resource = resource
        super().__init__(resource)

    def _render(self) -> str:
        return f"Permission denied for resource: {self.resource}"


class NetworkError(ToolError):
    def _render(self) -> str:
        return f"Network error: {self.message}"


# --- Capability interface ---


class Tool:
    """A named capability the model can call.

    Subclasses set ``name`` and ``description`` and implement
    ``parameters_schema`` and ``execute``. ``execute`` receives arguments
    that already passed schema validation and returns a JSON-compatible value.
    """

    name: str = ""
    description: str = ""

    def parameters_schema(self) -> dict:
        raise NotImplementedError

    def execute(self, args: dict):
        raise NotImplementedError

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema(),
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


def safe_resolve(file_path: str, base_dir: str | Path) -> Path:
    """Resolve a path against base_dir, refusing anything that escapes it.

    Raises:
        ValueError: If the resolved path is outside base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if resolved.is_relative_to(base):
        return resolved
    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


class _WorkspaceTool(Tool):
    """A tool whose paths are confined to a workspace root."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or os.getcwd()).resolve()

    def _resolve(self, path: str) -> Path:
        try:
            return safe_resolve(path, self.root)
        except ValueError as e:
            raise PermissionDeniedError(path) from e


def _run(argv: list[str], cwd: Path, label: str) -> dict:
    """Run a subprocess, returning {stdout, exit_code} or raising ExecutionFailedError."""
    try:
        proc = subprocess.run(
            argv,
            cwd=cwd,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            timeout=COMMAND_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ToolError(f"Failed to execute command: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise ExecutionFailedError(label, f"timed out after {COMMAND_TIMEOUT}s") from e
    except (OSError, ValueError) as e:
        raise ToolError(f"Failed to execute command: {e}") from e

    stdout = proc.stdout.decode("utf-8", errors="replace")
    stderr = proc.stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise ExecutionFailedError(label, stderr)
    return {"stdout": stdout, "exit_code": proc.returncode}


# --- Built-in tools ---


class FileReadTool(_WorkspaceTool):
    name = "FileReadTool"
    description = 'Reads a file from the file system. Args: {"path": string}'

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        }

    def execute(self, args: dict):
        path = args["path"]
        resolved = self._resolve(path)
        try:
            content = resolved.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as e:
            raise ResourceNotFoundError(path) from e
        except IsADirectoryError as e:
            raise ToolError(f"Failed to read file: {path} is a directory") from e
        except PermissionError as e:
            raise PermissionDeniedError(path) from e
        except OSError as e:
            raise ToolError(f"Failed to read file: {e}") from e
        return {"content": content}


class FileWriteTool(_WorkspaceTool):
    name = "FileWriteTool"
    description = (
        'Writes content to a file. Args: {"path": string, "content": string}'
    )

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["path", "content"],
        }

    def execute(self, args: dict):
        path = args["path"]
        resolved = self._resolve(path)
        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(args["content"], encoding="utf-8")
        except PermissionError as e:
            raise PermissionDeniedError(path) from e
        except OSError as e:
            raise ToolError(f"Failed to write file: {e}") from e
        return {"status": "success"}


class ShellCommandTool(_WorkspaceTool):
    name = "ShellCommandTool"
    description = (
        'Executes a shell command. Args: {"command": string, "args": [string] (optional)}'
    )

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string"},
                "args": {"type": "array", "items": {"type": "string"}, "default": []},
            },
            "required": ["command"],
        }

    def execute(self, args: dict):
        command = args["command"]
        return _run([command, *args.get("args", [])], self.root, command)


class GitTool(_WorkspaceTool):
    name = "GitTool"
    description = (
        'Runs git operations. Args: {"operation": string, "args": object (optional)}'
    )

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "operation": {
                    "type": "string",
                    "enum": ["status", "commit", "add", "push"],
                },
                "args": {"type": "object"},
            },
            "required": ["operation"],
        }

    def execute(self, args: dict):
        operation = args["operation"]
        if operation != "status":
            raise InvalidArgumentsError(
                self.name, f"Unsupported git operation: {operation}"
            )
        return _run(["git", "status"], self.root, "git status")


class WebSearchTool(Tool):
    name = "WebSearchTool"
    description = 'Fetches the contents of a URL. Args: {"url": string}'

    def __init__(self, transport: httpx.BaseTransport | None = None):
        self._transport = transport

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {"url": {"type": "string"}},
            "required": ["url"],
        }

    def execute(self, args: dict):
        url = args["url"]
        if not url.startswith(("http://", "https://")):
            raise InvalidArgumentsError(
                self.name, f"url scheme must be http or https: {url!r}"
            )
        try:
            with httpx.Client(
                transport=self._transport,
                timeout=FETCH_TIMEOUT,
                follow_redirects=True,
            ) as client:
                resp = client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(str(e) or type(e).__name__) from e

        content = resp.text
        encoded = content.encode("utf-8")
        if len(encoded) > MAX_OUTPUT_BYTES:
            content = (
                encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
                + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"
            )
        return {"status": resp.status_code, "content": content}


class CodeSearchTool(_WorkspaceTool):
    name = "CodeSearchTool"
    description = (
        'Searches for a regex pattern in code. Args: {"pattern": string, "path": string (optional)}'
    )

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "path": {"type": "string"},
            },
            "required": ["pattern"],
        }

    def execute(self, args: dict):
        pattern = args["pattern"]
        path = args.get("path", ".")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise InvalidArgumentsError(
                self.name, f"invalid regex {pattern!r}: {e}"
            ) from e

        root = self._resolve(path)
        if not root.exists():
            raise ResourceNotFoundError(path)

        files = [root] if root.is_file() else _walk_files(root)
        lines: list[str] = []
        total = 0
        for filepath in files:
            # Symlinks may point anywhere; only read what lands inside the root.
            if not filepath.resolve().is_relative_to(self.root):
                logger.debug("CodeSearchTool: skipping %s (outside workspace)", filepath)
                continue
            text = _read_text_file(filepath)
            if text is None:
                continue
            rel = filepath.relative_to(self.root)
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    total += 1
                    if len(lines) < MAX_GREP_MATCHES:
                        lines.append(f"{rel}:{line_no}:{line[:MAX_LINE_LENGTH]}")

        stdout = "\n".join(lines)
        if total > MAX_GREP_MATCHES:
            stdout += f"\n(Results truncated: showing first {MAX_GREP_MATCHES} of {total} matches.)"
        # Same convention as grep/rg: exit 1 means "no matches", not a failure.
        return {"stdout": stdout, "exit_code": 0 if total else 1}


def _walk_files(root: Path, include_hidden: bool = True):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(
            d for d in dirs if d != ".git" and (include_hidden or not d.startswith("."))
        )
        for filename in sorted(files):
            if not include_hidden and filename.startswith("."):
                continue
            yield Path(dirpath) / filename


def _read_text_file(filepath: Path) -> str | None:
    """Return the file's text, or None for binary or unreadable files."""
    try:
        with open(filepath, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
        if b"\x00" in chunk:
            return None
        return filepath.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError):
        return None


_SEARCH_SUGGESTIONS = [
    "Try a more general search term",
    "Try with include_hidden: true to search hidden directories",
    "Try removing the extension filter",
    "Try with case_sensitive: false (if not already)",
]


class FileSearchTool(_WorkspaceTool):
    name = "FileSearchTool"
    description = (
        "Searches the project workspace for files with advanced filtering options. "
        'Args: {"query": string, "extension": string (optional), '
        '"case_sensitive": boolean (optional), "include_hidden": boolean (optional), '
        '"max_results": number (optional)}'
    )

    def parameters_schema(self) -> dict:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Filename or partial path to search for.",
                },
                "extension": {
                    "type": "string",
                    "description": "Filter by file extension (e.g., 'py', 'json', 'md').",
                },
                "case_sensitive": {
                    "type": "boolean",
                    "description": "Whether the search should be case sensitive (default: false).",
                },
                "include_hidden": {
                    "type": "boolean",
                    "description": "Whether to include hidden files/directories in the search (default: false).",
                },
                "max_results": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Maximum number of results to return (default: 20).",
                },
            },
            "required": ["query"],
        }

    def execute(self, args: dict):
        query = args["query"]
        extension = args.get("extension")
        if extension is not None:
            extension = extension.lstrip(".")
        case_sensitive = args.get("case_sensitive", False)
        include_hidden = args.get("include_hidden", False)
        max_results = args.get("max_results", 20)

        needle = query if case_sensitive else query.lower()
        found: list[str] = []
        for filepath in _walk_files(self.root, include_hidden=include_hidden):
            if extension is not None and filepath.suffix.lstrip(".") != extension:
                continue
            rel = filepath.relative_to(self.root).as_posix()
            haystack = filepath.name if case_sensitive else filepath.name.lower()
            if needle not in haystack:
                continue
            found.append(rel)
            if len(found) >= max_results:
                break

        logger.debug("FileSearchTool: query=%r found %d files", query, len(found))
        result = {
            "found_files": found,
            "search_info": {
                "query": query,
                "extension": extension,
                "case_sensitive": case_sensitive,
                "include_hidden": include_hidden,
                "max_results": max_results,
            },
        }
        if not found:
            result["suggestions"] = list(_SEARCH_SUGGESTIONS)
        return result


# --- User-defined tools ---


class UserDefinedTool(Tool):
    """A tool declared in config that fills a shell command template."""

    def __init__(
        self,
        name: str,
        description: str,
        input_schema: str,
        command_template: str,
        root: str | Path | None = None,
    ):
        try:
            schema = json.loads(input_schema)
        except json.JSONDecodeError as e:
            raise ConfigError(
                f"user tool {name!r}: input_schema is not valid JSON: {e}"
            ) from e
        if not isinstance(schema, dict):
            raise ConfigError(f"user tool {name!r}: input_schema must be a JSON object")
        self.name = name
        self.description = description
        self.command_template = command_template
        self.root = Path(root or os.getcwd()).resolve()
        self._schema = schema

    @classmethod
    def from_config(cls, entry: dict, root: str | Path | None = None) -> "UserDefinedTool":
        return cls(
            name=entry["name"],
            description=entry["description"],
            input_schema=entry["input_schema"],
            command_template=entry["command_template"],
            root=root,
        )

    def parameters_schema(self) -> dict:
        return self._schema

    def render_command(self, args) -> str:
        if args is None:
            return self.command_template
        if not isinstance(args, dict):
            raise InvalidArgumentsError(
                self.name, "Expected arguments to be a JSON object"
            )
        command = self.command_template
        for key, value in args.items():
            # bool before int: bool is an int subclass
            if isinstance(value, bool):
                text = "true" if value else "false"
            elif isinstance(value, (str, int, float)):
                text = str(value)
            else:
                raise InvalidArgumentsError(
                    self.name, f"Unsupported argument type for key '{key}'"
                )
            command = command.replace("{" + key + "}", text)
        return command

    def execute(self, args):
        command = self.render_command(args)
        logger.info("executing user tool %r command: %s", self.name, command)
        try:
            proc = subprocess.run(
                ["sh", "-c", command],
                cwd=self.root,
                capture_output=True,
                stdin=subprocess.DEVNULL,
                timeout=COMMAND_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise ExecutionFailedError(command, f"timed out after {COMMAND_TIMEOUT}s") from e
        except (OSError, ValueError) as e:
            raise ToolError(
                f"Failed to execute command for tool '{self.name}': {e}"
            ) from e

        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace")
            logger.error("user tool %r failed: %s", self.name, stderr)
            raise ExecutionFailedError(command, stderr)
        return proc.stdout.decode("utf-8", errors="replace")


def builtin_tools(root: str | Path | None = None) -> list[Tool]:
    return [
        FileReadTool(root),
        FileWriteTool(root),
        ShellCommandTool(root),
        GitTool(root),
        WebSearchTool(),
        CodeSearchTool(root),
        FileSearchTool(root),
    ]
