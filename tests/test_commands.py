"""Tests for opencode.commands: line ranges, file context and plan building."""

import pytest

from opencode import agent, commands
from opencode.commands import (
    CommandPlan,
    extract_lines,
    parse_lines,
    plan_debug,
    plan_edit,
    plan_explain,
    plan_from_args,
    plan_generate,
    plan_shell_explain,
    read_optional,
)
from opencode.errors import CommandError

API = {
    "default_model": "base/model",
    "big_model": None,
    "edit_model": "edit/model",
}


@pytest.fixture
def warnings(monkeypatch):
    seen = []
    monkeypatch.setattr(commands.fmt, "warning", seen.append)
    return seen


# ---------------------------------------------------------------------------
# Line ranges
# ---------------------------------------------------------------------------


class TestParseLines:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("7", (7, None)),
            ("2-4", (2, 4)),
            (" 3 - 3 ", (3, 3)),
        ],
    )
    def test_valid(self, text, expected):
        assert parse_lines(text) == expected

    @pytest.mark.parametrize(
        "text, reason",
        [
            ("x-4", "invalid start line number"),
            ("2-y", "invalid end line number"),
            ("0-2", "line numbers must be 1 or greater"),
            ("5-2", "start line cannot be greater than end line"),
            ("abc", "invalid line number"),
            ("0", "line number must be 1 or greater"),
        ],
    )
    def test_invalid(self, text, reason):
        with pytest.raises(CommandError) as exc:
            parse_lines(text)
        assert str(exc.value) == f"Invalid lines format '{text}': {reason}"


class TestExtractLines:
    SOURCE = "one\ntwo\nthree\n"

    def test_single_line(self):
        assert extract_lines(self.SOURCE, 2) == "two"

    def test_inclusive_range(self):
        assert extract_lines(self.SOURCE, 1, 3) == "one\ntwo\nthree"

    def test_start_out_of_bounds(self):
        with pytest.raises(CommandError, match=r"Start line 4 is out of bounds \(total lines: 3\)"):
            extract_lines(self.SOURCE, 4)

    def test_end_out_of_bounds(self):
        with pytest.raises(CommandError, match=r"End line 9 is out of bounds \(total lines: 3\)"):
            extract_lines(self.SOURCE, 2, 9)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    def test_model_choice(self):
        assert CommandPlan("generate", "p").model(API) == "base/model"
        assert CommandPlan("edit", "p", model_key="edit_model").model(API) == "edit/model"
        assert CommandPlan("edit", "p").model(API, "cli/model") == "cli/model"
        big = dict(API, big_model="big/model")
        assert CommandPlan("doc", "p").model(big) == "big/model"

    def test_generate_with_context_file(self, tmp_path):
        notes = tmp_path / "notes.md"
        notes.write_text("prefer iterators")
        plan = plan_generate("a fibonacci function", str(notes))
        assert plan.snippets == [(str(notes), "prefer iterators")]
        assert plan.prompt.endswith(f"Use the content from {notes} above as context.")
        assert not plan.use_tools

    def test_generate_missing_file_warns_and_continues(self, tmp_path, warnings):
        plan = plan_generate("a parser", str(tmp_path / "nope.txt"))
        assert plan.snippets == []
        assert plan.prompt == "Generate code based on the following description:\na parser"
        assert len(warnings) == 1
        assert warnings[0].endswith("Proceeding without file context.")

    def test_read_optional_none(self, warnings):
        assert read_optional(None) is None
        assert warnings == []

    def test_explain_line_range(self, tmp_path):
        src = tmp_path / "m.py"
        src.write_text("import os\n\ndef f():\n    return 1\n")
        plan = plan_explain(str(src), "3-4")
        source = f"{src} (lines 3-4)"
        assert plan.snippets == [(source, "def f():\n    return 1")]
        assert plan.prompt.startswith(f"Explain the code from {source} shown above.")

    def test_explain_missing_file_is_an_error(self, tmp_path):
        with pytest.raises(CommandError, match="Could not read file"):
            plan_explain(str(tmp_path / "gone.py"))

    def test_edit_sends_tools_and_expects_a_call(self, tmp_path):
        src = tmp_path / "a.txt"
        src.write_text("hello")
        plan = plan_edit("shout it", str(src))
        assert plan.model_key == "edit_model"
        assert plan.use_tools and plan.expects_tool_call
        assert plan.snippets == [(str(src), "hello")]
        assert "FileWriteTool" in plan.prompt
        assert plan.prompt.endswith(f"Instruction: shout it\n\nFile Path: {src}")

    def test_debug_without_file(self):
        plan = plan_debug("KeyError: 'x'")
        assert plan.snippets == []
        assert plan.prompt == (
            "Help me debug the following error:\n\n```\nKeyError: 'x'\n```\n\n"
            "What could be the cause and how can I fix it?"
        )

    def test_shell_explain_uses_default_model(self):
        plan = plan_shell_explain("tar xzf a.tgz")
        assert plan.model(dict(API, big_model="big/model")) == "base/model"
        assert "```sh\ntar xzf a.tgz\n```" in plan.prompt


class TestPlanFromArgs:
    def _plan(self, *argv):
        return plan_from_args(agent.build_parser().parse_args(list(argv)))

    def test_single_shot_commands(self, tmp_path):
        src = tmp_path / "lib.py"
        src.write_text("x = 1\n")
        assert self._plan("test", "--file", str(src)).name == "test"
        assert self._plan("doc", "--file", str(src)).name == "doc"
        assert self._plan("debug", "--error", "boom").name == "debug"
        plan = self._plan("shell", "suggest", "count lines")
        assert plan.name == "shell suggest"
        assert plan.prompt.endswith("count lines")

    def test_other_commands_have_no_plan(self):
        assert self._plan("ask", "hi") is None
        assert self._plan("run", "do it") is None
        assert self._plan("tools") is None
