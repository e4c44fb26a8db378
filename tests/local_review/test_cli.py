"""Tests for CLI interface."""

import json
import re
from pathlib import Path

import pytest
from click.testing import CliRunner

from local_review import __version__
from local_review.cli import cli
from local_review.git_ops import is_git_available, is_git_repository


@pytest.fixture
def runner():
    """Create a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def invoke(runner, project: Path):
    """Run the CLI against the sample project."""

    def _invoke(*args: str, **kwargs):
        return runner.invoke(cli, ["--root", str(project), *args], **kwargs)

    return _invoke


@pytest.fixture
def source(project: Path) -> str:
    return str(project / "src" / "example.ts")


def _created_id(output: str) -> str:
    match = re.search(r"Created thread (\S+)", output)
    assert match, output
    return match.group(1)


class TestInit:
    """Tests for init command."""

    def test_creates_store(self, invoke, project: Path) -> None:
        result = invoke("init")

        assert result.exit_code == 0
        assert "Initialized review store at" in result.output
        assert (project / ".code-review" / "threads").is_dir()
        assert (project / ".code-review" / "AGENTS.md").is_file()

    def test_custom_storage_path(self, invoke, project: Path) -> None:
        result = invoke("--storage-path", "reviews", "init")
        assert result.exit_code == 0
        assert (project / "reviews" / "index.json").is_file()

    def test_storage_path_from_env(self, invoke, project: Path) -> None:
        """LOCAL_REVIEW_STORAGE_PATH configures the store directory."""
        result = invoke("init", env={"LOCAL_REVIEW_STORAGE_PATH": "env-store"})
        assert result.exit_code == 0
        assert (project / "env-store" / "threads").is_dir()

    def test_version(self, runner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output


class TestAdd:
    """Tests for add command."""

    def test_add_line_range(self, invoke, source: str, project: Path) -> None:
        """-L takes 1-based inclusive lines."""
        result = invoke("add", source, "-L", "2:2", "Check overflow")

        assert result.exit_code == 0, result.output
        thread_id = _created_id(result.output)
        assert "src/example.ts:L2" in result.output
        assert (project / ".code-review" / "threads" / f"{thread_id}.md").is_file()

    def test_add_single_line(self, invoke, source: str) -> None:
        result = invoke("add", source, "--line", "1", "--author", "alice", "Rename?")
        assert result.exit_code == 0
        assert "src/example.ts:L1" in result.output

    def test_add_whole_file(self, invoke, source: str) -> None:
        result = invoke("add", source, "General remark")
        assert result.exit_code == 0
        assert "src/example.ts:File" in result.output

    @pytest.mark.parametrize("span", ["abc", "2-3", "x:y", "3:1", "0:1"])
    def test_invalid_line_range(self, invoke, source: str, span: str) -> None:
        result = invoke("add", source, "-L", span, "body")
        assert result.exit_code == 1
        assert "Error: Invalid line range" in result.output

    def test_line_range_past_end(self, invoke, source: str) -> None:
        result = invoke("add", source, "-L", "40:41", "body")
        assert result.exit_code == 1
        assert "past the end" in result.output

    def test_mutually_exclusive_options(self, invoke, source: str) -> None:
        result = invoke("add", source, "-L", "1:2", "--line", "1", "body")
        assert result.exit_code == 1
        assert "mutually exclusive" in result.output

    def test_file_outside_root(self, invoke, tmp_path: Path) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("x\n")
        result = invoke("add", str(outside), "body")
        assert result.exit_code == 1
        assert "not inside a review project root" in result.output


class TestThreadCommands:
    """Tests for list, show, reply, resolve, reopen and delete."""

    @pytest.fixture
    def thread_id(self, invoke, source: str) -> str:
        return _created_id(invoke("add", source, "-L", "2:2", "Check overflow").output)

    def test_list(self, invoke, thread_id: str) -> None:
        result = invoke("list")

        assert result.exit_code == 0
        assert f"{thread_id} [open] src/example.ts:L2 (1 comments)" in result.output

    def test_list_json(self, invoke, thread_id: str) -> None:
        result = invoke("list", "--json")

        data = json.loads(result.output)
        assert data == [
            {
                "id": thread_id,
                "file": "src/example.ts",
                "range": {"startLine": 1, "startCharacter": 0, "endLine": 1, "endCharacter": 15},
                "status": "open",
                "comments": 1,
                "updatedAt": data[0]["updatedAt"],
            }
        ]

    def test_list_empty(self, invoke) -> None:
        result = invoke("list")
        assert result.exit_code == 0
        assert "No matching threads found." in result.output

    def test_show(self, invoke, thread_id: str) -> None:
        result = invoke("show", thread_id)

        assert result.exit_code == 0
        assert f"Thread {thread_id} [open]" in result.output
        assert "  return a + b;" in result.output
        assert "--- You at" in result.output
        assert "Check overflow" in result.output

    def test_show_json(self, invoke, thread_id: str) -> None:
        data = json.loads(invoke("show", "--json", thread_id).output)

        assert data["id"] == thread_id
        assert data["schemaVersion"] == 1
        assert data["target"]["workspaceRelativePath"] == "src/example.ts"
        assert data["target"]["anchor"]["context"]["selection"] == "  return a + b;"
        assert data["comments"][0]["bodyMarkdown"] == "Check overflow"

    def test_show_unknown_thread(self, invoke) -> None:
        result = invoke("show", "nope")
        assert result.exit_code == 1
        assert "Error: Thread not found: nope" in result.output

    def test_reply(self, invoke, thread_id: str) -> None:
        result = invoke("reply", thread_id, "Fixed in next commit", "--author", "bob")

        assert result.exit_code == 0
        assert f"to thread {thread_id}" in result.output
        shown = invoke("show", thread_id).output
        assert "--- bob at" in shown
        assert "Fixed in next commit" in shown

    def test_blank_reply(self, invoke, thread_id: str) -> None:
        result = invoke("reply", thread_id, "   ")
        assert result.exit_code == 1
        assert "Reply body is empty" in result.output

    def test_resolve_and_reopen(self, invoke, thread_id: str) -> None:
        """Status filters follow resolve and reopen."""
        assert f"Thread {thread_id} resolved" in invoke("resolve", thread_id).output
        assert thread_id in invoke("list", "--status", "resolved").output
        assert "No matching threads found." in invoke("list", "--status", "open").output

        assert f"Thread {thread_id} reopened" in invoke("reopen", thread_id).output
        assert thread_id in invoke("list", "--status", "open").output

    def test_delete_force(self, invoke, thread_id: str, project: Path) -> None:
        result = invoke("delete", thread_id, "--force")

        assert result.exit_code == 0
        assert f"Thread {thread_id} deleted" in result.output
        assert not (project / ".code-review" / "threads" / f"{thread_id}.md").exists()

    def test_delete_cancelled(self, invoke, thread_id: str) -> None:
        result = invoke("delete", thread_id, input="n\n")
        assert "Delete cancelled" in result.output
        assert thread_id in invoke("list").output

    def test_delete_prompt_aborted(self, invoke, thread_id: str) -> None:
        """End of input at the prompt aborts like any click prompt."""
        result = invoke("delete", thread_id, input="")

        assert result.exit_code == 1
        assert "Aborted!" in result.output
        assert "Unexpected error" not in result.output
        assert thread_id in invoke("list").output

    def test_clear(self, invoke, thread_id: str, source: str) -> None:
        invoke("add", source, "--line", "1", "another")

        result = invoke("clear", "--force")

        assert result.exit_code == 0
        assert "All review comments cleared" in result.output
        assert "No matching threads found." in invoke("list").output

    def test_reindex(self, invoke, thread_id: str, project: Path) -> None:
        (project / ".code-review" / "index.json").unlink()

        result = invoke("reindex")

        assert result.exit_code == 0
        assert "Indexed 1 thread(s)" in result.output
        index = json.loads((project / ".code-review" / "index.json").read_text())
        assert [e["id"] for e in index["threads"]] == [thread_id]

    def test_relocate(self, invoke, thread_id: str, project: Path) -> None:
        """Threads follow their code after an edit."""
        source = project / "src" / "example.ts"
        source.write_text("// banner\n" + source.read_text())

        result = invoke("relocate")

        assert result.exit_code == 0
        assert f"{thread_id} src/example.ts: L2 -> L3" in result.output
        assert "1 thread(s) relocated" in result.output


class TestDiffCommands:
    """Tests for ranges, changed and apply-suggestion."""

    def test_ranges_anywhere(self, invoke, source: str) -> None:
        """Without --only-changes the whole file is commentable."""
        result = invoke("ranges", source, "--json")

        assert result.exit_code == 0
        assert json.loads(result.output) == {
            "enableFileComments": True,
            "ranges": [{"startLine": 0, "startCharacter": 0, "endLine": 3, "endCharacter": 0}],
        }

    def test_apply_suggestion(self, invoke, source: str) -> None:
        body = "Subtract:\n\n```suggestion\n  return a - b;\n```"
        thread_id = _created_id(invoke("add", source, "-L", "2:2", body).output)

        result = invoke("apply-suggestion", thread_id)

        assert result.exit_code == 0
        assert f"Applied suggestion from thread {thread_id}" in result.output
        assert Path(source).read_text() == "export function add(a, b) {\n  return a - b;\n}\n"

    def test_apply_without_suggestion(self, invoke, source: str) -> None:
        thread_id = _created_id(invoke("add", source, "-L", "2:2", "Just a remark").output)

        result = invoke("apply-suggestion", thread_id)

        assert result.exit_code == 1
        assert "No ```suggestion``` block" in result.output

    def test_changed_outside_repository(self, invoke, project: Path) -> None:
        if is_git_available() and is_git_repository(project):
            pytest.skip("temporary directory is inside a git work tree")

        result = invoke("changed")

        assert result.exit_code == 2
        assert "Error:" in result.output
