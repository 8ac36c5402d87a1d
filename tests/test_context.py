"""Tests for workspace context prompts."""

from workspace_chat import ProjectRef, WorkspaceContext, build_context_prompt
from workspace_chat.context import compose_prompt


class TestBuildContextPrompt:
    """Tests for the context block builder."""

    def test_disabled_is_empty(self) -> None:
        """Disabled context yields nothing even with inputs."""
        assert build_context_prompt(False, project={"name": "X"}, files=["a.ts"]) == ""

    def test_nothing_to_add_is_empty(self) -> None:
        assert build_context_prompt(True) == ""
        assert build_context_prompt(True, files=[], terminal=[]) == ""

    def test_project_and_files(self) -> None:
        prompt = build_context_prompt(True, project={"name": "X"}, files=["a.ts", "b.ts"])
        assert prompt == "Workspace Context:\nProject: X\nActive Files: a.ts, b.ts"

    def test_selection_is_fenced(self) -> None:
        prompt = build_context_prompt(True, selection="print(1)")
        assert prompt == "Workspace Context:\nSelected Code:\n```\nprint(1)\n```"

    def test_only_last_five_commands(self) -> None:
        """Only the five most recent terminal commands are included."""
        commands = [f"c{i}" for i in range(1, 8)]
        prompt = build_context_prompt(True, terminal=commands)
        assert prompt == "Workspace Context:\nRecent Terminal Commands: c3, c4, c5, c6, c7"

    def test_section_order(self) -> None:
        prompt = build_context_prompt(
            True,
            project=ProjectRef(name="demo"),
            files=["main.py"],
            selection="x = 1",
            terminal=["ls"],
        )
        lines = prompt.splitlines()
        assert lines[0] == "Workspace Context:"
        assert lines[1] == "Project: demo"
        assert lines[2] == "Active Files: main.py"
        assert lines[3] == "Selected Code:"
        assert lines[-1] == "Recent Terminal Commands: ls"

    def test_malformed_inputs_are_skipped(self) -> None:
        """Non-string entries and blank values are left out rather than raising."""
        prompt = build_context_prompt(
            True,
            project={"name": 42},
            files=["a.py", None, "  ", 3],  # type: ignore[list-item]
            selection="   ",
            terminal="not-a-list",
        )
        assert prompt == "Workspace Context:\nActive Files: a.py"

    def test_all_sources(self) -> None:
        prompt = build_context_prompt(
            True,
            project={"name": "Foo"},
            files=["a.ts", "b.ts"],
            selection="const x=1;",
            terminal=["ls", "pwd", "git status"],
        )
        assert "Foo" in prompt
        assert "a.ts" in prompt and "b.ts" in prompt
        assert "```\nconst x=1;\n```" in prompt
        assert "Recent Terminal Commands: ls, pwd, git status" in prompt

    def test_deterministic(self) -> None:
        args = dict(project={"name": "X"}, files=["a"], selection="s", terminal=["t"])
        assert build_context_prompt(True, **args) == build_context_prompt(True, **args)


class TestComposePrompt:
    def test_without_context(self) -> None:
        assert compose_prompt("", "hello") == "hello"

    def test_with_context(self) -> None:
        assert compose_prompt("Workspace Context:\nProject: X", "hi") == (
            "Workspace Context:\nProject: X\n\nUser Request: hi"
        )


class TestWorkspaceContext:
    """Tests for the live workspace state."""

    def test_active_files_are_unique(self) -> None:
        workspace = WorkspaceContext()
        workspace.add_active_file("a.py")
        workspace.add_active_file("a.py")
        workspace.add_active_file("b.py")
        workspace.remove_active_file("a.py")
        assert workspace.active_files == ["b.py"]

    def test_terminal_history_is_bounded(self) -> None:
        workspace = WorkspaceContext()
        for i in range(60):
            workspace.add_terminal_command(f"cmd{i}")
        assert len(workspace.terminal_history) == 50
        assert workspace.terminal_history[0] == "cmd10"

    def test_snapshot_keeps_recent_commands(self) -> None:
        workspace = WorkspaceContext(project=ProjectRef(name="demo", path="/src/demo"))
        workspace.add_active_file("a.py")
        workspace.set_selection("x = 1")
        for i in range(8):
            workspace.add_terminal_command(f"cmd{i}")

        snapshot = workspace.snapshot()
        assert snapshot.files == ("a.py",)
        assert snapshot.selection == "x = 1"
        assert snapshot.terminal == ("cmd3", "cmd4", "cmd5", "cmd6", "cmd7")
        assert snapshot.project_name == "demo"
        assert snapshot.project_path == "/src/demo"

    def test_snapshot_is_independent_of_later_changes(self) -> None:
        workspace = WorkspaceContext()
        workspace.add_active_file("a.py")
        snapshot = workspace.snapshot()
        workspace.add_active_file("b.py")
        assert snapshot.files == ("a.py",)

    def test_build_prompt_uses_project(self) -> None:
        workspace = WorkspaceContext(project=ProjectRef(name="demo"))
        assert workspace.build_prompt(True) == "Workspace Context:\nProject: demo"
        assert workspace.build_prompt(False) == ""

    def test_clear(self) -> None:
        workspace = WorkspaceContext()
        workspace.add_active_file("a.py")
        workspace.set_selection("x")
        workspace.add_terminal_command("ls")
        workspace.clear()
        assert workspace.build_prompt(True) == ""
