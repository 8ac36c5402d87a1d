"""Workspace context for prompts.

``build_context_prompt`` is a pure function: the same inputs always give the same
string, and missing or malformed inputs are left out rather than raising.
``WorkspaceContext`` is the mutable side that editor, file and terminal panels
update between sends.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from . import config
from .models import ConversationContext, MessageContext


@dataclass(frozen=True)
class ProjectRef:
    """The project the workspace has open."""

    name: str
    id: str | None = None
    path: str | None = None


def _project_name(project: object) -> str | None:
    if project is None:
        return None
    if isinstance(project, Mapping):
        name = project.get("name")
    else:
        name = getattr(project, "name", None)
    if isinstance(name, str) and name.strip():
        return name.strip()
    return None


def _clean_strings(values: object) -> list[str]:
    if values is None or isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
        return []
    return [v.strip() for v in values if isinstance(v, str) and v.strip()]


def build_context_prompt(
    enabled: bool,
    project: ProjectRef | Mapping[str, object] | None = None,
    files: Iterable[str] | None = None,
    selection: str | None = None,
    terminal: Iterable[str] | None = None,
) -> str:
    """Assemble the context block prepended to a user prompt.

    Args:
        enabled: Whether context is switched on; when False the result is ``""``
        project: Open project (anything with a ``name``)
        files: Active file paths, in display order
        selection: Selected code from the editor
        terminal: Terminal commands, oldest first; only the most recent few are used

    Returns:
        The context block, or ``""`` when there is nothing to add
    """
    if not enabled:
        return ""

    lines: list[str] = []

    name = _project_name(project)
    if name:
        lines.append(f"Project: {name}")

    active_files = _clean_strings(files)
    if active_files:
        lines.append(f"Active Files: {', '.join(active_files)}")

    if isinstance(selection, str) and selection.strip():
        lines.append(f"Selected Code:\n```\n{selection.strip()}\n```")

    commands = _clean_strings(terminal)[-config.MAX_PROMPT_TERMINAL_COMMANDS :]
    if commands:
        lines.append(f"Recent Terminal Commands: {', '.join(commands)}")

    if not lines:
        return ""
    return "Workspace Context:\n" + "\n".join(lines)


def compose_prompt(context_prompt: str, text: str) -> str:
    """Prepend a context block to the user's text."""
    if not context_prompt:
        return text
    return f"{context_prompt}\n\nUser Request: {text}"


@dataclass
class WorkspaceContext:
    """Live workspace state that feeds the context prompt."""

    project: ProjectRef | None = None
    active_files: list[str] = field(default_factory=list)
    selection: str | None = None
    terminal_history: list[str] = field(default_factory=list)

    def add_active_file(self, path: str) -> None:
        if path and path not in self.active_files:
            self.active_files.append(path)

    def remove_active_file(self, path: str) -> None:
        self.active_files = [f for f in self.active_files if f != path]

    def set_selection(self, text: str) -> None:
        self.selection = text

    def clear_selection(self) -> None:
        self.selection = None

    def add_terminal_command(self, command: str) -> None:
        if not command:
            return
        self.terminal_history.append(command)
        # Bounded history
        del self.terminal_history[: -config.MAX_TERMINAL_HISTORY]

    def clear(self) -> None:
        self.active_files = []
        self.clear_selection()
        self.terminal_history = []

    def snapshot(self) -> MessageContext:
        """Freeze the current state for storage on a user message."""
        return MessageContext(
            files=tuple(self.active_files),
            terminal=tuple(self.terminal_history[-config.MAX_PROMPT_TERMINAL_COMMANDS :]),
            selection=self.selection or None,
            project_name=self.project.name if self.project else None,
            project_path=self.project.path if self.project else None,
        )

    def conversation_context(self) -> ConversationContext:
        if self.project is None:
            return ConversationContext(active_files=tuple(self.active_files))
        return ConversationContext(
            project_id=self.project.id,
            project_name=self.project.name,
            active_files=tuple(self.active_files),
        )

    def build_prompt(self, enabled: bool) -> str:
        return build_context_prompt(
            enabled,
            project=self.project,
            files=self.active_files,
            selection=self.selection,
            terminal=self.terminal_history,
        )
