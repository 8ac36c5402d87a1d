"""Conversation export.

Handles exporting a conversation to a downloadable JSON document or Markdown.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path

from .models import JSON, Conversation, utcnow


def export_conversation(conversation: Conversation, *, exported_at: datetime | None = None) -> dict[str, JSON]:
    """Build the export document for a conversation.

    Args:
        conversation: Conversation to export
        exported_at: Export time; now by default

    Returns:
        Dict with title, messages, createdAt, context and exportedAt
    """
    exported_at = exported_at or utcnow()
    return {
        "title": conversation.title,
        "messages": [m.to_dict(include_status=False) for m in conversation.messages],
        "createdAt": conversation.created_at.isoformat(),
        "context": conversation.context.to_dict(),
        "exportedAt": exported_at.isoformat(),
    }


def export_json(conversation: Conversation, indent: int | None = 2) -> str:
    return json.dumps(export_conversation(conversation), indent=indent, ensure_ascii=False)


def export_markdown(conversation: Conversation) -> str:
    """Export a conversation to Markdown.

    Args:
        conversation: Conversation to export

    Returns:
        Formatted markdown string
    """
    lines = [f"# {conversation.title}", ""]
    lines.append(f"**Exported:** {utcnow().strftime('%B %d, %Y at %I:%M %p')} UTC")
    if conversation.context.project_name:
        lines.append(f"**Project:** {conversation.context.project_name}")

    models = sorted({m.model for m in conversation.messages if m.model})
    if models:
        models_str = ", ".join(models[:3])
        if len(models) > 3:
            models_str += f" (+{len(models) - 3} more)"
        lines.append(f"**Models Used:** {models_str}")

    lines.extend(["", "---", ""])

    for message in conversation.messages:
        header = "## User" if message.role == "user" else "## Assistant"
        header += f" ({message.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.append(header)
        lines.append("")
        if message.context is not None and message.context.files:
            lines.append(f"*Files: {', '.join(message.context.files)}*")
            lines.append("")
        lines.append(message.content)
        lines.append("")

    return "\n".join(lines)


def generate_export_filename(conversation: Conversation, suffix: str = ".json") -> str:
    """Timestamped, filesystem-safe filename for a conversation export."""
    stem = "".join(c if c.isalnum() or c in "-_" else "_" for c in conversation.title).strip("_")
    timestamp = utcnow().strftime("%Y-%m-%d_%H%M%S")
    return f"{stem or 'conversation'}_{timestamp}{suffix}"


def save_export(path: Path, conversation: Conversation) -> Path:
    """Write a conversation export; ``.md`` paths get Markdown, anything else JSON."""
    content = export_markdown(conversation) if path.suffix == ".md" else export_json(conversation)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
