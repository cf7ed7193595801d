import html
import logging
from datetime import datetime

import markdown

from taskmap_models import Document, html_to_text
from taskmap_serializer import dumps

logger = logging.getLogger(__name__)

MARKDOWN_HEADER = "Mind Map Export"

PRIORITY_LABELS = {'low': "Low", 'medium': "Medium", 'high': "High"}
STATUS_LABELS = {'todo': "To do", 'in_progress': "In progress", 'done': "Done"}


def format_timestamp(value: str) -> str:
    """Renders an ISO timestamp as 'YYYY-MM-DD HH:MM:SS' in local time; unparsable values pass through."""
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone()
    return parsed.strftime('%Y-%m-%d %H:%M:%S')


def document_to_markdown(document: Document, header: str = MARKDOWN_HEADER) -> str:
    """
    Renders the first theme of a document as Markdown.

    Root nodes are at depth 1 and every node becomes a heading of level
    depth + 2, capped at 6, followed by its metadata bullets and the plain
    text of its description. The projection is read-only.

    Args:
        document (Document): The document to render.
        header (str, optional): Text of the top-level heading.

    Returns:
        str: The Markdown text.
    """
    text = f"# {header}\n\n"
    if not document.mind_maps:
        return text + "No content"

    theme = document.mind_maps[0]
    text += f"## {theme.title or 'Theme'}\n\n"

    if theme.start_date or theme.due_date:
        text += "### Theme details\n\n"
        if theme.start_date:
            text += f"- **Start date**: {theme.start_date}\n"
        if theme.due_date:
            text += f"- **Due date**: {theme.due_date}\n"
        if theme.created_at:
            text += f"- **Created**: {format_timestamp(theme.created_at)}\n"
        if theme.updated_at:
            text += f"- **Updated**: {format_timestamp(theme.updated_at)}\n"
        text += "\n"

    stack = [(child, 1) for child in reversed(theme.children)]
    while stack:
        node, depth = stack.pop()
        text += _render_node(node, depth)
        stack.extend((child, depth + 1) for child in reversed(node.children))
    return text


def _render_node(node, depth):
    """Renders a single node's heading, metadata and description, without its children."""
    prefix = '#' * min(depth + 2, 6)
    text = f"{prefix} {node.title or 'Untitled'}\n\n"

    meta = []
    if node.priority:
        meta.append(f"- **Priority**: {PRIORITY_LABELS[node.priority.value]}")
    if node.status:
        meta.append(f"- **Status**: {STATUS_LABELS[node.status.value]}")
    if node.start_date:
        meta.append(f"- **Start date**: {node.start_date}")
    if node.due_date:
        meta.append(f"- **Due date**: {node.due_date}")
    if node.created_at:
        meta.append(f"- **Created**: {format_timestamp(node.created_at)}")
    if node.tags:
        meta.append(f"- **Tags**: {', '.join(node.tags)}")
    if meta:
        text += "\n".join(meta) + "\n\n"

    description = html_to_text(node.description, separator="\n")
    if description:
        text += f"**Description**:\n\n{description}\n\n"

    return text


class Exporter:
    """
    Writes a document, or its Markdown projection, to disk.

    Each method returns `(ok, error_message)` instead of raising, so a caller
    that writes several formats can report exactly which of them failed.
    """

    def export_to_json(self, document: Document, file_path):
        """Writes the persisted JSON form of `document`."""
        try:
            content = dumps(document)
        except RecursionError:
            logger.warning("Could not encode %s: the tree is nested too deeply", file_path)
            return False, "The mind map is nested too deeply to encode as JSON."
        return self._write(file_path, content)

    def export_to_md(self, content, file_path):
        """
        Writes Markdown text to a .md file.

        Args:
            content (str): The Markdown string to write to the file.
            file_path (str | Path): The full path of the file to save.

        Returns:
            tuple[bool, str | None]: A success flag and an error message if an error occurred.
        """
        return self._write(file_path, content)

    def export_to_html(self, content, file_path, title=MARKDOWN_HEADER):
        """
        Converts Markdown content to a standalone, lightly styled HTML page and writes it.

        Returns:
            tuple[bool, str | None]: A success flag and an error message if an error occurred.
        """
        html_body = markdown.markdown(content, extensions=['fenced_code', 'tables'])
        html_content = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{html.escape(title)}</title>
    <style>
        body {{ font-family: sans-serif; line-height: 1.6; padding: 2em; background-color: #f4f4f4; color: #333; }}
        .container {{ max-width: 800px; margin: auto; background: white; padding: 2em; border-radius: 8px; }}
        h3, h4, h5, h6 {{ margin-bottom: 0.3em; }}
    </style>
</head>
<body>
    <div class="container">
        {html_body}
    </div>
</body>
</html>
"""
        return self._write(file_path, html_content)

    def _write(self, file_path, content):
        try:
            with open(file_path, 'w', encoding='utf-8') as f:
                f.write(content)
            logger.debug("Wrote %s", file_path)
            return True, None
        except OSError as e:
            logger.warning("Could not write %s: %s", file_path, e)
            return False, str(e)
