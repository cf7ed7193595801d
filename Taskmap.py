# Taskmap.py

import logging
import sys
from pathlib import Path

from PySide6.QtCore import QCoreApplication, QCommandLineOption, QCommandLineParser

import taskmap_config as config
from taskmap_config import LayoutConfig
from taskmap_core import EditorSession, safe_filename

logger = logging.getLogger(__name__)


def build_parser():
    parser = QCommandLineParser()
    parser.setApplicationDescription("Lays out and exports Taskmap mind-map documents.")
    parser.addHelpOption()
    parser.addVersionOption()
    parser.addPositionalArgument("document", "The mind-map JSON document to open.")

    options = {
        'layout': QCommandLineOption(["l", "layout"], "Run the automatic layout before exporting."),
        'direction': QCommandLineOption(
            ["d", "direction"], "Layout direction: LR, RL, TB or BT.", "direction", config.DEFAULT_DIRECTION),
        'format': QCommandLineOption(
            ["f", "format"], "Export format: md, html or json.", "format", "md"),
        'output': QCommandLineOption(
            ["o", "output"], "Output directory (defaults to the document's directory).", "directory"),
        'verbose': QCommandLineOption(["v", "verbose"], "Enable debug logging."),
    }
    for option in options.values():
        parser.addOption(option)
    return parser, options


def main(argv=None):
    """
    Opens a mind-map document headlessly, optionally lays it out, and exports it.

    Returns:
        int: The process exit code.
    """
    argv = list(argv or sys.argv)
    app = QCoreApplication.instance() or QCoreApplication(argv)
    app.setApplicationName("Taskmap")
    app.setApplicationVersion("0.1.0")

    parser, options = build_parser()
    parser.process(argv)

    logging.basicConfig(
        level=logging.DEBUG if parser.isSet(options['verbose']) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    arguments = parser.positionalArguments()
    if len(arguments) != 1:
        parser.showHelp(1)
    source = Path(arguments[0])

    fmt = parser.value(options['format']).lower()
    if fmt not in ('md', 'html', 'json'):
        logger.error("Unknown export format: %s", fmt)
        return 2

    try:
        layout_config = LayoutConfig(direction=parser.value(options['direction']).upper())
    except ValueError as e:
        logger.error(str(e))
        return 2

    session = EditorSession(layout_config=layout_config)
    ok, error = session.load_file(source)
    if not ok:
        logger.error(error)
        return 1

    if parser.isSet(options['layout']):
        session.auto_layout()

    output_dir = Path(parser.value(options['output']) or source.parent)
    target = output_dir / f"{safe_filename(session.canvas_name)}.{fmt}"
    if fmt == 'json':
        ok, error = session.exporter.export_to_json(session.export_document(), target)
    elif fmt == 'html':
        ok, error = session.exporter.export_to_html(session.export_markdown(), target, title=session.canvas_name)
    else:
        ok, error = session.exporter.export_to_md(session.export_markdown(), target)

    if not ok:
        logger.error("Export failed: %s", error)
        return 1
    logger.info("Exported %s", target)
    return 0


if __name__ == "__main__":
    sys.exit(main())
