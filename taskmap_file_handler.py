import json
import logging
from pathlib import Path

from taskmap_errors import MalformedDocumentError
from taskmap_models import Document
from taskmap_serializer import parse_document

logger = logging.getLogger(__name__)


class FileHandler:
    """
    Reads persisted mind-map documents from disk.

    Like the exporter, it reports failures as `(None, error_message)` rather
    than raising, so the caller can show the reason and keep the current
    canvas untouched.
    """

    SUPPORTED_EXTENSIONS = {'.json'}

    def read_json(self, file_path) -> tuple[dict | None, str | None]:
        """
        Reads and decodes a JSON file without validating its shape.

        Args:
            file_path (str | Path): The path of the file to read.

        Returns:
            tuple[dict | None, str | None]: (data, error_message). Exactly one of
                                            the two is None.
        """
        path = Path(file_path)
        if not path.is_file():
            return None, f"File not found: {file_path}"

        ext = path.suffix.lower()
        if ext not in self.SUPPORTED_EXTENSIONS:
            return None, f"Unsupported file type: {ext}"

        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f), None
        except json.JSONDecodeError as e:
            return None, f"File '{path.name}' is not valid JSON: {e}"
        except RecursionError:
            return None, f"File '{path.name}' is nested too deeply to read."
        except (OSError, UnicodeDecodeError) as e:
            return None, f"Error reading file '{path.name}': {e}"

    def read_document(self, file_path) -> tuple[Document | None, str | None]:
        """Reads a file and validates it as a persisted document."""
        data, error = self.read_json(file_path)
        if error:
            logger.warning(error)
            return None, error
        try:
            return parse_document(data), None
        except MalformedDocumentError as e:
            logger.warning("Rejected %s: %s", file_path, e)
            return None, f"Invalid mind map file '{Path(file_path).name}': {e}"
