"""JSON document store for the task file."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import (
    INVALID_TASKS_FILE,
    STORE_ERROR,
    DocumentStoreError,
    TaskValidationError,
)
from .models import TaskDocument


logger = logging.getLogger("taskweave.store")


def _atomic_write(target_path: Path, content: str) -> None:
    temp_path: Optional[Path] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=target_path.parent, delete=False
        ) as temp_file:
            temp_path = Path(temp_file.name)
            temp_file.write(content)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, target_path)
    finally:
        if temp_path is not None and temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.warning(f"Could not remove temporary file {temp_path}")


class JsonDocumentStore:
    """Load and store whole task documents."""

    def load(self, path: Path) -> Optional[TaskDocument]:
        """Return the document at ``path``, or None when the file does not exist."""
        path = Path(path)
        if not path.exists():
            return None
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise DocumentStoreError(f"Could not read tasks file {path}: {e}", code=STORE_ERROR) from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DocumentStoreError(
                f"Tasks file {path} is not valid JSON: {e}", code=INVALID_TASKS_FILE
            ) from e
        try:
            document = TaskDocument.from_dict(data)
        except TaskValidationError as e:
            raise DocumentStoreError(
                f"Tasks file {path} is invalid: {e}", code=INVALID_TASKS_FILE
            ) from e
        logger.debug(f"Loaded {len(document.tasks)} task(s) from {path}")
        return document

    def store(self, path: Path, document: TaskDocument) -> None:
        """Write ``document`` to ``path``; the previous file survives a failed write."""
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, json.dumps(document.to_dict(), indent=2) + "\n")
        except (OSError, TypeError, ValueError) as e:
            raise DocumentStoreError(f"Could not write tasks file {path}: {e}", code=STORE_ERROR) from e
        logger.debug(f"Stored {len(document.tasks)} task(s) to {path}")
