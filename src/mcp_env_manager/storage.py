from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class PersistenceError(RuntimeError):
    pass


def load_document(path: Path, model: type[ModelT], default: ModelT | None = None) -> ModelT:
    """Load and validate a JSON document; a missing file yields ``default``."""
    if not path.exists():
        if default is None:
            raise PersistenceError(f"File not found at {path}")
        return default

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"Invalid JSON in {path}: {exc}") from exc
    except OSError as exc:
        raise PersistenceError(f"Cannot read {path}: {exc}") from exc

    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise PersistenceError(f"Validation failed for {path}: {exc}") from exc


def write_document(path: Path, document: BaseModel) -> None:
    """Write ``document`` atomically: temp file in the same directory, fsync, rename.

    Readers see either the previous file or the new one, never a partial write.
    """
    payload = document.model_dump_json(indent=2, by_alias=True, exclude_none=True)
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise PersistenceError(f"Cannot write {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.debug("Could not remove temp file %s", tmp_name)
    logger.debug("Wrote %s", path)
