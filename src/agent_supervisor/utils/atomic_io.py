"""Atomic file I/O operations."""

import os
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Owner read/write only. Used for anything holding PIDs, paths or secrets.
PRIVATE_FILE_MODE = 0o600


def _write_tmp(tmp_file: Path, content: str, mode: Optional[int]) -> None:
    """Write the temp file, restricting its permissions before any content lands."""
    if mode is None:
        tmp_file.write_text(content)
        return

    # A leftover temp file keeps its old mode through O_TRUNC
    if tmp_file.exists():
        tmp_file.unlink()
    fd = os.open(tmp_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "w") as f:
        os.fchmod(f.fileno(), mode)
        f.write(content)


def atomic_write_text(
    file_path: Path,
    content: str,
    *,
    mode: Optional[int] = None,
    max_retries: int = 3,
) -> None:
    """
    Atomically write content to a file using temp file + rename.

    The file is either fully written or not written at all, so a crash
    mid-write never leaves a truncated state file behind.

    Args:
        file_path: Target file path
        content: Content to write
        mode: Permission bits the temp file is created with, before any content is written
        max_retries: Maximum number of retry attempts on failure

    Raises:
        OSError: If write fails after all retries
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    # Use PID to avoid temp file collisions between processes
    tmp_file = file_path.with_suffix(f"{file_path.suffix}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            _write_tmp(tmp_file, content, mode)
            tmp_file.rename(file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
            continue
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_model(
    file_path: Path,
    model: BaseModel,
    *,
    mode: Optional[int] = None,
    indent: int = 2,
) -> None:
    """Atomically write a Pydantic model to a JSON file."""
    atomic_write_text(file_path, model.model_dump_json(indent=indent), mode=mode)
