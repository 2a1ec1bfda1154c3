"""Locate a model artifact on disk from an ordered list of candidates."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".gguf"


def find_model_path(
    candidates: Sequence[str],
    search_dirs: Iterable[str | Path],
) -> Path | None:
    """
    Return the first existing model file, or None.

    Search directories are tried in order, and within each directory the
    candidates are tried in order: a model shipped in the first directory
    wins over anything placed in a later one.

    Args:
        candidates: Base names, with or without the `.gguf` suffix
            (e.g. "medgemma-4b-instruct.Q4_K_M").
        search_dirs: Directories to look in (bundle dir, documents dir, ...).
    """
    dirs = [Path(d).expanduser() for d in search_dirs]
    filenames = [name if name.endswith(MODEL_SUFFIX) else f"{name}{MODEL_SUFFIX}" for name in candidates]
    for directory in dirs:
        for filename in filenames:
            path = directory / filename
            if path.is_file():
                logger.debug("Found model candidate %s", path)
                return path
    return None
