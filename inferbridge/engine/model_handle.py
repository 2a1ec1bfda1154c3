"""Ownership of one loaded model and its native inference context."""

from __future__ import annotations

import logging
import time
from typing import Any

from .adapters.base import BaseAdapter
from .config import ModelConfig
from .errors import EngineInitFailed, LoadError, ModelOutOfMemory
from .registry import get_adapter
from .types import ModelStatus

logger = logging.getLogger(__name__)


class ModelHandle:
    """A loaded model, exclusively owning its adapter.

    Handles are only ever created through `ModelHandle.load()`, which either
    returns a LOADED handle or raises a `LoadError`; a partially initialized
    handle never escapes. After `unload()` the status is UNLOADED and the
    handle refuses further use.
    """

    def __init__(self, *, path: str, family: str, adapter: BaseAdapter, config: ModelConfig) -> None:
        self._path = path
        self._family = family
        self._adapter = adapter
        self._config = config
        self._status = ModelStatus.LOADED

    @classmethod
    def load(
        cls,
        path: str,
        *,
        family: str = "llama_cpp",
        config: ModelConfig | None = None,
    ) -> "ModelHandle":
        """Load `path` with the adapter registered for `family`.

        Raises:
            LoadError: ModelFileNotFound, UnsupportedModelFormat,
                ModelOutOfMemory or EngineInitFailed. No retry is attempted.
        """
        config = config or ModelConfig()
        adapter = get_adapter(family)
        started = time.monotonic()
        try:
            adapter.load(path, config)
        except LoadError as exc:
            logger.warning("Model load failed (%s): %s", exc.kind.value, exc.message)
            _release(adapter)
            raise
        except MemoryError as exc:
            logger.warning("Model load ran out of memory: %s", path)
            _release(adapter)
            raise ModelOutOfMemory(path, str(exc) or "allocation failed") from exc
        except Exception as exc:
            logger.exception("Unexpected error while loading %s", path)
            _release(adapter)
            raise EngineInitFailed(path, str(exc)) from exc

        logger.info("Loaded %s model %s in %.2fs", family, path, time.monotonic() - started)
        return cls(path=path, family=family, adapter=adapter, config=config)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def path(self) -> str:
        return self._path

    @property
    def family(self) -> str:
        return self._family

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def is_loaded(self) -> bool:
        return self._status is ModelStatus.LOADED

    @property
    def config(self) -> ModelConfig:
        return self._config

    @property
    def adapter(self) -> BaseAdapter:
        """The native engine; only the generation engine holding the session may drive it."""
        if not self.is_loaded:
            raise RuntimeError(f"Model handle for {self._path} is {self._status.value}.")
        return self._adapter

    @property
    def model_info(self) -> dict[str, Any]:
        info = dict(self._adapter.model_info) if self.is_loaded else {"model_path": self._path}
        info["family"] = self._family
        info["status"] = self._status.value
        return info

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def unload(self) -> None:
        """Release the native context. Idempotent."""
        if self._status is ModelStatus.UNLOADED:
            return
        self._status = ModelStatus.UNLOADED
        _release(self._adapter)
        logger.info("Unloaded model %s", self._path)

    def __repr__(self) -> str:
        return f"ModelHandle(path={self._path!r}, family={self._family!r}, status={self._status.value})"


def _release(adapter: BaseAdapter) -> None:
    try:
        adapter.unload()
    except Exception:
        logger.warning("Adapter unload failed", exc_info=True)
