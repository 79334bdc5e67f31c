"""On-disk cache for profile collections and other Python objects.

The cache is deliberately opaque: an object is pickled to a single file
named by ``(directory, filename)`` and the only invariant checked on the way
back in is that the file can be read.  Staleness is the caller's business;
delete the file or pass ``cache=False`` to the orchestrator to rebuild.
"""

from __future__ import annotations

import logging
import os
import pickle
import tempfile
from pathlib import Path
from typing import Any, Optional, Union

from .settings import SnapshotSettings, default_data_dir

__all__ = [
    "LOAD_FAILED",
    "LoadFailed",
    "cache_labtaxa",
    "ldm_data_dir",
    "load",
    "load_labmorph",
    "load_labtaxa",
    "save",
]

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class LoadFailed:
    """Marker returned by :func:`load` when a silent load could not read the cache."""

    _instance: Optional["LoadFailed"] = None

    def __new__(cls) -> "LoadFailed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "LOAD_FAILED"

    def __reduce__(self) -> str:
        return "LOAD_FAILED"


LOAD_FAILED = LoadFailed()


def ldm_data_dir() -> Path:
    """Return the default snapshot directory, creating it when needed."""

    directory = default_data_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def save(obj: Any, directory: PathLike, filename: str) -> Path:
    """Pickle ``obj`` to ``directory/filename`` and return the path written.

    Raises:
        OSError: If the directory cannot be created or the file written, or if
            ``obj`` cannot be serialised.
    """

    target_dir = Path(directory).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / filename
    # Written beside the target and swapped in, so a failed dump keeps the old cache.
    handle = tempfile.NamedTemporaryFile(
        "wb", dir=str(target_dir), prefix=f".{filename}.", suffix=".tmp", delete=False
    )
    temp_path = Path(handle.name)
    try:
        with handle:
            pickle.dump(obj, handle, protocol=pickle.HIGHEST_PROTOCOL)
        temp_path.replace(path)
    except (pickle.PicklingError, TypeError, AttributeError) as exc:
        temp_path.unlink(missing_ok=True)
        raise OSError(f"Failed to serialise object to {path}: {exc}") from exc
    except OSError:
        temp_path.unlink(missing_ok=True)
        raise
    if path.stat().st_size == 0:
        logger.warning("Cache file %s is empty", path, extra={"stage": "cache", "path": path})
    return path


def load(directory: PathLike, filename: str, silent: bool = False) -> Any:
    """Unpickle ``directory/filename``.

    Returns:
        The cached object, or :data:`LOAD_FAILED` when ``silent`` is true and
        the file is missing, unreadable, or corrupt.
    """

    path = Path(directory).expanduser() / filename
    try:
        with path.open("rb") as handle:
            return pickle.load(handle)
    except Exception as exc:
        if not silent:
            raise
        logger.debug("Cache load failed for %s: %s", path, exc, extra={"stage": "cache"})
        return LOAD_FAILED


def cache_labtaxa(
    obj: Any,
    filename: str = "cached-LDM-SPC.pkl",
    destdir: Optional[PathLike] = None,
) -> Path:
    """Cache ``obj`` under the default Lab Data Mart cache name."""

    return save(obj, destdir if destdir is not None else default_data_dir(), filename)


def load_labtaxa(
    filename: str = "cached-LDM-SPC.pkl",
    destdir: Optional[PathLike] = None,
    silent: bool = False,
) -> Any:
    """Load the cached Lab Data Mart collection."""

    return load(destdir if destdir is not None else default_data_dir(), filename, silent=silent)


def load_labmorph(
    filename: Optional[str] = None,
    destdir: Optional[PathLike] = None,
    silent: bool = False,
) -> Any:
    """Load the cached companion morphologic collection."""

    name = filename or SnapshotSettings.model_fields["companioncachename"].default
    return load_labtaxa(name, destdir, silent=silent)
