from __future__ import annotations

import logging
import os
from typing import Optional, Union

ENV_LOG_LEVEL = "BBDPRE_LOG_LEVEL"
ENV_DEBUG = "BBDPRE_DEBUG"

_LOG_FORMAT = "%(asctime)s %(levelname)s [rank=%(rank)s] [%(name)s] %(message)s"


def resolve_level(value: Union[str, int, None], fallback: int) -> int:
    """Accept 10 / "10" / "debug" / logging.DEBUG; anything unknown gives fallback."""
    if value is None:
        return fallback
    if isinstance(value, int):
        return value
    name = str(value).strip().upper()
    if name.isdigit():
        return int(name)
    level = logging.getLevelName(name) if name else None
    return level if isinstance(level, int) else fallback


def get_rank(comm=None) -> int:
    """
    Rank of this process in comm (mpi4py style), COMM_WORLD, or 0 without MPI.
    """
    if comm is not None and hasattr(comm, "Get_rank"):
        return int(comm.Get_rank())
    try:
        from mpi4py import MPI
    except ImportError:
        return 0
    return int(MPI.COMM_WORLD.Get_rank())


def is_root_rank(comm=None) -> bool:
    return get_rank(comm) == 0


def get_log_level_from_env(default: Union[str, int] = "INFO") -> int:
    """
    Level from BBDPRE_LOG_LEVEL; BBDPRE_DEBUG=1/true/yes/on forces DEBUG.
    """
    base = resolve_level(default, logging.INFO)
    explicit = os.environ.get(ENV_LOG_LEVEL, "").strip()
    if explicit:
        return resolve_level(explicit, base)
    debug: Optional[str] = os.environ.get(ENV_DEBUG)
    if debug is not None and debug.strip().lower() in ("1", "true", "yes", "on"):
        return logging.DEBUG
    return base


class _RankFilter(logging.Filter):
    def __init__(self, rank: int) -> None:
        super().__init__()
        self.rank = int(rank)

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def setup_logging(rank: int, *, level: int, quiet_nonroot: bool = True) -> None:
    """
    Configure root logging once, tag records with the rank and keep console
    output of non-root ranks at WARNING or above unless quiet_nonroot=False.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)

    console_level = max(level, logging.WARNING) if (quiet_nonroot and rank != 0) else level
    for handler in root.handlers:
        if not any(isinstance(f, _RankFilter) for f in handler.filters):
            handler.addFilter(_RankFilter(rank))
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(console_level)
