# Shared utilities. Explicit re-exports for a clean public API.

from .io import (
    ensure_dir as ensure_dir,
    load_json as load_json,
    load_yaml as load_yaml,
    save_json as save_json,
    save_yaml as save_yaml,
)
from .logs import init_logger as init_logger
from .manifest import Manifest as Manifest, write_manifest as write_manifest
from .seed import seed_everything as seed_everything
from .timers import Timer as Timer, timed as timed

__all__ = [
    "seed_everything",
    "ensure_dir",
    "load_json",
    "load_yaml",
    "save_json",
    "save_yaml",
    "init_logger",
    "Manifest",
    "write_manifest",
    "Timer",
    "timed",
]
