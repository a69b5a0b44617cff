"""File helpers for configs, job files and compiled programs.

Programs are written with tmp-file -> fsync -> rename so a controller or a
DNC transfer never picks up a half-written ``.mpf``.  YAML is loaded with
``safe_load`` and errors name the offending file.
"""

import os
from pathlib import Path
from typing import Any, Union

import yaml

PathLike = Union[str, Path]


def ensure_dir(p: PathLike) -> Path:
    """Create *p* (and parents) if missing; return it as a Path."""
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p


def atomic_write_bytes(path: PathLike, data: bytes, tmp_suffix: str = ".tmp") -> None:
    """Replace *path* with *data* in one rename.

    The temp file sits next to the target so the rename never crosses a
    filesystem boundary.  On failure the temp file is removed and the
    original target, if any, is left untouched.

    Raises
    ------
    RuntimeError
        If writing or renaming fails.
    """
    target = Path(path)
    ensure_dir(target.parent)
    staging = target.with_name(target.name + tmp_suffix)

    try:
        with open(staging, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        staging.replace(target)
    except OSError as e:
        staging.unlink(missing_ok=True)
        raise RuntimeError(f"Could not write {target}: {e}") from e


def atomic_write_text(path: PathLike, text: str, encoding: str = "utf-8") -> None:
    """Text variant of :func:`atomic_write_bytes` (used for G-code programs)."""
    atomic_write_bytes(path, text.encode(encoding))


def load_yaml(path: PathLike) -> Any:
    """Parse a YAML (or JSON) document.

    Returns whatever the document holds; an empty file yields ``None``.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    yaml.YAMLError
        On a syntax error, with the file name in the message.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"YAML file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"{path.name}: invalid YAML ({e})") from e
