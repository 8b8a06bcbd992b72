from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import FileNotFoundForReload

RELOAD_SENTINEL = b"\n// reload trigger"


def resolve_reload_file(raw: Optional[Union[str, Path]]) -> Optional[Path]:
    """Absolute path of the reload target, None when no file was given."""
    if not raw:
        return None
    path = Path(raw).expanduser().resolve()
    if not path.is_file():
        raise FileNotFoundForReload(raw)
    return path


@contextmanager
def sentinel_write(path: Path, sentinel: bytes = RELOAD_SENTINEL) -> Iterator[bytes]:
    """Append sentinel to path for the duration of the block, then restore the original bytes."""
    original = path.read_bytes()
    path.write_bytes(original + sentinel)
    try:
        yield original
    finally:
        path.write_bytes(original)
