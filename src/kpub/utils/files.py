from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


def write_bytes_atomic(path: Path, payload: bytes, *, mode: int = 0o600) -> None:
    """Replace ``path`` with ``payload`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def make_work_dir(root: Path, *, prefix: str = "kpub-") -> Path:
    """Create a fresh directory under ``root`` that no other caller shares."""
    root.mkdir(parents=True, exist_ok=True)
    return Path(tempfile.mkdtemp(prefix=prefix, dir=root))


def remove_tree(path: Path | None) -> bool:
    if path is None:
        return False
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    return True
