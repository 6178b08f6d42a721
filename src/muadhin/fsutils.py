from __future__ import annotations

import os
from pathlib import Path
import tempfile


def atomic_write_text(path: Path, payload: str) -> None:
    """Replace ``path`` with ``payload`` so readers see the old or the new file, never a mix.

    Raises ``OSError`` when the write fails; the previous file is left as it was.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
