"""Crash-safe file helpers for the queue folders.

Every write goes to a hidden sibling temp file first and is then renamed
over the target, so a reader (or a watcher scan) sees either the old or
the new content, never half a file.
"""

import errno
import logging
import os
import tempfile
from pathlib import Path

from plan_models import RelocationError

logger = logging.getLogger("AtomicFiles")

DOCUMENT_SUFFIX = ".md"
TEMP_MARKER = ".tmp-"


def is_queue_document(name: str) -> bool:
    """True for names the watcher and directory scans should pick up."""
    return (
        name.endswith(DOCUMENT_SUFFIX)
        and not name.startswith(".")
        and TEMP_MARKER not in name
    )


def list_documents(folder: Path) -> list[Path]:
    """Return the queue documents in *folder*, sorted by name."""
    if not folder.is_dir():
        return []
    return sorted(p for p in folder.iterdir() if p.is_file() and is_queue_document(p.name))


def read_document(path: Path) -> str:
    # newline="" keeps CRLF documents byte-identical through an edit
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def write_atomically(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=TEMP_MARKER, dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def relocate_file(src: Path, dest_dir: Path) -> Path:
    """Move *src* into *dest_dir*, keeping its name.

    Unlike a plain move this refuses to overwrite an existing file and
    refuses to fall back to copy+delete across volumes; both cases raise
    RelocationError and leave *src* where it was.

    The move is a hard link followed by an unlink, so a file that appears
    at the destination mid-move is never clobbered.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / src.name

    try:
        os.link(src, dest)
    except FileExistsError as exc:
        raise RelocationError(src, dest, "destination already exists") from exc
    except OSError as exc:
        reason = "cross-device move not supported" if exc.errno == errno.EXDEV else exc.strerror or str(exc)
        raise RelocationError(src, dest, reason) from exc

    try:
        os.unlink(src)
    except OSError as exc:
        os.unlink(dest)
        raise RelocationError(src, dest, exc.strerror or str(exc)) from exc

    logger.info("Moved: %s → %s", src.name, dest)
    return dest
