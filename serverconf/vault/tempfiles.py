"""
Scoped temporary files for decrypted plaintext.

Plaintext never outlives the operation that needed it: every file created
by ``scoped_tempfile`` is unlinked when the ``with`` block exits, whether it
returns, raises, or is interrupted. Files are created 0600, preferably on
``/dev/shm`` so they never reach a disk-backed filesystem.

Signals that would otherwise kill the process without unwinding (SIGTERM,
SIGHUP) are turned into ``SystemExit`` by ``install_signal_handlers`` so the
``finally`` clauses run; an ``atexit`` hook removes anything still
registered.
"""
import os
import atexit
import signal
import logging
import tempfile
from pathlib import Path
from typing import Optional
from contextlib import contextmanager
from collections.abc import Iterator

logger = logging.getLogger("serverconf.vault")

MEMORY_TMPDIR = "/dev/shm"
PREFIX = "serverconf-"

_live: set[Path] = set()


def temp_dir() -> Optional[str]:
    """Return a memory-backed directory when available, else the default."""
    if os.path.isdir(MEMORY_TMPDIR) and os.access(MEMORY_TMPDIR, os.W_OK | os.X_OK):
        return MEMORY_TMPDIR
    return None


def live_tempfiles() -> frozenset[Path]:
    """Return the scoped temp files that currently exist."""
    return frozenset(_live)


def _remove(path: Path) -> None:
    _live.discard(path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass


@contextmanager
def scoped_tempfile(
    suffix: str = "",
    content: Optional[bytes] = None,
    directory: Optional[str] = None,
) -> Iterator[Path]:
    """Create a 0600 temp file, optionally filled with ``content``.

    The file is removed on every exit path of the ``with`` block.
    """
    fd, name = tempfile.mkstemp(
        suffix=suffix, prefix=PREFIX, dir=directory or temp_dir(),
    )
    path = Path(name)
    _live.add(path)
    try:
        with os.fdopen(fd, "wb") as fh:
            os.fchmod(fh.fileno(), 0o600)
            if content:
                fh.write(content)
        yield path
    finally:
        _remove(path)
        logger.debug("Removed temporary file %s", path)


def cleanup() -> None:
    """Remove every scoped temp file still registered."""
    for path in list(_live):
        _remove(path)


def _terminate(signum, frame):
    logger.warning(
        "Received signal %s, cleaning up", signal.Signals(signum).name,
    )
    raise SystemExit(128 + signum)


def install_signal_handlers(signals=(signal.SIGTERM, signal.SIGHUP)) -> None:
    """Unwind the stack on termination signals so scoped cleanup runs."""
    for sig in signals:
        signal.signal(sig, _terminate)


atexit.register(cleanup)
