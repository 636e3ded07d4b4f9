"""Scoped background refresh task (e.g. keeping a sudo timestamp alive)."""
import logging
import threading
import subprocess
from typing import Optional
from collections.abc import Callable

logger = logging.getLogger("serverconf.vault")


class KeepAlive:
    """Call ``action`` every ``interval`` seconds while the context is open.

    The thread is stopped and joined on exit, so nothing outlives the
    foreground operation.
    """

    def __init__(
        self,
        action: Callable[[], None],
        interval: float = 60.0,
        name: str = "serverconf-keepalive",
    ):
        self.action = action
        self.interval = interval
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.action()
            except Exception as err:
                logger.warning("Keep-alive action failed: %s", err)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started %s (interval=%ss)", self.name, self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
            logger.debug("Stopped %s", self.name)

    def __enter__(self) -> "KeepAlive":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.stop()


def sudo_refresh() -> None:
    """Refresh the sudo credential timestamp without prompting."""
    subprocess.run(
        ["sudo", "-n", "-v"],
        check=True,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
