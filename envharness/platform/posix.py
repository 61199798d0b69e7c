from __future__ import annotations

import os
import signal
from typing import Dict

import psutil

from .base import PlatformSupport


class PosixPlatformSupport(PlatformSupport):
    """Platform helpers for Unix-like systems."""

    def configure_popen(self, popen_kwargs: Dict[str, object]) -> None:
        popen_kwargs.setdefault("start_new_session", True)

    def kill_process_tree(self, pid: int) -> None:
        descendants = self.collect_descendant_pids(pid)

        try:
            pgid = os.getpgid(pid)
        except ProcessLookupError:
            pgid = None

        try:
            if pgid is not None and pgid != os.getpgid(0):
                os.killpg(pgid, signal.SIGKILL)
            else:
                os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

        # Children that moved to their own group survive killpg.
        for child_pid in descendants:
            try:
                psutil.Process(child_pid).kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
