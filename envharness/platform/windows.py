from __future__ import annotations

import subprocess
from typing import Dict

import psutil

from .base import PlatformSupport


class WindowsPlatformSupport(PlatformSupport):
    """Platform helpers for Windows hosts."""

    def configure_popen(self, popen_kwargs: Dict[str, object]) -> None:
        creationflags = 0
        if hasattr(subprocess, "CREATE_NEW_PROCESS_GROUP"):
            creationflags = subprocess.CREATE_NEW_PROCESS_GROUP
        popen_kwargs["creationflags"] = creationflags

    def kill_process_tree(self, pid: int) -> None:
        result = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=5,
        )
        if result.returncode == 0:
            return

        # taskkill refuses some trees; fall back to killing children directly.
        for child_pid in self.collect_descendant_pids(pid):
            try:
                psutil.Process(child_pid).kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        try:
            psutil.Process(pid).kill()
        except psutil.NoSuchProcess:
            pass
