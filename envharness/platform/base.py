from __future__ import annotations

from typing import Any, Dict, List, Sequence

import psutil


class PlatformSupport:
    """Abstract base class describing platform specific process handling."""

    def __init__(self, *, verbose: bool = False) -> None:
        self.verbose = verbose

    def configure_popen(self, popen_kwargs: Dict[str, Any]) -> None:
        """Mutate ``popen_kwargs`` so the child gets its own process group."""

        popen_kwargs.setdefault("start_new_session", True)

    def kill_process_tree(self, pid: int) -> None:
        """Terminate ``pid`` and its children."""

        raise NotImplementedError

    def collect_descendant_pids(self, root_pid: int) -> List[int]:
        """Return all descendant process IDs for ``root_pid``."""

        try:
            root = psutil.Process(root_pid)
            return [child.pid for child in root.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def kill_processes_named(self, names: Sequence[str]) -> List[int]:
        """Kill every process whose executable name matches one of ``names``.

        Matching ignores case and a trailing ``.exe``. Returns the killed PIDs.
        """

        wanted = {self._normalize_name(name) for name in names if name}
        killed: List[int] = []
        if not wanted:
            return killed

        for proc in psutil.process_iter(["name"]):
            name = self._normalize_name(proc.info.get("name") or "")
            if name not in wanted:
                continue
            try:
                proc.kill()
                killed.append(proc.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return killed

    def is_running(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    @staticmethod
    def _normalize_name(name: str) -> str:
        lowered = name.lower()
        if lowered.endswith(".exe"):
            return lowered[:-4]
        return lowered
