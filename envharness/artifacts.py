"""Output directory layout for run artifacts.

::

    <output_dir>/
        ctrf-report.json
        logs/<test>.jsonl
        screenshots/<TestClass>/<test_method>/01_label.png
"""
from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Callable, Dict, Optional

from .console import Console


def _safe(part: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", part).strip("_") or "unnamed"


class TestArtifacts:
    __test__ = False

    def __init__(self, output_dir: Path, console: Optional[Console] = None) -> None:
        self.output_dir = Path(output_dir)
        self.screenshots_dir = self.output_dir / "screenshots"
        self.logs_dir = self.output_dir / "logs"
        self.console = console
        self._counters: Dict[Path, int] = {}

    def initialize(self) -> None:
        """Recreate the screenshots directory. Call once per run."""

        if self.screenshots_dir.exists():
            shutil.rmtree(self.screenshots_dir, ignore_errors=True)
        self.screenshots_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def screenshot_dir(self, class_name: str, method: str) -> Path:
        directory = self.screenshots_dir / _safe(class_name) / _safe(method)
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def next_screenshot_path(self, class_name: str, method: str, label: str) -> Path:
        directory = self.screenshot_dir(class_name, method)
        index = self._counters.get(directory, 0) + 1
        self._counters[directory] = index
        return directory / f"{index:02d}_{_safe(label)}.png"

    def capture(
        self,
        class_name: str,
        method: str,
        label: str,
        writer: Callable[[Path], None],
    ) -> Optional[Path]:
        """Call ``writer(path)`` to save a screenshot; return the path or None on failure."""

        path = self.next_screenshot_path(class_name, method, label)
        try:
            writer(path)
        except Exception as exc:
            if self.console is not None:
                self.console.warn(f"Screenshot capture failed: {exc}")
            return None
        return path if path.exists() else None
