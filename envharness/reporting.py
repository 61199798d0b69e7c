from __future__ import annotations

import json
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

from .console import Console
from .results import Report, TestOutcome, TestRecord
from .utils import Color, NullColor, format_duration, truncate


def write_ctrf_report(report: Report, path: Path) -> Path:
    """Write ``report`` as CTRF JSON to ``path``, creating parent directories."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        json.dump(report.to_ctrf(), handle, indent=2)
        handle.write("\n")
    return path


def _duration_color(seconds: Optional[float], color: Union[Type[Color], Type[NullColor]]) -> str:
    if seconds is None:
        return color.GREY
    if seconds < 5:
        return color.GREEN
    if seconds < 15:
        return color.YELLOW
    return color.RED


def _display_class(class_name: str) -> str:
    if class_name.endswith("Tests") and len(class_name) > len("Tests"):
        return class_name[: -len("Tests")]
    return class_name


def _status_marker(record: TestRecord, color: Union[Type[Color], Type[NullColor]]) -> str:
    outcome = record.outcome
    if outcome is TestOutcome.FAILED:
        return f"{color.RED}FAIL{color.RESET}"
    if outcome is TestOutcome.SKIPPED:
        return f"{color.YELLOW}SKIP{color.RESET}"
    if outcome is TestOutcome.PENDING:
        return f"{color.GREY}----{color.RESET}"
    return f"{color.GREEN}PASS{color.RESET}"


def render_summary(report: Report, color: Union[Type[Color], Type[NullColor]] = NullColor) -> List[str]:
    """Render the run summary grouped by group, class and test."""

    grouped = report.grouped()
    names = ["Test", "Total", "Abort Reason"]
    for group, classes in grouped.items():
        names.append(group)
        for class_name, records in classes.items():
            names.append(f"  {_display_class(class_name)}")
            names.extend(f"    {record.method_name}" for record in records)

    test_col_width = max(len(name) for name in names) + 2
    status_col_width = 6
    count_col_width = 7
    duration_col_width = 10
    header_fmt = (
        f"{{:<{test_col_width}}}"
        f" {{:>{status_col_width}}}"
        f" {{:>{count_col_width}}}"
        f" {{:>{duration_col_width}}}"
    )
    table_width = test_col_width + status_col_width + count_col_width + duration_col_width + 3

    if report.aborted:
        title = f"{color.RED}{color.BOLD}Test Run Aborted{color.RESET}"
    elif report.counts[TestOutcome.FAILED]:
        title = f"{color.RED}{color.BOLD}Test Run Failed{color.RESET}"
    else:
        title = f"{color.GREEN}{color.BOLD}Test Run Passed{color.RESET}"

    lines = ["", title, "=" * table_width, header_fmt.format("Test", "Status", "Count", "Duration"), "=" * table_width]

    for group, classes in grouped.items():
        group_records = [record for records in classes.values() for record in records]
        group_duration = sum(record.duration or 0.0 for record in group_records)
        lines.append(
            f"{color.CYAN}{color.BOLD}"
            + header_fmt.format(group, "", len(group_records), format_duration(group_duration))
            + color.RESET
        )
        for class_name, records in classes.items():
            class_duration = sum(record.duration or 0.0 for record in records)
            lines.append(
                header_fmt.format(f"  {_display_class(class_name)}", "", len(records), format_duration(class_duration))
            )
            for record in records:
                # Pad before coloring so ANSI codes do not break alignment.
                status = _status_marker(record, color)
                status_pad = " " * max(0, status_col_width - 4)
                duration = format_duration(record.duration)
                tint = _duration_color(record.duration, color) if duration else ""
                lines.append(
                    f"{f'    {record.method_name}':<{test_col_width}}"
                    f" {status_pad}{status}"
                    f" {'':>{count_col_width}}"
                    f" {tint}{duration:>{duration_col_width}}{color.RESET if tint else ''}"
                )
        lines.append("")

    lines.append("=" * table_width)
    lines.append(header_fmt.format("Total", "", report.total, format_duration(report.duration)))
    if report.aborted and report.abort_reason:
        reason = truncate(report.abort_reason, 60)
        lines.append(f"Abort Reason: {color.RED}{reason}{color.RESET}")
    lines.append(
        "Passed: {} / Failed: {} / Skipped: {} / Pending: {}".format(
            report.counts[TestOutcome.PASSED],
            report.counts[TestOutcome.FAILED],
            report.counts[TestOutcome.SKIPPED],
            report.counts[TestOutcome.PENDING],
        )
    )

    failures = [record for record in report.records if record.failed]
    if failures:
        lines.append("")
        lines.append(f"{color.YELLOW}Failure summary:{color.RESET}")
        for record in failures[:10]:
            message_lines = (record.error or "").splitlines() or [""]
            phase = f" [{record.phase}]" if record.phase else ""
            lines.append(f"  {record.class_name}.{record.method_name}{phase}: {message_lines[0]}")
            for extra in message_lines[1:5]:
                lines.append(f"      {extra}")
        if len(failures) > 10:
            lines.append(f"  ... and {len(failures) - 10} more failure(s)")
    return lines


def print_summary(report: Report, console: Console) -> None:
    for line in render_summary(report, console.color):
        console.raw(line)


class JsonlReporter:
    """Append one JSON object per event to ``<output_dir>/<test>.jsonl``.

    Each line carries ``timestamp``, ``testName``, ``phase``, ``level``,
    ``message``, ``data``, ``screenshotPath`` and ``elapsedMs``.
    """

    def __init__(self, test_name: str, output_dir: Path, enabled: bool = True) -> None:
        self.test_name = test_name
        self.enabled = enabled
        self.path = Path(output_dir) / f"{_safe_filename(test_name)}.jsonl"
        self.phase = "setup"
        self._start = time.monotonic()
        self._lock = threading.Lock()

    def set_phase(self, phase: str) -> None:
        self.phase = phase
        self.log("info", f"phase: {phase}")

    def log(
        self,
        level: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        screenshot_path: Optional[str] = None,
    ) -> None:
        if not self.enabled:
            return
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "testName": self.test_name,
            "phase": self.phase,
            "level": level,
            "message": message,
            "data": data,
            "screenshotPath": screenshot_path,
            "elapsedMs": int((time.monotonic() - self._start) * 1000),
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry) + "\n")

    def info(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.log("info", message, data)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None, screenshot_path: Optional[str] = None) -> None:
        self.log("error", message, data, screenshot_path)


def _safe_filename(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in name) or "test"
