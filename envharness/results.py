"""Run-wide test result registry.

One :class:`ResultAggregator` is created per run and handed to every group
(there is no module level singleton). Records are grouped by group and class;
lookups by name always pick the most recent matching record so re-runs of a
test name do not overwrite earlier outcomes.
"""
from __future__ import annotations

import enum
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional


UNKNOWN_TEST = "(unknown)"


class TestOutcome(enum.Enum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING = "pending"
    OTHER = "other"


@dataclass
class TestRecord:
    __test__ = False

    group: str
    class_name: str
    name: str
    duration: Optional[float] = None
    failed: bool = False
    error: Optional[str] = None
    phase: Optional[str] = None
    artifact: Optional[str] = None
    skipped: bool = False
    skip_reason: Optional[str] = None

    @property
    def outcome(self) -> TestOutcome:
        if self.failed:
            return TestOutcome.FAILED
        if self.skipped:
            return TestOutcome.SKIPPED
        if self.duration is None:
            return TestOutcome.PENDING
        return TestOutcome.PASSED

    @property
    def method_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    def to_ctrf(self) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "name": self.name,
            "status": self.outcome.value,
            "duration": int(round((self.duration or 0.0) * 1000)),
            "suite": self.class_name,
        }
        if self.failed and self.error:
            entry["message"] = self.error
        elif self.skipped and self.skip_reason:
            entry["message"] = self.skip_reason
        if self.phase:
            entry["extra"] = {"phase": self.phase}
        if self.artifact:
            entry["attachments"] = [{"name": "screenshot", "path": self.artifact, "contentType": "image/png"}]
        return entry


@dataclass
class Report:
    records: List[TestRecord]
    start: float
    stop: float
    aborted: bool = False
    abort_reason: Optional[str] = None
    tool_name: str = "pytest"
    counts: Dict[TestOutcome, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = {outcome: 0 for outcome in TestOutcome}
            for record in self.records:
                self.counts[record.outcome] += 1

    @property
    def total(self) -> int:
        return len(self.records)

    @property
    def duration(self) -> float:
        return max(0.0, self.stop - self.start)

    @property
    def succeeded(self) -> bool:
        return not self.aborted and self.counts[TestOutcome.FAILED] == 0

    def grouped(self) -> Dict[str, Dict[str, List[TestRecord]]]:
        """Return records as ``{group: {class: [records]}}`` sorted by name."""

        tree: Dict[str, Dict[str, List[TestRecord]]] = {}
        for record in self.records:
            tree.setdefault(record.group, {}).setdefault(record.class_name, []).append(record)
        return {
            group: dict(sorted(classes.items()))
            for group, classes in sorted(tree.items())
        }

    def to_ctrf(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {
            "tool": {"name": self.tool_name},
            "summary": {
                "tests": self.total,
                "passed": self.counts[TestOutcome.PASSED],
                "failed": self.counts[TestOutcome.FAILED],
                "pending": self.counts[TestOutcome.PENDING],
                "skipped": self.counts[TestOutcome.SKIPPED],
                "other": self.counts[TestOutcome.OTHER],
                "start": int(self.start * 1000),
                "stop": int(self.stop * 1000),
            },
            "tests": [record.to_ctrf() for record in self.records],
        }
        if self.aborted:
            results["extra"] = {"aborted": True, "abortReason": self.abort_reason}
        return {
            "specVersion": "0.0.0",
            "reportFormat": "CTRF",
            "timestamp": datetime.fromtimestamp(self.start, tz=timezone.utc).isoformat(),
            "results": results,
        }


class ResultAggregator:
    def __init__(self, tool_name: str = "pytest", clock: Callable[[], float] = time.time) -> None:
        self.tool_name = tool_name
        self._clock = clock
        self._lock = threading.Lock()
        self._records: List[TestRecord] = []
        self._by_key: Dict[str, Dict[str, List[TestRecord]]] = {}
        self._aborted = False
        self._abort_reason: Optional[str] = None
        self._report: Optional[Report] = None
        self.start_time = clock()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def abort_reason(self) -> Optional[str]:
        return self._abort_reason

    @property
    def total(self) -> int:
        with self._lock:
            return sum(len(records) for classes in self._by_key.values() for records in classes.values())

    def records(self) -> List[TestRecord]:
        with self._lock:
            return list(self._records)

    def register_test(self, group: str, class_name: str, name: Optional[str] = None) -> TestRecord:
        record = TestRecord(group=group, class_name=class_name, name=name or UNKNOWN_TEST)
        with self._lock:
            if self._aborted:
                record.skipped = True
                record.skip_reason = f"Test run aborted: {self._abort_reason}"
            self._by_key.setdefault(group, {}).setdefault(class_name, []).append(record)
            self._records.append(record)
        return record

    def _find(
        self,
        group: str,
        class_name: str,
        name: Optional[str],
        predicate: Optional[Callable[[TestRecord], bool]] = None,
    ) -> Optional[TestRecord]:
        records = self._by_key.get(group, {}).get(class_name, [])
        wanted = name or UNKNOWN_TEST
        for record in reversed(records):
            if record.name == wanted and (predicate is None or predicate(record)):
                return record
        return None

    def complete_test(self, group: str, class_name: str, name: Optional[str], duration: float) -> bool:
        """Set the duration of the latest matching record that has none yet."""

        with self._lock:
            record = self._find(group, class_name, name, lambda r: r.duration is None)
            if record is None:
                return False
            record.duration = duration
            return True

    def record_failure(
        self,
        group: str,
        class_name: str,
        name: Optional[str],
        error: str,
        phase: Optional[str] = None,
        artifact: Optional[str] = None,
    ) -> bool:
        """Mark the latest matching record failed; the first failure is kept."""

        with self._lock:
            record = self._find(group, class_name, name)
            if record is None or record.failed:
                return False
            record.failed = True
            record.skipped = False
            record.error = error
            record.phase = phase
            record.artifact = artifact
            return True

    def record_skip(self, group: str, class_name: str, name: Optional[str], reason: str) -> bool:
        with self._lock:
            record = self._find(group, class_name, name)
            if record is None or record.failed:
                return False
            record.skipped = True
            record.skip_reason = record.skip_reason or reason
            return True

    def set_aborted(self, reason: str) -> bool:
        with self._lock:
            if self._aborted:
                return False
            self._aborted = True
            self._abort_reason = reason
            return True

    def build_report(self) -> Report:
        """Freeze the registry into a :class:`Report`. Later calls return the same report."""

        with self._lock:
            if self._report is None:
                self._report = Report(
                    records=list(self._records),
                    start=self.start_time,
                    stop=self._clock(),
                    aborted=self._aborted,
                    abort_reason=self._abort_reason,
                    tool_name=self.tool_name,
                )
            return self._report
