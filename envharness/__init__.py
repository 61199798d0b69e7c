"""Shared ephemeral environments, fault monitoring and result aggregation for integration tests."""
from __future__ import annotations

from .abort import AbortCoordinator, AbortState
from .cancellation import CancellationToken
from .cleanup import CleanupSupervisor, DisposalOutcome
from .configuration import HarnessConfig, Timings
from .console import Console
from .errors import (
    CommandError,
    FaultDetected,
    HarnessError,
    IllegalTransition,
    OperationCancelled,
    RunAborted,
    StartupTimeout,
    TeardownFailure,
)
from .health import HealthCheck, HttpProbe, LogLineProbe, RunningProbe, StatusFieldProbe
from .monitor import ExceptionCollector, FaultMatcher, FileLogSource, LogStreamMonitor, ServiceLogSource
from .orchestrator import Environment, EnvironmentConfig, EnvironmentOrchestrator
from .results import Report, ResultAggregator, TestOutcome, TestRecord
from .scheduler import CollectionScheduler
from .scope import GroupContext, RunContext, TestScope
from .services import ContainerSpec, ManagedResource, ManagedService, ProcessSpec, ResourceState

__version__ = "0.1.0"

__all__ = [
    "AbortCoordinator",
    "AbortState",
    "CancellationToken",
    "CleanupSupervisor",
    "CollectionScheduler",
    "CommandError",
    "ContainerSpec",
    "DisposalOutcome",
    "Environment",
    "EnvironmentConfig",
    "EnvironmentOrchestrator",
    "ExceptionCollector",
    "FaultDetected",
    "FaultMatcher",
    "FileLogSource",
    "GroupContext",
    "HarnessConfig",
    "HarnessError",
    "HealthCheck",
    "HttpProbe",
    "IllegalTransition",
    "LogLineProbe",
    "LogStreamMonitor",
    "ManagedResource",
    "ManagedService",
    "OperationCancelled",
    "ProcessSpec",
    "Report",
    "ResourceState",
    "ResultAggregator",
    "RunAborted",
    "RunContext",
    "RunningProbe",
    "ServiceLogSource",
    "StartupTimeout",
    "StatusFieldProbe",
    "TeardownFailure",
    "TestOutcome",
    "TestRecord",
    "TestScope",
    "Timings",
]
