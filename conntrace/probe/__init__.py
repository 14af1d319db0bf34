"""Instrumented request execution and the retry-until-failure loop."""

from .config import ProbeConfig, DEFAULT_TARGET_URL, build_config
from .executor import (
    AttemptOutcome,
    AttemptResult,
    OutcomeKind,
    RequestExecutor,
    build_client,
)
from .loop import DiagnosticLoop, LoopState, LoopSummary, StopReason

__all__ = [
    "ProbeConfig",
    "DEFAULT_TARGET_URL",
    "build_config",
    "AttemptOutcome",
    "AttemptResult",
    "OutcomeKind",
    "RequestExecutor",
    "build_client",
    "DiagnosticLoop",
    "LoopState",
    "LoopSummary",
    "StopReason",
]
