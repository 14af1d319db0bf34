"""Request lifecycle instrumentation."""

from .timeline import MonotonicClock, Stage, StageName, Timeline, TimelineRecorder
from .hooks import ConnInfo, LifecycleHooks
from .transport import HOOKS_EXTENSION, TracingBackend, TracingStream, TracingTransport

__all__ = [
    "MonotonicClock",
    "Stage",
    "StageName",
    "Timeline",
    "TimelineRecorder",
    "ConnInfo",
    "LifecycleHooks",
    "HOOKS_EXTENSION",
    "TracingBackend",
    "TracingStream",
    "TracingTransport",
]
