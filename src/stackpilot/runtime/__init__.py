"""
Container orchestration backends for stackpilot.
"""

from stackpilot.runtime.base import (
    CommandResult,
    ContainerRuntime,
    HealthStatus,
    parse_health_status,
)
from stackpilot.runtime.compose import ComposeRuntime

__all__ = [
    "CommandResult",
    "ComposeRuntime",
    "ContainerRuntime",
    "HealthStatus",
    "parse_health_status",
]
