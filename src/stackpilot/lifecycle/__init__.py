"""
Deployment lifecycle operations.

This package implements the mutating lifecycle of a deployment:
- Resumable step-sequenced installation with persisted progress
- Tiered, health-gated service launch and graceful stop
- Checkpoints of the deployment configuration
- Version updates with release file side archives
- Rollback to a checkpoint, manual or automatic
- Emergency restart while the stack is down
"""

from stackpilot.lifecycle.checkpoints import Checkpoint, CheckpointStore
from stackpilot.lifecycle.guard import StackDownGuard
from stackpilot.lifecycle.health import HealthChecker, HealthCheckResult, VerificationReport
from stackpilot.lifecycle.install import (
    InstallContext,
    InstallOptions,
    StepDefinition,
    StepSequencer,
    default_install_steps,
    run_install,
)
from stackpilot.lifecycle.launcher import (
    LaunchResult,
    ServiceLauncher,
    ServiceOutcome,
    ServiceStatus,
)
from stackpilot.lifecycle.release_files import ReleaseFileUpdater
from stackpilot.lifecycle.rollback import RollbackController, RollbackResult
from stackpilot.lifecycle.state import InstallState, InstallStateStore, StepStatus
from stackpilot.lifecycle.update import UpdateController, UpdateOptions, UpdateResult

__all__ = [
    # Install
    "InstallContext",
    "InstallOptions",
    "InstallState",
    "InstallStateStore",
    "StepDefinition",
    "StepSequencer",
    "StepStatus",
    "default_install_steps",
    "run_install",
    # Launch and verification
    "HealthCheckResult",
    "HealthChecker",
    "LaunchResult",
    "ServiceLauncher",
    "ServiceOutcome",
    "ServiceStatus",
    "StackDownGuard",
    "VerificationReport",
    # Checkpoints, update and rollback
    "Checkpoint",
    "CheckpointStore",
    "ReleaseFileUpdater",
    "RollbackController",
    "RollbackResult",
    "UpdateController",
    "UpdateOptions",
    "UpdateResult",
]
