"""Deployment orchestration module.

Only data types are re-exported here; the engine lives in
``deployctl.deploy.orchestrator`` and ``deployctl.deploy.machine``, which
depend on the executor package.
"""

from deployctl.deploy.models import (
    DeploymentEvent,
    DeploymentState,
    DeploymentStatus,
    HostDescriptor,
    TargetSet,
)
from deployctl.deploy.report import DeploymentReport, TargetReport
from deployctl.deploy.state import StateStore

__all__ = [
    "DeploymentEvent",
    "DeploymentReport",
    "DeploymentState",
    "DeploymentStatus",
    "HostDescriptor",
    "StateStore",
    "TargetReport",
    "TargetSet",
]
