"""
Domain models: Pydantic types for the installer core.

All models are re-exported here for convenient access:

    from nodestack.core.models import Catalog, Profile, InstallationState, Task
"""

from nodestack.core.models.fallback import (
    FailureClass,
    FailureReport,
    FallbackConfig,
    FallbackOption,
    FallbackStrategy,
    HealthCheck,
)
from nodestack.core.models.profile import Catalog, Profile, Resources, ServiceRef, Template
from nodestack.core.models.receipt import Receipt
from nodestack.core.models.resolution import (
    IssueType,
    Phase,
    Resolution,
    ResolutionIssue,
    ResourceTotals,
)
from nodestack.core.models.state import (
    InstallationState,
    InstallPhase,
    Selection,
    ServiceState,
    ServiceStatus,
    SyncOperation,
    UserDecision,
)
from nodestack.core.models.sync import Disconnected, SyncProgress, SyncSample
from nodestack.core.models.task import Task, TaskCheck, TaskStatus

__all__ = [
    # profile.py
    "Catalog",
    "Disconnected",
    # fallback.py
    "FailureClass",
    "FailureReport",
    "FallbackConfig",
    "FallbackOption",
    "FallbackStrategy",
    "HealthCheck",
    "InstallPhase",
    # state.py
    "InstallationState",
    "IssueType",
    "Phase",
    "Profile",
    # receipt.py
    "Receipt",
    # resolution.py
    "Resolution",
    "ResolutionIssue",
    "ResourceTotals",
    "Resources",
    "Selection",
    "ServiceRef",
    "ServiceState",
    "ServiceStatus",
    "SyncOperation",
    # sync.py
    "SyncProgress",
    "SyncSample",
    # task.py
    "Task",
    "TaskCheck",
    "TaskStatus",
    "Template",
    "UserDecision",
]
