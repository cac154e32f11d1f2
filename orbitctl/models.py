"""Data models for services, jobs, and project lifecycles."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def slugify(name: str) -> str:
    """Derive a project slug from a display name.

    Example:
        slugify("My Cool App!!") == "my-cool-app"
    """
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class ServiceType(str, Enum):
    """Where a service runs."""
    DOCKER = "docker"
    HOST = "host"


class ServiceAction(str, Enum):
    """Control actions that can be dispatched for a single service."""
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    ENABLE = "enable"
    DISABLE = "disable"


class GlobalAction(str, Enum):
    """Bulk actions applied to every service in an environment."""
    START = "start"
    STOP = "stop"
    RESTART = "restart"


class Service(BaseModel):
    """A Docker container or host daemon within one environment."""
    model_config = ConfigDict(extra="ignore")

    name: str
    status: str = "stopped"  # running | stopped | error, kept verbatim otherwise
    health: Optional[str] = None
    container: Optional[str] = None
    type: ServiceType = ServiceType.DOCKER
    required: bool = False


class PendingJob(BaseModel):
    """One in-flight service action acknowledged by the backend."""
    job_id: str
    service: str
    action: ServiceAction
    started_at: datetime = Field(default_factory=utcnow)
    error: Optional[str] = None


class EnvironmentCache(BaseModel):
    """Per-environment service snapshot and in-flight jobs."""
    services: Dict[str, Service] = Field(default_factory=dict)
    pending_jobs: Dict[str, PendingJob] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None


class ProvisionStatus(str, Enum):
    """Project creation lifecycle, in pipeline order."""
    QUEUED = "queued"
    PROVISIONING = "provisioning"
    VALIDATING_PACKAGE = "validating_package"
    CREATING_PROJECT = "creating_project"
    FORKING = "forking"
    CREATING_REPO = "creating_repo"
    CLONING = "cloning"
    SETTING_UP = "setting_up"
    INSTALLING_COMPOSER = "installing_composer"
    INSTALLING_NPM = "installing_npm"
    BUILDING = "building"
    FINALIZING = "finalizing"
    READY = "ready"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the pipeline. ``failed`` sits outside the order (-1)."""
        return _PROVISION_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ProvisionStatus.READY, ProvisionStatus.FAILED)

    @classmethod
    def can_advance(cls, current: "ProvisionStatus", new: "ProvisionStatus") -> bool:
        """Whether a tracked project in ``current`` may move to ``new``."""
        if current == cls.FAILED:
            return False
        if new == cls.FAILED:
            return True
        if current == cls.READY:
            return False
        return new.rank > current.rank


# forking and creating_repo are alternative branches of the same stage.
_PROVISION_RANK = {
    ProvisionStatus.QUEUED: 0,
    ProvisionStatus.PROVISIONING: 1,
    ProvisionStatus.VALIDATING_PACKAGE: 2,
    ProvisionStatus.CREATING_PROJECT: 3,
    ProvisionStatus.FORKING: 4,
    ProvisionStatus.CREATING_REPO: 4,
    ProvisionStatus.CLONING: 5,
    ProvisionStatus.SETTING_UP: 6,
    ProvisionStatus.INSTALLING_COMPOSER: 7,
    ProvisionStatus.INSTALLING_NPM: 8,
    ProvisionStatus.BUILDING: 9,
    ProvisionStatus.FINALIZING: 10,
    ProvisionStatus.READY: 11,
    ProvisionStatus.FAILED: -1,
}


class DeletionStatus(str, Enum):
    """Project deletion lifecycle."""
    DELETING = "deleting"
    REMOVING_FILES = "removing_files"
    DELETED = "deleted"
    DELETE_FAILED = "delete_failed"

    @property
    def rank(self) -> int:
        return _DELETION_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (DeletionStatus.DELETED, DeletionStatus.DELETE_FAILED)

    @classmethod
    def can_advance(cls, current: "DeletionStatus", new: "DeletionStatus") -> bool:
        """Whether a tracked deletion in ``current`` may move to ``new``."""
        if current.is_terminal:
            return False
        if new == cls.DELETE_FAILED:
            return True
        return new.rank > current.rank


_DELETION_RANK = {
    DeletionStatus.DELETING: 0,
    DeletionStatus.REMOVING_FILES: 1,
    DeletionStatus.DELETED: 2,
    DeletionStatus.DELETE_FAILED: -1,
}


class ProvisioningProject(BaseModel):
    """Tracker view of one in-flight project creation."""
    slug: str
    status: ProvisionStatus = ProvisionStatus.QUEUED
    error: Optional[str] = None
    project_id: Optional[int] = None


class DeletingProject(BaseModel):
    """Tracker view of one in-flight project deletion."""
    slug: str
    status: DeletionStatus = DeletionStatus.DELETING
    error: Optional[str] = None


class ProjectRow(BaseModel):
    """A project as returned by the authoritative project list."""
    model_config = ConfigDict(extra="allow")

    slug: str
    name: Optional[str] = None
    status: Optional[str] = None
    php_version: Optional[str] = None
    path: Optional[str] = None


class ProjectList(BaseModel):
    """Payload of ``GET /projects``."""
    projects: List[ProjectRow] = Field(default_factory=list)
    tld: Optional[str] = None
    default_php_version: Optional[str] = None


class ProjectView(BaseModel):
    """A project row merged with tracker state, ready for display."""
    slug: str
    name: str
    status: Optional[str] = None
    error: Optional[str] = None
    deletion_status: Optional[DeletionStatus] = None
    placeholder: bool = False


class DispatchResult(BaseModel):
    """Outcome of a write call against the backend."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: bool
    job_id: Optional[str] = Field(default=None, alias="jobId")
    error: Optional[str] = None
    message: Optional[str] = None
    slug: Optional[str] = None


class JobStatus(BaseModel):
    """Payload of ``GET /jobs/{id}``."""
    model_config = ConfigDict(extra="ignore")

    status: str
    error: Optional[str] = None


class ConnectionStatus(str, Enum):
    """Observable state of the realtime channel."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    UNAVAILABLE = "unavailable"


class RealtimeMessage(BaseModel):
    """Typed envelope for one event pushed over the realtime channel."""
    channel: str
    event: str
    data: Dict[str, Any] = Field(default_factory=dict)
