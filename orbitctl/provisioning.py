"""Project creation and deletion lifecycle tracking."""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import ValidationError

from .models import (
    DeletingProject,
    DeletionStatus,
    ProjectRow,
    ProjectView,
    ProvisioningProject,
    ProvisionStatus,
)

logger = logging.getLogger(__name__)

DELETION_STATUSES = frozenset(s.value for s in DeletionStatus)

# Statuses a persisted project row may carry while still being built
IN_PROGRESS_STATUSES = frozenset(s.value for s in ProvisionStatus if not s.is_terminal)


class ProvisioningTracker:
    """Tracks in-flight project creations and deletions for one session.

    The tracker's view of a slug takes precedence over the status stored on
    the project row, because it is fed by realtime events the backend list
    has not caught up with yet. Nothing here is persisted.
    """

    def __init__(self):
        self.provisioning: Dict[str, ProvisioningProject] = {}
        self.deleting: Dict[str, DeletingProject] = {}
        self.project_ready_count = 0
        self.project_deleted_count = 0
        # ready slugs pruned after the list confirmed them
        self._confirmed_ready: Set[str] = set()

    # Creation

    def track_project(self, slug: str) -> ProvisioningProject:
        """Start tracking a just-requested project as ``queued``.

        An existing entry is kept unless it failed, in which case this is a
        fresh creation request and tracking restarts. A fresh request also
        forgets an earlier confirmed creation or completed deletion of the
        same slug.
        """
        self._confirmed_ready.discard(slug)
        deletion = self.deleting.get(slug)
        if deletion is not None and deletion.status == DeletionStatus.DELETED:
            self.clear_deletion(slug)

        existing = self.provisioning.get(slug)
        if existing is None or existing.status == ProvisionStatus.FAILED:
            existing = ProvisioningProject(slug=slug)
            self.provisioning[slug] = existing
        return existing

    def get_project_status(self, slug: str) -> Optional[ProvisioningProject]:
        return self.provisioning.get(slug)

    def clear_project(self, slug: str) -> None:
        """Dismiss a tracked creation (typically a ``failed`` one)."""
        self.provisioning.pop(slug, None)

    def handle_provision_event(self, event: Mapping[str, Any]) -> bool:
        """Apply a creation event. Returns True if tracked state changed.

        Events for an earlier stage than the one recorded are dropped, so
        out-of-order delivery never regresses a project. ``failed`` is always
        accepted.
        """
        slug = event.get("slug")
        try:
            status = ProvisionStatus(event.get("status"))
        except ValueError:
            logger.warning(f"Ignoring provision event with unknown status: {event!r}")
            return False
        if not slug:
            logger.warning(f"Ignoring provision event without slug: {event!r}")
            return False

        existing = self.provisioning.get(slug)
        if existing is None and slug in self._confirmed_ready and status != ProvisionStatus.FAILED:
            logger.debug(f"Ignoring {status.value} for {slug}, already confirmed ready")
            return False
        if existing is not None and not ProvisionStatus.can_advance(existing.status, status):
            logger.debug(f"Ignoring {status.value} for {slug}, already {existing.status.value}")
            return False

        project_id = event.get("project_id")
        if project_id is None and existing is not None:
            project_id = existing.project_id

        try:
            project = ProvisioningProject(
                slug=slug,
                status=status,
                error=event.get("error"),
                project_id=project_id,
            )
        except ValidationError as e:
            logger.warning(f"Ignoring malformed provision event for {slug}: {e}")
            return False
        self.provisioning[slug] = project

        if status == ProvisionStatus.READY:
            self.project_ready_count += 1
        logger.info(f"Project {slug}: {status.value}")
        return True

    # Deletion

    def track_deletion(self, slug: str) -> DeletingProject:
        """Start tracking a deletion as ``deleting`` unless already tracked.

        A previously finished deletion (failed or completed) is restarted.
        """
        existing = self.deleting.get(slug)
        if existing is None or existing.status.is_terminal:
            existing = DeletingProject(slug=slug)
            self.deleting[slug] = existing
        return existing

    def get_deletion_status(self, slug: str) -> Optional[DeletionStatus]:
        entry = self.deleting.get(slug)
        return entry.status if entry else None

    def get_deletion(self, slug: str) -> Optional[DeletingProject]:
        return self.deleting.get(slug)

    def handle_deletion_event(self, event: Mapping[str, Any]) -> bool:
        """Apply a deletion event. Returns True if tracked state changed."""
        slug = event.get("slug")
        try:
            status = DeletionStatus(event.get("status"))
        except ValueError:
            logger.warning(f"Ignoring deletion event with unknown status: {event!r}")
            return False
        if not slug:
            logger.warning(f"Ignoring deletion event without slug: {event!r}")
            return False

        existing = self.deleting.get(slug)
        if existing is None:
            # deleted must follow an observed deleting/removing_files stage
            if status == DeletionStatus.DELETED:
                logger.debug(f"Ignoring deleted for untracked {slug}")
                return False
        elif not DeletionStatus.can_advance(existing.status, status):
            logger.debug(f"Ignoring {status.value} for {slug}, already {existing.status.value}")
            return False

        try:
            self._set_deletion(slug, status, event.get("error"))
        except ValidationError as e:
            logger.warning(f"Ignoring malformed deletion event for {slug}: {e}")
            return False
        return True

    def mark_deletion_complete(self, slug: str) -> None:
        """Record a deletion confirmed synchronously by the delete call."""
        self._set_deletion(slug, DeletionStatus.DELETED)

    def mark_deletion_failed(self, slug: str, error: Optional[str] = None) -> None:
        """Record a deletion rejected synchronously by the delete call."""
        existing = self.deleting.get(slug)
        if existing is not None and existing.status == DeletionStatus.DELETED:
            return
        self._set_deletion(slug, DeletionStatus.DELETE_FAILED, error)

    def clear_deletion(self, slug: str) -> None:
        self.deleting.pop(slug, None)

    def _set_deletion(self, slug: str, status: DeletionStatus, error: Optional[str] = None) -> None:
        existing = self.deleting.get(slug)
        if existing is not None and existing.status == status:
            return
        self.deleting[slug] = DeletingProject(slug=slug, status=status, error=error)
        if status == DeletionStatus.DELETED:
            self.project_deleted_count += 1
        logger.info(f"Project {slug}: {status.value}")

    # Routing

    def handle_event(self, event: Mapping[str, Any]) -> bool:
        """Route a project event to the creation or deletion state machine."""
        if not isinstance(event, Mapping):
            logger.warning(f"Ignoring non-object project event: {event!r}")
            return False
        if event.get("status") in DELETION_STATUSES:
            return self.handle_deletion_event(event)
        return self.handle_provision_event(event)

    # Reconciliation

    def reconcile(self, rows: Iterable[ProjectRow]) -> List[ProjectView]:
        """Merge the authoritative project list with tracked state.

        Tracked slugs the list does not contain yet are added as placeholder
        rows at the top, so a just-created project never disappears while the
        backend catches up.
        """
        views: List[ProjectView] = []
        seen = set()

        for row in rows:
            seen.add(row.slug)
            views.append(self._view(row.slug, row.name or row.slug, row.status))

        placeholders = [
            self._view(slug, slug, None, placeholder=True)
            for slug in self.provisioning
            if slug not in seen
        ]
        return placeholders + views

    def _view(self, slug: str, name: str, row_status: Optional[str],
              placeholder: bool = False) -> ProjectView:
        tracked = self.provisioning.get(slug)
        deletion = self.deleting.get(slug)

        if tracked is not None:
            status, error = tracked.status.value, tracked.error
        elif row_status in IN_PROGRESS_STATUSES:
            status, error = row_status, None
        else:
            status, error = None, None

        if deletion is not None and deletion.error:
            error = deletion.error

        return ProjectView(
            slug=slug,
            name=name,
            status=status,
            error=error,
            deletion_status=deletion.status if deletion else None,
            placeholder=placeholder,
        )

    def prune_confirmed(self, rows: Iterable[ProjectRow]) -> List[str]:
        """Stop tracking ``ready`` projects that the list now contains."""
        listed = {row.slug for row in rows}
        pruned = [
            slug for slug, project in self.provisioning.items()
            if project.status == ProvisionStatus.READY and slug in listed
        ]
        for slug in pruned:
            del self.provisioning[slug]
            self._confirmed_ready.add(slug)
        return pruned

    def prune_deleted(self, rows: Iterable[ProjectRow]) -> List[str]:
        """Clear ``deleted`` entries whose slug the list no longer contains."""
        listed = {row.slug for row in rows}
        pruned = [
            slug for slug, deletion in self.deleting.items()
            if deletion.status == DeletionStatus.DELETED and slug not in listed
        ]
        for slug in pruned:
            self.clear_deletion(slug)
        return pruned

    def in_flight(self) -> List[str]:
        """Slugs whose creation has not reached a terminal state."""
        return [slug for slug, p in self.provisioning.items() if not p.status.is_terminal]
