# provisioning_engine/distribution/applications.py
"""Application-level proxy directives and deployment groups."""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from provisioning_engine.core.errors import (
    ConflictError,
    NotFoundError,
    ProvisioningError,
    RemoteExecutionError,
    ValidationError,
)
from provisioning_engine.core.models import Application, DeploymentGroup
from provisioning_engine.core.repository import ApplicationRepository
from provisioning_engine.core.updates import Create, Delete, Patch, UpdateRequest
from provisioning_engine.distribution.engine import DistributionEngine

logger = logging.getLogger(__name__)


@dataclass
class GroupChanges:
    """Working state while a batch of group requests is applied."""
    groups: Dict[UUID, DeploymentGroup]
    created: List[DeploymentGroup] = field(default_factory=list)
    deleted: List[UUID] = field(default_factory=list)
    renamed: List[DeploymentGroup] = field(default_factory=list)
    errors: List[ProvisioningError] = field(default_factory=list)

    def name_taken(self, name: str, exclude: Optional[UUID] = None) -> bool:
        lowered = name.lower()
        return any(
            g.name.lower() == lowered
            for g in self.groups.values()
            if g.group_id != exclude
        )


class ApplicationService:

    def __init__(self, app_repo: ApplicationRepository, distribution: DistributionEngine):
        self._apps = app_repo
        self._distribution = distribution
        self._group_handlers = {
            Create: self._create_group,
            Delete: self._delete_groups,
            Patch: self._patch_group,
        }

    def _require(self, application_id: UUID) -> Application:
        application = self._apps.get(application_id)
        if application is None:
            raise NotFoundError(f"Application {application_id} not found")
        return application

    # ============================================
    # NGINX DIRECTIVES
    # ============================================

    def update_nginx_directives(self, application_id: UUID, directives: Optional[str]) -> Application:
        """
        Push new directives to every host, then persist them.

        Nothing is persisted if any eligible host rejected the change.
        """
        application = self._require(application_id)
        application.nginx_directives = directives

        _, failed = self.sync_application_directives(application)
        if failed:
            raise RemoteExecutionError(
                f"Failed to update nginx directives on {len(failed)} host(s)",
                host_id=failed[0],
            )

        self._apps.update_nginx_directives(application_id, directives)
        logger.info(f"[applications] Directives updated for application {application_id}")
        return self._require(application_id)

    def sync_application_directives(self, application: Application) -> Tuple[List[UUID], List[UUID]]:
        instances = self._apps.list_instances(application.application_id)
        return self._distribution.apply_application_directives(application, instances)

    def sync_all_application_directives(self) -> int:
        """Periodic pass over every non-deleted application. Returns how many were synced."""
        synced = 0
        for application in self._apps.list_active():
            try:
                self.sync_application_directives(application)
                synced += 1
            except Exception as e:
                logger.warning(f"[applications] Directive sync failed for {application.application_id}: {e}")
        return synced

    # ============================================
    # DEPLOYMENT GROUPS
    # ============================================

    def update_deployment_groups(
        self,
        application_id: UUID,
        requests: List[UpdateRequest],
    ) -> Tuple[Application, List[ProvisioningError]]:
        """
        Apply create/delete/patch requests in order.

        Requests that would duplicate a group name (case-insensitive, also
        against names created earlier in the same batch) are skipped and
        reported in the returned error list.
        """
        application = self._require(application_id)
        changes = GroupChanges(groups=dict(application.deployment_groups))

        for request in requests:
            handler = self._group_handlers.get(type(request))
            if handler is None:
                raise ValidationError(f"Unsupported update request: {type(request).__name__}")
            handler(changes, request)

        self._apps.apply_group_changes(
            application_id,
            created=changes.created,
            deleted=changes.deleted,
            renamed=changes.renamed,
        )
        return self._require(application_id), changes.errors

    def _create_group(self, changes: GroupChanges, request: Create) -> None:
        name = (request.fields.get("name") or "").strip()
        if not name:
            changes.errors.append(ValidationError("Deployment group name is required", missing_params=["name"]))
            return
        if changes.name_taken(name):
            changes.errors.append(ConflictError(f"Deployment group {name} already exists"))
            return

        group = DeploymentGroup(group_id=uuid4(), name=name)
        changes.groups[group.group_id] = group
        changes.created.append(group)

    def _delete_groups(self, changes: GroupChanges, request: Delete) -> None:
        for group_id in request.ids:
            if changes.groups.pop(group_id, None) is None:
                continue
            if any(g.group_id == group_id for g in changes.created):
                changes.created = [g for g in changes.created if g.group_id != group_id]
            else:
                changes.deleted.append(group_id)

    def _patch_group(self, changes: GroupChanges, request: Patch) -> None:
        group = changes.groups.get(request.id)
        if group is None:
            changes.errors.append(NotFoundError(f"Deployment group {request.id} not found"))
            return

        name = (request.fields.get("name") or "").strip()
        if not name:
            return
        if changes.name_taken(name, exclude=request.id):
            changes.errors.append(ConflictError(f"Deployment group {name} already exists"))
            return

        renamed = DeploymentGroup(group_id=group.group_id, name=name)
        changes.groups[group.group_id] = renamed
        if any(g.group_id == group.group_id for g in changes.created):
            changes.created = [renamed if g.group_id == group.group_id else g for g in changes.created]
        else:
            changes.renamed.append(renamed)
