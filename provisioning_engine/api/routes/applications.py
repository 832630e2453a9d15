# provisioning_engine/api/routes/applications.py
"""Application proxy directives and deployment groups."""

from uuid import UUID

from fastapi import APIRouter, Depends

from provisioning_engine.api.dependencies import get_application_service
from provisioning_engine.api.schemas import ApplicationResponse, DeploymentGroupsRequest, DirectivesRequest
from provisioning_engine.core.models import Application
from provisioning_engine.core.updates import parse_update_request
from provisioning_engine.distribution.applications import ApplicationService

router = APIRouter(prefix="/applications", tags=["applications"])


def _to_response(application: Application, errors=()) -> ApplicationResponse:
    return ApplicationResponse(
        application_id=application.application_id,
        name=application.name,
        nginx_directives=application.nginx_directives,
        deployment_groups={str(g.group_id): g.name for g in application.deployment_groups.values()},
        errors=[str(e) for e in errors],
    )


@router.put("/{application_id}/nginx-directives", response_model=ApplicationResponse)
def update_nginx_directives(
    application_id: UUID,
    request: DirectivesRequest,
    service: ApplicationService = Depends(get_application_service),
):
    return _to_response(service.update_nginx_directives(application_id, request.nginx_directives))


@router.patch("/{application_id}/deployment-groups", response_model=ApplicationResponse)
def update_deployment_groups(
    application_id: UUID,
    request: DeploymentGroupsRequest,
    service: ApplicationService = Depends(get_application_service),
):
    requests = [parse_update_request(payload) for payload in request.requests]
    application, errors = service.update_deployment_groups(application_id, requests)
    return _to_response(application, errors)
