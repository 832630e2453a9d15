#provisioning_engine\api\dependencies.py
from provisioning_engine.container import get_container
from provisioning_engine.distribution.applications import ApplicationService
from provisioning_engine.domains.service import DomainService
from provisioning_engine.host_manager.service import HostService


def get_host_service() -> HostService:
    return get_container().host_service


def get_domain_service() -> DomainService:
    return get_container().domain_service


def get_application_service() -> ApplicationService:
    return get_container().application_service
