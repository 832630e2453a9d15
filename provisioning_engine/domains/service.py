# provisioning_engine/domains/service.py

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from provisioning_engine.certificates.issuer import CertbotIssuer
from provisioning_engine.core.errors import ConflictError, NotFoundError
from provisioning_engine.core.models import (
    Domain,
    DomainCertificate,
    LinkedServer,
    RecordStatus,
    SSLStatus,
)
from provisioning_engine.core.repository import DomainRepository
from provisioning_engine.core.validation import normalize_domain_name
from provisioning_engine.distribution.engine import DistributionEngine
from provisioning_engine.jobs.models import DOMAIN_INITIALIZE
from provisioning_engine.jobs.queue import JobQueue
from provisioning_engine.vault.vault import CredentialVault

logger = logging.getLogger(__name__)


def domain_to_public_dict(domain: Domain) -> Dict[str, Any]:
    return {
        "domain_id": str(domain.domain_id),
        "domain_name": domain.domain_name,
        "status": domain.status.value,
        "description": domain.description,
        "ssl_status": domain.ssl_status.value,
        "linked_servers": [
            {
                "host_id": str(l.host_id),
                "status": l.status.value,
                "last_sync": l.last_sync.isoformat(),
            }
            for l in domain.linked_servers
        ],
        "created_at": domain.created_at.isoformat(),
        "updated_at": domain.updated_at.isoformat(),
    }


class DomainService:

    def __init__(
        self,
        *,
        domain_repo: DomainRepository,
        distribution: DistributionEngine,
        vault: CredentialVault,
        queue: JobQueue,
        issuer: Optional[CertbotIssuer] = None,
    ):
        self._domains = domain_repo
        self._distribution = distribution
        self._vault = vault
        self._queue = queue
        self._issuer = issuer

    def add_domain(self, params: Dict[str, Any]) -> Domain:
        """Register a domain and queue its distribution to the fleet."""
        domain_name = normalize_domain_name(params.get("domain_name") or "")

        if self._domains.get_by_name(domain_name):
            raise ConflictError(f"Domain {domain_name} already exists")

        domain = Domain(
            domain_id=uuid4(),
            domain_name=domain_name,
            description=params.get("description"),
        )
        self._domains.create(domain)
        logger.info(f"[domains] Added domain {domain_name} ({domain.domain_id})")

        self._queue.add_for_entity(DOMAIN_INITIALIZE, domain.domain_id)
        return domain

    def update_domain(self, domain_id: UUID, params: Dict[str, Any]) -> Domain:
        """
        Update the description and/or rename the domain.

        A rename removes the old name from the fleet, drops the sync records
        and certificate, and queues the domain for initialization under its
        new name.
        """
        domain = self.find_one(domain_id)

        new_name = params.get("domain_name")
        if new_name:
            new_name = normalize_domain_name(new_name)
            existing = self._domains.get_by_name(new_name)
            if existing and existing.domain_id != domain_id and existing.status == RecordStatus.ACTIVE:
                raise ConflictError(f"Domain {new_name} already exists")

        if "description" in params:
            self._domains.update_description(domain_id, params["description"])

        if new_name and new_name != domain.domain_name:
            self._domains.rename(domain_id, new_name)
            logger.info(f"[domains] Renamed domain {domain.domain_name} to {new_name} ({domain_id})")
            self._distribution.remove_domain_from_hosts(domain.domain_name, domain_id)
            self._queue.add_for_entity(DOMAIN_INITIALIZE, domain_id)

        return self.find_one(domain_id)

    def find_one(self, domain_id: UUID) -> Domain:
        domain = self._domains.get(domain_id)
        if domain is None:
            raise NotFoundError(f"Domain {domain_id} not found")
        return domain

    def find_many(self, search: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Domain]:
        return self._domains.list_active(search=search, limit=limit, offset=offset)

    def begin_initialization(self, domain_id: UUID) -> List[LinkedServer]:
        """Push the domain to every active host."""
        domain = self.find_one(domain_id)
        logger.info(f"[domains] Initializing domain {domain.domain_name} on the fleet")
        return self._distribution.add_domain_to_all_hosts(domain)

    def initialize_ssl(self, domain_id: UUID) -> List[UUID]:
        """Issue a certificate for the domain, store it and install it fleet-wide."""
        if self._issuer is None:
            raise NotFoundError("No certificate issuer configured")

        domain = self.find_one(domain_id)
        self._domains.set_ssl_status(domain_id, SSLStatus.PENDING)

        try:
            issued = self._issuer.issue(domain.domain_id, domain.domain_name)
        except Exception:
            self._domains.set_ssl_status(domain_id, SSLStatus.FAILED)
            raise

        self._domains.set_certificate(domain_id, DomainCertificate(
            cert=self._vault.encrypt(issued.cert_pem),
            key=self._vault.encrypt(issued.key_pem),
        ))

        return self._distribution.add_domain_ssl(self.find_one(domain_id))
