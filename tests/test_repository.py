"""Test SQLAlchemy repository implementations."""

import pytest
from datetime import timedelta
from uuid import uuid4

from provisioning_engine.core.errors import ConflictError, InvalidStateError, JobLeaseError, NotFoundError
from provisioning_engine.core.models import (
    Application,
    Availability,
    DeploymentGroup,
    Domain,
    DomainCertificate,
    EncryptedData,
    Host,
    HostStatus,
    Instance,
    IntegrationKind,
    IntegrationLink,
    LinkedServer,
    Module,
    NodeRole,
    PendingSetup,
    ProvisioningStage,
    RecordStatus,
    SSLStatus,
    SystemInfo,
    utcnow,
)
from provisioning_engine.errorlog.models import ErrorLogEntry
from provisioning_engine.infrastructure.postgres.repositories import (
    PostgresApplicationRepository,
    PostgresDomainRepository,
    PostgresErrorLogRepository,
    PostgresHostRepository,
    PostgresJobRepository,
)
from provisioning_engine.jobs.models import Job, JobState


SECRET = EncryptedData(iv="00" * 12, encrypted_data="abcdef")


def make_host(**overrides) -> Host:
    fields = dict(
        host_id=uuid4(),
        name="node-1",
        address="10.0.0.1",
        ssh_port=22,
        admin_username=SECRET,
        private_key=SECRET,
        pending_setup=PendingSetup(create_swarm=True, swarm_id=None, node_role=NodeRole.WORKER),
    )
    fields.update(overrides)
    return Host(**fields)


@pytest.fixture
def host_repo(test_session_factory):
    return PostgresHostRepository(test_session_factory)


@pytest.fixture
def domain_repo(test_session_factory):
    return PostgresDomainRepository(test_session_factory)


@pytest.fixture
def app_repo(test_session_factory):
    return PostgresApplicationRepository(test_session_factory)


@pytest.fixture
def job_repo(test_session_factory):
    return PostgresJobRepository(test_session_factory)


class TestPostgresHostRepository:
    """Test host persistence and locked transitions."""

    # -------------------------
    # CREATE / READ
    # -------------------------

    def test_create_and_get(self, host_repo):
        host = make_host()

        host_repo.create(host)
        retrieved = host_repo.get(host.host_id)

        assert retrieved.address == "10.0.0.1"
        assert retrieved.admin_username == SECRET
        assert retrieved.status == HostStatus.PENDING_INITIALIZATION
        assert retrieved.pending_setup == host.pending_setup
        assert retrieved.integration_links == []

    def test_create_duplicate_fails(self, host_repo):
        host = make_host()
        host_repo.create(host)

        with pytest.raises(ConflictError):
            host_repo.create(host)

    def test_get_nonexistent(self, host_repo):
        assert host_repo.get(uuid4()) is None

    def test_active_lookup_ignores_deleted(self, host_repo):
        host = make_host()
        host_repo.create(host)
        host_repo.soft_delete(host.host_id)

        assert host_repo.get_active_by_address("10.0.0.1") is None
        assert host_repo.list_active() == []
        assert host_repo.get(host.host_id).record_status == RecordStatus.DELETED

    def test_list_search(self, host_repo):
        host_repo.create(make_host(name="Web-1", address="10.0.0.1"))
        host_repo.create(make_host(name="db-1", address="10.0.0.2"))

        assert [h.name for h in host_repo.list_active(search="web")] == ["Web-1"]
        assert [h.name for h in host_repo.list_active(search="10.0.0.2")] == ["db-1"]

    # -------------------------
    # INITIALIZATION
    # -------------------------

    def test_begin_initialization(self, host_repo):
        host = make_host(last_error="old failure")
        host_repo.create(host)
        now = utcnow()

        before = host_repo.begin_initialization(host.host_id, now)

        assert before.status == HostStatus.PENDING_INITIALIZATION
        stored = host_repo.get(host.host_id)
        assert stored.status == HostStatus.INITIALIZING
        assert stored.initialization_started_at == now
        assert stored.last_error is None

    def test_begin_twice_fails(self, host_repo):
        host = make_host()
        host_repo.create(host)
        host_repo.begin_initialization(host.host_id, utcnow())

        with pytest.raises(InvalidStateError):
            host_repo.begin_initialization(host.host_id, utcnow())

    def test_begin_unknown(self, host_repo):
        with pytest.raises(NotFoundError):
            host_repo.begin_initialization(uuid4(), utcnow())

    def test_successful_finish_clears_setup(self, host_repo):
        host = make_host(checkpoint=ProvisioningStage.CLUSTER)
        host_repo.create(host)
        host_repo.begin_initialization(host.host_id, utcnow())

        host_repo.finish_initialization(
            host.host_id, HostStatus.SUCCESSFUL_INITIALIZATION, clear_setup=True, last_error=None
        )

        stored = host_repo.get(host.host_id)
        assert stored.status == HostStatus.SUCCESSFUL_INITIALIZATION
        assert stored.pending_setup is None
        assert stored.checkpoint is None

    def test_failed_finish_keeps_checkpoint(self, host_repo):
        host = make_host()
        host_repo.create(host)
        host_repo.begin_initialization(host.host_id, utcnow())
        host_repo.update_checkpoint(host.host_id, ProvisioningStage.INVENTORY)

        host_repo.finish_initialization(
            host.host_id, HostStatus.FAILED_INITIALIZATION, clear_setup=False, last_error="engine install failed"
        )

        stored = host_repo.get(host.host_id)
        assert stored.status == HostStatus.FAILED_INITIALIZATION
        assert stored.checkpoint == ProvisioningStage.INVENTORY
        assert stored.pending_setup is not None
        assert stored.last_error == "engine install failed"

    def test_reinitialize_rules(self, host_repo):
        host = make_host()
        host_repo.create(host)

        with pytest.raises(InvalidStateError):
            host_repo.reinitialize(host.host_id)

        host_repo.begin_initialization(host.host_id, utcnow())
        host_repo.finish_initialization(host.host_id, HostStatus.FAILED_INITIALIZATION, clear_setup=False, last_error="x")

        rearmed = host_repo.reinitialize(host.host_id)

        assert rearmed.status == HostStatus.PENDING_INITIALIZATION
        assert host_repo.get(host.host_id).initialization_started_at is None

    def test_list_initializing_since(self, host_repo):
        stuck, recent = make_host(address="10.0.0.1"), make_host(address="10.0.0.2")
        host_repo.create(stuck)
        host_repo.create(recent)
        host_repo.begin_initialization(stuck.host_id, utcnow() - timedelta(hours=3))
        host_repo.begin_initialization(recent.host_id, utcnow())

        found = host_repo.list_initializing_since(utcnow() - timedelta(hours=2))

        assert [h.host_id for h in found] == [stuck.host_id]

    # -------------------------
    # PROVISIONING RESULTS
    # -------------------------

    def test_one_link_per_kind(self, host_repo):
        host = make_host()
        host_repo.create(host)
        latest = uuid4()

        host_repo.replace_integration_link(host.host_id, IntegrationLink(IntegrationKind.DOCKER, uuid4()))
        host_repo.replace_integration_link(host.host_id, IntegrationLink(IntegrationKind.DOCKER, latest))
        host_repo.replace_integration_link(host.host_id, IntegrationLink(IntegrationKind.NGINX, uuid4()))

        links = host_repo.get(host.host_id).integration_links
        assert sorted(link.kind.value for link in links) == ["DOCKER", "NGINX"]
        assert [l.integration_id for l in links if l.kind == IntegrationKind.DOCKER] == [latest]

    def test_system_info_round_trip(self, host_repo):
        host = make_host()
        host_repo.create(host)
        info = SystemInfo(os="Ubuntu 22.04", architecture="x86_64", cpu_core_count=4, total_storage=1024)

        host_repo.update_system_info(host.host_id, info)

        assert host_repo.get(host.host_id).system_info == info

    def test_update_availability(self, host_repo):
        host = make_host()
        host_repo.create(host)
        changed_at = utcnow()

        host_repo.update_availability(host.host_id, Availability.OFFLINE, changed_at)

        stored = host_repo.get(host.host_id)
        assert stored.availability == Availability.OFFLINE
        assert stored.availability_changed_at == changed_at


class TestPostgresDomainRepository:
    """Test domains and their per-host sync records."""

    def test_duplicate_name(self, domain_repo):
        domain_repo.create(Domain(domain_id=uuid4(), domain_name="example.com"))

        with pytest.raises(ConflictError):
            domain_repo.create(Domain(domain_id=uuid4(), domain_name="example.com"))

    def test_rename_conflict(self, domain_repo):
        domain_repo.create(Domain(domain_id=uuid4(), domain_name="example.com"))
        other = Domain(domain_id=uuid4(), domain_name="example.org")
        domain_repo.create(other)

        with pytest.raises(ConflictError):
            domain_repo.rename(other.domain_id, "example.com")

        assert domain_repo.get(other.domain_id).domain_name == "example.org"

    def test_rename_resets_sync_state(self, domain_repo):
        domain = Domain(domain_id=uuid4(), domain_name="example.com")
        domain_repo.create(domain)
        domain_repo.replace_linked_servers(domain.domain_id, [LinkedServer(uuid4())])
        domain_repo.set_certificate(domain.domain_id, DomainCertificate(cert=SECRET, key=SECRET))

        domain_repo.rename(domain.domain_id, "example.org")

        stored = domain_repo.get(domain.domain_id)
        assert stored.domain_name == "example.org"
        assert stored.linked_servers == []
        assert stored.certificate is None
        assert stored.ssl_status == SSLStatus.NONE

    def test_linked_servers_are_replaced(self, domain_repo):
        domain = Domain(domain_id=uuid4(), domain_name="example.com")
        domain_repo.create(domain)
        host_a, host_b = uuid4(), uuid4()
        later = utcnow() + timedelta(minutes=1)

        domain_repo.replace_linked_servers(domain.domain_id, [LinkedServer(host_a), LinkedServer(host_b)])
        domain_repo.replace_linked_servers(domain.domain_id, [LinkedServer(host_a, last_sync=later)])

        linked = domain_repo.get(domain.domain_id).linked_servers
        assert sorted(str(l.host_id) for l in linked) == sorted([str(host_a), str(host_b)])
        assert domain_repo.get(domain.domain_id).linked_server_for(host_a).last_sync == later

    def test_list_needing_sync(self, domain_repo):
        synced = Domain(domain_id=uuid4(), domain_name="synced.example.com")
        missing = Domain(domain_id=uuid4(), domain_name="missing.example.com")
        domain_repo.create(synced)
        domain_repo.create(missing)
        host_id = uuid4()
        domain_repo.replace_linked_servers(synced.domain_id, [LinkedServer(host_id)])

        fresh_after = utcnow() - timedelta(minutes=5)

        assert [d.domain_name for d in domain_repo.list_needing_sync(host_id, fresh_after)] == ["missing.example.com"]
        assert len(domain_repo.list_needing_sync(host_id, None)) == 2
        assert len(domain_repo.list_needing_sync(uuid4(), fresh_after)) == 2

    def test_certificate_marks_ssl_active(self, domain_repo):
        domain = Domain(domain_id=uuid4(), domain_name="example.com")
        domain_repo.create(domain)
        certificate = DomainCertificate(cert=SECRET, key=SECRET)

        domain_repo.set_certificate(domain.domain_id, certificate)

        stored = domain_repo.get(domain.domain_id)
        assert stored.ssl_status == SSLStatus.ACTIVE
        assert stored.certificate == certificate

    def test_list_active_paging(self, domain_repo):
        for name in ["a.example.com", "b.example.com", "c.example.org"]:
            domain_repo.create(Domain(domain_id=uuid4(), domain_name=name))

        assert [d.domain_name for d in domain_repo.list_active(search="example.com")] == ["a.example.com", "b.example.com"]
        assert [d.domain_name for d in domain_repo.list_active(limit=1, offset=2)] == ["c.example.org"]


class TestPostgresApplicationRepository:
    """Test applications, deployment groups and instances."""

    def test_group_changes(self, app_repo):
        blue, green = DeploymentGroup(uuid4(), "blue"), DeploymentGroup(uuid4(), "green")
        application = Application(
            application_id=uuid4(),
            name="shop",
            deployment_groups={blue.group_id: blue, green.group_id: green},
        )
        app_repo.create(application)
        canary = DeploymentGroup(uuid4(), "canary")

        app_repo.apply_group_changes(
            application.application_id,
            created=[canary],
            deleted=[green.group_id],
            renamed=[DeploymentGroup(blue.group_id, "stable")],
        )

        groups = app_repo.get(application.application_id).deployment_groups
        assert {g.name for g in groups.values()} == {"stable", "canary"}
        assert groups[blue.group_id].name == "stable"

    def test_group_changes_unknown_application(self, app_repo):
        with pytest.raises(NotFoundError):
            app_repo.apply_group_changes(uuid4(), created=[DeploymentGroup(uuid4(), "blue")])

    def test_directives(self, app_repo):
        application = Application(application_id=uuid4(), name="shop")
        app_repo.create(application)

        app_repo.update_nginx_directives(application.application_id, "client_max_body_size 10m;")

        assert app_repo.get(application.application_id).nginx_directives == "client_max_body_size 10m;"

    def test_list_instances_skips_deleted(self, app_repo):
        application = Application(application_id=uuid4(), name="shop")
        app_repo.create(application)
        app_repo.add_instance(Instance(uuid4(), application.application_id, "web", domain_name="shop.example.com", port=8080))
        app_repo.add_instance(Instance(uuid4(), application.application_id, "old", status=RecordStatus.DELETED))

        assert [i.name for i in app_repo.list_instances(application.application_id)] == ["web"]


class TestPostgresJobRepository:
    """Test claiming and settling jobs."""

    def test_claim_complete(self, job_repo):
        job = Job.new("test.queue", {"id": str(uuid4())})
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)

        claimed = job_repo.claim_next("test.queue", "w1", 60, now)

        assert claimed.job_id == job.job_id
        assert claimed.state == JobState.ACTIVE
        assert claimed.attempts_made == 1
        assert claimed.lease_expires_at == now + timedelta(seconds=60)
        assert job_repo.claim_next("test.queue", "w2", 60, now) is None

        job_repo.complete(job.job_id, "w1", now)

        assert job_repo.get(job.job_id).state == JobState.COMPLETED

    def test_waiting_job_respects_available_at(self, job_repo):
        job = Job.new("test.queue", {})
        job.available_at = utcnow() + timedelta(minutes=10)
        job_repo.add(job)

        assert job_repo.claim_next("test.queue", "w1", 60, utcnow()) is None

    def test_fail_and_retry(self, job_repo):
        job = Job.new("test.queue", {})
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)
        job_repo.claim_next("test.queue", "w1", 60, now)

        job_repo.fail(job.job_id, "w1", "boom", retry_at=now + timedelta(seconds=10), now=now)

        retried = job_repo.get(job.job_id)
        assert retried.state == JobState.WAITING
        assert retried.failed_reason == "boom"
        assert retried.lease_owner is None

        job_repo.claim_next("test.queue", "w1", 60, now + timedelta(seconds=10))
        job_repo.fail(job.job_id, "w1", "boom again", retry_at=None, now=now)

        failed = job_repo.get(job.job_id)
        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 2
        assert job_repo.list_by_state("test.queue", JobState.FAILED)[0].job_id == job.job_id

    def test_expired_lease_is_reclaimed(self, job_repo):
        job = Job.new("test.queue", {})
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)
        job_repo.claim_next("test.queue", "crashed", 60, now)

        reclaimed = job_repo.claim_next("test.queue", "w2", 60, now + timedelta(seconds=61))

        assert reclaimed.job_id == job.job_id
        assert reclaimed.lease_owner == "w2"
        assert reclaimed.attempts_made == 2

    def test_exhausted_expired_lease_is_failed(self, job_repo):
        job = Job.new("test.queue", {}, max_attempts=1)
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)
        job_repo.claim_next("test.queue", "crashed", 60, now)

        assert job_repo.claim_next("test.queue", "w2", 60, now + timedelta(seconds=61)) is None

        failed = job_repo.get(job.job_id)
        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 1
        assert failed.lease_owner is None
        assert "Lease expired" in failed.failed_reason

    def test_renew_lease(self, job_repo):
        job = Job.new("test.queue", {})
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)
        job_repo.claim_next("test.queue", "w1", 60, now)

        job_repo.renew_lease(job.job_id, "w1", 60, now + timedelta(seconds=50))

        assert job_repo.get(job.job_id).lease_expires_at == now + timedelta(seconds=110)
        assert job_repo.claim_next("test.queue", "w2", 60, now + timedelta(seconds=61)) is None

    def test_settling_requires_lease_owner(self, job_repo):
        job = Job.new("test.queue", {})
        job_repo.add(job)
        now = utcnow() + timedelta(seconds=1)
        job_repo.claim_next("test.queue", "w1", 60, now)
        job_repo.claim_next("test.queue", "w2", 60, now + timedelta(seconds=61))

        with pytest.raises(JobLeaseError):
            job_repo.complete(job.job_id, "w1", now)
        with pytest.raises(JobLeaseError):
            job_repo.fail(job.job_id, "w1", "late", retry_at=None, now=now)
        with pytest.raises(JobLeaseError):
            job_repo.renew_lease(job.job_id, "w1", 60, now)

        current = job_repo.get(job.job_id)
        assert current.state == JobState.ACTIVE
        assert current.lease_owner == "w2"


class TestPostgresErrorLogRepository:

    def test_add_and_list(self, test_session_factory):
        repo = PostgresErrorLogRepository(test_session_factory)
        entity_id = uuid4()
        entry = ErrorLogEntry.new(
            entity_id=entity_id,
            module=Module.SERVER,
            event="HOST_INITIALIZATION",
            status="FAILED",
            message="apt failed",
            error_type="RemoteExecutionError",
            details={"command": "sudo apt-get install -y nginx", "exit_code": 100},
        )

        repo.add(entry)

        assert repo.list_for_entity(entity_id) == [entry]
        assert repo.list_for_entity(uuid4()) == []
