"""initial schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 12:00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


host_status = postgresql.ENUM(
    "PENDING_INITIALIZATION", "INITIALIZING", "SUCCESSFUL_INITIALIZATION", "FAILED_INITIALIZATION",
    name="host_status", create_type=False,
)
record_status = postgresql.ENUM("ACTIVE", "DELETED", name="record_status", create_type=False)
availability = postgresql.ENUM("ONLINE", "OFFLINE", name="availability", create_type=False)
provisioning_stage = postgresql.ENUM(
    "OS_CHECK", "INVENTORY", "ENGINE", "PROXY", "CLUSTER", "DOMAIN_SYNC",
    name="provisioning_stage", create_type=False,
)
integration_kind = postgresql.ENUM("DOCKER", "NGINX", name="integration_kind", create_type=False)
module = postgresql.ENUM("SERVER", "DOMAIN", "APPLICATION", name="module", create_type=False)
sync_status = postgresql.ENUM("ACTIVE", name="sync_status", create_type=False)
ssl_status = postgresql.ENUM("NONE", "PENDING", "ACTIVE", "FAILED", name="ssl_status", create_type=False)
job_state = postgresql.ENUM("WAITING", "ACTIVE", "COMPLETED", "FAILED", name="job_state", create_type=False)

ENUMS = [
    host_status, record_status, availability, provisioning_stage, integration_kind,
    module, sync_status, ssl_status, job_state,
]


def upgrade() -> None:
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "hosts",
        sa.Column("host_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("address", sa.String(255), nullable=False),
        sa.Column("ssh_port", sa.Integer(), nullable=False),
        sa.Column("admin_username", sa.JSON(), nullable=False),
        sa.Column("private_key", sa.JSON(), nullable=False),
        sa.Column("status", host_status, nullable=False),
        sa.Column("record_status", record_status, nullable=False),
        sa.Column("availability", availability, nullable=False),
        sa.Column("availability_changed_at", sa.DateTime(), nullable=False),
        sa.Column("system_info", sa.JSON(), nullable=True),
        sa.Column("pending_setup", sa.JSON(), nullable=True),
        sa.Column("engine_certificates", sa.JSON(), nullable=True),
        sa.Column("checkpoint", provisioning_stage, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("initialization_started_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_hosts_address", "hosts", ["address"])
    op.create_index("ix_hosts_status", "hosts", ["status"])
    op.create_index("ix_hosts_record_status", "hosts", ["record_status"])
    op.create_index("ix_hosts_status_started", "hosts", ["status", "initialization_started_at"])

    op.create_table(
        "host_integration_links",
        sa.Column("link_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("host_id", sa.Uuid(), sa.ForeignKey("hosts.host_id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", integration_kind, nullable=False),
        sa.Column("integration_id", sa.Uuid(), nullable=False),
        sa.UniqueConstraint("host_id", "kind", name="uq_host_integration_kind"),
    )
    op.create_index("ix_host_integration_links_host_id", "host_integration_links", ["host_id"])

    op.create_table(
        "integrations",
        sa.Column("integration_id", sa.Uuid(), primary_key=True),
        sa.Column("kind", integration_kind, nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("status", record_status, nullable=False),
        sa.Column("module", module, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "swarms",
        sa.Column("swarm_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("cluster_id", sa.String(255), nullable=False, unique=True),
        sa.Column("manager_address", sa.String(255), nullable=False),
        sa.Column("worker_token", sa.Text(), nullable=False),
        sa.Column("manager_token", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "domains",
        sa.Column("domain_id", sa.Uuid(), primary_key=True),
        sa.Column("domain_name", sa.String(253), nullable=False, unique=True),
        sa.Column("status", record_status, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("certificate", sa.JSON(), nullable=True),
        sa.Column("ssl_status", ssl_status, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_domains_status", "domains", ["status"])

    op.create_table(
        "domain_linked_servers",
        sa.Column("link_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("domain_id", sa.Uuid(), sa.ForeignKey("domains.domain_id", ondelete="CASCADE"), nullable=False),
        sa.Column("host_id", sa.Uuid(), nullable=False),
        sa.Column("status", sync_status, nullable=False),
        sa.Column("last_sync", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("domain_id", "host_id", name="uq_domain_linked_server"),
    )
    op.create_index("ix_domain_linked_servers_domain_id", "domain_linked_servers", ["domain_id"])
    op.create_index("ix_domain_linked_servers_host_id", "domain_linked_servers", ["host_id"])

    op.create_table(
        "applications",
        sa.Column("application_id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", record_status, nullable=False),
        sa.Column("nginx_directives", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "deployment_groups",
        sa.Column("group_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "application_id", sa.Uuid(),
            sa.ForeignKey("applications.application_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
    )
    op.create_index("ix_deployment_groups_application_id", "deployment_groups", ["application_id"])

    op.create_table(
        "instances",
        sa.Column("instance_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "application_id", sa.Uuid(),
            sa.ForeignKey("applications.application_id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("domain_name", sa.String(253), nullable=True),
        sa.Column("port", sa.Integer(), nullable=False),
        sa.Column("status", record_status, nullable=False),
    )
    op.create_index("ix_instances_application_id", "instances", ["application_id"])

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("queue", sa.String(100), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("state", job_state, nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("lease_owner", sa.String(255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_jobs_claim_lookup", "jobs", ["queue", "state", "available_at"])

    op.create_table(
        "error_logs",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column("entity_id", sa.Uuid(), nullable=True),
        sa.Column("module", module, nullable=False),
        sa.Column("event", sa.String(100), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("error_type", sa.String(100), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_error_logs_entity_id", "error_logs", ["entity_id"])


def downgrade() -> None:
    for table in [
        "error_logs", "jobs", "instances", "deployment_groups", "applications",
        "domain_linked_servers", "domains", "swarms", "integrations",
        "host_integration_links", "hosts",
    ]:
        op.drop_table(table)

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
