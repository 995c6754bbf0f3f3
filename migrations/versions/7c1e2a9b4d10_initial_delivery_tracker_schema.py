"""initial_delivery_tracker_schema

Create tenants, users, projects, project_members, work_items,
signature_records, variations (+ milestone / deliverable changes),
baseline_versions, milestone_certificates and audit_logs.

Revision ID: 7c1e2a9b4d10
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "7c1e2a9b4d10"
down_revision = None
branch_labels = None
depends_on = None


def _tz():
    return sa.DateTime(timezone=True)


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    if "tenants" not in existing_tables:
        op.create_table(
            "tenants",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("slug", sa.String(length=100), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("slug"),
        )

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("full_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "email", name="uq_user_tenant_email"),
        )
        op.create_index("ix_users_tenant_id", "users", ["tenant_id"])

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("supplier_name", sa.String(length=200), nullable=True),
            sa.Column("customer_name", sa.String(length=200), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("updated_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("tenant_id", "code", name="uq_projects_tenant_code"),
        )
        op.create_index("ix_projects_tenant_id", "projects", ["tenant_id"])

    if "project_members" not in existing_tables:
        op.create_table(
            "project_members",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_in_project", sa.String(length=50), nullable=False, server_default="viewer"),
            sa.Column("joined_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "user_id", name="uq_project_member"),
        )
        op.create_index("ix_project_members_project", "project_members", ["project_id"])
        op.create_index("ix_project_members_user", "project_members", ["user_id"])

    if "work_items" not in existing_tables:
        op.create_table(
            "work_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=20), nullable=False),
            sa.Column("parent_id", sa.Integer(), nullable=True),
            sa.Column("item_ref", sa.String(length=20), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("duration_days", sa.Integer(), nullable=True),
            sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=30), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("wbs", sa.String(length=50), nullable=True),
            sa.Column("estimate_component_id", sa.Integer(), nullable=True),
            sa.Column("billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("is_billed", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_received", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("purchase_order", sa.String(length=100), nullable=True),
            sa.Column("baseline_start_date", sa.Date(), nullable=True),
            sa.Column("baseline_end_date", sa.Date(), nullable=True),
            sa.Column("baseline_billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("baseline_locked", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("current_baseline_version", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("submitted_at", _tz(), nullable=True),
            sa.Column("submitted_by", sa.Integer(), nullable=True),
            sa.Column("reviewed_at", _tz(), nullable=True),
            sa.Column("reviewed_by", sa.Integer(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("delivered_at", _tz(), nullable=True),
            sa.Column("delivered_by", sa.Integer(), nullable=True),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("updated_at", _tz(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["parent_id"], ["work_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["submitted_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["reviewed_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["delivered_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "item_ref", name="uq_work_items_project_ref"),
        )
        op.create_index("ix_work_items_tenant_id", "work_items", ["tenant_id"])
        op.create_index("ix_work_items_project_id", "work_items", ["project_id"])
        op.create_index("ix_work_items_parent_id", "work_items", ["parent_id"])
        op.create_index("ix_work_items_deleted_at", "work_items", ["deleted_at"])
        op.create_index("ix_work_items_parent_order", "work_items", ["project_id", "parent_id", "sort_order"])
        op.create_index("ix_work_items_project_kind", "work_items", ["project_id", "kind"])

    if "signature_records" not in existing_tables:
        op.create_table(
            "signature_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("entity_kind", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("supplier_signer_id", sa.Integer(), nullable=True),
            sa.Column("supplier_signer_name", sa.String(length=255), nullable=True),
            sa.Column("supplier_signed_at", _tz(), nullable=True),
            sa.Column("customer_signer_id", sa.Integer(), nullable=True),
            sa.Column("customer_signer_name", sa.String(length=255), nullable=True),
            sa.Column("customer_signed_at", _tz(), nullable=True),
            sa.Column("completed_at", _tz(), nullable=True),
            sa.Column("cancelled_at", _tz(), nullable=True),
            sa.Column("cancel_reason", sa.Text(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["supplier_signer_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["customer_signer_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("entity_kind", "entity_id", "sequence", name="uq_signature_entity_seq"),
        )
        op.create_index("ix_signature_records_tenant_id", "signature_records", ["tenant_id"])
        op.create_index("ix_signature_records_project_id", "signature_records", ["project_id"])
        op.create_index("ix_signature_entity", "signature_records", ["entity_kind", "entity_id"])
        op.create_index(
            "ix_signature_project_open", "signature_records",
            ["project_id", "completed_at", "cancelled_at"],
        )

    if "variations" not in existing_tables:
        op.create_table(
            "variations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("variation_ref", sa.String(length=20), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("variation_type", sa.String(length=30), nullable=False, server_default="combined"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="draft"),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("total_cost_impact", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("total_days_impact", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("certificate_number", sa.String(length=50), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("created_by", sa.Integer(), nullable=True),
            sa.Column("submitted_by", sa.Integer(), nullable=True),
            sa.Column("submitted_at", _tz(), nullable=True),
            sa.Column("approved_at", _tz(), nullable=True),
            sa.Column("applied_at", _tz(), nullable=True),
            sa.Column("rejected_by", sa.Integer(), nullable=True),
            sa.Column("rejected_at", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.Column("updated_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["submitted_by"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["rejected_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id", "variation_ref", name="uq_variations_project_ref"),
        )
        op.create_index("ix_variations_tenant_id", "variations", ["tenant_id"])
        op.create_index("ix_variations_project_id", "variations", ["project_id"])

    if "variation_milestones" not in existing_tables:
        op.create_table(
            "variation_milestones",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("variation_id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("original_start_date", sa.Date(), nullable=True),
            sa.Column("original_end_date", sa.Date(), nullable=True),
            sa.Column("original_billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("new_start_date", sa.Date(), nullable=True),
            sa.Column("new_end_date", sa.Date(), nullable=True),
            sa.Column("new_billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("cost_impact", sa.Numeric(12, 2), nullable=False, server_default="0"),
            sa.Column("days_impact", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("version_before", sa.Integer(), nullable=True),
            sa.Column("version_after", sa.Integer(), nullable=True),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["work_items.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("variation_id", "milestone_id", name="uq_variation_milestone"),
        )
        op.create_index("ix_variation_milestones_variation_id", "variation_milestones", ["variation_id"])

    if "variation_deliverables" not in existing_tables:
        op.create_table(
            "variation_deliverables",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("variation_id", sa.Integer(), nullable=False),
            sa.Column("change_type", sa.String(length=10), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("deliverable_id", sa.Integer(), nullable=True),
            sa.Column("new_data_json", sa.Text(), nullable=True),
            sa.Column("removal_reason", sa.Text(), nullable=True),
            sa.Column("applied", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["work_items.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["deliverable_id"], ["work_items.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_variation_deliverables_variation_id", "variation_deliverables", ["variation_id"])

    if "baseline_versions" not in existing_tables:
        op.create_table(
            "baseline_versions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("version_number", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(length=30), nullable=False),
            sa.Column("signature_record_id", sa.Integer(), nullable=True),
            sa.Column("variation_id", sa.Integer(), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=True),
            sa.Column("end_date", sa.Date(), nullable=True),
            sa.Column("billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("deliverable_ids_json", sa.Text(), nullable=False, server_default="[]"),
            sa.Column("supplier_signer_name", sa.String(length=255), nullable=True),
            sa.Column("supplier_signed_at", _tz(), nullable=True),
            sa.Column("customer_signer_name", sa.String(length=255), nullable=True),
            sa.Column("customer_signed_at", _tz(), nullable=True),
            sa.Column("created_at", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["work_items.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["signature_record_id"], ["signature_records.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["variation_id"], ["variations.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("milestone_id", "version_number", name="uq_baseline_milestone_version"),
        )
        op.create_index("ix_baseline_versions_tenant_id", "baseline_versions", ["tenant_id"])
        op.create_index("ix_baseline_versions_project_id", "baseline_versions", ["project_id"])
        op.create_index("ix_baseline_versions_milestone_id", "baseline_versions", ["milestone_id"])

    if "milestone_certificates" not in existing_tables:
        op.create_table(
            "milestone_certificates",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("milestone_id", sa.Integer(), nullable=False),
            sa.Column("certificate_number", sa.String(length=50), nullable=False),
            sa.Column("status", sa.String(length=40), nullable=False, server_default="draft"),
            sa.Column("ready_to_bill", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("billable", sa.Numeric(12, 2), nullable=True),
            sa.Column("signature_record_id", sa.Integer(), nullable=True),
            sa.Column("generated_by", sa.Integer(), nullable=True),
            sa.Column("generated_at", _tz(), nullable=False),
            sa.Column("signed_at", _tz(), nullable=True),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["milestone_id"], ["work_items.id"], ondelete="RESTRICT"),
            sa.ForeignKeyConstraint(["signature_record_id"], ["signature_records.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["generated_by"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("milestone_id"),
        )
        op.create_index("ix_milestone_certificates_tenant_id", "milestone_certificates", ["tenant_id"])
        op.create_index("ix_milestone_certificates_project_id", "milestone_certificates", ["project_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("tenant_id", sa.Integer(), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("entity_type", sa.String(length=40), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=60), nullable=False),
            sa.Column("actor_user_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=120), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True),
            sa.Column("timestamp", _tz(), nullable=False),
            sa.ForeignKeyConstraint(["tenant_id"], ["tenants.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("idempotency_key"),
        )
        op.create_index("ix_audit_logs_tenant_id", "audit_logs", ["tenant_id"])
        op.create_index("idx_audit_entity", "audit_logs", ["entity_type", "entity_id"])
        op.create_index("idx_audit_project", "audit_logs", ["project_id"])
        op.create_index("idx_audit_action", "audit_logs", ["action"])
        op.create_index("idx_audit_ts", "audit_logs", ["timestamp"])


def downgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing_tables = set(inspector.get_table_names())

    for table in (
        "audit_logs",
        "milestone_certificates",
        "baseline_versions",
        "variation_deliverables",
        "variation_milestones",
        "variations",
        "signature_records",
        "work_items",
        "project_members",
        "projects",
        "users",
        "tenants",
    ):
        if table in existing_tables:
            op.drop_table(table)
