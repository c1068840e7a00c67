"""PMS sync v1: practices, PMS configuration, synced entities, watermarks, runs, health

Revision ID: pms_sync_v1
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

revision = "pms_sync_v1"
down_revision = None
branch_labels = None
depends_on = None


def _synced_columns():
    return [
        sa.Column("last_synced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "practices",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False, server_default="ACTIVE"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "pms_integration_configs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("api_key", sa.String(255), nullable=False),
        sa.Column("subdomain", sa.String(255), nullable=False),
        sa.Column("location_id", sa.String(64), nullable=False),
        sa.Column("environment", sa.String(20), nullable=False, server_default="sandbox"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("connection_status", sa.String(20), nullable=False, server_default="unknown"),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_pms_integration_configs_practice_id", "pms_integration_configs", ["practice_id"], unique=True)

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=True),
        sa.Column("resource_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_audit_events_practice_id", "audit_events", ["practice_id"])

    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("pms_patient_id", sa.String(64), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=False),
        sa.Column("last_name", sa.String(255), nullable=False),
        sa.Column("date_of_birth", sa.String(10), nullable=True),
        sa.Column("gender", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("address_street", sa.String(500), nullable=True),
        sa.Column("address_city", sa.String(255), nullable=True),
        sa.Column("address_state", sa.String(50), nullable=True),
        sa.Column("address_zip", sa.String(20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_synced_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("practice_id", "pms_patient_id", name="uq_patients_practice_pms_id"),
    )
    op.create_index("ix_patients_practice_id", "patients", ["practice_id"])
    op.create_index("ix_patients_pms_patient_id", "patients", ["pms_patient_id"])

    for table, id_column in (("providers", "pms_provider_id"), ("operatories", "pms_operatory_id")):
        op.create_table(
            table,
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
            sa.Column(id_column, sa.String(64), nullable=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            *_synced_columns(),
            sa.UniqueConstraint("practice_id", id_column, name=f"uq_{table}_practice_pms_id"),
        )
        op.create_index(f"ix_{table}_practice_id", table, ["practice_id"])
        op.create_index(f"ix_{table}_{id_column}", table, [id_column])

    op.create_table(
        "appointment_types",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("pms_appointment_type_id", sa.String(64), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_synced_columns(),
        sa.UniqueConstraint("practice_id", "pms_appointment_type_id", name="uq_appointment_types_practice_pms_id"),
    )
    op.create_index("ix_appointment_types_practice_id", "appointment_types", ["practice_id"])
    op.create_index("ix_appointment_types_pms_appointment_type_id", "appointment_types", ["pms_appointment_type_id"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("pms_appointment_id", sa.String(64), nullable=True),
        sa.Column("pms_patient_id", sa.String(64), nullable=False),
        sa.Column("pms_provider_id", sa.String(64), nullable=False),
        sa.Column("pms_operatory_id", sa.String(64), nullable=True),
        sa.Column("date", sa.String(10), nullable=False),
        sa.Column("start_time", sa.String(5), nullable=False),
        sa.Column("end_time", sa.String(5), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("status", sa.String(20), nullable=False, server_default="scheduled"),
        sa.Column("notes", sa.Text(), nullable=True),
        *_synced_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("practice_id", "pms_appointment_id", name="uq_appointments_practice_pms_id"),
    )
    op.create_index("ix_appointments_practice_id", "appointments", ["practice_id"])
    op.create_index("ix_appointments_pms_appointment_id", "appointments", ["pms_appointment_id"])

    op.create_table(
        "pms_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("pms_payment_id", sa.String(64), nullable=True),
        sa.Column("pms_patient_id", sa.String(64), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("payment_type_id", sa.Integer(), nullable=True),
        sa.Column("type_name", sa.String(255), nullable=True),
        sa.Column("paid_at", sa.String(40), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("pms_claim_id", sa.String(64), nullable=True),
        *_synced_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("practice_id", "pms_payment_id", name="uq_pms_payments_practice_pms_id"),
    )
    op.create_index("ix_pms_payments_practice_id", "pms_payments", ["practice_id"])
    op.create_index("ix_pms_payments_pms_payment_id", "pms_payments", ["pms_payment_id"])

    op.create_table(
        "pms_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("pms_adjustment_id", sa.String(64), nullable=True),
        sa.Column("pms_patient_id", sa.String(64), nullable=False),
        sa.Column("pms_provider_id", sa.String(64), nullable=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("adjustment_type_id", sa.Integer(), nullable=True),
        sa.Column("type_name", sa.String(255), nullable=True),
        sa.Column("adjusted_at", sa.String(40), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_synced_columns(),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("practice_id", "pms_adjustment_id", name="uq_pms_adjustments_practice_pms_id"),
    )
    op.create_index("ix_pms_adjustments_practice_id", "pms_adjustments", ["practice_id"])
    op.create_index("ix_pms_adjustments_pms_adjustment_id", "pms_adjustments", ["pms_adjustment_id"])

    op.create_table(
        "sync_watermarks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_id", sa.Integer(), sa.ForeignKey("pms_integration_configs.id"), nullable=False),
        sa.Column("entity_kind", sa.String(50), nullable=False),
        sa.Column("watermark_at", sa.DateTime(), nullable=True),
        sa.Column("last_run_status", sa.String(50), nullable=True),
        sa.Column("last_run_at", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("config_id", "entity_kind", name="uq_sync_watermarks_config_kind"),
    )
    op.create_index("ix_sync_watermarks_config_id", "sync_watermarks", ["config_id"])

    op.create_table(
        "sync_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_id", sa.Integer(), sa.ForeignKey("pms_integration_configs.id"), nullable=False),
        sa.Column("practice_id", sa.Integer(), sa.ForeignKey("practices.id"), nullable=False),
        sa.Column("entity_kind", sa.String(50), nullable=False),
        sa.Column("started_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("ended_at", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(50), nullable=False, server_default="RUNNING"),
        sa.Column("pulled_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("applied_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_json", sa.Text(), nullable=True),
    )
    op.create_index("ix_sync_runs_config_id", "sync_runs", ["config_id"])
    op.create_index("ix_sync_runs_practice_id", "sync_runs", ["practice_id"])

    op.create_table(
        "pms_health_status",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_id", sa.Integer(), sa.ForeignKey("pms_integration_configs.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="healthy"),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_checked_at", sa.DateTime(), nullable=True),
        sa.Column("last_response_ms", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
    )
    op.create_index("ix_pms_health_status_config_id", "pms_health_status", ["config_id"], unique=True)

    op.create_table(
        "pms_health_checks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("config_id", sa.Integer(), sa.ForeignKey("pms_integration_configs.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("ok", sa.Boolean(), nullable=False),
        sa.Column("response_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("checked_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_pms_health_checks_config_id", "pms_health_checks", ["config_id"])


def downgrade() -> None:
    op.drop_table("pms_health_checks")
    op.drop_table("pms_health_status")
    op.drop_table("sync_runs")
    op.drop_table("sync_watermarks")
    op.drop_table("pms_adjustments")
    op.drop_table("pms_payments")
    op.drop_table("appointments")
    op.drop_table("appointment_types")
    op.drop_table("operatories")
    op.drop_table("providers")
    op.drop_table("patients")
    op.drop_table("audit_events")
    op.drop_table("pms_integration_configs")
    op.drop_table("practices")
