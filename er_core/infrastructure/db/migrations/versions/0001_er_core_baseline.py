"""Baseline: hospitals, encounters, triage, messages, outbox events, alerts"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "0001_er_core_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "hospitals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("slug", sa.String(length=120), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.UniqueConstraint("slug", name="uq_hospitals_slug"),
    )

    op.create_table(
        "encounters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "hospital_id",
            sa.Integer(),
            sa.ForeignKey("hospitals.id", name="fk_encounters_hospital_id_hospitals"),
            nullable=True,
        ),
        sa.Column("patient_id", sa.Integer(), nullable=True),
        sa.Column("patient_name", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("chief_complaint", sa.Text(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("expected_at", sa.DateTime(), nullable=True),
        sa.Column("arrived_at", sa.DateTime(), nullable=True),
        sa.Column("triaged_at", sa.DateTime(), nullable=True),
        sa.Column("waiting_at", sa.DateTime(), nullable=True),
        sa.Column("departed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("current_triage_id", sa.Integer(), nullable=True),
        sa.Column("current_ctas_level", sa.Integer(), nullable=True),
        sa.Column("current_priority_score", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.CheckConstraint(
            "status in ('EXPECTED','ADMITTED','TRIAGE','WAITING','COMPLETE','UNRESOLVED','CANCELLED')",
            name="ck_encounters_status",
        ),
        sa.CheckConstraint(
            "current_ctas_level IS NULL OR current_ctas_level BETWEEN 1 AND 5",
            name="ck_encounters_ctas_level",
        ),
    )
    op.create_index("ix_encounters_hospital_id", "encounters", ["hospital_id"], unique=False)
    op.create_index("ix_encounters_patient_id", "encounters", ["patient_id"], unique=False)
    op.create_index("ix_encounters_hospital_status", "encounters", ["hospital_id", "status"], unique=False)

    op.create_table(
        "triage_assessments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "encounter_id",
            sa.Integer(),
            sa.ForeignKey("encounters.id", name="fk_triage_assessments_encounter_id_encounters"),
            nullable=False,
        ),
        sa.Column(
            "hospital_id",
            sa.Integer(),
            sa.ForeignKey("hospitals.id", name="fk_triage_assessments_hospital_id_hospitals"),
            nullable=False,
        ),
        sa.Column("ctas_level", sa.Integer(), nullable=False),
        sa.Column("priority_score", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("vitals_json", sa.Text(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.CheckConstraint("ctas_level BETWEEN 1 AND 5", name="ck_triage_assessments_ctas_level"),
    )
    op.create_index(
        "ix_triage_assessments_encounter_id", "triage_assessments", ["encounter_id"], unique=False
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "encounter_id",
            sa.Integer(),
            sa.ForeignKey("encounters.id", name="fk_messages_encounter_id_encounters"),
            nullable=False,
        ),
        sa.Column(
            "hospital_id",
            sa.Integer(),
            sa.ForeignKey("hospitals.id", name="fk_messages_hospital_id_hospitals"),
            nullable=False,
        ),
        sa.Column("sender_type", sa.String(length=20), nullable=False),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("created_by_patient_id", sa.Integer(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_worsening", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("read_at", sa.DateTime(), nullable=True),
        sa.Column("read_by_user_id", sa.Integer(), nullable=True),
        sa.CheckConstraint("sender_type in ('PATIENT','USER','SYSTEM')", name="ck_messages_sender_type"),
    )
    op.create_index("ix_messages_encounter_id", "messages", ["encounter_id"], unique=False)

    op.create_table(
        "encounter_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "encounter_id",
            sa.Integer(),
            sa.ForeignKey("encounters.id", name="fk_encounter_events_encounter_id_encounters"),
            nullable=False,
        ),
        sa.Column(
            "hospital_id",
            sa.Integer(),
            sa.ForeignKey("hospitals.id", name="fk_encounter_events_hospital_id_hospitals"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_patient_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint(
            "actor_user_id IS NULL OR actor_patient_id IS NULL",
            name="ck_encounter_events_single_actor",
        ),
    )
    op.create_index(
        "ix_encounter_events_encounter_created",
        "encounter_events",
        ["encounter_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_encounter_events_pending", "encounter_events", ["processed_at", "created_at"], unique=False
    )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "encounter_id",
            sa.Integer(),
            sa.ForeignKey("encounters.id", name="fk_alerts_encounter_id_encounters"),
            nullable=False,
        ),
        sa.Column(
            "hospital_id",
            sa.Integer(),
            sa.ForeignKey("hospitals.id", name="fk_alerts_hospital_id_hospitals"),
            nullable=False,
        ),
        sa.Column("type", sa.String(length=120), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("(CURRENT_TIMESTAMP)")),
        sa.Column("acknowledged_at", sa.DateTime(), nullable=True),
        sa.Column("acknowledged_by_user_id", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_by_user_id", sa.Integer(), nullable=True),
        sa.CheckConstraint("severity in ('LOW','MEDIUM','HIGH','CRITICAL')", name="ck_alerts_severity"),
    )
    op.create_index("ix_alerts_hospital_ack", "alerts", ["hospital_id", "acknowledged_at"], unique=False)
    op.create_index(
        "uq_alerts_open_encounter_type",
        "alerts",
        ["encounter_id", "type"],
        unique=True,
        sqlite_where=sa.text("resolved_at IS NULL"),
        postgresql_where=sa.text("resolved_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_alerts_open_encounter_type", table_name="alerts")
    op.drop_index("ix_alerts_hospital_ack", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_encounter_events_pending", table_name="encounter_events")
    op.drop_index("ix_encounter_events_encounter_created", table_name="encounter_events")
    op.drop_table("encounter_events")
    op.drop_index("ix_messages_encounter_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_triage_assessments_encounter_id", table_name="triage_assessments")
    op.drop_table("triage_assessments")
    op.drop_index("ix_encounters_hospital_status", table_name="encounters")
    op.drop_index("ix_encounters_patient_id", table_name="encounters")
    op.drop_index("ix_encounters_hospital_id", table_name="encounters")
    op.drop_table("encounters")
    op.drop_table("hospitals")
