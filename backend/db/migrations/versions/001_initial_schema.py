"""
Initial schema - tenants, job registry, monitoring, alerts, decisions, outcomes

Revision ID: 001
Revises: None
Create Date: 2026-09-21
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

TENANT_TABLES = [
    "job_runs",
    "monitored_objects",
    "threshold_configs",
    "intelligent_rules",
    "alert_instances",
    "decision_cards",
    "decision_outcome_records",
]


def _id_column() -> sa.Column:
    return sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()"))


def _tenant_column() -> sa.Column:
    return sa.Column("tenant_id", UUID(as_uuid=True), sa.ForeignKey("tenants.tenant_id"), nullable=False)


def upgrade() -> None:
    # 1. Tenants
    op.create_table(
        "tenants",
        sa.Column("tenant_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status IN ('active', 'trial', 'inactive', 'churned')", name="ck_tenant_status"),
    )

    # 2. Job Runs
    op.create_table(
        "job_runs",
        _id_column(),
        _tenant_column(),
        sa.Column("function_name", sa.String(100), nullable=False),
        sa.Column("lock_key", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("started_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("input_params", JSONB, server_default="{}"),
        sa.Column("result", JSONB),
        sa.Column("error_message", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.CheckConstraint("status IN ('running', 'completed', 'failed', 'cancelled')", name="ck_job_run_status"),
    )
    op.create_index(
        "uq_job_runs_running_lock",
        "job_runs",
        ["lock_key"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )
    op.create_index("ix_job_runs_tenant_started", "job_runs", ["tenant_id", "started_at"])

    # 3. Monitored Objects
    op.create_table(
        "monitored_objects",
        _id_column(),
        _tenant_column(),
        sa.Column("object_type", sa.String(30), nullable=False),
        sa.Column("object_name", sa.String(255), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("current_metrics", JSONB, server_default="{}"),
        sa.Column("is_monitored", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("lead_time_days", sa.Integer),
        sa.Column("safety_stock", sa.Float),
        sa.Column("last_sale_date", sa.Date),
        sa.Column("sales_velocity", sa.Float),
        sa.Column("avg_daily_sales", sa.Float),
        sa.Column("days_of_stock", sa.Float),
        sa.Column("trend_direction", sa.String(10)),
        sa.Column("trend_percent", sa.Float),
        sa.Column("reorder_point", sa.Float),
        sa.Column("stockout_risk_days", sa.Float),
        sa.Column("metrics_refreshed_at", sa.DateTime),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "object_type", "external_id", name="uq_monitored_object_external"),
        sa.CheckConstraint(
            "object_type IN ('product', 'store', 'campaign', 'supplier', 'order')",
            name="ck_monitored_object_type",
        ),
    )
    op.create_index("ix_monitored_objects_tenant_type", "monitored_objects", ["tenant_id", "object_type"])

    # 4. Threshold Configs
    op.create_table(
        "threshold_configs",
        _id_column(),
        _tenant_column(),
        sa.Column("alert_type", sa.String(80), nullable=False),
        sa.Column("category", sa.String(50), nullable=False, server_default="inventory"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("metric", sa.String(100), nullable=False),
        sa.Column("operator", sa.String(30), nullable=False),
        sa.Column("threshold_value", sa.Float, nullable=False),
        sa.Column("unit", sa.String(20)),
        sa.Column("severity", sa.String(20), nullable=False, server_default="warning"),
        sa.Column("object_type", sa.String(30)),
        sa.Column("enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("severity IN ('critical', 'warning', 'info')", name="ck_threshold_config_severity"),
    )
    op.create_index("ix_threshold_configs_tenant_enabled", "threshold_configs", ["tenant_id", "enabled"])

    # 5. Intelligent Rules
    op.create_table(
        "intelligent_rules",
        _id_column(),
        _tenant_column(),
        sa.Column("rule_code", sa.String(80), nullable=False),
        sa.Column("rule_name", sa.String(255), nullable=False),
        sa.Column("rule_category", sa.String(50), nullable=False, server_default="inventory"),
        sa.Column("target_object_type", sa.String(30)),
        sa.Column("formula", JSONB),
        sa.Column("calculation_formula", sa.Text),
        sa.Column("threshold_type", sa.String(30), nullable=False, server_default="absolute"),
        sa.Column("threshold_config", JSONB, server_default="{}"),
        sa.Column("severity", sa.String(20), nullable=False, server_default="warning"),
        sa.Column("suggested_actions", JSONB, server_default="[]"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="100"),
        sa.Column("is_enabled", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("tenant_id", "rule_code", name="uq_intelligent_rule_code"),
    )
    op.create_index("ix_intelligent_rules_tenant_priority", "intelligent_rules", ["tenant_id", "priority"])

    # 6. Alert Instances
    op.create_table(
        "alert_instances",
        _id_column(),
        _tenant_column(),
        sa.Column("source_type", sa.String(30), nullable=False),
        sa.Column("rule_id", UUID(as_uuid=True), sa.ForeignKey("intelligent_rules.id")),
        sa.Column("config_id", UUID(as_uuid=True), sa.ForeignKey("threshold_configs.id")),
        sa.Column("object_id", UUID(as_uuid=True), sa.ForeignKey("monitored_objects.id")),
        sa.Column("alert_type", sa.String(80), nullable=False),
        sa.Column("category", sa.String(50)),
        sa.Column("severity", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("metric_name", sa.String(100)),
        sa.Column("current_value", sa.Float),
        sa.Column("threshold_value", sa.Float),
        sa.Column("impact_amount", sa.Float),
        sa.Column("deadline_at", sa.DateTime),
        sa.Column("suggested_action", sa.Text),
        sa.Column("calculation_details", JSONB, server_default="{}"),
        sa.Column("notification_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("detection_date", sa.Date, nullable=False),
        sa.Column("dedup_key", sa.String(400), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("acknowledged_at", sa.DateTime),
        sa.Column("resolved_at", sa.DateTime),
        sa.UniqueConstraint("tenant_id", "dedup_key", name="uq_alert_instance_dedup"),
        sa.CheckConstraint(
            "source_type IN ('intelligent_rule', 'threshold_config', 'correlation')",
            name="ck_alert_source_type",
        ),
        sa.CheckConstraint("severity IN ('critical', 'warning', 'info')", name="ck_alert_severity"),
        sa.CheckConstraint("status IN ('active', 'acknowledged', 'resolved')", name="ck_alert_status"),
    )
    op.create_index("ix_alert_instances_tenant_status", "alert_instances", ["tenant_id", "status"])

    # 7. Decision Cards
    op.create_table(
        "decision_cards",
        _id_column(),
        _tenant_column(),
        sa.Column("card_type", sa.String(50), nullable=False),
        sa.Column("title", sa.String(500), nullable=False),
        sa.Column("question", sa.Text),
        sa.Column("priority", sa.String(2), nullable=False, server_default="P2"),
        sa.Column("status", sa.String(20), nullable=False, server_default="OPEN"),
        sa.Column("deadline_at", sa.DateTime),
        sa.Column("impact_amount", sa.Float),
        sa.Column("impact_currency", sa.String(3), nullable=False, server_default="VND"),
        sa.Column("impact_metric", sa.String(100)),
        sa.Column("entity_type", sa.String(30)),
        sa.Column("entity_id", UUID(as_uuid=True), sa.ForeignKey("monitored_objects.id")),
        sa.Column("entity_label", sa.String(255)),
        sa.Column("source_type", sa.String(30)),
        sa.Column("source_id", sa.String(100)),
        sa.Column("confidence", sa.String(10), nullable=False, server_default="MEDIUM"),
        sa.Column("owner_role", sa.String(30)),
        sa.Column("facts", JSONB, nullable=False, server_default="[]"),
        sa.Column("actions", JSONB, nullable=False, server_default="[]"),
        sa.Column("snoozed_until", sa.DateTime),
        sa.Column("snooze_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("snooze_reason", sa.Text),
        sa.Column("predicted_impact", sa.Float),
        sa.Column("baseline_metrics", JSONB),
        sa.Column("decision_action_type", sa.String(40)),
        sa.Column("decision_comment", sa.Text),
        sa.Column("decided_by", sa.String(255)),
        sa.Column("decided_at", sa.DateTime),
        sa.Column("dismiss_reason", sa.String(30)),
        sa.Column("dismiss_comment", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("priority IN ('P1', 'P2', 'P3')", name="ck_decision_card_priority"),
        sa.CheckConstraint("confidence IN ('HIGH', 'MEDIUM', 'LOW')", name="ck_decision_card_confidence"),
        sa.CheckConstraint(
            "status IN ('OPEN', 'IN_PROGRESS', 'DECIDED', 'DISMISSED', 'SNOOZED')",
            name="ck_decision_card_status",
        ),
    )
    op.create_index(
        "uq_decision_cards_open_trigger",
        "decision_cards",
        ["tenant_id", "source_type", "source_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('OPEN', 'IN_PROGRESS', 'SNOOZED')"),
    )
    op.create_index("ix_decision_cards_tenant_status", "decision_cards", ["tenant_id", "status"])
    op.create_index("ix_decision_cards_decided_at", "decision_cards", ["tenant_id", "decided_at"])

    # 8. Decision Outcome Records (append-only)
    op.create_table(
        "decision_outcome_records",
        _id_column(),
        _tenant_column(),
        sa.Column("decision_id", UUID(as_uuid=True), sa.ForeignKey("decision_cards.id"), nullable=False),
        sa.Column("decision_type", sa.String(40)),
        sa.Column("evaluation_date", sa.Date, nullable=False),
        sa.Column("predicted_impact", sa.Float),
        sa.Column("actual_impact", sa.Float),
        sa.Column("variance", sa.Float),
        sa.Column("accuracy_score", sa.Float, nullable=False),
        sa.Column("outcome_status", sa.String(20), nullable=False),
        sa.Column("baseline_metrics", JSONB),
        sa.Column("current_metrics", JSONB),
        sa.Column("is_auto_measured", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("decision_id", name="uq_outcome_per_decision"),
        sa.CheckConstraint(
            "outcome_status IN ('pending', 'success', 'partial', 'failed', 'exceeded')",
            name="ck_outcome_status",
        ),
    )
    op.create_index("ix_outcome_records_tenant_date", "decision_outcome_records", ["tenant_id", "evaluation_date"])
    op.execute(
        "CREATE RULE decision_outcome_records_no_update AS "
        "ON UPDATE TO decision_outcome_records DO INSTEAD NOTHING"
    )

    # Row-level security: every tenant table is filtered by app.current_tenant_id
    for table in TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (tenant_id::text = current_setting('app.current_tenant_id', true))"
        )


def downgrade() -> None:
    for table in TENANT_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
    op.execute("DROP RULE IF EXISTS decision_outcome_records_no_update ON decision_outcome_records")
    for table in reversed(["tenants", *TENANT_TABLES]):
        op.drop_table(table)
