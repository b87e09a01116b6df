"""
Decision Pipeline Database Models

Multi-tenant via tenant_id on all tables.

Tables:
  1. tenants                   - Tenant organizations (scheduler fan-out)
  2. job_runs                  - Lock & job registry (one running row per lock_key)
  3. monitored_objects         - SKUs, stores, campaigns under rule evaluation
  4. threshold_configs         - Literal threshold alert definitions
  5. intelligent_rules         - Formula-driven alert definitions
  6. alert_instances           - Materialized rule breaches
  7. decision_cards            - Operator decision lifecycle
  8. decision_outcome_records  - Append-only outcome ledger
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from db.session import Base


def _utcnow() -> datetime:
    from core.context import utcnow

    return utcnow()


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


UNDECIDED_CARD_STATUSES = ("OPEN", "IN_PROGRESS", "SNOOZED")


# ─── 1. Tenants ─────────────────────────────────────────────────────────────


class Tenant(Base):
    __tablename__ = "tenants"

    tenant_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('active', 'trial', 'inactive', 'churned')", name="ck_tenant_status"),
    )


# ─── 2. Job Runs ────────────────────────────────────────────────────────────


class JobRun(Base):
    __tablename__ = "job_runs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    function_name = Column(String(100), nullable=False)
    lock_key = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="running")
    started_at = Column(DateTime, nullable=False, default=_utcnow)
    completed_at = Column(DateTime)
    input_params = Column(JSON, default=dict)
    result = Column(JSON)
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        # Single-writer guarantee: the application read before insert is only a fast path.
        Index(
            "uq_job_runs_running_lock",
            "lock_key",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_job_runs_tenant_started", "tenant_id", "started_at"),
        CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled')",
            name="ck_job_run_status",
        ),
    )


# ─── 3. Monitored Objects ───────────────────────────────────────────────────


class MonitoredObject(Base):
    __tablename__ = "monitored_objects"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    object_type = Column(String(30), nullable=False)
    object_name = Column(String(255), nullable=False)
    external_id = Column(String(255), nullable=False)
    current_metrics = Column(JSON, default=dict)
    is_monitored = Column(Boolean, nullable=False, default=True)
    lead_time_days = Column(Integer)
    safety_stock = Column(Float)
    last_sale_date = Column(Date)

    # Derived fields, rewritten by the refresh step that precedes rule evaluation
    sales_velocity = Column(Float)
    avg_daily_sales = Column(Float)
    days_of_stock = Column(Float)
    trend_direction = Column(String(10))
    trend_percent = Column(Float)
    reorder_point = Column(Float)
    stockout_risk_days = Column(Float)
    metrics_refreshed_at = Column(DateTime)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "object_type", "external_id", name="uq_monitored_object_external"),
        Index("ix_monitored_objects_tenant_type", "tenant_id", "object_type"),
        CheckConstraint(
            "object_type IN ('product', 'store', 'campaign', 'supplier', 'order')",
            name="ck_monitored_object_type",
        ),
    )


# ─── 4. Threshold Configs ──────────────────────────────────────────────────


class ThresholdConfig(Base):
    __tablename__ = "threshold_configs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    alert_type = Column(String(80), nullable=False)
    category = Column(String(50), nullable=False, default="inventory")
    title = Column(String(255), nullable=False)
    metric = Column(String(100), nullable=False)
    operator = Column(String(30), nullable=False)
    threshold_value = Column(Float, nullable=False)
    unit = Column(String(20))
    severity = Column(String(20), nullable=False, default="warning")
    object_type = Column(String(30))
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_threshold_configs_tenant_enabled", "tenant_id", "enabled"),
        CheckConstraint("severity IN ('critical', 'warning', 'info')", name="ck_threshold_config_severity"),
    )


# ─── 5. Intelligent Rules ──────────────────────────────────────────────────


class IntelligentRule(Base):
    __tablename__ = "intelligent_rules"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    rule_code = Column(String(80), nullable=False)
    rule_name = Column(String(255), nullable=False)
    rule_category = Column(String(50), nullable=False, default="inventory")
    target_object_type = Column(String(30))
    formula = Column(JSON)  # typed formula, see alerts.formulas
    calculation_formula = Column(Text)  # legacy free text; bare metric names only
    threshold_type = Column(String(30), nullable=False, default="absolute")
    threshold_config = Column(JSON, default=dict)
    severity = Column(String(20), nullable=False, default="warning")
    suggested_actions = Column(JSON, default=list)
    priority = Column(Integer, nullable=False, default=100)
    is_enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "rule_code", name="uq_intelligent_rule_code"),
        Index("ix_intelligent_rules_tenant_priority", "tenant_id", "priority"),
    )


# ─── 6. Alert Instances ────────────────────────────────────────────────────


class AlertInstance(Base):
    __tablename__ = "alert_instances"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    source_type = Column(String(30), nullable=False)
    rule_id = Column(GUID(), ForeignKey("intelligent_rules.id"))
    config_id = Column(GUID(), ForeignKey("threshold_configs.id"))
    object_id = Column(GUID(), ForeignKey("monitored_objects.id"))
    alert_type = Column(String(80), nullable=False)
    category = Column(String(50))
    severity = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=False)
    metric_name = Column(String(100))
    current_value = Column(Float)
    threshold_value = Column(Float)
    impact_amount = Column(Float)
    deadline_at = Column(DateTime)
    suggested_action = Column(Text)
    calculation_details = Column(JSON, default=dict)
    notification_sent = Column(Boolean, nullable=False, default=False)
    detection_date = Column(Date, nullable=False)
    dedup_key = Column(String(400), nullable=False)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    acknowledged_at = Column(DateTime)
    resolved_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("tenant_id", "dedup_key", name="uq_alert_instance_dedup"),
        Index("ix_alert_instances_tenant_status", "tenant_id", "status"),
        CheckConstraint(
            "source_type IN ('intelligent_rule', 'threshold_config', 'correlation')",
            name="ck_alert_source_type",
        ),
        CheckConstraint("severity IN ('critical', 'warning', 'info')", name="ck_alert_severity"),
        CheckConstraint("status IN ('active', 'acknowledged', 'resolved')", name="ck_alert_status"),
    )


# ─── 7. Decision Cards ─────────────────────────────────────────────────────


class DecisionCard(Base):
    __tablename__ = "decision_cards"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    card_type = Column(String(50), nullable=False)
    title = Column(String(500), nullable=False)
    question = Column(Text)
    priority = Column(String(2), nullable=False, default="P2")
    status = Column(String(20), nullable=False, default="OPEN")
    deadline_at = Column(DateTime)
    impact_amount = Column(Float)
    impact_currency = Column(String(3), nullable=False, default="VND")
    impact_metric = Column(String(100))
    entity_type = Column(String(30))
    entity_id = Column(GUID(), ForeignKey("monitored_objects.id"))
    entity_label = Column(String(255))
    source_type = Column(String(30))
    source_id = Column(String(100))
    confidence = Column(String(10), nullable=False, default="MEDIUM")
    owner_role = Column(String(30))
    facts = Column(JSON, nullable=False, default=list)  # [{fact_key, label, value, trend}]
    actions = Column(JSON, nullable=False, default=list)  # [{action_type, label, is_recommended}]

    snoozed_until = Column(DateTime)
    snooze_count = Column(Integer, nullable=False, default=0)
    snooze_reason = Column(Text)

    # Captured at decision time for the outcome evaluator
    predicted_impact = Column(Float)
    baseline_metrics = Column(JSON)
    decision_action_type = Column(String(40))
    decision_comment = Column(Text)
    decided_by = Column(String(255))
    decided_at = Column(DateTime)

    dismiss_reason = Column(String(30))
    dismiss_comment = Column(Text)

    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        # One undecided card per trigger
        Index(
            "uq_decision_cards_open_trigger",
            "tenant_id",
            "source_type",
            "source_id",
            unique=True,
            postgresql_where=text("status IN ('OPEN', 'IN_PROGRESS', 'SNOOZED')"),
            sqlite_where=text("status IN ('OPEN', 'IN_PROGRESS', 'SNOOZED')"),
        ),
        Index("ix_decision_cards_tenant_status", "tenant_id", "status"),
        Index("ix_decision_cards_decided_at", "tenant_id", "decided_at"),
        CheckConstraint("priority IN ('P1', 'P2', 'P3')", name="ck_decision_card_priority"),
        CheckConstraint("confidence IN ('HIGH', 'MEDIUM', 'LOW')", name="ck_decision_card_confidence"),
        CheckConstraint(
            "status IN ('OPEN', 'IN_PROGRESS', 'DECIDED', 'DISMISSED', 'SNOOZED')",
            name="ck_decision_card_status",
        ),
    )


# ─── 8. Decision Outcome Records ───────────────────────────────────────────


class DecisionOutcomeRecord(Base):
    __tablename__ = "decision_outcome_records"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(GUID(), ForeignKey("tenants.tenant_id"), nullable=False)
    decision_id = Column(GUID(), ForeignKey("decision_cards.id"), nullable=False)
    decision_type = Column(String(40))
    evaluation_date = Column(Date, nullable=False)
    predicted_impact = Column(Float)
    actual_impact = Column(Float)
    variance = Column(Float)
    accuracy_score = Column(Float, nullable=False)
    outcome_status = Column(String(20), nullable=False)
    baseline_metrics = Column(JSON)
    current_metrics = Column(JSON)
    is_auto_measured = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("decision_id", name="uq_outcome_per_decision"),
        Index("ix_outcome_records_tenant_date", "tenant_id", "evaluation_date"),
        CheckConstraint(
            "outcome_status IN ('pending', 'success', 'partial', 'failed', 'exceeded')",
            name="ck_outcome_status",
        ),
    )


@event.listens_for(DecisionOutcomeRecord, "before_update")
def _reject_outcome_mutation(mapper, connection, target):
    raise ValueError("decision_outcome_records is append-only")
