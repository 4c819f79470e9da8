"""
Amazon Ads Rule Automation — Database Models
Rules, audit log, per-entity throttles and daily budget overrides are owned
by the automation engine. Stream events and the settled search term report
are written by the ingestion jobs and only read here.
"""

import uuid
import enum
from datetime import date, datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, Date, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class AdType(str, enum.Enum):
    SP = "SP"
    SB = "SB"
    SD = "SD"


class RuleType(str, enum.Enum):
    BID_ADJUSTMENT = "BID_ADJUSTMENT"
    SEARCH_TERM_AUTOMATION = "SEARCH_TERM_AUTOMATION"
    BUDGET_ACCELERATION = "BUDGET_ACCELERATION"


class LogStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    NO_ACTION = "NO_ACTION"
    FAILURE = "FAILURE"


# ══════════════════════════════════════════════════════════════════════
#  AUTOMATION RULES — Operator-defined strategies
# ══════════════════════════════════════════════════════════════════════

class AutomationRule(Base):
    """
    A persisted automation strategy. Created and edited by the operator UI;
    the engine only ever writes ``last_run_at``.

    ``scope`` is ``{"campaignIds": [...]}``; ``config`` holds
    ``conditionGroups``, ``frequency`` and ``cooldown`` (see app.schemas).
    """
    __tablename__ = "automation_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ad_type: Mapped[str] = mapped_column(String(10), default=AdType.SP.value)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    scope: Mapped[dict] = mapped_column(JSON, nullable=True)
    config: Mapped[dict] = mapped_column(JSON, nullable=False)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    logs: Mapped[list["AutomationLog"]] = relationship("AutomationLog", back_populates="rule", passive_deletes=True)

    __table_args__ = (
        Index("ix_automation_rules_is_active", "is_active"),
        Index("ix_automation_rules_rule_type", "rule_type"),
    )

    @property
    def campaign_ids(self) -> list[str]:
        scope = self.scope or {}
        return [str(cid) for cid in (scope.get("campaignIds") or [])]


# ══════════════════════════════════════════════════════════════════════
#  AUTOMATION LOGS — Append-only audit trail read by the dashboard
# ══════════════════════════════════════════════════════════════════════

class AutomationLog(Base):
    """One row per rule run: SUCCESS, NO_ACTION or FAILURE with structured details."""
    __tablename__ = "automation_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    rule: Mapped["AutomationRule"] = relationship("AutomationRule", back_populates="logs")

    __table_args__ = (
        Index("ix_automation_logs_rule_id", "rule_id"),
        Index("ix_automation_logs_status", "status"),
        Index("ix_automation_logs_run_at", "run_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTION THROTTLE — Per-entity cooldown for each rule
# ══════════════════════════════════════════════════════════════════════

class AutomationActionThrottle(Base):
    """
    Cooldown marker for a (rule, entity) pair. entity_id is a keyword or
    target id for bid rules and the raw search term text for negation rules.
    """
    __tablename__ = "automation_action_throttle"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("automation_rules.id", ondelete="CASCADE"), nullable=False)
    entity_id: Mapped[str] = mapped_column(Text, nullable=False)
    throttle_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("rule_id", "entity_id", name="uq_throttle_rule_entity"),
        Index("ix_throttle_rule_until", "rule_id", "throttle_until"),
    )


# ══════════════════════════════════════════════════════════════════════
#  DAILY BUDGET OVERRIDES — Pre-acceleration budgets to restore nightly
# ══════════════════════════════════════════════════════════════════════

class DailyBudgetOverride(Base):
    """
    The budget a campaign had before its first acceleration of the day.
    Written once per campaign per day (conflict-ignore), reverted by the
    nightly reset sweep.
    """
    __tablename__ = "daily_budget_overrides"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True)
    original_budget: Mapped[float] = mapped_column(Float, nullable=False)
    override_date: Mapped[date] = mapped_column(Date, nullable=False)
    reverted_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("campaign_id", "override_date", name="uq_budget_override_campaign_date"),
        Index("ix_budget_overrides_date", "override_date"),
    )


# ══════════════════════════════════════════════════════════════════════
#  RAW STREAM EVENTS — Near real-time Marketing Stream payloads
# ══════════════════════════════════════════════════════════════════════

class RawStreamEvent(Base):
    """
    sp-traffic / sp-conversion messages as delivered by Amazon Marketing Stream.
    event_data carries campaign_id, ad_group_id, keyword_id or target_id,
    time_window_start and the metric fields.
    """
    __tablename__ = "raw_stream_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    event_data: Mapped[dict] = mapped_column(JSON, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_raw_stream_events_type", "event_type"),
        Index("ix_raw_stream_events_received_at", "received_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SEARCH TERM REPORT — Settled daily Sponsored Products report rows
# ══════════════════════════════════════════════════════════════════════

class SearchTermReport(Base):
    """Daily-grain rows from the Sponsored Products search term report."""
    __tablename__ = "sponsored_products_search_term_report"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_date: Mapped[date] = mapped_column(Date, nullable=False)
    campaign_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    campaign_name: Mapped[str] = mapped_column(Text, nullable=True)
    ad_group_id: Mapped[int] = mapped_column(BigInteger, nullable=True)
    ad_group_name: Mapped[str] = mapped_column(Text, nullable=True)
    keyword_id: Mapped[int] = mapped_column(BigInteger, nullable=True)
    keyword_text: Mapped[str] = mapped_column(Text, nullable=True)
    targeting: Mapped[str] = mapped_column(Text, nullable=True)
    match_type: Mapped[str] = mapped_column(String(50), nullable=True)
    customer_search_term: Mapped[str] = mapped_column(Text, nullable=True)
    impressions: Mapped[int] = mapped_column(BigInteger, nullable=True)
    clicks: Mapped[int] = mapped_column(BigInteger, nullable=True)
    cost: Mapped[float] = mapped_column(Float, nullable=True)
    sales_1d: Mapped[float] = mapped_column(Float, nullable=True)
    purchases_1d: Mapped[int] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "report_date", "campaign_id", "ad_group_id", "keyword_id",
            "customer_search_term", "targeting",
            name="uq_sp_search_term_report_row",
        ),
        Index("ix_sp_str_report_date", "report_date"),
        Index("ix_sp_str_campaign_id", "campaign_id"),
        Index("ix_sp_str_keyword_id", "keyword_id"),
    )
