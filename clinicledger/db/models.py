"""SQLAlchemy models for the clinic ledgers."""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class RateType(str, enum.Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"


class AppliesTo(str, enum.Enum):
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"
    ALL_PAYMENTS = "ALL_PAYMENTS"


class CommissionStatus(str, enum.Enum):
    """Lifecycle of an affiliate or sales-rep commission event."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    REVERSED = "REVERSED"


class AffiliateStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class TouchType(str, enum.Enum):
    CLICK = "CLICK"
    IMPRESSION = "IMPRESSION"
    POSTBACK = "POSTBACK"


class AttributionModel(str, enum.Enum):
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"
    TIME_DECAY = "TIME_DECAY"
    POSITION = "POSITION"


class CompensationType(str, enum.Enum):
    FLAT_RATE = "FLAT_RATE"
    PERCENTAGE = "PERCENTAGE"
    HYBRID = "HYBRID"


class CompensationStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    VOIDED = "VOIDED"


class FeeCalculation(str, enum.Enum):
    FLAT = "FLAT"
    PERCENTAGE = "PERCENTAGE"


class AdminFeeType(str, enum.Enum):
    NONE = "NONE"
    FLAT_WEEKLY = "FLAT_WEEKLY"
    PERCENTAGE_WEEKLY = "PERCENTAGE_WEEKLY"


class PlatformFeeType(str, enum.Enum):
    PRESCRIPTION = "PRESCRIPTION"
    TRANSMISSION = "TRANSMISSION"
    ADMIN = "ADMIN"


class FeeStatus(str, enum.Enum):
    PENDING = "PENDING"
    INVOICED = "INVOICED"
    PAID = "PAID"
    WAIVED = "WAIVED"
    VOIDED = "VOIDED"


# ---------------------------------------------------------------------------
# Tenancy, patients and sequential identifiers
# ---------------------------------------------------------------------------


class Clinic(Base):
    __tablename__ = "clinics"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    name = sa.Column(String, nullable=False)
    subdomain = sa.Column(String, nullable=True, unique=True)
    patient_id_prefix = sa.Column(String(5), nullable=True)
    provider_compensation_enabled = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    is_active = sa.Column(Boolean, nullable=False, default=True, server_default=sa.true())
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class ClinicCounter(Base):
    """Monotonic per-clinic counter for a named sequence (``patient``, ``ticket``)."""

    __tablename__ = "clinic_counters"

    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), primary_key=True)
    sequence = sa.Column(String(32), primary_key=True)
    current_value = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class Patient(Base):
    __tablename__ = "patients"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(String(32), nullable=False)
    first_name = sa.Column(String, nullable=True)
    last_name = sa.Column(String, nullable=True)
    email = sa.Column(String, nullable=True)
    attribution_affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=True)
    attribution_ref_code = sa.Column(String, nullable=True)
    attributed_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "patient_id", name="uq_patients_clinic_patient_id"),
        sa.Index("idx_patients_attribution", "attribution_affiliate_id"),
    )


class Ticket(Base):
    __tablename__ = "tickets"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    ticket_number = sa.Column(String(32), nullable=False)
    title = sa.Column(String, nullable=False)
    status = sa.Column(String, nullable=False, default="OPEN", server_default="OPEN")
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (sa.UniqueConstraint("clinic_id", "ticket_number", name="uq_tickets_clinic_number"),)


# ---------------------------------------------------------------------------
# Affiliates
# ---------------------------------------------------------------------------


class Affiliate(Base):
    __tablename__ = "affiliates"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    display_name = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True)
    ref_code = sa.Column(String, nullable=True)
    status = sa.Column(String, nullable=False, default=AffiliateStatus.ACTIVE.value)
    lifetime_conversions = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    lifetime_revenue_cents = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        sa.Index("idx_affiliates_clinic", "clinic_id", "status"),
        sa.UniqueConstraint("clinic_id", "ref_code", name="uq_affiliates_clinic_ref_code"),
    )


class AffiliateProgram(Base):
    __tablename__ = "affiliate_programs"

    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), primary_key=True)
    minimum_payout_cents = sa.Column(Integer, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True)


class AffiliateCommissionPlan(Base):
    __tablename__ = "affiliate_commission_plans"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    plan_type = sa.Column(String, nullable=False, default=RateType.PERCENT.value)
    flat_amount_cents = sa.Column(Integer, nullable=True)
    percent_bps = sa.Column(Integer, nullable=True)
    initial_percent_bps = sa.Column(Integer, nullable=True)
    initial_flat_amount_cents = sa.Column(Integer, nullable=True)
    recurring_percent_bps = sa.Column(Integer, nullable=True)
    recurring_flat_amount_cents = sa.Column(Integer, nullable=True)
    applies_to = sa.Column(String, nullable=False, default=AppliesTo.FIRST_PAYMENT_ONLY.value)
    hold_days = sa.Column(Integer, nullable=False, default=0)
    clawback_enabled = sa.Column(Boolean, nullable=False, default=False)
    recurring_enabled = sa.Column(Boolean, nullable=False, default=False)
    recurring_months = sa.Column(Integer, nullable=True)
    recurring_decay_pct = sa.Column(Float, nullable=True)
    tiers_enabled = sa.Column(Boolean, nullable=False, default=False)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class AffiliateCommissionTier(Base):
    __tablename__ = "affiliate_commission_tiers"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    plan_id = sa.Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    level = sa.Column(Integer, nullable=False)
    min_conversions = sa.Column(Integer, nullable=False, default=0)
    min_revenue_cents = sa.Column(Integer, nullable=False, default=0)
    percent_bps = sa.Column(Integer, nullable=True)
    flat_amount_cents = sa.Column(Integer, nullable=True)
    bonus_cents = sa.Column(Integer, nullable=False, default=0)

    __table_args__ = (sa.UniqueConstraint("plan_id", "level", name="uq_affiliate_tiers_plan_level"),)


class AffiliateProductRate(Base):
    __tablename__ = "affiliate_product_rates"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    plan_id = sa.Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=False)
    product_sku = sa.Column(String, nullable=True)
    product_category = sa.Column(String, nullable=True)
    price_min_cents = sa.Column(Integer, nullable=True)
    price_max_cents = sa.Column(Integer, nullable=True)
    rate_type = sa.Column(String, nullable=False, default=RateType.PERCENT.value)
    percent_bps = sa.Column(Integer, nullable=True)
    flat_amount_cents = sa.Column(Integer, nullable=True)
    priority = sa.Column(Integer, nullable=False, default=0)
    is_active = sa.Column(Boolean, nullable=False, default=True)


class AffiliatePromotion(Base):
    __tablename__ = "affiliate_promotions"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    plan_id = sa.Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    bonus_percent_bps = sa.Column(Integer, nullable=True)
    bonus_flat_cents = sa.Column(Integer, nullable=True)
    starts_at = sa.Column(DateTime(timezone=True), nullable=False)
    ends_at = sa.Column(DateTime(timezone=True), nullable=True)
    max_uses = sa.Column(Integer, nullable=True)
    uses_count = sa.Column(Integer, nullable=False, default=0, server_default=sa.text("0"))
    min_order_cents = sa.Column(Integer, nullable=True)
    affiliate_ids = sa.Column(sa.JSON, nullable=True)
    ref_codes = sa.Column(sa.JSON, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True)


class AffiliatePlanAssignment(Base):
    __tablename__ = "affiliate_plan_assignments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    plan_id = sa.Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=False)
    effective_from = sa.Column(DateTime(timezone=True), nullable=False)
    effective_to = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("idx_affiliate_assignments_lookup", "clinic_id", "affiliate_id", "effective_from"),)


class AffiliateTouch(Base):
    __tablename__ = "affiliate_touches"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    ref_code = sa.Column(String, nullable=True)
    touch_type = sa.Column(String, nullable=False, default=TouchType.CLICK.value)
    visitor_fingerprint = sa.Column(String, nullable=True)
    cookie_id = sa.Column(String, nullable=True)
    ip_address_hash = sa.Column(String, nullable=True)
    landing_page = sa.Column(String, nullable=True)
    utm_source = sa.Column(String, nullable=True)
    utm_medium = sa.Column(String, nullable=True)
    utm_campaign = sa.Column(String, nullable=True)
    converted_patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    converted_at = sa.Column(DateTime(timezone=True), nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.Index("idx_affiliate_touches_ip", "affiliate_id", "ip_address_hash"),
        sa.Index("idx_affiliate_touches_visitor", "clinic_id", "visitor_fingerprint"),
        sa.Index("idx_affiliate_touches_cookie", "clinic_id", "cookie_id"),
    )


class AffiliateAttributionConfig(Base):
    __tablename__ = "affiliate_attribution_configs"

    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), primary_key=True)
    new_patient_model = sa.Column(String, nullable=False, default=AttributionModel.FIRST_CLICK.value)
    returning_patient_model = sa.Column(String, nullable=False, default=AttributionModel.LAST_CLICK.value)
    cookie_window_days = sa.Column(Integer, nullable=False, default=30)


class AffiliateCommissionEvent(Base):
    __tablename__ = "affiliate_commission_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    plan_id = sa.Column(Integer, ForeignKey("affiliate_commission_plans.id"), nullable=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    payout_id = sa.Column(Integer, ForeignKey("affiliate_payouts.id"), nullable=True)
    stripe_event_id = sa.Column(String, nullable=False)
    stripe_object_id = sa.Column(String, nullable=False)
    stripe_event_type = sa.Column(String, nullable=False)
    event_amount_cents = sa.Column(Integer, nullable=False)
    base_commission_cents = sa.Column(Integer, nullable=False, default=0)
    tier_bonus_cents = sa.Column(Integer, nullable=False, default=0)
    promotion_bonus_cents = sa.Column(Integer, nullable=False, default=0)
    product_adjustment_cents = sa.Column(Integer, nullable=False, default=0)
    commission_amount_cents = sa.Column(Integer, nullable=False)
    is_recurring = sa.Column(Boolean, nullable=False, default=False)
    recurring_month = sa.Column(Integer, nullable=True)
    status = sa.Column(String, nullable=False, default=CommissionStatus.PENDING.value)
    occurred_at = sa.Column(DateTime(timezone=True), nullable=False)
    hold_until = sa.Column(DateTime(timezone=True), nullable=True)
    approved_at = sa.Column(DateTime(timezone=True), nullable=True)
    paid_at = sa.Column(DateTime(timezone=True), nullable=True)
    reversed_at = sa.Column(DateTime(timezone=True), nullable=True)
    reversal_reason = sa.Column(String, nullable=True)
    event_metadata = sa.Column("metadata", sa.JSON, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "stripe_event_id", name="uq_affiliate_events_clinic_stripe_event"),
        sa.Index("idx_affiliate_events_object", "stripe_object_id"),
        sa.Index("idx_affiliate_events_status", "clinic_id", "affiliate_id", "status"),
        sa.Index("idx_affiliate_events_occurred", "clinic_id", "occurred_at"),
    )


class AffiliateFraudConfig(Base):
    __tablename__ = "affiliate_fraud_configs"

    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), primary_key=True)
    enabled = sa.Column(Boolean, nullable=False, default=True)
    max_conversions_per_day = sa.Column(Integer, nullable=False, default=50)
    max_conversions_per_hour = sa.Column(Integer, nullable=False, default=10)
    velocity_spike_multiplier = sa.Column(Float, nullable=False, default=3.0)
    max_conversions_per_ip = sa.Column(Integer, nullable=False, default=3)
    min_ip_risk_score = sa.Column(Integer, nullable=False, default=75)
    block_proxy_vpn = sa.Column(Boolean, nullable=False, default=False)
    block_datacenter = sa.Column(Boolean, nullable=False, default=True)
    block_tor = sa.Column(Boolean, nullable=False, default=True)
    max_refund_rate_pct = sa.Column(Float, nullable=False, default=20.0)
    min_refunds_for_alert = sa.Column(Integer, nullable=False, default=5)
    enable_self_referral_check = sa.Column(Boolean, nullable=False, default=True)
    auto_hold_on_high_risk = sa.Column(Boolean, nullable=False, default=True)
    auto_suspend_on_critical = sa.Column(Boolean, nullable=False, default=False)


class AffiliateIpIntel(Base):
    """Cached reputation of a hashed IP address, refreshed once expired."""

    __tablename__ = "affiliate_ip_intel"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    ip_hash = sa.Column(String, nullable=False, unique=True)
    is_proxy = sa.Column(Boolean, nullable=False, default=False)
    is_vpn = sa.Column(Boolean, nullable=False, default=False)
    is_tor = sa.Column(Boolean, nullable=False, default=False)
    is_datacenter = sa.Column(Boolean, nullable=False, default=False)
    risk_score = sa.Column(Integer, nullable=False, default=0)
    fraud_score = sa.Column(Integer, nullable=False, default=0)
    provider = sa.Column(String, nullable=True)
    expires_at = sa.Column(DateTime(timezone=True), nullable=False)
    updated_at = sa.Column(
        DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow, onupdate=_utcnow
    )


class AffiliateFraudAlert(Base):
    __tablename__ = "affiliate_fraud_alerts"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    commission_event_id = sa.Column(Integer, ForeignKey("affiliate_commission_events.id"), nullable=True)
    alert_type = sa.Column(String, nullable=False)
    severity = sa.Column(String, nullable=False)
    description = sa.Column(Text, nullable=False)
    evidence = sa.Column(sa.JSON, nullable=True)
    risk_score = sa.Column(Integer, nullable=False, default=0)
    affected_amount_cents = sa.Column(Integer, nullable=True)
    status = sa.Column(String, nullable=False, default="OPEN")
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class AffiliatePayoutMethod(Base):
    __tablename__ = "affiliate_payout_methods"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    method_type = sa.Column(String, nullable=False)
    is_verified = sa.Column(Boolean, nullable=False, default=False)
    is_default = sa.Column(Boolean, nullable=False, default=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class AffiliateTaxDocument(Base):
    __tablename__ = "affiliate_tax_documents"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    document_type = sa.Column(String, nullable=False)
    tax_year = sa.Column(Integer, nullable=False)
    status = sa.Column(String, nullable=False, default="PENDING")
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class AffiliatePayout(Base):
    __tablename__ = "affiliate_payouts"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    affiliate_id = sa.Column(Integer, ForeignKey("affiliates.id"), nullable=False)
    payout_method_id = sa.Column(Integer, ForeignKey("affiliate_payout_methods.id"), nullable=True)
    method_type = sa.Column(String, nullable=True)
    amount_cents = sa.Column(Integer, nullable=False)
    event_count = sa.Column(Integer, nullable=False)
    status = sa.Column(String, nullable=False, default="PENDING")
    reference = sa.Column(String, nullable=True)
    approved_by = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("idx_affiliate_payouts_affiliate", "clinic_id", "affiliate_id", "created_at"),)


# ---------------------------------------------------------------------------
# Sales representatives
# ---------------------------------------------------------------------------


class SalesRep(Base):
    __tablename__ = "sales_reps"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    email = sa.Column(String, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class SalesRepCommissionPlan(Base):
    __tablename__ = "sales_rep_commission_plans"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    plan_type = sa.Column(String, nullable=False, default=RateType.PERCENT.value)
    flat_amount_cents = sa.Column(Integer, nullable=True)
    percent_bps = sa.Column(Integer, nullable=True)
    initial_percent_bps = sa.Column(Integer, nullable=True)
    initial_flat_amount_cents = sa.Column(Integer, nullable=True)
    recurring_percent_bps = sa.Column(Integer, nullable=True)
    recurring_flat_amount_cents = sa.Column(Integer, nullable=True)
    applies_to = sa.Column(String, nullable=False, default=AppliesTo.ALL_PAYMENTS.value)
    hold_days = sa.Column(Integer, nullable=False, default=7)
    clawback_enabled = sa.Column(Boolean, nullable=False, default=True)
    recurring_enabled = sa.Column(Boolean, nullable=False, default=True)
    recurring_months = sa.Column(Integer, nullable=True)
    multi_item_bonus_enabled = sa.Column(Boolean, nullable=False, default=False)
    multi_item_bonus_type = sa.Column(String, nullable=True)
    multi_item_bonus_percent_bps = sa.Column(Integer, nullable=True)
    multi_item_bonus_flat_cents = sa.Column(Integer, nullable=True)
    multi_item_min_quantity = sa.Column(Integer, nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class SalesRepPlanAssignment(Base):
    __tablename__ = "sales_rep_plan_assignments"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    sales_rep_id = sa.Column(Integer, ForeignKey("sales_reps.id"), nullable=False)
    plan_id = sa.Column(Integer, ForeignKey("sales_rep_commission_plans.id"), nullable=False)
    hourly_rate_cents = sa.Column(Integer, nullable=True)
    effective_from = sa.Column(DateTime(timezone=True), nullable=False)
    effective_to = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("idx_sales_rep_assignments_lookup", "clinic_id", "sales_rep_id", "effective_from"),)


class SalesRepProductRule(Base):
    __tablename__ = "sales_rep_product_rules"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    plan_id = sa.Column(Integer, ForeignKey("sales_rep_commission_plans.id"), nullable=False)
    product_id = sa.Column(Integer, nullable=True)
    product_bundle_id = sa.Column(Integer, nullable=True)
    bonus_type = sa.Column(String, nullable=False, default=RateType.PERCENT.value)
    percent_bps = sa.Column(Integer, nullable=True)
    flat_amount_cents = sa.Column(Integer, nullable=True)

    __table_args__ = (
        sa.CheckConstraint(
            "(product_id IS NULL) <> (product_bundle_id IS NULL)",
            name="ck_sales_rep_rules_single_target",
        ),
    )


class SalesRepCommissionEvent(Base):
    __tablename__ = "sales_rep_commission_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    sales_rep_id = sa.Column(Integer, ForeignKey("sales_reps.id"), nullable=False)
    plan_id = sa.Column(Integer, ForeignKey("sales_rep_commission_plans.id"), nullable=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    source_event_id = sa.Column(String, nullable=False)
    source_object_id = sa.Column(String, nullable=False)
    event_amount_cents = sa.Column(Integer, nullable=False)
    base_commission_cents = sa.Column(Integer, nullable=False, default=0)
    multi_item_bonus_cents = sa.Column(Integer, nullable=False, default=0)
    product_bonus_cents = sa.Column(Integer, nullable=False, default=0)
    commission_amount_cents = sa.Column(Integer, nullable=False)
    is_recurring = sa.Column(Boolean, nullable=False, default=False)
    status = sa.Column(String, nullable=False, default=CommissionStatus.PENDING.value)
    occurred_at = sa.Column(DateTime(timezone=True), nullable=False)
    hold_until = sa.Column(DateTime(timezone=True), nullable=True)
    approved_at = sa.Column(DateTime(timezone=True), nullable=True)
    reversed_at = sa.Column(DateTime(timezone=True), nullable=True)
    reversal_reason = sa.Column(String, nullable=True)
    event_metadata = sa.Column("metadata", sa.JSON, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "source_event_id", name="uq_sales_rep_events_clinic_source"),
        sa.Index("idx_sales_rep_events_object", "source_object_id"),
    )


class SalesRepTimeEntry(Base):
    __tablename__ = "sales_rep_time_entries"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    sales_rep_id = sa.Column(Integer, ForeignKey("sales_reps.id"), nullable=False)
    work_date = sa.Column(Date, nullable=False)
    minutes = sa.Column(Integer, nullable=False)
    note = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (sa.Index("idx_sales_rep_time_entries_rep", "sales_rep_id", "work_date"),)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class Provider(Base):
    __tablename__ = "providers"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    npi = sa.Column(String, nullable=True)
    is_platform_provider = sa.Column(Boolean, nullable=False, default=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)


class ProviderCompensationPlan(Base):
    __tablename__ = "provider_compensation_plans"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    provider_id = sa.Column(Integer, ForeignKey("providers.id"), nullable=False)
    compensation_type = sa.Column(String, nullable=False, default=CompensationType.FLAT_RATE.value)
    flat_rate_per_script = sa.Column(Integer, nullable=False, default=0)
    percent_bps = sa.Column(Integer, nullable=False, default=0)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    notes = sa.Column(Text, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (sa.UniqueConstraint("clinic_id", "provider_id", name="uq_provider_plans_clinic_provider"),)


class ProviderCompensationEvent(Base):
    __tablename__ = "provider_compensation_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    provider_id = sa.Column(Integer, ForeignKey("providers.id"), nullable=False)
    plan_id = sa.Column(Integer, ForeignKey("provider_compensation_plans.id"), nullable=False)
    order_id = sa.Column(String, nullable=False)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    prescription_count = sa.Column(Integer, nullable=False, default=1)
    order_total_cents = sa.Column(Integer, nullable=True)
    amount_cents = sa.Column(Integer, nullable=False)
    calculation_details = sa.Column(sa.JSON, nullable=True)
    status = sa.Column(String, nullable=False, default=CompensationStatus.PENDING.value)
    approved_at = sa.Column(DateTime(timezone=True), nullable=True)
    paid_at = sa.Column(DateTime(timezone=True), nullable=True)
    payout_reference = sa.Column(String, nullable=True)
    payout_batch_id = sa.Column(String, nullable=True)
    voided_at = sa.Column(DateTime(timezone=True), nullable=True)
    voided_reason = sa.Column(String, nullable=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "order_id", name="uq_provider_events_clinic_order"),
        sa.Index("idx_provider_events_provider", "provider_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Platform fees
# ---------------------------------------------------------------------------


class ClinicPlatformFeeConfig(Base):
    __tablename__ = "clinic_platform_fee_configs"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False, unique=True)
    prescription_fee_type = sa.Column(String, nullable=False, default=FeeCalculation.FLAT.value)
    prescription_fee_amount = sa.Column(Integer, nullable=False, default=0)
    transmission_fee_type = sa.Column(String, nullable=False, default=FeeCalculation.FLAT.value)
    transmission_fee_amount = sa.Column(Integer, nullable=False, default=0)
    admin_fee_type = sa.Column(String, nullable=False, default=AdminFeeType.NONE.value)
    admin_fee_amount = sa.Column(Integer, nullable=False, default=0)
    prescription_cycle_days = sa.Column(Integer, nullable=False, default=90)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)
    updated_at = sa.Column(
        DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow, onupdate=_utcnow
    )


class PlatformFeeEvent(Base):
    __tablename__ = "platform_fee_events"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    fee_type = sa.Column(String, nullable=False)
    order_id = sa.Column(String, nullable=True)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=True)
    provider_id = sa.Column(Integer, ForeignKey("providers.id"), nullable=True)
    medication_key = sa.Column(String, nullable=True)
    amount_cents = sa.Column(Integer, nullable=False)
    calculation_details = sa.Column(sa.JSON, nullable=True)
    status = sa.Column(String, nullable=False, default=FeeStatus.PENDING.value)
    waived_reason = sa.Column(String, nullable=True)
    waived_at = sa.Column(DateTime(timezone=True), nullable=True)
    voided_reason = sa.Column(String, nullable=True)
    voided_at = sa.Column(DateTime(timezone=True), nullable=True)
    period_start = sa.Column(DateTime(timezone=True), nullable=True)
    period_end = sa.Column(DateTime(timezone=True), nullable=True)
    occurred_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "fee_type", "order_id", name="uq_platform_fees_order"),
        sa.UniqueConstraint("clinic_id", "fee_type", "period_start", "period_end", name="uq_platform_fees_period"),
        sa.Index("idx_platform_fees_clinic", "clinic_id", "occurred_at"),
    )


class PatientPrescriptionCycle(Base):
    __tablename__ = "patient_prescription_cycles"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    patient_id = sa.Column(Integer, ForeignKey("patients.id"), nullable=False)
    medication_key = sa.Column(String, nullable=False)
    last_charged_at = sa.Column(DateTime(timezone=True), nullable=False)
    next_eligible_at = sa.Column(DateTime(timezone=True), nullable=False)
    last_order_id = sa.Column(String, nullable=True)

    __table_args__ = (
        sa.UniqueConstraint("clinic_id", "patient_id", "medication_key", name="uq_prescription_cycles_key"),
    )


class FeeWaiverRule(Base):
    __tablename__ = "fee_waiver_rules"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    clinic_id = sa.Column(Integer, ForeignKey("clinics.id"), nullable=False)
    name = sa.Column(String, nullable=False)
    fee_type = sa.Column(String, nullable=True)
    medication_key_prefix = sa.Column(String, nullable=True)
    max_waivers_per_patient = sa.Column(Integer, nullable=True)
    effective_from = sa.Column(DateTime(timezone=True), nullable=False)
    effective_to = sa.Column(DateTime(timezone=True), nullable=True)
    is_active = sa.Column(Boolean, nullable=False, default=True)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, server_default=sa.func.now(), default=_utcnow)

    __table_args__ = (sa.Index("idx_fee_waiver_rules_clinic", "clinic_id", "effective_from"),)


# ---------------------------------------------------------------------------
# HIPAA audit ledger
# ---------------------------------------------------------------------------


class HIPAAAuditEntry(Base):
    """Append-only, hash-chained audit record."""

    __tablename__ = "hipaa_audit_entries"

    id = sa.Column(Integer, primary_key=True, autoincrement=True)
    chain_id = sa.Column(String(64), nullable=False)
    sequence = sa.Column(Integer, nullable=False)
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    event_type = sa.Column(String, nullable=False)
    outcome = sa.Column(String, nullable=False)
    user_id = sa.Column(String, nullable=True)
    user_email = sa.Column(String, nullable=True)
    user_role = sa.Column(String, nullable=True)
    clinic_id = sa.Column(Integer, nullable=True)
    patient_id = sa.Column(String, nullable=True)
    resource_type = sa.Column(String, nullable=True)
    resource_id = sa.Column(String, nullable=True)
    action = sa.Column(String, nullable=True)
    reason = sa.Column(String, nullable=True)
    ip_address = sa.Column(String, nullable=True)
    user_agent = sa.Column(String, nullable=True)
    session_id = sa.Column(String, nullable=True)
    request_id = sa.Column(String, nullable=True)
    request_method = sa.Column(String, nullable=True)
    request_path = sa.Column(String, nullable=True)
    entry_metadata = sa.Column("metadata", sa.JSON, nullable=True)
    previous_hash = sa.Column(String(64), nullable=False)
    hash = sa.Column(String(64), nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("chain_id", "sequence", name="uq_hipaa_audit_chain_sequence"),
        sa.Index("idx_hipaa_audit_clinic", "clinic_id", "created_at"),
        sa.Index("idx_hipaa_audit_patient", "patient_id"),
        sa.Index("idx_hipaa_audit_event_type", "event_type"),
    )
