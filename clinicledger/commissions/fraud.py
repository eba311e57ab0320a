"""Fraud screening for affiliate conversions.

Each check inspects recent ledger activity for one affiliate and returns at
most one :class:`FraudAlert`.  Alert severities add up to a risk score that
drives the recommendation used by commission processing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinicledger.db import dialect_insert
from clinicledger.db.models import (
    Affiliate,
    AffiliateCommissionEvent,
    AffiliateFraudAlert,
    AffiliateFraudConfig,
    AffiliateIpIntel,
    AffiliateStatus,
    AffiliateTouch,
    CommissionStatus,
)
from clinicledger.security import hash_identifier, redact_email
from clinicledger.time_utils import ensure_utc, utc_now


logger = structlog.get_logger(__name__)

SEVERITY_SCORES = {"CRITICAL": 40, "HIGH": 25, "MEDIUM": 15, "LOW": 5}
MAX_RISK_SCORE = 100
SELF_REFERRAL_TOUCH_LIMIT = 10
IP_WINDOW_DAYS = 30
VELOCITY_BASELINE_DAYS = 30
REFUND_WINDOW_DAYS = 90
IP_INTEL_TTL_HOURS = 24


@dataclass(frozen=True)
class FraudConfig:
    enabled: bool = True
    max_conversions_per_day: int = 50
    max_conversions_per_hour: int = 10
    velocity_spike_multiplier: float = 3.0
    max_conversions_per_ip: int = 3
    min_ip_risk_score: int = 75
    block_proxy_vpn: bool = False
    block_datacenter: bool = True
    block_tor: bool = True
    max_refund_rate_pct: float = 20.0
    min_refunds_for_alert: int = 5
    enable_self_referral_check: bool = True
    auto_hold_on_high_risk: bool = True
    auto_suspend_on_critical: bool = False


@dataclass
class FraudAlert:
    alert_type: str
    severity: str
    description: str
    evidence: Dict[str, Any] = field(default_factory=dict)


@dataclass
class FraudCheckRequest:
    clinic_id: int
    affiliate_id: int
    amount_cents: int
    patient_email: Optional[str] = None
    ip_address: Optional[str] = None
    occurred_at: Optional[datetime] = None


@dataclass
class FraudCheckResult:
    passed: bool
    risk_score: int
    recommendation: str
    alerts: List[FraudAlert] = field(default_factory=list)

    @property
    def risk_level(self) -> str:
        return risk_level(self.risk_score)

    @property
    def alert_types(self) -> List[str]:
        return [alert.alert_type for alert in self.alerts]


def risk_level(score: int) -> str:
    if score >= 70:
        return "HIGH"
    if score >= 40:
        return "MEDIUM"
    return "LOW"


def get_fraud_config(session: Session, clinic_id: int) -> FraudConfig:
    """Return the clinic's fraud configuration or the defaults."""

    row = session.get(AffiliateFraudConfig, clinic_id)
    if row is None:
        return FraudConfig()
    return FraudConfig(
        enabled=row.enabled,
        max_conversions_per_day=row.max_conversions_per_day,
        max_conversions_per_hour=row.max_conversions_per_hour,
        velocity_spike_multiplier=row.velocity_spike_multiplier,
        max_conversions_per_ip=row.max_conversions_per_ip,
        min_ip_risk_score=row.min_ip_risk_score,
        block_proxy_vpn=row.block_proxy_vpn,
        block_datacenter=row.block_datacenter,
        block_tor=row.block_tor,
        max_refund_rate_pct=row.max_refund_rate_pct,
        min_refunds_for_alert=row.min_refunds_for_alert,
        enable_self_referral_check=row.enable_self_referral_check,
        auto_hold_on_high_risk=row.auto_hold_on_high_risk,
        auto_suspend_on_critical=row.auto_suspend_on_critical,
    )


def _count_events(session: Session, clinic_id: int, affiliate_id: int, since: datetime, until: datetime) -> int:
    stmt = select(func.count(AffiliateCommissionEvent.id)).where(
        AffiliateCommissionEvent.clinic_id == clinic_id,
        AffiliateCommissionEvent.affiliate_id == affiliate_id,
        AffiliateCommissionEvent.status != CommissionStatus.REVERSED.value,
        AffiliateCommissionEvent.occurred_at >= since,
        AffiliateCommissionEvent.occurred_at <= until,
    )
    return int(session.execute(stmt).scalar_one())


def check_self_referral(
    session: Session, request: FraudCheckRequest, now: datetime
) -> Optional[FraudAlert]:
    affiliate = session.get(Affiliate, request.affiliate_id)
    if affiliate is None:
        return None
    if request.patient_email and affiliate.email and affiliate.email.lower() == request.patient_email.lower():
        return FraudAlert(
            alert_type="SELF_REFERRAL",
            severity="CRITICAL",
            description="Affiliate email matches patient email",
            evidence={"affiliate_email": redact_email(affiliate.email)},
        )
    ip_hash = hash_identifier(request.ip_address)
    if ip_hash is None:
        return None
    stmt = select(func.count(AffiliateTouch.id)).where(
        AffiliateTouch.affiliate_id == request.affiliate_id,
        AffiliateTouch.ip_address_hash == ip_hash,
        AffiliateTouch.created_at >= now - timedelta(days=IP_WINDOW_DAYS),
    )
    touches = int(session.execute(stmt).scalar_one())
    if touches > SELF_REFERRAL_TOUCH_LIMIT:
        return FraudAlert(
            alert_type="SELF_REFERRAL",
            severity="HIGH",
            description="High number of touches from the same IP as affiliate activity",
            evidence={"ip_hash": ip_hash, "touch_count": touches},
        )
    return None


def check_duplicate_ip(
    session: Session, request: FraudCheckRequest, config: FraudConfig, now: datetime
) -> Optional[FraudAlert]:
    ip_hash = hash_identifier(request.ip_address)
    if ip_hash is None:
        return None
    stmt = select(func.count(AffiliateTouch.id)).where(
        AffiliateTouch.clinic_id == request.clinic_id,
        AffiliateTouch.affiliate_id == request.affiliate_id,
        AffiliateTouch.ip_address_hash == ip_hash,
        AffiliateTouch.converted_patient_id.is_not(None),
        AffiliateTouch.created_at >= now - timedelta(days=IP_WINDOW_DAYS),
    )
    conversions = int(session.execute(stmt).scalar_one())
    if conversions < config.max_conversions_per_ip:
        return None
    severity = "HIGH" if conversions > config.max_conversions_per_ip * 2 else "MEDIUM"
    return FraudAlert(
        alert_type="DUPLICATE_IP",
        severity=severity,
        description=f"{conversions} conversions from the same IP in {IP_WINDOW_DAYS} days",
        evidence={"ip_hash": ip_hash, "conversions": conversions, "limit": config.max_conversions_per_ip},
    )


def record_ip_intel(
    session: Session,
    ip_address: str,
    *,
    is_proxy: bool = False,
    is_vpn: bool = False,
    is_tor: bool = False,
    is_datacenter: bool = False,
    risk_score: int = 0,
    fraud_score: int = 0,
    provider: Optional[str] = None,
    now: Optional[datetime] = None,
) -> AffiliateIpIntel:
    """Cache reputation data for ``ip_address``; only the hash is stored."""

    ip_hash = hash_identifier(ip_address)
    if ip_hash is None:
        raise ValueError("ip_address is required")
    now = ensure_utc(now) if now else utc_now()
    values = {
        "is_proxy": is_proxy,
        "is_vpn": is_vpn,
        "is_tor": is_tor,
        "is_datacenter": is_datacenter,
        "risk_score": risk_score,
        "fraud_score": fraud_score,
        "provider": provider,
        "expires_at": now + timedelta(hours=IP_INTEL_TTL_HOURS),
        "updated_at": now,
    }
    table = AffiliateIpIntel.__table__
    stmt = dialect_insert(session, table).values(ip_hash=ip_hash, **values)
    session.execute(stmt.on_conflict_do_update(index_elements=[table.c.ip_hash], set_=values))
    stmt = select(AffiliateIpIntel).where(AffiliateIpIntel.ip_hash == ip_hash)
    return session.execute(stmt.execution_options(populate_existing=True)).scalar_one()


def get_ip_intel(session: Session, ip_address: Optional[str], now: datetime) -> Optional[AffiliateIpIntel]:
    ip_hash = hash_identifier(ip_address)
    if ip_hash is None:
        return None
    stmt = select(AffiliateIpIntel).where(
        AffiliateIpIntel.ip_hash == ip_hash, AffiliateIpIntel.expires_at > ensure_utc(now)
    )
    return session.execute(stmt).scalar_one_or_none()


def check_ip_risk(
    session: Session, request: FraudCheckRequest, config: FraudConfig, now: datetime
) -> Optional[FraudAlert]:
    """Flag traffic from Tor, datacenters, proxies or otherwise risky IPs.

    Only cached intelligence is consulted; an address with no fresh entry
    raises nothing.
    """

    intel = get_ip_intel(session, request.ip_address, now)
    if intel is None:
        return None
    evidence: Dict[str, Any] = {"ip_hash": intel.ip_hash, "risk_score": intel.risk_score}
    if config.block_tor and intel.is_tor:
        return FraudAlert("SUSPICIOUS_PATTERN", "CRITICAL", "Traffic from TOR exit node", {**evidence, "is_tor": True})
    if config.block_datacenter and intel.is_datacenter:
        return FraudAlert(
            "SUSPICIOUS_PATTERN", "HIGH", "Traffic from datacenter IP", {**evidence, "is_datacenter": True}
        )
    if config.block_proxy_vpn and (intel.is_proxy or intel.is_vpn):
        return FraudAlert(
            "SUSPICIOUS_PATTERN",
            "MEDIUM",
            "Traffic from proxy or VPN",
            {**evidence, "is_proxy": intel.is_proxy, "is_vpn": intel.is_vpn},
        )
    if intel.risk_score >= config.min_ip_risk_score:
        return FraudAlert(
            "SUSPICIOUS_PATTERN",
            "HIGH" if intel.risk_score >= 90 else "MEDIUM",
            f"High IP risk score: {intel.risk_score}",
            {**evidence, "fraud_score": intel.fraud_score},
        )
    return None


def check_velocity(
    session: Session, request: FraudCheckRequest, config: FraudConfig, now: datetime
) -> Optional[FraudAlert]:
    hourly = _count_events(session, request.clinic_id, request.affiliate_id, now - timedelta(hours=1), now)
    if hourly > config.max_conversions_per_hour:
        return FraudAlert(
            alert_type="VELOCITY_SPIKE",
            severity="HIGH",
            description=f"{hourly} conversions in the last hour",
            evidence={"hourly": hourly, "limit": config.max_conversions_per_hour},
        )
    daily = _count_events(session, request.clinic_id, request.affiliate_id, now - timedelta(days=1), now)
    if daily > config.max_conversions_per_day:
        return FraudAlert(
            alert_type="VELOCITY_SPIKE",
            severity="HIGH",
            description=f"{daily} conversions in the last 24 hours",
            evidence={"daily": daily, "limit": config.max_conversions_per_day},
        )
    baseline = _count_events(
        session, request.clinic_id, request.affiliate_id, now - timedelta(days=VELOCITY_BASELINE_DAYS), now
    )
    average = baseline / VELOCITY_BASELINE_DAYS
    if average > 1 and daily > average * config.velocity_spike_multiplier:
        return FraudAlert(
            alert_type="VELOCITY_SPIKE",
            severity="MEDIUM",
            description="Daily conversions well above the 30 day average",
            evidence={"daily": daily, "average": round(average, 2), "multiplier": config.velocity_spike_multiplier},
        )
    return None


def check_refund_rate(
    session: Session, request: FraudCheckRequest, config: FraudConfig, now: datetime
) -> Optional[FraudAlert]:
    since = now - timedelta(days=REFUND_WINDOW_DAYS)
    stmt = (
        select(AffiliateCommissionEvent.status, func.count(AffiliateCommissionEvent.id))
        .where(
            AffiliateCommissionEvent.clinic_id == request.clinic_id,
            AffiliateCommissionEvent.affiliate_id == request.affiliate_id,
            AffiliateCommissionEvent.occurred_at >= since,
        )
        .group_by(AffiliateCommissionEvent.status)
    )
    counts = {status: count for status, count in session.execute(stmt)}
    total = sum(counts.values())
    if total < config.min_refunds_for_alert:
        return None
    reversed_count = counts.get(CommissionStatus.REVERSED.value, 0)
    rate = reversed_count / total * 100
    if rate <= config.max_refund_rate_pct:
        return None
    severity = "HIGH" if rate > config.max_refund_rate_pct * 2 else "MEDIUM"
    return FraudAlert(
        alert_type="REFUND_ABUSE",
        severity=severity,
        description=f"Refund rate of {rate:.1f}% over {REFUND_WINDOW_DAYS} days",
        evidence={"total": total, "reversed": reversed_count, "rate_pct": round(rate, 1)},
    )


def score_alerts(alerts: List[FraudAlert]) -> FraudCheckResult:
    score = min(MAX_RISK_SCORE, sum(SEVERITY_SCORES.get(alert.severity, 0) for alert in alerts))
    severities = {alert.severity for alert in alerts}
    if "CRITICAL" in severities:
        recommendation = "reject"
    elif score >= 25 or "HIGH" in severities:
        recommendation = "review"
    else:
        recommendation = "approve"
    return FraudCheckResult(
        passed=recommendation == "approve", risk_score=score, recommendation=recommendation, alerts=list(alerts)
    )


def perform_fraud_check(session: Session, request: FraudCheckRequest) -> FraudCheckResult:
    """Run every enabled check for ``request`` and score the result."""

    config = get_fraud_config(session, request.clinic_id)
    if not config.enabled:
        return FraudCheckResult(passed=True, risk_score=0, recommendation="approve")
    now = ensure_utc(request.occurred_at) if request.occurred_at else utc_now()

    alerts: List[FraudAlert] = []
    if config.enable_self_referral_check:
        alerts.append(check_self_referral(session, request, now))
    alerts.append(check_duplicate_ip(session, request, config, now))
    alerts.append(check_ip_risk(session, request, config, now))
    alerts.append(check_velocity(session, request, config, now))
    alerts.append(check_refund_rate(session, request, config, now))
    result = score_alerts([alert for alert in alerts if alert is not None])
    if result.alerts:
        logger.info(
            "fraud_check_flagged",
            clinic_id=request.clinic_id,
            affiliate_id=request.affiliate_id,
            risk_score=result.risk_score,
            recommendation=result.recommendation,
            alert_types=result.alert_types,
        )
    return result


def record_fraud_alerts(
    session: Session,
    request: FraudCheckRequest,
    result: FraudCheckResult,
    commission_event: Optional[AffiliateCommissionEvent] = None,
) -> List[AffiliateFraudAlert]:
    """Persist alerts for ``result``.

    Depending on the clinic configuration, a commission under review is
    flagged as held and a CRITICAL alert suspends the affiliate.
    """

    records: List[AffiliateFraudAlert] = []
    for alert in result.alerts:
        record = AffiliateFraudAlert(
            clinic_id=request.clinic_id,
            affiliate_id=request.affiliate_id,
            commission_event_id=commission_event.id if commission_event is not None else None,
            alert_type=alert.alert_type,
            severity=alert.severity,
            description=alert.description,
            evidence=alert.evidence,
            risk_score=result.risk_score,
            affected_amount_cents=request.amount_cents,
            status="OPEN",
        )
        session.add(record)
        records.append(record)
        logger.warning(
            "fraud_alert_created",
            clinic_id=request.clinic_id,
            affiliate_id=request.affiliate_id,
            alert_type=alert.alert_type,
            severity=alert.severity,
        )

    config = get_fraud_config(session, request.clinic_id)
    if commission_event is not None and config.auto_hold_on_high_risk and result.recommendation == "review":
        metadata = dict(commission_event.event_metadata or {})
        metadata.update(
            {"fraudHold": True, "fraudRiskScore": result.risk_score, "fraudAlertCount": len(result.alerts)}
        )
        commission_event.event_metadata = metadata
    if config.auto_suspend_on_critical and any(alert.severity == "CRITICAL" for alert in result.alerts):
        affiliate = session.get(Affiliate, request.affiliate_id)
        if affiliate is not None and affiliate.status != AffiliateStatus.SUSPENDED.value:
            affiliate.status = AffiliateStatus.SUSPENDED.value
            logger.warning("affiliate_auto_suspended", clinic_id=request.clinic_id, affiliate_id=request.affiliate_id)
    session.flush()
    return records


__all__ = [
    "FraudConfig",
    "FraudAlert",
    "FraudCheckRequest",
    "FraudCheckResult",
    "SEVERITY_SCORES",
    "risk_level",
    "get_fraud_config",
    "check_self_referral",
    "check_duplicate_ip",
    "record_ip_intel",
    "get_ip_intel",
    "check_ip_risk",
    "check_velocity",
    "check_refund_rate",
    "score_alerts",
    "perform_fraud_check",
    "record_fraud_alerts",
]
