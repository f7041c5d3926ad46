"""
VIP coupon eligibility

Customers are scored from their counted order history, classified into a
tier, gated (existing coupon, cooldown, selection) and, when they pass,
issued a tiered VIP coupon. Business-rule rejections are reported as
outcomes; only datastore failures raise.
"""

import calendar
import hashlib
import logging
import random
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import TierRule, VipPolicy
from database import create_document
from schemas import Coupon

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits

TIER_ORDER = ("none", "bronze", "silver", "gold", "platinum")

ELIGIBLE = "eligible"
COUPON_CREATED = "coupon_created"
NOT_ELIGIBLE = "not_eligible"
ALREADY_HAS_COUPON = "already_has_vip_coupon"
COOLDOWN = "cooldown"
NOT_SELECTED = "not_selected"

REASONS = {
    NOT_ELIGIBLE: "does not meet criteria",
    COOLDOWN: "in cooldown",
    ALREADY_HAS_COUPON: "already has active coupon",
    NOT_SELECTED: "not selected this time",
}

Selector = Callable[[str, datetime], bool]


class CouponIssueError(RuntimeError):
    """No free coupon code was found within the configured attempts."""


# ---------- Models ----------

class SpendingAggregate(BaseModel):
    customer_id: str
    total_spent: float = 0.0
    order_count: int = 0
    avg_order_value: float = 0.0
    first_order_date: Optional[datetime] = None
    last_order_date: Optional[datetime] = None


class QualificationCriteria(BaseModel):
    ultra_premium: bool = False
    loyal: bool = False
    high_value: bool = False

    @property
    def qualified(self) -> bool:
        return self.ultra_premium or self.loyal or self.high_value


class CouponView(BaseModel):
    code: str
    discount_percentage: int
    minimum_amount: float
    expiration_date: datetime
    tier: Optional[str] = None
    validity_days: Optional[int] = None


class CustomerResult(BaseModel):
    customer_id: str
    total_spent: float
    order_count: int
    avg_order_value: float
    tier: str
    status: str
    reason: Optional[str] = None
    coupon: Optional[CouponView] = None


class BatchSummary(BaseModel):
    customers_processed: int = 0
    created: int = 0
    not_selected: int = 0
    cooldown_blocked: int = 0
    already_has_coupon: int = 0
    results: List[CustomerResult] = []


class EligibilityReport(BaseModel):
    customer_id: str
    is_eligible: bool
    meets_basic_criteria: bool
    total_spent: float
    order_count: int
    avg_order_value: float
    tier: str
    has_vip_coupon: bool
    eligibility_reason: str
    status: str
    qualification_criteria: QualificationCriteria
    remaining: Dict[str, Dict[str, float]]
    cooldown_until: Optional[datetime] = None
    vip_coupon: Optional[CouponView] = None
    message: str


class ClaimOutcome(BaseModel):
    status: str
    reason: Optional[str] = None
    coupon: Optional[CouponView] = None
    report: EligibilityReport


# ---------- Time helpers ----------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def shift_months(moment: datetime, months: int) -> datetime:
    """Move by whole calendar months, clamping the day to the target month's length."""
    year, month0 = divmod(moment.year * 12 + moment.month - 1 + months, 12)
    day = min(moment.day, calendar.monthrange(year, month0 + 1)[1])
    return moment.replace(year=year, month=month0 + 1, day=day)


# ---------- Aggregation ----------

def spending_aggregates(db: Database, policy: VipPolicy, customer_id: Optional[str] = None) -> List[SpendingAggregate]:
    match: Dict[str, Any] = {"status": {"$in": list(policy.counted_order_statuses)}}
    if customer_id is not None:
        match["user_id"] = customer_id
    pipeline = [
        {"$match": match},
        {"$group": {
            "_id": "$user_id",
            "total_spent": {"$sum": "$total_amount"},
            "order_count": {"$sum": 1},
            "first_order_date": {"$min": "$created_at"},
            "last_order_date": {"$max": "$created_at"},
        }},
        {"$sort": {"total_spent": -1}},
    ]
    aggregates = []
    for row in db["order"].aggregate(pipeline):
        count = int(row["order_count"])
        total = float(row["total_spent"] or 0)
        aggregates.append(SpendingAggregate(
            customer_id=str(row["_id"]),
            total_spent=total,
            order_count=count,
            avg_order_value=total / count if count else 0.0,
            first_order_date=row.get("first_order_date"),
            last_order_date=row.get("last_order_date"),
        ))
    return aggregates


def spending_aggregate(db: Database, policy: VipPolicy, customer_id: str) -> SpendingAggregate:
    rows = spending_aggregates(db, policy, customer_id)
    return rows[0] if rows else SpendingAggregate(customer_id=customer_id)


# ---------- Classification ----------

def qualification(agg: SpendingAggregate, policy: VipPolicy) -> QualificationCriteria:
    c = policy.criteria
    total, count, avg = agg.total_spent, agg.order_count, agg.avg_order_value
    return QualificationCriteria(
        ultra_premium=total >= c.ultra_premium_total or (total >= c.premium_total and count >= c.premium_order_count),
        loyal=count >= c.loyal_order_count and total >= c.loyal_total and avg >= c.loyal_avg_order_value,
        high_value=avg >= c.high_value_avg_order_value and count >= c.high_value_order_count and total >= c.high_value_total,
    )


def _matches(rule: TierRule, agg: SpendingAggregate) -> bool:
    return agg.total_spent >= rule.min_total_spent or (
        agg.order_count >= rule.min_order_count and agg.avg_order_value >= rule.min_avg_order_value
    )


def classify_tier(agg: SpendingAggregate, policy: VipPolicy, criteria: Optional[QualificationCriteria] = None) -> str:
    """Highest matching tier for a qualifying customer; "none" for everyone else."""
    criteria = criteria or qualification(agg, policy)
    if not criteria.qualified:
        return "none"
    for tier in ("platinum", "gold", "silver"):
        rule = policy.tier_rules.get(tier)
        if rule is not None and _matches(rule, agg):
            return tier
    return "bronze"


def tier_rank(tier: str) -> int:
    return TIER_ORDER.index(tier)


def remaining_to_qualify(agg: SpendingAggregate, policy: VipPolicy) -> Dict[str, Dict[str, float]]:
    """How far the customer is from each qualification route (0 means met)."""
    c = policy.criteria

    def gap(threshold, value):
        return round(max(0.0, threshold - value), 2)

    return {
        "ultra_premium": {"total_spent": gap(c.ultra_premium_total, agg.total_spent)},
        "premium": {
            "total_spent": gap(c.premium_total, agg.total_spent),
            "order_count": gap(c.premium_order_count, agg.order_count),
        },
        "loyal": {
            "order_count": gap(c.loyal_order_count, agg.order_count),
            "total_spent": gap(c.loyal_total, agg.total_spent),
            "avg_order_value": gap(c.loyal_avg_order_value, agg.avg_order_value),
        },
        "high_value": {
            "avg_order_value": gap(c.high_value_avg_order_value, agg.avg_order_value),
            "order_count": gap(c.high_value_order_count, agg.order_count),
            "total_spent": gap(c.high_value_total, agg.total_spent),
        },
    }


def eligibility_reason(agg: SpendingAggregate, criteria: QualificationCriteria, policy: VipPolicy) -> str:
    c = policy.criteria
    if criteria.ultra_premium:
        return f"Ultra-premium customer (${c.ultra_premium_total:,.0f}+ spent, or ${c.premium_total:,.0f}+ over {c.premium_order_count}+ orders)"
    if criteria.loyal:
        return f"Loyal customer ({c.loyal_order_count}+ orders, ${c.loyal_total:,.0f}+ spent)"
    if criteria.high_value:
        return f"High-value orders (${c.high_value_avg_order_value:,.0f}+ average over {c.high_value_order_count}+ orders)"

    if agg.order_count == 0:
        return "Place your first order to start qualifying"
    if agg.total_spent < c.high_value_total:
        return f"Spend ${c.high_value_total - agg.total_spent:,.2f} more to start qualifying"
    if agg.order_count < c.high_value_order_count:
        return f"Place {c.high_value_order_count - agg.order_count} more order(s) to qualify"
    return "Continue shopping to unlock VIP benefits"


# ---------- Selection ----------

def stable_selector(rate: float, window_months: int = 1) -> Selector:
    """Deterministic per customer within a window of `window_months` calendar months."""
    span = max(1, window_months)

    def select(customer_id: str, now: datetime) -> bool:
        window = (now.year * 12 + now.month - 1) // span
        digest = hashlib.sha256(f"{customer_id}:{window}".encode()).digest()
        return int.from_bytes(digest[:8], "big") / 2 ** 64 < rate

    return select


def random_selector(rate: float) -> Selector:
    def select(customer_id: str, now: datetime) -> bool:
        return random.random() < rate

    return select


def make_selector(policy: VipPolicy) -> Selector:
    if policy.selection_mode == "random":
        return random_selector(policy.selection_rate)
    return stable_selector(policy.selection_rate, policy.cooldown_months)


# ---------- Coupons ----------

def generate_coupon_code(prefix: str = "VIP", length: int = 6) -> str:
    return prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def _coupon_view(doc: Dict[str, Any]) -> CouponView:
    return CouponView(
        code=doc["code"],
        discount_percentage=doc["discount_percentage"],
        minimum_amount=doc["minimum_amount"],
        expiration_date=_aware(doc["expiration_date"]),
        tier=doc.get("tier"),
        validity_days=doc.get("validity_days"),
    )


def _vip_coupons(db: Database, policy: VipPolicy, customer_id: str) -> List[Dict[str, Any]]:
    prefix = "^" + re.escape(policy.code_prefix)
    return list(db["coupon"].find({"user_id": customer_id, "code": {"$regex": prefix}}).sort("created_at", -1))


def expire_coupon(db: Database, coupon: Dict[str, Any]) -> None:
    db["coupon"].update_one(
        {"_id": coupon["_id"], "is_active": True},
        {"$set": {"is_active": False, "updated_at": utcnow()}},
    )
    coupon["is_active"] = False
    logger.info("Deactivated expired coupon %s", coupon.get("code"))


def find_active_vip_coupon(db: Database, policy: VipPolicy, customer_id: str, now: Optional[datetime] = None, coupons: Optional[List[Dict[str, Any]]] = None) -> Optional[Dict[str, Any]]:
    """The customer's unexpired active VIP coupon; expired ones found on the way are deactivated."""
    now = now or utcnow()
    if coupons is None:
        coupons = _vip_coupons(db, policy, customer_id)
    active = None
    for coupon in coupons:
        if not coupon.get("is_active"):
            continue
        if _aware(coupon["expiration_date"]) <= now:
            expire_coupon(db, coupon)
        elif active is None:
            active = coupon
    return active


def cooldown_ends(policy: VipPolicy, coupons: List[Dict[str, Any]], now: datetime) -> Optional[datetime]:
    """End of the cooldown started by the newest VIP coupon, or None when not cooling down."""
    if policy.cooldown_months <= 0:
        return None
    cutoff = shift_months(now, -policy.cooldown_months)
    issued = [_aware(c["created_at"]) for c in coupons if c.get("created_at") is not None]
    recent = [moment for moment in issued if moment > cutoff]
    if not recent:
        return None
    return shift_months(max(recent), policy.cooldown_months)


def issue_coupon(db: Database, policy: VipPolicy, customer_id: str, tier: str, now: Optional[datetime] = None, code_factory: Optional[Callable[[], str]] = None) -> Optional[Dict[str, Any]]:
    """Insert a VIP coupon for `tier`, regenerating the code on collisions.

    Returns None when the insert lost a race against another active VIP
    coupon for the same customer.
    """
    now = now or utcnow()
    benefit = policy.benefits[tier]
    code_factory = code_factory or (lambda: generate_coupon_code(policy.code_prefix, policy.code_length))

    for attempt in range(1, policy.max_code_attempts + 1):
        coupon = Coupon(
            code=code_factory(),
            discount_percentage=benefit.discount_percentage,
            minimum_amount=benefit.minimum_amount,
            expiration_date=now + timedelta(days=benefit.validity_days),
            is_active=True,
            user_id=customer_id,
            tier=tier,
            kind="vip",
        )
        doc = coupon.model_dump()
        doc["created_at"] = now
        doc["validity_days"] = benefit.validity_days
        try:
            create_document("coupon", doc, database=db)
        except DuplicateKeyError:
            if find_active_vip_coupon(db, policy, customer_id, now):
                return None
            logger.warning("Coupon code collision on %s (attempt %d/%d)", coupon.code, attempt, policy.max_code_attempts)
            continue
        logger.info("Issued %s VIP coupon %s to customer %s", tier, coupon.code, customer_id)
        return doc

    raise CouponIssueError(f"Could not generate a unique coupon code after {policy.max_code_attempts} attempts")


# ---------- Gating ----------

class _Decision(BaseModel):
    status: str
    tier: str
    criteria: QualificationCriteria
    active_coupon: Optional[Dict[str, Any]] = None
    cooldown_until: Optional[datetime] = None


def _decide(db: Database, policy: VipPolicy, agg: SpendingAggregate, now: datetime, selector: Selector) -> _Decision:
    criteria = qualification(agg, policy)
    tier = classify_tier(agg, policy, criteria)
    coupons = _vip_coupons(db, policy, agg.customer_id)
    active = find_active_vip_coupon(db, policy, agg.customer_id, now, coupons)
    until = cooldown_ends(policy, coupons, now)

    def decision(status):
        return _Decision(status=status, tier=tier, criteria=criteria, active_coupon=active, cooldown_until=until)

    if not criteria.qualified:
        return decision(NOT_ELIGIBLE)
    if active is not None:
        return decision(ALREADY_HAS_COUPON)
    if until is not None:
        return decision(COOLDOWN)
    if not selector(agg.customer_id, now):
        return decision(NOT_SELECTED)
    return decision(ELIGIBLE)


_MESSAGES = {
    ELIGIBLE: "You qualify for a VIP coupon!",
    ALREADY_HAS_COUPON: "You already have a VIP coupon!",
    COOLDOWN: "You recently received a VIP coupon. Check back after the cooldown period.",
    NOT_SELECTED: "You meet the VIP criteria but were not selected this time.",
}


# ---------- Operations ----------

def evaluate_single(db: Database, policy: VipPolicy, customer_id: str, now: Optional[datetime] = None, selector: Optional[Selector] = None) -> EligibilityReport:
    """Report a customer's VIP standing without issuing anything."""
    now = now or utcnow()
    selector = selector or make_selector(policy)
    agg = spending_aggregate(db, policy, customer_id)
    decided = _decide(db, policy, agg, now, selector)
    reason = eligibility_reason(agg, decided.criteria, policy)

    return EligibilityReport(
        customer_id=customer_id,
        is_eligible=decided.status == ELIGIBLE,
        meets_basic_criteria=decided.criteria.qualified,
        total_spent=agg.total_spent,
        order_count=agg.order_count,
        avg_order_value=agg.avg_order_value,
        tier=decided.tier,
        has_vip_coupon=decided.active_coupon is not None,
        eligibility_reason=reason,
        status=decided.status,
        qualification_criteria=decided.criteria,
        remaining=remaining_to_qualify(agg, policy),
        cooldown_until=decided.cooldown_until,
        vip_coupon=_coupon_view(decided.active_coupon) if decided.active_coupon else None,
        message=_MESSAGES.get(decided.status, reason),
    )


def claim_for_self(db: Database, policy: VipPolicy, customer_id: str, now: Optional[datetime] = None, selector: Optional[Selector] = None, code_factory: Optional[Callable[[], str]] = None) -> ClaimOutcome:
    now = now or utcnow()
    report = evaluate_single(db, policy, customer_id, now, selector)
    if report.status != ELIGIBLE:
        return ClaimOutcome(status=report.status, reason=REASONS[report.status], coupon=report.vip_coupon, report=report)

    doc = issue_coupon(db, policy, customer_id, report.tier, now, code_factory)
    if doc is None:
        return ClaimOutcome(status=ALREADY_HAS_COUPON, reason=REASONS[ALREADY_HAS_COUPON], report=report)
    return ClaimOutcome(status=COUPON_CREATED, coupon=_coupon_view(doc), report=report)


def evaluate_batch(db: Database, policy: VipPolicy, now: Optional[datetime] = None, selector: Optional[Selector] = None, code_factory: Optional[Callable[[], str]] = None) -> BatchSummary:
    """Issue coupons to every qualifying customer that passes the gates."""
    now = now or utcnow()
    selector = selector or make_selector(policy)
    summary = BatchSummary()

    for agg in spending_aggregates(db, policy):
        decided = _decide(db, policy, agg, now, selector)
        if decided.status == NOT_ELIGIBLE:
            continue
        summary.customers_processed += 1
        status, coupon = decided.status, None

        if status == ELIGIBLE:
            doc = issue_coupon(db, policy, agg.customer_id, decided.tier, now, code_factory)
            if doc is None:
                status = ALREADY_HAS_COUPON
            else:
                status, coupon = COUPON_CREATED, _coupon_view(doc)
        elif decided.active_coupon is not None:
            coupon = _coupon_view(decided.active_coupon)

        if status == COUPON_CREATED:
            summary.created += 1
        elif status == ALREADY_HAS_COUPON:
            summary.already_has_coupon += 1
        elif status == COOLDOWN:
            summary.cooldown_blocked += 1
        elif status == NOT_SELECTED:
            summary.not_selected += 1

        summary.results.append(CustomerResult(
            customer_id=agg.customer_id,
            total_spent=agg.total_spent,
            order_count=agg.order_count,
            avg_order_value=agg.avg_order_value,
            tier=decided.tier,
            status=status,
            reason=REASONS.get(status),
            coupon=coupon,
        ))

    logger.info(
        "VIP batch complete: processed=%d created=%d not_selected=%d cooldown=%d existing=%d",
        summary.customers_processed, summary.created, summary.not_selected,
        summary.cooldown_blocked, summary.already_has_coupon,
    )
    return summary


# ---------- Coupon validation ----------

def get_active_coupon(db: Database, user_id: str) -> Optional[Dict[str, Any]]:
    return db["coupon"].find_one({"user_id": user_id, "is_active": True})


def validate_coupon(db: Database, user_id: str, code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Check a coupon the customer wants to use.

    Returns {"valid": bool, "reason"?, "code"?, "discount_percentage"?}.
    A coupon found past its expiration date is deactivated.
    """
    now = now or utcnow()
    coupon = db["coupon"].find_one({"code": code.strip().upper(), "user_id": user_id, "is_active": True})
    if not coupon:
        return {"valid": False, "reason": "Coupon not found or inactive"}
    if _aware(coupon["expiration_date"]) <= now:
        expire_coupon(db, coupon)
        return {"valid": False, "reason": "Coupon has expired"}
    return {
        "valid": True,
        "code": coupon["code"],
        "discount_percentage": coupon["discount_percentage"],
        "minimum_amount": coupon.get("minimum_amount", 0),
    }
