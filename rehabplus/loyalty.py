# rehabplus/loyalty.py
import logging
import math
import secrets
import string
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from . import models, schemas
from .crud import as_float, money
from .errors import ConflictError, CRUDError, NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIER_RULES = (
    (models.LoyaltyTier.BRONZE, Decimal("0"), Decimal("1"), Decimal("0"), "Entry tier"),
    (models.LoyaltyTier.SILVER, Decimal("20000"), Decimal("1.5"), Decimal("5"), "Lifetime spending from 20,000 baht"),
    (models.LoyaltyTier.GOLD, Decimal("50000"), Decimal("2"), Decimal("10"), "Lifetime spending from 50,000 baht"),
    (models.LoyaltyTier.PLATINUM, Decimal("100000"), Decimal("3"), Decimal("15"), "Lifetime spending from 100,000 baht"),
)
GIFT_CARD_VALIDITY_DAYS = 365
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def seed_tier_rules(db: Session) -> int:
    """Insert missing default tier rules; returns how many were added"""
    existing = {rule.tier for rule in db.query(models.LoyaltyTierRule)}
    added = 0
    for tier, threshold, rate, discount, description in DEFAULT_TIER_RULES:
        if tier in existing:
            continue
        db.add(models.LoyaltyTierRule(tier=tier, min_lifetime_spending=threshold, points_per_100_baht=rate,
                                      discount_percentage=discount, description=description))
        added += 1
    if added:
        db.commit()
    return added


def get_tier_rules(db: Session) -> List[models.LoyaltyTierRule]:
    return db.query(models.LoyaltyTierRule).order_by(models.LoyaltyTierRule.min_lifetime_spending).all()


def tier_rule_to_dict(rule: models.LoyaltyTierRule) -> Dict[str, Any]:
    return {"tier": rule.tier.value, "min_lifetime_spending": as_float(rule.min_lifetime_spending),
            "points_per_100_baht": as_float(rule.points_per_100_baht),
            "discount_percentage": as_float(rule.discount_percentage), "description": rule.description}


def tier_for_spending(rules: List[models.LoyaltyTierRule], amount: Decimal) -> models.LoyaltyTier:
    """Highest tier whose threshold is at or below the amount"""
    tier = models.LoyaltyTier.BRONZE
    best = None
    for rule in rules:
        threshold = money(rule.min_lifetime_spending)
        if threshold <= money(amount) and (best is None or threshold >= best):
            tier, best = rule.tier, threshold
    return tier


def points_for_amount(amount: Decimal, rate: Decimal) -> int:
    return int(math.floor(money(amount) / Decimal("100") * Decimal(str(rate))))


def update_tier_rule(db: Session, tier: models.LoyaltyTier, update: schemas.TierRuleUpdate) -> models.LoyaltyTierRule:
    rule = db.query(models.LoyaltyTierRule).filter(models.LoyaltyTierRule.tier == tier).first()
    if not rule:
        raise NotFoundError("Tier rule not found")
    for key, value in update.model_dump(exclude_unset=True).items():
        setattr(rule, key, value)
    db.commit()
    db.refresh(rule)
    return rule


# ==================== MEMBERS ====================

def get_member(db: Session, member_id: int) -> Optional[models.LoyaltyMember]:
    return db.get(models.LoyaltyMember, member_id)


def get_or_create_member(db: Session, patient_id: int) -> models.LoyaltyMember:
    member = db.query(models.LoyaltyMember).filter(models.LoyaltyMember.patient_id == patient_id).first()
    if member is None:
        member = models.LoyaltyMember(patient_id=patient_id, membership_tier=models.LoyaltyTier.BRONZE,
                                      total_points=0, available_points=0, lifetime_spending=Decimal("0"),
                                      member_since=date.today())
        db.add(member)
        db.flush()
    return member


def member_to_dict(member: models.LoyaltyMember) -> Dict[str, Any]:
    patient = member.patient
    return {"id": member.id, "patient_id": member.patient_id,
            "patient_name": patient.full_name if patient else None, "patient_hn": patient.hn if patient else None,
            "membership_tier": member.membership_tier.value, "total_points": member.total_points,
            "available_points": member.available_points, "lifetime_spending": as_float(member.lifetime_spending),
            "member_since": member.member_since, "last_activity": member.last_activity}


def list_members(db: Session, tier: Optional[str] = None, search: Optional[str] = None) -> List[Dict[str, Any]]:
    query = db.query(models.LoyaltyMember).join(models.Patient, models.LoyaltyMember.patient_id == models.Patient.id)
    if tier:
        query = query.filter(models.LoyaltyMember.membership_tier == tier.upper())
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(or_(models.Patient.hn.ilike(term), models.Patient.first_name.ilike(term),
                                 models.Patient.last_name.ilike(term), models.Patient.phone.ilike(term)))
    return [member_to_dict(m) for m in query.order_by(models.LoyaltyMember.lifetime_spending.desc())]


def list_transactions(db: Session, member_id: int) -> List[Dict[str, Any]]:
    return [
        {"id": t.id, "transaction_type": t.transaction_type.value, "points": t.points, "bill_id": t.bill_id,
         "description": t.description, "created_by": t.created_by, "created_at": t.created_at}
        for t in db.query(models.LoyaltyTransaction).filter(models.LoyaltyTransaction.member_id == member_id)
        .order_by(models.LoyaltyTransaction.created_at.desc(), models.LoyaltyTransaction.id.desc())
    ]


def set_member_tier(db: Session, member_id: int, tier: models.LoyaltyTier) -> models.LoyaltyMember:
    member = get_member(db, member_id)
    if not member:
        raise NotFoundError("Member not found")
    member.membership_tier = tier
    db.commit()
    db.refresh(member)
    return member


def _apply_spending(db: Session, member: models.LoyaltyMember, bill: models.Bill, rules: List[models.LoyaltyTierRule],
                    user_id: Optional[int]) -> int:
    rates = {rule.tier: rule.points_per_100_baht for rule in rules}
    points = points_for_amount(bill.total_amount, rates.get(member.membership_tier, Decimal("1")))
    member.lifetime_spending = money(member.lifetime_spending) + money(bill.total_amount)
    member.total_points += points
    member.available_points += points
    member.membership_tier = tier_for_spending(rules, member.lifetime_spending)
    member.last_activity = datetime.now()
    if points:
        db.add(models.LoyaltyTransaction(member_id=member.id, transaction_type=models.LoyaltyTransactionType.EARN,
                                         points=points, bill_id=bill.id,
                                         description=f"Earned from bill {bill.bill_code}", created_by=user_id))
    bill.loyalty_awarded = True
    return points


def earn_points_for_bill(db: Session, bill: models.Bill, user_id: Optional[int] = None) -> int:
    """Credit a PAID bill to the patient's loyalty account once; the caller commits"""
    if bill.loyalty_awarded or not bill.patient_id or bill.payment_status != models.PaymentStatus.PAID:
        return 0
    member = get_or_create_member(db, bill.patient_id)
    points = _apply_spending(db, member, bill, get_tier_rules(db), user_id)
    db.flush()
    logger.info(f"Loyalty member {member.id} earned {points} points from bill {bill.bill_code}")
    return points


def adjust_points(db: Session, member_id: int, adjust: schemas.PointsAdjust, user_id: int) -> models.LoyaltyMember:
    member = get_member(db, member_id)
    if not member:
        raise NotFoundError("Member not found")
    if member.available_points + adjust.points < 0:
        raise CRUDError("Insufficient points for this adjustment")
    member.available_points += adjust.points
    if adjust.points > 0:
        member.total_points += adjust.points
    member.last_activity = datetime.now()
    db.add(models.LoyaltyTransaction(member_id=member.id, transaction_type=models.LoyaltyTransactionType.ADJUST,
                                     points=adjust.points, description=adjust.description or "Manual adjustment",
                                     created_by=user_id))
    db.commit()
    db.refresh(member)
    return member


# ==================== GIFT CARDS ====================

def list_catalog(db: Session, active_only: bool = True) -> List[Dict[str, Any]]:
    query = db.query(models.GiftCardCatalog)
    if active_only:
        query = query.filter(models.GiftCardCatalog.active.is_(True))
    return [
        {"id": c.id, "name": c.name, "description": c.description, "points_required": c.points_required,
         "gift_card_value": as_float(c.gift_card_value), "stock_quantity": c.stock_quantity, "active": c.active}
        for c in query.order_by(models.GiftCardCatalog.points_required)
    ]


def create_catalog_item(db: Session, item: schemas.GiftCardCatalogCreate) -> models.GiftCardCatalog:
    db_item = models.GiftCardCatalog(**item.model_dump())
    db.add(db_item)
    db.commit()
    db.refresh(db_item)
    return db_item


def generate_gift_card_code() -> str:
    return "GC-" + "".join(secrets.choice(_CODE_ALPHABET) for _ in range(8))


def redeem_gift_card(db: Session, member_id: int, catalog_id: int, user_id: int) -> models.GiftCardRedemption:
    member = db.query(models.LoyaltyMember).filter(models.LoyaltyMember.id == member_id).with_for_update().first()
    if not member:
        raise NotFoundError("Member not found")
    item = db.query(models.GiftCardCatalog).filter(models.GiftCardCatalog.id == catalog_id).with_for_update().first()
    if not item or not item.active:
        raise NotFoundError("Gift card not found")
    if item.stock_quantity is not None and item.stock_quantity <= 0:
        raise ConflictError("Gift card is out of stock")
    if member.available_points < item.points_required:
        raise CRUDError("Insufficient points")

    code = generate_gift_card_code()
    while db.query(models.GiftCardRedemption).filter(models.GiftCardRedemption.gift_card_code == code).first():
        code = generate_gift_card_code()

    member.available_points -= item.points_required
    member.last_activity = datetime.now()
    if item.stock_quantity is not None:
        item.stock_quantity -= 1
    redemption = models.GiftCardRedemption(
        member_id=member.id, catalog_id=item.id, gift_card_code=code, points_used=item.points_required,
        value=item.gift_card_value, status=models.GiftCardStatus.ACTIVE,
        expiry_date=date.today() + timedelta(days=GIFT_CARD_VALIDITY_DAYS),
    )
    db.add(redemption)
    db.add(models.LoyaltyTransaction(member_id=member.id, transaction_type=models.LoyaltyTransactionType.REDEEM,
                                     points=-item.points_required, description=f"Redeemed {item.name} ({code})",
                                     created_by=user_id))
    db.commit()
    db.refresh(redemption)
    return redemption


def sync_all_patients(db: Session, user_id: Optional[int] = None) -> Dict[str, int]:
    """Rebuild members from PAID bills that have not been credited yet"""
    rules = get_tier_rules(db)
    bills = db.query(models.Bill).filter(
        models.Bill.payment_status == models.PaymentStatus.PAID,
        models.Bill.patient_id.isnot(None),
        models.Bill.loyalty_awarded.is_(False),
    ).order_by(models.Bill.payment_date, models.Bill.id).all()
    members_before = db.query(func.count(models.LoyaltyMember.id)).scalar()
    points = 0
    for bill in bills:
        member = get_or_create_member(db, bill.patient_id)
        points += _apply_spending(db, member, bill, rules, user_id)
    db.commit()
    members_after = db.query(func.count(models.LoyaltyMember.id)).scalar()
    logger.info(f"Loyalty sync credited {len(bills)} bills")
    return {"bills_processed": len(bills), "members_created": members_after - members_before, "points_awarded": points}
