# rehabplus/routers/loyalty.py
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from .. import crud, loyalty, models, schemas, security
from ..database import get_db
from ..errors import NotFoundError

router = APIRouter(
    prefix="/loyalty",
    tags=["Loyalty"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


@router.get("/tier-rules")
def read_tier_rules(db: Session = Depends(get_db)):
    return [loyalty.tier_rule_to_dict(r) for r in loyalty.get_tier_rules(db)]


@router.put("/tier-rules/{tier}")
def update_tier_rule(
    tier: models.LoyaltyTier,
    update: schemas.TierRuleUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    rule = loyalty.update_tier_rule(db, tier, update)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="LOYALTY_TIER", details=tier.value,
                          request=request, new_values=update.model_dump(exclude_unset=True))
    return {"success": True, "rule": loyalty.tier_rule_to_dict(rule)}


@router.get("/members")
def read_members(tier: Optional[str] = None, search: Optional[str] = None, db: Session = Depends(get_db)):
    return loyalty.list_members(db, tier=tier, search=search)


@router.get("/members/{member_id}")
def read_member(member_id: int, db: Session = Depends(get_db)):
    member = loyalty.get_member(db, member_id)
    if not member:
        raise NotFoundError("Member not found")
    return loyalty.member_to_dict(member)


@router.get("/members/{member_id}/transactions")
def read_member_transactions(member_id: int, db: Session = Depends(get_db)):
    if not loyalty.get_member(db, member_id):
        raise NotFoundError("Member not found")
    return loyalty.list_transactions(db, member_id)


@router.put("/members/{member_id}")
def update_member(
    member_id: int,
    update: schemas.MemberUpdate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    member = loyalty.set_member_tier(db, member_id, update.membership_tier)
    crud.create_audit_log(user_id=current_user.id, action="UPDATE", entity_type="LOYALTY_MEMBER", entity_id=member_id,
                          request=request, new_values={"membership_tier": update.membership_tier.value})
    return {"success": True, "member": loyalty.member_to_dict(member)}


@router.post("/members/{member_id}/adjust-points")
def adjust_member_points(
    member_id: int,
    adjust: schemas.PointsAdjust,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    member = loyalty.adjust_points(db, member_id, adjust, user_id=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="ADJUST_POINTS", entity_type="LOYALTY_MEMBER",
                          entity_id=member_id, details=adjust.description, request=request,
                          new_values={"points": adjust.points})
    return {"success": True, "member": loyalty.member_to_dict(member)}


@router.get("/gift-cards/catalog")
def read_gift_card_catalog(db: Session = Depends(get_db)):
    return loyalty.list_catalog(db)


@router.post("/gift-cards/catalog", status_code=status.HTTP_201_CREATED)
def create_gift_card(
    item: schemas.GiftCardCatalogCreate,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    db_item = loyalty.create_catalog_item(db, item)
    crud.create_audit_log(user_id=current_user.id, action="CREATE", entity_type="GIFT_CARD_CATALOG",
                          entity_id=db_item.id, request=request, new_values=item.model_dump())
    return {"success": True, "catalog_id": db_item.id}


@router.post("/members/{member_id}/redeem-gift-card")
def redeem_gift_card(
    member_id: int,
    payload: schemas.RedeemRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.get_current_user),
):
    redemption = loyalty.redeem_gift_card(db, member_id, payload.catalog_id, user_id=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="REDEEM", entity_type="LOYALTY_MEMBER", entity_id=member_id,
                          details=redemption.gift_card_code, request=request)
    return {
        "success": True,
        "gift_card_code": redemption.gift_card_code,
        "points_used": redemption.points_used,
        "value": crud.as_float(redemption.value),
        "expiry_date": redemption.expiry_date,
    }


@router.post("/sync-all-patients")
def sync_all_patients(
    request: Request,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(security.require_admin),
):
    result = loyalty.sync_all_patients(db, user_id=current_user.id)
    crud.create_audit_log(user_id=current_user.id, action="SYNC", entity_type="LOYALTY_MEMBER",
                          details=f"{result['bills_processed']} bills credited", request=request)
    return {"success": True, **result}
