# rehabplus/routers/thai_card.py
"""Hand-off between the local Thai ID card reader and the registration form."""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from .. import security
from ..services.thai_card import thai_card_cache

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/thai_card",
    tags=["Thai ID card"],
)


@router.post("")
def receive_card_data(payload: Dict[str, Any] = Body(...)):
    """Called by the reader process on the front-desk machine; unauthenticated"""
    thai_card_cache.store(payload)
    logger.info("Thai ID card payload received")
    return {"success": True}


@router.get("", dependencies=[Depends(security.get_current_user)])
def read_card_data():
    return {"data": thai_card_cache.consume()}
