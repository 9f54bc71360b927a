"""Credit bookkeeping: reserve before generating, then confirm, refund or partially refund.

Balances are split into buckets that are consumed in this order:

  daily         daily reward, valid only on the UTC day it was granted
  subscription
  signup        granted once to new users
  admin_give    manual grants; refunds land here as well
  purchased     spent last

One image costs one credit.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional

import db

log = logging.getLogger(__name__)

DEFAULT_SIGNUP_CREDITS = 10
DAILY_REWARD_CREDITS = 5

_BUCKETS = (
    ("daily", "daily_credits"),
    ("subscription", "subscription_credits"),
    ("signup", "signup_credits"),
    ("adminGive", "admin_give_credits"),
    ("purchased", "purchased_credits"),
)

_lock = threading.Lock()


class InsufficientCredits(Exception):
    def __init__(self, needed: int, available: int) -> None:
        super().__init__(f"Need {needed} credits, {available} available")
        self.needed = needed
        self.available = available


def today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


# ---------------------------------------------------------------------------
# Pure balance arithmetic
# ---------------------------------------------------------------------------

def credits_info(quota: Optional[Dict]) -> Dict:
    if not quota:
        return {
            "available": DEFAULT_SIGNUP_CREDITS,
            "daily": 0,
            "subscription": 0,
            "signup": DEFAULT_SIGNUP_CREDITS,
            "adminGive": 0,
            "purchased": 0,
            "dailyExpired": True,
        }

    fresh = quota.get("daily_credits_date") == today()
    daily = (quota.get("daily_credits") or 0) if fresh else 0
    signup = quota.get("signup_credits")
    info = {
        "daily": daily,
        "subscription": quota.get("subscription_credits") or 0,
        "signup": DEFAULT_SIGNUP_CREDITS if signup is None else signup,
        "adminGive": quota.get("admin_give_credits") or 0,
        "purchased": quota.get("purchased_credits") or 0,
        "dailyExpired": not fresh and (quota.get("daily_credits") or 0) > 0,
    }
    info["available"] = sum(info[key] for key, _ in _BUCKETS)
    return info


def consume(quota: Optional[Dict], amount: int) -> Optional[Dict]:
    """New bucket values after spending *amount*, or None if the balance is short."""
    info = credits_info(quota)
    if info["available"] < amount:
        return None

    remaining = amount
    values = {}
    for key, column in _BUCKETS:
        take = min(remaining, info[key])
        values[column] = info[key] - take
        remaining -= take
    values["daily_credits_date"] = (quota or {}).get("daily_credits_date")
    return values


def refund(quota: Optional[Dict], amount: int) -> Dict:
    info = credits_info(quota)
    values = {column: info[key] for key, column in _BUCKETS}
    values["admin_give_credits"] += amount
    values["daily_credits_date"] = (quota or {}).get("daily_credits_date")
    return values


# ---------------------------------------------------------------------------
# Persistent operations
# ---------------------------------------------------------------------------

def get_credits(user_id: str) -> Dict:
    with db.transaction() as con:
        return credits_info(db.get_quota(con, user_id))


def reserve(user_id: str, task_id: str, image_count: int, task_type: Optional[str] = None) -> Dict:
    """Spend *image_count* credits for *task_id* and create its pending generation row.

    A task id is charged at most once: reserving it again, even after it was
    settled or released, returns the existing reservation. Raises
    InsufficientCredits.
    """
    if image_count <= 0:
        raise ValueError("image_count must be positive")

    with _lock, db.transaction() as con:
        existing = db.get_reservation(con, user_id, task_id)
        if existing:
            log.info("[Quota] Task %s already %s (%d)", task_id, existing["status"], existing["reserved"])
            return {
                "success": True,
                "imageCount": existing["reserved"],
                "status": existing["status"],
                "credits": credits_info(db.get_quota(con, user_id)),
            }

        quota = db.get_quota(con, user_id)
        values = consume(quota, image_count)
        if values is None:
            raise InsufficientCredits(image_count, credits_info(quota)["available"])
        db.save_quota(con, user_id, values)
        db.save_reservation(con, user_id, task_id, image_count, 0, "reserved")
        credits = credits_info(db.get_quota(con, user_id))

    reservation_id = db.create_generation(
        task_id, user_id, db.normalize_task_type(task_type), image_count
    )
    log.info("[Quota] Reserved %d credits for %s (user=%s)", image_count, task_id, user_id)
    return {"success": True, "reservationId": reservation_id, "imageCount": image_count, "credits": credits}


def settle(user_id: str, task_id: str, actual_image_count: int) -> Dict:
    """Confirm a reservation, refunding the credits for images that did not materialise."""
    with _lock, db.transaction() as con:
        res = db.get_reservation(con, user_id, task_id)
        if not res or res["status"] != "reserved":
            return {"success": False, "error": "No open reservation"}

        actual = max(0, min(actual_image_count, res["reserved"]))
        refund_count = res["reserved"] - actual
        if refund_count:
            db.save_quota(con, user_id, refund(db.get_quota(con, user_id), refund_count))
        status = "confirmed" if actual else "refunded"
        db.save_reservation(con, user_id, task_id, res["reserved"], refund_count, status)

    db.set_total_images(task_id, user_id, actual)
    if actual == 0:
        db.fail_generation(task_id, user_id)
    log.info("[Quota] Settled %s: %d used, %d refunded", task_id, actual, refund_count)
    return {"success": True, "refunded": refund_count, "actualImageCount": actual}


def release(user_id: str, task_id: str) -> Dict:
    """Refund a whole reservation and drop its generation row if nothing was produced."""
    with _lock, db.transaction() as con:
        res = db.get_reservation(con, user_id, task_id)
        if not res or res["status"] != "reserved":
            return {"success": False, "error": "No open reservation"}
        db.save_quota(con, user_id, refund(db.get_quota(con, user_id), res["reserved"]))
        db.save_reservation(con, user_id, task_id, res["reserved"], res["reserved"], "refunded")

    db.delete_pending_generation(task_id, user_id)
    log.info("[Quota] Released %s: %d refunded", task_id, res["reserved"])
    return {"success": True, "refunded": res["reserved"]}


def claim_daily_reward(user_id: str) -> Dict:
    with _lock, db.transaction() as con:
        quota = db.get_quota(con, user_id)
        if quota and quota.get("daily_credits_date") == today():
            return {"success": True, "alreadyClaimed": True, "credits": credits_info(quota)}

        info = credits_info(quota)
        values = {column: info[key] for key, column in _BUCKETS}
        values["daily_credits"] = DAILY_REWARD_CREDITS
        values["daily_credits_date"] = today()
        db.save_quota(con, user_id, values)
        credits = credits_info(db.get_quota(con, user_id))

    log.info("[Quota] Daily reward for %s", user_id)
    return {"success": True, "alreadyClaimed": False, "credits": credits}
