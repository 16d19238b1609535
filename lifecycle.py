"""
Item and campaign lifecycle.

Status changes go through explicit transition tables. Score credits are
written through per-user ledgers (`creditedItems`, `awardedCampaigns`) so a
retried or recovered step never credits twice.
"""

import logging
from typing import Dict, Iterable, List, Optional

from database import Store, as_utc, utcnow
from errors import CapacityExceeded, Conflict, InvalidState, InvalidTransition, NotFound
from itemcode import code_payload, generate_item_id, qr_data_url
from schemas import Campaign, Ewaste

logger = logging.getLogger(__name__)

REPORT_POINTS = 10

ITEM_TRANSITIONS = {
    "reported": ("assessed", "scheduled", "disposed"),
    "assessed": ("scheduled", "disposed"),
    "scheduled": ("collected", "assessed"),
    "collected": ("recycled", "disposed"),
    "recycled": (),
    "disposed": (),
}

CAMPAIGN_TRANSITIONS = {
    "upcoming": ("active", "cancelled"),
    "active": ("completed", "cancelled"),
    "completed": (),
    "cancelled": (),
}

PRIVATE_USER_FIELDS = ("password", "creditedItems", "awardedCampaigns")


def check_transition(kind: str, table: Dict[str, tuple], current: str, new: str):
    if new == current:
        return
    if new not in table.get(current, ()):
        raise InvalidTransition(f"Cannot change {kind} status from {current} to {new}")


# -----------------------------
# Users
# -----------------------------

def public_user(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    return {k: v for k, v in doc.items() if k not in PRIVATE_USER_FIELDS}


def load_users(store: Store, ids: Iterable[Optional[str]]) -> Dict[str, dict]:
    wanted = sorted({i for i in ids if i})
    if not wanted:
        return {}
    return {u["id"]: u for u in store.find("user", {"id": {"$in": wanted}})}


def user_ref(user: Optional[dict], fields: tuple) -> Optional[dict]:
    if user is None:
        return None
    ref = {"id": user["id"]}
    for field in fields:
        ref[field] = user.get(field)
    return ref


# -----------------------------
# E-waste items
# -----------------------------

def report_item(store: Store, reporter_id: str, data: dict) -> dict:
    """Persist a reported item and credit its reporter."""
    item_id = generate_item_id()
    payload = code_payload(item_id, data["name"], data["category"], data["type"], data["department"], reporter_id)
    item = Ewaste(
        itemId=item_id,
        reportedBy=reporter_id,
        qrCode=qr_data_url(payload),
        statusHistory=[{"status": "reported", "at": utcnow(), "by": reporter_id}],
        **data,
    )
    doc_id = store.insert("ewaste", item)
    logger.info("Item %s reported by %s", item_id, reporter_id)
    credit_reporter(store, store.get("ewaste", doc_id))
    return store.get("ewaste", doc_id)


def credit_reporter(store: Store, item: dict) -> bool:
    credited = store.credit_user(
        item["reportedBy"],
        "creditedItems",
        item["itemId"],
        {"greenScore": REPORT_POINTS, "totalContribution": item["weight"]},
    )
    if not credited:
        logger.warning("Reporter %s of item %s was not credited", item["reportedBy"], item["itemId"])
    store.update("ewaste", item["id"], {"scoreCredited": True})
    return credited


def recover_pending_credits(store: Store) -> int:
    """Finish reports that stopped between the item insert and the reporter credit."""
    pending = store.find("ewaste", {"scoreCredited": False})
    for item in pending:
        credit_reporter(store, item)
    if pending:
        logger.info("Recovered %d pending reporter credits", len(pending))
    return len(pending)


def update_item_status(store: Store, item_id: str, status: Optional[str] = None,
                       scheduled_pickup=None, vendor: Optional[str] = None,
                       actor_id: Optional[str] = None) -> dict:
    item = store.get("ewaste", item_id)
    if item is None:
        raise NotFound("E-waste item not found")

    fields = {}
    push = None
    if status is not None and status != item["status"]:
        check_transition("item", ITEM_TRANSITIONS, item["status"], status)
        fields["status"] = status
        push = {"statusHistory": {"status": status, "at": utcnow(), "by": actor_id}}
    if scheduled_pickup is not None:
        fields["scheduledPickup"] = as_utc(scheduled_pickup)
    if vendor:
        if store.get("user", vendor) is None:
            raise NotFound("Vendor not found")
        fields["vendor"] = vendor

    if not fields:
        return item
    updated = store.update("ewaste", item_id, fields, push)
    if "status" in fields:
        logger.info("Item %s moved from %s to %s", item["itemId"], item["status"], status)
    return updated


def expand_items(store: Store, items: List[dict]) -> List[dict]:
    users = load_users(store, [i.get("reportedBy") for i in items] + [i.get("vendor") for i in items])
    for item in items:
        item["reportedBy"] = user_ref(users.get(item.get("reportedBy")), ("username", "department"))
        if item.get("vendor"):
            item["vendor"] = user_ref(users.get(item["vendor"]), ("username",))
        item.pop("scoreCredited", None)
    return items


# -----------------------------
# Campaigns
# -----------------------------

def create_campaign(store: Store, data: dict, creator_id: str) -> dict:
    campaign = Campaign(createdBy=creator_id, **data)
    doc_id = store.insert("campaign", campaign)
    logger.info("Campaign %s created by %s", doc_id, creator_id)
    return store.get("campaign", doc_id)


def get_campaign(store: Store, campaign_id: str) -> dict:
    campaign = store.get("campaign", campaign_id)
    if campaign is None:
        raise NotFound("Campaign not found")
    return campaign


def _check_joinable(campaign: dict, user_id: str):
    if campaign.get("status") != "active":
        raise InvalidState("Campaign is not active")
    participants = campaign.get("participants", [])
    if any(p.get("user") == user_id for p in participants):
        raise Conflict("Already participating in this campaign")
    limit = campaign.get("maxParticipants")
    if limit and len(participants) >= limit:
        raise CapacityExceeded("Campaign is full")


def join_campaign(store: Store, campaign_id: str, user_id: str) -> dict:
    campaign = get_campaign(store, campaign_id)
    _check_joinable(campaign, user_id)
    participant = {"user": user_id, "joinedAt": utcnow(), "contribution": 0}
    if not store.add_participant(campaign_id, participant, campaign.get("maxParticipants")):
        # Lost a race with another write; report what changed
        _check_joinable(get_campaign(store, campaign_id), user_id)
        raise Conflict("Campaign changed while joining, please retry")
    logger.info("User %s joined campaign %s", user_id, campaign_id)
    return get_campaign(store, campaign_id)


def leave_campaign(store: Store, campaign_id: str, user_id: str) -> dict:
    campaign = store.remove_participant(campaign_id, user_id)
    if campaign is None:
        raise NotFound("Campaign not found")
    logger.info("User %s left campaign %s", user_id, campaign_id)
    return campaign


def set_campaign_status(store: Store, campaign_id: str, status: str) -> dict:
    campaign = get_campaign(store, campaign_id)
    check_transition("campaign", CAMPAIGN_TRANSITIONS, campaign["status"], status)
    if status == campaign["status"]:
        return campaign
    logger.info("Campaign %s moved from %s to %s", campaign_id, campaign["status"], status)
    return store.update("campaign", campaign_id, {"status": status})


def award_campaign(store: Store, campaign_id: str) -> dict:
    campaign = get_campaign(store, campaign_id)
    if campaign.get("status") != "completed":
        raise InvalidState("Campaign must be completed to award participants")
    if campaign.get("awardedAt"):
        return {"message": "Participants already awarded", "awarded": 0, "alreadyAwarded": True}

    points = (campaign.get("rewards") or {}).get("greenScorePoints", 0)
    awarded = 0
    for participant in campaign.get("participants", []):
        if store.credit_user(participant["user"], "awardedCampaigns", campaign["id"], {"greenScore": points}):
            awarded += 1
    store.update("campaign", campaign_id, {"awardedAt": utcnow()})
    logger.info("Campaign %s awarded %d points to %d participants", campaign_id, points, awarded)
    return {"message": "Participants awarded successfully", "awarded": awarded, "alreadyAwarded": False}


def with_participant_count(campaign: dict) -> dict:
    campaign["currentParticipants"] = len(campaign.get("participants", []))
    return campaign


def expand_campaigns(store: Store, campaigns: List[dict]) -> List[dict]:
    ids = [c.get("createdBy") for c in campaigns]
    for c in campaigns:
        ids.extend(p.get("user") for p in c.get("participants", []))
    users = load_users(store, ids)
    for c in campaigns:
        with_participant_count(c)
        c["createdBy"] = user_ref(users.get(c.get("createdBy")), ("username",))
        for p in c.get("participants", []):
            p["user"] = user_ref(users.get(p.get("user")), ("username", "department", "greenScore"))
    return campaigns
