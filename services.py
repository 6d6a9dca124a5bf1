"""
Hemolink operations

The functions the HTTP layer calls. Each one validates its input, runs the
relevant engine (eligibility, rewards, matching, lifecycle) and performs the
store reads and writes. Business outcomes come back as plain data; failures
are raised as the classes in errors.py.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ValidationError
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

import config
import lifecycle
import matching
from auth import object_id, public_user
from database import create_document, delete_document, find_one, get_collection, normalize, update_guarded, with_retry
from eligibility import ELIGIBILITY_WINDOW, VOID_DONATION_STATUSES, Eligibility, check_eligibility
from errors import Conflict, DuplicateResponse, InvalidInput, NotFound, Unauthorized
from rewards import (
    BADGES,
    LEVEL_MULTIPLIERS,
    Progression,
    RewardAward,
    apply_donation,
    badge_progress,
    donations_to_next_level,
    level_for,
    level_progress_for,
    next_level,
    revoke_donation,
)
from schemas import (
    BANK_PRIVATE_FIELDS,
    BLOOD_GROUPS,
    LIVES_PER_DONATION,
    BloodBank,
    BloodBankPayload,
    BloodRequest,
    Donation,
    DonationInput,
    DonorResponse,
    Feedback,
    GeoPoint,
    ProfileUpdatePayload,
    RequestInput,
    StatusChange,
    utcnow,
)

logger = logging.getLogger(__name__)

LEADERBOARD_FIELDS = {
    "points": "reward_points",
    "donations": "total_donations",
    "streak": "streak",
    # lives impacted is a fixed multiple of the donation count
    "lives": "total_donations",
}


@dataclass
class DonationOutcome:
    accepted: bool
    donation: Optional[dict] = None
    progression: Optional[dict] = None
    next_eligible_date: Optional[datetime] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "donation": self.donation,
            "progression": self.progression,
            "next_eligible_date": self.next_eligible_date,
            "reason": self.reason,
        }


@dataclass
class RequestOutcome:
    request: dict
    candidate_donors: List[dict] = field(default_factory=list)
    nearby_blood_banks: List[dict] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "request": self.request,
            "candidate_donors": self.candidate_donors,
            "nearby_blood_banks": self.nearby_blood_banks,
        }


# Helpers

def _validate(model, data):
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidInput("Invalid input", errors=e.errors(include_url=False, include_context=False))


@with_retry
def _get(collection: str, doc_id: str, label: str, projection: Optional[dict] = None) -> dict:
    doc = get_collection(collection).find_one({"_id": object_id(doc_id)}, projection)
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def _version_filter(doc: dict) -> dict:
    if "version" in doc:
        return {"_id": doc["_id"], "version": doc["version"]}
    return {"_id": doc["_id"], "version": {"$exists": False}}


def _page(cursor, total: int, page: int, limit: int):
    items = [normalize(d) for d in cursor.skip((page - 1) * limit).limit(limit)]
    return {
        "data": items,
        "pagination": {"current": page, "total": math.ceil(total / limit) if limit else 0, "limit": limit},
    }


def request_out(doc: dict) -> dict:
    doc = normalize(doc) if "_id" in doc else doc
    doc["donors_responded"] = len(doc.get("donors") or [])
    return doc


# Donations

@with_retry
def _donation_history(donor: dict, before: datetime, exclude_id: Optional[str] = None) -> List[datetime]:
    """Dates of the donor's latest standing donation before `before`, plus the
    profile's `last_donation_date`.

    The profile date is written under the version guard, so it is what
    serialises concurrent submissions. It also covers donors imported without
    donation records. `exclude_id` leaves out the donation being recorded.
    """
    query: Dict[str, Any] = {
        "donor_id": str(donor["_id"]),
        "status": {"$nin": list(VOID_DONATION_STATUSES)},
        "donation_date": {"$lt": before},
    }
    if exclude_id:
        query["_id"] = {"$ne": ObjectId(exclude_id)}
    prior = get_collection("donation").find(query).sort("donation_date", DESCENDING).limit(1)
    dates = [d["donation_date"] for d in prior]
    last = donor.get("last_donation_date")
    if last and last < before:
        dates.append(last)
    return dates


def _screen(donor: dict, data: DonationInput, now: datetime, exclude_id: Optional[str] = None) -> Eligibility:
    if not donor.get("is_active", True):
        raise Unauthorized("Account is deactivated")
    if data.blood_group != donor["blood_group"]:
        raise InvalidInput("Blood group does not match the donor's record")
    last = donor.get("last_donation_date")
    if last and data.donation_date <= last:
        raise InvalidInput("Donation date must be after the last recorded donation")
    history = _donation_history(donor, data.donation_date, exclude_id)
    return check_eligibility(donor, data.donation_date, history=history, now=now)


def _ineligible(donor_id: str, eligibility: Eligibility) -> DonationOutcome:
    logger.info("Donation by %s rejected: next eligible %s", donor_id, eligibility.next_eligible_date)
    return DonationOutcome(
        accepted=False,
        next_eligible_date=eligibility.next_eligible_date,
        reason=f"Must wait {ELIGIBILITY_WINDOW.days} days between donations",
    )


def _record_progression(donor_id: str, data: DonationInput, donation_id: str, now: datetime):
    """Fold a stored donation into the donor's progression under the version guard.

    A concurrent write for the same donor makes the guard miss; the donor is
    re-read and re-screened, so a second submission sees the first one.
    Returns (eligibility, progression, award); the last two are None when the
    fresh state makes the donor ineligible.
    """
    for attempt in range(1, config.OCC_RETRY_ATTEMPTS + 1):
        donor = _get("user", donor_id, "Donor")
        eligibility = _screen(donor, data, now, exclude_id=donation_id)
        if not eligibility.eligible:
            return eligibility, None, None
        progress, award = apply_donation(Progression.from_user(donor), data.donation_date)
        written = update_guarded(
            "user",
            _version_filter(donor),
            {"$set": {**progress.as_update(), "updated_at": now}, "$inc": {"version": 1}},
            landed={"_id": donor["_id"], "last_donation_date": data.donation_date},
        )
        if written is not None:
            return eligibility, progress, award
        logger.warning("Progression for %s changed concurrently, retrying (%d/%d)",
                       donor_id, attempt, config.OCC_RETRY_ATTEMPTS)
    raise Conflict("Donor record is being updated concurrently, try again")


@with_retry
def check_donor_eligibility(donor_id: str, proposed_date: Optional[datetime] = None,
                            now: Optional[datetime] = None):
    now = now or utcnow()
    proposed_date = proposed_date or now
    donor = _get("user", donor_id, "Donor")
    return check_eligibility(donor, proposed_date, history=_donation_history(donor, proposed_date), now=now)


def submit_donation(donor_id: str, data, now: Optional[datetime] = None) -> DonationOutcome:
    """Record a donation if the donor is eligible, then fold it into their progression.

    The donation is stored first, as pending. If its progression cannot be
    recorded the donation is removed again, so a profile never counts a
    donation that does not exist.
    """
    data = _validate(DonationInput, data)
    now = now or utcnow()

    bank = find_one("bloodbank", {"_id": object_id(data.blood_bank_id)}, {"is_active": 1})
    if not bank or not bank.get("is_active", True):
        raise InvalidInput("Blood bank not found")

    eligibility = _screen(_get("user", donor_id, "Donor"), data, now)
    if not eligibility.eligible:
        return _ineligible(donor_id, eligibility)

    donation_id = create_document("donation", Donation(
        donor_id=donor_id,
        blood_bank_id=data.blood_bank_id,
        blood_group=data.blood_group,
        units=data.units,
        donation_date=data.donation_date,
        health_info=data.health_info,
        status_history=[StatusChange(status="pending", updated_by=donor_id, updated_at=now)],
    ))
    try:
        eligibility, progress, award = _record_progression(donor_id, data, donation_id, now)
    except Exception:
        delete_document("donation", donation_id)
        raise
    if progress is None:
        delete_document("donation", donation_id)
        return _ineligible(donor_id, eligibility)

    saved = update_guarded("donation", {"_id": ObjectId(donation_id)}, {"$set": {"rewards": award.as_dict()}})
    logger.info("Donation %s accepted for %s (+%d points)", donation_id, donor_id, award.total)
    return DonationOutcome(
        accepted=True,
        donation=donation_out(saved),
        progression=progress.as_dict(),
        next_eligible_date=progress.next_eligible_date,
    )


def donation_out(doc: dict) -> dict:
    doc = normalize(doc)
    rewards = doc.get("rewards") or {}
    doc["total_points"] = rewards.get("points", 0) + rewards.get("bonus_points", 0)
    return doc


@with_retry
def get_donation(donation_id: str, user: dict) -> dict:
    donation = _get("donation", donation_id, "Donation")
    if donation["donor_id"] != user["id"] and not user.get("is_admin"):
        raise Unauthorized("Not authorized to view this donation")
    return donation_out(donation)


@with_retry
def _stock_donation(donation: dict):
    """Credit a completed donation's units to its bank, once per donation."""
    donation_id = str(donation["_id"])
    get_collection("bloodbank").update_one(
        {"_id": object_id(donation["blood_bank_id"]), "stocked_donations": {"$ne": donation_id}},
        {
            "$inc": {f"inventory.{donation['blood_group']}": donation["units"]},
            "$push": {"stocked_donations": donation_id},
            "$set": {"updated_at": utcnow()},
        },
    )


def _revoke_award(donation: dict, now: datetime):
    """Take a rejected or cancelled donation's award back from its donor, once."""
    donation_id = str(donation["_id"])
    award = RewardAward(**(donation.get("rewards") or {}))
    for attempt in range(1, config.OCC_RETRY_ATTEMPTS + 1):
        donor = _get("user", donation["donor_id"], "Donor")
        if donation_id in (donor.get("voided_donations") or []):
            return
        progress = revoke_donation(Progression.from_user(donor), award)
        written = update_guarded(
            "user",
            _version_filter(donor),
            {
                "$set": {**progress.as_update(), "updated_at": now},
                "$inc": {"version": 1},
                "$push": {"voided_donations": donation_id},
            },
            landed={"_id": donor["_id"], "voided_donations": donation_id},
        )
        if written is not None:
            logger.info("Took back %d points from %s for donation %s",
                        award.total, donation["donor_id"], donation_id)
            return
        logger.warning("Progression for %s changed concurrently, retrying (%d/%d)",
                       donation["donor_id"], attempt, config.OCC_RETRY_ATTEMPTS)
    raise Conflict("Donor record is being updated concurrently, try again")


def update_donation_status(donation_id: str, new_status: str, actor: dict,
                           reason: Optional[str] = None) -> dict:
    if not actor.get("is_admin"):
        raise Unauthorized("Admin access required")
    donation = _get("donation", donation_id, "Donation")
    lifecycle.check_donation_transition(donation["status"], new_status)
    now = utcnow()
    change = StatusChange(status=new_status, updated_by=actor["id"], reason=reason, updated_at=now)
    updated = update_guarded(
        "donation",
        {"_id": donation["_id"], "status": donation["status"]},
        {"$set": {"status": new_status, "updated_at": now}, "$push": {"status_history": change.model_dump()}},
        landed={"_id": donation["_id"], "status": new_status, "updated_at": now},
    )
    if updated is None:
        raise Conflict("Donation status changed concurrently")
    if new_status == "completed":
        _stock_donation(updated)
    elif new_status in VOID_DONATION_STATUSES:
        _revoke_award(updated, now)
    logger.info("Donation %s moved %s -> %s by %s", donation_id, donation["status"], new_status, actor["id"])
    return donation_out(updated)


@with_retry
def add_donation_feedback(donation_id: str, user: dict, rating: int, comment: Optional[str] = None) -> dict:
    donation = _get("donation", donation_id, "Donation")
    if donation["donor_id"] != user["id"]:
        raise Unauthorized("Only the donor can leave feedback")
    if donation["status"] != "completed":
        raise Conflict("Feedback can only be left on a completed donation")
    feedback = _validate(Feedback, {"rating": rating, "comment": comment, "given_at": utcnow()})
    updated = get_collection("donation").find_one_and_update(
        {"_id": donation["_id"]},
        {"$set": {"feedback": feedback.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    return donation_out(updated)


@with_retry
def donation_history(donor_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None) -> dict:
    query: Dict[str, Any] = {"donor_id": donor_id}
    if status:
        query["status"] = status
    col = get_collection("donation")
    total = col.count_documents(query)
    result = _page(col.find(query).sort("donation_date", DESCENDING), total, page, limit)
    for item in result["data"]:
        rewards = item.get("rewards") or {}
        item["total_points"] = rewards.get("points", 0) + rewards.get("bonus_points", 0)
    return result


@with_retry
def donation_stats(donor_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    donations = list(get_collection("donation").find(
        {"donor_id": donor_id, "status": {"$nin": list(VOID_DONATION_STATUSES)}}))
    monthly: Dict[int, Dict[str, int]] = {}
    for d in donations:
        if d["donation_date"] >= now - timedelta(days=365):
            month = monthly.setdefault(d["donation_date"].month, {"count": 0, "units": 0})
            month["count"] += 1
            month["units"] += d["units"]
    return {
        "total": {
            "donations": len(donations),
            "units": sum(d["units"] for d in donations),
            "lives_impacted": len(donations) * LIVES_PER_DONATION,
        },
        "monthly": monthly,
    }


# Blood banks

def create_blood_bank(data) -> dict:
    data = _validate(BloodBankPayload, data)
    if find_one("bloodbank", {"license_number": data.license_number}, {"_id": 1}):
        raise Conflict("A blood bank with this license number already exists")
    try:
        bank = BloodBank(**data.model_dump())
    except ValidationError as e:
        raise InvalidInput("Invalid blood bank", errors=e.errors(include_url=False, include_context=False))
    try:
        bank_id = create_document("bloodbank", bank)
    except DuplicateKeyError:
        raise Conflict("A blood bank with this license number already exists")
    logger.info("Blood bank %s created", bank_id)
    return normalize(find_one("bloodbank", {"_id": ObjectId(bank_id)}, BANK_PRIVATE_FIELDS))


@with_retry
def get_blood_bank(bank_id: str) -> dict:
    return normalize(_get("bloodbank", bank_id, "Blood bank", BANK_PRIVATE_FIELDS))


@with_retry
def list_blood_banks(location: Optional[GeoPoint] = None, radius_m: int = matching.DEFAULT_RADIUS_M,
                     blood_group: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    if location is not None:
        nearby = matching.find_blood_banks(location, radius_m, blood_group)
        start = (page - 1) * limit
        return {
            "data": [c.as_dict() for c in nearby[start:start + limit]],
            "pagination": {"current": page, "total": math.ceil(len(nearby) / limit), "limit": limit},
        }
    query: Dict[str, Any] = {"is_active": True}
    if blood_group:
        query[f"inventory.{blood_group}"] = {"$gt": 0}
    col = get_collection("bloodbank")
    cursor = col.find(query, BANK_PRIVATE_FIELDS).sort("name", ASCENDING)
    return _page(cursor, col.count_documents(query), page, limit)


# An $inc is not safe to repeat after a lost acknowledgement
@with_retry(attempts=1)
def _increment_stock(query: dict, key: str, delta: int) -> Optional[dict]:
    return get_collection("bloodbank").find_one_and_update(
        query,
        {"$inc": {key: delta}, "$set": {"updated_at": utcnow()}},
        projection=BANK_PRIVATE_FIELDS,
        return_document=ReturnDocument.AFTER,
    )


def adjust_inventory(bank_id: str, blood_group: str, delta: int) -> dict:
    """Atomically add `delta` units of `blood_group`; a decrement never takes stock below zero."""
    if blood_group not in BLOOD_GROUPS:
        raise InvalidInput(f"{blood_group} is not a valid blood group")
    key = f"inventory.{blood_group}"
    query: Dict[str, Any] = {"_id": object_id(bank_id)}
    if delta < 0:
        query[key] = {"$gte": -delta}
    updated = _increment_stock(query, key, delta)
    if updated is None:
        _get("bloodbank", bank_id, "Blood bank")
        raise Conflict(f"Not enough {blood_group} units in stock")
    return normalize(updated)


# Blood requests

def create_request(requester_id: str, data, now: Optional[datetime] = None) -> RequestOutcome:
    """Open a blood request and list the donors and blood banks within its urgency radius."""
    data = _validate(RequestInput, data)
    now = now or utcnow()
    if data.required_by <= now:
        raise InvalidInput("required_by must be in the future")

    request = BloodRequest(requester_id=requester_id, **data.model_dump())
    request_id = create_document("bloodrequest", request)
    saved = find_one("bloodrequest", {"_id": ObjectId(request_id)})

    candidates = matching.find_candidates(
        data.blood_group, data.location, data.urgency, exclude=[requester_id])
    banks = matching.find_blood_banks(
        data.location, matching.radius_for(data.urgency), data.blood_group)
    logger.info("Request %s (%s, %s) created with %d candidate donor(s)",
                request_id, data.blood_group, data.urgency, len(candidates))
    return RequestOutcome(
        request=request_out(saved),
        candidate_donors=[public_user(c.as_dict()) for c in candidates],
        nearby_blood_banks=[c.as_dict() for c in banks],
    )


@with_retry
def get_request(request_id: str) -> dict:
    return request_out(_get("bloodrequest", request_id, "Blood request"))


@with_retry
def request_candidates(request_id: str) -> List[dict]:
    request = _get("bloodrequest", request_id, "Blood request")
    candidates = matching.find_candidates(
        request["blood_group"], GeoPoint(**request["location"]), request["urgency"],
        exclude=[request["requester_id"]])
    return [public_user(c.as_dict()) for c in candidates]


@with_retry
def list_requests(status: Optional[str] = None, blood_group: Optional[str] = None,
                  requester_id: Optional[str] = None, page: int = 1, limit: int = 10) -> dict:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if blood_group:
        query["blood_group"] = blood_group
    if requester_id:
        query["requester_id"] = requester_id
    col = get_collection("bloodrequest")
    result = _page(col.find(query).sort("required_by", ASCENDING), col.count_documents(query), page, limit)
    result["data"] = [request_out(r) for r in result["data"]]
    return result


@with_retry
def nearby_requests(location: GeoPoint, radius_m: int = matching.DEFAULT_RADIUS_M) -> List[dict]:
    """Open requests within `radius_m` of `location`, nearest first."""
    query = {"status": {"$in": list(lifecycle.OPEN_REQUEST_STATUSES)},
             **matching.latitude_band(location, radius_m)}
    records = [request_out(d) for d in get_collection("bloodrequest").find(query)]
    return [c.as_dict() for c in matching.within_radius(records, location, radius_m)]


def respond_to_request(request_id: str, donor_id: str, now: Optional[datetime] = None) -> dict:
    """Add the donor to the request's responses, at most once."""
    now = now or utcnow()
    request = _get("bloodrequest", request_id, "Blood request")
    donor = _get("user", donor_id, "Donor")
    if not donor.get("is_donor") or not donor.get("is_active", True):
        raise Unauthorized("Only active donors can respond to requests")
    if any(r["donor_id"] == donor_id for r in request.get("donors") or []):
        raise DuplicateResponse("You have already responded to this request")
    if not lifecycle.is_open(request):
        raise Conflict(f"Request is {request['status']}")

    response = DonorResponse(donor_id=donor_id, responded_at=now)
    updated = update_guarded(
        "bloodrequest",
        {
            "_id": request["_id"],
            "status": {"$in": list(lifecycle.OPEN_REQUEST_STATUSES)},
            "donors.donor_id": {"$ne": donor_id},
        },
        {"$push": {"donors": response.model_dump()}, "$set": {"updated_at": now}},
        landed={"_id": request["_id"], "donors": {"$elemMatch": {"donor_id": donor_id, "responded_at": now}}},
    )
    if updated is None:
        # Lost a race: report whichever guard failed
        current = _get("bloodrequest", request_id, "Blood request")
        if any(r["donor_id"] == donor_id for r in current.get("donors") or []):
            raise DuplicateResponse("You have already responded to this request")
        raise Conflict(f"Request is {current['status']}")
    logger.info("Donor %s responded to request %s", donor_id, request_id)
    return request_out(updated)


def update_request_status(request_id: str, new_status: str, user: dict) -> dict:
    request = _get("bloodrequest", request_id, "Blood request")
    lifecycle.require_request_manager(request, user)
    lifecycle.check_request_transition(request["status"], new_status)
    now = utcnow()
    updated = update_guarded(
        "bloodrequest",
        {"_id": request["_id"], "status": request["status"]},
        {"$set": {"status": new_status, "updated_at": now}},
        landed={"_id": request["_id"], "status": new_status, "updated_at": now},
    )
    if updated is None:
        raise Conflict("Request status changed concurrently")
    logger.info("Request %s moved %s -> %s", request_id, request["status"], new_status)
    return request_out(updated)


def update_donor_response(request_id: str, donor_id: str, new_status: str, user: dict) -> dict:
    request = _get("bloodrequest", request_id, "Blood request")
    if not lifecycle.is_open(request):
        raise Conflict(f"Request is {request['status']}")
    entry = next((r for r in request.get("donors") or [] if r["donor_id"] == donor_id), None)
    if entry is None:
        raise NotFound("Donor has not responded to this request")
    lifecycle.require_response_actor(request, donor_id, user, new_status)
    lifecycle.check_response_transition(entry["status"], new_status)
    now = utcnow()
    updated = update_guarded(
        "bloodrequest",
        {"_id": request["_id"], "donors.donor_id": donor_id},
        {"$set": {"donors.$.status": new_status, "updated_at": now}},
        landed={
            "_id": request["_id"],
            "updated_at": now,
            "donors": {"$elemMatch": {"donor_id": donor_id, "status": new_status}},
        },
    )
    return request_out(updated)


@with_retry
def add_request_feedback(request_id: str, user: dict, rating: int, comment: Optional[str] = None) -> dict:
    request = _get("bloodrequest", request_id, "Blood request")
    lifecycle.require_request_manager(request, user)
    if lifecycle.is_open(request):
        raise Conflict("Feedback can only be left on a closed request")
    feedback = _validate(Feedback, {"rating": rating, "comment": comment, "given_at": utcnow()})
    updated = get_collection("bloodrequest").find_one_and_update(
        {"_id": request["_id"]},
        {"$set": {"feedback": feedback.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    return request_out(updated)


# Users

@with_retry
def update_profile(user_id: str, data) -> dict:
    data = _validate(ProfileUpdatePayload, data)
    changes = data.model_dump(exclude_none=True)
    col = get_collection("user")
    if changes:
        col.update_one({"_id": object_id(user_id)}, {"$set": {**changes, "updated_at": utcnow()}})
    return public_user(normalize(_get("user", user_id, "User")))


@with_retry
def set_user_active(user_id: str, active: bool) -> dict:
    result = get_collection("user").update_one(
        {"_id": object_id(user_id)}, {"$set": {"is_active": active, "updated_at": utcnow()}})
    if not result.matched_count:
        raise NotFound("User not found")
    logger.info("User %s %s", user_id, "activated" if active else "deactivated")
    return public_user(normalize(_get("user", user_id, "User")))


# Rewards

def rewards_status(user: dict) -> dict:
    total = user.get("total_donations", 0)
    level = level_for(total)
    return {
        "current_points": user.get("reward_points", 0),
        "current_level": level,
        "level_progress": level_progress_for(total),
        "next_level": next_level(level),
        "donations_to_next_level": donations_to_next_level(total),
        "badges": user.get("badges", []),
        "streak": user.get("streak", 0),
        "multiplier": LEVEL_MULTIPLIERS[level],
        "lives_impacted": total * LIVES_PER_DONATION,
        "next_eligible_date": user.get("next_eligible_date"),
    }


def badge_catalogue(user: dict) -> List[dict]:
    held = set(user.get("badges") or [])
    total = user.get("total_donations", 0)
    return [
        {**badge, "earned": badge["id"] in held, "progress": badge_progress(badge["id"], total)}
        for badge in BADGES
    ]


@with_retry
def leaderboard(user: dict, board: str = "points", page: int = 1, limit: int = 10) -> dict:
    if board not in LEADERBOARD_FIELDS:
        raise InvalidInput(f"Unknown leaderboard {board!r}")
    sort_field = LEADERBOARD_FIELDS[board]
    query = {"is_donor": True, "is_active": True}
    col = get_collection("user")
    total = col.count_documents(query)
    projection = {"name": 1, "level": 1, "badges": 1, "reward_points": 1,
                  "total_donations": 1, "streak": 1}
    rows = (
        col.find(query, projection)
        .sort([(sort_field, DESCENDING), ("_id", ASCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    entries = []
    for row in rows:
        row = normalize(row)
        row["lives_impacted"] = row.get("total_donations", 0) * LIVES_PER_DONATION
        entries.append(row)
    score = user.get(sort_field, 0)
    ahead = col.count_documents({**query, sort_field: {"$gt": score}})
    return {
        "leaderboard": entries,
        "pagination": {"current": page, "total": math.ceil(total / limit), "limit": limit},
        "user_stats": {
            "rank": ahead + 1,
            "score": score * LIVES_PER_DONATION if board == "lives" else score,
            "total": total,
        },
    }
