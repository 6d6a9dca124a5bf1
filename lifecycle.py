"""
Status machines for blood requests, donor responses and donations.

Only the transitions listed here are legal; anything else is a Conflict. Role
guards (who may move a record) live next to the transition tables so the
service layer asks one place.
"""

from errors import Conflict, InvalidInput, Unauthorized

REQUEST_TRANSITIONS = {
    "pending": {"in-progress", "cancelled"},
    "in-progress": {"fulfilled", "cancelled"},
    "fulfilled": set(),
    "cancelled": set(),
}
OPEN_REQUEST_STATUSES = ("pending", "in-progress")

RESPONSE_TRANSITIONS = {
    "pending": {"accepted", "cancelled"},
    "accepted": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

DONATION_TRANSITIONS = {
    "pending": {"approved", "rejected", "cancelled"},
    "approved": {"completed", "rejected", "cancelled"},
    "completed": set(),
    "rejected": set(),
    "cancelled": set(),
}


def _check(table: dict, kind: str, current: str, new: str):
    if new not in table:
        raise InvalidInput(f"{new!r} is not a valid {kind} status")
    if new not in table.get(current, set()):
        raise Conflict(f"Cannot move {kind} from {current!r} to {new!r}")


def check_request_transition(current: str, new: str):
    _check(REQUEST_TRANSITIONS, "request", current, new)


def check_response_transition(current: str, new: str):
    _check(RESPONSE_TRANSITIONS, "donor response", current, new)


def check_donation_transition(current: str, new: str):
    _check(DONATION_TRANSITIONS, "donation", current, new)


def is_open(request: dict) -> bool:
    return request.get("status") in OPEN_REQUEST_STATUSES


def can_manage_request(request: dict, user: dict) -> bool:
    return user.get("is_admin", False) or request.get("requester_id") == user.get("id")


def require_request_manager(request: dict, user: dict):
    if not can_manage_request(request, user):
        raise Unauthorized("Only the requester or an admin can change this request")


def require_response_actor(request: dict, donor_id: str, user: dict, new_status: str):
    """The donor may accept or withdraw their own response; managers may complete or cancel it."""
    if can_manage_request(request, user) and new_status in ("completed", "cancelled"):
        return
    if user.get("id") == donor_id and new_status in ("accepted", "cancelled"):
        return
    raise Unauthorized("Not allowed to set this donor response to " + new_status)
