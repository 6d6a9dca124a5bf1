"""
Donation eligibility

A donor may give blood again once 90 days have passed since their previous
donation. The check is a pure function of the donor's history and the proposed
date; an ineligible donor is a normal answer, never an exception.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from errors import InvalidInput
from schemas import utcnow

ELIGIBILITY_WINDOW = timedelta(days=90)

# Donations in these states never happened as far as eligibility is concerned
VOID_DONATION_STATUSES = ("rejected", "cancelled")


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    next_eligible_date: Optional[datetime]


def _last_donation(donor) -> Optional[datetime]:
    if isinstance(donor, dict):
        return donor.get("last_donation_date")
    return getattr(donor, "last_donation_date", None)


def check_eligibility(donor, proposed_date: datetime,
                      history: Optional[Iterable[datetime]] = None,
                      now: Optional[datetime] = None) -> Eligibility:
    """Can `donor` give blood on `proposed_date`?

    `history` holds the dates of the donor's prior donations; without it the
    donor's `last_donation_date` stands in. The donor is ineligible iff some
    prior donation falls in [proposed_date - 90 days, proposed_date).

    Raises InvalidInput when `proposed_date` lies after `now`.
    """
    now = now or utcnow()
    if proposed_date > now:
        raise InvalidInput("Donation date cannot be in the future")

    if history is None:
        last = _last_donation(donor)
        history = [last] if last else []

    window_start = proposed_date - ELIGIBILITY_WINDOW
    in_window = [d for d in history if window_start <= d < proposed_date]
    if in_window:
        return Eligibility(False, max(in_window) + ELIGIBILITY_WINDOW)

    prior = [d for d in history if d < proposed_date]
    if not prior:
        return Eligibility(True, None)
    return Eligibility(True, max(prior) + ELIGIBILITY_WINDOW)
