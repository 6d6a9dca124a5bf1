"""
Reward progression

Points, streaks, levels and badges earned by donating. Everything here is
derived from a donor's progression state plus one new donation; the caller is
responsible for persisting the result as a single atomic update.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from schemas import LIVES_PER_DONATION

BASE_POINTS = 100
STREAK_BONUS = 10
STREAK_WINDOW_DAYS = 90
NEXT_ELIGIBLE_AFTER = timedelta(days=90)

# Lowest level first: (name, first donation count at this level, donations spanning it)
LEVELS = (
    ("Bronze", 0, 10),
    ("Silver", 10, 15),
    ("Gold", 25, 25),
    ("Platinum", 50, None),
)

LEVEL_MULTIPLIERS = {"Bronze": 1.0, "Silver": 1.1, "Gold": 1.25, "Platinum": 1.5}

BADGES = (
    {
        "id": "first_donation",
        "name": "First Donation",
        "description": "Awarded for your first blood donation",
        "requirement": "1 donation",
    },
    {
        "id": "regular_donor",
        "name": "Regular Donor",
        "description": "Awarded for making 5 or more donations",
        "requirement": "5 donations",
    },
    {
        "id": "life_saver",
        "name": "Life Saver",
        "description": "Your donations have impacted 50 or more lives",
        "requirement": "50 lives impacted",
    },
)


@dataclass(frozen=True)
class Progression:
    total_donations: int = 0
    reward_points: int = 0
    streak: int = 0
    level: str = "Bronze"
    level_progress: float = 0.0
    badges: Tuple[str, ...] = ()
    last_donation_date: Optional[datetime] = None
    next_eligible_date: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: dict) -> "Progression":
        return cls(
            total_donations=user.get("total_donations", 0),
            reward_points=user.get("reward_points", 0),
            streak=user.get("streak", 0),
            level=user.get("level", "Bronze"),
            level_progress=user.get("level_progress", 0.0),
            badges=tuple(user.get("badges") or ()),
            last_donation_date=user.get("last_donation_date"),
            next_eligible_date=user.get("next_eligible_date"),
        )

    @property
    def lives_impacted(self) -> int:
        return self.total_donations * LIVES_PER_DONATION

    def as_update(self) -> Dict:
        return {
            "total_donations": self.total_donations,
            "reward_points": self.reward_points,
            "streak": self.streak,
            "level": self.level,
            "level_progress": self.level_progress,
            "badges": list(self.badges),
            "last_donation_date": self.last_donation_date,
            "next_eligible_date": self.next_eligible_date,
        }

    def as_dict(self) -> Dict:
        return {**self.as_update(), "lives_impacted": self.lives_impacted}


@dataclass(frozen=True)
class RewardAward:
    points: int = BASE_POINTS
    bonus_points: int = 0
    streak_maintained: bool = False

    @property
    def total(self) -> int:
        return self.points + self.bonus_points

    def as_dict(self) -> Dict:
        return {"points": self.points, "bonus_points": self.bonus_points,
                "streak_maintained": self.streak_maintained}


def level_for(total_donations: int) -> str:
    name = LEVELS[0][0]
    for level, start, _ in LEVELS:
        if total_donations >= start:
            name = level
    return name


def level_progress_for(total_donations: int) -> float:
    """Percent of the way from the current level to the next one."""
    for level, start, span in reversed(LEVELS):
        if total_donations >= start:
            if span is None:
                return 100.0
            return min((total_donations - start) / span, 1) * 100
    return 0.0


def next_level(level: str) -> Optional[str]:
    names = [name for name, _, _ in LEVELS]
    index = names.index(level)
    return names[index + 1] if index + 1 < len(names) else None


def donations_to_next_level(total_donations: int) -> Optional[int]:
    upcoming = next_level(level_for(total_donations))
    if upcoming is None:
        return None
    start = next(start for name, start, _ in LEVELS if name == upcoming)
    return start - total_donations


def earned_badges(total_donations: int) -> List[str]:
    badges = []
    if total_donations >= 1:
        badges.append("first_donation")
    if total_donations >= 5:
        badges.append("regular_donor")
    if total_donations * LIVES_PER_DONATION >= 50:
        badges.append("life_saver")
    return badges


def unlock_badges(current, total_donations: int) -> Tuple[str, ...]:
    """Union of the held badges and those the count earns; order of first unlock is kept."""
    badges = list(current)
    for badge in earned_badges(total_donations):
        if badge not in badges:
            badges.append(badge)
    return tuple(badges)


def badge_progress(badge_id: str, total_donations: int) -> float:
    if badge_id == "first_donation":
        return 100.0 if total_donations > 0 else 0.0
    if badge_id == "regular_donor":
        return min(total_donations / 5 * 100, 100.0)
    if badge_id == "life_saver":
        return min(total_donations * LIVES_PER_DONATION / 50 * 100, 100.0)
    return 0.0


def streak_continues(last_donation_date: Optional[datetime], donation_date: datetime) -> bool:
    if last_donation_date is None:
        return False
    gap = (donation_date.date() - last_donation_date.date()).days
    return 0 <= gap <= STREAK_WINDOW_DAYS


def apply_donation(progress: Progression, donation_date: datetime) -> Tuple[Progression, RewardAward]:
    """Fold one accepted donation into `progress`.

    Returns the new progression and the points awarded for this donation.
    """
    if streak_continues(progress.last_donation_date, donation_date):
        streak = progress.streak + 1
        award = RewardAward(bonus_points=streak * STREAK_BONUS, streak_maintained=True)
    else:
        streak = 1
        award = RewardAward()

    total = progress.total_donations + 1
    updated = replace(
        progress,
        total_donations=total,
        reward_points=progress.reward_points + award.total,
        streak=streak,
        level=level_for(total),
        level_progress=level_progress_for(total),
        badges=unlock_badges(progress.badges, total),
        last_donation_date=donation_date,
        next_eligible_date=donation_date + NEXT_ELIGIBLE_AFTER,
    )
    return updated, award


def revoke_donation(progress: Progression, award: RewardAward) -> Progression:
    """Take back one donation's award after it is rejected or cancelled.

    The count, points, level and count-based badges drop with it. The
    donation dates are kept, so the eligibility window it opened still holds.
    """
    total = max(progress.total_donations - 1, 0)
    earned = earned_badges(total)
    return replace(
        progress,
        total_donations=total,
        reward_points=max(progress.reward_points - award.total, 0),
        streak=max(progress.streak - 1, 0),
        level=level_for(total),
        level_progress=level_progress_for(total),
        badges=tuple(b for b in progress.badges if b in earned),
    )
