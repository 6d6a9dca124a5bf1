from datetime import timedelta

import pytest

from eligibility import ELIGIBILITY_WINDOW, check_eligibility
from errors import InvalidInput

from conftest import NOW


def test_first_donation_is_eligible():
    result = check_eligibility({}, NOW, now=NOW)
    assert result.eligible
    assert result.next_eligible_date is None


def test_donation_inside_window_blocks():
    last = NOW - timedelta(days=30)
    result = check_eligibility({"last_donation_date": last}, NOW, now=NOW)
    assert not result.eligible
    assert result.next_eligible_date == last + ELIGIBILITY_WINDOW


def test_window_start_is_inclusive():
    last = NOW - timedelta(days=90)
    result = check_eligibility({"last_donation_date": last}, NOW, now=NOW)
    assert not result.eligible
    assert result.next_eligible_date == NOW


def test_just_outside_window_is_eligible():
    last = NOW - timedelta(days=90, seconds=1)
    result = check_eligibility({"last_donation_date": last}, NOW, now=NOW)
    assert result.eligible
    assert result.next_eligible_date == last + ELIGIBILITY_WINDOW


def test_history_overrides_profile_date():
    history = [NOW - timedelta(days=200), NOW - timedelta(days=10)]
    result = check_eligibility({"last_donation_date": None}, NOW, history=history, now=NOW)
    assert not result.eligible
    assert result.next_eligible_date == NOW + timedelta(days=80)


def test_later_donations_in_history_are_ignored():
    # Backdated submission: only donations before the proposed date count
    proposed = NOW - timedelta(days=200)
    result = check_eligibility({}, proposed, history=[NOW - timedelta(days=5)], now=NOW)
    assert result.eligible


def test_future_date_is_invalid():
    with pytest.raises(InvalidInput):
        check_eligibility({}, NOW + timedelta(minutes=1), now=NOW)


def test_accepts_model_like_donor():
    class Donor:
        last_donation_date = NOW - timedelta(days=1)

    assert not check_eligibility(Donor(), NOW, now=NOW).eligible
