"""
Database Schemas for Hemolink

Each Pydantic model below corresponds to a MongoDB collection (lowercased class name).
These are used for validation in the API and to document the data shape.
"""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, computed_field, field_validator, model_validator

BLOOD_GROUPS = ("A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-")

BloodGroup = Literal["A+", "A-", "B+", "B-", "AB+", "AB-", "O+", "O-"]
Level = Literal["Bronze", "Silver", "Gold", "Platinum"]
Urgency = Literal["normal", "urgent", "critical"]
DonationStatus = Literal["pending", "approved", "completed", "rejected", "cancelled"]
RequestStatus = Literal["pending", "in-progress", "fulfilled", "cancelled"]
ResponseStatus = Literal["pending", "accepted", "completed", "cancelled"]

LIVES_PER_DONATION = 3


def utcnow() -> datetime:
    """Naive UTC now at millisecond precision, the form BSON dates round-trip as."""
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """BSON stores naive UTC; fold any aware datetime into that form."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# GeoJSON point, [longitude, latitude]
class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float]

    @field_validator("coordinates")
    @classmethod
    def check_coordinates(cls, v):
        if len(v) != 2:
            raise ValueError("coordinates must be [longitude, latitude]")
        lon, lat = v
        if not -180 <= lon <= 180:
            raise ValueError("longitude must be within [-180, 180]")
        if not -90 <= lat <= 90:
            raise ValueError("latitude must be within [-90, 90]")
        return v

    @classmethod
    def from_lon_lat(cls, lon: float, lat: float) -> "GeoPoint":
        return cls(coordinates=[lon, lat])

    @property
    def lon(self) -> float:
        return self.coordinates[0]

    @property
    def lat(self) -> float:
        return self.coordinates[1]


# Users (donors, requesters, admins)
class User(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=2, max_length=50)
    password_hash: Optional[str] = Field(None, description="Absent for federated-only accounts")
    google_id: Optional[str] = Field(None, description="Linked Google account id")
    blood_group: BloodGroup
    is_donor: bool = True
    is_admin: bool = False
    is_active: bool = True
    phone: Optional[str] = None
    location: Optional[GeoPoint] = None

    total_donations: int = Field(0, ge=0)
    reward_points: int = Field(0, ge=0)
    streak: int = Field(0, ge=0)
    level: Level = "Bronze"
    level_progress: float = Field(0.0, ge=0, le=100)
    badges: List[str] = Field(default_factory=list)
    last_donation_date: Optional[datetime] = None
    next_eligible_date: Optional[datetime] = None
    # Donations whose award was taken back after rejection or cancellation
    voided_donations: List[str] = Field(default_factory=list)
    version: int = 0

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def credential_or_federated(self):
        if not self.password_hash and not self.google_id:
            raise ValueError("a password is required unless a Google account is linked")
        return self

    @computed_field
    @property
    def lives_impacted(self) -> int:
        return self.total_donations * LIVES_PER_DONATION


# Pre-donation screening snapshot
class HealthInfo(BaseModel):
    hemoglobin: Optional[float] = Field(None, ge=8, le=20, description="g/dL")
    systolic: Optional[int] = Field(None, ge=60, le=180)
    diastolic: Optional[int] = Field(None, ge=40, le=120)
    weight_kg: Optional[float] = Field(None, ge=45, le=150)
    pulse_rate: Optional[int] = Field(None, ge=50, le=100)
    temperature_c: Optional[float] = Field(None, ge=35, le=38)
    medications: List[str] = Field(default_factory=list)
    conditions: List[str] = Field(default_factory=list)
    notes: Optional[str] = None
    verified_by: Optional[str] = None


class StatusChange(BaseModel):
    status: str
    updated_by: Optional[str] = None
    reason: Optional[str] = None
    updated_at: datetime


class DonationRewards(BaseModel):
    points: int = 100
    bonus_points: int = 0
    streak_maintained: bool = False


class Feedback(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    given_at: Optional[datetime] = None


class Donation(BaseModel):
    donor_id: str
    blood_bank_id: str
    blood_group: BloodGroup
    units: int = Field(..., ge=1, le=5)
    donation_date: datetime
    status: DonationStatus = "pending"
    status_history: List[StatusChange] = Field(default_factory=list)
    health_info: Optional[HealthInfo] = None
    rewards: DonationRewards = Field(default_factory=DonationRewards)
    feedback: Optional[Feedback] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def total_points(self) -> int:
        return self.rewards.points + self.rewards.bonus_points


# A donor's answer to a blood request
class DonorResponse(BaseModel):
    donor_id: str
    status: ResponseStatus = "pending"
    responded_at: datetime


class BloodRequest(BaseModel):
    requester_id: str
    patient_name: str
    blood_group: BloodGroup
    units: int = Field(..., ge=1, le=10)
    urgency: Urgency = "normal"
    hospital: str
    required_by: datetime
    reason: Optional[str] = None
    contact: Optional[str] = None
    location: GeoPoint
    status: RequestStatus = "pending"
    donors: List[DonorResponse] = Field(default_factory=list)
    feedback: Optional[Feedback] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def donors_responded(self) -> int:
        return len(self.donors)


def empty_inventory() -> Dict[str, int]:
    return {group: 0 for group in BLOOD_GROUPS}


# Bookkeeping kept out of API responses
BANK_PRIVATE_FIELDS = {"stocked_donations": 0}


class BloodBank(BaseModel):
    name: str
    license_number: str
    license_valid_until: Optional[datetime] = None
    phone: str
    email: EmailStr
    address: Optional[str] = None
    location: GeoPoint
    inventory: Dict[str, int] = Field(default_factory=empty_inventory)
    # Completed donations already counted into `inventory`
    stocked_donations: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("inventory")
    @classmethod
    def check_inventory(cls, v):
        for group, units in v.items():
            if group not in BLOOD_GROUPS:
                raise ValueError(f"{group} is not a valid blood group")
            if units < 0:
                raise ValueError("inventory counts cannot be negative")
        return {**empty_inventory(), **v}


# ----- Operation inputs -----

class RegisterPayload(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    name: str = Field(..., min_length=2, max_length=50)
    blood_group: BloodGroup
    role: Literal["donor", "recipient"] = "donor"
    phone: Optional[str] = Field(None, pattern=r"^\+?[\d\s-]{10,}$")
    location: Optional[GeoPoint] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


# Federated login: the client passes the verified Google profile
class AuthPayload(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    external_id: str
    blood_group: Optional[BloodGroup] = None


class ProfileUpdatePayload(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = Field(None, pattern=r"^\+?[\d\s-]{10,}$")
    location: Optional[GeoPoint] = None
    is_donor: Optional[bool] = None


class DonationInput(BaseModel):
    blood_bank_id: str
    blood_group: BloodGroup
    units: int = Field(..., ge=1, le=5)
    donation_date: datetime
    health_info: Optional[HealthInfo] = None

    @field_validator("donation_date")
    @classmethod
    def naive_donation_date(cls, v):
        return to_naive_utc(v)


class RequestInput(BaseModel):
    patient_name: str = Field(..., min_length=1)
    blood_group: BloodGroup
    units: int = Field(..., ge=1, le=10)
    urgency: Urgency = "normal"
    hospital: str = Field(..., min_length=1)
    required_by: datetime
    reason: Optional[str] = None
    contact: Optional[str] = None
    location: GeoPoint

    @field_validator("required_by")
    @classmethod
    def naive_required_by(cls, v):
        return to_naive_utc(v)


class StatusPayload(BaseModel):
    status: str
    reason: Optional[str] = Field(None, max_length=500)


class FeedbackPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class BloodBankPayload(BaseModel):
    name: str = Field(..., min_length=1)
    license_number: str = Field(..., min_length=1)
    license_valid_until: Optional[datetime] = None
    phone: str = Field(..., pattern=r"^\+?[\d\s-]{10,}$")
    email: EmailStr
    address: Optional[str] = None
    location: GeoPoint
    inventory: Dict[str, int] = Field(default_factory=dict)


class InventoryAdjustPayload(BaseModel):
    blood_group: BloodGroup
    delta: int
