import itertools
import math
from datetime import datetime

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import create_document
from matching import EARTH_RADIUS_KM
from schemas import BloodBank, GeoPoint, User

# Whole seconds: BSON keeps milliseconds only
NOW = datetime(2026, 6, 1, 12, 0, 0)

# Central Bengaluru
LON, LAT = 77.5946, 12.9716
ORIGIN = GeoPoint.from_lon_lat(LON, LAT)


def north_of(meters: float) -> GeoPoint:
    """A point `meters` due north of ORIGIN, measured on the matching sphere."""
    return GeoPoint.from_lon_lat(LON, LAT + math.degrees(meters / (EARTH_RADIUS_KM * 1000)))


@pytest.fixture
def db(monkeypatch):
    test_db = mongomock.MongoClient()["hemolink_test"]
    monkeypatch.setattr(database, "db", test_db)
    return test_db


@pytest.fixture
def make_user(db):
    counter = itertools.count(1)

    def factory(**fields):
        n = next(counter)
        data = {
            "email": f"user{n}@example.com",
            "name": f"User {n}",
            "password_hash": "not-a-real-hash",
            "blood_group": "O+",
            "location": ORIGIN,
        }
        data.update(fields)
        return create_document("user", User(**data))

    return factory


@pytest.fixture
def make_bank(db):
    counter = itertools.count(1)

    def factory(**fields):
        n = next(counter)
        data = {
            "name": f"Bank {n}",
            "license_number": f"LIC-{n:04d}",
            "phone": "+91 98765 43210",
            "email": f"bank{n}@example.com",
            "location": ORIGIN,
        }
        data.update(fields)
        return create_document("bloodbank", BloodBank(**data))

    return factory


@pytest.fixture
def admin(db, make_user):
    user_id = make_user(email="admin@example.com", name="Admin", is_admin=True, is_donor=False)
    return {"id": user_id, "email": "admin@example.com", "is_admin": True}


@pytest.fixture
def client(db):
    from main import app
    return TestClient(app)


@pytest.fixture
def register(client):
    """Register through the API and return (user, token)."""
    counter = itertools.count(1)

    def factory(**fields):
        n = next(counter)
        payload = {
            "email": f"api{n}@example.com",
            "password": "correct-horse",
            "name": f"Api User {n}",
            "blood_group": "O+",
            "location": {"type": "Point", "coordinates": [LON, LAT]},
        }
        payload.update(fields)
        resp = client.post("/auth/register", json=payload)
        assert resp.status_code == 201, resp.text
        body = resp.json()["data"]
        return body["user"], body["token"]

    return factory


def auth_header(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}
