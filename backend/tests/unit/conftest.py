"""Shared fixtures: an in-memory client handle and a sample entity."""

from datetime import datetime
from uuid import uuid4

import mongomock
import pytest
from mongomock_motor import AsyncMongoMockClient

from docrepo import EntityRepository, MongoClientHandle, MongoEntity, get_registry


class Customer(MongoEntity):
    company_id: str
    agent_id: str
    name: str
    office: str = "HQ"
    phone: str = ""
    email: str | None = None
    age: int = 30
    is_active: bool = True
    created_date: datetime = datetime(2020, 1, 1)


def make_customer(i: int, **overrides) -> Customer:
    values = {
        "company_id": "C1",
        "agent_id": "A0",
        "name": f"User{i}",
        "phone": f"555-000{i}",
        "email": f"user{i}@example.com",
        "age": 20 + (i % 50),
        "is_active": i % 2 == 0,
        "created_date": datetime(2000 + i % 20, 1 + i % 12, 1 + i % 28),
    }
    values.update(overrides)
    return Customer(**values)


@pytest.fixture
def handle():
    handle = MongoClientHandle(
        "mongodb://localhost:27017",
        sync_factory=mongomock.MongoClient,
        async_factory=AsyncMongoMockClient,
    )
    previous = get_registry().set(handle)
    yield handle
    get_registry().set(previous)


@pytest.fixture
def database_name() -> str:
    return f"test_{uuid4().hex[:8]}"


@pytest.fixture
def repo(handle, database_name) -> EntityRepository[Customer]:
    return EntityRepository(Customer, database_name)


@pytest.fixture(name="make_customer")
def make_customer_fixture():
    return make_customer


@pytest.fixture(name="Customer")
def customer_fixture():
    return Customer
