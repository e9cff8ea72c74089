"""
Shared pytest fixtures for all tests
"""
from datetime import datetime
from typing import List

import pytest

from discovery.core.config import Settings
from discovery.domain.models.product import Product
from tests.fakes import NOW, FakeRedis, InMemoryStore, make_product


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def catalog() -> List[Product]:
    """A small published catalog plus one draft"""
    return [
        make_product("p1", age_h=10, upvotes=40, views=300, unique=200, recent=120, tags=["ai", "productivity"], category_id="c-ai", category_name="AI Tools"),
        make_product("p2", age_h=30, upvotes=12, views=150, unique=90, recent=60, tags=["ai", "writing"], category_id="c-ai", category_name="AI Tools"),
        make_product("p3", age_h=60, upvotes=5, views=80, unique=50, recent=20, tags=["design", "figma"], category_id="c-design", category_name="Design"),
        make_product("p4", age_h=5, upvotes=2, views=20, unique=15, recent=20, tags=["productivity", "notes"], category_id="c-prod", category_name="Productivity"),
        make_product("p5", age_h=100, upvotes=25, views=500, unique=300, recent=40, tags=["ai", "design"], category_id="c-design", category_name="Design"),
        make_product("p6", age_h=2, upvotes=0, views=1, unique=1, tags=["notes"], category_id="c-prod", status="Draft"),
    ]


@pytest.fixture
def store(catalog) -> InMemoryStore:
    """In-memory adapter over the sample catalog"""
    return InMemoryStore(catalog)
