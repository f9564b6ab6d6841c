# tests/conftest.py
import os
import sys

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

from client.contentStore import InMemoryContentStore  # noqa: E402
from client.redis import Client as RedisClient  # noqa: E402
from shared.config import reset_config  # noqa: E402
from tests.fakes import FakeClock, FakeRedis, make_post  # noqa: E402


@pytest.fixture(autouse=True)
def clean_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def cache(fake_redis):
    return RedisClient(redis_client=fake_redis, operation_timeout=0.5)


@pytest.fixture
def content_store():
    posts = [
        make_post('p1', 'alice', '2024-01-01T10:00:00Z', likes=1),
        make_post('p2', 'bob', '2024-01-02T10:00:00Z', likes=50, reposts=10),
        make_post('p3', 'carol', '2024-01-03T10:00:00Z', likes=5, replies=2),
        make_post('p4', 'dave', '2024-01-04T10:00:00Z'),
        make_post('p5', 'reader', '2024-01-05T10:00:00Z', likes=100),
        make_post('p6', 'erin', '2024-01-06T10:00:00Z', likes=3, is_public=False),
    ]
    users = [
        {'user_id': 'reader', 'created_at': '2024-01-01T00:00:00Z', 'total_interactions': 10},
    ]
    return InMemoryContentStore(posts=posts, users=users)
