"""Shared test fixtures for the TaskBoard accounts service."""
import asyncio
import time

import pytest
import pytest_asyncio

from config.settings import QueueConfig, Settings, UploadConfig
from database.store_memory import InMemoryAccountStore, InMemoryCommentStore
from integrations.mailer import LogMailer
from integrations.security import JwtProvider, PasswordHasher
from job_queue.client import JobQueue
from job_queue.message_queue import InMemoryMessageQueue, JobOptions
from models.schemas import Card, Comment, UserRecord


async def _wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an async or sync predicate until it is truthy, or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return outcome
        await asyncio.sleep(interval)
    pytest.fail(f"condition not met within {timeout}s")


@pytest.fixture
def wait_for():
    return _wait_for


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings tuned for fast, in-process queue tests."""
    return Settings(
        website_domain="http://taskboard.test",
        queue=QueueConfig(
            backend="memory",
            max_attempts=3,
            backoff_delay_ms=10,
            delayed_promote_interval=0.01,
        ),
        upload=UploadConfig(
            provider="local",
            local_dir=str(tmp_path / "uploads"),
            public_base_url="http://cdn.test/uploads",
        ),
    )


@pytest.fixture
def fast_hasher() -> PasswordHasher:
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def account_store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def comment_store() -> InMemoryCommentStore:
    return InMemoryCommentStore()


@pytest.fixture
def mailer() -> LogMailer:
    return LogMailer()


@pytest.fixture
def jwt_provider() -> JwtProvider:
    return JwtProvider("HS256")


@pytest_asyncio.fixture
async def job_queue():
    """A started, consuming in-memory queue client with millisecond backoff."""
    queue = JobQueue(
        InMemoryMessageQueue(),
        promote_interval=0.01,
        poll_timeout=0.02,
        default_options=JobOptions(max_attempts=3, backoff_delay_ms=10),
    )
    yield queue
    await queue.close()


@pytest.fixture
def alice() -> UserRecord:
    return UserRecord(
        id="u_alice",
        email="alice@example.com",
        password="not-a-real-hash",
        username="alice",
        display_name="Alice",
        avatar="http://cdn.test/a1.png",
        is_active=True,
    )


@pytest.fixture
def bob() -> UserRecord:
    return UserRecord(
        id="u_bob",
        email="bob@example.com",
        password="not-a-real-hash",
        username="bob",
        display_name="Bob",
        avatar="http://cdn.test/b1.png",
        is_active=True,
    )


def comment_by(user: UserRecord, content: str) -> Comment:
    return Comment(
        user_id=user.id,
        user_email=user.email,
        user_display_name=user.display_name,
        user_avatar=user.avatar,
        content=content,
    )


@pytest.fixture
def make_comment():
    return comment_by


@pytest_asyncio.fixture
async def seeded_cards(comment_store, alice, bob):
    """Three cards where Alice commented, plus one card with only Bob's comment."""
    card_ids = []
    for i in range(3):
        card = await comment_store.create_card(Card(title=f"Card {i}", board_id="b1"))
        await comment_store.add_comment(card.id, comment_by(alice, f"alice on {i}"))
        await comment_store.add_comment(card.id, comment_by(bob, f"bob on {i}"))
        card_ids.append(card.id)
    bob_only = await comment_store.create_card(Card(title="Bob only", board_id="b1"))
    await comment_store.add_comment(bob_only.id, comment_by(bob, "just bob"))
    card_ids.append(bob_only.id)
    return card_ids
