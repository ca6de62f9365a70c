"""
Shared fixtures for Ledger Assistant tests.

The model provider is never called for real: every LLM client is backed by
an httpx.MockTransport that answers with whatever the test scripted.
"""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional, Union
from uuid import UUID

import httpx
import pytest
import pytest_asyncio

from ledger_assistant.agents import LLMClient
from ledger_assistant.config import LLMSettings, get_settings
from ledger_assistant.models import (
    Category,
    CategoryRule,
    Transaction,
    TransactionType,
)
from ledger_assistant.orchestrator import AppComponents, create_app_components


USER_A = UUID("11111111-1111-4111-8111-111111111111")
USER_B = UUID("22222222-2222-4222-8222-222222222222")

FOOD_ID = UUID("aaaaaaaa-0000-4000-8000-000000000001")
TRANSPORT_ID = UUID("aaaaaaaa-0000-4000-8000-000000000002")
OTHER_USERS_CATEGORY_ID = UUID("bbbbbbbb-0000-4000-8000-000000000001")

START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """A clock tests can move forward by hand."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeModel:
    """
    Scripted chat-completions endpoint.

    reply may be a dict (sent as JSON text) or a raw string.
    """

    def __init__(self):
        self.reply: Union[dict, str, None] = None
        self.requests: list[dict[str, Any]] = []

    def respond_with(self, reply: Union[dict, str]) -> None:
        self.reply = reply

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        content = self.reply if isinstance(self.reply, str) else json.dumps(self.reply)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": content}}]},
        )


def model_reply(
    filters: dict,
    changes: dict,
    interpretation: str = "I'll update the matching transactions.",
) -> dict:
    """A well-formed model reply."""
    return {
        "interpretation": interpretation,
        "action": {
            "type": "update_transactions",
            "filters": filters,
            "changes": changes,
        },
    }


def make_transaction(
    user_id: UUID,
    description: str,
    amount: str = "4.50",
    category_id: Optional[UUID] = None,
    occurred_on: date = date(2025, 2, 10),
    type: TransactionType = TransactionType.EXPENSE,
) -> Transaction:
    return Transaction(
        user_id=user_id,
        type=type,
        amount=Decimal(amount),
        description=description,
        category_id=category_id,
        occurred_on=occurred_on,
        created_at=START,
        updated_at=START,
    )


def build_llm_settings(**overrides: Any) -> LLMSettings:
    values: dict[str, Any] = {
        "api_key": "test-key",
        "api_url": "https://llm.test/v1/chat/completions",
        "initial_retry_delay_seconds": 1.0,
        "max_retries": 3,
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return LLMSettings(**values)


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch):
    """Every test starts from default settings with no API key."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def llm_client(fake_model: FakeModel) -> LLMClient:
    async def no_sleep(seconds: float) -> None:
        return None

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(fake_model.handler))
    return LLMClient(build_llm_settings(), http_client=http_client, sleep=no_sleep)


@pytest_asyncio.fixture
async def components(llm_client: LLMClient, clock: FrozenClock) -> AppComponents:
    """
    Wired components seeded with two users' data.

    USER_A owns Food and Transport, two coffee purchases and a bus ride.
    USER_B owns one category and one coffee purchase.
    """
    c = create_app_components(llm_client=llm_client, clock=clock)

    await c.category_storage.save_category(
        Category(id=FOOD_ID, user_id=USER_A, name="Food", description="Meals and drinks")
    )
    await c.category_storage.save_category(
        Category(id=TRANSPORT_ID, user_id=USER_A, name="Transport")
    )
    await c.category_storage.save_category(
        Category(id=OTHER_USERS_CATEGORY_ID, user_id=USER_B, name="Food")
    )

    await c.transaction_storage.create_transaction(
        make_transaction(USER_A, "Starbucks coffee", "4.50")
    )
    await c.transaction_storage.create_transaction(
        make_transaction(USER_A, "Coffee beans", "18.00", occurred_on=date(2025, 2, 12))
    )
    await c.transaction_storage.create_transaction(
        make_transaction(USER_A, "City bus", "2.75", occurred_on=date(2025, 2, 14))
    )
    await c.transaction_storage.create_transaction(
        make_transaction(USER_B, "Coffee with friends", "6.00")
    )
    return c


@pytest.fixture
def grab_rule() -> CategoryRule:
    return CategoryRule(
        user_id=USER_A,
        category_id=TRANSPORT_ID,
        name="Grab rides",
        conditions=[{"field": "description", "operator": "contains", "value": "grab"}],
        priority=10,
    )
