import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from typing import Optional  # noqa: E402

import pytest  # noqa: E402
import yaml  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import app.models  # noqa: E402,F401
from app.database import Base  # noqa: E402
from app.services.channel_service import ChannelSender, SendResult  # noqa: E402
from app.services.conversation_service import get_or_create_conversation  # noqa: E402
from app.services.llm import LLMError, LLMProvider, LLMResponse  # noqa: E402
from app.services.message_service import INBOUND, OUTBOUND, save_message  # noqa: E402
from app.services.rule_config import RULES_PATH, RuleConfig  # noqa: E402


class FakeLLMProvider(LLMProvider):
    """Returns canned content and records the prompts it saw."""

    def __init__(self, content: str = "Happy to help with that.", error: Optional[str] = None):
        self.content = content
        self.error = error
        self.calls: list[list[dict]] = []

    def generate(self, messages, model=None, temperature=0.7, max_tokens=300, timeout_seconds=20.0):
        self.calls.append(messages)
        if self.error:
            raise LLMError(self.error)
        return LLMResponse(content=self.content, model=model or "fake")


class FakeChannelSender(ChannelSender):
    def __init__(self, success: bool = True, error: Optional[str] = None):
        self.success = success
        self.error = error
        self.sent: list[dict] = []
        self.on_send = None

    def send_text(self, recipient, text, provider="whatsapp", idempotency_key=None):
        if self.on_send is not None:
            self.on_send()
        self.sent.append({"recipient": recipient, "text": text, "provider": provider, "key": idempotency_key})
        if not self.success:
            return SendResult(success=False, error=self.error or "provider_down")
        return SendResult(success=True, provider_message_id=f"wamid.{len(self.sent)}")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Real session on an in-memory SQLite database."""
    session = sessionmaker(bind=engine, autoflush=False, autocommit=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def conversation(db):
    conv = get_or_create_conversation(db, "whatsapp", "971500000001@s.whatsapp.net")
    db.commit()
    return conv


@pytest.fixture
def inbound(db, conversation):
    """Store an inbound message and return it."""
    counter = {"n": 0}

    def _inbound(body: str, external_id: Optional[str] = None):
        counter["n"] += 1
        message = save_message(
            db,
            conversation.id,
            INBOUND,
            body,
            external_id=external_id or f"wamid.in.{counter['n']}",
        )
        db.commit()
        return message

    return _inbound


@pytest.fixture
def outbound(db, conversation):
    def _outbound(body: str, question_key: Optional[str] = None):
        message = save_message(db, conversation.id, OUTBOUND, body, question_key=question_key)
        db.commit()
        return message

    return _outbound


@pytest.fixture
def fake_llm():
    return FakeLLMProvider()


@pytest.fixture
def fake_sender():
    return FakeChannelSender()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("CHATFLOW_TOKEN", "test-token")
    monkeypatch.setenv("CHATFLOW_INSTANCE_ID", "test-instance")
    monkeypatch.setenv("ADMIN_TOKEN", "admin-secret")


@pytest.fixture
def llm_factory():
    return FakeLLMProvider


@pytest.fixture
def sender_factory():
    return FakeChannelSender


@pytest.fixture
def banned_last_rules():
    """Bundled rules with the business setup flow ending at its banned question."""
    with RULES_PATH.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle)
    steps = data["services"]["business_setup"]["flow"]["steps"]
    data["services"]["business_setup"]["flow"]["steps"] = [step for step in steps if step["id"] != "BS_NEXT"]
    return RuleConfig.model_validate(data)
