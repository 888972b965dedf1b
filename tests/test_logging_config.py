import json
import logging

from app.logging_config import JSONFormatter, bind_conversation, get_logger


def _record(context=None):
    record = logging.LogRecord("leadpilot.test", logging.INFO, __file__, 1, "Reply delivered", None, None)
    if context is not None:
        record.context = context
    return record


class TestJSONFormatter:
    def test_plain_record(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["message"] == "Reply delivered"
        assert data["level"] == "INFO"
        assert "context" not in data

    def test_conversation_keys_lifted(self):
        data = json.loads(JSONFormatter().format(_record({"conversation_id": "c1", "idempotency_key": "k", "fence": 2})))

        assert data["conversation_id"] == "c1"
        assert data["idempotency_key"] == "k"
        assert data["context"] == {"fence": 2}


class TestBindConversation:
    def test_merges_bound_and_call_context(self):
        adapter = bind_conversation(get_logger("test"), "c1", trigger_message_id="wamid.A")

        msg, kwargs = adapter.process("Sent", {"context": {"fence": 3}})

        assert kwargs["extra"]["context"] == {"conversation_id": "c1", "trigger_message_id": "wamid.A", "fence": 3}
