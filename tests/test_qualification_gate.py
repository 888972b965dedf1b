import uuid

from app.schemas.known_fields import KnownFields
from app.services import state_service
from app.services.qualification_gate import first_missing_core, pick_question, run_gate
from app.services.rule_config import get_rule_config
from app.services.state_machine import Stage
from app.services.state_service import ConversationSnapshot, StatePatch


class TestFirstMissingCore:
    def test_service_first(self):
        assert first_missing_core(KnownFields()) == "service"

    def test_then_name_then_nationality(self):
        assert first_missing_core(KnownFields(service="visit_visa")) == "name"
        assert first_missing_core(KnownFields(service="visit_visa", name="Sara")) == "nationality"

    def test_complete(self):
        assert first_missing_core(KnownFields(service="visit_visa", name="Sara", nationality="Indian")) is None


class TestPickQuestion:
    def test_picks_core_question(self):
        snapshot = ConversationSnapshot(conversation_id=uuid.uuid4())

        field_name, question = pick_question(KnownFields(service="golden_visa"), snapshot, get_rule_config())

        assert field_name == "name"
        assert question.key == "ASK_NAME"

    def test_recently_asked_returns_none(self):
        snapshot = ConversationSnapshot(conversation_id=uuid.uuid4(), recent_question_keys=("ASK_SERVICE",))
        assert pick_question(KnownFields(), snapshot, get_rule_config()) is None


class TestRunGate:
    def test_asks_and_records_atomically(self, db, conversation):
        gate = run_gate(db, conversation.id, {"name": "Sara"})

        assert gate is not None
        assert gate.question_key == "ASK_SERVICE"
        snapshot = state_service.load(db, conversation.id)
        assert snapshot.stage == Stage.COLLECTING_CORE
        assert snapshot.last_question_key == "ASK_SERVICE"
        assert snapshot.questions_asked_count == 1
        assert snapshot.known_fields.name == "Sara"

    def test_no_question_when_core_complete(self, db, conversation):
        gate = run_gate(db, conversation.id, {"service": "visit_visa", "name": "Sara", "nationality": "Indian"})

        assert gate is None
        assert state_service.load(db, conversation.id).questions_asked_count == 0

    def test_same_question_not_asked_twice(self, db, conversation):
        run_gate(db, conversation.id, {})

        assert run_gate(db, conversation.id, {}) is None
        assert state_service.load(db, conversation.id).questions_asked_count == 1

    def test_service_change_replaces_locked_service(self, db, conversation):
        state_service.update(db, conversation.id, StatePatch(known_fields=KnownFields(service="visit_visa"), service_key="visit_visa"))

        gate = run_gate(db, conversation.id, {}, service_change="golden_visa")

        assert gate.question_key == "ASK_NAME"
        snapshot = state_service.load(db, conversation.id)
        assert snapshot.service_key == "golden_visa"
        assert snapshot.known_fields.service == "golden_visa"
