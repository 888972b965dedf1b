from app.services.guardrail_service import (
    CHECK_ALREADY_ASKED,
    CHECK_FORBIDDEN,
    CHECK_OVERREACH,
    CHECK_QUESTION_CAP,
    CHECK_REASONING,
    question_sentences,
    truncate_questions,
    validate,
)


class TestQuestionCap:
    def test_two_questions_truncated_to_one(self):
        verdict = validate("Are you inside the UAE? And what is your budget? Thanks.")

        assert verdict.blocked is False
        assert verdict.text == "Are you inside the UAE?"
        assert verdict.text.count("?") == 1
        assert CHECK_QUESTION_CAP in verdict.rewrites

    def test_three_questions(self):
        verdict = validate("Name? Nationality? Email?")
        assert verdict.text == "Name?"

    def test_single_question_untouched(self):
        verdict = validate("Do you want Freezone or Mainland license?")
        assert verdict.ok is True
        assert verdict.text == "Do you want Freezone or Mainland license?"

    def test_truncate_helper(self):
        assert truncate_questions("a? b? c?", 2) == "a? b?"
        assert truncate_questions("no questions here.", 1) == "no questions here."


class TestForbiddenPhrases:
    def test_hard_reject(self):
        verdict = validate("Your approval is guaranteed.")

        assert verdict.blocked is True
        assert verdict.check == CHECK_FORBIDDEN
        assert "guarantee" in verdict.reason
        assert verdict.text == ""

    def test_rewrite_keeps_going(self):
        verdict = validate("We have 100% success with these. Want to start? Or wait?")

        assert verdict.blocked is False
        assert "a strong success rate" in verdict.text
        assert verdict.text.count("?") == 1
        assert verdict.rewrites == (CHECK_FORBIDDEN, CHECK_QUESTION_CAP)

    def test_case_insensitive(self):
        assert validate("How can I help you today?").blocked is True


class TestAlreadyAsked:
    def test_repeated_question_removed(self):
        verdict = validate(
            "Thanks, noted. What is your nationality?",
            last_question_text="What is your nationality?",
        )

        assert verdict.blocked is False
        assert verdict.text == "Thanks, noted."
        assert CHECK_ALREADY_ASKED in verdict.rewrites

    def test_only_a_repeat_is_rejected(self):
        verdict = validate(
            "Do you want Freezone or Mainland license?",
            recent_outbound=["Great. Do you want Freezone or Mainland license?"],
        )

        assert verdict.blocked is True
        assert verdict.check == CHECK_ALREADY_ASKED

    def test_question_sentences(self):
        assert question_sentences("Hi there. Are you inside? Great!") == ["Are you inside?"]


class TestOverreach:
    def test_exact_final_price_softened(self):
        verdict = validate("Our team will share the exact final price tomorrow.")

        assert verdict.blocked is False
        assert "the estimated price" in verdict.text
        assert "exact final" not in verdict.text
        assert CHECK_OVERREACH in verdict.rewrites

    def test_definite_approval_softened(self):
        verdict = validate("You will definitely get approved.")
        assert "approval usually goes smoothly" in verdict.text


class TestReasoningLeak:
    def test_rejected(self):
        verdict = validate("I think the customer wants a visit visa, so I should ask about duration.")

        assert verdict.blocked is True
        assert verdict.check == CHECK_REASONING

    def test_let_me_know_is_fine(self):
        verdict = validate("Let me know the best time for a call.")
        assert verdict.blocked is False
