from enum import Enum


class Stage(str, Enum):
    GREETING = "greeting"
    COLLECTING_CORE = "collecting_core"
    COLLECTING_DETAILS = "collecting_details"
    READY_FOR_QUOTE = "ready_for_quote"
    HANDED_OFF = "handed_off"


VALID_TRANSITIONS = {
    Stage.GREETING: [Stage.COLLECTING_CORE, Stage.COLLECTING_DETAILS, Stage.READY_FOR_QUOTE, Stage.HANDED_OFF],
    Stage.COLLECTING_CORE: [Stage.COLLECTING_DETAILS, Stage.READY_FOR_QUOTE, Stage.HANDED_OFF],
    Stage.COLLECTING_DETAILS: [Stage.READY_FOR_QUOTE, Stage.HANDED_OFF],
    Stage.READY_FOR_QUOTE: [Stage.COLLECTING_DETAILS, Stage.HANDED_OFF],
    Stage.HANDED_OFF: [],
}


def can_transition(from_stage: Stage, to_stage: Stage) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in allowed


def advance(current: Stage, target: Stage) -> Stage:
    """Move towards target if allowed, otherwise stay where we are."""
    if current == target:
        return current
    return target if can_transition(current, target) else current
