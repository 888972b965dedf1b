from dataclasses import dataclass
from typing import Optional, Sequence

from app.config import settings
from app.services.similarity import text_similarity


@dataclass(frozen=True)
class LoopCheck:
    is_loop: bool
    score: float = 0.0
    matched: Optional[str] = None


def check_loop(
    reply: str,
    recent_outbound: Sequence[str],
    window: Optional[int] = None,
    threshold: Optional[float] = None,
) -> LoopCheck:
    """Compare a fresh reply with the last ``window`` outbound bodies (oldest first)."""
    window = window or settings.loop_window
    threshold = settings.similarity_threshold if threshold is None else threshold
    if not reply or not reply.strip():
        return LoopCheck(is_loop=False)

    best = LoopCheck(is_loop=False)
    for previous in list(recent_outbound)[-window:]:
        score = text_similarity(reply, previous)
        if score > threshold and score > best.score:
            best = LoopCheck(is_loop=True, score=score, matched=previous)
    return best
