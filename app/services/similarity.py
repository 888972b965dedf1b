import re

_WORD_SPLIT = re.compile(r"\s+")


def _tokens(text: str) -> set[str]:
    return {word for word in _WORD_SPLIT.split(text) if len(word) > 2}


def text_similarity(left: str, right: str) -> float:
    """Token-set Jaccard (weight 0.7) blended with length similarity (weight 0.3)."""
    left = (left or "").lower().strip()
    right = (right or "").lower().strip()
    if left == right:
        return 1.0 if left else 0.0

    left_tokens = _tokens(left)
    right_tokens = _tokens(right)
    if not left_tokens or not right_tokens:
        return 0.0

    intersection = len(left_tokens & right_tokens)
    union = len(left_tokens | right_tokens)
    jaccard = intersection / union if union else 0.0

    max_length = max(len(left), len(right))
    length_similarity = 1 - abs(len(left) - len(right)) / max_length if max_length else 0.0

    return jaccard * 0.7 + length_similarity * 0.3
