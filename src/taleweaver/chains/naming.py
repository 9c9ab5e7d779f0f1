"""Story title derivation."""

STOPWORDS = frozenset({"the", "a", "an", "is", "was", "and", "of", "in", "on"})
MAX_NAME_WORDS = 3


def generate_story_name(summary: str) -> str:
    """Take the first three non-stopword tokens of a summary."""
    words = [word for word in (summary or "").split() if word.lower() not in STOPWORDS]
    return " ".join(words[:MAX_NAME_WORDS])
