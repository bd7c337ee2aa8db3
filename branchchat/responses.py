"""Canned replies standing in for a language model."""

from __future__ import annotations

import random
from typing import Optional, Tuple

CANNED_RESPONSES: Tuple[str, ...] = (
    "That's interesting! Tell me more.",
    "I see what you're saying. What do you think about...?",
    "Could you clarify that a bit?",
    "That's a great point! Let's dive deeper.",
    "I'm not sure I understand. Can you elaborate?",
    "Interesting perspective! What about...?",
    "Could you provide an example?",
)


def generate_response(rng: Optional[random.Random] = None) -> str:
    """Return one of ``CANNED_RESPONSES`` picked uniformly at random."""

    chooser = rng or random
    return chooser.choice(CANNED_RESPONSES)


__all__ = ["CANNED_RESPONSES", "generate_response"]
