import logging
import re
from typing import Dict, List, Pattern

log = logging.getLogger(__name__)


# Trigger library. Word gaps are optional so "killmyself" still matches.
SAFETY_PATTERNS: Dict[str, List[str]] = {
    "self_harm": [
        r"suicid",
        r"kill\s*myself",
        r"end\s*it\s*all",
        r"hurt\s*myself",
        r"want\s*to\s*die",
    ],
    "partner_violence": [
        r"he\s*hits\s*me",
        r"she\s*hits\s*me",
        r"beat\s*me",
        r"(physic|sexual|emotional)\s*abuse",
        r"violen(ce|t)",
    ],
    "threats": [
        r"scared\s*for\s*my\s*life",
        r"threaten",
    ],
    "weapons": [
        r"weapon",
        r"gun",
        r"knife",
    ],
    "sexual_assault": [
        r"rape",
        r"assault",
    ],
    "emergency": [
        r"danger",
        r"emergency",
        r"call\s*911",
    ],
}

_COMPILED: Dict[str, List[Pattern[str]]] = {
    category: [re.compile(p, re.IGNORECASE) for p in patterns]
    for category, patterns in SAFETY_PATTERNS.items()
}


def matched_categories(text) -> List[str]:
    """
    Return the trigger categories present in `text`, in library order.
    Non-string input matches nothing.
    """
    if not isinstance(text, str) or not text:
        return []

    return [
        category
        for category, patterns in _COMPILED.items()
        if any(p.search(text) for p in patterns)
    ]


def scan(text) -> bool:
    """True when `text` trips any trigger pattern. Never raises."""
    categories = matched_categories(text)
    if categories:
        log.warning("Safety interceptor tripped: %s", ", ".join(categories))
        return True
    return False
