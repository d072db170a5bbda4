import re
from typing import List, Tuple
from urllib.parse import quote

SCRIPTURE_MARKER = re.compile(r"\[\[(.*?)\]\]")
_SCRIPTURE_SPLIT = re.compile(r"(\[\[.*?\]\])")
BIBLE_GATEWAY_URL = "https://www.biblegateway.com/passage/?search={ref}&version=NIV"


def clean_text(text: str) -> str:
    """
    Plain version of a reply for speech and clipboard output.
    Stored text always keeps its markers.
    """
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    text = re.sub(r"__(.*?)__", r"\1", text)
    text = SCRIPTURE_MARKER.sub(r"\1", text)
    text = re.sub(r"^#+\s", "", text, flags=re.MULTILINE)
    text = re.sub(r"^\s*-\s", "", text, flags=re.MULTILINE)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def scripture_url(reference: str) -> str:
    return BIBLE_GATEWAY_URL.format(ref=quote(reference))


def split_scripture(text: str) -> List[Tuple[str, bool]]:
    """
    Split `text` into (segment, is_reference) pairs; references come back
    without their brackets.
    """
    parts = []
    for part in _SCRIPTURE_SPLIT.split(text):
        if not part:
            continue
        match = SCRIPTURE_MARKER.fullmatch(part)
        if match:
            parts.append((match.group(1), True))
        else:
            parts.append((part, False))
    return parts


def to_markdown(text: str) -> str:
    """Render markers as Bible Gateway links, dropping bold markup."""
    text = re.sub(r"\*\*(.*?)\*\*", r"\1", text)
    return "".join(
        f"[{segment}]({scripture_url(segment)})" if is_ref else segment
        for segment, is_ref in split_scripture(text)
    )
