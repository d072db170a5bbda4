from typing import Optional

from counsel.models import UserProfile


MAX_ANNOTATION_CHARS = 600
MAX_NAME_CHARS = 60
# Whatever is left after the fixed parts goes to the summary.
_CASE_HISTORY_TEMPLATE = "\n[Case History: Latest Assessment Score: {score}%, Summary: {summary}]"


def _clip(value: Optional[str], limit: int) -> str:
    value = (value or "").strip()
    if len(value) <= limit:
        return value
    return value[: max(limit - 3, 0)] + "..."


def build_annotation(profile: Optional[UserProfile]) -> str:
    """
    Context block appended after the user's text. Reads only the latest
    triage record, so its size does not grow with history.
    """
    if profile is None:
        return ""

    annotation = (
        f"\n[Context: User Name: {_clip(profile.name, MAX_NAME_CHARS)}, "
        f"Spouse: {_clip(profile.spouse_name, MAX_NAME_CHARS)}]"
    )

    if profile.triage_history:
        latest = profile.triage_history[-1]
        fixed = len(_CASE_HISTORY_TEMPLATE.format(score=latest.score, summary=""))
        room = MAX_ANNOTATION_CHARS - len(annotation) - fixed
        annotation += _CASE_HISTORY_TEMPLATE.format(
            score=latest.score,
            summary=_clip(latest.summary, room),
        )

    return annotation


def compose(base_prompt: str, profile: Optional[UserProfile] = None) -> str:
    """Append the profile annotation to `base_prompt`, leaving the prompt itself untouched."""
    return base_prompt + build_annotation(profile)
