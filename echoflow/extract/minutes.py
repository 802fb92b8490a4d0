"""Plain-text rendering of bilingual minutes; absent fields print as "Not provided"."""
from typing import Any, Dict, List, Union

from echoflow.models.schemas import MeetingMinutes, MinutesSection

NOT_PROVIDED = "Not provided"

SECTION_HEADINGS = {"english": "English Minutes", "chinese": "Chinese Minutes"}


def _bullets(items: List[str]) -> List[str]:
    if not items:
        return [f"  - {NOT_PROVIDED}"]
    return [f"  - {it}" for it in items]


def render_section(section: MinutesSection) -> str:
    lines = [
        f"Title: {section.title or NOT_PROVIDED}",
        f"Date: {section.date or NOT_PROVIDED}",
        f"Participants: {', '.join(section.participants) if section.participants else NOT_PROVIDED}",
        f"Summary: {section.summary or NOT_PROVIDED}",
        "Key discussion points:",
        *_bullets(section.key_discussion_points),
        "Decisions:",
        *_bullets(section.decisions),
        "Action items:",
    ]
    if section.action_items:
        for it in section.action_items:
            lines.append(
                f"  - {it.task or NOT_PROVIDED} (assignee: {it.assignee or NOT_PROVIDED}; deadline: {it.deadline or NOT_PROVIDED})"
            )
    else:
        lines.append(f"  - {NOT_PROVIDED}")
    lines += ["Risks:", *_bullets(section.risks), "Next steps:", *_bullets(section.next_steps)]
    return "\n".join(lines)


def render_minutes(minutes: Union[MeetingMinutes, Dict[str, Any]]) -> str:
    """Render both language sections one after the other."""
    if not isinstance(minutes, MeetingMinutes):
        minutes = MeetingMinutes.model_validate(minutes or {})
    blocks = []
    for key, heading in SECTION_HEADINGS.items():
        blocks.append(f"== {heading} ==\n{render_section(getattr(minutes, key))}")
    return "\n\n".join(blocks) + "\n"
