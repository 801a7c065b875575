"""Context extractor — pulls company, member and course ids out of webhook payloads.

Whop sends different payload shapes per event family (snake_case vs
camelCase, ids nested under ``membership``, ``experience``, ``course`` ...).
Each field is looked up along a list of candidate paths; the first usable
value wins. Nothing here raises: an unusable payload gives None fields.
"""

from dataclasses import dataclass

_COMPANY_PATHS = (
    ("company_id",),
    ("companyId",),
    ("company", "id"),
    ("community_id",),
    ("communityId",),
    ("experience", "company_id"),
    ("experience", "companyId"),
    ("experience", "company", "id"),
    ("course", "company_id"),
    ("course", "companyId"),
    ("course", "company", "id"),
    ("course", "experience", "company_id"),
    ("course", "experience", "companyId"),
    ("course", "experience", "company", "id"),
    ("membership", "company_id"),
    ("membership", "companyId"),
)

_MEMBER_PATHS = (
    ("user_id",),
    ("userId",),
    ("member_id",),
    ("memberId",),
    ("membership", "member_id"),
    ("membership", "memberId"),
    ("pass", "member_id"),
    ("pass", "memberId"),
    ("user", "id"),
)

_COURSE_PATHS = (
    ("course_id",),
    ("courseId",),
    ("course", "id"),
    ("lesson", "course_id"),
    ("lesson", "courseId"),
)

_CHAPTER_PATHS = (
    ("chapter_id",),
    ("chapterId",),
    ("chapter", "id"),
    ("lesson", "chapter_id"),
    ("lesson", "chapterId"),
)

_LESSON_PATHS = (
    ("lesson_id",),
    ("lessonId",),
    ("lesson", "id"),
)


@dataclass(frozen=True)
class TriggerContext:
    company_id: str | None = None
    member_id: str | None = None
    course_id: str | None = None
    chapter_id: str | None = None
    lesson_id: str | None = None

    @property
    def resolvable(self) -> bool:
        return bool(self.company_id and self.member_id)


def _dig(data, path: tuple[str, ...]):
    node = data
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _as_id(value) -> str | None:
    # bool is an int subclass; a flag is never an id
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _first(data, paths) -> str | None:
    for path in paths:
        found = _as_id(_dig(data, path))
        if found:
            return found
    return None


def extract_context(payload) -> TriggerContext:
    """Resolve ids from an arbitrary payload; missing or malformed fields are None."""
    if not isinstance(payload, dict):
        return TriggerContext()
    return TriggerContext(
        company_id=_first(payload, _COMPANY_PATHS),
        member_id=_first(payload, _MEMBER_PATHS),
        course_id=_first(payload, _COURSE_PATHS),
        chapter_id=_first(payload, _CHAPTER_PATHS),
        lesson_id=_first(payload, _LESSON_PATHS),
    )
