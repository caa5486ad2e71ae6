"""Course resolution and command argument parsing.

WHY: Users type courses the way they say them ("cosc304", "COSC 304",
"Databases") or by id. Handlers need one place that turns that text into a
course id without guessing when the input is ambiguous.

HOW: resolve_course() walks match tiers from strictest to loosest and
stops at the first tier with exactly one match:

    1. numeric input: id match only
    2. exact name, ignoring case and whitespace
    3. department + number code ("COSC304" == "cosc 304")
    4. name contains the input, ignoring case and whitespace

RULES:
- A tier with two or more matches resolves to None (ambiguous), it does
  not fall through to looser tiers
- The result never depends on the order of the course list
- Unmatched input gives None; resolution never raises
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from helpme_slack.api.models import SETTINGS_KEYS
from helpme_slack.core.errors import InvalidInput
from helpme_slack.store import Course

_CODE_RE = re.compile(r"([A-Z]+)\s*(\d+)", re.IGNORECASE)
_COURSE_FLAG_RE = re.compile(r"""(?:^|\s)--course=(?:"([^"]*)"|'([^']*)'|(\S+))""")


def _normalise(text: str) -> str:
    return "".join(text.split()).lower()


def _course_code(text: str) -> tuple[str, str] | None:
    match = _CODE_RE.search(text)
    if not match:
        return None
    return match.group(1).lower(), match.group(2)


def _unique(matches: Iterable[Course]) -> tuple[bool, Course | None]:
    """Return (decided, course). decided is False when the tier had no match."""
    found = {c.id: c for c in matches}
    if not found:
        return False, None
    if len(found) == 1:
        return True, next(iter(found.values()))
    return True, None


def resolve_course(courses: Sequence[Course], text: str) -> Course | None:
    """Resolve user input to exactly one course, or None."""
    query = (text or "").strip()
    if not query or not courses:
        return None

    if query.isdigit():
        course_id = int(query)
        return next((c for c in courses if c.id == course_id), None)

    wanted = _normalise(query)
    decided, course = _unique(c for c in courses if _normalise(c.name) == wanted)
    if decided:
        return course

    code = _course_code(query)
    if code is not None:
        decided, course = _unique(c for c in courses if _course_code(c.name) == code)
        if decided:
            return course

    decided, course = _unique(c for c in courses if wanted in _normalise(c.name))
    return course


def parse_ask_text(text: str) -> tuple[str, str | None]:
    """Split `/ask` text into (question, course argument or None).

    The course flag is `--course=<id|name>`. A quoted value
    (`--course="COSC 304"`) may appear anywhere. An unquoted value after
    the question runs to the end of the text; at the very start it is a
    single word.
    """
    text = (text or "").strip()
    course_arg = None
    match = _COURSE_FLAG_RE.search(text)
    if match:
        if match.group(3) is None:
            course_arg = match.group(1) if match.group(1) is not None else match.group(2)
            end = match.end()
        elif match.start() > 0:
            course_arg = text[match.start(3):]
            end = len(text)
        else:
            course_arg = match.group(3)
            end = match.end()
        course_arg = " ".join(course_arg.split()) or None
        text = (text[: match.start()] + " " + text[end:]).strip()
    return " ".join(text.split()), course_arg


@dataclass
class SettingsCommand:
    """Parsed `/chatbot-settings [course] [set key=value ... | reset]`."""

    course: str | None = None
    action: str = "show"  # show | set | reset
    changes: dict[str, str] = field(default_factory=dict)


def parse_settings_args(text: str) -> SettingsCommand:
    """Parse /chatbot-settings arguments.

    Examples:
        ""                               -> show settings for the default course
        "COSC 304"                       -> show settings for COSC 304
        "304 set temperature=0.2"        -> update one value
        "reset"                          -> reset the default course

    Raises InvalidInput for `set` without key=value pairs.
    """
    try:
        parts = shlex.split(text or "")
    except ValueError:
        raise InvalidInput("Could not parse the settings command. Check your quotes.")

    command = SettingsCommand()
    lowered = [p.lower() for p in parts]
    for verb in ("set", "reset"):
        if verb in lowered:
            idx = lowered.index(verb)
            command.action = verb
            course_words = parts[:idx]
            rest = parts[idx + 1:]
            break
    else:
        course_words, rest = parts, []

    command.course = " ".join(course_words) or None

    if command.action == "set":
        for pair in rest:
            key, sep, value = pair.partition("=")
            if not sep or not key:
                raise InvalidInput(
                    f"Expected key=value after `set`, got `{pair}`. "
                    "Example: `/chatbot-settings set temperature=0.3`"
                )
            command.changes[key.strip()] = value.strip()
        if not command.changes:
            raise InvalidInput(
                "Nothing to change. Example: `/chatbot-settings set temperature=0.3`"
            )
    return command


def settings_patch(changes: dict[str, str]) -> dict[str, object]:
    """Map `key=value` pairs to the backend's setting names and types.

    Raises InvalidInput for unknown keys or non-numeric numbers.
    """
    patch: dict[str, object] = {}
    for key, value in changes.items():
        backend_key = SETTINGS_KEYS.get(key.lower())
        if backend_key is None:
            raise InvalidInput(
                f"Unknown setting `{key}`. Allowed: model, prompt, similarity, temperature, topK"
            )
        try:
            if backend_key == "topK":
                patch[backend_key] = int(value)
            elif backend_key in ("temperature", "similarityThresholdDocuments"):
                patch[backend_key] = float(value)
            else:
                patch[backend_key] = value
        except ValueError:
            raise InvalidInput(f"`{key}` must be a number, got `{value}`")
    return patch
