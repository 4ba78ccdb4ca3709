"""Parsing of series selectors, timestamps and durations from the command line."""
from datetime import datetime, timezone
from typing import List
import math
import re

from obslytics.errors import QueryTranslationError
from obslytics.series import Matcher, MatchType

_METRIC_NAME_RE = re.compile(r'[a-zA-Z_:][a-zA-Z0-9_:]*')
_LABEL_MATCHER_RE = re.compile(
    r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)\s*'
    r'("(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\')\s*'
)
_OPS = {
    "=": MatchType.EQ,
    "!=": MatchType.NEQ,
    "=~": MatchType.RE,
    "!~": MatchType.NRE,
}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}

_DURATION_RE = re.compile(
    r'^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$'
)
_DURATION_UNITS_MS = [
    365 * 24 * 3600 * 1000,
    7 * 24 * 3600 * 1000,
    24 * 3600 * 1000,
    3600 * 1000,
    60 * 1000,
    1000,
    1,
]


def _unquote(quoted: str) -> str:
    inner = quoted[1:-1]
    return re.sub(r'\\(.)', lambda m: _ESCAPES.get(m.group(1), m.group(1)), inner)


def matches_empty(matcher: Matcher) -> bool:
    """Whether a series lacking the label would satisfy the matcher."""
    if matcher.type == MatchType.EQ:
        return matcher.value == ""
    if matcher.type == MatchType.NEQ:
        return matcher.value != ""
    matched = re.fullmatch(matcher.value, "") is not None
    return matched if matcher.type == MatchType.RE else not matched


def parse_selector(text: str) -> List[Matcher]:
    """
    Parse a series selector such as `up{job="api", instance=~"10\\..*"}`.

    A leading metric name becomes an `__name__` equality matcher.

    Raises:
        QueryTranslationError: If the selector is malformed or would match
            every series
    """
    s = text.strip()
    if not s:
        raise QueryTranslationError("Empty series selector")

    matchers: List[Matcher] = []
    pos = 0
    name_match = _METRIC_NAME_RE.match(s)
    if name_match:
        matchers.append(Matcher("__name__", MatchType.EQ, name_match.group(0)))
        pos = name_match.end()

    rest = s[pos:].strip()
    if rest:
        if not (rest.startswith("{") and rest.endswith("}")):
            raise QueryTranslationError(f"Malformed selector '{text}': expected {{...}}")
        body = rest[1:-1]
        i = 0
        while i < len(body) and body[i:].strip():
            m = _LABEL_MATCHER_RE.match(body, i)
            if not m:
                raise QueryTranslationError(
                    f"Malformed selector '{text}': unexpected input at '{body[i:]}'"
                )
            name, op, quoted = m.groups()
            matchers.append(Matcher(name, _OPS[op], _unquote(quoted)))
            i = m.end()
            if i < len(body):
                if body[i] != ",":
                    raise QueryTranslationError(
                        f"Malformed selector '{text}': expected ',' at '{body[i:]}'"
                    )
                i += 1

    if not matchers:
        raise QueryTranslationError(f"Selector '{text}' has no matchers")

    for matcher in matchers:
        if matcher.type in (MatchType.RE, MatchType.NRE):
            try:
                re.compile(matcher.value)
            except re.error as e:
                raise QueryTranslationError(
                    f"Invalid regular expression in matcher {matcher}: {e}"
                ) from e

    if all(matches_empty(m) for m in matchers):
        raise QueryTranslationError(
            f"Selector '{text}' must contain at least one matcher that does not match the empty string"
        )
    return matchers


def parse_time(text: str) -> int:
    """Parse an RFC3339 timestamp or Unix seconds into milliseconds."""
    s = text.strip()
    try:
        seconds = float(s)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"Timestamp must be finite, got '{text}'")
        return int(round(seconds * 1000))

    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Cannot parse '{text}' as RFC3339 or Unix timestamp") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_duration(text: str) -> int:
    """Parse a Prometheus-style duration (e.g. `1h30m`, `500ms`) into milliseconds."""
    m = _DURATION_RE.match(text.strip())
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid duration '{text}'")

    total = 0
    for value, unit_ms in zip(m.groups(), _DURATION_UNITS_MS):
        if value:
            total += int(value) * unit_ms
    if total <= 0:
        raise ValueError(f"Duration must be positive, got '{text}'")
    return total
