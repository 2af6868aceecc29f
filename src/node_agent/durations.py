"""Go-style duration strings used by NodeTask specs and status."""

import re
from datetime import timedelta

_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a Go duration like ``"30s"``, ``"1h30m"`` or ``"-1.5h"``.

    Raises:
        ValueError: If the value is not a string or not a valid duration
    """
    if not isinstance(value, str):
        raise ValueError(f"duration must be a string, got {type(value).__name__}")

    text = value.strip()
    if not text:
        raise ValueError("duration cannot be empty")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    if text == "0":
        return timedelta(0)

    seconds = 0.0
    position = 0
    while position < len(text):
        match = _COMPONENT.match(text, position)
        if not match:
            raise ValueError(f"invalid duration: {value!r}")
        seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0:
        raise ValueError(f"invalid duration: {value!r}")

    try:
        return timedelta(seconds=sign * seconds)
    except OverflowError as e:
        raise ValueError(f"duration out of range: {value!r}") from e


def format_duration(value: timedelta) -> str:
    """Render a duration compactly, omitting zero components (``"1h5s"``, ``"250ms"``)."""
    total = value.total_seconds()
    if total == 0:
        return "0s"

    sign = "-" if total < 0 else ""
    total = abs(total)

    if total < 1:
        milliseconds = round(total * 1000, 3)
        return f"{sign}{milliseconds:g}ms"

    hours, remainder = divmod(total, 3600)
    minutes, seconds = divmod(remainder, 60)
    seconds = round(seconds, 3)

    parts = []
    if hours:
        parts.append(f"{int(hours)}h")
    if minutes:
        parts.append(f"{int(minutes)}m")
    if seconds:
        parts.append(f"{seconds:g}s")

    return sign + "".join(parts)
