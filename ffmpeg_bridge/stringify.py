"""
Stringify option values and filters to FFmpeg's textual syntax.

See https://ffmpeg.org/ffmpeg-utils.html#Quoting-and-escaping and
https://ffmpeg.org/ffmpeg-filters.html#Filtergraph-syntax-1
"""

import re
from typing import Any, Mapping, Optional, Sequence, Union

_FILTER_VALUE_CHARS = re.compile(r"[\\':]")
_FILTER_DESCRIPTION_CHARS = re.compile(r"[\\'\[\],;]")
_CONCAT_FILE_CHARS = re.compile(r"[\\' ]")
_TEE_COMPONENT_CHARS = re.compile(r"[\\' |\[\]]")

_TIMESTAMP = re.compile(r"^(-)?(\d+):(\d{2}):(\d{2})(?:\.(\d+))?$")


def _escape(pattern: re.Pattern, value: Any) -> str:
    return pattern.sub(lambda m: "\\" + m.group(0), stringify_value(value))


def stringify_value(value: Any) -> str:
    """Render a single option value, booleans as `true`/`false`."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def escape_filter_value(value: Any) -> str:
    return _escape(_FILTER_VALUE_CHARS, value)


def escape_filter_description(value: Any) -> str:
    return _escape(_FILTER_DESCRIPTION_CHARS, value)


def escape_concat_file(value: Any) -> str:
    return _escape(_CONCAT_FILE_CHARS, value)


def escape_tee_component(value: Any) -> str:
    return _escape(_TEE_COMPONENT_CHARS, value)


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def stringify_object_colon_separated(options: Mapping[str, Any]) -> str:
    """
    Join a mapping as `key=value:key=value`.

    None and empty-string values are skipped; values are filter-escaped.
    """
    return ":".join(
        f"{key}={escape_filter_value(value)}"
        for key, value in options.items()
        if not _is_empty(value)
    )


def stringify_filter_description(
    name: str,
    options: Optional[Union[Mapping[str, Any], Sequence[Any]]] = None,
) -> str:
    """
    Stringify a filter with its options to filtergraph syntax.

    Args:
        name: The filter's name, e.g. `scale`
        options: Positional options as a sequence or named options as a mapping

    Returns:
        `name`, `name=v1:v2` or `name=k1=v1:k2=v2`
    """
    if options is None:
        return name
    if isinstance(options, Mapping):
        joined = stringify_object_colon_separated(options)
    else:
        joined = ":".join(escape_filter_value(value) for value in options if not _is_empty(value))
    if not joined:
        return name
    return f"{name}={joined}"


def stringify_milliseconds(value: Union[int, float]) -> str:
    """Render a duration for FFmpeg's time syntax, e.g. `2000ms`."""
    return f"{int(value)}ms"


def parse_timestamp(timestamp: str) -> int:
    """
    Parse an `HH:MM:SS.cc` timestamp into milliseconds.

    Raises:
        ValueError: If the timestamp is malformed
    """
    match = _TIMESTAMP.match(timestamp.strip())
    if match is None:
        raise ValueError(f"Invalid timestamp: {timestamp!r}")
    sign, hours, minutes, seconds, fraction = match.groups()
    ms = (int(hours) * 3600 + int(minutes) * 60 + int(seconds)) * 1000
    if fraction:
        ms += round(int(fraction) * 1000 / 10 ** len(fraction))
    return -ms if sign else ms
