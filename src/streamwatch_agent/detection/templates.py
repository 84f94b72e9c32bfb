"""
Message Templates
=================

Rendering of rule message templates into chat-safe notifications.

Placeholders use {name} syntax. Known variables:
    {object}          detected class label
    {confidence}      raw confidence, two decimals ("0.82")
    {confidence_pct}  rounded percentage ("82%")
    {streamer}        channel username

Unknown placeholders are left in the output untouched.
"""

import math
import re
from typing import Any, List, Mapping, Optional


DEFAULT_MESSAGE_TEMPLATE = "Detected {object} with {confidence_pct} confidence!"

MAX_MESSAGE_LENGTH = 500

_PLACEHOLDER = re.compile(r"\{(\w+)\}")
_MASS_MENTION = re.compile(r"@(everyone|here)", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def format_template(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """
    Substitute {name} placeholders.

    Missing or None values keep the original placeholder text.

    Example:
        >>> format_template("Hello {user}!", {"user": "streamer"})
        'Hello streamer!'
    """
    if not template:
        return ""

    def _replace(match: "re.Match") -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template)


def parse_template_variables(template: Optional[str]) -> List[str]:
    """Distinct placeholder names in order of first appearance."""
    if not template:
        return []
    return list(dict.fromkeys(_PLACEHOLDER.findall(template)))


def sanitize_message(message: Optional[str], max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Drop mass mentions, collapse whitespace and cap the length."""
    if not message:
        return ""

    sanitized = _MASS_MENTION.sub("", message)
    sanitized = _WHITESPACE.sub(" ", sanitized).strip()

    if len(sanitized) > max_length:
        sanitized = sanitized[: max_length - 3] + "..."

    return sanitized


def format_confidence_pct(confidence: float) -> str:
    """Percentage rounded half up: 0.825 -> "83%"."""
    return f"{int(math.floor(round(confidence * 100, 6) + 0.5))}%"


def render_detection_message(
    template: Optional[str],
    object_class: str,
    confidence: float,
    streamer: str,
) -> str:
    """
    Render a detection notification.

    Args:
        template: Rule template, or None for the default
        object_class: Detected class label
        confidence: Detection confidence in [0, 1]
        streamer: Channel username

    Returns:
        Sanitized message ready for the notifier
    """
    variables = {
        "object": object_class,
        "confidence": f"{confidence:.2f}",
        "confidence_pct": format_confidence_pct(confidence),
        "streamer": streamer,
    }
    return sanitize_message(format_template(template or DEFAULT_MESSAGE_TEMPLATE, variables))
