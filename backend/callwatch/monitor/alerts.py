"""
Alert message composition for emergency SMS notifications.
"""

from datetime import datetime
from typing import List, Optional, Sequence

ALERT_HEADER = "🚨 EMERGENCY ALERT 🚨"
SYSTEM_NAME = "AI Call Monitor"
MAX_CONTEXT_LINES = 5
SMS_MAX_LENGTH = 1600


class AlertTooLongError(ValueError):
    """Raised when an alert cannot fit the SMS body limit even without context."""


def format_timestamp(now: datetime) -> str:
    return now.strftime("%m/%d/%Y, %I:%M:%S %p")


def _render(
    transcript: str,
    keywords: Sequence[str],
    call_sid: Optional[str],
    context: List[str],
    timestamp: str,
) -> str:
    context_block = ""
    if context:
        context_block = "\n\nRecent conversation:\n" + "\n".join(context)

    return (
        f"{ALERT_HEADER}\n"
        f"\n"
        f"USER NEEDS HELP!\n"
        f"\n"
        f"Keywords detected: {', '.join(keywords)}\n"
        f"Call ID: {call_sid or 'Unknown'}\n"
        f"Current statement: \"{transcript}\"{context_block}\n"
        f"\n"
        f"Time: {timestamp}\n"
        f"System: {SYSTEM_NAME}\n"
        f"\n"
        f"Please respond immediately!"
    )


def compose_alert(
    transcript: str,
    keywords: Sequence[str],
    call_sid: Optional[str] = None,
    context_lines: Sequence[str] = (),
    now: Optional[datetime] = None,
    max_context: int = MAX_CONTEXT_LINES,
    max_length: int = SMS_MAX_LENGTH,
) -> str:
    """Build the SMS body for a keyword detection.

    Only the most recent ``max_context`` lines are included. If the message
    exceeds ``max_length``, context lines are dropped oldest first; if the
    bare message still does not fit, AlertTooLongError is raised.
    """
    timestamp = format_timestamp(now or datetime.now().astimezone())
    context = list(context_lines)[-max_context:] if max_context > 0 else []

    message = _render(transcript, keywords, call_sid, context, timestamp)
    while len(message) > max_length and context:
        context.pop(0)
        message = _render(transcript, keywords, call_sid, context, timestamp)

    if len(message) > max_length:
        raise AlertTooLongError(
            f"Alert is {len(message)} characters, limit is {max_length}"
        )
    return message


def compose_test_message(now: Optional[datetime] = None) -> str:
    """Body for an operator-triggered delivery check."""
    timestamp = format_timestamp(now or datetime.now().astimezone())
    return (
        "🧪 SMS TEST 🧪\n"
        "\n"
        "This is a test message to verify SMS delivery.\n"
        "\n"
        f"Time: {timestamp}\n"
        f"System: {SYSTEM_NAME}\n"
        "\n"
        "If you receive this, emergency alerts can reach this number."
    )
