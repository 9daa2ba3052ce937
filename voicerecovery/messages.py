from .classifier import ClassifiedError
from .const import ErrorKind

DEFAULT = "default"

# (pattern, message) pairs are checked in order against the raw error message
MESSAGES: dict[ErrorKind, tuple[tuple[str, str], ...]] = {
    ErrorKind.ASR_ERROR: (
        ("not-allowed", "Microphone access denied. Please allow microphone permissions and try again."),
        ("permission", "Microphone access denied. Please allow microphone permissions and try again."),
        ("no-speech", "No speech detected. Please speak clearly and try again."),
        ("no audio", "No speech detected. Please speak clearly and try again."),
        ("not available", "Voice recognition is not available. Please try typing instead."),
        ("timeout", "Voice recognition timed out. Please try speaking again."),
        (DEFAULT, "Voice recognition failed. Please try again or use text input."),
    ),
    ErrorKind.LLM_ERROR: (
        ("timeout", "AI response timed out. Please try again."),
        ("quota", "AI service temporarily unavailable. Please try again later."),
        ("billing", "AI service temporarily unavailable. Please try again later."),
        (DEFAULT, "Failed to get AI response. Please try again."),
    ),
    ErrorKind.TTS_ERROR: (
        ("not available", "Voice synthesis not available. Text will be displayed instead."),
        ("interrupted", "Voice synthesis was interrupted."),
        (DEFAULT, "Voice synthesis failed. Text will be displayed instead."),
    ),
    ErrorKind.CONNECTION_ERROR: (
        ("websocket", "Lost connection to the server. Attempting to reconnect..."),
        ("timeout", "Connection timed out. Please check your internet connection."),
        ("refused", "Unable to reach the server. Please try again later."),
        (DEFAULT, "Connection error. Please check your internet connection and try again."),
    ),
    ErrorKind.RATE_LIMIT_ERROR: ((DEFAULT, "Too many requests. Please wait a moment before trying again."),),
    ErrorKind.AUTHENTICATION_ERROR: ((DEFAULT, "Authentication failed. Please sign in again."),),
    ErrorKind.SYSTEM_ERROR: ((DEFAULT, "An unexpected error occurred. Please try again."),),
}

TITLES: dict[ErrorKind, str] = {
    ErrorKind.ASR_ERROR: "Voice Recognition Error",
    ErrorKind.LLM_ERROR: "AI Response Error",
    ErrorKind.TTS_ERROR: "Voice Synthesis Error",
    ErrorKind.CONNECTION_ERROR: "Connection Error",
    ErrorKind.RATE_LIMIT_ERROR: "Rate Limit Exceeded",
    ErrorKind.AUTHENTICATION_ERROR: "Authentication Error",
    ErrorKind.SYSTEM_ERROR: "System Error",
}


def localized_message(error: ClassifiedError) -> str:
    """User-facing text for ``error``; never the raw exception text."""
    lowered = error.message.lower()
    default = "An unexpected error occurred. Please try again."
    for pattern, message in MESSAGES.get(error.kind, ()):
        if pattern == DEFAULT:
            default = message
        elif pattern in lowered:
            return message
    return default


def error_title(kind: ErrorKind) -> str:
    return TITLES.get(kind, "Error")
