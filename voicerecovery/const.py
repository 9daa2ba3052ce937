import enum


class ErrorKind(enum.StrEnum):
    CONNECTION_ERROR = "CONNECTION_ERROR"
    LLM_ERROR = "LLM_ERROR"
    TTS_ERROR = "TTS_ERROR"
    ASR_ERROR = "ASR_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class Severity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ToastType(enum.StrEnum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


# higher sorts first in the visible toast list
TOAST_PRIORITY = {
    ToastType.ERROR: 4,
    ToastType.WARNING: 3,
    ToastType.INFO: 2,
    ToastType.SUCCESS: 1,
}

TOAST_DEFAULT_DURATION_MS = {
    ToastType.ERROR: 5000,
    ToastType.WARNING: 5000,
    ToastType.INFO: 3000,
    ToastType.SUCCESS: 3000,
}


class SynthesisPriority(enum.StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class RecognitionMethod(enum.StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class RecognitionPreference(enum.StrEnum):
    LOCAL = "local"
    REMOTE = "remote"
    AUTO = "auto"


class Subsystem(enum.StrEnum):
    ASR = "asr"
    TTS = "tts"
    LLM = "llm"
    CONNECTION = "connection"
    UI = "ui"


class SettingsKey:
    MUTED_TOASTS = "muted_toasts"
    TTS_ENABLED = "tts_enabled"
    PREFERRED_VOICE = "preferred_voice"
