from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from the environment or a ``.env`` file."""

    model_config = SettingsConfigDict(env_prefix="VOICERECOVERY_", env_file=".env", extra="ignore")

    LOG_LEVEL: str = "INFO"

    TRANSCRIPTION_BASE_URL: str = "http://localhost:3001"
    TRANSCRIPTION_CONNECT_TIMEOUT: float = 5.0

    # seconds, measured from the moment a recording starts resolving
    ASR_FALLBACK_TIMEOUT: float = 15.0
    ASR_CEILING_TIMEOUT: float = 30.0
    ASR_RESULT_DEBOUNCE: float = 0.3
    ASR_PREFERRED_METHOD: str = "auto"

    TTS_ENABLED: bool = True
    TTS_MAX_RETRIES: int = Field(default=2, ge=0, le=5)
    TTS_RETRY_BASE_DELAY: float = 1.0
    TTS_CLEANUP_INTERVAL: float = 30.0
    TTS_CACHE_LIMIT_KB: int = 5000

    TOAST_MAX_VISIBLE: int = 5
    ERROR_LOG_CAPACITY: int = 100

    SETTINGS_PATH: Path = Path.home() / ".config" / "voicerecovery" / "settings.json"

    DBUS_BUS: str = "session"
    DBUS_NAME: str = "com.voicerecovery.Service"
    DBUS_PATH: str = "/com/voicerecovery/Service"

    RECORDING_DEVICE: str = "default"


settings = Settings()
