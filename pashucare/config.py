"""
Application Configuration

Loads environment variables using pydantic-settings.
All settings can be overridden via a .env file or environment variables.
Every pipeline threshold lives here so that tuning never requires a code
change.
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Gemini / Vertex AI ---
    GOOGLE_CLOUD_PROJECT: str = ""
    GOOGLE_CLOUD_LOCATION: str = "us-central1"
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # --- Reference data and local persistence ---
    KNOWLEDGE_BASE_PATH: str = "data/knowledge_base.json"
    FACILITIES_PATH: str = "data/facilities.json"
    QUEUE_STORE_PATH: str = "data/offline_queue.json"

    # --- Input limits ---
    MAX_TEXT_LENGTH: int = 2000
    MAX_IMAGE_BYTES: int = 10 * 1024 * 1024

    # --- Timeouts ---
    AI_CALL_TIMEOUT_SECONDS: float = 8.0
    PIPELINE_DEADLINE_SECONDS: float = 10.0

    # --- Circuit breaker ---
    FAILURE_THRESHOLD: int = 5
    COOLDOWN_SECONDS: float = 30.0
    BACKOFF_MULTIPLIER: float = 2.0
    MAX_COOLDOWN_SECONDS: float = 300.0

    # --- Symptom analysis ---
    FUZZY_MATCH_THRESHOLD: float = 85.0
    FALLBACK_CONFIDENCE_CAP: float = 0.4

    # --- Risk assessment (severity is on a 1-5 scale) ---
    HIGH_SEVERITY_THRESHOLD: int = 4
    MODERATE_SEVERITY_THRESHOLD: int = 3
    LOW_CONFIDENCE_THRESHOLD: float = 0.5
    DEFAULT_REASSESS_HOURS: int = 24
    ANIMAL_SEVERITY_OFFSETS: dict[str, int] = {"bovine": 0, "goat": 0, "buffalo": 0}
    EMERGENCY_CONTACT: str = "1962 (Mobile Veterinary Unit helpline)"
    DISCLAIMER: str = (
        "This is an automated preliminary assessment, not a veterinary "
        "diagnosis. Always consult a qualified veterinarian before treating "
        "your animal."
    )

    # --- Facility ranking ---
    DEFAULT_MAX_DISTANCE_KM: float = 50.0
    FACILITY_TIMEZONE: str = "Asia/Kolkata"

    # --- Offline queue ---
    QUEUE_MAX_ATTEMPTS: int = 3
    QUEUE_RETENTION_HOURS: float = 72.0
    DEFER_WHEN_CIRCUIT_OPEN: bool = False

    # --- HTTP boundary ---
    RATE_LIMIT_PER_MINUTE: int = 30
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=str(_ENV_FILE), extra="ignore")


settings = Settings()
