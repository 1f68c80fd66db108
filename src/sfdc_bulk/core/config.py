# src/sfdc_bulk/core/config.py
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file
load_dotenv()

COLLECTIONS_BATCH_SIZE_LIMIT = 200  # sObject Collections accept at most 200 records per call
BULK_BATCH_SIZE_LIMIT = 10000  # Upper bound enforced on a single bulk batch upload
ASSIGNMENT_RULE_OBJECTS = frozenset({"Lead", "Case"})


class Settings(BaseSettings):
    """
    Read-only configuration for a Salesforce bulk client.
    Every option is validated once, when the instance is built; the instance is frozen
    so it can be shared across concurrently running pipelines.
    """
    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    APP_NAME: str = "SalesforceBulkClient"
    APP_VERSION: str = "1.0.0"

    # Salesforce Configuration
    SALESFORCE_API_VERSION: str = "v63.0"
    SALESFORCE_INSTANCE_URL: Optional[str] = None
    SALESFORCE_ACCESS_TOKEN: Optional[str] = None
    SALESFORCE_CLIENT_ID: Optional[str] = None
    SALESFORCE_CLIENT_SECRET: Optional[str] = None
    SALESFORCE_USERNAME: Optional[str] = None
    SALESFORCE_PASSWORD: Optional[str] = None  # Append the security token if the org requires one
    SALESFORCE_TOKEN_URL: str = "https://login.salesforce.com/services/oauth2/token"

    # Transport and batching
    COMPRESSION_HEADERS: bool = False  # gzip request bodies and ask for gzip responses
    HTTP_TIMEOUT: float = 120.0
    BATCH_SIZE_MAX: int = COLLECTIONS_BATCH_SIZE_LIMIT
    BULK_BATCH_SIZE_MAX: int = BULK_BATCH_SIZE_LIMIT

    # Bulk job polling (seconds)
    INGEST_POLL_INTERVAL: float = 1.0
    QUERY_POLL_INTERVAL: float = 0.5

    # Logging Configuration
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FILENAME: Optional[str] = os.getenv("LOG_FILENAME")  # None for console only
    LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB
    LOG_BACKUP_COUNT: int = 5

    @field_validator("SALESFORCE_API_VERSION")
    @classmethod
    def api_version_must_be_set(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("API version cannot be empty")
        v = v.strip()
        return v if v.startswith("v") else f"v{v}"

    @field_validator("BATCH_SIZE_MAX")
    @classmethod
    def batch_size_max_in_range(cls, v: int) -> int:
        if v < 1 or v > COLLECTIONS_BATCH_SIZE_LIMIT:
            raise ValueError(f"batch size max must be between 1 and {COLLECTIONS_BATCH_SIZE_LIMIT}")
        return v

    @field_validator("BULK_BATCH_SIZE_MAX")
    @classmethod
    def bulk_batch_size_max_in_range(cls, v: int) -> int:
        if v < 1 or v > BULK_BATCH_SIZE_LIMIT:
            raise ValueError(f"bulk batch size max must be between 1 and {BULK_BATCH_SIZE_LIMIT}")
        return v

    @field_validator("HTTP_TIMEOUT", "INGEST_POLL_INTERVAL", "QUERY_POLL_INTERVAL")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def log_level_upper(cls, v: str) -> str:
        return v.upper()

    @field_validator("LOG_FILENAME")
    @classmethod
    def empty_log_filename_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


settings = Settings()
