from pathlib import Path
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
import logging
from functools import lru_cache

SUPPORTED_PROVIDERS = ("azure", "dropbox")


class Settings(BaseSettings):
    """
    Centralized application configuration with type validation.
    Automatically reads variables from the environment, a .env file and the
    Dropbox token file.
    """
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    TOKEN_STORAGE_FILE: str = ".dropbox.token"

    # --- General Settings ---
    STORAGE_PROVIDER: str = "azure"  # "azure" or "dropbox"
    CONTAINER_NAME: str = "rawinvoices"
    LOG_LEVEL: str = "INFO"

    # --- Sync Settings ---
    POLL_INTERVAL_SECONDS: float = Field(30.0, gt=0)
    GATEWAY_TIMEOUT_SECONDS: float = Field(30.0, gt=0)
    LIST_PAGE_SIZE: int = Field(500, gt=0)

    # --- Upload Validation ---
    MAX_UPLOAD_BYTES: int = Field(10 * 1024 * 1024, gt=0)  # 10 MB
    ACCEPTED_CONTENT_TYPES: List[str] = [
        "application/pdf",
        "image/jpeg",
        "image/png",
    ]

    # --- Azure Blob Storage Settings (optional) ---
    AZURE_STORAGE_CONNECTION_STRING: Optional[str] = None
    AZURE_STORAGE_ACCOUNT_NAME: Optional[str] = None
    AZURE_STORAGE_ACCOUNT_URL: Optional[str] = None
    AZURE_STORAGE_ACCOUNT_KEY: Optional[str] = None
    AZURE_STORAGE_SAS_TOKEN: Optional[str] = None

    # --- Dropbox Settings (optional) ---
    DROPBOX_APP_KEY: Optional[str] = None
    DROPBOX_APP_SECRET: Optional[str] = None
    DROPBOX_REFRESH_TOKEN_ENV: Optional[str] = Field(
        None, alias="DROPBOX_REFRESH_TOKEN"
    )
    DROPBOX_REFRESH_TOKEN_FILE: Optional[str] = None
    DROPBOX_UPLOAD_CHUNK_SIZE: int = Field(
        128 * 1024 * 1024, validation_alias="DROPBOX_UPLOAD_CHUNK_SIZE"
    )  # 128 MB default

    # --- Constants and Computed Paths ---
    BASE_DIR: Path = Path(__file__).resolve().parent

    @model_validator(mode="before")
    @classmethod
    def normalize_storage_provider(cls, values):
        provider = values.get("STORAGE_PROVIDER")
        if provider is None:
            # Let BaseSettings apply the default.
            return values

        provider = str(provider).strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Invalid STORAGE_PROVIDER '{provider}'. Must be one of: {', '.join(SUPPORTED_PROVIDERS)}."
            )
        values["STORAGE_PROVIDER"] = provider
        return values

    def model_post_init(self, __context):
        """
        After initial settings are loaded from the environment,
        try to load a Dropbox refresh token from the local token file as a fallback.
        """
        if self.STORAGE_PROVIDER != "dropbox" or self.DROPBOX_REFRESH_TOKEN_ENV:
            return
        token_file = self.BASE_DIR / self.TOKEN_STORAGE_FILE
        if token_file.is_file():
            content = token_file.read_text().strip()
            if content:
                self.DROPBOX_REFRESH_TOKEN_FILE = content
                logging.info(f"Found refresh token in file: {token_file}")

    @property
    def DROPBOX_REFRESH_TOKEN(self) -> Optional[str]:
        return self.DROPBOX_REFRESH_TOKEN_ENV or self.DROPBOX_REFRESH_TOKEN_FILE

    @property
    def AZURE_ACCOUNT_URL(self) -> Optional[str]:
        if self.AZURE_STORAGE_ACCOUNT_URL:
            return self.AZURE_STORAGE_ACCOUNT_URL.rstrip("/")
        if self.AZURE_STORAGE_ACCOUNT_NAME:
            return f"https://{self.AZURE_STORAGE_ACCOUNT_NAME}.blob.core.windows.net"
        return None

    @property
    def LOG_FILE(self) -> Path:
        return self.BASE_DIR / "app.log"

    def missing_storage_settings(self) -> List[str]:
        """
        Returns the names of the settings the selected provider needs but lacks.
        An empty list means a gateway can be constructed.
        """
        missing = []
        if not self.CONTAINER_NAME or not self.CONTAINER_NAME.strip():
            missing.append("CONTAINER_NAME")

        if self.STORAGE_PROVIDER == "azure":
            if self.AZURE_STORAGE_CONNECTION_STRING:
                return missing
            if not self.AZURE_ACCOUNT_URL:
                missing.append("AZURE_STORAGE_ACCOUNT_NAME")
            if not (self.AZURE_STORAGE_ACCOUNT_KEY or self.AZURE_STORAGE_SAS_TOKEN):
                missing.append("AZURE_STORAGE_ACCOUNT_KEY")

        elif self.STORAGE_PROVIDER == "dropbox":
            for key in ["DROPBOX_APP_KEY", "DROPBOX_APP_SECRET", "DROPBOX_REFRESH_TOKEN"]:
                value = getattr(self, key)
                if not value or not str(value).strip():
                    missing.append(key)

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Returns a cached instance of the application settings.
    The first call to this function will initialize the settings.
    """
    return Settings()
