"""
Application Configuration
Manages environment variables and application settings
"""

from typing import List
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str

    # Security (bearer tokens issued by the identity provider)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # Application
    APP_NAME: str = "DriveVault API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    FRONTEND_URL: str = "http://localhost:3000"

    # CORS
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # Encryption
    PBKDF2_ITERATIONS: int = 100_000
    REENCRYPTION_CONCURRENCY: int = 4
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024  # whole-file buffers

    # Google Drive
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GOOGLE_REDIRECT_URI: str = "http://localhost:8000/api/auth/google/callback"
    GOOGLE_AUTH_URL: str = "https://accounts.google.com/o/oauth2/v2/auth"
    GOOGLE_TOKEN_URL: str = "https://oauth2.googleapis.com/token"
    DRIVE_API_URL: str = "https://www.googleapis.com/drive/v3"
    DRIVE_UPLOAD_URL: str = "https://www.googleapis.com/upload/drive/v3/files"
    REMOTE_TIMEOUT_SECONDS: float = 60.0

    @field_validator("ALLOWED_ORIGINS")
    @classmethod
    def parse_origins(cls, v: str) -> List[str]:
        """Parse comma-separated origins into list"""
        return [origin.strip() for origin in v.split(",")]

    @field_validator("PBKDF2_ITERATIONS")
    @classmethod
    def check_iterations(cls, v: int) -> int:
        """Refuse key stretching weaker than 100k PBKDF2 rounds"""
        if v < 100_000:
            raise ValueError("PBKDF2_ITERATIONS must be at least 100000")
        return v

    @field_validator("REENCRYPTION_CONCURRENCY")
    @classmethod
    def check_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("REENCRYPTION_CONCURRENCY must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
