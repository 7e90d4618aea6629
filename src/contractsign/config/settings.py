from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CONTRACTSIGN_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///contractsign_dev.db")
    TEST_DATABASE_URL: str = Field(default="sqlite:///:memory:")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Auth (signer identity is resolved from HS256 bearer tokens)
    AUTH_MODE: str = Field(
        default="optional", description="disabled|optional|required"
    )
    JWT_SECRET_KEY: str = Field(
        default="contractsign-dev-secret-change-me",
        description="HS256 secret for dev; override in production",
    )
    JWT_ACCESS_TOKEN_TTL_SECONDS: int = Field(
        default=3600, description="Access token TTL seconds"
    )
    AUTH_LEEWAY_SECONDS: int = Field(
        default=0, description="JWT exp leeway seconds"
    )

    # Certificate issuance
    KEYSTORE_PASSWORD: str = Field(
        default="password",
        description="PKCS#12 keystore password; override in production",
    )
    CA_ISSUER_COMMON_NAME: str = Field(default="Test CA")
    CA_ISSUER_ORGANIZATION: str = Field(default="Test Certification Authority")
    DEFAULT_ORGANIZATION: str = Field(default="CEM Contract System")
    CERT_KEY_ALGORITHM: str = Field(default="RSA", description="RSA|EC|Ed25519")
    CERT_KEY_SIZE: int = Field(
        default=2048, description="RSA modulus bits, or EC curve size (256|384|521)"
    )
    CERT_VALIDITY_DAYS: int = Field(default=365)
    CERT_EXPIRY_WARNING_DAYS: int = Field(
        default=30, description="Verification warns when a certificate expires sooner"
    )
    AUTO_ISSUE_CERTIFICATE: bool = Field(
        default=True,
        description="Issue a signer certificate when signing without one",
    )

    # Signatures
    DEFAULT_SIGNATURE_ALGORITHM: str = Field(default="SHA256withRSA")
    DEFAULT_HASH_ALGORITHM: str = Field(default="SHA-256")
    MAX_SIGNATURE_BYTES: int = Field(default=16 * 1024)
    MAX_IMAGE_BYTES: int = Field(default=2 * 1024 * 1024)
    MAX_TIMESTAMP_TOKEN_BYTES: int = Field(default=64 * 1024)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
