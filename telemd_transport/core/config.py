"""
Configuration management for the telemd transport layer.

Provides centralized, validated configuration from environment variables
with proper type checking and defaults.
"""

from __future__ import annotations

from typing import Annotated, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Operations the backend expects as an encrypted form-encoded body instead of JSON
DEFAULT_FORM_OPERATIONS = [
    "ApiTiaTeleMD/getAllFilesList",
    "ApiTiaTeleMD/fetchfileTypes",
    "ApiTiaTeleMD/deleteuploadFiles",
    "ApiTiaTeleMD/fetchGroupsList",
    "ApiTiaTeleMD/searchPatientbynames",
    "ApiTiaTeleMD/getAllDoctorsLists",
    "ApiTiaTeleMD/shareDocumentToUsers",
    "ApiTiaTeleMD/uploadFilesDoc",
    "ApiTiaTeleMD/getAllNewsLetters",
    "ApiTiaTeleMD/fetchConcernTypes",
    "ApiTiaTeleMD/saveConcernTypes",
    "ApiTiaTeleMD/fetchSupportdetails",
    "ApiTiaTeleMD/saveDoctorOrganization",
    "ApiTiaTeleMD/fetchOrganizationList",
]


def _parse_list(v):
    if isinstance(v, str):
        return [item.strip() for item in v.split(",") if item.strip()]
    return v or []


def _parse_bool(v):
    if isinstance(v, str):
        return v.lower() in ("1", "true", "yes")
    return bool(v)


class ApiConfig(BaseSettings):
    """Encrypted request client configuration."""

    base_url: Optional[str] = Field(default=None, alias="TELEMD_BASE_URL")
    # Node server used for login/logout when set
    node_url: Optional[str] = Field(default=None, alias="TELEMD_NODE_URL")
    request_timeout: float = Field(default=60.0, alias="TELEMD_REQUEST_TIMEOUT")
    form_operations: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_FORM_OPERATIONS), alias="TELEMD_FORM_OPERATIONS"
    )

    # Request signing
    app_name: str = Field(default="TiaConcierge", alias="TELEMD_APP_NAME")
    auth_scheme: str = Field(default="PROCESSPROXY", alias="TELEMD_AUTH_SCHEME")
    hmac_secret: Optional[str] = Field(default=None, alias="TELEMD_HMAC_SECRET")
    device_id: str = Field(default="telemd-python", alias="TELEMD_DEVICE_ID")

    @field_validator("form_operations", mode="before")
    @classmethod
    def parse_form_operations(cls, v):
        return _parse_list(v)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class CryptoConfig(BaseSettings):
    """Shared symmetric key for request and response envelopes."""

    encryption_key: Optional[str] = Field(default=None, alias="TELEMD_ENCRYPTION_KEY")

    @field_validator("encryption_key")
    @classmethod
    def check_key_length(cls, v):
        if v is not None and len(v.encode("utf-8")) not in (16, 24, 32):
            raise ValueError("TELEMD_ENCRYPTION_KEY must be 16, 24 or 32 bytes")
        return v

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class SignalingConfig(BaseSettings):
    """Realtime signaling socket configuration."""

    socket_url: Optional[str] = Field(default=None, alias="TELEMD_SOCKET_URL")
    group_call_url: Optional[str] = Field(default=None, alias="TELEMD_GROUP_CALL_URL")
    transports: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["websocket", "polling"], alias="TELEMD_SOCKET_TRANSPORTS"
    )
    connect_timeout: float = Field(default=5.0, alias="TELEMD_CONNECT_TIMEOUT")
    request_timeout: float = Field(default=15.0, alias="TELEMD_SIGNALING_TIMEOUT")
    reconnection_attempts: int = Field(default=5, alias="TELEMD_RECONNECTION_ATTEMPTS")
    reconnection_delay: float = Field(default=1.0, alias="TELEMD_RECONNECTION_DELAY")

    # setUser handshake arguments
    user_type: str = Field(default="Doctor", alias="TELEMD_USER_TYPE")
    is_admin: bool = Field(default=False, alias="TELEMD_IS_ADMIN")

    @field_validator("transports", mode="before")
    @classmethod
    def parse_transports(cls, v):
        return _parse_list(v)

    @field_validator("is_admin", mode="before")
    @classmethod
    def parse_is_admin(cls, v):
        return _parse_bool(v)

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class AppCheckConfig(BaseSettings):
    """App code bootstrap endpoint configuration."""

    endpoint: str = Field(default="https://mobappversion.tiamd.com/api", alias="TELEMD_APPCHECK_URL")
    platform: str = Field(default="ANDROID", alias="TELEMD_PLATFORM")
    app_version: str = Field(default="1.0.0", alias="TELEMD_APP_VERSION")
    timeout: float = Field(default=30.0, alias="TELEMD_APPCHECK_TIMEOUT")

    model_config = SettingsConfigDict(env_prefix="", extra="ignore", populate_by_name=True)


class Settings(BaseSettings):
    """Main settings."""

    environment: str = Field(default="production", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Component configurations
    api: ApiConfig = Field(default_factory=ApiConfig)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    signaling: SignalingConfig = Field(default_factory=SignalingConfig)
    app_check: AppCheckConfig = Field(default_factory=AppCheckConfig)

    @field_validator("debug", mode="before")
    @classmethod
    def parse_debug(cls, v):
        return _parse_bool(v)

    def model_post_init(self, __context) -> None:
        # Initialize sub-configurations
        self.api = ApiConfig()
        self.crypto = CryptoConfig()
        self.signaling = SignalingConfig()
        self.app_check = AppCheckConfig()

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def reset_settings() -> None:
    """Drop the cached settings so the next lookup re-reads the environment."""
    global settings
    settings = None


def validate_required_settings(for_component: str = "api") -> List[str]:
    """
    Validate that required settings are present for a component.

    Args:
        for_component: "api", "signaling" or "minimal"

    Returns:
        List of missing required settings
    """
    missing = []
    try:
        config = get_settings()

        if for_component in ("api", "signaling"):
            if not config.crypto.encryption_key:
                missing.append("TELEMD_ENCRYPTION_KEY")

        if for_component == "api":
            if not config.api.base_url:
                missing.append("TELEMD_BASE_URL")
            if not config.api.hmac_secret:
                missing.append("TELEMD_HMAC_SECRET")

        elif for_component == "signaling":
            if not config.signaling.socket_url:
                missing.append("TELEMD_SOCKET_URL")

        elif for_component == "minimal":
            # Minimal validation - just check basic config loads
            pass

    except Exception as e:
        missing.append(f"Configuration error: {e}")

    return missing


def configuration_summary() -> Dict[str, str]:
    """Return a flat, secret-free view of the current configuration."""
    config = get_settings()
    return {
        "Environment": config.environment,
        "Debug Mode": str(config.debug),
        "Base URL": config.api.base_url or "✗",
        "Node URL": config.api.node_url or "✗",
        "Request Timeout": f"{config.api.request_timeout}s",
        "Encryption Key": "✓" if config.crypto.encryption_key else "✗",
        "HMAC Secret": "✓" if config.api.hmac_secret else "✗",
        "Socket URL": config.signaling.socket_url or "✗",
        "Group Call URL": config.signaling.group_call_url or "✗",
        "Signaling Timeout": f"{config.signaling.request_timeout}s",
    }
