"""
App code bootstrap.

Exchanges an organization's app code for the server, socket and
conferencing URLs the rest of the library is configured with.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from telemd_transport.core.config import AppCheckConfig, ApiConfig, get_settings
from telemd_transport.core.exceptions import ApplicationError, EnvelopeError, TransportError, TransportFailure
from telemd_transport.core.models import is_success_code
from telemd_transport.core.session import (
    BASE_SOCKET_URL_KEY,
    BASE_URL_KEY,
    GROUP_CALL_URL_KEY,
    SERVER_URL_KEY,
)
from telemd_transport.crypto.envelope import RequestSigner
from telemd_transport.utils.reliability import track_performance

logger = structlog.get_logger(__name__)

APP_CHECK_OPERATION = "appCheck"


class RemoteAppConfig(BaseModel):
    """Endpoints published for one app code."""

    server_url: Optional[str] = None
    api: Optional[str] = None
    base: Optional[str] = None
    group_call_url: Optional[str] = Field(default=None, alias="apiGroupCallURL")
    turn: Optional[str] = None
    turn_username: Optional[str] = Field(default=None, alias="turnU")
    turn_password: Optional[str] = Field(default=None, alias="turnP", repr=False)

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def storage_items(self) -> Dict[str, str]:
        """Values to write to device storage, keyed the way the clients read them."""
        items = {
            BASE_URL_KEY: self.server_url,
            SERVER_URL_KEY: self.api,
            BASE_SOCKET_URL_KEY: self.base,
            GROUP_CALL_URL_KEY: self.group_call_url,
        }
        return {key: value for key, value in items.items() if value}


def decode_app_data(app_data: str) -> Dict[str, Any]:
    """appData is base64 encoded JSON."""
    try:
        decoded = base64.b64decode(app_data, validate=False).decode("utf-8")
        payload = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeError(f"appData could not be decoded: {e}") from e
    if not isinstance(payload, dict):
        raise EnvelopeError("appData is not a JSON object")
    return payload


class AppConfigClient:
    """Client for the app-check endpoint."""

    def __init__(
        self,
        config: Optional[AppCheckConfig] = None,
        signer: Optional[RequestSigner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        api_config: Optional[ApiConfig] = None,
    ):
        if config is None or (signer is None and api_config is None):
            settings = get_settings()
            config = config or settings.app_check
            api_config = api_config or settings.api
        self.config = config
        self.signer = signer or RequestSigner.from_config(api_config)
        self._http = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout), transport=transport)

    async def __aenter__(self) -> "AppConfigClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self._http.aclose()

    @track_performance("app_config_fetch")
    async def fetch(self, app_code: str) -> RemoteAppConfig:
        """
        Resolve an app code.

        Raises:
            ApplicationError: the server did not accept the app code
            TransportError: network failure, timeout or unreadable body
        """
        url = f"{self.config.endpoint.rstrip('/')}/{APP_CHECK_OPERATION}"
        form = {
            "appCode": app_code,
            "type": self.config.platform,
            "version": self.config.app_version,
        }
        try:
            response = await self._http.post(url, data=form, headers=self.signer.headers())
        except httpx.TimeoutException as e:
            raise TransportError(f"App check timed out: {e}", kind=TransportFailure.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise TransportError(f"App check failed: {e}", kind=TransportFailure.NETWORK) from e

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(
                f"App check returned HTTP {response.status_code} without JSON",
                kind=TransportFailure.HTTP_STATUS,
                status_code=response.status_code,
            ) from e

        code = str(body.get("code", "")) if isinstance(body, dict) else ""
        if not is_success_code(code):
            message = body.get("message") or body.get("status") if isinstance(body, dict) else None
            logger.warning("App code rejected", code=code)
            raise ApplicationError(code, message or "App code validation failed")

        data = body.get("data") or {}
        if not data.get("appData"):
            raise ApplicationError(code, "App check response has no appData")

        remote = RemoteAppConfig.model_validate(decode_app_data(data["appData"]))
        logger.info(
            "App configuration resolved",
            server_url=remote.server_url,
            socket_url=remote.base,
            group_call_url=remote.group_call_url,
        )
        return remote
