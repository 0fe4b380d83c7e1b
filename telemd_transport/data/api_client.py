"""
Encrypted request client.

One operation, ``call``, turns an operation name and a parameter map into an
encrypted, signed HTTP POST and decrypts the reply into an ApiResponse.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Optional

import httpx
import structlog

from telemd_transport.core.config import ApiConfig, CryptoConfig, get_settings
from telemd_transport.core.exceptions import (
    ConfigurationError,
    EnvelopeError,
    TransportError,
    TransportFailure,
    ValidationError,
)
from telemd_transport.core.logging import new_request_id, redact
from telemd_transport.core.models import ApiResponse, BodyFormat, ParamValue, SessionContext
from telemd_transport.crypto.envelope import EnvelopeCipher, RequestSigner, decode_payload

logger = structlog.get_logger(__name__)

NODE_OPERATIONS = ("login", "logout")


def _is_node_operation(operation: str) -> bool:
    return any(operation == name or operation.endswith(f"/{name}") for name in NODE_OPERATIONS)


class EncryptedApiClient:
    """
    Encrypted RPC-over-HTTP client.

    Calls are independent: the client keeps no per-call state, never retries
    and never caches, so any number of calls may be in flight at once.
    """

    def __init__(
        self,
        config: Optional[ApiConfig] = None,
        cipher: Optional[EnvelopeCipher] = None,
        signer: Optional[RequestSigner] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        crypto_config: Optional[CryptoConfig] = None,
    ):
        settings = None
        if config is None or (cipher is None and crypto_config is None):
            settings = get_settings()
        self.config = config or settings.api
        self.cipher = cipher or EnvelopeCipher.from_config(crypto_config or settings.crypto)
        self.signer = signer or RequestSigner.from_config(self.config)
        self._form_operations = frozenset(self.config.form_operations)

        # No per-request retries at this layer; the total deadline is enforced in call()
        self._http = httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.request_timeout),
            transport=transport,
            follow_redirects=True,
        )

        logger.info(
            "Encrypted API client initialized",
            base_url=self.config.base_url,
            node_url=self.config.node_url,
            timeout=self.config.request_timeout,
        )

    async def __aenter__(self) -> "EncryptedApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def build_url(self, operation: str) -> str:
        base = self.config.base_url
        if _is_node_operation(operation) and self.config.node_url:
            base = self.config.node_url
        if not base:
            raise ConfigurationError("TELEMD_BASE_URL is not set")
        return f"{base.rstrip('/')}/{operation.lstrip('/')}"

    def body_format_for(self, operation: str) -> BodyFormat:
        return BodyFormat.FORM if operation in self._form_operations else BodyFormat.JSON

    async def call(
        self,
        operation: str,
        params: Optional[Mapping[str, ParamValue]] = None,
        session: Optional[SessionContext] = None,
        timeout: Optional[float] = None,
    ) -> ApiResponse:
        """
        Invoke a remote operation.

        Args:
            operation: Remote procedure path, e.g. ``ApiTiaTeleMD/saveFormDetails``
            params: Primitive values only; nested data goes in as JSON strings
            session: Snapshot whose identifiers are added to the params
            timeout: Overrides the configured total deadline for this call

        Returns:
            The decrypted ApiResponse; check ``ok`` for the application result

        Raises:
            TransportError: network failure, timeout, bad HTTP status or
                undecryptable body
            ValidationError: empty operation or non-primitive params
        """
        if not operation or not operation.strip():
            raise ValidationError("Operation name must be non-empty")

        merged = dict(params or {})
        if session is not None:
            merged.update(session.as_params())

        body_format = self.body_format_for(operation)
        envelope = self.cipher.seal(operation, merged, body_format)
        url = self.build_url(operation)
        deadline = timeout if timeout is not None else self.config.request_timeout

        log = logger.bind(operation=operation, request_id=new_request_id())
        log.debug(
            "Sending encrypted request",
            url=url,
            body_format=body_format.value,
            params=sorted(envelope.params),
            ciphertext=redact(envelope.ciphertext, keep=8),
        )

        start_time = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._http.post(
                    url,
                    data={"app_data": envelope.ciphertext},
                    headers=self.signer.headers(),
                    timeout=deadline,
                ),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            log.warning("Encrypted request timed out", timeout=deadline)
            raise TransportError(
                f"{operation} timed out after {deadline}s",
                kind=TransportFailure.TIMEOUT,
                details={"operation": operation},
            ) from e
        except httpx.HTTPError as e:
            log.error("Encrypted request failed", error=str(e), error_type=type(e).__name__)
            raise TransportError(
                f"{operation} failed: {e}",
                kind=TransportFailure.NETWORK,
                details={"operation": operation},
            ) from e

        duration = time.monotonic() - start_time
        result = self._decode_response(operation, response)
        log.info(
            "Encrypted request completed",
            status_code=response.status_code,
            code=result.code,
            ok=result.ok,
            duration_seconds=round(duration, 3),
        )
        return result

    def _decode_response(self, operation: str, response: httpx.Response) -> ApiResponse:
        try:
            return self._parse_body(response)
        except EnvelopeError as e:
            if not response.is_success:
                raise TransportError(
                    f"{operation} returned HTTP {response.status_code}",
                    kind=TransportFailure.HTTP_STATUS,
                    status_code=response.status_code,
                    details={"operation": operation},
                ) from e
            e.status_code = response.status_code
            e.details.setdefault("operation", operation)
            raise

    def _parse_body(self, response: httpx.Response) -> ApiResponse:
        text = response.text
        if not text or not text.strip():
            raise EnvelopeError("Empty response body")

        payload: Any = decode_payload(text, self.cipher)
        if isinstance(payload, dict) and "app_result" in payload:
            payload = decode_payload(payload["app_result"], self.cipher)

        if not isinstance(payload, dict) or "code" not in payload:
            raise EnvelopeError("Response payload has no status code")
        return ApiResponse.model_validate(payload)
