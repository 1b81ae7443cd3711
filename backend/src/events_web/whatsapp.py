from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from itertools import count
from typing import Any, Literal, Protocol

import httpx

from .config import Settings
from .phone import PhoneNumberError, mask_phone_number, normalize_phone_number
from .retry_policy import RetryPolicy, SleepFn

logger = logging.getLogger(__name__)

ErrorCategory = Literal["permanent", "transient", "rate_limited", "blocked"]

PERMANENT_ERROR_CODES: frozenset[int] = frozenset(
    {
        100,  # invalid parameter
        190,  # access token expired or revoked
        131008,  # required parameter missing
        131009,  # parameter value invalid
        131026,  # recipient cannot receive messages
        131030,  # recipient not in allowed list
        131051,  # unsupported message type
        132000,  # template parameter count mismatch
        132001,  # template does not exist
        132005,  # translated text too long
        132007,  # template format policy violation
        132012,  # template parameter format mismatch
        132015,  # template paused
        132016,  # template disabled
    }
)
RATE_LIMIT_ERROR_CODES: frozenset[int] = frozenset({4, 80007, 130429, 131048, 131056})
BLOCKED_ERROR_CODES: frozenset[int] = frozenset({368, 130497, 131031, 131047})
TRANSIENT_ERROR_CODES: frozenset[int] = frozenset({1, 2, 131000, 133004})


class TemplateValidationError(ValueError):
    """Raised before any network call when a template request is malformed."""


class ProviderError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        category: ErrorCategory,
        http_status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message
        self.category = category
        self.http_status = http_status
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.category in {"transient", "rate_limited"}


class ProviderBlockedError(ProviderError):
    """The provider refused delivery because the account or recipient is restricted."""


def classify_provider_error(code: int | None, http_status: int | None) -> ErrorCategory:
    if code is not None:
        if code in BLOCKED_ERROR_CODES:
            return "blocked"
        if code in RATE_LIMIT_ERROR_CODES:
            return "rate_limited"
        if code in PERMANENT_ERROR_CODES:
            return "permanent"
        if code in TRANSIENT_ERROR_CODES:
            return "transient"
    if http_status == 429:
        return "rate_limited"
    if http_status is not None and http_status >= 500:
        return "transient"
    return "permanent"


def provider_error_from_response(http_status: int, payload: dict[str, Any]) -> ProviderError:
    error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
    raw_code = error.get("code")
    try:
        numeric_code = int(raw_code) if raw_code is not None else None
    except (TypeError, ValueError):
        numeric_code = None
    category = classify_provider_error(numeric_code, http_status)
    code = str(numeric_code) if numeric_code is not None else f"http_{http_status}"
    message = str(error.get("message") or f"HTTP {http_status}")
    details = {
        key: error[key]
        for key in ("type", "error_subcode", "fbtrace_id", "error_data")
        if key in error
    }
    error_cls = ProviderBlockedError if category == "blocked" else ProviderError
    return error_cls(
        code=code,
        message=message,
        category=category,
        http_status=http_status,
        details=details,
    )


@dataclass(frozen=True)
class TemplateMessage:
    to: str
    template_name: str
    language_code: str = "en"
    components: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class SendResult:
    provider_message_id: str
    recipient: str
    wa_id: str | None = None


class WhatsAppSender(Protocol):
    async def send_template(self, message: TemplateMessage) -> SendResult: ...


def prepare_template_message(message: TemplateMessage, *, default_country_code: str) -> TemplateMessage:
    template_name = message.template_name.strip()
    if not template_name:
        raise TemplateValidationError("template name is required")
    language_code = message.language_code.strip() or "en"
    try:
        recipient = normalize_phone_number(message.to, default_country_code)
    except PhoneNumberError as exc:
        raise TemplateValidationError(f"invalid destination phone ({exc.reason}): {exc}") from exc
    return TemplateMessage(
        to=recipient,
        template_name=template_name,
        language_code=language_code,
        components=tuple(message.components),
    )


def template_request_body(message: TemplateMessage) -> dict[str, Any]:
    template: dict[str, Any] = {
        "name": message.template_name,
        "language": {"code": message.language_code},
    }
    if message.components:
        template["components"] = list(message.components)
    return {
        "messaging_product": "whatsapp",
        "to": message.to.lstrip("+"),
        "type": "template",
        "template": template,
    }


@dataclass
class StubWhatsAppSender:
    """In-process sender for local runs and tests.

    ``failures`` maps a canonical recipient to the error raised for it.
    """

    default_country_code: str = "91"
    failures: dict[str, ProviderError] = field(default_factory=dict)
    sent: list[TemplateMessage] = field(default_factory=list)
    _counter: Any = field(default_factory=lambda: count(1), repr=False)

    async def send_template(self, message: TemplateMessage) -> SendResult:
        prepared = prepare_template_message(message, default_country_code=self.default_country_code)
        failure = self.failures.get(prepared.to)
        if failure is not None:
            raise failure
        self.sent.append(prepared)
        message_id = f"wamid.stub-{next(self._counter):06d}"
        return SendResult(
            provider_message_id=message_id,
            recipient=prepared.to,
            wa_id=prepared.to.lstrip("+"),
        )


class HttpWhatsAppSender:
    """WhatsApp Cloud API template sender."""

    def __init__(
        self,
        *,
        api_base: str,
        api_version: str,
        phone_number_id: str,
        token: str,
        timeout_seconds: float = 30.0,
        default_country_code: str = "91",
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        stripped_base = api_base.strip().rstrip("/")
        stripped_token = token.strip()
        stripped_phone_id = phone_number_id.strip()
        if not stripped_base:
            raise ValueError("api_base must not be empty")
        if not stripped_token:
            raise ValueError("token must not be empty")
        if not stripped_phone_id:
            raise ValueError("phone_number_id must not be empty")
        self._url = f"{stripped_base}/{api_version.strip()}/{stripped_phone_id}/messages"
        self._token = stripped_token
        self._default_country_code = default_country_code
        self._retry_policy = retry_policy or build_retry_policy()
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    @property
    def url(self) -> str:
        return self._url

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send_template(self, message: TemplateMessage) -> SendResult:
        prepared = prepare_template_message(message, default_country_code=self._default_country_code)
        body = template_request_body(prepared)
        try:
            payload = await self._retry_policy.run(lambda: self._post(body))
        except ProviderError as exc:
            log = logger.critical if isinstance(exc, ProviderBlockedError) else logger.error
            log(
                "whatsapp template %s to %s failed: %s",
                prepared.template_name,
                mask_phone_number(prepared.to),
                exc,
                extra={"provider_code": exc.code, "category": exc.category},
            )
            raise

        messages = payload.get("messages") or []
        message_id = messages[0].get("id") if messages and isinstance(messages[0], dict) else None
        if not message_id:
            raise ProviderError(
                code="missing_message_id",
                message="provider accepted the request without returning a message id",
                category="permanent",
                details={"response": payload},
            )
        contacts = payload.get("contacts") or []
        wa_id = contacts[0].get("wa_id") if contacts and isinstance(contacts[0], dict) else None
        logger.info(
            "whatsapp template %s sent to %s as %s",
            prepared.template_name,
            mask_phone_number(prepared.to),
            message_id,
        )
        return SendResult(provider_message_id=str(message_id), recipient=prepared.to, wa_id=wa_id)

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self._url,
                json=body,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(
                code="timeout",
                message=f"Request timed out: {exc}",
                category="transient",
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(
                code="connection_error",
                message=f"Connection error: {exc}",
                category="transient",
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.status_code >= 400 or "error" in payload:
            raise provider_error_from_response(response.status_code, payload)
        return payload


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def _is_rate_limited(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.category == "rate_limited"


def build_retry_policy(settings: Settings | None = None, *, sleep: SleepFn = asyncio.sleep) -> RetryPolicy:
    settings = settings or Settings()
    return RetryPolicy(
        should_retry=_is_retryable,
        is_rate_limited=_is_rate_limited,
        max_retries=settings.wa_max_retries,
        base_delay_seconds=settings.wa_retry_base_seconds,
        max_delay_seconds=settings.wa_retry_max_seconds,
        rate_limit_multiplier=settings.wa_rate_limit_multiplier,
        sleep=sleep,
    )


def create_whatsapp_sender(settings: Settings) -> WhatsAppSender:
    if settings.wa_sender_type == "http":
        return HttpWhatsAppSender(
            api_base=settings.wa_api_base,
            api_version=settings.wa_api_version,
            phone_number_id=settings.wa_phone_number_id,
            token=settings.wa_token,
            timeout_seconds=settings.wa_timeout_seconds,
            default_country_code=settings.default_country_code,
            retry_policy=build_retry_policy(settings),
        )
    return StubWhatsAppSender(default_country_code=settings.default_country_code)
