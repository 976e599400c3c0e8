"""
Provider adapters for the two external diagnostic models.

Each adapter:
- loads the case images and builds one provider-specific JSON request
- bounds the call with `asyncio.wait_for`
- retries a transient failure (TIMEOUT, RATE_LIMIT) once with a shorter timeout
- maps every other failure to a `ProviderFailure` instead of raising
- normalizes the decoded payload before returning it
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx
from pydantic import ValidationError

from env_loader import env_bool, env_float, env_int, env_str, load_service_env
from errors import ProviderCallError
from models import (
    TRANSIENT_FAILURE_CODES,
    ClinicalContext,
    FailureCode,
    ImageInput,
    ProviderFailure,
    ProviderName,
    ProviderResult,
    RawDiagnosisPayload,
    RawProviderPayload,
    validate_structured_output,
)
from normalizer import normalize_diagnoses
from prompts import PromptBuilder
from tools import LoadedImage, load_image, parse_json_payload

logger = logging.getLogger(__name__)

load_service_env()

ImageGroup = Tuple[str, Sequence[ImageInput]]

FAILURE_HINTS: Dict[FailureCode, str] = {
    FailureCode.TIMEOUT: "The provider did not answer in time. Retry the analysis.",
    FailureCode.RATE_LIMIT: "Provider quota exceeded. Wait a minute and retry.",
    FailureCode.INVALID_RESPONSE: "The provider returned an unexpected format. Retry the analysis.",
    FailureCode.INVALID_IMAGE: "Upload a clear, well-lit close-up photo of the skin lesion.",
    FailureCode.INVALID_REQUEST: "Check the image format and size (JPEG or PNG, under 20 MB).",
    FailureCode.AUTH_ERROR: "Check the provider API key configured for this service.",
    FailureCode.UPSTREAM_ERROR: "The provider is temporarily unavailable. Retry later.",
    FailureCode.NOT_CONFIGURED: "Set the provider API key to enable this provider.",
    FailureCode.DISABLED: "This provider is switched off in the system settings.",
}


def failure_code_for_status(status_code: int) -> FailureCode:
    if status_code == 429:
        return FailureCode.RATE_LIMIT
    if status_code in {401, 403}:
        return FailureCode.AUTH_ERROR
    if status_code in {408, 504}:
        return FailureCode.TIMEOUT
    if 400 <= status_code < 500:
        return FailureCode.INVALID_REQUEST
    return FailureCode.UPSTREAM_ERROR


def _upstream_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])[:300]
        if isinstance(error, str) and error:
            return error[:300]
    return f"HTTP {resp.status_code}"


class ProviderAdapter:
    """
    Shared call, retry and failure-mapping core. Subclasses supply the request
    shape and the response text extraction.
    """

    provider: ProviderName
    env_prefix: str
    default_model: str
    default_base_url: str
    key_fallbacks: Tuple[str, ...] = ()

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        enabled: Optional[bool] = None,
        retry_timeout_seconds: Optional[float] = None,
        image_timeout_seconds: Optional[float] = None,
        max_diagnoses: Optional[int] = None,
        local_image_dir: Optional[Union[str, Path]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        prefix = self.env_prefix
        self.api_key = api_key if api_key is not None else env_str(
            f"DERMA_{prefix}_API_KEY", "", *self.key_fallbacks
        )
        self.model = model or env_str(f"DERMA_{prefix}_MODEL", self.default_model)
        self.base_url = (base_url or env_str(f"DERMA_{prefix}_BASE_URL", self.default_base_url)).rstrip("/")
        self.enabled = enabled if enabled is not None else env_bool(f"DERMA_ENABLE_{prefix}", True)
        self.retry_timeout_seconds = max(
            1.0,
            retry_timeout_seconds
            if retry_timeout_seconds is not None
            else env_float("DERMA_PROVIDER_RETRY_TIMEOUT_SECONDS", 30.0),
        )
        self.image_timeout_seconds = max(
            1.0,
            image_timeout_seconds
            if image_timeout_seconds is not None
            else env_float("DERMA_IMAGE_FETCH_TIMEOUT_SECONDS", 15.0),
        )
        self.max_diagnoses = max(
            1,
            max_diagnoses if max_diagnoses is not None else env_int("DERMA_MAX_PROVIDER_DIAGNOSES", 5),
        )
        self.local_image_dir = Path(
            local_image_dir if local_image_dir is not None else env_str("DERMA_LOCAL_DATA_DIR", "./local_data")
        ).expanduser().resolve()
        self.transport = transport
        self.prompts = PromptBuilder(max_diagnoses=self.max_diagnoses)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def available(self) -> bool:
        return self.enabled and self.configured

    # -------------------------------------------------------------------------
    # Provider-specific hooks
    # -------------------------------------------------------------------------

    def _build_request(
        self,
        instruction: str,
        groups: Sequence[Tuple[str, List[LoadedImage]]],
    ) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        raise NotImplementedError

    def _extract_text(self, body: Dict[str, Any]) -> str:
        raise NotImplementedError

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def invoke(
        self,
        images: Sequence[ImageInput],
        context: ClinicalContext,
        timeout_seconds: float,
        *,
        language: Optional[str] = "en",
        is_health_professional: bool = False,
    ) -> Union[ProviderResult, ProviderFailure]:
        """
        Runs one differential-diagnosis request. Never raises.
        """
        started = time.perf_counter()
        instruction = self.prompts.diagnosis_instruction(
            context,
            language=language,
            is_health_professional=is_health_professional,
        )
        outcome = await self._run(instruction, [("", images)], timeout_seconds)
        if isinstance(outcome, ProviderFailure):
            return outcome

        payload, attempts = outcome
        try:
            raw = validate_structured_output(RawDiagnosisPayload, payload)
        except ValidationError as exc:
            return self._failure(
                FailureCode.INVALID_RESPONSE,
                f"Diagnosis payload failed schema validation: {exc.error_count()} error(s).",
                attempts,
            )
        diagnoses = normalize_diagnoses(
            raw.diagnoses,
            max_items=self.max_diagnoses,
            source=self.provider.value,
        )
        return ProviderResult(
            provider=self.provider,
            model=self.model,
            diagnoses=diagnoses,
            analysis_time_seconds=round(time.perf_counter() - started, 3),
        )

    async def compare(
        self,
        previous_images: Sequence[ImageInput],
        current_images: Sequence[ImageInput],
        instruction: str,
        timeout_seconds: float,
    ) -> Union[Dict[str, Any], ProviderFailure]:
        """
        Runs one snapshot comparison request and returns the decoded JSON
        object. Never raises.
        """
        outcome = await self._run(
            instruction,
            [("PREVIOUS snapshot:", previous_images), ("CURRENT snapshot:", current_images)],
            timeout_seconds,
        )
        if isinstance(outcome, ProviderFailure):
            return outcome
        payload, _ = outcome
        return payload

    # -------------------------------------------------------------------------
    # Shared core
    # -------------------------------------------------------------------------

    def _failure(self, code: FailureCode, message: str, attempts: int) -> ProviderFailure:
        return ProviderFailure(
            provider=self.provider,
            code=code,
            message=message,
            hint=FAILURE_HINTS.get(code),
            attempts=attempts,
        )

    async def _run(
        self,
        instruction: str,
        groups: Sequence[ImageGroup],
        timeout_seconds: float,
    ) -> Union[Tuple[Dict[str, Any], int], ProviderFailure]:
        if not self.enabled:
            return self._failure(FailureCode.DISABLED, f"{self.provider.value} is disabled.", 0)
        if not self.configured:
            return self._failure(
                FailureCode.NOT_CONFIGURED,
                f"{self.provider.value} API key is not configured.",
                0,
            )

        try:
            return await self._call(instruction, groups, max(1.0, float(timeout_seconds)))
        except Exception as exc:
            logger.exception("%s call raised unexpectedly: %s", self.provider.value, exc)
            return self._failure(
                FailureCode.UPSTREAM_ERROR,
                f"{self.provider.value} call failed: {exc.__class__.__name__}",
                1,
            )

    async def _load_groups(
        self,
        client: httpx.AsyncClient,
        groups: Sequence[ImageGroup],
    ) -> List[Tuple[str, List[LoadedImage]]]:
        loaded: List[Tuple[str, List[LoadedImage]]] = []
        for label, images in groups:
            group = [
                await load_image(img, client, self.image_timeout_seconds, local_root=self.local_image_dir)
                for img in images
            ]
            loaded.append((label, group))
        return loaded

    async def _call(
        self,
        instruction: str,
        groups: Sequence[ImageGroup],
        timeout_seconds: float,
    ) -> Union[Tuple[Dict[str, Any], int], ProviderFailure]:
        budgets = [timeout_seconds, min(self.retry_timeout_seconds, timeout_seconds)]

        async with httpx.AsyncClient(transport=self.transport) as client:
            # Image loading is charged to the first attempt's budget.
            load_started = time.perf_counter()
            try:
                loaded = await asyncio.wait_for(self._load_groups(client, groups), timeout=budgets[0])
            except asyncio.TimeoutError:
                message = f"{self.provider.value} image loading exceeded {budgets[0]:.1f}s."
                logger.warning("%s call failed | code=TIMEOUT | attempts=1 | %s", self.provider.value, message)
                return self._failure(FailureCode.TIMEOUT, message, 1)
            except ValueError as exc:
                return self._failure(FailureCode.INVALID_REQUEST, str(exc), 0)
            budgets[0] = max(0.1, budgets[0] - (time.perf_counter() - load_started))

            url, headers, body = self._build_request(instruction, loaded)
            attempt = 0
            while True:
                attempt += 1
                budget = budgets[min(attempt, len(budgets)) - 1]
                try:
                    payload = await asyncio.wait_for(
                        self._attempt(client, url, headers, body, budget),
                        timeout=budget,
                    )
                    return payload, attempt
                except asyncio.TimeoutError:
                    error = ProviderCallError(
                        FailureCode.TIMEOUT,
                        f"{self.provider.value} timed out after {budget:.1f}s.",
                    )
                except ProviderCallError as exc:
                    error = exc

                if error.code in TRANSIENT_FAILURE_CODES and attempt < len(budgets):
                    logger.warning(
                        "%s transient failure (%s); retrying with %.1fs timeout.",
                        self.provider.value,
                        error.code.value,
                        budgets[attempt],
                    )
                    continue
                logger.warning(
                    "%s call failed | code=%s | attempts=%d | %s",
                    self.provider.value,
                    error.code.value,
                    attempt,
                    error.message,
                )
                return self._failure(error.code, error.message, attempt)

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
        body: Dict[str, Any],
        timeout_seconds: float,
    ) -> Dict[str, Any]:
        try:
            resp = await client.post(url, headers=headers, json=body, timeout=timeout_seconds)
        except httpx.TimeoutException as exc:
            raise ProviderCallError(FailureCode.TIMEOUT, f"{self.provider.value} request timed out.") from exc
        except httpx.HTTPError as exc:
            raise ProviderCallError(
                FailureCode.UPSTREAM_ERROR,
                f"{self.provider.value} transport error: {exc.__class__.__name__}",
            ) from exc

        if resp.status_code >= 400:
            raise ProviderCallError(failure_code_for_status(resp.status_code), _upstream_message(resp))

        try:
            text = self._extract_text(resp.json())
            payload = parse_json_payload(text)
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise ProviderCallError(
                FailureCode.INVALID_RESPONSE,
                f"{self.provider.value} returned an undecodable payload: {exc}",
            ) from exc

        try:
            envelope = validate_structured_output(RawProviderPayload, payload)
        except ValidationError as exc:
            raise ProviderCallError(
                FailureCode.INVALID_RESPONSE,
                f"{self.provider.value} payload failed schema validation.",
            ) from exc
        if envelope.error:
            raise ProviderCallError(
                FailureCode.INVALID_IMAGE,
                envelope.message or "The image does not appear to show a skin lesion.",
            )
        return payload


class GeminiProviderAdapter(ProviderAdapter):
    """
    Provider A: Gemini `generateContent` with inline image parts.
    """

    provider = ProviderName.GEMINI
    env_prefix = "GEMINI"
    default_model = "gemini-2.5-flash"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    key_fallbacks = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

    def _build_request(self, instruction, groups):
        parts: List[Dict[str, Any]] = [{"text": instruction}]
        for label, images in groups:
            if label:
                parts.append({"text": label})
            for image in images:
                parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseMimeType": "application/json", "temperature": 0.2},
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        return url, {"x-goog-api-key": self.api_key}, body

    def _extract_text(self, body):
        if not isinstance(body, dict):
            raise ValueError(f"expected a JSON object, got {type(body).__name__}")
        candidates = body.get("candidates") or []
        if not candidates:
            feedback = body.get("promptFeedback")
            reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
            raise ValueError(f"no candidates returned (blockReason={reason})")
        parts = candidates[0]["content"]["parts"]
        if not isinstance(parts, list):
            raise ValueError("candidate parts are not a list")
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            raise ValueError("empty response text")
        return text


class OpenAIProviderAdapter(ProviderAdapter):
    """
    Provider B: OpenAI chat completions with `image_url` data URIs.
    """

    provider = ProviderName.OPENAI
    env_prefix = "OPENAI"
    default_model = "gpt-5"
    default_base_url = "https://api.openai.com/v1"
    key_fallbacks = ("OPENAI_API_KEY",)

    def _build_request(self, instruction, groups):
        content: List[Dict[str, Any]] = [{"type": "text", "text": instruction}]
        for label, images in groups:
            if label:
                content.append({"type": "text", "text": label})
            for image in images:
                content.append({"type": "image_url", "image_url": {"url": image.data_uri()}})
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": content}],
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        return f"{self.base_url}/chat/completions", headers, body

    def _extract_text(self, body):
        if not isinstance(body, dict):
            raise ValueError(f"expected a JSON object, got {type(body).__name__}")
        message = body["choices"][0]["message"]
        if not isinstance(message, dict):
            raise ValueError("choice message is not an object")
        if message.get("refusal"):
            raise ValueError(f"model refused: {message['refusal']}")
        content = message.get("content") or ""
        if isinstance(content, list):
            # Content-part arrays carry the text in their "text" entries.
            content = "".join(
                str(part.get("text") or "")
                for part in content
                if isinstance(part, dict) and part.get("type") in {"text", "output_text"}
            )
        if not isinstance(content, str):
            raise ValueError(f"unexpected content type {type(content).__name__}")
        text = content
        if not text.strip():
            raise ValueError("empty response text")
        return text
