# backend/app/services/certified_api.py
"""
Async client for the certified exam API.

Every call goes through `_request`, which times it, logs one structured event
(`certified.call.done` / `certified.call.slow` / `certified.call.error`) and
turns transport failures, non-2xx statuses and non-JSON bodies into
`RetryableUpstreamError`. Public methods then map that onto the error
taxonomy of the call:

- create_entry, continue_quiz  -> FatalUpstreamError (abort the caller)
- generate                     -> RetryableUpstreamError / GenerationPayloadError
- post-scoring calls           -> UpstreamCallResult(success=False), never raise
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.core import logging_config
from app.core.config import UpstreamConfig, settings
from app.models.upstream import CertifiedEntry, GeneratedQuizPayload, UpstreamCallResult

logger = structlog.get_logger(__name__)

_DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "Content-Type": "application/json",
    "Origin": "https://certified.learntube.ai",
    "Referer": "https://certified.learntube.ai/",
}


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class UpstreamError(RuntimeError):
    """Base class for certified API failures."""

    def __init__(self, message: str, *, operation: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class FatalUpstreamError(UpstreamError):
    """The calling operation cannot continue (create_entry, continue)."""


class RetryableUpstreamError(UpstreamError):
    """Transient or non-critical failure; callers log and carry on."""


class GenerationPayloadError(RetryableUpstreamError):
    """`/generate` answered, but without a questionnaire we can read."""


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

def _is_success(body: Any) -> bool:
    return isinstance(body, dict) and str(body.get("result", "")).lower() == "success"


def _message(body: Any, default: str = "") -> str:
    if isinstance(body, dict):
        return str(body.get("message") or default)
    return default


def _international_phone(phone: str) -> str:
    p = (phone or "").strip()
    return p if p.startswith("+") else f"+{p}"


# ---------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------

class CertifiedApiClient:
    """
    Thin typed wrapper over the certified exam REST API.

    The underlying `httpx.AsyncClient` is owned by this object when built via
    `from_settings`; tests inject one backed by `httpx.MockTransport`.
    """

    def __init__(self, http: httpx.AsyncClient, config: Optional[UpstreamConfig] = None) -> None:
        self.http = http
        self.config = config or settings.upstream

    @classmethod
    def from_settings(cls, config: Optional[UpstreamConfig] = None) -> "CertifiedApiClient":
        cfg = config or settings.upstream
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.timeout_s),
            verify=cfg.verify_tls,
            headers=_DEFAULT_HEADERS,
        )
        return cls(http, cfg)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
        timeout_s: Optional[float] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        t0 = time.perf_counter()
        try:
            resp = await self.http.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=timeout_s if timeout_s is not None else self.config.timeout_s,
            )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning(
                "certified.call.error",
                operation=operation,
                status_code=e.response.status_code,
                duration_ms=round((time.perf_counter() - t0) * 1000, 1),
            )
            raise RetryableUpstreamError(
                f"{operation} returned HTTP {e.response.status_code}",
                operation=operation,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "certified.call.error",
                operation=operation,
                error=str(e) or type(e).__name__,
                duration_ms=round((time.perf_counter() - t0) * 1000, 1),
            )
            raise RetryableUpstreamError(f"{operation} failed: {e!r}", operation=operation) from e
        except ValueError as e:
            logger.warning("certified.call.error", operation=operation, error="non-json body")
            raise RetryableUpstreamError(f"{operation} returned a non-JSON body", operation=operation) from e

        duration_ms = round((time.perf_counter() - t0) * 1000, 1)
        event = "certified.call.slow" if duration_ms >= logging_config.SLOW_MS_UPSTREAM else "certified.call.done"
        logger.info(event, operation=operation, status_code=resp.status_code, duration_ms=duration_ms)
        return body

    # -----------------------------------------------------------------
    # Session bootstrap
    # -----------------------------------------------------------------

    async def create_entry(self, subject: str) -> CertifiedEntry:
        """Register a new certified skill attempt for `subject`. Fatal on any failure."""
        payload = {
            "subject_name": subject,
            "utm_object": {"utm_source": "certified_wa_flow", "utm_medium": "", "utm_campaign": ""},
            "is_new_ui": False,
        }
        try:
            body = await self._request(
                "create_entry", "POST", self.config.create_entry_url,
                json=payload, timeout_s=self.config.create_entry_timeout_s,
            )
        except RetryableUpstreamError as e:
            raise FatalUpstreamError(str(e), operation="create_entry", status_code=e.status_code) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not _is_success(body) or not isinstance(data, dict) or data.get("id") is None:
            raise FatalUpstreamError(
                _message(body, "create_entry returned no skill id"), operation="create_entry"
            )
        return CertifiedEntry(
            skill_id=data["id"],
            subject_name=data.get("subject_name") or subject,
            quiz_status=data.get("quiz_status"),
            is_paid=data.get("is_paid") or False,
        )

    async def generate(self, skill_id: int) -> GeneratedQuizPayload:
        """Fetch the (possibly partial) generated questionnaire for a skill."""
        body = await self._request(
            "generate", "POST", self.config.generate_url,
            json={"certified_user_skill_id": skill_id, "is_new_ui": True},
            timeout_s=self.config.generate_timeout_s,
        )
        payload = GeneratedQuizPayload.from_response(body)
        if payload is None:
            raise GenerationPayloadError(
                _message(body, "generate returned no questionnaire"), operation="generate"
            )
        if payload.dropped_items:
            logger.info("certified.generate.items_dropped", skill_id=skill_id, dropped=payload.dropped_items)
        return payload

    # -----------------------------------------------------------------
    # Submission flow
    # -----------------------------------------------------------------

    async def continue_quiz(self, skill_id: int, *, email: str, phone: str, name: str) -> str:
        """Attach the user to the attempt and return the bearer token. Fatal on failure."""
        payload = {
            "certified_user_skill_id": skill_id,
            "email": email,
            "phone_number": _international_phone(phone),
            "name": name,
            "password": email,
        }
        try:
            body = await self._request("continue", "POST", self.config.continue_url, json=payload)
        except RetryableUpstreamError as e:
            raise FatalUpstreamError(str(e), operation="continue", status_code=e.status_code) from e

        token = body.get("data") if isinstance(body, dict) else None
        if not _is_success(body) or not isinstance(token, str) or not token:
            raise FatalUpstreamError(_message(body, "continue returned no token"), operation="continue")
        return token

    async def _soft_call(self, operation: str, method: str, url: str, **kwargs: Any) -> UpstreamCallResult:
        try:
            body = await self._request(operation, method, url, **kwargs)
        except RetryableUpstreamError as e:
            return UpstreamCallResult(success=False, message=str(e))
        if not _is_success(body):
            logger.warning("certified.call.rejected", operation=operation, message=_message(body))
            return UpstreamCallResult(
                success=False,
                message=_message(body, f"{operation} failed"),
                data=body.get("data") if isinstance(body, dict) else None,
            )
        return UpstreamCallResult(success=True, message=_message(body), data=body.get("data"))

    async def save_user_response(
        self,
        skill_quiz_id: int,
        attempts: List[Dict[str, Any]],
        completion_time_s: int,
        score: int,
    ) -> UpstreamCallResult:
        return await self._soft_call(
            "save_user_response", "POST", self.config.save_user_response_url,
            json={
                "certified_user_skill_quiz_id": skill_quiz_id,
                "quiz_attempt_object": attempts,
                "quiz_completion_time_in_seconds": completion_time_s,
                "quiz_score": score,
            },
        )

    async def claim_certificate(self, skill_id: int, token: str) -> UpstreamCallResult:
        return await self._soft_call(
            "claim_certificate", "POST", self.config.claim_certificate_url,
            json={"certified_user_skill_id": skill_id}, token=token,
        )

    async def create_v2_test(self, skill_id: int, token: str) -> UpstreamCallResult:
        """Create the certificate order. On success `data['id']` is the order id."""
        return await self._soft_call(
            "create_v2_test", "POST", self.config.create_v2_test_url,
            json={
                "items": [{
                    "product_slug": "certificate_type_3",
                    "product_quantity": 1,
                    "entity_type": "skill",
                    "entity_id": skill_id,
                }],
            },
            token=token,
        )

    async def analysis(self, skill_quiz_id: int, token: str) -> UpstreamCallResult:
        return await self._soft_call(
            "analysis", "GET", self.config.analysis_url,
            params={"certified_user_skill_quiz_id": skill_quiz_id}, token=token,
        )
