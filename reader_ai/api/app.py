from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from reader_ai.cloud.gemini import GeminiClient
from reader_ai.config import Settings, load_settings
from reader_ai.errors import ErrorKind, InferenceFailure, invalid_input
from reader_ai.ratelimit.limiter import RateLimitDecision, RateLimiter, build_rate_limiter, sweep_periodically
from reader_ai.types import SummaryLength
from reader_ai.utils.analytics import AnalyticsStore, RequestLogRecord
from reader_ai.utils.logging import setup_logging


logger = logging.getLogger("reader_ai.api")

GeminiFactory = Callable[[str], GeminiClient]

_STATUS_FOR_KIND: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.CONTENT_REJECTED: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CLOUD_RATE_LIMITED: 429,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.PROVIDER_FAILURE: 500,
}


def client_subject(headers: Mapping[str, str]) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return "127.0.0.1"


def validate_body(body: Any, *, min_chars: int = 50, max_chars: int = 50_000) -> tuple[str, SummaryLength]:
    if not isinstance(body, dict):
        raise invalid_input("Request body must be a JSON object")
    text = body.get("text")
    if not text or not isinstance(text, str):
        raise invalid_input("Missing or invalid 'text' field")
    if len(text) < min_chars:
        raise invalid_input(f"Text must be at least {min_chars} characters")
    if len(text) > max_chars:
        raise invalid_input(f"Text must be less than {max_chars:,} characters")
    return text.strip(), SummaryLength.parse(body.get("length"))


def _failure_response(failure: InferenceFailure, headers: Optional[dict[str, str]] = None) -> JSONResponse:
    headers = dict(headers or {})
    body: dict[str, Any] = {"error": failure.message, "code": failure.kind.value}
    if failure.retry_after is not None:
        retry_after = int(math.ceil(failure.retry_after))
        body["retryAfter"] = retry_after
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(body, status_code=_STATUS_FOR_KIND.get(failure.kind, 500), headers=headers)


def _rate_limited(decision: RateLimitDecision) -> JSONResponse:
    retry_after = decision.retry_after()
    headers = decision.headers()
    headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        {
            "error": "Rate limit exceeded",
            "message": f"Limit of {decision.limit} requests reached. Try again in {math.ceil(retry_after / 60)} minutes.",
            "retryAfter": retry_after,
            "code": ErrorKind.RATE_LIMITED.value,
        },
        status_code=429,
        headers=headers,
    )


def _usage(settings: Settings) -> dict[str, Any]:
    return {
        "error": "Method not allowed",
        "message": "Use POST to summarize text.",
        "usage": {
            "method": "POST",
            "body": {
                "text": f"Article content to summarize (required, min {settings.cloud.min_text_chars} chars)",
                "length": "short | medium | long | extended (optional, default: medium)",
            },
            "limits": {
                "requestsPerWindow": settings.rate_limit.requests,
                "windowSeconds": settings.rate_limit.window_seconds,
                "maxTextLength": settings.cloud.max_text_chars,
            },
        },
    }


def create_app(
    settings: Optional[Settings] = None,
    *,
    limiter: Optional[RateLimiter] = None,
    gemini_factory: Optional[GeminiFactory] = None,
    analytics: Optional[AnalyticsStore] = None,
) -> FastAPI:
    """Build the summary proxy. Collaborators default to what `settings` describes."""
    if settings is None:
        settings = load_settings()
        log_dir = Path(settings.logging.log_dir) if settings.logging.log_dir else None
        setup_logging(log_dir, settings.logging.level)
        if analytics is None and log_dir is not None:
            analytics = AnalyticsStore(log_dir, settings.logging.requests_jsonl, settings.logging.usage_json)

    cloud = settings.cloud
    limiter = limiter or build_rate_limiter(settings.rate_limit, settings.store)
    http = httpx.AsyncClient(timeout=cloud.timeout_seconds)

    def default_gemini(api_key: str) -> GeminiClient:
        return GeminiClient(
            api_key,
            model=cloud.proxy_model,
            base_url=cloud.base_url,
            default_retry_after=cloud.default_retry_after_seconds,
            client=http,
        )

    make_gemini = gemini_factory or default_gemini

    app = FastAPI(title="reader-ai summary proxy")
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=cloud.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.limiter = limiter

    @app.on_event("startup")
    async def _startup() -> None:
        app.state.sweeper = asyncio.create_task(
            sweep_periodically(limiter, settings.rate_limit.sweep_interval_seconds)
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
        await limiter.aclose()
        await http.aclose()

    async def _handle(request: Request, rec: RequestLogRecord) -> JSONResponse:
        api_key = cloud.api_key
        if not api_key:
            logger.error("GEMINI_API_KEY not configured")
            return JSONResponse(
                {"error": "Summarization service not configured", "code": ErrorKind.SERVICE_UNAVAILABLE.value},
                status_code=503,
            )

        subject = client_subject(request.headers)
        decision = await limiter.peek(subject)
        if not decision.allowed:
            logger.info("Rate limit exceeded for %s", subject)
            return _rate_limited(decision)

        try:
            body = json.loads(await request.body())
        except ValueError:
            return _failure_response(invalid_input("Invalid JSON body"), decision.headers())
        try:
            text, length = validate_body(body, min_chars=cloud.min_text_chars, max_chars=cloud.max_text_chars)
        except InferenceFailure as e:
            return _failure_response(e, decision.headers())
        rec.input_chars = len(text)
        rec.length = length.value

        # Only requests that will reach Gemini count against the quota.
        decision = await limiter.check(subject)
        headers = decision.headers()
        if not decision.allowed:
            logger.info("Rate limit exceeded for %s", subject)
            return _rate_limited(decision)

        try:
            completion = await make_gemini(api_key).summarize(
                text,
                length,
                output_language=cloud.output_language,
                max_input_chars=cloud.max_input_chars,
            )
        except InferenceFailure as e:
            logger.warning("Gemini failed (%s): %s", e.kind.value, e.message)
            return _failure_response(e, headers)

        rec.summary_chars = len(completion.text)
        rec.tokens_used = completion.tokens_used
        return JSONResponse(
            {
                "summary": completion.text,
                "model": completion.model,
                "length": length.value,
                "tokensUsed": completion.tokens_used,
            },
            status_code=200,
            headers=headers,
        )

    @app.post("/summarize")
    async def summarize(request: Request) -> JSONResponse:
        started = time.perf_counter()
        rec = RequestLogRecord(ts=time.time(), latency_ms=0.0, status=0, input_chars=0, summary_chars=0)
        response = await _handle(request, rec)

        rec.latency_ms = (time.perf_counter() - started) * 1000.0
        rec.status = response.status_code
        if response.status_code != 200:
            rec.error = json.loads(response.body).get("error")
        if analytics is not None:
            analytics.append_request(rec)
        logger.info(
            "summarize status=%d latency_ms=%.1f input_chars=%d summary_chars=%d",
            rec.status,
            rec.latency_ms,
            rec.input_chars,
            rec.summary_chars,
        )
        return response

    @app.api_route("/summarize", methods=["GET", "PUT", "PATCH", "DELETE", "OPTIONS"])
    async def summarize_usage() -> JSONResponse:
        return JSONResponse(_usage(settings), status_code=405)

    return app


__all__ = ["create_app", "client_subject", "validate_body"]
