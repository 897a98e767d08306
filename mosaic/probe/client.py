"""HTTP probe client.

Each probe kind runs as a small state machine::

    untried -> attempt(variant) -> success | classified_failure | inconclusive

A classified failure may move on to an alternate variant chosen from the
failure signature, bounded by ``max_retries``. Success and inconclusive
outcomes are terminal. Transport errors never escape this module; they come
back as inconclusive attempts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable

import httpx

from mosaic.backends.base import ProbeAdapter, ProbeKind, ProbeVariant, excerpt
from mosaic.backends.registry import adapter_for, requires_api_key
from mosaic.cache.static import provider_baseline
from mosaic.config import settings
from mosaic.models.probe import ModelProbeReport, ProbeAttempt, ProbeOutcome, ProbeResult, Signature
from mosaic.probe.classify import classify
from mosaic.probe.fixtures import PROBE_PROMPTS, media_for
from mosaic.probe.inference import infer

logger = logging.getLogger(__name__)

INITIAL_VARIANT = ProbeVariant()


class RetryMachine:
    """Chooses the next variant for one probe kind from the attempts so far."""

    def __init__(self, kind: ProbeKind, max_retries: int = 2) -> None:
        self.kind = kind
        self.max_retries = max_retries
        self.attempts: list[ProbeAttempt] = []

    @property
    def state(self) -> str:
        if not self.attempts:
            return "untried"
        return self.attempts[-1].outcome.value

    def record(self, attempt: ProbeAttempt) -> None:
        if self.attempts and self.attempts[-1].outcome is not ProbeOutcome.CLASSIFIED_FAILURE:
            raise RuntimeError(f"probe already finished in state {self.state}")
        self.attempts.append(attempt)

    def next_variant(self) -> ProbeVariant | None:
        if not self.attempts:
            return INITIAL_VARIANT
        last = self.attempts[-1]
        if last.outcome is not ProbeOutcome.CLASSIFIED_FAILURE:
            return None
        if len(self.attempts) > self.max_retries:
            return None
        tried = {a.variant for a in self.attempts}
        for candidate in self._candidates(last):
            if candidate not in tried:
                return candidate
        return None

    def _candidates(self, last: ProbeAttempt) -> list[ProbeVariant]:
        if self.kind is ProbeKind.TEXT:
            return []
        v = last.variant
        sig = last.signature
        if sig is Signature.BASE64_REQUIRED:
            return [replace(v, use_base64=True)]
        if sig is Signature.URL_REQUIRED:
            return [replace(v, use_base64=False)]
        if sig is Signature.IMAGES_FIRST_REQUIRED:
            return [replace(v, images_first=True)]
        if sig in (Signature.VISION_UNSUPPORTED, Signature.CONTENT_MUST_BE_STRING):
            return []
        if self.kind is ProbeKind.PDF and not v.as_page_images:
            # Native PDF rejected; see whether a rasterized page goes through.
            return [replace(v, as_page_images=True)]
        if sig is Signature.INVALID_CONTENT_TYPE:
            return [
                replace(v, use_base64=not v.use_base64),
                replace(v, images_first=not v.images_first),
                replace(v, use_base64=not v.use_base64, images_first=not v.images_first),
            ]
        return []


class ProbeClient:
    """Runs text, image and PDF probes against one provider endpoint."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout = settings.probe_timeout if timeout is None else timeout
        self.max_retries = settings.probe_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.probe_retry_delay if retry_delay is None else retry_delay
        self.transport = transport
        self.clock = clock

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def probe(
        self,
        provider: str,
        model: str,
        kind: ProbeKind,
        *,
        api_key: str | None = None,
        endpoint: str | None = None,
    ) -> ProbeResult:
        """Run a single probe kind, with retries."""
        adapter = adapter_for(provider)
        async with self._client() as client:
            return await self._run(client, adapter, kind, model, api_key, endpoint)

    async def probe_model(
        self,
        provider: str,
        model: str,
        *,
        api_key: str | None = None,
        endpoint: str | None = None,
    ) -> ModelProbeReport:
        """Text probe first; image and PDF probes concurrently once text works."""
        adapter = adapter_for(provider)
        api_key = api_key or settings.api_key_for(provider) or None
        endpoint = endpoint or settings.endpoint_for(provider)
        probed_at = self.clock()

        if api_key is None and requires_api_key(provider):
            logger.warning("No API key for %s; skipping probe of %s", provider, model)
            text = ProbeResult(
                kind=ProbeKind.TEXT,
                attempts=[
                    ProbeAttempt(
                        variant=INITIAL_VARIANT,
                        outcome=ProbeOutcome.INCONCLUSIVE,
                        error_code="missing_api_key",
                        error_message=f"no API key configured for {provider}",
                    )
                ],
            )
            return ModelProbeReport(
                provider=provider,
                model=model,
                probed_at=probed_at,
                text=text,
                image=None,
                pdf=None,
                capabilities=infer(text, baseline=provider_baseline(provider), probed_at=probed_at),
                error="missing API key",
            )

        async with self._client() as client:
            text = await self._run(client, adapter, ProbeKind.TEXT, model, api_key, endpoint)
            if text.success:
                image, pdf = await asyncio.gather(
                    self._run(client, adapter, ProbeKind.IMAGE, model, api_key, endpoint),
                    self._run(client, adapter, ProbeKind.PDF, model, api_key, endpoint),
                )
            else:
                image = ProbeResult.skipped_result(ProbeKind.IMAGE)
                pdf = ProbeResult.skipped_result(ProbeKind.PDF)

        capabilities = infer(text, image, pdf, baseline=provider_baseline(provider), probed_at=probed_at)
        logger.info(
            "Probed %s:%s (text=%s image=%s pdf=%s, %.2fs)",
            provider,
            model,
            text.outcome.value,
            image.outcome.value if not image.skipped else "skipped",
            pdf.outcome.value if not pdf.skipped else "skipped",
            text.latency + image.latency + pdf.latency,
        )
        return ModelProbeReport(
            provider=provider,
            model=model,
            probed_at=probed_at,
            text=text,
            image=image,
            pdf=pdf,
            capabilities=capabilities,
        )

    async def _run(
        self,
        client: httpx.AsyncClient,
        adapter: ProbeAdapter,
        kind: ProbeKind,
        model: str,
        api_key: str | None,
        endpoint: str | None,
    ) -> ProbeResult:
        machine = RetryMachine(kind, self.max_retries)
        variant = machine.next_variant()
        while variant is not None:
            if machine.attempts and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay)
            attempt = await self._attempt(client, adapter, kind, model, variant, api_key, endpoint)
            machine.record(attempt)
            logger.debug(
                "%s probe %s:%s [%s] -> %s %s",
                kind.value,
                adapter.provider,
                model,
                variant.label,
                attempt.outcome.value,
                attempt.signature.value if attempt.signature else "",
            )
            variant = machine.next_variant()

        result = ProbeResult(kind=kind, attempts=machine.attempts)
        if kind is ProbeKind.TEXT and result.success:
            result.message_shape = adapter.message_shape
            result.completion_shape = adapter.completion_shape
        if result.outcome is ProbeOutcome.INCONCLUSIVE:
            logger.warning(
                "%s probe for %s:%s inconclusive: %s",
                kind.value,
                adapter.provider,
                model,
                result.error_message or result.error_code or "no detail",
            )
        return result

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        adapter: ProbeAdapter,
        kind: ProbeKind,
        model: str,
        variant: ProbeVariant,
        api_key: str | None,
        endpoint: str | None,
    ) -> ProbeAttempt:
        request = adapter.build_probe_request(
            model,
            kind,
            PROBE_PROMPTS[kind],
            media_for(kind, variant),
            variant,
            api_key=api_key,
            endpoint=endpoint,
        )
        start = time.perf_counter()
        try:
            response = await client.post(request.url, headers=request.headers, json=request.json)
        except httpx.TimeoutException as exc:
            return ProbeAttempt(
                variant=variant,
                outcome=ProbeOutcome.INCONCLUSIVE,
                error_code="timeout",
                error_message=str(exc) or f"timed out after {self.timeout}s",
                latency=time.perf_counter() - start,
            )
        except httpx.HTTPError as exc:
            return ProbeAttempt(
                variant=variant,
                outcome=ProbeOutcome.INCONCLUSIVE,
                error_code="transport_error",
                error_message=str(exc) or type(exc).__name__,
                latency=time.perf_counter() - start,
            )
        latency = time.perf_counter() - start

        body: Any
        try:
            body = response.json()
        except ValueError:
            body = response.text
        parsed = adapter.parse_probe_response(response.status_code, body)
        outcome, signature = classify(response.status_code, parsed)
        return ProbeAttempt(
            variant=variant,
            outcome=outcome,
            http_status=response.status_code,
            signature=signature,
            error_code=parsed.error_code or (None if response.is_success else str(response.status_code)),
            error_message=parsed.error_message,
            response_excerpt=excerpt(parsed.text) if parsed.ok else "",
            latency=latency,
        )
