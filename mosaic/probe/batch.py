"""Probe many (provider, model) pairs and summarize the results."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

from pydantic import BaseModel, Field, ValidationError

from mosaic.backends.base import ProbeKind
from mosaic.cache.capability_cache import CapabilityCache
from mosaic.errors import UnknownProviderError
from mosaic.models.capabilities import MessageShape
from mosaic.models.probe import ModelProbeReport, ProbeAttempt, ProbeOutcome, ProbeResult
from mosaic.probe.client import INITIAL_VARIANT, ProbeClient
from mosaic.probe.inference import infer, summarize_probe_result

logger = logging.getLogger(__name__)

PROBE_TABLE_HEADERS = ("Provider", "Model", "Vision", "PDF", "PDF-Img", "Base64", "ImgFirst", "Shape")
QUICK_LIST_ENV_VARS = ("MOSAIC_QUICK_LIST", "QUICK_LIST_JSON")

SYM_YES = "Y"
SYM_NO = "N"
SYM_PARTIAL = "~"
SYM_NA = "-"


class QuickListEntry(BaseModel):
    provider: str
    model: str


class QuickListFile(BaseModel):
    version: str = "1.0.0"
    last_updated: float = 0.0
    models: list[QuickListEntry] = Field(default_factory=list)


def parse_pairs(raw: str) -> list[tuple[str, str]]:
    """Parse ``[{"provider": ..., "model": ...}, ...]``; raises ValueError."""
    try:
        data = json.loads(raw)
        entries = [QuickListEntry.model_validate(item) for item in data]
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        raise ValueError(f"invalid model list: {exc}") from exc
    return [(e.provider, e.model) for e in entries]


def load_quick_list(path: Path) -> list[tuple[str, str]] | None:
    try:
        document = QuickListFile.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValidationError) as exc:
        logger.warning("Ignoring unreadable quick list %s: %s", path, exc)
        return None
    return [(e.provider, e.model) for e in document.models]


def pairs_from_env() -> list[tuple[str, str]] | None:
    for name in QUICK_LIST_ENV_VARS:
        raw = os.environ.get(name)
        if raw:
            return parse_pairs(raw)
    return None


# --- Rows ---


@dataclass
class ProbeTableRow:
    provider: str
    model: str
    vision: str
    pdf_native: str
    pdf_images: str
    base64_required: str
    images_first: str
    shape: str
    report: ModelProbeReport = field(repr=False, compare=False)

    def cells(self) -> list[str]:
        return [
            self.provider,
            self.model,
            self.vision,
            self.pdf_native,
            self.pdf_images,
            self.base64_required,
            self.images_first,
            self.shape,
        ]


def truncate_model(model: str, max_len: int) -> str:
    if len(model) <= max_len:
        return model
    return "..." + model[-(max_len - 3):]


def _short_shape(shape: MessageShape) -> str:
    return shape.value.replace("openai.", "oai.").replace("anthropic.", "ant.").replace("gemini.", "gem.")


def format_row(report: ModelProbeReport, max_model_len: int = 40) -> ProbeTableRow:
    """Y supported, ~ vision with quirks, N unsupported, - unknown."""
    caps = report.capabilities
    summary = summarize_probe_result(report)
    known = caps.determined

    def flag(name: str, negative: str = SYM_NO) -> str:
        if name not in known:
            return SYM_NA
        return SYM_YES if getattr(caps, name) else negative

    vision = {"yes": SYM_YES, "partial": SYM_PARTIAL, "no": SYM_NO}.get(summary.vision, SYM_NA)
    return ProbeTableRow(
        provider=report.provider,
        model=truncate_model(report.model, max_model_len),
        vision=vision,
        pdf_native=flag("supports_pdf_native"),
        pdf_images=flag("supports_pdf_as_images"),
        base64_required=flag("requires_base64_images", SYM_NA),
        images_first=flag("requires_images_first", SYM_NA),
        shape=_short_shape(caps.message_shape) if "message_shape" in known else SYM_NA,
        report=report,
    )


def render_table(rows: Sequence[ProbeTableRow]) -> list[str]:
    widths = [max([len(h)] + [len(r.cells()[i]) for r in rows]) for i, h in enumerate(PROBE_TABLE_HEADERS)]
    header = " | ".join(h.ljust(w) for h, w in zip(PROBE_TABLE_HEADERS, widths))
    separator = "-+-".join("-" * w for w in widths)
    lines = [" | ".join(c.ljust(w) for c, w in zip(r.cells(), widths)) for r in rows]
    return [header, separator, *lines]


def render_minimal(rows: Sequence[ProbeTableRow]) -> list[str]:
    lines = []
    for row in rows:
        status = "OK" if summarize_probe_result(row.report).success else "FAIL"
        lines.append(f"{row.report.provider}:{row.report.model} - {status}")
    return lines


def _result_dict(result: ProbeResult | None) -> dict[str, Any] | None:
    if result is None:
        return None
    return {
        "outcome": "skipped" if result.skipped else result.outcome.value,
        "variant": result.variant.label if result.variant else None,
        "attempts": len(result.attempts),
        "signatures": [s.value for s in result.signatures],
        "error_code": result.error_code,
        "error_message": result.error_message,
        "latency": round(result.latency, 3),
    }


def report_to_dict(report: ModelProbeReport) -> dict[str, Any]:
    summary = summarize_probe_result(report)
    return {
        "provider": report.provider,
        "model": report.model,
        "probed_at": report.probed_at,
        "capabilities": report.capabilities.to_dict(),
        "summary": {"success": summary.success, "vision": summary.vision, "pdf": summary.pdf, "issues": summary.issues},
        "probes": {
            "text": _result_dict(report.text),
            "image": _result_dict(report.image),
            "pdf": _result_dict(report.pdf),
        },
        "error": report.error,
    }


def _failed_report(provider: str, model: str, message: str, probed_at: float) -> ModelProbeReport:
    text = ProbeResult(
        kind=ProbeKind.TEXT,
        attempts=[
            ProbeAttempt(
                variant=INITIAL_VARIANT,
                outcome=ProbeOutcome.INCONCLUSIVE,
                error_code="probe_error",
                error_message=message,
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
        capabilities=infer(text, probed_at=probed_at),
        error=message,
    )


async def probe_batch(
    pairs: Iterable[tuple[str, str]],
    *,
    write_cache: bool = False,
    json_output: bool = False,
    minimal: bool = False,
    client: ProbeClient | None = None,
    cache: CapabilityCache | None = None,
    echo: Callable[[str], None] | None = None,
    max_model_len: int = 40,
) -> list[ProbeTableRow]:
    """Probe each pair in turn; optionally print a table, status lines or JSON and write the cache."""
    client = client or ProbeClient()
    pairs = list(pairs)
    rows: list[ProbeTableRow] = []
    for i, (provider, model) in enumerate(pairs, start=1):
        logger.info("[%d/%d] Probing %s:%s", i, len(pairs), provider, model)
        try:
            report = await client.probe_model(provider, model)
        except UnknownProviderError as exc:
            logger.error("Cannot probe %s:%s: unknown provider %s", provider, model, exc)
            report = _failed_report(provider, model, f"unknown provider {provider!r}", client.clock())
        rows.append(format_row(report, max_model_len))

    if write_cache and cache is not None:
        await cache.ensure_loaded()
        written = sum(cache.record(r.report.provider, r.report.model, r.report.capabilities) for r in rows)
        await cache.flush()
        logger.info("Wrote %d of %d probe results to %s", written, len(rows), cache.store.location)

    if echo is not None:
        if json_output:
            echo(json.dumps([report_to_dict(r.report) for r in rows], indent=2))
        else:
            for line in render_minimal(rows) if minimal else render_table(rows):
                echo(line)
    return rows
