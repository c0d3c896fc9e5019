"""Drives one generation run from a chunk stream to a usable artifact.

The loop pulls :class:`GenerationChunk` values in arrival order, republishes
progress and code fragments through a :class:`StatusReporter`, and
accumulates code per component. A ``complete`` chunk replaces whatever was
accumulated for its component and ends the read. Any model failure switches
to the deterministic fallback generator, so a run that is not cancelled
always finishes ``COMPLETED`` with non-empty files.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional

from ..domain.models import AppSpec, GenerationLogEntry
from ..infrastructure.event_bus import StatusReporter
from ..observability.metrics import GENERATION_DURATION, GENERATION_RUNS
from ..observability.telemetry_sink import record_metric
from .code_generator import GenerationChunk, clean_generated_code, generate_app_code
from .fallback_generator import PAGE_FILE, TYPES_FILE, generate_fallback_files, generate_types_file
from .model_client import ModelClient
from .quality import QualityReport, verify_files
from .streaming import CancellationToken

logger = logging.getLogger("scaffolder.pipeline")

COMPONENT_FILES: Dict[str, str] = {
    "page": PAGE_FILE,
    "types": TYPES_FILE,
    "form": "components/EntryForm.tsx",
    "table": "components/DataTable.tsx",
    "chart": "components/DataChart.tsx",
}

LOW_QUALITY_SCORE = 60


def scale_progress(raw: int) -> int:
    """Map a 0-100 generator progress into the 30-90 window of the overall build."""
    return min(30 + (max(0, raw) * 6) // 10, 90)


class ChunkAccumulator:
    """Per-component concatenation of ``code`` chunks; ``complete`` supersedes them."""

    def __init__(self) -> None:
        self._parts: Dict[str, List[str]] = {}
        self._final: Dict[str, str] = {}

    def add(self, chunk: GenerationChunk) -> None:
        component = chunk.component or "page"
        if chunk.type == "code":
            if component not in self._final:
                self._parts.setdefault(component, []).append(chunk.content)
        elif chunk.type == "complete":
            self._final[component] = chunk.content
            self._parts.pop(component, None)

    def is_complete(self, component: str) -> bool:
        return component in self._final

    def text(self, component: str) -> str:
        if component in self._final:
            return self._final[component]
        return "".join(self._parts.get(component, []))

    def components(self) -> List[str]:
        seen = list(self._final)
        seen.extend(c for c in self._parts if c not in self._final)
        return seen

    def files(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for component in self.components():
            text = self.text(component)
            if text:
                out[COMPONENT_FILES.get(component, f"{component}.tsx")] = text
        return out


@dataclass
class GenerationResult:
    files: Dict[str, str]
    build_status: str
    used_fallback: bool = False
    quality_score: Optional[int] = None
    quality_reports: Dict[str, QualityReport] = field(default_factory=dict)
    log: List[GenerationLogEntry] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.build_status == "CANCELLED"


def _log(log: List[GenerationLogEntry], message: str, level: str = "info") -> None:
    log.append(GenerationLogEntry(level=level, message=message))


async def run_generation(
    spec: AppSpec,
    app_id: str,
    reporter: StatusReporter,
    *,
    source: Optional[AsyncIterator[GenerationChunk]] = None,
    client: Optional[ModelClient] = None,
    cancel: Optional[CancellationToken] = None,
    verify_quality: bool = True,
) -> GenerationResult:
    """Run the chunk loop; ``source`` defaults to a fresh model code stream for ``spec``."""
    started = time.perf_counter()
    if source is None:
        source = generate_app_code(spec, app_id, client=client, cancel=cancel)
    acc = ChunkAccumulator()
    log: List[GenerationLogEntry] = []
    _log(log, f"Generation started for {spec.name}")
    failure: Optional[str] = None

    try:
        async for chunk in source:
            if cancel is not None and cancel.cancelled:
                break
            if chunk.type == "status":
                reporter.emit("build", chunk.content, progress=scale_progress(chunk.progress))
            elif chunk.type == "code":
                acc.add(chunk)
                reporter.forward(
                    {
                        "type": "code",
                        "component": chunk.component or "page",
                        "content": chunk.content,
                        "progress": scale_progress(chunk.progress),
                    }
                )
            elif chunk.type == "complete":
                acc.add(chunk)
                break
            elif chunk.type == "error":
                failure = chunk.content or "Model stream reported an error"
                break
            else:
                logger.debug("chunk_ignored", extra={"chunk_type": chunk.type})
    except Exception as exc:
        failure = str(exc) or exc.__class__.__name__
        logger.warning("generation_stream_failed", extra={"app_id": app_id, "err": failure})
    finally:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()

    if cancel is not None and cancel.cancelled:
        files = acc.files()
        _log(log, f"Generation cancelled: {cancel.reason or 'Operation cancelled'}", "warning")
        reporter.emit(
            "build",
            "Generation cancelled. Partial code was saved.",
            severity="warning",
            progress=scale_progress(100),
            technical_details=f"{sum(len(v) for v in files.values())} characters kept",
        )
        reporter.release()
        return _finish(GenerationResult(files=files, build_status="CANCELLED", log=log), "cancelled", started, app_id)

    page = acc.text("page")
    if failure is None and not acc.is_complete("page"):
        page = clean_generated_code(page)
        if not page:
            failure = "Model stream ended without code"

    used_fallback = failure is not None
    if used_fallback:
        logger.warning("generation_fallback_used", extra={"app_id": app_id, "reason": failure})
        _log(log, f"Model generation failed, used fallback generator: {failure}", "warning")
        reporter.emit(
            "build",
            "Using template-based generation (AI unavailable)",
            severity="warning",
            progress=scale_progress(100),
            technical_details=failure,
        )
        files = generate_fallback_files(spec, app_id)
    else:
        files = acc.files()
        files[PAGE_FILE] = page
        files.setdefault(TYPES_FILE, generate_types_file(spec))
        _log(log, f"Model generation completed ({len(page)} characters)")

    result = GenerationResult(files=files, build_status="COMPLETED", used_fallback=used_fallback, log=log, error=failure)
    if verify_quality:
        _verify(result, reporter)
    return _finish(result, "fallback" if used_fallback else "model", started, app_id)


def _verify(result: GenerationResult, reporter: StatusReporter) -> None:
    # advisory only; a failing check never blocks persistence
    try:
        score, reports = verify_files(result.files)
    except Exception as exc:
        logger.warning("quality_check_failed", extra={"err": str(exc)})
        _log(result.log, f"Quality verification skipped: {exc}", "warning")
        return
    result.quality_score = score
    result.quality_reports = reports
    if score is None:
        return
    _log(result.log, f"Quality score: {score}/100")
    reporter.emit(
        "build",
        f"Quality check complete (score {score}/100)",
        severity="warning" if score < LOW_QUALITY_SCORE else "info",
        progress=95,
        technical_details="; ".join(
            f"{path}: {', '.join(r.syntax_errors + r.style_issues)}"
            for path, r in reports.items()
            if r.syntax_errors or r.style_issues
        )
        or None,
    )


def _finish(result: GenerationResult, outcome: str, started: float, app_id: str) -> GenerationResult:
    elapsed = time.perf_counter() - started
    GENERATION_RUNS.labels(outcome=outcome).inc()
    GENERATION_DURATION.observe(elapsed)
    record_metric(
        name="generation_run",
        value=round(elapsed, 3),
        properties={"app_id": app_id, "outcome": outcome, "quality_score": result.quality_score},
    )
    logger.info(
        "generation_finished",
        extra={"app_id": app_id, "outcome": outcome, "status": result.build_status, "files": sorted(result.files)},
    )
    return result
