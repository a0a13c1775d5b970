"""
orchestrator.py — drives one scan through the three stages.

  uploaded → extracting → researching → refining → completed
                 └────────────┴─────────────┴──────→ failed

Only this module writes Scan.status. Every write is a compare-and-set
against the status this run last wrote, so a run never overwrites a status
it did not expect. Each stage's output is persisted before the scan advances.

Entry points:
  run_pipeline(scan_id, image_refs, hints)        scan must be 'uploaded'
  resume_pipeline(scan_id, from_stage, ...)       scan must be 'uploaded' or 'failed';
                                                  supplied outputs are never recomputed
  start_pipeline / start_resume                   same, as a background task with a
                                                  per-scan single-flight guard

No stage error escapes: failures end as status 'failed' plus a readable
error_message. Per-image analysis failures are recorded on the image and
only fail the run when every image failed.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import database as db
import image_analyzer
import market_search
from database import Scan, ScanImage
from errors import (
    AllImagesFailed, AnalysisFailed, IllegalTransition, NoUsableAnalysis, error_kind, format_user_error,
)
from merger import merge
from models import (
    ExtractedData, ImageAnalysisResult, RESUMABLE_FROM, ResearchResults, ScanStatus,
    Stage, Strategy, check_transition,
)
from refinement import refine
from research import research as run_research

logger = logging.getLogger(__name__)

_STAGE_ORDER = [Stage.EXTRACTION, Stage.RESEARCH, Stage.REFINEMENT]

# scan_id → running task, see start_pipeline()
_inflight: dict[str, asyncio.Task] = {}


# ── Public entry points ───────────────────────────────────────────────────────

async def run_pipeline(
    scan_id: str,
    image_refs: Optional[list[str]] = None,
    hints: Optional[list[str]] = None,
    strategy: Optional[Strategy] = None,
) -> Optional[Scan]:
    """
    Run all three stages for a freshly uploaded scan. New image references are
    registered first. Returns the final Scan record (None if it does not exist).
    """
    scan = await db.get_scan(scan_id)
    if scan is None:
        logger.error("[%s] run_pipeline: scan not found", scan_id)
        return None
    if scan.status is not ScanStatus.UPLOADED:
        logger.warning("[%s] run_pipeline: scan is '%s', not 'uploaded'; use resume_pipeline",
                       scan_id, scan.status.value)
        return scan

    known = {img.image_ref for img in await db.get_scan_images(scan_id)}
    for ref in image_refs or []:
        if ref not in known:
            await db.add_scan_image(scan_id, ref)
            known.add(ref)

    return await _run(scan_id, ScanStatus.UPLOADED, _STAGE_ORDER, None, None,
                      hints, strategy or Strategy.from_config(), resume=False)


async def resume_pipeline(
    scan_id: str,
    from_stage: Stage | str,
    extracted: Optional[ExtractedData] = None,
    research: Optional[ResearchResults] = None,
    hints: Optional[list[str]] = None,
    strategy: Optional[Strategy] = None,
) -> Optional[Scan]:
    """
    Re-enter the machine at `from_stage` and run forward.

    Upstream outputs come from the arguments, else from what the scan has
    persisted. A stage whose output is available is skipped, never re-run.
    """
    stage = Stage(from_stage)
    scan = await db.get_scan(scan_id)
    if scan is None:
        logger.error("[%s] resume_pipeline: scan not found", scan_id)
        return None
    if scan.status not in RESUMABLE_FROM:
        logger.warning("[%s] resume_pipeline: scan is '%s', only %s can be resumed",
                       scan_id, scan.status.value, "/".join(s.value for s in RESUMABLE_FROM))
        return scan

    if stage is not Stage.EXTRACTION:
        extracted = extracted or scan.extracted_data
    if stage is Stage.REFINEMENT:
        research = research or scan.research_results

    stages = _STAGE_ORDER[_STAGE_ORDER.index(stage):]
    if extracted is not None and Stage.EXTRACTION in stages:
        stages.remove(Stage.EXTRACTION)
    if research is not None and extracted is not None and Stage.RESEARCH in stages:
        stages.remove(Stage.RESEARCH)

    missing = [s for s in _STAGE_ORDER[:_STAGE_ORDER.index(stages[0])]
               if (s is Stage.EXTRACTION and extracted is None)
               or (s is Stage.RESEARCH and research is None)]
    if missing:
        message = f"Cannot resume from {stage.value}: no {missing[0].value} output available"
        logger.error("[%s] %s", scan_id, message)
        # a failed scan stays failed, only its message is replaced
        await db.compare_and_set_status(scan_id, scan.status, ScanStatus.FAILED, error_message=message)
        return await db.get_scan(scan_id)

    # supplied outputs become the scan's record of those stages
    if extracted is not None and extracted is not scan.extracted_data:
        await db.save_extracted_data(scan_id, extracted)
    if research is not None and research is not scan.research_results:
        await db.save_research_results(scan_id, research)

    logger.info("[%s] Resuming from %s (status %s), stages: %s",
                scan_id, stage.value, scan.status.value, ", ".join(s.value for s in stages))
    return await _run(scan_id, scan.status, stages, extracted, research,
                      hints, strategy or Strategy.from_config(), resume=True)


def start_pipeline(
    scan_id: str,
    image_refs: Optional[list[str]] = None,
    hints: Optional[list[str]] = None,
    strategy: Optional[Strategy] = None,
) -> asyncio.Task:
    """Fire-and-forget run_pipeline. A scan already in flight returns its task."""
    return _single_flight(scan_id, lambda: run_pipeline(scan_id, image_refs, hints, strategy))


def start_resume(
    scan_id: str,
    from_stage: Stage | str,
    extracted: Optional[ExtractedData] = None,
    research: Optional[ResearchResults] = None,
    hints: Optional[list[str]] = None,
    strategy: Optional[Strategy] = None,
) -> asyncio.Task:
    return _single_flight(
        scan_id, lambda: resume_pipeline(scan_id, from_stage, extracted, research, hints, strategy)
    )


def _single_flight(scan_id: str, factory: Callable[[], Awaitable]) -> asyncio.Task:
    task = _inflight.get(scan_id)
    if task is not None and not task.done():
        logger.warning("[%s] Pipeline already running, not starting another", scan_id)
        return task

    task = asyncio.create_task(factory(), name=f"scan-{scan_id}")
    _inflight[scan_id] = task

    def _done(t: asyncio.Task) -> None:
        if _inflight.get(scan_id) is t:
            del _inflight[scan_id]

    task.add_done_callback(_done)
    return task


# ── State machine ─────────────────────────────────────────────────────────────

async def _advance(scan_id: str, current: ScanStatus, new: ScanStatus, resume: bool = False) -> ScanStatus:
    check_transition(current, new, resume=resume)
    if not await db.compare_and_set_status(scan_id, current, new):
        raise IllegalTransition(
            f"Scan {scan_id} is no longer '{current.value}', refusing to move it to '{new.value}'"
        )
    logger.info("[%s] %s → %s", scan_id, current.value, new.value)
    return new


async def _fail(scan_id: str, current: ScanStatus, message: str, kind: Optional[str] = None) -> None:
    if current.is_terminal:
        # the scan moved on without us; re-read to avoid clobbering it
        scan = await db.get_scan(scan_id)
        if scan is None or scan.status.is_terminal:
            return
        current = scan.status
    if await db.compare_and_set_status(scan_id, current, ScanStatus.FAILED, error_message=message, error_kind=kind):
        logger.info("[%s] %s → failed (%s): %s", scan_id, current.value, kind, message)
    else:
        logger.warning("[%s] Could not mark failed: status is no longer '%s'", scan_id, current.value)


async def _run(
    scan_id: str,
    status: ScanStatus,
    stages: list[Stage],
    extracted: Optional[ExtractedData],
    research: Optional[ResearchResults],
    hints: Optional[list[str]],
    strategy: Strategy,
    resume: bool,
) -> Optional[Scan]:
    try:
        for stage in stages:
            status = await _advance(scan_id, status, stage.status, resume=resume)
            resume = False
            if stage is Stage.EXTRACTION:
                extracted = await _extraction_stage(scan_id, hints, strategy)
                await db.save_extracted_data(scan_id, extracted)
            elif stage is Stage.RESEARCH:
                research = await _research_stage(scan_id, extracted)
                await db.save_research_results(scan_id, research)
            else:
                findings = await _refinement_stage(scan_id, extracted, research, strategy)
                await db.save_refined_findings(scan_id, findings)
        status = await _advance(scan_id, status, ScanStatus.COMPLETED)
    except Exception as exc:
        logger.error("[%s] Pipeline failed in '%s': %s", scan_id, status.value, exc,
                     exc_info=not getattr(exc, "kind", None))
        await _fail(scan_id, status, format_user_error(exc), error_kind(exc))

    return await db.get_scan(scan_id)


# ── Stages ────────────────────────────────────────────────────────────────────

async def _extraction_stage(scan_id: str, hints: Optional[list[str]], strategy: Strategy) -> ExtractedData:
    t0 = time.monotonic()
    try:
        return await _extract(scan_id, hints, strategy)
    except Exception as exc:
        # per-image rows are already logged, this one records why the stage ended
        await _log_stage_failure(scan_id, Stage.EXTRACTION, strategy.extraction_provider, t0, exc)
        raise


async def _extract(scan_id: str, hints: Optional[list[str]], strategy: Strategy) -> ExtractedData:
    images = await db.get_scan_images(scan_id)
    if not images:
        raise NoUsableAnalysis("Scan has no images")

    # images analysed by an earlier run are reused as-is
    reused = [img.analysis_result for img in images if img.processed and img.analysis_result]
    pending = [img for img in images if not (img.processed and img.analysis_result)]
    logger.info("[%s] Extraction: %d image(s) to analyse, %d reused", scan_id, len(pending), len(reused))

    results = await asyncio.gather(*[_analyze_image(scan_id, img, hints, strategy) for img in pending])
    analyses = reused + [r for r in results if r is not None]
    if not analyses:
        raise AllImagesFailed(f"All {len(images)} image analyses failed")

    return merge(analyses)


async def _analyze_image(
    scan_id: str, image: ScanImage, hints: Optional[list[str]], strategy: Strategy,
) -> Optional[ImageAnalysisResult]:
    t0 = time.monotonic()
    try:
        result = await image_analyzer.analyze(image.image_ref, hints, strategy)
    except AnalysisFailed as exc:
        duration = int((time.monotonic() - t0) * 1000)
        logger.warning("[%s] Image %d failed: %s", scan_id, image.id, exc)
        await db.mark_image_failed(image.id, str(exc))
        await db.log_pipeline_run(
            scan_id, Stage.EXTRACTION.value, strategy.extraction_provider, duration, False,
            error_message=str(exc), details={"image_id": image.id},
        )
        return None

    duration = int((time.monotonic() - t0) * 1000)
    await db.record_image_analysis(image.id, result)
    usage = result.usage
    await db.log_pipeline_run(
        scan_id, Stage.EXTRACTION.value,
        usage.provider if usage else strategy.extraction_provider, duration, True,
        input_tokens=usage.input_tokens if usage else 0,
        output_tokens=usage.output_tokens if usage else 0,
        cost_usd=usage.cost_usd if usage else 0.0,
        details={"image_id": image.id, "image_type": result.image_type.value},
    )
    return result


async def _research_stage(scan_id: str, extracted: ExtractedData) -> ResearchResults:
    provider = await market_search.backend_names()
    t0 = time.monotonic()
    try:
        results = await run_research(extracted)
    except Exception as exc:
        await _log_stage_failure(scan_id, Stage.RESEARCH, provider, t0, exc)
        raise
    await db.log_pipeline_run(
        scan_id, Stage.RESEARCH.value, "cache" if results.from_cache else provider,
        int((time.monotonic() - t0) * 1000), True,
        details={
            "queries": len(results.search_queries),
            "listings": len(results.listings),
            "sold_listings": len(results.sold_listings),
            "from_cache": results.from_cache,
        },
    )
    return results


async def _refinement_stage(
    scan_id: str, extracted: ExtractedData, research: ResearchResults, strategy: Strategy,
):
    t0 = time.monotonic()
    try:
        findings = await refine(extracted, research, strategy)
    except Exception as exc:
        await _log_stage_failure(scan_id, Stage.REFINEMENT, strategy.refinement_provider, t0, exc)
        raise
    usage = findings.usage
    await db.log_pipeline_run(
        scan_id, Stage.REFINEMENT.value, findings.method, int((time.monotonic() - t0) * 1000), True,
        input_tokens=usage.input_tokens if usage else 0,
        output_tokens=usage.output_tokens if usage else 0,
        cost_usd=usage.cost_usd if usage else 0.0,
        details={"confidence": findings.confidence},
    )
    return findings


async def _log_stage_failure(scan_id: str, stage: Stage, provider: str, t0: float, exc: BaseException) -> None:
    kind = error_kind(exc)
    await db.log_pipeline_run(
        scan_id, stage.value, provider, int((time.monotonic() - t0) * 1000), False,
        error_message=f"{kind}: {exc}", details={"error_kind": kind},
    )
