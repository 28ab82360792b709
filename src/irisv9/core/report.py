"""
Report Assembler
Runs the pipeline for both eyes, applies the side-failure policy and builds
the AnalysisReport, plus text/table renderings and persistence helpers.
"""

import asyncio
from datetime import datetime, timezone

import pandas as pd

from irisv9.core.aggregator import DEFAULT_POLICY
from irisv9.core.errors import PipelineStageError, SideAnalysisError
from irisv9.core.orchestrator import console_log, execute_pipeline
from irisv9.core.prompts import DEFAULT_CATALOG
from irisv9.models.schemas import AnalysisReport, SideFailure

SIDE_FAILURE_POLICIES = ("abort", "partial")
HISTORY_KEY = "analysis-history"


def report_key(report_id):
    return f"report-{report_id}"


async def analyze_report(left_image, right_image, questionnaire, call_llm, on_progress=None, add_log=None,
                         options=None, catalog=DEFAULT_CATALOG, pipeline_config=None, policy=DEFAULT_POLICY,
                         side_failure="abort", now=None):
    """
    Analyse both irises concurrently and assemble the report.

    Args:
        side_failure: 'abort' raises SideAnalysisError when either side fails;
            'partial' records the failure and leaves that side empty.
        now: Optional datetime used for the report id and timestamp.

    Raises:
        SideAnalysisError: a side failed under 'abort', or both sides failed.
    """
    if side_failure not in SIDE_FAILURE_POLICIES:
        raise ValueError(f"side_failure must be one of {SIDE_FAILURE_POLICIES}, got {side_failure!r}")
    add_log = add_log or console_log
    now = now or datetime.now(timezone.utc)

    def side_progress(side):
        if on_progress is None:
            return None
        return lambda stage, percent: on_progress(f"{side}: {stage}", percent)

    def side_log(side):
        return lambda level, message: add_log(level, f"[{side}] {message}")

    results = await asyncio.gather(
        *(
            execute_pipeline(image, side, questionnaire, call_llm,
                             on_progress=side_progress(side), add_log=side_log(side),
                             options=options, catalog=catalog, pipeline_config=pipeline_config, policy=policy)
            for side, image in (("left", left_image), ("right", right_image))
        ),
        return_exceptions=True,
    )

    analyses = {}
    failures = []
    for side, result in zip(("left", "right"), results):
        if isinstance(result, PipelineStageError):
            if side_failure == "abort":
                raise SideAnalysisError(side, result) from result
            add_log("warning", f"{side} iris left out of the report: {result}")
            failures.append(SideFailure(side=side, stage=result.stage, code=result.code, message=result.message))
            analyses[side] = None
        elif isinstance(result, BaseException):
            raise result
        else:
            analyses[side] = result

    if all(analysis is None for analysis in analyses.values()):
        first = results[0]
        raise SideAnalysisError("left", first) from first

    report = AnalysisReport(
        id=str(int(now.timestamp() * 1000)),
        timestamp=now.isoformat(),
        questionnaire_data=questionnaire,
        left_iris=analyses["left"],
        right_iris=analyses["right"],
        left_iris_image=left_image,
        right_iris_image=right_image,
        failures=failures,
    )
    report.summary = build_summary(report)
    return report


def _side_summary(label, analysis):
    concern = [z.organ for z in analysis.zones if z.status == "concern"]
    attention = [z.organ for z in analysis.zones if z.status == "attention"]
    weakest = min(analysis.system_scores, key=lambda s: s.score)

    parts = [f"{label} iris: overall health {analysis.overall_health}/100"]
    if concern:
        parts.append(f"concern zones: {', '.join(concern)}")
    if attention:
        parts.append(f"attention zones: {', '.join(attention)}")
    if not concern and not attention:
        parts.append("no flagged zones")
    parts.append(f"weakest system: {weakest.system} ({weakest.score})")
    return "; ".join(parts) + "."


def build_summary(report):
    """Plain-text summary derived only from the report's own data"""
    lines = []
    failures = {f.side: f for f in report.failures}
    for side, analysis in (("left", report.left_iris), ("right", report.right_iris)):
        label = side.capitalize()
        if analysis is not None:
            lines.append(_side_summary(label, analysis))
        elif side in failures:
            failure = failures[side]
            lines.append(f"{label} iris: not analysed ({failure.stage} {failure.code}: {failure.message}).")
    return "\n".join(lines)


def render_text_report(report, config=None):
    """Human-readable report, the format saved next to the JSON by the CLI"""
    lines = [
        "Iridology Analysis Report",
        "=================================",
        f"Report ID: {report.id}",
        f"Date: {report.timestamp}",
    ]
    if config:
        lines.append(f"Version: {config['version']}")
        lines.append(f"Model: {config['model']['name']}")

    q = report.questionnaire_data
    lines += [
        "",
        "PATIENT:",
        f"• Age: {q.age}, gender: {q.gender}, BMI: {q.bmi:.1f}",
    ]
    if q.goals:
        lines.append(f"• Goals: {', '.join(q.goals)}")
    if q.complaints:
        lines.append(f"• Complaints: {q.complaints}")

    lines += ["", "SUMMARY:", report.summary or "(none)"]

    for side, analysis in (("LEFT", report.left_iris), ("RIGHT", report.right_iris)):
        lines += ["", f"--- {side} IRIS ---"]
        if analysis is None:
            lines.append("Not analysed.")
            continue
        lines.append(f"Overall health: {analysis.overall_health}/100")
        lines.append("")
        lines.append("Zones:")
        for zone in analysis.zones:
            lines.append(f"  {zone.id:>2}. {zone.name:<7} {zone.organ:<17} {zone.status:<9} {zone.findings}")
        lines.append("")
        lines.append("System scores:")
        for score in analysis.system_scores:
            lines.append(f"  • {score.system}: {score.score} ({score.description})")
        lines.append("")
        lines.append("Artifacts:")
        if not analysis.artifacts:
            lines.append("  none")
        for artifact in analysis.artifacts:
            lines.append(f"  • {artifact.type} at {artifact.location} [{artifact.severity}]: {artifact.description}")

    if report.failures:
        lines += ["", "FAILURES:"]
        for failure in report.failures:
            lines.append(f"• {failure.side} iris, {failure.stage}: {failure.code} - {failure.message}")

    return "\n".join(lines) + "\n"


def analysis_to_frame(analysis):
    """Zones of one analysis as a DataFrame (one row per zone)"""
    rows = [
        {
            "side": analysis.side,
            "zone": zone.id,
            "name": zone.name,
            "organ": zone.organ,
            "status": zone.status,
            "findings": zone.findings,
            "angle_start": zone.angle[0],
            "angle_end": zone.angle[1],
        }
        for zone in analysis.zones
    ]
    return pd.DataFrame(rows)


def report_to_frame(report):
    """Zones of both sides stacked into one DataFrame"""
    frames = [analysis_to_frame(a) for a in (report.left_iris, report.right_iris) if a is not None]
    if not frames:
        return pd.DataFrame(columns=["side", "zone", "name", "organ", "status", "findings", "angle_start", "angle_end"])
    return pd.concat(frames, ignore_index=True)


def save_report(store, report):
    store.set(report_key(report.id), report.model_dump(by_alias=True, mode='json'))
    history = store.get(HISTORY_KEY) or []
    if report.id not in history:
        history.append(report.id)
        store.set(HISTORY_KEY, history)


def load_report(store, report_id):
    data = store.get(report_key(report_id))
    if data is None:
        return None
    return AnalysisReport.model_validate(data)


def list_reports(store):
    """Saved report ids, oldest first"""
    return list(store.get(HISTORY_KEY) or [])
