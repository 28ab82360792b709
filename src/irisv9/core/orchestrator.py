"""
Pipeline Orchestrator
Runs the v9 stages for one iris side:

    STEP1 calibration -> STEP2A structural + STEP2B pigment -> aggregation

Calibration gates everything after it. Both detectors only read the
calibration payload, so they may run concurrently. Progress and log lines go
through the injected on_progress / add_log callbacks.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime

from irisv9.core.aggregator import DEFAULT_POLICY, aggregate
from irisv9.core.errors import LOW_QUALITY, QUALITY_CODES, CalibrationRejectedError, PipelineStageError
from irisv9.core.prompts import DEFAULT_CATALOG, apply_pipeline_config, single_prompt_catalog
from irisv9.core.stage_executor import ONE, STEP1, STEP2A, STEP2B, run_stage
from irisv9.models.schemas import IrisAnalysis, StepError
from irisv9.utils.image_io import image_hash

SIDE_CODES = {"left": "L", "right": "R"}

PROGRESS_CALIBRATION = 10
PROGRESS_DETECTION = 30
PROGRESS_DETECTOR_STEP = 20
PROGRESS_AGGREGATION = 80
PROGRESS_DONE = 100


@dataclass(frozen=True)
class PipelineOptions:
    retries: int = 2
    retry_backoff: float = 0.0
    concurrent_detection: bool = True

    @classmethod
    def from_config(cls, config):
        pipeline = config.get('pipeline', {})
        return cls(
            retries=pipeline.get('retries', 2),
            retry_backoff=pipeline.get('retry_backoff', 0.0),
            concurrent_detection=pipeline.get('concurrent_detection', True),
        )


def console_log(level, message):
    """Default log sink: timestamped line on stdout"""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"{timestamp} [{level.upper()}] {message}")


def _ignore_progress(stage_name, percent):
    pass


def _number(value):
    return str(int(value)) if float(value).is_integer() else str(value)


def build_template_variables(side, img_hash, questionnaire):
    """Placeholder values shared by every stage template"""
    q = questionnaire
    return {
        "side": SIDE_CODES[side],
        "imageHash": img_hash,
        "age": str(q.age),
        "gender": q.gender,
        "bmi": f"{q.bmi:.1f}",
        "weight": _number(q.weight),
        "height": _number(q.height),
        "goals": ", ".join(q.goals),
        "healthStatus": ", ".join(q.health_status),
        "complaints": q.complaints or "None",
        "dietaryHabits": ", ".join(q.dietary_habits),
        "stressLevel": q.stress_level,
        "sleepHours": _number(q.sleep_hours),
        "sleepQuality": q.sleep_quality,
        "activityLevel": q.activity_level,
        "medications": q.medications,
        "allergies": q.allergies,
    }


def geo_to_json(geo):
    """Compact JSON of the calibration payload, embedded in detector prompts"""
    return json.dumps(geo.model_dump(by_alias=True, mode='json'), ensure_ascii=False, separators=(',', ':'))


def _fail(result, side, add_log):
    error = PipelineStageError.from_step_error(result, side)
    add_log("error", f"[{error.stage}] {error.code}: {error.message}")
    raise error


def _rejection(geo, side):
    code = next((reason for reason in geo.reject_reasons if reason in QUALITY_CODES), LOW_QUALITY)
    message = ", ".join(geo.reject_reasons) or "Image rejected by calibration"
    return CalibrationRejectedError("STEP1", code, message, can_retry=False, side=side)


async def execute_single_prompt(image, side, variables, call_llm, step, catalog, options,
                                on_progress, add_log):
    """One image-bearing call whose answer must already be a complete analysis"""
    catalog = single_prompt_catalog(catalog, step)
    name = step.name or step.id

    add_log("info", f"Using single prompt \"{name}\" for {side} iris")
    on_progress(name, PROGRESS_CALIBRATION)
    on_progress(name, PROGRESS_DETECTION)

    result = await run_stage(ONE, variables, call_llm, image_data=image.data_url, catalog=catalog,
                             retries=options.retries, retry_backoff=options.retry_backoff, add_log=add_log)
    if isinstance(result, StepError):
        _fail(result, side, add_log)

    analysis = IrisAnalysis(side=side, **result.analysis.model_dump())
    on_progress(name, PROGRESS_DONE)
    add_log("success", f"Analysis complete: {len(analysis.zones)} zones, {len(analysis.artifacts)} artifacts")
    return analysis


async def execute_pipeline(image, side, questionnaire, call_llm, on_progress=None, add_log=None,
                           options=None, catalog=DEFAULT_CATALOG, pipeline_config=None,
                           policy=DEFAULT_POLICY):
    """
    Analyse one iris.

    Args:
        image: IrisImage to analyse.
        side: 'left' or 'right'.
        questionnaire: QuestionnaireData, read only.
        call_llm: async (prompt, json_mode, retries, image_data=None) -> str.
        on_progress: (stage_name, percent) callback, percent never decreases.
        add_log: (level, message) sink; defaults to console_log.
        options: PipelineOptions (retry budget, backoff, concurrency). The
            inter-request delay belongs to the LLM gateway.
        catalog: PromptCatalog with the stage templates.
        pipeline_config: Optional admin PipelineConfig; a single enabled step
            switches to single-prompt mode.
        policy: ScoringPolicy used by the aggregator.

    Returns:
        IrisAnalysis for this side.

    Raises:
        CalibrationRejectedError: calibration judged the image unusable.
        PipelineStageError: any stage failed after its retries.
    """
    on_progress = on_progress or _ignore_progress
    add_log = add_log or console_log
    options = options or PipelineOptions()

    variables = build_template_variables(side, image_hash(image.data_url), questionnaire)

    if pipeline_config is not None and pipeline_config.is_single_prompt_mode():
        step = pipeline_config.enabled_steps()[0]
        return await execute_single_prompt(image, side, variables, call_llm, step, catalog, options,
                                           on_progress, add_log)

    catalog = apply_pipeline_config(catalog, pipeline_config)
    stage_kwargs = dict(catalog=catalog, retries=options.retries,
                        retry_backoff=options.retry_backoff, add_log=add_log)

    add_log("info", f"Starting v9 pipeline for {side} iris ({variables['imageHash']})")
    on_progress(STEP1.name, PROGRESS_CALIBRATION)

    geo = await run_stage(STEP1, variables, call_llm, image_data=image.data_url, **stage_kwargs)
    if isinstance(geo, StepError):
        _fail(geo, side, add_log)

    add_log("info", f"[STEP1] Quality score: {geo.quality.score0_100:g}/100, ok={geo.ok}")
    if not geo.ok:
        rejection = _rejection(geo, side)
        add_log("error", f"[STEP1] {rejection.code}: image rejected ({rejection.message})")
        raise rejection
    add_log("success", "[STEP1] Geometry calibrated")

    variables = dict(variables, step1_json=geo_to_json(geo))
    on_progress("Detection", PROGRESS_DETECTION)
    progress = {"value": PROGRESS_DETECTION}

    async def detect(spec):
        result = await run_stage(spec, variables, call_llm, image_data=image.data_url, geo=geo, **stage_kwargs)
        progress["value"] += PROGRESS_DETECTOR_STEP
        on_progress(spec.name, progress["value"])
        return result

    if options.concurrent_detection:
        structural, pigment = await asyncio.gather(detect(STEP2A), detect(STEP2B))
    else:
        structural = await detect(STEP2A)
        pigment = await detect(STEP2B)

    for result in (structural, pigment):
        if isinstance(result, StepError):
            _fail(result, side, add_log)

    add_log("info", f"[STEP2A] Structural findings: {len(structural.findings)}")
    add_log("info", f"[STEP2B] Pigment findings: {len(pigment.findings)}")
    if pigment.global_ is not None:
        add_log("info", f"[STEP2B] Constitution: {pigment.global_.constitution}, "
                        f"disposition: {pigment.global_.disposition}")

    on_progress("Aggregation", PROGRESS_AGGREGATION)
    analysis = aggregate(geo, structural, pigment, side, policy)

    add_log("success", f"v9 pipeline complete for {side} iris")
    add_log("info", f"Result: {len(analysis.zones)} zones, {len(analysis.artifacts)} artifacts, "
                    f"health: {analysis.overall_health}/100")
    on_progress("Done", PROGRESS_DONE)
    return analysis
