"""
Stage Executor for the v9 iris pipeline.

One stage = interpolate the stage template, call the model in JSON mode,
parse the answer strictly and validate it against the stage schema. The
result is either the typed stage payload or a StepError; nothing malformed is
ever coerced into a payload.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Optional, Type

from pydantic import ValidationError

from irisv9.core.errors import FORMAT_FAIL, GATEWAY_FAIL, PERMANENT_CODES, PREREQ_FAIL
from irisv9.core.prompts import DEFAULT_CATALOG, get_prompt_for_stage
from irisv9.core.template import interpolate
from irisv9.models.llm_client import LLMGatewayError
from irisv9.models.schemas import (
    OnePromptResult,
    StagePayload,
    Step1GeoResult,
    Step2PigmentResult,
    Step2StructuralResult,
    StepError,
    StepErrorDetail,
)


@dataclass(frozen=True)
class StageSpec:
    stage: str
    name: str
    result_model: Type[StagePayload]
    requires_image: bool = True
    requires_geo: bool = False


STEP1 = StageSpec("STEP1", "Geometry calibration", Step1GeoResult)
STEP2A = StageSpec("STEP2A", "Structural detection", Step2StructuralResult, requires_geo=True)
STEP2B = StageSpec("STEP2B", "Pigment and ring detection", Step2PigmentResult, requires_geo=True)
ONE = StageSpec("ONE", "Single prompt analysis", OnePromptResult)

# Stage attempts are the only retry layer; each gateway call gets no retries of its own
GATEWAY_RETRIES = 0


@dataclass(frozen=True)
class PrereqStatus:
    ok: bool
    reason: str = ""


def step_error(stage, code, message, can_retry=False):
    return StepError(error=StepErrorDetail(stage=stage, code=code, message=message, can_retry=can_retry))


def validate_prerequisites(spec, geo=None):
    """Check that the calibration payload a stage depends on is usable"""
    if not spec.requires_geo:
        return PrereqStatus(ok=True)
    if geo is None:
        return PrereqStatus(ok=False, reason="Missing geo calibration payload")
    if isinstance(geo, StepError):
        return PrereqStatus(ok=False, reason=f"Upstream error detected: {geo.error.code}")
    if not geo.ok:
        return PrereqStatus(ok=False, reason="geo.ok must be true before continuing")
    return PrereqStatus(ok=True)


def strip_code_fences(text):
    """Remove a surrounding ```json ... ``` block if the model added one"""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        cleaned = cleaned[first_newline + 1:] if first_newline != -1 else cleaned[3:]
        if cleaned.rstrip().endswith("```"):
            cleaned = cleaned.rstrip()[:-3]
    return cleaned.strip()


def parse_stage_response(spec, text):
    """
    Parse raw model text into the stage payload.

    Returns:
        The validated payload, or a StepError when the text is not a JSON
        object, fails the schema, or is the model's own error object.
    """
    try:
        data = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        return step_error(spec.stage, FORMAT_FAIL, f"Invalid JSON: {e.msg} at position {e.pos}", can_retry=True)

    if not isinstance(data, dict):
        return step_error(spec.stage, FORMAT_FAIL, f"Expected a JSON object, got {type(data).__name__}", can_retry=True)

    if "error" in data:
        try:
            reported = StepError.model_validate(data)
        except ValidationError:
            return step_error(spec.stage, FORMAT_FAIL, "Malformed error object in response", can_retry=True)
        detail = reported.error
        if detail.code in PERMANENT_CODES:
            can_retry = False
        elif detail.code == FORMAT_FAIL:
            can_retry = True
        else:
            can_retry = detail.can_retry
        return step_error(detail.stage or spec.stage, detail.code, detail.message, can_retry)

    try:
        return spec.result_model.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        return step_error(
            spec.stage,
            FORMAT_FAIL,
            f"Schema mismatch ({e.error_count()} errors), first at {location}: {first['msg']}",
            can_retry=True,
        )


async def run_stage(spec, variables, call_llm, image_data=None, geo=None, catalog=DEFAULT_CATALOG,
                    retries=2, retry_backoff=0.0, add_log=None):
    """
    Run one pipeline stage.

    Args:
        spec: StageSpec of the stage to run.
        variables: Template variables; detection stages expect step1_json.
        call_llm: async (prompt, json_mode, retries, image_data) -> str, called
            with GATEWAY_RETRIES; this function owns the retry budget.
        image_data: Image data URL, sent only when the stage requires it.
        geo: Calibration result, checked before any call for stages that need it.
        catalog: PromptCatalog the stage template is read from.
        retries: Extra attempts after the first one for retryable failures.
        retry_backoff: Base delay in seconds, doubled on each further retry.
        add_log: Optional (level, message) sink for retry warnings.

    Returns:
        The stage payload model, or a StepError.
    """
    prereq = validate_prerequisites(spec, geo)
    if not prereq.ok:
        return step_error(spec.stage, PREREQ_FAIL, prereq.reason, can_retry=False)

    template = get_prompt_for_stage(spec.stage, catalog)
    prompt = interpolate(template.body, variables)
    image = image_data if spec.requires_image else None

    attempts = max(0, retries) + 1
    result: Optional[StepError] = None
    for attempt in range(1, attempts + 1):
        if attempt > 1:
            delay = retry_backoff * (2 ** (attempt - 2))
            if add_log:
                add_log("warning", f"[{spec.stage}] {result.error.code}: {result.error.message}; "
                                   f"retry {attempt - 1}/{attempts - 1}")
            if delay > 0:
                await asyncio.sleep(delay)

        try:
            text = await call_llm(prompt, True, GATEWAY_RETRIES, image)
        except LLMGatewayError as e:
            if not e.retryable:
                return step_error(spec.stage, GATEWAY_FAIL, str(e), can_retry=False)
            result = step_error(spec.stage, GATEWAY_FAIL, str(e), can_retry=True)
            continue
        except Exception as e:
            result = step_error(spec.stage, GATEWAY_FAIL, f"{type(e).__name__}: {e}", can_retry=True)
            continue

        parsed = parse_stage_response(spec, text)
        if not isinstance(parsed, StepError):
            return parsed
        result = parsed
        if not parsed.error.can_retry:
            return parsed

    return result
