import asyncio
import json
import os
import sys
import unittest

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from pipeline_fixtures import (
    DATA_URL,
    GEO_OK,
    PIGMENT_EMPTY,
    STRUCTURAL_EMPTY,
    FakeLLM,
    geo_rejected,
    happy_llm,
    lacuna,
    make_image,
    make_questionnaire,
    pigment_spot,
    pigment_with,
    structural_with,
)

from irisv9.core.errors import FORMAT_FAIL, LOW_QUALITY, NO_LIMBUS, PREREQ_FAIL, CalibrationRejectedError, PipelineStageError
from irisv9.core.orchestrator import PipelineOptions, build_template_variables, execute_pipeline
from irisv9.core.prompts import PipelineConfig, PipelineStepConfig
from irisv9.models.schemas import IrisAnalysis
from irisv9.utils.image_io import image_hash

FAST = PipelineOptions(retries=2, retry_backoff=0.0)


class Recorder:
    def __init__(self):
        self.progress = []
        self.logs = []

    def on_progress(self, stage, percent):
        self.progress.append((stage, percent))

    def add_log(self, level, message):
        self.logs.append((level, message))

    def messages(self, level=None):
        return [m for lvl, m in self.logs if level is None or lvl == level]


def one_prompt_analysis():
    zones = [
        {"id": i + 1, "name": f"z{i + 1}", "organ": "organ", "status": "normal", "findings": "clear",
         "angle": [i * 30, (i + 1) * 30]}
        for i in range(12)
    ]
    scores = [
        {"system": name, "score": 80, "description": "ok"}
        for name in ("Digestive", "Immune", "Nervous", "Cardiovascular", "Detox", "Endocrine")
    ]
    return {"analysis": {"zones": zones, "artifacts": [], "overallHealth": 80, "systemScores": scores}}


class TemplateVariablesTest(unittest.TestCase):

    def test_questionnaire_variables(self):
        q = make_questionnaire()
        variables = build_template_variables("left", "img_1", q)

        self.assertEqual(variables["side"], "L")
        self.assertEqual(variables["imageHash"], "img_1")
        self.assertEqual(variables["age"], "42")
        self.assertEqual(variables["bmi"], "23.5")
        self.assertEqual(variables["weight"], "68")
        self.assertEqual(variables["sleepHours"], "6.5")
        self.assertEqual(variables["goals"], "energy, sleep")
        self.assertEqual(variables["dietaryHabits"], "vegetarian")
        self.assertEqual(build_template_variables("right", "x", q)["side"], "R")

    def test_empty_complaints(self):
        variables = build_template_variables("left", "img_1", make_questionnaire(complaints=""))
        self.assertEqual(variables["complaints"], "None")


class ExecutePipelineTest(unittest.IsolatedAsyncioTestCase):

    async def run_pipeline(self, llm, side="left", **kwargs):
        recorder = Recorder()
        kwargs.setdefault("options", FAST)
        result = await execute_pipeline(
            make_image(side), side, make_questionnaire(), llm,
            on_progress=recorder.on_progress, add_log=recorder.add_log, **kwargs
        )
        return result, recorder

    async def test_clean_image(self):
        llm = happy_llm()
        analysis, recorder = await self.run_pipeline(llm)

        self.assertIsInstance(analysis, IrisAnalysis)
        self.assertEqual(analysis.overall_health, 85)
        self.assertTrue(all(z.status == "normal" for z in analysis.zones))
        self.assertEqual([c["stage"] for c in llm.calls][0], "STEP1")
        self.assertEqual(sorted(c["stage"] for c in llm.calls[1:]), ["STEP2A", "STEP2B"])
        self.assertTrue(all(c["image_data"] == DATA_URL for c in llm.calls))

    async def test_detection_prompts_embed_calibration_json(self):
        llm = happy_llm()
        await self.run_pipeline(llm)

        for call in llm.calls_for("STEP2A") + llm.calls_for("STEP2B"):
            self.assertIn('"ringGroups":{"IPB":[0,0]', call["prompt"])
            self.assertIn(f'"imgId":"{image_hash(DATA_URL)}"', call["prompt"])
            self.assertNotIn("{{step1_json}}", call["prompt"])

    async def test_lacuna_scenario(self):
        llm = happy_llm(structural=structural_with(lacuna((10, 12), confidence=0.9)))
        analysis, _ = await self.run_pipeline(llm, side="right")

        self.assertEqual(analysis.side, "right")
        self.assertEqual(analysis.zones[2].status, "concern")
        self.assertEqual(analysis.overall_health, 78)
        self.assertEqual(len(analysis.artifacts), 1)

    async def test_rejected_calibration_short_circuits(self):
        llm = FakeLLM({"STEP1": geo_rejected("NO_LIMBUS"), "STEP2A": STRUCTURAL_EMPTY, "STEP2B": PIGMENT_EMPTY})

        with self.assertRaises(CalibrationRejectedError) as ctx:
            await self.run_pipeline(llm)

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(ctx.exception.code, NO_LIMBUS)
        self.assertEqual(ctx.exception.stage, "STEP1")
        self.assertFalse(ctx.exception.can_retry)
        self.assertEqual(ctx.exception.side, "left")

    async def test_rejection_without_known_code_is_low_quality(self):
        llm = FakeLLM({"STEP1": geo_rejected("too blurry")})
        with self.assertRaises(CalibrationRejectedError) as ctx:
            await self.run_pipeline(llm)
        self.assertEqual(ctx.exception.code, LOW_QUALITY)
        self.assertIn("too blurry", ctx.exception.message)

    async def test_retry_exhaustion(self):
        llm = FakeLLM({"STEP1": GEO_OK, "STEP2A": "{ broken", "STEP2B": PIGMENT_EMPTY})

        with self.assertRaises(PipelineStageError) as ctx:
            await self.run_pipeline(llm)

        self.assertEqual(ctx.exception.code, FORMAT_FAIL)
        self.assertEqual(ctx.exception.stage, "STEP2A")
        self.assertEqual(len(llm.calls_for("STEP2A")), 3)
        self.assertIn("STEP2A", str(ctx.exception))

    async def test_calibration_format_failure_skips_detection(self):
        llm = FakeLLM({"STEP1": "no json here"})
        with self.assertRaises(PipelineStageError) as ctx:
            await self.run_pipeline(llm)
        self.assertEqual(ctx.exception.stage, "STEP1")
        self.assertEqual(len(llm.calls), 3)
        self.assertEqual(llm.calls_for("STEP2A"), [])

    async def test_model_reported_prereq_fail(self):
        error = {"error": {"stage": "STEP2B", "code": PREREQ_FAIL, "message": "geo unusable", "canRetry": True}}
        llm = FakeLLM({"STEP1": GEO_OK, "STEP2A": STRUCTURAL_EMPTY, "STEP2B": error})
        with self.assertRaises(PipelineStageError) as ctx:
            await self.run_pipeline(llm)
        self.assertEqual(ctx.exception.code, PREREQ_FAIL)
        self.assertEqual(len(llm.calls_for("STEP2B")), 1)

    async def test_progress_is_monotonic_and_complete(self):
        recorder = Recorder()
        await execute_pipeline(make_image(), "left", make_questionnaire(), happy_llm(),
                               on_progress=recorder.on_progress, add_log=recorder.add_log, options=FAST)

        percents = [p for _, p in recorder.progress]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[0], 10)
        self.assertEqual(percents[-1], 100)

    async def test_logs_report_quality_and_counts(self):
        llm = happy_llm(pigment=pigment_with(pigment_spot(), pigment_spot((30, 31))))
        _, recorder = await self.run_pipeline(llm)

        info = " | ".join(recorder.messages("info"))
        self.assertIn("Quality score: 88/100", info)
        self.assertIn("Structural findings: 0", info)
        self.assertIn("Pigment findings: 2", info)
        self.assertIn("Constitution: LYM", info)
        self.assertTrue(recorder.messages("success"))

    async def test_failure_is_logged_with_stage_and_code(self):
        llm = FakeLLM({"STEP1": GEO_OK, "STEP2A": STRUCTURAL_EMPTY, "STEP2B": "nope"})
        recorder = Recorder()
        with self.assertRaises(PipelineStageError):
            await execute_pipeline(make_image(), "left", make_questionnaire(), llm,
                                   on_progress=recorder.on_progress, add_log=recorder.add_log, options=FAST)
        errors = recorder.messages("error")
        self.assertTrue(any("[STEP2B] FORMAT_FAIL" in message for message in errors))

    async def test_detectors_run_concurrently(self):
        started = []
        release = asyncio.Event()

        async def slow_llm(prompt, json_mode, retries, image_data=None):
            if "iris_geo_calibrator_v9" in prompt:
                return json.dumps(GEO_OK)
            started.append(prompt[:40])
            if len(started) == 2:
                release.set()
            await asyncio.wait_for(release.wait(), timeout=2)
            if "iris_detector_struct_v9" in prompt:
                return json.dumps(STRUCTURAL_EMPTY)
            return json.dumps(PIGMENT_EMPTY)

        analysis, _ = await self.run_pipeline(slow_llm)
        self.assertEqual(len(started), 2)
        self.assertEqual(analysis.overall_health, 85)

    async def test_sequential_detection(self):
        llm = happy_llm()
        options = PipelineOptions(retries=2, concurrent_detection=False)
        await self.run_pipeline(llm, options=options)
        self.assertEqual([c["stage"] for c in llm.calls], ["STEP1", "STEP2A", "STEP2B"])

    async def test_request_delay_is_left_to_the_gateway(self):
        options = PipelineOptions.from_config(
            {"pipeline": {"retries": 1, "request_delay": 30.0, "concurrent_detection": False}})
        self.assertFalse(hasattr(options, "request_delay"))

        analysis, _ = await asyncio.wait_for(self.run_pipeline(happy_llm(), options=options), timeout=5)
        self.assertEqual(analysis.overall_health, 85)

    async def test_admin_override_prompt(self):
        config = PipelineConfig(steps=[
            PipelineStepConfig(id="step1_geo_calibration", order=1),
            PipelineStepConfig(id="step2a_structural_detector", order=2,
                               prompt="ROLE: iris_detector_struct_v9 custom for {{side}} {{step1_json}}"),
            PipelineStepConfig(id="step2b_pigment_rings_detector", order=3),
        ])
        llm = happy_llm()
        await self.run_pipeline(llm, pipeline_config=config)

        prompt = llm.calls_for("STEP2A")[0]["prompt"]
        self.assertTrue(prompt.startswith("ROLE: iris_detector_struct_v9 custom for L {"))

    async def test_single_prompt_mode(self):
        config = PipelineConfig(steps=[
            PipelineStepConfig(id="one", name="One shot", order=1),
            PipelineStepConfig(id="step2a_structural_detector", enabled=False, order=2),
        ])
        llm = FakeLLM({"ONE": one_prompt_analysis()})
        analysis, recorder = await self.run_pipeline(llm, pipeline_config=config)

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(llm.calls[0]["stage"], "ONE")
        self.assertIn("bmi = 23.5", llm.calls[0]["prompt"])
        self.assertEqual(analysis.overall_health, 80)
        self.assertEqual(analysis.side, "left")
        self.assertEqual(recorder.progress[-1][1], 100)

    async def test_single_prompt_accepts_bare_analysis(self):
        config = PipelineConfig(steps=[PipelineStepConfig(id="one", order=1)])
        llm = FakeLLM({"ONE": one_prompt_analysis()["analysis"]})
        analysis, _ = await self.run_pipeline(llm, side="right", pipeline_config=config)
        self.assertEqual(analysis.side, "right")

    async def test_single_prompt_rejects_incomplete_analysis(self):
        config = PipelineConfig(steps=[PipelineStepConfig(id="one", order=1)])
        broken = one_prompt_analysis()
        broken["analysis"]["zones"] = broken["analysis"]["zones"][:11]
        llm = FakeLLM({"ONE": broken})

        with self.assertRaises(PipelineStageError) as ctx:
            await self.run_pipeline(llm, pipeline_config=config)
        self.assertEqual(ctx.exception.code, FORMAT_FAIL)
        self.assertEqual(ctx.exception.stage, "ONE")
        self.assertEqual(len(llm.calls), 3)

    async def test_single_prompt_uses_admin_prompt(self):
        config = PipelineConfig(steps=[
            PipelineStepConfig(id="custom", prompt="Analyse {{side}} iris of a {{age}} year old", order=1),
        ])
        llm = FakeLLM({"CUSTOM": one_prompt_analysis()})
        await self.run_pipeline(llm, pipeline_config=config)
        self.assertEqual(llm.calls[0]["prompt"], "Analyse L iris of a 42 year old")


if __name__ == '__main__':
    unittest.main()
