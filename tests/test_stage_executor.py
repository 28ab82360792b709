import json
import os
import sys
import unittest
from unittest import mock

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from pipeline_fixtures import GEO_OK, STRUCTURAL_EMPTY, FakeLLM, geo_rejected, lacuna, structural_with

from irisv9.core.errors import FORMAT_FAIL, GATEWAY_FAIL, LOW_QUALITY, PREREQ_FAIL
from irisv9.core.stage_executor import (
    STEP1,
    STEP2A,
    parse_stage_response,
    run_stage,
    strip_code_fences,
    validate_prerequisites,
)
from irisv9.models.llm_client import LLMGateway, LLMGatewayError
from irisv9.models.schemas import Step1GeoResult, Step2StructuralResult, StepError

VARIABLES = {"side": "L", "imageHash": "img_1", "step1_json": "{}"}
IMAGE = "data:image/jpeg;base64,AAAA"


def geo(**overrides):
    return Step1GeoResult.model_validate(dict(GEO_OK, **overrides))


class ParseStageResponseTest(unittest.TestCase):

    def test_valid_payload(self):
        result = parse_stage_response(STEP2A, '{"findings": []}')
        self.assertIsInstance(result, Step2StructuralResult)
        self.assertEqual(result.findings, ())

    def test_code_fences_are_stripped(self):
        self.assertEqual(strip_code_fences('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('```\n{"a": 1}```'), '{"a": 1}')
        self.assertEqual(strip_code_fences('  {"a": 1}  '), '{"a": 1}')
        result = parse_stage_response(STEP2A, '```json\n{"findings": []}\n```')
        self.assertIsInstance(result, Step2StructuralResult)

    def test_invalid_json_is_format_fail(self):
        result = parse_stage_response(STEP2A, '{"findings": [')
        self.assertIsInstance(result, StepError)
        self.assertEqual(result.error.code, FORMAT_FAIL)
        self.assertTrue(result.error.can_retry)
        self.assertEqual(result.error.stage, "STEP2A")

    def test_non_object_is_format_fail(self):
        result = parse_stage_response(STEP2A, '[1, 2]')
        self.assertEqual(result.error.code, FORMAT_FAIL)

    def test_missing_field_is_not_coerced(self):
        result = parse_stage_response(STEP2A, '{"excluded": []}')
        self.assertIsInstance(result, StepError)
        self.assertEqual(result.error.code, FORMAT_FAIL)
        self.assertIn("findings", result.error.message)

    def test_out_of_range_confidence_is_rejected(self):
        bad = structural_with(lacuna(confidence=1.4))
        result = parse_stage_response(STEP2A, json.dumps(bad))
        self.assertEqual(result.error.code, FORMAT_FAIL)

    def test_coordinates_off_the_grid_are_rejected(self):
        for minute_range, ring_range in (((-5, 75), (4, 6)), ((10, 61), (4, 6)), ((10, 12), (0, 12))):
            finding = dict(lacuna(), minuteRange=list(minute_range), ringRange=list(ring_range))
            result = parse_stage_response(STEP2A, json.dumps(structural_with(finding)))
            self.assertIsInstance(result, StepError)
            self.assertEqual(result.error.code, FORMAT_FAIL)
            self.assertTrue(result.error.can_retry)

        edge = dict(lacuna(), minuteRange=[55, 60], ringRange=[0, 11])
        result = parse_stage_response(STEP2A, json.dumps(structural_with(edge)))
        self.assertEqual(result.findings[0].minute_range, (55, 60))

    def test_unknown_finding_type_is_rejected(self):
        finding = dict(lacuna(), type="mystery_mark")
        result = parse_stage_response(STEP2A, json.dumps(structural_with(finding)))
        self.assertEqual(result.error.code, FORMAT_FAIL)

    def test_model_error_object(self):
        text = '{"error": {"stage": "STEP1", "code": "LOW_QUALITY", "message": "blurred", "canRetry": true}}'
        result = parse_stage_response(STEP1, text)
        self.assertEqual(result.error.code, LOW_QUALITY)
        # quality rejections never retry, whatever the model claims
        self.assertFalse(result.error.can_retry)

    def test_model_format_error_is_retryable(self):
        text = '{"error": {"stage": "STEP2A", "code": "FORMAT_FAIL", "message": "x", "canRetry": false}}'
        self.assertTrue(parse_stage_response(STEP2A, text).error.can_retry)


class PrerequisiteTest(unittest.TestCase):

    def test_calibration_has_no_prerequisite(self):
        self.assertTrue(validate_prerequisites(STEP1, None).ok)

    def test_detection_requires_geo(self):
        status = validate_prerequisites(STEP2A, None)
        self.assertFalse(status.ok)
        self.assertEqual(status.reason, "Missing geo calibration payload")

    def test_detection_requires_ok_geo(self):
        status = validate_prerequisites(STEP2A, Step1GeoResult.model_validate(geo_rejected("LOW_QUALITY")))
        self.assertFalse(status.ok)
        self.assertEqual(status.reason, "geo.ok must be true before continuing")

    def test_upstream_error(self):
        upstream = parse_stage_response(STEP1, "nope")
        status = validate_prerequisites(STEP2A, upstream)
        self.assertFalse(status.ok)
        self.assertTrue(status.reason.startswith("Upstream error detected"))

    def test_usable_geo(self):
        self.assertTrue(validate_prerequisites(STEP2A, geo()).ok)


class RunStageTest(unittest.IsolatedAsyncioTestCase):

    async def test_success_passes_prompt_and_image(self):
        llm = FakeLLM({"STEP2A": STRUCTURAL_EMPTY})
        result = await run_stage(STEP2A, VARIABLES, llm, image_data=IMAGE, geo=geo())

        self.assertIsInstance(result, Step2StructuralResult)
        self.assertEqual(len(llm.calls), 1)
        call = llm.calls[0]
        self.assertTrue(call["json_mode"])
        # retries are spent here, not inside the gateway
        self.assertEqual(call["retries"], 0)
        self.assertEqual(call["image_data"], IMAGE)
        self.assertIn("SIDE: L", call["prompt"])
        self.assertNotIn("{{side}}", call["prompt"])

    async def test_prerequisite_failure_skips_llm(self):
        llm = FakeLLM({"STEP2A": STRUCTURAL_EMPTY})
        result = await run_stage(STEP2A, VARIABLES, llm, image_data=IMAGE,
                                 geo=Step1GeoResult.model_validate(geo_rejected("NO_LIMBUS")))

        self.assertEqual(result.error.code, PREREQ_FAIL)
        self.assertFalse(result.error.can_retry)
        self.assertEqual(llm.calls, [])

    async def test_retries_then_succeeds(self):
        logs = []
        llm = FakeLLM({"STEP2A": ["not json", '{"findings": "x"}', STRUCTURAL_EMPTY]})
        result = await run_stage(STEP2A, VARIABLES, llm, image_data=IMAGE, geo=geo(),
                                 add_log=lambda level, msg: logs.append((level, msg)))

        self.assertIsInstance(result, Step2StructuralResult)
        self.assertEqual(len(llm.calls), 3)
        self.assertEqual([level for level, _ in logs], ["warning", "warning"])

    async def test_retry_exhaustion(self):
        llm = FakeLLM({"STEP2A": "definitely not json"})
        result = await run_stage(STEP2A, VARIABLES, llm, image_data=IMAGE, geo=geo(), retries=2)

        self.assertEqual(len(llm.calls), 3)
        self.assertEqual(result.error.code, FORMAT_FAIL)
        self.assertEqual(result.error.stage, "STEP2A")

    async def test_zero_retries(self):
        llm = FakeLLM({"STEP2A": "bad"})
        await run_stage(STEP2A, VARIABLES, llm, geo=geo(), retries=0)
        self.assertEqual(len(llm.calls), 1)

    async def test_permanent_error_is_not_retried(self):
        llm = FakeLLM({"STEP1": {"error": {"stage": "STEP1", "code": "NO_PUPIL_EDGE", "message": "m"}}})
        result = await run_stage(STEP1, VARIABLES, llm, image_data=IMAGE)

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(result.error.code, "NO_PUPIL_EDGE")

    async def test_retryable_gateway_error(self):
        llm = FakeLLM({"STEP1": [LLMGatewayError("timeout"), ConnectionError("reset"), GEO_OK]})
        result = await run_stage(STEP1, VARIABLES, llm, image_data=IMAGE)

        self.assertIsInstance(result, Step1GeoResult)
        self.assertEqual(len(llm.calls), 3)

    async def test_fatal_gateway_error_stops_immediately(self):
        llm = FakeLLM({"STEP1": LLMGatewayError("HTTP 401", status_code=401, retryable=False)})
        result = await run_stage(STEP1, VARIABLES, llm, image_data=IMAGE)

        self.assertEqual(len(llm.calls), 1)
        self.assertEqual(result.error.code, GATEWAY_FAIL)
        self.assertFalse(result.error.can_retry)

    async def test_gateway_errors_exhaust_budget(self):
        llm = FakeLLM({"STEP1": LLMGatewayError("HTTP 503", status_code=503)})
        result = await run_stage(STEP1, VARIABLES, llm, image_data=IMAGE)

        self.assertEqual(len(llm.calls), 3)
        self.assertEqual(result.error.code, GATEWAY_FAIL)

    @mock.patch('irisv9.models.llm_client.requests.post')
    async def test_http_requests_follow_stage_attempts(self, post):
        post.return_value = mock.Mock(status_code=503, text="busy")
        gateway = LLMGateway(retry_backoff=0)
        result = await run_stage(STEP1, VARIABLES, gateway, image_data=IMAGE, retries=2)

        self.assertEqual(result.error.code, GATEWAY_FAIL)
        self.assertEqual(post.call_count, 3)
        self.assertEqual(gateway.request_count, 3)


if __name__ == '__main__':
    unittest.main()
