"""Tests for PlanGenerator — request shape, fence stripping, per-category fallbacks."""

from __future__ import annotations

import json

import httpx
import pytest

from athlete_sync.services.plan_generation import (
    INSIGHT_DEFAULT,
    PERFORMANCE_DEFAULT,
    PlanCategory,
    PlanGenerationError,
    PlanGenerator,
    PlanRequest,
    strip_code_fences,
)

API_KEY = "test-key"
SOCCER = {"sport": "Soccer", "position": "Midfielder", "goal": "Improve speed"}


def _candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _generator(handler) -> tuple[PlanGenerator, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return PlanGenerator(api_key=API_KEY, http_client=client), requests


def _answer(text: str):
    return lambda request: httpx.Response(200, json=_candidate(text))


def _status(code: int):
    return lambda request: httpx.Response(code, json={"error": {"code": code}})


class TestStripCodeFences:
    def test_json_fence(self) -> None:
        assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_bare_fence_and_whitespace(self) -> None:
        assert strip_code_fences('  ```\n{"a": 1}```  \n') == '{"a": 1}'

    def test_plain_text_untouched(self) -> None:
        assert strip_code_fences("Day 1: rest") == "Day 1: rest"


class TestGenerate:
    @pytest.mark.asyncio
    async def test_request_shape(self) -> None:
        generator, requests = _generator(_answer('{"days": []}'))
        await generator.generate(PlanRequest(PlanCategory.TRAINING, SOCCER))

        (request,) = requests
        assert request.method == "POST"
        assert request.url.path == "/v1beta/models/gemini-2.0-flash:generateContent"
        assert request.url.params["key"] == API_KEY
        prompt = json.loads(request.content)["contents"][0]["parts"][0]["text"]
        assert "Soccer athlete playing Midfielder" in prompt
        assert "Improve speed" in prompt
        assert "Return ONLY valid JSON" in prompt

    @pytest.mark.asyncio
    async def test_structured_answer_parsed(self) -> None:
        text = '```json\n{"days": [{"day": "Monday", "meals": []}]}\n```'
        generator, _ = _generator(_answer(text))

        plan = await generator.generate(PlanRequest(PlanCategory.NUTRITION, SOCCER))

        assert plan.document == {"days": [{"day": "Monday", "meals": []}]}
        assert plan.text == '{"days": [{"day": "Monday", "meals": []}]}'
        assert plan.fell_back is False

    @pytest.mark.asyncio
    async def test_text_answer(self) -> None:
        generator, requests = _generator(_answer("## Monday\nIntervals"))

        plan = await generator.generate(
            PlanRequest(PlanCategory.TRAINING, SOCCER, structured_output=False)
        )

        assert plan.text == "## Monday\nIntervals"
        assert plan.document is None
        prompt = json.loads(requests[0].content)["contents"][0]["parts"][0]["text"]
        assert "JSON" not in prompt

    @pytest.mark.asyncio
    async def test_recovery_always_prose(self) -> None:
        generator, _ = _generator(_answer("- Rest the hamstring"))
        plan = await generator.generate(
            PlanRequest(PlanCategory.RECOVERY, {"bodyParts": [{"name": "hamstring"}]})
        )
        assert plan.document is None
        assert plan.text == "- Rest the hamstring"

    @pytest.mark.asyncio
    async def test_risk_always_structured(self) -> None:
        generator, _ = _generator(_answer('{"overallRisk": 35, "bodyParts": [], "insights": []}'))
        plan = await generator.generate(
            PlanRequest(PlanCategory.RISK, {"focusArea": "knee"}, structured_output=False)
        )
        assert plan.document["overallRisk"] == 35

    @pytest.mark.asyncio
    async def test_multi_part_candidate_joined(self) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": '{"days": '}, {"text": "[]}"}]}}]}
        generator, _ = _generator(lambda request: httpx.Response(200, json=body))
        plan = await generator.generate(PlanRequest(PlanCategory.TRAINING, SOCCER))
        assert plan.document == {"days": []}


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_structured_plan_falls_back_to_empty_days(self) -> None:
        generator, _ = _generator(_answer("Sorry, here is your plan: Monday..."))
        plan = await generator.generate(PlanRequest(PlanCategory.TRAINING, SOCCER))

        assert plan.fell_back is True
        assert plan.document == {"days": []}
        assert json.loads(plan.text) == {"days": []}

    @pytest.mark.asyncio
    async def test_text_plan_falls_back_to_apology(self) -> None:
        generator, _ = _generator(_status(500))
        plan = await generator.generate(
            PlanRequest(PlanCategory.NUTRITION, SOCCER, structured_output=False)
        )

        assert plan.fell_back is True
        assert plan.document is None
        assert plan.text == "Unable to generate nutrition plan at this time. Please try again later."

    @pytest.mark.asyncio
    async def test_performance_default_deltas(self) -> None:
        generator, _ = _generator(_status(429))
        plan = await generator.generate(PlanRequest(PlanCategory.PERFORMANCE, SOCCER))

        assert plan.document == {
            "sprintSpeed": "+8%",
            "strength": "+12%",
            "endurance": "+5%",
            "bodyFat": "-2%",
        }
        plan.document["strength"] = "+99%"
        assert PERFORMANCE_DEFAULT["strength"] == "+12%"

    @pytest.mark.asyncio
    async def test_insight_fallback_uses_metrics(self) -> None:
        generator, _ = _generator(_answer("not json"))
        plan = await generator.generate(
            PlanRequest(
                PlanCategory.INSIGHT,
                {"healthMetrics": {"fatigueLevel": 82, "recoveryScore": 75}},
            )
        )

        doc = plan.document
        assert plan.fell_back is True
        assert doc["healthStatus"]["concerns"] == ["High fatigue detected"]
        assert doc["healthStatus"]["positives"] == ["Good recovery score"]
        assert doc["trainingRecommendations"]["intensity"] == "Low"
        assert sum(doc["trainingDistribution"].values()) == 100

    @pytest.mark.asyncio
    async def test_insight_fallback_moderate_when_rested(self) -> None:
        generator, _ = _generator(_status(500))
        plan = await generator.generate(
            PlanRequest(PlanCategory.INSIGHT, {"healthMetrics": {"fatigueLevel": "n/a"}})
        )
        assert plan.document["healthStatus"]["concerns"] == []
        assert plan.document["trainingRecommendations"]["intensity"] == "Moderate"

    @pytest.mark.asyncio
    async def test_insight_fallback_without_metrics(self) -> None:
        generator, _ = _generator(_status(500))
        plan = await generator.generate(PlanRequest(PlanCategory.INSIGHT, SOCCER))
        assert plan.document == INSIGHT_DEFAULT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"candidates": []},
            {"candidates": [{"content": {"parts": [{"text": "   "}]}}]},
            {"promptFeedback": {"blockReason": "SAFETY"}},
        ],
    )
    async def test_empty_candidates_fall_back(self, body) -> None:
        generator, _ = _generator(lambda request: httpx.Response(200, json=body))
        plan = await generator.generate(PlanRequest(PlanCategory.TRAINING, SOCCER))
        assert plan.fell_back is True

    @pytest.mark.asyncio
    async def test_unreachable_falls_back(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        generator, _ = _generator(refuse)
        plan = await generator.generate(PlanRequest(PlanCategory.TRAINING, SOCCER))
        assert plan.fell_back is True

    @pytest.mark.asyncio
    async def test_missing_api_key_falls_back_without_calling(self) -> None:
        requests: list[httpx.Request] = []
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda r: requests.append(r) or httpx.Response(200))
        )
        generator = PlanGenerator(api_key="", http_client=client)

        plan = await generator.generate(PlanRequest(PlanCategory.PERFORMANCE, SOCCER))

        assert plan.fell_back is True
        assert requests == []


class TestSurfacedErrors:
    @pytest.mark.asyncio
    async def test_recovery_failure_raises(self) -> None:
        generator, _ = _generator(_status(503))
        with pytest.raises(PlanGenerationError) as exc_info:
            await generator.generate(PlanRequest(PlanCategory.RECOVERY, {}))
        assert exc_info.value.category is PlanCategory.RECOVERY

    @pytest.mark.asyncio
    async def test_risk_unparseable_raises(self) -> None:
        generator, _ = _generator(_answer("High risk in the knee"))
        with pytest.raises(PlanGenerationError, match="not valid JSON"):
            await generator.generate(PlanRequest(PlanCategory.RISK, {}))
