"""Plan generation client for the generative-language REST API.

One ``generateContent`` call per request.  Structured categories ask for
JSON, strip any Markdown code fences from the answer and parse it.  A
response that cannot be used never reaches the caller as an exception,
except for the categories where the caller offers a retry:

    nutrition / training  → ``{"days": []}`` (structured) or an apology text
    performance           → fixed percentage deltas
    insight               → default recommendation document
    recovery / risk       → PlanGenerationError

Environment variables (via Settings):
    GEMINI_API_KEY — API key
    GEMINI_MODEL   — model name (default gemini-2.0-flash)
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

import httpx

from athlete_sync.wearables.errors import MalformedResponseError, NetworkError

logger = logging.getLogger("athlete_sync.plans")

API_BASE = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.0-flash"


class PlanCategory(str, Enum):
    NUTRITION = "nutrition"
    TRAINING = "training"
    PERFORMANCE = "performance"
    INSIGHT = "insight"
    RECOVERY = "recovery"
    RISK = "risk"


class PlanGenerationError(Exception):
    """Generation failed for a category that surfaces errors for retry."""

    def __init__(self, message: str, category: PlanCategory) -> None:
        super().__init__(message)
        self.category = category


@dataclass
class PlanRequest:
    """What to generate.

    Attributes:
        category:          Plan kind.
        subject_context:   Free-form facts about the athlete (sport,
                           position, goal, metrics, body parts, ...).
        structured_output: Ask for a JSON document instead of prose.
    """

    category: PlanCategory
    subject_context: dict[str, Any] = field(default_factory=dict)
    structured_output: bool = True


@dataclass
class PlanResponse:
    """Generated plan.

    Attributes:
        category:  Plan kind.
        text:      Model text with code fences removed (or the fallback text).
        document:  Parsed JSON for structured requests, else None.
        fell_back: True when a documented default replaced the model output.
    """

    category: PlanCategory
    text: str
    document: Any | None = None
    fell_back: bool = False


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

PERFORMANCE_DEFAULT = {
    "sprintSpeed": "+8%",
    "strength": "+12%",
    "endurance": "+5%",
    "bodyFat": "-2%",
}

_EVEN_DISTRIBUTION = {
    "strength": 20,
    "cardio": 20,
    "flexibility": 20,
    "recovery": 20,
    "skillWork": 20,
}

INSIGHT_DEFAULT = {
    "healthStatus": {
        "overall": "Unable to generate detailed recommendations",
        "concerns": [],
        "positives": [],
    },
    "trainingRecommendations": {
        "intensity": "Moderate",
        "focusAreas": [],
        "modifications": [],
    },
    "recoveryStrategies": [],
    "warningSignals": [],
    "improvementTips": [],
    "trainingDistribution": _EVEN_DISTRIBUTION,
}


def _insight_from_metrics(metrics: dict) -> dict:
    """Default insight document shaped by whatever metrics were supplied."""
    fatigue = _number(metrics.get("fatigueLevel"))
    recovery = _number(metrics.get("recoveryScore"))
    return {
        "healthStatus": {
            "overall": "Based on your current metrics",
            "concerns": ["High fatigue detected"] if fatigue > 70 else [],
            "positives": ["Good recovery score"] if recovery > 70 else [],
        },
        "trainingRecommendations": {
            "intensity": "Low" if fatigue > 70 else "Moderate",
            "focusAreas": ["Recovery", "Technique"],
            "modifications": [],
        },
        "recoveryStrategies": ["Ensure adequate rest", "Stay hydrated"],
        "warningSignals": [],
        "improvementTips": ["Monitor your progress", "Stay consistent"],
        "trainingDistribution": dict(_EVEN_DISTRIBUTION),
    }


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def strip_code_fences(text: str) -> str:
    """Remove Markdown ```json / ``` fences and surrounding whitespace."""
    return text.replace("```json", "").replace("```", "").strip()


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def _athlete(ctx: dict) -> str:
    sport = ctx.get("sport", "multi-sport")
    position = ctx.get("position")
    return f"{sport} athlete playing {position}" if position else f"{sport} athlete"


def _goal(ctx: dict) -> str:
    return str(ctx.get("goal") or ctx.get("trainingGoal") or "general performance")


_JSON_ONLY = "Return ONLY the JSON object, no additional text or markdown formatting."


def _nutrition_prompt(ctx: dict, structured: bool) -> str:
    head = (
        f"Create a detailed 7-day nutrition plan for a {_athlete(ctx)}. "
        f"Their primary training goal is: {_goal(ctx)}."
    )
    if not structured:
        return (
            f"{head} For each day provide breakfast, lunch, dinner and 2-3 snacks with "
            "portions and timing, total calories and macronutrients, hydration and "
            "pre/post-workout nutrition. Use clear headings for each day and meal."
        )
    schema = (
        '{"days": [{"day": "string", "meals": [{"mealType": "string", "foodItems": "string", '
        '"calories": number, "macronutrients": {"protein": number, "carbs": number, "fats": number}}]}]}'
    )
    return f"{head}\nReturn ONLY valid JSON with this exact structure:\n{schema}\n{_JSON_ONLY}"


def _training_prompt(ctx: dict, structured: bool) -> str:
    head = (
        f"Create a detailed 7-day training plan for a {_athlete(ctx)}. "
        f"Their primary training goal is: {_goal(ctx)}."
    )
    if not structured:
        return (
            f"{head} For each day provide workouts with sets, reps and rest, duration and "
            "intensity, position-specific drills, recovery and mobility work, and metrics "
            "to track. Use clear headings for each day."
        )
    schema = (
        '{"days": [{"day": "string", "sessions": [{"focus": "string", "exercises": '
        '[{"name": "string", "sets": number, "reps": number, "notes": "string"}], '
        '"duration": "string", "intensity": "string"}]}]}'
    )
    return f"{head}\nReturn ONLY valid JSON with this exact structure:\n{schema}\n{_JSON_ONLY}"


def _performance_prompt(ctx: dict, structured: bool) -> str:
    return (
        f"Predict the next 8 weeks of performance change for a {_athlete(ctx)} "
        f"working towards: {_goal(ctx)}.\n"
        'Return JSON: {"sprintSpeed": "string", "strength": "string", '
        '"endurance": "string", "bodyFat": "string"} with signed percentages such as "+8%".\n'
        f"{_JSON_ONLY}"
    )


def _insight_prompt(ctx: dict, structured: bool) -> str:
    metrics = ctx.get("healthMetrics") or {}
    lines = "\n".join(f"- {k}: {v}" for k, v in metrics.items())
    return (
        f"As a sports performance expert, analyze these health metrics for a {_athlete(ctx)} "
        f"with a training goal of {_goal(ctx)}.\n{lines}\n"
        "Return JSON with keys healthStatus {overall, concerns[], positives[]}, "
        "trainingRecommendations {intensity, focusAreas[], modifications[]}, "
        "recoveryStrategies[], warningSignals[], improvementTips[], and "
        "trainingDistribution {strength, cardio, flexibility, recovery, skillWork} "
        "whose values add up to 100.\n"
        f"{_JSON_ONLY}"
    )


def _recovery_prompt(ctx: dict, structured: bool) -> str:
    body_parts = json.dumps(ctx.get("bodyParts") or [], indent=2)
    return (
        f"Create a personalized recovery plan for a {_athlete(ctx)}.\n"
        f"Current body part status:\n{body_parts}\n"
        "Include recovery exercises and stretches, rest and activity guidance, recovery "
        "nutrition, a return-to-activity timeline, and warning signs. Use bullet points "
        "and sections."
    )


def _risk_prompt(ctx: dict, structured: bool) -> str:
    focus = ctx.get("focusArea")
    scope = f"Focus specifically on the {focus} area." if focus else "Analyze all major body parts."
    data = {k: ctx.get(k) for k in ("recentPerformance", "trainingLoad", "recoveryMetrics")}
    return (
        f"As a sports medicine expert, analyze injury risks for a {_athlete(ctx)}. {scope}\n"
        f"{json.dumps(data, indent=2)}\n"
        'Return JSON: {"overallRisk": number, "bodyParts": [{"id": "string", "name": "string", '
        '"risk": number, "status": "high|moderate|low", "recommendation": "string", '
        '"detailedAssessment": "string", "exercises": ["string"], "recoveryTime": "string"}], '
        '"insights": [{"type": "risk|recovery|prevention", "message": "string", '
        '"severity": "high|medium|low", "timestamp": "string"}]}\n'
        f"{_JSON_ONLY}"
    )


_PROMPTS: dict[PlanCategory, Callable[[dict, bool], str]] = {
    PlanCategory.NUTRITION: _nutrition_prompt,
    PlanCategory.TRAINING: _training_prompt,
    PlanCategory.PERFORMANCE: _performance_prompt,
    PlanCategory.INSIGHT: _insight_prompt,
    PlanCategory.RECOVERY: _recovery_prompt,
    PlanCategory.RISK: _risk_prompt,
}

# Categories whose answer is always a JSON document.
_ALWAYS_STRUCTURED = {PlanCategory.PERFORMANCE, PlanCategory.INSIGHT, PlanCategory.RISK}
# Categories whose answer is always prose.
_ALWAYS_TEXT = {PlanCategory.RECOVERY}
# Categories that surface failures for a user-triggered retry.
_SURFACE_ERRORS = {PlanCategory.RECOVERY, PlanCategory.RISK}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class PlanGenerator:
    """Generate plans through ``models/{model}:generateContent``.

    Usage::

        generator = PlanGenerator(api_key=settings.gemini_api_key)
        plan = await generator.generate(
            PlanRequest(PlanCategory.TRAINING, {"sport": "Soccer", "goal": "speed"})
        )
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._http_client = http_client
        self._timeout = timeout

    async def generate(self, request: PlanRequest) -> PlanResponse:
        """Generate one plan, falling back to the category default on failure.

        Raises:
            PlanGenerationError: Recovery or risk generation failed.
        """
        category = request.category
        structured = self._is_structured(request)
        prompt = _PROMPTS[category](request.subject_context, structured)

        try:
            text = strip_code_fences(await self._generate_content(prompt))
            document = self._parse(text, category) if structured else None
        except (NetworkError, MalformedResponseError) as exc:
            if category in _SURFACE_ERRORS:
                raise PlanGenerationError(str(exc), category) from exc
            logger.warning("Plan generation (%s) fell back to default: %s", category.value, exc)
            return self._fallback(request, structured)

        return PlanResponse(category=category, text=text, document=document)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    @staticmethod
    def _is_structured(request: PlanRequest) -> bool:
        if request.category in _ALWAYS_STRUCTURED:
            return True
        if request.category in _ALWAYS_TEXT:
            return False
        return request.structured_output

    @staticmethod
    def _parse(text: str, category: PlanCategory) -> Any:
        try:
            return json.loads(text)
        except ValueError as exc:
            raise MalformedResponseError(f"{category.value}: response is not valid JSON") from exc

    @staticmethod
    def _fallback(request: PlanRequest, structured: bool) -> PlanResponse:
        category = request.category
        if category is PlanCategory.PERFORMANCE:
            document: Any = copy.deepcopy(PERFORMANCE_DEFAULT)
        elif category is PlanCategory.INSIGHT:
            metrics = request.subject_context.get("healthMetrics")
            document = (
                _insight_from_metrics(metrics)
                if isinstance(metrics, dict)
                else copy.deepcopy(INSIGHT_DEFAULT)
            )
        elif structured:
            document = {"days": []}
        else:
            text = f"Unable to generate {category.value} plan at this time. Please try again later."
            return PlanResponse(category=category, text=text, fell_back=True)
        return PlanResponse(
            category=category, text=json.dumps(document), document=document, fell_back=True
        )

    async def _generate_content(self, prompt: str) -> str:
        """POST the prompt and return the concatenated candidate text.

        Raises:
            NetworkError:           Not configured, unreachable, or non-2xx.
            MalformedResponseError: The body has no candidate text.
        """
        if not self._api_key:
            raise NetworkError("Plan generation API key is not configured")

        url = f"{API_BASE}/models/{self._model}:generateContent"
        body = {"contents": [{"parts": [{"text": prompt}]}]}
        try:
            if self._http_client:
                response = await self._http_client.post(url, params={"key": self._api_key}, json=body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, params={"key": self._api_key}, json=body)
        except httpx.TransportError as exc:
            raise NetworkError(f"Plan generation unreachable: {exc}") from exc

        if not response.is_success:
            raise NetworkError(f"Plan generation returned HTTP {response.status_code}")

        try:
            data = response.json()
            parts = data["candidates"][0]["content"]["parts"]
            text = "".join(str(p.get("text", "")) for p in parts if isinstance(p, dict))
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError("Plan generation response has no candidate text") from exc
        if not text.strip():
            raise MalformedResponseError("Plan generation returned empty text")
        return text
