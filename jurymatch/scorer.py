"""Compatibility scoring for one (juror, startup) pair.

Scale
-----
Every component lives on a 0-10 scale: a criterion's full credit is its
round weight divided by ten, so the four positive criteria of a valid
``RoundConfig`` add up to at most ``10 - load_penalty_weight / 10``.

- **Region / vertical / stage**: full credit on any overlap of the
  normalized values, never partial.
- **Thesis**: ``thesis_weight / 10`` scaled by a black-box text matcher
  (0..1) over the startup's name, description, verticals and stage.
- **Interest**: fixed bonus when the juror flagged the startup earlier.
- **Load penalty**: strictly decreasing in the juror's projected load.
  At or above the effective limit it outweighs every positive credit, so an
  over-limit juror is still scored but never outranks one below its limit.
- **AI**: optional 0-10 estimate from an LLM, blended with the rule-based
  credit (``ai_rule_weight`` / ``ai_model_weight``, 30/70 by default).
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Protocol

from rapidfuzz import fuzz

from jurymatch.config import EngineSettings, get_settings
from jurymatch.types import AIScore, JurorProfile, RoundConfig, StartupProfile
from jurymatch.utils import (
    GLOBAL_REGION, normalize_regions, normalize_stage, normalize_stages, normalize_verticals,
)
from jurymatch.workload import WorkloadEntry

log = logging.getLogger(__name__)

NO_MATCH_REASON = "No criteria matches found"


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Score breakdown
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScoreBreakdown:
    juror_id: str
    startup_id: str
    vertical: float
    stage: float
    region: float
    thesis: float
    interest: float
    load_penalty: float
    total: float
    reasoning: str
    ai_component: float | None = None
    ai_confidence: float | None = None
    ai_reasoning: str = ""

    @property
    def rule_positive(self) -> float:
        return self.vertical + self.stage + self.region + self.thesis + self.interest

    def to_dict(self) -> dict[str, Any]:
        return {
            "juror_id": self.juror_id,
            "startup_id": self.startup_id,
            "vertical": self.vertical,
            "stage": self.stage,
            "region": self.region,
            "thesis": self.thesis,
            "interest": self.interest,
            "load_penalty": self.load_penalty,
            "ai_component": self.ai_component,
            "ai_confidence": self.ai_confidence,
            "ai_reasoning": self.ai_reasoning,
            "total": self.total,
            "reasoning": self.reasoning,
        }


def _fmt(value: float) -> str:
    return f"{round(value, 2):g}"


# ---------------------------------------------------------------------------
# Thesis matching
# ---------------------------------------------------------------------------


class TextMatcher(Protocol):
    def match(self, text: str, keywords: list[str]) -> float: ...


class FuzzyThesisMatcher:
    """Fraction of thesis keywords fuzzily present in the startup text."""

    def __init__(self, threshold: float = 85.0):
        self.threshold = threshold

    def match(self, text: str, keywords: list[str]) -> float:
        keywords = [k.strip() for k in keywords if k and k.strip()]
        if not keywords or not text.strip():
            return 0.0
        haystack = text.casefold()
        hits = sum(
            1 for kw in keywords
            if fuzz.partial_ratio(kw.casefold(), haystack) >= self.threshold
        )
        return hits / len(keywords)


def startup_text(startup: StartupProfile) -> str:
    parts = [startup.name, startup.description, " ".join(startup.verticals), startup.stage]
    return " ".join(p for p in parts if p)


# ---------------------------------------------------------------------------
# Rule-based model
# ---------------------------------------------------------------------------


class ScoreModel:
    """Pure scoring function bound to one round's weights."""

    def __init__(
        self,
        config: RoundConfig,
        settings: EngineSettings | None = None,
        thesis_matcher: TextMatcher | None = None,
    ):
        self.config = config
        self.settings = settings or get_settings()
        self.thesis_matcher = thesis_matcher or FuzzyThesisMatcher(self.settings.thesis_match_threshold)

    def load_penalty(self, entry: WorkloadEntry) -> float:
        soft_weight = self.config.load_penalty_weight / 10
        load, limit = entry.proposed_assignments, entry.effective_limit
        if load < limit:
            return -soft_weight * load / limit
        overflow = load - limit + 1
        return -(self.settings.max_positive_credit + soft_weight) - self.settings.overflow_penalty * overflow

    def score(
        self,
        juror: JurorProfile,
        startup: StartupProfile,
        workload: WorkloadEntry,
        *,
        interested: bool = False,
        ai: AIScore | None = None,
    ) -> ScoreBreakdown:
        cfg = self.config
        reasons: list[str] = []

        startup_regions = normalize_regions(startup.regions)
        juror_regions = normalize_regions(juror.preferred_regions)
        region = 0.0
        if startup_regions and juror_regions:
            if GLOBAL_REGION in juror_regions:
                region = cfg.region_weight / 10
                reasons.append(f"Region match ({GLOBAL_REGION})")
            else:
                matched = [r for r in startup_regions if r in juror_regions]
                if matched:
                    region = cfg.region_weight / 10
                    reasons.append(f"Region match ({', '.join(matched[:2])})")

        startup_verticals = normalize_verticals(startup.verticals)
        juror_verticals = normalize_verticals(juror.target_verticals)
        vertical = 0.0
        matched_verticals = [v for v in startup_verticals if v in juror_verticals]
        if matched_verticals:
            vertical = cfg.vertical_weight / 10
            reasons.append(f"Vertical match ({', '.join(matched_verticals[:2])})")

        stage = 0.0
        if startup.stage:
            startup_stage = normalize_stage(startup.stage)
            if startup_stage in normalize_stages(juror.preferred_stages):
                stage = cfg.stage_weight / 10
                reasons.append(f"Stage match ({startup_stage})")

        thesis = 0.0
        if juror.thesis_keywords and cfg.thesis_weight > 0:
            fraction = max(0.0, min(1.0, self.thesis_matcher.match(startup_text(startup), juror.thesis_keywords)))
            if fraction > 0:
                thesis = cfg.thesis_weight / 10 * fraction
                reasons.append(f"Thesis match ({fraction:.0%} of keywords)")

        interest = 0.0
        if interested and self.settings.interest_bonus > 0:
            interest = self.settings.interest_bonus
            reasons.append(f"Explicit interest (+{_fmt(interest)})")

        rule_positive = vertical + stage + region + thesis + interest
        positive = rule_positive
        ai_component = ai_confidence = None
        ai_reasoning = ""
        if ai is not None:
            ai_component = ai.compatibility_score
            ai_confidence = ai.confidence
            ai_reasoning = ai.reasoning
            positive = (
                self.settings.ai_rule_weight * rule_positive
                + self.settings.ai_model_weight * ai.compatibility_score
            )
            reasons.append(f"AI compatibility ({_fmt(ai.compatibility_score)}/10)")

        penalty = self.load_penalty(workload)
        if penalty < 0:
            label = "Overloaded" if workload.at_or_over_limit else "Workload"
            reasons.append(f"{label} ({_fmt(penalty)})")

        return ScoreBreakdown(
            juror_id=juror.id,
            startup_id=startup.id,
            vertical=vertical,
            stage=stage,
            region=region,
            thesis=round(thesis, 4),
            interest=interest,
            load_penalty=round(penalty, 4),
            total=round(positive + penalty, 4),
            reasoning=", ".join(reasons) if reasons else NO_MATCH_REASON,
            ai_component=ai_component,
            ai_confidence=ai_confidence,
            ai_reasoning=ai_reasoning,
        )


def rank_key(breakdown: ScoreBreakdown, juror: JurorProfile) -> tuple[float, int, str]:
    """Sort key: higher total first, then generalists, then ascending juror id."""
    return (-breakdown.total, juror.preference_count, juror.id)


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def call(self, system: str, user: str, *, temperature: float = 0.3) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            if self.provider == "anthropic":
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=4096,
                    temperature=temperature,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = re.search(r'```(?:json)?\s*(\{.*\})\s*```', text, re.DOTALL)
                if m:
                    text = m.group(1)
            else:
                response = await self._client.chat.completions.create(
                    model=self.model,
                    max_tokens=4096,
                    temperature=temperature,
                    response_format={"type": "json_object"},
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": user},
                    ],
                )
                text = response.choices[0].message.content or "{}"
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc


# ---------------------------------------------------------------------------
# AI scoring provider
# ---------------------------------------------------------------------------


class AIScoringProvider(Protocol):
    async def score_batch(
        self,
        startup: StartupProfile,
        jurors: list[JurorProfile],
        *,
        round_name: str,
        seed: int | None = None,
    ) -> list[AIScore]: ...


AI_SYSTEM_PROMPT = """\
You are an expert VC matchmaking analyst specializing in {round_name} round evaluations.
Analyze the compatibility between jurors and a startup for evaluation purposes.{seed_line}

Consider:
1. Semantic similarity in verticals (not just exact matches)
2. Industry expertise and investment focus depth
3. Geographic relevance and market knowledge
4. Stage expertise and investment patterns
5. Contextual fit based on job title, company background, and startup description

Be discerning with scores - most should fall between 3-7.

Respond with ONLY valid JSON:
{{
  "scores": [
    {{
      "juror_id": "<id from the list>",
      "compatibility_score": <number 0-10>,
      "confidence": <number 0-1>,
      "brief_reasoning": "<1-2 concise sentences>",
      "recommendation": "<Highly Recommended|Recommended|Consider|Not Recommended>"
    }}
  ]
}}
"""


def _join(values: list[str]) -> str:
    return ", ".join(values) if values else "Not specified"


def build_ai_prompt(startup: StartupProfile, jurors: list[JurorProfile]) -> str:
    """Assemble the user message describing one startup and a batch of jurors."""
    lines = [
        "Startup:",
        f"Name: {startup.name}",
        f"Verticals: {_join(startup.verticals)}",
        f"Stage: {startup.stage or 'Not specified'}",
        f"Regions: {_join(startup.regions)}",
        f"Description: {startup.description or 'N/A'}",
        "",
        f"Jurors to evaluate ({len(jurors)}):",
    ]
    for i, j in enumerate(jurors, 1):
        role = " at ".join(p for p in (j.job_title, j.company) if p) or "Not specified"
        lines.extend([
            f"{i}. ID: {j.id}",
            f"   Name: {j.name}",
            f"   Role: {role}",
            f"   Verticals: {_join(j.target_verticals)}",
            f"   Stages: {_join(j.preferred_stages)}",
            f"   Regions: {_join(j.preferred_regions)}",
        ])
    return "\n".join(lines)


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, v))


def parse_ai_scores(raw: dict[str, Any], jurors: list[JurorProfile]) -> list[AIScore]:
    """Validate an LLM response; entries for unknown jurors are dropped."""
    entries = raw.get("scores") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise LLMCallError("AI response has no 'scores' list", retryable=False)
    known = {j.id for j in jurors}
    out: list[AIScore] = []
    seen: set[str] = set()
    for item in entries:
        if not isinstance(item, dict):
            continue
        jid = str(item.get("juror_id", ""))
        if jid not in known or jid in seen:
            continue
        if item.get("compatibility_score") is None:
            continue
        seen.add(jid)
        out.append(AIScore(
            juror_id=jid,
            compatibility_score=_clamp(item.get("compatibility_score"), 0.0, 10.0, 0.0),
            confidence=_clamp(item.get("confidence"), 0.0, 1.0, 0.5),
            reasoning=str(item.get("brief_reasoning") or item.get("reasoning") or ""),
            recommendation=str(item.get("recommendation", "")),
        ))
    return out


class LLMScoringProvider:
    """AI scoring provider backed by ``LLMClient``."""

    def __init__(self, client: LLMClient | None = None):
        self._client = client

    @property
    def client(self) -> LLMClient:
        if self._client is None:
            self._client = LLMClient()
        return self._client

    async def score_batch(
        self,
        startup: StartupProfile,
        jurors: list[JurorProfile],
        *,
        round_name: str,
        seed: int | None = None,
    ) -> list[AIScore]:
        if not jurors:
            return []
        seed_line = f" Use seed {seed} for deterministic results." if seed is not None else ""
        system = AI_SYSTEM_PROMPT.format(round_name=round_name, seed_line=seed_line)
        raw = await self.client.call(system, build_ai_prompt(startup, jurors))
        scores = parse_ai_scores(raw, jurors)
        if len(scores) != len(jurors):
            log.warning("AI scored %d of %d jurors for startup %s",
                        len(scores), len(jurors), startup.id)
        return scores
