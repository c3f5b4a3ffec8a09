"""
Maestro: the request entry point.

Per request: analyze (complexity + intent) -> select agents and a strategy
(model-driven handoff, else the rule table) -> execute single / sequential /
parallel -> merge -> annotate the trace. Nothing is kept between requests;
all per-request state lives in the AgentContext.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .agents.base import BaseAgent, elapsed_ms
from .agents.pipeline import execute_with_pipeline
from .agents.text import MAX_INPUT_CHARS, sanitize_input
from .context import ContextManager
from .cost import ModelTier, calculate_cost, select_tier
from .errors import AgentError, AgentErrorKind
from .models import AgentConfig, AgentContext, AgentResponse, ExecutionOptions, TokenUsage
from .providers import BaseProvider
from .registry import AgentRegistry
from .retry import RetryPolicy
from .tools import HANDOFF_TO_AGENT, ToolCallInvalid, validate_call

logger = logging.getLogger("tutor-gateway")

MAESTRO_ID = "maestro"
SEQUENTIAL_SEPARATOR = "\n\n"
PARALLEL_SEPARATOR = "\n\n---\n\n"
MODEL_SELECTION_CONFIDENCE = 0.9
RULE_SELECTION_CONFIDENCE = 0.7
DEFAULT_REQUEST_TIMEOUT = 90.0

# Every agent id the platform defines; not all of them are deployed.
KNOWN_AGENT_IDS: FrozenSet[str] = frozenset(
    {
        "visualizer",
        "narrator",
        "problem-decomposer",
        "simulator",
        "socratic",
        "spaced-repetition",
        "adaptive-assessor",
        "cognitive-mirror",
        "memory-architect",
        "context-weaver",
        "research-companion",
        "language-coach",
        "engagement-monitor",
        "wellbeing",
    }
)


class Intent(str, Enum):
    EXPLAIN = "explain"
    VISUALIZE = "visualize"
    PRACTICE = "practice"
    SOLVE = "solve"
    RESEARCH = "research"
    ASSESS = "assess"
    REVIEW = "review"
    CREATE = "create"
    DEBUG = "debug"
    TRANSLATE = "translate"
    WELLBEING = "wellbeing"
    GENERAL = "general"


class Strategy(str, Enum):
    SINGLE = "single"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


# Ordered: the first matching pattern decides the intent.
INTENT_RULES: Tuple[Tuple[Intent, "re.Pattern[str]"], ...] = (
    (Intent.VISUALIZE, re.compile(r"ارسم|صور|وضح|اعرض|رسم|شكل|مخطط")),
    (Intent.PRACTICE, re.compile(r"تمرين|تدرب|مارس|سؤال|امتحان")),
    (Intent.SOLVE, re.compile(r"احسب|اوجد|أوجد|حل|المسألة|المعادلة")),
    (Intent.EXPLAIN, re.compile(r"ما هو|ما هي|اشرح|وضح|فسر|ماذا")),
    (Intent.RESEARCH, re.compile(r"ابحث|معلومات|بحث|دراسة|تاريخ")),
    (Intent.REVIEW, re.compile(r"راجع|مراجعة|استعد|تكرار")),
    (Intent.ASSESS, re.compile(r"اختبر|تقييم|قيم|مستوى")),
    (Intent.DEBUG, re.compile(r"خطأ|bug|error|مشكلة في الكود", re.IGNORECASE)),
    (Intent.WELLBEING, re.compile(r"متعب|قلق|صعب|محبط|مساعدة نفسية")),
    (Intent.TRANSLATE, re.compile(r"ترجم|translate", re.IGNORECASE)),
    (Intent.CREATE, re.compile(r"أنشئ|انشئ|اصنع|صمم|ألف|اكتب قصة|create", re.IGNORECASE)),
)

VISUALIZATION_TERMS = ("ارسم", "صور", "وضح", "اعرض", "رسم", "شكل", "مخطط", "جدول")
COMPUTATION_TERMS = ("احسب", "اوجد", "أوجد", "حل", "قيمة", "نتيجة")
SIMULATION_TERMS = ("محاكاة", "حاكي", "simulate", "simulation")
DEPTH_TERMS = (
    "معادلة",
    "نظرية",
    "برهان",
    "تفاضل",
    "تكامل",
    "خوارزمية",
    "برمجة",
    "فيزياء",
    "كيمياء",
    "مصفوفة",
    "احتمال",
    "متجه",
    "دالة",
    "لوغاريتم",
)
_TOPIC_JOINERS = re.compile(r"(?<!\S)و(?=\S)|أيضاً|أيضا|كذلك")


@dataclass(frozen=True)
class ComplexityAnalysis:
    score: float
    intent: Intent
    requires_visualization: bool
    requires_computation: bool
    requires_simulation: bool
    multiple_topics: bool
    technical_depth: float
    recommended_tier: ModelTier

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["intent"] = self.intent.value
        data["recommended_tier"] = self.recommended_tier.value
        return data


@dataclass(frozen=True)
class AgentSelection:
    agent_ids: Tuple[str, ...]
    strategy: Strategy
    reasoning: str
    confidence: float
    source: str = "rules"
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0


def detect_intent(input: str) -> Intent:
    for intent, pattern in INTENT_RULES:
        if pattern.search(input):
            return intent
    return Intent.GENERAL


def analyze_request(input: str, context: Optional[AgentContext], context_manager: ContextManager) -> ComplexityAnalysis:
    score = context_manager.calculate_complexity(input, context)
    depth_hits = sum(1 for term in DEPTH_TERMS if term in input)
    return ComplexityAnalysis(
        score=score,
        intent=detect_intent(input),
        requires_visualization=any(term in input for term in VISUALIZATION_TERMS),
        requires_computation=any(term in input for term in COMPUTATION_TERMS),
        requires_simulation=any(term in input.lower() for term in SIMULATION_TERMS),
        multiple_topics=len(_TOPIC_JOINERS.findall(input)) > 2,
        technical_depth=min(1.0, depth_hits / 3),
        recommended_tier=select_tier(score),
    )


def _rule(agent_ids: Sequence[str], strategy: Strategy, reasoning: str) -> AgentSelection:
    return AgentSelection(
        agent_ids=tuple(agent_ids),
        strategy=strategy,
        reasoning=reasoning,
        confidence=RULE_SELECTION_CONFIDENCE,
    )


def select_by_rules(analysis: ComplexityAnalysis) -> AgentSelection:
    """Deterministic (intent, complexity) -> agents + strategy table."""
    intent = analysis.intent

    if intent == Intent.WELLBEING:
        return _rule(["wellbeing"], Strategy.SINGLE, "Student shows signs of stress")
    if analysis.requires_simulation:
        return _rule(["simulator"], Strategy.SINGLE, "Request asks for an interactive simulation")
    if intent == Intent.VISUALIZE:
        return _rule(["visualizer"], Strategy.SINGLE, "Visualization request")
    if intent == Intent.SOLVE:
        if analysis.score > 0.6:
            return _rule(
                ["problem-decomposer", "visualizer"],
                Strategy.SEQUENTIAL,
                "Complex problem: step-by-step solution followed by a visualization",
            )
        return _rule(["problem-decomposer"], Strategy.SINGLE, "Problem solving request")
    if intent == Intent.EXPLAIN:
        if analysis.requires_visualization:
            return _rule(
                ["narrator", "visualizer"],
                Strategy.SEQUENTIAL,
                "Explanation that benefits from a visualization",
            )
        return _rule(["narrator"], Strategy.SINGLE, "Conceptual explanation")
    if intent == Intent.PRACTICE:
        return _rule(["socratic"], Strategy.SINGLE, "Practice through guided questions")
    if intent == Intent.RESEARCH:
        return _rule(["research-companion"], Strategy.SINGLE, "Research request")
    if intent == Intent.REVIEW:
        return _rule(["spaced-repetition"], Strategy.SINGLE, "Review request")
    if intent == Intent.ASSESS:
        return _rule(["adaptive-assessor"], Strategy.SINGLE, "Assessment request")
    if intent == Intent.DEBUG:
        return _rule(["problem-decomposer"], Strategy.SINGLE, "Debugging walk-through")
    if intent == Intent.TRANSLATE:
        return _rule(["language-coach"], Strategy.SINGLE, "Translation request")
    if intent == Intent.CREATE:
        return _rule(
            ["narrator", "visualizer"],
            Strategy.PARALLEL,
            "Creative request: story and visualization produced independently",
        )
    return _rule(["narrator"], Strategy.SINGLE, "General question")


def missing_agent_notice(agent_id: str) -> str:
    return f'[تنبيه: الوكيل "{agent_id}" غير متوفر حالياً. إليك إجابة عامة]'


_TIER_ORDER = {ModelTier.CHEAP: 0, ModelTier.BALANCED: 1, ModelTier.CAPABLE: 2}


class MaestroAgent(BaseAgent):
    """
    Orchestrator agent.

    `orchestrate` is the request entry point. Used directly as an agent
    (`execute`), Maestro answers on its own default model; that path also
    serves as the fallback when a selected specialist is not deployed.
    """

    def __init__(
        self,
        config: AgentConfig,
        provider: BaseProvider,
        context_manager: ContextManager,
        registry: AgentRegistry,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_input_chars: int = MAX_INPUT_CHARS,
        max_context_tokens: int = 30000,
        known_agent_ids: FrozenSet[str] = KNOWN_AGENT_IDS,
        model_selection: bool = True,
    ) -> None:
        super().__init__(config, provider, context_manager)
        self.registry = registry
        self.retry_policy = retry_policy
        self.request_timeout = request_timeout
        self.max_input_chars = max_input_chars
        self.max_context_tokens = max_context_tokens
        self.known_agent_ids = known_agent_ids
        self.model_selection = model_selection

    async def execute(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        result = await self.generate_content(self.build_prompt(input, context), options)
        return self.build_response(
            result.content,
            result.tokens_used,
            elapsed_ms(started),
            self.select_model(options),
            metadata={"model": result.model},
        )

    async def run_agent(
        self,
        agent: BaseAgent,
        input: str,
        context: AgentContext,
        options: ExecutionOptions,
    ) -> AgentResponse:
        return await execute_with_pipeline(
            agent,
            input,
            context,
            options,
            retry_policy=self.retry_policy,
            max_input_chars=self.max_input_chars,
            max_context_tokens=self.max_context_tokens,
        )

    # -- entry point ----------------------------------------------------------

    async def orchestrate(
        self,
        input: str,
        context: AgentContext,
        options: Optional[ExecutionOptions] = None,
    ) -> AgentResponse:
        """
        Route one request and return the merged, annotated response.

        The whole orchestration is bounded by the request timeout; on expiry
        in-flight calls are cancelled and a `timeout` AgentError is raised.
        """
        options = options or ExecutionOptions()
        timeout = options.timeout_seconds or self.request_timeout
        try:
            return await asyncio.wait_for(self._orchestrate(input, context, options), timeout=timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "orchestration_timeout user=%s session=%s timeout_s=%.1f",
                context.user_id,
                context.session_id,
                timeout,
            )
            raise AgentError(
                f"Orchestration exceeded {timeout:.1f}s",
                agent_id=self.id,
                kind=AgentErrorKind.TIMEOUT,
                details={"timeout_seconds": timeout},
            ) from exc

    async def _orchestrate(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        clean = sanitize_input(input, self.max_input_chars)
        if not clean:
            raise AgentError("Message is empty", agent_id=self.id, kind=AgentErrorKind.INVALID_INPUT)

        analysis = analyze_request(clean, context, self.context_manager)
        logger.info(
            "orchestration_analyzed user=%s intent=%s complexity=%.2f tier=%s",
            context.user_id,
            analysis.intent.value,
            analysis.score,
            analysis.recommended_tier.value,
        )

        selection = await self.select_agents(clean, context, analysis)
        logger.info(
            "orchestration_selected agents=%s strategy=%s source=%s confidence=%.2f",
            ",".join(selection.agent_ids),
            selection.strategy.value,
            selection.source,
            selection.confidence,
        )

        agent_options = self._agent_options(options, analysis)
        if selection.strategy == Strategy.SEQUENTIAL:
            response = await self.run_sequential(clean, context, selection.agent_ids, agent_options)
        elif selection.strategy == Strategy.PARALLEL:
            response = await self.run_parallel(clean, context, selection.agent_ids, agent_options)
        else:
            response = await self.run_single(clean, context, selection.agent_ids[0], agent_options)

        response = self._add_selection_cost(response, selection)
        total_ms = elapsed_ms(started)
        metadata = dict(response.metadata)
        metadata["orchestration"] = {
            "complexity": analysis.score,
            "intent": analysis.intent.value,
            "selected_agents": list(selection.agent_ids),
            "strategy": selection.strategy.value,
            "reasoning": selection.reasoning,
            "confidence": selection.confidence,
            "selection_source": selection.source,
            "recommended_tier": analysis.recommended_tier.value,
            "factors": analysis.as_dict(),
            "dialect_source": context.metadata.get("dialect_source"),
            "total_duration_ms": total_ms,
        }
        logger.info(
            "orchestration_done user=%s agents=%s strategy=%s tokens=%s cost_usd=%.6f duration_ms=%.2f",
            context.user_id,
            ",".join(selection.agent_ids),
            selection.strategy.value,
            response.tokens_used.total,
            response.cost_usd,
            total_ms,
        )
        return response.model_copy(update={"metadata": metadata})

    def _agent_options(self, options: ExecutionOptions, analysis: ComplexityAnalysis) -> ExecutionOptions:
        update: Dict[str, Any] = {"timeout_seconds": None}
        if options.model_tier is None:
            update["model_tier"] = analysis.recommended_tier
        return options.model_copy(update=update)

    # -- selection ------------------------------------------------------------

    async def select_agents(self, input: str, context: AgentContext, analysis: ComplexityAnalysis) -> AgentSelection:
        if not self.model_selection:
            return select_by_rules(analysis)
        selection, usage, cost = await self.select_with_model(input, context, analysis)
        if selection is not None:
            return selection
        # The rejected model call still counts toward the request totals.
        return replace(select_by_rules(analysis), usage=usage, cost_usd=cost)

    async def select_with_model(
        self,
        input: str,
        context: AgentContext,
        analysis: ComplexityAnalysis,
    ) -> Tuple[Optional[AgentSelection], TokenUsage, float]:
        """Ask the orchestration model for a handoff; the selection is None when it gives no usable call."""
        prompt = "\n\n".join(
            [
                f"النية المكتشفة: {analysis.intent.value}\nدرجة التعقيد: {analysis.score:.2f}",
                self.build_prompt(input, context),
                "اختر الوكيل المناسب باستخدام handoff_to_agent.",
            ]
        )
        try:
            result = await self.generate_with_functions(prompt, ExecutionOptions(), tools=[HANDOFF_TO_AGENT])
        except AgentError as exc:
            logger.warning("model_selection_failed kind=%s error=%s", exc.kind.value, exc.message)
            return None, TokenUsage(), 0.0

        tier = self.select_model(ExecutionOptions())
        usage = result.tokens_used
        cost = calculate_cost(tier, usage.input, usage.output, usage.cached)

        for call in result.function_calls:
            if call.name != HANDOFF_TO_AGENT.name:
                continue
            try:
                args = validate_call(call.name, call.args, known_agent_ids=self.known_agent_ids)
            except ToolCallInvalid as exc:
                logger.warning("model_selection_rejected error=%s details=%s", exc, exc.details)
                continue
            agent_ids = tuple(dict.fromkeys([args["agent_id"], *args.get("additional_agent_ids", [])]))
            default_strategy = Strategy.SINGLE if len(agent_ids) == 1 else Strategy.SEQUENTIAL
            strategy = Strategy(args.get("strategy") or default_strategy.value)
            if strategy == Strategy.SINGLE:
                agent_ids = agent_ids[:1]
            selection = AgentSelection(
                agent_ids=agent_ids,
                strategy=strategy,
                reasoning=args["reason"],
                confidence=float(args.get("confidence", MODEL_SELECTION_CONFIDENCE)),
                source="model",
                usage=usage,
                cost_usd=cost,
            )
            return selection, usage, cost
        return None, usage, cost

    # -- strategies -----------------------------------------------------------

    async def run_single(
        self,
        input: str,
        context: AgentContext,
        agent_id: str,
        options: ExecutionOptions,
    ) -> AgentResponse:
        agent = self.registry.get(agent_id)
        if agent is None:
            return await self.answer_for_missing(input, context, [agent_id], options)
        return await self.run_agent(agent, input, context, options)

    async def run_sequential(
        self,
        input: str,
        context: AgentContext,
        agent_ids: Sequence[str],
        options: ExecutionOptions,
    ) -> AgentResponse:
        """Run agents in order; each later agent sees the earlier outputs as agent messages."""
        agents, missing = self._resolve(agent_ids)
        if not agents:
            return await self.answer_for_missing(input, context, missing, options)

        responses: List[AgentResponse] = []
        step_context = context
        for agent in agents:
            response = await self.run_agent(agent, input, step_context, options)
            responses.append(response)
            step_context = self.context_manager.update_context(step_context, response.content, agent.id)

        return self.merge(responses, SEQUENTIAL_SEPARATOR, missing=missing)

    async def run_parallel(
        self,
        input: str,
        context: AgentContext,
        agent_ids: Sequence[str],
        options: ExecutionOptions,
    ) -> AgentResponse:
        """Run agents concurrently on the same context; failed branches are dropped."""
        agents, missing = self._resolve(agent_ids)
        if not agents:
            return await self.answer_for_missing(input, context, missing, options)

        results = await asyncio.gather(
            *(self.run_agent(agent, input, context.model_copy(), options) for agent in agents),
            return_exceptions=True,
        )

        responses: List[AgentResponse] = []
        failures: List[Dict[str, Any]] = []
        first_error: Optional[BaseException] = None
        for agent, result in zip(agents, results):
            if isinstance(result, BaseException):
                first_error = first_error or result
                kind = result.kind.value if isinstance(result, AgentError) else AgentErrorKind.UNKNOWN.value
                failures.append({"agent_id": agent.id, "kind": kind, "message": str(result)})
                logger.warning("parallel_branch_failed agent=%s kind=%s error=%s", agent.id, kind, result)
                continue
            responses.append(result)

        if not responses:
            if isinstance(first_error, AgentError):
                raise first_error
            raise self.wrap_error(first_error, AgentErrorKind.MODEL_ERROR) from first_error

        return self.merge(responses, PARALLEL_SEPARATOR, missing=missing, failed=failures, concurrent=True)

    def _resolve(self, agent_ids: Sequence[str]) -> Tuple[List[BaseAgent], List[str]]:
        agents: List[BaseAgent] = []
        missing: List[str] = []
        for agent_id in agent_ids:
            agent = self.registry.get(agent_id)
            if agent is None:
                missing.append(agent_id)
            else:
                agents.append(agent)
        if missing:
            logger.warning("agents_missing ids=%s", ",".join(missing))
        return agents, missing

    async def answer_for_missing(
        self,
        input: str,
        context: AgentContext,
        missing: Sequence[str],
        options: ExecutionOptions,
    ) -> AgentResponse:
        """Answer with Maestro's own model and say which specialist was unavailable."""
        logger.warning("missing_agent_fallback ids=%s user=%s", ",".join(missing), context.user_id)
        response = await self.run_agent(self, input, context, options)
        notice = "\n".join(missing_agent_notice(agent_id) for agent_id in missing)
        metadata = dict(response.metadata)
        metadata["missing_agent"] = True
        metadata["missing_agents"] = list(missing)
        return response.model_copy(
            update={"content": f"{notice}\n\n{response.content}", "metadata": metadata}
        )

    # -- merging --------------------------------------------------------------

    def merge(
        self,
        responses: Sequence[AgentResponse],
        separator: str,
        *,
        missing: Sequence[str] = (),
        failed: Sequence[Dict[str, Any]] = (),
        concurrent: bool = False,
    ) -> AgentResponse:
        if len(responses) == 1 and not missing and not failed:
            return responses[0]

        tokens = TokenUsage()
        for r in responses:
            tokens = tokens + r.tokens_used

        visualizations = tuple(v for r in responses for v in (r.visualizations or ()))
        questions = tuple(q for r in responses for q in (r.structured_questions or ()))
        issues: List[str] = []
        for r in responses:
            for issue in r.validation_issues or ():
                tagged = f"{r.agent_id}: {issue}"
                if tagged not in issues:
                    issues.append(tagged)
        for agent_id in missing:
            issues.append(f"Agent '{agent_id}' is not available")

        confidences = [r.confidence for r in responses if r.confidence is not None]
        handoff = next((r.handoff for r in responses if r.handoff is not None), None)
        tier = max((r.model_tier for r in responses), key=_TIER_ORDER.__getitem__)

        metadata: Dict[str, Any] = {
            "agents": [
                {
                    "agent_id": r.agent_id,
                    "model_tier": r.model_tier.value,
                    "tokens": r.tokens_used.total,
                    "cost_usd": r.cost_usd,
                    "duration_ms": r.duration_ms,
                    "confidence": r.confidence,
                }
                for r in responses
            ],
        }
        if missing:
            metadata["missing_agents"] = list(missing)
        if failed:
            metadata["failed_agents"] = list(failed)

        return AgentResponse(
            content=separator.join(r.content for r in responses),
            agent_id=self.id,
            agent_name=self.name,
            model_tier=tier,
            tokens_used=tokens,
            cost_usd=sum(r.cost_usd for r in responses),
            duration_ms=(max if concurrent else sum)(r.duration_ms for r in responses),
            visualizations=visualizations or None,
            structured_questions=questions or None,
            confidence=min(confidences) if confidences else None,
            validation_issues=tuple(issues) or None,
            handoff=handoff,
            metadata=metadata,
        )

    @staticmethod
    def _add_selection_cost(response: AgentResponse, selection: AgentSelection) -> AgentResponse:
        if selection.usage.total == 0 and selection.cost_usd == 0:
            return response
        return response.model_copy(
            update={
                "tokens_used": response.tokens_used + selection.usage,
                "cost_usd": response.cost_usd + selection.cost_usd,
            }
        )
