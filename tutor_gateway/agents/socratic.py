from __future__ import annotations

import logging
import re
import time
from typing import List, Optional, Sequence

from ..models import (
    AgentContext,
    AgentResponse,
    ExecutionOptions,
    SocraticQuestion,
    ValidationResult,
    confidence_from_issues,
)
from ..providers import FunctionCall
from ..tools import ASK_SOCRATIC_QUESTION, ToolCallInvalid, validate_call
from .base import BaseAgent, elapsed_ms

logger = logging.getLogger("tutor-gateway")

BEGINNER = "beginner"
INTERMEDIATE = "intermediate"
ADVANCED = "advanced"

QUESTION_KINDS = (
    (re.compile(r"ما هو|ما هي|(?<!ل)ماذا"), "تعريف/شرح"),
    (re.compile(r"لماذا|كيف"), "سببي/آلية"),
    (re.compile(r"احسب|أوجد|اوجد|حل"), "حسابي/حل مسألة"),
    (re.compile(r"اشرح|وضح|فسر"), "توضيح"),
)

DIRECT_ANSWER_PATTERNS = (
    re.compile(r"الإجابة هي"),
    re.compile(r"النتيجة هي"),
    re.compile(r"الحل هو"),
    re.compile(r"^الجواب:", re.MULTILINE),
)

INSTRUCTIONS = """تعليمات:
1. لا تعطِ الإجابة مباشرة
2. اطرح 2-3 أسئلة سقراطية متدرجة
3. ابدأ بسؤال بسيط، ثم تعمق
4. شجع الطالب وكن إيجابياً
5. قدم تلميحات إذا لزم الأمر
6. استخدم ask_socratic_question لإرجاع الأسئلة"""


def determine_student_level(context: AgentContext) -> str:
    if len(context.conversation_history) < 3:
        return BEGINNER
    if context.mastery_levels:
        levels = list(context.mastery_levels.values())
        average = sum(levels) / len(levels)
        if average > 0.7:
            return ADVANCED
        if average > 0.4:
            return INTERMEDIATE
        return BEGINNER
    profile = context.student_profile
    if profile is not None and profile.grade_level:
        if profile.grade_level >= 10:
            return ADVANCED
        if profile.grade_level >= 7:
            return INTERMEDIATE
        return BEGINNER
    return INTERMEDIATE


def detect_question_kind(input: str) -> Optional[str]:
    for pattern, label in QUESTION_KINDS:
        if pattern.search(input):
            return label
    return None


class SocraticAgent(BaseAgent):
    async def execute(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        level = determine_student_level(context)
        kind = detect_question_kind(input)

        parts = [f"مستوى الطالب: {level}"]
        if kind:
            parts.append(f"نوع السؤال: {kind}")
        parts.append(self.build_prompt(input, context))
        parts.append(INSTRUCTIONS)

        result = await self.generate_with_functions("\n\n".join(parts), options)
        questions = self.parse_questions(result.function_calls)
        content = result.content or "\n".join(q.question for q in questions)

        return self.build_response(
            content,
            result.tokens_used,
            elapsed_ms(started),
            self.select_model(options),
            structured_questions=tuple(questions),
            handoff=self.parse_handoff(result.function_calls),
            metadata={"student_level": level, "question_kind": kind, "model": result.model},
        )

    def parse_questions(self, calls: Sequence[FunctionCall]) -> List[SocraticQuestion]:
        questions = []
        for call in calls:
            if call.name != ASK_SOCRATIC_QUESTION.name:
                continue
            try:
                args = validate_call(call.name, call.args)
            except ToolCallInvalid as exc:
                logger.warning("socratic_question_dropped agent=%s reason=%s", self.id, exc)
                continue
            questions.append(
                SocraticQuestion(
                    question=args["question"],
                    purpose=args.get("purpose") or "probe",
                    expected_insight=args.get("expected_insight"),
                    hints=tuple(args.get("hints") or ()),
                )
            )
        return questions

    async def custom_validation(self, response: AgentResponse, context: AgentContext) -> ValidationResult:
        issues = []
        questions = response.structured_questions or ()
        if not questions:
            issues.append("No Socratic questions generated")
        if any(p.search(response.content) for p in DIRECT_ANSWER_PATTERNS):
            issues.append("Response contains direct answer")
        for q in questions:
            if "؟" not in q.question:
                issues.append("Question missing question mark (؟)")
            if len(q.question) < 10:
                issues.append("Question too short")
        return confidence_from_issues(issues)
