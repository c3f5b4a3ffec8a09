from __future__ import annotations

import re
import time
from dataclasses import asdict, dataclass, field
from typing import List

from ..models import AgentContext, AgentResponse, ExecutionOptions, ValidationResult, confidence_from_issues
from .base import BaseAgent, elapsed_ms
from .text import extract_equations

MATH_PROBLEM = "معادلة رياضية"

INSTRUCTIONS = """تعليمات:
1. ابدأ بفهم المسألة: ما المعطيات؟ ما المطلوب؟
2. حدد الاستراتيجية والصيغ المطلوبة
3. حلّل المسألة إلى خطوات واضحة
4. اشرح كل خطوة بالتفصيل مع الحسابات
5. تحقق من الحل النهائي واكتبه في سطر يبدأ بـ "الحل النهائي:"

استخدم الصيغة:
**الخطوة N: [العنوان]**
[شرح الخطوة]"""

_STEP = re.compile(r"\*\*الخطوة\s*(\d+)\s*:(.*?)\*\*")
_FINAL_ANSWER = re.compile(r"الحل النهائي\s*:\s*(.+?)(?:\n|$)")
_HAS_MATH = re.compile(r"\d|[+\-*/=()]")


@dataclass
class ProblemStep:
    number: int
    title: str
    body: str = ""


@dataclass
class Decomposition:
    problem_type: str
    difficulty: str
    steps: List[ProblemStep] = field(default_factory=list)
    final_answer: str = ""
    equations: List[str] = field(default_factory=list)


def detect_problem_type(input: str) -> str:
    lowered = input.lower()
    if re.search(r"معادلة كيميائية|تفاعل|مول|mole|تركيز|concentration", lowered):
        return "كيمياء"
    if re.search(r"معادلة|equation|solve|حل", lowered):
        if re.search(r"تربيعية|quadratic|x²|x\^2", lowered):
            return "معادلة تربيعية"
        if re.search(r"خطية|linear", lowered):
            return "معادلة خطية"
        if re.search(r"تفاضل|derivative", lowered):
            return "تفاضل"
        if re.search(r"تكامل|integral", lowered):
            return "تكامل"
        return MATH_PROBLEM
    if re.search(r"مساحة|area|حجم|volume|محيط|perimeter", lowered):
        return "هندسة"
    if re.search(r"سرعة|velocity|تسارع|acceleration|قوة|force|طاقة|energy", lowered):
        return "فيزياء"
    if re.search(r"خوارزمية|algorithm|كود|code|برنامج|function", lowered):
        return "برمجة"
    if re.search(r"برهان|proof|استدلال|reasoning", lowered):
        return "منطق"
    return "مسألة عامة"


def parse_decomposition(content: str, problem_type: str) -> Decomposition:
    matches = list(_STEP.finditer(content))
    steps = []
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(content)
        body = content[match.end():end]
        final = _FINAL_ANSWER.search(body)
        if final:
            body = body[: final.start()]
        steps.append(ProblemStep(number=index + 1, title=match.group(2).strip(), body=body.strip()))

    final_answer = _FINAL_ANSWER.search(content)
    if len(steps) > 5:
        difficulty = "hard"
    elif len(steps) > 3:
        difficulty = "medium"
    else:
        difficulty = "easy"
    return Decomposition(
        problem_type=problem_type,
        difficulty=difficulty,
        steps=steps,
        final_answer=final_answer.group(1).strip() if final_answer else "",
        equations=extract_equations(content),
    )


class ProblemDecomposerAgent(BaseAgent):
    async def execute(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        problem_type = detect_problem_type(input)
        prompt = "\n\n".join([f"نوع المسألة: {problem_type}", self.build_prompt(input, context), INSTRUCTIONS])

        result = await self.generate_content(prompt, options)
        decomposition = parse_decomposition(result.content, problem_type)
        return self.build_response(
            result.content,
            result.tokens_used,
            elapsed_ms(started),
            self.select_model(options),
            metadata={
                "problem_type": problem_type,
                "decomposition": asdict(decomposition),
                "model": result.model,
            },
        )

    async def custom_validation(self, response: AgentResponse, context: AgentContext) -> ValidationResult:
        issues = []
        content = response.content
        if "الخطوة" not in content:
            issues.append("Solution missing step-by-step breakdown")
        if "الحل" not in content and "الجواب" not in content:
            issues.append("Solution missing final answer")
        if response.metadata.get("problem_type") == MATH_PROBLEM and not _HAS_MATH.search(content):
            issues.append("Mathematical problem missing calculations")
        return confidence_from_issues(issues)
