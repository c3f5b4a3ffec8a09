from __future__ import annotations

import logging
import re
import time
from typing import List, Optional, Sequence

from ..models import AgentContext, AgentResponse, ExecutionOptions, ValidationResult, VisualizationSpec, confidence_from_issues
from ..providers import FunctionCall
from ..tools import GENERATE_VISUALIZATION, ToolCallInvalid, validate_call
from .base import BaseAgent, elapsed_ms

logger = logging.getLogger("tutor-gateway")

# (pattern, label) checked in order against the lowercased input.
VISUALIZATION_KINDS = (
    (re.compile(r"دالة|معادلة|رسم بياني|منحنى|f\(x\)|graph"), "رسم رياضي"),
    (re.compile(r"خوارزمية|كود|برنامج|algorithm|code|function"), "كود تفاعلي"),
    (re.compile(r"مخطط|جدول|بيانات|chart|table|data"), "مخطط بياني"),
    (re.compile(r"فيزياء|حركة|3d|ثلاثي الأبعاد|جاذبية"), "محاكاة فيزيائية"),
    (re.compile(r"جزيء|كيمياء|molecule|dna|بروتين"), "جزيء كيميائي"),
)

INSTRUCTIONS = """تعليمات:
1. حلل ما يريد الطالب تصويره
2. اختر نوع التصوير المناسب (كود تفاعلي، رسم رياضي، مخطط، 3D)
3. أنشئ الكود أو التصوير
4. اشرح كيف يعمل
5. اقترح تعديلات يمكن للطالب تجربتها
6. استخدم generate_visualization لإرجاع التصوير"""


def detect_visualization_kind(input: str) -> Optional[str]:
    lowered = input.lower()
    for pattern, label in VISUALIZATION_KINDS:
        if pattern.search(lowered):
            return label
    return None


class VisualizerAgent(BaseAgent):
    async def execute(self, input: str, context: AgentContext, options: ExecutionOptions) -> AgentResponse:
        started = time.perf_counter()
        kind = detect_visualization_kind(input)

        parts = []
        if kind:
            parts.append(f"نوع التصوير المطلوب: {kind}")
        parts.append(self.build_prompt(input, context))
        parts.append(INSTRUCTIONS)

        result = await self.generate_with_functions("\n\n".join(parts), options)
        visualizations = self.parse_visualizations(result.function_calls)
        content = result.content or "\n".join(v.description or v.title for v in visualizations)

        return self.build_response(
            content,
            result.tokens_used,
            elapsed_ms(started),
            self.select_model(options),
            visualizations=tuple(visualizations),
            metadata={"visualization_kind": kind, "model": result.model},
        )

    def parse_visualizations(self, calls: Sequence[FunctionCall]) -> List[VisualizationSpec]:
        visualizations = []
        for call in calls:
            if call.name != GENERATE_VISUALIZATION.name:
                continue
            try:
                args = validate_call(call.name, call.args)
            except ToolCallInvalid as exc:
                logger.warning("visualization_dropped agent=%s reason=%s", self.id, exc)
                continue
            visualizations.append(
                VisualizationSpec(
                    type=args.get("type") or "code",
                    title=args.get("title") or "تصوير تفاعلي",
                    description=args.get("description"),
                    code=args.get("code"),
                    data=args.get("data"),
                    config=args.get("config") or {},
                )
            )
        return visualizations

    async def custom_validation(self, response: AgentResponse, context: AgentContext) -> ValidationResult:
        issues = []
        visualizations = response.visualizations or ()
        if not visualizations:
            issues.append("No visualizations generated")

        for viz in visualizations:
            if viz.type == "code" and viz.code:
                if "export default" not in viz.code:
                    issues.append("Code missing default export")
                if viz.code.count("{") != viz.code.count("}"):
                    issues.append("Code has unclosed brackets")
            if not viz.title:
                issues.append("Visualization missing title")

        return confidence_from_issues(issues, penalty=0.15)
