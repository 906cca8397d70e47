from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ai.frameworks import AnalysisFramework, framework_data, framework_label, framework_prompt
from ai.generation import generate_with_retry
from ai.providers import AIProvider
from config import settings
from services.subscription_models import AnalysisDepth, Subscription
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

INSIGHTS_PROMPT = """You are writing a periodic check-in for someone who reflected on their year.
Based on the answers below, write {count} meaningful, specific insights about their
progress and what to pay attention to next. One insight per line, no preamble.

Lens: {framework}
Answers:
{data}"""

FOLLOW_UP_PROMPT = """Based on the answers below, write {count} thoughtful follow-up questions
this person could reflect on before their next check-in. One question per line, no preamble.

Lens: {framework}
Answers:
{data}"""

CONNECTIONS_PROMPT = """From the answers below, pick up to {count} people this person should reach out to
before their next check-in. Write one line per person in the form:
name | why they matter now | a suggested action | a conversation starter
No preamble.

Answers:
{data}"""

# (insights, follow-up questions, long-form analysis)
DEPTH_PLAN: dict[AnalysisDepth, tuple[int, int, bool]] = {
    AnalysisDepth.COMPREHENSIVE: (3, 2, True),
    AnalysisDepth.FOCUSED: (3, 2, False),
    AnalysisDepth.MAINTENANCE: (1, 1, False),
}

_LIST_MARKER = re.compile(r"^\s*(?:[-*•]+|\d+[.)]|#+)\s*")


@dataclass
class ContentGenerationContext:
    subscription_id: str
    frameworks: list[AnalysisFramework]
    depth: AnalysisDepth
    responses: Any

    @property
    def primary_framework(self) -> AnalysisFramework:
        return self.frameworks[0] if self.frameworks else AnalysisFramework.PATTERN


@dataclass
class FeaturedConnection:
    name: str
    context: str
    suggested_action: str
    conversation_starter: str


@dataclass
class GeneratedContent:
    framework: AnalysisFramework
    insights: list[str]
    follow_up_questions: list[str]
    analyses: dict[str, str] = field(default_factory=dict)
    featured_connections: list[FeaturedConnection] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)


def build_generation_context(subscription: Subscription, decrypted: Any) -> ContentGenerationContext:
    return ContentGenerationContext(
        subscription_id=subscription.id,
        frameworks=list(subscription.frameworks),
        depth=subscription.analysis_depth or AnalysisDepth.FOCUSED,
        responses=decrypted,
    )


def split_lines(text: str, limit: int | None = None) -> list[str]:
    lines = []
    for raw in (text or "").splitlines():
        line = _LIST_MARKER.sub("", raw).strip()
        if line:
            lines.append(line)
    return lines[:limit] if limit else lines


def parse_connections(text: str, limit: int | None = None) -> list[FeaturedConnection]:
    connections = []
    for line in split_lines(text):
        parts = [part.strip() for part in line.split("|")]
        if len(parts) != 4 or not all(parts):
            continue
        connections.append(FeaturedConnection(*parts))
    return connections[:limit] if limit else connections


def _responses_for(framework: AnalysisFramework, responses: Any) -> Any:
    # Saved answers are either the raw questionnaire or {"responses": questionnaire}.
    form = responses.get("responses", responses) if isinstance(responses, dict) else responses
    if isinstance(form, dict) and ("pastYear" in form or "yearAhead" in form):
        return framework_data(framework, form)
    return form


async def _generate(provider: AIProvider, prompt: str, *, system: str = "", operation: str) -> str:
    result = await generate_with_retry(
        lambda: provider.generate(prompt, system=system),
        timeout=settings.ANALYSIS_TIMEOUT_SECONDS,
        retries=settings.ANALYSIS_MAX_RETRIES,
        backoff=settings.ANALYSIS_RETRY_BACKOFF_SECONDS,
        operation=operation,
    )
    return result["content"]


async def _gather_or_cancel(calls: list[Awaitable[str]]) -> list[str]:
    """Run calls together; the first failure cancels the rest before raising."""
    tasks = [asyncio.ensure_future(call) for call in calls]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


async def generate_check_in_content(context: ContentGenerationContext, provider: AIProvider) -> GeneratedContent:
    insight_count, question_count, long_form = DEPTH_PLAN[context.depth]
    framework = context.primary_framework
    data = json.dumps(_responses_for(framework, context.responses), indent=2, ensure_ascii=False)
    label = framework_label(framework)

    calls = [
        _generate(
            provider,
            INSIGHTS_PROMPT.format(count=insight_count, framework=label, data=data),
            operation="checkin:insights",
        ),
        _generate(
            provider,
            FOLLOW_UP_PROMPT.format(count=question_count, framework=label, data=data),
            operation="checkin:follow_up",
        ),
    ]
    wants_connections = AnalysisFramework.CONNECTIONS in context.frameworks
    if wants_connections:
        connection_data = json.dumps(
            _responses_for(AnalysisFramework.CONNECTIONS, context.responses), indent=2, ensure_ascii=False
        )
        calls.append(
            _generate(
                provider,
                CONNECTIONS_PROMPT.format(count=insight_count, data=connection_data),
                operation="checkin:connections",
            )
        )
    long_form_frameworks: list[AnalysisFramework] = []
    if long_form:
        for fw in context.frameworks:
            if fw is AnalysisFramework.CUSTOM:
                continue
            long_form_frameworks.append(fw)
            fw_data = json.dumps(_responses_for(fw, context.responses), indent=2, ensure_ascii=False)
            calls.append(
                _generate(
                    provider,
                    f"Here are the answers relevant to this analysis:\n\n{fw_data}",
                    system=framework_prompt(fw),
                    operation=f"checkin:analysis:{fw.value}",
                )
            )

    results = await _gather_or_cancel(calls)
    insights_text, questions_text, *rest = results
    connections = parse_connections(rest.pop(0), insight_count) if wants_connections else []
    logger.info(
        f"Generated check-in content for {context.subscription_id} "
        f"({context.depth.value}, {len(rest)} long-form, {len(connections)} connections)"
    )
    return GeneratedContent(
        framework=framework,
        insights=split_lines(insights_text, insight_count),
        follow_up_questions=split_lines(questions_text, question_count),
        analyses={fw.value: text.strip() for fw, text in zip(long_form_frameworks, rest)},
        featured_connections=connections,
    )
