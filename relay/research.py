"""Research pipeline — runs the LLM steps and yields stream events.

parse → research → analyze → generate. Each step gets the original input
and the previous step's JSON, and must answer with a JSON object.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Any

from relay.clients.openrouter import OpenRouterClient, strip_code_fences
from relay.errors import ErrorCode, ErrorKind, RelayError, as_relay_error, log_error
from relay.schemas import CompleteEvent, ErrorEvent, ResearchRequest, StepEvent

logger = logging.getLogger(__name__)

JSON_RESPONSE_INSTRUCTION = """

CRITICAL RESPONSE FORMAT:
- Return ONLY valid JSON
- NO markdown code blocks
- NO explanations before or after the JSON
- Start response with { and end with }
- Use a flat structure with top-level fields
"""

DEFAULT_PROMPTS: dict[str, str] = {
    "parsing": (
        'Analyze this technology solution request and extract key information:\n\n"{input}"\n\n'
        "Extract and return in JSON format:\n"
        "- technology: main technology/platform\n"
        "- scale: number of users/size\n"
        "- industry: industry sector\n"
        "- compliance: compliance requirements\n"
        "- complexity: complexity factors\n" + JSON_RESPONSE_INSTRUCTION
    ),
    "research": (
        'Based on this technology solution: "{input}"\n\n'
        "Parsed request: {previous}\n\n"
        "Research implementation methodologies, industry best practices and "
        "professional services approaches. Include a `sources` array of "
        '{"url", "title"} objects.' + JSON_RESPONSE_INSTRUCTION
    ),
    "analysis": (
        'Analyze research findings to extract service components for "{input}".\n\n'
        "Research findings: {previous}\n\n"
        "Return implementation phases, services per phase, subservices and "
        "hour estimates." + JSON_RESPONSE_INSTRUCTION
    ),
    "content": (
        'Write the professional services content for "{input}".\n\n'
        "Analysis: {previous}\n\n"
        "Return technology, services (name, description, phase, hours, "
        "subservices), questions and totalHours." + JSON_RESPONSE_INSTRUCTION
    ),
}


@dataclass(frozen=True)
class Step:
    id: str
    key: str  # selects both the model override and the prompt override
    start: int
    end: int


STEPS: tuple[Step, ...] = (
    Step("parse", "parsing", 10, 25),
    Step("research", "research", 25, 50),
    Step("analyze", "analysis", 50, 75),
    Step("generate", "content", 75, 95),
)

_RESULT_KEYS = {"parse": "parsed", "research": "research", "analyze": "analysis", "generate": "content"}

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_INDUSTRY_KEYWORDS = (
    (("healthcare", "hospital"), "healthcare"),
    (("finance", "bank"), "finance"),
    (("retail", "ecommerce"), "retail"),
    (("manufacturing",), "manufacturing"),
    (("government",), "government"),
)


def render_prompt(template: str, data: dict) -> str:
    """Fill placeholders in the prompt template with data values.

    Template: "Analyze: {input}"
    Data:     {"input": "Office 365 migration"}
    Result:   "Analyze: Office 365 migration"

    Only bare ``{name}`` placeholders are filled; any other brace text is
    kept as written. An unknown name leaves the template as is and the
    raw data is appended.
    """
    unknown: list[str] = []

    def fill(match: re.Match) -> str:
        name = match.group(1)
        if name not in data:
            unknown.append(name)
            return match.group(0)
        return str(data[name])

    rendered = _PLACEHOLDER_RE.sub(fill, template)
    if unknown:
        logger.warning(f"Template has unknown placeholder(s) {unknown}, appending raw data")
        data_str = json.dumps(data, indent=2, default=str)
        return f"{rendered}\n\nData:\n{data_str}"
    return rendered


def parse_ai_json(text: str) -> dict[str, Any]:
    """Decode a model answer that should be a JSON object.

    Tolerates code fences, prose around the object and trailing commas.
    """
    cleaned = strip_code_fences(text)
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise RelayError(
            ErrorKind.UPSTREAM_HTTP,
            f"Model returned invalid JSON: {e.msg}",
            code=ErrorCode.API_INVALID_RESPONSE,
            detail=text[:500],
        ) from e
    if not isinstance(value, dict):
        raise RelayError(
            ErrorKind.UPSTREAM_HTTP,
            f"Model returned JSON {type(value).__name__}, expected an object",
            code=ErrorCode.API_INVALID_RESPONSE,
            detail=text[:500],
        )
    return value


def fallback_parse(user_input: str) -> dict[str, Any]:
    """Heuristic summary used when the parse step fails."""
    lowered = user_input.lower()
    industry = "enterprise"
    for keywords, name in _INDUSTRY_KEYWORDS:
        if any(k in lowered for k in keywords):
            industry = name
            break
    return {
        "technology": " ".join(user_input.split()[:3]),
        "scale": "Enterprise",
        "industry": industry,
        "compliance": "Standard",
        "complexity": ["Standard implementation"],
    }


def extract_sources(result: dict[str, Any], limit: int = 7) -> list[str]:
    """``url | title`` strings for the UI, deduplicated, order kept."""
    sources = result.get("sources")
    if not isinstance(sources, list):
        return []
    out: list[str] = []
    for source in sources:
        if isinstance(source, dict) and source.get("url"):
            label = f"{source['url']} | {source['title']}" if source.get("title") else str(source["url"])
        elif isinstance(source, str) and source:
            label = source
        else:
            continue
        if label not in out:
            out.append(label)
    return out[:limit]


async def execute_research(
    client: OpenRouterClient,
    request: ResearchRequest,
    default_model: str,
) -> AsyncGenerator[StepEvent | CompleteEvent | ErrorEvent, None]:
    """Run every step and yield events in emission order.

    The stream always ends with exactly one ``complete`` or ``error`` event.
    """
    logger.info(f"Starting research for: {request.input[:200]!r}")
    results: dict[str, Any] = {"input": request.input}
    previous: dict[str, Any] = {}

    for step in STEPS:
        model = getattr(request.models, step.key, None) or default_model
        yield StepEvent(step_id=step.id, status="active", progress=step.start, model=model)

        template = request.prompts.get(step.key) or DEFAULT_PROMPTS[step.key]
        prompt = render_prompt(template, {"input": request.input, "previous": json.dumps(previous)})
        try:
            text = await client.complete_text(prompt, model=model, name=f"Research step '{step.id}'")
            result = parse_ai_json(text)
        except Exception as e:
            error = as_relay_error(e)
            if step.id == "parse" and error.kind is not ErrorKind.CONFIGURATION:
                logger.warning(f"Parsing failed ({error.message}), using fallback parse")
                result = fallback_parse(request.input)
            else:
                log_error(error, step=step.id, model=model)
                body = error.to_dict()["error"]
                yield ErrorEvent(code=body["code"], message=body["message"])
                return

        sources = extract_sources(result) if step.id == "research" else None
        yield StepEvent(
            step_id=step.id,
            status="completed",
            progress=step.end,
            model=model,
            sources=sources or None,
        )
        results[_RESULT_KEYS[step.id]] = result
        previous = result

    logger.info("Research complete")
    yield CompleteEvent(content=results)
