"""
Diff Summarizer — Claude API integration.

Explains what changed between two versions of a metadata definition
(or, for a newly created item, what the current version does) and parses
the reply into a DiffSummary:
  - SUMMARY:  one-line business explanation → summary_text
  - CHANGES:  bullet lines                   → change_list
  - SECURITY: flagged issues                 → risk_signals
"""

import json
from typing import Optional

import httpx
import structlog

from auditpulse.exceptions import EnrichmentError
from auditpulse.schemas import Definition, DiffSummary

logger = structlog.get_logger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

SYSTEM_PROMPT = (
    "You are a platform configuration auditor. You explain configuration "
    "changes to business owners in plain language and flag security or "
    "performance hazards: hardcoded record ids, data writes inside loops, "
    "missing fault handling and widened access."
)

RESPONSE_FORMAT = """Format your response as:
SUMMARY: [one sentence explaining the change in business terms]

CHANGES:
- [element added/modified/deleted]
- [...]

SECURITY:
[CRITICAL: each issue found, one per line, or "No critical issues detected"]

IMPACTS: [business impacts, including on referencing items]"""

_CLEAN_MARKERS = ("no critical issues", "no issues", "none")


def build_prompt(previous: Optional[Definition], current: Definition, context: dict) -> str:
    """Prompt for a diff, or for a standalone explanation when previous is None."""
    item_type = context.get("metadata_type", "metadata item")
    parents = context.get("referencing_parents") or []

    lines = [f"Item: {current.name} ({item_type})"]
    if parents:
        lines.append(
            "This item is referenced by: " + ", ".join(parents)
            + ". Changes cascade to these items; assess risk accordingly."
        )
    if previous is None:
        lines += [
            "",
            "No previous version exists. Explain what this item does.",
            "",
            "CURRENT VERSION:",
            json.dumps(current.body, indent=2, default=str),
        ]
    else:
        lines += [
            "",
            "PREVIOUS VERSION:",
            json.dumps(previous.body, indent=2, default=str),
            "",
            "NEW VERSION:",
            json.dumps(current.body, indent=2, default=str),
        ]
    lines += ["", RESPONSE_FORMAT]
    return "\n".join(lines)


def parse_reply(text: str) -> DiffSummary:
    """Split an LLM reply into summary, change bullets and risk signals."""
    summary = ""
    changes: list[str] = []
    signals: list[str] = []
    section = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        upper = line.upper()
        if upper.startswith("SUMMARY:"):
            summary = line.split(":", 1)[1].strip()
            section = None
        elif upper.startswith("CHANGES:"):
            section = "changes"
        elif upper.startswith("SECURITY"):
            section = "security"
            rest = line.split(":", 1)[1].strip() if ":" in line else ""
            if rest:
                signals.append(rest)
        elif upper.startswith("IMPACTS:"):
            section = None
        elif section == "changes" and line.startswith(("-", "*", "•")):
            changes.append(line.lstrip("-*• ").strip())
        elif section == "security":
            signals.append(line.lstrip("-*• ").strip())

    signals = [s for s in signals if s and not s.lower().startswith(_CLEAN_MARKERS)]
    if not summary:
        summary = text.strip()
    return DiffSummary(summary_text=summary, change_list=changes, risk_signals=signals)


class LLMSummarizer:
    """SummarizationService backed by the Anthropic messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5-20251001",
        timeout: float = 60.0,
        max_tokens: int = 800,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._transport = transport
        if not self.api_key:
            logger.warning("anthropic_api_key_missing", msg="Diff summaries will be unavailable")

    async def summarize_diff(
        self,
        previous: Optional[Definition],
        current: Definition,
        context: dict,
    ) -> DiffSummary:
        if not self.api_key:
            raise EnrichmentError("Summarizer is not configured", service="summarizer")

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [
                {"role": "user", "content": build_prompt(previous, current, context)}
            ],
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(ANTHROPIC_API_URL, json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            logger.error("llm_generate_error", model=self.model, error=str(e))
            raise EnrichmentError(
                f"Summarization request failed: {e}", service="summarizer", cause=e
            ) from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        if not text.strip():
            raise EnrichmentError("Summarizer returned no text", service="summarizer")

        summary = parse_reply(text)
        logger.debug(
            "diff_summarized",
            item=current.name,
            changes=len(summary.change_list),
            risk_signals=len(summary.risk_signals),
        )
        return summary
