from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import openai
from openai import AsyncOpenAI

from core.config import ClassifierConfig
from core.errors import ClassifierTransportError

if TYPE_CHECKING:
    from database.models import TicketRecord

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an AI support triage agent. Analyze customer complaints and return a JSON response.

You MUST respond with ONLY valid JSON (no markdown, no code fences, no extra text).

JSON Schema:
{
  "category": "BILLING" | "TECHNICAL" | "FEATURE_REQUEST",
  "urgency": "HIGH" | "MEDIUM" | "LOW",
  "sentimentScore": <integer 1-10, where 1=very negative, 10=very positive>,
  "draft": "<polite, context-aware response draft addressing the customer's issue>"
}

Triage Rules:
- BILLING: payment issues, charges, refunds, invoices, subscription billing.
- TECHNICAL: bugs, errors, crashes, login issues, performance problems.
- FEATURE_REQUEST: suggestions, enhancements, new functionality requests.
- HIGH urgency: financial impact, service outage, data loss, deadline pressure.
- MEDIUM urgency: functionality issues with workarounds, moderate inconvenience.
- LOW urgency: cosmetic issues, nice-to-have features, general feedback.
- The draft should be empathetic, professional, and actionable."""


class ClassifierClient(Protocol):
    async def classify(self, prompt: str) -> str: ...
    async def close(self) -> None: ...


def build_triage_prompt(ticket: TicketRecord) -> str:
    return f"Customer: {ticket.customer_name}\nSubject: {ticket.subject}\nComplaint: {ticket.complaint}"


class OpenAIClassifierClient(ClassifierClient):
    """Chat-completions call against any OpenAI-compatible endpoint.

    Retries are disabled in the SDK; the job queue owns every retry.
    """

    def __init__(self, config: ClassifierConfig, client: AsyncOpenAI | None = None) -> None:
        self.config = config
        self._client = client or AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=0,
        )

    async def classify(self, prompt: str) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.config.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except openai.APITimeoutError as exc:
            raise ClassifierTransportError(f"timed out after {self.config.timeout_seconds}s") from exc
        except openai.APIStatusError as exc:
            raise ClassifierTransportError(f"HTTP {exc.status_code}: {exc.message}") from exc
        except openai.APIError as exc:
            raise ClassifierTransportError(str(exc)) from exc

        if not response.choices:
            return ""
        content = response.choices[0].message.content or ""
        LOGGER.debug("Classifier returned %s characters (model=%s)", len(content), self.config.model)
        return content

    async def close(self) -> None:
        await self._client.close()
