"""
Enrichment gateway: a generative-text assessment of a sourcing request.

The lifecycle engine only knows ``EnrichmentGateway.analyze()``, which
returns free text plus a list of citation-like sources.  Which provider
sits behind it is a deployment detail.

Registered implementations:
  anthropic -- AnthropicEnrichmentGateway (messages API with web search)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from pharmdesk.config import EnrichmentSettings
from pharmdesk.errors import EnrichmentError
from pharmdesk.models import EnrichmentSource

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are a pharmaceutical logistics assistant for a rare drug sourcing "
    "platform. Do not provide medical advice. Focus on logistics and "
    "pharmacology facts."
)

PROMPT_TEMPLATE = """Analyze the following drug request:
Drug Name: {drug_name}
Patient Notes: {notes}

Please provide a brief assessment (max 100 words) covering:
1. Is this typically considered a rare/orphan drug?
2. Are there common supply chain constraints?
3. Any critical handling requirements (e.g., cold chain)?"""


class EnrichmentResult(BaseModel):
    text: str
    sources: list[EnrichmentSource] = Field(default_factory=list)


class EnrichmentGateway(ABC):

    @abstractmethod
    def analyze(self, drug_name: str, notes: str) -> EnrichmentResult:
        """Assess a drug request.

        Raises:
            EnrichmentError: If the provider is not configured or the call fails.
                Failures are not retried.
        """


def build_prompt(drug_name: str, notes: str) -> str:
    return PROMPT_TEMPLATE.format(drug_name=drug_name, notes=notes or "None provided")


class AnthropicEnrichmentGateway(EnrichmentGateway):
    """Enrichment through the Anthropic messages API.

    When ``max_searches`` is positive the server-side web search tool is
    enabled and the citations attached to the answer become the sources.
    """

    def __init__(self, settings: EnrichmentSettings, client=None) -> None:
        self._settings = settings
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client
        if not self._settings.api_key:
            raise EnrichmentError(
                "AI configuration missing: no enrichment API key is set. "
                "Set ANTHROPIC_API_KEY and restart the service.",
                code="ENRICHMENT_NOT_CONFIGURED",
            )
        import anthropic

        self._client = anthropic.Anthropic(api_key=self._settings.api_key)
        return self._client

    def analyze(self, drug_name: str, notes: str) -> EnrichmentResult:
        client = self._get_client()
        kwargs = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_prompt(drug_name, notes)}],
        }
        if self._settings.max_searches > 0:
            kwargs["tools"] = [{
                "type": "web_search_20250305",
                "name": "web_search",
                "max_uses": self._settings.max_searches,
            }]

        try:
            response = client.messages.create(**kwargs)
        except Exception as exc:
            logger.error("Enrichment call failed for %r: %s", drug_name, exc)
            raise EnrichmentError(f"Enrichment call failed: {exc}") from exc

        result = parse_response(response)
        logger.info("Enrichment returned %d source(s) for %r", len(result.sources), drug_name)
        return result


def parse_response(response) -> EnrichmentResult:
    """Collect answer text and de-duplicated citations from a messages response."""
    parts: list[str] = []
    sources: list[EnrichmentSource] = []
    seen: set[str] = set()
    for block in getattr(response, "content", None) or []:
        if getattr(block, "type", None) != "text":
            continue
        parts.append(block.text)
        for citation in getattr(block, "citations", None) or []:
            uri = getattr(citation, "url", None)
            if not uri or uri in seen:
                continue
            seen.add(uri)
            sources.append(EnrichmentSource(title=getattr(citation, "title", None) or "Source", uri=uri))

    text = "".join(parts).strip() or "Analysis complete but no text returned."
    return EnrichmentResult(text=text, sources=sources)
