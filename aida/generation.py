"""Text generation with Google Gemini: per-specialty answers and collaborative panels."""

import json
import logging
import os

from langchain_google_genai import ChatGoogleGenerativeAI

from aida.errors import GenerationError
from aida.models import AgentOpinion, Source

logger = logging.getLogger(__name__)

GEMINI_MODEL = os.environ.get("GEMINI_MODEL", "gemini-1.5-flash")
GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "30"))

COLLABORATIVE_PROMPT = """You are a team of medical AI specialists analyzing a patient case together.

Case: "{query}"

Specialists on the panel: {specialties}.

Discuss the case as the panel would: each specialist gives an opinion from their own
expertise, considers what the others would add, and settles on a refined view.

## Output Format:
Respond with ONLY this JSON (no markdown, no extra text):
{{
  "agents": [
    {{
      "specialty": "<one of the specialists above, spelled exactly as given>",
      "opinion": "<the specialist's refined opinion>",
      "reasoning": "<the medical evidence and reasoning behind it>",
      "confidence": <integer 0-100>,
      "sources": [{{"title": "<reference title>", "url": "<optional URL>"}}]
    }}
  ]
}}
"""

UNAVAILABLE_OPINION = "Analysis unavailable"


def parse_json(raw_text: str):
    """Extract JSON from an LLM response, handling markdown fences and mixed text."""
    text = raw_text
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    try:
        return json.loads(text.strip())
    except json.JSONDecodeError:
        first = raw_text.find("{")
        last = raw_text.rfind("}")
        if first != -1 and last > first:
            return json.loads(raw_text[first:last + 1])
        raise


def parse_sources(raw_sources) -> list[Source]:
    if not isinstance(raw_sources, list):
        return []
    sources = []
    for s in raw_sources:
        if isinstance(s, dict) and s.get("title"):
            sources.append(Source(title=str(s["title"]), url=s.get("url") or None))
        elif isinstance(s, str) and s.strip():
            sources.append(Source(title=s.strip()))
    return sources


def _message_text(message) -> str:
    content = message.content
    if isinstance(content, list):
        return "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
    return content


class GeminiGenerator:
    def __init__(self, model: str = GEMINI_MODEL, timeout: float = GENERATION_TIMEOUT_SECONDS):
        self.model = model
        self.timeout = timeout
        self._llm = None

    def _get_llm(self):
        if self._llm is None:
            self._llm = ChatGoogleGenerativeAI(
                model=self.model,
                google_api_key=os.environ.get("GOOGLE_API_KEY"),
                temperature=0.2,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._llm

    def generate(self, prompt: str, specialty_hint: str | None = None) -> str:
        full_prompt = prompt
        if specialty_hint:
            full_prompt = f"As a medical AI specializing in {specialty_hint}, {prompt}"

        try:
            return _message_text(self._get_llm().invoke(full_prompt))
        except Exception as e:
            raise GenerationError(f"Gemini request failed: {e}") from e

    def generate_collaborative(self, query: str, specialties: list[str]) -> list[AgentOpinion]:
        """One panel-style request covering every specialty.

        Specialties missing from the reply come back as unavailable with
        confidence 0. Consensus is left to the caller.
        """
        prompt = COLLABORATIVE_PROMPT.format(query=query, specialties=", ".join(specialties))
        raw_text = self.generate(prompt)

        by_specialty: dict[str, dict] = {}
        try:
            parsed = parse_json(raw_text)
            entries = parsed.get("agents")
            if not isinstance(entries, list):
                logger.warning("Collaborative analysis returned no agent list")
                entries = []
            for entry in entries:
                if isinstance(entry, dict) and entry.get("specialty"):
                    by_specialty[str(entry["specialty"]).strip().lower()] = entry
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Collaborative analysis returned non-JSON response")

        opinions = []
        for specialty in specialties:
            entry = by_specialty.get(specialty.lower())
            if entry is None:
                opinions.append(AgentOpinion(
                    specialty=specialty,
                    opinion=UNAVAILABLE_OPINION,
                    reasoning="The panel did not return an analysis for this specialty.",
                    confidence=0,
                ))
                continue
            opinions.append(AgentOpinion(
                specialty=specialty,
                opinion=str(entry.get("opinion") or UNAVAILABLE_OPINION),
                reasoning=str(entry.get("reasoning") or ""),
                confidence=entry.get("confidence", 0),
                sources=parse_sources(entry.get("sources")),
            ))
        return opinions
