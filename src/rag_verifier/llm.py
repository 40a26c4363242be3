"""OpenAI-backed implementations of the judge, rewrite and enrichment collaborators.

Each class owns an `OpenAI` client and performs one chat completion per call.
Replies that cannot be interpreted raise :class:`MalformedResponse`; the
retrieval components turn that, like any other collaborator failure, into
their documented fallback.
"""
from __future__ import annotations

import json
import re
from typing import Sequence

import openai
from openai import OpenAI

from .errors import CollaboratorTimeout, JudgeUnavailable, MalformedResponse
from .logging import get_logger
from .schema import EvidenceItem, HopDecision, ReformulationStrategy, RerankedCandidate, VerdictLabel

logger = get_logger(__name__)

_FENCE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?```$", re.DOTALL)

RELEVANCE_PROMPT = (
    "You are a technical support expert evaluating document relevance.\n"
    "Rate how relevant this document passage is to the given query.\n\n"
    "Query: {query}\n\n"
    "Document passage:\n{content}\n\n"
    'Respond with ONLY a JSON object: {{"score": 0.0 to 1.0, "reason": "brief reason"}}\n'
    "Score guidelines:\n"
    "- 1.0: Directly answers the query with specific details\n"
    "- 0.7-0.9: Highly relevant, contains most needed information\n"
    "- 0.4-0.6: Partially relevant, some useful context\n"
    "- 0.1-0.3: Tangentially related\n"
    "- 0.0: Completely irrelevant"
)

REFORMULATION_PROMPTS = {
    ReformulationStrategy.SYNONYM_EXPANSION: (
        "Expand the following search query with synonyms and related terms.\n"
        "Original query: {original}\n"
        "Partial search results: {excerpts}\n"
        "Return only the expanded query (one line):"
    ),
    ReformulationStrategy.BROADEN: (
        "Rewrite the following search query using broader, higher-level concepts.\n"
        "Original query: {original}\n"
        "Return only the broadened query (one line):"
    ),
    ReformulationStrategy.CROSS_LANGUAGE: (
        "Translate the following search query into English; if it is already English, "
        "translate it into Korean. Keep technical product terms exact.\n"
        "Query: {original}\n"
        "Return only the translation (one line):"
    ),
}

HOP_DECISION_PROMPT = (
    "Decide whether answering the question below requires an additional document search.\n\n"
    "Question: {question}\n\n"
    "First search results:\n{excerpts}\n\n"
    'If the first results fully answer the question, return {{"needs_more_hops": false}}.\n'
    'If another search is needed, return {{"needs_more_hops": true, "next_query": "specific follow-up query"}}.\n'
    "Return JSON only."
)

EXPLANATION_PROMPT = (
    "A support question was checked against retrieved evidence and judged {label}.\n\n"
    "Question: {question}\n\n"
    "Evidence:\n{evidence}\n\n"
    "Explain the judgement in one or two sentences, citing the evidence. "
    "Return the explanation only."
)

HYDE_SYSTEM_PROMPT = (
    "You are a technical support specialist for laboratory instruments and reagents. "
    "Write the passage of a product manual or technical note that would answer the user's question. "
    "Use the terminology such a document would use: product names, settings, quantities and steps. "
    "Write three to five sentences of plain prose, with no preamble."
)

TRANSLATION_SYSTEM_PROMPT = (
    "You are a translation assistant. Translate the following text from Korean to English. "
    "If the text is already in English, return it as-is. Only output the translation, nothing else."
)

CONTEXT_PROMPT = (
    "<document>\n{document}\n</document>\n\n"
    "Here is a chunk taken from the document above:\n"
    "<chunk>\n{chunk}\n</chunk>\n\n"
    "Summarise the context of this chunk in one or two sentences. Mention the file name ({file_name}), "
    "the section, the product, and what the chunk describes. Return the summary only."
)

_UNAVAILABLE_ERRORS = (openai.APIConnectionError, openai.AuthenticationError, openai.PermissionDeniedError)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```) if present."""
    stripped = text.strip()
    match = _FENCE.match(stripped)
    return match.group(1).strip() if match else stripped


def parse_json_reply(text: str) -> dict:
    """Parse a JSON object reply, tolerating markdown fences.

    Raises:
        MalformedResponse: If the reply is not a JSON object.
    """
    try:
        payload = json.loads(strip_code_fences(text))
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"reply is not valid JSON: {text[:80]!r}") from exc
    if not isinstance(payload, dict):
        raise MalformedResponse(f"reply is not a JSON object: {text[:80]!r}")
    return payload


def _excerpts(results: Sequence[RerankedCandidate], count: int, chars: int) -> list[str]:
    return [result.content[:chars] for result in results[:count]]


class _ChatCollaborator:
    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        timeout: float | None = None,
        client: OpenAI | None = None,
    ):
        self.model = model
        if client is not None:
            self.client = client
        else:
            self.client = OpenAI(timeout=timeout) if timeout is not None else OpenAI()

    def _complete(self, prompt: str, max_tokens: int, temperature: float, system: str | None = None) -> str:
        messages = [{"role": "user", "content": prompt}]
        if system is not None:
            messages.insert(0, {"role": "system", "content": system})
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        if not response.choices:
            raise MalformedResponse("completion returned no choices")
        return (response.choices[0].message.content or "").strip()


class OpenAIRelevanceJudge(_ChatCollaborator):
    """Relevance judge asking a chat model for a `{"score": ...}` rating."""

    max_content_chars = 1000

    def score(self, query: str, content: str) -> float:
        """Score one passage against a query.

        Returns:
            The model's relevance score. Range checking is left to the reranker.

        Raises:
            CollaboratorTimeout: If this one request timed out.
            JudgeUnavailable: If the API cannot be reached or rejects the key.
            MalformedResponse: If the reply carries no numeric score.
        """
        passage = content if len(content) <= self.max_content_chars else content[: self.max_content_chars] + "..."
        try:
            reply = self._complete(RELEVANCE_PROMPT.format(query=query, content=passage), 100, 0.0)
        except openai.APITimeoutError as exc:
            raise CollaboratorTimeout(str(exc)) from exc
        except _UNAVAILABLE_ERRORS as exc:
            raise JudgeUnavailable(str(exc)) from exc

        score = parse_json_reply(reply).get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            raise MalformedResponse(f"score is not numeric: {score!r}")
        return float(score)


class OpenAIQueryReformulator(_ChatCollaborator):
    """Rewrites a low-confidence query; the strategy depends on the attempt index."""

    excerpt_count = 3
    excerpt_chars = 200

    def reformulate(
        self,
        original_query: str,
        current_query: str,
        current_results: Sequence[RerankedCandidate],
        attempt_index: int,
    ) -> str:
        strategy = ReformulationStrategy.for_attempt(attempt_index)
        excerpts = "\n".join(_excerpts(current_results, self.excerpt_count, self.excerpt_chars))
        prompt = REFORMULATION_PROMPTS[strategy].format(original=original_query, excerpts=excerpts)
        rewritten = self._complete(prompt, 100, 0.3).splitlines()
        query = rewritten[0].strip() if rewritten else ""
        logger.debug("llm.reformulate", strategy=strategy.value, query=query)
        return query


class OpenAIHopDecisionJudge(_ChatCollaborator):
    """Asks whether first-hop excerpts answer the question, and for a follow-up query if not."""

    def decide(self, question: str, excerpts: Sequence[str]) -> HopDecision:
        reply = self._complete(
            HOP_DECISION_PROMPT.format(question=question, excerpts="\n---\n".join(excerpts)), 200, 0.1
        )
        payload = parse_json_reply(reply)
        needs_more = payload.get("needs_more_hops", False)
        if not isinstance(needs_more, bool):
            raise MalformedResponse(f"needs_more_hops is not a boolean: {needs_more!r}")
        next_query = payload.get("next_query")
        if next_query is not None and not isinstance(next_query, str):
            raise MalformedResponse(f"next_query is not a string: {next_query!r}")
        return HopDecision(needs_more=needs_more, next_query=next_query)


class OpenAIVerdictExplainer(_ChatCollaborator):
    """Writes a short natural-language justification for a verdict."""

    excerpt_chars = 300

    def explain(self, question: str, label: VerdictLabel, evidences: Sequence[EvidenceItem]) -> str:
        evidence = "\n".join(
            f"[{index}] ({item.score:.2f}) {item.excerpt[: self.excerpt_chars]}"
            for index, item in enumerate(evidences, start=1)
        )
        return self._complete(
            EXPLANATION_PROMPT.format(label=label.value, question=question, evidence=evidence), 200, 0.2
        )


class OpenAIHydeQueryTransformer(_ChatCollaborator):
    """Writes a hypothetical manual passage answering the question (HyDE).

    The passage is embedded in place of the question, so it lands closer to
    the documents that would answer it.
    """

    def transform(self, question: str, product_context: str | None = None) -> str:
        message = f"[Product: {product_context}] {question}" if product_context else question
        passage = self._complete(message, 500, 0.7, system=HYDE_SYSTEM_PROMPT)
        if not passage:
            raise MalformedResponse("empty hypothetical passage")
        logger.debug("llm.hyde", question=question, passage_chars=len(passage))
        return passage


def is_likely_english(text: str) -> bool:
    """True when every non-whitespace character is ASCII."""
    return all(char.isascii() or char.isspace() for char in text)


class OpenAIQueryTranslator(_ChatCollaborator):
    """Translates non-English questions to English before retrieval."""

    def translate(self, question: str) -> str:
        """Return the English form of `question`.

        ASCII-only questions are returned unchanged without an API call.

        Raises:
            MalformedResponse: If the model returns an empty translation.
        """
        if not question.strip() or is_likely_english(question):
            return question
        translated = self._complete(question, 300, 0.0, system=TRANSLATION_SYSTEM_PROMPT)
        if not translated:
            raise MalformedResponse("empty translation")
        logger.info("llm.translated", question=question, translated=translated)
        return translated


class OpenAIChunkEnricher(_ChatCollaborator):
    """Writes a short context line situating a chunk within its document."""

    max_document_chars = 6000

    def context_for(self, document_text: str, chunk_content: str, file_name: str | None = None) -> str:
        document = document_text
        if len(document) > self.max_document_chars:
            document = document[: self.max_document_chars] + "..."
        return self._complete(
            CONTEXT_PROMPT.format(document=document, chunk=chunk_content, file_name=file_name or ""), 200, 0.3
        )
