from __future__ import annotations

import re
from typing import Iterable, Sequence

from .contracts import PolarityClassifier, VerdictExplainer
from .logging import get_logger
from .resilience import attempt
from .schema import EvidenceItem, Polarity, RiskFlag, Verdict, VerdictLabel
from .settings import VerdictSettings
from .tracing import ATTR_INPUT_VALUE, ATTR_VERDICT_LABEL, ATTR_VERDICT_RISK_FLAGS, stage_span

logger = get_logger(__name__)

DEFAULT_POSITIVE_TERMS = ("valid", "supported", "aligned", "consistent", "recommended", "strong")
DEFAULT_NEGATIVE_TERMS = ("invalid", "contradict", "inconsistent", "rejected", "not recommended", "weak")

REASONS = {
    VerdictLabel.SUPPORTED: "Top evidence scores are high; the question matches the documents.",
    VerdictLabel.CONDITIONAL: "Relevant evidence exists but its confidence is not high enough.",
    VerdictLabel.REFUTED: "Evidence scores are low; the question's claim matches the documents poorly.",
}
CONFLICT_REASON = "Conflicting evidence was detected; the answer needs a conditional judgement."
NO_EVIDENCE_REASON = "No relevant evidence was found; more material is needed."


def _term_pattern(terms: Iterable[str]) -> re.Pattern[str] | None:
    alternatives = [r"\s+".join(re.escape(word) for word in term.lower().split()) for term in terms if term.strip()]
    if not alternatives:
        return None
    # Longest first so multi-word phrases win over their own words.
    alternatives.sort(key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\w*", re.IGNORECASE)


class KeywordPolarityClassifier:
    """Classifies text polarity by counting affirming and negating cue words.

    Negative cues are matched first and removed, so "invalid" and
    "not recommended" never also count as "valid" or "recommended".
    Matching is case-insensitive on word starts; inflections such as
    "contradicts" or "strongly" count as their stem.
    """

    def __init__(
        self,
        positive_terms: Sequence[str] = DEFAULT_POSITIVE_TERMS,
        negative_terms: Sequence[str] = DEFAULT_NEGATIVE_TERMS,
    ):
        self._positive = _term_pattern(positive_terms)
        self._negative = _term_pattern(negative_terms)

    def score(self, text: str | None) -> int:
        if not text or not text.strip():
            return 0
        remaining = text
        negatives = 0
        if self._negative is not None:
            remaining, negatives = self._negative.subn(" ", remaining)
        positives = len(self._positive.findall(remaining)) if self._positive is not None else 0
        return positives - negatives

    def classify(self, text: str) -> Polarity:
        score = self.score(text)
        if score > 0:
            return Polarity.POSITIVE
        if score < 0:
            return Polarity.NEGATIVE
        return Polarity.NEUTRAL


def insufficient_evidence_verdict(evidences: Sequence[EvidenceItem] = ()) -> Verdict:
    return Verdict(
        verdict=VerdictLabel.CONDITIONAL,
        confidence=0.0,
        reason=NO_EVIDENCE_REASON,
        risk_flags=[RiskFlag.INSUFFICIENT_EVIDENCE],
        evidences=list(evidences),
    )


class VerdictSynthesizer:
    """Aggregates evidence scores and polarity into a verdict with risk flags."""

    def __init__(
        self,
        classifier: PolarityClassifier | None = None,
        settings: VerdictSettings | None = None,
        explainer: VerdictExplainer | None = None,
        timeout: float | None = None,
    ):
        self.classifier = classifier or KeywordPolarityClassifier()
        self.settings = settings or VerdictSettings()
        self.explainer = explainer
        self.timeout = timeout

    def synthesize(self, question: str, evidences: Sequence[EvidenceItem]) -> Verdict:
        """Produce a verdict for `question` from resolved evidence.

        Rules, applied in order:

        1. No evidence: CONDITIONAL, confidence 0.0, INSUFFICIENT_EVIDENCE.
        2. The mean score, rounded to 3 decimals, is the confidence.
           At least 0.70 is SUPPORTED, at least 0.45 is CONDITIONAL, anything
           lower is REFUTED with WEAK_EVIDENCE_MATCH (plus LOW_CONFIDENCE
           below 0.50).
        3. Excerpts disagreeing in polarity, or opposing the question, add
           CONFLICTING_EVIDENCE and force CONDITIONAL.
        4. A max-min score spread above 0.35 does the same.

        Never raises; an unexpected failure yields the no-evidence verdict.
        """
        with stage_span("verdict", **{ATTR_INPUT_VALUE: question}) as span:
            try:
                verdict = self._synthesize(question, list(evidences))
            except Exception:  # noqa: BLE001
                logger.exception("verdict.failed", evidences=len(evidences))
                verdict = insufficient_evidence_verdict(evidences)
            span.set_attribute(ATTR_VERDICT_LABEL, verdict.verdict.value)
            span.set_attribute(ATTR_VERDICT_RISK_FLAGS, [flag.value for flag in verdict.risk_flags])
        return verdict

    def _synthesize(self, question: str, evidences: list[EvidenceItem]) -> Verdict:
        if not evidences:
            return insufficient_evidence_verdict()

        scores = [item.score for item in evidences]
        avg = round(sum(scores) / len(scores), 3)
        flags: list[RiskFlag] = []

        if avg >= self.settings.supported_threshold:
            label = VerdictLabel.SUPPORTED
        elif avg >= self.settings.conditional_threshold:
            label = VerdictLabel.CONDITIONAL
        else:
            label = VerdictLabel.REFUTED
            flags.append(RiskFlag.WEAK_EVIDENCE_MATCH)
            if avg < self.settings.low_confidence_threshold:
                flags.append(RiskFlag.LOW_CONFIDENCE)

        spread = round(max(scores) - min(scores), 3)
        conflicting_by_spread = len(scores) > 1 and spread > self.settings.spread_threshold
        conflicting_by_polarity = self.has_polarity_conflict(question, evidences)
        conflicting = conflicting_by_spread or conflicting_by_polarity
        if conflicting:
            flags.append(RiskFlag.CONFLICTING_EVIDENCE)
            label = VerdictLabel.CONDITIONAL

        logger.info(
            "verdict.synthesized",
            verdict=label.value,
            confidence=avg,
            spread=spread,
            polarity_conflict=conflicting_by_polarity,
            evidences=len(evidences),
        )
        return Verdict(
            verdict=label,
            confidence=avg,
            reason=self._reason(question, label, conflicting, evidences),
            risk_flags=flags,
            evidences=evidences,
        )

    def has_polarity_conflict(self, question: str, evidences: Sequence[EvidenceItem]) -> bool:
        question_polarity = self.classifier.classify(question)
        polarities = {self.classifier.classify(item.excerpt) for item in evidences}
        has_positive = Polarity.POSITIVE in polarities
        has_negative = Polarity.NEGATIVE in polarities

        if has_positive and has_negative:
            return True
        if question_polarity is Polarity.POSITIVE and has_negative:
            return True
        return question_polarity is Polarity.NEGATIVE and has_positive

    def _reason(
        self,
        question: str,
        label: VerdictLabel,
        conflicting: bool,
        evidences: Sequence[EvidenceItem],
    ) -> str:
        template = CONFLICT_REASON if conflicting else REASONS[label]
        if self.explainer is None:
            return template
        outcome = attempt(self.explainer.explain, question, label, evidences, timeout=self.timeout)
        if outcome.failed:
            logger.warning("verdict.explain_failed", error=outcome.describe_error())
        explanation = outcome.unwrap_or(template)
        if not isinstance(explanation, str) or not explanation.strip():
            return template
        return explanation.strip()
