"""Keyword scoring for agent dispatch.

Scoring is a pure function of the query text and the phrase table::

    score(agent) = clamp(sum(boost hits) - sum(suppress hits), 0, 1)

The highest score wins; ties go to the higher ``priority``; when every
score is zero the general agent answers.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from storerag.namespaces.registry import normalize_text, phrase_pattern

from .agents import AGENT_PROFILES, DEFAULT_AGENT, AgentProfile

logger = structlog.get_logger("router.classifier")


@dataclass
class ClassificationResult:
    """Outcome of scoring a query against every agent."""
    agent_type: str
    confidence: float
    scores: Dict[str, float]
    matched: List[str] = field(default_factory=list)

    @property
    def reasoning(self) -> str:
        if not self.matched:
            return f"No routing phrases matched; using {self.agent_type}"
        return f"{self.agent_type} matched {', '.join(self.matched)}"


def apply_overrides(
    profiles: Mapping[str, AgentProfile],
    overrides: Optional[Mapping[str, float]],
) -> Dict[str, AgentProfile]:
    """Return profiles with ``"<agent>:<phrase>"`` weight overrides applied.

    An override replaces the weight wherever the phrase already appears
    (boost or suppress); an unknown phrase is added as a boost. A weight of
    zero disables the phrase.
    """
    if not overrides:
        return dict(profiles)

    boosts = {name: dict(p.boost) for name, p in profiles.items()}
    suppresses = {name: dict(p.suppress) for name, p in profiles.items()}
    for key, weight in overrides.items():
        agent, sep, phrase = key.partition(":")
        if not sep or agent not in profiles:
            logger.warning("Ignoring router weight override", key=key)
            continue
        phrase = normalize_text(phrase.strip())
        if phrase in suppresses[agent]:
            suppresses[agent][phrase] = float(weight)
        else:
            boosts[agent][phrase] = float(weight)

    return {
        name: AgentProfile(
            agent_type=p.agent_type,
            description=p.description,
            system_prompt=p.system_prompt,
            boost=boosts[name],
            suppress=suppresses[name],
            priority=p.priority,
        )
        for name, p in profiles.items()
    }


class AgentClassifier:
    """Scores queries against a table of agent profiles."""

    def __init__(
        self,
        profiles: Optional[Mapping[str, AgentProfile]] = None,
        overrides: Optional[Mapping[str, float]] = None,
    ):
        self.profiles = apply_overrides(profiles or AGENT_PROFILES, overrides)
        self._patterns: Dict[str, Tuple[list, list]] = {
            name: (
                [(phrase, phrase_pattern(phrase), w) for phrase, w in p.boost.items() if w],
                [(phrase, phrase_pattern(phrase), w) for phrase, w in p.suppress.items() if w],
            )
            for name, p in self.profiles.items()
        }

    def score(self, query_text: str) -> Tuple[Dict[str, float], Dict[str, List[str]]]:
        text = normalize_text(query_text)
        scores: Dict[str, float] = {}
        matched: Dict[str, List[str]] = {}
        for name, (boosts, suppresses) in self._patterns.items():
            total = 0.0
            hits = []
            for phrase, pattern, weight in boosts:
                if pattern.search(text):
                    total += weight
                    hits.append(phrase)
            for phrase, pattern, weight in suppresses:
                if pattern.search(text):
                    total -= weight
            scores[name] = min(max(total, 0.0), 1.0)
            matched[name] = hits
        return scores, matched

    def select(self, scores: Mapping[str, float]) -> Tuple[str, float]:
        best = None
        for name, value in scores.items():
            if value <= 0:
                continue
            priority = self.profiles[name].priority if name in self.profiles else 0
            if best is None or (value, priority) > (best[1], best[2]):
                best = (name, value, priority)
        if best is None:
            return DEFAULT_AGENT, 0.0
        return best[0], best[1]

    def classify(self, query_text: str) -> ClassificationResult:
        scores, matched = self.score(query_text)
        agent_type, confidence = self.select(scores)
        result = ClassificationResult(
            agent_type=agent_type,
            confidence=confidence,
            scores=scores,
            matched=matched.get(agent_type, []),
        )
        logger.debug("Query classified", agent_type=agent_type, confidence=confidence)
        return result


_default_classifier: Optional[AgentClassifier] = None


def _classifier() -> AgentClassifier:
    global _default_classifier
    if _default_classifier is None:
        _default_classifier = AgentClassifier()
    return _default_classifier


def classify(query_text: str) -> Dict[str, float]:
    """Per-agent scores for a query using the built-in table."""
    scores, _ = _classifier().score(query_text)
    return scores


def select_agent(scores: Mapping[str, float]) -> str:
    """Highest score wins, ties by priority, all-zero falls back to general."""
    agent_type, _ = _classifier().select(scores)
    return agent_type
