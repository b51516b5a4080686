"""
Pattern analyzers that turn a bundle of global memories into insight strings.
The Ollama analyzer asks a local model; the heuristic analyzer works offline
from metadata and term frequencies.
"""

import re
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Dict, List, Sequence, Tuple

import ollama

from util.logging import logger as structured_logger
from .errors import AnalyzerUnavailable
from .schema import MemoryCategory, MemoryRecord

NOT_ENOUGH_DATA = "Not enough data to extract insights"

_BULLET_PREFIX = re.compile(r"^\s*(?:[-*•]+|\d+[.)])\s*")
_TERM_PATTERN = re.compile(r"[a-z][a-z'-]{2,}")
_STOPWORDS = frozenset("""
    the and for with that this from was were are our their they them into than then
    have has had not but you your all any can its it's out over more most very also
    been being which when what who how why where there here about after before
    email phone ssn name
""".split())


class IInsightAnalyzer(ABC):
    """Abstract interface for insight analyzers."""

    @abstractmethod
    def analyze(self, category: MemoryCategory, records: Sequence[MemoryRecord],
                sample_limit: int = 100, force_refresh: bool = False) -> List[str]:
        """Return natural-language insights for the records of one category."""
        pass


def parse_insights(text: str, max_insights: int = 5) -> List[str]:
    """One insight per non-empty line, list markers stripped, duplicates dropped."""
    insights = []
    for line in (text or "").splitlines():
        line = _BULLET_PREFIX.sub("", line).strip()
        if line and line not in insights:
            insights.append(line)
        if len(insights) >= max_insights:
            break
    return insights


class OllamaInsightAnalyzer(IInsightAnalyzer):
    """Analyzer backed by a local Ollama model."""

    def __init__(self, model_name: str, host: str = None, timeout_sec: float = 30,
                 client: ollama.Client = None, max_insights: int = 5):
        self.model_name = model_name
        self.max_insights = max_insights
        self.client = client or ollama.Client(host=host, timeout=timeout_sec)
        self._cache: Dict[Tuple[str, Tuple[str, ...]], List[str]] = {}
        self._lock = threading.Lock()

    def analyze(self, category: MemoryCategory, records: Sequence[MemoryRecord],
                sample_limit: int = 100, force_refresh: bool = False) -> List[str]:
        category = MemoryCategory(category)
        sample = list(records)[:sample_limit]
        if not sample:
            return [NOT_ENOUGH_DATA]

        cache_key = (category.value, tuple(record.id for record in sample))
        if not force_refresh:
            with self._lock:
                cached = self._cache.get(cache_key)
            if cached is not None:
                return list(cached)

        try:
            response = self.client.chat(
                model=self.model_name,
                messages=self._build_messages(category, sample),
                options={'temperature': 0.2}
            )
        except ollama.ResponseError as e:
            raise AnalyzerUnavailable(f"Ollama model error: {e}", {"category": category.value}) from e
        except Exception as e:
            raise AnalyzerUnavailable(f"Ollama request failed: {e}", {"category": category.value}) from e

        content = response.get('message', {}).get('content', '')
        insights = parse_insights(content, self.max_insights)
        if not insights:
            raise AnalyzerUnavailable("Analyzer returned no insights", {"category": category.value})

        with self._lock:
            self._cache[cache_key] = list(insights)

        structured_logger.log_operation("analyzer.ollama", "success", {
            "category": category.value,
            "records": len(sample),
            "insights": len(insights),
        })
        return insights

    def _build_messages(self, category: MemoryCategory, sample: List[MemoryRecord]) -> List[Dict[str, str]]:
        observations = "\n".join(
            f"- ({record.relevance_score:.2f}, x{record.frequency}) {record.content}"
            if record.relevance_score is not None else f"- {record.content}"
            for record in sample
        )
        return [
            {
                'role': 'system',
                'content': ("You summarize anonymized design observations into short, actionable "
                            f"insights. Reply with at most {self.max_insights} insights, one per line.")
            },
            {
                'role': 'user',
                'content': f"Category: {category.value}\nObservations (relevance, frequency):\n{observations}"
            },
        ]


class HeuristicInsightAnalyzer(IInsightAnalyzer):
    """Offline analyzer built on metadata and term frequencies."""

    def __init__(self, max_insights: int = 5):
        self.max_insights = max_insights

    def analyze(self, category: MemoryCategory, records: Sequence[MemoryRecord],
                sample_limit: int = 100, force_refresh: bool = False) -> List[str]:
        category = MemoryCategory(category)
        sample = list(records)[:sample_limit]
        if not sample:
            return [NOT_ENOUGH_DATA]

        total = len(sample)
        insights = []

        scored = [r.relevance_score for r in sample if r.relevance_score is not None]
        if scored:
            insights.append(f"{total} {category.value} memories analyzed, "
                            f"average relevance {sum(scored) / len(scored):.2f}")
        else:
            insights.append(f"{total} {category.value} memories analyzed")

        pairs = Counter()
        for record in sample:
            for key, value in record.metadata.items():
                if isinstance(value, (str, int, float, bool)) and key != "category":
                    pairs[(key, str(value))] += 1
        for (key, value), count in pairs.most_common(2):
            if count > 1:
                insights.append(f"{count} of {total} memories share {key}={value}")

        terms = Counter()
        for record in sample:
            # count each term once per record
            words = [t for t in _TERM_PATTERN.findall(record.content.lower()) if t not in _STOPWORDS]
            terms.update(dict.fromkeys(words, 1))
        recurring = [term for term, count in terms.most_common(5) if count > 1]
        if recurring:
            insights.append(f"Recurring themes: {', '.join(recurring)}")

        top = max(sample, key=lambda r: ((r.relevance_score or 0.0), (r.frequency or 0)))
        insights.append(f"Most reinforced observation: {top.content[:120]}")

        return insights[:self.max_insights]
