from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

from .catalog import Catalog
from .errors import ScoringTimeout
from .models import LabTest, Suggestion
from .registry import SymptomScorer

logger = logging.getLogger("healthlab.matcher")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class SymptomMatcher:
    def __init__(
        self,
        catalog: Catalog,
        scorer: SymptomScorer,
        *,
        max_results: int = 5,
        min_score: float = 0.3,
        budget_seconds: float = 2.0,
        max_workers: int = 4,
    ) -> None:
        self.catalog = catalog
        self.scorer = scorer
        self.max_results = max(1, max_results)
        self.min_score = _clamp(min_score)
        self.budget_seconds = max(0.01, budget_seconds)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="symptom-scorer")

    def suggest_tests(self, free_text: str) -> list[Suggestion]:
        text = (free_text or "").strip()
        if not text:
            return []
        try:
            scored = self._score_within_budget(text)
        except ScoringTimeout as exc:
            logger.warning("%s; returning no suggestions", exc.message)
            return []
        except Exception:
            logger.exception("Symptom scorer %s failed; returning no suggestions", type(self.scorer).__name__)
            return []
        return self._rank(scored)

    def _score_within_budget(self, text: str) -> list[tuple[int, LabTest, float]]:
        deadline = time.monotonic() + self.budget_seconds
        future = self._pool.submit(self._score_all, text, deadline)
        try:
            return future.result(timeout=self.budget_seconds)
        except FutureTimeout as exc:
            future.cancel()
            raise ScoringTimeout(f"Symptom scoring exceeded {self.budget_seconds:.2f}s budget") from exc

    def _score_all(self, text: str, deadline: float) -> list[tuple[int, LabTest, float]]:
        scored: list[tuple[int, LabTest, float]] = []
        seen: set[str] = set()
        for index, test in enumerate(self.catalog.list_tests()):
            if time.monotonic() > deadline:
                break
            if test.code in seen:
                continue
            seen.add(test.code)
            scored.append((index, test, _clamp(float(self.scorer.score(text, test)))))
        return scored

    def _rank(self, scored: list[tuple[int, LabTest, float]]) -> list[Suggestion]:
        relevant = [item for item in scored if item[2] > 0 and item[2] >= self.min_score]
        relevant.sort(key=lambda item: (-item[2], item[0]))
        return [Suggestion(test=test, score=round(score, 4)) for _, test, score in relevant[: self.max_results]]

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
