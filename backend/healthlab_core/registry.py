from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol

from .models import LabTest


class SymptomScorer(Protocol):
    def score(self, text: str, test: LabTest) -> float: ...


ScorerFactory = Callable[[], SymptomScorer]


@dataclass
class ScorerDefinition:
    name: str
    factory: ScorerFactory


class ScorerRegistry:
    def __init__(self) -> None:
        self._scorers: dict[str, ScorerDefinition] = {}
        self._aliases: dict[str, str] = {}

    def register(self, scorer: ScorerDefinition) -> None:
        self._scorers[scorer.name] = scorer

    def add_alias(self, alias: str, target: str) -> None:
        self._aliases[alias] = target

    def resolve(self, name: str) -> ScorerDefinition:
        canonical = self._aliases.get(name, name)
        scorer = self._scorers.get(canonical)
        if not scorer:
            raise KeyError(f"Scorer not found: {name}")
        return scorer

    def create(self, name: str) -> SymptomScorer:
        return self.resolve(name).factory()

    def list_names(self) -> list[str]:
        return sorted(self._scorers.keys())
