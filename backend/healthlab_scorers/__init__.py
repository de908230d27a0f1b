from healthlab_core.registry import ScorerDefinition, ScorerRegistry

from .keyword_scorer import KeywordSymptomScorer
from .remote_scorer import HttpSymptomScorer, RemoteScorerError


def register_scorers(registry: ScorerRegistry) -> None:
    registry.register(ScorerDefinition("keyword", KeywordSymptomScorer))
    registry.register(ScorerDefinition("remote", HttpSymptomScorer))
    registry.add_alias("default", "keyword")
    registry.add_alias("http", "remote")


__all__ = [
    "HttpSymptomScorer",
    "KeywordSymptomScorer",
    "RemoteScorerError",
    "register_scorers",
]
