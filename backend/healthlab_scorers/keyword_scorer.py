from __future__ import annotations

import re

from healthlab_core.models import LabTest

# (pattern, symptom label, {test code: weight})
_SYMPTOM_MAP: list[tuple[re.Pattern[str], str, dict[str, float]]] = [
    (re.compile(r"\bfever(ish)?\b|\bhigh temperature\b", re.IGNORECASE), "fever",
     {"CBC": 0.9, "CRP": 0.8, "MP": 0.7}),
    (re.compile(r"\bchills?\b|\bshiver(ing)?\b", re.IGNORECASE), "chills",
     {"MP": 0.75, "CRP": 0.6, "CBC": 0.6}),
    (re.compile(r"\bdizz(y|iness)\b|\blight[- ]?headed\b", re.IGNORECASE), "dizziness",
     {"CBC": 0.8, "IRON": 0.7, "FBS": 0.4}),
    (re.compile(r"\b(tired|fatigue[d]?|exhausted|weak(ness)?)\b", re.IGNORECASE), "fatigue",
     {"IRON": 0.8, "B12": 0.7, "CBC": 0.6, "TSH": 0.5}),
    (re.compile(r"\bjaundice\b|\byellow(ish)?\b.*\b(skin|eyes)\b", re.IGNORECASE), "jaundice",
     {"LFT": 0.95}),
    (re.compile(r"\balcohol\b|\bdrink(ing)? heavily\b", re.IGNORECASE), "alcohol use",
     {"LFT": 0.6}),
    (re.compile(r"\bdiabet(es|ic)\b|\bblood sugar\b|\bsugar\b", re.IGNORECASE), "blood sugar",
     {"FBS": 0.9, "HBA1C": 0.85}),
    (re.compile(r"\b(very )?thirsty\b|\bfrequent urination\b|\burinat(e|ing) a lot\b", re.IGNORECASE), "thirst",
     {"FBS": 0.75, "HBA1C": 0.7}),
    (re.compile(r"\bcough(ing)?\b|\bcold\b|\bsore throat\b", re.IGNORECASE), "cough or cold",
     {"CRP": 0.6, "CBC": 0.5}),
    (re.compile(r"\bnumb(ness)?\b|\btingling\b|\bpins and needles\b", re.IGNORECASE), "numbness",
     {"B12": 0.8}),
    (re.compile(r"\bweight (gain|loss)\b|\bhair loss\b|\bfeel(ing)? cold all the time\b", re.IGNORECASE), "thyroid signs",
     {"TSH": 0.8}),
    (re.compile(r"\bpale\b|\banemi(a|c)\b|\banaemi(a|c)\b", re.IGNORECASE), "pallor",
     {"CBC": 0.85, "IRON": 0.8}),
]

_NAME_MENTION_SCORE = 0.65


class KeywordSymptomScorer:
    """Scores tests from a fixed symptom-keyword weight table."""

    def __init__(self, symptom_map: list[tuple[re.Pattern[str], str, dict[str, float]]] | None = None) -> None:
        self._symptom_map = symptom_map if symptom_map is not None else _SYMPTOM_MAP

    def matched_symptoms(self, text: str) -> list[str]:
        found: list[str] = []
        for pattern, label, _ in self._symptom_map:
            if pattern.search(text or "") and label not in found:
                found.append(label)
        return found

    def score(self, text: str, test: LabTest) -> float:
        cleaned = (text or "").strip()
        if not cleaned:
            return 0.0
        best = 0.0
        for pattern, _, weights in self._symptom_map:
            weight = weights.get(test.code)
            if weight and pattern.search(cleaned):
                best = max(best, weight)
        if best == 0.0 and self._mentions_test(cleaned, test):
            best = _NAME_MENTION_SCORE
        return best

    @staticmethod
    def _mentions_test(text: str, test: LabTest) -> bool:
        lowered = text.lower()
        if test.name.lower() in lowered:
            return True
        return re.search(rf"\b{re.escape(test.code.lower())}\b", lowered) is not None
