"""
Feature Name Similarity

Ranks existing features by how closely their names match a query. Used to
suggest alternatives when a lookup fails and to warn about near-duplicates
when a feature is created.

Scoring combines:
    1. SequenceMatcher ratio - typos and substring matches
    2. Token Jaccard similarity - word reordering
Scores are percentages (0-100) so they compare directly against
``feature_search.min_similarity``.
"""

import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, List

from featgraph.config import SearchConfig
from featgraph.models import Feature


@dataclass
class SimilarFeature:
    feature: Feature
    score: float


def normalize_name(name: str) -> str:
    """Lowercase, turn separators into spaces and collapse whitespace.

    >>> normalize_name("  User_Login-Flow ")
    'user login flow'
    """
    result = re.sub(r"[^a-z0-9\s]", " ", (name or "").strip().lower())
    return " ".join(result.split())


def jaccard_similarity(s1: str, s2: str) -> float:
    tokens1, tokens2 = set(s1.split()), set(s2.split())
    if not tokens1 and not tokens2:
        return 1.0
    if not tokens1 or not tokens2:
        return 0.0
    return len(tokens1 & tokens2) / len(tokens1 | tokens2)


def similarity(s1: str, s2: str) -> float:
    """Similarity of two names as a percentage."""
    a, b = normalize_name(s1), normalize_name(s2)
    if not a and not b:
        return 100.0
    if not a or not b:
        return 0.0
    if a == b:
        return 100.0

    seq = SequenceMatcher(None, a, b).ratio()
    jac = jaccard_similarity(a, b)
    score = 0.6 * seq + 0.4 * jac
    if len(a) >= 3 and len(b) >= 3 and (a in b or b in a):
        # A whole-name substring is a strong hint ("login" vs "user login")
        score = max(score, 0.75)
    return round(score * 100, 1)


def find_similar(query: str, features: Iterable[Feature], config: SearchConfig) -> List[SimilarFeature]:
    """Features whose names score at least ``min_similarity``, best first."""
    if not config.fuzzy_match or config.max_suggestions == 0:
        return []
    scored = []
    for feature in features:
        score = similarity(query, feature.name)
        if score >= config.min_similarity:
            scored.append(SimilarFeature(feature, score))
    scored.sort(key=lambda match: (-match.score, match.feature.name.lower()))
    return scored[: config.max_suggestions]
