"""
column_mapper.py

Maps source column names onto a fixed list of target fields with a fuzzy
name score in [0, 100]. Assignment is greedy over all pairs, strongest
first; a source or target is used at most once.

Public API:
    match_confidence("Bruto Premie", "Bruto")        -> 39.8...
    suggest_mapping(sources, targets, threshold=30)  -> MappingSuggestion
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

from rapidfuzz.distance import Levenshtein

from sheet_mapper.errors import InvalidInputError
from sheet_mapper.shared import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    EXACT_MATCH_CONFIDENCE,
    FUZZY_MATCH_CEILING,
    NAME_PUNCTUATION_RE,
)

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

# Score weights
LEVENSHTEIN_WEIGHT = 50.0
SUBSTRING_WEIGHT = 30.0
WORD_OVERLAP_WEIGHT = 20.0
LENGTH_PENALTY_PER_CHAR = 0.5
LENGTH_PENALTY_CAP = 10.0
MIN_SUBSTRING_LENGTH = 3
MIN_WORD_LENGTH = 2


def normalize_name(name: Any) -> str:
    text = "" if name is None else str(name)
    text = NAME_PUNCTUATION_RE.sub("", text.lower().strip())
    return _WHITESPACE_RE.sub(" ", text).strip()


def levenshtein_distance(a: str, b: str) -> int:
    return Levenshtein.distance(a, b)


def _significant_words(text: str) -> list[str]:
    return [word for word in text.split(" ") if len(word) >= MIN_WORD_LENGTH]


def match_confidence(source: Any, target: Any) -> float:
    """
    Score how well ``source`` names the same thing as ``target``.

    100 is reserved for names that are equal after normalization; every
    other pair is clamped to [0, 99].
    """
    src = normalize_name(source)
    tgt = normalize_name(target)
    if src == tgt:
        return EXACT_MATCH_CONFIDENCE

    score = 0.0

    max_len = max(len(src), len(tgt))
    if max_len:
        score += (max_len - levenshtein_distance(src, tgt)) / max_len * LEVENSHTEIN_WEIGHT

    shorter, longer = (src, tgt) if len(src) <= len(tgt) else (tgt, src)
    if len(shorter) >= MIN_SUBSTRING_LENGTH and shorter in longer:
        score += len(shorter) / len(longer) * SUBSTRING_WEIGHT

    src_words = _significant_words(src)
    tgt_words = _significant_words(tgt)
    if src_words and tgt_words:
        common = [word for word in src_words if word in tgt_words]
        score += len(common) / max(len(src_words), len(tgt_words)) * WORD_OVERLAP_WEIGHT

    score -= min(LENGTH_PENALTY_CAP, abs(len(src) - len(tgt)) * LENGTH_PENALTY_PER_CHAR)

    return max(0.0, min(FUZZY_MATCH_CEILING, score))


@dataclass(frozen=True)
class ConfidencePair:
    source_index: int
    target_index: int
    source_name: str
    target_name: str
    confidence: float


@dataclass
class MappingSuggestion:
    mapping: dict[str, str]
    confidence_scores: dict[str, float]
    assignment_count: int
    total_assignments: int
    threshold: float
    accepted: list[ConfidencePair] = field(default_factory=list)
    skipped: list[ConfidencePair] = field(default_factory=list)
    unmapped_targets: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mapping": dict(self.mapping),
            "confidence_scores": {key: round(value, 2) for key, value in self.confidence_scores.items()},
            "assignment_count": self.assignment_count,
            "total_assignments": self.total_assignments,
            "threshold": self.threshold,
            "accepted": [asdict(pair) for pair in self.accepted],
            "skipped": [asdict(pair) for pair in self.skipped],
            "unmapped_targets": list(self.unmapped_targets),
        }


def build_confidence_matrix(sources: Sequence[str], targets: Sequence[str]) -> list[list[ConfidencePair]]:
    return [
        [
            ConfidencePair(i, j, str(source), str(target), match_confidence(source, target))
            for j, target in enumerate(targets)
        ]
        for i, source in enumerate(sources)
    ]


def assign_greedy(matrix: list[list[ConfidencePair]]) -> list[ConfidencePair]:
    """
    Accept pairs strongest first while neither side is taken.

    Pairs are flattened source-major and sorted stably, so ties go to the
    earlier source and then the earlier target. This is not a maximum-weight
    matching; a strong early pair can block a better overall assignment.
    """
    pairs = [pair for row in matrix for pair in row]
    pairs.sort(key=lambda pair: -pair.confidence)

    used_sources: set[int] = set()
    used_targets: set[int] = set()
    assignments: list[ConfidencePair] = []
    for pair in pairs:
        if pair.source_index in used_sources or pair.target_index in used_targets:
            continue
        assignments.append(pair)
        used_sources.add(pair.source_index)
        used_targets.add(pair.target_index)
    return assignments


def suggest_mapping(
    sources: Sequence[str],
    targets: Sequence[str],
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> MappingSuggestion:
    """
    Suggest a target -> source mapping.

    Raises:
        InvalidInputError  if either name list is empty.
    """
    if not sources:
        raise InvalidInputError("No source columns provided")
    if not targets:
        raise InvalidInputError("No target columns provided")

    logger.debug("Building %d x %d confidence matrix", len(sources), len(targets))
    assignments = assign_greedy(build_confidence_matrix(sources, targets))

    mapping: dict[str, str] = {}
    scores: dict[str, float] = {}
    accepted: list[ConfidencePair] = []
    skipped: list[ConfidencePair] = []
    for pair in assignments:
        if pair.confidence >= confidence_threshold:
            mapping[pair.target_name] = pair.source_name
            scores[pair.target_name] = pair.confidence
            accepted.append(pair)
            logger.debug("Mapped %r -> %r (%.1f%%)", pair.source_name, pair.target_name, pair.confidence)
        else:
            skipped.append(pair)
            logger.debug(
                "Skipped %r -> %r (%.1f%% below %.1f%%)",
                pair.source_name,
                pair.target_name,
                pair.confidence,
                confidence_threshold,
            )

    unmapped = [str(target) for target in targets if str(target) not in mapping]
    logger.info("Mapped %d of %d target fields (threshold %.1f)", len(accepted), len(targets), confidence_threshold)
    return MappingSuggestion(
        mapping=mapping,
        confidence_scores=scores,
        assignment_count=len(accepted),
        total_assignments=len(assignments),
        threshold=confidence_threshold,
        accepted=accepted,
        skipped=skipped,
        unmapped_targets=unmapped,
    )
