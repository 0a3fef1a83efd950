from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass

from src.app.domain.models import Recipe, SectionSimilarity, SimilarityLevel, SimilarityReport

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)
MIN_TOKEN_LENGTH = 2
DESCRIPTION_SECTION = "description"
INSTRUCTION_PREFIX = "instruction_"
POLICY_WARNING_CODE = "[POLICY_VIOLATION]"


@dataclass
class GuardrailOptions:
    token_overlap_warn: int = 40
    token_overlap_error: int = 80
    similarity_warn: float = 0.20
    similarity_error: float = 0.35
    ngram_size: int = 5


def tokenize(text: str) -> list[str]:
    return [token for token in TOKEN_PATTERN.findall((text or "").lower()) if len(token) >= MIN_TOKEN_LENGTH]


def longest_contiguous_overlap(tokens: list[str], source_tokens: list[str]) -> int:
    """Length of the longest run of tokens appearing in the same order in both lists."""
    if not tokens or not source_tokens:
        return 0

    positions: dict[str, list[int]] = defaultdict(list)
    for index, token in enumerate(source_tokens):
        positions[token].append(index)

    best = 0
    previous: dict[int, int] = {}
    for token in tokens:
        current: dict[int, int] = {}
        for index in positions.get(token, ()):
            run = previous.get(index - 1, 0) + 1
            current[index] = run
            if run > best:
                best = run
        previous = current
    return best


def ngram_set(tokens: list[str], size: int) -> set[tuple[str, ...]]:
    if size <= 0 or len(tokens) < size:
        return set()
    return {tuple(tokens[index:index + size]) for index in range(len(tokens) - size + 1)}


def ngram_jaccard(tokens: list[str], source_tokens: list[str], size: int) -> float:
    left = ngram_set(tokens, size)
    right = ngram_set(source_tokens, size)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def policy_violation_warning(blocked: list[str]) -> str:
    return f"{POLICY_WARNING_CODE} Similarity: sections still close to the source text: {', '.join(blocked)}"


def recipe_sections(recipe: Recipe) -> list[tuple[str, str]]:
    """The prose sections that must not be copied: description and each instruction."""
    sections: list[tuple[str, str]] = []
    if recipe.description and recipe.description.strip():
        sections.append((DESCRIPTION_SECTION, recipe.description))
    for index, step in enumerate(recipe.instructions, start=1):
        if step and step.strip():
            sections.append((f"{INSTRUCTION_PREFIX}{index}", step))
    return sections


class SimilarityGuard:
    """Scores extracted prose against the source text and grades each section."""

    def __init__(self, options: GuardrailOptions | None = None):
        self.options = options or GuardrailOptions()

    def level_for(self, overlap: int, similarity: float) -> SimilarityLevel:
        options = self.options
        if overlap >= options.token_overlap_error or similarity >= options.similarity_error:
            return SimilarityLevel.BLOCK
        if overlap >= options.token_overlap_warn or similarity >= options.similarity_warn:
            return SimilarityLevel.WARN
        return SimilarityLevel.OK

    def score_sections(self, sections: list[tuple[str, str]], source_text: str) -> SimilarityReport:
        source_tokens = tokenize(source_text)
        scored: list[SectionSimilarity] = []
        for name, text in sections:
            tokens = tokenize(text)
            overlap = longest_contiguous_overlap(tokens, source_tokens)
            similarity = ngram_jaccard(tokens, source_tokens, self.options.ngram_size)
            scored.append(
                SectionSimilarity(
                    name=name,
                    text=text,
                    contiguous_overlap=overlap,
                    ngram_similarity=round(similarity, 4),
                    level=self.level_for(overlap, similarity),
                )
            )

        report = SimilarityReport(sections=scored)
        report.details = self._describe(report)
        if report.violates_policy:
            logger.info(
                "similarity.violation sections=%s max_overlap=%d max_similarity=%.3f",
                [section.name for section in report.blocking_sections],
                report.max_contiguous_token_overlap,
                report.max_ngram_similarity,
            )
        return report

    def score_recipe(self, recipe: Recipe, source_text: str) -> SimilarityReport:
        return self.score_sections(recipe_sections(recipe), source_text)

    def _describe(self, report: SimilarityReport) -> str:
        flagged = [section for section in report.sections if section.level != SimilarityLevel.OK]
        if not flagged:
            return "No section is close to the source text"
        return "; ".join(
            f"{section.name}: {section.level.value} (overlap={section.contiguous_overlap}, "
            f"similarity={section.ngram_similarity:.2f})"
            for section in flagged
        )
