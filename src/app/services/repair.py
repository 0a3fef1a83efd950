from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Optional

from src.app.domain.errors import IngestError
from src.app.domain.models import Recipe, SimilarityReport
from src.app.infra.llm.base import ROLE_USER, TextCompletionClient
from src.app.services.extraction import parse_json_object
from src.app.services.similarity import DESCRIPTION_SECTION, INSTRUCTION_PREFIX, SimilarityGuard

logger = logging.getLogger(__name__)

SOURCE_EXCERPT_CHARS = 2000

REPAIR_SYSTEM_PROMPT = """You rewrite recipe text that copies its source too closely.
Rephrase each section you are given in your own words.
Preserve every ingredient, quantity, temperature, time and technique exactly.
Do not add or remove steps.
Reply with a single JSON object and nothing else:
{"sections": [{"name": string, "rephrased_text": string}]}"""


@dataclass
class RepairOutcome:
    recipe: Recipe
    report: SimilarityReport
    repaired_sections: list[str] = field(default_factory=list)
    attempted: bool = False
    error: Optional[str] = None

    @property
    def still_violates_policy(self) -> bool:
        return self.report.violates_policy


def _apply_section(recipe: Recipe, name: str, text: str) -> bool:
    if name == DESCRIPTION_SECTION:
        recipe.description = text
        return True
    if name.startswith(INSTRUCTION_PREFIX):
        suffix = name[len(INSTRUCTION_PREFIX):]
        if suffix.isdigit() and 1 <= int(suffix) <= len(recipe.instructions):
            recipe.instructions[int(suffix) - 1] = text
            return True
    return False


class RepairService:
    """
    One rewrite pass over the sections the similarity guard blocked.

    Only offending sections are sent, with their scores and a short source
    excerpt. The rewritten recipe is scored once more and the result is final
    whatever it says.
    """

    def __init__(
        self,
        client: TextCompletionClient,
        guard: SimilarityGuard,
        excerpt_chars: int = SOURCE_EXCERPT_CHARS,
        max_tokens: int = 2048,
    ):
        self._client = client
        self._guard = guard
        self.excerpt_chars = excerpt_chars
        self.max_tokens = max_tokens

    def build_prompt(self, report: SimilarityReport, source_text: str) -> str:
        sections = [
            {
                "name": section.name,
                "original_text": section.text,
                "similarity_score": section.ngram_similarity,
                "token_overlap": section.contiguous_overlap,
            }
            for section in report.blocking_sections
        ]
        return (
            f"Source excerpt:\n{source_text[:self.excerpt_chars]}\n\n"
            f"Sections to rephrase:\n{json.dumps(sections, ensure_ascii=False, indent=2)}"
        )

    async def repair(
        self,
        recipe: Recipe,
        report: SimilarityReport,
        source_text: str,
        deadline_seconds: Optional[float] = None,
    ) -> RepairOutcome:
        if not report.violates_policy:
            return RepairOutcome(recipe=recipe, report=report)

        try:
            reply = await self._client.complete(
                REPAIR_SYSTEM_PROMPT,
                [{"role": ROLE_USER, "content": self.build_prompt(report, source_text)}],
                max_tokens=self.max_tokens,
                deadline_seconds=deadline_seconds,
            )
            data = parse_json_object(reply)
        except (IngestError, ValueError) as error:
            logger.warning("repair.failed sections=%d error=%s", len(report.blocking_sections), error)
            return RepairOutcome(recipe=recipe, report=report, attempted=True, error=str(error))
        except Exception as error:
            # the pass is best effort; the unrepaired draft still goes to review
            logger.exception("repair.unexpected_error sections=%d", len(report.blocking_sections))
            return RepairOutcome(recipe=recipe, report=report, attempted=True, error=str(error))

        blocked = {section.name for section in report.blocking_sections}
        repaired = replace(recipe, instructions=list(recipe.instructions))
        applied: list[str] = []
        for entry in data.get("sections") or []:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            text = entry.get("rephrased_text")
            if name not in blocked or not isinstance(text, str) or not text.strip():
                continue
            if _apply_section(repaired, name, text.strip()):
                applied.append(name)

        new_report = self._guard.score_recipe(repaired, source_text)
        logger.info(
            "repair.done repaired=%s still_violates=%s max_overlap=%d",
            applied, new_report.violates_policy, new_report.max_contiguous_token_overlap,
        )
        return RepairOutcome(recipe=repaired, report=new_report, repaired_sections=applied, attempted=True)
