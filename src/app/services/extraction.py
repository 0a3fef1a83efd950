from __future__ import annotations

import json
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import uuid4

from src.app.domain.errors import ExtractionFailedError
from src.app.domain.models import ExtractionMethod, Ingredient, Recipe
from src.app.infra.llm.base import ROLE_ASSISTANT, ROLE_USER, TextCompletionClient
from src.app.services.sanitizer import SanitizedContent, build_budgeted_content

logger = logging.getLogger(__name__)

JSON_LD_CONFIDENCE = 0.95
LLM_CONFIDENCE = 0.85
LLM_REPAIRED_CONFIDENCE = 0.75
DEFAULT_SERVINGS = 4

ISO_DURATION_PATTERN = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?)?$", re.IGNORECASE)
FIRST_NUMBER_PATTERN = re.compile(r"\d+")
CODE_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
WHITESPACE_PATTERN = re.compile(r"\s+")

UNICODE_FRACTIONS = {"½": 0.5, "¼": 0.25, "¾": 0.75, "⅓": 1 / 3, "⅔": 2 / 3, "⅛": 0.125}
_FRACTION = r"(?:\d+/\d+|[½¼¾⅓⅔⅛])"
_QUANTITY_PART = r"(?:\d+/\d+|\d+(?:[.,]\d+)?|[½¼¾⅓⅔⅛])"
_UNITS = (
    r"cups?|tablespoons?|tbsps?|teaspoons?|tsps?|ounces?|oz|pounds?|lbs?|grams?|g|kilograms?|kg"
    r"|milliliters?|millilitres?|ml|liters?|litres?|l|pinch(?:es)?|dash(?:es)?|cloves?|slices?"
    r"|pieces?|stalks?|heads?|bunch(?:es)?|cans?|packages?|pkg"
)
INGREDIENT_PATTERN = re.compile(
    rf"^(?:(?P<qty>{_QUANTITY_PART}(?:\s*{_FRACTION})?)\s*(?:(?P<unit>{_UNITS})\.?\s+)?)?"
    r"(?P<name>[^(]+?)\s*(?:\((?P<notes>[^)]*)\))?$",
    re.IGNORECASE,
)

LLM_SYSTEM_PROMPT = """You extract cooking recipes from web page text.
Reply with a single JSON object and nothing else, using this shape:
{
  "name": string,
  "description": string or null,
  "ingredients": [{"name": string, "quantity": number or null, "unit": string or null, "notes": string or null}],
  "instructions": [string],
  "prep_time_minutes": integer or null,
  "cook_time_minutes": integer or null,
  "servings": integer or null,
  "cuisine": string or null,
  "diet_type": string or null,
  "tags": [string],
  "image_url": string or null
}
Write the description and each instruction in your own words; never copy sentences from the page.
Keep every ingredient, quantity, temperature and time exactly as given.
If the page contains no recipe, reply with {"name": null}."""

JSON_REPAIR_PROMPT = (
    "Your previous reply was not valid JSON ({error}). "
    "Reply again with only the JSON object, no prose and no code fences."
)


@dataclass
class ExtractionResult:
    recipe: Recipe
    method: ExtractionMethod
    confidence: float
    warnings: list[str] = field(default_factory=list)
    raw: Optional[dict[str, Any]] = None

    @property
    def is_complete(self) -> bool:
        return is_complete_recipe(self.recipe)


def is_complete_recipe(recipe: Recipe) -> bool:
    return bool(recipe.name and recipe.name.strip() and recipe.ingredients and recipe.instructions)


def _clean_text(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    cleaned = WHITESPACE_PATTERN.sub(" ", value).strip()
    return cleaned or None


def parse_iso_duration(value: Any) -> Optional[int]:
    """Minutes from an ISO-8601 duration such as PT1H30M."""
    text = _clean_text(value)
    if not text:
        return None
    match = ISO_DURATION_PATTERN.match(text)
    if not match or not any(match.groups()):
        return None
    days, hours, minutes, seconds = match.groups()
    total = int(days or 0) * 24 * 60 + int(hours or 0) * 60 + int(minutes or 0)
    if seconds and not total:
        total = round(float(seconds) / 60)
    return total


def parse_servings(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) and value > 0 else None
    if isinstance(value, list):
        for item in value:
            parsed = parse_servings(item)
            if parsed:
                return parsed
        return None
    text = _clean_text(value)
    if not text:
        return None
    match = FIRST_NUMBER_PATTERN.search(text)
    return int(match.group()) if match and int(match.group()) > 0 else None


def parse_quantity(text: Optional[str]) -> Optional[float]:
    """Sum the parts of "1 1/2", "1½" or "0,5"; None when nothing parses."""
    if not text:
        return None
    total = 0.0
    for part in re.findall(_QUANTITY_PART, text):
        if part in UNICODE_FRACTIONS:
            total += UNICODE_FRACTIONS[part]
        elif "/" in part:
            numerator, denominator = part.split("/")
            if int(denominator):
                total += int(numerator) / int(denominator)
        else:
            total += float(part.replace(",", "."))
    return total if total > 0 else None


def parse_ingredient(text: str) -> Ingredient:
    """Split a line like "2 cups chicken stock (warm)" into quantity, unit, name and notes."""
    match = INGREDIENT_PATTERN.match(text)
    if not match or not match.group("name").strip(" ,"):
        return Ingredient(name=text)
    notes = _clean_text(match.group("notes"))
    unit = match.group("unit")
    return Ingredient(
        name=match.group("name").strip(" ,"),
        quantity=parse_quantity(match.group("qty")),
        unit=unit.lower() if unit else None,
        notes=notes,
    )


def _as_list(value: Any) -> list[Any]:
    # schema.org allows a bare string where a list is expected; other shapes are unusable
    if isinstance(value, str):
        return [value]
    return value if isinstance(value, list) else []


def _ingredient_lines(value: Any) -> list[str]:
    return [text for text in (_clean_text(item) for item in _as_list(value)) if text]


def _coerce_keywords(value: Any) -> list[str]:
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, list):
        tags: list[str] = []
        for item in value:
            if isinstance(item, str):
                tags.extend(part.strip() for part in item.split(",") if part.strip())
        return tags
    return []


def _first_text(value: Any) -> Optional[str]:
    if isinstance(value, list):
        for item in value:
            text = _first_text(item)
            if text:
                return text
        return None
    if isinstance(value, dict):
        return _clean_text(value.get("name") or value.get("url"))
    return _clean_text(value)


def _extract_instruction_text(instructions: Any) -> list[str]:
    steps: list[str] = []
    if isinstance(instructions, str):
        steps.extend(line for line in (_clean_text(part) for part in instructions.split("\n")) if line)
    elif isinstance(instructions, list):
        for entry in instructions:
            steps.extend(_extract_instruction_text(entry))
    elif isinstance(instructions, dict):
        entry_type = instructions.get("@type")
        if entry_type == "HowToSection" or "itemListElement" in instructions:
            steps.extend(_extract_instruction_text(instructions.get("itemListElement") or []))
        else:
            text = _clean_text(instructions.get("text") or instructions.get("description") or instructions.get("name"))
            if text:
                steps.append(text)
    return steps


def _is_recipe_type(obj: dict[str, Any]) -> bool:
    obj_type = obj.get("@type")
    types_ = [obj_type] if isinstance(obj_type, str) else obj_type if isinstance(obj_type, list) else []
    return any(str(item).lower() == "recipe" for item in types_)


def find_recipe_objects(payloads: list[dict[str, Any]]) -> list[dict[str, Any]]:
    candidates: list[dict[str, Any]] = []
    pending: list[Any] = list(payloads)
    while pending:
        item = pending.pop(0)
        if isinstance(item, list):
            pending.extend(item)
        elif isinstance(item, dict):
            if _is_recipe_type(item):
                candidates.append(item)
            if "@graph" in item:
                pending.append(item["@graph"])
            if isinstance(item.get("mainEntity"), (dict, list)):
                pending.append(item["mainEntity"])
    return candidates


class RecipeExtractor(ABC):
    """One way of turning sanitized page content into a recipe."""

    method: ExtractionMethod

    @abstractmethod
    async def extract(
        self,
        content: SanitizedContent,
        source_url: str,
        deadline_seconds: Optional[float] = None,
    ) -> Optional[ExtractionResult]:
        """Return a result, or None when this extractor finds nothing to work with."""
        pass


class JsonLdExtractor(RecipeExtractor):
    """Reads schema.org Recipe markup embedded as JSON-LD."""

    method = ExtractionMethod.JSON_LD

    async def extract(
        self,
        content: SanitizedContent,
        source_url: str,
        deadline_seconds: Optional[float] = None,
    ) -> Optional[ExtractionResult]:
        for obj in find_recipe_objects(content.json_ld):
            name = _clean_text(obj.get("name"))
            if not name:
                continue

            warnings: list[str] = []
            servings = parse_servings(obj.get("recipeYield"))
            if servings is None:
                servings = DEFAULT_SERVINGS
                warnings.append(f"No yield in structured data, assuming {DEFAULT_SERVINGS} servings")

            ingredients = [
                parse_ingredient(text)
                for text in _ingredient_lines(obj.get("recipeIngredient") or obj.get("ingredients"))
            ]
            tags = _coerce_keywords(obj.get("keywords"))
            tags.extend(_coerce_keywords(obj.get("recipeCategory")))

            recipe = Recipe(
                id=str(uuid4()),
                name=name,
                description=_clean_text(obj.get("description")),
                ingredients=ingredients,
                instructions=_extract_instruction_text(obj.get("recipeInstructions")),
                cuisine=_first_text(obj.get("recipeCuisine")),
                diet_type=_first_text(obj.get("suitableForDiet")),
                prep_time_minutes=parse_iso_duration(obj.get("prepTime")),
                cook_time_minutes=parse_iso_duration(obj.get("cookTime")),
                servings=servings,
                tags=list(dict.fromkeys(tags)),
                image_url=_first_text(obj.get("image")) or content.image_url,
            )
            return ExtractionResult(
                recipe=recipe,
                method=self.method,
                confidence=JSON_LD_CONFIDENCE,
                warnings=warnings,
                raw=obj,
            )
        return None


def strip_code_fences(text: str) -> str:
    return CODE_FENCE_PATTERN.sub("", text.strip()).strip()


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse the outermost JSON object of a model reply."""
    cleaned = strip_code_fences(text)
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        raise ValueError("no JSON object found")
    data = json.loads(cleaned[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("reply is not a JSON object")
    return data


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return parse_iso_duration(value)


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def recipe_from_model_json(data: dict[str, Any]) -> Recipe:
    ingredients: list[Ingredient] = []
    for entry in _as_list(data.get("ingredients")):
        if isinstance(entry, str):
            line = _clean_text(entry)
            if line:
                ingredients.append(parse_ingredient(line))
            continue
        if not isinstance(entry, dict):
            continue
        name = _clean_text(entry.get("name"))
        if not name:
            continue
        ingredients.append(
            Ingredient(
                name=name,
                quantity=_to_float(entry.get("quantity")),
                unit=_clean_text(entry.get("unit")),
                notes=_clean_text(entry.get("notes")),
            )
        )

    instructions = [text for text in (_clean_text(step) for step in _as_list(data.get("instructions"))) if text]
    tags = [text for text in (_clean_text(tag) for tag in _as_list(data.get("tags"))) if text]

    return Recipe(
        id=str(uuid4()),
        name=_clean_text(data.get("name")) or "",
        description=_clean_text(data.get("description")),
        ingredients=ingredients,
        instructions=instructions,
        cuisine=_clean_text(data.get("cuisine")),
        diet_type=_clean_text(data.get("diet_type")),
        prep_time_minutes=_to_int(data.get("prep_time_minutes")),
        cook_time_minutes=_to_int(data.get("cook_time_minutes")),
        servings=_to_int(data.get("servings")),
        tags=tags,
        image_url=_clean_text(data.get("image_url")),
    )


class LlmExtractor(RecipeExtractor):
    """
    Asks the text-generation collaborator for a JSON recipe.

    The page text is cut to ``content_budget`` characters with ingredient and
    instruction blocks kept first. A reply that is not valid JSON is sent back
    for correction up to ``max_json_repairs`` times, which lowers confidence.
    """

    method = ExtractionMethod.LLM

    def __init__(
        self,
        client: TextCompletionClient,
        content_budget: int = 60_000,
        max_json_repairs: int = 2,
        max_tokens: int = 4096,
    ):
        self._client = client
        self.content_budget = content_budget
        self.max_json_repairs = max_json_repairs
        self.max_tokens = max_tokens

    async def extract(
        self,
        content: SanitizedContent,
        source_url: str,
        deadline_seconds: Optional[float] = None,
    ) -> Optional[ExtractionResult]:
        if not content.text.strip():
            return None

        page_text = build_budgeted_content(content, self.content_budget)
        messages = [{
            "role": ROLE_USER,
            "content": f"Source URL: {source_url}\nPage title: {content.title or ''}\n\nPage text:\n{page_text}",
        }]

        repairs = 0
        while True:
            reply = await self._client.complete(
                LLM_SYSTEM_PROMPT,
                messages,
                max_tokens=self.max_tokens,
                deadline_seconds=deadline_seconds,
            )
            try:
                data = parse_json_object(reply)
                break
            except ValueError as error:
                if repairs >= self.max_json_repairs:
                    raise ExtractionFailedError(
                        f"Model reply was not valid JSON after {repairs} repair attempts: {error}",
                        code="PARSE_ERROR",
                    ) from error
                repairs += 1
                logger.info("extract.llm_json_repair url=%s attempt=%d error=%s", source_url, repairs, error)
                messages = messages + [
                    {"role": ROLE_ASSISTANT, "content": reply},
                    {"role": ROLE_USER, "content": JSON_REPAIR_PROMPT.format(error=error)},
                ]

        recipe = recipe_from_model_json(data)
        if not recipe.name:
            return None

        warnings = []
        if len(content.text) > self.content_budget:
            warnings.append(f"Page text truncated to {self.content_budget} characters before extraction")
        if not recipe.image_url and content.image_url:
            recipe.image_url = content.image_url

        return ExtractionResult(
            recipe=recipe,
            method=self.method,
            confidence=LLM_REPAIRED_CONFIDENCE if repairs else LLM_CONFIDENCE,
            warnings=warnings,
            raw=data,
        )


class ExtractionChain:
    """Tries each extractor in order and keeps the first complete result."""

    def __init__(self, extractors: list[RecipeExtractor]):
        if not extractors:
            raise ValueError("ExtractionChain needs at least one extractor")
        self.extractors = list(extractors)

    async def extract(
        self,
        content: SanitizedContent,
        source_url: str,
        deadline_seconds: Optional[float] = None,
    ) -> ExtractionResult:
        if not content.text.strip() and not content.json_ld:
            raise ExtractionFailedError("Fetched page has no content", code="EMPTY_CONTENT")

        for extractor in self.extractors:
            try:
                result = await extractor.extract(content, source_url, deadline_seconds)
            except ExtractionFailedError as error:
                logger.info("extract.tier_failed url=%s method=%s reason=%s", source_url, extractor.method.value, error)
                continue

            if result is None:
                logger.info("extract.tier_empty url=%s method=%s", source_url, extractor.method.value)
                continue
            if not result.is_complete:
                logger.info(
                    "extract.tier_incomplete url=%s method=%s ingredients=%d instructions=%d",
                    source_url,
                    extractor.method.value,
                    len(result.recipe.ingredients),
                    len(result.recipe.instructions),
                )
                continue

            logger.info(
                "extract.ok url=%s method=%s confidence=%.2f",
                source_url, result.method.value, result.confidence,
            )
            return result

        raise ExtractionFailedError(f"No recipe content found at {source_url}")
