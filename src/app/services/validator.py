from __future__ import annotations

import logging
from collections import Counter
from urllib.parse import urlsplit

from src.app.domain.models import Recipe, ValidationReport

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_INGREDIENT_NAME_LENGTH = 200
MAX_INSTRUCTION_LENGTH = 2000
MAX_TAG_LENGTH = 50
MAX_TAG_COUNT = 20
MAX_INGREDIENTS = 100
MAX_INSTRUCTIONS = 100

MAX_REASONABLE_PREP_MINUTES = 24 * 60
MAX_REASONABLE_COOK_MINUTES = 72 * 60
MAX_REASONABLE_SERVINGS = 100
SHORT_DESCRIPTION_LENGTH = 20
WARN_NO_DESCRIPTION_MIN_INGREDIENTS = 3


def _issue(code: str, field: str, message: str) -> str:
    return f"[{code}] {field}: {message}"


class RecipeValidator:
    """
    Schema errors block a draft; business-rule warnings are shown to the
    reviewer and never block.
    """

    def validate(self, recipe: Recipe) -> ValidationReport:
        report = ValidationReport()
        self._check_schema(recipe, report.errors)
        self._check_business_rules(recipe, report.warnings)
        logger.debug(
            "validate recipe=%s errors=%d warnings=%d",
            recipe.name, len(report.errors), len(report.warnings),
        )
        return report

    def _check_schema(self, recipe: Recipe, errors: list[str]) -> None:
        name = (recipe.name or "").strip()
        if not name:
            errors.append(_issue("REQUIRED_NAME", "Name", "Recipe name is required"))
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(_issue("NAME_TOO_LONG", "Name", f"Recipe name exceeds {MAX_NAME_LENGTH} characters"))

        if recipe.description and len(recipe.description) > MAX_DESCRIPTION_LENGTH:
            errors.append(_issue(
                "DESCRIPTION_TOO_LONG", "Description", f"Description exceeds {MAX_DESCRIPTION_LENGTH} characters",
            ))

        if recipe.prep_time_minutes is not None and recipe.prep_time_minutes < 0:
            errors.append(_issue("NEGATIVE_PREP_TIME", "PrepTimeMinutes", "Prep time cannot be negative"))
        if recipe.cook_time_minutes is not None and recipe.cook_time_minutes < 0:
            errors.append(_issue("NEGATIVE_COOK_TIME", "CookTimeMinutes", "Cook time cannot be negative"))
        if recipe.servings is not None and recipe.servings <= 0:
            errors.append(_issue("INVALID_SERVINGS", "Servings", "Servings must be a positive number"))

        self._check_ingredients(recipe, errors)
        self._check_instructions(recipe, errors)

        if len(recipe.tags) > MAX_TAG_COUNT:
            errors.append(_issue("TOO_MANY_TAGS", "Tags", f"Recipe has too many tags (max {MAX_TAG_COUNT})"))
        for tag in recipe.tags:
            if len(tag) > MAX_TAG_LENGTH:
                errors.append(_issue("TAG_TOO_LONG", "Tags", f"Tag '{tag[:20]}...' is too long (max {MAX_TAG_LENGTH})"))

        if recipe.image_url:
            parts = urlsplit(recipe.image_url)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                errors.append(_issue("INVALID_IMAGE_URL", "ImageUrl", "Image URL is not a valid HTTP/HTTPS URL"))

    def _check_ingredients(self, recipe: Recipe, errors: list[str]) -> None:
        if not recipe.ingredients:
            errors.append(_issue("NO_INGREDIENTS", "Ingredients", "Recipe must have at least one ingredient"))
        elif len(recipe.ingredients) > MAX_INGREDIENTS:
            errors.append(_issue(
                "TOO_MANY_INGREDIENTS", "Ingredients", f"Recipe has too many ingredients (max {MAX_INGREDIENTS})",
            ))

        for position, ingredient in enumerate(recipe.ingredients, start=1):
            field = f"Ingredients[{position - 1}]"
            if not (ingredient.name or "").strip():
                errors.append(_issue("INGREDIENT_NO_NAME", field, f"Ingredient at position {position} has no name"))
            elif len(ingredient.name) > MAX_INGREDIENT_NAME_LENGTH:
                errors.append(_issue(
                    "INGREDIENT_NAME_TOO_LONG",
                    field,
                    f"Ingredient name at position {position} is too long (max {MAX_INGREDIENT_NAME_LENGTH})",
                ))
            if ingredient.quantity is not None and ingredient.quantity < 0:
                errors.append(_issue(
                    "NEGATIVE_INGREDIENT_QUANTITY", field, f"Ingredient quantity at position {position} cannot be negative",
                ))

    def _check_instructions(self, recipe: Recipe, errors: list[str]) -> None:
        if not recipe.instructions:
            errors.append(_issue("NO_INSTRUCTIONS", "Instructions", "Recipe must have at least one instruction"))
        elif len(recipe.instructions) > MAX_INSTRUCTIONS:
            errors.append(_issue(
                "TOO_MANY_INSTRUCTIONS", "Instructions", f"Recipe has too many instructions (max {MAX_INSTRUCTIONS})",
            ))

        for step, instruction in enumerate(recipe.instructions, start=1):
            field = f"Instructions[{step - 1}]"
            if not (instruction or "").strip():
                errors.append(_issue("EMPTY_INSTRUCTION", field, f"Instruction at step {step} is empty"))
            elif len(instruction) > MAX_INSTRUCTION_LENGTH:
                errors.append(_issue(
                    "INSTRUCTION_TOO_LONG", field, f"Instruction at step {step} is too long (max {MAX_INSTRUCTION_LENGTH})",
                ))

    def _check_business_rules(self, recipe: Recipe, warnings: list[str]) -> None:
        prep = recipe.prep_time_minutes or 0
        cook = recipe.cook_time_minutes or 0

        if prep > MAX_REASONABLE_PREP_MINUTES:
            warnings.append(_issue("LONG_PREP_TIME", "PrepTimeMinutes", f"Prep time of {prep} minutes seems unusually long"))
        if cook > MAX_REASONABLE_COOK_MINUTES:
            warnings.append(_issue("LONG_COOK_TIME", "CookTimeMinutes", f"Cook time of {cook} minutes seems unusually long"))
        if prep == 0 and cook == 0:
            warnings.append(_issue(
                "NO_TIME_ESTIMATES", "Time", "Both prep time and cook time are missing, consider adding time estimates",
            ))
        if recipe.servings is not None and recipe.servings > MAX_REASONABLE_SERVINGS:
            warnings.append(_issue("HIGH_SERVINGS", "Servings", f"Serving size of {recipe.servings} seems unusually high"))

        description = (recipe.description or "").strip()
        if not description and len(recipe.ingredients) >= WARN_NO_DESCRIPTION_MIN_INGREDIENTS:
            warnings.append(_issue("MISSING_DESCRIPTION", "Description", "Recipe has no description"))
        elif description and len(description) < SHORT_DESCRIPTION_LENGTH:
            warnings.append(_issue("SHORT_DESCRIPTION", "Description", "Recipe description is very short"))

        if not (recipe.cuisine or "").strip():
            warnings.append(_issue("MISSING_CUISINE", "Cuisine", "No cuisine type specified"))
        if not recipe.tags:
            warnings.append(_issue("NO_TAGS", "Tags", "No tags specified"))
        if not (recipe.image_url or "").strip():
            warnings.append(_issue("NO_IMAGE", "ImageUrl", "No image URL specified"))

        if len(recipe.ingredients) < 3 and len(recipe.instructions) > 5:
            warnings.append(_issue(
                "FEW_INGREDIENTS", "Ingredients", "Recipe has many instructions but few ingredients, some may be missing",
            ))
        if len(recipe.instructions) < 2 and len(recipe.ingredients) > 5:
            warnings.append(_issue(
                "FEW_INSTRUCTIONS", "Instructions", "Recipe has many ingredients but few instructions, some may be missing",
            ))

        names = Counter((ingredient.name or "").strip().lower() for ingredient in recipe.ingredients if ingredient.name)
        duplicates = sorted(name for name, count in names.items() if count > 1)
        if duplicates:
            warnings.append(_issue(
                "DUPLICATE_INGREDIENTS", "Ingredients", f"Recipe has duplicate ingredients: {', '.join(duplicates)}",
            ))

        zero_quantity = [ingredient for ingredient in recipe.ingredients if ingredient.quantity == 0]
        if zero_quantity:
            warnings.append(_issue(
                "ZERO_QUANTITY_INGREDIENTS", "Ingredients", f"{len(zero_quantity)} ingredient(s) have zero quantity",
            ))
