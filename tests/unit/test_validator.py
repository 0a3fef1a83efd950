from __future__ import annotations

from src.app.domain.models import Ingredient, Recipe
from src.app.services.validator import MAX_NAME_LENGTH, MAX_TAG_COUNT, RecipeValidator


def _complete_recipe(**overrides) -> Recipe:
    values = dict(
        id="r-1",
        name="Weeknight Lentil Soup",
        description="A hearty soup that comes together in under an hour.",
        ingredients=[
            Ingredient(name="red lentils", quantity=200, unit="g"),
            Ingredient(name="onion", quantity=1),
            Ingredient(name="vegetable stock", quantity=1, unit="l"),
        ],
        instructions=["Soften the onion.", "Add lentils and stock, simmer 25 minutes."],
        cuisine="Turkish",
        prep_time_minutes=10,
        cook_time_minutes=30,
        servings=4,
        tags=["soup", "vegetarian"],
        image_url="https://cdn.example.com/soup.jpg",
    )
    values.update(overrides)
    return Recipe(**values)


def _codes(issues: list[str]) -> set[str]:
    return {issue.split("]")[0].lstrip("[") for issue in issues}


class TestSchemaErrors:
    def test_complete_recipe_is_clean(self) -> None:
        report = RecipeValidator().validate(_complete_recipe())
        assert report.is_valid
        assert report.warnings == []

    def test_missing_name(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(name="   "))
        assert not report.is_valid
        assert report.errors == ["[REQUIRED_NAME] Name: Recipe name is required"]

    def test_name_too_long(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(name="x" * (MAX_NAME_LENGTH + 1)))
        assert "NAME_TOO_LONG" in _codes(report.errors)

    def test_no_ingredients_or_instructions(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(ingredients=[], instructions=[]))
        assert {"NO_INGREDIENTS", "NO_INSTRUCTIONS"} <= _codes(report.errors)

    def test_ingredient_problems_name_their_position(self) -> None:
        recipe = _complete_recipe(ingredients=[
            Ingredient(name="salt"),
            Ingredient(name=""),
            Ingredient(name="flour", quantity=-1),
        ])
        report = RecipeValidator().validate(recipe)
        assert "[INGREDIENT_NO_NAME] Ingredients[1]: Ingredient at position 2 has no name" in report.errors
        assert any(issue.startswith("[NEGATIVE_INGREDIENT_QUANTITY] Ingredients[2]") for issue in report.errors)

    def test_empty_instruction(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(instructions=["Boil water.", " "]))
        assert "[EMPTY_INSTRUCTION] Instructions[1]: Instruction at step 2 is empty" in report.errors

    def test_negative_times_and_servings(self) -> None:
        report = RecipeValidator().validate(
            _complete_recipe(prep_time_minutes=-5, cook_time_minutes=-1, servings=0)
        )
        assert {"NEGATIVE_PREP_TIME", "NEGATIVE_COOK_TIME", "INVALID_SERVINGS"} <= _codes(report.errors)

    def test_tags(self) -> None:
        report = RecipeValidator().validate(
            _complete_recipe(tags=[f"tag{i}" for i in range(MAX_TAG_COUNT + 1)] + ["y" * 60])
        )
        assert {"TOO_MANY_TAGS", "TAG_TOO_LONG"} <= _codes(report.errors)

    def test_image_url_must_be_http(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(image_url="ftp://example.com/a.jpg"))
        assert "INVALID_IMAGE_URL" in _codes(report.errors)


class TestBusinessWarnings:
    def test_warnings_do_not_invalidate(self) -> None:
        report = RecipeValidator().validate(
            _complete_recipe(cuisine=None, tags=[], image_url=None, description="Tasty.")
        )
        assert report.is_valid
        assert {"MISSING_CUISINE", "NO_TAGS", "NO_IMAGE", "SHORT_DESCRIPTION"} <= _codes(report.warnings)

    def test_long_times_and_servings(self) -> None:
        report = RecipeValidator().validate(
            _complete_recipe(prep_time_minutes=2000, cook_time_minutes=5000, servings=500)
        )
        assert {"LONG_PREP_TIME", "LONG_COOK_TIME", "HIGH_SERVINGS"} <= _codes(report.warnings)

    def test_no_time_estimates(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(prep_time_minutes=None, cook_time_minutes=None))
        assert "NO_TIME_ESTIMATES" in _codes(report.warnings)

    def test_missing_description_with_enough_ingredients(self) -> None:
        report = RecipeValidator().validate(_complete_recipe(description=None))
        assert "MISSING_DESCRIPTION" in _codes(report.warnings)

    def test_duplicate_and_zero_quantity_ingredients(self) -> None:
        recipe = _complete_recipe(ingredients=[
            Ingredient(name="Salt", quantity=0),
            Ingredient(name="salt"),
            Ingredient(name="pepper"),
        ])
        report = RecipeValidator().validate(recipe)
        assert "[DUPLICATE_INGREDIENTS] Ingredients: Recipe has duplicate ingredients: salt" in report.warnings
        assert "[ZERO_QUANTITY_INGREDIENTS] Ingredients: 1 ingredient(s) have zero quantity" in report.warnings

    def test_shape_imbalance(self) -> None:
        few_ingredients = _complete_recipe(
            ingredients=[Ingredient(name="egg")],
            instructions=[f"Step {i}" for i in range(6)],
        )
        assert "FEW_INGREDIENTS" in _codes(RecipeValidator().validate(few_ingredients).warnings)

        few_steps = _complete_recipe(
            ingredients=[Ingredient(name=f"item {i}") for i in range(6)],
            instructions=["Mix everything."],
        )
        assert "FEW_INSTRUCTIONS" in _codes(RecipeValidator().validate(few_steps).warnings)
