from types import SimpleNamespace

import anthropic
import httpx
import pytest

from backoffice.errors import ValidationError, WorkshopError, WorkshopUnavailable
from backoffice.workshop import (
    RECIPE_CONCEPT_TOOL,
    RecipeConceptInput,
    build_draft,
    generate_recipe_concept,
    recommend_menu_actions,
    save_draft,
)

CONCEPT = {
    "name": "Tartine tomate",
    "description": "Pain grillé, sauce tomate maison.",
    "ingredients": [
        {"name": "tomate", "quantity": 200, "unit": "g"},
        {"name": "Truffe", "quantity": 5, "unit": "g"},
    ],
    "subRecipes": [{"name": "SAUCE TOMATE", "quantity": 100, "unit": "g"}],
    "procedure_preparation": "Couper.",
    "procedure_cuisson": "Griller.",
    "procedure_service": "Servir chaud.",
    "duration": 15,
    "difficulty": "Facile",
    "portions": 1,
}


class FakeMessages:
    def __init__(self, content=None, error=None):
        self.content = content or []
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=self.content)


class FakeClient:
    def __init__(self, **kwargs):
        self.messages = FakeMessages(**kwargs)


def tool_reply(data):
    return [SimpleNamespace(type="tool_use", input=data)]


def connection_error():
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.APIConnectionError(request=request)


def test_concept_input_validation():
    with pytest.raises(ValidationError):
        RecipeConceptInput.from_dict({"type": "Plat"})
    with pytest.raises(ValidationError):
        RecipeConceptInput.from_dict({"type": "Boisson", "name": "Citronnade"})
    concept_input = RecipeConceptInput.from_dict({"name": "Velouté", "mainIngredients": "potiron"})
    assert concept_input.type == "Plat"
    assert concept_input.main_ingredients == "potiron"


def test_generation_forces_the_recipe_tool():
    client = FakeClient(content=tool_reply(CONCEPT))
    concept_input = RecipeConceptInput(type="Plat", name="Tartine")

    concept = generate_recipe_concept(
        concept_input, client=client, existing_preparations=["Sauce tomate"]
    )

    assert concept == CONCEPT
    [call] = client.messages.calls
    assert call["tool_choice"] == {"type": "tool", "name": RECIPE_CONCEPT_TOOL["name"]}
    assert "Sauce tomate" in call["messages"][0]["content"]


def test_generation_without_a_key_is_unavailable():
    with pytest.raises(WorkshopUnavailable):
        generate_recipe_concept(RecipeConceptInput(type="Plat", name="Tartine"))


def test_api_failures_become_workshop_errors():
    client = FakeClient(error=connection_error())
    with pytest.raises(WorkshopError):
        generate_recipe_concept(RecipeConceptInput(type="Plat", name="Tartine"), client=client)


def test_reply_without_tool_call_is_an_error():
    client = FakeClient(content=[SimpleNamespace(type="text", text="Voici une recette")])
    with pytest.raises(WorkshopError):
        generate_recipe_concept(RecipeConceptInput(type="Plat", name="Tartine"), client=client)


def test_build_draft_matches_names_and_prices_the_dish(graph):
    draft = build_draft(CONCEPT, graph)

    assert [link.ingredient_id for link in draft.ingredient_links] == ["tomato"]
    assert [link.child_preparation_id for link in draft.preparation_links] == ["sauce"]
    assert draft.unmatched_ingredients == ["Truffe"]
    assert draft.unmatched_preparations == []
    # 200 g tomatoes + 100 g sauce
    assert draft.cost["totalCost"] == pytest.approx(75.0)
    assert draft.recipe.procedure_fabrication == "Couper.\n\nGriller."


def test_build_draft_for_a_preparation(graph):
    concept = dict(CONCEPT, productionQuantity=500, productionUnit="g", subRecipes=[])
    draft = build_draft(concept, graph, recipe_type="Préparation")

    assert draft.recipe.TYPE == "Préparation"
    assert draft.cost["totalCost"] == pytest.approx(60.0)
    assert draft.cost["costPerProductionUnit"] == pytest.approx(0.12)


def test_save_draft_writes_recipe_and_links(store, graph):
    draft = build_draft(CONCEPT, graph)

    recipe_id = save_draft(store, draft)

    recipe = store.get("recipes", recipe_id)
    assert recipe["type"] == "Plat"
    assert recipe["name"] == "Tartine tomate"
    [ingredient_link] = store.query("recipeIngredients", "recipeId", recipe_id)
    assert ingredient_link["ingredientId"] == "tomato"
    [prep_link] = store.query("recipePreparationLinks", "parentRecipeId", recipe_id)
    assert prep_link["childPreparationId"] == "sauce"


def test_recommendations_return_text():
    client = FakeClient(content=[SimpleNamespace(type="text", text="## Mutualiser la sauce")])
    text = recommend_menu_actions({"mutualisations": []}, client=client)
    assert text == "## Mutualiser la sauce"


def test_recommendation_failures_become_workshop_errors():
    with pytest.raises(WorkshopError):
        recommend_menu_actions({}, client=FakeClient(error=connection_error()))
