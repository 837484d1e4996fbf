"""
Recipe workshop: AI-generated recipe concepts turned into costed drafts.

The generator is called through the Anthropic Messages API with a forced
tool call, so the concept always comes back as structured input matching
RECIPE_CONCEPT_TOOL. Everything after generation (catalogue matching, cost
preview, persistence) is plain code over the recipe graph.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import anthropic

from backoffice.costing import DEFAULT_TVA_RATE, aggregate_dish, preparation_cost, resolve_graph_costs
from backoffice.errors import ValidationError, WorkshopError, WorkshopUnavailable
from backoffice.models import (
    DISH_TYPE,
    PREPARATION_TYPE,
    Dish,
    Preparation,
    RecipeGraph,
    RecipeIngredientLink,
    RecipePreparationLink,
    as_float,
)

logger = logging.getLogger(__name__)

DEFAULT_LLM_MODEL = "claude-haiku-4-5-20251001"
MAX_TOKENS = 4096
DRAFT_ID = "draft"

DIFFICULTIES = ["Facile", "Moyen", "Difficile"]

_LINE_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "quantity": {"type": "number"},
        "unit": {"type": "string", "description": "g, kg, ml, l or pièce"},
    },
    "required": ["name", "quantity", "unit"],
}

RECIPE_CONCEPT_TOOL = {
    "name": "record_recipe_concept",
    "description": "Record the structured technical sheet of the recipe.",
    "input_schema": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "description": {"type": "string"},
            "ingredients": {"type": "array", "items": _LINE_SCHEMA},
            "subRecipes": {
                "type": "array",
                "items": _LINE_SCHEMA,
                "description": "Existing preparations only, with their exact names.",
            },
            "procedure_preparation": {"type": "string"},
            "procedure_cuisson": {"type": "string"},
            "procedure_service": {"type": "string"},
            "duration": {"type": "integer", "description": "Total time in minutes."},
            "difficulty": {"type": "string", "enum": DIFFICULTIES},
            "category": {"type": "string"},
            "portions": {"type": "integer"},
            "commercialArgument": {"type": "string"},
            "productionQuantity": {"type": "number"},
            "productionUnit": {"type": "string"},
            "usageUnit": {"type": "string"},
        },
        "required": [
            "name",
            "description",
            "ingredients",
            "subRecipes",
            "procedure_preparation",
            "procedure_cuisson",
            "procedure_service",
            "duration",
            "difficulty",
        ],
    },
}

SYSTEM_PROMPT = (
    "You are an executive chef writing technical sheets for a restaurant kitchen. "
    "Never use an ingredient containing alcohol; substitute a non-alcoholic "
    "alternative (stock, grape or apple juice, mild vinegar). Whenever a component "
    "of the recipe exists among the listed preparations, use it as a sub-recipe "
    "with its exact name instead of listing its ingredients and steps. Never invent "
    "a sub-recipe. Ingredient names are simple and generic; units are g, kg, ml, l "
    "or pièce."
)


@dataclass
class RecipeConceptInput:
    type: str
    name: str
    description: str = ""
    main_ingredients: str = ""
    excluded_ingredients: str = ""
    recommendations: str = ""
    raw_recipe: str = ""
    refinement_history: List[str] = field(default_factory=list)
    current_refinement: str = ""

    @classmethod
    def from_dict(cls, data):
        recipe_type = data.get("type") or DISH_TYPE
        if recipe_type not in (DISH_TYPE, PREPARATION_TYPE):
            raise ValidationError(f"Unknown recipe type '{recipe_type}'.")
        if not (data.get("name") or data.get("rawRecipe")):
            raise ValidationError("A name or a raw recipe is required.")
        return cls(
            type=recipe_type,
            name=data.get("name") or "",
            description=data.get("description") or "",
            main_ingredients=data.get("mainIngredients") or "",
            excluded_ingredients=data.get("excludedIngredients") or "",
            recommendations=data.get("recommendations") or "",
            raw_recipe=data.get("rawRecipe") or "",
            refinement_history=list(data.get("refinementHistory") or []),
            current_refinement=data.get("currentRefinement") or "",
        )


def _get_client(client, api_key):
    if client is not None:
        return client
    if not api_key:
        raise WorkshopUnavailable("ANTHROPIC_API_KEY is not configured.")
    return anthropic.Anthropic(api_key=api_key)


def _concept_prompt(concept_input, existing_preparations):
    lines = []
    if concept_input.raw_recipe:
        lines.append("Reformat the following recipe into a technical sheet:")
        lines.append(concept_input.raw_recipe)
    else:
        lines.append(f"Create a technical sheet of type '{concept_input.type}'.")
        lines.append(f"Name or idea: {concept_input.name}")
        if concept_input.description:
            lines.append(f"Description: {concept_input.description}")
        if concept_input.main_ingredients:
            lines.append(f"Main ingredients: {concept_input.main_ingredients}")
        if concept_input.excluded_ingredients:
            lines.append(f"Never use: {concept_input.excluded_ingredients}")
        if concept_input.recommendations:
            lines.append(f"Recommendations: {concept_input.recommendations}")
    if concept_input.type == PREPARATION_TYPE:
        lines.append(
            "Give productionQuantity and productionUnit (kg, l or pièce) for the whole "
            "batch, and the usageUnit parent recipes will use."
        )
    else:
        lines.append("Give the category, the number of portions and a commercial argument.")
    if concept_input.refinement_history:
        lines.append("Previous instructions to keep applying:")
        lines.extend(f"- {item}" for item in concept_input.refinement_history)
    if concept_input.current_refinement:
        lines.append(f"New instruction: {concept_input.current_refinement}")
    if existing_preparations:
        lines.append("Existing preparations: " + ", ".join(sorted(existing_preparations)))
    return "\n".join(lines)


def generate_recipe_concept(
    concept_input,
    client=None,
    api_key=None,
    model=DEFAULT_LLM_MODEL,
    existing_preparations=(),
):
    """
    Structured recipe concept for `concept_input`.

    Raises WorkshopUnavailable without a client or key, WorkshopError when the
    API call fails or does not return the recipe tool call.
    """
    client = _get_client(client, api_key)
    try:
        response = client.messages.create(
            model=model,
            max_tokens=MAX_TOKENS,
            system=SYSTEM_PROMPT,
            tools=[RECIPE_CONCEPT_TOOL],
            tool_choice={"type": "tool", "name": RECIPE_CONCEPT_TOOL["name"]},
            messages=[
                {
                    "role": "user",
                    "content": _concept_prompt(concept_input, existing_preparations),
                }
            ],
        )
    except anthropic.APIError as e:
        logger.error("Recipe generation failed for '%s': %s", concept_input.name, e)
        raise WorkshopError(f"Recipe generation failed: {e}") from e

    for block in response.content:
        if block.type == "tool_use":
            return dict(block.input)
    logger.error("Recipe generation for '%s' returned no structured concept", concept_input.name)
    raise WorkshopError("The generator did not return a structured recipe.")


# --- Drafts ---


@dataclass
class RecipeDraft:
    recipe: object
    ingredient_links: List[RecipeIngredientLink] = field(default_factory=list)
    preparation_links: List[RecipePreparationLink] = field(default_factory=list)
    unmatched_ingredients: List[str] = field(default_factory=list)
    unmatched_preparations: List[str] = field(default_factory=list)
    cost: Optional[dict] = None

    def to_dict(self):
        return {
            "recipe": self.recipe.to_document(),
            "ingredients": [link.to_document() for link in self.ingredient_links],
            "preparations": [link.to_document() for link in self.preparation_links],
            "unmatchedIngredients": list(self.unmatched_ingredients),
            "unmatchedPreparations": list(self.unmatched_preparations),
            "cost": self.cost,
        }


def _name_index(records):
    return {record.name.strip().casefold(): record for record in records if record.name}


def _recipe_from_concept(concept, recipe_type):
    doc = {
        "id": DRAFT_ID,
        "name": concept.get("name"),
        "description": concept.get("description"),
        "category": concept.get("category"),
        "duration": concept.get("duration"),
        "difficulty": concept.get("difficulty"),
        "portions": concept.get("portions") or 1,
        "productionQuantity": concept.get("productionQuantity"),
        "productionUnit": concept.get("productionUnit"),
        "usageUnit": concept.get("usageUnit"),
        "procedure_fabrication": "\n\n".join(
            part
            for part in (concept.get("procedure_preparation"), concept.get("procedure_cuisson"))
            if part
        ),
        "procedure_service": concept.get("procedure_service"),
        "commercialArgument": concept.get("commercialArgument"),
    }
    if recipe_type == DISH_TYPE:
        return Dish.from_document(doc)
    return Preparation.from_document(doc)


def build_draft(concept, graph, recipe_type=DISH_TYPE, default_tva_rate=DEFAULT_TVA_RATE):
    """
    Matches a generated concept against the catalogue and prices it.

    Names are matched case-insensitively; lines naming nothing known are
    reported in `unmatched_*` and left out of the cost preview.
    """
    recipe = _recipe_from_concept(concept, recipe_type)
    draft = RecipeDraft(recipe=recipe)

    ingredients = _name_index(graph.ingredients.values())
    for line in concept.get("ingredients") or []:
        ingredient = ingredients.get((line.get("name") or "").strip().casefold())
        if ingredient is None:
            draft.unmatched_ingredients.append(line.get("name") or "")
            continue
        draft.ingredient_links.append(
            RecipeIngredientLink(
                recipe_id=DRAFT_ID,
                ingredient_id=ingredient.id,
                quantity=as_float(line.get("quantity")),
                unit_use=line.get("unit") or ingredient.cost_base_unit,
            )
        )

    preparations = _name_index(graph.preparations.values())
    for line in concept.get("subRecipes") or []:
        prep = preparations.get((line.get("name") or "").strip().casefold())
        if prep is None:
            draft.unmatched_preparations.append(line.get("name") or "")
            continue
        draft.preparation_links.append(
            RecipePreparationLink(
                parent_recipe_id=DRAFT_ID,
                child_preparation_id=prep.id,
                quantity=as_float(line.get("quantity")),
                unit_use=line.get("unit") or prep.usage_unit or prep.production_unit,
            )
        )

    prep_costs = resolve_graph_costs(graph)
    preview = RecipeGraph(
        ingredients=graph.ingredients.values(),
        preparations=graph.preparations.values(),
        dishes=[recipe] if recipe_type == DISH_TYPE else [],
        ingredient_links=draft.ingredient_links,
        preparation_links=draft.preparation_links,
    )
    if recipe_type == DISH_TYPE:
        draft.cost = aggregate_dish(recipe, preview, prep_costs, default_tva_rate).figures()
    else:
        cost = preparation_cost(recipe, preview, prep_costs)
        draft.cost = {
            "totalCost": cost.total_cost,
            "costPerProductionUnit": cost.cost_per_production_unit,
            "productionUnit": cost.production_unit,
        }
    return draft


def save_draft(store, draft):
    """Writes the recipe and its links in one transaction; returns the new id."""
    recipe = draft.recipe
    if not recipe.name:
        raise ValidationError("A recipe needs a name.")
    collection = "recipes" if recipe.TYPE == DISH_TYPE else "preparations"

    def write(txn):
        recipe_id = txn.add(collection, recipe.to_document())
        for link in draft.ingredient_links:
            link.recipe_id = recipe_id
            txn.add("recipeIngredients", link.to_document())
        for link in draft.preparation_links:
            link.parent_recipe_id = recipe_id
            txn.add("recipePreparationLinks", link.to_document())
        return recipe_id

    recipe_id = store.run_transaction(write)
    logger.info(
        "Saved %s '%s' (%s) with %s ingredient(s) and %s sub-recipe(s)",
        recipe.TYPE,
        recipe.name,
        recipe_id,
        len(draft.ingredient_links),
        len(draft.preparation_links),
    )
    return recipe_id


def recommend_menu_actions(analysis, client=None, api_key=None, model=DEFAULT_LLM_MODEL):
    """Markdown recommendations on production and purchasing from a menu analysis."""
    client = _get_client(client, api_key)
    prompt = (
        "Here is the analysis of our active menu as JSON. Give concrete, prioritised "
        "recommendations in Markdown to simplify production, batch the shared "
        "preparations and improve the margin of the weakest dishes.\n\n"
        + json.dumps(analysis, ensure_ascii=False)
    )
    try:
        response = client.messages.create(
            model=model,
            max_tokens=MAX_TOKENS,
            system="You are a restaurant operations consultant.",
            messages=[{"role": "user", "content": prompt}],
        )
    except anthropic.APIError as e:
        logger.error("Menu recommendations failed: %s", e)
        raise WorkshopError(f"Recommendation request failed: {e}") from e
    return "\n".join(block.text for block in response.content if block.type == "text")
