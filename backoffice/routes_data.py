import logging
import math

from flask import Blueprint, current_app, jsonify, request

from backoffice import workshop
from backoffice.analysis import analyse_menu
from backoffice.db import get_store
from backoffice.errors import StoreError, ValidationError, WorkshopError, WorkshopUnavailable
from backoffice.graph import creates_cycle
from backoffice.models import (
    DISH_TYPE,
    Dish,
    Ingredient,
    Preparation,
    RecipeIngredientLink,
    RecipePreparationLink,
    load_graph,
)

logger = logging.getLogger(__name__)

# --- All data management routes ---
bp = Blueprint("data", __name__)

# url segment -> (collection, record class)
RESOURCES = {
    "ingredients": ("ingredients", Ingredient),
    "preparations": ("preparations", Preparation),
    "garnishes": ("garnishes", Preparation),
    "dishes": ("recipes", Dish),
}

NON_NEGATIVE_FIELDS = {
    "ingredients": ("purchasePrice", "purchaseWeightGrams", "yieldPercentage"),
    "preparations": ("productionQuantity",),
    "garnishes": ("productionQuantity",),
    "dishes": ("price", "portions", "tvaRate"),
}


def _resource_or_404(resource):
    if resource not in RESOURCES:
        return None
    return RESOURCES[resource]


def _parse_quantity(value, label="quantity"):
    try:
        quantity = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{label}' must be a number.")
    if not math.isfinite(quantity) or quantity <= 0:
        raise ValidationError(f"'{label}' must be a positive number.")
    return quantity


def _validate(resource, data):
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("A name is required.")
    for key in NON_NEGATIVE_FIELDS[resource]:
        if data.get(key) in (None, ""):
            continue
        try:
            value = float(data[key])
        except (TypeError, ValueError):
            raise ValidationError(f"'{key}' must be a number.")
        if not math.isfinite(value) or value < 0:
            raise ValidationError(f"'{key}' must not be negative.")


def _normalise(resource, data):
    """Round-trips a payload through its record so types and tags are forced."""
    record_cls = RESOURCES[resource][1]
    doc = record_cls.from_document(data).to_document()
    if resource == "dishes" and "tvaRate" not in doc:
        doc["tvaRate"] = current_app.config["DEFAULT_TVA_RATE"]
    return doc


@bp.route("/<resource>")
def list_documents(resource):
    target = _resource_or_404(resource)
    if target is None:
        return jsonify(error=f"Unknown resource '{resource}'."), 404
    try:
        docs = get_store().fetch_collection(target[0])
    except StoreError as e:
        logger.error("Error fetching %s: %s", resource, e)
        return jsonify(error=f"Error fetching {resource}: {e}"), 500
    return jsonify(sorted(docs, key=lambda doc: str(doc.get("name") or "").casefold()))


@bp.route("/<resource>/<doc_id>")
def get_document(resource, doc_id):
    target = _resource_or_404(resource)
    if target is None:
        return jsonify(error=f"Unknown resource '{resource}'."), 404
    try:
        doc = get_store().get(target[0], doc_id)
    except StoreError as e:
        logger.error("Error fetching %s %s: %s", resource, doc_id, e)
        return jsonify(error=f"Error fetching {resource}: {e}"), 500
    if doc is None:
        return jsonify(error=f"'{doc_id}' not found in {resource}."), 404
    return jsonify(doc)


@bp.route("/<resource>", methods=["POST"])
def create_document(resource):
    target = _resource_or_404(resource)
    if target is None:
        return jsonify(error=f"Unknown resource '{resource}'."), 404
    payload = request.get_json(silent=True) or {}
    try:
        _validate(resource, payload)
        doc_id = get_store().add(target[0], _normalise(resource, payload))
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except StoreError as e:
        logger.error("Error creating %s: %s", resource, e)
        return jsonify(error=f"Error creating {resource}: {e}"), 500
    logger.info("Created %s %s (%s)", resource, payload.get("name"), doc_id)
    return jsonify(id=doc_id), 201


@bp.route("/<resource>/<doc_id>", methods=["PUT", "PATCH"])
def update_document(resource, doc_id):
    target = _resource_or_404(resource)
    if target is None:
        return jsonify(error=f"Unknown resource '{resource}'."), 404
    collection = target[0]
    payload = request.get_json(silent=True) or {}
    store = get_store()
    try:
        current = store.get(collection, doc_id)
        if current is None:
            return jsonify(error=f"'{doc_id}' not found in {resource}."), 404
        merged = dict(current)
        merged.update(payload)
        _validate(resource, merged)
        store.set(collection, doc_id, _normalise(resource, merged))
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except StoreError as e:
        logger.error("Error updating %s %s: %s", resource, doc_id, e)
        return jsonify(error=f"Error updating {resource}: {e}"), 500
    return jsonify(id=doc_id)


def _dependent_links(store, resource, doc_id):
    """(collection, id) of every link row that dies with the document."""
    if resource == "ingredients":
        rows = [("recipeIngredients", "ingredientId")]
    elif resource == "dishes":
        rows = [("recipeIngredients", "recipeId"), ("recipePreparationLinks", "parentRecipeId")]
    else:
        rows = [
            ("recipeIngredients", "recipeId"),
            ("recipePreparationLinks", "parentRecipeId"),
            ("recipePreparationLinks", "childPreparationId"),
        ]
    links = set()
    for collection, field in rows:
        for doc in store.query(collection, field, doc_id):
            links.add((collection, doc["id"]))
    return sorted(links)


@bp.route("/<resource>/<doc_id>", methods=["DELETE"])
def delete_document(resource, doc_id):
    target = _resource_or_404(resource)
    if target is None:
        return jsonify(error=f"Unknown resource '{resource}'."), 404
    store = get_store()
    try:
        links = _dependent_links(store, resource, doc_id)

        def remove(txn):
            txn.delete(target[0], doc_id)
            for collection, link_id in links:
                txn.delete(collection, link_id)

        store.run_transaction(remove)
    except StoreError as e:
        logger.error("Error deleting %s %s: %s", resource, doc_id, e)
        return jsonify(error=f"Error deleting {resource}: {e}"), 500
    logger.info("Deleted %s %s and %s link(s)", resource, doc_id, len(links))
    return jsonify(id=doc_id, deletedLinks=len(links))


# --- Recipe composition links ---


@bp.route("/recipes/<recipe_id>/links")
def recipe_links(recipe_id):
    store = get_store()
    try:
        ingredients = store.query("recipeIngredients", "recipeId", recipe_id)
        preparations = store.query("recipePreparationLinks", "parentRecipeId", recipe_id)
    except StoreError as e:
        logger.error("Error fetching links of %s: %s", recipe_id, e)
        return jsonify(error=f"Error fetching links: {e}"), 500
    return jsonify(ingredients=ingredients, preparations=preparations)


@bp.route("/recipes/<recipe_id>/ingredients", methods=["POST"])
def add_ingredient_link(recipe_id):
    payload = request.get_json(silent=True) or {}
    store = get_store()
    try:
        graph = load_graph(store)
        if graph.item(recipe_id) is None:
            return jsonify(error=f"Recipe '{recipe_id}' not found."), 404
        ingredient = graph.ingredients.get(payload.get("ingredientId"))
        if ingredient is None:
            raise ValidationError("'ingredientId' must name an existing ingredient.")
        link = RecipeIngredientLink(
            recipe_id=recipe_id,
            ingredient_id=ingredient.id,
            quantity=_parse_quantity(payload.get("quantity")),
            unit_use=payload.get("unitUse") or ingredient.cost_base_unit,
        )
        link_id = store.add("recipeIngredients", link.to_document())
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except StoreError as e:
        logger.error("Error adding ingredient to %s: %s", recipe_id, e)
        return jsonify(error=f"Error adding ingredient: {e}"), 500
    return jsonify(id=link_id), 201


@bp.route("/recipe-ingredients/<link_id>", methods=["DELETE"])
def delete_ingredient_link(link_id):
    try:
        get_store().delete("recipeIngredients", link_id)
    except StoreError as e:
        logger.error("Error deleting ingredient link %s: %s", link_id, e)
        return jsonify(error=f"Error deleting link: {e}"), 500
    return jsonify(id=link_id)


@bp.route("/recipes/<parent_id>/preparations", methods=["POST"])
def add_preparation_link(parent_id):
    payload = request.get_json(silent=True) or {}
    store = get_store()
    try:
        graph = load_graph(store)
        if graph.item(parent_id) is None:
            return jsonify(error=f"Recipe '{parent_id}' not found."), 404
        child = graph.preparations.get(payload.get("childPreparationId"))
        if child is None:
            raise ValidationError("'childPreparationId' must name an existing preparation.")
        if creates_cycle(parent_id, child.id, graph.child_preparation_ids):
            logger.warning("Rejected link %s -> %s: it would close a cycle", parent_id, child.id)
            return (
                jsonify(error=f"'{child.name}' already depends on this recipe."),
                409,
            )
        link = RecipePreparationLink(
            parent_recipe_id=parent_id,
            child_preparation_id=child.id,
            quantity=_parse_quantity(payload.get("quantity")),
            unit_use=payload.get("unitUse") or child.usage_unit or child.production_unit,
        )
        link_id = store.add("recipePreparationLinks", link.to_document())
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except StoreError as e:
        logger.error("Error adding preparation to %s: %s", parent_id, e)
        return jsonify(error=f"Error adding preparation: {e}"), 500
    return jsonify(id=link_id), 201


@bp.route("/recipe-preparations/<link_id>", methods=["DELETE"])
def delete_preparation_link(link_id):
    try:
        get_store().delete("recipePreparationLinks", link_id)
    except StoreError as e:
        logger.error("Error deleting preparation link %s: %s", link_id, e)
        return jsonify(error=f"Error deleting link: {e}"), 500
    return jsonify(id=link_id)


# --- Recipe workshop ---


def _llm_settings():
    return {
        "api_key": current_app.config.get("ANTHROPIC_API_KEY"),
        "model": current_app.config.get("LLM_MODEL") or workshop.DEFAULT_LLM_MODEL,
    }


def _workshop_error(e):
    if isinstance(e, WorkshopUnavailable):
        return jsonify(error=str(e)), 503
    return jsonify(error=str(e)), 502


@bp.route("/workshop/generate", methods=["POST"])
def workshop_generate():
    payload = request.get_json(silent=True) or {}
    store = get_store()
    try:
        concept_input = workshop.RecipeConceptInput.from_dict(payload)
        graph = load_graph(store)
        concept = workshop.generate_recipe_concept(
            concept_input,
            existing_preparations=[prep.name for prep in graph.preparations.values()],
            **_llm_settings(),
        )
        draft = workshop.build_draft(
            concept, graph, concept_input.type, current_app.config["DEFAULT_TVA_RATE"]
        )
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except WorkshopError as e:
        return _workshop_error(e)
    except StoreError as e:
        logger.error("Error loading catalogue for the workshop: %s", e)
        return jsonify(error=f"Error loading catalogue: {e}"), 500
    return jsonify(concept=concept, draft=draft.to_dict())


@bp.route("/workshop/save", methods=["POST"])
def workshop_save():
    payload = request.get_json(silent=True) or {}
    concept = payload.get("concept")
    if not isinstance(concept, dict):
        return jsonify(error="'concept' is required."), 400
    store = get_store()
    try:
        concept_input = workshop.RecipeConceptInput.from_dict(
            {"type": payload.get("type"), "name": concept.get("name")}
        )
        graph = load_graph(store)
        draft = workshop.build_draft(
            concept, graph, concept_input.type, current_app.config["DEFAULT_TVA_RATE"]
        )
        if concept_input.type == DISH_TYPE and draft.recipe.tva_rate is None:
            draft.recipe.tva_rate = current_app.config["DEFAULT_TVA_RATE"]
        recipe_id = workshop.save_draft(store, draft)
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except StoreError as e:
        logger.error("Error saving workshop draft: %s", e)
        return jsonify(error=f"Error saving recipe: {e}"), 500
    return (
        jsonify(
            id=recipe_id,
            unmatchedIngredients=draft.unmatched_ingredients,
            unmatchedPreparations=draft.unmatched_preparations,
        ),
        201,
    )


@bp.route("/workshop/recommendations", methods=["POST"])
def workshop_recommendations():
    try:
        graph = load_graph(get_store())
        analysis = analyse_menu(graph, current_app.config["DEFAULT_TVA_RATE"])
        if analysis.error:
            return jsonify(error=analysis.error), 500
        text = workshop.recommend_menu_actions(analysis.to_dict(), **_llm_settings())
    except WorkshopError as e:
        return _workshop_error(e)
    except StoreError as e:
        logger.error("Error loading menu for recommendations: %s", e)
        return jsonify(error=f"Error loading menu: {e}"), 500
    return jsonify(recommendations=text)
