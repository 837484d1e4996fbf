import logging
import math

from flask import Blueprint, current_app, jsonify, request, session

from backoffice.analysis import analyse_menu
from backoffice.costing import aggregate_dish, preparation_cost, resolve_graph_costs
from backoffice.db import get_store
from backoffice.errors import StoreError
from backoffice.models import load_graph
from backoffice.planning import plan_production

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)


def _money(value):
    return round(value, 2)


def _breakdown_lines(breakdown):
    return {
        "ingredients": [
            {
                "ingredientId": line.ingredient_id,
                "name": line.name,
                "category": line.category,
                "quantity": line.quantity,
                "unit": line.unit,
                "cost": _money(line.cost),
            }
            for line in breakdown.ingredient_lines
        ],
        "preparations": [
            {
                "preparationId": line.child_preparation_id,
                "name": line.name,
                "quantity": line.quantity,
                "unit": line.unit,
                "cost": _money(line.cost),
                "costPerProductionUnit": _money(line.cost_per_production_unit),
                "productionUnit": line.production_unit,
            }
            for line in breakdown.preparation_lines
        ],
    }


@bp.route("/")
def home():
    dashboard_data = {
        "active_dishes_count": 0,
        "preparations_count": 0,
        "ingredients_count": 0,
        "low_stock_count": 0,
        "low_stock": [],
        "sales_count": 0,
        "revenue": 0.0,
    }
    try:
        store = get_store()
        graph = load_graph(store)
        sales = store.fetch_collection("sales")
    except StoreError as e:
        logger.error("Error fetching dashboard data: %s", e)
        return jsonify(error=f"Error fetching dashboard data: {e}"), 500

    low_stock = sorted(
        (ing for ing in graph.ingredients.values() if ing.is_low_stock),
        key=lambda ing: ing.name.casefold(),
    )
    dashboard_data.update(
        active_dishes_count=sum(1 for dish in graph.dishes.values() if dish.is_active),
        preparations_count=len(graph.preparations),
        ingredients_count=len(graph.ingredients),
        low_stock_count=len(low_stock),
        low_stock=[
            {
                "id": ing.id,
                "name": ing.name,
                "stockQuantity": ing.stock_quantity,
                "lowStockThreshold": ing.low_stock_threshold,
                "unit": ing.purchase_unit,
            }
            for ing in low_stock
        ],
        sales_count=len(sales),
        revenue=_money(sum(float(sale.get("total") or 0) for sale in sales)),
    )
    return jsonify(dashboard_data)


@bp.route("/dishes/<dish_id>/cost")
def dish_cost(dish_id):
    try:
        graph = load_graph(get_store())
    except StoreError as e:
        logger.error("Error loading recipes for dish %s: %s", dish_id, e)
        return jsonify(error=f"Error loading recipes: {e}"), 500

    dish = graph.dishes.get(dish_id)
    if dish is None:
        return jsonify(error=f"Dish '{dish_id}' not found."), 404

    cost = aggregate_dish(
        dish, graph, resolve_graph_costs(graph), current_app.config["DEFAULT_TVA_RATE"]
    )
    figures = {key: _money(value) for key, value in cost.figures().items()}
    return jsonify(
        id=dish.id,
        name=dish.name,
        price=dish.price,
        portions=dish.portions,
        foodCostLevel=cost.food_cost_level,
        **figures,
        **_breakdown_lines(cost.breakdown),
    )


@bp.route("/preparations/<prep_id>/cost")
def preparation_detail_cost(prep_id):
    try:
        graph = load_graph(get_store())
    except StoreError as e:
        logger.error("Error loading recipes for preparation %s: %s", prep_id, e)
        return jsonify(error=f"Error loading recipes: {e}"), 500

    prep = graph.preparations.get(prep_id)
    if prep is None:
        return jsonify(error=f"Preparation '{prep_id}' not found."), 404

    cost = preparation_cost(prep, graph, resolve_graph_costs(graph))
    return jsonify(
        id=prep.id,
        name=prep.name,
        totalCost=_money(cost.total_cost),
        costPerProductionUnit=_money(cost.cost_per_production_unit),
        productionQuantity=cost.production_quantity,
        productionUnit=cost.production_unit,
        **_breakdown_lines(cost.breakdown),
    )


@bp.route("/preparation-costs")
def preparation_costs():
    try:
        graph = load_graph(get_store())
    except StoreError as e:
        logger.error("Error loading recipes: %s", e)
        return jsonify(error=f"Error loading recipes: {e}"), 500

    costs = resolve_graph_costs(graph)
    report = [
        {
            "id": prep.id,
            "name": prep.name,
            "costPerProductionUnit": _money(costs.get(prep.id, 0.0)),
            "productionUnit": prep.production_unit,
        }
        for prep in sorted(graph.preparations.values(), key=lambda p: p.name.casefold())
    ]
    return jsonify(report)


@bp.route("/menu-analysis")
def menu_analysis():
    try:
        graph = load_graph(get_store())
    except StoreError as e:
        logger.error("Error loading menu: %s", e)
        return jsonify(error=f"Error loading menu: {e}"), 500

    analysis = analyse_menu(graph, current_app.config["DEFAULT_TVA_RATE"])
    status = 500 if analysis.error else 200
    return jsonify(analysis.to_dict()), status


@bp.route("/set-forecast", methods=["POST"])
def set_forecast():
    """
    Stores the sales forecast ({dish_id: quantity}) in the user's session.
    """
    payload = request.get_json(silent=True) or {}
    forecast = payload.get("forecast")
    if not isinstance(forecast, dict):
        return jsonify(error="'forecast' must map dish ids to quantities."), 400

    cleaned = {}
    for dish_id, quantity in forecast.items():
        try:
            value = float(quantity)
        except (TypeError, ValueError):
            return jsonify(error=f"Invalid quantity for dish {dish_id}."), 400
        if not math.isfinite(value) or value < 0:
            return jsonify(error=f"Invalid quantity for dish {dish_id}."), 400
        if value > 0:
            cleaned[dish_id] = value

    session["forecast"] = cleaned
    return jsonify(forecast=cleaned)


@bp.route("/production-plan", methods=["GET", "POST"])
def production_plan():
    if request.method == "POST":
        payload = request.get_json(silent=True) or {}
        forecast = payload.get("forecast")
        if not isinstance(forecast, dict):
            return jsonify(error="'forecast' must map dish ids to quantities."), 400
    else:
        forecast = session.get("forecast", {})

    try:
        graph = load_graph(get_store())
    except StoreError as e:
        logger.error("Error loading recipes for the production plan: %s", e)
        return jsonify(error=f"Error loading recipes: {e}"), 500

    plan = plan_production(forecast, graph)
    if plan.error:
        return jsonify(plan.to_dict()), 400

    result = plan.to_dict()
    result["totalIngredientsCost"] = _money(plan.total_ingredients_cost)
    for item in result["requiredIngredients"]:
        item["cost"] = _money(item["cost"])
        item["quantity"] = round(item["quantity"], 3)
        item["in_stock"] = round(item["in_stock"], 3)
        item["to_order"] = round(item["to_order"], 3)
    for item in result["requiredPreparations"]:
        item["quantity"] = round(item["quantity"], 3)
    return jsonify(result)
