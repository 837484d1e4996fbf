"""
Production forecast: how much of every preparation and raw ingredient a
set of dish sales requires.
"""

import logging
import math
from dataclasses import asdict, dataclass, field
from typing import List, Optional

from backoffice.costing import ingredient_cost
from backoffice.graph import expand
from backoffice.units import base_unit_for, get_conversion_factor, humanize_quantity

logger = logging.getLogger(__name__)


def walk_composition(graph, seeds, on_ingredient, on_preparation=None):
    """
    Expands `(dish_or_preparation_id, multiplier)` seeds down to raw
    ingredients.

    `on_ingredient(link, ingredient, quantity)` receives every ingredient link
    scaled by the current multiplier, in the link's own unit; `ingredient` is
    None when the link points to a missing document.
    `on_preparation(link, child, quantity)` receives every sub-preparation use.
    A child is expanded with the number of batches the use represents.
    """

    def process(node_id, multiplier):
        for link in graph.ingredient_links_of(node_id):
            on_ingredient(
                link, graph.ingredients.get(link.ingredient_id), link.quantity * multiplier
            )

    def children(node_id, multiplier):
        batches = []
        for link in graph.preparation_links_of(node_id):
            child = graph.preparations.get(link.child_preparation_id)
            if child is None:
                logger.warning(
                    "Preparation %s used by %s does not exist; skipped.",
                    link.child_preparation_id,
                    node_id,
                )
                continue
            used = link.quantity * multiplier
            if on_preparation is not None:
                on_preparation(link, child, used)
            in_production_unit = used * get_conversion_factor(
                link.unit_use, child.production_unit, child
            )
            batches.append((child.id, in_production_unit / child.batch_size))
        return batches

    expand(seeds, children, process)


@dataclass
class RequiredItem:
    id: str
    name: str
    quantity: float
    unit: str
    cost: Optional[float] = None
    in_stock: Optional[float] = None
    to_order: Optional[float] = None


@dataclass
class ProductionPlan:
    required_preparations: List[RequiredItem] = field(default_factory=list)
    required_ingredients: List[RequiredItem] = field(default_factory=list)
    total_ingredients_cost: float = 0.0
    error: Optional[str] = None

    def to_dict(self):
        return {
            "requiredPreparations": [asdict(item) for item in self.required_preparations],
            "requiredIngredients": [asdict(item) for item in self.required_ingredients],
            "totalIngredientsCost": self.total_ingredients_cost,
            "error": self.error,
        }


def _seeds_from_forecast(forecast, graph):
    seeds = []
    for dish_id, sold in forecast.items():
        quantity = float(sold)
        if math.isnan(quantity) or math.isinf(quantity) or quantity < 0:
            raise ValueError(f"invalid quantity {sold!r} for dish {dish_id}")
        if quantity == 0:
            continue
        if graph.item(dish_id) is None:
            logger.warning("Forecast references unknown dish %s; skipped.", dish_id)
            continue
        seeds.append((dish_id, quantity))
    return seeds


def _accumulate(totals, key, name, quantity, unit):
    if key in totals:
        totals[key]["quantity"] += quantity
    else:
        totals[key] = {"name": name, "quantity": quantity, "unit": unit}


def _compute_plan(forecast, graph):
    ingredient_totals = {}
    preparation_totals = {}

    def on_ingredient(link, ingredient, quantity):
        if ingredient is None:
            logger.warning(
                "Ingredient %s used by %s does not exist; skipped.",
                link.ingredient_id,
                link.recipe_id,
            )
            return
        unit = ingredient.plan_unit
        in_unit = quantity * get_conversion_factor(link.unit_use, unit, ingredient)
        _accumulate(ingredient_totals, ingredient.id, ingredient.name, in_unit, unit)

    def on_preparation(link, child, quantity):
        unit = child.requirement_unit or base_unit_for(link.unit_use)
        in_unit = quantity * get_conversion_factor(link.unit_use, unit, child)
        _accumulate(preparation_totals, child.id, child.name, in_unit, unit)

    walk_composition(graph, _seeds_from_forecast(forecast, graph), on_ingredient, on_preparation)

    required_ingredients = []
    total_cost = 0.0
    for ingredient_id, total in ingredient_totals.items():
        ingredient = graph.ingredients[ingredient_id]
        cost = ingredient_cost(ingredient, total["quantity"], total["unit"])
        total_cost += cost
        in_stock = ingredient.stock_quantity * get_conversion_factor(
            ingredient.purchase_unit, total["unit"], ingredient
        )
        quantity, unit = humanize_quantity(total["quantity"], total["unit"])
        scale = quantity / total["quantity"] if total["quantity"] else 1.0
        required_ingredients.append(
            RequiredItem(
                id=ingredient_id,
                name=total["name"],
                quantity=quantity,
                unit=unit,
                cost=cost,
                in_stock=in_stock * scale,
                to_order=max(0.0, total["quantity"] - in_stock) * scale,
            )
        )

    required_preparations = []
    for prep_id, total in preparation_totals.items():
        quantity, unit = humanize_quantity(total["quantity"], total["unit"])
        required_preparations.append(
            RequiredItem(id=prep_id, name=total["name"], quantity=quantity, unit=unit)
        )

    return ProductionPlan(
        required_preparations=sorted(required_preparations, key=lambda x: x.name.casefold()),
        required_ingredients=sorted(required_ingredients, key=lambda x: x.name.casefold()),
        total_ingredients_cost=total_cost,
    )


def plan_production(forecast, graph):
    """
    Aggregated requirements for `forecast` ({dish_id: quantity_sold}).

    Never raises: any failure comes back as a plan whose `error` is set.
    """
    try:
        return _compute_plan(forecast, graph)
    except Exception as e:
        logger.exception("Production plan failed")
        return ProductionPlan(error=f"Calculation error: {e}")
