"""
Food costing: ingredient cost, preparation cost resolution and dish margins.

All amounts are unrounded floats in the restaurant currency; rounding is a
presentation concern. No function here returns NaN or infinity.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from backoffice.graph import topological_order
from backoffice.models import RecipeGraph
from backoffice.units import get_conversion_factor

logger = logging.getLogger(__name__)

DEFAULT_TVA_RATE = 10.0


def _finite(value):
    return value if isinstance(value, (int, float)) and math.isfinite(value) else 0.0


# --- Ingredients ---


def ingredient_cost(ingredient, quantity, unit):
    """
    Cost of `quantity` `unit` of an ingredient, net of yield loss.

    Missing purchase data costs nothing: a fiche without prices still gets a
    number.
    """
    if not ingredient.purchase_price or not ingredient.purchase_weight_grams:
        return 0.0
    if not quantity or quantity <= 0:
        return 0.0

    cost_per_base_unit = ingredient.purchase_price / ingredient.purchase_weight_grams
    yield_ratio = (ingredient.yield_percentage or 100.0) / 100.0
    if yield_ratio <= 0:
        yield_ratio = 1.0
    net_cost_per_base_unit = cost_per_base_unit / yield_ratio

    factor = get_conversion_factor(unit, ingredient.cost_base_unit, ingredient)
    return _finite(quantity * factor * net_cost_per_base_unit)


# --- Line detail shared by dishes and preparations ---


@dataclass
class IngredientLine:
    ingredient_id: str
    name: str
    category: str
    quantity: float
    unit: str
    cost: float


@dataclass
class PreparationLine:
    child_preparation_id: str
    name: str
    quantity: float
    unit: str
    cost: float
    cost_per_production_unit: float
    production_unit: str


@dataclass
class CostBreakdown:
    ingredient_lines: List[IngredientLine] = field(default_factory=list)
    preparation_lines: List[PreparationLine] = field(default_factory=list)

    @property
    def ingredients_cost(self):
        return sum(line.cost for line in self.ingredient_lines)

    @property
    def preparations_cost(self):
        return sum(line.cost for line in self.preparation_lines)

    @property
    def total_cost(self):
        return _finite(self.ingredients_cost + self.preparations_cost)


def preparation_use_cost(child, cost_per_production_unit, quantity, unit_use):
    """Cost of `quantity` `unit_use` of a preparation costing X per production unit."""
    if not quantity or quantity <= 0:
        return 0.0
    factor = get_conversion_factor(child.production_unit, unit_use, child)
    if not factor:
        return 0.0
    return _finite(quantity * cost_per_production_unit / factor)


def cost_breakdown(parent_id, graph, prep_costs):
    """
    Cost of every direct line of a dish or preparation.

    Preparations missing from `prep_costs` (unresolved, cyclic) count as 0.
    """
    breakdown = CostBreakdown()

    for link in graph.ingredient_links_of(parent_id):
        ingredient = graph.ingredients.get(link.ingredient_id)
        if ingredient is None:
            logger.warning(
                "Ingredient %s used by %s does not exist; ignored.", link.ingredient_id, parent_id
            )
            continue
        breakdown.ingredient_lines.append(
            IngredientLine(
                ingredient_id=ingredient.id,
                name=ingredient.name,
                category=ingredient.category,
                quantity=link.quantity,
                unit=link.unit_use,
                cost=ingredient_cost(ingredient, link.quantity, link.unit_use),
            )
        )

    for link in graph.preparation_links_of(parent_id):
        child = graph.preparations.get(link.child_preparation_id)
        if child is None:
            logger.warning(
                "Preparation %s used by %s does not exist; ignored.",
                link.child_preparation_id,
                parent_id,
            )
            continue
        per_unit = _finite(prep_costs.get(child.id, 0.0))
        breakdown.preparation_lines.append(
            PreparationLine(
                child_preparation_id=child.id,
                name=child.name,
                quantity=link.quantity,
                unit=link.unit_use,
                cost=preparation_use_cost(child, per_unit, link.quantity, link.unit_use),
                cost_per_production_unit=per_unit,
                production_unit=child.production_unit,
            )
        )

    return breakdown


# --- Preparation cost resolver ---


def resolve_graph_costs(graph):
    """Cost per production unit of every preparation in the snapshot."""
    known = graph.preparations

    def children(prep_id):
        return [child for child in graph.child_preparation_ids(prep_id) if child in known]

    order, _ = topological_order(list(known), children)

    costs = {}
    for prep_id in order:
        prep = known[prep_id]
        # a child closing a cycle is not in `costs` yet and counts as 0
        total = cost_breakdown(prep_id, graph, costs).total_cost
        costs[prep_id] = _finite(total / prep.batch_size)
    return costs


def resolve_preparation_costs(preparations, ingredients, ingredient_links, preparation_links):
    """Flat-list entry point: builds the graph, then resolves every preparation."""
    graph = RecipeGraph(
        ingredients=ingredients,
        preparations=preparations,
        ingredient_links=ingredient_links,
        preparation_links=preparation_links,
    )
    return resolve_graph_costs(graph)


@dataclass
class PreparationCost:
    preparation_id: str
    total_cost: float
    cost_per_production_unit: float
    production_quantity: float
    production_unit: str
    breakdown: CostBreakdown


def preparation_cost(prep, graph, prep_costs):
    breakdown = cost_breakdown(prep.id, graph, prep_costs)
    total = breakdown.total_cost
    return PreparationCost(
        preparation_id=prep.id,
        total_cost=total,
        cost_per_production_unit=_finite(total / prep.batch_size),
        production_quantity=prep.production_quantity,
        production_unit=prep.production_unit,
        breakdown=breakdown,
    )


# --- Dish aggregator ---


def food_cost_level(food_cost_pct):
    """Kitchen rating of a food cost percentage, None when unknown."""
    if not food_cost_pct or food_cost_pct <= 0:
        return None
    if food_cost_pct < 25:
        return "Exceptionnel"
    if food_cost_pct < 30:
        return "Excellent"
    if food_cost_pct < 35:
        return "Bon"
    if food_cost_pct <= 40:
        return "Moyen"
    return "Mauvais"


@dataclass
class DishCost:
    dish_id: str
    total_cost: float
    cost_per_portion: float
    price_ht: float
    gross_margin: float
    gross_margin_pct: float
    food_cost_pct: float
    multiplier: float
    food_cost_level: Optional[str]
    breakdown: CostBreakdown

    def figures(self):
        return {
            "totalCost": self.total_cost,
            "costPerPortion": self.cost_per_portion,
            "priceHT": self.price_ht,
            "grossMargin": self.gross_margin,
            "grossMarginPct": self.gross_margin_pct,
            "foodCostPct": self.food_cost_pct,
            "multiplier": self.multiplier,
        }


def price_excluding_tax(price, tva_rate):
    divisor = 1 + tva_rate / 100.0
    if divisor <= 0:
        return 0.0
    return _finite(price / divisor)


def aggregate_dish(dish, graph, prep_costs, default_tva_rate=DEFAULT_TVA_RATE):
    """
    Total cost, cost per portion and margins of a dish.

    Every ratio falls back to 0 when its denominator is not positive.
    """
    breakdown = cost_breakdown(dish.id, graph, prep_costs)
    total_cost = breakdown.total_cost
    portions = dish.portions if dish.portions and dish.portions > 0 else 1
    cost_per_portion = _finite(total_cost / portions)

    tva_rate = dish.tva_rate if dish.tva_rate is not None else default_tva_rate
    price_ht = price_excluding_tax(dish.price, tva_rate)

    gross_margin = gross_margin_pct = food_cost_pct = multiplier = 0.0
    if price_ht > 0:
        gross_margin = _finite(price_ht - cost_per_portion)
        gross_margin_pct = _finite(gross_margin / price_ht * 100)
        food_cost_pct = _finite(cost_per_portion / price_ht * 100)
    if cost_per_portion > 0:
        multiplier = _finite(price_ht / cost_per_portion)

    return DishCost(
        dish_id=dish.id,
        total_cost=total_cost,
        cost_per_portion=cost_per_portion,
        price_ht=price_ht,
        gross_margin=gross_margin,
        gross_margin_pct=gross_margin_pct,
        food_cost_pct=food_cost_pct,
        multiplier=multiplier,
        food_cost_level=food_cost_level(food_cost_pct),
        breakdown=breakdown,
    )
