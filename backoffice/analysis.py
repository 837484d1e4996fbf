"""
Menu analysis: summary of the active menu, per-dish production and
profitability figures, and preparations shared between dishes.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from backoffice.costing import DEFAULT_TVA_RATE, aggregate_dish, resolve_graph_costs

logger = logging.getLogger(__name__)

DAILY = "Quotidienne"
FREQUENT = "Fréquente"


def duration_breakdown(dish):
    """Stored breakdown, or an estimate from the total duration."""
    if dish.duration_breakdown:
        return {
            "mise_en_place": dish.duration_breakdown.get("mise_en_place", 0.0),
            "cuisson": dish.duration_breakdown.get("cuisson", 0.0),
            "envoi": dish.duration_breakdown.get("envoi", 0.0),
        }
    d = dish.duration or 0.0
    if d <= 15:
        return {"mise_en_place": 5.0, "cuisson": d - 5 if d > 5 else 0.0, "envoi": 2.0}
    if d <= 45:
        return {"mise_en_place": d * 0.2, "cuisson": d * 0.7, "envoi": d * 0.1}
    return {"mise_en_place": d * 0.6, "cuisson": d * 0.3, "envoi": d * 0.1}


@dataclass
class DishProduction:
    id: str
    name: str
    category: str
    duration: float
    duration_breakdown: Dict[str, float]
    key_ingredients: List[str]
    sub_recipes: List[str]
    food_cost: float
    gross_margin: float
    price: float


@dataclass
class Mutualisation:
    id: str
    name: str
    used_in: List[str]
    count: int
    frequency: str
    suggested_production: str


@dataclass
class MenuAnalysis:
    summary: Dict = field(default_factory=dict)
    production: List[DishProduction] = field(default_factory=list)
    mutualisations: List[Mutualisation] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self):
        return asdict(self)


def _analyse(graph, default_tva_rate):
    dishes = [dish for dish in graph.dishes.values() if dish.is_active]
    prep_costs = resolve_graph_costs(graph)

    category_count = {}
    for dish in dishes:
        if dish.category:
            category_count[dish.category] = category_count.get(dish.category, 0) + 1
    total_duration = sum(dish.duration for dish in dishes)
    summary = {
        "totalDishes": len(dishes),
        "averageDuration": total_duration / len(dishes) if dishes else 0.0,
        "categoryCount": category_count,
    }

    used_in = {}
    production = []
    for dish in sorted(dishes, key=lambda d: d.name.casefold()):
        cost = aggregate_dish(dish, graph, prep_costs, default_tva_rate)
        lines = sorted(cost.breakdown.ingredient_lines, key=lambda line: line.cost, reverse=True)
        for line in cost.breakdown.preparation_lines:
            used_in.setdefault(line.child_preparation_id, [])
            if dish.name not in used_in[line.child_preparation_id]:
                used_in[line.child_preparation_id].append(dish.name)
        production.append(
            DishProduction(
                id=dish.id,
                name=dish.name,
                category=dish.category,
                duration=dish.duration,
                duration_breakdown=duration_breakdown(dish),
                key_ingredients=[line.name for line in lines[:3]],
                sub_recipes=[line.name for line in cost.breakdown.preparation_lines],
                food_cost=cost.cost_per_portion,
                gross_margin=cost.gross_margin,
                price=dish.price,
            )
        )

    mutualisations = []
    for prep_id, dish_names in used_in.items():
        if len(dish_names) < 2:
            continue
        frequency = DAILY if len(dish_names) >= 4 else FREQUENT
        mutualisations.append(
            Mutualisation(
                id=prep_id,
                name=graph.preparations[prep_id].name,
                used_in=dish_names,
                count=len(dish_names),
                frequency=frequency,
                suggested_production=(
                    "Lot quotidien" if frequency == DAILY else "Lot tous les 2-3 jours"
                ),
            )
        )
    mutualisations.sort(key=lambda m: (-m.count, m.name.casefold()))

    return MenuAnalysis(summary=summary, production=production, mutualisations=mutualisations)


def analyse_menu(graph, default_tva_rate=DEFAULT_TVA_RATE):
    try:
        return _analyse(graph, default_tva_rate)
    except Exception as e:
        logger.exception("Menu analysis failed")
        return MenuAnalysis(
            summary={"totalDishes": 0, "averageDuration": 0.0, "categoryCount": {}},
            error=f"Analysis error: {e}",
        )
