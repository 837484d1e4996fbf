import logging
import math

import pytest

from backoffice.costing import (
    aggregate_dish,
    food_cost_level,
    ingredient_cost,
    preparation_cost,
    price_excluding_tax,
    resolve_graph_costs,
    resolve_preparation_costs,
)
from backoffice.models import (
    Dish,
    Ingredient,
    Preparation,
    RecipeGraph,
    RecipeIngredientLink,
    RecipePreparationLink,
)


def flour(**overrides):
    fields = dict(
        id="flour",
        name="Flour",
        purchase_price=200.0,
        purchase_unit="kg",
        purchase_weight_grams=1000.0,
        yield_percentage=100.0,
    )
    fields.update(overrides)
    return Ingredient(**fields)


# --- Ingredients ---


def test_flour_cost():
    assert ingredient_cost(flour(), 500, "g") == pytest.approx(100.0)
    assert ingredient_cost(flour(), 0.5, "kg") == pytest.approx(100.0)


def test_cost_grows_with_quantity():
    costs = [ingredient_cost(flour(), q, "g") for q in (1, 10, 100, 1000)]
    assert costs == sorted(costs)
    assert len(set(costs)) == 4


@pytest.mark.parametrize(
    "overrides", [{"purchase_price": 0.0}, {"purchase_weight_grams": 0.0}]
)
def test_missing_purchase_data_costs_nothing(overrides):
    assert ingredient_cost(flour(**overrides), 500, "g") == 0


def test_lower_yield_costs_more():
    full = ingredient_cost(flour(), 500, "g")
    trimmed = ingredient_cost(flour(yield_percentage=80.0), 500, "g")
    assert trimmed == pytest.approx(125.0)
    assert trimmed > full


def test_zero_yield_counts_as_full_yield():
    assert ingredient_cost(flour(yield_percentage=0.0), 500, "g") == pytest.approx(100.0)


def test_non_positive_quantity_costs_nothing():
    assert ingredient_cost(flour(), 0, "g") == 0
    assert ingredient_cost(flour(), -5, "g") == 0


def test_volume_ingredient_costs_per_millilitre():
    milk = Ingredient(
        id="milk", name="Lait", purchase_price=120.0, purchase_unit="l",
        purchase_weight_grams=1000.0,
    )
    assert ingredient_cost(milk, 25, "cl") == pytest.approx(30.0)


def test_count_ingredient_uses_pack_weight():
    egg = Ingredient(
        id="egg", name="Oeuf", purchase_price=30.0, purchase_unit="pièce",
        purchase_weight_grams=60.0,
    )
    assert ingredient_cost(egg, 2, "pièce") == pytest.approx(60.0)
    assert ingredient_cost(egg, 30, "g") == pytest.approx(15.0)


# --- Preparations ---


def sauce_graph(dish_quantity=200.0, dish_unit="g"):
    tomato = Ingredient(
        id="tomato", name="Tomato", purchase_price=300.0, purchase_unit="kg",
        purchase_weight_grams=1000.0,
    )
    sauce = Preparation(
        id="sauce", name="Tomato Sauce", production_quantity=2.0, production_unit="kg"
    )
    dish = Dish(id="dish", name="Pasta", price=110.0, tva_rate=10.0, portions=1)
    return RecipeGraph(
        ingredients=[tomato],
        preparations=[sauce],
        dishes=[dish],
        ingredient_links=[RecipeIngredientLink("sauce", "tomato", 1.0, "kg")],
        preparation_links=[RecipePreparationLink("dish", "sauce", dish_quantity, dish_unit)],
    )


def test_tomato_sauce_cost_per_production_unit():
    costs = resolve_graph_costs(sauce_graph())
    assert costs["sauce"] == pytest.approx(150.0)


def test_dish_using_sauce():
    graph = sauce_graph()
    cost = aggregate_dish(graph.dishes["dish"], graph, resolve_graph_costs(graph))

    assert cost.total_cost == pytest.approx(30.0)
    assert cost.breakdown.preparation_lines[0].cost == pytest.approx(30.0)
    assert cost.price_ht == pytest.approx(100.0)
    assert cost.gross_margin == pytest.approx(70.0)
    assert cost.gross_margin_pct == pytest.approx(70.0)
    assert cost.food_cost_pct == pytest.approx(30.0)
    assert cost.multiplier == pytest.approx(100.0 / 30.0)


def test_fractional_batch_size_is_kept():
    graph = sauce_graph()
    graph.preparations["sauce"].production_quantity = 0.5
    assert resolve_graph_costs(graph)["sauce"] == pytest.approx(600.0)


def test_missing_batch_size_divides_by_one():
    graph = sauce_graph()
    graph.preparations["sauce"].production_quantity = 0.0
    assert resolve_graph_costs(graph)["sauce"] == pytest.approx(300.0)


def test_nested_preparations_resolve_children_first():
    butter = Ingredient(
        id="butter", name="Beurre", purchase_price=1000.0, purchase_unit="kg",
        purchase_weight_grams=1000.0,
    )
    roux = Preparation(id="roux", name="Roux", production_quantity=500.0, production_unit="g")
    bechamel = Preparation(
        id="bechamel", name="Béchamel", production_quantity=1.0, production_unit="l"
    )
    costs = resolve_preparation_costs(
        preparations=[bechamel, roux],
        ingredients=[butter],
        ingredient_links=[RecipeIngredientLink("roux", "butter", 250.0, "g")],
        preparation_links=[RecipePreparationLink("bechamel", "roux", 100.0, "g")],
    )
    assert costs["roux"] == pytest.approx(0.5)
    assert costs["bechamel"] == pytest.approx(50.0)


def test_resolution_is_deterministic(graph):
    assert resolve_graph_costs(graph) == resolve_graph_costs(graph)


def test_cycle_terminates_with_finite_costs(caplog):
    a = Preparation(id="a", name="A", production_quantity=1.0, production_unit="kg")
    b = Preparation(id="b", name="B", production_quantity=1.0, production_unit="kg")
    salt = Ingredient(
        id="salt", name="Sel", purchase_price=100.0, purchase_unit="kg",
        purchase_weight_grams=1000.0,
    )
    with caplog.at_level(logging.ERROR):
        costs = resolve_preparation_costs(
            preparations=[a, b],
            ingredients=[salt],
            ingredient_links=[RecipeIngredientLink("a", "salt", 1.0, "kg")],
            preparation_links=[
                RecipePreparationLink("a", "b", 1.0, "kg"),
                RecipePreparationLink("b", "a", 1.0, "kg"),
            ],
        )
    assert set(costs) == {"a", "b"}
    assert all(math.isfinite(value) for value in costs.values())
    assert "Circular dependency" in caplog.text


def test_missing_child_is_ignored(caplog):
    graph = sauce_graph()
    graph.preparations.pop("sauce")
    with caplog.at_level(logging.WARNING):
        cost = aggregate_dish(graph.dishes["dish"], graph, {})
    assert cost.total_cost == 0
    assert "does not exist" in caplog.text


def test_preparation_cost_detail(graph):
    detail = preparation_cost(graph.preparations["pate"], graph, resolve_graph_costs(graph))
    assert detail.total_cost == pytest.approx(350.0)
    assert detail.cost_per_production_unit == pytest.approx(350.0)
    assert [line.name for line in detail.breakdown.ingredient_lines] == ["Farine", "Beurre"]


# --- Dishes ---


def test_seeded_dishes(graph):
    costs = resolve_graph_costs(graph)
    pizza = aggregate_dish(graph.dishes["pizza"], graph, costs)
    tarte = aggregate_dish(graph.dishes["tarte"], graph, costs)

    assert pizza.total_cost == pytest.approx(80.0)
    assert pizza.price_ht == pytest.approx(1000.0)
    assert pizza.food_cost_pct == pytest.approx(8.0)
    assert tarte.total_cost == pytest.approx(120.0)
    assert tarte.cost_per_portion == pytest.approx(60.0)


def test_default_tva_rate_applies_when_missing():
    graph = sauce_graph()
    dish = graph.dishes["dish"]
    dish.tva_rate = None
    cost = aggregate_dish(dish, graph, resolve_graph_costs(graph), default_tva_rate=20.0)
    assert cost.price_ht == pytest.approx(110.0 / 1.2)


@pytest.mark.parametrize(
    "price,portions,tva_rate,quantity",
    [
        (0.0, 1, 10.0, 200.0),
        (110.0, 0, 10.0, 200.0),
        (110.0, -3, 10.0, 200.0),
        (110.0, 1, -100.0, 200.0),
        (110.0, 1, -150.0, 200.0),
        (-50.0, 1, 10.0, 200.0),
        (110.0, 1, 10.0, 0.0),
        (110.0, 1, 10.0, -200.0),
        (float("nan"), 1, 10.0, 200.0),
        (float("inf"), 1, 10.0, float("nan")),
    ],
)
def test_dish_figures_are_always_finite(price, portions, tva_rate, quantity):
    graph = sauce_graph(dish_quantity=quantity)
    dish = graph.dishes["dish"]
    dish.price = price
    dish.portions = portions
    dish.tva_rate = tva_rate

    cost = aggregate_dish(dish, graph, resolve_graph_costs(graph))

    for name, value in cost.figures().items():
        assert math.isfinite(value), name


def test_price_excluding_tax():
    assert price_excluding_tax(110.0, 10.0) == pytest.approx(100.0)
    assert price_excluding_tax(110.0, -100.0) == 0


@pytest.mark.parametrize(
    "pct,level",
    [
        (0, None),
        (20, "Exceptionnel"),
        (25, "Excellent"),
        (30, "Bon"),
        (35, "Moyen"),
        (40, "Moyen"),
        (41, "Mauvais"),
    ],
)
def test_food_cost_level(pct, level):
    assert food_cost_level(pct) == level
