"""
Cash register: table orders and their validation.

Validating an order records a sale and deducts the full ingredient
composition of every dish sold from stock, in one transaction. Manual
stock adjustments go through the same transactional path.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from backoffice.errors import (
    DocumentNotFound,
    EmptyOrderError,
    IngredientNotFound,
    OrderProcessingError,
    StoreError,
    ValidationError,
)
from backoffice.models import TABLE_BUSY, TABLE_FREE, Ingredient, OrderItem, Sale, Table, load_graph
from backoffice.planning import walk_composition
from backoffice.units import get_conversion_factor

logger = logging.getLogger(__name__)

DEFAULT_TABLE_COUNT = 12


# --- Table state ---


def new_tables(count=DEFAULT_TABLE_COUNT):
    return [Table(id=str(n), name=f"Table {n}") for n in range(1, count + 1)]


def _refresh(table):
    table.total = sum(item.price * item.quantity for item in table.current_order)
    table.status = TABLE_BUSY if table.current_order else TABLE_FREE
    return table


def add_item(table, dish):
    for item in table.current_order:
        if item.dish_id == dish.id:
            item.quantity += 1
            break
    else:
        table.current_order.append(
            OrderItem(dish_id=dish.id, name=dish.name, quantity=1, price=dish.price)
        )
    return _refresh(table)


def remove_item(table, dish_id):
    for item in table.current_order:
        if item.dish_id == dish_id:
            item.quantity -= 1
            if item.quantity <= 0:
                table.current_order.remove(item)
            break
    return _refresh(table)


def clear_table(table):
    table.current_order = []
    return _refresh(table)


# --- Order validation ---


def aggregate_deductions(graph, order_items):
    """
    Ingredient id -> quantity to deduct, in the ingredient's cost base unit
    (the unit purchaseWeightGrams is expressed in).

    Links to ingredients missing from the snapshot are kept as-is so the
    transaction can refuse them.
    """
    deductions = {}

    def on_ingredient(link, ingredient, quantity):
        if ingredient is not None:
            quantity *= get_conversion_factor(link.unit_use, ingredient.cost_base_unit, ingredient)
        deductions[link.ingredient_id] = deductions.get(link.ingredient_id, 0.0) + quantity

    seeds = [(item.dish_id, item.quantity) for item in order_items if item.quantity > 0]
    walk_composition(graph, seeds, on_ingredient)
    return deductions


@dataclass
class OrderResult:
    success: bool
    message: str
    sale_id: Optional[str] = None


def process_order(store, table, graph=None):
    """
    Records the sale of `table.current_order` and deducts its ingredients.

    Raises EmptyOrderError when there is nothing to sell and
    OrderProcessingError when the transaction is refused (missing
    ingredient, database failure); nothing is written in that case.
    Stock is allowed to go negative: the sale is already confirmed.
    """
    if not table.current_order:
        raise EmptyOrderError("The order is empty.")

    if graph is None:
        graph = load_graph(store)
    deductions = aggregate_deductions(graph, table.current_order)
    sale = Sale(table_id=table.id, items=list(table.current_order), total=table.total)

    def apply(txn):
        for ingredient_id, quantity in sorted(deductions.items()):
            doc = txn.get("ingredients", ingredient_id)
            if doc is None:
                raise IngredientNotFound(ingredient_id)
            ingredient = Ingredient.from_document(doc)
            grams_per_unit = ingredient.purchase_weight_grams or 1.0
            remaining = ingredient.stock_quantity * grams_per_unit - quantity
            if remaining < 0:
                logger.warning(
                    "Stock of %s (%s) goes negative: %.2f %s",
                    ingredient.name,
                    ingredient_id,
                    remaining,
                    ingredient.cost_base_unit,
                )
            txn.update("ingredients", ingredient_id, {"stockQuantity": remaining / grams_per_unit})
        return txn.add("sales", sale.to_document())

    try:
        sale_id = store.run_transaction(apply)
    except (DocumentNotFound, StoreError) as e:
        logger.error("Order of %s failed: %s", table.name or table.id, e)
        raise OrderProcessingError(f"Transaction failed: {e}") from e

    logger.info("Sale %s recorded for %s (%s ingredients deducted)", sale_id, table.name, len(deductions))
    return OrderResult(success=True, message=f"Order for {table.name} recorded.", sale_id=sale_id)


# --- Manual stock adjustment ---


def adjust_stock(store, ingredient_id, delta, reason="Manual adjustment"):
    """
    Adds `delta` purchase units to an ingredient's stock and logs the
    adjustment. Returns the new stock quantity.
    """
    if not math.isfinite(delta):
        raise ValidationError("Adjustment quantity must be a finite number.")
    if not delta:
        raise ValidationError("Adjustment quantity cannot be zero.")

    def apply(txn):
        doc = txn.get("ingredients", ingredient_id)
        if doc is None:
            raise IngredientNotFound(ingredient_id)
        new_quantity = Ingredient.from_document(doc).stock_quantity + delta
        txn.update("ingredients", ingredient_id, {"stockQuantity": new_quantity})
        txn.add(
            "inventoryAdjustments",
            {
                "ingredientId": ingredient_id,
                "quantity": delta,
                "reason": reason,
                "newQuantity": new_quantity,
                "createdAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        return new_quantity

    new_quantity = store.run_transaction(apply)
    if new_quantity < 0:
        logger.warning("Stock of %s is negative after adjustment: %.2f", ingredient_id, new_quantity)
    return new_quantity
