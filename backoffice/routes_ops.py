import logging

from flask import Blueprint, current_app, jsonify, request, session

from backoffice import register
from backoffice.db import get_store
from backoffice.errors import (
    DocumentNotFound,
    EmptyOrderError,
    OrderProcessingError,
    StoreError,
    ValidationError,
)
from backoffice.models import Dish, Table

logger = logging.getLogger(__name__)

bp = Blueprint("ops", __name__)


# --- Cash register ---


def _load_tables():
    count = current_app.config["REGISTER_TABLE_COUNT"]
    stored = session.get("tables")
    if not stored or len(stored) != count:
        return register.new_tables(count)
    return [Table.from_dict(data) for data in stored]


def _save_tables(tables):
    session["tables"] = [table.to_dict() for table in tables]


def _find_table(tables, table_id):
    for table in tables:
        if table.id == table_id:
            return table
    return None


@bp.route("/tables")
def tables_page():
    tables = _load_tables()
    _save_tables(tables)
    return jsonify([table.to_dict() for table in tables])


@bp.route("/tables/<table_id>/items", methods=["POST"])
def add_table_item(table_id):
    tables = _load_tables()
    table = _find_table(tables, table_id)
    if table is None:
        return jsonify(error=f"Table '{table_id}' not found."), 404

    dish_id = (request.get_json(silent=True) or {}).get("dishId")
    try:
        doc = get_store().get("recipes", dish_id) if dish_id else None
    except StoreError as e:
        logger.error("Error fetching dish %s: %s", dish_id, e)
        return jsonify(error=f"Error fetching dish: {e}"), 500
    if doc is None:
        return jsonify(error=f"Dish '{dish_id}' not found."), 404
    dish = Dish.from_document(doc)
    if not dish.is_active:
        return jsonify(error=f"'{dish.name}' is not on the active menu."), 400

    register.add_item(table, dish)
    _save_tables(tables)
    return jsonify(table.to_dict())


@bp.route("/tables/<table_id>/items/<dish_id>", methods=["DELETE"])
def remove_table_item(table_id, dish_id):
    tables = _load_tables()
    table = _find_table(tables, table_id)
    if table is None:
        return jsonify(error=f"Table '{table_id}' not found."), 404
    register.remove_item(table, dish_id)
    _save_tables(tables)
    return jsonify(table.to_dict())


@bp.route("/tables/<table_id>/validate", methods=["POST"])
def validate_order(table_id):
    tables = _load_tables()
    table = _find_table(tables, table_id)
    if table is None:
        return jsonify(success=False, message=f"Table '{table_id}' not found."), 404

    try:
        result = register.process_order(get_store(), table)
    except EmptyOrderError as e:
        return jsonify(success=False, message=str(e)), 400
    except OrderProcessingError as e:
        return jsonify(success=False, message=str(e)), 409
    except StoreError as e:
        logger.error("Error loading recipes for %s: %s", table.name, e)
        return jsonify(success=False, message=f"Error loading recipes: {e}"), 500

    register.clear_table(table)
    _save_tables(tables)
    return jsonify(success=result.success, message=result.message, saleId=result.sale_id)


# --- Stock ---


@bp.route("/inventory/<ingredient_id>/adjust", methods=["POST"])
def process_adjustment(ingredient_id):
    payload = request.get_json(silent=True) or {}
    reason = payload.get("reason") or "Manual adjustment"
    try:
        quantity = float(payload.get("quantity"))
    except (TypeError, ValueError):
        return jsonify(error="Invalid quantity. Please enter a number."), 400

    try:
        new_quantity = register.adjust_stock(get_store(), ingredient_id, quantity, reason)
    except ValidationError as e:
        return jsonify(error=str(e)), 400
    except DocumentNotFound as e:
        return jsonify(error=str(e)), 404
    except StoreError as e:
        logger.error("Error processing adjustment of %s: %s", ingredient_id, e)
        return jsonify(error=f"Error processing adjustment: {e}"), 500
    return jsonify(id=ingredient_id, stockQuantity=round(new_quantity, 3))


@bp.route("/inventory-log")
def inventory_log():
    ingredient_id = request.args.get("ingredientId")
    store = get_store()
    try:
        if ingredient_id:
            entries = store.query("inventoryAdjustments", "ingredientId", ingredient_id)
        else:
            entries = store.fetch_collection("inventoryAdjustments")
    except StoreError as e:
        logger.error("Error fetching inventory log: %s", e)
        return jsonify(error=f"Error fetching inventory log: {e}"), 500
    return jsonify(sorted(entries, key=lambda e: e.get("createdAt") or "", reverse=True))


@bp.route("/sales")
def sales_log():
    try:
        sales = get_store().fetch_collection("sales")
    except StoreError as e:
        logger.error("Error fetching sales: %s", e)
        return jsonify(error=f"Error fetching sales: {e}"), 500
    return jsonify(sorted(sales, key=lambda s: s.get("createdAt") or "", reverse=True))
