import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from backoffice import units

DISH_TYPE = "Plat"
PREPARATION_TYPE = "Préparation"

ACTIVE = "Actif"
INACTIVE = "Inactif"

TABLE_FREE = "Libre"
TABLE_BUSY = "Occupée"


def as_float(value, default=0.0):
    """Loose document value -> finite float."""
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def as_optional_float(value):
    if value is None or value == "":
        return None
    result = as_float(value, default=None)
    return result


def as_int(value, default=0):
    return int(as_float(value, default))


def _clean_equivalences(raw):
    if not isinstance(raw, dict):
        return {}
    cleaned = {}
    for key, value in raw.items():
        if "->" not in str(key):
            continue
        source, target = str(key).split("->", 1)
        cleaned[f"{units.normalize_unit(source)}->{units.normalize_unit(target)}"] = value
    return cleaned


# --- Ingredients ---


@dataclass
class Ingredient:
    id: str
    name: str
    category: str = ""
    purchase_price: float = 0.0
    purchase_unit: str = "kg"
    purchase_weight_grams: float = 0.0
    yield_percentage: float = 100.0
    stock_quantity: float = 0.0
    low_stock_threshold: float = 0.0
    base_unit: Optional[str] = None
    equivalences: Dict[str, float] = field(default_factory=dict)
    supplier: Optional[str] = None

    @classmethod
    def from_document(cls, doc):
        # Documents written before the purchase/yield model used unitPrice/unitPurchase.
        purchase_unit = doc.get("purchaseUnit") or doc.get("unitPurchase") or "kg"
        price = doc.get("purchasePrice", doc.get("unitPrice"))
        weight = as_float(doc.get("purchaseWeightGrams"))
        if not weight and "purchaseWeightGrams" not in doc and units.is_metric(purchase_unit):
            weight = units.UNIT_FACTORS[units.normalize_unit(purchase_unit)][1]
        base_unit = units.normalize_unit(doc.get("baseUnit")) or None
        return cls(
            id=doc.get("id", ""),
            name=doc.get("name") or "",
            category=doc.get("category") or "",
            purchase_price=as_float(price),
            purchase_unit=purchase_unit,
            purchase_weight_grams=weight,
            yield_percentage=as_float(doc.get("yieldPercentage"), 100.0),
            stock_quantity=as_float(doc.get("stockQuantity")),
            low_stock_threshold=as_float(doc.get("lowStockThreshold")),
            base_unit=base_unit,
            equivalences=_clean_equivalences(doc.get("equivalences")),
            supplier=doc.get("supplier"),
        )

    def to_document(self):
        doc = {
            "name": self.name,
            "category": self.category,
            "purchasePrice": self.purchase_price,
            "purchaseUnit": self.purchase_unit,
            "purchaseWeightGrams": self.purchase_weight_grams,
            "yieldPercentage": self.yield_percentage,
            "stockQuantity": self.stock_quantity,
            "lowStockThreshold": self.low_stock_threshold,
            "baseUnit": self.base_unit or self.cost_base_unit,
            "equivalences": dict(self.equivalences),
        }
        if self.supplier:
            doc["supplier"] = self.supplier
        return doc

    @property
    def cost_base_unit(self):
        """g or ml: the unit purchaseWeightGrams is expressed in."""
        dim = units.dimension(self.purchase_unit)
        if dim in units.BASE_UNITS:
            return units.BASE_UNITS[dim]
        if self.base_unit in ("g", "ml"):
            return self.base_unit
        return "g"

    @property
    def plan_unit(self):
        """Unit used when summing requirements of this ingredient."""
        return self.base_unit or self.cost_base_unit

    @property
    def is_low_stock(self):
        return self.stock_quantity <= self.low_stock_threshold

    def equivalence_table(self):
        table = dict(self.equivalences)
        purchase_unit = units.normalize_unit(self.purchase_unit)
        if purchase_unit and not units.is_metric(purchase_unit) and self.purchase_weight_grams > 0:
            table.setdefault(
                f"{purchase_unit}->{self.cost_base_unit}", self.purchase_weight_grams
            )
        return table


# --- Recipes: preparations and dishes ---


@dataclass
class RecipeBase:
    id: str
    name: str
    description: str = ""
    category: str = ""
    portions: int = 1
    duration: float = 0.0
    difficulty: Optional[str] = None
    production_quantity: float = 0.0
    production_unit: str = ""
    usage_unit: str = ""
    procedure_fabrication: str = ""
    procedure_service: str = ""
    allergens: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    image_url: Optional[str] = None
    duration_breakdown: Optional[Dict[str, float]] = None

    TYPE = None

    @classmethod
    def _common_fields(cls, doc):
        breakdown = doc.get("duration_breakdown")
        return dict(
            id=doc.get("id", ""),
            name=doc.get("name") or "",
            description=doc.get("description") or "",
            category=doc.get("category") or "",
            portions=as_int(doc.get("portions"), 1),
            duration=as_float(doc.get("duration")),
            difficulty=doc.get("difficulty"),
            production_quantity=as_float(doc.get("productionQuantity")),
            production_unit=doc.get("productionUnit") or "",
            usage_unit=doc.get("usageUnit") or "",
            procedure_fabrication=doc.get("procedure_fabrication") or "",
            procedure_service=doc.get("procedure_service") or "",
            allergens=list(doc.get("allergens") or []),
            tags=list(doc.get("tags") or []),
            image_url=doc.get("imageUrl"),
            duration_breakdown=(
                {key: as_float(value) for key, value in breakdown.items()}
                if isinstance(breakdown, dict)
                else None
            ),
        )

    @classmethod
    def from_document(cls, doc):
        return cls(**cls._common_fields(doc))

    def to_document(self):
        doc = {
            "type": self.TYPE,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "portions": self.portions,
            "duration": self.duration,
            "productionQuantity": self.production_quantity,
            "productionUnit": self.production_unit,
            "usageUnit": self.usage_unit,
            "procedure_fabrication": self.procedure_fabrication,
            "procedure_service": self.procedure_service,
            "allergens": list(self.allergens),
            "tags": list(self.tags),
        }
        if self.difficulty:
            doc["difficulty"] = self.difficulty
        if self.image_url:
            doc["imageUrl"] = self.image_url
        if self.duration_breakdown:
            doc["duration_breakdown"] = dict(self.duration_breakdown)
        return doc

    @property
    def batch_size(self):
        """Production quantity, 1 when missing or not positive."""
        return self.production_quantity if self.production_quantity > 0 else 1.0

    @property
    def requirement_unit(self):
        return units.base_unit_for(self.usage_unit or self.production_unit)

    def equivalence_table(self):
        return {}


@dataclass
class Preparation(RecipeBase):
    """Intermediate sub-recipe (sauce, base, garnish)."""

    TYPE = PREPARATION_TYPE


@dataclass
class Dish(RecipeBase):
    """Sellable menu item."""

    price: float = 0.0
    tva_rate: Optional[float] = None
    status: str = ACTIVE
    commercial_argument: str = ""

    TYPE = DISH_TYPE

    @classmethod
    def from_document(cls, doc):
        return cls(
            price=as_float(doc.get("price")),
            tva_rate=as_optional_float(doc.get("tvaRate")),
            status=doc.get("status") or ACTIVE,
            commercial_argument=doc.get("commercialArgument") or "",
            **cls._common_fields(doc),
        )

    def to_document(self):
        doc = super().to_document()
        doc.update(
            price=self.price,
            status=self.status,
            commercialArgument=self.commercial_argument,
        )
        if self.tva_rate is not None:
            doc["tvaRate"] = self.tva_rate
        return doc

    @property
    def is_active(self):
        return self.status == ACTIVE


# --- Link rows ---


@dataclass
class RecipeIngredientLink:
    recipe_id: str
    ingredient_id: str
    quantity: float
    unit_use: str
    id: Optional[str] = None

    @classmethod
    def from_document(cls, doc):
        return cls(
            recipe_id=doc.get("recipeId", ""),
            ingredient_id=doc.get("ingredientId", ""),
            quantity=as_float(doc.get("quantity")),
            unit_use=doc.get("unitUse") or "",
            id=doc.get("id"),
        )

    def to_document(self):
        return {
            "recipeId": self.recipe_id,
            "ingredientId": self.ingredient_id,
            "quantity": self.quantity,
            "unitUse": self.unit_use,
        }


@dataclass
class RecipePreparationLink:
    parent_recipe_id: str
    child_preparation_id: str
    quantity: float
    unit_use: str
    id: Optional[str] = None

    @classmethod
    def from_document(cls, doc):
        return cls(
            parent_recipe_id=doc.get("parentRecipeId", ""),
            child_preparation_id=doc.get("childPreparationId", ""),
            quantity=as_float(doc.get("quantity")),
            unit_use=doc.get("unitUse") or "",
            id=doc.get("id"),
        )

    def to_document(self):
        return {
            "parentRecipeId": self.parent_recipe_id,
            "childPreparationId": self.child_preparation_id,
            "quantity": self.quantity,
            "unitUse": self.unit_use,
        }


# --- Cash register ---


@dataclass
class OrderItem:
    dish_id: str
    name: str
    quantity: int
    price: float

    @classmethod
    def from_dict(cls, data):
        return cls(
            dish_id=data.get("dishId", ""),
            name=data.get("name", ""),
            quantity=as_int(data.get("quantity")),
            price=as_float(data.get("price")),
        )

    def to_dict(self):
        return {
            "dishId": self.dish_id,
            "name": self.name,
            "quantity": self.quantity,
            "price": self.price,
        }


@dataclass
class Table:
    id: str
    name: str
    status: str = TABLE_FREE
    current_order: List[OrderItem] = field(default_factory=list)
    total: float = 0.0

    @classmethod
    def from_dict(cls, data):
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            status=data.get("status", TABLE_FREE),
            current_order=[OrderItem.from_dict(item) for item in data.get("currentOrder", [])],
            total=as_float(data.get("total")),
        )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "currentOrder": [item.to_dict() for item in self.current_order],
            "total": self.total,
        }


@dataclass
class Sale:
    table_id: str
    items: List[OrderItem]
    total: float
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None

    def to_document(self):
        return {
            "tableId": self.table_id,
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "createdAt": self.created_at.isoformat(),
        }


# --- In-memory graph snapshot ---


class RecipeGraph:
    """
    Snapshot of the catalogue the costing engine walks over: ingredients,
    preparations (garnishes included), dishes and the two link tables
    grouped by parent id.
    """

    def __init__(
        self,
        ingredients=(),
        preparations=(),
        dishes=(),
        ingredient_links=(),
        preparation_links=(),
    ):
        self.ingredients = {ing.id: ing for ing in ingredients}
        self.preparations = {prep.id: prep for prep in preparations}
        self.dishes = {dish.id: dish for dish in dishes}
        self._ingredient_links = {}
        self._preparation_links = {}
        for link in ingredient_links:
            self._ingredient_links.setdefault(link.recipe_id, []).append(link)
        for link in preparation_links:
            self._preparation_links.setdefault(link.parent_recipe_id, []).append(link)

    def item(self, item_id):
        return self.dishes.get(item_id) or self.preparations.get(item_id)

    def ingredient_links_of(self, parent_id):
        return self._ingredient_links.get(parent_id, [])

    def preparation_links_of(self, parent_id):
        return self._preparation_links.get(parent_id, [])

    def child_preparation_ids(self, parent_id):
        return [link.child_preparation_id for link in self.preparation_links_of(parent_id)]

    @classmethod
    def from_documents(
        cls,
        ingredients,
        preparations,
        recipes,
        ingredient_links,
        preparation_links,
        garnishes=(),
    ):
        dishes = []
        extra_preparations = []
        for doc in recipes:
            # The recipes collection only holds dishes; legacy rows miss the tag.
            if doc.get("type", DISH_TYPE) == DISH_TYPE:
                dishes.append(Dish.from_document(doc))
            else:
                extra_preparations.append(Preparation.from_document(doc))
        return cls(
            ingredients=[Ingredient.from_document(doc) for doc in ingredients],
            preparations=[Preparation.from_document(doc) for doc in preparations]
            + [Preparation.from_document(doc) for doc in garnishes]
            + extra_preparations,
            dishes=dishes,
            ingredient_links=[RecipeIngredientLink.from_document(doc) for doc in ingredient_links],
            preparation_links=[
                RecipePreparationLink.from_document(doc) for doc in preparation_links
            ],
        )


def load_graph(store):
    """Fetches every collection the costing engine needs and builds a snapshot."""
    return RecipeGraph.from_documents(
        ingredients=store.fetch_collection("ingredients"),
        preparations=store.fetch_collection("preparations"),
        recipes=store.fetch_collection("recipes"),
        ingredient_links=store.fetch_collection("recipeIngredients"),
        preparation_links=store.fetch_collection("recipePreparationLinks"),
        garnishes=store.fetch_collection("garnishes"),
    )
