import pytest

from backoffice import create_app
from backoffice.db import MEMORY_STORE_KEY
from backoffice.models import load_graph
from backoffice.store import MemoryDocumentStore


def catalogue():
    """Small kitchen: two preparations shared by two active dishes."""
    return {
        "ingredients": [
            {
                "id": "tomato",
                "name": "Tomate",
                "category": "Légumes",
                "purchasePrice": 300,
                "purchaseUnit": "kg",
                "purchaseWeightGrams": 1000,
                "yieldPercentage": 100,
                "stockQuantity": 10,
                "lowStockThreshold": 2,
            },
            {
                "id": "flour",
                "name": "Farine",
                "category": "Épicerie",
                "purchasePrice": 200,
                "purchaseUnit": "kg",
                "purchaseWeightGrams": 1000,
                "yieldPercentage": 100,
                "stockQuantity": 5,
                "lowStockThreshold": 1,
            },
            {
                "id": "butter",
                "name": "Beurre",
                "category": "Crèmerie",
                "purchasePrice": 1000,
                "purchaseUnit": "kg",
                "purchaseWeightGrams": 1000,
                "yieldPercentage": 100,
                "stockQuantity": 0.5,
                "lowStockThreshold": 1,
            },
            {
                "id": "egg",
                "name": "Oeuf",
                "category": "Crèmerie",
                "purchasePrice": 30,
                "purchaseUnit": "pièce",
                "purchaseWeightGrams": 60,
                "yieldPercentage": 100,
                "stockQuantity": 30,
                "lowStockThreshold": 12,
            },
        ],
        "preparations": [
            {
                "id": "sauce",
                "type": "Préparation",
                "name": "Sauce tomate",
                "productionQuantity": 2,
                "productionUnit": "kg",
                "usageUnit": "g",
            },
            {
                "id": "pate",
                "type": "Préparation",
                "name": "Pâte brisée",
                "productionQuantity": 1,
                "productionUnit": "kg",
                "usageUnit": "g",
            },
        ],
        "recipes": [
            {
                "id": "pizza",
                "type": "Plat",
                "name": "Pizza",
                "category": "Plats",
                "price": 1100,
                "tvaRate": 10,
                "portions": 1,
                "duration": 30,
                "status": "Actif",
            },
            {
                "id": "tarte",
                "type": "Plat",
                "name": "Tarte tomate",
                "category": "Entrées",
                "price": 880,
                "tvaRate": 10,
                "portions": 2,
                "duration": 10,
                "status": "Actif",
            },
            {
                "id": "old",
                "type": "Plat",
                "name": "Ancien plat",
                "price": 500,
                "status": "Inactif",
            },
        ],
        "recipeIngredients": [
            {"id": "ri-1", "recipeId": "sauce", "ingredientId": "tomato", "quantity": 1, "unitUse": "kg"},
            {"id": "ri-2", "recipeId": "pate", "ingredientId": "flour", "quantity": 500, "unitUse": "g"},
            {"id": "ri-3", "recipeId": "pate", "ingredientId": "butter", "quantity": 250, "unitUse": "g"},
            {"id": "ri-4", "recipeId": "pizza", "ingredientId": "flour", "quantity": 100, "unitUse": "g"},
            {"id": "ri-5", "recipeId": "pizza", "ingredientId": "egg", "quantity": 1, "unitUse": "pièce"},
        ],
        "recipePreparationLinks": [
            {"id": "rp-1", "parentRecipeId": "pizza", "childPreparationId": "sauce", "quantity": 200, "unitUse": "g"},
            {"id": "rp-2", "parentRecipeId": "tarte", "childPreparationId": "sauce", "quantity": 100, "unitUse": "g"},
            {"id": "rp-3", "parentRecipeId": "tarte", "childPreparationId": "pate", "quantity": 300, "unitUse": "g"},
        ],
    }


@pytest.fixture
def store():
    return MemoryDocumentStore(catalogue())


@pytest.fixture
def graph(store):
    return load_graph(store)


@pytest.fixture
def app():
    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "DOCUMENT_STORE": "memory",
            "SEED_COLLECTIONS": catalogue(),
            "ANTHROPIC_API_KEY": None,
        }
    )
    yield app


@pytest.fixture
def app_store(app):
    return app.extensions[MEMORY_STORE_KEY]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()
