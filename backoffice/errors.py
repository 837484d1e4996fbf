class BackofficeError(Exception):
    """Base class for every error raised by the back-office."""


class StoreError(BackofficeError):
    """The backing document store failed (connection, SQL, lock...)."""


class DocumentNotFound(BackofficeError):
    def __init__(self, collection, doc_id):
        super().__init__(f"Document '{doc_id}' not found in '{collection}'.")
        self.collection = collection
        self.doc_id = doc_id


class IngredientNotFound(DocumentNotFound):
    def __init__(self, doc_id):
        super().__init__("ingredients", doc_id)


class ValidationError(BackofficeError):
    pass


class EmptyOrderError(ValidationError):
    pass


class OrderProcessingError(BackofficeError):
    pass


class WorkshopError(BackofficeError):
    pass


class WorkshopUnavailable(WorkshopError):
    """No API key configured for the recipe generator."""
