class StoreError(Exception):
    """Base class for every error raised by the store."""


class NotFound(StoreError):
    def __init__(self, entity: str, key):
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class ConstraintViolation(StoreError):
    """A uniqueness, foreign-key or not-null constraint rejected the write."""


class InvalidInput(StoreError):
    pass


class InvalidStatusTransition(InvalidInput):
    def __init__(self, current, requested):
        super().__init__(f"Cannot move transaction from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested
