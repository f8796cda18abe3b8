"""Error taxonomy shared by the data, training and retrieval layers.

Every error carries a short message that can be shown to the user as-is.
"""


class RecommenderError(Exception):
    """Base class for all recoverable recommender failures."""


class DataNotLoadedError(RecommenderError):
    def __init__(self, message: str = "Load the MovieLens data first.") -> None:
        super().__init__(message)


class EmptySplitError(RecommenderError):
    def __init__(self, train_size: int, val_size: int) -> None:
        self.train_size = train_size
        self.val_size = val_size
        super().__init__(
            f"Train/val split is empty (train={train_size}, val={val_size}) - check parsed ratings."
        )


class UnknownUserError(RecommenderError, KeyError):
    def __init__(self, user_id) -> None:
        self.user_id = user_id
        super().__init__(f"Unknown user: {user_id}")

    def __str__(self) -> str:
        return self.args[0]


class UnknownItemError(RecommenderError, KeyError):
    def __init__(self, item_id) -> None:
        self.item_id = item_id
        super().__init__(f"Unknown item: {item_id}")

    def __str__(self) -> str:
        return self.args[0]


class NumericalInstabilityError(RecommenderError):
    """Raised when a training loss stops being finite."""

    def __init__(self, loss: float, *, epoch: int | None = None, batch: int | None = None) -> None:
        self.loss = loss
        self.epoch = epoch
        self.batch = batch
        where = ""
        if epoch is not None:
            where = f" at epoch {epoch}, batch {batch}"
        super().__init__(f"Non-finite training loss ({loss}){where} - try a lower learning rate.")

    def with_context(self, epoch: int, batch: int) -> "NumericalInstabilityError":
        return NumericalInstabilityError(self.loss, epoch=epoch, batch=batch)


class ModelNotTrainedError(RecommenderError):
    def __init__(self, message: str = "Train the model first.") -> None:
        super().__init__(message)
