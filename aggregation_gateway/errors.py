"""Exceptions raised by the aggregation engine and its codec."""


class AggregationError(Exception):
    """Base class for errors that reject a push or a collection."""


class ParseError(AggregationError):
    """Payload is not valid exposition text."""


class InvalidLabelError(AggregationError):
    """A family or label name is not well-formed."""


class DuplicateSeriesError(AggregationError):
    """The same label set appears twice within one family of a push."""

    def __init__(self, family_name: str, labels: dict):
        self.family_name = family_name
        self.labels = labels
        rendered = ",".join(f'{k}="{v}"' for k, v in labels.items())
        super().__init__(f"Duplicate labels in '{family_name}': {{{rendered}}}")


class TypeMismatchError(AggregationError):
    """Incoming family type disagrees with the stored family type."""

    def __init__(self, family_name: str, existing_type: str, incoming_type: str):
        self.family_name = family_name
        self.existing_type = existing_type
        self.incoming_type = incoming_type
        super().__init__(
            f"Cannot merge metric '{family_name}': type {existing_type} != {incoming_type}"
        )


class UnmergeableSeriesError(AggregationError):
    """A summary series would be dropped and the gateway is set to reject it."""

    def __init__(self, family_name: str, labels: dict):
        self.family_name = family_name
        self.labels = labels
        super().__init__(
            f"Cannot merge summary series of '{family_name}' with labels {labels}: "
            f"summaries are not aggregatable"
        )


class EncodingError(AggregationError):
    """The aggregate could not be serialized for collection."""
