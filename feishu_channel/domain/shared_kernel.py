from abc import ABC
from dataclasses import dataclass


@dataclass(frozen=True)
class ValueObject(ABC):
    """
    Base class for Value Objects.
    Value Objects are immutable and defined by their attributes.
    Equality is based on all attributes.
    """

    pass


class DomainException(Exception):
    """Base exception for all domain errors."""

    pass
