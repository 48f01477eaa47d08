"""Exception hierarchy for routedesk."""

from __future__ import annotations

from typing import Dict


class RoutedeskError(Exception):
    """Base exception for all routedesk errors."""


class UnknownEntityError(RoutedeskError):
    """Collection name that has no field definitions."""


class NotFoundError(RoutedeskError):
    """Document does not exist."""

    def __init__(self, collection: str, item_id: object) -> None:
        self.collection = collection
        self.item_id = item_id
        super().__init__(f"{collection} {item_id} not found")


class ValidationFailed(RoutedeskError):
    """Submitted values do not satisfy the form definition."""

    def __init__(self, errors: Dict[str, str]) -> None:
        self.errors = dict(errors)
        super().__init__(", ".join(f"{name}: {message}" for name, message in self.errors.items()))
