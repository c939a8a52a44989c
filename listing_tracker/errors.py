"""Exception taxonomy shared by the queue engine, coordinator and consumers."""

from __future__ import annotations


class ListingTrackerError(Exception):
    """Base class for all listing-tracker errors."""


class TransientFetchError(ListingTrackerError):
    """Network, timeout or rate-limit failure; the listing is retried."""


class ListingNotFoundError(ListingTrackerError):
    """The portal reports the listing as definitively absent."""

    def __init__(self, listing_id: str, message: str | None = None) -> None:
        self.listing_id = listing_id
        super().__init__(message or f"Listing not found: {listing_id}")


class StoreUnavailableError(ListingTrackerError):
    """The queue store could not be reached; fatal for the current operation."""


class ConfigurationError(ListingTrackerError, ValueError):
    """Invalid startup parameters."""


__all__ = [
    "ConfigurationError",
    "ListingNotFoundError",
    "ListingTrackerError",
    "StoreUnavailableError",
    "TransientFetchError",
]
