"""Error taxonomy shared by the catalog client, stores and run orchestration."""

from __future__ import annotations


class PriceRunError(RuntimeError):
    status_code = 500


class ValidationError(PriceRunError):
    """A required parameter is missing or a run precondition is not met."""

    status_code = 400


class NotFoundError(PriceRunError):
    status_code = 404


class FetchError(PriceRunError):
    """Listing the active variant set failed."""

    status_code = 502

    def __init__(self, status: int | None, message: str | None = None) -> None:
        self.status = status
        super().__init__(message or f"Shopify fetch failed: {status}")


class UpdateError(PriceRunError):
    """A single variant update was rejected or never reached Shopify."""

    status_code = 502

    def __init__(self, variant_id: int, status: int | None, body: str = "") -> None:
        self.variant_id = variant_id
        self.status = status
        self.body = body
        super().__init__(f"Update {variant_id} failed: {status} {body}".rstrip())


class RunInProgressError(PriceRunError):
    status_code = 409
