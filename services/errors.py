from __future__ import annotations


class FulfillmentError(RuntimeError):
    """Base class for everything the fulfillment pipeline raises on purpose."""

    requires_human = False


class AssetStoreError(FulfillmentError):
    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class AssetNotFoundError(AssetStoreError):
    pass


class ResolutionError(FulfillmentError):
    """A product, format or thank-you folder could not be located."""

    requires_human = True

    def __init__(self, kind: str, search_key: str, attempted: list[str] | None = None):
        self.kind = kind
        self.search_key = search_key
        self.attempted = list(attempted or [])
        msg = f"{kind} folder missing: {search_key!r}"
        if self.attempted:
            msg += f" (tried: {', '.join(self.attempted)})"
        super().__init__(msg)


class DuplicateAssetError(FulfillmentError):
    requires_human = True


class MalformedRowError(FulfillmentError):
    def __init__(self, row_number: int, reason: str):
        super().__init__(f"row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


class ExportParseError(FulfillmentError):
    pass


class PackagingError(FulfillmentError):
    pass


class NotifierError(FulfillmentError):
    pass


class TrackerCorruptError(FulfillmentError):
    pass


class StepError(RuntimeError):
    def __init__(self, step: str, reason: str, *, requires_human: bool = False):
        super().__init__(f"{step}: {reason}")
        self.step = step
        self.reason = reason
        self.requires_human = requires_human
