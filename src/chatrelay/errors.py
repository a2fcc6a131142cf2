from __future__ import annotations


class RelayError(Exception):
    pass


class StoreError(RelayError):
    """A Store call failed; ``table`` names the table involved."""

    def __init__(self, table: str, message: str) -> None:
        self.table = table
        super().__init__(f"{table}: {message}")


class StoreQueryFailed(StoreError):
    pass


class StoreWriteFailed(StoreError):
    pass


class SubscriptionFailed(RelayError):
    def __init__(self, channel: str, message: str) -> None:
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class MalformedEvent(RelayError):
    pass
