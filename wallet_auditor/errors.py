from __future__ import annotations

from typing import Optional


class WalletAuditorError(Exception):
    pass


class InvalidInputError(WalletAuditorError):
    """Top-level input that cannot produce any report."""


class ItemError(WalletAuditorError):
    """Failure scoped to one transaction, trade or token.

    These are recorded on the affected item via ``issue()`` instead of being
    raised out of the core.
    """

    kind = "item_error"

    def __init__(self, reason: str, token_address: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.token_address = token_address

    def issue(self) -> str:
        return f"{self.kind}: {self.reason}"


class DataError(ItemError):
    kind = "data_error"


class ConsistencyError(ItemError):
    kind = "consistency_error"


class EnrichmentUnavailable(ItemError):
    kind = "enrichment_unavailable"


class SimulationUnavailable(ItemError):
    kind = "simulation_unavailable"
