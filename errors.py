class LedgerError(Exception):
    """Base class for every error raised by the spending ledger core."""


class InvalidInput(LedgerError, ValueError):
    pass


class InvalidAmount(InvalidInput):
    pass


class UnknownEntity(LedgerError, LookupError):
    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class UnknownAccount(UnknownEntity):
    def __init__(self, account_id: object) -> None:
        super().__init__("account", account_id)


class ConcurrencyConflict(LedgerError):
    """Lock contention or a serialization failure; safe to retry."""


class Unavailable(LedgerError):
    """Retries were exhausted without the operation committing."""


class ConsistencyViolation(LedgerError):
    def __init__(self, drifts: list[tuple[str, int, str, int, int]]) -> None:
        preview = ", ".join(
            f"{etype}:{eid}.{field} cached={old} ledger={new}"
            for etype, eid, field, old, new in drifts[:5]
        )
        super().__init__(
            f"{len(drifts)} cached counters disagree with the ledger: {preview}"
        )
        self.drifts = drifts
