from typing import Any, Dict, Optional


class LedgerError(Exception):
    """
    base class for every business-rule failure raised by the ledger core.
    app.py is the only place these get translated into HTTP responses.
    """


class ValidationError(LedgerError):
    """malformed referral code, sale amount or webhook payload. nothing is persisted."""


class NotFoundError(LedgerError):
    """unknown referral code, member, tenant or payment."""


class SignatureError(LedgerError):
    """webhook signature missing or wrong. the payload is never decoded."""


class IdempotencyHit(LedgerError):
    """
    the external payment id was already ingested.
    callers treat this as success and hand back the existing commission.
    """

    def __init__(self, commission):
        super().__init__(f"payment {commission.external_payment_id} already ingested")
        self.commission = commission


class AlreadyConvertedError(LedgerError):
    """an attribution click that was already converted was claimed again."""

    def __init__(self, click_id: int):
        super().__init__(f"attribution click {click_id} is already converted")
        self.click_id = click_id


class ReconciliationMismatch(LedgerError):
    """
    a cached projection disagrees with the ledger.
    the validator collects these in its report instead of raising them.
    """

    def __init__(
        self,
        entity: str,
        entity_id: int,
        field: str,
        cached: Any,
        actual: Any,
        note: Optional[str] = None,
    ):
        super().__init__(
            f"{entity} {entity_id}: {field} cached={cached} actual={actual}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.field = field
        self.cached = cached
        self.actual = actual
        self.note = note

    def as_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "field": self.field,
            "cached": str(self.cached),
            "actual": str(self.actual),
            "note": self.note,
        }
