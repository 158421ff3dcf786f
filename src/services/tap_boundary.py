from __future__ import annotations

import logging
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ValidationError

from domain.custody import Classification, TapRequest
from domain.errors import CustodyError, ErrorCategory, InvalidTapInputError

from .custody_ledger import CustodyLedger

logger = logging.getLogger(__name__)

# Field names sent by the tap readers, alongside the canonical ones.
_FIELD_ALIASES = {
    "actingHolderID": ("actingHolderID", "acting_holder_id", "user_uid"),
    "assetID": ("assetID", "asset_id", "item_uid"),
}


class TapSuccess(BaseModel):
    status: Literal["success"] = "success"
    classification: Classification
    display_name: str
    message: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "classification": self.classification.value,
            "displayName": self.display_name,
            "message": self.message,
        }


class TapFailure(BaseModel):
    status: Literal["error"] = "error"
    category: ErrorCategory
    message: str
    retryable: bool = False

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


TapResponse = TapSuccess | TapFailure


def parse_tap(payload: Mapping[str, Any]) -> TapRequest:
    """Build a ``TapRequest`` from a loosely shaped JSON object."""
    values = {key: _first_present(payload, names) for key, names in _FIELD_ALIASES.items()}
    try:
        return TapRequest(acting_holder_id=values["actingHolderID"], asset_id=values["assetID"])
    except ValidationError as err:
        raise InvalidTapInputError("Missing or empty actingHolderID or assetID") from err


def handle_tap(payload: Any, ledger: CustodyLedger) -> TapResponse:
    if not isinstance(payload, Mapping):
        return TapFailure(category=ErrorCategory.INVALID_INPUT, message="Tap payload must be a JSON object")
    try:
        request = parse_tap(payload)
        outcome = ledger.record_tap(request.acting_holder_id, request.asset_id)
    except CustodyError as err:
        logger.info("Tap rejected (%s): %s", err.category, err)
        return TapFailure(category=err.category, message=str(err), retryable=err.retryable)

    return TapSuccess(
        classification=outcome.classification,
        display_name=outcome.asset_display_name,
        message=outcome.message,
    )


def _first_present(payload: Mapping[str, Any], names: tuple[str, ...]) -> Any:
    for name in names:
        if payload.get(name) is not None:
            return payload[name]
    return None


__all__ = ["TapFailure", "TapResponse", "TapSuccess", "handle_tap", "parse_tap"]
