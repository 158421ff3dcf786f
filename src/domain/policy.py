from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from .custody import AssetStatus, Classification, HolderId, TransitionKind


class InvalidStateError(Exception):
    """The current status cannot be interpreted by a tap."""

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(f"No tap transition from status {status}")


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    next_status: AssetStatus
    next_holder_id: HolderId | None
    kind: TransitionKind
    classification: Classification
    note: str


def decide(
    current_status: AssetStatus | str,
    current_holder_id: HolderId | None,
    acting_holder_id: HolderId,
) -> Decision:
    """Map the current custody state plus the tapping holder to the next state.

    Any holder may release an asset held by someone else; the original holder is
    kept in the note for audit.
    """
    if current_status == AssetStatus.AVAILABLE:
        return Decision(
            next_status=AssetStatus.HELD,
            next_holder_id=acting_holder_id,
            kind=TransitionKind.ACQUIRE,
            classification=Classification.ACQUIRED,
            note="acquired",
        )

    if current_status == AssetStatus.HELD:
        if current_holder_id == acting_holder_id:
            return Decision(
                next_status=AssetStatus.AVAILABLE,
                next_holder_id=None,
                kind=TransitionKind.RELEASE,
                classification=Classification.RELEASED,
                note="released by original holder",
            )
        return Decision(
            next_status=AssetStatus.AVAILABLE,
            next_holder_id=None,
            kind=TransitionKind.RELEASE,
            classification=Classification.RETURNED_BY_NON_HOLDER,
            note=f"released by non-original holder (was: {current_holder_id})",
        )

    raise InvalidStateError(str(current_status))
