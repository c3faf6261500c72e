"""Error taxonomy for the RBM control core."""

from __future__ import annotations


class RbmError(RuntimeError):
    """Base class for RBM control failures."""


class RbmValidationError(RbmError):
    """Input or campaign state failed a synchronous validation rule."""


class RbmAuthorizationError(RbmError):
    """Actor lacks the capability required for the operation."""


class CampaignNotFoundError(RbmValidationError):
    """Campaign id does not resolve to a stored campaign."""


class CollaboratorUnavailableError(RbmError):
    """External collaborator raised or did not answer within its time budget."""

    def __init__(self, collaborator: str, detail: str) -> None:
        super().__init__(f"{collaborator} unavailable: {detail}")
        self.collaborator = collaborator
        self.detail = detail


class RbmTransitionConflictError(RbmError):
    """Campaign state changed between evaluation and commit."""
