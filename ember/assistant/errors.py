"""Error taxonomy for the interpretation engine.

Only two kinds of errors ever reach the user: nothing at all for
`InputError` (the utterance is simply ignored) and a non-dismissible alert for
`CriticalEscalationFailure`. Every `CollaboratorFailure` is logged and
replaced by a safe local default.
"""

from __future__ import annotations


class InputError(ValueError):
    """Empty or unintelligible transcript; the session ignores it."""


class CollaboratorFailure(RuntimeError):
    """An external collaborator failed or timed out."""


class InterpreterError(CollaboratorFailure):
    """Semantic-completion call failed or returned an unusable payload."""


class SynthesisError(CollaboratorFailure):
    """Speech synthesis failed."""


class DeviceControlError(CollaboratorFailure):
    """Device-control call failed."""


class DeviceControlAuthError(DeviceControlError):
    """Raised when the device controller rejects our credentials."""


class VisionError(CollaboratorFailure):
    """Frame analysis failed."""


class NotificationError(CollaboratorFailure):
    """Emergency notification could not be delivered."""


class CriticalEscalationFailure(RuntimeError):
    """Emergency notification failed while urgency is CRITICAL.

    The automated call did not go out, so the user must see a loud alert that
    cannot be dismissed until they act on it.
    """

    def __init__(self, message: str, *, original_text: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.original_text = original_text
        self.cause = cause
