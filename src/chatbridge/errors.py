"""Error taxonomy for automation sessions."""

from __future__ import annotations


class BridgeError(Exception):
    code = "bridge_error"
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class BadRequest(BridgeError):
    code = "bad_request"


class NotReady(BridgeError):
    code = "not_ready"

    def __init__(self, message: str = "") -> None:
        super().__init__(
            message or "Automation surface is not ready: load the chat page and sign in first."
        )


class FocusAcquisitionFailed(BridgeError):
    code = "focus_failed"


class InjectionScriptError(BridgeError):
    code = "script_error"

    def __init__(self, message: str = "", detail: str = "") -> None:
        text = message or "injected script failed"
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text)
        self.detail = detail


class BridgeTimeout(BridgeError):
    code = "timeout"
    retryable = True

    NEVER_STARTED = "never_started"
    RAN_TOO_LONG = "ran_too_long"

    def __init__(self, phase: str, seconds: float) -> None:
        if phase == self.NEVER_STARTED:
            text = (
                f"Generation never started within {seconds:g}s; "
                "check that the chat page accepted the prompt."
            )
        else:
            text = f"Generation ran longer than {seconds:g}s without a usable answer."
        super().__init__(text)
        self.phase = phase
        self.seconds = seconds

    def to_dict(self) -> dict[str, str]:
        payload = super().to_dict()
        payload["phase"] = self.phase
        return payload


class EmptyResponse(BridgeError):
    code = "empty_response"
    retryable = True

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "Generation finished but no answer text was found; retry the request.")


class LedgerUnavailable(BridgeError):
    code = "ledger_unavailable"
    retryable = True


class SessionCancelled(BridgeError):
    code = "cancelled"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or "Client disconnected before the session started.")
