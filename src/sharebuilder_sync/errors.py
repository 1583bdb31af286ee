from __future__ import annotations

from typing import Optional


class ShareBuilderError(RuntimeError):
    """Base class for every failure surfaced by the site automation."""


class LoginFailed(ShareBuilderError):
    """A login step returned a non-success response, or an operation ran before login."""


class AuthenticityCheckFailed(ShareBuilderError):
    """
    The challenge page did not show the configured secret image and phrase.

    The password is never sent once this is raised.
    """


class ExportFailed(ShareBuilderError):
    """A listing or transaction-export step failed, or the site embedded its failure marker."""


class MalformedPage(ShareBuilderError):
    """An expected structural marker (header row, account-row run) is missing from a page."""


class MissingToken(ShareBuilderError):
    def __init__(self, names: tuple[str, ...], *, step: str = "") -> None:
        self.names = names
        self.step = step
        where = f" (step={step})" if step else ""
        super().__init__(f"Required state token(s) missing before send{where}: {', '.join(names)}")


class UnknownSecurity(ShareBuilderError):
    def __init__(self, security_id: str) -> None:
        self.security_id = security_id
        super().__init__(f"OFX security id has no ticker in the security list: {security_id}")


class UnsupportedOperation(ShareBuilderError):
    """The selected site variant has no step sequence for the requested operation."""


class TransferStageFailed(ShareBuilderError):
    stage: str = ""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransferSetupFailed(TransferStageFailed):
    stage = "setup"


class TransferValidationFailed(TransferStageFailed):
    stage = "validate"


class TransferConfirmationFailed(TransferStageFailed):
    stage = "confirm"
