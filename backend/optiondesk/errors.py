"""Exception taxonomy for OptionDesk."""

from __future__ import annotations


class OptionDeskError(Exception):
    """Base class for every error raised by OptionDesk."""


class BrokerError(OptionDeskError):
    """An upstream broker call failed.

    ``what`` names the call (e.g. ``"quote"``, ``"profile"``) so the message
    keeps its context when it bubbles up to the caller of a cycle.
    """

    def __init__(self, what: str, message: str) -> None:
        super().__init__(f"{what}: {message}")
        self.what = what
        self.message = message


class BrokerNetworkError(BrokerError):
    """Transient failure: timeout, connection reset, DNS."""


class BrokerAPIError(BrokerError):
    """The broker answered with an explicit failure status."""

    def __init__(
        self,
        what: str,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(what, message)
        self.error_code = error_code
        self.status_code = status_code


class BrokerDecodeError(BrokerError):
    """A broker payload was missing a field or had the wrong shape."""


class AuthorizationExpiredError(BrokerError):
    """The broker still rejected the token after a successful refresh."""


class AuthenticationError(OptionDeskError):
    """Login failed: bad credentials, bad one-time code, or no session."""


class InvalidTOTPError(AuthenticationError):
    """A caller-supplied one-time code is not exactly six digits."""


class ReloginRequiredError(AuthenticationError):
    """The session is gone and cannot be recovered without a fresh login."""


class ScripMasterUnavailableError(OptionDeskError):
    """The scrip master could not be downloaded and no snapshot exists."""


class ChainAssemblyError(OptionDeskError):
    """An options chain could not be produced for this cycle."""


class InvalidExpiryError(OptionDeskError, ValueError):
    """An expiry string is not an ISO ``YYYY-MM-DD`` date."""
