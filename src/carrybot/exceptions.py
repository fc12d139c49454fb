"""Custom exceptions for the carry arbitrage bot.

All venue, sequencing and settlement exceptions live here to avoid
circular imports between modules. None of them is retried automatically:
each one ends the current invocation and is reported to the operator.
"""


class CarryBotError(Exception):
    """Base exception for all bot errors."""


class FeedUnavailableError(CarryBotError):
    """Raised when the deposit feed cannot be reached or returns garbage."""


class InvalidPhaseError(CarryBotError):
    """Raised when a request is not allowed in the current strategy run phase."""


class NotProfitableError(CarryBotError):
    """Raised pre-trade when funding cannot cover costs over the intended hold."""


class StepError(CarryBotError):
    """A leg sequence stopped at a specific step.

    Attributes:
        step: Name of the step that failed (e.g. "spot_swap").
    """

    def __init__(self, step: str, message: str) -> None:
        super().__init__(message)
        self.step = step


class NoRouteError(StepError):
    """Raised when the spot venue returns no viable swap route."""


class WrongPositionDirectionError(StepError):
    """Raised when a direction-aware close finds the opposite position open."""


class VenueRejectedError(StepError):
    """Raised when a venue call or transaction fails; message is the upstream error."""


class InsufficientFundsError(CarryBotError):
    """Raised when nothing is left to pay out after the performance fee."""
