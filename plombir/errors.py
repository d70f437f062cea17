from __future__ import annotations


class GameError(Exception):
    """Base of every failure reported back to the mini-app as ``{"error": ...}``."""

    status_code = 400
    default_message = "Bad request"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(GameError):
    status_code = 401
    default_message = "Invalid Telegram data"


class Forbidden(GameError):
    status_code = 403
    default_message = "Not authorized"


class InvalidInput(GameError):
    default_message = "Invalid input"


class InvalidBet(InvalidInput):
    default_message = "Minimum bet is 10"


class InsufficientFunds(GameError):
    default_message = "Not enough points"


class Conflict(GameError):
    default_message = "Conflict"


class AlreadyOwned(Conflict):
    default_message = "Already owned"


class AlreadyUsed(Conflict):
    default_message = "Already used"


class PromoExhausted(Conflict):
    default_message = "Code expired"


class SelfAcceptance(Conflict):
    default_message = "Cannot fight yourself"


class OfferUnavailable(Conflict):
    default_message = "Battle not available"


class CooldownActive(Conflict):
    default_message = "Wait 24 hours"
