# endpoints/transaction/errors.py
from flask import jsonify


class ErrorKind:
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_ITEMS = "INVALID_ITEMS"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    EXPIRED = "EXPIRED"
    SELF_RESPONSE = "SELF_RESPONSE"
    TRADE_NOT_IN_REVIEW = "TRADE_NOT_IN_REVIEW"
    STALE_ROSTER = "STALE_ROSTER"
    PLAYER_LOCKED = "PLAYER_LOCKED"
    INSUFFICIENT_BUDGET = "INSUFFICIENT_BUDGET"
    ROSTER_FULL = "ROSTER_FULL"
    DROP_PLAYER_NOT_FOUND = "DROP_PLAYER_NOT_FOUND"
    ALREADY_VOTED = "ALREADY_VOTED"
    INVOLVED_PARTY = "INVOLVED_PARTY"
    NOT_IN_LEAGUE = "NOT_IN_LEAGUE"
    INTERNAL = "INTERNAL"


HTTP_STATUS_BY_KIND = {
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_ITEMS: 400,
    ErrorKind.INVALID_REQUEST: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_PROCESSED: 409,
    ErrorKind.EXPIRED: 409,
    ErrorKind.SELF_RESPONSE: 403,
    ErrorKind.TRADE_NOT_IN_REVIEW: 409,
    ErrorKind.STALE_ROSTER: 409,
    ErrorKind.PLAYER_LOCKED: 409,
    ErrorKind.INSUFFICIENT_BUDGET: 422,
    ErrorKind.ROSTER_FULL: 422,
    ErrorKind.DROP_PLAYER_NOT_FOUND: 422,
    ErrorKind.ALREADY_VOTED: 409,
    ErrorKind.INVOLVED_PARTY: 403,
    ErrorKind.NOT_IN_LEAGUE: 403,
    ErrorKind.INTERNAL: 500,
}


class SettlementError(ValueError):
    """
    A recoverable business failure. `kind` is the stable error code sent to
    clients; the message is the human-readable reason.
    """

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 400)

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


def errorResponse(e: SettlementError):
    return jsonify(e.to_dict()), e.http_status


def internalErrorResponse(message: str, exc: Exception, expose_detail: bool = False):
    body = {"error": ErrorKind.INTERNAL, "message": message}
    if expose_detail:
        body["details"] = str(exc)
    return jsonify(body), HTTP_STATUS_BY_KIND[ErrorKind.INTERNAL]
