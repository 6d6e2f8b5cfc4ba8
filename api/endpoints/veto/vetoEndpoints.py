# endpoints/veto/vetoEndpoints.py

import logging

from flask import jsonify, request

from authMiddleware import acting_user_id
from endpoints.transaction.errors import ErrorKind, SettlementError, errorResponse, internalErrorResponse
from utils.jsonSafe import jsonSafe
from .vetoModel import VetoModel

logger = logging.getLogger(__name__)


class VetoEndpoints:
    def __init__(self, db_engine, notifier=None, expose_errors=False, **model_kwargs):
        self.vetoModel = VetoModel(db_engine, notifier=notifier, **model_kwargs)
        self.expose_errors = expose_errors

    # POST /api/trade/<trade_id>/vote
    # body: { "vote": "VETO"|"APPROVE", "reason"?: "..." }
    def cast_vote(self, trade_id: int):
        body = request.get_json(force=True, silent=True) or {}
        if "vote" not in body:
            return errorResponse(SettlementError(ErrorKind.INVALID_REQUEST, "Missing field: vote"))

        try:
            result = self.vetoModel.cast_vote(
                trade_id=trade_id,
                user_id=acting_user_id(),
                vote=str(body["vote"]),
                reason=body.get("reason"),
            )
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            logger.warning("SettlementError in cast_vote (trade %s): %s", trade_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error casting vote on trade %s", trade_id)
            return internalErrorResponse("Failed to cast vote", e, self.expose_errors)

    # GET /api/trade/<trade_id>/votes
    def get_votes(self, trade_id: int):
        try:
            result = self.vetoModel.get_vote_tally(trade_id, acting_user_id())
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error loading votes for trade %s", trade_id)
            return internalErrorResponse("Failed to load votes", e, self.expose_errors)
