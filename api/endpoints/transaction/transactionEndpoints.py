# endpoints/transaction/transactionEndpoints.py

import logging

from flask import jsonify, request

from authMiddleware import acting_user_id
from utils.jsonSafe import jsonSafe
from .errors import ErrorKind, SettlementError, errorResponse, internalErrorResponse
from .transactionModel import TransactionModel

logger = logging.getLogger(__name__)


class TransactionEndpoints:
    def __init__(self, db_engine, notifier=None, expose_errors=False, **model_kwargs):
        self.transactionModel = TransactionModel(db_engine, notifier=notifier, **model_kwargs)
        self.expose_errors = expose_errors

    # POST /api/league/<league_id>/trade/propose
    # {
    #     "proposingTeamId": 12,
    #     "items": [
    #         {"fromTeamId": 12, "toTeamId": 34, "itemType": "PLAYER", "playerId": 9001},
    #         {"fromTeamId": 34, "toTeamId": 12, "itemType": "FAAB", "faabAmount": 5}
    #     ],
    #     "notes": "optional",
    #     "expiresAt": "optional ISO-8601"
    # }
    def propose_trade(self, league_id: int):
        body = request.get_json(force=True, silent=True) or {}

        required = ["proposingTeamId", "items"]
        missing = [k for k in required if k not in body]
        if missing:
            return errorResponse(
                SettlementError(ErrorKind.INVALID_REQUEST, f"Missing fields: {', '.join(missing)}")
            )

        try:
            result = self.transactionModel.create_proposal(
                league_id=league_id,
                acting_user_id=acting_user_id(),
                proposing_team_id=int(body["proposingTeamId"]),
                items=body["items"],
                notes=body.get("notes"),
                expires_at=body.get("expiresAt"),
                expiration_hours=body.get("expirationHours"),
            )
            return jsonify(jsonSafe(result)), 201
        except SettlementError as e:
            logger.warning("SettlementError in propose_trade (league %s): %s", league_id, e)
            return errorResponse(e)
        except (TypeError, ValueError) as e:
            return errorResponse(SettlementError(ErrorKind.INVALID_REQUEST, f"Malformed request: {e}"))
        except Exception as e:
            logger.exception("Unexpected error proposing trade in league %s", league_id)
            return internalErrorResponse("Failed to propose trade", e, self.expose_errors)

    # POST /api/trade/<trade_id>/respond
    # body: { action: "ACCEPT"|"REJECT"|"COUNTER", reason?, counterOffer?: { items, notes?, expirationHours? } }
    def respond_trade(self, trade_id: int):
        body = request.get_json(force=True, silent=True) or {}
        if "action" not in body:
            return errorResponse(SettlementError(ErrorKind.INVALID_REQUEST, "Missing field: action"))

        try:
            result = self.transactionModel.respond_to_proposal(
                trade_id=trade_id,
                acting_user_id=acting_user_id(),
                action=str(body["action"]),
                counter_offer=body.get("counterOffer"),
                reason=body.get("reason"),
            )
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            logger.warning("SettlementError in respond_trade (trade %s): %s", trade_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error responding to trade %s", trade_id)
            return internalErrorResponse("Failed to respond to trade", e, self.expose_errors)

    # POST /api/trade/<trade_id>/cancel
    # body: { reason? }
    def cancel_trade(self, trade_id: int):
        body = request.get_json(force=True, silent=True) or {}

        try:
            result = self.transactionModel.cancel_proposal(
                trade_id=trade_id,
                acting_user_id=acting_user_id(),
                reason=body.get("reason"),
            )
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            logger.warning("SettlementError in cancel_trade (trade %s): %s", trade_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error cancelling trade %s", trade_id)
            return internalErrorResponse("Failed to cancel trade", e, self.expose_errors)

    # GET /api/trade/<trade_id>
    def get_trade(self, trade_id: int):
        try:
            result = self.transactionModel.get_trade(trade_id, acting_user_id())
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error loading trade %s", trade_id)
            return internalErrorResponse("Failed to load trade", e, self.expose_errors)

    # GET /api/league/<league_id>/trades/open
    def get_open_trades(self, league_id: int):
        try:
            result = self.transactionModel.get_open_trades_for_user(league_id, acting_user_id())
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error listing open trades for league %s", league_id)
            return internalErrorResponse("Failed to list open trades", e, self.expose_errors)
