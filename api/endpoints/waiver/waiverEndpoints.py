# endpoints/waiver/waiverEndpoints.py

import logging

from flask import jsonify, request

from authMiddleware import acting_user_id
from endpoints.transaction.errors import ErrorKind, SettlementError, errorResponse, internalErrorResponse
from utils.jsonSafe import jsonSafe
from .waiverModel import WaiverModel

logger = logging.getLogger(__name__)


def _optional_int(body, key):
    value = body.get(key)
    return int(value) if value is not None else None


class WaiverEndpoints:
    def __init__(self, db_engine, notifier=None, expose_errors=False, **model_kwargs):
        self.waiverModel = WaiverModel(db_engine, notifier=notifier, **model_kwargs)
        self.expose_errors = expose_errors

    # POST /api/league/<league_id>/waiver/claim
    # body: { "playerId": 9001, "dropPlayerId"?: 9002, "faabBid"?: 12, "expiresAt"?: "..." }
    def submit_claim(self, league_id: int):
        body = request.get_json(force=True, silent=True) or {}
        if "playerId" not in body:
            return errorResponse(SettlementError(ErrorKind.INVALID_REQUEST, "Missing field: playerId"))

        try:
            player_id = int(body["playerId"])
            drop_player_id = _optional_int(body, "dropPlayerId")
            faab_bid = _optional_int(body, "faabBid")
        except (TypeError, ValueError):
            return errorResponse(
                SettlementError(ErrorKind.INVALID_REQUEST, "playerId, dropPlayerId and faabBid must be integers")
            )

        try:
            result = self.waiverModel.submit_claim(
                league_id=league_id,
                acting_user_id=acting_user_id(),
                player_id=player_id,
                drop_player_id=drop_player_id,
                faab_bid=faab_bid,
                expires_at=body.get("expiresAt"),
            )
            return jsonify(jsonSafe(result)), 201
        except SettlementError as e:
            logger.warning("SettlementError in submit_claim (league %s): %s", league_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error submitting waiver claim in league %s", league_id)
            return internalErrorResponse("Failed to submit waiver claim", e, self.expose_errors)

    # POST /api/waiver/claim/<claim_id>/cancel
    def cancel_claim(self, claim_id: int):
        try:
            result = self.waiverModel.cancel_claim(claim_id, acting_user_id())
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            logger.warning("SettlementError in cancel_claim (claim %s): %s", claim_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error cancelling waiver claim %s", claim_id)
            return internalErrorResponse("Failed to cancel waiver claim", e, self.expose_errors)

    # POST /api/league/<league_id>/waiver/process
    # Commissioner-triggered run; the scheduled run goes through cronJobs/cronProcessWaivers.py.
    def process_waivers(self, league_id: int):
        try:
            self.waiverModel.assert_commissioner(league_id, acting_user_id())
            result = self.waiverModel.process_waiver_batch(league_id)
            return jsonify(jsonSafe(result)), 200
        except SettlementError as e:
            logger.warning("SettlementError in process_waivers (league %s): %s", league_id, e)
            return errorResponse(e)
        except Exception as e:
            logger.exception("Unexpected error processing waivers for league %s", league_id)
            return internalErrorResponse("Failed to process waivers", e, self.expose_errors)
