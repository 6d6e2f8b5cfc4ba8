from datetime import timedelta

import pytest
from sqlalchemy import text

from endpoints.notification.notifier import Notifier
from endpoints.transaction.errors import ErrorKind, SettlementError
from endpoints.transaction.transactionModel import TransactionModel
from conftest import NOW


def player(from_team, to_team, player_id):
    return {"fromTeamId": from_team, "toTeamId": to_team, "itemType": "PLAYER", "playerId": player_id}


def swap(lg):
    a, b = lg.team_ids[0], lg.team_ids[1]
    return a, b, [player(a, b, 101), player(b, a, 201)]


def test_accepted_trade_moves_players_and_logs_both_sides(seed, trades, notifier):
    lg = seed.build()
    a, b, items = swap(lg)

    created = trades.create_proposal(lg.league_id, "user-1", a, items, notes="1 for 1")
    assert created["status"] == "PENDING"
    assert notifier.targets("trade:proposed") == ["user-2"]

    result = trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert result["status"] == "ACCEPTED"
    assert seed.roster(a) == {102, 201}
    assert seed.roster(b) == {101, 202}

    for team_id in (a, b):
        entries = seed.logs(teamId=team_id, tradeId=created["id"])
        assert sorted(e["direction"] for e in entries) == ["RECEIVED", "SENT"]
        assert all(e["type"] == "TRADE" for e in entries)

    row = seed.trade(created["id"])
    assert row["status"] == "ACCEPTED"
    assert row["settledAt"] is not None
    assert row["decidedByUserId"] == "user-2"
    assert notifier.targets("trade:accepted") == ["user-1", "user-2"]


def test_default_expiry_comes_from_league_settings(seed, trades):
    lg = seed.build({"tradeExpirationHours": 12})
    a, _, items = swap(lg)

    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    assert created["expiresAt"] == NOW + timedelta(hours=12)


def test_expiry_in_the_past_is_rejected(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)

    with pytest.raises(SettlementError) as exc:
        trades.create_proposal(lg.league_id, "user-1", a, items, expires_at=(NOW - timedelta(minutes=1)).isoformat())

    assert exc.value.kind == ErrorKind.INVALID_REQUEST


def test_elapsed_proposal_fails_expired_before_any_other_check(seed, trades, clock):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    clock.advance(hours=49)

    # user-3 is not even a counterparty; expiry still wins
    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-3", "ACCEPT")

    assert exc.value.kind == ErrorKind.EXPIRED
    assert seed.trade(created["id"])["status"] == "EXPIRED"
    assert seed.roster(a) == {101, 102}


def test_second_response_loses_with_already_processed(engine, seed, trades, clock):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    assert trades.respond_to_proposal(created["id"], "user-2", "REJECT")["status"] == "REJECTED"

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")
    assert exc.value.kind == ErrorKind.ALREADY_PROCESSED

    # the conditional update is what a concurrent loser hits
    with engine.begin() as conn:
        assert trades.repo.lock_pending_trade(conn, created["id"], clock()) is False

    assert seed.roster(a) == {101, 102}


def test_racing_responses_settle_exactly_once(engine, seed, trades, monkeypatch):
    lg = seed.build()
    a, b, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    original = trades.repo.lock_pending_trade
    rival = []

    def accept_lands_first(conn, trade_id, now):
        # both responses have passed validation; the accept commits in between
        if not rival:
            rival.append(None)
            rival[0] = trades.respond_to_proposal(trade_id, "user-2", "ACCEPT")
        return original(conn, trade_id, now)

    monkeypatch.setattr(trades.repo, "lock_pending_trade", accept_lands_first)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "REJECT")

    assert exc.value.kind == ErrorKind.ALREADY_PROCESSED
    assert rival[0]["status"] == "ACCEPTED"
    assert seed.trade(created["id"])["status"] == "ACCEPTED"
    assert seed.roster(a) == {102, 201}
    assert seed.roster(b) == {101, 202}
    assert len(seed.logs(teamId=a, tradeId=created["id"])) == 2

    with engine.connect() as conn:
        responses = conn.execute(
            text('SELECT action FROM "TradeResponse" WHERE "tradeId" = :id'),
            {"id": created["id"]},
        ).scalars().all()
    assert responses == ["ACCEPT"]


def test_proposer_cannot_respond_to_own_trade(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-1", "ACCEPT")

    assert exc.value.kind == ErrorKind.SELF_RESPONSE


def test_only_counterparties_may_respond(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    for user in ("user-3", "outsider"):
        with pytest.raises(SettlementError) as exc:
            trades.respond_to_proposal(created["id"], user, "REJECT")
        assert exc.value.kind == ErrorKind.UNAUTHORIZED


def test_unknown_action_and_missing_trade(seed, trades):
    seed.build()

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(1, "user-2", "MAYBE")
    assert exc.value.kind == ErrorKind.INVALID_REQUEST

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(999, "user-2", "ACCEPT")
    assert exc.value.kind == ErrorKind.NOT_FOUND


def test_accept_rechecks_roster_freshness(seed, trades):
    lg = seed.build()
    a, b, items = swap(lg)
    c = lg.team_ids[2]
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    seed.move_player(lg.league_id, 201, c)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert exc.value.kind == ErrorKind.STALE_ROSTER
    assert seed.trade(created["id"])["status"] == "PENDING"
    assert seed.roster(a) == {101, 102}


def test_accept_rejects_locked_players(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    seed.lock_player(lg.league_id, 101)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert exc.value.kind == ErrorKind.PLAYER_LOCKED


def test_reject_is_allowed_even_when_rosters_changed(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)
    seed.lock_player(lg.league_id, 101)

    result = trades.respond_to_proposal(created["id"], "user-2", "REJECT", reason="no thanks")

    assert result["status"] == "REJECTED"
    assert seed.trade(created["id"])["rejectReason"] == "no thanks"


def test_counter_creates_new_proposal_then_closes_original(seed, trades, notifier):
    lg = seed.build()
    a, b, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    result = trades.respond_to_proposal(
        created["id"],
        "user-2",
        "COUNTER",
        counter_offer={"items": [player(b, a, 202), player(a, b, 101)], "expirationHours": 6},
    )

    counter_id = result["counterProposalId"]
    assert result["status"] == "REJECTED"

    original = seed.trade(created["id"])
    assert original["status"] == "REJECTED"
    assert original["rejectReason"] == f"Countered with trade {counter_id}"

    counter = seed.trade(counter_id)
    assert counter["status"] == "PENDING"
    assert counter["counteredFromId"] == created["id"]
    assert counter["proposingTeamId"] == b
    assert "trade:countered" in notifier.events()

    assert trades.respond_to_proposal(counter_id, "user-1", "ACCEPT")["status"] == "ACCEPTED"
    assert seed.roster(a) == {102, 202}
    assert seed.roster(b) == {101, 201}


def test_invalid_counter_leaves_original_pending(seed, trades):
    lg = seed.build()
    a, b, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(
            created["id"],
            "user-2",
            "COUNTER",
            counter_offer={"items": [player(b, a, 999)]},
        )

    assert exc.value.kind == ErrorKind.INVALID_ITEMS
    assert seed.trade(created["id"])["status"] == "PENDING"
    assert seed.trade(created["id"] + 1) is None


def test_counter_requires_an_offer(seed, trades):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "COUNTER")

    assert exc.value.kind == ErrorKind.INVALID_REQUEST


def test_only_proposer_can_cancel(seed, trades, notifier):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    with pytest.raises(SettlementError) as exc:
        trades.cancel_proposal(created["id"], "user-2")
    assert exc.value.kind == ErrorKind.UNAUTHORIZED

    assert trades.cancel_proposal(created["id"], "user-1")["status"] == "CANCELLED"
    assert notifier.targets("trade:cancelled") == ["user-2"]

    with pytest.raises(SettlementError) as exc:
        trades.cancel_proposal(created["id"], "user-1")
    assert exc.value.kind == ErrorKind.ALREADY_PROCESSED


def test_multi_team_trade_needs_every_counterparty(seed, trades):
    lg = seed.build()
    a, b, c = lg.team_ids
    items = [player(a, b, 101), player(b, c, 201), player(c, a, 301)]
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    first = trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")
    assert first["status"] == "PENDING"
    assert first["awaitingTeamIds"] == [c]
    assert seed.roster(a) == {101, 102}

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")
    assert exc.value.kind == ErrorKind.ALREADY_PROCESSED

    assert trades.respond_to_proposal(created["id"], "user-3", "ACCEPT")["status"] == "ACCEPTED"
    assert seed.roster(a) == {102, 301}
    assert seed.roster(b) == {202, 101}
    assert seed.roster(c) == {302, 201}


def test_draft_picks_and_faab_change_hands(seed, trades):
    lg = seed.build({"waiverMode": "FAAB"})
    a, b = lg.team_ids[0], lg.team_ids[1]
    pick_id = seed.pick(lg.league_id, a)

    items = [
        {"fromTeamId": a, "toTeamId": b, "itemType": "DRAFT_PICK", "draftPickId": pick_id},
        {"fromTeamId": b, "toTeamId": a, "itemType": "FAAB", "faabAmount": 10},
    ]
    created = trades.create_proposal(lg.league_id, "user-1", a, items)
    trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert trades.roster.get_draft_pick(pick_id)["ownerTeamId"] == b
    assert seed.team_row(a)["faabBudget"] == 110
    assert seed.team_row(b)["faabBudget"] == 90
    assert len(seed.logs(tradeId=created["id"])) == 4


def test_faab_sender_must_cover_amount(seed, trades):
    league_id = seed.league({"waiverMode": "FAAB"})
    a = seed.team(league_id, "user-1")
    b = seed.team(league_id, "user-2", priority=2, spent=95)
    seed.player(league_id, a, 101)

    items = [player(a, b, 101), {"fromTeamId": b, "toTeamId": a, "itemType": "FAAB", "faabAmount": 10}]

    with pytest.raises(SettlementError) as exc:
        trades.create_proposal(league_id, "user-1", a, items)

    assert exc.value.kind == ErrorKind.INSUFFICIENT_BUDGET


def test_trade_that_overfills_a_roster_is_rejected(seed, trades):
    lg = seed.build({"maxRosterSize": 2})
    a, b = lg.team_ids[0], lg.team_ids[1]

    with pytest.raises(SettlementError) as exc:
        trades.create_proposal(lg.league_id, "user-1", a, [player(a, b, 101)])

    assert exc.value.kind == ErrorKind.ROSTER_FULL

    # an even swap keeps both rosters at the limit
    created = trades.create_proposal(lg.league_id, "user-1", a, [player(a, b, 101), player(b, a, 201)])
    assert created["status"] == "PENDING"


def test_trade_deadline_blocks_new_proposals(seed, trades):
    lg = seed.build({"tradeDeadline": (NOW - timedelta(days=1)).isoformat()})
    a, _, items = swap(lg)

    with pytest.raises(SettlementError) as exc:
        trades.create_proposal(lg.league_id, "user-1", a, items)

    assert exc.value.kind == ErrorKind.INVALID_REQUEST
    assert "deadline" in exc.value.message


def test_failure_mid_settlement_leaves_no_partial_trade(seed, trades, monkeypatch):
    lg = seed.build()
    a, b, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    applied = []
    real_apply = trades.settlement._apply_incoming

    def fail_on_second_item(conn, league_id, trade_id, item, now):
        if applied:
            raise RuntimeError("connection reset")
        applied.append(item)
        return real_apply(conn, league_id, trade_id, item, now)

    monkeypatch.setattr(trades.settlement, "_apply_incoming", fail_on_second_item)

    with pytest.raises(SettlementError) as exc:
        trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert exc.value.kind == ErrorKind.INTERNAL
    assert seed.roster(a) == {101, 102}
    assert seed.roster(b) == {201, 202}
    assert seed.logs() == []

    row = seed.trade(created["id"])
    assert row["status"] == "PENDING"
    assert row["settledAt"] is None


def test_notifier_failure_does_not_block_settlement(engine, seed, clock):
    class BrokenNotifier(Notifier):
        def deliver(self, target, message):
            raise ConnectionError("socket server down")

    model = TransactionModel(engine, notifier=BrokenNotifier(), clock=clock)
    lg = seed.build()
    a, b, items = swap(lg)

    created = model.create_proposal(lg.league_id, "user-1", a, items)
    result = model.respond_to_proposal(created["id"], "user-2", "ACCEPT")

    assert result["status"] == "ACCEPTED"
    assert seed.roster(b) == {101, 202}


def test_open_trades_split_by_direction_and_hide_elapsed(seed, trades, clock):
    lg = seed.build()
    a, b, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    mine = trades.get_open_trades_for_user(lg.league_id, "user-1")
    theirs = trades.get_open_trades_for_user(lg.league_id, "user-2")
    assert [t["id"] for t in mine["outgoing"]] == [created["id"]]
    assert [t["id"] for t in theirs["incoming"]] == [created["id"]]
    assert theirs["incoming"][0]["items"][0]["playerId"] == 101

    clock.advance(hours=49)
    assert trades.get_open_trades_for_user(lg.league_id, "user-2")["incoming"] == []

    with pytest.raises(SettlementError) as exc:
        trades.get_open_trades_for_user(lg.league_id, "outsider")
    assert exc.value.kind == ErrorKind.NOT_IN_LEAGUE


def test_get_trade_reports_lazy_expiry(seed, trades, clock):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    clock.advance(hours=49)
    trade = trades.get_trade(created["id"], "user-3")

    assert trade["status"] == "EXPIRED"
    assert len(trade["items"]) == 2


def test_expire_elapsed_proposals_sweeps_and_notifies(seed, trades, clock, notifier):
    lg = seed.build()
    a, _, items = swap(lg)
    created = trades.create_proposal(lg.league_id, "user-1", a, items)

    assert trades.expire_elapsed_proposals() == []

    clock.advance(hours=48)
    assert trades.expire_elapsed_proposals() == [created["id"]]
    assert seed.trade(created["id"])["status"] == "EXPIRED"
    assert notifier.targets("trade:expired") == ["user-1", "user-2"]
