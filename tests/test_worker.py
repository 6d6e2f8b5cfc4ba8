from datetime import timedelta

import cronProcessWaivers
from worker.tradeReviewWorker import seconds_until_next_deadline, sweep_once

REVIEW = {"hasVetoPeriod": True, "vetoWindowHours": 24}


def propose_swap(trades, lg, **kwargs):
    a, b = lg.team_ids[0], lg.team_ids[1]
    items = [
        {"fromTeamId": a, "toTeamId": b, "itemType": "PLAYER", "playerId": a * 100 + 1},
        {"fromTeamId": b, "toTeamId": a, "itemType": "PLAYER", "playerId": b * 100 + 1},
    ]
    return trades.create_proposal(lg.league_id, "user-1", a, items, **kwargs)


def test_nothing_scheduled(trades):
    assert sweep_once(trades) == 0
    assert seconds_until_next_deadline(trades) is None


def test_sweep_expires_and_finalizes(seed, trades, clock, notifier):
    lg = seed.build(REVIEW, teams=4, players_per_team=1)

    stale = propose_swap(trades, lg, expiration_hours=1)
    accepted = propose_swap(trades, lg, expiration_hours=72)
    trades.respond_to_proposal(accepted["id"], "user-2", "ACCEPT")

    # the sooner of the two deadlines wins
    assert seconds_until_next_deadline(trades) == 3600

    clock.advance(hours=2)
    assert sweep_once(trades) == 1
    assert seed.trade(stale["id"])["status"] == "EXPIRED"
    assert "trade:expired" in notifier.events()

    clock.advance(hours=22)
    assert seconds_until_next_deadline(trades) == 0
    assert sweep_once(trades) == 1
    assert seed.trade(accepted["id"])["settledAt"] is not None
    assert seed.roster(lg.team_ids[0]) == {201}

    assert sweep_once(trades) == 0
    assert seconds_until_next_deadline(trades) is None


def test_locked_player_keeps_review_open(seed, trades, clock):
    lg = seed.build(REVIEW, teams=4, players_per_team=1)
    created = propose_swap(trades, lg)
    trades.respond_to_proposal(created["id"], "user-2", "ACCEPT")
    seed.lock_player(lg.league_id, 101)

    clock.advance(hours=30)

    assert sweep_once(trades) == 0
    # overdue: the loop backs off instead of spinning
    assert seconds_until_next_deadline(trades) < 0
    assert seed.trade(created["id"])["status"] == "ACCEPTED"


def test_cron_processes_every_league_with_pending_claims(engine, seed, waivers, clock, notifier):
    first = seed.build()
    second = seed.build()
    idle = seed.build()
    waivers.submit_claim(first.league_id, "user-1", 999)
    waivers.submit_claim(second.league_id, "user-2", 999)

    assert cronProcessWaivers.get_leagues_with_pending_claims(engine) == [first.league_id, second.league_id]

    processed = cronProcessWaivers.main(engine=engine, notifier=notifier, clock=clock)

    assert processed == 2
    assert 999 in seed.roster(first.team_ids[0])
    assert 999 in seed.roster(second.team_ids[1])
    assert idle.league_id not in cronProcessWaivers.get_leagues_with_pending_claims(engine)
    assert cronProcessWaivers.get_leagues_with_pending_claims(engine) == []


def test_cron_skips_league_with_run_in_progress(engine, seed, waivers, clock, notifier):
    lg = seed.build()
    waivers.submit_claim(lg.league_id, "user-1", 999)
    seed.start_waiver_run(lg.league_id, clock() - timedelta(minutes=2))

    assert cronProcessWaivers.main(engine=engine, notifier=notifier, clock=clock) == 0
    assert cronProcessWaivers.get_leagues_with_pending_claims(engine) == [lg.league_id]
