# schema.py
#
# Table definitions for the settlement service. Queries are written as text()
# SQL against these names; this module is the DDL source for migrations
# and for the test database.
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

league = Table(
    "League",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(120), nullable=False),
    # JSON object; parsed once into LeagueSettings
    Column("settings", Text, nullable=False, default="{}"),
    Column("commissionerUserId", String(64)),
    Column("waiverRunStartedAt", DateTime(timezone=True)),
)

team = Table(
    "Team",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("ownerUserId", String(64), nullable=False),
    Column("name", String(120), nullable=False),
    Column("faabBudget", Integer, nullable=False, default=100),
    Column("faabSpent", Integer, nullable=False, default=0),
    Column("waiverPriority", Integer, nullable=False, default=1),
)

roster_slot = Table(
    "RosterSlot",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("teamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("playerId", Integer, nullable=False),
    Column("slot", String(16), nullable=False, default="BENCH"),
    Column("isLocked", Boolean, nullable=False, default=False),
    Column("acquiredVia", String(16)),
    Column("acquiredAt", DateTime(timezone=True)),
    # a player belongs to at most one team per league
    UniqueConstraint("leagueId", "playerId", name="uq_roster_slot_league_player"),
)

draft_pick_asset = Table(
    "DraftPickAsset",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("seasonYear", Integer, nullable=False),
    Column("round", Integer, nullable=False),
    Column("originalTeamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("ownerTeamId", Integer, ForeignKey("Team.id"), nullable=False),
)

trade = Table(
    "Trade",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("proposingTeamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("proposedByUserId", String(64), nullable=False),
    Column("status", String(16), nullable=False),
    Column("notes", String(500)),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True)),
    Column("expiresAt", DateTime(timezone=True), nullable=False),
    Column("processedAt", DateTime(timezone=True)),
    Column("reviewEndsAt", DateTime(timezone=True)),
    Column("settledAt", DateTime(timezone=True)),
    Column("decidedByUserId", String(64)),
    Column("rejectReason", String(500)),
    Column("counteredFromId", Integer, ForeignKey("Trade.id")),
)

trade_item = Table(
    "TradeItem",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("tradeId", Integer, ForeignKey("Trade.id"), nullable=False),
    Column("itemOrder", Integer, nullable=False),
    Column("fromTeamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("toTeamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("itemType", String(16), nullable=False),
    Column("playerId", Integer),
    Column("draftPickId", Integer, ForeignKey("DraftPickAsset.id")),
    Column("faabAmount", Integer),
)

trade_response = Table(
    "TradeResponse",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("tradeId", Integer, ForeignKey("Trade.id"), nullable=False),
    Column("teamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("userId", String(64), nullable=False),
    Column("action", String(16), nullable=False),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tradeId", "teamId", name="uq_trade_response_trade_team"),
)

trade_vote = Table(
    "TradeVote",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("tradeId", Integer, ForeignKey("Trade.id"), nullable=False),
    Column("userId", String(64), nullable=False),
    Column("teamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("vote", String(8), nullable=False),
    Column("reason", String(500)),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    UniqueConstraint("tradeId", "userId", name="uq_trade_vote_trade_user"),
)

waiver_claim = Table(
    "WaiverClaim",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("teamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("createdByUserId", String(64), nullable=False),
    Column("playerId", Integer, nullable=False),
    Column("dropPlayerId", Integer),
    Column("faabBid", Integer),
    Column("priority", Integer),
    Column("status", String(16), nullable=False),
    Column("failureReason", String(255)),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("expiresAt", DateTime(timezone=True)),
    Column("processedAt", DateTime(timezone=True)),
)

transaction_log = Table(
    "TransactionLog",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("leagueId", Integer, ForeignKey("League.id"), nullable=False),
    Column("teamId", Integer, ForeignKey("Team.id"), nullable=False),
    Column("playerId", Integer),
    Column("type", String(16), nullable=False),
    Column("direction", String(16), nullable=False),
    Column("counterpartyTeamId", Integer),
    Column("tradeId", Integer),
    Column("claimId", Integer),
    Column("details", Text),
    Column("createdAt", DateTime(timezone=True), nullable=False),
)
