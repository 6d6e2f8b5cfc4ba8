# endpoints/league/leagueSettings.py
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from endpoints.transaction.errors import ErrorKind, SettlementError
from utils.timeUtils import fromDbTime


class WaiverMode:
    ROLLING = "ROLLING"
    FAAB = "FAAB"

    ALL = (ROLLING, FAAB)


@dataclass(frozen=True)
class LeagueSettings:
    waiverMode: str = WaiverMode.ROLLING
    hasVetoPeriod: bool = False
    vetoWindowHours: float = 24.0
    maxRosterSize: int = 16
    maxTradeItems: int = 20
    tradeExpirationHours: float = 48.0
    tradeDeadline: Optional[datetime] = None

    @property
    def usesFaab(self) -> bool:
        return self.waiverMode == WaiverMode.FAAB

    @classmethod
    def parse(cls, raw: Any) -> "LeagueSettings":
        """
        Parses League.settings (a JSON object, or its string form) into a
        typed struct. Unknown keys are ignored; missing keys take defaults.
        """
        if raw is None:
            raw = {}
        if isinstance(raw, str):
            raw = json.loads(raw or "{}")
        if not isinstance(raw, dict):
            raise SettlementError(ErrorKind.INTERNAL, "League.settings must be a JSON object")

        defaults = cls()

        waiver_mode = str(raw.get("waiverMode", defaults.waiverMode)).upper()
        if waiver_mode not in WaiverMode.ALL:
            raise SettlementError(ErrorKind.INTERNAL, f"Unknown waiverMode {waiver_mode}")

        try:
            settings = cls(
                waiverMode=waiver_mode,
                hasVetoPeriod=bool(raw.get("hasVetoPeriod", defaults.hasVetoPeriod)),
                vetoWindowHours=float(raw.get("vetoWindowHours", defaults.vetoWindowHours)),
                maxRosterSize=int(raw.get("maxRosterSize", defaults.maxRosterSize)),
                maxTradeItems=int(raw.get("maxTradeItems", defaults.maxTradeItems)),
                tradeExpirationHours=float(
                    raw.get("tradeExpirationHours", defaults.tradeExpirationHours)
                ),
                tradeDeadline=fromDbTime(raw.get("tradeDeadline")),
            )
        except (TypeError, ValueError) as e:
            raise SettlementError(ErrorKind.INTERNAL, f"Invalid league settings: {e}")

        if settings.maxRosterSize <= 0 or settings.maxTradeItems <= 0:
            raise SettlementError(ErrorKind.INTERNAL, "Roster and trade limits must be positive")

        return settings
