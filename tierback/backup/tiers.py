"""
Backup tiers and the calendar rule deciding which are active on a given day.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import List


class Tier(str, Enum):
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'


@dataclass(frozen=True)
class TierSchedule:
    """
    Daily is always active; weekly on ``weekly_day`` (ISO weekday, 1=Mon ...
    7=Sun); monthly on ``monthly_day`` of the month.

    A ``monthly_day`` beyond the end of a short month never fires in that month.
    """
    weekly_day: int = 6
    monthly_day: int = 1

    def active_tiers(self, today: date) -> List[Tier]:
        tiers = [Tier.DAILY]
        if today.isoweekday() == self.weekly_day:
            tiers.append(Tier.WEEKLY)
        if today.day == self.monthly_day:
            tiers.append(Tier.MONTHLY)
        return tiers

    def is_active(self, tier: Tier, today: date) -> bool:
        return tier in self.active_tiers(today)


@dataclass(frozen=True)
class TierLocations:
    """Storage locations of the three tiers in the per-tier-prefix layout."""
    root: str = ''
    weekly: str = 'weekly'
    monthly: str = 'monthly'

    def location(self, tier: Tier) -> str:
        root = self.root.strip('/')
        if tier is Tier.DAILY:
            return root
        sub = (self.weekly if tier is Tier.WEEKLY else self.monthly).strip('/')
        return f"{root}/{sub}" if root else sub
