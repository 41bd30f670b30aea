"""
walletwars/prizes.py - Prize share tables and payout amounts.

Pure functions, no I/O. A tournament's distribution table is picked from its
participant count (and the mega flag), then each rank's amount is the pool
times its percentage, rounded down to one wei so the awards never add up to
more than the pool.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal

# Smallest unit the escrow contract can move (1 wei, in ether).
BASE_UNIT = Decimal("1e-18")


@dataclass(frozen=True)
class PrizeTier:
    name: str
    min_participants: int
    percentages: tuple[int, ...]


SMALL = PrizeTier("small", 10, (50, 30, 20))
MEDIUM = PrizeTier("medium", 50, (35, 25, 15, 10, 8, 7))
LARGE = PrizeTier("large", 100, (30, 20, 15, 10, 8, 7, 5, 3, 2))
MEGA = PrizeTier(
    "mega",
    50,
    (26, 16, 11, 9, 6, 5, 4, 3, 3, 2, 2, 2, 2, 2, 2, 1, 1, 1, 1, 1),
)

# Ascending by threshold. Mega is only reachable through the flag.
STANDARD_TIERS = (SMALL, MEDIUM, LARGE)


@dataclass
class PrizeShare:
    rank: int  # 1-based
    percentage: int
    amount: Decimal


class PrizeCalculator:
    """Maps (participant_count, is_mega) to a share table and amounts."""

    def __init__(self, tiers: tuple[PrizeTier, ...] = STANDARD_TIERS, mega: PrizeTier = MEGA):
        self.tiers = tuple(sorted(tiers, key=lambda t: t.min_participants))
        self.mega = mega

    def select_tier(self, participant_count: int, is_mega: bool = False) -> PrizeTier:
        """Highest threshold the count satisfies. Below every threshold -> smallest tier."""
        if is_mega and participant_count >= self.mega.min_participants:
            return self.mega
        selected = self.tiers[0]
        for tier in self.tiers:
            if participant_count >= tier.min_participants:
                selected = tier
        return selected

    def percentages(self, participant_count: int, is_mega: bool = False) -> list[int]:
        return list(self.select_tier(participant_count, is_mega).percentages)

    @staticmethod
    def amount(total_pool: Decimal, percentage: int) -> Decimal:
        return (total_pool * percentage / 100).quantize(BASE_UNIT, rounding=ROUND_DOWN)

    def distribute(
        self,
        total_pool: Decimal,
        participant_count: int,
        is_mega: bool = False,
        ranked: int | None = None,
    ) -> list[PrizeShare]:
        """Share per rank.

        The table comes from participant_count. When fewer entries are ranked
        (or took part) than the table has places, the unclaimed places' share
        goes to first place, so percentages still sum to 100.
        """
        pcts = self.percentages(participant_count, is_mega)
        places = min(len(pcts), participant_count if ranked is None else ranked)
        if places <= 0:
            return []
        if places < len(pcts):
            pcts = [pcts[0] + sum(pcts[places:])] + pcts[1:places]
        return [
            PrizeShare(rank=i + 1, percentage=pct, amount=self.amount(total_pool, pct))
            for i, pct in enumerate(pcts)
        ]


def prize_pool(participant_count: int, entry_fee: Decimal, prize_pool_percentage: int) -> Decimal:
    """count * fee * pct / 100, exact in Decimal."""
    return participant_count * entry_fee * prize_pool_percentage / Decimal(100)
