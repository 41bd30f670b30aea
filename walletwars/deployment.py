"""
walletwars/deployment.py - Weekly tournament deployment.

On every configured weekday at the configured UTC time, each variant gets one
tournament instance. The trigger looks advance_deployment_days ahead and
creates whatever is missing. The store's existence check for a
(variant, start) pair is the duplicate guard: if that check can't be
answered, the pair is skipped rather than created blind.

This is one fixed cadence driven by tick(), not a job scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable

from arena.db import ArenaDB

from .config import ORCHESTRATION, WEEKDAYS, ScheduleConfig, parse_time_of_day
from .errors import WalletWarsError
from .lifecycle import LifecycleController, tournament_id_for
from .models import BatchSummary, TournamentVariant, TransitionResult
from .safety import SafetyRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DeploymentReport:
    created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


@dataclass
class TickReport:
    deployment: DeploymentReport
    transitions: list[TransitionResult]
    # Refund and payout retries, by tournament id
    settlements: dict[str, BatchSummary] = field(default_factory=dict)


class DeploymentTrigger:
    def __init__(
        self,
        controller: LifecycleController,
        db: ArenaDB,
        safety: SafetyRegistry,
        schedule: ScheduleConfig,
        variants: list[TournamentVariant],
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._controller = controller
        self._db = db
        self._safety = safety
        self._schedule = schedule
        self._variants = variants
        self._clock = clock
        self._weekdays = {WEEKDAYS.index(day) for day in schedule.deployment_days}
        self._time_of_day = time(*parse_time_of_day(schedule.deployment_time), tzinfo=timezone.utc)

    def upcoming_deployment_dates(self, now: datetime | None = None) -> list[datetime]:
        """Deployment slots after now and within the lookahead window."""
        now = (now or self._clock()).astimezone(timezone.utc)
        horizon = now + timedelta(days=self._schedule.advance_deployment_days)
        dates = []
        for offset in range(self._schedule.advance_deployment_days + 1):
            day = now.date() + timedelta(days=offset)
            if day.weekday() not in self._weekdays:
                continue
            slot = datetime.combine(day, self._time_of_day)
            if now < slot <= horizon:
                dates.append(slot)
        return dates

    def _first_slot_of_month(self, slot: datetime) -> bool:
        """Mega variants only run on the first deployment slot of each month."""
        for back in range(1, slot.day):
            if (slot - timedelta(days=back)).weekday() in self._weekdays:
                return False
        return True

    async def deploy_upcoming(self, now: datetime | None = None) -> DeploymentReport:
        """Create every missing (slot, variant) instance inside the lookahead."""
        now = now or self._clock()
        report = DeploymentReport()
        upcoming = await self._safety.persist(self._db.count_upcoming)

        for slot in self.upcoming_deployment_dates(now):
            created_for_slot = 0
            for variant in self._variants:
                if variant.is_mega and not self._first_slot_of_month(slot):
                    continue
                label = tournament_id_for(variant.name, slot)

                if upcoming >= self._schedule.max_upcoming_tournaments:
                    logger.debug(f"Upcoming limit reached, not creating {label}")
                    report.skipped.append(label)
                    continue
                if created_for_slot >= self._schedule.max_tournaments_per_date:
                    report.skipped.append(label)
                    continue

                try:
                    exists = await self._safety.persist(self._db.tournament_exists, variant.name, slot)
                except WalletWarsError as e:
                    logger.warning(f"Existence check failed for {label}, not creating: {e}")
                    report.failed.append(label)
                    continue
                if exists:
                    report.skipped.append(label)
                    continue

                try:
                    instance = await self._controller.create_tournament(variant, slot)
                except WalletWarsError as e:
                    logger.warning(f"Failed to create {label}: {e}")
                    report.failed.append(label)
                    continue

                report.created.append(instance.id)
                upcoming += 1
                created_for_slot += 1

        if report.created or report.failed:
            logger.info(
                f"Deployment: {len(report.created)} created, {len(report.skipped)} skipped, "
                f"{len(report.failed)} failed"
            )
        return report

    async def tick(self, now: datetime | None = None) -> TickReport:
        """One periodic run: deploy, advance due tournaments, then retry pending settlements."""
        now = now or self._clock()
        return await self._safety.breaker(ORCHESTRATION).call(self._tick, now)

    async def _tick(self, now: datetime) -> TickReport:
        deployment = await self.deploy_upcoming(now)
        transitions = await self._controller.advance_due(now)
        applied = [r for r in transitions if r.applied]
        if applied:
            logger.info(f"Advanced {len(applied)}/{len(transitions)} due tournaments")
        settlements = await self._controller.retry_settlements()
        return TickReport(deployment, transitions, settlements)

    async def run_forever(
        self, interval: float | None = None, stop: asyncio.Event | None = None
    ) -> None:
        """Call tick() every interval seconds until stop is set."""
        interval = interval or self._schedule.check_interval_seconds
        stop = stop or asyncio.Event()
        logger.info(f"Deployment trigger running every {interval:.0f}s")

        while not stop.is_set():
            try:
                await self.tick()
            except WalletWarsError as e:
                logger.warning(f"Tick failed: {e}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Deployment trigger stopped")
