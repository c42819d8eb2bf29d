# fuelwatch/notifications/alert_scheduler.py
from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Protocol, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelwatch.core.errors import DispatchError, ResolutionError, ValidationError
from fuelwatch.core.fuel import Coordinates, FuelType
from fuelwatch.core.locks import ALERT_LOCK, KeyedLock
from fuelwatch.core.settings import settings
from fuelwatch.db.base import now_utc
from fuelwatch.db.models_rules import AlertRule
from fuelwatch.db.session import SessionLocal
from fuelwatch.notifications.evaluation import AlertNotification, Decision, build_notification, count_recent, evaluate_rule
from fuelwatch.runs.recorder import AlertRunResult, RunStatus, pass_status, record_alert_run
from fuelwatch.search.service import RadiusSearch
from fuelwatch.services.push_service import ExpoPushDispatcher

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    async def dispatch(self, db: AsyncSession, user_id: str, notification: AlertNotification) -> int: ...


class Outcome(str, Enum):
    SKIPPED = "skipped"
    EVALUATED = "evaluated"
    NOTIFIED = "notified"
    SUPPRESSED = "suppressed"
    ERROR = "error"


async def resolve_origin(db: AsyncSession, rule: AlertRule, search: RadiusSearch) -> Coordinates:
    # coordinates win when a stored rule carries both forms
    if rule.lat is not None and rule.lng is not None:
        return Coordinates(lat=rule.lat, lng=rule.lng)
    if rule.center_postcode:
        return await search.geocode_cache.resolve(db, rule.center_postcode)
    raise ResolutionError("", "Rule has no location")


async def cheapest_price(db: AsyncSession, rule: AlertRule, search: RadiusSearch):
    """Cheapest in-radius station for the rule, or None."""
    origin = await resolve_origin(db, rule, search)
    results = await search.search_by_coordinates(db, origin, rule.radius_miles, FuelType(rule.fuel_type), limit=1)
    return results[0] if results else None


class AlertEvaluator:
    """
    One alert pass over every stored rule.

    Each rule gets its own session and is re-read under a per-rule lock, so two
    evaluations of the same rule can never both send. A per-user lock covers the
    user-wide throttle count through to the commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        search: RadiusSearch | None = None,
        dispatcher: Dispatcher | None = None,
        concurrency: int | None = None,
        max_per_window: int | None = None,
        window_hours: int | None = None,
        max_per_user: int | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.search = search or RadiusSearch()
        self.dispatcher = dispatcher or ExpoPushDispatcher()
        self.concurrency = max(1, concurrency or settings.ALERT_CONCURRENCY)
        self.max_per_window = max_per_window if max_per_window is not None else settings.ALERT_MAX_PER_WINDOW
        self.window_hours = window_hours if window_hours is not None else settings.ALERT_WINDOW_HOURS
        self.max_per_user = max_per_user if max_per_user is not None else settings.ALERT_MAX_PER_USER
        self._rule_locks = KeyedLock()
        self._user_locks = KeyedLock()

    async def _evaluate(self, db: AsyncSession, rule: AlertRule) -> Tuple[Outcome, Optional[str]]:
        if not rule.enabled:
            return Outcome.SKIPPED, None

        try:
            cheapest = await cheapest_price(db, rule, self.search)
        except (ResolutionError, ValidationError, ValueError) as e:
            return Outcome.ERROR, f"Rule {rule.id}: {e}"

        if cheapest is None:
            return Outcome.EVALUATED, None

        now = now_utc()
        user_recent = 0
        if self.max_per_user:
            q = await db.execute(select(AlertRule.recent_notifications).where(AlertRule.user_id == rule.user_id))
            user_recent = count_recent(q.scalars().all(), now, self.window_hours)

        ev = evaluate_rule(
            rule,
            cheapest.price_ppl,
            now,
            max_per_window=self.max_per_window,
            window_hours=self.window_hours,
            user_recent=user_recent,
            max_per_user=self.max_per_user,
        )

        if ev.decision == Decision.BASELINE:
            rule.baseline_price = ev.current_price
            await db.commit()
            return Outcome.EVALUATED, None

        if ev.decision == Decision.NO_CHANGE:
            return Outcome.EVALUATED, None

        if ev.decision == Decision.SUPPRESS:
            rule.last_suppressed_price = ev.current_price
            rule.recent_notifications = list(ev.window)
            await db.commit()
            logger.info(
                "alert suppressed, %d sent for rule and %d for user in window",
                len(ev.window),
                user_recent,
                extra={"rule_id": rule.id, "price": ev.current_price},
            )
            return Outcome.SUPPRESSED, None

        notification = build_notification(cheapest, ev.drop)
        try:
            await self.dispatcher.dispatch(db, rule.user_id, notification)
        except DispatchError as e:
            await db.rollback()
            return Outcome.ERROR, f"Rule {rule.id}: dispatch failed: {e}"

        rule.last_triggered_at = now
        rule.last_notified_price = ev.current_price
        # new list so the JSON column is flagged dirty
        rule.recent_notifications = [*ev.window, now.isoformat()]
        await db.commit()
        logger.info(
            "alert sent",
            extra={"rule_id": rule.id, "station_id": cheapest.station_id, "price": ev.current_price, "drop": ev.drop},
        )
        return Outcome.NOTIFIED, None

    async def _evaluate_one(self, rule_id: str) -> Tuple[Outcome, Optional[str]]:
        async with self._rule_locks.hold(rule_id):
            async with self.session_factory() as db:
                try:
                    rule = await db.get(AlertRule, rule_id)
                    if rule is None:
                        # deleted since the pass started
                        return Outcome.SKIPPED, None
                    async with self._user_locks.hold(rule.user_id):
                        return await self._evaluate(db, rule)
                except SQLAlchemyError as e:
                    await db.rollback()
                    logger.warning("rule %s failed: %s", rule_id, e)
                    return Outcome.ERROR, f"Rule {rule_id}: {e}"

    async def run_pass(self) -> AlertRunResult:
        started = now_utc()
        result = AlertRunResult(started_at=started, finished_at=started, status=RunStatus.SUCCESS)

        try:
            async with self.session_factory() as db:
                q = await db.execute(select(AlertRule.id).order_by(AlertRule.created_at, AlertRule.id))
                rule_ids = list(q.scalars().all())
            result.rules_total = len(rule_ids)

            sem = asyncio.Semaphore(self.concurrency)

            async def _worker(rule_id: str):
                async with sem:
                    return rule_id, *(await self._evaluate_one(rule_id))

            outcomes = await asyncio.gather(*(_worker(rid) for rid in rule_ids))
        except Exception as e:
            logger.exception("alert pass aborted")
            result.errors.append(f"Alert pass aborted: {e}")
            result.status = RunStatus.FAILED
        else:
            for rule_id, outcome, error in outcomes:
                if outcome == Outcome.SKIPPED:
                    result.skipped.append(rule_id)
                elif outcome == Outcome.ERROR:
                    result.errors.append(error)
                else:
                    result.evaluated += 1
                    if outcome == Outcome.NOTIFIED:
                        result.notified += 1
                    elif outcome == Outcome.SUPPRESSED:
                        result.suppressed += 1
            result.status = pass_status(len(result.errors), result.evaluated)

        result.finished_at = now_utc()
        async with self.session_factory() as db:
            await record_alert_run(db, result)

        logger.info(
            "alert pass finished: %s (%d rules, %d notified, %d suppressed, %d errors)",
            result.status.value,
            result.rules_total,
            result.notified,
            result.suppressed,
            len(result.errors),
        )
        return result


async def evaluate_and_notify_once(evaluator: AlertEvaluator | None = None) -> AlertRunResult:
    """One scheduler tick. Callers hold ALERT_LOCK."""
    return await (evaluator or AlertEvaluator()).run_pass()


async def start_alert_scheduler() -> None:
    """
    Runs forever inside the app's startup task.
    """
    evaluator = AlertEvaluator()
    while True:
        try:
            if ALERT_LOCK.locked():
                logger.info("alert pass skipped, previous pass still running")
            else:
                async with ALERT_LOCK:
                    await evaluate_and_notify_once(evaluator)
        except Exception:
            # keep scheduler alive
            logger.exception("scheduled alert pass failed")
        await asyncio.sleep(settings.ALERT_POLL_SECONDS)
