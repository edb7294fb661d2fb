#!/usr/bin/env python3
"""
Greeting Dispatch Loop

Runs on a fixed cadence and promotes due occurrences through the delivery
state machine:

    scheduled -> sending -> sent -> delivered
                        \\-> failed
    scheduled -> cancelled

Every state change is persisted before and after the externally visible send
so an observer of the store always sees what actually happened. A due
occurrence is claimed with a compare-and-swap on its status, and cycles never
overlap within one process, so a greeting is sent at most once per claim.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from gateway import NotificationGateway, SendResult, gateway_from_config, simulated_send
from scheduler import (
    DatabaseManager, Occurrence, OccurrenceScheduler, OccurrenceStatus, SchedulingConfig
)

logger = logging.getLogger(__name__)

DISPATCH_JOB_ID = "dispatch_cycle"

# ============================================================================
# CYCLE RESULT
# ============================================================================

@dataclass
class CycleResult:
    """Summary of one dispatch cycle"""
    started_at: str
    skipped: bool = False
    due: int = 0
    claimed: int = 0
    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    rearmed: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

# ============================================================================
# DISPATCH LOOP
# ============================================================================

class DispatchLoop:
    """Polls the store for due occurrences and sends them through a gateway"""

    def __init__(self, db_manager: DatabaseManager, scheduler: OccurrenceScheduler,
                 config: Optional[SchedulingConfig] = None,
                 gateway: Optional[NotificationGateway] = None):
        self.db_manager = db_manager
        self.scheduler = scheduler
        self.config = config or scheduler.config
        self.gateway = gateway
        self._cycle_lock = asyncio.Lock()
        self._confirmations: Set[asyncio.Task] = set()
        self._timer: Optional[AsyncIOScheduler] = None

    async def run_cycle(self, now: Optional[datetime] = None,
                        gateway: Optional[NotificationGateway] = None) -> CycleResult:
        """
        Run one dispatch cycle.

        The gateway is fixed for the whole cycle: the explicit argument, else
        the injected one, else simulated sends. A trigger that fires while a
        previous cycle is still running is skipped.
        """
        result = CycleResult(started_at=datetime.now().isoformat())

        if self._cycle_lock.locked():
            logger.warning("Previous dispatch cycle still running, skipping this trigger")
            result.skipped = True
            return result

        async with self._cycle_lock:
            now = now or datetime.now()
            channel = gateway if gateway is not None else self.gateway

            for occurrence in self.db_manager.list_occurrences():
                if not occurrence.is_due(now):
                    continue
                result.due += 1

                if not self.db_manager.transition_occurrence(
                        occurrence.id, OccurrenceStatus.SCHEDULED, OccurrenceStatus.SENDING,
                        claimed_at=datetime.now().isoformat()):
                    logger.info(f"Occurrence {occurrence.id} was claimed elsewhere, skipping")
                    continue
                result.claimed += 1

                logger.info(f"Processing greeting for {occurrence.subject_name} ({occurrence.destination})")
                await self._deliver(occurrence, channel, result, now)

        if result.claimed:
            logger.info(
                f"Dispatch cycle complete: {len(result.sent)} sent, "
                f"{len(result.failed)} failed, {len(result.rearmed)} re-armed"
            )
        return result

    async def run_cycle_safely(self) -> Optional[CycleResult]:
        """Timer entry point; a failing cycle must not stop the timer"""
        try:
            return await self.run_cycle()
        except Exception as e:
            logger.error(f"Dispatch cycle failed: {e}", exc_info=True)
            return None

    async def _send(self, channel: Optional[NotificationGateway], address: str, body: str) -> SendResult:
        if channel is None:
            return simulated_send(address, body)
        try:
            return await channel.send(address, body)
        except Exception as e:
            logger.error(f"Gateway {channel.name} raised while sending to {address}: {e}")
            return SendResult(success=False, error=str(e))

    async def _deliver(self, occurrence: Occurrence, channel: Optional[NotificationGateway],
                       result: Optional[CycleResult] = None, now: Optional[datetime] = None):
        """Send a claimed (status 'sending') occurrence and record the outcome"""
        send_result = await self._send(channel, occurrence.destination, occurrence.body)

        if not send_result.success:
            self.db_manager.transition_occurrence(
                occurrence.id, OccurrenceStatus.SENDING, OccurrenceStatus.FAILED,
                error_text=send_result.error,
                failed_at=datetime.now().isoformat(),
            )
            logger.warning(f"Greeting {occurrence.id} to {occurrence.destination} failed: {send_result.error}")
            if result:
                result.failed.append(occurrence.id)
            return

        self.db_manager.transition_occurrence(
            occurrence.id, OccurrenceStatus.SENDING, OccurrenceStatus.SENT,
            provider_id=send_result.provider_id,
            sent_at=datetime.now().isoformat(),
        )
        self._schedule_delivery_confirmation(occurrence.id)
        if result:
            result.sent.append(occurrence.id)

        # Arm next year right away instead of waiting for a full schedule pass
        next_occurrence = self.scheduler.ensure_scheduled(occurrence.subject_id, now=now)
        if next_occurrence and result:
            result.rearmed.append(next_occurrence.id)

    # -- delivery confirmation ----------------------------------------------

    def confirm_delivery(self, occurrence_id: str, delivered_at: Optional[str] = None) -> bool:
        """
        Mark a sent occurrence as delivered.

        Driven by a fixed delay after the send today; a provider receipt
        callback can call this directly.
        """
        return self.db_manager.transition_occurrence(
            occurrence_id, OccurrenceStatus.SENT, OccurrenceStatus.DELIVERED,
            delivered_at=delivered_at or datetime.now().isoformat(),
        )

    def _schedule_delivery_confirmation(self, occurrence_id: str):
        task = asyncio.get_running_loop().create_task(self._confirm_after_delay(occurrence_id))
        self._confirmations.add(task)
        task.add_done_callback(self._confirmations.discard)

    async def _confirm_after_delay(self, occurrence_id: str):
        await asyncio.sleep(self.config.delivery_confirmation_delay_seconds)
        try:
            self.confirm_delivery(occurrence_id)
        except Exception as e:
            logger.error(f"Could not confirm delivery of {occurrence_id}: {e}")

    async def drain(self):
        """Wait for outstanding delivery confirmations"""
        while self._confirmations:
            await asyncio.gather(*list(self._confirmations), return_exceptions=True)

    # -- operator actions -----------------------------------------------------

    async def send_now(self, subject_id: str, body: Optional[str] = None) -> Optional[Occurrence]:
        """Send a greeting to a subject immediately, outside its yearly schedule"""
        subject = self.db_manager.get_subject(subject_id)
        if subject is None:
            logger.warning(f"Cannot send now: subject {subject_id} not found")
            return None

        now = datetime.now()
        occurrence = Occurrence(
            id=str(uuid.uuid4()),
            subject_id=subject.id,
            subject_name=subject.name,
            destination=subject.destination,
            body=body or self.scheduler.renderer.render(subject.name),
            fire_instant=now,
            status=OccurrenceStatus.SENDING,
            created_at=now.isoformat(),
            claimed_at=now.isoformat(),
            recurrence_year=now.year,
        )
        self.db_manager.create_occurrence(occurrence)
        await self._deliver(occurrence, self.gateway, now=now)
        return self.db_manager.get_occurrence(occurrence.id)

    async def resend(self, occurrence_id: str) -> Optional[Occurrence]:
        """
        Retry a failed occurrence as a new occurrence.

        The failed record stays untouched in history; the retry reuses its
        name, destination and body snapshot under a fresh id.
        """
        failed = self.db_manager.get_occurrence(occurrence_id)
        if failed is None:
            logger.warning(f"Cannot resend: occurrence {occurrence_id} not found")
            return None
        if failed.status != OccurrenceStatus.FAILED:
            logger.warning(f"Cannot resend occurrence {occurrence_id} in status {failed.status.value}")
            return None

        now = datetime.now()
        retry = Occurrence(
            id=str(uuid.uuid4()),
            subject_id=failed.subject_id,
            subject_name=failed.subject_name,
            destination=failed.destination,
            body=failed.body,
            fire_instant=now,
            status=OccurrenceStatus.SENDING,
            created_at=now.isoformat(),
            claimed_at=now.isoformat(),
            recurrence_year=now.year,
        )
        self.db_manager.create_occurrence(retry)
        logger.info(f"Resending failed greeting {occurrence_id} as {retry.id}")
        await self._deliver(retry, self.gateway, now=now)
        return self.db_manager.get_occurrence(retry.id)

    def cancel(self, occurrence_id: str) -> bool:
        """Cancel a scheduled occurrence; claimed ones run to completion"""
        cancelled = self.db_manager.cancel_occurrence(occurrence_id)
        if cancelled:
            logger.info(f"Cancelled occurrence {occurrence_id}")
            return True

        occurrence = self.db_manager.get_occurrence(occurrence_id)
        if occurrence is None:
            logger.warning(f"Cannot cancel: occurrence {occurrence_id} not found")
        elif occurrence.is_terminal:
            logger.info(f"Occurrence {occurrence_id} already {occurrence.status.value}, nothing to cancel")
        else:
            logger.info(f"Occurrence {occurrence_id} is {occurrence.status.value} and will run to completion")
        return False

    # -- timer ----------------------------------------------------------------

    async def start(self, now: Optional[datetime] = None):
        """Arm every subject, then run dispatch cycles on a fixed interval"""
        self.scheduler.schedule_all(now=now)

        self._timer = AsyncIOScheduler()
        self._timer.add_job(
            self.run_cycle_safely,
            trigger=IntervalTrigger(seconds=self.config.dispatch_interval_seconds),
            id=DISPATCH_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._timer.start()
        logger.info(f"Greeting dispatcher started (checks every {self.config.dispatch_interval_seconds}s)")

    async def stop(self):
        if self._timer and self._timer.running:
            self._timer.shutdown(wait=False)
        self._timer = None
        await self.drain()
        logger.info("Greeting dispatcher stopped")

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

async def _serve(args) -> int:
    config = SchedulingConfig.from_yaml(args.config) if args.config else SchedulingConfig()
    config.apply_environment()
    db_manager = DatabaseManager(args.db or config.db_path)
    scheduler = OccurrenceScheduler(db_manager, config)
    loop = DispatchLoop(db_manager, scheduler, config, gateway=gateway_from_config(config))

    if args.cancel:
        if not loop.cancel(args.cancel):
            print(f"Occurrence {args.cancel} was not cancelled (not scheduled)")
            return 1
        print(f"Cancelled occurrence {args.cancel}")
        return 0

    if args.send_now or args.resend:
        if args.send_now:
            occurrence = await loop.send_now(args.send_now)
        else:
            occurrence = await loop.resend(args.resend)
        await loop.drain()
        if occurrence is None:
            print("Nothing sent, see log for details")
            return 1
        occurrence = db_manager.get_occurrence(occurrence.id)
        print(json.dumps(occurrence.to_dict(), indent=2))
        return 1 if occurrence.status == OccurrenceStatus.FAILED else 0

    if args.once:
        scheduler.schedule_all()
        result = await loop.run_cycle()
        await loop.drain()
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    await loop.start()
    try:
        await asyncio.Event().wait()
    finally:
        await loop.stop()
    return 0


def main():
    """Main entry point for the dispatch daemon"""
    import argparse

    parser = argparse.ArgumentParser(description='Yearly Greeting Dispatcher')
    parser.add_argument('--db', help='SQLite database path (defaults to the configured path)')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--once', action='store_true', help='Run a single dispatch cycle and exit')
    parser.add_argument('--send-now', metavar='SUBJECT_ID', help='Send a greeting to one subject immediately and exit')
    parser.add_argument('--resend', metavar='OCCURRENCE_ID', help='Retry a failed greeting as a new occurrence and exit')
    parser.add_argument('--cancel', metavar='OCCURRENCE_ID', help='Cancel a scheduled greeting and exit')
    parser.add_argument('--quiet', '-q', action='store_true', help='Only log warnings and errors')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    if args.quiet:
        logging.basicConfig(level=logging.WARNING, format='%(levelname)s: %(message)s')
    elif args.debug:
        logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    else:
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # APScheduler logs every job execution at INFO
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    try:
        return asyncio.run(_serve(args))
    except KeyboardInterrupt:
        return 0

if __name__ == '__main__':
    raise SystemExit(main())
