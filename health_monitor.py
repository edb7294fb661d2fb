#!/usr/bin/env python3
"""
Health Monitor for Greeting Scheduler

This module provides health checks and an activity timeline for the
greeting scheduler. It reports occurrence counts per lifecycle status,
overdue and stuck occurrences, recent failures and overall scheduler status.
"""

import sqlite3
import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from scheduler import DatabaseManager, OccurrenceStatus

logger = logging.getLogger(__name__)

# ============================================================================
# HEALTH CHECK DATA STRUCTURES
# ============================================================================

@dataclass
class HealthStatus:
    """Overall health status of the scheduler system"""
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    database_connected: bool
    gateway_configured: bool
    subject_count: int
    status_counts: Dict[str, int]
    overdue_scheduled: int
    stuck_sending: int
    failed_24h: int
    issues: List[str]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

# ============================================================================
# HEALTH MONITOR CLASS
# ============================================================================

class HealthMonitor:
    """Health monitoring for the greeting scheduler"""

    def __init__(self, db_path: str, gateway_configured: bool = False,
                 overdue_grace: timedelta = timedelta(minutes=5),
                 stuck_after: timedelta = timedelta(minutes=10)):
        self.db_path = db_path
        self.gateway_configured = gateway_configured
        self.overdue_grace = overdue_grace
        self.stuck_after = stuck_after
        self.start_time = datetime.now()

    def get_health_status(self, now: Optional[datetime] = None) -> HealthStatus:
        """Get current health status of the system"""
        now = now or datetime.now()
        issues = []

        db_connected = self.check_db_connection()
        if not db_connected:
            issues.append("Database connection failed")

        if not self.gateway_configured:
            issues.append("Gateway not configured, greetings are simulated")

        overdue = self.count_overdue_scheduled(now)
        if overdue:
            issues.append(f"{overdue} scheduled greeting(s) past due")

        stuck = self.count_stuck_sending(now)
        if stuck:
            issues.append(f"{stuck} greeting(s) stuck in sending")

        failed = self.count_failed_24h(now)
        if failed:
            issues.append(f"{failed} greeting(s) failed in the last 24h")

        if not db_connected:
            status = "unhealthy"
        elif issues:
            status = "degraded"
        else:
            status = "healthy"

        return HealthStatus(
            status=status,
            timestamp=now.isoformat(),
            database_connected=db_connected,
            gateway_configured=self.gateway_configured,
            subject_count=self.count_subjects(),
            status_counts=self.count_by_status(),
            overdue_scheduled=overdue,
            stuck_sending=stuck,
            failed_24h=failed,
            issues=issues
        )

    def check_db_connection(self) -> bool:
        """Check if database connection is working"""
        try:
            with sqlite3.connect(self.db_path, timeout=5) as conn:
                conn.execute("SELECT COUNT(*) FROM occurrences").fetchone()
                return True
        except Exception as e:
            logger.error(f"Database connection check failed: {e}")
            return False

    def _count(self, sql: str, params=()) -> int:
        try:
            with sqlite3.connect(self.db_path) as conn:
                return conn.execute(sql, params).fetchone()[0] or 0
        except Exception as e:
            logger.error(f"Health query failed: {e}")
            return 0

    def count_subjects(self) -> int:
        return self._count("SELECT COUNT(*) FROM subjects")

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OccurrenceStatus}
        try:
            with sqlite3.connect(self.db_path) as conn:
                for status, count in conn.execute(
                        "SELECT status, COUNT(*) FROM occurrences GROUP BY status"):
                    counts[status] = count
        except Exception as e:
            logger.error(f"Error counting occurrences by status: {e}")
        return counts

    def count_overdue_scheduled(self, now: datetime) -> int:
        """Scheduled occurrences the dispatch loop should already have picked up"""
        cutoff = now - self.overdue_grace
        return self._count("""
            SELECT COUNT(*) FROM occurrences
            WHERE status = ? AND fire_instant < ?
        """, (OccurrenceStatus.SCHEDULED.value, cutoff.isoformat()))

    def count_stuck_sending(self, now: datetime) -> int:
        """Claimed occurrences that never reached a send outcome"""
        cutoff = now - self.stuck_after
        # Rows from before claim times were recorded fall back to the fire instant
        return self._count("""
            SELECT COUNT(*) FROM occurrences
            WHERE status = ? AND COALESCE(claimed_at, fire_instant) < ?
        """, (OccurrenceStatus.SENDING.value, cutoff.isoformat()))

    def count_failed_24h(self, now: datetime) -> int:
        cutoff = now - timedelta(days=1)
        return self._count("""
            SELECT COUNT(*) FROM occurrences
            WHERE status = ?
              AND COALESCE(failed_at, fire_instant) >= ?
              AND COALESCE(failed_at, fire_instant) <= ?
        """, (OccurrenceStatus.FAILED.value, cutoff.isoformat(), now.isoformat()))

    def get_timeline(self) -> List[Dict[str, Any]]:
        """
        Activity feed: scheduled greetings first, then everything else,
        each group newest fire instant first.
        """
        db_manager = DatabaseManager(self.db_path)
        subject_ids = {subject.id for subject in db_manager.list_subjects()}

        occurrences = sorted(
            db_manager.list_occurrences(),
            key=lambda o: o.fire_instant,
            reverse=True
        )
        occurrences.sort(key=lambda o: o.status != OccurrenceStatus.SCHEDULED)

        timeline = []
        for occurrence in occurrences:
            entry = occurrence.to_dict()
            entry['subject_exists'] = occurrence.subject_id in subject_ids
            timeline.append(entry)
        return timeline

    def get_system_summary(self) -> Dict[str, Any]:
        """Get a comprehensive system summary"""
        health = self.get_health_status()

        return {
            "health_status": health.to_dict(),
            "system_info": {
                "uptime_seconds": (datetime.now() - self.start_time).total_seconds(),
                "database_path": self.db_path,
                "monitoring_timestamp": datetime.now().isoformat()
            }
        }

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for health monitoring"""
    import argparse

    from scheduler import SchedulingConfig

    parser = argparse.ArgumentParser(description='Greeting Scheduler Health Monitor')
    parser.add_argument('--db', help='SQLite database path (defaults to the configured path)')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--timeline', action='store_true', help='Show the activity timeline')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')

    args = parser.parse_args()

    config = SchedulingConfig.from_yaml(args.config) if args.config else SchedulingConfig()
    config.apply_environment()
    monitor = HealthMonitor(args.db or config.db_path, gateway_configured=config.twilio.is_configured())

    if args.timeline:
        data = monitor.get_timeline()
        if args.json:
            print(json.dumps(data, indent=2))
        else:
            for entry in data:
                marker = "" if entry['subject_exists'] else " (subject deleted)"
                print(f"{entry['fire_instant']}  {entry['status']:<10} {entry['subject_name']}{marker}")
        return 0

    data = monitor.get_system_summary()
    if args.json:
        print(json.dumps(data, indent=2))
    else:
        health = data['health_status']
        print(f"System Status: {health['status'].upper()}")
        print(f"Database Connected: {health['database_connected']}")
        print(f"Gateway Configured: {health['gateway_configured']}")
        print(f"Subjects: {health['subject_count']:,}")
        for status, count in health['status_counts'].items():
            print(f"  {status:<10} {count:,}")
        if health['issues']:
            print("Issues:")
            for issue in health['issues']:
                print(f"  - {issue}")
    return 0

if __name__ == '__main__':
    raise SystemExit(main())
