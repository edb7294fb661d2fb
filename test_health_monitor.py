#!/usr/bin/env python3
"""
Tests for scheduler health monitoring and the activity timeline
"""

import os
import shutil
import sys
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

sys.path.append(str(Path(__file__).parent))

from health_monitor import HealthMonitor
from scheduler import (
    DatabaseManager, Occurrence, OccurrenceScheduler, OccurrenceStatus, Recurrence
)


class TestHealthMonitor(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "health.db")
        self.db_manager = DatabaseManager(self.db_path)
        self.scheduler = OccurrenceScheduler(self.db_manager)
        self.now = datetime(2024, 3, 1, 12, 0, 0)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def add_occurrence(self, occurrence_id, subject_id, fire_instant, status, at=None):
        """Create an occurrence and walk it to ``status``; ``at`` stamps the claim and failure"""
        at = (at or fire_instant).isoformat()
        self.db_manager.create_occurrence(Occurrence(
            id=occurrence_id, subject_id=subject_id, subject_name="Ada", destination="+15550000001",
            body="Happy Birthday, Ada!", fire_instant=fire_instant, status=OccurrenceStatus.SCHEDULED,
            created_at=self.now.isoformat(), recurrence_year=fire_instant.year,
        ))
        path = {
            OccurrenceStatus.SCHEDULED: [],
            OccurrenceStatus.SENDING: [OccurrenceStatus.SENDING],
            OccurrenceStatus.FAILED: [OccurrenceStatus.SENDING, OccurrenceStatus.FAILED],
            OccurrenceStatus.SENT: [OccurrenceStatus.SENDING, OccurrenceStatus.SENT],
        }[status]
        stamps = {
            OccurrenceStatus.SENDING: {'claimed_at': at},
            OccurrenceStatus.FAILED: {'failed_at': at, 'error_text': "SMS API error (500): down"},
            OccurrenceStatus.SENT: {'sent_at': at},
        }
        current = OccurrenceStatus.SCHEDULED
        for target in path:
            self.db_manager.transition_occurrence(occurrence_id, current, target, **stamps[target])
            current = target

    def test_healthy_when_gateway_configured_and_nothing_pending(self):
        self.scheduler.register_subject("Ada", "+15550000001", Recurrence(3, 15), now=self.now)
        monitor = HealthMonitor(self.db_path, gateway_configured=True)

        health = monitor.get_health_status(now=self.now)

        self.assertEqual(health.status, "healthy")
        self.assertEqual(health.subject_count, 1)
        self.assertEqual(health.status_counts["scheduled"], 1)
        self.assertEqual(health.issues, [])

    def test_simulated_gateway_is_degraded(self):
        health = HealthMonitor(self.db_path).get_health_status(now=self.now)
        self.assertEqual(health.status, "degraded")
        self.assertFalse(health.gateway_configured)

    def test_reports_overdue_stuck_and_failed(self):
        self.add_occurrence("overdue", "s1", datetime(2024, 2, 29, 9, 0), OccurrenceStatus.SCHEDULED)
        self.add_occurrence("stuck", "s2", datetime(2024, 2, 29, 9, 0), OccurrenceStatus.SENDING)
        self.add_occurrence("failed", "s3", datetime(2024, 3, 1, 9, 0), OccurrenceStatus.FAILED)
        self.add_occurrence("old-failure", "s4", datetime(2023, 3, 1, 9, 0), OccurrenceStatus.FAILED)
        monitor = HealthMonitor(self.db_path, gateway_configured=True)

        health = monitor.get_health_status(now=self.now)

        self.assertEqual(health.status, "degraded")
        self.assertEqual(health.overdue_scheduled, 1)
        self.assertEqual(health.stuck_sending, 1)
        self.assertEqual(health.failed_24h, 1)
        self.assertEqual(health.status_counts["failed"], 2)
        self.assertEqual(len(health.issues), 3)

    def test_backlog_is_judged_by_claim_and_failure_times(self):
        # Due two days ago while the dispatcher was down, handled just now
        fire_instant = datetime(2024, 3, 15, 9, 0)
        now = datetime(2024, 3, 17, 9, 5)
        self.add_occurrence("late-failure", "s1", fire_instant, OccurrenceStatus.FAILED,
                            at=datetime(2024, 3, 17, 9, 4))
        self.add_occurrence("late-claim", "s2", fire_instant, OccurrenceStatus.SENDING,
                            at=datetime(2024, 3, 17, 9, 4, 59))
        monitor = HealthMonitor(self.db_path, gateway_configured=True)

        health = monitor.get_health_status(now=now)

        self.assertEqual(health.failed_24h, 1)
        self.assertEqual(health.stuck_sending, 0)

    def test_claim_older_than_threshold_is_stuck(self):
        self.add_occurrence("stuck", "s1", datetime(2024, 3, 1, 9, 0), OccurrenceStatus.SENDING,
                            at=datetime(2024, 3, 1, 11, 45))
        monitor = HealthMonitor(self.db_path, gateway_configured=True)

        self.assertEqual(monitor.count_stuck_sending(self.now), 1)
        self.assertEqual(monitor.count_stuck_sending(datetime(2024, 3, 1, 11, 50)), 0)

    def test_missing_database_is_unhealthy(self):
        monitor = HealthMonitor(os.path.join(self.temp_dir, "absent", "none.db"), gateway_configured=True)
        self.assertEqual(monitor.get_health_status(now=self.now).status, "unhealthy")

    def test_timeline_orders_scheduled_first_then_newest(self):
        subject, upcoming = self.scheduler.register_subject(
            "Ada", "+15550000001", Recurrence(3, 15), now=self.now
        )
        self.add_occurrence("sent-2022", subject.id, datetime(2022, 3, 15, 9, 0), OccurrenceStatus.SENT)
        self.add_occurrence("sent-2023", subject.id, datetime(2023, 3, 15, 9, 0), OccurrenceStatus.SENT)
        self.add_occurrence("orphan", "deleted-subject", datetime(2021, 6, 1, 9, 0), OccurrenceStatus.FAILED)

        timeline = HealthMonitor(self.db_path).get_timeline()

        self.assertEqual([entry['id'] for entry in timeline],
                         [upcoming.id, "sent-2023", "sent-2022", "orphan"])
        self.assertTrue(timeline[0]['subject_exists'])
        self.assertFalse(timeline[-1]['subject_exists'])
        self.assertEqual(timeline[0]['status'], "scheduled")
        self.assertEqual(timeline[0]['fire_instant'], "2024-03-15T09:00:00")

    def test_system_summary(self):
        summary = HealthMonitor(self.db_path).get_system_summary()
        self.assertIn("health_status", summary)
        self.assertEqual(summary["system_info"]["database_path"], self.db_path)


if __name__ == '__main__':
    unittest.main(verbosity=2)
