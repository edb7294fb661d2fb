#!/usr/bin/env python3
"""
Performance Test Suite for the Greeting Scheduler

Checks that the scheduling pass and the dispatch cycle stay fast and
memory-bounded with a realistic number of subjects:
- A full schedule pass over hundreds of subjects
- Re-running the pass is idempotent and cheap
- One dispatch cycle drains a large batch of due occurrences
"""

import asyncio
import logging
import os
import shutil
import sys
import tempfile
import time
import unittest
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import psutil

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from dispatcher import DispatchLoop
from scheduler import (
    DatabaseManager, OccurrenceScheduler, OccurrenceStatus, Recurrence, SchedulingConfig, Subject
)


class PerformanceTestBase(unittest.TestCase):
    """Base class for performance tests"""

    SUBJECT_COUNT = 500

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.test_db_path = os.path.join(self.temp_dir, "perf_test.db")
        self.config = SchedulingConfig(delivery_confirmation_delay_seconds=0)
        self.db_manager = DatabaseManager(self.test_db_path)
        self.scheduler = OccurrenceScheduler(self.db_manager, self.config)
        self.now = datetime(2024, 1, 1, 0, 0, 0)

        self.process = psutil.Process()

        # Per-occurrence INFO lines would dominate the timings
        logging.disable(logging.INFO)

    def tearDown(self):
        logging.disable(logging.NOTSET)
        shutil.rmtree(self.temp_dir)

    @contextmanager
    def measure_performance(self, operation_name):
        """Context manager to measure duration and memory growth"""
        start_time = time.time()
        start_memory = self.process.memory_info().rss / 1024 / 1024  # MB
        metrics = {}

        try:
            yield metrics
        finally:
            metrics['duration'] = time.time() - start_time
            end_memory = self.process.memory_info().rss / 1024 / 1024  # MB
            metrics['memory_delta'] = end_memory - start_memory

            print(f"\n📊 PERFORMANCE METRICS - {operation_name}")
            print(f"   Duration: {metrics['duration']:.3f} seconds")
            print(f"   Memory delta: {metrics['memory_delta']:+.2f} MB")
            print(f"   Peak memory: {end_memory:.2f} MB")

    def create_subjects(self, count):
        """Spread subjects across the calendar, Feb 29 included"""
        for i in range(count):
            month = (i % 12) + 1
            day = (i % 29) + 1
            self.db_manager.add_subject(Subject(
                id=f"perf-{i}",
                name=f"Subject {i}",
                destination=f"+1555{i:07d}",
                recurrence=Recurrence(month, day),
                created_at=self.now.isoformat(),
            ))


class TestSchedulingPerformance(PerformanceTestBase):

    def test_schedule_all_at_scale(self):
        self.create_subjects(self.SUBJECT_COUNT)

        with self.measure_performance(f"schedule_all over {self.SUBJECT_COUNT} subjects") as metrics:
            armed = self.scheduler.schedule_all(now=self.now)

        self.assertEqual(len(armed), self.SUBJECT_COUNT)
        self.assertEqual(self.db_manager.count_by_status()['scheduled'], self.SUBJECT_COUNT)
        self.assertLess(metrics['duration'], 30.0)
        self.assertLess(metrics['memory_delta'], 100.0)

    def test_repeat_schedule_pass_is_idempotent(self):
        self.create_subjects(self.SUBJECT_COUNT)
        first = self.scheduler.schedule_all(now=self.now)

        with self.measure_performance("second schedule_all pass") as metrics:
            second = self.scheduler.schedule_all(now=self.now)

        self.assertEqual({o.id for o in first}, {o.id for o in second})
        self.assertEqual(len(self.db_manager.list_occurrences()), self.SUBJECT_COUNT)
        self.assertLess(metrics['duration'], 30.0)


class TestDispatchPerformance(PerformanceTestBase):

    def test_single_cycle_drains_due_backlog(self):
        count = 200
        self.create_subjects(count)
        self.scheduler.schedule_all(now=self.now)
        end_of_year = datetime(2024, 12, 31, 23, 59, 59)

        async def dispatch():
            loop = DispatchLoop(self.db_manager, self.scheduler, self.config)
            result = await loop.run_cycle(now=end_of_year)
            await loop.drain()
            return result

        with self.measure_performance(f"dispatch cycle over {count} due occurrences") as metrics:
            result = asyncio.run(dispatch())

        self.assertEqual(result.claimed, count)
        self.assertEqual(len(result.sent), count)
        self.assertEqual(len(result.rearmed), count)
        counts = self.db_manager.count_by_status()
        self.assertEqual(counts[OccurrenceStatus.DELIVERED.value], count)
        self.assertEqual(counts[OccurrenceStatus.SCHEDULED.value], count)
        self.assertLess(metrics['duration'], 60.0)


def run_performance_suite():
    """Run all performance tests with a short summary"""
    print("🚀 GREETING SCHEDULER PERFORMANCE SUITE")
    print("=" * 60)

    suite = unittest.TestSuite()
    loader = unittest.TestLoader()
    for test_class in [TestSchedulingPerformance, TestDispatchPerformance]:
        suite.addTests(loader.loadTestsFromTestCase(test_class))

    result = unittest.TextTestRunner(verbosity=2).run(suite)

    print(f"\nTests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")
    return result.wasSuccessful()


if __name__ == '__main__':
    sys.exit(0 if run_performance_suite() else 1)
