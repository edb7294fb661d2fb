#!/usr/bin/env python3
"""
Greeting Scheduling System - Yearly Occurrence Scheduling

This module owns the temporal side of the greeting scheduler: computing the
next fire instant of a yearly (month/day) recurrence, persisting subjects and
their scheduled occurrences in SQLite, and arming exactly one live occurrence
per subject per recurrence year.
"""

import sqlite3
import calendar
import logging
import os
import re
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, asdict
from datetime import datetime, date, time as time_of_day
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import yaml
from tqdm import tqdm

from message_renderer import DEFAULT_TEMPLATES, MessageRenderer

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIME = time_of_day(9, 0, 0)

# ============================================================================
# ERRORS
# ============================================================================

class SchedulerError(Exception):
    """Base class for scheduler errors"""


class InvalidTransitionError(SchedulerError):
    """Raised when a status change is not allowed by the delivery state machine"""


class ImmutableFieldError(SchedulerError):
    """Raised when an update touches a field that is fixed at creation"""


class DuplicateSubjectError(SchedulerError):
    """Raised when a subject with the same destination already exists"""

# ============================================================================
# DELIVERY STATE MACHINE
# ============================================================================

class OccurrenceStatus(Enum):
    """Lifecycle status of a scheduled occurrence"""
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


ALLOWED_TRANSITIONS = {
    OccurrenceStatus.SCHEDULED: {OccurrenceStatus.SENDING, OccurrenceStatus.CANCELLED},
    OccurrenceStatus.SENDING: {OccurrenceStatus.SENT, OccurrenceStatus.FAILED},
    OccurrenceStatus.SENT: {OccurrenceStatus.DELIVERED},
    OccurrenceStatus.DELIVERED: set(),
    OccurrenceStatus.FAILED: set(),
    OccurrenceStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Only delivery bookkeeping may change after an occurrence is created
MUTABLE_OCCURRENCE_FIELDS = frozenset({
    'provider_id', 'error_text', 'claimed_at', 'sent_at', 'failed_at', 'delivered_at'
})

# ============================================================================
# DOMAIN MODEL
# ============================================================================

@dataclass(frozen=True)
class Recurrence:
    """Yearly recurrence anchor: a month and day with no year"""
    month: int
    day: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Recurrence month must be 1-12, got {self.month}")
        if not 1 <= self.day <= 31:
            raise ValueError(f"Recurrence day must be 1-31, got {self.day}")

    @classmethod
    def parse(cls, value: str) -> 'Recurrence':
        """Parse an MM-DD string"""
        match = re.fullmatch(r'(\d{1,2})-(\d{1,2})', value.strip())
        if not match:
            raise ValueError(f"Recurrence must be in MM-DD format, got {value!r}")
        return cls(month=int(match.group(1)), day=int(match.group(2)))

    @classmethod
    def from_birthday(cls, value: str) -> 'Recurrence':
        """Build a recurrence from a full YYYY-MM-DD birthday"""
        match = re.fullmatch(r'(\d{4})-(\d{2})-(\d{2})', value.strip())
        if not match:
            raise ValueError(f"Birthday must be in YYYY-MM-DD format, got {value!r}")
        return cls(month=int(match.group(2)), day=int(match.group(3)))

    def __str__(self) -> str:
        return f"{self.month:02d}-{self.day:02d}"


@dataclass
class Subject:
    """A recurrence owner (a contact) that receives one greeting per year"""
    id: str
    name: str
    destination: str
    recurrence: Recurrence
    created_at: str
    birthday_full: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'Subject':
        return cls(
            id=row['id'],
            name=row['name'],
            destination=row['destination'],
            recurrence=Recurrence(row['recurrence_month'], row['recurrence_day']),
            created_at=row['created_at'],
            birthday_full=row.get('birthday_full'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['recurrence'] = str(self.recurrence)
        return data


@dataclass
class Occurrence:
    """One concrete scheduled greeting, bound to a recurrence year"""
    id: str
    subject_id: str
    subject_name: str
    destination: str
    body: str
    fire_instant: datetime
    status: OccurrenceStatus
    created_at: str
    recurrence_year: int
    provider_id: Optional[str] = None
    error_text: Optional[str] = None
    claimed_at: Optional[str] = None
    sent_at: Optional[str] = None
    failed_at: Optional[str] = None
    delivered_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: datetime) -> bool:
        return self.status == OccurrenceStatus.SCHEDULED and self.fire_instant <= now

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'Occurrence':
        return cls(
            id=row['id'],
            subject_id=row['subject_id'],
            subject_name=row['subject_name'],
            destination=row['destination'],
            body=row['body'],
            fire_instant=datetime.fromisoformat(row['fire_instant']),
            status=OccurrenceStatus(row['status']),
            created_at=row['created_at'],
            recurrence_year=row['recurrence_year'],
            provider_id=row.get('provider_id'),
            error_text=row.get('error_text'),
            claimed_at=row.get('claimed_at'),
            sent_at=row.get('sent_at'),
            failed_at=row.get('failed_at'),
            delivered_at=row.get('delivered_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record shape for JSON serialization"""
        data = asdict(self)
        data['fire_instant'] = self.fire_instant.isoformat()
        data['status'] = self.status.value
        return data

# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class TwilioSettings:
    """Credentials for the outbound SMS gateway"""
    account_sid: Optional[str] = None
    auth_token: Optional[str] = None
    messaging_service_sid: Optional[str] = None

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.messaging_service_sid)


@dataclass
class SchedulingConfig:
    """Overall scheduler configuration"""
    send_time: str = "09:00:00"
    dispatch_interval_seconds: int = 60
    delivery_confirmation_delay_seconds: float = 5.0
    db_path: str = "greetings.sqlite3"
    message_templates: List[str] = field(default_factory=lambda: list(DEFAULT_TEMPLATES))
    twilio: TwilioSettings = field(default_factory=TwilioSettings)

    @property
    def send_time_of_day(self) -> time_of_day:
        return time_of_day.fromisoformat(self.send_time)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'SchedulingConfig':
        """Load configuration from YAML file, falling back to defaults"""
        config = cls()
        if Path(yaml_path).exists():
            with open(yaml_path, 'r') as f:
                data = yaml.safe_load(f) or {}

            if 'timing' in data:
                timing = data['timing'] or {}
                config.send_time = str(timing.get('send_time', config.send_time))

            if 'dispatch' in data:
                dispatch = data['dispatch'] or {}
                config.dispatch_interval_seconds = int(
                    dispatch.get('interval_seconds', config.dispatch_interval_seconds)
                )
                config.delivery_confirmation_delay_seconds = float(
                    dispatch.get('delivery_confirmation_delay_seconds',
                                 config.delivery_confirmation_delay_seconds)
                )

            if 'database' in data:
                database = data['database'] or {}
                config.db_path = database.get('path', config.db_path)

            if data.get('message_templates'):
                config.message_templates = [str(t) for t in data['message_templates']]

            if 'twilio' in data:
                twilio = data['twilio'] or {}
                config.twilio = TwilioSettings(
                    account_sid=twilio.get('account_sid'),
                    auth_token=twilio.get('auth_token'),
                    messaging_service_sid=twilio.get('messaging_service_sid'),
                )
        else:
            logger.warning(f"Config file {yaml_path} not found, using defaults")

        config.apply_environment()
        # Fail early on a malformed send time
        config.send_time_of_day
        return config

    def apply_environment(self):
        """Let TWILIO_* environment variables override file-based credentials"""
        self.twilio.account_sid = os.getenv('TWILIO_ACCOUNT_SID', self.twilio.account_sid)
        self.twilio.auth_token = os.getenv('TWILIO_AUTH_TOKEN', self.twilio.auth_token)
        self.twilio.messaging_service_sid = os.getenv(
            'TWILIO_MESSAGING_SERVICE_SID', self.twilio.messaging_service_sid
        )

# ============================================================================
# OCCURRENCE CALCULATOR
# ============================================================================

def clamped_date(year: int, month: int, day: int) -> date:
    """Build a date, clamping the day to the last valid day of that month"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def next_fire_instant(recurrence: Recurrence, reference: datetime,
                      send_time: time_of_day = DEFAULT_SEND_TIME) -> datetime:
    """
    Return the first fire instant strictly after ``reference``.

    The candidate is the recurrence day in the reference year at ``send_time``;
    when that is not after ``reference`` the same month/day one year later is
    used. Days that do not exist in the target month (Feb 29 in a non-leap
    year, April 31) are clamped to the month's last day.
    """
    candidate = datetime.combine(
        clamped_date(reference.year, recurrence.month, recurrence.day), send_time
    )
    if candidate > reference:
        return candidate
    return datetime.combine(
        clamped_date(reference.year + 1, recurrence.month, recurrence.day), send_time
    )

# ============================================================================
# DATABASE MANAGER - LIFECYCLE STORE ADAPTER
# ============================================================================

class DatabaseManager:
    """Manages all subject and occurrence persistence for the scheduler"""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self):
        """Ensure all required tables and indexes exist"""
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS subjects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    recurrence_month INTEGER NOT NULL,
                    recurrence_day INTEGER NOT NULL,
                    birthday_full TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            # No foreign key: occurrences outlive their subject as history
            conn.execute("""
                CREATE TABLE IF NOT EXISTS occurrences (
                    id TEXT PRIMARY KEY,
                    subject_id TEXT NOT NULL,
                    subject_name TEXT NOT NULL,
                    destination TEXT NOT NULL,
                    body TEXT NOT NULL,
                    fire_instant TEXT NOT NULL,
                    status TEXT NOT NULL,
                    provider_id TEXT,
                    error_text TEXT,
                    claimed_at TEXT,
                    sent_at TEXT,
                    failed_at TEXT,
                    delivered_at TEXT,
                    created_at TEXT NOT NULL,
                    recurrence_year INTEGER NOT NULL
                )
            """)

            # Databases created before claim/failure timestamps were tracked
            columns = {row['name'] for row in conn.execute("PRAGMA table_info(occurrences)")}
            for column in ('claimed_at', 'failed_at'):
                if column not in columns:
                    logger.info(f"Adding missing column occurrences.{column}")
                    conn.execute(f"ALTER TABLE occurrences ADD COLUMN {column} TEXT")

            indexes = [
                "CREATE INDEX IF NOT EXISTS idx_subjects_destination ON subjects(destination)",
                "CREATE INDEX IF NOT EXISTS idx_occurrences_subject_year ON occurrences(subject_id, recurrence_year, status)",
                "CREATE INDEX IF NOT EXISTS idx_occurrences_status_fire ON occurrences(status, fire_instant)",
            ]
            for index_sql in indexes:
                conn.execute(index_sql)

    def execute_with_retry(self, operation, max_attempts=3, backoff_base=2):
        """Execute database operation with retry and exponential backoff"""
        for attempt in range(max_attempts):
            try:
                return operation()
            except sqlite3.OperationalError as e:
                if attempt == max_attempts - 1:
                    logger.error(f"Database operation failed after {max_attempts} attempts: {e}")
                    raise
                sleep_time = backoff_base ** attempt
                logger.warning(f"Database retry {attempt + 1}/{max_attempts} after {sleep_time}s: {e}")
                time.sleep(sleep_time)

    # -- subjects -----------------------------------------------------------

    def add_subject(self, subject: Subject):
        def _insert():
            with self._connection() as conn:
                conn.execute("""
                    INSERT INTO subjects (id, name, destination, recurrence_month,
                                          recurrence_day, birthday_full, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    subject.id, subject.name, subject.destination,
                    subject.recurrence.month, subject.recurrence.day,
                    subject.birthday_full, subject.created_at
                ))

        self.execute_with_retry(_insert)
        logger.info(f"Added subject {subject.id} ({subject.name}) recurring on {subject.recurrence}")

    def get_subject(self, subject_id: str) -> Optional[Subject]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM subjects WHERE id = ?", (subject_id,)).fetchone()
            return Subject.from_db_row(dict(row)) if row else None

    def list_subjects(self) -> List[Subject]:
        with self._connection() as conn:
            cursor = conn.execute("SELECT * FROM subjects ORDER BY rowid")
            return [Subject.from_db_row(dict(row)) for row in cursor.fetchall()]

    def find_subject_by_destination(self, destination: str) -> Optional[Subject]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM subjects WHERE destination = ? LIMIT 1", (destination,)
            ).fetchone()
            return Subject.from_db_row(dict(row)) if row else None

    def delete_subject(self, subject_id: str) -> bool:
        """
        Delete a subject and cancel its scheduled occurrences.

        Both changes happen in one transaction; occurrences are never removed
        so the send history survives the subject.
        """
        def _delete():
            with self._connection() as conn:
                cursor = conn.execute("DELETE FROM subjects WHERE id = ?", (subject_id,))
                if cursor.rowcount == 0:
                    return False
                cursor = conn.execute("""
                    UPDATE occurrences SET status = ?
                    WHERE subject_id = ? AND status = ?
                """, (OccurrenceStatus.CANCELLED.value, subject_id, OccurrenceStatus.SCHEDULED.value))
                logger.info(f"Deleted subject {subject_id}, cancelled {cursor.rowcount} scheduled occurrence(s)")
                return True

        return self.execute_with_retry(_delete)

    # -- occurrences --------------------------------------------------------

    _OCCURRENCE_COLUMNS = (
        "id, subject_id, subject_name, destination, body, fire_instant, "
        "status, provider_id, error_text, claimed_at, sent_at, failed_at, "
        "delivered_at, created_at, recurrence_year"
    )

    @staticmethod
    def _occurrence_params(occurrence: Occurrence) -> Tuple:
        if occurrence.recurrence_year != occurrence.fire_instant.year:
            raise SchedulerError(
                f"Occurrence {occurrence.id} recurrence year {occurrence.recurrence_year} "
                f"does not match fire instant {occurrence.fire_instant.isoformat()}"
            )
        return (
            occurrence.id, occurrence.subject_id, occurrence.subject_name,
            occurrence.destination, occurrence.body,
            occurrence.fire_instant.isoformat(), occurrence.status.value,
            occurrence.provider_id, occurrence.error_text, occurrence.claimed_at,
            occurrence.sent_at, occurrence.failed_at, occurrence.delivered_at,
            occurrence.created_at, occurrence.recurrence_year
        )

    def create_occurrence(self, occurrence: Occurrence):
        params = self._occurrence_params(occurrence)

        def _insert():
            with self._connection() as conn:
                conn.execute(f"""
                    INSERT INTO occurrences ({self._OCCURRENCE_COLUMNS})
                    VALUES ({', '.join('?' * len(params))})
                """, params)

        self.execute_with_retry(_insert)

    def arm_occurrence(self, occurrence: Occurrence) -> Optional[Occurrence]:
        """
        Insert a scheduled occurrence unless one is already live.

        The subject existence check, the one-scheduled-per-year check and
        the insert are a single statement, so a concurrent subject delete or
        a second scheduler process cannot slip in between them. Returns the
        inserted occurrence, the live one that was already there, or None
        when the subject no longer exists.
        """
        if occurrence.status != OccurrenceStatus.SCHEDULED:
            raise SchedulerError(f"Only scheduled occurrences can be armed, got {occurrence.status.value}")
        params = self._occurrence_params(occurrence)
        scheduled = OccurrenceStatus.SCHEDULED.value

        def _arm():
            with self._connection() as conn:
                cursor = conn.execute(f"""
                    INSERT INTO occurrences ({self._OCCURRENCE_COLUMNS})
                    SELECT {', '.join('?' * len(params))}
                    WHERE EXISTS (SELECT 1 FROM subjects WHERE id = ?)
                      AND NOT EXISTS (
                          SELECT 1 FROM occurrences
                          WHERE subject_id = ? AND recurrence_year = ? AND status = ?
                      )
                """, params + (
                    occurrence.subject_id,
                    occurrence.subject_id, occurrence.recurrence_year, scheduled
                ))
                if cursor.rowcount == 1:
                    return occurrence

                row = conn.execute("""
                    SELECT * FROM occurrences
                    WHERE subject_id = ? AND recurrence_year = ? AND status = ?
                      AND EXISTS (SELECT 1 FROM subjects WHERE id = ?)
                    ORDER BY rowid
                    LIMIT 1
                """, (occurrence.subject_id, occurrence.recurrence_year, scheduled,
                      occurrence.subject_id)).fetchone()
                return Occurrence.from_db_row(dict(row)) if row else None

        return self.execute_with_retry(_arm)

    def get_occurrence(self, occurrence_id: str) -> Optional[Occurrence]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM occurrences WHERE id = ?", (occurrence_id,)).fetchone()
            return Occurrence.from_db_row(dict(row)) if row else None

    def list_occurrences(self, status: Optional[OccurrenceStatus] = None,
                         subject_id: Optional[str] = None) -> List[Occurrence]:
        """List occurrences in storage order, optionally filtered"""
        query = "SELECT * FROM occurrences WHERE 1=1"
        params: List[Any] = []

        if status:
            query += " AND status = ?"
            params.append(status.value)

        if subject_id:
            query += " AND subject_id = ?"
            params.append(subject_id)

        query += " ORDER BY rowid"

        with self._connection() as conn:
            cursor = conn.execute(query, params)
            return [Occurrence.from_db_row(dict(row)) for row in cursor.fetchall()]

    def update_occurrence(self, occurrence_id: str, **fields):
        """Update delivery bookkeeping fields; unknown ids are a no-op"""
        if not fields:
            return
        rejected = set(fields) - MUTABLE_OCCURRENCE_FIELDS
        if rejected:
            raise ImmutableFieldError(
                f"Cannot update {sorted(rejected)} on occurrence {occurrence_id}; "
                "status changes go through transition_occurrence"
            )

        set_clauses = [f"{key} = ?" for key in fields]
        params = list(fields.values()) + [occurrence_id]

        def _update():
            with self._connection() as conn:
                conn.execute(
                    f"UPDATE occurrences SET {', '.join(set_clauses)} WHERE id = ?", params
                )

        self.execute_with_retry(_update)

    def transition_occurrence(self, occurrence_id: str, from_status: OccurrenceStatus,
                              to_status: OccurrenceStatus, **fields) -> bool:
        """
        Atomically move an occurrence from ``from_status`` to ``to_status``.

        Returns False when the occurrence is unknown or its stored status is
        no longer ``from_status``, which is how a competing claim is detected.
        """
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransitionError(
                f"Transition {from_status.value} -> {to_status.value} is not allowed"
            )
        rejected = set(fields) - MUTABLE_OCCURRENCE_FIELDS
        if rejected:
            raise ImmutableFieldError(f"Cannot set {sorted(rejected)} during a transition")

        set_clauses = ['status = ?'] + [f"{key} = ?" for key in fields]
        params = [to_status.value] + list(fields.values()) + [occurrence_id, from_status.value]

        def _transition():
            with self._connection() as conn:
                cursor = conn.execute(
                    f"UPDATE occurrences SET {', '.join(set_clauses)} WHERE id = ? AND status = ?",
                    params
                )
                return cursor.rowcount == 1

        changed = self.execute_with_retry(_transition)
        if changed:
            logger.debug(f"Occurrence {occurrence_id}: {from_status.value} -> {to_status.value}")
        return changed

    def cancel_occurrence(self, occurrence_id: str) -> bool:
        return self.transition_occurrence(
            occurrence_id, OccurrenceStatus.SCHEDULED, OccurrenceStatus.CANCELLED
        )

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OccurrenceStatus}
        with self._connection() as conn:
            cursor = conn.execute("SELECT status, COUNT(*) FROM occurrences GROUP BY status")
            for status, count in cursor.fetchall():
                counts[status] = count
        return counts

# ============================================================================
# OCCURRENCE SCHEDULER
# ============================================================================

class OccurrenceScheduler:
    """Arms the next yearly occurrence for each subject"""

    def __init__(self, db_manager: DatabaseManager, config: Optional[SchedulingConfig] = None,
                 renderer: Optional[MessageRenderer] = None):
        self.db_manager = db_manager
        self.config = config or SchedulingConfig()
        self.renderer = renderer or MessageRenderer(self.config.message_templates)
        # Serializes the check-then-create step of ensure_scheduled
        self._lock = threading.Lock()

    def ensure_scheduled(self, subject_id: str, now: Optional[datetime] = None) -> Optional[Occurrence]:
        """
        Return the live scheduled occurrence for the subject's upcoming
        recurrence year, creating it if none exists.

        Returns None when the subject has been deleted, including a delete
        that lands while the occurrence is being armed.
        """
        now = now or datetime.now()

        with self._lock:
            subject = self.db_manager.get_subject(subject_id)
            if subject is None:
                logger.info(f"Subject {subject_id} no longer exists, nothing to schedule")
                return None

            fire_instant = next_fire_instant(subject.recurrence, now, self.config.send_time_of_day)
            candidate = Occurrence(
                id=str(uuid.uuid4()),
                subject_id=subject.id,
                subject_name=subject.name,
                destination=subject.destination,
                body=self.renderer.render(subject.name),
                fire_instant=fire_instant,
                status=OccurrenceStatus.SCHEDULED,
                created_at=datetime.now().isoformat(),
                recurrence_year=fire_instant.year,
            )
            occurrence = self.db_manager.arm_occurrence(candidate)

        if occurrence is None:
            logger.info(f"Subject {subject_id} was deleted while scheduling, nothing armed")
        elif occurrence.id != candidate.id:
            logger.debug(f"Occurrence {occurrence.id} already scheduled for {subject.name} in {fire_instant.year}")
        else:
            logger.info(f"Scheduled greeting {occurrence.id} for {subject.name} at {fire_instant.isoformat()}")
        return occurrence

    def schedule_all(self, now: Optional[datetime] = None, show_progress: bool = False) -> List[Occurrence]:
        """Ensure every known subject has its upcoming occurrence armed"""
        now = now or datetime.now()
        subjects = self.db_manager.list_subjects()
        occurrences = []

        for subject in tqdm(subjects, desc="Scheduling subjects", disable=not show_progress):
            occurrence = self.ensure_scheduled(subject.id, now=now)
            if occurrence:
                occurrences.append(occurrence)

        logger.info(f"Schedule pass complete: {len(occurrences)} occurrence(s) armed for {len(subjects)} subject(s)")
        return occurrences

    def register_subject(self, name: str, destination: str, recurrence: Recurrence,
                         birthday_full: Optional[str] = None,
                         now: Optional[datetime] = None) -> Tuple[Subject, Optional[Occurrence]]:
        """Add a subject and arm its first occurrence"""
        existing = self.db_manager.find_subject_by_destination(destination)
        if existing:
            raise DuplicateSubjectError(
                f"A subject with destination {destination} already exists ({existing.name})"
            )

        subject = Subject(
            id=str(uuid.uuid4()),
            name=name,
            destination=destination,
            recurrence=recurrence,
            created_at=datetime.now().isoformat(),
            birthday_full=birthday_full,
        )
        self.db_manager.add_subject(subject)
        return subject, self.ensure_scheduled(subject.id, now=now)

    def remove_subject(self, subject_id: str) -> bool:
        with self._lock:
            return self.db_manager.delete_subject(subject_id)

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def parse_birthday(value: str) -> Tuple[Recurrence, Optional[str]]:
    """
    Accept either a bare MM-DD recurrence or a full YYYY-MM-DD birthday.

    The full form is kept as the subject's ``birthday_full``.
    """
    value = value.strip()
    if re.fullmatch(r'\d{4}-\d{2}-\d{2}', value):
        # Rejects impossible dates such as 1990-02-30
        date.fromisoformat(value)
        return Recurrence.from_birthday(value), value
    return Recurrence.parse(value), None


def main():
    """Main entry point for the scheduler"""
    import argparse

    parser = argparse.ArgumentParser(description='Yearly Greeting Scheduler')
    parser.add_argument('--db', help='SQLite database path (defaults to the configured path)')
    parser.add_argument('--config', help='Configuration YAML path')
    parser.add_argument('--schedule-all', action='store_true', help='Arm the next occurrence for every subject')
    parser.add_argument('--subject-id', help='Arm the next occurrence for one subject')
    parser.add_argument('--add-subject', nargs=3, metavar=('NAME', 'DESTINATION', 'BIRTHDAY'),
                        help='Register a subject (birthday as MM-DD or YYYY-MM-DD) and arm its first occurrence')
    parser.add_argument('--delete-subject', metavar='ID', help='Delete a subject and cancel its scheduled occurrences')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    config = SchedulingConfig.from_yaml(args.config) if args.config else SchedulingConfig()
    db_manager = DatabaseManager(args.db or config.db_path)
    scheduler = OccurrenceScheduler(db_manager, config)

    if args.add_subject:
        name, destination, birthday = args.add_subject
        try:
            recurrence, birthday_full = parse_birthday(birthday)
            subject, occurrence = scheduler.register_subject(
                name, destination, recurrence, birthday_full=birthday_full
            )
        except (ValueError, DuplicateSubjectError) as e:
            print(f"Could not add subject: {e}")
            return 1
        print(f"Added subject {subject.id}; next greeting at {occurrence.fire_instant.isoformat()}")
    elif args.delete_subject:
        if not scheduler.remove_subject(args.delete_subject):
            print(f"Subject {args.delete_subject} not found")
            return 1
        print(f"Deleted subject {args.delete_subject}")
    elif args.schedule_all:
        occurrences = scheduler.schedule_all(show_progress=True)
        print(f"{len(occurrences)} occurrence(s) armed")
    elif args.subject_id:
        occurrence = scheduler.ensure_scheduled(args.subject_id)
        if occurrence is None:
            print(f"Subject {args.subject_id} not found")
            return 1
        print(f"Occurrence {occurrence.id} scheduled for {occurrence.fire_instant.isoformat()}")
    else:
        print("Please specify --schedule-all, --subject-id, --add-subject or --delete-subject")
    return 0

if __name__ == '__main__':
    raise SystemExit(main())
