#!/usr/bin/env python3
"""
Attendance Analytics Engine
=====================================================
Turns raw attendance events into per-student and per-course statistics
and a graded alert list for the attendance dashboard:

- Synthetic event generation for seeding and demos (GPA-weighted status)
- Camera detection ingestion for real sensor feeds
- Student aggregation with quiz bonus, split-half trend and exam eligibility
- Course aggregation with observed sessions and at-risk head counts
- First-match-wins alert ladder (critical / warning / info)
- Export of a run as JSON, CSV or Supabase INSERT statements

Usage:
    python attendance_analytics.py
    python attendance_analytics.py --window 30 --students 200
    python attendance_analytics.py --roster roster.json --catalogue courses.json
    python attendance_analytics.py --output all --output-dir ./output
    python attendance_analytics.py --seed 7 --as-of 2025-03-01
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import math
import statistics
import time
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta, timezone
from enum import Enum
from pathlib import Path
from random import Random
from typing import Any, Callable, Iterable, Iterator, Sequence, TypedDict

__all__ = [
    "AnalyticsResult",
    "AttendanceAlert",
    "AttendanceEvent",
    "AttendanceStatus",
    "AlertKind",
    "AlertRule",
    "AlertSeverity",
    "Course",
    "CourseAttendanceStats",
    "CourseTrend",
    "DeviceStatus",
    "DeviceStatusRecord",
    "EventSource",
    "InvalidDetectionPayload",
    "SessionType",
    "Student",
    "StudentAttendanceStats",
    "StudentStatus",
    "StudentTrend",
    "ALERT_LADDER",
    "attendance_probability",
    "classify_alert",
    "classify_trend",
    "compute_course_stats",
    "compute_student_stats",
    "daily_breakdown",
    "device_usage",
    "events_from_detection",
    "generate_alerts",
    "generate_attendance_events",
    "generate_device_statuses",
    "roster_match_report",
    "run_pipeline",
    "split_half_rates",
]

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# ENUMS (str, Enum: JSON-serializable without .value)
# ──────────────────────────────────────────────────────────────────────────────

class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class EventSource(str, Enum):
    SENSOR = "sensor"
    MANUAL = "manual"
    QUIZ = "quiz"
    ASSIGNMENT = "assignment"


class SessionType(str, Enum):
    LECTURE = "lecture"
    LAB = "lab"
    TUTORIAL = "tutorial"
    EXAM = "exam"


class StudentTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class CourseTrend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


class AlertKind(str, Enum):
    BELOW_THRESHOLD = "below-threshold"
    DECLINING_TREND = "declining-trend"
    CONSECUTIVE_ABSENCE = "consecutive-absence"
    EXAM_INELIGIBLE = "exam-ineligible"


class AlertSeverity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class StudentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    GRADUATED = "graduated"
    WITHDRAWN = "withdrawn"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


# ──────────────────────────────────────────────────────────────────────────────
# TYPED CONFIGURATION
# ──────────────────────────────────────────────────────────────────────────────

class StatusWeights(TypedDict):
    late: float      # fixed probability mass after "present"
    excused: float   # fixed probability mass after "late"


STATUS_WEIGHTS: StatusWeights = {"late": 0.08, "excused": 0.05}

SOURCE_WEIGHTS: dict[EventSource, int] = {
    EventSource.SENSOR: 40,
    EventSource.MANUAL: 30,
    EventSource.QUIZ: 15,
    EventSource.ASSIGNMENT: 15,
}

SESSION_TYPE_WEIGHTS: dict[SessionType, int] = {
    SessionType.LECTURE: 70,
    SessionType.LAB: 15,
    SessionType.TUTORIAL: 15,
}

DEVICE_POOL = ["CAM-1", "CAM-2", "CAM-3", "CAM-4", "CAM-5"]

DEVICE_LOCATIONS = [
    "Lecture Hall A - FOM Building",
    "Lab Building 2 - FONS Wing",
    "Tutorial Room 3B - Main Campus",
    "Main Auditorium - Conference Center",
    "Computer Lab 5 - Technology Building",
    "Classroom 201 - FOMAC Building",
    "Study Hall - Library 3F",
    "Seminar Room 4A - Research Center",
]

QUIZ_SOURCES = frozenset({EventSource.QUIZ, EventSource.ASSIGNMENT})

AT_RISK_THRESHOLD = 70.0         # exam eligibility cutoff (percent)
EXAM_INELIGIBLE_THRESHOLD = 50.0
FAILING_THRESHOLD = 60.0
DECLINE_WATCH_THRESHOLD = 80.0
TREND_DELTA = 5.0                # percentage points between halves
MAX_QUIZ_BONUS = 10
MAX_SESSION_SIZE = 30
SESSIONS_PER_WEEK = (3, 5)
SESSION_HOURS = (8, 15)
VERIFIED_PROB = 0.85
MIN_DETECTION_CONFIDENCE = 0.75

SAMPLE_PROGRAMS: dict[str, list[str]] = {
    "Bachelor": ["MET", "MAS", "MAC"],
    "Master": ["MNS", "HSB-MBA"],
}

FIRST_NAMES = [
    "An", "Binh", "Chi", "Dung", "Giang", "Hai", "Hanh", "Hoa", "Huy", "Khanh",
    "Lan", "Linh", "Long", "Mai", "Minh", "Nam", "Ngoc", "Phong", "Quang",
    "Quynh", "Son", "Tam", "Thao", "Trang", "Tuan", "Vy", "Yen",
]

LAST_NAMES = [
    "Nguyen", "Tran", "Le", "Pham", "Hoang", "Vo", "Bui", "Dang", "Do",
    "Ngo", "Duong", "Ly", "Phan", "Truong", "Cao", "Dinh", "Mai", "Ta",
]


# ──────────────────────────────────────────────────────────────────────────────
# DATA MODELS
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class Student:
    """Roster entry as supplied by the roster provider."""
    id: str
    name: str
    program: str
    level: str
    gpa: float
    enrollment_status: StudentStatus = StudentStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.enrollment_status == StudentStatus.ACTIVE

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Student:
        """
        Build from a roster provider dict (camelCase, ``"Active"`` etc.).
        Statuses outside ``StudentStatus`` count as inactive.
        """
        status = (
            record.get("enrollmentStatus")
            or record.get("enrollment_status")
            or record.get("status")
            or StudentStatus.ACTIVE.value
        )
        try:
            enrollment_status = StudentStatus(str(status).strip().lower())
        except ValueError:
            logger.warning(
                "Student %s: unknown enrollment status %r, treated as inactive",
                record["id"], status,
            )
            enrollment_status = StudentStatus.INACTIVE
        return cls(
            id=str(record["id"]),
            name=record.get("name", ""),
            program=record.get("program", ""),
            level=record.get("level", ""),
            gpa=float(record.get("gpa", 0.0)),
            enrollment_status=enrollment_status,
        )


@dataclass
class Course:
    """Course catalogue entry."""
    id: str
    name: str
    program: str
    level: str
    faculty: str = ""
    instructor: str = ""
    capacity: int = MAX_SESSION_SIZE

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Course:
        return cls(
            id=str(record["id"]),
            name=record.get("name", ""),
            program=record.get("program", ""),
            level=record.get("level", ""),
            faculty=record.get("faculty", ""),
            instructor=record.get("instructor", ""),
            capacity=int(record.get("capacity", record.get("students", MAX_SESSION_SIZE))),
        )


@dataclass(frozen=True)
class AttendanceEvent:
    """One observed or synthesized attendance outcome. Never mutated."""
    id: str
    student_id: str
    student_name: str
    course_id: str
    course_name: str
    occurred_on: date
    status: AttendanceStatus
    source: EventSource
    session_type: SessionType
    captured_at: datetime
    device_id: str | None = None
    verified_by_instructor: bool = False
    notes: str | None = None

    def __post_init__(self):
        if (self.source == EventSource.SENSOR) != (self.device_id is not None):
            raise ValueError(
                f"device_id must be set iff source is sensor "
                f"(event {self.id}, source={self.source.value})"
            )

    @property
    def is_present(self) -> bool:
        return self.status == AttendanceStatus.PRESENT

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "courseId": self.course_id,
            "courseName": self.course_name,
            "occurredOn": self.occurred_on.isoformat(),
            "status": self.status.value,
            "source": self.source.value,
            "sessionType": self.session_type.value,
            "capturedAt": self.captured_at.isoformat(),
            "deviceId": self.device_id,
            "verifiedByInstructor": self.verified_by_instructor,
            "notes": self.notes,
        }

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "course_id": self.course_id,
            "course_name": self.course_name,
            "occurred_on": self.occurred_on.isoformat(),
            "status": self.status.value,
            "source": self.source.value,
            "session_type": self.session_type.value,
            "captured_at": self.captured_at.isoformat(),
            "device_id": self.device_id,
            "verified_by_instructor": self.verified_by_instructor,
            "notes": self.notes,
        }


@dataclass
class StudentAttendanceStats:
    """Per-student statistics for one analysis window."""
    student_id: str
    student_name: str
    program: str
    level: str
    total_sessions: int = 0
    attended_count: int = 0
    late_count: int = 0
    absent_count: int = 0
    excused_count: int = 0
    attendance_rate: float = 0.0
    trend: StudentTrend = StudentTrend.STABLE
    at_risk: bool = True
    exam_eligible: bool = False
    quiz_bonus: int = 0

    def to_row(self) -> dict[str, Any]:
        return {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "program": self.program,
            "level": self.level,
            "totalSessions": self.total_sessions,
            "attendedCount": self.attended_count,
            "lateCount": self.late_count,
            "absentCount": self.absent_count,
            "excusedCount": self.excused_count,
            "attendanceRate": round(self.attendance_rate, 2),
            "trend": self.trend.value,
            "atRisk": self.at_risk,
            "examEligible": self.exam_eligible,
            "quizBonus": self.quiz_bonus,
        }


@dataclass
class CourseAttendanceStats:
    """Per-course statistics. Emitted for every catalogue course."""
    course_id: str
    course_name: str
    instructor: str
    program: str
    faculty: str
    level: str
    total_students: int = 0
    average_attendance: float = 0.0
    sessions_held: int = 0
    at_risk_students: int = 0
    trend: CourseTrend = CourseTrend.STABLE

    def to_row(self) -> dict[str, Any]:
        return {
            "courseId": self.course_id,
            "courseName": self.course_name,
            "instructor": self.instructor,
            "program": self.program,
            "faculty": self.faculty,
            "level": self.level,
            "totalStudents": self.total_students,
            "averageAttendance": round(self.average_attendance, 2),
            "sessionsHeld": self.sessions_held,
            "atRiskStudents": self.at_risk_students,
            "trend": self.trend.value,
        }


@dataclass
class AttendanceAlert:
    """Threshold alert. Acknowledgement is tracked by the caller."""
    id: str
    student_id: str
    student_name: str
    kind: AlertKind
    severity: AlertSeverity
    message: str
    created_at: datetime

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
        }

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "student_name": self.student_name,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "acknowledged": False,
        }


@dataclass
class DeviceStatusRecord:
    """Camera status as reported by the capture side (read-only here)."""
    id: str
    location: str
    status: DeviceStatus
    last_sync: datetime
    sessions_today: int
    accuracy: float

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "location": self.location,
            "status": self.status.value,
            "lastSync": self.last_sync.isoformat(),
            "sessionsToday": self.sessions_today,
            "accuracy": self.accuracy,
        }

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "location": self.location,
            "status": self.status.value,
            "last_sync": self.last_sync.isoformat(),
            "sessions_today": self.sessions_today,
            "accuracy": self.accuracy,
        }


class InvalidDetectionPayload(ValueError):
    """Raised when a camera detection payload lacks required fields."""


# ──────────────────────────────────────────────────────────────────────────────
# BUSINESS RULES (pure functions)
# ──────────────────────────────────────────────────────────────────────────────

def attendance_probability(gpa: float) -> float:
    """Chance of a "present" outcome; higher GPA attends more, capped at 95%."""
    return min(0.95, 0.65 + gpa / 4.0 * 0.25)


def draw_status(rng: Random, gpa: float) -> AttendanceStatus:
    """
    GPA-weighted status draw on a single uniform sample.
    Note: mutates rng state for sampling.
    """
    attend = attendance_probability(gpa)
    late = attend + STATUS_WEIGHTS["late"]
    excused = late + STATUS_WEIGHTS["excused"]
    roll = rng.random()
    if roll < attend:
        return AttendanceStatus.PRESENT
    elif roll < late:
        return AttendanceStatus.LATE
    elif roll < excused:
        return AttendanceStatus.EXCUSED
    return AttendanceStatus.ABSENT


def draw_source(rng: Random) -> EventSource:
    return rng.choices(list(SOURCE_WEIGHTS), weights=list(SOURCE_WEIGHTS.values()), k=1)[0]


def select_eligible_students(course: Course, roster: Sequence[Student]) -> list[Student]:
    """Active students whose program and level match the course, up to capacity."""
    eligible = [
        s for s in roster
        if s.is_active
        and (course.program in s.program or s.program in course.program)
        and s.level == course.level
    ]
    return eligible[:min(course.capacity, MAX_SESSION_SIZE)]


def present_rate(events: Sequence[AttendanceEvent]) -> float:
    """Percentage of events with status present. Callers guard the empty case."""
    return sum(1 for e in events if e.is_present) / len(events) * 100


def split_half_rates(
    events: Sequence[AttendanceEvent],
    fallback: float,
) -> tuple[float, float]:
    """
    Present-rate of the first half (recent) and second half (older).

    The split is on the order given; callers that want a chronological
    trend pass events newest-first. An empty half reports ``fallback``.
    """
    midpoint = len(events) // 2
    recent, older = events[:midpoint], events[midpoint:]
    recent_rate = present_rate(recent) if recent else fallback
    older_rate = present_rate(older) if older else fallback
    return recent_rate, older_rate


def classify_trend(
    recent_rate: float,
    older_rate: float,
    delta: float = TREND_DELTA,
) -> StudentTrend:
    """Label a change between halves; ``delta`` is a magnitude."""
    margin = abs(delta)
    if recent_rate > older_rate + margin:
        return StudentTrend.IMPROVING
    elif recent_rate < older_rate - margin:
        return StudentTrend.DECLINING
    return StudentTrend.STABLE


COURSE_TREND_LABELS: dict[StudentTrend, CourseTrend] = {
    StudentTrend.IMPROVING: CourseTrend.UP,
    StudentTrend.DECLINING: CourseTrend.DOWN,
    StudentTrend.STABLE: CourseTrend.STABLE,
}


@dataclass(frozen=True)
class AlertRule:
    """One rung of the alert ladder."""
    kind: AlertKind
    severity: AlertSeverity
    template: str
    applies: Callable[[StudentAttendanceStats], bool] = field(repr=False, compare=False)

    def render(self, stats: StudentAttendanceStats) -> str:
        return self.template.format(name=stats.student_name, rate=stats.attendance_rate)


# Order matters: the first rule that applies wins.
ALERT_LADDER: tuple[AlertRule, ...] = (
    AlertRule(
        kind=AlertKind.EXAM_INELIGIBLE,
        severity=AlertSeverity.CRITICAL,
        template="Critical: {name} is ineligible for final exam ({rate:.1f}% attendance)",
        applies=lambda s: s.attendance_rate < EXAM_INELIGIBLE_THRESHOLD,
    ),
    AlertRule(
        kind=AlertKind.BELOW_THRESHOLD,
        severity=AlertSeverity.WARNING,
        template="Warning: {name} is at risk of failing attendance requirement ({rate:.1f}%)",
        applies=lambda s: s.attendance_rate < FAILING_THRESHOLD,
    ),
    AlertRule(
        kind=AlertKind.BELOW_THRESHOLD,
        severity=AlertSeverity.WARNING,
        template="Warning: {name} is approaching attendance threshold ({rate:.1f}%)",
        applies=lambda s: s.attendance_rate < AT_RISK_THRESHOLD,
    ),
    AlertRule(
        kind=AlertKind.DECLINING_TREND,
        severity=AlertSeverity.INFO,
        template="Notice: {name} showing declining attendance trend ({rate:.1f}%)",
        applies=lambda s: (
            s.trend == StudentTrend.DECLINING
            and s.attendance_rate < DECLINE_WATCH_THRESHOLD
        ),
    ),
)


def classify_alert(stats: StudentAttendanceStats) -> AlertRule | None:
    """Return the first ladder rule that applies, or None."""
    for rule in ALERT_LADDER:
        if rule.applies(stats):
            return rule
    return None


# ──────────────────────────────────────────────────────────────────────────────
# SYNTHETIC EVENT GENERATOR
# ──────────────────────────────────────────────────────────────────────────────

def generate_attendance_events(
    roster: Sequence[Student],
    catalogue: Sequence[Course],
    window_days: int,
    rng: Random,
    as_of: date | None = None,
) -> Iterator[AttendanceEvent]:
    """
    Yield a plausible event set for ``window_days`` ending at ``as_of``.

    All randomness comes from ``rng``; pass a fresh ``Random(seed)`` per
    call for reproducible output. The iterator is single-use.
    """
    if window_days < 0:
        raise ValueError(f"window_days must be >= 0, got {window_days}")
    return _iter_events(roster, catalogue, window_days, rng, as_of or date.today())


def _iter_events(
    roster: Sequence[Student],
    catalogue: Sequence[Course],
    window_days: int,
    rng: Random,
    as_of: date,
) -> Iterator[AttendanceEvent]:
    next_id = 1
    low, high = SESSIONS_PER_WEEK

    for course in catalogue:
        per_week = low + rng.random() * (high - low)
        sessions = math.floor(window_days / 7 * per_week)
        students = select_eligible_students(course, roster)
        logger.debug(
            "%s: %d sessions, %d eligible students",
            course.id, sessions, len(students),
        )

        for session_num in range(sessions):
            days_ago = math.floor(session_num / sessions * window_days)
            session_date = as_of - timedelta(days=days_ago)
            captured_at = datetime.combine(
                session_date, dt_time(hour=rng.randint(*SESSION_HOURS)),
            )
            session_type = rng.choices(
                list(SESSION_TYPE_WEIGHTS),
                weights=list(SESSION_TYPE_WEIGHTS.values()),
                k=1,
            )[0]

            for student in students:
                status = draw_status(rng, student.gpa)
                source = draw_source(rng)
                device_id = rng.choice(DEVICE_POOL) if source == EventSource.SENSOR else None

                yield AttendanceEvent(
                    id=f"ATT-{next_id:06d}",
                    student_id=student.id,
                    student_name=student.name,
                    course_id=course.id,
                    course_name=course.name,
                    occurred_on=session_date,
                    status=status,
                    source=source,
                    session_type=session_type,
                    captured_at=captured_at,
                    device_id=device_id,
                    verified_by_instructor=rng.random() < VERIFIED_PROB,
                )
                next_id += 1


def generate_device_statuses(rng: Random, now: datetime) -> list[DeviceStatusRecord]:
    """Status snapshot for the camera fleet, one record per known location."""
    devices = []
    for i, location in enumerate(DEVICE_LOCATIONS):
        if rng.random() > 0.1:
            status = DeviceStatus.ONLINE
        elif rng.random() > 0.5:
            status = DeviceStatus.OFFLINE
        else:
            status = DeviceStatus.MAINTENANCE
        devices.append(DeviceStatusRecord(
            id=f"CAM-{i + 1:03d}",
            location=location,
            status=status,
            last_sync=now - timedelta(seconds=round(rng.random() * 3600)),
            sessions_today=rng.randint(0, 11),
            accuracy=round(85 + rng.random() * 13, 1),
        ))
    return devices


def build_sample_roster(rng: Random, num_students: int) -> list[Student]:
    """Demo roster with GPA drawn around 3.0 and a small inactive share."""
    if num_students < 0:
        raise ValueError(f"num_students must be >= 0, got {num_students}")

    roster = []
    for i in range(num_students):
        level = rng.choices(["Bachelor", "Master"], weights=[80, 20], k=1)[0]
        roster.append(Student(
            id=f"SV{i + 1:03d}",
            name=f"{rng.choice(LAST_NAMES)} {rng.choice(FIRST_NAMES)}",
            program=rng.choice(SAMPLE_PROGRAMS[level]),
            level=level,
            gpa=round(max(0.0, min(4.0, rng.gauss(3.0, 0.5))), 2),
            enrollment_status=rng.choices(
                [StudentStatus.ACTIVE, StudentStatus.SUSPENDED,
                 StudentStatus.WITHDRAWN, StudentStatus.GRADUATED],
                weights=[90, 4, 3, 3],
                k=1,
            )[0],
        ))
    return roster


SAMPLE_CATALOGUE: list[Course] = [
    Course("HSB1001", "Management", "MET", "Bachelor", "FOM", "Dr. Nguyen Van A", 45),
    Course("HSB1002", "Economics", "MET", "Bachelor", "FOM", "Dr. Tran Thi B", 52),
    Course("HSB1003", "Data Analysis", "MET", "Bachelor", "FONS", "Dr. Le Van C", 38),
    Course("HSB1005", "Principle of Accounting", "MET", "Bachelor", "FOM", "Dr. Hoang Van E", 44),
    Course("HSB1006", "Management of Corporate Finance", "MAS", "Bachelor", "FOM", "Dr. Vo Thi F", 42),
    Course("HSB1033", "HR & Talents", "MAS", "Bachelor", "FOM", "Dr. Dinh Thi H", 50),
    Course("HSB2004E", "Branding & IP", "MAC", "Bachelor", "FOMAC", "Dr. Dang Thi K", 38),
    Course("HSB2011", "Principles of Marketing & Comm", "MAC", "Bachelor", "FOMAC", "Dr. Truong Van N", 55),
    Course("MNS401", "Cybersecurity Management", "MNS", "Master", "FONS", "Dr. Ta Van Canh", 38),
    Course("MBA501", "Corporate Strategy", "HSB-MBA", "Master", "FOM", "Dr. Le Van P", 28),
    Course("MNS601", "Advanced Security Analysis", "MNS", "Master", "FONS", "Dr. Tran Thi Q", 22),
    Course("PHD701", "Research Methods Seminar", "DBA", "PhD", "INS", "Dr. Ho Van R", 12),
]


# ──────────────────────────────────────────────────────────────────────────────
# CAMERA FEED INGESTION
# ──────────────────────────────────────────────────────────────────────────────

def _parse_timestamp(raw: str | None) -> datetime:
    """Timezone-aware capture time; naive input is read as UTC."""
    if not raw:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError as e:
        raise InvalidDetectionPayload(f"Invalid timestamp: {raw!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _face_confidences(faces: Any) -> dict[str, float]:
    """Best confidence per student, in first-seen order."""
    if not isinstance(faces, list):
        raise InvalidDetectionPayload("detected_faces must be a list")

    best: dict[str, float] = {}
    for n, face in enumerate(faces):
        if not isinstance(face, dict) or not face.get("student_id"):
            raise InvalidDetectionPayload(f"detected_faces[{n}] has no student_id")
        try:
            confidence = float(face.get("confidence", 0.0))
        except (TypeError, ValueError) as e:
            raise InvalidDetectionPayload(
                f"detected_faces[{n}] has invalid confidence: {face.get('confidence')!r}"
            ) from e
        student_id = str(face["student_id"])
        if confidence > best.get(student_id, -1.0):
            best[student_id] = confidence
    return best


def events_from_detection(
    payload: dict[str, Any],
    courses: dict[str, Course] | None = None,
    roster: dict[str, Student] | None = None,
) -> list[AttendanceEvent]:
    """
    Convert one camera detection payload into present events.

    Expected keys: ``camera_id``, ``timestamp`` (ISO 8601),
    ``detected_faces`` ([{student_id, confidence}]) and
    ``session_info`` ({course_id}). A student detected more than once
    yields a single event at their highest confidence; faces under the
    confidence floor are skipped. Names are resolved through the
    optional lookups. Capture times are stored as naive UTC.

    Raises InvalidDetectionPayload for any malformed payload.
    """
    if not isinstance(payload, dict):
        raise InvalidDetectionPayload("Payload must be a JSON object")
    missing = [
        k for k in ("camera_id", "detected_faces", "session_info")
        if payload.get(k) in (None, "")
    ]
    if missing:
        raise InvalidDetectionPayload(f"Missing required fields: {', '.join(missing)}")
    session_info = payload["session_info"]
    if not isinstance(session_info, dict):
        raise InvalidDetectionPayload("session_info must be an object")
    if not session_info.get("course_id"):
        raise InvalidDetectionPayload("Missing required field: session_info.course_id")

    confidences = _face_confidences(payload["detected_faces"])
    courses = courses or {}
    roster = roster or {}
    detected = _parse_timestamp(payload.get("timestamp"))
    stamp = int(detected.timestamp() * 1000)
    captured_at = detected.astimezone(timezone.utc).replace(tzinfo=None)
    camera_id = str(payload["camera_id"])
    course_id = str(session_info["course_id"])
    course = courses.get(course_id)

    events = []
    for student_id, confidence in confidences.items():
        if confidence < MIN_DETECTION_CONFIDENCE:
            logger.info("Skipped %s: low confidence (%.1f%%)", student_id, confidence * 100)
            continue
        student = roster.get(student_id)
        events.append(AttendanceEvent(
            id=f"ATT-{stamp}-{student_id}",
            student_id=student_id,
            student_name=student.name if student else student_id,
            course_id=course_id,
            course_name=course.name if course else course_id,
            occurred_on=captured_at.date(),
            status=AttendanceStatus.PRESENT,
            source=EventSource.SENSOR,
            session_type=SessionType.LECTURE,
            captured_at=captured_at,
            device_id=camera_id,
            verified_by_instructor=False,
            notes=f"AI Detection - Confidence: {confidence * 100:.1f}%",
        ))

    logger.info(
        "Camera %s: %d/%d detections accepted",
        camera_id, len(events), len(payload["detected_faces"]),
    )
    return events


# ──────────────────────────────────────────────────────────────────────────────
# AGGREGATORS
# ──────────────────────────────────────────────────────────────────────────────

def summarize_student(
    student: Student,
    events: Sequence[AttendanceEvent],
) -> StudentAttendanceStats:
    """Statistics for one student over their events, in the order given."""
    stats = StudentAttendanceStats(
        student_id=student.id,
        student_name=student.name,
        program=student.program,
        level=student.level,
    )
    if not events:
        return stats

    counts = Counter(e.status for e in events)
    base_rate = present_rate(events)

    quiz_events = [e for e in events if e.source in QUIZ_SOURCES]
    quiz_present = sum(1 for e in quiz_events if e.is_present)
    quiz_bonus = min(MAX_QUIZ_BONUS, math.floor(quiz_present / max(1, len(quiz_events)) * 10))

    rate = min(100.0, base_rate + quiz_bonus)

    stats.total_sessions = len(events)
    stats.attended_count = counts[AttendanceStatus.PRESENT]
    stats.late_count = counts[AttendanceStatus.LATE]
    stats.absent_count = counts[AttendanceStatus.ABSENT]
    stats.excused_count = counts[AttendanceStatus.EXCUSED]
    stats.attendance_rate = rate
    stats.trend = classify_trend(*split_half_rates(events, base_rate))
    stats.at_risk = rate < AT_RISK_THRESHOLD
    stats.exam_eligible = not stats.at_risk
    stats.quiz_bonus = quiz_bonus
    return stats


def compute_student_stats(
    events: Iterable[AttendanceEvent],
    roster: Sequence[Student],
) -> list[StudentAttendanceStats]:
    """
    One record per active roster student that has at least one event.

    Students without events are still summarized (at risk, stable) but
    left out of the returned list.
    """
    by_student: dict[str, list[AttendanceEvent]] = defaultdict(list)
    for event in events:
        by_student[event.student_id].append(event)

    computed = [
        summarize_student(student, by_student.get(student.id, []))
        for student in roster
        if student.is_active
    ]
    return [s for s in computed if s.total_sessions > 0]


def summarize_course(
    course: Course,
    events: Sequence[AttendanceEvent],
) -> CourseAttendanceStats:
    """Statistics for one course over its events, in the order given."""
    stats = CourseAttendanceStats(
        course_id=course.id,
        course_name=course.name,
        instructor=course.instructor,
        program=course.program,
        faculty=course.faculty,
        level=course.level,
    )
    if not events:
        return stats

    average = present_rate(events)

    per_student: dict[str, list[AttendanceEvent]] = defaultdict(list)
    for event in events:
        per_student[event.student_id].append(event)

    stats.total_students = len(per_student)
    stats.average_attendance = average
    stats.sessions_held = len({e.occurred_on for e in events})
    stats.at_risk_students = sum(
        1 for student_events in per_student.values()
        if present_rate(student_events) < AT_RISK_THRESHOLD
    )
    stats.trend = COURSE_TREND_LABELS[classify_trend(*split_half_rates(events, average))]
    return stats


def compute_course_stats(
    events: Iterable[AttendanceEvent],
    catalogue: Sequence[Course],
) -> list[CourseAttendanceStats]:
    """One record per catalogue course, zero-filled when it has no events."""
    by_course: dict[str, list[AttendanceEvent]] = defaultdict(list)
    for event in events:
        by_course[event.course_id].append(event)
    return [summarize_course(course, by_course.get(course.id, [])) for course in catalogue]


# ──────────────────────────────────────────────────────────────────────────────
# ALERT POLICY
# ──────────────────────────────────────────────────────────────────────────────

def generate_alerts(
    student_stats: Iterable[StudentAttendanceStats],
    now: datetime | None = None,
) -> list[AttendanceAlert]:
    """At most one alert per student, chosen by the alert ladder."""
    created_at = now or datetime.now()
    alerts: list[AttendanceAlert] = []

    for stats in student_stats:
        rule = classify_alert(stats)
        if rule is None:
            continue
        alerts.append(AttendanceAlert(
            id=f"ALERT-{len(alerts) + 1:04d}",
            student_id=stats.student_id,
            student_name=stats.student_name,
            kind=rule.kind,
            severity=rule.severity,
            message=rule.render(stats),
            created_at=created_at,
        ))
    return alerts


# ──────────────────────────────────────────────────────────────────────────────
# EVENT SET ANALYTICS
# ──────────────────────────────────────────────────────────────────────────────

def sort_newest_first(events: Iterable[AttendanceEvent]) -> list[AttendanceEvent]:
    """Chronological order, most recent first; ties keep their input order."""
    return sorted(events, key=lambda e: (e.occurred_on, e.captured_at), reverse=True)


def daily_breakdown(events: Iterable[AttendanceEvent]) -> list[dict[str, Any]]:
    """Per-date event counts split by status and by source, oldest date first."""
    by_date: dict[date, list[AttendanceEvent]] = defaultdict(list)
    for event in events:
        by_date[event.occurred_on].append(event)

    rows = []
    for day in sorted(by_date):
        day_events = by_date[day]
        statuses = Counter(e.status for e in day_events)
        sources = Counter(e.source for e in day_events)
        rows.append({
            "date": day.isoformat(),
            "count": len(day_events),
            "statuses": {s.value: statuses[s] for s in AttendanceStatus},
            "sources": {s.value: sources[s] for s in EventSource},
        })
    return rows


def device_usage(events: Iterable[AttendanceEvent]) -> dict[str, int]:
    """Sensor events per device, busiest first."""
    usage = Counter(e.device_id for e in events if e.device_id is not None)
    return dict(usage.most_common())


def roster_match_report(
    events: Iterable[AttendanceEvent],
    roster: Sequence[Student],
) -> dict[str, Any]:
    """How many student ids seen in the events exist in the roster."""
    seen = {e.student_id for e in events}
    known = {s.id for s in roster}
    matched = sorted(seen & known)
    unmatched = sorted(seen - known)
    return {
        "unique_students": len(seen),
        "matched": len(matched),
        "unmatched": len(unmatched),
        "unmatched_ids": unmatched,
        "match_rate": round(len(matched) / max(1, len(seen)) * 100, 1),
    }


# ──────────────────────────────────────────────────────────────────────────────
# PIPELINE
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class AnalyticsResult:
    """Output bundle of one pipeline run."""
    events: tuple[AttendanceEvent, ...]
    student_stats: tuple[StudentAttendanceStats, ...]
    course_stats: tuple[CourseAttendanceStats, ...]
    alerts: tuple[AttendanceAlert, ...]
    devices: tuple[DeviceStatusRecord, ...] = ()
    seed: int | None = None

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        """Consumer contract: camelCase rows keyed by collection."""
        return {
            "events": [e.to_row() for e in self.events],
            "studentStats": [s.to_row() for s in self.student_stats],
            "courseStats": [c.to_row() for c in self.course_stats],
            "alerts": [a.to_row() for a in self.alerts],
            "devices": [d.to_row() for d in self.devices],
        }

    def summary(self) -> dict[str, Any]:
        """Headline figures for reports and charts."""
        rates = [s.attendance_rate for s in self.student_stats]
        return {
            "seed": self.seed,
            "total_events": len(self.events),
            "total_students": len(self.student_stats),
            "total_courses": len(self.course_stats),
            "total_alerts": len(self.alerts),
            "students_at_risk": sum(1 for s in self.student_stats if s.at_risk),
            "exam_ineligible": sum(1 for s in self.student_stats if not s.exam_eligible),
            "mean_attendance_rate": round(statistics.mean(rates), 2) if rates else 0,
            "median_attendance_rate": round(statistics.median(rates), 2) if rates else 0,
            "sessions_held": sum(c.sessions_held for c in self.course_stats),
            "status_counts": {
                s.value: sum(1 for e in self.events if e.status == s)
                for s in AttendanceStatus
            },
            "source_counts": {
                s.value: sum(1 for e in self.events if e.source == s)
                for s in EventSource
            },
            "student_trends": {
                t.value: sum(1 for s in self.student_stats if s.trend == t)
                for t in StudentTrend
            },
            "course_trends": {
                t.value: sum(1 for c in self.course_stats if c.trend == t)
                for t in CourseTrend
            },
            "alerts_by_severity": {
                sev.value: sum(1 for a in self.alerts if a.severity == sev)
                for sev in AlertSeverity
            },
            "alerts_by_kind": {
                k.value: sum(1 for a in self.alerts if a.kind == k)
                for k in AlertKind
            },
            "devices_online": sum(1 for d in self.devices if d.status == DeviceStatus.ONLINE),
            "device_usage": device_usage(self.events),
            "daily_breakdown": daily_breakdown(self.events),
        }

    # ── Export ────────────────────────────────────────────────────────────

    def to_json(self, output_dir: str) -> dict[str, str]:
        """Export each collection as a JSON file of camelCase rows."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        files = {}

        datasets = {
            "events": self.events,
            "student_stats": self.student_stats,
            "course_stats": self.course_stats,
            "alerts": self.alerts,
            "devices": self.devices,
        }

        for name, records in datasets.items():
            path = out / f"{name}.json"
            path.write_text(json.dumps(
                [r.to_row() for r in records], indent=2, default=str,
            ))
            files[name] = str(path)

        path = out / "summary.json"
        path.write_text(json.dumps(self.summary(), indent=2, default=str))
        files["summary"] = str(path)

        return files

    def to_csv(self, output_dir: str) -> dict[str, str]:
        """Export as CSV files for analysis."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        files = {}

        datasets: dict[str, Sequence[Any]] = {
            "events": self.events,
            "student_stats": self.student_stats,
            "course_stats": self.course_stats,
            "alerts": self.alerts,
        }

        for name, records in datasets.items():
            if not records:
                continue
            path = out / f"{name}.csv"
            rows = [r.to_row() for r in records]
            with open(path, "w", newline="") as f:
                writer = csv.DictWriter(f, fieldnames=rows[0].keys())
                writer.writeheader()
                writer.writerows(rows)
            files[name] = str(path)

        at_risk = [s for s in self.student_stats if s.at_risk]
        if at_risk:
            path = out / "at_risk_report.csv"
            with open(path, "w", newline="") as f:
                writer = csv.writer(f)
                writer.writerow([
                    "student_id", "student_name", "program", "sessions",
                    "present", "absent", "rate", "quiz_bonus", "trend",
                ])
                for s in sorted(at_risk, key=lambda x: (x.attendance_rate, x.student_id)):
                    writer.writerow([
                        s.student_id, s.student_name, s.program, s.total_sessions,
                        s.attended_count, s.absent_count,
                        f"{s.attendance_rate:.1f}", s.quiz_bonus, s.trend.value,
                    ])
            files["at_risk_report"] = str(path)

        daily = daily_breakdown(self.events)
        if daily:
            path = out / "daily_breakdown.csv"
            with open(path, "w", newline="") as f:
                writer = csv.writer(f)
                writer.writerow(
                    ["date", "count"]
                    + [s.value for s in AttendanceStatus]
                    + [s.value for s in EventSource]
                )
                for row in daily:
                    writer.writerow(
                        [row["date"], row["count"]]
                        + [row["statuses"][s.value] for s in AttendanceStatus]
                        + [row["sources"][s.value] for s in EventSource]
                    )
            files["daily_breakdown"] = str(path)

        return files

    def to_supabase_sql(self, output_dir: str) -> str:
        """Generate Supabase INSERT statements."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        path = out / "seed_data.sql"

        lines = [
            "-- Supabase Seed Data: attendance analytics",
            f"-- Generated: {datetime.now().isoformat()}",
            f"-- Seed: {self.seed}",
            f"-- Events: {len(self.events)} | Alerts: {len(self.alerts)} | "
            f"Devices: {len(self.devices)}",
            "",
        ]

        table_data: dict[str, list[dict[str, Any]]] = {
            "devices": [d.to_supabase_row() for d in self.devices],
            "attendance_events": [e.to_supabase_row() for e in self.events],
            "attendance_alerts": [a.to_supabase_row() for a in self.alerts],
        }

        for table_name, rows in table_data.items():
            if not rows:
                continue
            cols = list(rows[0].keys())
            lines.append(f"-- {table_name} ({len(rows)} records)")
            for row in rows:
                vals = []
                for c in cols:
                    v = row[c]
                    if v is None:
                        vals.append("NULL")
                    elif isinstance(v, bool):
                        vals.append("true" if v else "false")
                    elif isinstance(v, (int, float)):
                        vals.append(str(v))
                    else:
                        escaped = str(v).replace("'", "''")
                        vals.append(f"'{escaped}'")
                lines.append(
                    f"INSERT INTO {table_name} ({', '.join(cols)}) "
                    f"VALUES ({', '.join(vals)});"
                )
            lines.append("")

        path.write_text("\n".join(lines))
        return str(path)


def run_pipeline(
    roster: Sequence[Student],
    catalogue: Sequence[Course],
    window_days: int = 60,
    *,
    seed: int = 42,
    as_of: date | None = None,
    now: datetime | None = None,
    events: Iterable[AttendanceEvent] | None = None,
) -> AnalyticsResult:
    """
    Compute all analytics for one roster/catalogue pair.

    Events are synthesized from ``Random(seed)`` unless ``events`` is
    given. They are ordered newest-first before aggregation so the
    split-half trend compares recent sessions against older ones.
    """
    start = time.perf_counter()
    now = now or datetime.now()
    devices: list[DeviceStatusRecord] = []

    if events is None:
        rng = Random(seed)
        events = list(generate_attendance_events(
            roster, catalogue, window_days, rng, as_of or now.date(),
        ))
        devices = generate_device_statuses(rng, now)
        logger.info(
            "Generated %d events for %d courses over %d days",
            len(events), len(catalogue), window_days,
        )

    snapshot = tuple(sort_newest_first(events))
    student_stats = compute_student_stats(snapshot, roster)
    course_stats = compute_course_stats(snapshot, catalogue)
    alerts = generate_alerts(student_stats, now)

    logger.info(
        "Aggregated %d students, %d courses, %d alerts in %.1fms",
        len(student_stats), len(course_stats), len(alerts),
        (time.perf_counter() - start) * 1000,
    )

    return AnalyticsResult(
        events=snapshot,
        student_stats=tuple(student_stats),
        course_stats=tuple(course_stats),
        alerts=tuple(alerts),
        devices=tuple(devices),
        seed=seed,
    )


# ──────────────────────────────────────────────────────────────────────────────
# REPORT PRINTER
# ──────────────────────────────────────────────────────────────────────────────

REPORT_WIDTH = 72


def print_report(result: AnalyticsResult, roster: Sequence[Student] | None = None):
    """Print the attendance office report to stdout."""
    summary = result.summary()

    print(f"\n{'=' * REPORT_WIDTH}")
    print("  ATTENDANCE ANALYTICS — RUN REPORT")
    print(f"{'=' * REPORT_WIDTH}")
    print(f"  Seed: {result.seed}")

    print(f"\n  Events:        {summary['total_events']:,}")
    print(f"  Students:      {summary['total_students']:,}")
    print(f"  Courses:       {summary['total_courses']:,}")
    print(f"  Sessions held: {summary['sessions_held']:,}")
    print(f"  At risk:       {summary['students_at_risk']:,}")
    print(f"  Mean rate:     {summary['mean_attendance_rate']:.1f}%")

    print(f"\n{'─' * REPORT_WIDTH}")
    print("  COURSE ATTENDANCE")
    print(f"  {'Course':<9} {'Name':<20} {'Students':>8} "
          f"{'Sessions':>8} {'Avg %':>6} {'At Risk':>7} {'Trend':>6}")
    print(f"  {'─' * (REPORT_WIDTH - 2)}")
    for c in result.course_stats:
        flag = " !!" if c.at_risk_students else ""
        print(
            f"  {c.course_id[:9]:<9} {c.course_name[:20]:<20} {c.total_students:>8} "
            f"{c.sessions_held:>8} {c.average_attendance:>6.1f} "
            f"{c.at_risk_students:>7} {c.trend.value:>6}{flag}"
        )

    print(f"\n{'─' * REPORT_WIDTH}")
    print("  EVENT MIX")
    print(f"  {'─' * 60}")
    for status, count in summary["status_counts"].items():
        print(f"  {status:25s}: {count:,}")
    for source, count in summary["source_counts"].items():
        print(f"  {source:25s}: {count:,}")

    if result.alerts:
        print(f"\n{'─' * REPORT_WIDTH}")
        print(f"  ALERTS ({len(result.alerts)} students)")
        print(f"  {'─' * 60}")

        by_severity: dict[AlertSeverity, list[AttendanceAlert]] = defaultdict(list)
        for a in result.alerts:
            by_severity[a.severity].append(a)

        for sev, limit in [
            (AlertSeverity.CRITICAL, 10),
            (AlertSeverity.WARNING, 5),
            (AlertSeverity.INFO, 3),
        ]:
            alerts = by_severity.get(sev, [])
            if alerts:
                print(f"\n  [{sev.value.upper()}] ({len(alerts)}):")
                for a in alerts[:limit]:
                    print(f"    {a.id}  {a.message}")

    if result.devices:
        print(f"\n{'─' * REPORT_WIDTH}")
        print(f"  CAMERAS ({summary['devices_online']}/{len(result.devices)} online)")
        print(f"  {'─' * 60}")
        for d in result.devices:
            print(f"  {d.id:<9} {d.location:<38} {d.status.value:<12} {d.accuracy:.1f}%")

    if roster is not None:
        match = roster_match_report(result.events, roster)
        print(f"\n  Roster match: {match['matched']}/{match['unique_students']} "
              f"({match['match_rate']:.1f}%)")

    print(f"\n{'=' * REPORT_WIDTH}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def load_records(path: str) -> list[dict[str, Any]]:
    with open(path) as f:
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def main():
    parser = argparse.ArgumentParser(
        description="Attendance Analytics Engine",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--window", type=int, default=60, help="Lookback window in days")
    parser.add_argument("--students", type=int, default=150, help="Sample roster size")
    parser.add_argument("--roster", help="Roster JSON file (replaces the sample roster)")
    parser.add_argument("--catalogue", help="Course catalogue JSON file")
    parser.add_argument("--as-of", type=date.fromisoformat, help="Last day of the window (YYYY-MM-DD)")
    parser.add_argument(
        "--output", choices=["report", "json", "csv", "supabase", "all"],
        default="report", help="Output format",
    )
    parser.add_argument("--output-dir", default="./output", help="Output directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.roster:
        roster = [Student.from_record(r) for r in load_records(args.roster)]
    else:
        roster = build_sample_roster(Random(args.seed), args.students)
    if args.catalogue:
        catalogue = [Course.from_record(r) for r in load_records(args.catalogue)]
    else:
        catalogue = SAMPLE_CATALOGUE

    result = run_pipeline(
        roster, catalogue, args.window, seed=args.seed, as_of=args.as_of,
    )

    print_report(result, roster)

    if args.output in ("json", "all"):
        files = result.to_json(args.output_dir)
        print(f"  JSON -> {args.output_dir}/ ({len(files)} files)")

    if args.output in ("csv", "all"):
        files = result.to_csv(args.output_dir)
        print(f"  CSV  -> {args.output_dir}/ ({len(files)} files)")

    if args.output in ("supabase", "all"):
        path = result.to_supabase_sql(args.output_dir)
        print(f"  SQL  -> {path}")


if __name__ == "__main__":
    main()
