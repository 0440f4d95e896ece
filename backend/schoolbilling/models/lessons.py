from __future__ import annotations

from ..extensions import db
from schoolbilling.time_utils import to_utc_z


class Student(db.Model):
    __tablename__ = "students"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    family_id = db.Column(db.Integer, db.ForeignKey("families.id"), nullable=True, index=True)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    family = db.relationship("Family", backref=db.backref("students", lazy=True))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Lesson(db.Model):
    """
    A recurring lesson within a term.

    LESSON TYPES:
    - INDIVIDUAL, GROUP, BAND: billed at a flat rate per term week
    - HYBRID: alternates group and individual weeks; billed from its
      HybridLessonPattern
    """
    __tablename__ = "lessons"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    school_id = db.Column(db.Integer, db.ForeignKey("schools.id"), nullable=False, index=True)
    term_id = db.Column(db.Integer, db.ForeignKey("terms.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    lesson_type = db.Column(db.String(16), nullable=False, default="INDIVIDUAL")
    duration_mins = db.Column(db.Integer, nullable=False, default=45)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    term = db.relationship("Term", backref=db.backref("lessons", lazy=True))
    hybrid_pattern = db.relationship("HybridLessonPattern", uselist=False, back_populates="lesson")


class LessonEnrollment(db.Model):
    __tablename__ = "lesson_enrollments"
    __table_args__ = (
        db.UniqueConstraint("lesson_id", "student_id", name="uq_lesson_enrollments_lesson_student"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    lesson_id = db.Column(db.Integer, db.ForeignKey("lessons.id"), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey("students.id"), nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    enrolled_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lesson = db.relationship("Lesson", backref=db.backref("enrollments", lazy=True))
    student = db.relationship("Student", backref=db.backref("enrollments", lazy=True))


class HybridLessonPattern(db.Model):
    """
    Week pattern for a hybrid lesson.

    group_weeks and individual_weeks are JSON arrays of term week numbers.
    A week number appears in at most one of the two sets.
    """
    __tablename__ = "hybrid_lesson_patterns"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    lesson_id = db.Column(db.Integer, db.ForeignKey("lessons.id"), nullable=False, unique=True, index=True)
    group_weeks = db.Column(db.JSON, nullable=False, default=list)
    individual_weeks = db.Column(db.JSON, nullable=False, default=list)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    lesson = db.relationship("Lesson", back_populates="hybrid_pattern")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lesson_id": self.lesson_id,
            "group_weeks": list(self.group_weeks or []),
            "individual_weeks": list(self.individual_weeks or []),
            "created_at": to_utc_z(self.created_at),
        }
