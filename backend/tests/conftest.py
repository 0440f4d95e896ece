"""
Pytest fixtures for school billing tests.

Provides the test database, two-tenant fixtures (school A and school B) and
a small enrollment graph for term invoice generation.
"""

from datetime import date, timedelta

import pytest

from schoolbilling import create_app
from schoolbilling.config import TestingConfig
from schoolbilling.extensions import db
from schoolbilling.models import (
    Family,
    HybridLessonPattern,
    Lesson,
    LessonEnrollment,
    Parent,
    School,
    Student,
    Term,
)
from schoolbilling.services.billing_calculator import LineItemInput
from schoolbilling.services.invoice_service import create_invoice
from schoolbilling.services.notification_service import RecordingNotifier
from schoolbilling.services.tenant_service import TenantScope
from schoolbilling.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope='function')
def school_a(db_session):
    """Create School A (first tenant)."""
    school = School(name="Harmony Music School", slug="harmony", email="office@harmony.test")
    db_session.add(school)
    db_session.commit()
    return school


@pytest.fixture(scope='function')
def school_b(db_session):
    """Create School B (second tenant)."""
    school = School(name="Crescendo Academy", slug="crescendo", email="office@crescendo.test")
    db_session.add(school)
    db_session.commit()
    return school


@pytest.fixture(scope='function')
def scope_a(school_a):
    return TenantScope.for_school(school_a.id)


@pytest.fixture(scope='function')
def scope_b(school_b):
    return TenantScope.for_school(school_b.id)


@pytest.fixture(scope='function')
def family_a(db_session, school_a):
    """Family in School A with a primary and a secondary parent."""
    family = Family(school_id=school_a.id, name="Nguyen Family")
    db_session.add(family)
    db_session.flush()
    db_session.add_all([
        Parent(
            school_id=school_a.id,
            family_id=family.id,
            contact_name="Linh Nguyen",
            contact_email="linh@example.test",
            is_primary=True,
        ),
        Parent(
            school_id=school_a.id,
            family_id=family.id,
            contact_name="Minh Nguyen",
            contact_email="minh@example.test",
            is_primary=False,
        ),
    ])
    db_session.commit()
    return family


@pytest.fixture(scope='function')
def family_b(db_session, school_b):
    """Family in School B."""
    family = Family(school_id=school_b.id, name="Okafor Family")
    db_session.add(family)
    db_session.flush()
    db_session.add(Parent(
        school_id=school_b.id,
        family_id=family.id,
        contact_name="Ada Okafor",
        contact_email="ada@example.test",
    ))
    db_session.commit()
    return family


@pytest.fixture(scope='function')
def term_a(db_session, school_a):
    term = Term(
        school_id=school_a.id,
        name="Term 1 2026",
        start_date=date(2026, 2, 2),
        end_date=date(2026, 4, 10),
    )
    db_session.add(term)
    db_session.commit()
    return term


@pytest.fixture(scope='function')
def student_a(db_session, school_a, family_a):
    student = Student(school_id=school_a.id, family_id=family_a.id, first_name="Mai", last_name="Nguyen")
    db_session.add(student)
    db_session.commit()
    return student


@pytest.fixture(scope='function')
def group_lesson_a(db_session, school_a, term_a, student_a):
    """Standard 45-minute group lesson with student_a enrolled."""
    lesson = Lesson(
        school_id=school_a.id,
        term_id=term_a.id,
        name="Junior Piano Group",
        lesson_type="GROUP",
        duration_mins=45,
    )
    db_session.add(lesson)
    db_session.flush()
    db_session.add(LessonEnrollment(lesson_id=lesson.id, student_id=student_a.id))
    db_session.commit()
    return lesson


@pytest.fixture(scope='function')
def hybrid_lesson_a(db_session, school_a, term_a, student_a):
    """Hybrid lesson: weeks 1-3 group, week 4 individual, student_a enrolled."""
    lesson = Lesson(
        school_id=school_a.id,
        term_id=term_a.id,
        name="Guitar Hybrid",
        lesson_type="HYBRID",
        duration_mins=45,
    )
    db_session.add(lesson)
    db_session.flush()
    db_session.add(HybridLessonPattern(lesson_id=lesson.id, group_weeks=[1, 2, 3], individual_weeks=[4]))
    db_session.add(LessonEnrollment(lesson_id=lesson.id, student_id=student_a.id))
    db_session.commit()
    return lesson


@pytest.fixture(scope='function')
def make_invoice(db_session):
    """Factory: create a DRAFT invoice with one line item of ``total_cents``."""
    def _make(scope, family, total_cents=10000, due_date=None, term_id=None):
        return create_invoice(
            scope,
            family_id=family.id,
            term_id=term_id,
            items=[LineItemInput(description="Tuition", quantity=1, unit_price_cents=total_cents)],
            due_date=due_date or (utcnow() + timedelta(days=14)),
        )
    return _make
