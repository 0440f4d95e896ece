from .tenancy import School, Family, Parent, Term
from .lessons import Student, Lesson, LessonEnrollment, HybridLessonPattern
from .billing import Invoice, InvoiceLineItem, Payment

__all__ = [
    'School', 'Family', 'Parent', 'Term',
    'Student', 'Lesson', 'LessonEnrollment', 'HybridLessonPattern',
    'Invoice', 'InvoiceLineItem', 'Payment',
]
