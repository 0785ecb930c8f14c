from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

from billing import MONTHLY_FEE, PENDING, effective_status, resolve_monthly_due, utc_today

db = SQLAlchemy()

ROLES = ('ADMIN', 'STAFF')


# Database Models
class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), nullable=False, unique=True)
    password_hash = db.Column(db.String(100), nullable=False)  # bcrypt
    role = db.Column(db.String(20), nullable=False, default='STAFF')  # 'ADMIN' or 'STAFF'
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class SchoolYear(db.Model):
    __tablename__ = 'school_years'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False, unique=True)  # e.g. 2024-2025
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'startDate': self.start_date.isoformat(),
            'endDate': self.end_date.isoformat(),
            'isActive': self.is_active,
        }


class MembershipPlan(db.Model):
    __tablename__ = 'membership_plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)
    days_per_week = db.Column(db.Integer, nullable=False)
    monthly_price = db.Column(db.Float, nullable=False, default=0.0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self, student_count=None):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'daysPerWeek': self.days_per_week,
            'monthlyPrice': self.monthly_price,
            'isActive': self.is_active,
        }
        if student_count is not None:
            data['studentCount'] = student_count
        return data


class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    student_code = db.Column(db.String(20), nullable=False, unique=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(200))
    membership_plan_id = db.Column(db.Integer, db.ForeignKey('membership_plans.id'), nullable=True)
    # Resolved at save time; changing the plan later never touches existing payments
    monthly_due_amount = db.Column(db.Float, nullable=True)
    discount_rate = db.Column(db.Float, nullable=True, default=0.0)  # percent, 0-100
    school_year_id = db.Column(db.Integer, db.ForeignKey('school_years.id'), nullable=False)
    enrollment_date = db.Column(db.Date, default=utc_today)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    membership_plan = db.relationship('MembershipPlan', backref='students')
    school_year = db.relationship('SchoolYear', backref='students')

    @property
    def full_name(self):
        return f'{self.first_name} {self.last_name}'

    def resolve_monthly_due(self, override=None):
        """Store the amount this student owes per month (plan price less discount)"""
        plan_price = self.membership_plan.monthly_price if self.membership_plan else None
        self.monthly_due_amount = float(resolve_monthly_due(plan_price, self.discount_rate, override))
        return self.monthly_due_amount

    @staticmethod
    def generate_student_code(session=None):
        """Generate the next sequential student code (ST0001, ST0002, ...)"""
        session = session or db.session
        existing_numbers = set()
        for (code,) in session.query(Student.student_code).all():
            digits = code[2:] if code and code.startswith('ST') else ''
            if digits.isdigit():
                existing_numbers.add(int(digits))

        next_number = max(existing_numbers) + 1 if existing_numbers else 1
        return f"ST{next_number:04d}"

    def to_dict(self):
        return {
            'id': self.id,
            'studentCode': self.student_code,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
            'membershipPlanId': self.membership_plan_id,
            'membershipPlanName': self.membership_plan.name if self.membership_plan else None,
            'monthlyDueAmount': self.monthly_due_amount,
            'discountRate': self.discount_rate,
            'schoolYearId': self.school_year_id,
            'enrollmentDate': self.enrollment_date.isoformat() if self.enrollment_date else None,
            'isActive': self.is_active,
        }


class Payment(db.Model):
    __tablename__ = 'payments'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id'), nullable=False)
    school_year_id = db.Column(db.Integer, db.ForeignKey('school_years.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    paid_date = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=PENDING)  # PENDING, PAID, OVERDUE, CANCELLED
    payment_type = db.Column(db.String(20), nullable=False, default=MONTHLY_FEE)  # MONTHLY_FEE, REGISTRATION, OTHER
    method = db.Column(db.String(20), nullable=True)  # CASH, CARD, TRANSFER
    reference = db.Column(db.String(100), nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    student = db.relationship('Student', backref='payments')
    school_year = db.relationship('SchoolYear', backref='payments')

    # Safety net for concurrent generation runs: one payment per student and due date
    __table_args__ = (db.UniqueConstraint('student_id', 'due_date', name='unique_student_due_date'),)

    def to_dict(self, today=None):
        student = self.student
        return {
            'id': self.id,
            'studentId': self.student_id,
            'studentCode': student.student_code if student else None,
            'studentName': student.full_name if student else None,
            'schoolYearId': self.school_year_id,
            'amount': self.amount,
            'dueDate': self.due_date.isoformat(),
            'paidDate': self.paid_date.isoformat() if self.paid_date else None,
            'status': effective_status(self, today),
            'storedStatus': self.status,
            'paymentType': self.payment_type,
            'method': self.method,
            'reference': self.reference,
            'description': self.notes,
        }


class Expense(db.Model):
    __tablename__ = 'expenses'

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)  # SERVICE, MATERIALS, DAILY_EMPLOYEES
    description = db.Column(db.String(400), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    date = db.Column(db.Date, nullable=False)
    category = db.Column(db.String(100))
    vendor = db.Column(db.String(200))
    notes = db.Column(db.Text)
    created_by = db.Column(db.String(80))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'type': self.type,
            'description': self.description,
            'amount': self.amount,
            'date': self.date.isoformat(),
            'category': self.category,
            'vendor': self.vendor,
            'notes': self.notes,
            'createdBy': self.created_by,
        }
