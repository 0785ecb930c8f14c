"""
Database-backed billing operations.

BillingService is the data-access handle: it loads records through the
session it is given, hands them to the pure functions in billing.py and
reports.py, and persists whatever those decide.
"""
from datetime import datetime, time

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app_logger import get_logger
from app_models import Expense, MembershipPlan, Payment, SchoolYear, Student
from billing import (
    CANCELLED, DEFAULT_DUE_DAY, DEFAULT_PAYMENT_METHOD, PAID, PAYMENT_METHODS,
    billed_months, check_school_year_covers, check_transition, enrollment_months,
    format_month, month_bounds, month_label, parse_month, plan_missing_payments,
    resolve_monthly_due, to_money, utc_today,
)
from errors import BillingError, ConfigurationError, ConflictError, NotFoundError, ValidationError
from reports import (
    EXPENSE_TYPES, compute_stats, expense_stats, month_summary, monthly_breakdown,
    payment_methods, plan_stats,
)

logger = get_logger(__name__)


class BillingService:

    def __init__(self, session, due_day=DEFAULT_DUE_DAY, school_year_end_month=7, today=None):
        self.session = session
        self.due_day = due_day
        self.school_year_end_month = school_year_end_month
        self._today = today

    @classmethod
    def from_config(cls, session, config, today=None):
        return cls(
            session,
            due_day=config.get('PAYMENT_DUE_DAY', DEFAULT_DUE_DAY),
            school_year_end_month=int(config.get('SCHOOL_YEAR_END_MONTH', 7)),
            today=today,
        )

    def today(self):
        return self._today or utc_today()

    def now(self):
        if self._today:
            return datetime.combine(self._today, time(12, 0))
        return datetime.utcnow()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get(self, model, record_id, label):
        record = self.session.get(model, record_id) if record_id is not None else None
        if record is None:
            raise NotFoundError(f'{label} not found')
        return record

    def get_student(self, student_id):
        return self._get(Student, student_id, 'Student')

    def get_school_year(self, school_year_id):
        return self._get(SchoolYear, school_year_id, 'School year')

    def get_plan(self, plan_id):
        return self._get(MembershipPlan, plan_id, 'Membership plan')

    def get_payment(self, payment_id):
        return self._get(Payment, payment_id, 'Payment')

    def current_school_year(self):
        school_year = (self.session.query(SchoolYear)
                       .filter_by(is_active=True)
                       .order_by(SchoolYear.start_date.desc())
                       .first())
        if school_year is None:
            raise NotFoundError('No active school year found')
        return school_year

    def list_school_years(self):
        return self.session.query(SchoolYear).order_by(SchoolYear.start_date.desc()).all()

    # ------------------------------------------------------------------
    # Membership plans
    # ------------------------------------------------------------------

    def list_plans(self, active_only=True):
        """Plans with the number of students on each"""
        query = (self.session.query(MembershipPlan, func.count(Student.id))
                 .outerjoin(Student, Student.membership_plan_id == MembershipPlan.id))
        if active_only:
            query = query.filter(MembershipPlan.is_active.is_(True))
        return query.group_by(MembershipPlan.id).order_by(MembershipPlan.days_per_week).all()

    @staticmethod
    def _check_plan_fields(name, days_per_week, monthly_price):
        if not name or not str(name).strip() or days_per_week is None or monthly_price is None:
            raise ValidationError('Missing required fields: name, daysPerWeek, monthlyPrice')
        if not 1 <= int(days_per_week) <= 7:
            raise ValidationError('Days per week must be between 1 and 7')
        price = to_money(monthly_price)
        if price < 0:
            raise ValidationError('Monthly price must be non-negative')
        return str(name).strip(), int(days_per_week), price

    def create_plan(self, name, days_per_week, monthly_price, description=None):
        name, days_per_week, price = self._check_plan_fields(name, days_per_week, monthly_price)
        plan = MembershipPlan(
            name=name,
            description=description,
            days_per_week=days_per_week,
            monthly_price=float(price),
            is_active=True,
        )
        self.session.add(plan)
        self.session.commit()
        logger.info("Created membership plan %s (%s/month)", plan.name, price)
        return plan

    def update_plan(self, plan_id, name, days_per_week, monthly_price, description=None):
        """Edit a plan.

        Students keep their stored monthly amount until they are saved again,
        and existing payments are never repriced.
        """
        plan = self.get_plan(plan_id)
        name, days_per_week, price = self._check_plan_fields(name, days_per_week, monthly_price)
        plan.name = name
        plan.days_per_week = days_per_week
        plan.monthly_price = float(price)
        if description is not None:
            plan.description = description
        self.session.commit()
        logger.info("Updated membership plan %s (%s/month)", plan.name, price)
        return plan

    def delete_plan(self, plan_id):
        plan = self.get_plan(plan_id)
        enrolled = self.session.query(Student).filter(Student.membership_plan_id == plan.id).count()
        if enrolled:
            raise ConflictError(
                f'Cannot delete plan with {enrolled} enrolled student(s). '
                'Please transfer students to another plan first.'
            )
        self.session.delete(plan)
        self.session.commit()
        logger.info("Deleted membership plan %s", plan.name)

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    def create_student(self, first_name, last_name, school_year_id=None, membership_plan_id=None,
                       discount_rate=None, monthly_due_amount=None, email=None,
                       generate_payments=False):
        """Enroll a student, resolving the monthly due amount once.

        Returns the student and the payments generated for the enrollment
        months (empty unless generate_payments is set).
        """
        school_year = (self.get_school_year(school_year_id) if school_year_id is not None
                       else self.current_school_year())
        plan = self.get_plan(membership_plan_id) if membership_plan_id is not None else None
        amount = resolve_monthly_due(plan.monthly_price if plan else None, discount_rate, monthly_due_amount)

        student = Student(
            student_code=Student.generate_student_code(self.session),
            first_name=first_name,
            last_name=last_name,
            email=email,
            membership_plan=plan,
            monthly_due_amount=float(amount),
            discount_rate=float(discount_rate) if discount_rate is not None else 0.0,
            school_year=school_year,
            enrollment_date=self.today(),
            is_active=True,
        )
        self.session.add(student)
        # Student and enrollment payments are committed together or not at all
        try:
            self.session.flush()
            generated = self._add_payments(self._enrollment_candidates(student)) if generate_payments else []
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError('A student with this code already exists, please retry')
        except BillingError:
            self.session.rollback()
            raise
        logger.info("Enrolled student %s (%s) at %.2f/month, %d payment(s) generated",
                    student.student_code, student.full_name, student.monthly_due_amount, len(generated))
        return student, generated

    def update_student(self, student_id, **changes):
        """Apply changes and re-resolve the stored monthly amount.

        Existing payments keep the amount they were created with.
        """
        student = self.get_student(student_id)
        override = changes.pop('monthly_due_amount', None)

        if 'membership_plan_id' in changes:
            plan_id = changes.pop('membership_plan_id')
            student.membership_plan = self.get_plan(plan_id) if plan_id is not None else None
        if 'school_year_id' in changes:
            school_year_id = changes.pop('school_year_id')
            if school_year_id is None:
                self.session.rollback()
                raise ValidationError('School year is required')
            student.school_year = self.get_school_year(school_year_id)
        if 'discount_rate' in changes:
            rate = changes.pop('discount_rate')
            student.discount_rate = float(rate) if rate is not None else 0.0
        for field in ('first_name', 'last_name', 'email', 'is_active'):
            if field in changes and changes[field] is not None:
                setattr(student, field, changes[field])

        if override is None and student.membership_plan is None:
            override = student.monthly_due_amount
        try:
            student.resolve_monthly_due(override=override)
        except (ConfigurationError, ValidationError):
            self.session.rollback()
            raise
        self.session.commit()
        logger.info("Updated student %s, monthly due now %.2f", student.student_code, student.monthly_due_amount)
        return student

    # ------------------------------------------------------------------
    # Payment generation
    # ------------------------------------------------------------------

    def existing_months(self, student_id):
        rows = self.session.query(Payment.due_date).filter(Payment.student_id == student_id).all()
        return billed_months(rows)

    def _add_payments(self, candidates):
        """Add Payment rows for the candidates to the session without committing"""
        payments = [
            Payment(
                student_id=c.student_id,
                school_year_id=c.school_year_id,
                amount=float(c.amount),
                due_date=c.due_date,
                status=c.status,
                payment_type=c.payment_type,
                notes=c.notes,
            )
            for c in candidates
        ]
        self.session.add_all(payments)
        return payments

    def _persist(self, candidates):
        payments = self._add_payments(candidates)
        if not payments:
            return payments
        try:
            self.session.commit()
        except IntegrityError:
            # Another request created the same month between our check and insert
            self.session.rollback()
            logger.warning("Duplicate payment rejected by unique constraint for student %s",
                           candidates[0].student_id)
            raise ConflictError('Payment already exists for this student and month')
        return payments

    def generate_missing_payments(self, student_id, school_year_id, from_month, to_month, note=None):
        """Create the PENDING monthly payments a student is missing in a month range"""
        student = self.get_student(student_id)
        school_year = self.get_school_year(school_year_id)
        candidates = plan_missing_payments(
            student, school_year, from_month, to_month,
            existing_months=self.existing_months(student.id),
            due_day=self.due_day,
            note=note,
        )
        created = self._persist(candidates)
        logger.info("Generated %d payment(s) for student %s from %s to %s",
                    len(created), student.student_code, from_month, to_month)
        return created

    def _enrollment_candidates(self, student):
        """Payments for a new student from the current month to the end of the school year"""
        first, last = enrollment_months(student.school_year, self.today(), self.school_year_end_month)
        if first > last:
            logger.info("No enrollment months left to bill for student %s", student.student_code)
            return []
        if to_money(student.monthly_due_amount or 0) <= 0:
            # Fully discounted or free plan: enrolled with nothing to bill
            logger.info("Student %s owes nothing per month, no payments generated", student.student_code)
            return []
        return plan_missing_payments(student, student.school_year, first, last, due_day=self.due_day)

    def create_monthly_payment(self, student_id, month, description=None):
        """Create one student's payment for a single month; 409 if it already exists"""
        student = self.get_student(student_id)
        year, month_number = parse_month(month)
        if (year, month_number) in self.existing_months(student.id):
            raise ConflictError('Payment already exists for this student and month')
        candidates = plan_missing_payments(
            student, student.school_year, month, month,
            due_day=self.due_day,
            note=description or f'Monthly fee for {format_month(year, month_number)}',
        )
        return self._persist(candidates)[0]

    def _active_billable_students(self, school_year_id):
        return (self.session.query(Student)
                .filter(Student.is_active.is_(True),
                        Student.school_year_id == school_year_id,
                        Student.membership_plan_id.isnot(None))
                .order_by(Student.first_name, Student.last_name)
                .all())

    def auto_generate_month(self, school_year_id, year, month):
        """Create the month's payment for every active student of a school year.

        Students that already have the month, or whose amount cannot be
        determined, are skipped and reported.
        """
        year, month = parse_month((int(year), int(month)))
        today = self.today()
        if (year, month) < (today.year, today.month):
            raise ValidationError('Cannot create payments for past months')
        school_year = self.get_school_year(school_year_id)
        check_school_year_covers(school_year, (year, month), (year, month))

        students = self._active_billable_students(school_year.id)
        label = month_label(year, month)
        created = skipped = 0
        results = []
        for student in students:
            entry = {'studentId': student.id, 'studentName': student.full_name}
            try:
                candidates = plan_missing_payments(
                    student, school_year, (year, month), (year, month),
                    existing_months=self.existing_months(student.id),
                    due_day=self.due_day,
                )
                if not candidates:
                    skipped += 1
                    results.append({**entry, 'status': 'skipped', 'reason': 'Payment already exists for this month'})
                    continue
                payment = self._persist(candidates)[0]
            except ConfigurationError:
                skipped += 1
                results.append({**entry, 'status': 'skipped', 'reason': 'No valid payment amount found'})
                continue
            except ConflictError as e:
                skipped += 1
                results.append({**entry, 'status': 'error', 'reason': e.message})
                continue

            created += 1
            results.append({
                **entry,
                'status': 'created',
                'paymentId': payment.id,
                'amount': payment.amount,
                'dueDate': payment.due_date.isoformat(),
            })

        logger.info("Auto-generated payments: %d created, %d skipped for %s", created, skipped, label)
        if not students:
            message = 'No active students found with membership plans'
        else:
            message = f'Payment generation completed for {label}'
        return {
            'message': message,
            'summary': {'totalStudents': len(students), 'created': created, 'skipped': skipped},
            'results': results,
        }

    def generation_status(self, school_year_id, year, month):
        year, month = parse_month((int(year), int(month)))
        school_year = self.get_school_year(school_year_id)
        start, end = month_bounds(year, month)
        active_count = len(self._active_billable_students(school_year.id))
        payments = (self.session.query(Payment)
                    .filter(Payment.school_year_id == school_year.id,
                            Payment.due_date >= start, Payment.due_date < end)
                    .order_by(Payment.created_at.desc())
                    .all())
        return {
            'month': month,
            'year': year,
            'monthName': month_label(year, month),
            'activeStudentsCount': active_count,
            'existingPaymentsCount': len(payments),
            'pendingGeneration': max(active_count - len(payments), 0),
            'isComplete': len(payments) >= active_count,
            'payments': [p.to_dict(self.today()) for p in payments],
        }

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def _settle(self, payment, method=None, reference=None, description=None):
        if method is not None and method not in PAYMENT_METHODS:
            raise ValidationError(f'Invalid payment method: {method}')
        check_transition(payment.status, PAID)
        payment.status = PAID
        payment.paid_date = self.now()
        payment.method = method or payment.method or DEFAULT_PAYMENT_METHOD
        if reference:
            payment.reference = reference
        if description:
            payment.notes = description
        self.session.commit()
        logger.info("Payment %s for student %s marked as paid", payment.id, payment.student_id)
        return payment

    def mark_paid(self, payment_id, method=None, reference=None):
        return self._settle(self.get_payment(payment_id), method=method, reference=reference)

    def mark_received(self, student_id, month, description=None, method=None):
        """Settle a student's payment for a month ('YYYY-MM')"""
        self.get_student(student_id)
        start, end = month_bounds(*parse_month(month))
        payment = (self.session.query(Payment)
                   .filter(Payment.student_id == student_id,
                           Payment.due_date >= start, Payment.due_date < end)
                   .first())
        if payment is None:
            raise NotFoundError('No payment found for this student and month')
        return self._settle(payment, method=method, description=description)

    def cancel_payment(self, payment_id):
        payment = self.get_payment(payment_id)
        check_transition(payment.status, CANCELLED)
        payment.status = CANCELLED
        self.session.commit()
        logger.info("Payment %s cancelled", payment.id)
        return payment

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def create_expense(self, expense_type, description, amount, expense_date, category=None,
                       vendor=None, notes=None, created_by=None):
        if expense_type not in EXPENSE_TYPES:
            raise ValidationError(f'Expense type must be one of {", ".join(EXPENSE_TYPES)}')
        if not description or expense_date is None:
            raise ValidationError('Missing required fields')
        value = to_money(amount)
        if value is None or value <= 0:
            raise ValidationError('Expense amount must be greater than zero')

        expense = Expense(type=expense_type, description=description, amount=float(value),
                          date=expense_date, category=category, vendor=vendor, notes=notes,
                          created_by=created_by)
        self.session.add(expense)
        self.session.commit()
        return expense

    def list_expenses(self):
        return self.session.query(Expense).order_by(Expense.date.desc()).all()

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def list_payments(self):
        return self.session.query(Payment).order_by(Payment.due_date.desc()).all()

    def financial_stats(self, period='all'):
        payments = self.list_payments()
        expenses = self.session.query(Expense).all()
        total_students = self.session.query(Student).count()
        paying_students = (self.session.query(Payment.student_id)
                           .filter(Payment.status == PAID)
                           .distinct()
                           .count())
        stats = compute_stats(payments, expenses, period=period, today=self.today(),
                              total_students=total_students, paying_students=paying_students)
        return payments, stats

    def payment_stats(self, period='all'):
        payments, stats = self.financial_stats(period)
        data = stats.to_dict()
        data['monthlyBreakdown'] = monthly_breakdown(payments, self.today())
        data['paymentMethods'] = payment_methods(payments)
        return data

    def monthly_stats(self, year, month):
        year, month = parse_month((int(year), int(month)))
        start, end = month_bounds(year, month)
        payments = (self.session.query(Payment)
                    .filter(Payment.due_date >= start, Payment.due_date < end)
                    .order_by(Payment.due_date)
                    .all())
        today = self.today()
        serialized = [p.to_dict(today) for p in payments if p.status != CANCELLED]
        return {
            'month': month,
            'year': year,
            'monthName': month_label(year, month),
            'stats': month_summary(payments, year, month, today),
            'payments': {
                'all': serialized,
                'paid': [p for p in serialized if p['status'] == PAID],
                'stillDue': [p for p in serialized if p['status'] != PAID],
            },
        }

    def expense_stats(self):
        return expense_stats(self.session.query(Expense).all(), self.today())

    def plan_stats(self):
        return plan_stats(
            self.session.query(MembershipPlan).all(),
            self.session.query(Student).all(),
            self.session.query(Payment).all(),
            self.today(),
        )
