"""
Student billing rules: monthly due amounts, monthly payment generation and
payment status transitions.

Nothing in here touches the database. Inputs are plain objects read by
attribute (ORM rows work as well as simple namespaces), so the same functions
back the API, the CLI and the tests.
"""
from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from errors import ConfigurationError, ConflictError, RangeError, ValidationError

CENT = Decimal('0.01')
ZERO = Decimal('0.00')
HUNDRED = Decimal('100')

# Payment statuses
PENDING = 'PENDING'
PAID = 'PAID'
OVERDUE = 'OVERDUE'
CANCELLED = 'CANCELLED'
PAYMENT_STATUSES = (PENDING, PAID, OVERDUE, CANCELLED)

ALLOWED_TRANSITIONS = {
    PENDING: (PAID, OVERDUE, CANCELLED),
    OVERDUE: (PAID, CANCELLED),
    PAID: (),
    CANCELLED: (),
}

MONTHLY_FEE = 'MONTHLY_FEE'
PAYMENT_METHODS = ('CASH', 'CARD', 'TRANSFER')
DEFAULT_PAYMENT_METHOD = 'CASH'

DEFAULT_DUE_DAY = 8

# Month arithmetic needs the following month to exist as a date
MIN_YEAR = 1
MAX_YEAR = 9998


def to_money(value):
    """Convert a number (Decimal, float, int or numeric string) to a 2-decimal Decimal"""
    if value is None:
        return None
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f'Invalid amount: {value!r}')
    if not amount.is_finite():
        raise ValidationError(f'Invalid amount: {value!r}')
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_rate(value):
    if value is None or value == '':
        return Decimal('0')
    try:
        rate = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f'Invalid discount rate: {value!r}')
    if not rate.is_finite() or rate < 0 or rate > HUNDRED:
        raise ValidationError('Discount rate must be between 0 and 100')
    return rate


# ---------------------------------------------------------------------------
# Membership pricing
# ---------------------------------------------------------------------------

def compute_monthly_due(monthly_price, discount_rate=None) -> Decimal:
    """Plan price minus the student's percentage discount, rounded to cents.

    A missing discount counts as 0.
    """
    price = to_money(monthly_price)
    if price is None or price < 0:
        raise ValidationError('Monthly price must be non-negative')
    rate = _to_rate(discount_rate)
    return to_money(price - price * rate / HUNDRED)


def resolve_monthly_due(plan_price=None, discount_rate=None, override=None) -> Decimal:
    """Work out the amount stored on a student record when it is saved.

    With a membership plan the computed price wins; without one the explicit
    override is used.
    """
    if plan_price is not None:
        return compute_monthly_due(plan_price, discount_rate)
    if override is not None:
        amount = to_money(override)
        if amount <= 0:
            raise ConfigurationError('Monthly due amount must be greater than zero')
        return amount
    raise ConfigurationError(
        'Cannot determine amount: student has no membership plan and no monthly due amount'
    )


def student_monthly_amount(student) -> Decimal:
    """Amount to bill a student for one month.

    The stored monthly_due_amount is authoritative; the plan price with the
    student's discount is the fallback.
    """
    amount = getattr(student, 'monthly_due_amount', None)
    if amount is not None:
        amount = to_money(amount)
    else:
        plan = getattr(student, 'membership_plan', None)
        if plan is None or plan.monthly_price is None:
            raise ConfigurationError(
                f'Cannot determine amount for student {student.id}: '
                'no membership plan and no monthly due amount'
            )
        amount = compute_monthly_due(plan.monthly_price, getattr(student, 'discount_rate', None))
    if amount <= 0:
        raise ConfigurationError(f'Cannot determine amount for student {student.id}: amount must be positive')
    return amount


# ---------------------------------------------------------------------------
# Calendar months
# ---------------------------------------------------------------------------

def utc_today():
    """Today in UTC, the clock paid_date and created_at are stored with"""
    return datetime.utcnow().date()


def as_date(value):
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


def parse_month(value):
    """Parse 'YYYY-MM' into a (year, month) tuple"""
    if isinstance(value, tuple) and len(value) == 2:
        year, month = value
    else:
        try:
            year_part, month_part = str(value).strip().split('-')
            year, month = int(year_part), int(month_part)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid month format {value!r}. Expected YYYY-MM')
    if not MIN_YEAR <= year <= MAX_YEAR or not 1 <= month <= 12:
        raise ValidationError(f'Invalid month format {value!r}. Expected YYYY-MM')
    return year, month


def format_month(year, month) -> str:
    return f'{year:04d}-{month:02d}'


def month_label(year, month) -> str:
    return date(year, month, 1).strftime('%B %Y')


def add_months(year, month, count):
    index = year * 12 + (month - 1) + count
    return index // 12, index % 12 + 1


def iter_months(first, last):
    """Yield every (year, month) from first to last inclusive"""
    year, month = first
    while (year, month) <= last:
        yield year, month
        year, month = add_months(year, month, 1)


def month_bounds(year, month):
    """First day of the month and first day of the following month"""
    next_year, next_month = add_months(year, month, 1)
    return date(year, month, 1), date(next_year, next_month, 1)


def due_date_for(year, month, due_day=DEFAULT_DUE_DAY) -> date:
    """Due date of a month's fee.

    due_day is a day number (clamped to the month length) or 'last'.
    """
    last_day = monthrange(year, month)[1]
    if isinstance(due_day, str):
        if due_day.strip().lower() == 'last':
            return date(year, month, last_day)
        try:
            due_day = int(due_day)
        except ValueError:
            raise ValidationError(f'Invalid payment due day: {due_day!r}')
    if due_day < 1:
        raise ValidationError(f'Invalid payment due day: {due_day!r}')
    return date(year, month, min(due_day, last_day))


def check_school_year_covers(school_year, first, last):
    start = (school_year.start_date.year, school_year.start_date.month)
    end = (school_year.end_date.year, school_year.end_date.month)
    if first < start or last > end:
        raise RangeError(
            f'School year {school_year.name} ({format_month(*start)} to {format_month(*end)}) '
            f'does not cover {format_month(*first)} to {format_month(*last)}'
        )


def enrollment_months(school_year, today, end_month=7):
    """Months to bill a newly enrolled student.

    Runs from the current month to end_month of the following calendar year,
    clipped to the school year window.
    """
    first = max((today.year, today.month),
                (school_year.start_date.year, school_year.start_date.month))
    last = min((today.year + 1, end_month),
               (school_year.end_date.year, school_year.end_date.month))
    return first, last


# ---------------------------------------------------------------------------
# Payment generation
# ---------------------------------------------------------------------------

@dataclass
class PaymentCandidate:
    student_id: object
    school_year_id: object
    amount: Decimal
    due_date: date
    status: str = PENDING
    payment_type: str = MONTHLY_FEE
    notes: str = None

    @property
    def month(self):
        return format_month(self.due_date.year, self.due_date.month)


def billed_months(payments):
    """(year, month) pairs that already hold a payment, whatever its status"""
    return {(as_date(p.due_date).year, as_date(p.due_date).month) for p in payments}


def plan_missing_payments(student, school_year, from_month, to_month,
                          existing_months=(), due_day=DEFAULT_DUE_DAY, note=None):
    """Build the monthly payments a student is still missing.

    One PENDING MONTHLY_FEE candidate per month of [from_month, to_month]
    that has no entry in existing_months.
    """
    first = parse_month(from_month)
    last = parse_month(to_month)
    if first > last:
        raise ValidationError('fromMonth must not be after toMonth')
    check_school_year_covers(school_year, first, last)
    amount = student_monthly_amount(student)

    existing = {parse_month(m) for m in existing_months}
    candidates = []
    for year, month in iter_months(first, last):
        if (year, month) in existing:
            continue
        candidates.append(PaymentCandidate(
            student_id=student.id,
            school_year_id=school_year.id,
            amount=amount,
            due_date=due_date_for(year, month, due_day),
            notes=note or f'Auto-generated monthly payment for {month_label(year, month)}',
        ))
    return candidates


# ---------------------------------------------------------------------------
# Payment status
# ---------------------------------------------------------------------------

def is_overdue(payment, today=None) -> bool:
    today = today or utc_today()
    if payment.status == OVERDUE:
        return True
    due = as_date(payment.due_date)
    return payment.status == PENDING and due is not None and due < today


def effective_status(payment, today=None) -> str:
    """Status as shown to users: a PENDING payment past its due date reads as OVERDUE"""
    if payment.status == PENDING and is_overdue(payment, today):
        return OVERDUE
    return payment.status


def check_transition(current, target):
    if target not in PAYMENT_STATUSES:
        raise ValidationError(f'Unknown payment status: {target}')
    if current == PAID and target == PAID:
        raise ConflictError('Payment is already marked as paid')
    if target not in ALLOWED_TRANSITIONS.get(current, ()):
        raise ConflictError(f'Cannot change payment status from {current} to {target}')
