"""
Read-side financial statistics for the dashboards.

All functions take already loaded Payment / Expense / Student / plan records
and only read them.
"""
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from billing import (
    CANCELLED, HUNDRED, MAX_YEAR, MIN_YEAR, OVERDUE, PAID, PENDING, ZERO,
    add_months, as_date, effective_status, is_overdue, month_bounds, parse_month, to_money, utc_today,
)
from errors import ValidationError

EXPENSE_TYPES = ('SERVICE', 'MATERIALS', 'DAILY_EMPLOYEES')

BREAKDOWN_MONTHS = 6


def _money(value):
    return to_money(value) if value is not None else ZERO


def _float(value):
    return float(to_money(value))


def resolve_period(period, today):
    """Turn a period name into (start, end) dates, end exclusive.

    Accepts 'all' (returns None), 'month', 'year', 'YYYY' or 'YYYY-MM'.
    """
    if period in (None, '', 'all'):
        return None
    if period == 'month':
        return month_bounds(today.year, today.month)
    if period == 'year':
        return date(today.year, 1, 1), date(today.year + 1, 1, 1)
    period = str(period)
    if period.isdigit() and len(period) == 4:
        year = int(period)
        if not MIN_YEAR <= year <= MAX_YEAR:
            raise ValidationError(f"Invalid period {period!r}. Year must be between {MIN_YEAR} and {MAX_YEAR}")
        return date(year, 1, 1), date(year + 1, 1, 1)
    try:
        return month_bounds(*parse_month(period))
    except ValidationError:
        raise ValidationError(f"Invalid period {period!r}. Use 'all', 'month', 'year', YYYY or YYYY-MM")


def _in_period(value, bounds):
    if bounds is None:
        return True
    value = as_date(value)
    return value is not None and bounds[0] <= value < bounds[1]


@dataclass
class FinancialStats:
    period: str = 'all'
    total_revenue: Decimal = ZERO
    monthly_revenue: Decimal = ZERO
    paid_amount: Decimal = ZERO
    pending_amount: Decimal = ZERO
    overdue_amount: Decimal = ZERO
    collection_rate: Decimal = ZERO
    total_expenses: Decimal = ZERO
    period_expenses: Decimal = ZERO
    net_income: Decimal = ZERO
    total_students: int = 0
    paying_students: int = 0
    total_payments: int = 0
    paid_payments: int = 0
    pending_payments: int = 0
    overdue_payments: int = 0
    expenses_by_type: dict = field(default_factory=dict)

    def to_dict(self):
        return {
            'period': self.period,
            'totalRevenue': _float(self.total_revenue),
            'monthlyRevenue': _float(self.monthly_revenue),
            'paidAmount': _float(self.paid_amount),
            'pendingAmount': _float(self.pending_amount),
            'overdueAmount': _float(self.overdue_amount),
            'collectionRate': _float(self.collection_rate),
            'totalExpenses': _float(self.total_expenses),
            'periodExpenses': _float(self.period_expenses),
            'netIncome': _float(self.net_income),
            'totalStudents': self.total_students,
            'payingStudents': self.paying_students,
            'totalPayments': self.total_payments,
            'paidPayments': self.paid_payments,
            'pendingPayments': self.pending_payments,
            'overduePayments': self.overdue_payments,
            'expensesByType': {k: _float(v) for k, v in self.expenses_by_type.items()},
        }


def compute_stats(payments, expenses, period='all', today=None,
                  total_students=0, paying_students=0) -> FinancialStats:
    """Roll payments and expenses up into dashboard figures.

    A PENDING payment whose due date has passed is counted as overdue here
    even though its stored status is still PENDING.
    """
    today = today or utc_today()
    bounds = resolve_period(period, today)
    current_month = (today.year, today.month)
    stats = FinancialStats(period=period or 'all',
                           total_students=total_students,
                           paying_students=paying_students,
                           expenses_by_type={t: ZERO for t in EXPENSE_TYPES})
    pending_past_due = ZERO

    for payment in payments:
        amount = _money(payment.amount)
        if payment.status == PAID:
            stats.total_revenue += amount
            paid_on = as_date(payment.paid_date)
            if paid_on is not None and (paid_on.year, paid_on.month) == current_month:
                stats.monthly_revenue += amount

        if payment.status == CANCELLED or not _in_period(payment.due_date, bounds):
            continue
        stats.total_payments += 1
        if payment.status == PAID:
            stats.paid_amount += amount
            stats.paid_payments += 1
        elif payment.status == PENDING:
            stats.pending_amount += amount
            stats.pending_payments += 1
            if is_overdue(payment, today):
                stats.overdue_amount += amount
                stats.overdue_payments += 1
                pending_past_due += amount
        elif payment.status == OVERDUE:
            stats.overdue_amount += amount
            stats.overdue_payments += 1

    for expense in expenses:
        amount = _money(expense.amount)
        stats.total_expenses += amount
        if _in_period(expense.date, bounds):
            stats.period_expenses += amount
            stats.expenses_by_type[expense.type] = stats.expenses_by_type.get(expense.type, ZERO) + amount

    # pending already includes its past-due share, count it once
    billed = stats.paid_amount + (stats.pending_amount - pending_past_due) + stats.overdue_amount
    if billed > 0:
        stats.collection_rate = to_money(stats.paid_amount / billed * HUNDRED)
    stats.net_income = stats.paid_amount - stats.period_expenses
    return stats


def collection_rate(paid_amount, pending_amount, overdue_amount) -> Decimal:
    """Share of billed money collected, in percent; 0 when nothing was billed"""
    paid, pending, overdue = _money(paid_amount), _money(pending_amount), _money(overdue_amount)
    billed = paid + pending + overdue
    if billed <= 0:
        return ZERO
    return to_money(paid / billed * HUNDRED)


def monthly_breakdown(payments, today=None, months=BREAKDOWN_MONTHS):
    """Paid revenue per due-date month for the last `months` months, oldest first"""
    today = today or utc_today()
    rows = []
    for offset in range(months - 1, -1, -1):
        year, month = add_months(today.year, today.month, -offset)
        bounds = month_bounds(year, month)
        paid = [p for p in payments if p.status == PAID and _in_period(p.due_date, bounds)]
        rows.append({
            'month': bounds[0].strftime('%b'),
            'year': year,
            'revenue': _float(sum((_money(p.amount) for p in paid), ZERO)),
            'count': len(paid),
        })
    return rows


def payment_methods(payments):
    totals = {}
    for payment in payments:
        if payment.status != PAID:
            continue
        method = payment.method or 'CASH'
        totals[method] = totals.get(method, ZERO) + _money(payment.amount)
    return {method: _float(amount) for method, amount in totals.items()}


def month_summary(payments, year, month, today=None):
    """Paid versus still-due figures for the payments due in one month"""
    today = today or utc_today()
    bounds = month_bounds(year, month)
    buckets = {PAID: [], PENDING: [], OVERDUE: []}
    in_month = []
    for payment in payments:
        if payment.status == CANCELLED or not _in_period(payment.due_date, bounds):
            continue
        in_month.append(payment)
        buckets[effective_status(payment, today)].append(payment)

    def bucket(items):
        return {'count': len(items), 'amount': _float(sum((_money(p.amount) for p in items), ZERO))}

    def amount_of(items):
        return sum((_money(p.amount) for p in items), ZERO)

    still_due = buckets[PENDING] + buckets[OVERDUE]
    rate = collection_rate(amount_of(buckets[PAID]), amount_of(buckets[PENDING]), amount_of(buckets[OVERDUE]))
    return {
        'collectionRate': _float(rate),
        'totalPayments': bucket(in_month),
        'paidPayments': bucket(buckets[PAID]),
        'stillDuePayments': bucket(still_due),
        'breakdown': {
            'pending': bucket(buckets[PENDING]),
            'overdue': bucket(buckets[OVERDUE]),
        },
    }


def expense_stats(expenses, today=None, months=BREAKDOWN_MONTHS):
    """Expense totals by type, per month and per category"""
    today = today or utc_today()
    this_month = month_bounds(today.year, today.month)

    def total(items):
        return sum((_money(e.amount) for e in items), ZERO)

    def of_type(items, expense_type):
        return [e for e in items if e.type == expense_type]

    total_expenses = total(expenses)
    overview = {
        'totalExpenses': _float(total_expenses),
        'monthlyExpenses': _float(total(e for e in expenses if _in_period(e.date, this_month))),
        'serviceExpenses': _float(total(of_type(expenses, 'SERVICE'))),
        'materialsExpenses': _float(total(of_type(expenses, 'MATERIALS'))),
        'dailyEmployeesExpenses': _float(total(of_type(expenses, 'DAILY_EMPLOYEES'))),
        'expenseCount': len(expenses),
    }

    breakdown = []
    for offset in range(months - 1, -1, -1):
        year, month = add_months(today.year, today.month, -offset)
        bounds = month_bounds(year, month)
        in_month = [e for e in expenses if _in_period(e.date, bounds)]
        breakdown.append({
            'month': bounds[0].strftime('%B'),
            'year': year,
            'totalAmount': _float(total(in_month)),
            'serviceAmount': _float(total(of_type(in_month, 'SERVICE'))),
            'materialsAmount': _float(total(of_type(in_month, 'MATERIALS'))),
            'dailyEmployeesAmount': _float(total(of_type(in_month, 'DAILY_EMPLOYEES'))),
            'expenseCount': len(in_month),
        })

    categories = {}
    for expense in expenses:
        name = expense.category or 'Uncategorized'
        amount, count = categories.get(name, (ZERO, 0))
        categories[name] = (amount + _money(expense.amount), count + 1)
    category_breakdown = [
        {
            'category': name,
            'totalAmount': _float(amount),
            'percentage': _float(amount / total_expenses * HUNDRED) if total_expenses > 0 else 0.0,
            'expenseCount': count,
        }
        for name, (amount, count) in categories.items()
    ]
    category_breakdown.sort(key=lambda row: row['totalAmount'], reverse=True)

    return {
        'overview': overview,
        'monthlyBreakdown': breakdown,
        'categoryBreakdown': category_breakdown,
    }


def plan_stats(plans, students, payments, today=None):
    """Enrolment and paid revenue per membership plan"""
    today = today or utc_today()
    this_month = month_bounds(today.year, today.month)
    plan_of_student = {s.id: s.membership_plan_id for s in students if s.membership_plan_id is not None}

    rows = {}
    for plan in plans:
        rows[plan.id] = {
            'id': plan.id,
            'name': plan.name,
            'daysPerWeek': plan.days_per_week,
            'monthlyPrice': _float(plan.monthly_price),
            'studentCount': 0,
            'totalRevenue': ZERO,
            'monthlyRevenue': ZERO,
        }
    for plan_id in plan_of_student.values():
        if plan_id in rows:
            rows[plan_id]['studentCount'] += 1
    for payment in payments:
        row = rows.get(plan_of_student.get(payment.student_id))
        if row is None or payment.status != PAID:
            continue
        amount = _money(payment.amount)
        row['totalRevenue'] += amount
        if _in_period(payment.due_date, this_month):
            row['monthlyRevenue'] += amount

    for row in rows.values():
        row['totalRevenue'] = _float(row['totalRevenue'])
        row['monthlyRevenue'] = _float(row['monthlyRevenue'])

    plan_rows = list(rows.values())
    enrolled = [r for r in plan_rows if r['studentCount'] > 0]
    earning = [r for r in plan_rows if r['totalRevenue'] > 0]
    total_students = sum(r['studentCount'] for r in plan_rows)

    def pick(row, *keys):
        return {k: row[k] for k in ('id', 'name') + keys} if row else None

    return {
        'totalPlans': len(plan_rows),
        'totalStudents': total_students,
        'totalRevenue': round(sum(r['totalRevenue'] for r in plan_rows), 2),
        'currentMonthRevenue': round(sum(r['monthlyRevenue'] for r in plan_rows), 2),
        'avgStudentsPerPlan': round(total_students / len(plan_rows), 1) if plan_rows else 0,
        'mostPopularPlan': pick(max(enrolled, key=lambda r: r['studentCount'], default=None), 'studentCount'),
        'highestRevenuePlan': pick(max(earning, key=lambda r: r['totalRevenue'], default=None),
                                   'totalRevenue', 'monthlyRevenue'),
        'lowestRevenuePlan': pick(min(enrolled, key=lambda r: r['totalRevenue'], default=None),
                                  'totalRevenue', 'studentCount'),
        'plansByPopularity': sorted(plan_rows, key=lambda r: r['studentCount'], reverse=True),
        'plansByRevenue': sorted(plan_rows, key=lambda r: r['totalRevenue'], reverse=True),
    }
