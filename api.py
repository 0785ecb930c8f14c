"""
Admin JSON API for the billing back office, mounted at /api/admin.
"""
from flask import Blueprint, current_app, jsonify, request, session

from app_logger import get_logger
from app_models import db
from billing import parse_month
from errors import ValidationError
from forms import (
    AutoGenerateForm, ExpenseForm, GeneratePaymentsForm, GenerationStatusForm, MarkPaidForm,
    MembershipPlanForm, MonthPaymentForm, StudentForm, StudentUpdateForm, load_json_form,
    load_query_form,
)
from reports import resolve_period
from security import login_required
from services import BillingService

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api/admin')

# camelCase request keys accepted by PUT /students/<id>
STUDENT_FIELDS = {
    'firstName': 'first_name',
    'lastName': 'last_name',
    'email': 'email',
    'schoolYearId': 'school_year_id',
    'membershipPlanId': 'membership_plan_id',
    'discountRate': 'discount_rate',
    'monthlyDueAmount': 'monthly_due_amount',
    'isActive': 'is_active',
}


def get_service():
    return BillingService.from_config(db.session, current_app.config)


def _period_arg():
    period = request.args.get('period', 'all')
    resolve_period(period, get_service().today())
    return period


# School years
@api_bp.route('/school-years')
@login_required
def list_school_years():
    service = get_service()
    school_years = service.list_school_years()
    active = next((sy for sy in school_years if sy.is_active), None)
    return jsonify({
        'schoolYears': [sy.to_dict() for sy in school_years],
        'activeSchoolYear': active.to_dict() if active else None,
    })


@api_bp.route('/school-years/current')
@login_required
def current_school_year():
    return jsonify(get_service().current_school_year().to_dict())


# Membership plans
@api_bp.route('/membership-plans', methods=['GET'])
@login_required
def list_membership_plans():
    active_only = request.args.get('all', 'false').lower() != 'true'
    plans = get_service().list_plans(active_only=active_only)
    return jsonify({'membershipPlans': [plan.to_dict(count) for plan, count in plans]})


@api_bp.route('/membership-plans', methods=['POST'])
@login_required(roles=('ADMIN',))
def create_membership_plan():
    form = load_json_form(MembershipPlanForm)
    plan = get_service().create_plan(
        name=form.name.data,
        days_per_week=form.daysPerWeek.data,
        monthly_price=form.monthlyPrice.data,
        description=form.description.data or None,
    )
    return jsonify({'membershipPlan': plan.to_dict(0)}), 201


@api_bp.route('/membership-plans/<int:plan_id>', methods=['PUT'])
@login_required(roles=('ADMIN',))
def update_membership_plan(plan_id):
    form = load_json_form(MembershipPlanForm)
    plan = get_service().update_plan(
        plan_id,
        name=form.name.data,
        days_per_week=form.daysPerWeek.data,
        monthly_price=form.monthlyPrice.data,
        description=form.description.data or None,
    )
    return jsonify({'membershipPlan': plan.to_dict(len(plan.students))})


@api_bp.route('/membership-plans/<int:plan_id>', methods=['DELETE'])
@login_required(roles=('ADMIN',))
def delete_membership_plan(plan_id):
    get_service().delete_plan(plan_id)
    return jsonify({'success': True, 'message': 'Membership plan deleted successfully'})


@api_bp.route('/membership-plans/stats')
@login_required
def membership_plan_stats():
    return jsonify(get_service().plan_stats())


# Students
@api_bp.route('/students', methods=['POST'])
@login_required
def create_student():
    form = load_json_form(StudentForm)
    service = get_service()
    student, generated = service.create_student(
        first_name=form.firstName.data.strip(),
        last_name=form.lastName.data.strip(),
        email=form.email.data or None,
        school_year_id=form.schoolYearId.data,
        membership_plan_id=form.membershipPlanId.data,
        discount_rate=form.discountRate.data,
        monthly_due_amount=form.monthlyDueAmount.data,
        generate_payments=form.generatePayments.data,
    )
    today = service.today()
    return jsonify({
        'student': student.to_dict(),
        'generatedPayments': [p.to_dict(today) for p in generated],
    }), 201


@api_bp.route('/students/<int:student_id>', methods=['GET'])
@login_required
def get_student(student_id):
    service = get_service()
    student = service.get_student(student_id)
    today = service.today()
    data = student.to_dict()
    data['payments'] = [p.to_dict(today) for p in sorted(student.payments, key=lambda p: p.due_date)]
    return jsonify({'student': data})


@api_bp.route('/students/<int:student_id>', methods=['PUT'])
@login_required
def update_student(student_id):
    payload = request.get_json(silent=True) or {}
    form = load_json_form(StudentUpdateForm, payload)
    changes = {
        attribute: getattr(form, key).data
        for key, attribute in STUDENT_FIELDS.items()
        if key in payload
    }
    student = get_service().update_student(student_id, **changes)
    return jsonify({'student': student.to_dict()})


# Payments
@api_bp.route('/payments', methods=['GET'])
@login_required
def list_payments():
    service = get_service()
    today = service.today()
    return jsonify([p.to_dict(today) for p in service.list_payments()])


@api_bp.route('/payments', methods=['POST'])
@login_required
def create_payment():
    form = load_json_form(MonthPaymentForm)
    service = get_service()
    payment = service.create_monthly_payment(
        form.studentId.data, form.month.data, description=form.description.data or None,
    )
    return jsonify({'success': True, 'payment': payment.to_dict(service.today())}), 201


@api_bp.route('/payments/generate', methods=['POST'])
@login_required
def generate_payments():
    form = load_json_form(GeneratePaymentsForm)
    from_month, to_month = form.month_range()
    service = get_service()
    created = service.generate_missing_payments(
        form.studentId.data, form.schoolYearId.data, from_month, to_month,
    )
    today = service.today()
    return jsonify({
        'created': len(created),
        'payments': [p.to_dict(today) for p in created],
    }), 201 if created else 200


@api_bp.route('/payments/auto-generate', methods=['POST'])
@login_required(roles=('ADMIN',))
def auto_generate_payments():
    form = load_json_form(AutoGenerateForm)
    result = get_service().auto_generate_month(
        form.schoolYearId.data, form.targetYear.data, form.targetMonth.data,
    )
    logger.info("Auto-generation requested by %s: %s", session.get('username'), result['summary'])
    return jsonify(result)


@api_bp.route('/payments/auto-generate', methods=['GET'])
@login_required
def auto_generate_status():
    form = load_query_form(GenerationStatusForm)
    return jsonify(get_service().generation_status(form.schoolYearId.data, form.year.data, form.month.data))


@api_bp.route('/payments/<int:payment_id>/mark-paid', methods=['POST'])
@login_required
def mark_payment_paid(payment_id):
    form = load_json_form(MarkPaidForm)
    service = get_service()
    payment = service.mark_paid(payment_id, method=form.method.data or None,
                                reference=form.reference.data or None)
    return jsonify({
        'success': True,
        'message': 'Payment marked as paid successfully',
        'payment': payment.to_dict(service.today()),
    })


@api_bp.route('/payments/mark-received', methods=['POST'])
@login_required
def mark_payment_received():
    form = load_json_form(MonthPaymentForm)
    service = get_service()
    payment = service.mark_received(form.studentId.data, form.month.data,
                                    description=form.description.data or None,
                                    method=form.method.data or None)
    return jsonify({
        'success': True,
        'message': 'Payment marked as received successfully',
        'payment': payment.to_dict(service.today()),
    })


@api_bp.route('/payments/<int:payment_id>/cancel', methods=['POST'])
@login_required(roles=('ADMIN',))
def cancel_payment(payment_id):
    service = get_service()
    payment = service.cancel_payment(payment_id)
    return jsonify({'success': True, 'payment': payment.to_dict(service.today())})


@api_bp.route('/payments/stats')
@login_required
def payment_stats():
    return jsonify(get_service().payment_stats(_period_arg()))


# Finance
@api_bp.route('/finance')
@login_required
def finance_overview():
    period = _period_arg()
    service = get_service()
    payments, stats = service.financial_stats(period)
    today = service.today()
    return jsonify({'payments': [p.to_dict(today) for p in payments], 'stats': stats.to_dict()})


@api_bp.route('/finance/monthly-stats')
@login_required
def finance_monthly_stats():
    month = request.args.get('month')
    year = request.args.get('year')
    if not month or not year:
        raise ValidationError('Missing required parameters: month, year')
    try:
        year, month = parse_month((int(year), int(month)))
    except ValueError:
        raise ValidationError('Invalid month or year parameter')
    return jsonify(get_service().monthly_stats(year, month))


# Expenses
@api_bp.route('/expenses', methods=['GET'])
@login_required
def list_expenses():
    return jsonify([expense.to_dict() for expense in get_service().list_expenses()])


@api_bp.route('/expenses', methods=['POST'])
@login_required
def create_expense():
    form = load_json_form(ExpenseForm)
    expense = get_service().create_expense(
        expense_type=form.type.data,
        description=form.description.data,
        amount=form.amount.data,
        expense_date=form.date.data,
        category=form.category.data or None,
        vendor=form.vendor.data or None,
        notes=form.notes.data or None,
        created_by=session.get('username'),
    )
    return jsonify(expense.to_dict()), 201


@api_bp.route('/expenses/stats')
@login_required
def expenses_stats():
    return jsonify(get_service().expense_stats())
