"""
Input validation for the login page and the JSON API.

API forms are plain WTForms forms fed from the request body; the login page
uses Flask-WTF so it gets CSRF protection.
"""
from flask import request
from flask_wtf import FlaskForm
from werkzeug.datastructures import MultiDict
from wtforms import BooleanField, DateField, DecimalField, Form, IntegerField, PasswordField, StringField
from wtforms.validators import AnyOf, InputRequired, Length, NumberRange, Optional, Regexp

from billing import PAYMENT_METHODS
from errors import ValidationError
from reports import EXPENSE_TYPES

MONTH_PATTERN = r'^\d{4}-(0[1-9]|1[0-2])$'
MONTH_MESSAGE = 'Invalid month format. Expected YYYY-MM'
EMAIL_PATTERN = r'^[^\s@]+@[^\s@]+\.[^\s@]+$'


class LoginForm(FlaskForm):
    username = StringField('Username', validators=[InputRequired(), Length(max=80)])
    password = PasswordField('Password', validators=[InputRequired()])


class StudentForm(Form):
    firstName = StringField(validators=[InputRequired(), Length(max=100)])
    lastName = StringField(validators=[InputRequired(), Length(max=100)])
    email = StringField(validators=[Optional(), Regexp(EMAIL_PATTERN, message='Invalid email format')])
    schoolYearId = IntegerField(validators=[Optional()])
    membershipPlanId = IntegerField(validators=[Optional()])
    discountRate = DecimalField(validators=[
        Optional(), NumberRange(min=0, max=100, message='Discount rate must be between 0 and 100')])
    monthlyDueAmount = DecimalField(validators=[
        Optional(), NumberRange(min=0, message='Monthly due amount must be non-negative')])
    generatePayments = BooleanField(default=False)


class StudentUpdateForm(StudentForm):
    firstName = StringField(validators=[Optional(), Length(max=100)])
    lastName = StringField(validators=[Optional(), Length(max=100)])
    isActive = BooleanField()


class MembershipPlanForm(Form):
    name = StringField(validators=[InputRequired(), Length(max=100)])
    description = StringField(validators=[Optional()])
    daysPerWeek = IntegerField(validators=[
        InputRequired(), NumberRange(min=1, max=7, message='Days per week must be between 1 and 7')])
    monthlyPrice = DecimalField(validators=[
        InputRequired(), NumberRange(min=0, message='Monthly price must be non-negative')])


class MonthPaymentForm(Form):
    studentId = IntegerField(validators=[InputRequired()])
    month = StringField(validators=[InputRequired(), Regexp(MONTH_PATTERN, message=MONTH_MESSAGE)])
    description = StringField(validators=[Optional()])
    method = StringField(validators=[Optional(), AnyOf(PAYMENT_METHODS)])


class GeneratePaymentsForm(Form):
    studentId = IntegerField(validators=[InputRequired()])
    schoolYearId = IntegerField(validators=[InputRequired()])
    month = StringField(validators=[Optional(), Regexp(MONTH_PATTERN, message=MONTH_MESSAGE)])
    fromMonth = StringField(validators=[Optional(), Regexp(MONTH_PATTERN, message=MONTH_MESSAGE)])
    toMonth = StringField(validators=[Optional(), Regexp(MONTH_PATTERN, message=MONTH_MESSAGE)])

    def validate(self, extra_validators=None):
        if not super().validate(extra_validators):
            return False
        if not self.month.data and not (self.fromMonth.data and self.toMonth.data):
            self.month.errors.append('Provide month, or fromMonth and toMonth')
            return False
        return True

    def month_range(self):
        if self.fromMonth.data and self.toMonth.data:
            return self.fromMonth.data, self.toMonth.data
        return self.month.data, self.month.data


class AutoGenerateForm(Form):
    targetMonth = IntegerField(validators=[InputRequired(), NumberRange(min=1, max=12)])
    targetYear = IntegerField(validators=[InputRequired(), NumberRange(min=2020, max=2100)])
    schoolYearId = IntegerField(validators=[InputRequired()])


class GenerationStatusForm(Form):
    month = IntegerField(validators=[InputRequired(), NumberRange(min=1, max=12)])
    year = IntegerField(validators=[InputRequired(), NumberRange(min=2020, max=2100)])
    schoolYearId = IntegerField(validators=[InputRequired()])


class MarkPaidForm(Form):
    method = StringField(validators=[Optional(), AnyOf(PAYMENT_METHODS)])
    reference = StringField(validators=[Optional(), Length(max=100)])


class ExpenseForm(Form):
    type = StringField(validators=[InputRequired(), AnyOf(EXPENSE_TYPES)])
    description = StringField(validators=[InputRequired(), Length(max=400)])
    amount = DecimalField(validators=[
        InputRequired(), NumberRange(min=0.01, message='Expense amount must be greater than zero')])
    date = DateField(format='%Y-%m-%d', validators=[InputRequired()])
    category = StringField(validators=[Optional(), Length(max=100)])
    vendor = StringField(validators=[Optional(), Length(max=200)])
    notes = StringField(validators=[Optional()])


def json_formdata(payload):
    """Flatten a JSON object into form data WTForms can process"""
    data = MultiDict()
    for key, value in payload.items():
        if value is None or isinstance(value, (dict, list)):
            continue
        if isinstance(value, bool):
            value = 'true' if value else 'false'
        data[key] = str(value)
    return data


def validate_form(form):
    if not form.validate():
        field, messages = next(iter(form.errors.items()))
        message = messages[0] if messages else 'Invalid value'
        raise ValidationError(f'{field}: {message}' if field else message)
    return form


def load_json_form(form_class, payload=None):
    """Validate a JSON request body with form_class, raising ValidationError on failure"""
    if payload is None:
        payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return validate_form(form_class(formdata=json_formdata(payload)))


def load_query_form(form_class):
    return validate_form(form_class(formdata=request.args))
