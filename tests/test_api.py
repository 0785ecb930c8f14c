import pytest

from billing import utc_today

API = '/api/admin'


@pytest.fixture
def this_month():
    return utc_today().strftime('%Y-%m')


def test_requires_login(client):
    response = client.get(f'{API}/payments')
    assert response.status_code == 401
    assert response.get_json() == {'error': 'Unauthorized'}


def test_bad_credentials(client, admin_user):
    response = client.post('/api/login', json={'username': 'admin', 'password': 'wrong'})
    assert response.status_code == 401


def test_unknown_route_is_json(admin_client):
    response = admin_client.get(f'{API}/nothing-here')
    assert response.status_code == 404
    assert 'error' in response.get_json()


class TestSchoolYears:

    def test_current(self, admin_client, school_year):
        response = admin_client.get(f'{API}/school-years/current')
        assert response.status_code == 200
        assert response.get_json()['name'] == school_year.name

    def test_no_active_year(self, admin_client):
        response = admin_client.get(f'{API}/school-years/current')
        assert response.status_code == 404
        assert response.get_json()['error'] == 'No active school year found'

    def test_list(self, admin_client, school_year):
        data = admin_client.get(f'{API}/school-years').get_json()
        assert len(data['schoolYears']) == 1
        assert data['activeSchoolYear']['id'] == school_year.id


class TestMembershipPlans:

    def test_admin_creates_plan(self, admin_client):
        response = admin_client.post(f'{API}/membership-plans',
                                     json={'name': 'Three days', 'daysPerWeek': 3, 'monthlyPrice': 210})
        assert response.status_code == 201
        assert response.get_json()['membershipPlan']['monthlyPrice'] == 210.0

        plans = admin_client.get(f'{API}/membership-plans').get_json()['membershipPlans']
        assert [p['name'] for p in plans] == ['Three days']
        assert plans[0]['studentCount'] == 0

    def test_staff_cannot_create_plan(self, staff_client):
        response = staff_client.post(f'{API}/membership-plans',
                                     json={'name': 'Three days', 'daysPerWeek': 3, 'monthlyPrice': 210})
        assert response.status_code == 403

    @pytest.mark.parametrize('payload', [
        {'name': 'Eight days', 'daysPerWeek': 8, 'monthlyPrice': 100},
        {'name': 'Negative', 'daysPerWeek': 2, 'monthlyPrice': -1},
        {'daysPerWeek': 2, 'monthlyPrice': 100},
    ])
    def test_invalid_plan(self, admin_client, payload):
        response = admin_client.post(f'{API}/membership-plans', json=payload)
        assert response.status_code == 400

    def test_free_plan_allowed(self, admin_client):
        response = admin_client.post(f'{API}/membership-plans',
                                     json={'name': 'Trial', 'daysPerWeek': 1, 'monthlyPrice': 0})
        assert response.status_code == 201

    def test_admin_updates_plan(self, admin_client, student, plan):
        response = admin_client.put(f'{API}/membership-plans/{plan.id}',
                                    json={'name': 'Two days', 'daysPerWeek': 2, 'monthlyPrice': 200})
        assert response.status_code == 200
        data = response.get_json()['membershipPlan']
        assert data['monthlyPrice'] == 200.0
        assert data['studentCount'] == 1

        updated = admin_client.get(f'{API}/students/{student.id}').get_json()['student']
        assert updated['monthlyDueAmount'] == 120.0

    def test_staff_cannot_edit_plans(self, staff_client, plan):
        response = staff_client.put(f'{API}/membership-plans/{plan.id}',
                                    json={'name': 'Two days', 'daysPerWeek': 2, 'monthlyPrice': 200})
        assert response.status_code == 403
        assert staff_client.delete(f'{API}/membership-plans/{plan.id}').status_code == 403

    def test_update_invalid_days(self, admin_client, plan):
        response = admin_client.put(f'{API}/membership-plans/{plan.id}',
                                    json={'name': 'Two days', 'daysPerWeek': 0, 'monthlyPrice': 160})
        assert response.status_code == 400

    def test_update_unknown_plan(self, admin_client):
        response = admin_client.put(f'{API}/membership-plans/999',
                                    json={'name': 'Ghost', 'daysPerWeek': 1, 'monthlyPrice': 10})
        assert response.status_code == 404
        assert response.get_json() == {'error': 'Membership plan not found'}

    def test_delete_plan_with_students(self, admin_client, student, plan):
        response = admin_client.delete(f'{API}/membership-plans/{plan.id}')
        assert response.status_code == 409
        assert response.get_json()['error'] == (
            'Cannot delete plan with 1 enrolled student(s). Please transfer students to another plan first.'
        )

    def test_delete_empty_plan(self, admin_client, plan):
        response = admin_client.delete(f'{API}/membership-plans/{plan.id}')
        assert response.status_code == 200
        assert response.get_json()['success'] is True
        assert admin_client.get(f'{API}/membership-plans').get_json()['membershipPlans'] == []

    def test_stats(self, admin_client, student):
        stats = admin_client.get(f'{API}/membership-plans/stats').get_json()
        assert stats['totalStudents'] == 1
        assert stats['mostPopularPlan']['name'] == 'Two days'


class TestStudents:

    def test_create_with_plan_and_discount(self, admin_client, school_year, plan):
        response = admin_client.post(f'{API}/students', json={
            'firstName': 'Rui', 'lastName': 'Costa', 'membershipPlanId': plan.id, 'discountRate': 25,
        })
        assert response.status_code == 201
        student = response.get_json()['student']
        assert student['monthlyDueAmount'] == 120.0
        assert student['schoolYearId'] == school_year.id
        assert response.get_json()['generatedPayments'] == []

    def test_create_with_generated_payments(self, admin_client, school_year, plan, this_month):
        response = admin_client.post(f'{API}/students', json={
            'firstName': 'Rui', 'lastName': 'Costa', 'membershipPlanId': plan.id, 'generatePayments': True,
        })
        payments = response.get_json()['generatedPayments']
        assert payments
        assert payments[0]['dueDate'].startswith(this_month)
        assert {p['amount'] for p in payments} == {160.0}

    def test_full_discount_with_generated_payments(self, admin_client, school_year, plan):
        response = admin_client.post(f'{API}/students', json={
            'firstName': 'Rui', 'lastName': 'Costa', 'membershipPlanId': plan.id,
            'discountRate': 100, 'generatePayments': True,
        })
        assert response.status_code == 201
        assert response.get_json()['student']['monthlyDueAmount'] == 0.0
        assert response.get_json()['generatedPayments'] == []
        plans = admin_client.get(f'{API}/membership-plans').get_json()['membershipPlans']
        assert plans[0]['studentCount'] == 1

    def test_missing_name(self, admin_client, school_year, plan):
        response = admin_client.post(f'{API}/students', json={'firstName': 'Rui', 'membershipPlanId': plan.id})
        assert response.status_code == 400
        assert 'lastName' in response.get_json()['error']

    def test_amount_cannot_be_determined(self, admin_client, school_year):
        response = admin_client.post(f'{API}/students', json={'firstName': 'Rui', 'lastName': 'Costa'})
        assert response.status_code == 400
        assert 'Cannot determine amount' in response.get_json()['error']

    def test_update_discount(self, admin_client, student):
        response = admin_client.put(f'{API}/students/{student.id}', json={'discountRate': 50})
        assert response.status_code == 200
        assert response.get_json()['student']['monthlyDueAmount'] == 80.0

    def test_update_clearing_school_year(self, admin_client, student):
        response = admin_client.put(f'{API}/students/{student.id}', json={'schoolYearId': None})
        assert response.status_code == 400
        assert response.get_json() == {'error': 'School year is required'}

    def test_get_with_payments(self, admin_client, student, this_month):
        admin_client.post(f'{API}/payments', json={'studentId': student.id, 'month': this_month})
        data = admin_client.get(f'{API}/students/{student.id}').get_json()['student']
        assert data['studentCode'] == 'ST0001'
        assert len(data['payments']) == 1

    def test_unknown_student(self, admin_client):
        response = admin_client.get(f'{API}/students/999')
        assert response.status_code == 404
        assert response.get_json() == {'error': 'Student not found'}


class TestPayments:

    def test_generate_twice(self, admin_client, student, school_year, this_month):
        payload = {'studentId': student.id, 'schoolYearId': school_year.id, 'month': this_month}

        first = admin_client.post(f'{API}/payments/generate', json=payload)
        second = admin_client.post(f'{API}/payments/generate', json=payload)

        assert first.status_code == 201
        assert first.get_json()['created'] == 1
        assert first.get_json()['payments'][0]['amount'] == 120.0
        assert second.status_code == 200
        assert second.get_json()['created'] == 0

    def test_generate_needs_months(self, admin_client, student, school_year):
        response = admin_client.post(f'{API}/payments/generate',
                                     json={'studentId': student.id, 'schoolYearId': school_year.id})
        assert response.status_code == 400

    def test_generate_outside_school_year(self, admin_client, student, school_year):
        response = admin_client.post(f'{API}/payments/generate', json={
            'studentId': student.id, 'schoolYearId': school_year.id, 'fromMonth': '2000-01', 'toMonth': '2000-02',
        })
        assert response.status_code == 400

    def test_duplicate_month(self, admin_client, student, this_month):
        payload = {'studentId': student.id, 'month': this_month}
        assert admin_client.post(f'{API}/payments', json=payload).status_code == 201
        response = admin_client.post(f'{API}/payments', json=payload)
        assert response.status_code == 409

    def test_bad_month_format(self, admin_client, student):
        response = admin_client.post(f'{API}/payments', json={'studentId': student.id, 'month': '03/2025'})
        assert response.status_code == 400

    def test_mark_paid_then_conflict(self, admin_client, student, this_month):
        payment = admin_client.post(f'{API}/payments',
                                    json={'studentId': student.id, 'month': this_month}).get_json()['payment']

        response = admin_client.post(f'{API}/payments/{payment["id"]}/mark-paid', json={'method': 'CARD'})
        assert response.status_code == 200
        assert response.get_json()['payment']['status'] == 'PAID'
        assert response.get_json()['payment']['method'] == 'CARD'

        again = admin_client.post(f'{API}/payments/{payment["id"]}/mark-paid', json={})
        assert again.status_code == 409
        assert again.get_json()['error'] == 'Payment is already marked as paid'

    def test_mark_received(self, admin_client, student, this_month):
        admin_client.post(f'{API}/payments', json={'studentId': student.id, 'month': this_month})
        response = admin_client.post(f'{API}/payments/mark-received',
                                     json={'studentId': student.id, 'month': this_month})
        assert response.status_code == 200
        assert response.get_json()['payment']['status'] == 'PAID'

    def test_cancel_requires_admin(self, staff_client, admin_client, student, this_month):
        payment = admin_client.post(f'{API}/payments',
                                    json={'studentId': student.id, 'month': this_month}).get_json()['payment']

        assert staff_client.post(f'{API}/payments/{payment["id"]}/cancel').status_code == 403
        response = admin_client.post(f'{API}/payments/{payment["id"]}/cancel')
        assert response.status_code == 200
        assert response.get_json()['payment']['status'] == 'CANCELLED'

    def test_list_and_stats(self, admin_client, student, this_month):
        payment = admin_client.post(f'{API}/payments',
                                    json={'studentId': student.id, 'month': this_month}).get_json()['payment']
        admin_client.post(f'{API}/payments/{payment["id"]}/mark-paid', json={})

        payments = admin_client.get(f'{API}/payments').get_json()
        assert [p['status'] for p in payments] == ['PAID']

        stats = admin_client.get(f'{API}/payments/stats').get_json()
        assert stats['totalRevenue'] == 120.0
        assert stats['monthlyRevenue'] == 120.0
        assert stats['collectionRate'] == 100.0
        assert stats['paymentMethods'] == {'CASH': 120.0}
        assert len(stats['monthlyBreakdown']) == 6

    def test_auto_generate(self, admin_client, student, school_year):
        today = utc_today()
        response = admin_client.post(f'{API}/payments/auto-generate', json={
            'schoolYearId': school_year.id, 'targetYear': today.year, 'targetMonth': today.month,
        })
        assert response.status_code == 200
        assert response.get_json()['summary']['created'] == 1

        status = admin_client.get(f'{API}/payments/auto-generate', query_string={
            'schoolYearId': school_year.id, 'year': today.year, 'month': today.month,
        }).get_json()
        assert status['isComplete']


class TestFinance:

    def test_overview(self, admin_client, student, this_month):
        admin_client.post(f'{API}/payments', json={'studentId': student.id, 'month': this_month})
        data = admin_client.get(f'{API}/finance', query_string={'period': 'month'}).get_json()
        assert len(data['payments']) == 1
        assert data['stats']['totalStudents'] == 1
        assert data['stats']['collectionRate'] == 0

    def test_invalid_period(self, admin_client):
        response = admin_client.get(f'{API}/finance', query_string={'period': 'fortnight'})
        assert response.status_code == 400

    @pytest.mark.parametrize('period', ['9999-12', '9999', '0000'])
    def test_period_year_out_of_range(self, admin_client, period):
        response = admin_client.get(f'{API}/finance', query_string={'period': period})
        assert response.status_code == 400

    def test_monthly_stats_year_out_of_range(self, admin_client):
        response = admin_client.get(f'{API}/finance/monthly-stats', query_string={'month': 12, 'year': 9999})
        assert response.status_code == 400

    def test_monthly_stats_requires_month_and_year(self, admin_client):
        response = admin_client.get(f'{API}/finance/monthly-stats', query_string={'month': 3})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'Missing required parameters: month, year'

    def test_monthly_stats(self, admin_client, student, this_month):
        admin_client.post(f'{API}/payments', json={'studentId': student.id, 'month': this_month})
        today = utc_today()
        data = admin_client.get(f'{API}/finance/monthly-stats',
                                query_string={'month': today.month, 'year': today.year}).get_json()
        assert data['stats']['totalPayments']['count'] == 1
        assert data['stats']['paidPayments']['count'] == 0


class TestExpenses:

    def test_create_and_stats(self, admin_client):
        today = utc_today()
        response = admin_client.post(f'{API}/expenses', json={
            'type': 'SERVICE', 'description': 'Cleaning', 'amount': 45.5,
            'date': today.isoformat(), 'category': 'Building',
        })
        assert response.status_code == 201
        assert response.get_json()['createdBy'] == 'admin'

        assert len(admin_client.get(f'{API}/expenses').get_json()) == 1
        stats = admin_client.get(f'{API}/expenses/stats').get_json()
        assert stats['overview']['serviceExpenses'] == 45.5
        assert stats['overview']['monthlyExpenses'] == 45.5

    @pytest.mark.parametrize('payload', [
        {'type': 'TRAVEL', 'description': 'Taxi', 'amount': 10, 'date': '2025-01-10'},
        {'type': 'SERVICE', 'description': 'Cleaning', 'amount': 0, 'date': '2025-01-10'},
        {'type': 'SERVICE', 'description': 'Cleaning', 'amount': 10, 'date': '10/01/2025'},
    ])
    def test_invalid_expense(self, admin_client, payload):
        assert admin_client.post(f'{API}/expenses', json=payload).status_code == 400
