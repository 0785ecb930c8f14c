import os
from datetime import datetime

import click
from flask import Flask, flash, jsonify, redirect, render_template, request, session, url_for
from flask_wtf.csrf import CSRFProtect
from jinja2 import ChoiceLoader, DictLoader, FileSystemLoader
from werkzeug.exceptions import HTTPException

from api import api_bp, get_service
from app_logger import get_logger, setup_logging
from app_models import db
from billing import parse_month
from build import create_default_admin, create_default_school_year
from config import BASE_DIR, INSTANCE_PATH, get_config
from errors import BillingError
from forms import LoginForm
from health import health_bp
from reports import monthly_breakdown
from security import authenticate, init_security, login_required, start_session

logger = get_logger(__name__)

csrf = CSRFProtect()

# Minimal in-memory fallback so /login doesn't 500 if the templates folder is missing in deployment
FALLBACK_LOGIN_HTML = """
<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>Login</title>
<meta name="viewport" content="width=device-width, initial-scale=1"></head>
<body style="font-family:Arial, sans-serif; max-width:480px; margin:40px auto;">
    <h2>{{ school_name }} Login</h2>
    {% with messages = get_flashed_messages(with_categories=true) %}
    {% for category, message in messages %}<div>{{ message }}</div>{% endfor %}
    {% endwith %}
    <form method="POST">
        {{ form.hidden_tag() }}
        <div><label>Username</label><br>{{ form.username(required=True) }}</div>
        <div><label>Password</label><br>{{ form.password(required=True) }}</div>
        <button type="submit">Login</button>
    </form>
</body></html>
"""


def comma_filter(value):
    """Format number with comma separators (2 decimal places)"""
    try:
        return "{:,.2f}".format(float(value))
    except (ValueError, TypeError):
        return value


def register_templates(app):
    template_folder = os.path.join(BASE_DIR, 'templates')
    app.jinja_env.loader = ChoiceLoader([
        FileSystemLoader(template_folder),
        DictLoader({'login.html': FALLBACK_LOGIN_HTML}),
    ])
    app.add_template_filter(comma_filter, 'comma')

    @app.context_processor
    def inject_globals():
        return {
            'datetime': datetime,
            'school_name': app.config['SCHOOL_NAME'],
            'currency': app.config['CURRENCY'],
        }


def register_error_handlers(app):

    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        db.session.rollback()
        logger.info("%s %s rejected: %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        if isinstance(error, HTTPException):
            if request.path.startswith('/api/'):
                return jsonify({'error': error.description}), error.code
            return error
        db.session.rollback()
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({'error': 'Internal server error'}), 500


def register_pages(app):

    # Authentication routes
    @app.route('/login', methods=['GET', 'POST'])
    def login():
        # Credentials in the query string are dropped by redirecting to a clean URL
        if request.method == 'GET' and request.args:
            return redirect(url_for('login'))

        form = LoginForm()
        if form.validate_on_submit():
            user = authenticate(form.username.data, form.password.data)
            if user:
                start_session(user)
                logger.info("User %s logged in", user.username)
                flash('Login successful!', 'success')
                return redirect(url_for('index'))
            logger.warning("Failed login for %s", form.username.data)
            flash('Invalid username or password!', 'error')
        return render_template('login.html', form=form)

    @app.route('/logout')
    def logout():
        session.clear()
        flash('You have been logged out successfully!', 'info')
        return redirect(url_for('login'))

    @app.route('/api/login', methods=['POST'])
    @csrf.exempt
    def api_login():
        payload = request.get_json(silent=True) or {}
        user = authenticate(payload.get('username'), payload.get('password'))
        if not user:
            return jsonify({'error': 'Invalid username or password'}), 401
        start_session(user)
        return jsonify({'username': user.username, 'role': user.role})

    @app.route('/api/logout', methods=['POST'])
    @csrf.exempt
    def api_logout():
        session.clear()
        return jsonify({'success': True})

    @app.route('/')
    @login_required
    def index():
        period = request.args.get('period', 'month')
        service = get_service()
        try:
            payments, stats = service.financial_stats(period)
        except BillingError as e:
            flash(e.message, 'error')
            return redirect(url_for('index'))
        return render_template(
            'dashboard.html',
            stats=stats.to_dict(),
            period=period,
            breakdown=monthly_breakdown(payments, service.today()),
        )


def register_commands(app):

    @app.cli.command('init-db')
    def init_db_command():
        """Create tables and seed the first school year and admin user."""
        db.create_all()
        school_year = create_default_school_year()
        create_default_admin(app.config.get('DEFAULT_USERNAME'), app.config.get('DEFAULT_PASSWORD'))
        if school_year:
            click.echo(f"Created school year {school_year.name}")
        click.echo("Database initialized.")

    @app.cli.command('generate-payments')
    @click.option('--school-year', 'school_year_id', type=int, required=True, help='School year id.')
    @click.option('--month', required=True, help='Month to bill, YYYY-MM.')
    def generate_payments_command(school_year_id, month):
        """Create the month's payment for every active student of a school year."""
        try:
            year, month_number = parse_month(month)
            result = get_service().auto_generate_month(school_year_id, year, month_number)
        except BillingError as e:
            raise click.ClickException(e.message)
        summary = result['summary']
        click.echo(result['message'])
        click.echo(f"Created: {summary['created']}, skipped: {summary['skipped']}, "
                   f"students: {summary['totalStudents']}")


def create_app(config=None):
    """Application factory; config is a config class, a name from config.CONFIGS, or None for APP_ENV"""
    if config is None or isinstance(config, str):
        config = get_config(config)

    app = Flask(__name__, instance_path=INSTANCE_PATH, static_folder=os.path.join(BASE_DIR, 'static'))
    app.config.from_object(config)
    if hasattr(config, 'init_app'):
        config.init_app(app)

    setup_logging(app.config.get('LOG_LEVEL'))

    # Set up instance path for SQLite and other app data
    os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    csrf.init_app(app)
    csrf.exempt(api_bp)

    # Initialize security features
    init_security(app)

    register_templates(app)
    register_error_handlers(app)
    register_pages(app)
    register_commands(app)

    app.register_blueprint(health_bp)
    app.register_blueprint(api_bp)

    logger.info("Application created with %s", config.__name__)
    return app
