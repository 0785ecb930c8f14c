from datetime import datetime

from flask import Blueprint, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app_logger import get_logger
from app_models import db

logger = get_logger(__name__)

health_bp = Blueprint('health', __name__)


@health_bp.route('/health')
def health_check():
    """Health check endpoint for external monitoring"""
    database = 'ok'
    try:
        db.session.execute(text('SELECT 1'))
    except SQLAlchemyError as e:
        logger.error("Health check database error: %s", e)
        db.session.rollback()
        database = 'unavailable'

    status_code = 200 if database == 'ok' else 503
    return jsonify({
        'status': 'ok' if status_code == 200 else 'degraded',
        'service': 'teaching-center-billing',
        'database': database,
        'timestamp': datetime.utcnow().isoformat() + 'Z'
    }), status_code
