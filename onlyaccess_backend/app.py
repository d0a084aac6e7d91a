from flask import Flask, request, jsonify, g
from flask_cors import CORS
from flask_pymongo import PyMongo
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from datetime import datetime
import jwt
import logging
from bson import ObjectId
from functools import wraps

# Import blueprints
from blueprints.auth import init_auth_blueprint
from blueprints.payments import init_payments_blueprint
from blueprints.bundles import init_bundles_blueprint
from blueprints.posts import init_posts_blueprint
from blueprints.dashboard import init_dashboard_blueprint
from blueprints.referrals import init_referrals_blueprint
from blueprints.notifications import init_notifications_blueprint
from blueprints.admin_payments import init_admin_payments_blueprint

from config.credentials import CredentialManager
from config.settings import Settings
from models import DatabaseInitializer
from services.cloud_storage import CloudStorage
from services.payment_gateway import get_payment_gateway
from services.push_service import PushService
from utils.errors import PlatformError

logger = logging.getLogger(__name__)


# Helper function to convert ObjectId to string
def serialize_doc(doc):
    if not doc:
        return doc

    # Make a copy to avoid modifying the original
    if isinstance(doc, dict):
        doc = doc.copy()

    if '_id' in doc:
        doc['id'] = str(doc['_id'])
        del doc['_id']

    for key, value in list(doc.items()):
        if isinstance(value, ObjectId):
            doc[key] = str(value)
        elif isinstance(value, datetime):
            doc[key] = value.isoformat() + 'Z'
        elif isinstance(value, list):
            new_list = []
            for item in value:
                if isinstance(item, ObjectId):
                    new_list.append(str(item))
                elif isinstance(item, dict):
                    new_list.append(serialize_doc(item))
                else:
                    new_list.append(item)
            doc[key] = new_list
        elif isinstance(value, dict):
            doc[key] = serialize_doc(value)

    return doc


def make_auth_decorators(mongo, secret_key):
    """Build token_required / admin_required bound to one database and key"""

    # JWT token decorator
    def token_required(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            token = request.headers.get('Authorization')
            if not token:
                return jsonify({'success': False, 'message': 'Token is missing'}), 401

            try:
                if token.startswith('Bearer '):
                    token = token[7:]
                data = jwt.decode(token, secret_key, algorithms=['HS256'])
            except jwt.ExpiredSignatureError:
                return jsonify({'success': False, 'message': 'Token has expired'}), 401
            except jwt.InvalidTokenError:
                return jsonify({'success': False, 'message': 'Invalid token'}), 401

            # Validate user_id exists in token
            if not ObjectId.is_valid(data.get('user_id', '')):
                return jsonify({'success': False, 'message': 'Invalid token format'}), 401

            current_user = mongo.db.users.find_one({'_id': ObjectId(data['user_id'])})
            if not current_user:
                return jsonify({'success': False, 'message': 'User not found'}), 401

            g.current_user_id = current_user['_id']
            return f(current_user, *args, **kwargs)
        return decorated

    # Admin required decorator
    def admin_required(f):
        @wraps(f)
        def decorated(current_user, *args, **kwargs):
            if current_user.get('role') != 'admin':
                return jsonify({'success': False, 'message': 'Admin access required'}), 403
            return f(current_user, *args, **kwargs)
        return decorated

    return token_required, admin_required


def create_app(settings=None, mongo=None, gateway=None, storage=None, push_service=None,
               start_scheduler=None):
    """
    Build the Flask application.

    Args:
        settings: Settings (defaults to Settings.from_env())
        mongo: Object exposing .db and .cx (defaults to flask_pymongo.PyMongo)
        gateway: PaymentGateway (defaults to the one selected by PAYMENT_PROVIDER)
        storage: CloudStorage for signed media URLs
        push_service: PushService for device notifications
        start_scheduler: Start background sweeps (defaults to SCHEDULER_ENABLED)
    """
    settings = settings or Settings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = settings.SECRET_KEY
    app.config['MONGO_URI'] = settings.MONGO_URI
    app.config['RATELIMIT_ENABLED'] = settings.RATELIMIT_ENABLED
    app.config['SETTINGS'] = settings

    # Initialize extensions
    CORS(app, origins=['*'])
    if mongo is None:
        mongo = PyMongo(app)

    limiter = Limiter(
        app=app,
        key_func=get_remote_address,
        default_limits=list(settings.RATE_LIMIT_DEFAULTS),
        storage_uri="memory://",
    )
    app.limiter = limiter

    credential_manager = CredentialManager(settings)
    gateway = gateway or get_payment_gateway(settings)
    storage = storage or CloudStorage(credential_manager, settings.GCS_BUCKET_NAME, settings.SIGNED_URL_MINUTES)
    push_service = push_service or PushService(credential_manager)

    app.extensions['onlyaccess'] = {
        'mongo': mongo,
        'gateway': gateway,
        'storage': storage,
        'push_service': push_service,
    }

    # Initialize database collections and indexes
    with app.app_context():
        db_results = DatabaseInitializer(mongo.db).initialize_collections()
        if db_results['created']:
            logger.info(f"Created {len(db_results['created'])} new collections")
        for error in db_results['errors']:
            logger.error(error)

    token_required, admin_required = make_auth_decorators(mongo, settings.SECRET_KEY)

    # Initialize and register blueprints
    app.register_blueprint(init_auth_blueprint(mongo, settings))
    app.register_blueprint(init_payments_blueprint(
        mongo, token_required, serialize_doc, settings, gateway, push_service, limiter
    ))
    app.register_blueprint(init_bundles_blueprint(mongo, token_required, serialize_doc, settings))
    app.register_blueprint(init_posts_blueprint(mongo, token_required, serialize_doc, storage))
    app.register_blueprint(init_dashboard_blueprint(
        mongo, token_required, serialize_doc, settings, gateway, limiter
    ))
    app.register_blueprint(init_referrals_blueprint(mongo, token_required, serialize_doc))
    app.register_blueprint(init_notifications_blueprint(mongo, token_required, serialize_doc))
    app.register_blueprint(init_admin_payments_blueprint(mongo, token_required, admin_required, serialize_doc))

    # Health check endpoint
    @app.route('/health', methods=['GET'])
    def health_check():
        return jsonify({
            'success': True,
            'message': 'OnlyAccess Backend is running',
            'timestamp': datetime.utcnow().isoformat() + 'Z',
            'paymentProvider': gateway.name,
            'version': '1.0.0'
        })

    # Error handlers
    @app.errorhandler(PlatformError)
    def platform_error(error):
        return jsonify(error.to_response()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'success': False,
            'message': 'Endpoint not found',
            'errors': {'general': ['The requested resource was not found on this server.']}
        }), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Unhandled error: {error}")
        return jsonify({
            'success': False,
            'message': 'Internal server error',
            'errors': {'general': ['An unexpected error occurred. Please try again later.']}
        }), 500

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'success': False,
            'message': 'Bad request',
            'errors': {'general': ['The request could not be understood by the server.']}
        }), 400

    if start_scheduler is None:
        start_scheduler = settings.SCHEDULER_ENABLED
    if start_scheduler:
        from utils.payout_scheduler import PayoutScheduler
        scheduler = PayoutScheduler(mongo, settings, gateway, push_service)
        scheduler.start()
        app.extensions['onlyaccess']['scheduler'] = scheduler

    logger.info(f"OnlyAccess backend ready (provider: {gateway.name})")
    return app


if __name__ == '__main__':
    create_app().run(debug=True, host='0.0.0.0', port=5000)
