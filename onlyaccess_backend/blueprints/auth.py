from flask import Blueprint, request, jsonify
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, timedelta
import jwt
import logging
import re
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)


# Validation helpers
def validate_email(email):
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def validate_password(password):
    return len(password) >= 6


def validate_username(username):
    return re.match(r'^[A-Za-z0-9_.]{3,30}$', username) is not None


def issue_token(user_id, settings):
    return jwt.encode({
        'user_id': str(user_id),
        'exp': datetime.utcnow() + timedelta(hours=settings.JWT_EXPIRATION_HOURS)
    }, settings.SECRET_KEY, algorithm='HS256')


def public_user(user):
    return {
        'id': str(user['_id']),
        'email': user['email'],
        'username': user['username'],
        'profileName': user.get('profileName'),
        'role': user.get('role', 'user'),
        'referredBy': str(user['referredBy']) if user.get('referredBy') else None,
    }


def init_auth_blueprint(mongo, settings):
    """Initialize the auth blueprint with database and config"""
    auth_bp = Blueprint('auth', __name__, url_prefix='/auth')

    @auth_bp.route('/register', methods=['POST'])
    def register():
        data = request.get_json(silent=True) or {}
        email = (data.get('email') or '').lower().strip()
        username = (data.get('username') or '').strip()
        password = data.get('password') or ''
        ref = request.args.get('ref') or data.get('ref')

        errors = {}
        if not validate_email(email):
            errors['email'] = ['Valid email is required']
        if not validate_username(username):
            errors['username'] = ['Username must be 3-30 letters, digits, dots or underscores']
        if not validate_password(password):
            errors['password'] = ['Password must be at least 6 characters']
        if errors:
            return jsonify({
                'success': False,
                'message': 'Validation failed',
                'errors': errors
            }), 400

        # Referral link: ?ref=<referrer user id>
        referred_by = None
        if ref and ObjectId.is_valid(ref):
            referrer = mongo.db.users.find_one({'_id': ObjectId(ref)}, {'_id': 1})
            if referrer:
                referred_by = referrer['_id']
            else:
                logger.info(f"[REGISTER] Unknown referrer {ref} ignored")

        now = datetime.utcnow()
        user = {
            '_id': ObjectId(),
            'email': email,
            'username': username,
            'password': generate_password_hash(password),
            'role': 'user',
            'profileName': data.get('profileName') or username,
            'bio': '',
            'subscriptions': [],
            'purchasedContent': [],
            'bookmarks': [],
            'totalEarnings': 0.0,
            'subscriberCount': 0,
            'freeMode': False,
            'creatorSince': None,
            'referredBy': referred_by,
            'banks': [],
            'fcmTokens': [],
            'createdAt': now,
            'updatedAt': now
        }

        try:
            mongo.db.users.insert_one(user)
        except DuplicateKeyError:
            return jsonify({
                'success': False,
                'message': 'Email or username already registered',
                'errors': {'email': ['Email or username already registered']}
            }), 409

        logger.info(f"[REGISTER] New user {user['_id']}" + (f" referred by {referred_by}" if referred_by else ''))

        return jsonify({
            'success': True,
            'data': {
                'access_token': issue_token(user['_id'], settings),
                'user': public_user(user)
            },
            'message': 'Registration successful'
        }), 201

    @auth_bp.route('/login', methods=['POST'])
    def login():
        data = request.get_json(silent=True) or {}
        email = (data.get('email') or '').lower().strip()
        password = data.get('password') or ''

        if not email or not password:
            return jsonify({
                'success': False,
                'message': 'Email and password are required',
                'errors': {'general': ['Email and password are required']}
            }), 400

        user = mongo.db.users.find_one({'email': email})
        if not user or not check_password_hash(user['password'], password):
            return jsonify({
                'success': False,
                'message': 'Invalid email or password',
                'errors': {'general': ['Invalid email or password']}
            }), 401

        mongo.db.users.update_one({'_id': user['_id']}, {'$set': {'lastLogin': datetime.utcnow()}})

        return jsonify({
            'success': True,
            'data': {
                'access_token': issue_token(user['_id'], settings),
                'user': public_user(user)
            },
            'message': 'Login successful'
        })

    return auth_bp
