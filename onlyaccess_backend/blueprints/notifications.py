"""
Notifications Blueprint
In-app notification feed: earnings, tips, purchases, subscriptions, withdrawals
"""
import logging
from datetime import datetime

from flask import Blueprint, request, jsonify
from bson import ObjectId
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

# Categories shown as tabs in the app
NOTIFICATION_CATEGORIES = {
    'subscription': 'Subscriptions',
    'purchase': 'Unlocked Content',
    'tip': 'Tips',
    'earning': 'Earnings',
    'withdrawal': 'Withdrawals',
    'general': 'Other',
}

MAX_PAGE_SIZE = 100


def create_user_notification(mongo, user_id, category, title, body,
                             related_id=None, metadata=None, priority='normal'):
    """
    Store a notification for user_id. Returns the new id, or None when the
    write failed; the payment or payout that triggered it is not affected.
    """
    now = datetime.utcnow()
    notification = {
        '_id': ObjectId(),
        'userId': ObjectId(user_id),
        'category': category if category in NOTIFICATION_CATEGORIES else 'general',
        'title': title,
        'body': body,
        'relatedId': related_id,
        'metadata': metadata or {},
        'priority': priority,
        'timestamp': now,
        'isRead': False,
        'isArchived': False,
    }
    try:
        mongo.db.user_notifications.insert_one(notification)
    except PyMongoError as e:
        logger.error(f"[NOTIFICATION] Could not store '{title}' for {user_id}: {e}")
        return None
    return str(notification['_id'])


def init_notifications_blueprint(mongo, token_required, serialize_doc):
    """Initialize the notifications blueprint with database"""
    notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

    def _requested_ids():
        raw_ids = (request.get_json(silent=True) or {}).get('notificationIds') or []
        return [ObjectId(nid) for nid in raw_ids if ObjectId.is_valid(str(nid))]

    @notifications_bp.route('/list', methods=['GET'])
    @token_required
    def list_notifications(current_user):
        page = max(request.args.get('page', 1, type=int), 1)
        limit = min(max(request.args.get('limit', 50, type=int), 1), MAX_PAGE_SIZE)
        category = request.args.get('category')

        query = {'userId': current_user['_id'], 'isArchived': False}
        if category:
            if category not in NOTIFICATION_CATEGORIES:
                return jsonify({
                    'success': False,
                    'message': f'Unknown category: {category}',
                    'errors': {'category': [f'Must be one of: {", ".join(NOTIFICATION_CATEGORIES)}']}
                }), 400
            query['category'] = category
        if request.args.get('unread_only', 'false').lower() == 'true':
            query['isRead'] = False

        total = mongo.db.user_notifications.count_documents(query)
        items = mongo.db.user_notifications.find(query).sort('timestamp', -1).skip((page - 1) * limit).limit(limit)
        unread = mongo.db.user_notifications.count_documents(
            {'userId': current_user['_id'], 'isRead': False, 'isArchived': False}
        )

        return jsonify({
            'success': True,
            'data': {
                'notifications': [serialize_doc(n) for n in items],
                'unreadCount': unread,
                'categories': NOTIFICATION_CATEGORIES,
                'pagination': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)}
            },
            'message': 'Notifications retrieved successfully'
        })

    @notifications_bp.route('/mark-read', methods=['POST'])
    @token_required
    def mark_read(current_user):
        """Mark the given notificationIds, or everything with markAll, as read"""
        query = {'userId': current_user['_id'], 'isRead': False, 'isArchived': False}
        if not (request.get_json(silent=True) or {}).get('markAll'):
            ids = _requested_ids()
            if not ids:
                return jsonify({'success': False, 'message': 'Provide notificationIds or markAll'}), 400
            query['_id'] = {'$in': ids}

        result = mongo.db.user_notifications.update_many(
            query, {'$set': {'isRead': True, 'readAt': datetime.utcnow()}}
        )
        return jsonify({
            'success': True,
            'data': {'markedCount': result.modified_count},
            'message': f'{result.modified_count} notifications marked as read'
        })

    @notifications_bp.route('/archive', methods=['POST'])
    @token_required
    def archive(current_user):
        ids = _requested_ids()
        if not ids:
            return jsonify({'success': False, 'message': 'notificationIds is required'}), 400

        result = mongo.db.user_notifications.update_many(
            {'_id': {'$in': ids}, 'userId': current_user['_id']},
            {'$set': {'isArchived': True, 'archivedAt': datetime.utcnow()}}
        )
        return jsonify({
            'success': True,
            'data': {'archivedCount': result.modified_count},
            'message': f'{result.modified_count} notifications archived'
        })

    return notifications_bp
