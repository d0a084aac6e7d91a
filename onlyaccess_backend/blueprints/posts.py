"""
Posts Blueprint
Post metadata, entitlement-gated media, bookmarks and purchased content
"""
import logging
from datetime import datetime

from flask import Blueprint, request, jsonify
from bson import ObjectId

from services.access import can_view_post, post_view
from services.payments import parse_object_id
from utils.errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

POST_TYPES = ('image', 'video', 'text', 'mixed')


def init_posts_blueprint(mongo, token_required, serialize_doc, storage=None):
    """Initialize the posts blueprint with database and storage"""
    posts_bp = Blueprint('posts', __name__, url_prefix='/posts')

    def _load_post(post_id):
        post = mongo.db.posts.find_one({'_id': parse_object_id(post_id, 'postId')})
        if not post:
            raise NotFoundError('Post not found')
        return post

    @posts_bp.route('', methods=['POST'])
    @token_required
    def create_post(current_user):
        """Create post metadata. Media is uploaded to storage separately."""
        if current_user.get('role') != 'creator':
            raise PermissionDeniedError('Only creators can post content')

        data = request.get_json(silent=True) or {}
        errors = {}

        post_type = data.get('type', 'text')
        if post_type not in POST_TYPES:
            errors['type'] = [f'Must be one of: {", ".join(POST_TYPES)}']

        media_items = []
        for item in data.get('mediaItems') or []:
            if not isinstance(item, dict) or not item.get('url'):
                errors['mediaItems'] = ['Each media item needs a url']
                break
            media_items.append({
                'url': item['url'],
                'type': item.get('type', 'image'),
                'contentType': item.get('contentType')
            })

        special = bool(data.get('special'))
        unlock_price = None
        if special:
            try:
                unlock_price = round(float(data.get('unlockPrice')), 2)
                if unlock_price <= 0:
                    errors['unlockPrice'] = ['Unlock price must be greater than zero']
            except (TypeError, ValueError):
                errors['unlockPrice'] = ['Special posts need an unlock price']

        write_up = (data.get('writeUp') or '').strip()
        if not media_items and not data.get('contentUrl') and not write_up:
            errors['general'] = ['A post needs media or a write-up']

        if errors:
            raise ValidationError('Validation failed', errors=errors)

        post = {
            '_id': ObjectId(),
            'creator': current_user['_id'],
            'contentUrl': data.get('contentUrl'),
            'mediaItems': media_items,
            'type': post_type,
            'writeUp': write_up,
            'special': special,
            'unlockPrice': unlock_price,
            'likes': [],
            'comments': [],
            'totalTips': 0.0,
            'createdAt': datetime.utcnow()
        }
        mongo.db.posts.insert_one(post)
        logger.info(f"[POST] Creator {current_user['_id']} posted {post['_id']} (special={special})")

        return jsonify({
            'success': True,
            'data': serialize_doc(post),
            'message': 'Post created successfully'
        }), 201

    @posts_bp.route('/purchased', methods=['GET'])
    @token_required
    def get_purchased_posts(current_user):
        purchases = sorted(
            current_user.get('purchasedContent') or [],
            key=lambda p: p['purchasedAt'],
            reverse=True
        )
        post_ids = [p['contentId'] for p in purchases]
        posts = {p['_id']: p for p in mongo.db.posts.find({'_id': {'$in': post_ids}})}

        items = []
        for purchase in purchases:
            post = posts.get(purchase['contentId'])
            if not post:
                continue
            view = post_view(post, True, storage)
            view['purchasedAt'] = purchase['purchasedAt']
            items.append(serialize_doc(view))

        return jsonify({
            'success': True,
            'data': {'posts': items},
            'message': 'Purchased content retrieved successfully'
        })

    @posts_bp.route('/creator/<creator_id>', methods=['GET'])
    @token_required
    def get_creator_posts(current_user, creator_id):
        creator_id = parse_object_id(creator_id, 'creatorId')
        posts = mongo.db.posts.find({'creator': creator_id}).sort('createdAt', -1).limit(100)
        items = [serialize_doc(post_view(p, can_view_post(current_user, p), storage)) for p in posts]
        return jsonify({
            'success': True,
            'data': {'posts': items},
            'message': 'Posts retrieved successfully'
        })

    @posts_bp.route('/<post_id>', methods=['GET'])
    @token_required
    def get_post(current_user, post_id):
        post = _load_post(post_id)
        unlocked = can_view_post(current_user, post)
        return jsonify({
            'success': True,
            'data': serialize_doc(post_view(post, unlocked, storage)),
            'message': 'Post retrieved successfully' if unlocked else 'Subscribe or unlock to view this post'
        })

    @posts_bp.route('/<post_id>/bookmark', methods=['POST'])
    @token_required
    def toggle_bookmark(current_user, post_id):
        post = _load_post(post_id)
        bookmarked = post['_id'] in (current_user.get('bookmarks') or [])

        if bookmarked:
            mongo.db.users.update_one({'_id': current_user['_id']}, {'$pull': {'bookmarks': post['_id']}})
        else:
            mongo.db.users.update_one({'_id': current_user['_id']}, {'$addToSet': {'bookmarks': post['_id']}})

        return jsonify({
            'success': True,
            'data': {'isBookmarked': not bookmarked},
            'message': 'Bookmark removed' if bookmarked else 'Post bookmarked'
        })

    return posts_bp
