"""Entitlement checks for post access"""
from datetime import datetime


def has_active_subscription(user, creator_id, now=None):
    """True if the user holds an unexpired active subscription to creator_id."""
    now = now or datetime.utcnow()
    for sub in (user or {}).get('subscriptions') or []:
        if (sub.get('creatorId') == creator_id
                and sub.get('status') == 'active'
                and sub.get('subscriptionExpiry')
                and sub['subscriptionExpiry'] > now):
            return True
    return False


def has_purchased(user, post_id):
    return any(item.get('contentId') == post_id for item in (user or {}).get('purchasedContent') or [])


def can_view_post(user, post, now=None):
    """
    Owner always; special posts need a purchase (a subscription is not
    enough); regular posts need an active subscription to the creator.
    """
    if user and post['creator'] == user['_id']:
        return True
    if post.get('special'):
        return has_purchased(user, post['_id'])
    return has_active_subscription(user, post['creator'], now=now)


def post_view(post, unlocked, storage=None):
    """Post payload for a viewer; media only when unlocked."""
    view = {
        '_id': post['_id'],
        'creator': post['creator'],
        'type': post.get('type'),
        'writeUp': post.get('writeUp'),
        'special': post.get('special', False),
        'unlockPrice': post.get('unlockPrice'),
        'likesCount': len(post.get('likes') or []),
        'commentsCount': len(post.get('comments') or []),
        'totalTips': post.get('totalTips', 0.0),
        'createdAt': post.get('createdAt'),
        'locked': not unlocked,
    }
    if unlocked:
        if storage is not None:
            view.update(storage.sign_media(post))
        else:
            view['contentUrl'] = post.get('contentUrl')
            view['mediaItems'] = post.get('mediaItems') or []
    return view
