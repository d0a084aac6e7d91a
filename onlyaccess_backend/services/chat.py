"""Direct-message threads between two users"""
from datetime import datetime

from bson import ObjectId


def get_or_create_chat(mongo, user_a, user_b, now=None):
    """Find the two-person chat between user_a and user_b, creating it if missing."""
    user_a, user_b = ObjectId(user_a), ObjectId(user_b)
    chat = mongo.db.chats.find_one({
        'participants': {'$all': [user_a, user_b], '$size': 2}
    })
    if chat:
        return chat

    now = now or datetime.utcnow()
    chat = {
        '_id': ObjectId(),
        'participants': [user_a, user_b],
        'messages': [],
        'createdAt': now,
        'updatedAt': now
    }
    mongo.db.chats.insert_one(chat)
    return chat


def append_message(mongo, sender_id, recipient_id, text, is_tip=False, tip_amount=None, now=None):
    """Append a message to the sender/recipient thread and return it."""
    now = now or datetime.utcnow()
    chat = get_or_create_chat(mongo, sender_id, recipient_id, now=now)

    message = {
        '_id': ObjectId(),
        'sender': ObjectId(sender_id),
        'text': text,
        'timestamp': now,
        'isTip': is_tip,
        'tipAmount': tip_amount if is_tip else None,
        'readBy': [ObjectId(sender_id)]
    }
    mongo.db.chats.update_one(
        {'_id': chat['_id']},
        {'$push': {'messages': message}, '$set': {'updatedAt': now}}
    )
    return message


def append_tip_message(mongo, tipper_id, creator_id, text, amount, now=None):
    return append_message(mongo, tipper_id, creator_id, text, is_tip=True, tip_amount=amount, now=now)
