"""
Referral API Endpoints
Referred creators, their referral windows and the referrer's earnings
"""
from datetime import datetime, timedelta

from flask import Blueprint, jsonify, current_app

from utils.revenue_split import is_within_referral_window


def init_referrals_blueprint(mongo, token_required, serialize_doc):
    """Initialize the referrals blueprint with database"""
    referrals_bp = Blueprint('referrals', __name__, url_prefix='/referrals')

    @referrals_bp.route('', methods=['GET'])
    @token_required
    def get_referrals(current_user):
        """
        Users who signed up with the caller's referral link.
        Returns: referral link, each referee's window and what it earned.
        """
        settings = current_app.config['SETTINGS']
        user_id = current_user['_id']
        now = datetime.utcnow()

        referees = list(mongo.db.users.find(
            {'referredBy': user_id},
            {'username': 1, 'profileName': 1, 'role': 1, 'creatorSince': 1, 'referredBy': 1, 'createdAt': 1}
        ).sort('createdAt', -1))

        earned_by_referee = {}
        for row in mongo.db.transactions.aggregate([
            {'$match': {'referrerId': user_id}},
            {'$group': {'_id': '$creator', 'total': {'$sum': '$referrerShare'}}}
        ]):
            earned_by_referee[row['_id']] = round(row['total'], 2)

        formatted = []
        for referee in referees:
            creator_since = referee.get('creatorSince')
            window_ends = creator_since + timedelta(days=settings.REFERRAL_WINDOW_DAYS) if creator_since else None
            formatted.append({
                'id': str(referee['_id']),
                'username': referee.get('username'),
                'profileName': referee.get('profileName'),
                'isCreator': referee.get('role') == 'creator',
                'creatorSince': creator_since.isoformat() + 'Z' if creator_since else None,
                'windowEndsAt': window_ends.isoformat() + 'Z' if window_ends else None,
                'windowActive': is_within_referral_window(referee, now, settings.REFERRAL_WINDOW_DAYS),
                'earned': earned_by_referee.get(referee['_id'], 0.0)
            })

        return jsonify({
            'success': True,
            'data': {
                'referralLink': f"{settings.FRONTEND_URL}/register?ref={user_id}",
                'totalReferrals': len(referees),
                'activeWindows': len([r for r in formatted if r['windowActive']]),
                'totalEarned': round(sum(earned_by_referee.values()), 2),
                'referrals': formatted
            }
        }), 200

    return referrals_bp
