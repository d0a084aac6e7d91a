"""
Dashboard Blueprint
Earnings and spending summary, bank details and withdrawals
"""
from flask import Blueprint, request, jsonify

from services import withdrawals

WITHDRAWAL_LIMIT = "5 per minute"


def init_dashboard_blueprint(mongo, token_required, serialize_doc, settings, gateway, limiter=None):
    """Initialize the dashboard blueprint with database, gateway and config"""
    dashboard_bp = Blueprint('dashboard', __name__, url_prefix='/dashboard')

    def rate_limited(f):
        return limiter.limit(WITHDRAWAL_LIMIT)(f) if limiter else f

    def _sum(match, field):
        result = list(mongo.db.transactions.aggregate([
            {'$match': match},
            {'$group': {'_id': None, 'total': {'$sum': f'${field}'}, 'count': {'$sum': 1}}}
        ]))
        if not result:
            return 0.0, 0
        return round(result[0]['total'], 2), result[0]['count']

    @dashboard_bp.route('', methods=['GET'])
    @token_required
    def get_dashboard(current_user):
        user_id = current_user['_id']

        lifetime_earnings, sales_count = _sum({'creator': user_id}, 'creatorShare')
        referral_earnings, _ = _sum({'referrerId': user_id}, 'referrerShare')
        total_spent, purchases_count = _sum({'user': user_id}, 'amount')

        earnings_by_type = {}
        for row in mongo.db.transactions.aggregate([
            {'$match': {'creator': user_id}},
            {'$group': {'_id': '$type', 'total': {'$sum': '$creatorShare'}}}
        ]):
            earnings_by_type[row['_id']] = round(row['total'], 2)

        recent = mongo.db.transactions.find(
            {'$or': [{'creator': user_id}, {'user': user_id}]}
        ).sort('createdAt', -1).limit(10)

        pending_withdrawals = mongo.db.withdrawal_requests.count_documents(
            {'user': user_id, 'status': {'$in': ['pending', 'processing', 'needs_review']}}
        )

        return jsonify({
            'success': True,
            'data': {
                'balance': round(current_user.get('totalEarnings', 0.0), 2),
                'lifetimeEarnings': lifetime_earnings,
                'earningsByType': earnings_by_type,
                'referralEarnings': referral_earnings,
                'salesCount': sales_count,
                'subscriberCount': current_user.get('subscriberCount', 0),
                'totalSpent': total_spent,
                'purchasesCount': purchases_count,
                'pendingWithdrawals': pending_withdrawals,
                'banks': [serialize_doc(withdrawals.public_bank(b)) for b in current_user.get('banks') or []],
                'recentTransactions': [serialize_doc(t) for t in recent],
                'currency': settings.CURRENCY
            },
            'message': 'Dashboard retrieved successfully'
        })

    @dashboard_bp.route('/bank-details', methods=['POST'])
    @token_required
    def add_bank_details(current_user):
        data = request.get_json(silent=True) or {}
        bank = withdrawals.add_bank_account(
            mongo, settings, current_user,
            data.get('bankName'), data.get('accountNumber'),
            account_name=data.get('accountName'), bank_code=data.get('bankCode')
        )
        return jsonify({
            'success': True,
            'data': serialize_doc(bank),
            'message': 'Bank details saved'
        }), 201

    @dashboard_bp.route('/withdraw', methods=['POST'])
    @token_required
    @rate_limited
    def withdraw(current_user):
        data = request.get_json(silent=True) or {}
        withdrawal = withdrawals.request_withdrawal(
            mongo, settings, gateway, current_user, data.get('amount'), data.get('bankId')
        )
        if withdrawal['status'] != 'completed':
            return jsonify({
                'success': True,
                'data': serialize_doc(withdrawal),
                'message': 'Withdrawal is processing. You will be notified once it is sent'
            }), 202
        return jsonify({
            'success': True,
            'data': serialize_doc(withdrawal),
            'message': f"Withdrawal successful. {withdrawal['payoutAmount']:.2f} {settings.CURRENCY} sent to your bank"
        })

    @dashboard_bp.route('/withdraw/schedule', methods=['POST'])
    @token_required
    @rate_limited
    def schedule_withdrawal(current_user):
        data = request.get_json(silent=True) or {}
        withdrawal = withdrawals.schedule_withdrawal(
            mongo, settings, current_user, data.get('amount'), data.get('bankId')
        )
        return jsonify({
            'success': True,
            'data': serialize_doc(withdrawal),
            'message': 'Withdrawal scheduled'
        }), 201

    @dashboard_bp.route('/withdrawals', methods=['GET'])
    @token_required
    def get_withdrawals(current_user):
        items = withdrawals.list_withdrawals(mongo, current_user['_id'])
        return jsonify({
            'success': True,
            'data': {'withdrawals': [serialize_doc(w) for w in items]},
            'message': 'Withdrawals retrieved successfully'
        })

    return dashboard_bp
