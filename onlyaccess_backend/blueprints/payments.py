"""
Payments Blueprint (/profile)

Payment initialization for subscriptions, special content and tips, the
provider redirect callbacks, and the provider webhook. Settlement itself
lives in services.entitlements.settle_payment.
"""
import logging
from datetime import datetime

from bson.errors import InvalidId
from flask import Blueprint, request, jsonify, redirect

from services import payments
from services.entitlements import settle_payment, subscribe_free
from utils.errors import (
    AmountMismatchError, NotFoundError, PaymentProviderError, PaymentStateError,
    PaymentVerificationError, PlatformError
)

logger = logging.getLogger(__name__)

PAYMENT_INIT_LIMIT = "20 per minute"


def init_payments_blueprint(mongo, token_required, serialize_doc, settings, gateway,
                            push_service=None, limiter=None):
    """Initialize the payments blueprint with database, gateway and config"""
    payments_bp = Blueprint('payments', __name__, url_prefix='/profile')

    def rate_limited(f):
        return limiter.limit(PAYMENT_INIT_LIMIT)(f) if limiter else f

    def _verify_with_provider(tx_ref, provider_reference):
        if provider_reference and provider_reference != tx_ref:
            return gateway.verify_payment(provider_reference)
        return gateway.verify_by_reference(tx_ref)

    def _handle_redirect(tag, frontend_path, query_key):
        """
        Shared provider redirect handler. Always redirects the browser to the
        frontend with the outcome in the query string.
        """
        status = request.args.get('status')
        tx_ref = request.args.get('tx_ref') or request.args.get('trxref') or request.args.get('reference')
        provider_reference = request.args.get('transaction_id') or request.args.get('reference')

        logger.info(f"[{tag}] Callback tx_ref={tx_ref} status={status}")

        if not tx_ref:
            outcome = 'error'
        elif status == 'cancelled':
            payments.cancel_pending_payment(mongo, tx_ref)
            outcome = 'cancelled'
        else:
            try:
                verified = _verify_with_provider(tx_ref, provider_reference)
                settle_payment(mongo, settings, tx_ref, verified, push_service=push_service)
                outcome = 'success'
            except (PaymentVerificationError, PaymentStateError) as e:
                logger.warning(f"[{tag}] {tx_ref}: {e.message}")
                outcome = 'failed'
            except (PaymentProviderError, NotFoundError) as e:
                logger.error(f"[{tag}] {tx_ref}: {e.message}")
                outcome = 'error'

        return redirect(f"{settings.FRONTEND_URL}{frontend_path}?{query_key}={outcome}")

    # ==================== CREATOR ONBOARDING ====================

    @payments_bp.route('/become-creator', methods=['POST'])
    @token_required
    def become_creator(current_user):
        if current_user.get('role') == 'creator':
            return jsonify({
                'success': True,
                'data': {'role': 'creator', 'creatorSince': current_user.get('creatorSince')},
                'message': 'You are already a creator'
            })

        now = datetime.utcnow()
        mongo.db.users.update_one(
            {'_id': current_user['_id']},
            {'$set': {'role': 'creator', 'creatorSince': now, 'updatedAt': now}}
        )
        logger.info(f"[BECOME CREATOR] {current_user['_id']}")
        return jsonify({
            'success': True,
            'data': {'role': 'creator', 'creatorSince': now.isoformat() + 'Z'},
            'message': 'You are now a creator'
        })

    @payments_bp.route('/fcm-token', methods=['POST'])
    @token_required
    def register_fcm_token(current_user):
        token = (request.get_json(silent=True) or {}).get('token')
        if not token:
            return jsonify({'success': False, 'message': 'token is required'}), 400
        mongo.db.users.update_one({'_id': current_user['_id']}, {'$addToSet': {'fcmTokens': token}})
        return jsonify({'success': True, 'message': 'Device registered'})

    # ==================== PAYMENT INITIALIZATION ====================

    @payments_bp.route('/subscribe', methods=['POST'])
    @token_required
    @rate_limited
    def subscribe(current_user):
        data = request.get_json(silent=True) or {}
        result = payments.init_subscription_payment(
            mongo, settings, gateway, current_user,
            data.get('creatorId'), data.get('bundleId')
        )
        return jsonify({
            'success': True,
            'data': result,
            'message': 'Redirect to the payment link to complete your subscription'
        })

    @payments_bp.route('/subscribe-free', methods=['POST'])
    @token_required
    def subscribe_to_free_bundle(current_user):
        data = request.get_json(silent=True) or {}
        entry = subscribe_free(mongo, settings, current_user, data.get('creatorId'), data.get('bundleId'))
        return jsonify({
            'success': True,
            'data': serialize_doc(entry),
            'message': 'Subscribed successfully'
        }), 201

    @payments_bp.route('/unlock-special-content', methods=['POST'])
    @token_required
    @rate_limited
    def unlock_special_content(current_user):
        data = request.get_json(silent=True) or {}
        result = payments.init_special_payment(mongo, settings, gateway, current_user, data.get('postId'))
        return jsonify({
            'success': True,
            'data': result,
            'message': 'Redirect to the payment link to unlock this content'
        })

    @payments_bp.route('/posts/<post_id>/tip', methods=['POST'])
    @token_required
    @rate_limited
    def tip_post(current_user, post_id):
        data = request.get_json(silent=True) or {}
        result = payments.init_tip_payment(
            mongo, settings, gateway, current_user, None,
            data.get('amount'), message=data.get('message'), post_id=post_id
        )
        return jsonify({'success': True, 'data': result, 'message': 'Redirect to the payment link to send your tip'})

    @payments_bp.route('/tip-creator/<creator_id>', methods=['POST'])
    @token_required
    @rate_limited
    def tip_creator(current_user, creator_id):
        data = request.get_json(silent=True) or {}
        result = payments.init_tip_payment(
            mongo, settings, gateway, current_user, creator_id,
            data.get('amount'), message=data.get('message')
        )
        return jsonify({'success': True, 'data': result, 'message': 'Redirect to the payment link to send your tip'})

    # ==================== PROVIDER CALLBACKS ====================

    @payments_bp.route('/verify-payment', methods=['GET'])
    def verify_payment():
        return _handle_redirect('VERIFY PAYMENT', '/profile', 'payment')

    @payments_bp.route('/verify-special-payment', methods=['GET'])
    def verify_special_payment():
        return _handle_redirect('VERIFY SPECIAL', '/purchased', 'payment')

    @payments_bp.route('/verify-tip-payment', methods=['GET'])
    def verify_tip_payment():
        return _handle_redirect('VERIFY TIP', '/profile', 'tip')

    @payments_bp.route('/webhook', methods=['POST'])
    def payment_webhook():
        """Provider webhook: signature checked, charge re-verified before settlement"""
        raw_body = request.get_data()
        if not gateway.verify_webhook_signature(raw_body, request.headers):
            logger.warning("[WEBHOOK] Invalid signature")
            return jsonify({'success': False, 'message': 'Invalid signature'}), 401

        payload = request.get_json(silent=True) or {}
        event = gateway.parse_webhook(payload)

        if event['event'] != 'charge.success':
            logger.info(f"[WEBHOOK] Ignoring event {event['event']}")
            return jsonify({'success': True, 'message': 'Event ignored'})

        tx_ref = event['txRef']
        if not tx_ref:
            metadata = event['metadata'] or {}
            if all(metadata.get(k) for k in ('user_id', 'creator_id', 'bundle_id')):
                try:
                    pending = payments.find_pending_subscription(
                        mongo, metadata['user_id'], metadata['creator_id'], metadata['bundle_id']
                    )
                except InvalidId as e:
                    logger.warning(f"[WEBHOOK] Bad metadata {metadata}: {e}")
                    pending = None
                tx_ref = pending['txRef'] if pending else None

        if not tx_ref:
            logger.warning("[WEBHOOK] No matching payment for charge.success")
            return jsonify({'success': True, 'message': 'No matching payment'})

        try:
            verified = _verify_with_provider(tx_ref, event['providerReference'])
        except PaymentProviderError as e:
            # Non-2xx makes the provider retry later
            logger.error(f"[WEBHOOK] {tx_ref}: verification unavailable: {e.message}")
            return jsonify(e.to_response()), e.status_code

        try:
            result = settle_payment(mongo, settings, tx_ref, verified, push_service=push_service)
        except (AmountMismatchError, PaymentVerificationError, PaymentStateError, NotFoundError) as e:
            logger.warning(f"[WEBHOOK] {tx_ref}: {e.message}")
            return jsonify({'success': False, 'message': e.message})

        return jsonify({
            'success': True,
            'data': {'txRef': tx_ref, 'alreadySettled': result['alreadySettled']},
            'message': 'Payment processed'
        })

    # ==================== ENTITLEMENTS ====================

    @payments_bp.route('/subscriptions', methods=['GET'])
    @token_required
    def get_my_subscriptions(current_user):
        status = request.args.get('status')
        subscriptions = current_user.get('subscriptions') or []
        if status:
            subscriptions = [s for s in subscriptions if s.get('status') == status]

        creator_ids = list({s['creatorId'] for s in subscriptions})
        creators = {
            c['_id']: c for c in mongo.db.users.find(
                {'_id': {'$in': creator_ids}}, {'username': 1, 'profileName': 1}
            )
        }

        result = []
        for sub in sorted(subscriptions, key=lambda s: s['subscribedAt'], reverse=True):
            creator = creators.get(sub['creatorId'], {})
            item = serialize_doc(sub)
            item['creatorUsername'] = creator.get('username')
            item['creatorName'] = creator.get('profileName')
            result.append(item)

        return jsonify({
            'success': True,
            'data': {'subscriptions': result},
            'message': 'Subscriptions retrieved successfully'
        })

    @payments_bp.route('/payments', methods=['GET'])
    @token_required
    def get_my_payments(current_user):
        records = mongo.db.payment_transactions.find(
            {'userId': current_user['_id']}
        ).sort('createdAt', -1).limit(50)
        return jsonify({
            'success': True,
            'data': {'payments': [serialize_doc(p) for p in records]},
            'message': 'Payments retrieved successfully'
        })

    @payments_bp.errorhandler(PlatformError)
    def handle_platform_error(error):
        if error.status_code >= 500:
            logger.error(f"[PAYMENTS] {error.message}")
        return jsonify(error.to_response()), error.status_code

    return payments_bp
