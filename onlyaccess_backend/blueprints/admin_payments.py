"""
Admin Payments Blueprint
Payments flagged for manual reconciliation
"""
import logging

from flask import Blueprint, request, jsonify

from services import reconciliation

logger = logging.getLogger(__name__)


def init_admin_payments_blueprint(mongo, token_required, admin_required, serialize_doc):
    admin_payments_bp = Blueprint('admin_payments', __name__, url_prefix='/admin/payments')

    @admin_payments_bp.route('/reconciliation', methods=['GET'])
    @token_required
    @admin_required
    def list_flagged_payments(current_user):
        limit = min(request.args.get('limit', 50, type=int), 200)
        payments = reconciliation.list_reconciliation_payments(mongo, limit=limit)
        return jsonify({
            'success': True,
            'data': {'payments': [serialize_doc(p) for p in payments], 'count': len(payments)},
            'message': 'Reconciliation queue retrieved successfully'
        })

    @admin_payments_bp.route('/<tx_ref>/resolve', methods=['POST'])
    @token_required
    @admin_required
    def resolve_flagged_payment(current_user, tx_ref):
        data = request.get_json(silent=True) or {}
        resolved = reconciliation.resolve_reconciliation(
            mongo, tx_ref, data.get('status'), admin_notes=data.get('notes')
        )
        if not resolved:
            return jsonify({
                'success': False,
                'message': 'Payment is not awaiting reconciliation',
                'errors': {'general': [f'No flagged payment {tx_ref}']}
            }), 404

        logger.info(f"[ADMIN] {current_user['email']} resolved {tx_ref} as {data.get('status')}")
        return jsonify({'success': True, 'message': f"Payment {tx_ref} resolved"})

    return admin_payments_bp
