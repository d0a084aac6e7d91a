"""
Subscription Bundles Blueprint
Creator-managed bundle catalog and the free/paid mode switch
"""
from flask import Blueprint, request, jsonify

from services import bundles


def init_bundles_blueprint(mongo, token_required, serialize_doc, settings):
    """Initialize the bundles blueprint with database and config"""
    bundles_bp = Blueprint('bundles', __name__, url_prefix='/profile')

    @bundles_bp.route('/create-bundle', methods=['POST'])
    @token_required
    def create_bundle(current_user):
        data = request.get_json(silent=True) or {}
        bundle = bundles.create_bundle(mongo, settings, current_user, data)
        return jsonify({
            'success': True,
            'data': serialize_doc(bundle),
            'message': 'Bundle created successfully'
        }), 201

    @bundles_bp.route('/bundles/<creator_id>', methods=['GET'])
    @token_required
    def get_creator_bundles(current_user, creator_id):
        """Bundles ordered from shortest to longest duration"""
        items = bundles.list_bundles(mongo, creator_id)
        return jsonify({
            'success': True,
            'data': {
                'bundles': [serialize_doc(b) for b in items],
                'freeMode': any(b.get('isFree') for b in items)
            },
            'message': 'Bundles retrieved successfully'
        })

    @bundles_bp.route('/bundles/<bundle_id>', methods=['DELETE'])
    @token_required
    def delete_bundle(current_user, bundle_id):
        bundles.delete_bundle(mongo, current_user, bundle_id)
        return jsonify({'success': True, 'message': 'Bundle deleted successfully'})

    @bundles_bp.route('/bundles/free-mode', methods=['POST'])
    @token_required
    def toggle_free_mode(current_user):
        data = request.get_json(silent=True) or {}
        if not isinstance(data.get('enabled'), bool):
            return jsonify({
                'success': False,
                'message': 'enabled must be true or false',
                'errors': {'enabled': ['enabled must be a boolean']}
            }), 400

        summary = bundles.set_free_mode(
            mongo, settings, current_user, data['enabled'],
            duration=data.get('duration'), description=data.get('description')
        )
        return jsonify({
            'success': True,
            'data': serialize_doc(summary),
            'message': 'Free mode enabled' if data['enabled'] else 'Free mode disabled'
        })

    return bundles_bp
