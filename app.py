from flask import Flask, jsonify, request
import logging
from functools import wraps

import config_utils
from config_utils import CONTENT_TYPE_AP
from federation import Federation
from http_signatures import Rejected
from key_store import KeyFormatError
from kv_store import StorageError
from template_utils import templates

logger = logging.getLogger(__name__)

ACTIVITYPUB_MEDIA_TYPES = ('application/activity+json', 'application/ld+json')


def is_activitypub_media_type(header_value):
    return any(media_type in header_value for media_type in ACTIVITYPUB_MEDIA_TYPES)


def require_activitypub_accept(f):
    """Decorator to validate Accept header for ActivityPub content negotiation"""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        accept = request.headers.get('Accept', '')
        if not is_activitypub_media_type(accept):
            return jsonify({'error': 'Not acceptable'}), 406
        return f(*args, **kwargs)
    return decorated_function


def activitypub_response(data):
    response = jsonify(data)
    response.headers['Content-Type'] = CONTENT_TYPE_AP
    return response


def request_target_path():
    """Path plus query string, as covered by (request-target)"""
    if request.query_string:
        return f"{request.path}?{request.query_string.decode('latin-1')}"
    return request.path


def create_app(config, kv=None):
    """
    Build the Flask application

    Args:
        config: Configuration dictionary (see config.json.example)
        kv: Storage backend; defaults to the one named in config['storage']

    Returns:
        Flask: The configured application
    """
    app = Flask(__name__)
    federation = Federation(config, kv)
    app.extensions['federation'] = federation

    @app.errorhandler(StorageError)
    @app.errorhandler(KeyFormatError)
    def handle_storage_failure(e):
        logger.exception("Storage failure while handling %s %s", request.method, request.path)
        return jsonify({'error': 'Internal server error'}), 500

    @app.route('/')
    def home():
        """Home page listing current followers"""
        followers_list = federation.followers.list_followers()
        html = templates.render_home_page(config, followers_list)
        return html, 200, {'Content-Type': 'text/html; charset=utf-8'}

    @app.route('/.well-known/webfinger')
    def webfinger():
        """WebFinger endpoint for actor discovery"""
        resource = request.args.get('resource')
        if not resource:
            return jsonify({'error': 'Missing resource parameter'}), 400
        if resource not in (config_utils.account(config), config_utils.actor_uri(config, federation.handle)):
            return jsonify({'error': 'Resource not found'}), 404

        response = jsonify(templates.render_webfinger(config, federation.handle))
        response.headers['Content-Type'] = 'application/jrd+json'
        return response

    def require_local_handle(f):
        """Decorator answering 404 for any handle but the local one"""

        @wraps(f)
        def decorated_function(handle, *args, **kwargs):
            if not federation.resolver.is_local_handle(handle):
                return jsonify({'error': 'Actor not found'}), 404
            return f(handle, *args, **kwargs)
        return decorated_function

    @app.route('/users/<handle>')
    @require_local_handle
    @require_activitypub_accept
    def actor(handle):
        """Actor profile endpoint"""
        return activitypub_response(federation.resolver.render_local_actor(handle))

    @app.route('/users/<handle>/followers')
    @require_local_handle
    @require_activitypub_accept
    def followers(handle):
        """Followers collection endpoint"""
        collection = templates.render_followers_collection(
            followers_id=config_utils.followers_uri(config, handle),
            followers_list=federation.followers.list_followers()
        )
        return activitypub_response(collection)

    @app.route('/users/<handle>/inbox', methods=['POST'])
    @require_local_handle
    def inbox(handle):
        """Personal inbox endpoint"""
        return receive_activity()

    @app.route('/inbox', methods=['POST'])
    def shared_inbox():
        """Shared inbox endpoint"""
        return receive_activity()

    def receive_activity():
        content_type = request.headers.get('Content-Type', '')
        if not is_activitypub_media_type(content_type):
            return jsonify({'error': 'Invalid content type'}), 400

        body = request.get_data()
        verified_actor = None

        if 'Signature' in request.headers or 'Authorization' in request.headers:
            result = federation.verifier.verify(request.method, request_target_path(), request.headers, body)
            if isinstance(result, Rejected):
                return jsonify({'error': 'Invalid signature', 'reason': result.reason}), 401
            verified_actor = result.actor_id
        elif config['security'].get('require_http_signatures', True):
            logger.warning("No signature and signatures required - rejecting request")
            return jsonify({'error': 'Signature required'}), 401
        else:
            logger.warning("Accepting unsigned request (signature verification disabled)")

        activity = request.get_json(force=True, silent=True)
        if not isinstance(activity, dict) or 'type' not in activity:
            return jsonify({'error': 'Invalid activity'}), 400

        claimed_actor = activity.get('actor')
        if isinstance(claimed_actor, dict):
            claimed_actor = claimed_actor.get('id')
        if verified_actor is not None and claimed_actor != verified_actor:
            logger.warning("Activity claims actor %s but was signed by %s", claimed_actor, verified_actor)
            return jsonify({'error': 'Signer does not match actor'}), 403

        outcome = federation.processor.process(activity, verified_actor)
        logger.info("Processed %s activity from %s: %s", activity['type'], claimed_actor, outcome.value)
        return '', 202

    return app


if __name__ == '__main__':
    config = config_utils.load_config()
    config_utils.configure_logging(config)
    app = create_app(config)
    app.run(debug=config['server']['debug'],
            host=config['server']['host'],
            port=config['server']['port'],
            threaded=True)
