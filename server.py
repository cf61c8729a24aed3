'''
This file is the HTTP layer which declares the webhook routes the stores deliver their
notifications to. These routes are registered onto a Flask application which enables the
endpoints for the server.

Each App has one unguessable routing secret per store which addresses its endpoint. The role of
this layer is to read the request body and map the outcome of the ingest pipeline
(notifications.py) onto the HTTP response the store expects. Stores retry deliveries that are not
answered with a 2xx, so a processing failure is answered with a 500 and the event, already
recorded on the event log, is processed again on redelivery.
'''

import flask
import json
import typing

import base
import backend
import notifications

class GetJSONFromFlaskRequest:
    json:    typing.Any = None
    err_msg: str        = ''

# Keys stored in the flask app config dictionary that can be retrieved within
# a request to get the path to the SQLite DB to load and use for that request.
CONFIG_DB_PATH_KEY        = 'storesync_db_path'
CONFIG_DB_PATH_IS_URI_KEY = 'storesync_db_path_is_uri'

# Name of the endpoints exposed on the server
ROUTE_WEBHOOK_APPLE       = '/webhooks/apple/<routing_secret>'
ROUTE_WEBHOOK_GOOGLE      = '/webhooks/google/<routing_secret>'

# The object containing routes that you register onto a Flask app to turn it
# into an app that accepts store notifications.
flask_blueprint = flask.Blueprint('storesync-blueprint', __name__)

def json_error_response(http_status: int, msg: str) -> flask.Response:
    result        = flask.jsonify({'error': msg})
    result.status = http_status
    return result

def json_received_response() -> flask.Response:
    result = flask.jsonify({'received': True})
    return result

def get_json_from_flask_request(request: flask.Request) -> GetJSONFromFlaskRequest:
    result: GetJSONFromFlaskRequest = GetJSONFromFlaskRequest()
    try:
        result.json = json.loads(request.data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        result.err_msg = f'JSON failed to be parsed: {e}'
    return result

def init(testing_mode: bool, db_path: str, db_path_is_uri: bool) -> flask.Flask:
    result                                   = flask.Flask(__name__)
    result.config['TESTING']                 = testing_mode
    result.config[CONFIG_DB_PATH_KEY]        = db_path
    result.config[CONFIG_DB_PATH_IS_URI_KEY] = db_path_is_uri
    result.register_blueprint(flask_blueprint)
    return result

def open_db_from_flask_request_context(flask_app: flask.Flask) -> backend.OpenDBAtPath:
    assert CONFIG_DB_PATH_KEY        in flask_app.config
    assert CONFIG_DB_PATH_IS_URI_KEY in flask_app.config
    db_path        = typing.cast(str, flask_app.config[CONFIG_DB_PATH_KEY])
    db_path_is_uri = typing.cast(bool, flask_app.config[CONFIG_DB_PATH_IS_URI_KEY])
    result         = backend.OpenDBAtPath(db_path, db_path_is_uri)
    return result

def response_from_ingest_result(ingested: notifications.IngestResult) -> flask.Response:
    result: flask.Response
    match ingested.status:
        case notifications.IngestStatus.Processed | notifications.IngestStatus.Duplicate:
            result = json_received_response()
        case notifications.IngestStatus.RoutingError:
            result = json_error_response(404, 'Not found')
        case notifications.IngestStatus.EnvelopeError:
            result = json_error_response(400, 'Invalid notification')
        case notifications.IngestStatus.IntegrityError:
            result = json_error_response(400, 'Notification does not belong to this app')
        case notifications.IngestStatus.Failed | notifications.IngestStatus.Nil:
            result = json_error_response(500, 'Internal error')
    return result

def handle_webhook(platform: base.Platform, routing_secret: str) -> flask.Response:
    # NOTE: A body that is not JSON is passed through as text, the pipeline resolves the App first
    # so an unknown routing secret is a 404 regardless of what was posted to it.
    get: GetJSONFromFlaskRequest = get_json_from_flask_request(flask.request)
    body = get.json if len(get.err_msg) == 0 else flask.request.get_data(as_text=True)
    with open_db_from_flask_request_context(flask.current_app) as db:
        ingested = notifications.ingest_webhook(db.sql_conn, platform, routing_secret, body, base.now_unix_ts_ms())

    result = response_from_ingest_result(ingested)
    return result

@flask_blueprint.route(ROUTE_WEBHOOK_APPLE, methods=['POST'])
def apple_webhook(routing_secret: str) -> flask.Response:
    result = handle_webhook(base.Platform.iOSAppStore, routing_secret)
    return result

@flask_blueprint.route(ROUTE_WEBHOOK_GOOGLE, methods=['POST'])
def google_webhook(routing_secret: str) -> flask.Response:
    result = handle_webhook(base.Platform.GooglePlayStore, routing_secret)
    return result
