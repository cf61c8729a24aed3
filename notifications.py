'''
Store notification ingest pipeline shared by the Apple and Google webhooks, the Google Pub/Sub
pull threads and the replay command:

  1. Resolve the App from the routing secret in the webhook URL
  2. Decode the store's envelope into a `StoreNotification`
  3. Check the notification was issued for the App's bundle ID/package name
  4. Record it on the event log, a redelivery of a processed event stops here
  5. Apply it to the subscription state machine and rederive entitlements
  6. Mark the event processed, or record the error and leave it for redelivery/replay
'''
import dataclasses
import enum
import json
import logging
import sqlite3
import traceback
import typing

import backend
import base
import platform_apple
import platform_google

log = logging.Logger('INGRESS')

StoreNotification = base.StoreNotification

class ProcessingError(Exception):
    '''A logged event could not be turned back into a notification or its App no longer exists'''

class IngestStatus(enum.Enum):
    Nil            = 0
    Processed      = 1
    Duplicate      = 2 # Redelivery of an event that was already processed
    RoutingError   = 3 # Unknown routing secret
    EnvelopeError  = 4 # Body could not be decoded or failed verification
    IntegrityError = 5 # Notification is for a different bundle ID/package name than the App's
    Failed         = 6 # Processing raised, the event is left unprocessed

@dataclasses.dataclass
class IngestResult:
    status:       IngestStatus                    = IngestStatus.Nil
    app:          backend.AppRow | None           = None
    notification: base.StoreNotification | None   = None
    event:        backend.WebhookEventRow | None  = None
    error:        str                             = ''

@dataclasses.dataclass
class ReplayResult:
    processed: int = 0
    failed:    int = 0

def decode_envelope(platform: base.Platform, app: backend.AppRow, body: typing.Any, err: base.ErrorSink) -> base.StoreNotification | None:
    result = None
    if not isinstance(body, dict):
        err.msg_list.append(f'{platform.name} notification body is not a JSON object: {base.safe_dump_arbitrary_value_or_type(body)}')
        return result

    body = typing.cast(base.JSONObject, body)
    match platform:
        case base.Platform.iOSAppStore:
            signed_payload = base.json_dict_require_str(body, 'signedPayload', err)
            if not err.has():
                result = platform_apple.decode_signed_payload(app, signed_payload, err)
        case base.Platform.GooglePlayStore:
            result = platform_google.decode_push_envelope(body, err)
        case base.Platform.Nil:
            err.msg_list.append('Notification platform was not specified')
    return result

def expected_identifier(app: backend.AppRow, platform: base.Platform) -> str | None:
    result = app.bundle_id if platform == base.Platform.iOSAppStore else app.package_name
    return result

def check_integrity(app: backend.AppRow, notification: base.StoreNotification, err: base.ErrorSink):
    expected = expected_identifier(app, notification.platform)
    if not expected:
        err.msg_list.append(f'App {app.id} has no {notification.platform.name} identifier configured')
    elif notification.identifier != expected:
        err.msg_list.append(f'{notification.platform.name} notification {notification.event_id} is for "{notification.identifier}" but app {app.id} is "{expected}"')

def process_notification(sql_conn: sqlite3.Connection, app: backend.AppRow, notification: base.StoreNotification, unix_ts_ms: int):
    match notification.platform:
        case base.Platform.iOSAppStore:
            platform_apple.process_notification(sql_conn, app, notification, unix_ts_ms)
        case base.Platform.GooglePlayStore:
            platform_google.process_notification(sql_conn, app, notification, unix_ts_ms)
        case base.Platform.Nil:
            raise ProcessingError('Notification platform was not specified')

def _process_logged_event(sql_conn:     sqlite3.Connection,
                          app:          backend.AppRow,
                          notification: base.StoreNotification,
                          event:        backend.WebhookEventRow,
                          unix_ts_ms:   int) -> IngestResult:
    result = IngestResult(app=app, notification=notification, event=event)
    try:
        process_notification(sql_conn, app, notification, unix_ts_ms)
    except Exception as e:
        result.status = IngestStatus.Failed
        result.error  = f'{type(e).__name__}: {e}'
        backend.mark_webhook_event_failed(sql_conn, event.id, result.error)
        log.error(f'Processing {notification.platform.name} {notification.event_type} event {notification.event_id} for app {app.id} failed (attempt {event.retry_count + 1}): {traceback.format_exc()}')
        return result

    backend.mark_webhook_event_processed(sql_conn, event.id, base.now_unix_ts_ms())
    result.status = IngestStatus.Processed
    if log.getEffectiveLevel() <= logging.INFO:
        log.info(f'Processed {notification.platform.name} {notification.event_type} event {notification.event_id} for app {app.id}')
    return result

def ingest_notification(sql_conn: sqlite3.Connection, app: backend.AppRow, notification: base.StoreNotification, unix_ts_ms: int) -> IngestResult:
    '''Record a decoded, integrity checked notification on the event log and process it'''
    logged = backend.log_webhook_event(sql_conn   = sql_conn,
                                       app_id     = app.id,
                                       platform   = notification.platform,
                                       event_type = notification.event_type,
                                       event_id   = notification.event_id,
                                       payload    = json.dumps(notification.raw_detail),
                                       unix_ts_ms = unix_ts_ms)

    if logged.status == backend.LogWebhookEventStatus.DuplicateProcessed:
        if log.getEffectiveLevel() <= logging.INFO:
            log.info(f'{notification.platform.name} event {notification.event_id} for app {app.id} was already processed, ignoring redelivery')
        result = IngestResult(status=IngestStatus.Duplicate, app=app, notification=notification, event=logged.event)
        return result

    if logged.status == backend.LogWebhookEventStatus.DuplicateUnprocessed:
        log.info(f'Reprocessing {notification.platform.name} event {notification.event_id} for app {app.id} (retry {logged.event.retry_count})')

    result = _process_logged_event(sql_conn, app, notification, logged.event, unix_ts_ms)
    return result

def ingest_app_notification(sql_conn: sqlite3.Connection, app: backend.AppRow, platform: base.Platform, body: typing.Any, unix_ts_ms: int) -> IngestResult:
    result = IngestResult(app=app)
    err    = base.ErrorSink()
    notification = decode_envelope(platform, app, body, err)
    if err.has() or notification is None:
        result.status = IngestStatus.EnvelopeError
        result.error  = err.build()
        log.warning(f'Rejected {platform.name} notification for app {app.id}, envelope is invalid: {result.error}\nPayload was: {base.safe_dump_dict_keys_or_data(body if isinstance(body, dict) else None)}')
        return result

    check_integrity(app, notification, err)
    if err.has():
        result.status       = IngestStatus.IntegrityError
        result.notification = notification
        result.error        = err.build()
        log.error(f'Rejected {platform.name} notification, integrity check failed: {result.error}')
        return result

    result = ingest_notification(sql_conn, app, notification, unix_ts_ms)
    return result

def ingest_webhook(sql_conn: sqlite3.Connection, platform: base.Platform, routing_secret: str, body: typing.Any, unix_ts_ms: int) -> IngestResult:
    '''Full pipeline for a webhook request addressed to `routing_secret`'''
    app = backend.get_app_by_routing_secret(sql_conn, platform, routing_secret)
    if app is None:
        log.warning(f'{platform.name} notification for unknown routing secret {base.obfuscate(routing_secret)}')
        result = IngestResult(status=IngestStatus.RoutingError)
        return result

    result = ingest_app_notification(sql_conn, app, platform, body, unix_ts_ms)
    return result

def handle_pulled_message(app_id: int, data: bytes, message_id: str) -> bool:
    '''
    Pub/Sub pull callback. Returns true if the message should be acknowledged. Only messages that
    failed processing are left unacknowledged, invalid messages would fail again on redelivery.
    '''
    result = True
    with backend.OpenDBAtPath(db_path=base.DB_PATH, uri=base.DB_PATH_IS_URI) as db:
        app = backend.get_app(db.sql_conn, app_id)
        if app is None:
            log.error(f'Pulled Google message {message_id} for unknown app {app_id}')
            return result

        err          = base.ErrorSink()
        notification = platform_google.notification_from_message_data(data, message_id, err)
        if notification is None:
            log.warning(f'Discarding pulled Google message {message_id} for app {app_id}, envelope is invalid: {err.build()}')
            return result

        check_integrity(app, notification, err)
        if err.has():
            log.error(f'Discarding pulled Google message {message_id}, integrity check failed: {err.build()}')
            return result

        ingested = ingest_notification(db.sql_conn, app, notification, base.now_unix_ts_ms())
        result   = ingested.status != IngestStatus.Failed
    return result

def notification_from_event(event: backend.WebhookEventRow) -> base.StoreNotification:
    '''Rebuild the notification of a logged event. Raises `ProcessingError` if it is unreadable'''
    payload: typing.Any = None
    try:
        payload = json.loads(event.payload)
    except json.JSONDecodeError as e:
        raise ProcessingError(f'Logged event {event.event_id} has a payload that is not JSON: {e}') from e

    if not isinstance(payload, dict):
        raise ProcessingError(f'Logged event {event.event_id} has a payload that is not a JSON object')

    err    = base.ErrorSink()
    result = None
    match event.platform:
        case base.Platform.iOSAppStore:
            result = platform_apple.notification_from_payload(typing.cast(base.JSONObject, payload), event.event_id, err)
        case base.Platform.GooglePlayStore:
            result = platform_google.notification_from_payload(typing.cast(base.JSONObject, payload), event.event_id, err)
        case base.Platform.Nil:
            err.msg_list.append('Logged event has no platform')

    if err.has() or result is None:
        raise ProcessingError(f'Logged event {event.event_id} could not be decoded: {err.build()}')
    return result

def replay_unprocessed_events(sql_conn: sqlite3.Connection, unix_ts_ms: int | None = None) -> ReplayResult:
    '''Reprocess every logged event that has not finished processing, oldest first'''
    result = ReplayResult()
    for event in backend.get_unprocessed_webhook_events(sql_conn):
        backend.increment_webhook_event_retry_count(sql_conn, event.id)
        event.retry_count += 1
        try:
            app = backend.get_app(sql_conn, event.app_id)
            if app is None:
                raise ProcessingError(f'Logged event {event.event_id} belongs to unknown app {event.app_id}')
            notification = notification_from_event(event)
        except ProcessingError as e:
            backend.mark_webhook_event_failed(sql_conn, event.id, f'{type(e).__name__}: {e}')
            log.error(f'Unable to replay event {event.event_id}: {e}')
            result.failed += 1
            continue

        now       = unix_ts_ms if unix_ts_ms is not None else base.now_unix_ts_ms()
        processed = _process_logged_event(sql_conn, app, notification, event, now)
        if processed.status == IngestStatus.Processed:
            result.processed += 1
        else:
            result.failed += 1

    log.info(f'Replayed unprocessed events, {result.processed} processed, {result.failed} failed')
    return result
