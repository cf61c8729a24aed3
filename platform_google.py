'''
Google Play Real-time Developer Notifications. Decodes the Pub/Sub envelope (push or pull) into a
`GoogleDeveloperNotification`, maps it onto the shared subscription state machine and, for every
subscription notification, refetches the subscription from the Play Developer API so that the
state applied is Google's current view of it regardless of the order notifications arrive in.

The Pub/Sub pull thread is an alternative ingress to the push webhook for Apps whose topic is
configured with a pull subscription. Messages it receives are handed to the same ingest pipeline.
'''

import base64
import binascii
import collections.abc
import dataclasses
import json
import logging
import sqlite3
import threading
import typing

import google.api_core.exceptions
from   google.cloud import pubsub_v1

import backend
import base
import entitlements
import platform_google_api
import subscriptions
from platform_google_types import (
    GoogleDeveloperNotification,
    GoogleNotificationEvent,
    GoogleOneTimeProductEvent,
    GoogleSubscriptionEvent,
    GoogleTestEvent,
    GoogleVoidedPurchaseEvent,
    OneTimeProductNotificationType,
    ProductPurchaseState,
    RefundType,
    SubscriptionNotificationType,
    SubscriptionV2Data,
    SubscriptionsV2State,
    VoidedProductType,
)

log = logging.Logger('GOOGLE')

def decode_push_envelope(body: base.JSONObject, err: base.ErrorSink) -> base.StoreNotification | None:
    '''
    Decode a Pub/Sub push request, `{"message": {"data": "<base64>", "messageId": "..."},
    "subscription": "..."}`, into a normalised notification.
    '''
    message = base.json_dict_require_obj(body, 'message', err)
    if err.has():
        return None

    data_b64   = base.json_dict_require_str(message, 'data', err)
    message_id = base.json_dict_optional_str(message, 'messageId', err)
    if message_id is None:
        message_id = base.json_dict_optional_str(message, 'message_id', err)
    if err.has():
        return None

    data = b''
    try:
        data = base64.b64decode(data_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        err.msg_list.append(f'Pub/Sub message data is not base64: {e}')
        return None

    result = notification_from_message_data(data, message_id, err)
    return result

def notification_from_message_data(data: bytes, message_id: str | None, err: base.ErrorSink) -> base.StoreNotification | None:
    '''Decode the (already base64 decoded) data of a Pub/Sub message'''
    payload: typing.Any = None
    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        err.msg_list.append(f'Pub/Sub message data is not JSON: {e}')
        return None

    if not isinstance(payload, dict):
        err.msg_list.append(f'Pub/Sub message data is not a JSON object: {base.safe_dump_arbitrary_value_or_type(payload)}')
        return None

    event_id = message_id if message_id else backend.make_payload_event_id(data)
    result   = notification_from_payload(typing.cast(base.JSONObject, payload), event_id, err)
    return result

def parse_developer_notification(payload: base.JSONObject, err: base.ErrorSink) -> GoogleDeveloperNotification | None:
    result                  = GoogleDeveloperNotification()
    result.version          = base.json_dict_require_str(payload, 'version', err)
    result.package_name     = base.json_dict_require_str(payload, 'packageName', err)
    result.event_unix_ts_ms = base.json_dict_require_str_coerce_to_int(payload, 'eventTimeMillis', err)

    subscription     = base.json_dict_optional_obj(payload, 'subscriptionNotification', err)
    one_time_product = base.json_dict_optional_obj(payload, 'oneTimeProductNotification', err)
    voided_purchase  = base.json_dict_optional_obj(payload, 'voidedPurchaseNotification', err)
    test_obj         = base.json_dict_optional_obj(payload, 'testNotification', err)

    unique_notif_keys = (subscription is not None) + (one_time_product is not None) + (voided_purchase is not None) + (test_obj is not None)
    if unique_notif_keys == 0:
        err.msg_list.append(f'No sub-notification in Google notification for {result.package_name}: {base.safe_dump_dict_keys_or_data(payload)}')
    elif unique_notif_keys > 1:
        err.msg_list.append(f'Multiple sub-notifications in Google notification for {result.package_name}: {base.safe_dump_dict_keys_or_data(payload)}')

    if err.has():
        return None

    event: GoogleNotificationEvent | None = None
    if subscription is not None:
        raw_type = base.json_dict_require_int(subscription, 'notificationType', err)
        event    = GoogleSubscriptionEvent(version           = base.json_dict_optional_str(subscription, 'version', err) or '',
                                           notification_type = typing.cast(SubscriptionNotificationType, SubscriptionNotificationType._value2member_map_.get(raw_type, SubscriptionNotificationType.NIL)),
                                           purchase_token    = base.json_dict_require_str(subscription, 'purchaseToken', err),
                                           subscription_id   = base.json_dict_optional_str(subscription, 'subscriptionId', err))
    elif one_time_product is not None:
        raw_type = base.json_dict_require_int(one_time_product, 'notificationType', err)
        event    = GoogleOneTimeProductEvent(version           = base.json_dict_optional_str(one_time_product, 'version', err) or '',
                                             notification_type = typing.cast(OneTimeProductNotificationType, OneTimeProductNotificationType._value2member_map_.get(raw_type, OneTimeProductNotificationType.NIL)),
                                             purchase_token    = base.json_dict_require_str(one_time_product, 'purchaseToken', err),
                                             sku               = base.json_dict_require_str(one_time_product, 'sku', err))
    elif voided_purchase is not None:
        product_type = base.json_dict_require_int_coerce_to_enum(voided_purchase, 'productType', VoidedProductType, err)
        refund_type  = base.json_dict_optional_int(voided_purchase, 'refundType', err)
        event        = GoogleVoidedPurchaseEvent(purchase_token = base.json_dict_require_str(voided_purchase, 'purchaseToken', err),
                                                 order_id       = base.json_dict_require_str(voided_purchase, 'orderId', err),
                                                 product_type   = typing.cast(VoidedProductType, product_type),
                                                 refund_type    = typing.cast(RefundType, RefundType._value2member_map_.get(refund_type, RefundType.FULL_REFUND)))
    else:
        assert test_obj is not None
        event = GoogleTestEvent(version=base.json_dict_optional_str(test_obj, 'version', err) or '')

    if err.has():
        return None

    result.event = event
    return result

def event_type_label(payload: base.JSONObject) -> str:
    result = 'TEST'
    for key, prefix in (('subscriptionNotification', 'SUBSCRIPTION_'), ('oneTimeProductNotification', 'ONE_TIME_')):
        sub = payload.get(key)
        if isinstance(sub, dict):
            result = f'{prefix}{sub.get("notificationType")}'
            break
    else:
        if 'voidedPurchaseNotification' in payload:
            result = 'VOIDED_PURCHASE'
    return result

def notification_from_payload(payload: base.JSONObject, event_id: str, err: base.ErrorSink) -> base.StoreNotification | None:
    '''
    Build the normalised notification from the developer notification JSON. This is also the form
    the payload is stored in on the event log so a logged event can be rebuilt from it for replay.
    '''
    detail = parse_developer_notification(payload, err)
    if detail is None:
        return None

    result = base.StoreNotification(platform         = base.Platform.GooglePlayStore,
                                    event_id         = event_id,
                                    event_type       = event_type_label(payload),
                                    identifier       = detail.package_name,
                                    event_unix_ts_ms = detail.event_unix_ts_ms,
                                    raw_detail       = payload,
                                    detail           = detail)
    match detail.event:
        case GoogleSubscriptionEvent():
            result.type                = 'subscription'
            result.subtype             = detail.event.notification_type.name
            result.durable_purchase_id = detail.event.purchase_token
            result.product_id          = detail.event.subscription_id
        case GoogleOneTimeProductEvent():
            result.type                = 'one_time_product'
            result.subtype             = detail.event.notification_type.name
            result.durable_purchase_id = detail.event.purchase_token
            result.product_id          = detail.event.sku
        case GoogleVoidedPurchaseEvent():
            result.type                  = 'voided_purchase'
            result.subtype               = detail.event.product_type.name
            result.durable_purchase_id   = detail.event.purchase_token
            result.vendor_transaction_id = detail.event.order_id
        case GoogleTestEvent():
            result.type = 'test'
    return result

def _product_id_or_none(sql_conn: sqlite3.Connection, app: backend.AppRow, store_product_id: str | None) -> int | None:
    result = None
    if store_product_id:
        product = backend.get_product_by_store_product_id(sql_conn, app.id, base.Platform.GooglePlayStore, store_product_id)
        if product:
            result = product.id
        else:
            log.warning(f'Google product "{store_product_id}" is not configured for app {app.id}')
    return result

def transition_from_notification(event: GoogleSubscriptionEvent, event_unix_ts_ms: int) -> subscriptions.SubscriptionTransition:
    '''
    Lifecycle hint implied by the notification type. The fields of the subscription are filled in
    from the subscriptionsv2 refetch, see `apply_subscription_v2`.
    '''
    result = subscriptions.SubscriptionTransition(event=subscriptions.SubscriptionEvent.Refreshed, event_unix_ts_ms=event_unix_ts_ms)
    match event.notification_type:
        case SubscriptionNotificationType.PURCHASED:
            result.event           = subscriptions.SubscriptionEvent.Purchased
            result.record_purchase = True

        case SubscriptionNotificationType.RENEWED:
            result.event               = subscriptions.SubscriptionEvent.Renewed
            result.status              = base.SubscriptionStatus.Active
            result.purchase_unix_ts_ms = event_unix_ts_ms
            result.record_purchase     = True

        case SubscriptionNotificationType.RECOVERED:
            result.event  = subscriptions.SubscriptionEvent.Renewed
            result.status = base.SubscriptionStatus.Active

        case SubscriptionNotificationType.RESTARTED:
            result.event = subscriptions.SubscriptionEvent.AutoRenewEnabled

        case SubscriptionNotificationType.CANCELED:
            result.event               = subscriptions.SubscriptionEvent.Canceled
            result.canceled_unix_ts_ms = event_unix_ts_ms
            result.cancellation_reason = 'canceled'

        case SubscriptionNotificationType.ON_HOLD:
            result.event  = subscriptions.SubscriptionEvent.BillingFailed
            result.status = base.SubscriptionStatus.InBillingRetry

        case SubscriptionNotificationType.IN_GRACE_PERIOD:
            result.event  = subscriptions.SubscriptionEvent.BillingFailed
            result.status = base.SubscriptionStatus.InGracePeriod

        case SubscriptionNotificationType.PAUSED:
            result.event = subscriptions.SubscriptionEvent.Paused

        case SubscriptionNotificationType.REVOKED:
            result.event               = subscriptions.SubscriptionEvent.Revoked
            result.status              = base.SubscriptionStatus.Revoked
            result.cancellation_reason = 'revoked'

        case SubscriptionNotificationType.EXPIRED:
            result.event  = subscriptions.SubscriptionEvent.Expired
            result.status = base.SubscriptionStatus.Expired

        case SubscriptionNotificationType.DEFERRED:
            result.event = subscriptions.SubscriptionEvent.Extended

        case _:
            pass

    return result

def status_from_subscription_state(state: SubscriptionsV2State) -> base.SubscriptionStatus:
    result = base.SubscriptionStatus.Active
    match state:
        case SubscriptionsV2State.EXPIRED:
            result = base.SubscriptionStatus.Expired
        case SubscriptionsV2State.CANCELED:
            result = base.SubscriptionStatus.Canceled
        case SubscriptionsV2State.PAUSED:
            result = base.SubscriptionStatus.Paused
        case SubscriptionsV2State.IN_GRACE_PERIOD:
            result = base.SubscriptionStatus.InGracePeriod
        case SubscriptionsV2State.ON_HOLD:
            result = base.SubscriptionStatus.InBillingRetry
        case _:
            # NOTE: PENDING and states added after this was written are treated as active
            pass
    return result

def apply_subscription_v2(transition: subscriptions.SubscriptionTransition,
                          details:    SubscriptionV2Data,
                          sql_conn:   sqlite3.Connection,
                          app:        backend.AppRow):
    '''Overwrite the transition with the subscription as Google reports it and mark it authoritative'''
    line_item                = platform_google_api.get_line_item(details)
    transition.authoritative = True

    # NOTE: A revoked subscription is reported as expired by Google, the revocation takes precedence
    if transition.event == subscriptions.SubscriptionEvent.Revoked:
        transition.status = base.SubscriptionStatus.Revoked
    else:
        transition.status = status_from_subscription_state(details.subscription_state)

    transition.expires_unix_ts_ms = platform_google_api.expiry_unix_ts_ms(details)
    transition.transaction_id     = platform_google_api.get_order_id(details)
    transition.environment        = 'Sandbox' if details.test_purchase else 'Production'
    if line_item.auto_renew_enabled is not None:
        transition.auto_renew_enabled = line_item.auto_renew_enabled
    if transition.purchase_unix_ts_ms is None and details.start_time is not None:
        transition.purchase_unix_ts_ms = details.start_time.unix_milliseconds

    product_id = _product_id_or_none(sql_conn, app, line_item.product_id)
    if product_id is not None:
        transition.product_id = product_id

    cancel = details.canceled_state_context
    if cancel is not None and transition.event != subscriptions.SubscriptionEvent.Revoked:
        transition.cancellation_reason = cancel.reason()
        if transition.canceled_unix_ts_ms is None and cancel.user_cancel_unix_ts_ms is not None:
            transition.canceled_unix_ts_ms = cancel.user_cancel_unix_ts_ms

def _process_subscription(sql_conn:     sqlite3.Connection,
                          app:          backend.AppRow,
                          detail:       GoogleDeveloperNotification,
                          event:        GoogleSubscriptionEvent,
                          unix_ts_ms:   int):
    purchase_token = event.purchase_token
    credentials    = platform_google_api.credentials_from_app(app)
    if credentials is None:
        log.warning(f'App {app.id} has no Google service account, applying {event.notification_type.name} for {base.obfuscate(purchase_token)} without refetching')

    def build(row: backend.SubscriptionRow) -> subscriptions.SubscriptionTransition | None:
        result = transition_from_notification(event, detail.event_unix_ts_ms)
        if credentials is not None:
            details = platform_google_api.fetch_subscription_v2(credentials, detail.package_name, purchase_token)
            apply_subscription_v2(result, details, sql_conn, app)
        return result

    reconciled = subscriptions.reconcile_subscription(sql_conn, base.Platform.GooglePlayStore, purchase_token, build, unix_ts_ms)
    if reconciled.status == subscriptions.ReconcileStatus.Missing and event.notification_type == SubscriptionNotificationType.PURCHASED:
        log.info(f'Google purchase {base.obfuscate(purchase_token)} has not been registered by the client yet, ignoring')

def _process_one_time_product(sql_conn: sqlite3.Connection, app: backend.AppRow, detail: GoogleDeveloperNotification, event: GoogleOneTimeProductEvent, unix_ts_ms: int):
    log.info(f'Google one-time product notification {event.notification_type.name} for "{event.sku}" ({base.obfuscate(event.purchase_token)})')
    if event.notification_type != OneTimeProductNotificationType.ONE_TIME_PRODUCT_PURCHASED:
        return

    credentials = platform_google_api.credentials_from_app(app)
    if credentials is None:
        return

    # NOTE: The purchase is attributed to the subscriber through the obfuscated account ID the
    # client set on the billing flow, which is the app user ID.
    purchase_data = platform_google_api.fetch_product_purchase(credentials, detail.package_name, event.sku, event.purchase_token)
    if purchase_data.purchase_state != ProductPurchaseState.PURCHASED or not purchase_data.order_id:
        log.info(f'Google one-time purchase {base.obfuscate(event.purchase_token)} is {purchase_data.purchase_state.name}, nothing to record')
        return

    account_id = purchase_data.obfuscated_external_account_id
    subscriber = backend.get_subscriber_by_app_user_id(sql_conn, app.id, account_id) if account_id else None
    if subscriber is None:
        log.info(f'Google one-time purchase {base.obfuscate(purchase_data.order_id)} for an unknown subscriber, ignoring')
        return

    product = backend.get_product_by_store_product_id(sql_conn, app.id, base.Platform.GooglePlayStore, event.sku)
    if product is None:
        log.warning(f'Google one-time purchase {base.obfuscate(purchase_data.order_id)} is for unconfigured product "{event.sku}", ignoring')
        return

    purchase = backend.PurchaseRow(subscriber_id           = subscriber.id,
                                   app_id                  = app.id,
                                   product_id              = product.id,
                                   platform                = base.Platform.GooglePlayStore,
                                   store_transaction_id    = purchase_data.order_id,
                                   original_transaction_id = event.purchase_token,
                                   purchase_unix_ts_ms     = purchase_data.purchase_unix_ts_ms,
                                   environment             = 'Production')
    _ = entitlements.record_purchase(sql_conn, purchase, unix_ts_ms)

def _process_voided(sql_conn: sqlite3.Connection, detail: GoogleDeveloperNotification, event: GoogleVoidedPurchaseEvent, unix_ts_ms: int):
    if event.refund_type == RefundType.QUANTITY_BASED_PARTIAL_REFUND:
        log.info(f'Partial refund of Google order {base.obfuscate(event.order_id)}, the purchase stays valid')
        return

    if event.product_type == VoidedProductType.SUBSCRIPTION:
        def build(row: backend.SubscriptionRow) -> subscriptions.SubscriptionTransition | None:
            result = subscriptions.SubscriptionTransition(event               = subscriptions.SubscriptionEvent.Revoked,
                                                          event_unix_ts_ms    = detail.event_unix_ts_ms,
                                                          status              = base.SubscriptionStatus.Revoked,
                                                          canceled_unix_ts_ms = detail.event_unix_ts_ms,
                                                          cancellation_reason = 'voided')
            return result
        _ = subscriptions.reconcile_subscription(sql_conn, base.Platform.GooglePlayStore, event.purchase_token, build, unix_ts_ms)

    # NOTE: Voiding a renewal also revokes the order's entry in the purchase history
    purchase = entitlements.set_purchase_revocation(sql_conn, base.Platform.GooglePlayStore, event.order_id, detail.event_unix_ts_ms, 'voided', unix_ts_ms)
    if purchase is None and event.product_type == VoidedProductType.ONE_TIME:
        log.info(f'Voided Google order {base.obfuscate(event.order_id)} is not a known purchase, ignoring')

def process_notification(sql_conn: sqlite3.Connection, app: backend.AppRow, notification: base.StoreNotification, unix_ts_ms: int):
    '''
    Apply a decoded Google notification. Referential misses (unknown purchase token, subscriber or
    product) are logged and return normally, Play Developer API failures raise
    `base.StoreAPIError`.
    '''
    detail = notification.detail
    assert isinstance(detail, GoogleDeveloperNotification)

    match detail.event:
        case GoogleTestEvent():
            log.info(f'Google test notification received for app {app.id} ({detail.package_name})')
        case GoogleOneTimeProductEvent():
            _process_one_time_product(sql_conn, app, detail, detail.event, unix_ts_ms)
        case GoogleVoidedPurchaseEvent():
            _process_voided(sql_conn, detail, detail.event, unix_ts_ms)
        case GoogleSubscriptionEvent():
            _process_subscription(sql_conn, app, detail, detail.event, unix_ts_ms)

MessageHandler = collections.abc.Callable[[int, bytes, str], bool]

@dataclasses.dataclass
class PullContext:
    '''A thread pulling developer notifications for one App from a Pub/Sub subscription'''
    app_id:               int                     = 0
    project_name:         str                     = ''
    subscription_name:    str                     = ''
    service_account_info: base.JSONObject         = dataclasses.field(default_factory=dict)
    handle_message:       MessageHandler | None   = None
    thread:               threading.Thread | None = None
    kill_thread:          bool                    = False
    sleep_event:          threading.Event         = dataclasses.field(default_factory=threading.Event)

# NOTE: How often to poll Google for events in seconds when the subscription is drained
POLL_FREQUENCY_S     = 2

# NOTE: How long to back off after the Pub/Sub client fails before reconnecting
RECONNECT_DELAY_S    = 30

PULL_MAX_MESSAGES    = 64

def init_pull(app_id: int, project_name: str, subscription_name: str, service_account_info: base.JSONObject, handle_message: MessageHandler) -> PullContext:
    result        = PullContext(app_id               = app_id,
                                project_name         = project_name,
                                subscription_name    = subscription_name,
                                service_account_info = service_account_info,
                                handle_message       = handle_message)
    result.thread = threading.Thread(target=pull_thread_entry_point, args=(result,), daemon=True)
    return result

def stop_pull(context: PullContext):
    context.kill_thread = True
    context.sleep_event.set()

def _event_time_of(data: bytes) -> int:
    result = 0
    try:
        body = json.loads(data)
        if isinstance(body, dict):
            result = int(body.get('eventTimeMillis', 0))
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError, TypeError):
        pass
    return result

def pull_once(context: PullContext, client: typing.Any, sub_path: str) -> int:
    '''Pull one batch of messages, hand them to the pipeline and acknowledge the ones it accepted'''
    assert context.handle_message is not None
    try:
        response = client.pull(request={'subscription': sub_path, 'max_messages': PULL_MAX_MESSAGES}, timeout=base.HTTP_TIMEOUT_S)
    except google.api_core.exceptions.DeadlineExceeded:
        return 0

    # NOTE: Notifications for the same purchase token can arrive out of order within a batch.
    # Each one is reconciled against Google's current state so ordering them by event time is
    # not required for correctness but avoids needless stale transitions.
    received = sorted(response.received_messages, key=lambda it: _event_time_of(it.message.data))
    ack_ids: list[str] = []
    for it in received:
        if context.handle_message(context.app_id, it.message.data, it.message.message_id):
            ack_ids.append(it.ack_id)
        else:
            log.warning(f'Not acknowledging Pub/Sub message {it.message.message_id}, Google will redeliver it')

    if len(ack_ids):
        client.acknowledge(request={'subscription': sub_path, 'ack_ids': ack_ids})
    return len(received)

def pull_thread_entry_point(context: PullContext):
    while not context.kill_thread:
        try:
            with pubsub_v1.SubscriberClient.from_service_account_info(context.service_account_info) as client:  # pyright: ignore[reportUnknownMemberType]
                sub_path = client.subscription_path(context.project_name, context.subscription_name)
                log.info(f'Pulling Google notifications for app {context.app_id} from {sub_path}')
                while not context.kill_thread:
                    if pull_once(context, client, sub_path) == 0:
                        _ = context.sleep_event.wait(POLL_FREQUENCY_S)
        except google.api_core.exceptions.GoogleAPIError as e:
            log.error(f'Pub/Sub pull for app {context.app_id} failed, reconnecting in {RECONNECT_DELAY_S}s: {e}')
            _ = context.sleep_event.wait(RECONNECT_DELAY_S)
