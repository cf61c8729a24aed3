'''
Google Play Developer API (androidpublisher v3) client. Credentials are built per App from the
service account key stored on the App and passed into every call, there is no process-wide
service object.

Every call is bounded by `base.HTTP_TIMEOUT_S` and failures are raised as `base.StoreAPIError` so
that the notification being processed is left unprocessed and picked up again by Google's
redelivery or a replay.
'''
import json
import logging
import socket
import typing

import google.auth.exceptions
import google_auth_httplib2
import googleapiclient.discovery
import googleapiclient.errors
import httplib2
from google.oauth2 import service_account

import backend
import base
from base import (
    json_dict_require_str,
    json_dict_require_array,
    json_dict_optional_bool,
    json_dict_optional_int,
    json_dict_optional_obj,
    json_dict_optional_str,
    safe_dump_arbitrary_value_or_type,
)
from platform_google_types import (
    GoogleTimestamp,
    ProductPurchaseData,
    ProductPurchaseState,
    SubscriptionV2Data,
    SubscriptionV2DataLineItem,
    SubscriptionsV2AcknowledgementState,
    SubscriptionsV2CanceledState,
    SubscriptionsV2State,
    json_dict_optional_google_empty_object_bool,
    json_dict_optional_google_timestamp,
)

log = logging.Logger('GOOGLE_API')

SCOPES = ['https://www.googleapis.com/auth/androidpublisher']

def credentials_from_service_account_info(info: str | base.JSONObject) -> service_account.Credentials:
    '''Build credentials from the contents of a service account JSON key file'''
    info_dict = json.loads(info) if isinstance(info, str) else info
    result    = service_account.Credentials.from_service_account_info(info_dict, scopes=SCOPES)  # pyright: ignore[reportUnknownMemberType]
    return result

def credentials_from_app(app: backend.AppRow) -> service_account.Credentials | None:
    result = None
    if app.google_service_account:
        try:
            result = credentials_from_service_account_info(app.google_service_account)
        except (ValueError, json.JSONDecodeError) as e:
            raise base.StoreAPIError(base.Platform.GooglePlayStore, f'Service account of app {app.id} is invalid: {e}', transient=False) from e
    return result

def create_service(credentials: service_account.Credentials, timeout_s: float | None = None) -> typing.Any:
    '''
    Create the Android Publisher service object. httplib2 connections are not thread-safe so a
    service is created for each call rather than shared between threads.
    '''
    http    = httplib2.Http(timeout=timeout_s if timeout_s is not None else base.HTTP_TIMEOUT_S)
    authed  = google_auth_httplib2.AuthorizedHttp(credentials, http=http)
    result  = googleapiclient.discovery.build('androidpublisher', 'v3', http=authed, cache_discovery=False)  # pyright: ignore[reportUnknownMemberType]
    return result

def _execute(label: str, request: typing.Any) -> typing.Any:
    try:
        result = request.execute()
    except googleapiclient.errors.HttpError as e:
        status    = int(e.resp.status) if e.resp is not None else 0
        transient = status >= 500 or status == 429 or status == 0
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'{label} failed with HTTP {status}: {e.reason}', transient=transient) from e
    except (socket.timeout, TimeoutError) as e:
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'{label} timed out after {base.HTTP_TIMEOUT_S}s') from e
    except (httplib2.HttpLib2Error, OSError, google.auth.exceptions.TransportError) as e:
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'{label} failed: {e}') from e
    except google.auth.exceptions.RefreshError as e:
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'{label} failed to authenticate: {e}', transient=False) from e

    if log.getEffectiveLevel() <= logging.INFO:
        log.info(f'{label} succeeded')
    return result

def parse_subscription_v2_response(response: typing.Any, err: base.ErrorSink) -> SubscriptionV2Data | None:
    result = None
    if not isinstance(response, dict):
        err.msg_list.append(f'purchases.subscriptionsv2.get response was not a dict: {safe_dump_arbitrary_value_or_type(response)}')
        return result

    response = typing.cast(base.JSONObject, response)

    # Delete known PII just in case something logs somewhere
    if "subscribeWithGoogleInfo" in response:
        del response["subscribeWithGoogleInfo"]

    kind = json_dict_require_str(response, "kind", err)
    if kind != "androidpublisher#subscriptionPurchaseV2":
        err.msg_list.append(f'purchases.subscriptionsv2.get has incorrect kind: {kind}')

    line_items_arr = json_dict_require_array(response, "lineItems", err)
    if len(line_items_arr) == 0:
        err.msg_list.append('purchases.subscriptionsv2.get has no lineItems')

    if err.has():
        return result

    line_items: list[SubscriptionV2DataLineItem] = []
    for index, line_item in enumerate(line_items_arr):
        if not isinstance(line_item, dict):
            err.msg_list.append(f'purchases.subscriptionsv2.get line_item at index {index} not a dict: {safe_dump_arbitrary_value_or_type(line_item)}')
            continue

        item                            = SubscriptionV2DataLineItem()
        item.product_id                 = json_dict_require_str(line_item, "productId", err)
        item.expiry_time                = json_dict_optional_google_timestamp(line_item, "expiryTime", err)
        item.latest_successful_order_id = json_dict_optional_str(line_item, "latestSuccessfulOrderId", err)

        # NOTE: Exactly one of autoRenewingPlan or prepaidPlan is set, prepaid plans have no
        # renewal state to track.
        auto_renewing_plan = json_dict_optional_obj(line_item, "autoRenewingPlan", err)
        if auto_renewing_plan is not None:
            item.auto_renew_enabled = json_dict_optional_bool(auto_renewing_plan, "autoRenewEnabled", False, err)

        line_items.append(item)

    result_state = SubscriptionsV2State.UNSPECIFIED
    state_str    = json_dict_require_str(response, "subscriptionState", err)
    if state_str in SubscriptionsV2State._value2member_map_:
        result_state = SubscriptionsV2State(state_str)
    elif not err.has():
        log.warning(f'purchases.subscriptionsv2.get returned unknown subscriptionState "{state_str}"')

    start_time            = json_dict_optional_google_timestamp(response, "startTime", err)
    latest_order_id       = json_dict_optional_str(response, "latestOrderId", err)
    linked_purchase_token = json_dict_optional_str(response, "linkedPurchaseToken", err)

    auto_resume_unix_ts_ms: int | None = None
    paused_state_context_obj = json_dict_optional_obj(response, "pausedStateContext", err)
    if paused_state_context_obj is not None:
        auto_resume_time = json_dict_optional_google_timestamp(paused_state_context_obj, "autoResumeTime", err)
        if auto_resume_time is not None:
            auto_resume_unix_ts_ms = auto_resume_time.unix_milliseconds

    canceled_state_context = None
    canceled_state_context_obj = json_dict_optional_obj(response, "canceledStateContext", err)
    if canceled_state_context_obj is not None:
        user_cancel_unix_ts_ms: int | None = None
        user_initiated_cancellation_obj    = json_dict_optional_obj(canceled_state_context_obj, "userInitiatedCancellation", err)
        is_user_initiated_cancellation     = user_initiated_cancellation_obj is not None
        if user_initiated_cancellation_obj is not None:
            # NOTE: The cancel survey result is user input, it is not read
            cancel_time = json_dict_optional_google_timestamp(user_initiated_cancellation_obj, "cancelTime", err)
            if cancel_time is not None:
                user_cancel_unix_ts_ms = cancel_time.unix_milliseconds

        is_system_initiated_cancellation    = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, "systemInitiatedCancellation", err)
        is_developer_initiated_cancellation = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, "developerInitiatedCancellation", err)
        is_replacement_cancellation         = json_dict_optional_google_empty_object_bool(canceled_state_context_obj, "replacementCancellation", err)

        existing_keys = is_user_initiated_cancellation + is_system_initiated_cancellation + is_developer_initiated_cancellation + is_replacement_cancellation
        if existing_keys == 0:
            err.msg_list.append('No cancellation state for plan')
        elif existing_keys > 1:
            err.msg_list.append('Multiple cancellation state for plan. This is not possible!')

        if not err.has():
            canceled_state_context = SubscriptionsV2CanceledState(user_initiated_cancellation      = is_user_initiated_cancellation,
                                                                  system_initiated_cancellation    = is_system_initiated_cancellation,
                                                                  developer_initiated_cancellation = is_developer_initiated_cancellation,
                                                                  replacement_cancellation         = is_replacement_cancellation,
                                                                  user_cancel_unix_ts_ms           = user_cancel_unix_ts_ms)

    is_test_purchase = json_dict_optional_google_empty_object_bool(response, "testPurchase", err)

    acknowledgement_state = SubscriptionsV2AcknowledgementState.UNSPECIFIED
    acknowledgement_str   = json_dict_optional_str(response, "acknowledgementState", err)
    if acknowledgement_str is not None:
        if acknowledgement_str in SubscriptionsV2AcknowledgementState._value2member_map_:
            acknowledgement_state = SubscriptionsV2AcknowledgementState(acknowledgement_str)
        else:
            err.msg_list.append(f'Unable to parse acknowledgementState "{acknowledgement_str}" to an enum')

    if not err.has():
        result = SubscriptionV2Data(kind                   = kind,
                                    line_items             = line_items,
                                    start_time             = start_time,
                                    subscription_state     = result_state,
                                    latest_order_id        = latest_order_id,
                                    linked_purchase_token  = linked_purchase_token,
                                    auto_resume_unix_ts_ms = auto_resume_unix_ts_ms,
                                    canceled_state_context = canceled_state_context,
                                    test_purchase          = is_test_purchase,
                                    acknowledgement_state  = acknowledgement_state)

    assert result is None if err.has() else isinstance(result, SubscriptionV2Data)
    return result

def parse_product_purchase_response(response: typing.Any, err: base.ErrorSink) -> ProductPurchaseData | None:
    result = None
    if not isinstance(response, dict):
        err.msg_list.append(f'purchases.products.get response was not a dict: {safe_dump_arbitrary_value_or_type(response)}')
        return result

    response = typing.cast(base.JSONObject, response)
    kind     = json_dict_require_str(response, "kind", err)
    if kind != "androidpublisher#productPurchase":
        err.msg_list.append(f'purchases.products.get has incorrect kind: {kind}')

    purchase_time_str = json_dict_require_str(response, "purchaseTimeMillis", err)
    purchase_state    = json_dict_optional_int(response, "purchaseState", err)
    consumption_state = json_dict_optional_int(response, "consumptionState", err)
    ack_state         = json_dict_optional_int(response, "acknowledgementState", err)
    quantity          = json_dict_optional_int(response, "quantity", err)
    order_id          = json_dict_optional_str(response, "orderId", err)
    account_id        = json_dict_optional_str(response, "obfuscatedExternalAccountId", err)

    purchase_unix_ts_ms = 0
    try:
        purchase_unix_ts_ms = int(purchase_time_str)
    except ValueError as e:
        err.msg_list.append(f'Unable to parse purchaseTimeMillis type to an int: {e}')

    state = ProductPurchaseState.PURCHASED
    if purchase_state is not None:
        if purchase_state in ProductPurchaseState._value2member_map_:
            state = ProductPurchaseState(purchase_state)
        else:
            err.msg_list.append(f'Unable to parse purchaseState {purchase_state} to an enum')

    if not err.has():
        result = ProductPurchaseData(order_id                       = order_id or '',
                                     purchase_unix_ts_ms            = purchase_unix_ts_ms,
                                     purchase_state                 = state,
                                     consumed                       = consumption_state == 1,
                                     acknowledged                   = ack_state == 1,
                                     quantity                       = quantity if quantity is not None else 1,
                                     obfuscated_external_account_id = account_id)
    return result

def fetch_subscription_v2(credentials: service_account.Credentials, package_name: str, purchase_token: str) -> SubscriptionV2Data:
    """
    Call the purchases.subscriptionsv2.get endpoint. https://developers.google.com/android-publisher/api-ref/rest/v3/purchases.subscriptionsv2/get
    """
    service  = create_service(credentials)
    response = _execute(f'purchases.subscriptionsv2.get for {base.obfuscate(purchase_token)}',
                        service.purchases().subscriptionsv2().get(packageName=package_name, token=purchase_token))

    err    = base.ErrorSink()
    result = parse_subscription_v2_response(response, err)
    if err.has():
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'purchases.subscriptionsv2.get response for {base.obfuscate(purchase_token)} is invalid: {err.build()}', transient=False)
    assert result is not None
    return result

def acknowledge_subscription(credentials: service_account.Credentials, package_name: str, subscription_id: str, purchase_token: str):
    service = create_service(credentials)
    _ = _execute(f'purchases.subscriptions.acknowledge for {base.obfuscate(purchase_token)}',
                 service.purchases().subscriptions().acknowledge(packageName=package_name, subscriptionId=subscription_id, token=purchase_token, body={}))

def cancel_subscription(credentials: service_account.Credentials, package_name: str, subscription_id: str, purchase_token: str):
    '''Turn off auto-renewal, the user keeps access until the end of the current period'''
    service = create_service(credentials)
    _ = _execute(f'purchases.subscriptions.cancel for {base.obfuscate(purchase_token)}',
                 service.purchases().subscriptions().cancel(packageName=package_name, subscriptionId=subscription_id, token=purchase_token))

def refund_subscription(credentials: service_account.Credentials, package_name: str, subscription_id: str, purchase_token: str):
    '''Refund the latest payment, the subscription keeps renewing'''
    service = create_service(credentials)
    _ = _execute(f'purchases.subscriptions.refund for {base.obfuscate(purchase_token)}',
                 service.purchases().subscriptions().refund(packageName=package_name, subscriptionId=subscription_id, token=purchase_token))

def revoke_subscription(credentials: service_account.Credentials, package_name: str, subscription_id: str, purchase_token: str):
    '''Refund and immediately end the subscription. Google sends a SUBSCRIPTION_REVOKED notification'''
    service = create_service(credentials)
    _ = _execute(f'purchases.subscriptions.revoke for {base.obfuscate(purchase_token)}',
                 service.purchases().subscriptions().revoke(packageName=package_name, subscriptionId=subscription_id, token=purchase_token))

def fetch_product_purchase(credentials: service_account.Credentials, package_name: str, product_id: str, purchase_token: str) -> ProductPurchaseData:
    service  = create_service(credentials)
    response = _execute(f'purchases.products.get for {base.obfuscate(purchase_token)}',
                        service.purchases().products().get(packageName=package_name, productId=product_id, token=purchase_token))

    err    = base.ErrorSink()
    result = parse_product_purchase_response(response, err)
    if err.has():
        raise base.StoreAPIError(base.Platform.GooglePlayStore, f'purchases.products.get response for {base.obfuscate(purchase_token)} is invalid: {err.build()}', transient=False)
    assert result is not None
    return result

def acknowledge_product(credentials: service_account.Credentials, package_name: str, product_id: str, purchase_token: str):
    service = create_service(credentials)
    _ = _execute(f'purchases.products.acknowledge for {base.obfuscate(purchase_token)}',
                 service.purchases().products().acknowledge(packageName=package_name, productId=product_id, token=purchase_token, body={}))

def consume_product(credentials: service_account.Credentials, package_name: str, product_id: str, purchase_token: str):
    service = create_service(credentials)
    _ = _execute(f'purchases.products.consume for {base.obfuscate(purchase_token)}',
                 service.purchases().products().consume(packageName=package_name, productId=product_id, token=purchase_token))

def get_line_item(details: SubscriptionV2Data) -> SubscriptionV2DataLineItem:
    assert len(details.line_items) > 0
    return details.line_items[0]

def get_order_id(details: SubscriptionV2Data) -> str | None:
    result = details.latest_order_id
    if result is None:
        result = get_line_item(details).latest_successful_order_id
    return result

def expiry_unix_ts_ms(details: SubscriptionV2Data) -> int | None:
    expiry_time: GoogleTimestamp | None = get_line_item(details).expiry_time
    result = expiry_time.unix_milliseconds if expiry_time is not None else None
    return result
