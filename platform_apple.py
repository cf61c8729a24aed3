'''
Apple App Store Server Notifications (v2).

Apple posts `{"signedPayload": "<JWS>"}` where the JWS payload is the notification and carries the
subscription's transaction and renewal info as nested JWS. The notification is decoded into
`AppleDecodedNotification`, normalised into a `base.StoreNotification` and then mapped onto the
shared subscription state machine.

When the process is configured with Apple's root certificates every JWS is additionally verified
against the certificate chain embedded in its header with `SignedDataVerifier`. When the App has
App Store Server API credentials the lineage's status is refetched from Apple and applied as the
authoritative state on top of what the notification says.
'''
import base64
import binascii
import dataclasses
import enum
import json
import logging
import sqlite3
import typing

from appstoreserverlibrary.models.Environment        import Environment        as AppleEnvironment
from appstoreserverlibrary.models.NotificationTypeV2 import NotificationTypeV2 as AppleNotificationV2
from appstoreserverlibrary.models.Subtype            import Subtype            as AppleSubtype
from appstoreserverlibrary.models.Type               import Type               as AppleType
from appstoreserverlibrary.models.Status             import Status             as AppleStatus

from appstoreserverlibrary.signed_data_verifier import (
    VerificationException as AppleVerificationException,
    SignedDataVerifier    as AppleSignedDataVerifier,
)

import backend
import base
import entitlements
import platform_apple_api
import subscriptions

log = logging.Logger('APPLE')

# NOTE: DER encoded Apple root CAs (AppleRootCA-G3.cer, ...). Signature verification is enabled
# when this is non-empty, set from the [apple] section of the config at startup.
ROOT_CERTIFICATES:    list[bytes] = []
ENABLE_ONLINE_CHECKS: bool        = False

@dataclasses.dataclass
class AppleTransactionInfo:
    transaction_id:          str              = ''
    original_transaction_id: str              = ''
    bundle_id:               str              = ''
    product_id:              str              = ''
    type:                    AppleType | None = None
    purchase_unix_ts_ms:     int | None       = None
    expires_unix_ts_ms:      int | None       = None
    revocation_unix_ts_ms:   int | None       = None
    revocation_reason:       int | None       = None
    offer_type:              int | None       = None
    app_account_token:       str | None       = None
    environment:             str | None       = None
    signed_unix_ts_ms:       int              = 0

@dataclasses.dataclass
class AppleRenewalInfo:
    original_transaction_id:         str        = ''
    product_id:                      str | None = None
    auto_renew_product_id:           str | None = None
    auto_renew_status:               int | None = None
    grace_period_expires_unix_ts_ms: int | None = None
    is_in_billing_retry_period:      bool       = False
    offer_type:                      int | None = None
    environment:                     str | None = None

@dataclasses.dataclass
class AppleDecodedNotification:
    notification_type:     AppleNotificationV2 | None = None
    raw_notification_type: str                        = ''
    subtype:               AppleSubtype | None        = None
    raw_subtype:           str | None                 = None
    notification_uuid:     str                        = ''
    signed_unix_ts_ms:     int                        = 0
    bundle_id:             str                        = ''
    app_apple_id:          int | None                 = None
    environment:           str | None                 = None
    tx_info:               AppleTransactionInfo | None = None
    renewal_info:          AppleRenewalInfo | None     = None

class _SignedKind(enum.Enum):
    Notification = 0
    Transaction  = 1
    RenewalInfo  = 2

def b64url_decode(segment: str) -> bytes:
    padding = '=' * (-len(segment) % 4)
    result  = base64.urlsafe_b64decode(segment + padding)
    return result

def decode_jws_payload(jws: str, label: str, err: base.ErrorSink) -> base.JSONObject | None:
    '''Decode the JSON payload (middle segment) of a compact JWS without verifying it'''
    parts = jws.split('.')
    if len(parts) != 3:
        err.msg_list.append(f'{label} is not a JWS, expected 3 dot separated segments, got {len(parts)}')
        return None

    try:
        result = json.loads(b64url_decode(parts[1]))
    except (binascii.Error, ValueError) as e:
        err.msg_list.append(f'{label} JWS payload is not base64url encoded JSON: {e}')
        return None

    if not isinstance(result, dict):
        err.msg_list.append(f'{label} JWS payload is not a JSON object: {base.safe_dump_arbitrary_value_or_type(result)}')
        return None
    return typing.cast(base.JSONObject, result)

def make_verifier(app: backend.AppRow, environment: AppleEnvironment) -> AppleSignedDataVerifier:
    # NOTE: The verifier checks the bundle ID, environment and, in production, the app's Apple ID
    # that the payload claims in addition to the certificate chain.
    result = AppleSignedDataVerifier(root_certificates    = ROOT_CERTIFICATES,
                                     enable_online_checks = ENABLE_ONLINE_CHECKS,
                                     environment          = environment,
                                     bundle_id            = app.bundle_id,
                                     app_apple_id         = app.apple_app_apple_id)
    return result

def _verify(verifier: AppleSignedDataVerifier | None, jws: str, kind: _SignedKind, label: str, err: base.ErrorSink):
    if verifier is None:
        return
    try:
        match kind:
            case _SignedKind.Notification:
                _ = verifier.verify_and_decode_notification(jws)
            case _SignedKind.Transaction:
                _ = verifier.verify_and_decode_signed_transaction(jws)
            case _SignedKind.RenewalInfo:
                _ = verifier.verify_and_decode_renewal_info(jws)
    except AppleVerificationException as e:
        err.msg_list.append(f'{label} failed signature verification: {e.status.name}')

def _coerce_enum(my_enum: typing.Any, value: str | int | None) -> typing.Any:
    # NOTE: Apple adds notification types and subtypes over time, unknown values are kept raw
    result = None
    if value is not None:
        try:
            result = my_enum(value)
        except ValueError:
            result = None
    return result

def parse_transaction_info(payload: base.JSONObject, err: base.ErrorSink) -> AppleTransactionInfo:
    result                         = AppleTransactionInfo()
    result.transaction_id          = base.json_dict_require_str(payload, 'transactionId', err)
    result.original_transaction_id = base.json_dict_require_str(payload, 'originalTransactionId', err)
    result.product_id              = base.json_dict_require_str(payload, 'productId', err)
    result.bundle_id               = base.json_dict_optional_str(payload, 'bundleId', err) or ''
    result.type                    = _coerce_enum(AppleType, base.json_dict_optional_str(payload, 'type', err))
    result.purchase_unix_ts_ms     = base.json_dict_optional_int(payload, 'purchaseDate', err)
    result.expires_unix_ts_ms      = base.json_dict_optional_int(payload, 'expiresDate', err)
    result.revocation_unix_ts_ms   = base.json_dict_optional_int(payload, 'revocationDate', err)
    result.revocation_reason       = base.json_dict_optional_int(payload, 'revocationReason', err)
    result.offer_type              = base.json_dict_optional_int(payload, 'offerType', err)
    result.app_account_token       = base.json_dict_optional_str(payload, 'appAccountToken', err)
    result.environment             = base.json_dict_optional_str(payload, 'environment', err)
    result.signed_unix_ts_ms       = base.json_dict_optional_int(payload, 'signedDate', err) or 0
    return result

def parse_renewal_info(payload: base.JSONObject, err: base.ErrorSink) -> AppleRenewalInfo:
    result                                 = AppleRenewalInfo()
    result.original_transaction_id         = base.json_dict_require_str(payload, 'originalTransactionId', err)
    result.product_id                      = base.json_dict_optional_str(payload, 'productId', err)
    result.auto_renew_product_id           = base.json_dict_optional_str(payload, 'autoRenewProductId', err)
    result.auto_renew_status               = base.json_dict_optional_int(payload, 'autoRenewStatus', err)
    result.grace_period_expires_unix_ts_ms = base.json_dict_optional_int(payload, 'gracePeriodExpiresDate', err)
    result.is_in_billing_retry_period      = base.json_dict_optional_bool(payload, 'isInBillingRetryPeriod', False, err)
    result.offer_type                      = base.json_dict_optional_int(payload, 'offerType', err)
    result.environment                     = base.json_dict_optional_str(payload, 'environment', err)
    return result

def decode_signed_transaction(jws: str, verifier: AppleSignedDataVerifier | None, err: base.ErrorSink) -> AppleTransactionInfo | None:
    payload = decode_jws_payload(jws, 'signedTransactionInfo', err)
    if payload is None:
        return None
    _verify(verifier, jws, _SignedKind.Transaction, 'signedTransactionInfo', err)
    result = parse_transaction_info(payload, err)
    return None if err.has() else result

def decode_signed_renewal_info(jws: str, verifier: AppleSignedDataVerifier | None, err: base.ErrorSink) -> AppleRenewalInfo | None:
    payload = decode_jws_payload(jws, 'signedRenewalInfo', err)
    if payload is None:
        return None
    _verify(verifier, jws, _SignedKind.RenewalInfo, 'signedRenewalInfo', err)
    result = parse_renewal_info(payload, err)
    return None if err.has() else result

def _verifier_for(app: backend.AppRow, environment: str | None, err: base.ErrorSink) -> AppleSignedDataVerifier | None:
    result: AppleSignedDataVerifier | None = None
    if len(ROOT_CERTIFICATES) == 0:
        return result

    apple_env = platform_apple_api.environment_from_str(environment, err)
    if err.has():
        return result

    try:
        result = make_verifier(app, apple_env)
    except ValueError as e:
        # NOTE: The library refuses to verify production payloads without the app's Apple ID
        err.msg_list.append(f'Unable to verify {apple_env.value} notification for app {app.id}: {e}')
    return result

def decode_signed_payload(app: backend.AppRow, signed_payload: str, err: base.ErrorSink) -> base.StoreNotification | None:
    '''
    Decode the `signedPayload` of an Apple notification into a normalised notification. Returns
    None and fills `err` if the envelope is malformed or fails verification. A bundle ID that
    does not match the App is not an envelope error, it is left for the caller to reject so it can
    be reported as an integrity error. Verification is skipped in that case since the verifier would
    reject the bundle ID first.
    '''
    payload = decode_jws_payload(signed_payload, 'signedPayload', err)
    if payload is None:
        return None

    result = notification_from_payload(payload, '', err)
    if result is None:
        return None

    if result.identifier == app.bundle_id:
        verifier = _verifier_for(app, result.environment, err)
        if verifier is not None:
            _verify(verifier, signed_payload, _SignedKind.Notification, 'signedPayload', err)
            data = base.json_dict_optional_obj(payload, 'data', err) or {}
            for key, kind in (('signedTransactionInfo', _SignedKind.Transaction), ('signedRenewalInfo', _SignedKind.RenewalInfo)):
                jws = data.get(key)
                if isinstance(jws, str):
                    _verify(verifier, jws, kind, key, err)

    return None if err.has() else result

def event_type_label(notification_type: str, subtype: str | None) -> str:
    result = f'{notification_type}.{subtype}' if subtype else notification_type
    return result

def notification_from_payload(payload: base.JSONObject, event_id: str, err: base.ErrorSink) -> base.StoreNotification | None:
    '''
    Build the normalised notification from the decoded (outer) JWS payload. This is also the form
    the payload is stored in on the event log so a logged event can be rebuilt from it for replay.
    '''
    detail                       = AppleDecodedNotification()
    detail.raw_notification_type = base.json_dict_require_str(payload, 'notificationType', err)
    detail.raw_subtype           = base.json_dict_optional_str(payload, 'subtype', err)
    detail.notification_uuid     = base.json_dict_optional_str(payload, 'notificationUUID', err) or ''
    detail.signed_unix_ts_ms     = base.json_dict_optional_int(payload, 'signedDate', err) or 0
    detail.notification_type     = _coerce_enum(AppleNotificationV2, detail.raw_notification_type)
    detail.subtype               = _coerce_enum(AppleSubtype, detail.raw_subtype)

    # NOTE: Summary notifications (RENEWAL_EXTENSION with a SUMMARY subtype) carry a `summary`
    # object instead of `data`.
    data    = base.json_dict_optional_obj(payload, 'data', err)
    summary = base.json_dict_optional_obj(payload, 'summary', err)
    if data is None and summary is None:
        err.msg_list.append(f'Apple notification {detail.raw_notification_type} has neither data nor summary')

    if err.has():
        return None

    source = data if data is not None else summary
    assert source is not None
    detail.bundle_id    = base.json_dict_optional_str(source, 'bundleId', err) or ''
    detail.app_apple_id = base.json_dict_optional_int(source, 'appAppleId', err)
    detail.environment  = base.json_dict_optional_str(source, 'environment', err)

    if data is not None:
        signed_tx = base.json_dict_optional_str(data, 'signedTransactionInfo', err)
        if signed_tx is not None:
            detail.tx_info = decode_signed_transaction(signed_tx, None, err)

        signed_renewal = base.json_dict_optional_str(data, 'signedRenewalInfo', err)
        if signed_renewal is not None:
            detail.renewal_info = decode_signed_renewal_info(signed_renewal, None, err)

    if err.has():
        return None

    # NOTE: Without a UUID the event is identified by its content so redeliveries still deduplicate
    if not event_id:
        event_id = detail.notification_uuid
    if not event_id:
        event_id = backend.make_payload_event_id(json.dumps(payload, sort_keys=True, separators=(',', ':')).encode())

    result = base.StoreNotification(platform         = base.Platform.iOSAppStore,
                                    event_id         = event_id,
                                    event_type       = event_type_label(detail.raw_notification_type, detail.raw_subtype),
                                    type             = detail.raw_notification_type,
                                    subtype          = detail.raw_subtype,
                                    identifier       = detail.bundle_id,
                                    environment      = detail.environment,
                                    event_unix_ts_ms = detail.signed_unix_ts_ms,
                                    raw_detail       = payload,
                                    detail           = detail)
    if detail.tx_info is not None:
        result.durable_purchase_id   = detail.tx_info.original_transaction_id
        result.vendor_transaction_id = detail.tx_info.transaction_id
        result.product_id            = detail.tx_info.product_id
    elif detail.renewal_info is not None:
        result.durable_purchase_id   = detail.renewal_info.original_transaction_id
        result.product_id            = detail.renewal_info.product_id
    return result

def _product_id_or_none(sql_conn: sqlite3.Connection, app: backend.AppRow, store_product_id: str | None) -> int | None:
    result = None
    if store_product_id:
        product = backend.get_product_by_store_product_id(sql_conn, app.id, base.Platform.iOSAppStore, store_product_id)
        if product:
            result = product.id
        else:
            log.warning(f'Apple product "{store_product_id}" is not configured for app {app.id}')
    return result

def transition_from_notification(sql_conn: sqlite3.Connection,
                                 app:      backend.AppRow,
                                 detail:   AppleDecodedNotification,
                                 row:      backend.SubscriptionRow) -> subscriptions.SubscriptionTransition | None:
    '''
    Map an Apple notification for an auto-renewable subscription onto the shared state machine.
    Returns None for notifications that do not change the subscription.

      https://developer.apple.com/documentation/appstoreservernotifications/notificationtype
    '''
    tx      = detail.tx_info
    renewal = detail.renewal_info
    result  = subscriptions.SubscriptionTransition(event_unix_ts_ms=detail.signed_unix_ts_ms)

    if tx:
        result.transaction_id = tx.transaction_id
        result.environment    = tx.environment
    if renewal and renewal.auto_renew_status is not None:
        result.auto_renew_enabled = renewal.auto_renew_status == 1

    # NOTE: Timestamps and product of the period the transaction paid for
    def take_period():
        assert tx
        result.product_id          = _product_id_or_none(sql_conn, app, tx.product_id)
        result.purchase_unix_ts_ms = tx.purchase_unix_ts_ms
        result.expires_unix_ts_ms  = tx.expires_unix_ts_ms

    match detail.notification_type:
        case AppleNotificationV2.SUBSCRIBED:
            # NOTE: INITIAL_BUY or RESUBSCRIBE, both start a new paid (or offer) period
            if not tx:
                return None
            result.event           = subscriptions.SubscriptionEvent.Purchased
            result.offer_type      = tx.offer_type if tx.offer_type is not None else 0
            result.record_purchase = True
            take_period()

        case AppleNotificationV2.DID_RENEW:
            # NOTE: A BILLING_RECOVERY subtype is a renewal that succeeded after billing retry
            if not tx:
                return None
            result.event           = subscriptions.SubscriptionEvent.Renewed
            result.record_purchase = True
            take_period()

        case AppleNotificationV2.DID_CHANGE_RENEWAL_PREF:
            if detail.subtype == AppleSubtype.UPGRADE:
                # NOTE: Upgrades take effect immediately and start a new billing period
                if not tx:
                    return None
                result.event           = subscriptions.SubscriptionEvent.Upgraded
                result.record_purchase = True
                take_period()
            elif detail.subtype == AppleSubtype.DOWNGRADE:
                # NOTE: Downgrades take effect at the next renewal, the product the subscription
                # will renew into is in the renewal info.
                pending = _product_id_or_none(sql_conn, app, renewal.auto_renew_product_id if renewal else None)
                if pending is None:
                    return None
                result.event              = subscriptions.SubscriptionEvent.Downgraded
                result.pending_product_id = pending
            else:
                # NOTE: No subtype, the customer went back to their current plan which cancels a
                # scheduled downgrade.
                result.event              = subscriptions.SubscriptionEvent.Downgraded
                result.pending_product_id = row.product_id

        case AppleNotificationV2.DID_CHANGE_RENEWAL_STATUS:
            if detail.subtype == AppleSubtype.AUTO_RENEW_DISABLED:
                result.event               = subscriptions.SubscriptionEvent.AutoRenewDisabled
                result.cancellation_reason = 'auto_renew_disabled'
            else:
                result.event = subscriptions.SubscriptionEvent.AutoRenewEnabled

        case AppleNotificationV2.DID_FAIL_TO_RENEW:
            # NOTE: With a GRACE_PERIOD subtype the customer keeps access until the renewal info's
            # grace period expiry, otherwise the subscription is in billing retry without access.
            result.event = subscriptions.SubscriptionEvent.BillingFailed
            if detail.subtype == AppleSubtype.GRACE_PERIOD and renewal and renewal.grace_period_expires_unix_ts_ms is not None:
                result.grace_period_expires_unix_ts_ms = renewal.grace_period_expires_unix_ts_ms

        case AppleNotificationV2.GRACE_PERIOD_EXPIRED:
            result.event = subscriptions.SubscriptionEvent.GracePeriodExpired

        case AppleNotificationV2.EXPIRED:
            # NOTE: Subtypes VOLUNTARY, BILLING_RETRY, PRICE_INCREASE and PRODUCT_NOT_FOR_SALE only
            # say why, the outcome is the same.
            result.event = subscriptions.SubscriptionEvent.Expired
            if tx and tx.expires_unix_ts_ms is not None:
                result.expires_unix_ts_ms = tx.expires_unix_ts_ms

        case AppleNotificationV2.REFUND:
            result.event               = subscriptions.SubscriptionEvent.Revoked
            result.cancellation_reason = 'refund'
            if tx and tx.revocation_unix_ts_ms is not None:
                result.canceled_unix_ts_ms = tx.revocation_unix_ts_ms

        case AppleNotificationV2.REVOKE:
            # NOTE: Family Sharing access revoked after the purchaser lost it
            result.event               = subscriptions.SubscriptionEvent.Revoked
            result.cancellation_reason = detail.raw_subtype.lower() if detail.raw_subtype else 'revoked'
            if tx and tx.revocation_unix_ts_ms is not None:
                result.canceled_unix_ts_ms = tx.revocation_unix_ts_ms

        case AppleNotificationV2.REFUND_REVERSED:
            result.event = subscriptions.SubscriptionEvent.RefundReversed
            if tx and tx.expires_unix_ts_ms is not None:
                result.expires_unix_ts_ms = tx.expires_unix_ts_ms

        case AppleNotificationV2.OFFER_REDEEMED:
            if not tx:
                return None
            result.event      = subscriptions.SubscriptionEvent.OfferRedeemed
            result.offer_type = tx.offer_type
            take_period()

        case AppleNotificationV2.RENEWAL_EXTENDED:
            if not tx or tx.expires_unix_ts_ms is None:
                return None
            result.event              = subscriptions.SubscriptionEvent.Extended
            result.expires_unix_ts_ms = tx.expires_unix_ts_ms

        case _:
            # NOTE: PRICE_INCREASE, REFUND_DECLINED, CONSUMPTION_REQUEST, RENEWAL_EXTENSION summaries
            # and types this code predates do not change the lifecycle of the subscription.
            return None

    return result

def apply_status_refetch(transition:  subscriptions.SubscriptionTransition,
                         app:         backend.AppRow,
                         credentials: platform_apple_api.AppleCredentials,
                         sql_conn:    sqlite3.Connection,
                         original_transaction_id: str):
    '''
    Overwrite the transition with the lineage's current state according to Apple (Get All
    Subscription Statuses) and mark it authoritative. Raises `base.StoreAPIError` if Apple cannot be
    reached. If Apple does not know the lineage the transition is left as is.
    '''
    statuses = platform_apple_api.fetch_subscription_statuses(credentials, original_transaction_id)
    item     = platform_apple_api.find_last_transaction(statuses, original_transaction_id)
    if item is None or item.status is None:
        log.warning(f'Apple returned no status for lineage {base.obfuscate(original_transaction_id)}, applying the notification as is')
        return

    err      = base.ErrorSink()
    verifier = _verifier_for(app, credentials.environment.value, err)
    tx       = decode_signed_transaction(item.signedTransactionInfo, verifier, err) if item.signedTransactionInfo else None
    renewal  = decode_signed_renewal_info(item.signedRenewalInfo, verifier, err) if item.signedRenewalInfo else None
    if err.has():
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'Apple status response for lineage {base.obfuscate(original_transaction_id)} is invalid: {err.build()}', transient=False)

    match item.status:
        case AppleStatus.ACTIVE:
            transition.status = base.SubscriptionStatus.Active
        case AppleStatus.EXPIRED:
            transition.status = base.SubscriptionStatus.Expired
        case AppleStatus.BILLING_RETRY:
            transition.status = base.SubscriptionStatus.InBillingRetry
        case AppleStatus.BILLING_GRACE_PERIOD:
            transition.status = base.SubscriptionStatus.InGracePeriod
        case AppleStatus.REVOKED:
            transition.status = base.SubscriptionStatus.Revoked

    # NOTE: The status endpoint can lag a refund, the revocation takes precedence
    if transition.event == subscriptions.SubscriptionEvent.Revoked:
        transition.status = base.SubscriptionStatus.Revoked

    transition.authoritative = True
    if tx:
        transition.transaction_id      = tx.transaction_id
        transition.purchase_unix_ts_ms = tx.purchase_unix_ts_ms
        transition.expires_unix_ts_ms  = tx.expires_unix_ts_ms
        product_id                     = _product_id_or_none(sql_conn, app, tx.product_id)
        if product_id is not None:
            transition.product_id = product_id
    if renewal:
        if renewal.auto_renew_status is not None:
            transition.auto_renew_enabled = renewal.auto_renew_status == 1
        if renewal.grace_period_expires_unix_ts_ms is not None:
            transition.grace_period_expires_unix_ts_ms = renewal.grace_period_expires_unix_ts_ms

def _process_one_time_charge(sql_conn: sqlite3.Connection, app: backend.AppRow, detail: AppleDecodedNotification, unix_ts_ms: int):
    # NOTE: Consumables, non-consumables and non-renewing subscriptions. The purchase is attributed
    # to the subscriber through the appAccountToken the client set at purchase time, which is the
    # app user ID.
    tx = detail.tx_info
    if tx is None:
        log.warning(f'Apple {detail.raw_notification_type} notification without a transaction, ignoring')
        return

    subscriber = backend.get_subscriber_by_app_user_id(sql_conn, app.id, tx.app_account_token) if tx.app_account_token else None
    if subscriber is None:
        log.info(f'Apple one-time purchase {base.obfuscate(tx.transaction_id)} for an unknown subscriber, ignoring')
        return

    product = backend.get_product_by_store_product_id(sql_conn, app.id, base.Platform.iOSAppStore, tx.product_id)
    if product is None:
        log.warning(f'Apple one-time purchase {base.obfuscate(tx.transaction_id)} is for unconfigured product "{tx.product_id}", ignoring')
        return

    purchase = backend.PurchaseRow(subscriber_id           = subscriber.id,
                                   app_id                  = app.id,
                                   product_id              = product.id,
                                   platform                = base.Platform.iOSAppStore,
                                   store_transaction_id    = tx.transaction_id,
                                   original_transaction_id = tx.original_transaction_id,
                                   purchase_unix_ts_ms     = tx.purchase_unix_ts_ms if tx.purchase_unix_ts_ms is not None else detail.signed_unix_ts_ms,
                                   expires_unix_ts_ms      = tx.expires_unix_ts_ms,
                                   environment             = tx.environment)
    _ = entitlements.record_purchase(sql_conn, purchase, unix_ts_ms)

def _process_one_time_revocation(sql_conn: sqlite3.Connection, detail: AppleDecodedNotification, unix_ts_ms: int):
    tx = detail.tx_info
    assert tx is not None
    if detail.notification_type == AppleNotificationV2.REFUND_REVERSED:
        revoked_unix_ts_ms = None
        reason             = None
    else:
        revoked_unix_ts_ms = tx.revocation_unix_ts_ms if tx.revocation_unix_ts_ms is not None else detail.signed_unix_ts_ms
        reason             = 'refund' if detail.notification_type == AppleNotificationV2.REFUND else 'revoked'

    purchase = entitlements.set_purchase_revocation(sql_conn, base.Platform.iOSAppStore, tx.transaction_id, revoked_unix_ts_ms, reason, unix_ts_ms)
    if purchase is None:
        log.info(f'Apple {detail.raw_notification_type} for unknown purchase {base.obfuscate(tx.transaction_id)}, ignoring')

def process_notification(sql_conn: sqlite3.Connection, app: backend.AppRow, notification: base.StoreNotification, unix_ts_ms: int):
    '''
    Apply a decoded Apple notification. Referential misses (unknown lineage, subscriber or
    product) are logged and return normally, store API failures raise `base.StoreAPIError`.
    '''
    detail = notification.detail
    assert isinstance(detail, AppleDecodedNotification)

    if detail.notification_type == AppleNotificationV2.TEST:
        log.info(f'Apple test notification received for app {app.id} ({detail.environment})')
        return

    if detail.notification_type is None:
        log.warning(f'Unrecognised Apple notification type {notification.event_type}, ignoring')
        return

    tx = detail.tx_info
    is_one_time = tx is not None and tx.type is not None and tx.type != AppleType.AUTO_RENEWABLE_SUBSCRIPTION
    if detail.notification_type == AppleNotificationV2.ONE_TIME_CHARGE:
        _process_one_time_charge(sql_conn, app, detail, unix_ts_ms)
        return

    if is_one_time and detail.notification_type in (AppleNotificationV2.REFUND, AppleNotificationV2.REVOKE, AppleNotificationV2.REFUND_REVERSED):
        _process_one_time_revocation(sql_conn, detail, unix_ts_ms)
        return

    if not notification.durable_purchase_id:
        log.info(f'Apple {notification.event_type} notification does not reference a subscription, nothing to do')
        return

    original_transaction_id = notification.durable_purchase_id
    credentials             = platform_apple_api.credentials_from_app(app)

    def build(row: backend.SubscriptionRow) -> subscriptions.SubscriptionTransition | None:
        result = transition_from_notification(sql_conn, app, detail, row)
        if result is not None and credentials is not None:
            apply_status_refetch(result, app, credentials, sql_conn, original_transaction_id)
        return result

    reconciled = subscriptions.reconcile_subscription(sql_conn, base.Platform.iOSAppStore, original_transaction_id, build, unix_ts_ms)
    if reconciled.status == subscriptions.ReconcileStatus.Unchanged and log.getEffectiveLevel() <= logging.INFO:
        log.info(f'Apple {notification.event_type} does not change lineage {base.obfuscate(original_transaction_id)}')
