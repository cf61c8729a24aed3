'''
Type definitions for the Google Play Real-time Developer Notifications and the parts of the
Android Publisher API responses we consume
'''

import dataclasses
import typing
from enum import IntEnum, StrEnum

import typing_extensions

from google.protobuf.timestamp_pb2 import Timestamp

import base

# RFC 3339, where generated output will always be Z-normalized and use 0, 3, 6 or 9 fractional
# digits. Offsets other than "Z" are also accepted. Examples: "2014-10-02T15:01:23Z",
# "2014-10-02T15:01:23.045123456Z" or "2014-10-02T15:01:23+05:30".
class GoogleTimestamp:
    rfc3339:           str
    unix_milliseconds: int

    def __init__(self, rfc3339_timestamp: str, err: base.ErrorSink):
        self.rfc3339           = rfc3339_timestamp
        self.unix_milliseconds = 0
        timestamp              = Timestamp()
        try:
            timestamp.FromJsonString(rfc3339_timestamp)
            self.unix_milliseconds = timestamp.ToMilliseconds()
        except ValueError as e:
            err.msg_list.append(f'Failed to parse timestamp "{rfc3339_timestamp}": {e}')

    @typing_extensions.override
    def __repr__(self):
        return f"GoogleTimestamp('{self.rfc3339}', unix_ms={self.unix_milliseconds})"

class SubscriptionNotificationType(IntEnum):
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    RECOVERED                     = 1 # Recovered from account hold.
    RENEWED                       = 2 # Active subscription was renewed.
    CANCELED                      = 3 # Subscription was in/voluntarily cancelled. It is voluntary if the user cancels.
    PURCHASED                     = 4 # New subscription was purchased.
    ON_HOLD                       = 5 # Subscription has entered account hold (if enabled).
    IN_GRACE_PERIOD               = 6 # Subscription has entered grace period (if enabled).
    # User has restored their subscription from Play > Account > Subscriptions. The subscription was
    # canceled but had not expired yet when the user restores.
    RESTARTED                     = 7
    PRICE_CHANGE_CONFIRMED        = 8  # @deprecated Subscription price change has successfully been confirmed by the user.
    DEFERRED                      = 9  # Subscription's recurrence time has been extended.
    PAUSED                        = 10 # Subscription has been paused.
    PAUSE_SCHEDULE_CHANGED        = 11 # Subscription pause schedule has been changed.
    REVOKED                       = 12 # Subscription has been revoked from the user before the expiration time.
    EXPIRED                       = 13 # Subscription has expired.
    PRICE_CHANGE_UPDATED          = 19 # Subscription item's price change details are updated.
    PENDING_PURCHASE_CANCELED     = 20 # Pending transaction of a subscription has been canceled.
    PRICE_STEP_UP_CONSENT_UPDATED = 22 # Consent period for a price step-up began or the user consented.

class OneTimeProductNotificationType(IntEnum):
    NIL                       = 0
    ONE_TIME_PRODUCT_PURCHASED = 1 # A one-time product was successfully purchased by a user.
    ONE_TIME_PRODUCT_CANCELED  = 2 # A pending one-time product purchase has been canceled by the user.

class VoidedProductType(IntEnum): # Product types for voided purchases
    NIL          = 0 # Sentinel value, never used except for zero-initialised objects
    SUBSCRIPTION = 1 # A subscription purchase has been voided.
    ONE_TIME     = 2 # A one-time purchase has been voided.

class RefundType(IntEnum): # Refund types for voided purchases
    NIL                           = 0 # Sentinel value, never used except for zero-initialised objects
    FULL_REFUND                   = 1
    # The purchase has been partially voided by a quantity-based partial refund, applicable only to
    # multi-quantity purchases. A purchase can be partially voided multiple times.
    QUANTITY_BASED_PARTIAL_REFUND = 2

class SubscriptionsV2State(StrEnum):
    """Subscriptions V2 subscription state types"""
    UNSPECIFIED = "SUBSCRIPTION_STATE_UNSPECIFIED"

    # Subscription was created but awaiting payment during signup. In this state, all items are
    # awaiting payment.
    PENDING = "SUBSCRIPTION_STATE_PENDING"

    # - (1) If the subscription is an auto renewing plan, at least one item is autoRenewEnabled and
    #   not expired.
    # - (2) If the subscription is a prepaid plan, at least one item is not expired.
    ACTIVE = "SUBSCRIPTION_STATE_ACTIVE"

    # The state is only available when the subscription is an auto renewing plan, all items are in a
    # paused state.
    PAUSED = "SUBSCRIPTION_STATE_PAUSED"

    # The state is only available when the subscription is an auto renewing plan, all items are in
    # a grace period.
    IN_GRACE_PERIOD = "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"

    # The state is only available when the subscription is an auto renewing plan, all items are on
    # hold.
    ON_HOLD = "SUBSCRIPTION_STATE_ON_HOLD"

    # Subscription is canceled but not expired yet. The state is only available when the
    # subscription is an auto renewing plan, all items have autoRenewEnabled set to false.
    CANCELED = "SUBSCRIPTION_STATE_CANCELED"

    # All items have expiryTime in the past.
    EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"

    # Pending transaction for subscription is canceled. If this pending purchase was for an existing
    # subscription, use linkedPurchaseToken to get the current state of that subscription.
    PENDING_PURCHASE_CANCELED = "SUBSCRIPTION_STATE_PENDING_PURCHASE_CANCELED"

class SubscriptionsV2AcknowledgementState(StrEnum):
    UNSPECIFIED  = "ACKNOWLEDGEMENT_STATE_UNSPECIFIED"
    PENDING      = "ACKNOWLEDGEMENT_STATE_PENDING"
    ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"

class ProductPurchaseState(IntEnum): # purchases.products purchaseState
    PURCHASED = 0
    CANCELED  = 1
    PENDING   = 2

@dataclasses.dataclass
class SubscriptionsV2CanceledState:
    """Only one of the fields will be set at a time"""
    user_initiated_cancellation:      bool = False # Subscription was canceled by user.
    system_initiated_cancellation:    bool = False # Canceled by the system, for example because of a billing problem.
    developer_initiated_cancellation: bool = False # Canceled by the developer.
    replacement_cancellation:         bool = False # Replaced by a new subscription.
    user_cancel_unix_ts_ms:           int | None = None

    def reason(self) -> str:
        result = 'canceled'
        if self.user_initiated_cancellation:
            result = 'user_canceled'
        elif self.system_initiated_cancellation:
            result = 'system_canceled'
        elif self.developer_initiated_cancellation:
            result = 'developer_canceled'
        elif self.replacement_cancellation:
            result = 'replaced'
        return result

@dataclasses.dataclass
class SubscriptionV2DataLineItem:
    # The purchased product ID (for example, 'monthly001').
    product_id:                 str                    = ''

    # Timestamp of when the subscription will expire/renew
    expiry_time:                GoogleTimestamp | None = None

    # Purchase order ID, it is not set if the item is not owned by the user yet (e.g. the item being
    # deferred/replaced to).
    latest_successful_order_id: str | None             = None

    # Only set for auto-renewing plans, prepaid plans never renew
    auto_renew_enabled:         bool | None            = None

@dataclasses.dataclass
class SubscriptionV2Data:
    """Status of a user's subscription purchase."""
    # This kind represents a SubscriptionPurchaseV2 object in the androidpublisher service.
    kind: str = ''

    # Item-level info for a subscription purchase. The items in the same purchase should be either
    # all with AutoRenewingPlan or all with PrepaidPlan.
    line_items: list[SubscriptionV2DataLineItem] = dataclasses.field(default_factory=list)

    # Time at which the subscription was granted. Not set for pending subscriptions (subscription
    # was created but awaiting payment during signup).
    start_time:             GoogleTimestamp | None = None
    subscription_state:     SubscriptionsV2State   = SubscriptionsV2State.UNSPECIFIED
    latest_order_id:        str | None             = None

    # The purchase token of the old subscription if this subscription is a re-signup, an
    # upgrade/downgrade or a conversion between prepaid and auto renewing.
    linked_purchase_token:  str | None = None

    # Set if `subscription_state` is `SUBSCRIPTION_STATE_PAUSED`
    auto_resume_unix_ts_ms: int | None = None

    # Set if `subscription_state` is `SUBSCRIPTION_STATE_CANCELED` or `SUBSCRIPTION_STATE_EXPIRED`.
    canceled_state_context: SubscriptionsV2CanceledState | None = None

    test_purchase:          bool = False
    acknowledgement_state:  SubscriptionsV2AcknowledgementState = SubscriptionsV2AcknowledgementState.UNSPECIFIED

@dataclasses.dataclass
class ProductPurchaseData:
    """purchases.products resource, only the fields we use"""
    order_id:                       str                  = ''
    purchase_unix_ts_ms:            int                  = 0
    purchase_state:                 ProductPurchaseState = ProductPurchaseState.PURCHASED
    consumed:                       bool                 = False
    acknowledged:                   bool                 = False
    quantity:                       int                  = 1
    obfuscated_external_account_id: str | None           = None

# NOTE: The four mutually exclusive payloads of a developer notification. Exactly one is present
# in every notification Google sends.
@dataclasses.dataclass
class GoogleSubscriptionEvent:
    version:           str                          = ''
    notification_type: SubscriptionNotificationType = SubscriptionNotificationType.NIL
    purchase_token:    str                          = ''
    subscription_id:   str | None                   = None # Deprecated by Google, product is in subscriptionsv2 line items

@dataclasses.dataclass
class GoogleOneTimeProductEvent:
    version:           str                            = ''
    notification_type: OneTimeProductNotificationType = OneTimeProductNotificationType.NIL
    purchase_token:    str                            = ''
    sku:               str                            = ''

@dataclasses.dataclass
class GoogleVoidedPurchaseEvent:
    purchase_token: str               = ''
    order_id:       str               = ''
    product_type:   VoidedProductType = VoidedProductType.NIL
    refund_type:    RefundType        = RefundType.NIL

@dataclasses.dataclass
class GoogleTestEvent:
    version: str = ''

GoogleNotificationEvent: typing.TypeAlias = GoogleSubscriptionEvent | GoogleOneTimeProductEvent | GoogleVoidedPurchaseEvent | GoogleTestEvent

@dataclasses.dataclass
class GoogleDeveloperNotification:
    version:          str                     = ''
    package_name:     str                     = ''
    event_unix_ts_ms: int                     = 0
    event:            GoogleNotificationEvent = dataclasses.field(default_factory=GoogleTestEvent)

def json_dict_optional_google_timestamp(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> GoogleTimestamp | None:
    result = None
    timestamp_str = base.json_dict_optional_str(d, key, err)
    if timestamp_str is not None:
        result = GoogleTimestamp(timestamp_str, err)
    return result

def json_dict_optional_google_empty_object_bool(d: dict[str, base.JSONValue], key: str, err: base.ErrorSink) -> bool:
    result = False
    if key in d:
        if isinstance(d[key], dict):
            result = True
        else:
            err.msg_list.append(f'Key "{key}" value was not an object: "{base.safe_get_dict_value_type(d, key)}"')
    return result
