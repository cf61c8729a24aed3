'''
Subscription state machine shared by both stores.

Each store maps its notifications onto a `SubscriptionEvent` and packs the fields it learnt from the
notification (or from refetching the subscription from the store) into a `SubscriptionTransition`.
`apply_transition` is a pure function producing the next row from the current row and the
transition, `reconcile_subscription` is the serialised read-modify-write that applies it to the DB
and rederives the subscriber's entitlements in the same transaction.

Ordering

Every transition carries the store timestamp of the event it was derived from. A transition that
is older than the last event applied to the row (a delayed redelivery or out-of-order push) is not
allowed to regress the row: a revocation still applies in full, anything else can only push the
expiry later. Transitions marked authoritative come from querying the store for the subscription's
current state and always apply.
'''
import collections.abc
import dataclasses
import enum
import logging
import sqlite3

import backend
import base
import entitlements

log = logging.Logger('SUBS')

class SubscriptionEvent(enum.Enum):
    Nil                = 0
    Purchased          = 1
    Renewed            = 2
    Upgraded           = 3  # Plan change that takes effect immediately
    Downgraded         = 4  # Plan change that takes effect at the next renewal
    AutoRenewDisabled  = 5
    AutoRenewEnabled   = 6
    BillingFailed      = 7  # Grace period if the transition has a grace expiry, billing retry otherwise
    GracePeriodExpired = 8
    Expired            = 9
    Revoked            = 10 # Refund, chargeback or revocation by the store or developer
    RefundReversed     = 11
    Paused             = 12
    Resumed            = 13
    OfferRedeemed      = 14
    Canceled           = 15
    Extended           = 16 # Store granted extra time on the current period
    Refreshed          = 17 # No lifecycle change, only the fields of the transition are applied

class ReconcileStatus(enum.Enum):
    Nil       = 0
    Missing   = 1 # No subscription row for the durable purchase ID yet
    Unchanged = 2 # Nothing to apply
    Applied   = 3

@dataclasses.dataclass
class SubscriptionTransition:
    '''
    Partial update of a subscription row. Fields left as None are not touched, the only exception
    being the grace period expiry which is cleared whenever the resulting status is not
    `in_grace_period`.
    '''
    event:                           SubscriptionEvent              = SubscriptionEvent.Nil
    event_unix_ts_ms:                int                            = 0
    authoritative:                   bool                           = False

    # NOTE: Status the store reports the subscription to be in, applied after the event
    status:                          base.SubscriptionStatus | None = None

    product_id:                      int | None                     = None
    pending_product_id:              int | None                     = None
    purchase_unix_ts_ms:             int | None                     = None
    expires_unix_ts_ms:              int | None                     = None
    grace_period_expires_unix_ts_ms: int | None                     = None
    auto_renew_enabled:              bool | None                    = None
    is_trial_period:                 bool | None                    = None
    is_in_intro_offer_period:        bool | None                    = None
    offer_type:                      int | None                     = None
    canceled_unix_ts_ms:             int | None                     = None
    cancellation_reason:             str | None                     = None
    transaction_id:                  str | None                     = None
    environment:                     str | None                     = None

    # NOTE: Append the transaction to the purchase history when applied
    record_purchase:                 bool                           = False

@dataclasses.dataclass
class ReconcileResult:
    status:       ReconcileStatus                       = ReconcileStatus.Nil
    subscription: backend.SubscriptionRow | None        = None
    entitlements: list[backend.SubscriberEntitlementRow] = dataclasses.field(default_factory=list)

TransitionBuilder = collections.abc.Callable[[backend.SubscriptionRow], SubscriptionTransition | None]

def transition_label(t: SubscriptionTransition) -> str:
    result = f'{t.event.name} (ts={base.readable_unix_ts_ms(t.event_unix_ts_ms)}'
    if t.authoritative:
        result += ', authoritative'
    if t.status is not None:
        result += f', status={t.status}'
    if t.expires_unix_ts_ms is not None:
        result += f', expiry={base.readable_unix_ts_ms(t.expires_unix_ts_ms)}'
    result += ')'
    return result

def _apply_revocation(row: backend.SubscriptionRow, t: SubscriptionTransition):
    row.status              = base.SubscriptionStatus.Revoked
    row.auto_renew_enabled  = False
    row.canceled_unix_ts_ms = t.canceled_unix_ts_ms if t.canceled_unix_ts_ms is not None else t.event_unix_ts_ms
    row.cancellation_reason = t.cancellation_reason if t.cancellation_reason else 'revoked'

def _apply_event(row: backend.SubscriptionRow, t: SubscriptionTransition):
    match t.event:
        case SubscriptionEvent.Nil | SubscriptionEvent.Refreshed:
            if t.product_id is not None:
                row.product_id = t.product_id

        case SubscriptionEvent.Purchased | SubscriptionEvent.Renewed:
            row.status              = base.SubscriptionStatus.Active
            row.canceled_unix_ts_ms = None
            row.cancellation_reason = None
            if t.event == SubscriptionEvent.Renewed:
                row.is_trial_period          = False
                row.is_in_intro_offer_period = False
                if row.pending_product_id is not None:
                    row.product_id         = row.pending_product_id
                    row.pending_product_id = None
            elif t.offer_type is not None:
                row.is_trial_period          = t.offer_type == 1
                row.is_in_intro_offer_period = t.offer_type == 2
            if t.product_id is not None:
                row.product_id = t.product_id
                if row.pending_product_id == t.product_id:
                    row.pending_product_id = None

        case SubscriptionEvent.Upgraded:
            row.status             = base.SubscriptionStatus.Active
            row.pending_product_id = None
            if t.product_id is not None:
                row.product_id = t.product_id

        case SubscriptionEvent.Downgraded:
            pending = t.pending_product_id if t.pending_product_id is not None else t.product_id
            # NOTE: Changing back to the current plan cancels a scheduled downgrade
            row.pending_product_id = None if pending == row.product_id else pending

        case SubscriptionEvent.AutoRenewDisabled:
            row.auto_renew_enabled  = False
            row.canceled_unix_ts_ms = t.canceled_unix_ts_ms if t.canceled_unix_ts_ms is not None else t.event_unix_ts_ms
            if t.cancellation_reason:
                row.cancellation_reason = t.cancellation_reason

        case SubscriptionEvent.AutoRenewEnabled:
            row.auto_renew_enabled  = True
            row.canceled_unix_ts_ms = None
            row.cancellation_reason = None

        case SubscriptionEvent.BillingFailed:
            if t.grace_period_expires_unix_ts_ms is not None:
                row.status = base.SubscriptionStatus.InGracePeriod
            else:
                row.status = base.SubscriptionStatus.InBillingRetry

        case SubscriptionEvent.GracePeriodExpired:
            row.status = base.SubscriptionStatus.InBillingRetry

        case SubscriptionEvent.Expired:
            row.status = base.SubscriptionStatus.Expired

        case SubscriptionEvent.Revoked:
            _apply_revocation(row, t)

        case SubscriptionEvent.RefundReversed:
            expiry = t.expires_unix_ts_ms if t.expires_unix_ts_ms is not None else row.expires_unix_ts_ms
            if expiry is None or expiry > t.event_unix_ts_ms:
                row.status = base.SubscriptionStatus.Active
            else:
                row.status = base.SubscriptionStatus.Expired
            row.canceled_unix_ts_ms = None
            row.cancellation_reason = None

        case SubscriptionEvent.Paused:
            row.status = base.SubscriptionStatus.Paused

        case SubscriptionEvent.Resumed:
            row.status = row.pre_pause_status if row.pre_pause_status else base.SubscriptionStatus.Active

        case SubscriptionEvent.OfferRedeemed:
            row.status = base.SubscriptionStatus.Active
            if t.product_id is not None:
                row.product_id = t.product_id
            if t.offer_type is not None:
                row.is_trial_period          = t.offer_type == 1
                row.is_in_intro_offer_period = t.offer_type == 2

        case SubscriptionEvent.Canceled:
            row.auto_renew_enabled  = False
            row.canceled_unix_ts_ms = t.canceled_unix_ts_ms if t.canceled_unix_ts_ms is not None else t.event_unix_ts_ms
            if t.cancellation_reason:
                row.cancellation_reason = t.cancellation_reason

        case SubscriptionEvent.Extended:
            pass

def _apply_fields(row: backend.SubscriptionRow, t: SubscriptionTransition):
    if t.purchase_unix_ts_ms is not None:
        row.purchase_unix_ts_ms = t.purchase_unix_ts_ms
    if t.expires_unix_ts_ms is not None:
        row.expires_unix_ts_ms = t.expires_unix_ts_ms
    if t.grace_period_expires_unix_ts_ms is not None:
        row.grace_period_expires_unix_ts_ms = t.grace_period_expires_unix_ts_ms
    if t.auto_renew_enabled is not None:
        row.auto_renew_enabled = t.auto_renew_enabled
    if t.is_trial_period is not None:
        row.is_trial_period = t.is_trial_period
    if t.is_in_intro_offer_period is not None:
        row.is_in_intro_offer_period = t.is_in_intro_offer_period
    if t.transaction_id is not None:
        row.latest_transaction_id = t.transaction_id
    if t.environment is not None:
        row.environment = t.environment

def apply_transition(row: backend.SubscriptionRow, t: SubscriptionTransition) -> backend.SubscriptionRow:
    result = dataclasses.replace(row)
    stale  = t.event_unix_ts_ms < row.last_event_unix_ts_ms

    if stale and not t.authoritative:
        if t.event == SubscriptionEvent.Revoked:
            _apply_revocation(result, t)
            result.grace_period_expires_unix_ts_ms = None
        elif t.expires_unix_ts_ms is not None and (result.expires_unix_ts_ms is None or t.expires_unix_ts_ms > result.expires_unix_ts_ms):
            result.expires_unix_ts_ms = t.expires_unix_ts_ms
        return result

    # NOTE: An authoritative transition built from a stale notification still carries the store's
    # current state, apply that but skip the lifecycle change the old notification implied.
    if not stale:
        _apply_event(result, t)
    _apply_fields(result, t)

    if t.status is not None:
        result.status = t.status
        if t.status == base.SubscriptionStatus.Revoked and not result.cancellation_reason:
            result.cancellation_reason = t.cancellation_reason if t.cancellation_reason else 'revoked'

    if result.status == base.SubscriptionStatus.Paused:
        if row.status != base.SubscriptionStatus.Paused:
            result.pre_pause_status = row.status
    else:
        result.pre_pause_status = None

    if result.status != base.SubscriptionStatus.InGracePeriod:
        result.grace_period_expires_unix_ts_ms = None

    result.last_event_unix_ts_ms = max(row.last_event_unix_ts_ms, t.event_unix_ts_ms)
    return result

def reconcile_subscription(sql_conn:                sqlite3.Connection,
                           platform:                base.Platform,
                           original_transaction_id: str,
                           build:                   TransitionBuilder,
                           unix_ts_ms:              int) -> ReconcileResult:
    '''
    Serialised read-modify-write of the subscription identified by (platform,
    original_transaction_id).

    `build` receives the current row and returns the transition to apply, or None if there is
    nothing to do. It is invoked with the subscription's lock held but outside of any DB
    transaction so that it may query the store's API for the authoritative state of the
    subscription. Exceptions raised by `build` propagate to the caller with nothing written.

    The transition is then applied to a fresh read of the row, persisted, optionally appended to
    the purchase history and the subscriber's entitlements are rederived, all in one write
    transaction.
    '''
    result = ReconcileResult()
    with base.KeyedLock(base.SUBSCRIPTION_LOCKS, (platform, original_transaction_id)):
        row = backend.get_subscription(sql_conn, platform, original_transaction_id)
        if row is None:
            # NOTE: Subscriptions are created by the client purchase flow, a notification for a
            # lineage we have not seen yet has nothing to update.
            log.info(f'No subscription for {platform.name} lineage {base.obfuscate(original_transaction_id)}, ignoring')
            result.status = ReconcileStatus.Missing
            return result

        transition = build(row)
        if transition is None:
            result.status       = ReconcileStatus.Unchanged
            result.subscription = row
            return result

        with base.KeyedLock(base.SUBSCRIBER_LOCKS, row.subscriber_id):
            with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
                current = backend.get_subscription_tx(tx, platform, original_transaction_id)
                assert current is not None, "Subscriptions are never deleted"

                updated                    = apply_transition(current, transition)
                updated.updated_unix_ts_ms = unix_ts_ms
                backend.update_subscription_tx(tx, updated)

                if transition.record_purchase and transition.transaction_id:
                    purchase = backend.PurchaseRow(subscriber_id           = updated.subscriber_id,
                                                   app_id                  = updated.app_id,
                                                   product_id              = transition.product_id if transition.product_id is not None else updated.product_id,
                                                   platform                = platform,
                                                   store_transaction_id    = transition.transaction_id,
                                                   original_transaction_id = original_transaction_id,
                                                   purchase_unix_ts_ms     = transition.purchase_unix_ts_ms if transition.purchase_unix_ts_ms is not None else transition.event_unix_ts_ms,
                                                   expires_unix_ts_ms      = transition.expires_unix_ts_ms,
                                                   environment             = updated.environment)
                    _ = backend.add_purchase_tx(tx, purchase)

                result.entitlements = entitlements.refresh_entitlements_tx(tx, updated.subscriber_id, unix_ts_ms)
                result.subscription = updated
                result.status       = ReconcileStatus.Applied

    if log.getEffectiveLevel() <= logging.INFO:
        assert result.subscription is not None
        log.info(f'Applied {transition_label(transition)} to {platform.name} lineage {base.obfuscate(original_transaction_id)}: {row.status} -> {result.subscription.status}')
    return result
