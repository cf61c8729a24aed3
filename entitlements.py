'''
Entitlement derivation. The entitlements of a subscriber are recomputed from scratch out of all of
the subscriber's subscriptions and one-time purchases and the product -> entitlement links, then
written over the previous set in the same transaction. Nothing here patches a single entitlement
row in place.
'''
import dataclasses
import logging
import sqlite3

import backend
import base

log = logging.Logger('ENTITLEMENTS')

@dataclasses.dataclass
class Grant:
    '''One subscription or purchase that currently grants access to the entitlements of its product'''
    product_id:         int        = 0
    subscription_id:    int | None = None
    purchase_id:        int | None = None
    expires_unix_ts_ms: int | None = None

@dataclasses.dataclass
class ExpireLapsedResult:
    subscriptions: int = 0
    subscribers:   int = 0

def effective_expiry_unix_ts_ms(row: backend.SubscriptionRow) -> int | None:
    result = row.expires_unix_ts_ms
    if row.status == base.SubscriptionStatus.InGracePeriod and row.grace_period_expires_unix_ts_ms is not None:
        if result is None or row.grace_period_expires_unix_ts_ms > result:
            result = row.grace_period_expires_unix_ts_ms
    return result

def _expiry_is_later(lhs: int | None, rhs: int | None) -> bool:
    # NOTE: No expiry outlasts any expiry
    if rhs is None:
        return False
    if lhs is None:
        return True
    return lhs > rhs

def collect_grants_tx(tx: base.SQLTransaction, subscriber_id: int, unix_ts_ms: int, access_statuses: frozenset[base.SubscriptionStatus]) -> list[Grant]:
    result: list[Grant] = []
    for it in backend.get_subscriptions_for_subscriber_tx(tx, subscriber_id):
        if it.status not in access_statuses:
            continue
        expiry = effective_expiry_unix_ts_ms(it)
        if expiry is not None and expiry <= unix_ts_ms:
            continue
        result.append(Grant(product_id=it.product_id, subscription_id=it.id, expires_unix_ts_ms=expiry))

    for it in backend.get_purchases_for_subscriber_tx(tx, subscriber_id):
        if it.revoked_unix_ts_ms is not None:
            continue
        match it.product_type:
            case base.ProductType.NonConsumable:
                result.append(Grant(product_id=it.product_id, purchase_id=it.id, expires_unix_ts_ms=None))
            case base.ProductType.NonRenewingSubscription:
                if it.expires_unix_ts_ms is not None and it.expires_unix_ts_ms > unix_ts_ms:
                    result.append(Grant(product_id=it.product_id, purchase_id=it.id, expires_unix_ts_ms=it.expires_unix_ts_ms))
            case base.ProductType.Consumable | base.ProductType.AutoRenewableSubscription:
                # NOTE: Consumables grant no lasting access and auto-renewing transactions are
                # history, access for those comes from the subscription row of the lineage.
                pass
    return result

def derive_entitlements_tx(tx:              base.SQLTransaction,
                           subscriber_id:   int,
                           unix_ts_ms:      int,
                           access_statuses: frozenset[base.SubscriptionStatus] | None = None) -> list[backend.SubscriberEntitlementRow]:
    statuses                       = access_statuses if access_statuses is not None else base.ACCESS_GRANTING_STATUSES
    grants                         = collect_grants_tx(tx, subscriber_id, unix_ts_ms, statuses)
    product_entitlements           = backend.get_entitlement_ids_for_products_tx(tx, (it.product_id for it in grants))
    best_grant: dict[int, Grant]   = {}
    for grant in grants:
        for entitlement_id in product_entitlements.get(grant.product_id, []):
            current = best_grant.get(entitlement_id)
            if current is None or _expiry_is_later(grant.expires_unix_ts_ms, current.expires_unix_ts_ms):
                best_grant[entitlement_id] = grant

    result: list[backend.SubscriberEntitlementRow] = []
    for entitlement_id in sorted(best_grant):
        grant = best_grant[entitlement_id]
        result.append(backend.SubscriberEntitlementRow(subscriber_id      = subscriber_id,
                                                       entitlement_id     = entitlement_id,
                                                       product_id         = grant.product_id,
                                                       subscription_id    = grant.subscription_id,
                                                       purchase_id        = grant.purchase_id,
                                                       expires_unix_ts_ms = grant.expires_unix_ts_ms,
                                                       updated_unix_ts_ms = unix_ts_ms))
    return result

def refresh_entitlements_tx(tx:              base.SQLTransaction,
                            subscriber_id:   int,
                            unix_ts_ms:      int,
                            access_statuses: frozenset[base.SubscriptionStatus] | None = None) -> list[backend.SubscriberEntitlementRow]:
    '''
    Replace the subscriber's materialised entitlement set with a freshly derived one. The caller
    must hold the subscriber's lock in `base.SUBSCRIBER_LOCKS` and own a write transaction so that
    the delete and reinsert are observed atomically.
    '''
    result = derive_entitlements_tx(tx, subscriber_id, unix_ts_ms, access_statuses)
    backend.replace_subscriber_entitlements_tx(tx, subscriber_id, result)
    if log.getEffectiveLevel() <= logging.INFO:
        labels = ', '.join(f'{it.entitlement_id} (expiry={base.readable_unix_ts_ms(it.expires_unix_ts_ms)})' for it in result)
        log.info(f'Refreshed entitlements for subscriber {subscriber_id}: [{labels}]')
    return result

def refresh_entitlements(sql_conn: sqlite3.Connection, subscriber_id: int, unix_ts_ms: int) -> list[backend.SubscriberEntitlementRow]:
    with base.KeyedLock(base.SUBSCRIBER_LOCKS, subscriber_id):
        with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
            result = refresh_entitlements_tx(tx, subscriber_id, unix_ts_ms)
    return result

def get_active_entitlements(sql_conn: sqlite3.Connection, subscriber_id: int, unix_ts_ms: int) -> list[backend.SubscriberEntitlementRow]:
    with base.SQLTransaction(sql_conn) as tx:
        result = backend.get_subscriber_entitlements_tx(tx, subscriber_id, unix_ts_ms)
    return result

def expire_lapsed_subscriptions(sql_conn: sqlite3.Connection, unix_ts_ms: int) -> ExpireLapsedResult:
    '''
    Lifecycle sweep for subscriptions whose period ran out without the store telling us. Each
    lapsed subscription is moved to expired under its own lock and its subscriber's entitlements
    are rederived in the same transaction.
    '''
    result = ExpireLapsedResult()
    with base.SQLTransaction(sql_conn) as tx:
        lapsed = backend.get_lapsed_subscriptions_tx(tx, unix_ts_ms)

    subscribers: set[int] = set()
    for candidate in lapsed:
        with base.KeyedLock(base.SUBSCRIPTION_LOCKS, (candidate.platform, candidate.original_transaction_id)):
            with base.KeyedLock(base.SUBSCRIBER_LOCKS, candidate.subscriber_id):
                with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
                    # NOTE: Re-read, a notification may have renewed the subscription since the scan
                    row = backend.get_subscription_tx(tx, candidate.platform, candidate.original_transaction_id)
                    if row is None or row.status not in (base.SubscriptionStatus.Active, base.SubscriptionStatus.InGracePeriod):
                        continue
                    expiry = effective_expiry_unix_ts_ms(row)
                    if expiry is None or expiry > unix_ts_ms:
                        continue

                    row.status                          = base.SubscriptionStatus.Expired
                    row.grace_period_expires_unix_ts_ms = None
                    row.updated_unix_ts_ms              = unix_ts_ms
                    backend.update_subscription_tx(tx, row)
                    refresh_entitlements_tx(tx, row.subscriber_id, unix_ts_ms)
                    result.subscriptions += 1
                    subscribers.add(row.subscriber_id)

    result.subscribers = len(subscribers)
    if result.subscriptions and log.getEffectiveLevel() <= logging.INFO:
        log.info(f'Expired {result.subscriptions} lapsed subscription(s) across {result.subscribers} subscriber(s) (ts={base.readable_unix_ts_ms(unix_ts_ms)})')
    return result

def record_purchase(sql_conn: sqlite3.Connection, purchase: backend.PurchaseRow, unix_ts_ms: int) -> bool:
    '''
    Append a one-time purchase to the subscriber's history and rederive their entitlements.
    Returns false if the store transaction was already recorded, in which case nothing changes.
    '''
    with base.KeyedLock(base.SUBSCRIBER_LOCKS, purchase.subscriber_id):
        with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
            result = backend.add_purchase_tx(tx, purchase)
            if result:
                _ = refresh_entitlements_tx(tx, purchase.subscriber_id, unix_ts_ms)
    return result

def set_purchase_revocation(sql_conn:             sqlite3.Connection,
                            platform:             base.Platform,
                            store_transaction_id: str,
                            revoked_unix_ts_ms:   int | None,
                            reason:               str | None,
                            unix_ts_ms:           int) -> backend.PurchaseRow | None:
    '''
    Revoke (refund, void) a one-time purchase or, when `revoked_unix_ts_ms` is None, undo the
    revocation. The purchase row itself is never modified. Returns the purchase or None if the
    store transaction is unknown.
    '''
    purchase = backend.get_purchase_by_store_transaction_id(sql_conn, platform, store_transaction_id)
    if purchase is None:
        return None

    with base.KeyedLock(base.SUBSCRIBER_LOCKS, purchase.subscriber_id):
        with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
            if backend.set_purchase_revocation_tx(tx, purchase.id, revoked_unix_ts_ms, reason):
                _ = refresh_entitlements_tx(tx, purchase.subscriber_id, unix_ts_ms)
            result = backend.get_purchase_by_store_transaction_id_tx(tx, platform, store_transaction_id)

    if log.getEffectiveLevel() <= logging.INFO:
        action = 'Revoked' if revoked_unix_ts_ms is not None else 'Restored'
        log.info(f'{action} {platform.name} purchase {base.obfuscate(store_transaction_id)} of subscriber {purchase.subscriber_id} (reason={reason})')
    return result
