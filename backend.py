'''
Persistence layer. Owns the SQLite schema and every query the rest of the project runs against
it. Functions suffixed with `_tx` run inside a caller provided `base.SQLTransaction`, the unsuffixed
variants open their own transaction.

Tables
  apps                    - Integration target, per-store credentials and webhook routing secrets
  products                - Store product id -> internal product, scoped to an app and a store
  entitlements            - Named feature access flags of an app
  product_entitlements    - Many-to-many link between products and entitlements
  subscribers             - End user of an app, identified by the app supplied user id
  subscriptions           - One row per (platform, durable purchase id) subscription lineage
  purchases               - Append-only history of completed transactions
  purchase_revocations    - Refunds/voids recorded against a purchase without mutating it
  subscriber_entitlements - Materialised entitlement set of a subscriber, replaced as a whole
  webhook_events          - Log of every inbound store notification, keyed by (app, event id)
'''

import traceback
import sqlite3
import hashlib
import os
import typing
import collections.abc
import dataclasses
import logging
import enum

import base

BLAKE2B_DIGEST_SIZE = 32
log                 = logging.Logger("BACKEND")

@dataclasses.dataclass
class SQLField:
    name: str = ''
    type: str = ''

SQL_TABLE_SUBSCRIPTIONS_FIELD: list[SQLField] = [
  SQLField('subscriber_id',                   'INTEGER NOT NULL'),
  SQLField('app_id',                          'INTEGER NOT NULL'),
  SQLField('platform',                        'INTEGER NOT NULL'), # Enum cooresponding to `base.Platform`

  # Identifier that stays constant across every renewal of the subscription. For Apple this is the
  # original transaction ID, for Google this is the purchase token.
  SQLField('original_transaction_id',         'TEXT NOT NULL'),

  SQLField('product_id',                      'INTEGER NOT NULL'), # Product the subscriber is currently entitled to

  # Product that takes effect at the next renewal, set by a downgrade. The current product is left
  # untouched until a renewal promotes this product into `product_id`.
  SQLField('pending_product_id',              'INTEGER'),
  SQLField('status',                          'TEXT NOT NULL'),    # Enum cooresponding to `base.SubscriptionStatus`
  SQLField('purchase_unix_ts_ms',             'INTEGER'),
  SQLField('expires_unix_ts_ms',              'INTEGER'),

  # Set whilst the subscription is in a billing grace period, access is preserved until this
  # timestamp even though `expires_unix_ts_ms` has elapsed.
  SQLField('grace_period_expires_unix_ts_ms', 'INTEGER'),
  SQLField('auto_renew_enabled',              'INTEGER NOT NULL'),
  SQLField('is_trial_period',                 'INTEGER NOT NULL'),
  SQLField('is_in_intro_offer_period',        'INTEGER NOT NULL'),

  # Timestamp the user turned off auto-renewal or the store canceled the subscription. The current
  # period stays valid until it expires.
  SQLField('canceled_unix_ts_ms',             'INTEGER'),
  SQLField('cancellation_reason',             'TEXT'),
  SQLField('latest_transaction_id',           'TEXT'),
  SQLField('environment',                     'TEXT'),

  # Signed timestamp of the newest store event applied to this row. Stale events that are older than
  # this are not allowed to regress the state of the subscription.
  SQLField('last_event_unix_ts_ms',           'INTEGER NOT NULL'),

  # Status to restore to when a paused subscription is resumed
  SQLField('pre_pause_status',                'TEXT'),
  SQLField('updated_unix_ts_ms',              'INTEGER NOT NULL'),
]

SQLTableSubscriptionRowTuple: typing.TypeAlias = tuple[int,        # id
                                                       int,        # subscriber_id
                                                       int,        # app_id
                                                       int,        # platform
                                                       str,        # original_transaction_id
                                                       int,        # product_id
                                                       int | None, # pending_product_id
                                                       str,        # status
                                                       int | None, # purchase_unix_ts_ms
                                                       int | None, # expires_unix_ts_ms
                                                       int | None, # grace_period_expires_unix_ts_ms
                                                       int,        # auto_renew_enabled
                                                       int,        # is_trial_period
                                                       int,        # is_in_intro_offer_period
                                                       int | None, # canceled_unix_ts_ms
                                                       str | None, # cancellation_reason
                                                       str | None, # latest_transaction_id
                                                       str | None, # environment
                                                       int,        # last_event_unix_ts_ms
                                                       str | None, # pre_pause_status
                                                       int,        # updated_unix_ts_ms
                                                      ]

SQL_TABLE_PURCHASES_FIELD: list[SQLField] = [
  SQLField('subscriber_id',           'INTEGER NOT NULL'),
  SQLField('app_id',                  'INTEGER NOT NULL'),
  SQLField('product_id',              'INTEGER NOT NULL'),
  SQLField('platform',                'INTEGER NOT NULL'),
  SQLField('store_transaction_id',    'TEXT NOT NULL'),    # Apple transaction ID or Google order ID
  SQLField('original_transaction_id', 'TEXT'),             # Lineage the transaction renewed, if any
  SQLField('purchase_unix_ts_ms',     'INTEGER NOT NULL'),
  SQLField('expires_unix_ts_ms',      'INTEGER'),          # Set for subscription transactions
  SQLField('environment',             'TEXT'),
  SQLField('status',                  'TEXT NOT NULL'),
]

PurchaseRowTuple:             typing.TypeAlias = tuple[int,        # id
                                                       int,        # subscriber_id
                                                       int,        # app_id
                                                       int,        # product_id
                                                       int,        # platform
                                                       str,        # store_transaction_id
                                                       str | None, # original_transaction_id
                                                       int,        # purchase_unix_ts_ms
                                                       int | None, # expires_unix_ts_ms
                                                       str | None, # environment
                                                       str,        # status
                                                       str,        # (products) type
                                                       int | None, # (purchase_revocations) revoked_unix_ts_ms
                                                      ]

AppRowTuple:                  typing.TypeAlias = tuple[int,        # id
                                                       str,        # name
                                                       str | None, # bundle_id
                                                       str | None, # package_name
                                                       str,        # apple_routing_secret
                                                       str,        # google_routing_secret
                                                       str | None, # apple_key_id
                                                       str | None, # apple_issuer_id
                                                       str | None, # apple_private_key
                                                       int | None, # apple_app_apple_id
                                                       str,        # apple_environment
                                                       str | None, # google_service_account
                                                      ]

WebhookEventRowTuple:         typing.TypeAlias = tuple[int,        # id
                                                       int,        # app_id
                                                       int,        # platform
                                                       str,        # event_type
                                                       str,        # event_id
                                                       str,        # payload
                                                       int,        # received_unix_ts_ms
                                                       int | None, # processed_unix_ts_ms
                                                       str | None, # error
                                                       int,        # retry_count
                                                      ]

PURCHASE_STATUS_COMPLETED = 'completed'

@dataclasses.dataclass
class AppRow:
    id:                     int        = 0
    name:                   str        = ''
    bundle_id:              str | None = None # Apple bundle ID the app's notifications must carry
    package_name:           str | None = None # Google package name the app's notifications must carry
    apple_routing_secret:   str        = ''
    google_routing_secret:  str        = ''
    apple_key_id:           str | None = None
    apple_issuer_id:        str | None = None
    apple_private_key:      str | None = None # PKCS#8 PEM of the App Store Connect API key
    apple_app_apple_id:     int | None = None
    apple_environment:      str        = 'Production'
    google_service_account: str | None = None # JSON service account key file contents

@dataclasses.dataclass
class ProductRow:
    id:               int               = 0
    app_id:           int               = 0
    identifier:       str               = ''
    store_product_id: str               = ''
    platform:         base.Platform     = base.Platform.Nil
    type:             base.ProductType  = base.ProductType.AutoRenewableSubscription
    period:           str | None        = None # ISO 8601 duration, e.g. P1M
    trial_period:     str | None        = None

@dataclasses.dataclass
class EntitlementRow:
    id:           int = 0
    app_id:       int = 0
    identifier:   str = ''
    display_name: str = ''

@dataclasses.dataclass
class SubscriberRow:
    id:                 int = 0
    app_id:             int = 0
    app_user_id:        str = ''
    created_unix_ts_ms: int = 0

@dataclasses.dataclass
class SubscriptionRow:
    id:                              int                     = 0
    subscriber_id:                   int                     = 0
    app_id:                          int                     = 0
    platform:                        base.Platform           = base.Platform.Nil
    original_transaction_id:         str                     = ''
    product_id:                      int                     = 0
    pending_product_id:              int | None              = None
    status:                          base.SubscriptionStatus = base.SubscriptionStatus.Active
    purchase_unix_ts_ms:             int | None              = None
    expires_unix_ts_ms:              int | None              = None
    grace_period_expires_unix_ts_ms: int | None              = None
    auto_renew_enabled:              bool                    = True
    is_trial_period:                 bool                    = False
    is_in_intro_offer_period:        bool                    = False
    canceled_unix_ts_ms:             int | None              = None
    cancellation_reason:             str | None              = None
    latest_transaction_id:           str | None              = None
    environment:                     str | None              = None
    last_event_unix_ts_ms:           int                     = 0
    pre_pause_status:                base.SubscriptionStatus | None = None
    updated_unix_ts_ms:              int                     = 0

@dataclasses.dataclass
class PurchaseRow:
    id:                      int              = 0
    subscriber_id:           int              = 0
    app_id:                  int              = 0
    product_id:              int              = 0
    platform:                base.Platform    = base.Platform.Nil
    store_transaction_id:    str              = ''
    original_transaction_id: str | None       = None
    purchase_unix_ts_ms:     int              = 0
    expires_unix_ts_ms:      int | None       = None
    environment:             str | None       = None
    status:                  str              = PURCHASE_STATUS_COMPLETED

    # NOTE: Joined in on reads, not columns of the purchases table
    product_type:            base.ProductType = base.ProductType.NonConsumable
    revoked_unix_ts_ms:      int | None       = None

@dataclasses.dataclass
class SubscriberEntitlementRow:
    subscriber_id:          int        = 0
    entitlement_id:         int        = 0
    entitlement_identifier: str        = '' # Joined in on reads
    product_id:             int | None = None
    subscription_id:        int | None = None
    purchase_id:            int | None = None
    expires_unix_ts_ms:     int | None = None # None means the grant does not expire
    updated_unix_ts_ms:     int        = 0

@dataclasses.dataclass
class WebhookEventRow:
    id:                   int           = 0
    app_id:               int           = 0
    platform:             base.Platform = base.Platform.Nil
    event_type:           str           = ''
    event_id:             str           = ''
    payload:              str           = ''
    received_unix_ts_ms:  int           = 0
    processed_unix_ts_ms: int | None    = None
    error:                str | None    = None
    retry_count:          int           = 0

class LogWebhookEventStatus(enum.Enum):
    Nil                  = 0
    Inserted             = 1 # First delivery of the event
    DuplicateProcessed   = 2 # Redelivery of an event that was already processed, nothing to do
    DuplicateUnprocessed = 3 # Redelivery of an event that previously failed, process it again

@dataclasses.dataclass
class LogWebhookEvent:
    status: LogWebhookEventStatus = LogWebhookEventStatus.Nil
    event:  WebhookEventRow       = dataclasses.field(default_factory=WebhookEventRow)

@dataclasses.dataclass
class SetupDBResult:
    """
    Class is returned by backend.setup_db() which opens the DB and maintains a connection to the DB
    via `sql_conn`. Caller must close `sql_conn` if they wish to release the connection from the DB.

    The connection is returned instead of being closed because the tests use a transient in-memory
    DB which is wiped as soon as the last connection to it is closed.
    """
    path:     str                       = ''
    success:  bool                      = False
    sql_conn: sqlite3.Connection | None = None

@dataclasses.dataclass
class OpenDBAtPath:
    """
    Open a pre-existing DB at the specified path. This class should be used in a `with` context to
    ensure that the connection established to the database is closed on scope exit, e.g.:

    with OpenDBAtPath(...) as db:
        # Use db.sql_conn =
        pass
    """

    sql_conn: sqlite3.Connection
    def __init__(self, db_path: str, uri: bool = False):
        # NOTE: Connections are handed between the request thread and the pull/maintenance threads,
        # each thread only ever uses the connection it opened itself.
        self.sql_conn = sqlite3.connect(db_path, uri=uri, timeout=30, check_same_thread=False)

    def __enter__(self):
        return self

    def __exit__(self,
                 exc_type:  object | None,
                 exc_value: object | None,
                 traceback: traceback.TracebackException | None):
        self.sql_conn.close()
        return False

def string_from_sql_fields(fields: list[SQLField], schema: bool) -> str:
    result = ''
    if schema:
        result = ',\n'.join([f'{it.name} {it.type}' for it in fields]) # Create '<field0> <type0>,\n<field1> <type1>, ...'
    else:
        result = ', '.join([it.name for it in fields])  # Create '<field0>, <field1>, ...'
    return result

def make_blake2b_hasher(salt: bytes | None = None) -> hashlib.blake2b:
    personalization = b'StoreSyncEventID'
    final_salt      = salt  if salt else b''
    result          = hashlib.blake2b(digest_size=BLAKE2B_DIGEST_SIZE, person=personalization, salt=final_salt)
    return result

def make_payload_event_id(payload: bytes) -> str:
    '''Derive a stable event ID for notifications that arrive without a store assigned one'''
    hasher = make_blake2b_hasher()
    hasher.update(payload)
    result = hasher.hexdigest()
    return result

def make_routing_secret() -> str:
    result = os.urandom(24).hex()
    return result

def _app_row_from_tuple(row: AppRowTuple) -> AppRow:
    result                        = AppRow()
    result.id                     = row[0]
    result.name                   = row[1]
    result.bundle_id              = row[2]
    result.package_name           = row[3]
    result.apple_routing_secret   = row[4]
    result.google_routing_secret  = row[5]
    result.apple_key_id           = row[6]
    result.apple_issuer_id        = row[7]
    result.apple_private_key      = row[8]
    result.apple_app_apple_id     = row[9]
    result.apple_environment      = row[10]
    result.google_service_account = row[11]
    return result

def _product_row_from_tuple(row: tuple[int, int, str, str, int, str, str | None, str | None]) -> ProductRow:
    result                  = ProductRow()
    result.id               = row[0]
    result.app_id           = row[1]
    result.identifier       = row[2]
    result.store_product_id = row[3]
    result.platform         = base.Platform(row[4])
    result.type             = base.ProductType(row[5])
    result.period           = row[6]
    result.trial_period     = row[7]
    return result

def subscription_row_from_tuple(row: SQLTableSubscriptionRowTuple) -> SubscriptionRow:
    result                                 = SubscriptionRow()
    result.id                              = row[0]
    result.subscriber_id                   = row[1]
    result.app_id                          = row[2]
    result.platform                        = base.Platform(row[3])
    result.original_transaction_id         = row[4]
    result.product_id                      = row[5]
    result.pending_product_id              = row[6]
    result.status                          = base.SubscriptionStatus(row[7])
    result.purchase_unix_ts_ms             = row[8]
    result.expires_unix_ts_ms              = row[9]
    result.grace_period_expires_unix_ts_ms = row[10]
    result.auto_renew_enabled              = bool(row[11])
    result.is_trial_period                 = bool(row[12])
    result.is_in_intro_offer_period        = bool(row[13])
    result.canceled_unix_ts_ms             = row[14]
    result.cancellation_reason             = row[15]
    result.latest_transaction_id           = row[16]
    result.environment                     = row[17]
    result.last_event_unix_ts_ms           = row[18]
    result.pre_pause_status                = base.SubscriptionStatus(row[19]) if row[19] else None
    result.updated_unix_ts_ms              = row[20]
    return result

def _purchase_row_from_tuple(row: PurchaseRowTuple) -> PurchaseRow:
    result                         = PurchaseRow()
    result.id                      = row[0]
    result.subscriber_id           = row[1]
    result.app_id                  = row[2]
    result.product_id              = row[3]
    result.platform                = base.Platform(row[4])
    result.store_transaction_id    = row[5]
    result.original_transaction_id = row[6]
    result.purchase_unix_ts_ms     = row[7]
    result.expires_unix_ts_ms      = row[8]
    result.environment             = row[9]
    result.status                  = row[10]
    result.product_type            = base.ProductType(row[11])
    result.revoked_unix_ts_ms      = row[12]
    return result

def _webhook_event_row_from_tuple(row: WebhookEventRowTuple) -> WebhookEventRow:
    result                      = WebhookEventRow()
    result.id                   = row[0]
    result.app_id               = row[1]
    result.platform             = base.Platform(row[2])
    result.event_type           = row[3]
    result.event_id             = row[4]
    result.payload              = row[5]
    result.received_unix_ts_ms  = row[6]
    result.processed_unix_ts_ms = row[7]
    result.error                = row[8]
    result.retry_count          = row[9]
    return result

def db_info_string(sql_conn: sqlite3.Connection, db_path: str, err: base.ErrorSink) -> str:
    apps                    = 0
    products                = 0
    subscribers             = 0
    subscriptions           = 0
    purchases               = 0
    subscriber_entitlements = 0
    webhook_events          = 0
    unprocessed_events      = 0
    db_size                 = 0
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        try:
            _                       = tx.cursor.execute('SELECT COUNT(*) FROM apps')
            apps                    = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM products')
            products                = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM subscribers')
            subscribers             = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM subscriptions')
            subscriptions           = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM purchases')
            purchases               = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM subscriber_entitlements')
            subscriber_entitlements = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM webhook_events')
            webhook_events          = typing.cast(tuple[int], tx.cursor.fetchone())[0]

            _                       = tx.cursor.execute('SELECT COUNT(*) FROM webhook_events WHERE processed_unix_ts_ms IS NULL')
            unprocessed_events      = typing.cast(tuple[int], tx.cursor.fetchone())[0]
        except Exception as e:
            err.msg_list.append(f"Failed to retrieve DB metadata: {e}")

    result = ''
    if len(err.msg_list) == 0:
        if os.path.exists(db_path):
            db_size = os.stat(db_path).st_size
        result = (
            '  DB:                            {} ({} bytes)\n'.format(db_path, db_size) +
            '  Apps/Products/Subscribers:     {}/{}/{}\n'.format(apps, products, subscribers) +
            '  Subscriptions/Purchases:       {}/{}\n'.format(subscriptions, purchases) +
            '  Subscriber Entitlements:       {}\n'.format(subscriber_entitlements) +
            '  Webhook Events (Unprocessed):  {} ({})'.format(webhook_events, unprocessed_events)
        )
    return result

def setup_db(path: str, uri: bool, err: base.ErrorSink) -> SetupDBResult:
    result: SetupDBResult = SetupDBResult()
    result.path           = path
    try:
        result.sql_conn = sqlite3.connect(path, uri=uri, timeout=30, check_same_thread=False)
    except Exception as e:
        err.msg_list.append(f'Failed to open/connect to DB at {path}: {e}')
        return result

    with base.SQLTransaction(result.sql_conn) as tx:
        sql_stmt: str = f'''
            CREATE TABLE IF NOT EXISTS apps (
                id                     INTEGER PRIMARY KEY NOT NULL,
                name                   TEXT NOT NULL,
                bundle_id              TEXT,
                package_name           TEXT,

                -- Unguessable path component of the app's webhook URLs, one per store. Resolving
                -- the app from the secret is what routes a notification to its app.
                apple_routing_secret   TEXT NOT NULL UNIQUE,
                google_routing_secret  TEXT NOT NULL UNIQUE,

                -- App Store Server API credentials. When set, Apple subscription notifications are
                -- reconciled against the status endpoint instead of only the signed notification.
                apple_key_id           TEXT,
                apple_issuer_id        TEXT,
                apple_private_key      TEXT,
                apple_app_apple_id     INTEGER,
                apple_environment      TEXT NOT NULL,

                -- Service account JSON used to query the Google Play Developer API. Google
                -- notifications only carry an opaque purchase token so this must be set for
                -- subscription notifications to be reconciled.
                google_service_account TEXT
            );

            CREATE TABLE IF NOT EXISTS products (
                id               INTEGER PRIMARY KEY NOT NULL,
                app_id           INTEGER NOT NULL,
                identifier       TEXT NOT NULL,
                store_product_id TEXT NOT NULL,
                platform         INTEGER NOT NULL, -- Enum cooresponding to `base.Platform`
                type             TEXT NOT NULL,    -- Enum cooresponding to `base.ProductType`
                period           TEXT,
                trial_period     TEXT,
                UNIQUE(app_id, store_product_id, platform)
            );

            CREATE TABLE IF NOT EXISTS entitlements (
                id           INTEGER PRIMARY KEY NOT NULL,
                app_id       INTEGER NOT NULL,
                identifier   TEXT NOT NULL,
                display_name TEXT NOT NULL,
                UNIQUE(app_id, identifier)
            );

            CREATE TABLE IF NOT EXISTS product_entitlements (
                product_id     INTEGER NOT NULL,
                entitlement_id INTEGER NOT NULL,
                UNIQUE(product_id, entitlement_id)
            );

            CREATE TABLE IF NOT EXISTS subscribers (
                id                 INTEGER PRIMARY KEY NOT NULL,
                app_id             INTEGER NOT NULL,
                app_user_id        TEXT NOT NULL,
                created_unix_ts_ms INTEGER NOT NULL,
                UNIQUE(app_id, app_user_id)
            );

            CREATE TABLE IF NOT EXISTS subscriptions (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=True)},
                UNIQUE(platform, original_transaction_id)
            );

            -- Append-only, rows are never updated after insertion. A store redelivering the same
            -- transaction is ignored by the unique constraint.
            CREATE TABLE IF NOT EXISTS purchases (
                id INTEGER PRIMARY KEY NOT NULL,
                {string_from_sql_fields(fields=SQL_TABLE_PURCHASES_FIELD, schema=True)},
                UNIQUE(platform, store_transaction_id)
            );

            -- Refunds and voids of one-time purchases. Kept out of the purchases table so that the
            -- purchase history stays immutable. A reversed refund deletes the row.
            CREATE TABLE IF NOT EXISTS purchase_revocations (
                purchase_id        INTEGER PRIMARY KEY NOT NULL,
                revoked_unix_ts_ms INTEGER NOT NULL,
                reason             TEXT
            );

            -- Materialised result of the entitlement derivation for a subscriber. The rows for a
            -- subscriber are deleted and reinserted as a whole within one transaction, readers
            -- never observe a set derived from only some of the subscriber's grants.
            CREATE TABLE IF NOT EXISTS subscriber_entitlements (
                subscriber_id      INTEGER NOT NULL,
                entitlement_id     INTEGER NOT NULL,
                product_id         INTEGER,
                subscription_id    INTEGER,
                purchase_id        INTEGER,
                expires_unix_ts_ms INTEGER, -- NULL if the grant does not expire
                updated_unix_ts_ms INTEGER NOT NULL,
                UNIQUE(subscriber_id, entitlement_id)
            );

            -- Every notification that was routed to an app and decoded successfully is logged here
            -- before it is processed. A notification that failed to process keeps a NULL
            -- `processed_unix_ts_ms` and the error so it can be replayed. Store redeliveries of an
            -- event that was already processed are recognised by the unique constraint.
            CREATE TABLE IF NOT EXISTS webhook_events (
                id                   INTEGER PRIMARY KEY NOT NULL,
                app_id               INTEGER NOT NULL,
                platform             INTEGER NOT NULL,
                event_type           TEXT NOT NULL,
                event_id             TEXT NOT NULL,
                payload              TEXT NOT NULL,
                received_unix_ts_ms  INTEGER NOT NULL,
                processed_unix_ts_ms INTEGER,
                error                TEXT,
                retry_count          INTEGER NOT NULL DEFAULT 0,
                UNIQUE(app_id, event_id)
            );

            CREATE INDEX IF NOT EXISTS subscriptions_subscriber_index ON subscriptions(subscriber_id);
            CREATE INDEX IF NOT EXISTS purchases_subscriber_index     ON purchases(subscriber_id);
        '''

        assert tx.cursor is not None

        try:
            # NOTE: Bootstrap tables
            _ = tx.cursor.executescript(sql_stmt)
            _ = tx.cursor.execute('''PRAGMA journal_mode=WAL''')

            # NOTE: Version migration
            target_db_version = 1
            if 1:
                db_version: int = tx.cursor.execute('PRAGMA user_version').fetchone()[0]  # pyright: ignore[reportAny]

                # NOTE: v0 is the nil state, it means the DB has never been bootstrapped. All the
                # tables will have been created with the latest schema so we teleport to the target
                # version
                if db_version == 0:
                    db_version = target_db_version
                    _          = tx.cursor.execute(f'PRAGMA user_version = {db_version}')

                # NOTE: Verify that the DB was migrated to the target version
                assert db_version == target_db_version

            result.success = True
        except Exception:
            err.msg_list.append(f"Failed to bootstrap DB tables: {traceback.format_exc()}")

    if not result.success:
        result.sql_conn.close()
        result.sql_conn = None

    return result

def add_app(sql_conn: sqlite3.Connection, app: AppRow) -> AppRow:
    result = dataclasses.replace(app)
    if not result.apple_routing_secret:
        result.apple_routing_secret = make_routing_secret()
    if not result.google_routing_secret:
        result.google_routing_secret = make_routing_secret()

    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO apps (name, bundle_id, package_name, apple_routing_secret, google_routing_secret,
                              apple_key_id, apple_issuer_id, apple_private_key, apple_app_apple_id,
                              apple_environment, google_service_account)
            VALUES           (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING        id
        ''', (result.name,
              result.bundle_id,
              result.package_name,
              result.apple_routing_secret,
              result.google_routing_secret,
              result.apple_key_id,
              result.apple_issuer_id,
              result.apple_private_key,
              result.apple_app_apple_id,
              result.apple_environment,
              result.google_service_account))
        result.id = typing.cast(tuple[int], tx.cursor.fetchone())[0]

    log.info(f'Added app {result.name} (id={result.id}, bundle={result.bundle_id}, package={result.package_name})')
    return result

_APP_SELECT = '''
    SELECT id, name, bundle_id, package_name, apple_routing_secret, google_routing_secret,
           apple_key_id, apple_issuer_id, apple_private_key, apple_app_apple_id, apple_environment,
           google_service_account
    FROM   apps
'''

def get_app_tx(tx: base.SQLTransaction, app_id: int) -> AppRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'{_APP_SELECT} WHERE id = ?', (app_id,))
    row    = typing.cast(AppRowTuple | None, tx.cursor.fetchone())
    result = _app_row_from_tuple(row) if row else None
    return result

def get_app(sql_conn: sqlite3.Connection, app_id: int) -> AppRow | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_app_tx(tx, app_id)
    return result

def get_app_by_routing_secret(sql_conn: sqlite3.Connection, platform: base.Platform, routing_secret: str) -> AppRow | None:
    column = ''
    match platform:
        case base.Platform.iOSAppStore:
            column = 'apple_routing_secret'
        case base.Platform.GooglePlayStore:
            column = 'google_routing_secret'
        case base.Platform.Nil:
            return None

    result: AppRow | None = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'{_APP_SELECT} WHERE {column} = ?', (routing_secret,))
        row    = typing.cast(AppRowTuple | None, tx.cursor.fetchone())
        result = _app_row_from_tuple(row) if row else None
    return result

def add_product(sql_conn:         sqlite3.Connection,
                app_id:           int,
                identifier:       str,
                store_product_id: str,
                platform:         base.Platform,
                type:             base.ProductType,
                period:           str | None = None,
                trial_period:     str | None = None) -> ProductRow:
    result                  = ProductRow(app_id           = app_id,
                                         identifier       = identifier,
                                         store_product_id = store_product_id,
                                         platform         = platform,
                                         type             = type,
                                         period           = period,
                                         trial_period     = trial_period)
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO products (app_id, identifier, store_product_id, platform, type, period, trial_period)
            VALUES               (?, ?, ?, ?, ?, ?, ?)
            RETURNING            id
        ''', (app_id, identifier, store_product_id, int(platform.value), str(type), period, trial_period))
        result.id = typing.cast(tuple[int], tx.cursor.fetchone())[0]
    return result

_PRODUCT_SELECT = 'SELECT id, app_id, identifier, store_product_id, platform, type, period, trial_period FROM products'

def get_product_by_store_product_id_tx(tx: base.SQLTransaction, app_id: int, platform: base.Platform, store_product_id: str) -> ProductRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'{_PRODUCT_SELECT} WHERE app_id = ? AND platform = ? AND store_product_id = ?',
                               (app_id, int(platform.value), store_product_id))
    row    = tx.cursor.fetchone()
    result = _product_row_from_tuple(row) if row else None
    return result

def get_product_by_store_product_id(sql_conn: sqlite3.Connection, app_id: int, platform: base.Platform, store_product_id: str) -> ProductRow | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_product_by_store_product_id_tx(tx, app_id, platform, store_product_id)
    return result

def add_entitlement(sql_conn: sqlite3.Connection, app_id: int, identifier: str, display_name: str = '') -> EntitlementRow:
    result = EntitlementRow(app_id=app_id, identifier=identifier, display_name=display_name if display_name else identifier)
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO entitlements (app_id, identifier, display_name)
            VALUES                   (?, ?, ?)
            RETURNING                id
        ''', (app_id, identifier, result.display_name))
        result.id = typing.cast(tuple[int], tx.cursor.fetchone())[0]
    return result

def link_product_entitlement(sql_conn: sqlite3.Connection, product_id: int, entitlement_id: int):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT OR IGNORE INTO product_entitlements (product_id, entitlement_id)
            VALUES                                     (?, ?)
        ''', (product_id, entitlement_id))

def get_entitlement_ids_for_products_tx(tx: base.SQLTransaction, product_ids: collections.abc.Iterable[int]) -> dict[int, list[int]]:
    assert tx.cursor is not None
    result: dict[int, list[int]] = {}
    unique_ids                   = sorted(set(product_ids))
    if len(unique_ids) == 0:
        return result

    placeholders = ', '.join('?' for _ in unique_ids)
    _            = tx.cursor.execute(f'''
        SELECT   product_id, entitlement_id
        FROM     product_entitlements
        WHERE    product_id IN ({placeholders})
        ORDER BY product_id, entitlement_id
    ''', unique_ids)
    rows = typing.cast(collections.abc.Iterator[tuple[int, int]], tx.cursor)
    for product_id, entitlement_id in rows:
        result.setdefault(product_id, []).append(entitlement_id)
    return result

def _subscriber_row_from_tuple(row: tuple[int, int, str, int]) -> SubscriberRow:
    result = SubscriberRow(id=row[0], app_id=row[1], app_user_id=row[2], created_unix_ts_ms=row[3])
    return result

def get_or_create_subscriber(sql_conn: sqlite3.Connection, app_id: int, app_user_id: str, unix_ts_ms: int) -> SubscriberRow:
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _   = tx.cursor.execute('''
            INSERT OR IGNORE INTO subscribers (app_id, app_user_id, created_unix_ts_ms)
            VALUES                            (?, ?, ?)
        ''', (app_id, app_user_id, unix_ts_ms))
        _   = tx.cursor.execute('SELECT id, app_id, app_user_id, created_unix_ts_ms FROM subscribers WHERE app_id = ? AND app_user_id = ?',
                                (app_id, app_user_id))
        row = typing.cast(tuple[int, int, str, int], tx.cursor.fetchone())
    result = _subscriber_row_from_tuple(row)
    return result

def get_subscriber(sql_conn: sqlite3.Connection, subscriber_id: int) -> SubscriberRow | None:
    result: SubscriberRow | None = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute('SELECT id, app_id, app_user_id, created_unix_ts_ms FROM subscribers WHERE id = ?', (subscriber_id,))
        row    = typing.cast(tuple[int, int, str, int] | None, tx.cursor.fetchone())
        result = _subscriber_row_from_tuple(row) if row else None
    return result

def get_subscriber_by_app_user_id(sql_conn: sqlite3.Connection, app_id: int, app_user_id: str) -> SubscriberRow | None:
    result: SubscriberRow | None = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute('SELECT id, app_id, app_user_id, created_unix_ts_ms FROM subscribers WHERE app_id = ? AND app_user_id = ?',
                                   (app_id, app_user_id))
        row    = typing.cast(tuple[int, int, str, int] | None, tx.cursor.fetchone())
        result = _subscriber_row_from_tuple(row) if row else None
    return result

def _subscription_values(row: SubscriptionRow) -> tuple[int | str | None, ...]:
    result = (row.subscriber_id,
              row.app_id,
              int(row.platform.value),
              row.original_transaction_id,
              row.product_id,
              row.pending_product_id,
              str(row.status),
              row.purchase_unix_ts_ms,
              row.expires_unix_ts_ms,
              row.grace_period_expires_unix_ts_ms,
              int(row.auto_renew_enabled),
              int(row.is_trial_period),
              int(row.is_in_intro_offer_period),
              row.canceled_unix_ts_ms,
              row.cancellation_reason,
              row.latest_transaction_id,
              row.environment,
              row.last_event_unix_ts_ms,
              str(row.pre_pause_status) if row.pre_pause_status else None,
              row.updated_unix_ts_ms)
    return result

def add_subscription_tx(tx: base.SQLTransaction, row: SubscriptionRow) -> SubscriptionRow | None:
    '''
    Insert the subscription lineage, returns None if a subscription already exists for the
    (platform, original transaction ID) or the row does not name a store. Subscriptions are
    created by the client purchase flow, store notifications only ever update existing rows.
    '''
    assert tx.cursor is not None
    err = base.ErrorSink()
    _   = base.verify_platform(row.platform, err)
    if err.has():
        log.error(f'Rejected subscription {base.obfuscate(row.original_transaction_id)}: {err.build()}')
        return None

    fields       = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    placeholders = ', '.join('?' for _ in SQL_TABLE_SUBSCRIPTIONS_FIELD)
    _            = tx.cursor.execute(f'''
        INSERT INTO subscriptions ({fields})
        VALUES                    ({placeholders})
        ON CONFLICT DO NOTHING
        RETURNING id
    ''', _subscription_values(row))

    inserted = typing.cast(tuple[int] | None, tx.cursor.fetchone())
    result   = None
    if inserted:
        result    = dataclasses.replace(row)
        result.id = inserted[0]
    return result

def add_subscription(sql_conn: sqlite3.Connection, row: SubscriptionRow) -> SubscriptionRow | None:
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        result = add_subscription_tx(tx, row)
    return result

def get_subscription_tx(tx: base.SQLTransaction, platform: base.Platform, original_transaction_id: str) -> SubscriptionRow | None:
    assert tx.cursor is not None
    fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _      = tx.cursor.execute(f'SELECT id, {fields} FROM subscriptions WHERE platform = ? AND original_transaction_id = ?',
                               (int(platform.value), original_transaction_id))
    row    = typing.cast(SQLTableSubscriptionRowTuple | None, tx.cursor.fetchone())
    result = subscription_row_from_tuple(row) if row else None
    return result

def get_subscription(sql_conn: sqlite3.Connection, platform: base.Platform, original_transaction_id: str) -> SubscriptionRow | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_subscription_tx(tx, platform, original_transaction_id)
    return result

def get_subscriptions_for_subscriber_tx(tx: base.SQLTransaction, subscriber_id: int) -> list[SubscriptionRow]:
    assert tx.cursor is not None
    fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _      = tx.cursor.execute(f'SELECT id, {fields} FROM subscriptions WHERE subscriber_id = ? ORDER BY id', (subscriber_id,))
    rows   = typing.cast(collections.abc.Iterator[SQLTableSubscriptionRowTuple], tx.cursor)
    result = [subscription_row_from_tuple(it) for it in rows]
    return result

def update_subscription_tx(tx: base.SQLTransaction, row: SubscriptionRow):
    assert tx.cursor is not None
    assignments = ',\n'.join(f'{it.name} = ?' for it in SQL_TABLE_SUBSCRIPTIONS_FIELD)
    _ = tx.cursor.execute(f'''
        UPDATE subscriptions
        SET    {assignments}
        WHERE  id = ?
    ''', (*_subscription_values(row), row.id))
    assert tx.cursor.rowcount == 1, f'Subscription {row.id} ({row.original_transaction_id}) was not in the DB'

def get_lapsed_subscriptions_tx(tx: base.SQLTransaction, unix_ts_ms: int) -> list[SubscriptionRow]:
    '''
    Subscriptions in a live status whose period (and grace period if any) has elapsed but have not
    yet been moved into the expired status because the store never told us.
    '''
    assert tx.cursor is not None
    fields = string_from_sql_fields(fields=SQL_TABLE_SUBSCRIPTIONS_FIELD, schema=False)
    _      = tx.cursor.execute(f'''
        SELECT id, {fields}
        FROM   subscriptions
        WHERE  status IN (?, ?)
               AND expires_unix_ts_ms IS NOT NULL
               AND expires_unix_ts_ms <= ?
               AND (grace_period_expires_unix_ts_ms IS NULL OR grace_period_expires_unix_ts_ms <= ?)
    ''', (str(base.SubscriptionStatus.Active),
          str(base.SubscriptionStatus.InGracePeriod),
          unix_ts_ms,
          unix_ts_ms))
    rows   = typing.cast(collections.abc.Iterator[SQLTableSubscriptionRowTuple], tx.cursor)
    result = [subscription_row_from_tuple(it) for it in rows]
    return result

def add_purchase_tx(tx: base.SQLTransaction, purchase: PurchaseRow) -> bool:
    '''Append the transaction to the purchase history. Returns false if the transaction was
    already recorded, the existing row is never modified.'''
    assert tx.cursor is not None
    fields       = string_from_sql_fields(fields=SQL_TABLE_PURCHASES_FIELD, schema=False)
    placeholders = ', '.join('?' for _ in SQL_TABLE_PURCHASES_FIELD)
    _            = tx.cursor.execute(f'''
        INSERT OR IGNORE INTO purchases ({fields})
        VALUES                          ({placeholders})
    ''', (purchase.subscriber_id,
          purchase.app_id,
          purchase.product_id,
          int(purchase.platform.value),
          purchase.store_transaction_id,
          purchase.original_transaction_id,
          purchase.purchase_unix_ts_ms,
          purchase.expires_unix_ts_ms,
          purchase.environment,
          purchase.status))
    result = tx.cursor.rowcount == 1
    return result

def add_purchase(sql_conn: sqlite3.Connection, purchase: PurchaseRow) -> bool:
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        result = add_purchase_tx(tx, purchase)
    return result

_PURCHASE_SELECT = f'''
    SELECT    purchases.id, {', '.join('purchases.' + it.name for it in SQL_TABLE_PURCHASES_FIELD)},
              products.type, purchase_revocations.revoked_unix_ts_ms
    FROM      purchases
    JOIN      products             ON products.id = purchases.product_id
    LEFT JOIN purchase_revocations ON purchase_revocations.purchase_id = purchases.id
'''

def get_purchases_for_subscriber_tx(tx: base.SQLTransaction, subscriber_id: int) -> list[PurchaseRow]:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'{_PURCHASE_SELECT} WHERE purchases.subscriber_id = ? ORDER BY purchases.id', (subscriber_id,))
    rows   = typing.cast(collections.abc.Iterator[PurchaseRowTuple], tx.cursor)
    result = [_purchase_row_from_tuple(it) for it in rows]
    return result

def get_purchase_by_store_transaction_id_tx(tx: base.SQLTransaction, platform: base.Platform, store_transaction_id: str) -> PurchaseRow | None:
    assert tx.cursor is not None
    _      = tx.cursor.execute(f'{_PURCHASE_SELECT} WHERE purchases.platform = ? AND purchases.store_transaction_id = ?',
                               (int(platform.value), store_transaction_id))
    row    = typing.cast(PurchaseRowTuple | None, tx.cursor.fetchone())
    result = _purchase_row_from_tuple(row) if row else None
    return result

def get_purchase_by_store_transaction_id(sql_conn: sqlite3.Connection, platform: base.Platform, store_transaction_id: str) -> PurchaseRow | None:
    with base.SQLTransaction(sql_conn) as tx:
        result = get_purchase_by_store_transaction_id_tx(tx, platform, store_transaction_id)
    return result

def set_purchase_revocation_tx(tx: base.SQLTransaction, purchase_id: int, revoked_unix_ts_ms: int | None, reason: str | None) -> bool:
    '''Record a refund/void of the purchase, or delete the record if `revoked_unix_ts_ms` is None
    (refund reversed). Returns true if the DB was changed.'''
    assert tx.cursor is not None
    if revoked_unix_ts_ms is None:
        _ = tx.cursor.execute('DELETE FROM purchase_revocations WHERE purchase_id = ?', (purchase_id,))
    else:
        _ = tx.cursor.execute('''
            INSERT OR REPLACE INTO purchase_revocations (purchase_id, revoked_unix_ts_ms, reason)
            VALUES                                      (?, ?, ?)
        ''', (purchase_id, revoked_unix_ts_ms, reason))
    result = tx.cursor.rowcount > 0
    return result

def replace_subscriber_entitlements_tx(tx: base.SQLTransaction, subscriber_id: int, rows: list[SubscriberEntitlementRow]):
    assert tx.cursor is not None
    _ = tx.cursor.execute('DELETE FROM subscriber_entitlements WHERE subscriber_id = ?', (subscriber_id,))
    for it in rows:
        assert it.subscriber_id == subscriber_id
        _ = tx.cursor.execute('''
            INSERT INTO subscriber_entitlements (subscriber_id, entitlement_id, product_id, subscription_id,
                                                 purchase_id, expires_unix_ts_ms, updated_unix_ts_ms)
            VALUES                              (?, ?, ?, ?, ?, ?, ?)
        ''', (it.subscriber_id,
              it.entitlement_id,
              it.product_id,
              it.subscription_id,
              it.purchase_id,
              it.expires_unix_ts_ms,
              it.updated_unix_ts_ms))

def get_subscriber_entitlements_tx(tx: base.SQLTransaction, subscriber_id: int, unix_ts_ms: int | None) -> list[SubscriberEntitlementRow]:
    '''Read the materialised entitlement set. If `unix_ts_ms` is given, grants that have expired
    by then are excluded.'''
    assert tx.cursor is not None
    _ = tx.cursor.execute('''
        SELECT   se.subscriber_id, se.entitlement_id, e.identifier, se.product_id, se.subscription_id,
                 se.purchase_id, se.expires_unix_ts_ms, se.updated_unix_ts_ms
        FROM     subscriber_entitlements se
        JOIN     entitlements e ON e.id = se.entitlement_id
        WHERE    se.subscriber_id = ?
                 AND (? IS NULL OR se.expires_unix_ts_ms IS NULL OR se.expires_unix_ts_ms > ?)
        ORDER BY e.identifier
    ''', (subscriber_id, unix_ts_ms, unix_ts_ms))

    result: list[SubscriberEntitlementRow] = []
    rows = typing.cast(collections.abc.Iterator[tuple[int, int, str, int | None, int | None, int | None, int | None, int]], tx.cursor)
    for row in rows:
        item                        = SubscriberEntitlementRow()
        item.subscriber_id          = row[0]
        item.entitlement_id         = row[1]
        item.entitlement_identifier = row[2]
        item.product_id             = row[3]
        item.subscription_id        = row[4]
        item.purchase_id            = row[5]
        item.expires_unix_ts_ms     = row[6]
        item.updated_unix_ts_ms     = row[7]
        result.append(item)
    return result

_WEBHOOK_EVENT_SELECT = '''
    SELECT id, app_id, platform, event_type, event_id, payload, received_unix_ts_ms,
           processed_unix_ts_ms, error, retry_count
    FROM   webhook_events
'''

def log_webhook_event(sql_conn:   sqlite3.Connection,
                      app_id:     int,
                      platform:   base.Platform,
                      event_type: str,
                      event_id:   str,
                      payload:    str,
                      unix_ts_ms: int) -> LogWebhookEvent:
    '''
    Record the notification before it is processed. A redelivery of a known event ID is not
    inserted again, instead the existing row is returned and if it never finished processing its
    retry count is bumped so the caller can process it again.
    '''
    result = LogWebhookEvent()
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('''
            INSERT INTO webhook_events (app_id, platform, event_type, event_id, payload, received_unix_ts_ms)
            VALUES                     (?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
        ''', (app_id, int(platform.value), event_type, event_id, payload, unix_ts_ms))
        inserted = tx.cursor.rowcount == 1

        if not inserted:
            _ = tx.cursor.execute('''
                UPDATE webhook_events
                SET    retry_count = retry_count + 1
                WHERE  app_id = ? AND event_id = ? AND processed_unix_ts_ms IS NULL
            ''', (app_id, event_id))

        _            = tx.cursor.execute(f'{_WEBHOOK_EVENT_SELECT} WHERE app_id = ? AND event_id = ?', (app_id, event_id))
        result.event = _webhook_event_row_from_tuple(typing.cast(WebhookEventRowTuple, tx.cursor.fetchone()))

    if inserted:
        result.status = LogWebhookEventStatus.Inserted
    elif result.event.processed_unix_ts_ms is not None:
        result.status = LogWebhookEventStatus.DuplicateProcessed
    else:
        result.status = LogWebhookEventStatus.DuplicateUnprocessed
    return result

def mark_webhook_event_processed(sql_conn: sqlite3.Connection, row_id: int, unix_ts_ms: int):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('UPDATE webhook_events SET processed_unix_ts_ms = ?, error = NULL WHERE id = ?', (unix_ts_ms, row_id))

def mark_webhook_event_failed(sql_conn: sqlite3.Connection, row_id: int, error: str):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('UPDATE webhook_events SET error = ? WHERE id = ?', (error, row_id))

def increment_webhook_event_retry_count(sql_conn: sqlite3.Connection, row_id: int):
    with base.SQLTransaction(sql_conn, mode=base.SQLTransactionMode.Immediate) as tx:
        assert tx.cursor is not None
        _ = tx.cursor.execute('UPDATE webhook_events SET retry_count = retry_count + 1 WHERE id = ?', (row_id,))

def get_webhook_event(sql_conn: sqlite3.Connection, app_id: int, event_id: str) -> WebhookEventRow | None:
    result: WebhookEventRow | None = None
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'{_WEBHOOK_EVENT_SELECT} WHERE app_id = ? AND event_id = ?', (app_id, event_id))
        row    = typing.cast(WebhookEventRowTuple | None, tx.cursor.fetchone())
        result = _webhook_event_row_from_tuple(row) if row else None
    return result

def get_unprocessed_webhook_events(sql_conn: sqlite3.Connection) -> list[WebhookEventRow]:
    result: list[WebhookEventRow] = []
    with base.SQLTransaction(sql_conn) as tx:
        assert tx.cursor is not None
        _      = tx.cursor.execute(f'{_WEBHOOK_EVENT_SELECT} WHERE processed_unix_ts_ms IS NULL ORDER BY received_unix_ts_ms, id')
        rows   = typing.cast(collections.abc.Iterator[WebhookEventRowTuple], tx.cursor)
        result = [_webhook_event_row_from_tuple(it) for it in rows]
    return result
