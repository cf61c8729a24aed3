'''
Calls into Apple's servers on behalf of an App. Two APIs are involved:

  App Store Server API
    Status of a subscription lineage, transaction info and history, order lookup and test
    notifications. Called through `AppStoreServerAPIClient` from app-store-server-library which
    signs a fresh ES256 token for every request.

  App Store Connect API
    The product catalog of the App (in-app purchases and subscription groups). The library does
    not cover it so the bearer token is signed with PyJWT and requests are issued with urllib3.

Credentials are per App and built from its DB row for every call, there is no process wide
client. Every call is bounded by `base.HTTP_TIMEOUT_S` and failures surface as
`base.StoreAPIError`.
'''
import concurrent.futures
import dataclasses
import json
import logging
import sqlite3
import threading
import time
import typing

import jwt
import urllib3

from appstoreserverlibrary.api_client import (
    AppStoreServerAPIClient      as AppleAppStoreServerAPIClient,
    APIException                 as AppleAPIException,
    GetTransactionHistoryVersion as AppleGetTransactionHistoryVersion,
)

from appstoreserverlibrary.models.Environment                 import Environment                 as AppleEnvironment
from appstoreserverlibrary.models.StatusResponse              import StatusResponse              as AppleStatusResponse
from appstoreserverlibrary.models.LastTransactionsItem        import LastTransactionsItem        as AppleLastTransactionsItem
from appstoreserverlibrary.models.TransactionHistoryRequest   import TransactionHistoryRequest   as AppleTransactionHistoryRequest
from appstoreserverlibrary.models.OrderLookupResponse         import OrderLookupResponse         as AppleOrderLookupResponse
from appstoreserverlibrary.models.SendTestNotificationResponse import SendTestNotificationResponse as AppleSendTestNotificationResponse

import backend
import base

log = logging.Logger('APPLE_API')

APP_STORE_CONNECT_BASE_URL:        str = 'https://api.appstoreconnect.apple.com/v1'
APP_STORE_CONNECT_AUDIENCE:        str = 'appstoreconnect-v1'
APP_STORE_CONNECT_TOKEN_LIFETIME_S: int = 20 * 60
APP_STORE_CONNECT_TOKEN_REFRESH_S:  int = 60

# NOTE: Subscription periods reported by App Store Connect as ISO 8601 durations
SUBSCRIPTION_PERIOD_TO_ISO8601: dict[str, str] = {
    'ONE_WEEK':     'P7D',
    'ONE_MONTH':    'P1M',
    'TWO_MONTHS':   'P2M',
    'THREE_MONTHS': 'P3M',
    'SIX_MONTHS':   'P6M',
    'ONE_YEAR':     'P1Y',
}

IN_APP_PURCHASE_TYPE_TO_PRODUCT_TYPE: dict[str, base.ProductType] = {
    'CONSUMABLE':     base.ProductType.Consumable,
    'NON_CONSUMABLE': base.ProductType.NonConsumable,
    'AUTO_RENEWABLE': base.ProductType.AutoRenewableSubscription,
    'NON_RENEWING':   base.ProductType.NonRenewingSubscription,
}

REMOVED_FROM_SALE_STATES: frozenset[str] = frozenset({'DEVELOPER_REMOVED_FROM_SALE', 'REMOVED_FROM_SALE'})

# NOTE: The library issues its requests without a timeout, calls are run on this pool and abandoned
# once they exceed base.HTTP_TIMEOUT_S.
_executor = concurrent.futures.ThreadPoolExecutor(max_workers=8, thread_name_prefix='apple-api')

@dataclasses.dataclass
class AppleCredentials:
    key_id:       str              = ''
    issuer_id:    str              = ''
    bundle_id:    str              = ''
    private_key:  bytes            = b'' # PKCS#8 PEM (.p8) of the API key
    environment:  AppleEnvironment = AppleEnvironment.PRODUCTION
    app_apple_id: int | None       = None

@dataclasses.dataclass
class CatalogProduct:
    store_product_id:      str              = ''
    display_name:          str              = ''
    type:                  base.ProductType = base.ProductType.NonConsumable
    state:                 str              = ''
    period:                str | None       = None
    subscription_group_id: str | None       = None

def environment_from_str(value: str | None, err: base.ErrorSink) -> AppleEnvironment:
    result = AppleEnvironment.PRODUCTION
    if value:
        try:
            result = AppleEnvironment(value)
        except ValueError:
            err.msg_list.append(f'Unrecognised Apple environment "{value}", expected one of {[it.value for it in AppleEnvironment]}')
    return result

def credentials_from_app(app: backend.AppRow) -> AppleCredentials | None:
    '''Credentials for Apple's APIs from the App's configuration, None if the App has none'''
    if not app.apple_key_id or not app.apple_issuer_id or not app.apple_private_key or not app.bundle_id:
        return None

    err         = base.ErrorSink()
    environment = environment_from_str(app.apple_environment, err)
    if err.has():
        log.error(f'App {app.id} has invalid Apple credentials: {err.build()}')
        return None

    result = AppleCredentials(key_id       = app.apple_key_id,
                              issuer_id    = app.apple_issuer_id,
                              bundle_id    = app.bundle_id,
                              private_key  = app.apple_private_key.encode('utf-8'),
                              environment  = environment,
                              app_apple_id = app.apple_app_apple_id)
    return result

def make_api_client(credentials: AppleCredentials) -> AppleAppStoreServerAPIClient:
    result = AppleAppStoreServerAPIClient(signing_key = credentials.private_key,
                                          key_id      = credentials.key_id,
                                          issuer_id   = credentials.issuer_id,
                                          bundle_id   = credentials.bundle_id,
                                          environment = credentials.environment)
    return result

T = typing.TypeVar('T')

def _call(label: str, fn: typing.Callable[[], T]) -> T:
    future = _executor.submit(fn)
    try:
        result = future.result(timeout=base.HTTP_TIMEOUT_S)
    except concurrent.futures.TimeoutError as e:
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'{label} timed out after {base.HTTP_TIMEOUT_S}s') from e
    except AppleAPIException as e:
        # NOTE: 4xx other than rate limiting will not fix itself by retrying
        transient = e.http_status_code >= 500 or e.http_status_code == 429
        raise base.StoreAPIError(base.Platform.iOSAppStore,
                                 f'{label} failed with HTTP {e.http_status_code} (api error={e.raw_api_error}, msg={e.error_message})',
                                 transient=transient) from e
    except Exception as e:
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'{label} failed: {e}') from e
    return result

def fetch_subscription_statuses(credentials: AppleCredentials, original_transaction_id: str) -> AppleStatusResponse:
    client = make_api_client(credentials)
    result = _call('Get All Subscription Statuses', lambda: client.get_all_subscription_statuses(original_transaction_id))
    return result

def find_last_transaction(statuses: AppleStatusResponse, original_transaction_id: str) -> AppleLastTransactionsItem | None:
    '''Pick the status of one lineage out of the statuses of every subscription group'''
    for group in statuses.data or []:
        for item in group.lastTransactions or []:
            if item.originalTransactionId == original_transaction_id:
                return item
    return None

def fetch_transaction_info(credentials: AppleCredentials, transaction_id: str) -> str | None:
    '''Returns the signed transaction (JWS) of the transaction'''
    client   = make_api_client(credentials)
    response = _call('Get Transaction Info', lambda: client.get_transaction_info(transaction_id))
    result   = response.signedTransactionInfo
    return result

def fetch_transaction_history(credentials: AppleCredentials, transaction_id: str, max_pages: int = 50) -> list[str]:
    '''Signed transactions (JWS) of the lineage of `transaction_id`, following the revision
    cursor until Apple reports there is nothing more or `max_pages` is hit.'''
    client            = make_api_client(credentials)
    request           = AppleTransactionHistoryRequest()
    result: list[str] = []
    revision          = None
    for _ in range(max_pages):
        response = _call('Get Transaction History',
                         lambda: client.get_transaction_history(transaction_id, revision, request, AppleGetTransactionHistoryVersion.V2))
        result.extend(response.signedTransactions or [])
        if not response.hasMore or not response.revision:
            break
        revision = response.revision
    return result

def look_up_order_id(credentials: AppleCredentials, order_id: str) -> AppleOrderLookupResponse:
    client = make_api_client(credentials)
    result = _call('Look Up Order ID', lambda: client.look_up_order_id(order_id))
    return result

def request_test_notification(credentials: AppleCredentials) -> str | None:
    '''Ask Apple to send a TEST notification to the App's configured URL, returns the test token'''
    client                                     = make_api_client(credentials)
    response: AppleSendTestNotificationResponse = _call('Request Test Notification', lambda: client.request_test_notification())
    result                                     = response.testNotificationToken
    log.info(f'Requested Apple test notification for {credentials.bundle_id} ({credentials.environment.value}), token {result}')
    return result

class AppStoreConnectTokenCache:
    '''
    Bearer token for the App Store Connect API. Apple rejects tokens living longer than 20
    minutes, the token is reused until a minute before it expires and then re-signed.
    '''
    credentials: AppleCredentials
    _lock:       threading.Lock
    _token:      str
    _expires_at: int

    def __init__(self, credentials: AppleCredentials):
        self.credentials = credentials
        self._lock       = threading.Lock()
        self._token      = ''
        self._expires_at = 0

    def token(self, now: int | None = None) -> str:
        now = now if now is not None else int(time.time())
        with self._lock:
            if self._token and now < self._expires_at - APP_STORE_CONNECT_TOKEN_REFRESH_S:
                return self._token

            expires_at = now + APP_STORE_CONNECT_TOKEN_LIFETIME_S
            payload    = {'iss': self.credentials.issuer_id,
                          'iat': now,
                          'exp': expires_at,
                          'aud': APP_STORE_CONNECT_AUDIENCE}
            self._token      = jwt.encode(payload,
                                          self.credentials.private_key,
                                          algorithm='ES256',
                                          headers={'kid': self.credentials.key_id, 'typ': 'JWT'})
            self._expires_at = expires_at
            result           = self._token
        return result

def _connect_get(http: urllib3.PoolManager, tokens: AppStoreConnectTokenCache, url: str) -> base.JSONObject:
    try:
        response = http.request(method  = 'GET',
                                url     = url,
                                headers = {'Authorization': f'Bearer {tokens.token()}', 'Content-Type': 'application/json'},
                                timeout = urllib3.Timeout(total=base.HTTP_TIMEOUT_S))
    except urllib3.exceptions.HTTPError as e:
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'App Store Connect request {url} failed: {e}') from e

    if response.status != 200:
        detail = ''
        try:
            errors = json.loads(response.data).get('errors', [])
            if errors:
                detail = errors[0].get('detail', '')
        except (ValueError, AttributeError):
            pass
        raise base.StoreAPIError(base.Platform.iOSAppStore,
                                 f'App Store Connect request {url} failed with HTTP {response.status} {detail}',
                                 transient=response.status >= 500 or response.status == 429)

    result = json.loads(response.data)
    if not isinstance(result, dict):
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'App Store Connect request {url} did not return an object', transient=False)
    return typing.cast(base.JSONObject, result)

def _connect_get_all(http: urllib3.PoolManager, tokens: AppStoreConnectTokenCache, url: str) -> list[base.JSONObject]:
    result: list[base.JSONObject] = []
    next_url: str | None          = url
    while next_url:
        response = _connect_get(http, tokens, next_url)
        data     = response.get('data')
        if isinstance(data, list):
            result.extend(it for it in data if isinstance(it, dict))
        links    = response.get('links')
        next_url = None
        if isinstance(links, dict) and isinstance(links.get('next'), str):
            next_url = typing.cast(str, links['next'])
    return result

def _attributes(item: base.JSONObject) -> base.JSONObject:
    result = item.get('attributes')
    return result if isinstance(result, dict) else {}

def fetch_catalog(credentials: AppleCredentials, http: urllib3.PoolManager | None = None) -> list[CatalogProduct]:
    '''
    Products of the App on sale in App Store Connect: in-app purchases (consumables,
    non-consumables, non-renewing subscriptions) followed by the auto-renewable subscriptions of
    every subscription group. Products removed from sale are skipped.
    '''
    http   = http if http is not None else urllib3.PoolManager()
    tokens = AppStoreConnectTokenCache(credentials)

    app_id = None
    for it in _connect_get_all(http, tokens, f'{APP_STORE_CONNECT_BASE_URL}/apps?limit=200'):
        if _attributes(it).get('bundleId') == credentials.bundle_id:
            app_id = it.get('id')
            break
    if not isinstance(app_id, str):
        raise base.StoreAPIError(base.Platform.iOSAppStore, f'App with bundle ID "{credentials.bundle_id}" not found in App Store Connect', transient=False)

    result: list[CatalogProduct] = []
    for it in _connect_get_all(http, tokens, f'{APP_STORE_CONNECT_BASE_URL}/apps/{app_id}/inAppPurchasesV2?limit=200'):
        attributes = _attributes(it)
        state      = str(attributes.get('state', ''))
        if state in REMOVED_FROM_SALE_STATES:
            continue
        result.append(CatalogProduct(store_product_id = str(attributes.get('productId', '')),
                                     display_name     = str(attributes.get('name', '')),
                                     type             = IN_APP_PURCHASE_TYPE_TO_PRODUCT_TYPE.get(str(attributes.get('inAppPurchaseType')), base.ProductType.NonConsumable),
                                     state            = state))

    for group in _connect_get_all(http, tokens, f'{APP_STORE_CONNECT_BASE_URL}/apps/{app_id}/subscriptionGroups?limit=200'):
        group_id = str(group.get('id', ''))
        for it in _connect_get_all(http, tokens, f'{APP_STORE_CONNECT_BASE_URL}/subscriptionGroups/{group_id}/subscriptions?limit=200'):
            attributes = _attributes(it)
            state      = str(attributes.get('state', ''))
            if state in REMOVED_FROM_SALE_STATES:
                continue
            result.append(CatalogProduct(store_product_id      = str(attributes.get('productId', '')),
                                         display_name          = str(attributes.get('name', '')),
                                         type                  = base.ProductType.AutoRenewableSubscription,
                                         state                 = state,
                                         period                = SUBSCRIPTION_PERIOD_TO_ISO8601.get(str(attributes.get('subscriptionPeriod'))),
                                         subscription_group_id = group_id))

    log.info(f'Fetched {len(result)} product(s) from App Store Connect for {credentials.bundle_id}')
    return result

def import_catalog(sql_conn: sqlite3.Connection, app_id: int, catalog: list[CatalogProduct]) -> list[backend.ProductRow]:
    '''Add catalog products the App does not know about yet, existing products are left as is'''
    result: list[backend.ProductRow] = []
    for it in catalog:
        if not it.store_product_id:
            continue
        existing = backend.get_product_by_store_product_id(sql_conn, app_id, base.Platform.iOSAppStore, it.store_product_id)
        if existing:
            continue
        result.append(backend.add_product(sql_conn         = sql_conn,
                                          app_id           = app_id,
                                          identifier       = it.store_product_id,
                                          store_product_id = it.store_product_id,
                                          platform         = base.Platform.iOSAppStore,
                                          type             = it.type,
                                          period           = it.period))
    return result
