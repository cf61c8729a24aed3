'''
Main entry point for the store subscription sync server. This runs the necessary setup code like
initialising the DB and responding to startup arguments before handing over control-flow to Flask.

This application has command line options that must be specified as environment variables (or an
.INI file named by an environment variable) because this application runs directly as a flask app
(in a dev environment) and it also can be served over UWSGI for a production use-case.

UWSGI mounts the flask app with no possibility to forward command line arguments to the underlying
application. Thus we cannot use argparse or flask's @click.options as there's no way to specify
them in the UWSGI manifest hence the design decision to use environment variables.
'''

import configparser
import dataclasses
import json
import logging
import logging.handlers
import os
import pathlib
import signal
import sys
import threading
import time
import types

import flask

import base
import backend
import entitlements
import notifications
import platform_apple
import platform_apple_api
import platform_google
import platform_google_api
import server
import subscriptions

log                                                   = logging.Logger('STORESYNC')
google_pull_contexts: list[platform_google.PullContext] = []
webhook_loggers: list[base.AsyncAlertWebhookLogHandler] = []

# NOTE: Every module logger, handlers are attached to each of them explicitly
MODULE_LOGGERS: list[logging.Logger] = [log,
                                        backend.log,
                                        entitlements.log,
                                        notifications.log,
                                        platform_apple.log,
                                        platform_apple_api.log,
                                        platform_google.log,
                                        platform_google_api.log,
                                        subscriptions.log]

@dataclasses.dataclass
class AlertWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class GooglePull:
    app_id:            int = 0
    project_name:      str = ''
    subscription_name: str = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:                 str                                = ''
    db_path:                  str                                = ''
    db_path_is_uri:           bool                               = False
    log_path:                 str                                = ''
    print_tables:             bool                               = False
    unsafe_logging:           bool                               = False
    http_timeout_s:           float                              = 10.0
    access_granting_statuses: str                                = ''
    parsed_access_statuses:   frozenset[base.SubscriptionStatus] = base.ACCESS_GRANTING_STATUSES
    sweep_interval_s:         int                                = 3600
    replay_events:            bool                               = False

    alert_webhooks:           list[AlertWebhook]                 = dataclasses.field(default_factory=list)
    google_pulls:             list[GooglePull]                   = dataclasses.field(default_factory=list)

    apple_root_cert_paths:    str                                = ''
    apple_root_certs:         list[bytes]                        = dataclasses.field(default_factory=list)
    apple_online_checks:      bool                               = False

def signal_handler(sig: int, _frame: types.FrameType | None):
    global stop_maintenance_thread

    # NOTE: Wake up the thread and set the flag to terminate it
    stop_maintenance_thread = True
    maintenance_thread_event.set()

    # NOTE: Also kill the Pub/Sub pull threads, they sleep on an event that we trigger
    for it in google_pull_contexts:
        platform_google.stop_pull(it)

    # NOTE: Unregister handler and resume the default handler by re-raising it
    _ = signal.signal(sig, signal.SIG_DFL)
    signal.raise_signal(sig)

def maintenance_thread_entry_point(db_path: str, db_path_is_uri: bool, sweep_interval_s: int):
    global stop_maintenance_thread
    while not stop_maintenance_thread:
        # Sleep on the event until the interval has elapsed, or, we get woken up by SIG handler.
        _ = maintenance_thread_event.wait(timeout=sweep_interval_s)
        if stop_maintenance_thread:
            break

        # NOTE: Expire subscriptions whose period lapsed without a notification from the store
        # (e.g. a dropped EXPIRED notification) and rederive the affected subscribers.
        start_unix_ts_s = time.time()
        try:
            with backend.OpenDBAtPath(db_path=db_path, uri=db_path_is_uri) as db:
                result = entitlements.expire_lapsed_subscriptions(sql_conn=db.sql_conn, unix_ts_ms=int(start_unix_ts_s * 1000))
        except Exception as e:
            log.error(f'Lapsed subscription sweep failed: {e}')
            continue

        if result.subscriptions > 0:
            log_line = f'Sweep expired {result.subscriptions} lapsed subscription(s) for {result.subscribers} subscriber(s) in {base.format_seconds(time.time() - start_unix_ts_s)}'
            log.info(log_line)
            for it in webhook_loggers:
                it.emit_text(log_line)

def parse_access_statuses(arg: str, err: base.ErrorSink) -> frozenset[base.SubscriptionStatus]:
    """Parse a comma-separated list of subscription statuses, e.g. 'active,in_grace_period'"""
    result = base.ACCESS_GRANTING_STATUSES
    if len(arg) == 0:
        return result

    statuses: set[base.SubscriptionStatus] = set()
    for item in arg.split(','):
        item = item.strip()
        if item not in base.SubscriptionStatus._value2member_map_:
            err.msg_list.append(f"Invalid access granting status '{item}', expected one of {[it.value for it in base.SubscriptionStatus]} (arg was: {arg})")
            return result
        statuses.add(base.SubscriptionStatus(item))

    if len(statuses) == 0:
        err.msg_list.append(f'No access granting statuses were specified (arg was: {arg})')
        return result

    result = frozenset(statuses)
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv('STORESYNC_INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser = configparser.ConfigParser()
        _          = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.db_path                           = base_section.get(option='db_path',                  fallback='')
            result.db_path_is_uri                    = base_section.getboolean(option='db_path_is_uri',    fallback=False)
            result.log_path                          = base_section.get(option='log_path',                 fallback='')
            result.print_tables                      = base_section.getboolean(option='print_tables',      fallback=False)
            result.unsafe_logging                    = base_section.getboolean(option='unsafe_logging',    fallback=False)
            result.http_timeout_s                    = base_section.getfloat(option='http_timeout_s',      fallback=result.http_timeout_s)
            result.access_granting_statuses          = base_section.get(option='access_granting_statuses', fallback='')
            result.sweep_interval_s                  = base_section.getint(option='sweep_interval_s',      fallback=result.sweep_interval_s)
            result.replay_events                     = base_section.getboolean(option='replay_events',     fallback=False)

        if 'apple' in ini_parser:
            apple_section: configparser.SectionProxy = ini_parser['apple']
            result.apple_root_cert_paths              = apple_section.get(option='root_cert_paths',             fallback='')
            result.apple_online_checks                = apple_section.getboolean(option='enable_online_checks', fallback=False)

        webhook_index = 0
        while True:
            webhook_label: str = f'alert_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'name'")
            if webhook_url is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'url'")
            if webhook_enabled is None:
                err.msg_list.append(f"Failed to parse webhook section {webhook_label}, missing 'enabled'")

            webhook_index += 1
            if webhook_name is not None and webhook_url is not None and webhook_enabled is not None:
                result.alert_webhooks.append(AlertWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))

        pull_index = 0
        while True:
            pull_label: str = f'google_pull.{pull_index}'
            if not ini_parser.has_section(pull_label):
                break

            pull_section: configparser.SectionProxy = ini_parser[pull_label]
            pull                                    = GooglePull(app_id            = pull_section.getint('app_id', fallback=0),
                                                                 project_name      = pull_section.get('project_name', fallback=''),
                                                                 subscription_name = pull_section.get('subscription_name', fallback=''))
            if pull.app_id <= 0:
                err.msg_list.append(f"Failed to parse Pub/Sub section {pull_label}, missing 'app_id'")
            if len(pull.project_name) == 0:
                err.msg_list.append(f"Failed to parse Pub/Sub section {pull_label}, missing 'project_name'")
            if len(pull.subscription_name) == 0:
                err.msg_list.append(f"Failed to parse Pub/Sub section {pull_label}, missing 'subscription_name'")

            pull_index += 1
            result.google_pulls.append(pull)

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.db_path                  = os.getenv('STORESYNC_DB_PATH',                         result.db_path)
    result.db_path_is_uri           = base.os_get_boolean_env('STORESYNC_DB_PATH_IS_URI',    result.db_path_is_uri)
    result.log_path                 = os.getenv('STORESYNC_LOG_PATH',                        result.log_path)
    result.print_tables             = base.os_get_boolean_env('STORESYNC_PRINT_TABLES',      result.print_tables)
    result.unsafe_logging           = base.os_get_boolean_env('STORESYNC_UNSAFE_LOGGING',    result.unsafe_logging)
    result.access_granting_statuses = os.getenv('STORESYNC_ACCESS_GRANTING_STATUSES',        result.access_granting_statuses)
    result.replay_events            = base.os_get_boolean_env('STORESYNC_REPLAY_EVENTS',     result.replay_events)
    result.parsed_access_statuses   = parse_access_statuses(result.access_granting_statuses, err)

    http_timeout_s = os.getenv('STORESYNC_HTTP_TIMEOUT_S', '')
    if len(http_timeout_s):
        try:
            result.http_timeout_s = float(http_timeout_s)
        except ValueError:
            err.msg_list.append(f'Failed to parse STORESYNC_HTTP_TIMEOUT_S ({http_timeout_s}) as a number')

    sweep_interval_s = os.getenv('STORESYNC_SWEEP_INTERVAL_S', '')
    if len(sweep_interval_s):
        try:
            result.sweep_interval_s = int(sweep_interval_s)
        except ValueError:
            err.msg_list.append(f'Failed to parse STORESYNC_SWEEP_INTERVAL_S ({sweep_interval_s}) as an integer')

    if result.http_timeout_s <= 0:
        err.msg_list.append(f'http_timeout_s must be positive, received {result.http_timeout_s}')
    if result.sweep_interval_s <= 0:
        err.msg_list.append(f'sweep_interval_s must be positive, received {result.sweep_interval_s}')
    if len(result.db_path) == 0:
        err.msg_list.append('db_path was not specified')

    # NOTE: Root certificates enable verification of the signature chain of Apple's notifications
    for it in result.apple_root_cert_paths.split(','):
        cert_path = it.strip()
        if len(cert_path) == 0:
            continue
        try:
            result.apple_root_certs.append(pathlib.Path(cert_path).read_bytes())
        except OSError as e:
            err.msg_list.append(f'Unable to read Apple root certificate "{cert_path}": {e}')

    if len(result.log_path) == 0:
        result.log_path = 'storesync.log'

    return result

def start_google_pulls(sql_conn, pulls: list[GooglePull], err: base.ErrorSink):
    for it in pulls:
        app = backend.get_app(sql_conn, it.app_id)
        if app is None:
            err.msg_list.append(f'Pub/Sub pull configured for unknown app {it.app_id}')
            continue
        if not app.google_service_account:
            err.msg_list.append(f'Pub/Sub pull configured for app {it.app_id} which has no Google service account')
            continue

        try:
            service_account_info = json.loads(app.google_service_account)
        except json.JSONDecodeError as e:
            err.msg_list.append(f'Google service account of app {it.app_id} is not JSON: {e}')
            continue

        context = platform_google.init_pull(app_id               = it.app_id,
                                            project_name         = it.project_name,
                                            subscription_name    = it.subscription_name,
                                            service_account_info = service_account_info,
                                            handle_message       = notifications.handle_pulled_message)
        google_pull_contexts.append(context)

    if not err.has():
        for it in google_pull_contexts:
            assert it.thread
            it.thread.start()

def entry_point() -> flask.Flask:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)

    # NOTE: Setup console logger
    for it in MODULE_LOGGERS:
        it.addHandler(console_logger)

    # NOTE: Parse arguments from .INI if present and environment variables, then setup global variables
    err                           = base.ErrorSink()
    parsed_args: ParsedArgs       = parse_args(err)
    base.UNSAFE_LOGGING           = parsed_args.unsafe_logging
    base.DB_PATH                  = parsed_args.db_path
    base.DB_PATH_IS_URI           = parsed_args.db_path_is_uri
    base.HTTP_TIMEOUT_S           = parsed_args.http_timeout_s
    base.ACCESS_GRANTING_STATUSES = parsed_args.parsed_access_statuses
    platform_apple.ROOT_CERTIFICATES    = parsed_args.apple_root_certs
    platform_apple.ENABLE_ONLINE_CHECKS = parsed_args.apple_online_checks
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + '\n  '.join(err.msg_list))
        sys.exit(1)

    # NOTE: Setup file logger
    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in MODULE_LOGGERS:
        it.addHandler(file_logger)

    # NOTE: Equip the alert webhooks if they're configured
    for webhook in parsed_args.alert_webhooks:
        if webhook.enabled:
            webhook_logger = base.AsyncAlertWebhookLogHandler(webhook_url=webhook.url, display_name=webhook.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for it in MODULE_LOGGERS:
                it.addHandler(webhook_logger)

    # NOTE: Ensure the path is setup for writing the database
    if not parsed_args.db_path_is_uri:
        try:
            pathlib.Path(parsed_args.db_path).parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error(f'Failed to create directory for {parsed_args.db_path}: {e}')
            sys.exit(1)

    # NOTE: Open the DB (create tables if necessary)
    db: backend.SetupDBResult = backend.setup_db(path=parsed_args.db_path, uri=parsed_args.db_path_is_uri, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    # NOTE: Dump some startup diagnostics
    assert db.sql_conn is not None
    info_string: str = backend.db_info_string(sql_conn=db.sql_conn, db_path=db.path, err=err)
    if err.has():
        log.error(err.build())
        sys.exit(1)

    # NOTE: Handle printing of the DB to standard out if requested
    if parsed_args.print_tables:
        base.print_db_to_stdout(db.sql_conn)
        sys.exit(0)

    # NOTE: Reprocess the logged events that never finished processing if requested
    if parsed_args.replay_events:
        replayed = notifications.replay_unprocessed_events(db.sql_conn)
        log.info(f'Replayed events: {replayed.processed} processed, {replayed.failed} failed')
        sys.exit(1 if replayed.failed else 0)

    startup_log  = '\n'
    startup_log += f'Store Subscription Sync\n{info_string}\n'
    startup_log += '  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    if 1:
        label = ' (URI)' if parsed_args.db_path_is_uri else ''
        startup_log += f'    DB loaded from: {db.path}{label}\n'
        startup_log += f'    Logging to: {parsed_args.log_path}\n'
        startup_log += f'    Store API timeout: {parsed_args.http_timeout_s}s\n'
        startup_log += f'    Access granting statuses: {", ".join(sorted(it.value for it in parsed_args.parsed_access_statuses))}\n'
        startup_log += f'    Lapsed subscription sweep every: {base.format_seconds(parsed_args.sweep_interval_s)}\n'
    if parsed_args.unsafe_logging:
        startup_log += '    Unsafe logging enabled (this must NOT be used in production)\n'
    if len(parsed_args.apple_root_certs):
        label = ' with online revocation checks' if parsed_args.apple_online_checks else ''
        startup_log += f'    Apple signature verification: {len(parsed_args.apple_root_certs)} root certificate(s){label}\n'
    else:
        startup_log += '    Apple signature verification: disabled (no root certificates configured)\n'
    for it in parsed_args.google_pulls:
        startup_log += f'    Google Pub/Sub pull: app {it.app_id} from {it.project_name}/{it.subscription_name}\n'
    for it in parsed_args.alert_webhooks:
        if it.enabled:
            startup_log += f'    Alert Webhook Logger: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    # NOTE: Running the application just in Flask (e.g. local development) we need a way to signal
    # to the long-running maintenance and pull threads to terminate themselves otherwise the
    # application hangs on exit. In UWSGI the signal handlers are only respected when the
    # `py-call-osafterfork` flag is passed.
    _ = signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    _ = signal.signal(signal.SIGTERM, signal_handler) # Terminate
    _ = signal.signal(signal.SIGQUIT, signal_handler) # Quit

    # NOTE: Start pulling Google notifications for the Apps configured to use a pull subscription
    start_google_pulls(db.sql_conn, parsed_args.google_pulls, err)
    if err.has():
        log.error('Failed to startup, invalid Pub/Sub configuration:\n  ' + '\n  '.join(err.msg_list))
        sys.exit(1)

    # Dispatch a long-running thread that periodically expires lapsed subscriptions. In UWSGI mode
    # multiple processes each run one of these, the sweep is idempotent and serialised per
    # subscriber so the processes racing each other is harmless.
    thread = threading.Thread(target=maintenance_thread_entry_point, args=(db.path, parsed_args.db_path_is_uri, parsed_args.sweep_interval_s), daemon=True)
    thread.start()

    result: flask.Flask = server.init(testing_mode=False, db_path=db.path, db_path_is_uri=parsed_args.db_path_is_uri)

    # NOTE: Add flask to our global logger
    result.logger.addHandler(console_logger)
    result.logger.addHandler(file_logger)
    for it in webhook_loggers:
        result.logger.addHandler(it)

    # The flask runner/UWSGI takes over from here and runs the application for
    # us across multiple processes if necessary. We'll close our db connection
    # here. Each request we receive will open their own connection the DB.
    db.sql_conn.close()

    return result

# Flask entry point
stop_maintenance_thread  = False
maintenance_thread_event = threading.Event()
flask_app: flask.Flask   = entry_point()
