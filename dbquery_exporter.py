import yaml                     # For loading the .yaml config file
import os
import sys
import math
import time                     # For durations and connection lifetime tracking
import enum
import gzip
import queue
from queue import Queue         # For managing idle connection pool
import decimal
import logging                  # For structured logging
import argparse                 # For the command line surface
import datetime                 # For timestamp cell values and timezone-aware logging
import dataclasses
from pathlib import Path        # For clean file path handling
from contextlib import contextmanager
from threading import Semaphore, Lock  # For bounding and guarding pooled connections
from concurrent.futures import ThreadPoolExecutor, TimeoutError

import pytz
import tzlocal
import psycopg                  # For connecting to PostgreSQL
import pymysql                  # For connecting to MySQL / MariaDB
from flask import Flask, request, Response  # For HTTP metrics endpoint
from gunicorn.app.base import BaseApplication
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor as JobPoolExecutor


LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_ENV = "DBQUERY_EXPORTER_CONFIG"
EXTENSION_KEY = "dbquery_exporter"

DEFAULT_NAMESPACE = "postgresdb_exporter"

POSTGRES_DRIVERS = ("postgres", "postgresql")
MYSQL_DRIVERS = ("mysql", "mariadb")


class ExporterError(Exception):
    """Base class for all exporter errors."""


class ConfigError(ExporterError):
    pass


class DatabaseConnectionError(ExporterError):
    pass


class PoolClosedError(DatabaseConnectionError):
    """Raised when a closed connection pool is used."""

    def __init__(self, message="database is closed"):
        super().__init__(message)


class PoolTimeoutError(DatabaseConnectionError):
    pass


class QueryTimeoutError(ExporterError):
    pass


# --- Logging ---

class TZFormatter(logging.Formatter):
    """Logging formatter that renders times in a given tzinfo (pytz).

    Usage: set handler.setFormatter(TZFormatter(fmt, datefmt, tz=tzobj))
    """
    def __init__(self, fmt=None, datefmt=None, tz=None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record, datefmt=None):
        # record.created is a POSIX timestamp
        dt = datetime.datetime.fromtimestamp(record.created, tz=self.tz or datetime.timezone.utc)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def apply_logging_timezone(tzinfo):
    """Replace formatters on existing root handlers to use tzinfo for timestamps."""
    for h in logging.root.handlers:
        h.setFormatter(TZFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT, tz=tzinfo))


def setup_logging(log_file="stdout", level="info"):
    """
    Sends log records to standard output, or appends them to log_file.
    Falls back to standard output when the file cannot be opened.
    """
    numeric_level = getattr(logging, str(level).upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    handler = None
    fallback = False
    if log_file and log_file != "stdout":
        try:
            handler = logging.FileHandler(log_file, mode='a')
        except OSError:
            fallback = True
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    logging.basicConfig(level=numeric_level, handlers=[handler], force=True)
    if fallback:
        logging.info(f"Failed to log to file '{log_file}', using default stdout")


def resolve_timezone(tz_name):
    """Returns a tzinfo for an IANA zone name, or the local zone for 'system'."""
    if not tz_name or tz_name == 'system':
        return tzlocal.get_localzone()
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        raise ConfigError(f"Unknown timezone: {tz_name}")


# --- Configuration ---

@dataclasses.dataclass(frozen=True)
class QueryConfig:
    sql: str
    name: str
    interval: int = 1


@dataclasses.dataclass(frozen=True)
class DatabaseConfig:
    name: str
    user: str
    database: str
    password: str = ""
    host: str = "127.0.0.1"
    port: int = 5432
    driver: str = "postgres"
    max_idle_conns: int = 10
    max_open_conns: int = 10
    max_conn_lifetime: float = 0.0
    queries: tuple = ()


@dataclasses.dataclass(frozen=True)
class ExporterConfig:
    host: str = "0.0.0.0"
    port: int = 9102
    query_timeout: float = 30.0
    namespace: str = DEFAULT_NAMESPACE
    timezone: str = "system"
    scheduler_workers: int = 10
    databases: tuple = ()


def parse_duration(s):
    """
    Converts a duration string like '500ms', '10s', '5m', or '2h' into seconds (float).
    """
    units = {
        'ms': 0.001,
        's': 1,
        'm': 60,
        'h': 3600
    }

    s = s.strip().lower()
    for unit, factor in units.items():
        if s.endswith(unit):
            try:
                return float(s[:-len(unit)]) * factor
            except ValueError:
                raise ValueError(f"Invalid numeric value in duration: {s}")
    # Default fallback: assume it's raw seconds
    try:
        return float(s)
    except ValueError:
        raise ValueError(f"Unrecognized duration format: {s}")


def _normalize_keys(section, where):
    # queryTimeout, query_timeout and querytimeout all name the same key
    if not isinstance(section, dict):
        raise ConfigError(f"{where} must be a mapping, got {type(section).__name__}")
    return {str(k).replace('_', '').replace('-', '').lower(): v for k, v in section.items()}


def _as_int(value, key, where, default):
    # An explicit YAML null means "not set"
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{where}: '{key}' must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: '{key}' must be an integer, got {value!r}")


def _as_seconds(value, key, where, default):
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{where}: '{key}' must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return parse_duration(str(value))
    except ValueError as e:
        raise ConfigError(f"{where}: '{key}': {e}")


def _required(section, key, where):
    value = section.get(key.lower())
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ConfigError(f"{where}: missing required field '{key}'")
    return value


def _parse_query(raw, where):
    section = _normalize_keys(raw, where)
    query = QueryConfig(
        sql=str(_required(section, 'sql', where)),
        name=str(_required(section, 'name', where)),
        interval=_as_int(section.get('interval'), 'interval', where, 1),
    )
    if query.interval < 1:
        raise ConfigError(f"{where}: 'interval' must be at least 1 minute, got {query.interval}")
    return query


def _parse_database(raw, where):
    section = _normalize_keys(raw, where)
    database = str(_required(section, 'database', where))
    name = str(section.get('name') or database)
    where = f"database '{name}'"

    driver = str(section.get('driver') or 'postgres').lower()
    if driver not in POSTGRES_DRIVERS + MYSQL_DRIVERS:
        supported = ', '.join(POSTGRES_DRIVERS + MYSQL_DRIVERS)
        raise ConfigError(f"{where}: unsupported driver '{driver}' (supported: {supported})")

    raw_queries = section.get('queries') or []
    if not isinstance(raw_queries, list):
        raise ConfigError(f"{where}: 'queries' must be a list")
    queries = []
    seen = set()
    for i, raw_query in enumerate(raw_queries):
        query = _parse_query(raw_query, f"{where}, query #{i + 1}")
        if query.name in seen:
            raise ConfigError(f"{where}: duplicate query name '{query.name}'")
        seen.add(query.name)
        queries.append(query)
    if not queries:
        logging.warning(f"{where} has no queries configured")

    return DatabaseConfig(
        name=name,
        user=str(_required(section, 'user', where)),
        password=str(section.get('password') or ''),
        database=database,
        host=str(section.get('host') or '127.0.0.1'),
        port=_as_int(section.get('port'), 'port', where, 5432),
        driver=driver,
        max_idle_conns=_as_int(section.get('maxidleconns'), 'maxIdleConns', where, 10),
        max_open_conns=_as_int(section.get('maxopenconns'), 'maxOpenConns', where, 10),
        max_conn_lifetime=_as_seconds(section.get('maxconnlifetime'), 'maxConnLifetime', where, 0.0),
        queries=tuple(queries),
    )


def parse_config(raw):
    """
    Builds a validated ExporterConfig from the parsed YAML document.
    Unspecified fields take their documented defaults.
    """
    if raw is None:
        raw = {}
    section = _normalize_keys(raw, "config")

    raw_databases = section.get('databases') or []
    if not isinstance(raw_databases, list):
        raise ConfigError("config: 'databases' must be a list")
    databases = []
    seen = set()
    for i, raw_db in enumerate(raw_databases):
        db = _parse_database(raw_db, f"database #{i + 1}")
        if db.name in seen:
            raise ConfigError(f"duplicate database name '{db.name}'; set 'name' to tell them apart")
        seen.add(db.name)
        databases.append(db)
    if not databases:
        logging.warning("No databases configured; only the HTTP endpoint will be served")

    config = ExporterConfig(
        host=str(section.get('host') or '0.0.0.0'),
        port=_as_int(section.get('port'), 'port', "config", 9102),
        query_timeout=_as_seconds(section.get('querytimeout'), 'queryTimeout', "config", 30.0),
        namespace=str(section.get('namespace') or DEFAULT_NAMESPACE),
        timezone=str(section.get('timezone') or 'system'),
        scheduler_workers=_as_int(section.get('schedulerworkers'), 'schedulerWorkers', "config", 10),
        databases=tuple(databases),
    )
    if config.query_timeout <= 0:
        raise ConfigError(f"config: 'queryTimeout' must be positive, got {config.query_timeout}")
    if config.scheduler_workers < 1:
        raise ConfigError(f"config: 'schedulerWorkers' must be at least 1, got {config.scheduler_workers}")
    resolve_timezone(config.timezone)
    return config


def mask_passwords(raw):
    """Returns a copy of the raw config document with every password replaced by '***'."""
    # Round-trip through YAML for a deep copy of plain data
    masked = yaml.safe_load(yaml.dump(raw))
    if not isinstance(masked, dict):
        return masked
    for key, databases in masked.items():
        if str(key).lower() != 'databases' or not isinstance(databases, list):
            continue
        for db in databases:
            if not isinstance(db, dict):
                continue
            for db_key in db:
                if str(db_key).lower() == 'password':
                    db[db_key] = '***'
    return masked


def load_config(config_path):
    """
    Loads and validates the exporter config file.
    Raises ConfigError when the file is missing, malformed or invalid.
    """
    config_path = Path(config_path)
    logging.info(f"Loading config from: {config_path}")

    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed config file {config_path}: {e}")

    config = parse_config(raw)
    logging.info(f"Loaded config: {mask_passwords(raw)}")
    return config


# --- Value coercion ---

class CellKind(enum.Enum):
    """The closed set of value classes a driver returns for a scalar column."""
    NULL = "null"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    TIMESTAMP = "timestamp"
    BYTES = "bytes"
    TEXT = "text"
    UNKNOWN = "unknown"


def classify(value):
    if value is None:
        return CellKind.NULL
    # bool is a subclass of int
    if isinstance(value, bool):
        return CellKind.BOOLEAN
    if isinstance(value, int):
        return CellKind.INTEGER
    if isinstance(value, (float, decimal.Decimal)):
        return CellKind.FLOAT
    if isinstance(value, datetime.date):
        return CellKind.TIMESTAMP
    if isinstance(value, (bytes, bytearray, memoryview)):
        return CellKind.BYTES
    if isinstance(value, str):
        return CellKind.TEXT
    return CellKind.UNKNOWN


def _parse_float(text, kind):
    # Plain decimals only: no surrounding whitespace, no digit underscores
    if text != text.strip() or '_' in text:
        logging.error(f"Could not parse {kind.value} value {text!r}: not a plain decimal number")
        return math.nan, False
    try:
        return float(text), True
    except ValueError as e:
        logging.error(f"Could not parse {kind.value} value {text!r}: {e}")
        return math.nan, False


def _epoch_seconds(value):
    if not isinstance(value, datetime.datetime):
        value = datetime.datetime.combine(value, datetime.time())
    if value.tzinfo is None:
        # Drivers hand back "timestamp without time zone" as naive datetimes
        value = value.replace(tzinfo=datetime.timezone.utc)
    return float(math.floor(value.timestamp()))


def to_float(value):
    """
    Converts a SQL cell value to (float, ok) for Prometheus consumption.

    Integers, floats, decimals and booleans map to their numeric value,
    timestamps to whole Unix epoch seconds, text and bytes are parsed as a
    decimal number. NULL maps to (nan, True): a valid but unmeasurable value.
    Unparsable text and unknown types map to (nan, False). Never raises.
    """
    kind = classify(value)
    if kind is CellKind.NULL:
        return math.nan, True
    if kind is CellKind.BOOLEAN:
        return (1.0 if value else 0.0), True
    if kind is CellKind.INTEGER:
        try:
            return float(value), True
        except OverflowError:
            logging.error(f"Integer value {value} is out of float range")
            return math.nan, False
    if kind is CellKind.FLOAT:
        try:
            return float(value), True
        except (ValueError, OverflowError) as e:
            # Decimal('sNaN') refuses conversion
            logging.error(f"Could not convert {value!r} to float: {e}")
            return math.nan, False
    if kind is CellKind.TIMESTAMP:
        try:
            return _epoch_seconds(value), True
        except (ValueError, OverflowError, OSError) as e:
            logging.error(f"Could not convert timestamp {value!r} to epoch seconds: {e}")
            return math.nan, False
    if kind is CellKind.BYTES:
        try:
            text = bytes(value).decode('utf-8')
        except UnicodeDecodeError as e:
            logging.error(f"Could not decode bytes value {bytes(value)!r}: {e}")
            return math.nan, False
        return _parse_float(text, kind)
    if kind is CellKind.TEXT:
        return _parse_float(value, kind)
    if kind is CellKind.UNKNOWN:
        return math.nan, False
    raise AssertionError(f"unhandled cell kind {kind}")


# --- Connection management ---

def build_connection_string(db):
    """
    Builds the driver-specific connection string for a database config.
    Postgres-family drivers get a libpq conninfo string; every other driver
    gets the user:password@tcp(host:port)/database form.
    """
    if db.driver in POSTGRES_DRIVERS:
        return (f"user={db.user} password={db.password} host={db.host} "
                f"port={db.port} dbname={db.database} sslmode=disable")
    return f"{db.user}:{db.password}@tcp({db.host}:{db.port})/{db.database}"


def masked_connection_string(db):
    # Exclude password from logging
    return build_connection_string(dataclasses.replace(db, password='***'))


def driver_connect(db, query_timeout):
    """
    Returns a zero-argument callable opening one DB-API connection to db.

    Connection parameters are passed to the driver as separate arguments, so
    empty passwords and values with spaces or quotes reach it intact. Both
    drivers run in autocommit mode with a server-side timeout matching the
    query timeout, so an abandoned query frees its resources.
    """
    timeout_s = max(1, math.ceil(query_timeout))
    timeout_ms = int(query_timeout * 1000)
    if db.driver in POSTGRES_DRIVERS:
        def connect():
            return psycopg.connect(
                host=db.host,
                port=db.port,
                user=db.user,
                password=db.password,
                dbname=db.database,
                sslmode='disable',
                autocommit=True,
                connect_timeout=timeout_s,
                options=f"-c statement_timeout={timeout_ms}",
            )
        return connect
    if db.driver in MYSQL_DRIVERS:
        if db.driver == 'mariadb':
            # MariaDB counts max_statement_time in seconds
            init_command = f"SET SESSION max_statement_time={query_timeout:g}"
        else:
            init_command = f"SET SESSION max_execution_time={timeout_ms}"

        def connect():
            return pymysql.connect(
                host=db.host,
                port=db.port,
                user=db.user,
                password=db.password,
                database=db.database,
                autocommit=True,
                connect_timeout=timeout_s,
                read_timeout=timeout_s,
                init_command=init_command,
            )
        return connect
    raise DatabaseConnectionError(f"Unsupported driver: {db.driver}")


class PooledConnection:
    def __init__(self, conn):
        self.conn = conn
        self.created_at = time.time()

    def is_expired(self, max_lifetime):
        return max_lifetime > 0 and (time.time() - self.created_at) > max_lifetime

    def close(self):
        try:
            self.conn.close()
        except Exception as e:
            logging.warning(f"Error closing connection: {e}")


class ConnectionPool:
    """
    Thread-safe, lazily connecting pool of DB-API connections.

    Opening the pool does not touch the database; connections are created on
    first use. At most max_open connections exist at once (<= 0: unlimited)
    and at most max_idle are kept for reuse. Once closed, every use raises
    PoolClosedError.
    """

    def __init__(self, connect, max_idle=10, max_open=10, max_lifetime=0, acquire_timeout=None):
        if max_open > 0:
            max_idle = min(max_idle, max_open)
        self._connect = connect
        self._max_idle = max(0, max_idle)
        self._idle = Queue(maxsize=self._max_idle) if self._max_idle else None
        self._slots = Semaphore(max_open) if max_open > 0 else None
        self._max_lifetime = max_lifetime
        self._acquire_timeout = acquire_timeout
        self._lock = Lock()
        self.closed = False

    @contextmanager
    def connection(self):
        """Checks out a connection; it goes back to the pool unless the block raised."""
        if self.closed:
            raise PoolClosedError()
        if self._slots is not None and not self._slots.acquire(timeout=self._acquire_timeout):
            raise PoolTimeoutError(f"No connection available within {self._acquire_timeout} seconds")
        try:
            conn_wrapper = self._checkout()
            try:
                yield conn_wrapper.conn
            except BaseException:
                conn_wrapper.close()
                raise
            self._checkin(conn_wrapper)
        finally:
            if self._slots is not None:
                self._slots.release()

    def _checkout(self):
        while self._idle is not None:
            try:
                candidate = self._idle.get_nowait()
            except queue.Empty:
                break
            if candidate.is_expired(self._max_lifetime):
                logging.debug("Discarding expired pooled connection")
                candidate.close()
                continue
            return candidate
        return PooledConnection(self._connect())

    def _checkin(self, conn_wrapper):
        with self._lock:
            if self.closed or self._idle is None:
                conn_wrapper.close()
                return
            try:
                self._idle.put_nowait(conn_wrapper)
            except queue.Full:
                conn_wrapper.close()

    def _drain_idle(self):
        while self._idle is not None:
            try:
                self._idle.get_nowait().close()
            except queue.Empty:
                break

    def idle_count(self):
        return self._idle.qsize() if self._idle is not None else 0

    def _probe(self):
        with self.connection() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchall()
            finally:
                cursor.close()

    def ping(self):
        """
        Checks that the database answers. A stale idle connection gets one
        retry on a fresh connection before the failure is raised.
        """
        try:
            self._probe()
        except DatabaseConnectionError:
            raise
        except Exception as e:
            logging.debug(f"Ping failed on pooled connection ({e}); retrying on a fresh connection")
            self._drain_idle()
            self._probe()

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._drain_idle()


def open_pool(db, query_timeout):
    """
    Opens a pool for the database config. Does not check reachability.
    Raises DatabaseConnectionError for unsupported drivers.
    """
    connect = driver_connect(db, query_timeout)
    return ConnectionPool(
        connect,
        max_idle=db.max_idle_conns,
        max_open=db.max_open_conns,
        max_lifetime=db.max_conn_lifetime,
        acquire_timeout=query_timeout,
    )


class DatabaseTarget:
    """A configured database, the queries run against it and the pool they share."""

    def __init__(self, config, query_timeout, opener=open_pool):
        self.config = config
        self.name = config.name
        self.query_timeout = query_timeout
        self._opener = opener
        self._lock = Lock()
        self._pool = opener(config, query_timeout)

    @property
    def queries(self):
        return self.config.queries

    @property
    def pool(self):
        with self._lock:
            return self._pool

    def reopen(self, stale):
        """Swaps in a new pool unless another caller already replaced `stale`."""
        with self._lock:
            if self._pool is stale:
                logging.info(f"Reconnecting to database '{self.name}'")
                self._pool = self._opener(self.config, self.query_timeout)
            return self._pool

    def ensure_healthy(self):
        """
        Pings the database. A pool that was explicitly closed is reopened with
        the same settings and pinged again; any other failure is reported as
        unhealthy without reopening.
        """
        pool = self.pool
        try:
            pool.ping()
            return True
        except PoolClosedError:
            pass
        except Exception as e:
            logging.error(f"Error on connect to database '{self.name}': {e}")
            return False

        try:
            pool = self.reopen(pool)
            pool.ping()
            return True
        except Exception as e:
            logging.error(f"Error on reconnect to database '{self.name}': {e}")
            return False

    def close(self):
        with self._lock:
            self._pool.close()


# --- Query execution ---

class ExporterMetrics:
    """The four gauge families the exporter writes; last write wins per label set."""

    def __init__(self, namespace=DEFAULT_NAMESPACE, registry=None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.query_value = Gauge(
            'query_value', 'Value of business metrics from database',
            ['database', 'name', 'col'], namespace=namespace, registry=self.registry)
        self.query_error = Gauge(
            'query_error', 'Result of last query, 1 if we have errors on running query',
            ['database', 'name'], namespace=namespace, registry=self.registry)
        self.query_duration = Gauge(
            'query_duration_seconds', 'Duration of the query in seconds',
            ['database', 'name'], namespace=namespace, registry=self.registry)
        self.up = Gauge(
            'up', 'Database status',
            ['database'], namespace=namespace, registry=self.registry)


def _cancel(conn):
    cancel = getattr(conn, 'cancel', None)
    if cancel is None:
        return
    try:
        cancel()
    except Exception as e:
        logging.warning(f"Failed to cancel timed out query: {e}")


def _fetch(conn, sql):
    cursor = conn.cursor()
    try:
        cursor.execute(sql)
        if cursor.description is None:
            return [], []
        columns = [col[0] for col in cursor.description]
        return columns, cursor.fetchall()
    finally:
        cursor.close()


def fetch_rows(pool, sql, timeout):
    """
    Runs sql on a pooled connection and returns (columns, rows).
    Raises QueryTimeoutError when it does not finish within timeout seconds;
    the in-flight query is cancelled and its connection discarded.
    """
    # The connection is only visible to the timeout path while the query runs
    guard = Lock()
    state = {'conn': None, 'timed_out': False}

    def run():
        with pool.connection() as conn:
            with guard:
                state['conn'] = conn
            try:
                result = _fetch(conn, sql)
            finally:
                with guard:
                    state['conn'] = None
                    abandoned = state['timed_out']
            if abandoned:
                # Raising inside the block discards the connection instead of pooling it
                raise QueryTimeoutError(f"query finished after its timeout of {timeout} seconds")
            return result

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="query")
    future = executor.submit(run)
    try:
        return future.result(timeout=timeout)
    except TimeoutError:
        with guard:
            state['timed_out'] = True
            _cancel(state['conn'])
        raise QueryTimeoutError(f"query exceeded timeout of {timeout} seconds")
    finally:
        # Don't wait for a timed out query; its thread exits once the driver gives up
        executor.shutdown(wait=False)


def execute_query(target, query, metrics, query_timeout):
    """
    Runs one scheduled execution of query against target and projects the
    outcome into metrics. Never raises.

    A database that fails its health check only gets up=0; the query is not
    run and query_error is left alone. The error flag is 1 after an execution
    failure, a timeout or the first value that cannot be converted (which
    aborts the scan), and 0 once the whole result converted cleanly.
    """
    begun = time.monotonic()
    try:
        if not target.ensure_healthy():
            metrics.up.labels(database=target.name).set(0)
            return
        metrics.up.labels(database=target.name).set(1)

        error = metrics.query_error.labels(database=target.name, name=query.name)
        try:
            columns, rows = fetch_rows(target.pool, query.sql, query_timeout)
        except QueryTimeoutError:
            logging.error(f"Query '{query.name}' on database '{target.name}' timed out after {query_timeout} seconds")
            error.set(1)
            return
        except Exception as e:
            logging.error(f"Query '{query.name}' on database '{target.name}' failed: {e}")
            error.set(1)
            return

        for row in rows:
            for column, raw_value in zip(columns, row):
                value, ok = to_float(raw_value)
                if not ok:
                    logging.error(f"Cannot convert value {raw_value!r} of column '{column}' to float "
                                  f"on query '{query.name}' (database '{target.name}')")
                    error.set(1)
                    return
                metrics.query_value.labels(database=target.name, name=query.name, col=column).set(value)
        error.set(0)
        logging.debug(f"Query '{query.name}' on database '{target.name}' returned {len(rows)} rows")
    finally:
        duration = time.monotonic() - begun
        metrics.query_duration.labels(database=target.name, name=query.name).set(duration)


# --- Scheduling ---

def schedule_target(scheduler, target, metrics, query_timeout, start_immediately=True):
    """
    Registers one interval job per query of target, each running
    execute_query every `interval` minutes. Returns the created jobs.
    """
    jobs = []
    # Overlapping runs are allowed up to the pool's open-connection limit
    max_instances = max(1, target.config.max_open_conns)
    for query in target.queries:
        kwargs = {}
        if start_immediately:
            kwargs['next_run_time'] = datetime.datetime.now(scheduler.timezone)
        job = scheduler.add_job(
            execute_query,
            trigger='interval',
            minutes=query.interval,
            args=[target, query, metrics, query_timeout],
            id=f"{target.name}:{query.name}",
            name=f"{target.name}:{query.name}",
            replace_existing=True,
            max_instances=max_instances,
            **kwargs,
        )
        logging.info(f"Scheduled query '{query.name}' on database '{target.name}' every {query.interval} minute(s)")
        jobs.append(job)
    return jobs


class Exporter:
    """Owns the database targets, the scheduler running their queries and the metrics."""

    def __init__(self, config, metrics=None, opener=open_pool):
        self.config = config
        self.metrics = metrics if metrics is not None else ExporterMetrics(config.namespace)
        self.targets = []
        self.scheduler = BackgroundScheduler(
            timezone=resolve_timezone(config.timezone),
            executors={'default': JobPoolExecutor(config.scheduler_workers)},
            # A late first run (slow startup pings) must still run, not be dropped as misfired
            job_defaults={'coalesce': True, 'misfire_grace_time': None},
        )
        self._opener = opener
        self._lock = Lock()
        self._started = False
        self._stopped = False

    def start(self):
        """
        Opens every target, pings it once and schedules its queries.
        Unreachable targets are scheduled too: each run checks health first,
        so a database that comes up later is picked up on its next tick.
        """
        with self._lock:
            if self._started:
                return
            self._started = True

        for db in self.config.databases:
            logging.info(f"Connecting to database '{db.name}': {masked_connection_string(db)}")
            try:
                target = DatabaseTarget(db, self.config.query_timeout, opener=self._opener)
            except DatabaseConnectionError as e:
                logging.error(f"Error connecting to database '{db.name}': {e}")
                continue
            self.targets.append(target)

            healthy = target.ensure_healthy()
            self.metrics.up.labels(database=target.name).set(1 if healthy else 0)
            if not healthy:
                logging.warning(f"Database '{target.name}' is unreachable at startup; "
                                f"its queries stay scheduled and run once it answers")
            schedule_target(self.scheduler, target, self.metrics, self.config.query_timeout)

        self.scheduler.start()
        logging.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs "
                     f"across {len(self.targets)} databases")

    def shutdown(self):
        """
        Stops scheduling new runs, waits for running ones and closes every
        pool. Safe to call twice.
        """
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        if self.scheduler.running:
            # Running executions are bounded by the query timeout
            self.scheduler.shutdown(wait=True)
        for target in self.targets:
            target.close()
        logging.info("Exporter shut down")


def graceful_shutdown(app):
    """Shuts down the exporter attached to a Flask app created by create_app."""
    exporter = app.extensions.get(EXTENSION_KEY) if app is not None else None
    if exporter is None:
        logging.warning("No exporter attached to app; nothing to shut down")
        return
    exporter.shutdown()


# --- HTTP surface ---

def make_text_response(body_text, status=200, content_type=CONTENT_TYPE_LATEST):
    """Create a text response, gzip-compressed when the client supports it via Accept-Encoding."""
    body_bytes = body_text.encode('utf-8') if isinstance(body_text, str) else body_text

    accept_enc = request.headers.get('Accept-Encoding', '') or ''
    if 'gzip' in accept_enc.lower():
        compressed = gzip.compress(body_bytes)
        logging.debug(f"Compressed response: {len(body_bytes)} -> {len(compressed)} bytes")
        resp = Response(compressed, status=status)
        resp.headers['Content-Encoding'] = 'gzip'
        resp.headers['Content-Type'] = content_type
        resp.headers['Content-Length'] = str(len(compressed))
        return resp

    resp = Response(body_bytes, status=status)
    resp.headers['Content-Type'] = content_type
    resp.headers['Content-Length'] = str(len(body_bytes))
    return resp


LANDING_PAGE = """<html>
<head><title>Database Query Exporter</title></head>
<body>
<h1>Database Query Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
</body>
</html>
"""


def create_app(config=None, exporter=None):
    """
    Builds the Flask app serving the exporter's metrics.

    With no exporter given, one is built from config (or from the file named
    by $DBQUERY_EXPORTER_CONFIG, default config.yaml) and started. This lets
    gunicorn run "dbquery_exporter:create_app()" directly.
    """
    if exporter is None:
        if config is None:
            logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
            config = load_config(os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_FILE))
        exporter = Exporter(config)
        exporter.start()

    app = Flask(__name__)
    app.extensions[EXTENSION_KEY] = exporter

    @app.route('/metrics')
    def metrics():
        return make_text_response(generate_latest(exporter.metrics.registry))

    @app.route('/')
    def index():
        return make_text_response(LANDING_PAGE, content_type='text/html; charset=utf-8')

    return app


class ExporterApplication(BaseApplication):
    """Embedded gunicorn server: settings from gunicorn_config, bind from the exporter config."""

    def __init__(self, config, settings_module=None):
        self.config = config
        self.settings_module = settings_module
        super().__init__()

    def load_config(self):
        if self.settings_module is not None:
            for key, value in vars(self.settings_module).items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key, value)
        self.cfg.set('bind', f"{self.config.host}:{self.config.port}")
        # The scheduler lives in the worker, so there must be exactly one
        self.cfg.set('workers', 1)

    def load(self):
        return create_app(self.config)


# --- CLI ---

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="dbquery-exporter",
        description="Runs SQL queries on a schedule and exports their results as Prometheus gauges.",
    )
    parser.add_argument('-c', '--configFile', default=DEFAULT_CONFIG_FILE,
                        help="Config file name (default: config.yaml)")
    parser.add_argument('-l', '--logFile', default='stdout',
                        help="Log filename (default: stdout)")
    parser.add_argument('--logLevel', default='info',
                        choices=['debug', 'info', 'warning', 'error', 'critical'],
                        help="Log level (default: info)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.logFile, args.logLevel)

    try:
        config = load_config(args.configFile)
    except ConfigError as e:
        logging.critical(f"Fatal error on reading configuration: {e}")
        return 1
    apply_logging_timezone(resolve_timezone(config.timezone))

    import gunicorn_config
    logging.info(f"listen: {config.host}:{config.port}")
    ExporterApplication(config, settings_module=gunicorn_config).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
