import asyncpg
import asyncio
import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
import config
from app.utils.retry import retry_async
from app.core.metrics import get_metrics, timer

logger = logging.getLogger(__name__)

# ====================================================================================
# SAFE STARTUP GUARD: Глобальный флаг готовности базы данных
# ====================================================================================
# Этот флаг отражает, инициализирована ли база данных и безопасна ли она для использования.
# health_server читает его без обращения к БД.
# ====================================================================================
DB_READY: bool = False


class DuplicateRowError(Exception):
    """Нарушение уникального ограничения (asyncpg.UniqueViolationError на границе БД)"""

    def __init__(self, table: str, constraint: Optional[str] = None):
        self.table = table
        self.constraint = constraint
        super().__init__(f"duplicate row in {table} ({constraint or 'unique constraint'})")


# ====================================================================================
# UTC HELPERS: DB boundary — TIMESTAMP WITHOUT TIME ZONE requires naive UTC
# ====================================================================================
# PostgreSQL schema uses TIMESTAMP (without time zone). asyncpg expects naive datetime
# for these columns. Application layer uses timezone-aware UTC.
# STRICT RULE: All datetime passed TO asyncpg → _to_db_utc. All datetime read FROM DB → _from_db_utc.
# ====================================================================================

def _to_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert aware datetime to naive UTC for DB storage.
    Naive input is rejected: the application layer is always timezone-aware.
    """
    if dt is None:
        return None
    assert dt.tzinfo is not None, "Expected timezone-aware datetime"
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert naive DB datetime to aware UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return _to_db_utc(value)
    return value


def _row_to_dict(row: Optional[asyncpg.Record]) -> Optional[Dict[str, Any]]:
    """asyncpg.Record -> dict, все datetime приводятся к aware UTC"""
    if row is None:
        return None
    result = dict(row)
    for key, value in result.items():
        if isinstance(value, datetime):
            result[key] = _from_db_utc(value)
    return result


def _rows_affected(status: str) -> int:
    """'UPDATE 1' -> 1"""
    try:
        return int(status.split()[-1])
    except (AttributeError, ValueError, IndexError):
        return 0


# ====================================================================================
# CONDITIONAL UPDATE PRIMITIVES (compare-and-swap)
# ====================================================================================
# update_where(): единственный способ менять строки subscriptions/payments/promo_codes/users
# под конкурентной нагрузкой. Предикаты умеют и рендерить SQL, и проверять значение
# в памяти (тестовый FakeDatabase использует ту же семантику).
# ====================================================================================

class Predicate:
    """Условие на значение одной колонки"""

    def to_sql(self, column: str, params: List[Any]) -> str:
        raise NotImplementedError

    def matches(self, value: Any) -> bool:
        raise NotImplementedError


class _IsNull(Predicate):
    def to_sql(self, column: str, params: List[Any]) -> str:
        return f"{column} IS NULL"

    def matches(self, value: Any) -> bool:
        return value is None

    def __repr__(self) -> str:
        return "IS_NULL"


class _NotNull(Predicate):
    def to_sql(self, column: str, params: List[Any]) -> str:
        return f"{column} IS NOT NULL"

    def matches(self, value: Any) -> bool:
        return value is not None

    def __repr__(self) -> str:
        return "NOT_NULL"


IS_NULL = _IsNull()
NOT_NULL = _NotNull()

_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


class Cmp(Predicate):
    """column <op> value; NULL never matches (SQL semantics)"""

    def __init__(self, op: str, value: Any):
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")
        self.op = op
        self.value = value

    def to_sql(self, column: str, params: List[Any]) -> str:
        params.append(_db_value(self.value))
        return f"{column} {self.op} ${len(params)}"

    def matches(self, value: Any) -> bool:
        if value is None or self.value is None:
            return False
        return _OPERATORS[self.op](value, self.value)

    def __repr__(self) -> str:
        return f"Cmp({self.op!r}, {self.value!r})"


class AnyOf(Predicate):
    """OR нескольких предикатов на одну колонку"""

    def __init__(self, *predicates: Predicate):
        self.predicates = predicates

    def to_sql(self, column: str, params: List[Any]) -> str:
        parts = [p.to_sql(column, params) for p in self.predicates]
        return "(" + " OR ".join(parts) + ")"

    def matches(self, value: Any) -> bool:
        return any(p.matches(value) for p in self.predicates)

    def __repr__(self) -> str:
        return f"AnyOf{self.predicates!r}"


class Increment:
    """Патч вида column = column + amount"""

    def __init__(self, amount: int = 1):
        self.amount = amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


def as_predicate(expected: Any) -> Predicate:
    """Plain value -> equality; None -> IS NULL"""
    if isinstance(expected, Predicate):
        return expected
    if expected is None:
        return IS_NULL
    return Cmp("=", expected)


# Колонки, которые разрешено менять через update_where (защита от SQL injection в именах)
_UPDATABLE_COLUMNS: Dict[str, set] = {
    "users": {"username", "offer_accepted_at", "offer_version", "last_promo_activated_at"},
    "subscriptions": {
        "panel_namespace", "account_ref", "panel_sub_id", "device_limit", "enabled",
        "expires_at", "paid_until", "status", "last_synced_at",
    },
    "payments": {
        "provider_payment_id", "status", "paid_at", "target_expires_at", "target_device_limit",
        "processing_at", "applied_at", "notification_sent", "raw_webhook",
    },
    "promo_codes": {"used_count", "max_uses", "expires_at"},
}
_PREDICATE_COLUMNS: Dict[str, set] = {
    "users": _UPDATABLE_COLUMNS["users"] | {"telegram_id"},
    "subscriptions": _UPDATABLE_COLUMNS["subscriptions"] | {"user_id"},
    "payments": _UPDATABLE_COLUMNS["payments"] | {"user_id", "type", "provider"},
    "promo_codes": _UPDATABLE_COLUMNS["promo_codes"] | {"code"},
}
_TABLES_WITH_UPDATED_AT = {"subscriptions"}


def build_update_sql(
    table: str,
    row_id: int,
    expected: Dict[str, Any],
    patch: Dict[str, Any],
) -> tuple:
    """
    Собрать UPDATE ... WHERE id = $1 AND <expected> для update_where

    Returns:
        (sql, params)

    Raises:
        ValueError: неизвестная таблица/колонка или пустой patch
    """
    if table not in _UPDATABLE_COLUMNS:
        raise ValueError(f"Table is not updatable: {table}")
    if not patch:
        raise ValueError("Empty patch")

    params: List[Any] = [row_id]
    set_parts = []
    for column, value in patch.items():
        if column not in _UPDATABLE_COLUMNS[table]:
            raise ValueError(f"Column {table}.{column} is not updatable")
        if isinstance(value, Increment):
            params.append(value.amount)
            set_parts.append(f"{column} = {column} + ${len(params)}")
        else:
            params.append(_db_value(value))
            set_parts.append(f"{column} = ${len(params)}")
    if table in _TABLES_WITH_UPDATED_AT:
        set_parts.append("updated_at = (NOW() AT TIME ZONE 'UTC')")

    where_parts = ["id = $1"]
    for column, condition in expected.items():
        if column not in _PREDICATE_COLUMNS[table] and column != "id":
            raise ValueError(f"Column {table}.{column} cannot be used in a predicate")
        where_parts.append(as_predicate(condition).to_sql(column, params))

    sql = f"UPDATE {table} SET {', '.join(set_parts)} WHERE {' AND '.join(where_parts)}"
    return sql, params


# Получаем DATABASE_URL из переменных окружения через config.env()
DATABASE_URL = config.DATABASE_URL


# ====================================================================================
# DB POOL CONFIG — ENV-overridable, single source of truth
# ====================================================================================
def _get_pool_config() -> dict:
    """Build asyncpg.create_pool kwargs. Single source of truth for all pool creation."""
    return {
        "min_size": int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        "max_size": int(os.getenv("DB_POOL_MAX_SIZE", "15")),
        "max_inactive_connection_lifetime": 300,
        "timeout": int(os.getenv("DB_POOL_ACQUIRE_TIMEOUT", "10")),
        "command_timeout": int(os.getenv("DB_POOL_COMMAND_TIMEOUT", "30")),
    }


# Глобальный пул соединений
_pool: Optional[asyncpg.Pool] = None


async def get_pool() -> asyncpg.Pool:
    """
    Получить пул соединений, создав его при необходимости

    - DB unavailable → RuntimeError / asyncpg error raised
    - transient connection errors → retried once with backoff
    """
    global _pool
    if not DATABASE_URL:
        raise RuntimeError(f"{config.APP_ENV.upper()}_DATABASE_URL is not configured")
    if _pool is None:
        pool_config = _get_pool_config()
        with timer("db_latency_ms"):
            _pool = await retry_async(
                lambda: asyncpg.create_pool(DATABASE_URL, **pool_config),
                retries=1,
                base_delay=0.5,
                max_delay=5.0,
                retry_on=(asyncpg.PostgresError, OSError),
            )
        logger.info(
            "DB_POOL_CONFIG min=%s max=%s acquire_timeout=%s command_timeout=%s",
            pool_config["min_size"], pool_config["max_size"],
            pool_config["timeout"], pool_config["command_timeout"],
        )
    return _pool


async def close_pool():
    """Закрыть пул соединений"""
    global _pool, DB_READY
    if _pool:
        await _pool.close()
        _pool = None
        DB_READY = False
        logger.info("Database connection pool closed")


async def init_db() -> bool:
    """
    Инициализация базы данных: probe, pool, миграции

    Returns:
        True если инициализация успешна, False если произошла ошибка
    """
    global DB_READY, _pool

    # Идемпотентно: повторный вызов безопасен
    if DB_READY:
        logger.info("Database already initialized (DB_READY=True), skipping init")
        return True

    if not DATABASE_URL:
        logger.error("DATABASE_URL not configured")
        return False

    try:
        conn = await asyncpg.connect(DATABASE_URL)
        await conn.execute("SELECT 1")
        await conn.close()
        logger.info("DB connectivity probe successful")
    except Exception as e:
        logger.error(f"DB connectivity probe failed: {e}")
        return False

    try:
        pool = await get_pool()
    except Exception as e:
        logger.error(f"Failed to create database pool: {e}")
        return False

    await asyncio.sleep(0)

    import migrations
    if not await migrations.run_migrations_safe(pool):
        logger.error("Migration execution failed")
        return False

    # Schema changes can invalidate cached prepared statements; fresh pool clears cache.
    await pool.close()
    _pool = None
    try:
        await get_pool()
    except Exception as e:
        logger.error(f"Failed to recreate pool after migrations: {e}")
        return False

    DB_READY = True
    logger.info("Database initialized, DB_READY=True")
    return True


@asynccontextmanager
async def _connection(conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
    """Использовать переданное соединение (внутри транзакции) или взять из пула"""
    if conn is not None:
        yield conn
        return
    pool = await get_pool()
    async with pool.acquire() as acquired:
        yield acquired


async def update_where(
    table: str,
    row_id: int,
    expected: Dict[str, Any],
    patch: Dict[str, Any],
    conn: Optional[asyncpg.Connection] = None,
) -> int:
    """
    Условный UPDATE (compare-and-swap) одной строки

    Args:
        table: Имя таблицы (см. _UPDATABLE_COLUMNS)
        row_id: Первичный ключ строки
        expected: {column: Predicate | value} — все условия должны выполняться
        patch: {column: value | Increment}
        conn: Соединение (если вызов внутри транзакции)

    Returns:
        Количество изменённых строк (0 или 1). 0 означает, что условие не выполнено
        (кто-то другой уже изменил строку) — это НЕ ошибка.
    """
    sql, params = build_update_sql(table, row_id, expected, patch)
    async with _connection(conn) as c:
        with timer("db_latency_ms"):
            status = await c.execute(sql, *params)
    return _rows_affected(status)


async def with_transaction(
    fn: Callable[[asyncpg.Connection], Awaitable[Any]],
    isolation: str = "serializable",
    retries: int = 3,
) -> Any:
    """
    Выполнить fn(conn) в одной транзакции

    Serialization failures (SQLSTATE 40001) and deadlocks are retried with a short
    backoff: the whole transaction is re-run, so fn must be free of side effects
    outside the database. Any other exception rolls the transaction back and propagates.
    """
    pool = await get_pool()

    async def _attempt():
        async with pool.acquire() as conn:
            async with conn.transaction(isolation=isolation):
                return await fn(conn)

    try:
        return await retry_async(
            _attempt,
            retries=retries,
            base_delay=0.05,
            max_delay=0.5,
            retry_on=(
                asyncpg.exceptions.SerializationError,
                asyncpg.exceptions.DeadlockDetectedError,
            ),
        )
    except asyncpg.exceptions.SerializationError:
        get_metrics().increment_counter("db_serialization_failures_total")
        raise


# ====================================================================================
# USERS
# ====================================================================================

async def get_user(telegram_id: int, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    """Получить пользователя по Telegram ID"""
    async with _connection(conn) as c:
        row = await c.fetchrow("SELECT * FROM users WHERE telegram_id = $1", telegram_id)
    return _row_to_dict(row)


async def get_user_by_id(user_id: int, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    """Получить пользователя по внутреннему id"""
    async with _connection(conn) as c:
        row = await c.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
    return _row_to_dict(row)


async def get_or_create_user(telegram_id: int, username: Optional[str] = None) -> Dict[str, Any]:
    """
    Получить или создать пользователя (race-safe через ON CONFLICT)

    Returns:
        Строка users
    """
    async with _connection() as c:
        await c.execute(
            "INSERT INTO users (telegram_id, username) VALUES ($1, $2) ON CONFLICT (telegram_id) DO NOTHING",
            telegram_id, username,
        )
        row = await c.fetchrow("SELECT * FROM users WHERE telegram_id = $1", telegram_id)
    return _row_to_dict(row)


async def accept_offer(telegram_id: int, version: str, now: datetime) -> bool:
    """Зафиксировать принятие оферты указанной версии"""
    async with _connection() as c:
        status = await c.execute(
            "UPDATE users SET offer_accepted_at = $2, offer_version = $3 WHERE telegram_id = $1",
            telegram_id, _to_db_utc(now), version,
        )
    return _rows_affected(status) == 1


async def delete_user_data(user_id: int) -> None:
    """
    Удалить все локальные данные пользователя (payments, promo uses, subscription, user).
    blocked_identities НЕ удаляются: бан переживает удаление пользователя.
    """
    async with _connection() as c:
        async with c.transaction():
            await c.execute("DELETE FROM promo_code_uses WHERE user_id = $1", user_id)
            await c.execute("DELETE FROM payments WHERE user_id = $1", user_id)
            await c.execute("DELETE FROM subscriptions WHERE user_id = $1", user_id)
            await c.execute("DELETE FROM users WHERE id = $1", user_id)
    logger.info(f"USER_DATA_DELETED user_id={user_id}")


# ====================================================================================
# SUBSCRIPTIONS
# ====================================================================================

_SUBSCRIPTION_SELECT = """
    SELECT s.*, u.telegram_id
    FROM subscriptions s
    JOIN users u ON u.id = s.user_id
"""


async def get_subscription_by_user(
    user_id: int,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    """Получить подписку пользователя (с telegram_id)"""
    async with _connection(conn) as c:
        row = await c.fetchrow(_SUBSCRIPTION_SELECT + " WHERE s.user_id = $1", user_id)
    return _row_to_dict(row)


async def insert_subscription(
    user_id: int,
    panel_namespace: int,
    account_ref: str,
    panel_sub_id: Optional[str],
    device_limit: int,
    enabled: bool,
    expires_at: Optional[datetime],
    status: str,
    now: datetime,
) -> Dict[str, Any]:
    """
    Создать строку подписки

    Raises:
        DuplicateRowError: подписка пользователя уже создана конкурентно
    """
    async with _connection() as c:
        try:
            await c.execute(
                """
                INSERT INTO subscriptions
                (user_id, panel_namespace, account_ref, panel_sub_id, device_limit, enabled,
                 expires_at, status, last_synced_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                """,
                user_id, panel_namespace, account_ref, panel_sub_id, device_limit, enabled,
                _to_db_utc(expires_at), status, _to_db_utc(now),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRowError("subscriptions", getattr(e, "constraint_name", None)) from e
        row = await c.fetchrow(_SUBSCRIPTION_SELECT + " WHERE s.user_id = $1", user_id)
    return _row_to_dict(row)


async def update_subscription(
    subscription_id: int,
    patch: Dict[str, Any],
    conn: Optional[asyncpg.Connection] = None,
) -> int:
    """Безусловное обновление полей подписки (последний писатель выигрывает)"""
    return await update_where("subscriptions", subscription_id, {}, patch, conn=conn)


async def list_sweep_candidates(after_id: int, limit: int, now: datetime) -> List[Dict[str, Any]]:
    """
    Страница кандидатов для фоновой сверки (курсор по id ASC)

    Дешёвый локальный префильтр: ACTIVE, enabled, истёкшие, без срока, или с
    будущим paid_until. Панель остаётся источником истины.
    """
    async with _connection() as c:
        rows = await c.fetch(
            _SUBSCRIPTION_SELECT
            + """
            WHERE s.id > $1
              AND (s.status = 'ACTIVE'
                   OR s.enabled = TRUE
                   OR s.expires_at <= $2
                   OR s.expires_at IS NULL
                   OR s.paid_until > $2)
            ORDER BY s.id ASC
            LIMIT $3
            """,
            after_id, _to_db_utc(now), limit,
        )
    return [_row_to_dict(r) for r in rows]


# ====================================================================================
# PAYMENTS
# ====================================================================================

async def create_payment(
    user_id: int,
    provider: str,
    payment_type: str,
    amount: float,
    currency: str,
    plan_days: Optional[int] = None,
    device_slots: Optional[int] = None,
    provider_payment_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Создать платёж в статусе PENDING

    Raises:
        DuplicateRowError: (provider, provider_payment_id) уже существует
    """
    async with _connection() as c:
        try:
            row = await c.fetchrow(
                """
                INSERT INTO payments
                (user_id, provider, provider_payment_id, type, plan_days, device_slots, amount, currency, status)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'PENDING')
                RETURNING *
                """,
                user_id, provider, provider_payment_id, payment_type, plan_days, device_slots, amount, currency,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRowError("payments", getattr(e, "constraint_name", None)) from e
    return _row_to_dict(row)


async def get_payment(payment_id: int, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    """Получить платёж по id"""
    async with _connection(conn) as c:
        row = await c.fetchrow("SELECT * FROM payments WHERE id = $1", payment_id)
    return _row_to_dict(row)


async def get_payment_by_provider_id(provider: str, provider_payment_id: str) -> Optional[Dict[str, Any]]:
    """Найти платёж по идентификатору провайдера"""
    async with _connection() as c:
        row = await c.fetchrow(
            "SELECT * FROM payments WHERE provider = $1 AND provider_payment_id = $2",
            provider, provider_payment_id,
        )
    return _row_to_dict(row)


async def list_unapplied_payments(limit: int = 100) -> List[Dict[str, Any]]:
    """SUCCEEDED-платежи без applied_at и без активного claim"""
    async with _connection() as c:
        rows = await c.fetch(
            """
            SELECT * FROM payments
            WHERE status = 'SUCCEEDED' AND applied_at IS NULL AND processing_at IS NULL
            ORDER BY id ASC
            LIMIT $1
            """,
            limit,
        )
    return [_row_to_dict(r) for r in rows]


# ====================================================================================
# PROMO CODES
# ====================================================================================

async def get_promo_by_code(code: str, conn: Optional[asyncpg.Connection] = None) -> Optional[Dict[str, Any]]:
    """Получить промокод по нормализованному коду"""
    async with _connection(conn) as c:
        row = await c.fetchrow("SELECT * FROM promo_codes WHERE code = $1", code)
    return _row_to_dict(row)


async def create_promo(
    code: str,
    bonus_days: int,
    max_uses: Optional[int],
    expires_at: Optional[datetime],
) -> Dict[str, Any]:
    """
    Создать промокод

    Raises:
        DuplicateRowError: код уже существует
    """
    async with _connection() as c:
        try:
            row = await c.fetchrow(
                """
                INSERT INTO promo_codes (code, bonus_days, max_uses, expires_at)
                VALUES ($1, $2, $3, $4)
                RETURNING *
                """,
                code, bonus_days, max_uses, _to_db_utc(expires_at),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRowError("promo_codes", getattr(e, "constraint_name", None)) from e
    return _row_to_dict(row)


async def get_promo_use(
    promo_id: int,
    user_id: int,
    conn: Optional[asyncpg.Connection] = None,
) -> Optional[Dict[str, Any]]:
    """Найти активацию промокода пользователем"""
    async with _connection(conn) as c:
        row = await c.fetchrow(
            "SELECT * FROM promo_code_uses WHERE promo_id = $1 AND user_id = $2",
            promo_id, user_id,
        )
    return _row_to_dict(row)


async def insert_promo_use(
    promo_id: int,
    user_id: int,
    now: datetime,
    conn: Optional[asyncpg.Connection] = None,
) -> None:
    """
    Записать активацию промокода

    Raises:
        DuplicateRowError: пользователь уже активировал этот промокод
    """
    async with _connection(conn) as c:
        try:
            await c.execute(
                "INSERT INTO promo_code_uses (promo_id, user_id, activated_at) VALUES ($1, $2, $3)",
                promo_id, user_id, _to_db_utc(now),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateRowError("promo_code_uses", getattr(e, "constraint_name", None)) from e


# ====================================================================================
# BLOCKED IDENTITIES
# ====================================================================================

async def list_blocked_identities(after_id: int = 0, limit: int = 500) -> List[Dict[str, Any]]:
    """Страница заблокированных пользователей (курсор по id ASC)"""
    async with _connection() as c:
        rows = await c.fetch(
            "SELECT * FROM blocked_identities WHERE id > $1 ORDER BY id ASC LIMIT $2",
            after_id, limit,
        )
    return [_row_to_dict(r) for r in rows]


async def is_blocked(telegram_id: int) -> bool:
    """Проверить, заблокирован ли пользователь"""
    async with _connection() as c:
        value = await c.fetchval("SELECT 1 FROM blocked_identities WHERE telegram_id = $1", telegram_id)
    return value is not None


async def add_blocked_identity(telegram_id: int, reason: Optional[str] = None) -> None:
    """Заблокировать пользователя (upsert)"""
    async with _connection() as c:
        await c.execute(
            """
            INSERT INTO blocked_identities (telegram_id, reason) VALUES ($1, $2)
            ON CONFLICT (telegram_id) DO UPDATE SET reason = EXCLUDED.reason
            """,
            telegram_id, reason,
        )


async def remove_blocked_identity(telegram_id: int) -> bool:
    """Снять блокировку; False если пользователь не был заблокирован"""
    async with _connection() as c:
        status = await c.execute("DELETE FROM blocked_identities WHERE telegram_id = $1", telegram_id)
    return _rows_affected(status) > 0
