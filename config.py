import os
import sys
from typing import Dict, List

# ====================================================================================
# ENVIRONMENT CONFIGURATION: Изоляция PROD / STAGE / LOCAL через префиксы
# ====================================================================================
# ВАЖНО: Все переменные окружения должны использовать префикс окружения:
#   - PROD: PROD_DATABASE_URL, PROD_PANEL_BASE_URL, PROD_WEBHOOK_TOKEN
#   - STAGE: STAGE_DATABASE_URL, STAGE_PANEL_BASE_URL, STAGE_WEBHOOK_TOKEN
#   - LOCAL: LOCAL_DATABASE_URL, LOCAL_PANEL_BASE_URL, LOCAL_WEBHOOK_TOKEN
#
# Модуль НЕ завершает процесс при импорте: обязательные значения проверяются
# в validate_config(), который вызывается из main.py перед стартом.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()

# Флаги окружения для архитектурного разделения поведения
IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Получить переменную окружения с префиксом окружения

    Args:
        key: Имя переменной без префикса (например, "DATABASE_URL")
        default: Значение по умолчанию, если переменная не задана

    Returns:
        Значение переменной с префиксом (например, "STAGE_DATABASE_URL")

    Example:
        env("DATABASE_URL") -> "PROD_DATABASE_URL" (если APP_ENV=prod)
        env("SWEEP_BATCH_SIZE", default="500") -> "500" если не задано
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


def _env_int(key: str, default: int) -> int:
    raw = env(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"WARNING: {APP_ENV.upper()}_{key}={raw!r} is not an integer, using {default}", file=sys.stderr)
        return default


def _env_float(key: str, default: float) -> float:
    raw = env(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"WARNING: {APP_ENV.upper()}_{key}={raw!r} is not a number, using {default}", file=sys.stderr)
        return default


# Переменные, которые нельзя задавать без префикса окружения
_direct_usage_vars = ["DATABASE_URL", "PANEL_PASSWORD", "WEBHOOK_TOKEN", "BOT_TOKEN"]

# ====================================================================================
# DATABASE
# ====================================================================================
DATABASE_URL = env("DATABASE_URL")

# ====================================================================================
# PANEL (3x-ui): аккаунты VPN живут во внешней панели
# ====================================================================================
PANEL_BASE_URL = env("PANEL_BASE_URL").rstrip("/")
PANEL_USERNAME = env("PANEL_USERNAME")
PANEL_PASSWORD = env("PANEL_PASSWORD")
# Inbound, в котором создаются новые клиенты
PANEL_INBOUND_ID = _env_int("PANEL_INBOUND_ID", 1)
# VLESS flow для новых клиентов (пусто = не задавать)
PANEL_CLIENT_FLOW = env("PANEL_CLIENT_FLOW")
# limitIp = лимит устройств; false → панель получает limitIp=0 (без ограничения)
PANEL_ENFORCE_IP_LIMIT = env("PANEL_ENFORCE_IP_LIMIT", default="true").lower() == "true"
# Фиксированный таймаут каждого HTTP вызова панели
PANEL_TIMEOUT_SECONDS = _env_float("PANEL_TIMEOUT_SECONDS", 15.0)
# Сессия панели обновляется проактивно, не дожидаясь 401
PANEL_SESSION_LIFETIME_SECONDS = _env_int("PANEL_SESSION_LIFETIME_SECONDS", 50 * 60)

PANEL_ENABLED = bool(PANEL_BASE_URL and PANEL_USERNAME and PANEL_PASSWORD)

# ====================================================================================
# BACKGROUND SWEEPER
# ====================================================================================
WORKER_INTERVAL_MIN_SECONDS = 30
WORKER_INTERVAL_SECONDS = max(
    WORKER_INTERVAL_MIN_SECONDS,
    _env_int("WORKER_INTERVAL_SECONDS", 300),
)
SWEEP_BATCH_SIZE = _env_int("SWEEP_BATCH_SIZE", 500)
SWEEP_MAX_BATCHES = _env_int("SWEEP_MAX_BATCHES", 10)
# Ограничение параллелизма нагрузки на панель
SWEEP_NAMESPACE_CONCURRENCY = 2
SWEEP_SUBSCRIPTION_CONCURRENCY = 10
BAN_ENFORCEMENT_BATCH = 500
# Жёсткий таймаут одного тика (зависший тик не должен блокировать следующие)
SWEEP_TICK_TIMEOUT_SECONDS = _env_float("SWEEP_TICK_TIMEOUT_SECONDS", 240.0)

# ====================================================================================
# PROMO CODES
# ====================================================================================
# Глобальный (на пользователя) интервал между активациями любых промокодов
PROMO_COOLDOWN_SECONDS = _env_int("PROMO_COOLDOWN_SECONDS", 60 * 60)
# Текущая версия оферты: без её принятия промокоды не активируются
OFFER_VERSION = env("OFFER_VERSION", default="v1")

# ====================================================================================
# PAYMENTS / WEBHOOKS
# ====================================================================================
YOOKASSA_SHOP_ID = env("YOOKASSA_SHOP_ID")
YOOKASSA_SECRET_KEY = env("YOOKASSA_SECRET_KEY")
YOOKASSA_ENABLED = bool(YOOKASSA_SHOP_ID and YOOKASSA_SECRET_KEY)

CRYPTOBOT_TOKEN = env("CRYPTOBOT_TOKEN")
CRYPTOBOT_ENABLED = bool(CRYPTOBOT_TOKEN)

# Общий секрет вебхуков: заголовок X-Webhook-Token
WEBHOOK_TOKEN = env("WEBHOOK_TOKEN")
WEBHOOK_PORT = int(os.getenv("PORT") or env("WEBHOOK_PORT") or "8080")

# Тарифы: количество дней -> цена в рублях
PLAN_PRICES: Dict[int, int] = {
    30: _env_int("PLAN_PRICE_30", 199),
    90: _env_int("PLAN_PRICE_90", 549),
    180: _env_int("PLAN_PRICE_180", 999),
    365: _env_int("PLAN_PRICE_365", 1799),
}
DEVICE_SLOT_PRICE = _env_int("DEVICE_SLOT_PRICE", 99)
PAYMENT_CURRENCY = env("PAYMENT_CURRENCY", default="RUB")

# ====================================================================================
# TELEGRAM (только уведомления; UI бота вне этого сервиса)
# ====================================================================================
BOT_TOKEN = env("BOT_TOKEN")


def provider_enabled(provider: str) -> bool:
    """Проверить, настроен ли платёжный провайдер"""
    if provider == "yookassa":
        return YOOKASSA_ENABLED
    if provider == "cryptobot":
        return CRYPTOBOT_ENABLED
    return False


def get_config_errors() -> List[str]:
    """
    Собрать ошибки конфигурации без завершения процесса

    Returns:
        Список сообщений об ошибках (пустой, если конфигурация корректна)
    """
    errors = []
    if APP_ENV not in ("prod", "stage", "local"):
        errors.append(f"Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local")
    for var in _direct_usage_vars:
        if os.getenv(var):
            errors.append(f"Direct usage of {var} is FORBIDDEN, use {APP_ENV.upper()}_{var} instead")
    if not DATABASE_URL:
        errors.append(f"{APP_ENV.upper()}_DATABASE_URL environment variable is not set")
    if not PANEL_ENABLED:
        errors.append(
            f"{APP_ENV.upper()}_PANEL_BASE_URL / PANEL_USERNAME / PANEL_PASSWORD must be set"
        )
    if not WEBHOOK_TOKEN and (YOOKASSA_ENABLED or CRYPTOBOT_ENABLED):
        errors.append(f"{APP_ENV.upper()}_WEBHOOK_TOKEN is required when a payment provider is configured")
    if SWEEP_BATCH_SIZE <= 0 or SWEEP_MAX_BATCHES <= 0:
        errors.append("SWEEP_BATCH_SIZE and SWEEP_MAX_BATCHES must be positive")
    return errors


def validate_config() -> None:
    """
    Проверить конфигурацию при старте; завершает процесс при ошибках.
    Секреты в лог не выводятся.
    """
    errors = get_config_errors()
    if errors:
        for error in errors:
            print(f"ERROR: {error}", file=sys.stderr)
        sys.exit(1)
    print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)
