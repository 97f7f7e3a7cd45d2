"""
HTTP клиент панели 3x-ui.

Панель — внешний источник истины для expiryTime / enable / limitIp клиентов.
Этот модуль знает только про транспорт: сессия, таймауты, конверт ответа.
Бизнес-операции над аккаунтами живут в app.services.panel.

EXTERNAL DEPENDENCY POLICY:
- Каждый вызов имеет фиксированный таймаут (PANEL_TIMEOUT_SECONDS, по умолчанию 15s)
- Сессия (cookie) обновляется проактивно по фиксированному сроку жизни,
  а также реактивно при 401/403 (один повторный логин)
- Таймаут / сеть / 5xx → один повтор с backoff, затем PanelError наверх
- 4xx и success=false → PanelRequestError сразу (НЕ повторяется)
"""
import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

import config
from app.utils.retry import retry_async
from app.core.metrics import timer

logger = logging.getLogger(__name__)

MAX_RETRIES = 1
RETRY_DELAY = 0.15


class PanelError(Exception):
    """Базовый класс ошибок панели"""
    pass


class PanelTimeoutError(PanelError):
    """Таймаут при обращении к панели"""
    pass


class PanelConnectionError(PanelError):
    """Панель недоступна (сеть)"""
    pass


class PanelServerError(PanelError):
    """HTTP 5xx от панели"""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class PanelAuthError(PanelError):
    """Логин не удался или сессия отклонена после повторного логина"""
    pass


class PanelInvalidResponseError(PanelError):
    """Ответ не JSON или не соответствует конверту {success, msg, obj}"""
    pass


class PanelRequestError(PanelError):
    """Панель отклонила запрос: HTTP 4xx или success=false"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PanelNotFoundError(PanelRequestError):
    """HTTP 404: эндпоинт или объект отсутствует"""
    pass


_TRANSIENT_PANEL_ERRORS = (PanelTimeoutError, PanelConnectionError, PanelServerError)


class PanelApiClient:
    """
    Async клиент 3x-ui поверх httpx.AsyncClient.

    Cookie сессии хранит сам httpx; мы лишь помним момент логина, чтобы
    перелогиниваться до истечения сессии на стороне панели.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = 15.0,
        session_lifetime: float = 50 * 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._username = username
        self._password = password
        self._session_lifetime = session_lifetime
        self._clock = clock
        self._logged_in_at: Optional[float] = None
        self._login_lock = asyncio.Lock()
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
            follow_redirects=False,
            headers={"Accept": "application/json"},
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _session_expired(self) -> bool:
        if self._logged_in_at is None:
            return True
        return self._clock() - self._logged_in_at >= self._session_lifetime

    async def login(self) -> None:
        """
        POST /login (form). Панель отвечает Set-Cookie с сессией.

        Raises:
            PanelAuthError: неверные учётные данные / нет cookie
            PanelTimeoutError, PanelConnectionError: транспорт
        """
        self._http.cookies.clear()
        try:
            response = await self._http.post(
                "/login",
                data={"username": self._username, "password": self._password},
            )
        except httpx.TimeoutException as e:
            raise PanelTimeoutError(f"Panel login timed out: {e}") from e
        except httpx.TransportError as e:
            raise PanelConnectionError(f"Panel login failed: {e}") from e

        if response.status_code >= 500:
            raise PanelServerError(f"Panel login HTTP {response.status_code}", response.status_code)
        if response.status_code >= 400:
            raise PanelAuthError(f"Panel login failed: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("success") is False:
            raise PanelAuthError(f"Panel login rejected: {body.get('msg') or 'unknown'}")
        if not self._http.cookies:
            raise PanelAuthError("Panel login did not return a session cookie")

        self._logged_in_at = self._clock()
        logger.info("PANEL_LOGIN_OK")

    async def _ensure_session(self, force: bool = False) -> None:
        async with self._login_lock:
            if force or self._session_expired():
                await self.login()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise PanelTimeoutError(f"Panel {method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise PanelConnectionError(f"Panel {method} {path} failed: {e}") from e

    async def _request_once(self, method: str, path: str, **kwargs) -> Any:
        await self._ensure_session()
        response = await self._send(method, path, **kwargs)

        # Сессия отклонена (или редирект на страницу логина) → один повторный логин
        if response.status_code in (401, 403) or response.is_redirect:
            logger.info(f"PANEL_SESSION_REJECTED path={path} status={response.status_code}, re-login")
            self._logged_in_at = None
            await self._ensure_session(force=True)
            response = await self._send(method, path, **kwargs)
            if response.status_code in (401, 403) or response.is_redirect:
                raise PanelAuthError(f"Panel rejected session for {path}: HTTP {response.status_code}")

        return parse_envelope(response, path)

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """
        Выполнить запрос к панели и вернуть obj из конверта

        Args:
            method: HTTP метод
            path: Путь относительно base_url (например, "/panel/api/inbounds/list")
            **kwargs: json= / data= для httpx

        Returns:
            Поле obj ответа (может быть None)

        Raises:
            PanelError: см. иерархию выше
        """
        with timer("panel_latency_ms"):
            return await retry_async(
                lambda: self._request_once(method, path, **kwargs),
                retries=MAX_RETRIES,
                base_delay=RETRY_DELAY,
                max_delay=1.0,
                retry_on=_TRANSIENT_PANEL_ERRORS,
            )

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, json=json)


def parse_envelope(response: httpx.Response, path: str) -> Any:
    """
    Разобрать ответ панели {success, msg, obj}

    Raises:
        PanelNotFoundError: HTTP 404
        PanelServerError: HTTP 5xx
        PanelRequestError: HTTP 4xx или success=false
        PanelInvalidResponseError: не JSON
    """
    status = response.status_code
    if status == 404:
        raise PanelNotFoundError(f"Panel {path}: HTTP 404", status)
    if status >= 500:
        raise PanelServerError(f"Panel {path}: HTTP {status}", status)
    if status >= 400:
        raise PanelRequestError(f"Panel {path}: HTTP {status}", status)

    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError as e:
        raise PanelInvalidResponseError(f"Panel {path}: invalid JSON (HTTP {status})") from e

    if isinstance(body, dict) and isinstance(body.get("success"), bool):
        if not body["success"]:
            raise PanelRequestError(f"Panel {path}: {body.get('msg') or 'unknown error'}", status)
        return body.get("obj")
    # Старые версии иногда отвечают без конверта
    return body


_client: Optional[PanelApiClient] = None


def get_panel_client() -> PanelApiClient:
    """Singleton клиента, сконфигурированного из config"""
    global _client
    if _client is None:
        if not config.PANEL_ENABLED:
            raise PanelAuthError("Panel is not configured (PANEL_BASE_URL / PANEL_USERNAME / PANEL_PASSWORD)")
        _client = PanelApiClient(
            base_url=config.PANEL_BASE_URL,
            username=config.PANEL_USERNAME,
            password=config.PANEL_PASSWORD,
            timeout=config.PANEL_TIMEOUT_SECONDS,
            session_lifetime=config.PANEL_SESSION_LIFETIME_SECONDS,
        )
    return _client


async def close_panel_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
