from __future__ import annotations

import time
from typing import Any, Iterator

import httpx

from bulkrecon.errors import AppError


class ApiError(AppError):
    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body_snippet: str | None = None,
        retryable: bool = False,
        details: dict | None = None,
        code: str | None = None,
    ):
        """
        Назначение:
            Исключение для ошибок HTTP/API уровня GraphApiClient.
        Контракт:
            - code: строковый код (HTTP_*, NETWORK_ERROR, INVALID_JSON и т.п.).
            - status_code/body_snippet используются для диагностики.
        """
        super().__init__(
            category="api",
            code=code or (f"HTTP_{status_code}" if status_code else "API_ERROR"),
            message=message,
            retryable=retryable,
            details=details or {},
        )
        self.status_code = status_code
        self.body_snippet = body_snippet


class GraphApiClient:
    def __init__(
        self,
        baseUrl: str,
        token: str,
        timeoutSeconds: float = 20.0,
        tlsSkipVerify: bool = False,
        caFile: str | None = None,
        retries: int = 3,
        retryBackoffSeconds: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Назначение:
            Клиент Microsoft Graph (bearer-токен) с простой политикой ретраев.
        Контракт:
            - token получен заранее; обновление токена вне зоны ответственности.
            - retries/retryBackoffSeconds управляют повторными попытками по 429/5xx.
        """
        verify: bool | str = True
        if tlsSkipVerify:
            verify = False
        elif caFile:
            verify = caFile

        self.baseUrl = baseUrl.rstrip("/")
        self.token = token
        self.retries = retries
        self.retryBackoffSeconds = retryBackoffSeconds
        self.retry_attempts = 0

        self.client = httpx.Client(
            base_url=self.baseUrl,
            timeout=timeoutSeconds,
            verify=verify,
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def getRetryAttempts(self) -> int:
        """Возвращает количество выполненных повторных попыток."""
        return self.retry_attempts

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {
            "accept": "application/json",
            "Authorization": f"Bearer {self.token}",
        }
        if extra:
            headers.update(extra)
        return headers

    def _should_retry(self, resp: httpx.Response) -> bool:
        """Решает, стоит ли повторить запрос (429 или 5xx)."""
        return resp.status_code == 429 or 500 <= resp.status_code <= 599

    def _sleep_backoff(self, attempt: int, resp: httpx.Response | None = None) -> None:
        """Экспоненциальная задержка; Retry-After от Graph имеет приоритет."""
        delay = self.retryBackoffSeconds * (2 ** attempt)
        if resp is not None:
            retry_after = resp.headers.get("Retry-After")
            if retry_after and retry_after.isdigit():
                delay = max(delay, float(retry_after))
        if delay > 0:
            time.sleep(delay)

    def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Запрос с ретраями по 429/5xx и сетевым ошибкам; иные не-2xx -> ApiError."""
        attempt = 0
        while True:
            try:
                resp = self.client.request(method, path, params=params, json=json, headers=self._headers(headers))
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt >= self.retries:
                    raise ApiError("Network error", status_code=None, retryable=False, code="NETWORK_ERROR") from exc
                self.retry_attempts += 1
                self._sleep_backoff(attempt)
                attempt += 1
                continue

            if 200 <= resp.status_code <= 299:
                return resp

            if self._should_retry(resp) and attempt < self.retries:
                self.retry_attempts += 1
                self._sleep_backoff(attempt, resp)
                attempt += 1
                continue

            body_snippet = resp.text[:200] if resp.text else None
            raise ApiError(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                body_snippet=body_snippet,
                retryable=self._should_retry(resp),
                details={"body_snippet": body_snippet},
            )

    @staticmethod
    def _parse(resp: httpx.Response) -> Any:
        if not resp.text:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError(
                "Invalid JSON response",
                status_code=resp.status_code,
                retryable=False,
                code="INVALID_JSON",
            ) from exc

    def getJson(self, path: str, params: dict[str, Any] | None = None, headers: dict[str, str] | None = None) -> Any:
        """GET JSON с ретраями, парсит ответ или бросает ApiError."""
        return self._parse(self._request("GET", path, params=params, headers=headers))

    def postJson(self, path: str, jsonBody: Any, headers: dict[str, str] | None = None) -> Any:
        return self._parse(self._request("POST", path, json=jsonBody, headers=headers))

    def getPagedItems(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Iterator[dict[str, Any]]:
        """
        Назначение:
            Итерация по коллекции Graph с переходом по @odata.nextLink.
        """
        data = self.getJson(path, params=params, headers=headers)
        while True:
            if not isinstance(data, dict) or not isinstance(data.get("value"), list):
                raise ApiError("Unexpected response format: no value array", code="INVALID_ITEMS_FORMAT")
            yield from data["value"]
            next_link = data.get("@odata.nextLink")
            if not next_link:
                break
            # nextLink уже содержит все query-параметры.
            data = self.getJson(next_link, headers=headers)
