# common/views_utils.py
# ======================================================================
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    TypeVar,
    cast,
)

import orjson
import structlog
from django.http import (
    Http404,
    HttpRequest,
    HttpResponse,
)
from django.views import View

from .cache_utils import (
    adelete,
    aset_json,
)
from .cache_utils import (
    aget_or_set as _aget_or_set,
)
from .cache_utils import (
    build_cache_key as _build_cache_key,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

log = structlog.get_logger(__name__).bind(component="ViewsUtils")

GENERIC_ERROR = {"detail": "An internal server error occurred."}


# ------------------------------------------------------------------ orjson helpers
def _orjson_default(obj: Any) -> Any:
    """
    Custom serializer for types orjson doesn't handle.

    If the object implements `to_json()`, that is used; otherwise we raise
    TypeError so orjson can propagate an informative message.
    """
    if hasattr(obj, "to_json"):
        return obj.to_json()
    msg = f"{type(obj).__name__} is not JSON serialisable"
    raise TypeError(msg)


class OrjsonResponse(HttpResponse):
    """
    A high-performance JSON response using `orjson`.

    Data are encoded as UTF-8 bytes; `content_type` is set to
    `application/json` automatically.
    """

    def __init__(self, data: Any, *, status: int = 200, **kw: Any) -> None:
        opts = orjson.OPT_NAIVE_UTC
        content = orjson.dumps(data, default=_orjson_default, option=opts)
        kw.setdefault("content_type", "application/json")
        super().__init__(content=content, status=status, **kw)


def is_degraded(payload: Any) -> bool:
    """True when a statistics payload was (partly) served from a fallback."""
    if not isinstance(payload, dict):
        return False
    meta = payload.get("meta")
    return bool(isinstance(meta, dict) and meta.get("degraded"))


# ------------------------------------------------------------------ BaseAsyncView
class BaseAsyncView(View):
    """
    Base-class for *async* Django CBVs with

        • Centralised error handling (404 for unknown names, generic 500 otherwise)
        • orjson responses
        • First-class async caching helpers
        • `nocache=true`  → bypass cache
        • `reset=true`    → refresh cache
        • `X-Cache-Status` header (HIT | MISS | REFRESH | BYPASS)
    """

    META_CACHE_PARAMS: set[str] = {"reset", "nocache"}

    # ───────────────────────────── dispatch ──────────────────────────
    async def dispatch(self, request: HttpRequest, *args: Any, **kw: Any):  # type: ignore[override]
        self.request = request

        handler = getattr(self, request.method.lower(), None)
        if handler is None:
            return await self.http_method_not_allowed(request, *args, **kw)

        try:
            response = await handler(request, *args, **kw)
        except Http404 as exc:
            log.info("Resource not found", path=request.path, err=str(exc))
            body = exc.to_json() if hasattr(exc, "to_json") else {"detail": str(exc) or "Not found."}
            response = OrjsonResponse(body, status=404)
        except Exception as exc:
            log.exception("Unhandled API error", path=request.path, exc_info=exc)
            response = OrjsonResponse(GENERIC_ERROR, status=500)

        # inject cache status header if set by get_cached_data()
        cache_status = getattr(request, "_cache_status", None)
        if cache_status:
            response["X-Cache-Status"] = cache_status
        return response

    async def http_method_not_allowed(self, request: HttpRequest, *a: Any, **k: Any) -> HttpResponse:
        log.warning("Method Not Allowed", method=request.method, path=request.path)
        return OrjsonResponse({"detail": f'Method "{request.method}" not allowed.'}, status=405)

    # ─────────────────────── request-parsing helpers ─────────────────
    @staticmethod
    def get_bool_param(request: HttpRequest, key: str, *, default: bool = False) -> bool:
        val = request.GET.get(key)
        if val is None:
            return default
        return val.lower() in {"1", "true", "yes", "on"}

    @staticmethod
    def get_int_param(
        request: HttpRequest,
        key: str,
        /,
        *,
        default: int | None,
        min_val: int | None = None,
        max_val: int | None = None,
    ) -> int | None:
        raw = request.GET.get(key)
        if raw is None:
            return default
        try:
            val = int(raw)
        except (TypeError, ValueError):
            return default
        if min_val is not None:
            val = max(val, min_val)
        if max_val is not None:
            val = min(val, max_val)
        return val

    @staticmethod
    def get_str_param(request: HttpRequest, key: str, /, *, max_len: int = 64) -> str | None:
        val = (request.GET.get(key) or "").strip()
        return val[:max_len] or None

    # ───────────────────────── cache-key builder ────────────────────

    def build_cache_key(self, request: HttpRequest, **extra: Any) -> str:
        """
        Build a stable key: path + sorted query params (minus META params)
        + optional extra kw-args (e.g. path variables).

        If the same key appears in both the query-string and `extra`, the
        value from `extra` wins.
        """
        params = request.GET.dict()
        for mp in self.META_CACHE_PARAMS:
            params.pop(mp, None)

        params.update({k: v for k, v in extra.items() if v is not None})
        return _build_cache_key(request.path, **params)

    # ──────────────────── public caching convenience ─────────────────
    async def get_cached_data(
        self,
        request: HttpRequest,
        producer: Callable[[], T | Awaitable[T]],
        *,
        ttl: int,
        **cache_key_kwargs: Any,
    ) -> T:
        """
        • `nocache=true`  → run producer, skip read/write (BYPASS)
        • `reset=true`    → delete old entry, produce fresh, store (REFRESH)
        • default         → HIT / MISS via single-flight

        Degraded payloads are returned but never stored.
        """

        async def produce_and_await() -> T:
            res = producer()
            if asyncio.iscoroutine(res):
                return await cast("Awaitable[T]", res)
            return cast("T", res)

        cache_key = self.build_cache_key(request, **cache_key_kwargs)
        want_reset = self.get_bool_param(request, "reset")
        want_bypass = self.get_bool_param(request, "nocache")

        if want_bypass:
            log.warning("==nocache==", method=request.method, key=cache_key)
            request._cache_status = "BYPASS"
            return await produce_and_await()

        if want_reset:
            log.warning("==RESET==", method=request.method, key=cache_key)
            await adelete(cache_key)
            data = await produce_and_await()
            if not is_degraded(data):
                await aset_json(cache_key, data, ttl=ttl)
            request._cache_status = "REFRESH"
            return data

        async def _wrapped_producer_for_miss() -> T:
            request._cache_status = "MISS"
            return await produce_and_await()

        data = await _aget_or_set(
            cache_key,
            _wrapped_producer_for_miss,
            ttl=ttl,
            should_cache=lambda value: not is_degraded(value),
        )

        if not hasattr(request, "_cache_status"):
            request._cache_status = "HIT"

        return data


class BaseAppView(BaseAsyncView, ABC):
    """
    Universal base class for the statistics API views.

    1. `_get_params` gathers the parameters the view cares about from the
       path (kwargs) and query string.
    2. `_produce_payload` builds the response body from those parameters.
    3. The parameters also form the cache key; degraded payloads bypass the
       cache and are flagged with `X-Stats-Degraded: true`.
    """

    CACHE_TTL: int = 300

    @abstractmethod
    def _get_params(self, request: HttpRequest, **kwargs) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    async def _produce_payload(self, params: dict[str, Any]) -> Any:
        raise NotImplementedError

    async def get(self, request: HttpRequest, **kwargs) -> OrjsonResponse:
        params = self._get_params(request, **kwargs)

        async def _producer() -> Any:
            return await self._produce_payload(params)

        data = await self.get_cached_data(
            request,
            producer=_producer,
            ttl=self.CACHE_TTL,
            **params,
        )
        response = OrjsonResponse(data)
        response["X-Stats-Degraded"] = "true" if is_degraded(data) else "false"
        return response
