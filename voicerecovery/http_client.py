import httpx

from httpx import HTTPStatusError

from .logging import root_logger

logger = root_logger.getChild(__name__)


class RetryException(RuntimeError):
    pass


class HTTPClientError(httpx.HTTPStatusError):
    service = "generic"

    @classmethod
    def from_httpx_exception(cls, exc: httpx.HTTPStatusError, msg=None):
        msg = msg or exc.args[0]
        return cls(msg, request=exc.request, response=exc.response)

    @property
    def status_code(self) -> int:
        return self.response.status_code

    @property
    def response_summary(self) -> str:
        return f"[{self.service}] Status code: {self.status_code} response content: {self.response.content[:1024]}"

    @property
    def request_summary(self) -> str:
        # multipart bodies may be streams; only report what is cheap to report
        return f"[{self.service}] {self.request.method} {self.request.url}"


class AsyncHttpClient:
    def __init__(
        self,
        max_keepalive_connections=20,
        max_connections=100,
        connect_timeout: float = 5,
        read_timeout: float | None = None,
        follow_redirects: bool = True,
        verify_ssl: bool = True,
        exception_class=HTTPClientError,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._limits = httpx.Limits(
            max_keepalive_connections=max_keepalive_connections, max_connections=max_connections
        )
        self._timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self._base_exception = exception_class
        self._session = None
        self._httpx_opts = dict(
            limits=self._limits, timeout=self._timeout, follow_redirects=follow_redirects, verify=verify_ssl
        )
        if transport is not None:
            self._httpx_opts["transport"] = transport

    @property
    def session(self) -> httpx.AsyncClient:
        if self._session is None:
            self._session = httpx.AsyncClient(**self._httpx_opts)
        return self._session

    async def aclose(self):
        if self._session is not None:
            try:
                await self._session.aclose()
            except Exception:
                logger.debug("Failed to close session", exc_info=True)
            finally:
                self._session = None

    async def request(self, *args, retries: int = 3, **kwargs) -> httpx.Response:
        """Send a request; a broken session is recycled up to ``retries`` times."""
        last_error: RuntimeError | None = None
        for attempt in range(1, max(retries, 1) + 1):
            try:
                response = await self.session.request(*args, **kwargs)
                response.raise_for_status()
                return response
            except HTTPStatusError as exc:
                wrapped_exception = self._base_exception.from_httpx_exception(exc)
                logger.debug("Failed request: %s", wrapped_exception.request_summary)
                logger.debug("Error response %s", wrapped_exception.response_summary)
                raise wrapped_exception from exc
            except RuntimeError as ex:
                # raised by httpx when the underlying client was closed under us
                logger.debug("Session error on attempt %d/%d: %s", attempt, retries, ex)
                last_error = ex
                await self.aclose()
        raise RetryException("Failed to make request after retries") from last_error

    async def get(self, url, *args, **kwargs):
        return await self.request("GET", url, *args, **kwargs)

    async def post(self, url, *args, **kwargs):
        return await self.request("POST", url, *args, **kwargs)
