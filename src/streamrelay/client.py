from __future__ import annotations

import logging
from asyncio.tasks import gather
from collections.abc import AsyncIterator
from json.decoder import JSONDecodeError
from types import TracebackType
from typing import Any, ClassVar, Optional, TypeVar, Union, overload

from aiohttp import client as aiohttp_client
from aiohttp.web_app import Application
from pydantic import ValidationError

from streamrelay.exceptions import HTTPClientError
from streamrelay.misc.functions import is_subclass
from streamrelay.models import BaseRequestModel, BaseResponseModel


__all__ = [
    "Client",
    "CONNECTION_ERRORS",
]

log = logging.getLogger(__name__)

C = TypeVar("C", bound="Client")
E = TypeVar("E", bound=BaseException)
R = TypeVar("R", bound=BaseResponseModel)

_DEFAULT_TIMEOUT: float = 60.

CONNECTION_ERRORS = (
    aiohttp_client.ClientError,
    ConnectionError,
    JSONDecodeError,
    ValidationError,
    UnicodeDecodeError,
)


class Client:
    """
    HTTP client for talking to relay nodes.

    Serves as a convenience wrapper around the `aiohttp.ClientSession`
    that sends and parses the JSON models of the node API.
    """
    _instances: ClassVar[list[Client]] = []

    _session: aiohttp_client.ClientSession

    def __init__(self, **session_kwargs: Any) -> None:
        """Keyword arguments are passed to the `aiohttp.ClientSession` started here."""
        self._session = aiohttp_client.ClientSession(**session_kwargs)
        self.__class__._instances.append(self)

    async def close(self) -> None:
        """Closes the internal session instance."""
        await self._session.close()

    async def __aenter__(self: C) -> C:
        """Allows usage of a client instance as a context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[E]],
        exc_val: Optional[E],
        exc_tb: Optional[TracebackType],
    ) -> None:
        """Exiting the `async with`-block closes the client session."""
        await self.close()

    @classmethod
    async def close_all(cls) -> None:
        """Closes the session in every client instance."""
        log.debug("Closing all open HTTP client sessions...")
        await gather(*(client.close() for client in cls._instances))
        log.info("HTTP clients closed")

    @classmethod
    async def app_context(cls, _app: Application) -> AsyncIterator[None]:
        """
        Ensures that all HTTP client sessions are closed on the second iteration.
        Can be used in the `.cleanup_ctx` list of the `aiohttp.Application`.
        """
        yield  # no start-up needed
        await cls.close_all()

    @staticmethod
    async def handle_response(
        response: aiohttp_client.ClientResponse,
        expect_json: bool = False,
    ) -> Union[dict[str, Any], bytes]:
        """
        Returns the body/content of a specified response object.

        Args:
            response:
                Instance of `aiohttp.ClientResponse`; if it has a JSON
                content type, its `.json()` method is called, otherwise
                its `.read()` method is called.
            expect_json (optional):
                If `True` and the content type of the `response` is
                _not_ JSON, an error is raised.

        Raises:
            `HTTPClientError` if the response does not have the JSON
            content type, but `expect_json` is set to `True`.
        """
        if response.content_type == "application/json":
            return await response.json()  # type: ignore[no-any-return]
        if expect_json:
            log.warning(f"Unexpected data during web request to {response.url}")
            raise HTTPClientError()
        return await response.read()

    @overload
    async def request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[BaseRequestModel] = None,
        return_model: type[R],  # determines the class of the returned data to be `R`
        log_connection_error: bool = True,
        **kwargs: Any,
    ) -> tuple[int, R]:
        ...

    @overload
    async def request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[BaseRequestModel] = None,
        return_model: None = None,  # returned data could be anything
        log_connection_error: bool = True,
        **kwargs: Any,
    ) -> tuple[int, Any]:
        ...

    async def request(
        self,
        method: str,
        url: str,
        *,
        data: Optional[BaseRequestModel] = None,
        return_model: Optional[type[BaseResponseModel]] = None,
        log_connection_error: bool = True,
        **kwargs: Any,
    ) -> tuple[int, Any]:
        """
        Performs an HTTP request with the specified parameters.

        Args:
            method:
                The HTTP method to use
            url:
                The target URL to address
            data (optional):
                If provided an instance of `BaseRequestModel`, its JSON
                representation is passed as the request payload.
            return_model (optional):
                If provided a subclass of `BaseResponseModel` and the
                response status is 200, the response body is parsed to
                return an instance of that class; otherwise the response
                data is returned "as is".
            log_connection_error (optional):
                If `True` (default), any connection error will be explicitly
                logged, before an `HTTPClientError` is raised.
            **kwargs (optional):
                Passed to the `aiohttp.ClientSession.request` method;
                must not contain the `data` keyword; if not otherwise
                specified the `timeout` will be set to 60 seconds.

        Returns:
            A 2-tuple of the HTTP response status code and content data.

        Raises:
            `HTTPClientError` if one of the `CONNECTION_ERRORS` is caught.
        """
        kwargs.setdefault("timeout", aiohttp_client.ClientTimeout(_DEFAULT_TIMEOUT))
        kwargs.setdefault("headers", {})
        if data is not None:
            kwargs["headers"]["Content-Type"] = "application/json"
        try:
            async with self._session.request(
                method,
                url,
                data=None if data is None else data.model_dump_json(),
                **kwargs,
            ) as response:
                response_data = await self.handle_response(
                    response,
                    expect_json=return_model is not None and response.status == 200,
                )
        except CONNECTION_ERRORS as e:
            if log_connection_error:
                log.exception(f"{e.__class__.__name__} during web request to {url}")
            raise HTTPClientError() from e
        if response.status == 200 and is_subclass(return_model, BaseResponseModel):
            try:
                return response.status, return_model.model_validate(response_data)
            except ValidationError as e:
                if log_connection_error:
                    log.exception(f"Invalid response data from {url}")
                raise HTTPClientError() from e
        return response.status, response_data
