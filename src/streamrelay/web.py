import logging
from collections.abc import Callable, Iterable, Mapping
from functools import wraps
from json import JSONDecodeError
from typing import Any, Optional, Union, overload

from aiohttp.log import access_logger as aiohttp_access_logger
from aiohttp.typedefs import LooseHeaders
from aiohttp.web import run_app
from aiohttp.web_app import Application, AppKey
from aiohttp.web_exceptions import HTTPBadRequest
from aiohttp.web_request import Request
from aiohttp.web_response import StreamResponse
from aiohttp.web_routedef import RouteTableDef
from pydantic import ValidationError

from streamrelay.client import Client
from streamrelay.misc.functions import get_route_model_param
from streamrelay.misc.task_manager import TaskManager
from streamrelay.models import BaseRequestModel
from streamrelay.types import CleanupContext, ExtendedHandler


log = logging.getLogger(__name__)

REQUEST_BODY_MAX_SIZE: float = 256. * 1024  # 256 kB


def get_application(
    cleanup_contexts: Iterable[CleanupContext] = (),
    app_state: Mapping[AppKey[Any], Any] = {},
    **kwargs: Any,
) -> Application:
    """
    Returns an `aiohttp.web.Application` instance with the given parameters.

    Always adds the `Client.app_context` as the first cleanup context to
    the `Application.cleanup_ctx` list.
    (see https://docs.aiohttp.org/en/stable/web_advanced.html#cleanup-context)

    `TaskManager.shutdown` is set to be executed immediately on shutdown.

    Args:
        cleanup_contexts (optional):
            Callables that will be added to the `Application.cleanup_ctx`;
            should be asynchronous generator functions that take only the
            app itself as an argument and are structured as
            "startup code; yield; cleanup code".
        app_state (optional):
            Objects to store in the application under the given keys,
            so that route handlers can reach them via `request.app[key]`.
        **kwargs (optional):
            Passed to the `Application` constructor; by default, only the
            `client_max_size` is set to the constant `REQUEST_BODY_MAX_SIZE`.

    Returns:
        Configured instance of `aiohttp.web.Application`
    """
    kwargs.setdefault("client_max_size", REQUEST_BODY_MAX_SIZE)
    app = Application(**kwargs)
    for key, value in app_state.items():
        app[key] = value
    app.cleanup_ctx.append(Client.app_context)
    app.cleanup_ctx.extend(cleanup_contexts)
    app.on_shutdown.append(TaskManager.shutdown)  # executed before cleanup
    return app


def start_web_server(
    routes: RouteTableDef,
    address: Optional[str] = None,
    port: Optional[int] = None,
    *,
    cleanup_contexts: Iterable[CleanupContext] = (),
    app_state: Mapping[AppKey[Any], Any] = {},
    access_logger: logging.Logger = aiohttp_access_logger,
    verbose: bool = False,
    **app_kwargs: Any,
) -> None:
    """
    Configures and starts the `aiohttp` web server.

    Calls `get_application` to set up `aiohttp.web.Application` instance.
    Ensures that before exiting the program, all client sessions are closed
    and all tasks are cancelled.

    Args:
        routes:
            The route definition table to serve
        address (optional):
            Passed as the `host` argument to the `run_app` method.
        port (optional):
            Passed as the `port` argument to the `run_app` method.
        cleanup_contexts (optional):
            Passed to `get_application`
        app_state (optional):
            Passed to `get_application`
        access_logger (optional):
            Passed as the `access_log` argument to the `run_app` method;
            if omitted, the `aiohttp.log.access_logger` is used.
        verbose (optional):
            If `False` (default), the `access_logger` level is set to ERROR.
        **app_kwargs (optional):
            Passed to `get_application`
    """
    app = get_application(
        cleanup_contexts=cleanup_contexts,
        app_state=app_state,
        **app_kwargs,
    )
    app.add_routes(routes)
    if not verbose:
        access_logger.setLevel(logging.ERROR)
    run_app(app, host=address, port=port, access_log=access_logger)


@overload
def ensure_json_body(_func: ExtendedHandler) -> ExtendedHandler:
    ...


@overload
def ensure_json_body(
    *,
    headers: Optional[LooseHeaders] = None,
) -> Callable[[ExtendedHandler], ExtendedHandler]:
    ...


def ensure_json_body(
    _func: Optional[ExtendedHandler] = None,
    *,
    headers: Optional[LooseHeaders] = None,
) -> Union[ExtendedHandler, Callable[[ExtendedHandler], ExtendedHandler]]:
    """
    Decorator for route handlers validating the JSON body of the request.

    The (extended) route handler function must have an additional parameter
    annotated with `BaseRequestModel` or a subclass, which should represent
    the expected schema of the JSON payload. The wrapper around the handler
    function will then first attempt to parse the payload through that model.
    If the payload is malformed or does not pass validation, the wrapper
    will raise HTTP 400. An empty body is treated as an empty JSON object,
    so that models without required fields need no payload at all.
    Otherwise the data object will be passed as the appropriate keyword
    argument to the actual handler function.

    Args:
        _func:
            Control parameter that allows using the decorator with arguments
            and also entirely without parentheses.
        headers (optional):
            Headers to include when sending error responses.
    """
    def decorator(function: ExtendedHandler) -> ExtendedHandler:
        """Internal decorator function"""
        param_name, cls = get_route_model_param(function, BaseRequestModel)

        @wraps(function)
        async def wrapper(
            request: Request,
            *args: Any,
            **kwargs: Any,
        ) -> StreamResponse:
            """Wrapper around the actual function call."""
            if not request.can_read_body:
                data: Any = {}
            elif request.content_type != "application/json":
                log.info(
                    f"Request has wrong content type; 'application/json' "
                    f"expected, but received '{request.content_type}'"
                )
                raise HTTPBadRequest(headers=headers)
            else:
                try:
                    data = await request.json()
                except JSONDecodeError:
                    log.info("Request body is not valid JSON")
                    raise HTTPBadRequest(headers=headers)
            try:
                kwargs[param_name] = cls.model_validate(data)
            except ValidationError as error:
                log.info(f"JSON in request does not match model: {error}")
                raise HTTPBadRequest(headers=headers)
            return await function(request, *args, **kwargs)
        return wrapper

    if _func is None:
        return decorator
    else:
        return decorator(_func)
