import os
from asyncio import get_running_loop
from asyncio.subprocess import Process
from asyncio.subprocess import create_subprocess_exec as _create_subproc
from collections.abc import Callable
from hashlib import md5
from inspect import Parameter, signature
from pathlib import Path
from subprocess import DEVNULL
from typing import Any, Optional, TypeVar, Union
from typing_extensions import TypeGuard

from streamrelay.exceptions import InvalidRouteSignature
from streamrelay.types import ExtendedHandler, PathT
from .constants import KILO, MEGA

__all__ = [
    "run_in_default_executor",
    "get_free_disk_space",
    "get_directory_size",
    "md5_hex",
    "to_kbps",
    "get_parameters_of_class",
    "get_route_model_param",
    "create_user_subprocess",
    "is_subclass",
]


T = TypeVar("T")


async def run_in_default_executor(func: Callable[..., T], *args: Any) -> T:
    """Runs `func(*args)` in the running event loop's default executor."""
    return await get_running_loop().run_in_executor(None, func, *args)


async def get_free_disk_space(path: PathT) -> float:
    """Get free disk space at the given path in MB."""
    st = await run_in_default_executor(os.statvfs, path)
    return st.f_bavail * st.f_frsize / MEGA


def get_directory_size(path: PathT) -> int:
    """
    Returns the combined size in bytes of all files below `path`.

    Files vanishing while the directory is walked are silently skipped,
    since relay processes keep rotating their segments.
    Returns 0, if `path` is not an existing directory.
    """
    total = 0
    path = Path(path)
    if not path.is_dir():
        return 0
    for file_path in path.rglob("*"):
        try:
            if file_path.is_file():
                total += file_path.stat().st_size
        except FileNotFoundError:
            continue
    return total


def md5_hex(*parts: str) -> str:
    """Returns the hexadecimal MD5 digest of the concatenated `parts`."""
    return md5("".join(parts).encode()).hexdigest()


def to_kbps(num_bytes: float, seconds: float) -> float:
    """
    Converts a number of bytes transferred within `seconds` to kbit/s.

    Returns 0, if `seconds` is not positive.
    """
    if seconds <= 0:
        return 0.
    return num_bytes * 8 / (seconds * KILO)


def get_parameters_of_class(
    function: Callable[..., Any],
    cls: type,
) -> list[Parameter]:
    """
    Returns the parameters of `function` annotated with the class `cls`.

    Args:
        function:
            Any callable with parameter type annotations
        cls:
            A parameter is included in the output, if it is annotated with
            the specified `cls` or a subclass thereof

    Returns:
        List of `inspect.Parameter` instances in the order they were defined
    """
    output = []
    for param in signature(function, eval_str=True).parameters.values():
        if is_subclass(param.annotation, cls):
            output.append(param)
    return output


def get_route_model_param(
    route_handler: ExtendedHandler,
    cls: type[T],
) -> tuple[str, type[T]]:
    """
    Extracts the parameter name and class from a route annotated with `cls`.

    Raises:
        `InvalidRouteSignature` if not exactly one matching parameter is found
    """
    params = get_parameters_of_class(route_handler, cls)
    if len(params) == 0:
        raise InvalidRouteSignature(
            f"No parameter of the type `{cls.__name__}` present "
            f"in function `{route_handler.__name__}`."
        )
    if len(params) > 1:
        raise InvalidRouteSignature(
            f"More than one parameter of the type `{cls.__name__}` present "
            f"in function `{route_handler.__name__}`."
        )
    return params[0].name, params[0].annotation


async def create_user_subprocess(
    program: str,
    *args: str,
    sudo_user: Optional[str] = None,
    **kwargs: Any,
) -> Process:
    """
    Creates an `asyncio.subprocess.Process` with the provided arguments.

    If `sudo_user` is specified, the program will be called with
    `sudo -u <sudo_user>`, which requires `sudo` to be available and the
    appropriate settings in the sudoers file to be set.

    For the other arguments see `create_subprocess_exec` documentation:
    https://docs.python.org/3/library/asyncio-subprocess.html

    By default `stdout` and `stderr` are both set to `subprocess.DEVNULL`.
    """
    if sudo_user:
        args = ("-u", sudo_user, program) + args
        program = "sudo"
    kwargs.setdefault("stdout", DEVNULL)
    kwargs.setdefault("stderr", DEVNULL)
    return await _create_subproc(program, *args, **kwargs)


def is_subclass(
    __cls: object,
    __class_or_tuple: Union[type[T], tuple[type[T], ...]],
) -> TypeGuard[type[T]]:
    """More lenient version of the built-in `issubclass` function."""
    if not isinstance(__cls, type):
        return False
    return issubclass(__cls, __class_or_tuple)
