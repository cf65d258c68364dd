"""
Endpoint wrapping for the caching decorators.

FastAPI resolves dependencies from an endpoint's signature, so the caching
decorators cannot simply take ``*args, **kwargs``. ``wrap_endpoint`` keeps the
original signature, adds a ``Request`` parameter when the endpoint does not
declare one, and hands the request plus a ``call_next`` coroutine to the
decorator's ``around`` function.
"""
import functools
import inspect
from typing import Any, Awaitable, Callable, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from ..shared.schemas import ApiEnvelope, EnvelopeResponse, envelope_response

INJECTED_REQUEST = "_edgecache_request"

CallNext = Callable[[], Awaitable[Any]]
Around = Callable[[Request, CallNext], Awaitable[Any]]


def _is_request_annotation(annotation) -> bool:
    return inspect.isclass(annotation) and issubclass(annotation, Request)


def find_request_parameter(signature: inspect.Signature) -> Optional[str]:
    for name, parameter in signature.parameters.items():
        if _is_request_annotation(parameter.annotation):
            return name
    return None


def wrap_endpoint(func: Callable, around: Around) -> Callable:
    """Wrap an endpoint so ``around(request, call_next)`` runs in its place."""
    signature = inspect.signature(func, eval_str=True)
    request_name = find_request_parameter(signature)

    if request_name is None:
        parameters = list(signature.parameters.values())
        injected = inspect.Parameter(INJECTED_REQUEST, inspect.Parameter.KEYWORD_ONLY, annotation=Request)
        position = len(parameters)
        if parameters and parameters[-1].kind is inspect.Parameter.VAR_KEYWORD:
            position -= 1
        parameters.insert(position, injected)
        signature = signature.replace(parameters=parameters)

    is_async = inspect.iscoroutinefunction(func)

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        if request_name is None:
            request = kwargs.pop(INJECTED_REQUEST)
        else:
            request = kwargs[request_name]

        async def call_next():
            if is_async:
                return await func(*args, **kwargs)
            return await run_in_threadpool(func, *args, **kwargs)

        return await around(request, call_next)

    wrapper.__signature__ = signature
    return wrapper


def route_status_code(request: Request) -> int:
    """Status code declared on the matched route, 200 when none is."""
    route = request.scope.get("route")
    return getattr(route, "status_code", None) or 200


def render_response(result: Any, status_code: int = 200) -> Response:
    """Turn an endpoint return value into a concrete Response."""
    if isinstance(result, Response):
        return result
    if isinstance(result, ApiEnvelope):
        return envelope_response(result, status_code=status_code)
    if isinstance(result, dict) and isinstance(result.get("success"), bool):
        # Envelope returned as a plain mapping
        return EnvelopeResponse(content=jsonable_encoder(result), status_code=status_code, ok=result["success"])
    return JSONResponse(content=jsonable_encoder(result), status_code=status_code)


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300
