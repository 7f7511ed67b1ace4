"""
WSL Proxy - CORS
Permissive cross-origin headers so browser apps on other LAN hosts can call
the guest through the proxy. Preflights are answered here and never reach
the guest; on real responses the guest's own CORS headers take precedence.
"""
from aiohttp import hdrs, web

ALLOWED_METHODS = "GET,HEAD,PUT,PATCH,POST,DELETE"


def is_preflight(request: web.Request) -> bool:
    return (
        request.method == hdrs.METH_OPTIONS
        and hdrs.ACCESS_CONTROL_REQUEST_METHOD in request.headers
    )


@web.middleware
async def cors_middleware(request: web.Request, handler):
    if not is_preflight(request):
        return await handler(request)

    headers = {
        hdrs.ACCESS_CONTROL_ALLOW_ORIGIN: "*",
        hdrs.ACCESS_CONTROL_ALLOW_METHODS: ALLOWED_METHODS,
    }
    requested = request.headers.get(hdrs.ACCESS_CONTROL_REQUEST_HEADERS)
    if requested:
        headers[hdrs.ACCESS_CONTROL_ALLOW_HEADERS] = requested
        headers[hdrs.VARY] = hdrs.ACCESS_CONTROL_REQUEST_HEADERS
    return web.Response(status=204, headers=headers)


async def _add_allow_origin(request: web.Request, response: web.StreamResponse):
    if response.status == 101:
        return
    response.headers.setdefault(hdrs.ACCESS_CONTROL_ALLOW_ORIGIN, "*")


def setup_cors(app: web.Application):
    app.middlewares.append(cors_middleware)
    # on_response_prepare also reaches streamed responses before headers go out
    app.on_response_prepare.append(_add_allow_origin)
