"""API router registration helpers.

Routers are imported lazily inside `register_routes` so importing a submodule
(or collecting tests) does not build engines or clients as a side effect.
"""

from fastapi import FastAPI


def register_routes(app: FastAPI) -> None:
    """Attach all API routers (lazy imports)."""
    from niya.api.chats import router as chats_router
    from niya.api.realtime import router as realtime_router
    from niya.api.system import router as system_router

    # System routes first: `/chats/ws/health` must not be shadowed by chat routes.
    routers = [
        system_router,
        chats_router,
        realtime_router,
    ]
    for router in routers:
        app.include_router(router)
