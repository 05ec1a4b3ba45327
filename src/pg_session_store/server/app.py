# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status

from pg_session_store.config.loader import get_int_env, get_str_env
from pg_session_store.session.dependencies import initialise_session_store, set_session_store
from pg_session_store.session.middleware import (
    StoreSessionMiddleware,
    destroy_request_session,
    get_request_session,
)
from pg_session_store.session.router import router as session_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    session_store = initialise_session_store()
    await session_store.init()
    set_session_store(session_store)
    try:
        yield
    finally:
        await session_store.close()
        set_session_store(None)


def create_app() -> FastAPI:
    application = FastAPI(
        title="Session Store API",
        description="PostgreSQL-backed session persistence",
        version="0.1.0",
        lifespan=lifespan,
    )

    cookie_name = get_str_env("SESSION_COOKIE_NAME", "sid")
    max_age = get_int_env("SESSION_COOKIE_MAX_AGE", 0) or None
    logger.info("Session cookie %s (max age %s)", cookie_name, max_age or "store ttl")

    application.add_middleware(
        StoreSessionMiddleware,
        store_provider=initialise_session_store,
        cookie_name=cookie_name,
        max_age=max_age,
    )
    application.include_router(session_router)

    @application.get("/")
    async def count_views(request: Request) -> dict:
        session = get_request_session(request)
        session["views"] = session.get("views", 0) + 1
        return {"views": session["views"], "id": request.state.session_id}

    @application.post("/")
    async def end_session(request: Request) -> Response:
        destroy_request_session(request)
        return Response(status_code=status.HTTP_200_OK)

    return application


app = create_app()
