"""FastAPI application for the Tripp gateway.

Provides session exchange, soft sessions, session status, the memory opt-in
preference and the gated chat endpoint. Components are built once per app and
kept on `app.state`.
"""
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request
from contextlib import asynccontextmanager
from typing import Optional
import logging
import time

from fastapi.concurrency import run_in_threadpool

from tripp.audit import AuditLogger
from tripp.config import Config, get_config
from tripp.errors import AuthError, ContentRejected, KeySetFetchError, LoginRequired, RateLimitExceeded
from tripp.gate import RequestGate
from tripp.identity import IdentityResolver
from tripp.jwks import KeyCache
from tripp.llm_client import create_chat_completion
from tripp.models import (
    AnonymousSessionResponse,
    AppUser,
    AuthErrorResponse,
    ChatRequest,
    ChatResponse,
    ExchangeResponse,
    MemoryPreference,
    MemoryPreferenceUpdate,
    SessionStatus,
)
from tripp.moderation import ContentScreen
from tripp.preferences import MemoryPreferences
from tripp.ratelimit import RateLimiter, rate_limit_headers
from tripp.sessions import SessionManager
from tripp.store import InMemorySessionStore, SupabaseSessionStore
from tripp.tokens import TokenVerifier, verify_app_session
from tripp.utils import new_session_id, setup_logging

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
EXCHANGE_ROUTE = "/api/auth/exchange"
ANON_SESSION_MAX_AGE = 30 * 24 * 60 * 60


def build_store(config: Config):
    """Supabase when configured, otherwise an in-process store."""
    if config.supabase_url and config.supabase_service_role_key:
        return SupabaseSessionStore(config=config)
    logger.warning("Supabase not configured, sessions are kept in memory")
    return InMemorySessionStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    # Startup
    config = app.state.config
    setup_logging(config.log_level)
    logger.info("Tripp gateway starting up")
    logger.info(f"Configuration: issuer={config.expected_issuer}, audience={config.expected_audience}")

    yield

    # Shutdown
    app.state.key_cache.close()
    logger.info("Tripp gateway shutting down")


def create_app(
    config: Optional[Config] = None,
    store=None,
    key_cache: Optional[KeyCache] = None,
    limiter: Optional[RateLimiter] = None,
    screen: Optional[ContentScreen] = None,
) -> FastAPI:
    """Build the application and its components.

    Every component can be injected, which is how tests swap in fakes.
    """
    config = config or get_config()
    store = store if store is not None else build_store(config)
    key_cache = key_cache or KeyCache.from_config(config)
    limiter = limiter or RateLimiter.from_config(config)
    screen = screen or ContentScreen.from_config(config)

    verifier = TokenVerifier.from_config(config, key_cache)
    resolver = IdentityResolver(verifier, config)

    app = FastAPI(
        title="Tripp Gateway",
        description="Identity, session exchange and rate limiting in front of Tripp chat",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.config = config
    app.state.store = store
    app.state.key_cache = key_cache
    app.state.limiter = limiter
    app.state.verifier = verifier
    app.state.resolver = resolver
    app.state.sessions = SessionManager(verifier, store, config)
    app.state.gate = RequestGate(resolver, limiter, screen)
    app.state.audit = AuditLogger(store)
    app.state.preferences = MemoryPreferences(resolver, store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        body = AuthErrorResponse(
            error=exc.error,
            reason=exc.reason,
            refresh=request.app.state.config.refresh_url,
        )
        return JSONResponse(body.model_dump(), status_code=401, headers=NO_STORE)

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        retry_after = exc.result.retry_after(request.app.state.limiter.now())
        headers = {**rate_limit_headers(exc.result), "Retry-After": str(retry_after), **NO_STORE}
        return JSONResponse(
            {"error": "rate_limited", "retry_after": retry_after},
            status_code=429,
            headers=headers,
        )

    @app.exception_handler(LoginRequired)
    async def login_required_handler(request: Request, exc: LoginRequired):
        return JSONResponse({"error": exc.reason}, status_code=403, headers=NO_STORE)

    @app.exception_handler(ContentRejected)
    async def content_rejected_handler(request: Request, exc: ContentRejected):
        return JSONResponse(
            {"error": "content_flagged", "categories": sorted(exc.categories)},
            status_code=400,
            headers=NO_STORE,
        )


def _origin_allowed(request: Request) -> bool:
    origin = request.headers.get("origin")
    return not origin or origin in request.app.state.config.allowed_origins


def _register_routes(app: FastAPI) -> None:
    # Lightweight health endpoint used by load balancers and platform checks.
    @app.get("/health")
    async def health():
        """Simple health check that avoids external calls."""
        return {"status": "ok"}

    @app.get("/api/auth/jwks/health")
    async def jwks_health(request: Request):
        """Fetch the remote key set directly and report how many keys it has."""
        try:
            count = await run_in_threadpool(request.app.state.key_cache.fetch_key_count)
        except KeySetFetchError as e:
            return JSONResponse({"ok": False, "error": e.detail or e.reason}, status_code=500)
        return {"ok": True, "kid_count": count}

    @app.post(
        EXCHANGE_ROUTE,
        response_model=ExchangeResponse,
        responses={401: {"model": AuthErrorResponse}},
    )
    async def auth_exchange(request: Request):
        """Exchange the identity token cookie for a server session.

        Sets the session cookie on success. The body is ignored.
        """
        started = time.monotonic()
        state = request.app.state
        config = state.config

        if not _origin_allowed(request):
            return JSONResponse({"error": "invalid_origin"}, status_code=403, headers=NO_STORE)

        try:
            result = await run_in_threadpool(state.sessions.exchange, request)
        except AuthError as e:
            await run_in_threadpool(
                state.audit.record,
                EXCHANGE_ROUTE,
                401,
                client_id=config.default_client_id,
                started_at=started,
                error=f"{e.error}:{e.reason}",
            )
            raise

        body = ExchangeResponse(
            session_id=result.session_id,
            user_id=result.user_id,
            expires_at=result.expires_at,
            tier=result.tier,
        )
        response = JSONResponse(body.model_dump(mode="json"), headers=NO_STORE)
        response.set_cookie(
            config.session_cookie,
            result.session_id,
            httponly=True,
            secure=config.session_cookie_secure,
            samesite="lax",
            domain=config.session_cookie_domain or None,
            path="/",
            expires=result.expires_at,
        )
        await run_in_threadpool(
            state.audit.record,
            EXCHANGE_ROUTE,
            200,
            client_id=config.default_client_id,
            user_id=result.user_id,
            session_id=result.session_id,
            started_at=started,
        )
        return response

    @app.post("/api/session", response_model=AnonymousSessionResponse)
    async def create_session(request: Request):
        """Create a new soft session id and set the anonymous session cookie."""
        started = time.monotonic()
        state = request.app.state
        config = state.config

        decision = await run_in_threadpool(state.gate.admit, request)
        session_id, stored = await run_in_threadpool(
            state.sessions.create_anonymous, decision.identity, request
        )
        await run_in_threadpool(
            state.audit.record,
            "/api/session:POST",
            200 if stored else 500,
            client_id=decision.identity.client_id,
            user_id=decision.identity.user_id,
            session_id=session_id,
            started_at=started,
            error=None if stored else "db_create_failed",
        )

        body = AnonymousSessionResponse(session_id=session_id, warn=None if stored else "db_create_failed")
        response = JSONResponse(
            body.model_dump(exclude_none=True),
            headers={**decision.headers, **NO_STORE},
        )
        response.set_cookie(
            config.anon_session_cookie,
            session_id,
            max_age=ANON_SESSION_MAX_AGE,
            httponly=True,
            secure=config.session_cookie_secure,
            samesite="lax",
            path="/",
        )
        return response

    @app.get("/api/user/status", response_model=SessionStatus)
    async def user_status(request: Request):
        """Report whether the session cookie names a live authenticated session."""
        state = request.app.state
        sid = request.cookies.get(state.config.session_cookie)
        status = await run_in_threadpool(state.sessions.status, sid)
        return JSONResponse(status.model_dump(), headers=NO_STORE)

    @app.get("/api/user/me", response_model=AppUser)
    async def current_user(request: Request):
        """Claims from the legacy app-session cookie."""
        config = request.app.state.config
        claims = verify_app_session(request.cookies.get(config.app_session_cookie), config)
        if claims is None:
            return JSONResponse({"error": "unauthorized"}, status_code=401, headers=NO_STORE)
        roles = claims.get("roles")
        user = AppUser(
            sub=claims["sub"],
            email=claims.get("email"),
            name=claims.get("name"),
            tier=claims.get("tier"),
            roles=[str(r) for r in roles] if isinstance(roles, list) else [],
        )
        return JSONResponse(user.model_dump(), headers=NO_STORE)

    @app.get("/api/preferences/memory", response_model=MemoryPreference)
    async def get_memory_preference(request: Request):
        """Whether the signed-in caller has opted in to chat memory."""
        try:
            pref = await run_in_threadpool(request.app.state.preferences.read, request)
        except Exception as e:
            logger.error("Memory preference read failed: %s", e)
            return JSONResponse({"error": "db_error"}, status_code=500, headers=NO_STORE)
        return JSONResponse(pref.model_dump(), headers=NO_STORE)

    @app.post(
        "/api/preferences/memory",
        response_model=MemoryPreference,
        responses={403: {"description": "login_required"}},
    )
    async def set_memory_preference(request: Request, update: Optional[MemoryPreferenceUpdate] = None):
        """Save the caller's memory opt-in. Guests get 403 login_required."""
        on = update.memory_opt_in if update is not None else False
        try:
            pref = await run_in_threadpool(request.app.state.preferences.update, request, on)
        except LoginRequired:
            raise
        except Exception as e:
            logger.error("Memory preference write failed: %s", e)
            return JSONResponse({"error": "db_error"}, status_code=500, headers=NO_STORE)
        return JSONResponse(pref.model_dump(), headers=NO_STORE)

    @app.post("/api/chat", response_model=ChatResponse)
    async def chat(request: Request, chat_request: ChatRequest):
        """Gated chat endpoint.

        The last user message is screened before the conversation is sent on
        to the model.
        """
        started = time.monotonic()
        state = request.app.state

        last = next((m for m in reversed(chat_request.messages) if m.role == "user"), None)
        if last is None or not last.content.strip():
            await run_in_threadpool(
                state.audit.record, "/api/chat:POST", 400, started_at=started, error="messages_required"
            )
            return JSONResponse({"error": "messages_required"}, status_code=400, headers=NO_STORE)

        decision = await run_in_threadpool(state.gate.admit, request, last.content)
        identity = decision.identity
        session_id = chat_request.session_id or identity.session_id or new_session_id()

        try:
            result = await run_in_threadpool(
                create_chat_completion,
                [m.model_dump() for m in chat_request.messages],
                state.config,
            )
        except Exception as e:
            logger.exception("Chat request failed: %s", e)
            await run_in_threadpool(
                state.audit.record,
                "/api/chat:POST",
                502,
                client_id=identity.client_id,
                user_id=identity.user_id,
                session_id=session_id,
                started_at=started,
                error=str(e),
            )
            raise HTTPException(status_code=502, detail="upstream_error")

        await run_in_threadpool(
            state.audit.record,
            "/api/chat:POST",
            200,
            client_id=identity.client_id,
            user_id=identity.user_id,
            session_id=session_id,
            started_at=started,
        )
        body = ChatResponse(
            session_id=session_id,
            reply=result["reply"],
            model=result["model"],
            tokens_used=result["tokens"],
        )
        return JSONResponse(body.model_dump(), headers={**decision.headers, **NO_STORE})


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
