import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import models  # noqa: F401  ensure models are registered
from .ceremony import CeremonyEngine, RelyingParty
from .challenges import ChallengeLedger, build_ledger
from .config import Settings, get_settings
from .db import Base, make_engine, make_session_factory
from .errors import AuthError
from .routes import auth, core
from .security import JwtSessionIssuer
from .store import SqlCredentialStore
from .testmode import select_verifier

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


def create_app(settings: Settings | None = None, ledger: ChallengeLedger | None = None) -> FastAPI:
    if settings is None:
        settings = get_settings()
    if ledger is None:
        ledger = build_ledger(settings)
    configure_logging(settings.LOG_LEVEL)

    engine = make_engine(settings.DATABASE_URL)
    # Schema migrations are managed outside this service; make sure the table exists.
    Base.metadata.create_all(bind=engine)
    store = SqlCredentialStore(make_session_factory(engine))

    ceremonies = CeremonyEngine(
        store=store,
        ledger=ledger,
        verifier=select_verifier(settings),
        sessions=JwtSessionIssuer(settings.JWT_SECRET, settings.SESSION_TTL_SECONDS),
        relying_party=RelyingParty(
            id=settings.RP_ID,
            name=settings.RP_NAME,
            timeout_ms=settings.challenge_timeout_ms,
        ),
    )

    app = FastAPI(title="Thalora Auth Backend", version=VERSION)
    app.state.settings = settings
    app.state.store = store
    app.state.ceremonies = ceremonies

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AuthError, auth_error_handler)

    app.include_router(core.router)
    app.include_router(auth.router)

    @app.get("/")
    def root():
        return {"service": "auth-backend", "version": VERSION}

    logger.info("Auth backend ready (rp_id=%s, test_mode=%s)", settings.RP_ID, ceremonies.test_mode)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8080)
