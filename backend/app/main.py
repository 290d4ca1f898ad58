from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response

from app.core.config import settings
from app.core.errors import DunningError, dunning_error_handler
from app.routers import dunning, dunning_configs, dunning_webhooks, notifications

OPENAPI_TAGS = [
    {"name": "Dunning", "description": "Dunning cases, retries, communications and sweeps."},
    {"name": "Dunning Configs", "description": "Per-plan dunning policies."},
    {"name": "Webhooks", "description": "Inbound payment gateway events."},
    {"name": "Notifications", "description": "Operator alerts raised by the dunning engine."},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Failed-payment recovery API. "
        "Track dunning cases through retries, grace periods, suspension "
        "and recovery, and configure the policy for each plan."
    ),
    openapi_tags=OPENAPI_TAGS,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(DunningError, dunning_error_handler)  # type: ignore[arg-type]


@app.middleware("http")
async def options_handler(request: Request, call_next):  # type: ignore[no-untyped-def]
    if request.method == "OPTIONS":
        origin = request.headers.get("origin", "*")
        return Response(
            status_code=200,
            headers={
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Methods": "*",
                "Access-Control-Allow-Headers": "*",
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Max-Age": "86400",
            },
        )
    return await call_next(request)


app.include_router(
    dunning_webhooks.router,
    prefix="/v1/dunning/webhooks",
    tags=["Webhooks"],
)
app.include_router(dunning.router, prefix="/v1/dunning", tags=["Dunning"])
app.include_router(
    dunning_configs.router,
    prefix="/v1/dunning_configs",
    tags=["Dunning Configs"],
)
app.include_router(
    notifications.router,
    prefix="/v1/notifications",
    tags=["Notifications"],
)


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "domain": settings.APP_DOMAIN,
        "status": "running",
    }
