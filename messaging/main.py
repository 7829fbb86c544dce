import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from messaging.config import settings
from messaging.database import close_redis, create_tables
from messaging.dependencies import fanout
from messaging.exceptions import MessagingError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()
    yield
    await fanout.wait_idle()
    await close_redis()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Cenopie real-time messaging API",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(status_code: int, message: str, code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message, "code": code},
        headers=headers,
    )


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    return error_response(exc.status_code, exc.message, exc.code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    codes = {401: "UNAUTHENTICATED", 403: "FORBIDDEN", 404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED"}
    return error_response(
        exc.status_code,
        str(exc.detail),
        codes.get(exc.status_code, "HTTP_ERROR"),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return error_response(400, message, "INVALID_ARGUMENT")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", "INTERNAL_ERROR")


from messaging.api.v1 import conversations, messages, websocket

app.include_router(conversations.router, prefix="/api/v1/conversations", tags=["conversations"])
app.include_router(messages.router, prefix="/api/v1/messages", tags=["messages"])
app.include_router(websocket.router, prefix="/api/v1/ws", tags=["websocket"])


@app.get("/")
async def root():
    return {"message": "Cenopie Messaging API", "version": settings.VERSION}


@app.get("/health")
async def health():
    return {"status": "ok"}
