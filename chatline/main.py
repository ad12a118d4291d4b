from contextlib import asynccontextmanager
from dotenv import load_dotenv

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import routers as auth_router
from .chat import routers as chat_router
from .profiles import routers as profile_router

from .core.middleware import logging_middleware
from .core.realtime import shutdown_message_feed
from .utils.env_helper import env_list
from .utils.logging_config import setup_logging

load_dotenv()
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await shutdown_message_feed()


app = FastAPI(title="chatline", lifespan=lifespan)
app.include_router(auth_router.router, prefix="/auth", tags=["Authentication"])
app.include_router(profile_router.router, prefix="/profiles", tags=["Profiles"])
app.include_router(chat_router.router, prefix="/chat", tags=["Chat"])


origins = env_list(
    "CORS_ORIGINS",
    [
        "http://localhost:5173",
        "http://localhost:8080",
    ],
)

app.middleware("http")(logging_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
