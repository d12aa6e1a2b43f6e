import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware
from sql_chatbot.db import close_database, init_database
from sql_chatbot.routes.chatbot.route import router as chatbot_router
from sql_chatbot.routes.connection.route import router as connection_router
from sql_chatbot.routes.tools.route import router as tools_router
from sql_chatbot.settings import config

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database(config.db_url, pool_pre_ping=True)
    logger.info("Database initialized")
    yield
    close_database()


def initialize_app() -> FastAPI:
    app = FastAPI(
        title="SQL Chatbot API",
        description="Chat with an AI assistant to design databases, generate SQL and draw ER diagrams",
        version="1.0.0",
        docs_url="/chatbot/docs",
        redoc_url="/chatbot/redoc",
        openapi_url="/chatbot/openapi.json",
        lifespan=lifespan,
    )

    app.include_router(chatbot_router, prefix=API_PREFIX, tags=["chat"])
    app.include_router(connection_router, prefix=API_PREFIX, tags=["connection"])
    app.include_router(tools_router, prefix=API_PREFIX, tags=["tools"])
    return app


def add_middlewares(app: FastAPI):
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Replace with specific domains in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response


app = initialize_app()
add_middlewares(app)


@app.get("/")
async def root():
    return {"message": "SQL Chatbot API is running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    logger.info("Starting SQL Chatbot API server...")
    import uvicorn

    uvicorn.run(
        "sql_chatbot.__main__:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
