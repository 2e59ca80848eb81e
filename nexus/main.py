"""
Main application entry point for Nexus - Roleplay Conversation Engine.
"""
from pathlib import Path
from dotenv import load_dotenv

# 加载 .env 文件（在读取 settings 之前）
load_dotenv()

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nexus import __version__
from nexus.config.settings import settings
from nexus.providers.factory import get_provider_factory
from nexus.services.catalog import Catalog, set_catalog
from nexus.services.chat_service import ChatService, get_chat_service, set_chat_service
from nexus.services.stream_orchestrator import StreamOrchestrator
from nexus.storage.base import SessionStore
from nexus.storage.memory_storage import MemorySessionStore
from nexus.storage.redis_storage import RedisSessionStore

# 配置日志
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def create_session_store() -> SessionStore:
    """
    初始化会话存储：优先 Redis，连接失败时降级到内存存储
    """
    if settings.REDIS_PASSWORD:
        logger.info(
            "Redis 认证已启用（用户名: %s）",
            settings.REDIS_USERNAME or "<default>"
        )
    redis_store = RedisSessionStore(
        redis_url=settings.REDIS_URL,
        ttl_seconds=settings.SESSION_TTL,
        key_prefix=settings.SESSION_KEY_PREFIX,
        username=settings.REDIS_USERNAME,
        password=settings.REDIS_PASSWORD
    )
    try:
        await redis_store.connect()
        logger.info(f"✅ Redis 存储初始化成功: {settings.REDIS_URL}")
        return redis_store
    except Exception as e:
        logger.warning(f"⚠️  Redis 存储初始化失败: {e}, 将使用内存存储")
        memory_store = MemorySessionStore()
        await memory_store.connect()
        return memory_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("Starting Nexus - Roleplay Conversation Engine...")

    store = await create_session_store()

    catalog = await Catalog.load(Path(settings.CATALOG_PATH))
    set_catalog(catalog)

    orchestrator = StreamOrchestrator(store, get_provider_factory(), settings)
    set_chat_service(ChatService(store, orchestrator, catalog))
    logger.info(f"Chat service initialized (provider: {settings.LLM_PROVIDER})")

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down...")
    await store.close()
    set_chat_service(None)
    logger.info("Application shutdown complete")


# 创建FastAPI应用
app = FastAPI(
    title="Nexus",
    version=__version__,
    description="Roleplay conversation streaming & memory orchestration engine",
    lifespan=lifespan
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
from nexus.api.chat import router as chat_router

app.include_router(chat_router)


# 全局异常处理
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)}
    )


# 健康检查端点
@app.get("/health")
async def health_check():
    """系统健康检查端点"""
    try:
        storage_ok = await get_chat_service().store.health_check()
    except RuntimeError:
        storage_ok = False
    return {
        "status": "healthy" if storage_ok else "degraded",
        "version": __version__,
        "service": "Nexus"
    }


# 系统信息端点
@app.get("/info")
async def system_info():
    """返回系统配置信息（不含凭据）"""
    return {
        "provider": settings.LLM_PROVIDER,
        "context_size": settings.CONTEXT_SIZE,
        "max_output_tokens": settings.MAX_OUTPUT_TOKENS,
        "memory_trigger_threshold": settings.MEMORY_TRIGGER_THRESHOLD,
        "memory_slice_percent": settings.MEMORY_SLICE_PERCENT,
        "render_interval_ms": settings.RENDER_INTERVAL_MS
    }


def main():
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
