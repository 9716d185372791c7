"""
Memory engine 组装入口

根据环境变量创建一个可直接使用的 MemoryOrchestrator：
- 存储: DATABASE_URL 已配置时使用 PostgreSQL + pgvector，否则 fallback 到进程内存储
- 模型: init_chat_model 创建记忆抽取 LLM（低温度）和上下文压缩 LLM（温度 0）
- Embedding: OpenAI 兼容的 embedding API，首次使用时才初始化

使用示例：
    orchestrator = create_memory_engine()
    messages = orchestrator.build_context(session_id, "I prefer TypeScript.")
    # ... 调用 LLM 并流式返回 ...
    orchestrator.schedule_reflection(session_id, user_message, answer)
"""

import logging
import os
import warnings
from typing import Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .memory import (
    ContextCompressor,
    EmbeddingService,
    HybridRetriever,
    InMemoryStore,
    MemoryConfig,
    MemoryOrchestrator,
    MemoryPipeline,
    MemoryStore,
)

logger = logging.getLogger(__name__)


# 加载环境变量（override=True 确保 .env 文件覆盖系统环境变量）
load_dotenv(override=True)


# 默认配置
DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
EXTRACTION_TEMPERATURE = 0.1  # 事实抽取需要稳定输出
COMPRESSION_TEMPERATURE = 0.0
DEFAULT_MAX_TOKENS = 2000


def get_credentials() -> tuple[str | None, str | None]:
    """
    获取 API 认证信息

    支持通用和 Anthropic 专属环境变量（通用优先）：
    - API Key: API_KEY > ANTHROPIC_API_KEY > ANTHROPIC_AUTH_TOKEN
    - Base URL: API_BASE_URL > ANTHROPIC_BASE_URL

    Returns:
        (api_key, base_url) 元组
    """
    api_key = (
        os.getenv("API_KEY")
        or os.getenv("ANTHROPIC_API_KEY")
        or os.getenv("ANTHROPIC_AUTH_TOKEN")
    )
    base_url = os.getenv("API_BASE_URL") or os.getenv("ANTHROPIC_BASE_URL")
    return api_key, base_url


def create_chat_model(model_name: str, temperature: float):
    """
    创建 LangChain chat model

    model_provider 参数（MODEL_PROVIDER 未设置时不传，由 init_chat_model 自动推断）
    """
    api_key, base_url = get_credentials()
    init_kwargs = {
        "temperature": temperature,
        "max_tokens": DEFAULT_MAX_TOKENS,
        "max_retries": 3,
    }
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url

    model_provider = os.getenv("MODEL_PROVIDER")
    provider_kwargs = {}
    if model_provider:
        provider_kwargs["model_provider"] = model_provider

    return init_chat_model(model_name, **provider_kwargs, **init_kwargs)


def create_embedding_service(config: MemoryConfig) -> EmbeddingService:
    """
    创建 embedding 服务

    Embedding 认证: 专用环境变量 > 通用认证信息。
    模型在第一次 embed 时才创建（只创建一次）。
    """

    def factory():
        from langchain_openai import OpenAIEmbeddings

        api_key, base_url = get_credentials()
        embed_kwargs = {}
        embed_api_key = config.embedding_api_key or os.getenv("OPENAI_API_KEY") or api_key
        embed_base_url = config.embedding_base_url or base_url
        if embed_api_key:
            embed_kwargs["api_key"] = embed_api_key
        if embed_base_url:
            embed_kwargs["base_url"] = embed_base_url
        if config.embedding_dimensions:
            embed_kwargs["dimensions"] = config.embedding_dimensions
        return OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)

    return EmbeddingService(factory=factory, dimensions=config.embedding_dimensions)


def create_store(database_url: Optional[str], config: MemoryConfig) -> MemoryStore:
    """
    获取存储实例

    优先使用 PostgreSQL 持久化（需要 DATABASE_URL），
    未配置或连接失败时 fallback 到 InMemoryStore（保持零依赖可运行）。
    """
    if database_url:
        try:
            from .memory.pg_store import PostgresMemoryStore

            return PostgresMemoryStore(database_url, dimensions=config.embedding_dimensions)
        except Exception as e:
            warnings.warn(
                f"Failed to initialize PostgreSQL memory store: {e}. "
                "Falling back to InMemoryStore."
            )
    return InMemoryStore(dimensions=config.embedding_dimensions)


def create_memory_engine(
    database_url: Optional[str] = None,
    model: Optional[str] = None,
    config: Optional[MemoryConfig] = None,
) -> MemoryOrchestrator:
    """
    创建完整的记忆引擎

    Args:
        database_url: PostgreSQL 连接串，默认读取 DATABASE_URL
        model: 模型名称，默认 CHAT_MODEL 或 claude-sonnet-4-5-20250929
        config: 记忆配置，默认 MemoryConfig.from_env()
    """
    config = config or MemoryConfig.from_env()
    model_name = model or os.getenv("CHAT_MODEL", DEFAULT_MODEL)
    store = create_store(database_url or os.getenv("DATABASE_URL"), config)

    embeddings = create_embedding_service(config) if config.enable_embeddings else None

    try:
        extraction_llm = create_chat_model(model_name, EXTRACTION_TEMPERATURE)
    except Exception as e:
        logger.warning("Failed to create extraction LLM, memory extraction disabled: %s", e)
        extraction_llm = None

    compressor = None
    if config.enable_compression:
        try:
            compressor = ContextCompressor(
                create_chat_model(model_name, COMPRESSION_TEMPERATURE),
                threshold_chars=config.compression_threshold_chars,
            )
        except Exception as e:
            logger.warning("Failed to create compression LLM: %s", e)

    retriever = HybridRetriever(store, embeddings, config) if embeddings else None
    pipeline = MemoryPipeline(store, embeddings, extraction_llm, config)

    logger.info(
        "Memory engine ready (store: %s, model: %s, embeddings: %s)",
        type(store).__name__, model_name, "on" if embeddings else "off",
    )
    return MemoryOrchestrator(
        store=store,
        embeddings=embeddings,
        retriever=retriever,
        pipeline=pipeline,
        config=config,
        model_name=model_name,
        compressor=compressor,
    )
