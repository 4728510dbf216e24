"""
应用配置管理

使用 pydantic-settings 实现类型安全的配置管理：
- 支持从环境变量读取配置
- 支持从 .env 文件读取配置
- 提供默认值，确保开发环境开箱即用

配置优先级（从高到低）：
    1. 环境变量
    2. .env 文件
    3. 代码中的默认值

使用示例：
    from kbchat.config import get_settings
    settings = get_settings()
    print(settings.qdrant_url)
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    全局配置类

    所有配置项都可以通过环境变量覆盖，环境变量名与字段名相同（不区分大小写）。
    例如：QDRANT_URL 环境变量会覆盖 qdrant_url 字段。
    """

    # ==================== 应用基础配置 ====================
    app_name: str = "KB Chat Service"
    environment: str = "dev"                 # 运行环境：dev/test/prod
    log_level: str = "INFO"
    log_json: bool | None = None             # None=自动（prod 用 JSON）

    # ==================== 数据库配置 ====================
    # 格式：postgresql+asyncpg://用户名:密码@主机:端口/数据库名
    database_url: str = "postgresql+asyncpg://kb:kb@localhost:5432/kbchat"

    # ==================== 向量数据库配置 (Qdrant) ====================
    qdrant_url: str = "http://localhost:6333"  # ":memory:" 使用进程内 Qdrant
    qdrant_api_key: str | None = None
    qdrant_collection_prefix: str = "knowledge_"  # 知识库 7 -> knowledge_7

    # ==================== Embedding 配置 ====================
    # provider: openai（OpenAI 兼容接口，含 DashScope/SiliconFlow）/ ollama
    embedding_provider: str = "openai"
    embedding_model: str = "text-embedding-v4"
    embedding_api_key: str | None = None
    embedding_api_base: str | None = "https://dashscope.aliyuncs.com/compatible-mode/v1"
    embedding_dim: int = 1024

    # ==================== 对话模型配置 ====================
    llm_provider: str = "openai"
    llm_model: str = "deepseek-ai/DeepSeek-R1"
    llm_api_key: str | None = None
    llm_api_base: str | None = "https://api.siliconflow.cn/v1"
    llm_temperature: float = 0.7
    llm_max_tokens: int | None = None

    # Ollama（本地部署，两类模型共用）
    ollama_base_url: str = "http://localhost:11434"

    # ==================== 文档入库配置 ====================
    chunk_size: int = 1000
    chunk_overlap: int = 200
    # 批大小与批间延迟只是限流参数，按上游配额调整
    embedding_batch_size: int = 10
    embedding_batch_delay_ms: int = 1000
    provenance_chars: int = 500              # 每个片段携带的原文前缀长度
    ocr_languages: str = "chi_sim+eng"

    # ==================== 检索与对话配置 ====================
    search_top_k: int = 5
    history_limit: int = 10

    # ==================== 文件存储配置 ====================
    upload_dir: str = "uploads"              # 本地存储目录
    static_prefix: str = "static"            # 对外暴露的 URL 前缀

    # ==================== 传输配置 ====================
    ws_path: str = "/ws"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def get_embedding_config(self) -> dict:
        """获取 Embedding 配置（provider, model, api_key, base_url）"""
        return self._get_provider_config(
            self.embedding_provider,
            self.embedding_model,
            self.embedding_api_key,
            self.embedding_api_base,
        )

    def get_llm_config(self) -> dict:
        """获取对话模型配置"""
        return self._get_provider_config(
            self.llm_provider,
            self.llm_model,
            self.llm_api_key,
            self.llm_api_base,
        )

    def _get_provider_config(
        self,
        provider: str,
        model: str,
        api_key: str | None,
        base_url: str | None,
    ) -> dict:
        provider = provider.lower()
        if provider == "ollama":
            return {"provider": "ollama", "base_url": self.ollama_base_url, "model": model}
        if provider == "openai":
            return {"provider": "openai", "api_key": api_key, "base_url": base_url, "model": model}
        raise ValueError(f"未知的模型提供商: {provider}")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    获取配置单例

    使用 @lru_cache 缓存配置实例，整个应用只创建一次 Settings 对象。
    """
    return Settings()
