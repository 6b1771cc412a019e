# gemini_relay/config.py
"""
此模块定义了应用配置的数据模型以及加载配置的逻辑。

它使用 Pydantic 库来定义配置结构、提供数据验证和默认值。
配置可以从 YAML 文件加载，如果文件不存在或格式错误，则会使用默认配置。
Gemini API 密钥只从环境变量 `GEMINI_API_KEY` 读取（优先于 YAML 中的值），
并以 `SecretStr` 保存，避免在日志或 repr 中泄露。
"""
import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, ValidationError

API_KEY_ENV_VAR = "GEMINI_API_KEY"
CONFIG_PATH_ENV_VAR = "GEMINI_RELAY_CONFIG"
DEFAULT_CONFIG_PATH = "config/settings.yaml"


class ProxyConfig(BaseModel):
    """
    代理核心功能相关的配置。
    """
    upstream_base_url: str = Field(default="https://generativelanguage.googleapis.com/v1beta", description="Gemini REST API 的基础地址，模型路径会拼接在其后。")
    upstream_timeout: Optional[float] = Field(default=None, gt=0, description="向 Gemini 发出请求的超时时间（秒）。为 null 时不限制。")
    stream_use_sse: bool = Field(default=True, description="流式请求是否附加 alt=sse，让上游以 'data: ' 行的形式返回片段。")
    default_temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="客户端未提供 temperature 时使用的默认值。")
    default_max_output_tokens: int = Field(default=2048, ge=1, description="客户端未提供 max_tokens 时使用的默认 maxOutputTokens。")
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"], description="允许跨域访问的来源列表。")


class AppSettings(BaseModel):
    """
    应用顶层配置模型，聚合了所有其他配置部分。
    """
    app_name: str = Field(default="gemini-relay", description="应用程序的名称，主要用于日志记录。")
    log_level: str = Field(default="INFO", description="应用程序的日志级别 (例如 DEBUG, INFO, WARNING, ERROR)。")
    debug_mode: bool = Field(default=False, description="是否启用调试模式。调试模式下已处理的异常也会记录完整堆栈。")
    server_host: str = Field(default="0.0.0.0", description="Uvicorn 服务器监听的主机地址。")
    server_port: int = Field(default=8000, gt=0, lt=65536, description="Uvicorn 服务器监听的端口号。")
    gemini_api_key: Optional[SecretStr] = Field(default=None, description="Gemini API 密钥。绝不能写入日志或返回给客户端。")
    proxy: ProxyConfig = Field(default_factory=ProxyConfig, description="代理功能相关的配置。")

    def api_key_value(self) -> Optional[str]:
        """返回明文密钥；未配置或为空字符串时返回 None。"""
        if self.gemini_api_key is None:
            return None
        return self.gemini_api_key.get_secret_value() or None


def _apply_env_overrides(config_data: dict) -> dict:
    env_key = os.getenv(API_KEY_ENV_VAR)
    if env_key:
        config_data["gemini_api_key"] = env_key
    return config_data


def _default_settings() -> AppSettings:
    return AppSettings(**_apply_env_overrides({}))


def load_config(path: Optional[str] = None) -> AppSettings:
    """
    从指定的 YAML 文件加载应用配置，并用环境变量覆盖 API 密钥。

    如果配置文件未找到、为空、或解析/验证失败，则会打印警告信息到控制台，
    并返回一个使用默认值的 `AppSettings` 实例（API 密钥仍从环境变量读取）。

    参数:
        path (Optional[str]): 配置文件的路径。默认读取环境变量 `GEMINI_RELAY_CONFIG`，
            未设置时为 "config/settings.yaml"。

    返回:
        AppSettings: 加载并验证后的应用配置实例，或者在出错时返回默认配置实例。
    """
    if path is None:
        path = os.getenv(CONFIG_PATH_ENV_VAR, DEFAULT_CONFIG_PATH)

    try:
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f)
        if not config_data:
            print(f"警告: 配置文件 {path} 为空，将使用默认设置。")
            return _default_settings()
        if not isinstance(config_data, dict):
            print(f"警告: 配置文件 {path} 顶层不是映射，将使用默认设置。")
            return _default_settings()
        return AppSettings(**_apply_env_overrides(config_data))
    except FileNotFoundError:
        print(f"警告: 配置文件 {path} 未找到，将使用默认设置。")
        return _default_settings()
    except yaml.YAMLError as e:
        print(f"警告: 配置文件 {path} 解析错误: {e}，将使用默认设置。")
        return _default_settings()
    except ValidationError as e:
        print(f"警告: 配置文件 {path} 验证错误: {e}，将使用默认设置。")
        return _default_settings()


# 全局配置实例：在模块加载时从配置文件或默认值初始化。
# 路由通过 main.get_settings 依赖获取它，测试可以替换。
settings: AppSettings = load_config()
