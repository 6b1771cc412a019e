# gemini_relay/main.py
"""
此模块是 FastAPI 应用的主入口点。
它负责初始化应用、注册异常处理器、定义 API 端点等。
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from . import __version__
from .config import API_KEY_ENV_VAR, AppSettings, settings
from .conversion_utils import (
    clean_model_name,
    convert_gemini_response_to_openai_chat_completion,
    convert_openai_to_gemini_request,
    find_missing_fields,
)
from .errors import ConfigurationError, InvalidRequestError, MissingFieldsError, ProxyError
from .gemini_client import GeminiClient
from .log_config import build_logging_config, is_interactive_terminal
from .streaming_utils import openai_stream_generator

logger = logging.getLogger(settings.app_name)

CHAT_PATH = "/api/gemini"
OPENAI_CHAT_PATH = "/v1/chat/completions"
DIAGNOSTIC_PATH = "/api/test-env"
API_KEY_PREFIX_MAX_CHARS = 10


# ---- Lifespan 事件处理器 ----
@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    logger.info(f"应用 '{settings.app_name}' (通过 lifespan) 启动中...")
    logger.info(f"日志模式: {'彩色终端模式' if is_interactive_terminal() else '纯文本模式（适用于后台部署）'}")
    if settings.api_key_value() is None:
        logger.warning(f"未设置环境变量 {API_KEY_ENV_VAR}，聊天端点将返回 500。")
    yield
    logger.info(f"应用 '{settings.app_name}' (通过 lifespan) 关闭中...")


# ---- FastAPI 应用实例 ----
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.proxy.cors_allow_origins,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


# ---- 依赖项 ----
def get_settings() -> AppSettings:
    return settings


def get_gemini_client(app_settings: AppSettings = Depends(get_settings)) -> GeminiClient:
    """每个请求构造一个新的 GeminiClient，配置（含 API 密钥）显式传入。"""
    return GeminiClient(app_settings)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _read_json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        logger.error(f"解析请求体失败: {e}", exc_info=settings.debug_mode)
        raise InvalidRequestError("Invalid JSON body", message=str(e))
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return body


@app.post(CHAT_PATH)
@app.post(OPENAI_CHAT_PATH)
async def chat_completions_endpoint(
    request: Request,
    client: GeminiClient = Depends(get_gemini_client),
    app_settings: AppSettings = Depends(get_settings),
):
    """
    处理聊天补全请求的 API 端点。
    接收 OpenAI 格式的请求，转发到 Gemini，并把响应（或流式片段）转换回 OpenAI 格式。
    """
    try:
        if not client.has_api_key:
            raise ConfigurationError()

        original_body = await _read_json_body(request)
        missing = find_missing_fields(original_body)
        if missing:
            logger.warning(f"请求缺少必填字段: {', '.join(missing)}")
            raise MissingFieldsError(missing)

        model = clean_model_name(original_body["model"])
        client_requests_stream = bool(original_body.get("stream", False))
        logger.info(f"收到模型 '{model}' 的请求，客户端请求流式响应: {client_requests_stream}")

        gemini_request = convert_openai_to_gemini_request(original_body, app_settings.proxy)

        if not client_requests_stream:
            gemini_response = await client.generate_content(model, gemini_request)
            return JSONResponse(content=convert_gemini_response_to_openai_chat_completion(gemini_response, model))

        upstream = await client.stream_generate_content(model, gemini_request)
        # 客户端在第一个片段之前断开时生成器不会启动，由后台任务兜底关闭上游连接
        cleanup = BackgroundTasks()
        cleanup.add_task(upstream.aclose)
        return StreamingResponse(
            openai_stream_generator(upstream, model),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
            background=cleanup,
        )
    except ProxyError as e:
        logger.error(f"请求失败: {e.status_code} - {e.error}", exc_info=settings.debug_mode)
        raise
    except Exception as e:
        logger.error(f"处理请求时发生未知错误: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "message": str(e)},
        )


@app.options(CHAT_PATH, include_in_schema=False)
@app.options(OPENAI_CHAT_PATH, include_in_schema=False)
async def chat_completions_preflight() -> Response:
    return Response(status_code=200)


@app.api_route(CHAT_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
@app.api_route(OPENAI_CHAT_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def chat_completions_method_not_allowed() -> JSONResponse:
    return JSONResponse(
        status_code=405,
        content={"error": "Method Not Allowed"},
        headers={"Allow": "POST, OPTIONS"},
    )


# ---- 说明与诊断端点 ----
@app.get("/")
@app.get("/api")
async def service_info(request: Request) -> Dict[str, Any]:
    """返回服务的静态说明。"""
    return {
        "name": "Gemini Relay",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "gemini": {
                "path": CHAT_PATH,
                "method": "POST",
                "description": "Gemini API 中转服务（OpenAI 兼容格式）",
            },
            "openai": {
                "path": OPENAI_CHAT_PATH,
                "method": "POST",
                "description": f"{CHAT_PATH} 的 OpenAI 路径别名",
            },
        },
        "usage": {
            "example": {
                "url": str(request.base_url).rstrip("/") + CHAT_PATH,
                "method": "POST",
                "headers": {"Content-Type": "application/json"},
                "body": {
                    "model": "gemini-2.0-flash-exp",
                    "messages": [{"role": "user", "content": "你好"}],
                },
            }
        },
    }


def mask_api_key(api_key: str) -> str:
    """只显示密钥开头的一小段：最多 10 个字符，且不超过密钥长度的一半。"""
    visible = min(API_KEY_PREFIX_MAX_CHARS, len(api_key) // 2)
    return api_key[:visible] + "..."


@app.get(DIAGNOSTIC_PATH)
async def diagnostic(app_settings: AppSettings = Depends(get_settings)) -> Dict[str, Any]:
    """报告密钥是否已配置，以及掩码后的前缀。绝不返回完整密钥。"""
    api_key = app_settings.api_key_value()
    return {
        "hasApiKey": api_key is not None,
        "apiKeyLength": len(api_key) if api_key else 0,
        "apiKeyPrefix": mask_api_key(api_key) if api_key else "NOT SET",
        "allEnvKeys": sorted(k for k in os.environ if "GEMINI" in k),
    }


@app.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "OK"}


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=settings.server_host,
        port=settings.server_port,
        log_config=build_logging_config(settings),
    )


# ---- 本地开发服务器启动 ----
if __name__ == "__main__":
    run()
