# gemini_relay/conversion_utils.py
"""
此模块负责在 OpenAI 和 Gemini REST API 格式之间进行数据转换。

主要功能包括：
- 校验 OpenAI 聊天请求的必填字段 (model, messages)。
- 将 OpenAI 聊天完成请求格式转换为 Gemini `generateContent` 请求格式。
- 将 Gemini 的 JSON 响应（完整响应或流式片段）转换为 OpenAI 聊天完成格式。

这里的函数都是纯函数：不做网络请求，不持有状态，同一输入总是得到相同的上游请求体。
"""
import json
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from .config import ProxyConfig, settings

logger = logging.getLogger(settings.app_name)

REQUIRED_FIELDS = ("model", "messages")

# 这些字段由转换逻辑直接消费，不算作“额外参数”
_CONSUMED_FIELDS = {"model", "messages", "stream", "temperature", "max_tokens"}

# OpenAI 采样参数 -> Gemini generationConfig 字段
OPENAI_TO_GEMINI_GENERATION_PARAMS: Dict[str, str] = {
    "top_p": "topP",
    "top_k": "topK",
    "stop": "stopSequences",
    "presence_penalty": "presencePenalty",
    "frequency_penalty": "frequencyPenalty",
    "seed": "seed",
}

MODEL_PATH_PREFIX = "models/"


def clean_model_name(model: Any) -> Optional[str]:
    """
    清理客户端传入的模型名称：去除首尾空白和嵌入的换行/回车，
    并去掉可选的 "models/" 前缀。清理后为空时返回 None。
    非字符串原样返回（交给上游报错）。
    """
    if not isinstance(model, str):
        return model
    cleaned = model.strip().replace("\r", "").replace("\n", "")
    if cleaned.startswith(MODEL_PATH_PREFIX):
        cleaned = cleaned[len(MODEL_PATH_PREFIX):]
    return cleaned or None


def find_missing_fields(body: Dict[str, Any]) -> List[str]:
    """
    返回请求体中缺失（不存在或为假值：null、空串、空列表、false、0）的必填字段名列表。

    只检查字段是否存在，不校验 messages 中的 role/content；
    不合法的子字段会原样发往上游，由上游报错。
    """
    missing = []
    for field in REQUIRED_FIELDS:
        value = body.get(field)
        if field == "model":
            value = clean_model_name(value)
        if not value:
            missing.append(field)
    return missing


def _first(value: Any) -> Any:
    if isinstance(value, list) and value:
        return value[0]
    return None


def _get(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key)
    return None


def _convert_role(role: Any) -> str:
    # system 不做特殊处理，与 user 一样映射
    return "model" if role == "assistant" else "user"


def convert_messages_to_gemini(messages: List[Any]) -> List[Dict[str, Any]]:
    """
    将 OpenAI 消息列表按顺序映射为 Gemini `contents`，文本内容原样保留。
    不是对象的消息同样映射为 user 消息（text 为 null），由上游报错。
    """
    return [
        {"role": _convert_role(_get(msg, "role")), "parts": [{"text": _get(msg, "content")}]}
        for msg in messages
    ]


def convert_openai_to_gemini_request(
    original_openai_request: Dict[str, Any],
    proxy_config: Optional[ProxyConfig] = None,
) -> Dict[str, Any]:
    """
    将 OpenAI 兼容的聊天请求体转换为 Gemini API 所需的请求体格式。

    Args:
        original_openai_request (Dict[str, Any]): 已通过 `find_missing_fields` 校验的请求体。
        proxy_config (Optional[ProxyConfig]): 提供 temperature / maxOutputTokens 的默认值，
            默认使用全局配置。

    Returns:
        Dict[str, Any]: Gemini 请求体，包含：
                        - "contents": Gemini 格式的消息列表。
                        - "generationConfig": temperature、maxOutputTokens 以及可映射的采样参数。
    """
    proxy_config = proxy_config or settings.proxy

    temperature = original_openai_request.get("temperature")
    if temperature is None:
        temperature = proxy_config.default_temperature
    max_tokens = original_openai_request.get("max_tokens")
    if max_tokens is None:
        max_tokens = proxy_config.default_max_output_tokens

    generation_config: Dict[str, Any] = {
        "temperature": temperature,
        "maxOutputTokens": max_tokens,
    }

    ignored_params = []
    for key, value in original_openai_request.items():
        if key in _CONSUMED_FIELDS:
            continue
        gemini_key = OPENAI_TO_GEMINI_GENERATION_PARAMS.get(key)
        if gemini_key is None or value is None:
            ignored_params.append(key)
            continue
        if key == "stop" and isinstance(value, str):
            value = [value]
        generation_config[gemini_key] = value

    if ignored_params:
        logger.info(f"忽略客户端传递的以下参数: {', '.join(sorted(ignored_params))}")

    gemini_request: Dict[str, Any] = {
        "contents": convert_messages_to_gemini(original_openai_request["messages"]),
        "generationConfig": generation_config,
    }
    logger.debug(f"构建的 Gemini generationConfig: {json.dumps(generation_config, ensure_ascii=False, default=str)}")
    return gemini_request


# --- Gemini 响应到 OpenAI 响应的转换函数 ---

def first_candidate(gemini_data: Any) -> Dict[str, Any]:
    """返回第一个候选者；任何一步缺失都退化为空字典。"""
    candidate = _first(_get(gemini_data, "candidates"))
    return candidate if isinstance(candidate, dict) else {}


def extract_candidate_text(gemini_data: Any) -> str:
    """
    读取 candidates[0].content.parts[0].text。

    路径中任何一步缺失或类型不符都返回空字符串，而不是抛出异常。
    """
    part = _first(_get(_get(first_candidate(gemini_data), "content"), "parts"))
    text = _get(part, "text")
    return text if isinstance(text, str) else ""


def extract_usage(gemini_data: Any) -> Dict[str, int]:
    """从 usageMetadata 复制 token 用量，缺失的计数按 0 填充。"""
    usage_metadata = _get(gemini_data, "usageMetadata")

    def _count(name: str) -> int:
        value = _get(usage_metadata, name)
        return value if isinstance(value, int) and not isinstance(value, bool) else 0

    return {
        "prompt_tokens": _count("promptTokenCount"),
        "completion_tokens": _count("candidatesTokenCount"),
        "total_tokens": _count("totalTokenCount"),
    }


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def convert_gemini_response_to_openai_chat_completion(
    gemini_response: Dict[str, Any],
    original_openai_request_model: str,
    request_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    将 Gemini `generateContent` 的 JSON 响应转换为 OpenAI `/v1/chat/completions` 响应格式。

    finish_reason 固定为 "stop"，不映射上游的实际结束原因（例如长度限制、安全过滤）。

    Args:
        gemini_response (Dict[str, Any]): 上游返回的 JSON 响应体。
        original_openai_request_model (str): 客户端请求中的模型名称，原样回显。
        request_id (Optional[str]): 响应 ID，默认新生成一个。

    Returns:
        Dict[str, Any]: OpenAI 聊天完成格式的字典。
    """
    openai_response = {
        "id": request_id or new_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": original_openai_request_model,
        "choices": [
            {
                "index": 0,
                "message": {
                    "role": "assistant",
                    "content": extract_candidate_text(gemini_response),
                },
                "finish_reason": "stop",
            }
        ],
        "usage": extract_usage(gemini_response),
    }
    logger.debug(f"转换后的 OpenAI 聊天完成响应: {json.dumps(openai_response, ensure_ascii=False, default=str)}")
    return openai_response


def convert_gemini_chunk_to_openai_chunk(
    gemini_chunk: Dict[str, Any],
    original_openai_request_model: str,
) -> Dict[str, Any]:
    """将一个 Gemini 流式片段转换为 OpenAI `chat.completion.chunk`，每个片段使用新的 ID 和时间戳。"""
    finish_reason = "stop" if first_candidate(gemini_chunk).get("finishReason") == "STOP" else None
    return {
        "id": new_completion_id(),
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": original_openai_request_model,
        "choices": [
            {
                "index": 0,
                "delta": {"content": extract_candidate_text(gemini_chunk)},
                "finish_reason": finish_reason,
            }
        ],
    }
