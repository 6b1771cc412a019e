# gemini_relay/streaming_utils.py
"""
此模块负责把 Gemini 的流式响应重新封装为 OpenAI 的 SSE 流。

处理流程：
1. 上游每次读取到的文本追加到 `StreamLineBuffer`，只释放完整的行，
   不完整的末尾行保留到下一次读取（避免跨网络读取边界的行被截断）。
2. `parse_stream_line` 同时兼容 "data: {...}" 与裸 JSON 两种行格式，
   无法解析的行记录日志后丢弃，不会中断整个流。
3. 每个解析成功且文本非空的片段立即转换为一个 `chat.completion.chunk` 事件发送。
4. 上游流结束后发送 `data: [DONE]`。
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import settings
from .conversion_utils import convert_gemini_chunk_to_openai_chunk, extract_candidate_text

logger = logging.getLogger(settings.app_name)

SSE_DATA_PREFIX = "data:"
SSE_DONE_EVENT = "data: [DONE]\n\n"
_UPSTREAM_DONE_MARKER = "[DONE]"
# SSE 中除 data 以外的字段行以及注释行，直接忽略
_SSE_IGNORED_PREFIXES = (":", "event:", "id:", "retry:")


def format_sse_event(payload: Dict[str, Any]) -> str:
    return f"{SSE_DATA_PREFIX} {json.dumps(payload, ensure_ascii=False)}\n\n"


class StreamLineBuffer:
    """按换行符切分增量文本，末尾不完整的行保留到下一次 feed。"""

    def __init__(self) -> None:
        self._remainder = ""

    def feed(self, text: str) -> List[str]:
        data = self._remainder + text
        lines = data.split("\n")
        self._remainder = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        remainder, self._remainder = self._remainder, ""
        return [remainder.rstrip("\r")] if remainder else []


def parse_stream_line(line: str) -> Optional[Dict[str, Any]]:
    """
    解析一行上游流式输出。

    空行、SSE 注释/字段行和上游的 [DONE] 标记返回 None；
    带 "data:" 前缀的行去掉前缀后按 JSON 解析，不带前缀的行直接按 JSON 解析。
    解析失败时记录警告并返回 None。
    """
    stripped = line.strip()
    if not stripped or stripped.startswith(_SSE_IGNORED_PREFIXES):
        return None
    if stripped.startswith(SSE_DATA_PREFIX):
        stripped = stripped[len(SSE_DATA_PREFIX):].strip()
    if not stripped or stripped == _UPSTREAM_DONE_MARKER:
        return None
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as e:
        logger.warning(f"无法解析上游流式行，已丢弃: {e}; 内容: {stripped[:200]}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"上游流式行不是 JSON 对象，已丢弃: {stripped[:200]}")
        return None
    return data


def _events_for_lines(lines: List[str], model: str) -> List[str]:
    events = []
    for line in lines:
        data = parse_stream_line(line)
        if data is None:
            continue
        if not extract_candidate_text(data):
            continue
        events.append(format_sse_event(convert_gemini_chunk_to_openai_chunk(data, model)))
    return events


async def openai_stream_generator(upstream_text: AsyncIterator[str], model: str) -> AsyncIterator[str]:
    """
    消费上游的增量文本，产出 OpenAI SSE 事件字符串。

    参数:
        upstream_text (AsyncIterator[str]): 上游响应的增量文本（由 GeminiClient 提供）。
        model (str): 回显到每个片段中的模型名称。

    流中途出现异常时（响应头已发送，无法再返回错误状态码）只记录日志并结束流，
    不发送 [DONE]。无论以何种方式退出，都会关闭上游迭代器以释放连接。
    """
    buffer = StreamLineBuffer()
    emitted = 0
    try:
        async for text in upstream_text:
            for event in _events_for_lines(buffer.feed(text), model):
                emitted += 1
                yield event
        for event in _events_for_lines(buffer.flush(), model):
            emitted += 1
            yield event
    except Exception as e:
        logger.error(f"转发上游流式响应时出错，流已终止: {e}", exc_info=settings.debug_mode)
        return
    finally:
        aclose = getattr(upstream_text, "aclose", None)
        if aclose is not None:
            await aclose()

    logger.info(f"流式响应完成，共发送 {emitted} 个片段。")
    yield SSE_DONE_EVENT
