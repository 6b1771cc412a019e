# gemini_relay/gemini_client.py
"""
此模块负责与 Google Gemini REST API 进行直接交互。

主要功能包括：
- 根据模型名称和是否流式选择 `generateContent` / `streamGenerateContent` 端点。
- 以 URL 查询参数 `key` 携带 API 密钥（密钥与完整 URL 都不会写入日志）。
- 发送非流式请求并返回上游 JSON。
- 打开流式请求：先检查状态码，再把持有连接的 `UpstreamStream` 交给调用方。
- 上游返回非成功状态码时，原样读取错误响应体并抛出 `UpstreamError`，不重试。
"""
import logging
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

import httpx

from .config import AppSettings, settings
from .errors import ConfigurationError, UpstreamError

logger = logging.getLogger(settings.app_name)

GENERATE_OPERATION = "generateContent"
STREAM_OPERATION = "streamGenerateContent"


class GeminiClient:
    """
    无状态的 Gemini 上游调用器。

    配置（包括 API 密钥）在构造时显式传入；每次请求都创建独立的 `httpx.AsyncClient`，
    请求之间不共享任何可变状态。`transport` 参数用于在测试中替换真实网络。
    """

    def __init__(self, app_settings: AppSettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = app_settings
        self._transport = transport

    @property
    def has_api_key(self) -> bool:
        return self._settings.api_key_value() is not None

    def _require_api_key(self) -> str:
        api_key = self._settings.api_key_value()
        if api_key is None:
            logger.error("未配置 GEMINI_API_KEY，拒绝向上游发送请求。")
            raise ConfigurationError()
        return api_key

    def build_url(self, model: str, stream: bool) -> str:
        """返回不含密钥的上游端点地址。"""
        operation = STREAM_OPERATION if stream else GENERATE_OPERATION
        base_url = self._settings.proxy.upstream_base_url.rstrip("/")
        return f"{base_url}/models/{quote(str(model), safe='')}:{operation}"

    def _build_params(self, api_key: str, stream: bool) -> Dict[str, str]:
        params = {"key": api_key}
        if stream and self._settings.proxy.stream_use_sse:
            params["alt"] = "sse"
        return params

    def _new_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.proxy.upstream_timeout),
            transport=self._transport,
        )

    async def generate_content(self, model: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        发送非流式请求。

        返回:
            Dict[str, Any]: 上游返回的 JSON 响应体。

        可能抛出的异常:
            ConfigurationError: 未配置 API 密钥（不会发出任何网络请求）。
            UpstreamError: 上游返回非成功状态码，携带原始状态码和响应体。
        """
        api_key = self._require_api_key()
        url = self.build_url(model, stream=False)
        logger.debug(f"正在向 Gemini 模型 '{model}' 发送非流式请求。")

        async with self._new_http_client() as client:
            response = await client.post(url, params=self._build_params(api_key, stream=False), json=payload)

        if response.is_error:
            error_body = response.text
            logger.error(f"Gemini API 返回错误 {response.status_code}: {error_body}")
            raise UpstreamError(response.status_code, error_body)

        logger.info(f"已收到来自 Gemini 模型 '{model}' 的响应。")
        return response.json()

    async def stream_generate_content(self, model: str, payload: Dict[str, Any]) -> "UpstreamStream":
        """
        打开流式请求并返回 `UpstreamStream`，迭代它得到上游响应体的增量文本。

        状态码在返回之前检查，因此错误仍能以正确的状态码返回给客户端。
        迭代耗尽、出错或调用 `aclose` 时都会释放上游连接。

        可能抛出的异常:
            ConfigurationError: 未配置 API 密钥。
            UpstreamError: 上游返回非成功状态码。
        """
        api_key = self._require_api_key()
        url = self.build_url(model, stream=True)
        logger.debug(f"正在向 Gemini 模型 '{model}' 发送流式请求。")

        client = self._new_http_client()
        try:
            request = client.build_request("POST", url, params=self._build_params(api_key, stream=True), json=payload)
            response = await client.send(request, stream=True)
        except BaseException:
            await client.aclose()
            raise

        if response.is_error:
            try:
                error_body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
                await client.aclose()
            logger.error(f"Gemini API 流式请求返回错误 {response.status_code}: {error_body}")
            raise UpstreamError(response.status_code, error_body)

        logger.info(f"已建立与 Gemini 模型 '{model}' 的流式连接。")
        return UpstreamStream(client, response)


class UpstreamStream:
    """
    已打开的上游流式响应，持有连接直到 `aclose` 被调用。

    可以不经迭代直接关闭（例如客户端在第一个片段前断开），`aclose` 可重复调用。
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self.response = response
        self.is_closed = False

    async def _iter_text(self) -> AsyncIterator[str]:
        try:
            async for text in self.response.aiter_text():
                yield text
        finally:
            await self.aclose()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iter_text()

    async def aclose(self) -> None:
        if self.is_closed:
            return
        self.is_closed = True
        try:
            await self.response.aclose()
        finally:
            await self._client.aclose()
            logger.debug("上游流式连接已关闭。")
