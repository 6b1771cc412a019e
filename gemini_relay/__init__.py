"""
gemini_relay 包

此包包含了 OpenAI -> Gemini 中转代理的核心源代码。
主要模块包括：
- main.py: FastAPI 应用入口和 API 端点定义。
- config.py: 应用配置模型和加载逻辑。
- errors.py: 返回给客户端的错误类型。
- gemini_client.py: 与 Google Gemini REST API 交互的客户端逻辑。
- conversion_utils.py: OpenAI 和 Gemini 请求/响应格式之间的转换工具。
- streaming_utils.py: 流式响应的逐行解析与 SSE 重新封装。
- log_config.py: 日志格式化器与 uvicorn 日志配置。
"""
__version__ = "1.0.0"
