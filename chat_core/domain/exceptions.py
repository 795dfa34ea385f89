"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或 UI 层做统一捕获与用户提示。

每个子类都有稳定的 code 与 http_status，表现层只需按类型/code
映射状态码，不需要解析 message 文本。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、provider 等）。
    """

    default_code = "BUSINESS_ERROR"
    default_status = 400

    def __init__(self, code: Optional[str] = None, message: str = "", http_status: Optional[int] = None, **extra):
        self.code = code or self.default_code
        self.message = message
        self.http_status = http_status or self.default_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """参数、配置或消息结构校验失败（例如未知 role）。"""

    default_code = "VALIDATION_ERROR"


class NotFoundError(BusinessError):
    """会话 ID 无法解析到已存在的会话。"""

    default_code = "CONVERSATION_NOT_FOUND"
    default_status = 404


class StorageError(BusinessError):
    """持久化读写失败。"""

    default_code = "STORE_WRITE_ERROR"
    default_status = 500


class GenerationError(BusinessError):
    """Provider 拒绝或未能完成生成请求。"""

    default_code = "GENERATION_ERROR"
    default_status = 502


class NetworkError(GenerationError):
    """网络层错误，例如连接失败、DNS 解析失败等。"""

    default_code = "NETWORK_ERROR"


class ApiError(GenerationError):
    """第三方 API 返回非 2xx/429 错误时抛出。"""

    default_code = "API_ERROR"


class RateLimitError(GenerationError):
    """Provider 限流错误，由上层负责重试/退避策略。"""

    default_code = "RATE_LIMIT"
    default_status = 429


class ProviderTimeout(GenerationError):
    """阻塞调用或流式读取单个 chunk 时超时。"""

    default_code = "PROVIDER_TIMEOUT"
    default_status = 504


class StreamError(GenerationError):
    """流式生成中途失败，或同一个流被重复消费。"""

    default_code = "STREAM_ERROR"


class PersistenceAfterGenerationError(BusinessError):
    """生成已成功，但写入会话失败。

    已生成的文本保存在 text 上，调用方可以自行决定展示或重试写入；
    会话记录本身保持一致（只是缺少这一轮）。
    """

    default_code = "PERSISTENCE_AFTER_GENERATION"
    default_status = 500

    def __init__(self, text: str, conversation_id: str, cause: BusinessError):
        super().__init__(
            message=f"generated text could not be stored: {cause.message}",
            conversation_id=conversation_id,
            cause_code=cause.code,
        )
        self.text = text
        self.conversation_id = conversation_id
        self.cause = cause
