"""统一异常体系

所有业务异常继承 FetchKitError，code 即报告/CLI/Web 层使用的错误类别。
单个依赖的失败被包装为 DependencyFailure 汇总到 PassReport，不会影响其他依赖。
"""

from __future__ import annotations


class FetchKitError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"
    # 是否允许调用方重试（仅瞬时网络错误）
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(FetchKitError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(FetchKitError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class ConflictingDeclarationError(FetchKitError):
    """同名依赖以不同的 Locator 重复声明"""

    code = "CONFLICTING_DECLARATION"

    def __init__(self, name: str, existing: object, requested: object) -> None:
        super().__init__(
            f"依赖 '{name}' 重复声明且来源不一致: 已有 {existing}, 新声明 {requested}"
        )
        self.name = name
        self.existing = existing
        self.requested = requested


class FetchError(FetchKitError):
    """内容拉取失败

    kind:
      - network:       网络/传输失败（可重试）
      - ref_not_found: 远端不存在该分支/标签/提交
      - not_found:     本地路径不存在
    """

    code = "FETCH_ERROR"
    KINDS = ("network", "ref_not_found", "not_found")

    def __init__(self, kind: str, message: str) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"未知的 FetchError 类型: {kind}")
        super().__init__(message)
        self.kind = kind
        self.code = f"FETCH_{kind.upper()}"
        self.retryable = kind == "network"


class DigestMismatchError(FetchKitError):
    """下载内容摘要与声明不一致"""

    code = "DIGEST_MISMATCH"

    def __init__(self, expected: str, actual: str, source: str = "") -> None:
        label = f" ({source})" if source else ""
        super().__init__(f"摘要不匹配{label}: 期望 {expected}, 实际 {actual}")
        self.expected = expected
        self.actual = actual


class IntegrationError(FetchKitError):
    """依赖的内嵌构建描述无法集成"""

    code = "INTEGRATION_MALFORMED"

    def __init__(self, message: str, kind: str = "malformed") -> None:
        super().__init__(message)
        self.kind = kind


class LockTimeoutError(FetchKitError):
    """等待指纹锁超时"""

    code = "LOCK_TIMEOUT"


class FetchCancelledError(FetchKitError):
    """配置过程被外部取消"""

    code = "CANCELLED"
