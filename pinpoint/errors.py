from __future__ import annotations
from typing import Optional


class PinpointError(RuntimeError):
    """pinpoint 各组件抛出的异常基类。"""


class TransportError(PinpointError):
    """网络层故障：连接失败、超时、响应无法解析。"""


class SourceUnavailable(PinpointError):
    """候选数据源或登记服务不可用。"""

    def __init__(self, source: str, detail: str = "") -> None:
        super().__init__(f"{source} unavailable: {detail}" if detail else f"{source} unavailable")
        self.source = source
        self.detail = detail


class AuthRequired(PinpointError):
    """标记存储拒绝了当前会话凭证（401）。"""


class RemoteStoreError(PinpointError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
