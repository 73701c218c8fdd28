"""集中配置管理

提供统一的配置入口，支持从 YAML 文件加载 + 编程式覆盖。
引擎对象一律显式接收 cache_root 等参数；get_config() 只在 CLI / Web 入口使用。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field

from fetchkit.core.exceptions import ConfigError
from fetchkit.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)


@dataclass
class Config:
    """框架全局配置"""

    # 目录
    cache_root: str = "_deps"
    manifest: str = "deps/manifest.yml"

    # 并发与锁
    max_workers: int = 8
    lock_timeout: float = 600.0         # 秒，等待其他进程释放指纹锁的上限
    lock_poll_interval: float = 0.2     # 秒

    # 拉取
    download_timeout: int = 300
    git_shallow: bool = True
    # 分支类 ref 是否每次配置都重新解析远端（False 时仅在显式 refresh 时解析）
    refresh_mutable_refs: bool = True
    # 完全离线：从不访问网络，只使用已缓存内容
    fully_disconnected: bool = False
    allow_file_urls: bool = False
    network_retries: int = 0

    # 编排
    fail_fast: bool = False

    # 依赖名 -> 预置源码目录（跳过拉取）
    source_dir_overrides: dict[str, str] = field(default_factory=dict)

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ConfigError(f"max_workers 必须 >= 1: {self.max_workers}")
        if self.lock_timeout <= 0 or self.lock_poll_interval <= 0:
            raise ConfigError("lock_timeout / lock_poll_interval 必须为正数")
        if self.network_retries < 0:
            raise ConfigError(f"network_retries 不能为负: {self.network_retries}")

    @classmethod
    def from_file(cls, path: str = "configs/fetchkit.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f.name for f in cls.__dataclass_fields__.values()}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        try:
            cfg = cls(**matched)
        except TypeError as e:
            raise ConfigError(f"配置文件格式错误 {path}: {e}") from e
        cfg.extra = extra
        if extra:
            logger.warning("配置文件中存在未识别的字段: %s", ", ".join(extra))
        return cfg

    def to_dict(self) -> dict:
        return asdict(self)


# 全局单例，首次 import 时不加载文件；由 CLI / Web 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "configs/fetchkit.yml") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", path)
    return _current
