"""fetchkit - 声明式外部依赖获取与构建图集成引擎"""

__version__ = "0.3.0"
