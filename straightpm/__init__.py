"""straightpm - 基于源码检出的可复现包管理器"""

__version__ = "0.1.0"
