"""代码仓模块

- git.py: Git 后端（clone / pull / push / 检出提交）
- backends.py: backend_type -> 后端实现 注册表
- lockfile.py: 每个 profile 的版本锁文件
"""

from straightpm.services.repo.backends import BackendRegistry
from straightpm.services.repo.git import GitBackend
from straightpm.services.repo.lockfile import VersionLockfiles

__all__ = ["BackendRegistry", "GitBackend", "VersionLockfiles"]
