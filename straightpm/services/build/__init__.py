"""构建模块

- linker.py: 按 files 指令重建构建目录（符号链接）
- metadata.py: 从包元数据提取依赖
- host.py: autoload / 编译 / 激活 的宿主命令适配
"""

from straightpm.services.build.host import CommandHost
from straightpm.services.build.linker import link_package
from straightpm.services.build.metadata import package_dependencies

__all__ = ["CommandHost", "link_package", "package_dependencies"]
