"""统一异常体系

所有业务异常继承 StraightError，CLI 层据此输出友好提示。

分类:
  - 输入错误 (ValidationError 及子类): 立即终止当前操作
  - 协作方失败 (ExecutionError 及子类): 终止当前包的流水线，不写构建缓存
  - 配方无法解析 (RecipeNotFoundError): 仅在调用方显式要求时才是错误
配方冲突只记告警，不抛异常。
"""

from __future__ import annotations


class StraightError(Exception):
    """基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(StraightError):
    """配置文件缺失、内容无效或引用了未知后端"""

    code = "CONFIG_ERROR"


class ValidationError(StraightError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"


class RecipeError(ValidationError):
    """配方格式非法"""

    code = "RECIPE_ERROR"


class FilesDirectiveError(ValidationError):
    """files 指令中存在无法识别的条目"""

    code = "FILES_DIRECTIVE_ERROR"


class RecipeNotFoundError(StraightError):
    """任何配方来源都找不到该包"""

    code = "RECIPE_NOT_FOUND"


class ExecutionError(StraightError):
    """外部命令 / 协作方执行失败"""

    code = "EXECUTION_ERROR"


class BackendError(ExecutionError):
    """版本控制后端操作返回失败"""

    code = "BACKEND_ERROR"


class BuildError(StraightError):
    """构建流水线失败，携带失败的包名"""

    code = "BUILD_ERROR"

    def __init__(self, package: str, message: str) -> None:
        super().__init__(f"{package}: {message}")
        self.package = package
