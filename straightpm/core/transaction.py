"""事务 — 在递归解析过程中合并昂贵的准备 / 收尾动作

依赖解析是递归的，一次顶层操作内 use_package 会被调用很多次。
事务维护一个嵌套深度计数和 (action_id -> teardown) 注册表：

  - 同一 action_id 的 setup 在一次顶层事务内只执行一次
  - 所有 teardown 在深度回到 0 时按注册的逆序执行一次
  - 即使事务体抛异常，teardown 也会执行

用法:
    tx = Transaction()
    with tx.scope():
        tx.exec_once("build-cache", setup=cache.load, teardown=cache.save)
        with tx.scope():                       # 嵌套，不会重复 load
            tx.exec_once("build-cache", setup=cache.load, teardown=cache.save)
    # 此处 cache.save 已执行一次
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class Transaction:
    """嵌套事务"""

    def __init__(self) -> None:
        self._depth = 0
        # 保持插入顺序；值为 None 表示该动作没有收尾
        self._actions: dict[str, Callable[[], None] | None] = {}

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def active(self) -> bool:
        return self._depth > 0

    def seen(self, action_id: str) -> bool:
        """当前事务内是否已执行过该动作"""
        return action_id in self._actions

    @contextmanager
    def scope(self) -> Iterator[Transaction]:
        """进入一层事务"""
        self._depth += 1
        try:
            yield self
        finally:
            # 先递减深度再收尾，收尾过程中重入的事务不会再次触发收尾
            self._depth -= 1
            if self._depth == 0:
                self._finish()

    def exec_once(
        self,
        action_id: str,
        setup: Callable[[], None] | None = None,
        teardown: Callable[[], None] | None = None,
    ) -> bool:
        """执行一次性动作，返回本次调用是否真正执行了 setup

        不在事务中时，setup 与 teardown 立即依次执行。
        """
        if not self.active:
            if setup is not None:
                setup()
            if teardown is not None:
                teardown()
            return True
        if action_id in self._actions:
            return False
        # 先登记再执行，setup 中重入同一 action_id 不会递归
        self._actions[action_id] = teardown
        if setup is not None:
            try:
                setup()
            except BaseException:
                del self._actions[action_id]
                raise
        return True

    def _finish(self) -> None:
        actions = list(self._actions.items())
        self._actions.clear()
        first_error: BaseException | None = None
        for action_id, teardown in reversed(actions):
            if teardown is None:
                continue
            try:
                teardown()
            except Exception as e:  # noqa: BLE001
                logger.error("事务收尾动作失败: %s: %s", action_id, e)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
