"""Git 后端

职责：
- clone（可钉到锁文件中的提交）
- 本地状态校正（remote 地址、分支、工作区是否干净）
- pull / push / 检出提交 / 查询当前提交

所有 git 调用经 CommandExecutor 执行，测试时可注入假执行器。
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Any

from straightpm.core.exceptions import ValidationError
from straightpm.core.models import Recipe
from straightpm.utils.shell import CommandExecutor, CommandResult, format_cmd, get_executor

logger = logging.getLogger(__name__)

_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")

GIT_KEYWORDS = frozenset({
    "repo", "host", "branch", "remote", "fork", "protocol", "nonrecursive", "depth",
})

HOST_DOMAINS = {
    "github": "github.com",
    "gitlab": "gitlab.com",
    "codeberg": "codeberg.org",
    "sourcehut": "git.sr.ht",
    "bitbucket": "bitbucket.org",
}


class GitBackend:
    """Git 版本控制后端"""

    name = "git"

    def __init__(
        self,
        repos_dir: str | Path,
        *,
        default_host: str = "github",
        default_protocol: str = "https",
        executor: CommandExecutor | None = None,
    ) -> None:
        self.repos_dir = Path(repos_dir)
        self.default_host = default_host
        self.default_protocol = default_protocol
        self._executor = executor

    # ---- 配方解释 ----

    def relevant_keywords(self) -> set[str]:
        return set(GIT_KEYWORDS)

    def derive_repo_name(self, recipe: Recipe) -> str | None:
        """user/foo.el -> foo.el；https://host/x/foo.git -> foo"""
        repo = recipe.backend_fields.get("repo")
        if not isinstance(repo, str) or not repo.strip():
            return None
        name = repo.rstrip("/").split("/")[-1].split(":")[-1]
        name = name.removesuffix(".git").lstrip("~")
        return name or None

    def remote_url(self, recipe: Recipe, *, upstream: bool = False) -> str | None:
        """origin 地址；有 fork 时 origin 指向 fork，upstream 指向原仓"""
        fields = recipe.backend_fields
        fork = fields.get("fork")
        if fork and not upstream:
            repo, host = _fork_coordinates(fork, fields)
            return self._url(repo, host, fields.get("protocol"))
        return self._url(fields.get("repo"), fields.get("host"), fields.get("protocol"))

    def _url(self, repo: Any, host: Any, protocol: Any) -> str | None:
        if not isinstance(repo, str) or not repo:
            return None
        if "://" in repo or repo.startswith(("/", "git@", "file:")):
            return repo
        host = host or self.default_host
        domain = HOST_DOMAINS.get(str(host), str(host))
        if (protocol or self.default_protocol) == "ssh":
            return f"git@{domain}:{repo}.git"
        if host == "sourcehut":
            return f"https://{domain}/{repo}"
        return f"https://{domain}/{repo}.git"

    # ---- 操作 ----

    def repo_exists(self, local_repo: str) -> bool:
        return (self.repos_dir / local_repo / ".git").exists()

    def clone(self, recipe: Recipe, commit: str | None = None) -> bool:
        url = self.remote_url(recipe)
        if url is None:
            logger.error("包 %s 的配方没有 repo 字段，无法克隆", recipe.package)
            return False
        fields = recipe.backend_fields
        branch = fields.get("branch")
        _check_ref(branch)
        _check_ref(commit)

        dest = self.repos_dir / recipe.local_repo
        self.repos_dir.mkdir(parents=True, exist_ok=True)
        args = ["clone", "--origin", "origin"]
        depth = fields.get("depth")
        if isinstance(depth, int) and depth > 0 and not commit:
            args += ["--depth", str(depth)]
        if branch and not commit:
            args += ["--branch", branch]
        args += [url, str(dest)]

        logger.info("克隆 %s -> %s", url, dest)
        r = self._git(args, cwd=str(self.repos_dir))
        if not r.success:
            logger.error("git clone 失败 %s (rc=%d): %s", recipe.package, r.returncode, r.stderr[:300])
            shutil.rmtree(dest, ignore_errors=True)
            return False

        if fields.get("fork"):
            upstream = self.remote_url(recipe, upstream=True)
            if upstream and not self._git(["remote", "add", "upstream", upstream], cwd=str(dest)).success:
                logger.warning("添加 upstream 远端失败: %s", recipe.local_repo)

        if commit and not self.checkout_commit(recipe.local_repo, commit):
            return False

        if not fields.get("nonrecursive"):
            r = self._git(["submodule", "update", "--init", "--recursive"], cwd=str(dest))
            if not r.success:
                logger.error("子模块初始化失败 %s: %s", recipe.local_repo, r.stderr[:300])
                return False
        return True

    def ensure_local_state_matches(self, recipe: Recipe) -> bool:
        cwd = self.repos_dir / recipe.local_repo
        if not self.repo_exists(recipe.local_repo):
            logger.error("代码仓未检出: %s", recipe.local_repo)
            return False

        expected = self.remote_url(recipe)
        r = self._git(["remote", "get-url", "origin"], cwd=str(cwd))
        actual = r.text if r.success else ""
        if expected and actual != expected:
            logger.warning("修正 %s 的 origin: %s -> %s", recipe.local_repo, actual or "(无)", expected)
            cmd = ["remote", "set-url", "origin", expected] if actual else ["remote", "add", "origin", expected]
            if not self._git(cmd, cwd=str(cwd)).success:
                return False

        r = self._git(["status", "--porcelain"], cwd=str(cwd))
        if not r.success:
            return False
        if r.text:
            logger.warning("代码仓 %s 有未提交的修改，请手动处理", recipe.local_repo)
            return False

        branch = recipe.backend_fields.get("branch")
        if branch:
            _check_ref(branch)
            r = self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=str(cwd))
            if r.text != branch:
                logger.info("切换 %s 到分支 %s", recipe.local_repo, branch)
                if not self._git(["checkout", branch], cwd=str(cwd)).success:
                    logger.error("切换分支失败: %s@%s", recipe.local_repo, branch)
                    return False
        return True

    def pull(self, recipe: Recipe, from_upstream: bool = False) -> bool:
        cwd = str(self.repos_dir / recipe.local_repo)
        remote = "upstream" if from_upstream and recipe.backend_fields.get("fork") else "origin"
        branch = recipe.backend_fields.get("branch")
        args = ["pull", "--ff-only", remote]
        if branch:
            _check_ref(branch)
            args.append(branch)
        r = self._git(args, cwd=cwd)
        if not r.success:
            logger.error("git pull 失败 %s (remote=%s): %s", recipe.local_repo, remote, r.stderr[:300])
        return r.success

    def push(self, recipe: Recipe) -> bool:
        cwd = str(self.repos_dir / recipe.local_repo)
        r = self._git(["push", "origin", "HEAD"], cwd=cwd)
        if not r.success:
            logger.error("git push 失败 %s: %s", recipe.local_repo, r.stderr[:300])
        return r.success

    def checkout_commit(self, local_repo: str, commit: str) -> bool:
        _check_ref(commit)
        cwd = str(self.repos_dir / local_repo)
        if not self._git(["cat-file", "-e", f"{commit}^{{commit}}"], cwd=cwd).success:
            self._git(["fetch", "origin"], cwd=cwd)
        r = self._git(["checkout", commit], cwd=cwd)
        if not r.success:
            logger.error("检出提交失败 %s@%s: %s", local_repo, commit, r.stderr[:300])
        return r.success

    def current_commit(self, local_repo: str) -> str | None:
        r = self._git(["rev-parse", "HEAD"], cwd=str(self.repos_dir / local_repo))
        if not r.success:
            return None
        return r.text or None

    def _git(self, args: list[str], *, cwd: str) -> CommandResult:
        cmd = ["git", *args]
        logger.debug("  %s (cwd=%s)", format_cmd(cmd), cwd)
        # 凭据提示会卡住非交互会话
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        return (self._executor or get_executor()).execute(cmd, cwd=cwd, env=env)


def _check_ref(ref: Any) -> None:
    if ref and not _SAFE_REF_RE.match(str(ref)):
        raise ValidationError(f"ref 包含非法字符: {ref}")


def _fork_coordinates(fork: Any, fields: dict[str, Any]) -> tuple[str | None, Any]:
    """fork 可写成 "user/repo" 或 {repo: ..., host: ...}"""
    if isinstance(fork, dict):
        return fork.get("repo") or fields.get("repo"), fork.get("host") or fields.get("host")
    if isinstance(fork, str):
        if "/" in fork:
            return fork, fields.get("host")
        # 只给了用户名，沿用原仓名
        repo = fields.get("repo")
        name = repo.split("/")[-1] if isinstance(repo, str) else None
        return (f"{fork}/{name}" if name else None), fields.get("host")
    return fields.get("repo"), fields.get("host")
