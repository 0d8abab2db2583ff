"""PackageService 单元测试 — 依赖解析与构建流水线"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from types import SimpleNamespace

import pytest

from straightpm.core.config import Config
from straightpm.core.exceptions import (
    BackendError,
    BuildError,
    ConfigError,
    ExecutionError,
    RecipeNotFoundError,
    ValidationError,
)
from straightpm.core.models import ALWAYS, LAZY, PackageState, Recipe
from straightpm.core.recipe import MappingRecipeSource
from straightpm.core.session import Session
from straightpm.services.package_service import PackageService
from straightpm.services.repo.backends import BackendRegistry
from straightpm.services.repo.lockfile import VersionLockfiles

# local_repo -> {相对路径: 内容}
UPSTREAM = {
    "app": {"app.el": ';;; app.el\n;; Package-Requires: ((emacs "27.1") (lib "1.0"))\n'},
    "lib": {"lib.el": ";;; lib.el\n", "lib-tests.el": ";; tests\n"},
    "cyc-a": {"cyc-a.el": ';; Package-Requires: ((cyc-b "1"))\n'},
    "cyc-b": {"cyc-b.el": ';; Package-Requires: ((cyc-a "1"))\n'},
    "multi": {"core/multi-core.el": ";; core\n", "ext/multi-ext.el": ";; ext\n"},
}

RECIPES = {
    "app": {"repo": "me/app"},
    "lib": {"repo": "me/lib"},
    "cyc-a": {"repo": "me/cyc-a"},
    "cyc-b": {"repo": "me/cyc-b"},
    "multi-core": {"repo": "me/multi", "files": ["core/*.el"]},
    "multi-ext": {"repo": "me/multi", "files": ["ext/*.el"]},
}


class FakeBackend:
    """把 UPSTREAM 中的内容“克隆”到 repos_dir"""

    def __init__(self, repos_dir: str) -> None:
        self.repos_dir = Path(repos_dir)
        self.cloned: list[tuple[str, str | None]] = []
        self.fail_clone: set[str] = set()
        self.fail_pull: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.commits: dict[str, str] = {}

    def relevant_keywords(self) -> set[str]:
        return {"repo", "branch"}

    def derive_repo_name(self, recipe: Recipe) -> str | None:
        repo = recipe.backend_fields.get("repo")
        return repo.split("/")[-1] if repo else None

    def repo_exists(self, local_repo: str) -> bool:
        return (self.repos_dir / local_repo).is_dir()

    def clone(self, recipe: Recipe, commit: str | None = None) -> bool:
        self.cloned.append((recipe.local_repo, commit))
        if recipe.local_repo in self.fail_clone:
            return False
        dest = self.repos_dir / recipe.local_repo
        for rel, text in UPSTREAM.get(recipe.local_repo, {}).items():
            (dest / rel).parent.mkdir(parents=True, exist_ok=True)
            (dest / rel).write_text(text, encoding="utf-8")
        dest.mkdir(parents=True, exist_ok=True)
        return True

    def ensure_local_state_matches(self, recipe: Recipe) -> bool:
        self.calls.append(("normalize", recipe.local_repo))
        return True

    def pull(self, recipe: Recipe, from_upstream: bool = False) -> bool:
        self.calls.append(("pull-upstream" if from_upstream else "pull", recipe.local_repo))
        return recipe.local_repo not in self.fail_pull

    def push(self, recipe: Recipe) -> bool:
        self.calls.append(("push", recipe.local_repo))
        return True

    def checkout_commit(self, local_repo: str, commit: str) -> bool:
        self.calls.append(("checkout", f"{local_repo}@{commit}"))
        self.commits[local_repo] = commit
        return True

    def current_commit(self, local_repo: str) -> str | None:
        return self.commits.get(local_repo, f"{local_repo}-head")


class FakeHost:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.fail_compile: set[str] = set()

    def generate_autoloads(self, package: str, build_dir: str) -> None:
        self.events.append(("autoloads", package))

    def compile(self, package: str, build_dir: str) -> None:
        if package in self.fail_compile:
            raise ExecutionError(f"compile {package}失败 (rc=1): boom")
        self.events.append(("compile", package))

    def activate(self, package: str, build_dir: str) -> None:
        self.events.append(("activate", package))

    def count(self, kind: str, package: str) -> int:
        return self.events.count((kind, package))


@pytest.fixture()
def env(tmp_path: Path) -> SimpleNamespace:
    config = Config(
        base_dir=str(tmp_path / "sp"),
        profiles={"default": "default.yml", "work": "work.yml"},
    )
    backend = FakeBackend(config.repos_dir)
    backends = BackendRegistry()
    backends.register("git", backend)
    session = Session(
        config,
        sources=[MappingRecipeSource(RECIPES)],
        backend_for=backends.find,
        keywords_for=backends.keywords,
    )
    host = FakeHost()
    lockfiles = VersionLockfiles(config.versions_dir, config.profiles)
    svc = PackageService(session, backends, host, lockfiles)
    return SimpleNamespace(
        config=config, backend=backend, session=session, host=host,
        lockfiles=lockfiles, svc=svc,
    )


def _touch_future(path: Path) -> None:
    future = time.time() + 100
    os.utime(path, (future, future))


class TestUsePackage:
    def test_builds_and_activates_dependency_first(self, env) -> None:
        result = env.svc.use_package("app")
        assert result.state is PackageState.ACTIVATED
        assert result.built is True
        assert env.session.activation_trace == ["lib", "app"]
        assert env.host.events.index(("activate", "lib")) < env.host.events.index(("activate", "app"))
        assert env.session.build_cache.dependencies("app") == ["emacs", "lib"]

        out = Path(env.config.build_dir) / "lib"
        assert (out / "lib.el").is_symlink()
        assert not (out / "lib-tests.el").exists()
        assert str(out) in env.session.load_path

    def test_second_use_is_idempotent(self, env) -> None:
        env.svc.use_package("app")
        recipe = env.session.registry.get("app")
        clones = len(env.backend.cloned)

        result = env.svc.use_package("app")
        assert result.built is False
        assert env.session.registry.get("app") is recipe
        assert env.session.registry.conflicts == []
        assert len(env.backend.cloned) == clones
        assert env.host.count("compile", "app") == 1

    def test_cache_persisted_between_sessions(self, env) -> None:
        env.svc.use_package("app")
        assert Path(env.config.build_cache_file).exists()

        session = Session(
            env.config,
            sources=[MappingRecipeSource(RECIPES)],
            backend_for=env.svc.backends.find,
            keywords_for=env.svc.backends.keywords,
        )
        host = FakeHost()
        svc = PackageService(session, env.svc.backends, host, env.lockfiles)
        result = svc.use_package("app")
        assert result.built is False
        # 未过期时仍按缓存的依赖先激活依赖
        assert session.activation_trace == ["lib", "app"]
        assert session.build_cache.eager_packages == ["app", "lib"]

    def test_modified_repository_triggers_rebuild(self, env) -> None:
        env.svc.use_package("app")
        _touch_future(Path(env.config.repos_dir) / "app" / "app.el")

        result = env.svc.use_package("app")
        assert result.built is True
        assert env.host.count("compile", "app") == 2
        assert env.host.count("compile", "lib") == 1

    def test_unresolvable_package(self, env) -> None:
        result = env.svc.use_package("no-such-package")
        assert result.state is PackageState.UNRESOLVED
        assert not result.installed
        with pytest.raises(RecipeNotFoundError):
            env.svc.use_package("no-such-package", required=True)

    def test_builtin_package_is_host_provided(self, env) -> None:
        result = env.svc.use_package("emacs")
        assert result.provided_by_host is True
        assert env.backend.cloned == []

    def test_builtin_recipe_type(self, env) -> None:
        result = env.svc.use_package({"package": "native", "type": "built-in"})
        assert result.provided_by_host is True
        assert result.state is PackageState.REGISTERED
        assert env.backend.cloned == []

    def test_cycle_is_a_safe_noop(self, env) -> None:
        result = env.svc.use_package("cyc-a")
        assert result.state is PackageState.ACTIVATED
        assert env.session.activation_trace == ["cyc-b", "cyc-a"]

    def test_no_build_flag_skips_build(self, env) -> None:
        result = env.svc.use_package("lib", no_build=ALWAYS)
        assert result.state is PackageState.SKIPPED
        assert result.installed
        assert env.host.events == []

    def test_no_build_recipe_activates_existing_output(self, env) -> None:
        env.svc.use_package("lib")
        env.session.load_path.clear()
        result = env.svc.use_package({"package": "lib", "repo": "me/lib", "no_build": True})
        assert result.state is PackageState.ACTIVATED
        assert env.host.count("compile", "lib") == 1

    def test_lazy_mode_skips_missing_checkout(self, env) -> None:
        result = env.svc.use_package("lib", no_clone=LAZY)
        assert result.state is PackageState.REGISTERED
        assert env.backend.cloned == []
        assert env.session.registry.get("lib") is not None

    def test_clone_pins_locked_commit(self, env) -> None:
        env.lockfiles.write("default", {"lib": "abc123"})
        env.svc.use_package("lib")
        assert env.backend.cloned == [("lib", "abc123")]

    def test_clone_failure_raises(self, env) -> None:
        env.backend.fail_clone.add("lib")
        with pytest.raises(BackendError, match="lib"):
            env.svc.use_package("lib")

    def test_build_failure_does_not_finalize_cache(self, env) -> None:
        env.host.fail_compile.add("app")
        with pytest.raises(BuildError) as exc:
            env.svc.use_package("app")
        assert exc.value.package == "app"
        entry = env.session.build_cache.get("app")
        assert entry.last_build_time is None
        assert entry.dependencies == ["emacs", "lib"]
        assert env.session.build_cache.get("lib").last_build_time is not None
        assert "app" not in env.session.activation_trace

        # 下一次运行会重试
        env.host.fail_compile.clear()
        assert env.svc.use_package("app").built is True

    def test_dependency_failure_propagates(self, env) -> None:
        env.host.fail_compile.add("lib")
        with pytest.raises(BuildError) as exc:
            env.svc.use_package("app")
        assert exc.value.package == "lib"
        assert env.session.activation_trace == []

    def test_operation_state_cleared_afterwards(self, env) -> None:
        env.svc.use_package("app")
        assert env.session.visited == {}
        assert env.session.rebuilt == set()
        assert env.session.transaction.depth == 0


class TestRebuild:
    def test_rebuild_package_forces_build(self, env) -> None:
        env.svc.use_package("app")
        result = env.svc.rebuild_package("app")
        assert result.built is True
        assert env.host.count("compile", "app") == 2
        assert env.host.count("compile", "lib") == 1

    def test_rebuild_all_builds_shared_dependency_once(self, env) -> None:
        env.svc.use_package("app")
        env.host.events.clear()
        assert env.svc.rebuild_all() == {}
        assert env.host.count("compile", "lib") == 1
        assert env.host.count("compile", "app") == 1

    def test_check_all_collects_failures(self, env) -> None:
        env.svc.declare(["app", "cyc-a"])
        env.host.fail_compile.add("app")
        failures = env.svc.check_all()
        assert list(failures) == ["app"]
        assert "cyc-a" in env.session.activation_trace


class TestDeclare:
    def test_declare_registers_without_checkout(self, env) -> None:
        names = env.svc.declare(["app", {"package": "lib", "repo": "me/lib"}], "work")
        assert names == ["app", "lib"]
        assert env.backend.cloned == []
        assert env.session.registry.profiles["lib"] == {"work"}
        assert env.session.faithful is False

    def test_declare_skips_unresolvable(self, env, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.WARNING):
            assert env.svc.declare(["nope"]) == []
        assert "nope" in caplog.text

    def test_shared_repo_conflict_warns_once(self, env, caplog: pytest.LogCaptureFixture) -> None:
        env.svc.declare([{"package": "a", "local_repo": "shared", "repo": "me/shared"}])
        with caplog.at_level(logging.WARNING):
            env.svc.declare([{"package": "b", "local_repo": "shared", "repo": "me/shared"}])
        assert env.session.registry.conflicts == []

        env.session.reset()
        env.svc.declare([{"package": "a", "local_repo": "shared", "repo": "me/shared", "branch": "x"}])
        caplog.clear()
        with caplog.at_level(logging.WARNING):
            env.svc.declare([{"package": "b", "local_repo": "shared", "repo": "me/other", "branch": "y"}])
        conflicts = env.session.registry.conflicts
        assert len(conflicts) == 1
        assert {conflicts[0].package, conflicts[0].other} == {"a", "b"}
        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "'a'" in warnings[0] and "'b'" in warnings[0] and "branch" in warnings[0]

    def test_shared_repo_checked_against_last_registrant(
        self, env, caplog: pytest.LogCaptureFixture,
    ) -> None:
        env.svc.declare([{"package": "a", "local_repo": "shared", "repo": "me/shared"}])
        env.svc.declare([{"package": "b", "local_repo": "shared", "repo": "me/shared"}])
        with caplog.at_level(logging.WARNING):
            env.svc.declare([{"package": "b", "local_repo": "shared", "repo": "me/other"}])
        # b 已是 shared 的最近注册者，只报 b 自身前后两份配方不一致
        conflicts = env.session.registry.conflicts
        assert len(conflicts) == 1
        assert (conflicts[0].package, conflicts[0].other) == ("b", "b")
        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "'a'" not in warnings[0]

    def test_declare_unconfigured_profile_rejected(self, env) -> None:
        with pytest.raises(ConfigError, match="laptop"):
            env.svc.declare(["lib"], "laptop")
        assert env.session.registry.get("lib") is None
        assert env.svc.declared == {}

    def test_declare_file_unconfigured_profile_rejected(self, env, tmp_path: Path) -> None:
        path = tmp_path / "packages.yml"
        path.write_text("profiles:\n  laptop:\n    - lib\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="laptop"):
            env.svc.declare_file(path)

    def test_declare_file_malformed_yaml(self, env, tmp_path: Path) -> None:
        path = tmp_path / "packages.yml"
        path.write_text("packages: [app\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="无法解析"):
            env.svc.declare_file(path)

    def test_declare_file(self, env, tmp_path: Path) -> None:
        path = tmp_path / "packages.yml"
        path.write_text(
            "packages:\n"
            "  - app\n"
            "profiles:\n"
            "  work:\n"
            "    - package: cyc-a\n"
            "      repo: me/cyc-a\n",
            encoding="utf-8",
        )
        assert env.svc.declare_file(path) == ["app", "cyc-a"]
        assert env.svc.declared == {"app": "default", "cyc-a": "work"}

    def test_declare_file_rejects_non_list(self, env, tmp_path: Path) -> None:
        path = tmp_path / "packages.yml"
        path.write_text("profiles:\n  work: app\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            env.svc.declare_file(path)

    def test_use_all_validates_profile_cache(self, env) -> None:
        env.svc.declare(["app"])
        assert env.session.registry.profile_cache_valid is False
        assert env.svc.use_all() == {}
        assert env.session.registry.profile_cache_valid is True
        # 依赖也归属到声明它的 profile
        assert env.session.registry.profiles["lib"] == {"default"}


class TestVersions:
    def test_freeze_requires_complete_run(self, env) -> None:
        env.svc.use_package("lib")
        with pytest.raises(ValidationError, match="--force"):
            env.svc.freeze_versions()
        written = env.svc.freeze_versions(force=True)
        assert env.lockfiles.load("default") == {"lib": "lib-head"}
        assert set(written) == {"default"}

    def test_freeze_writes_one_lockfile_per_profile(self, env) -> None:
        env.svc.declare(["app"], "default")
        env.svc.declare(["cyc-a"], "work")
        assert env.svc.use_all() == {}
        written = env.svc.freeze_versions()
        assert set(written) == {"default", "work"}
        assert env.lockfiles.load("default") == {"app": "app-head", "lib": "lib-head"}
        assert env.lockfiles.load("work") == {"cyc-a": "cyc-a-head", "cyc-b": "cyc-b-head"}

    def test_freeze_unknown_profile_writes_nothing(self, env) -> None:
        env.svc.declare(["app"], "default")
        assert env.svc.use_all() == {}
        env.session.registry.profiles["app"].add("laptop")
        with pytest.raises(ConfigError, match="laptop"):
            env.svc.freeze_versions()
        assert not env.lockfiles.path_for("default").exists()

    def test_thaw_checks_out_locked_commits(self, env) -> None:
        env.svc.use_package("lib")
        env.lockfiles.write("default", {"lib": "deadbeef", "not-cloned": "0000"})
        assert env.svc.thaw_versions() == {}
        assert ("checkout", "lib@deadbeef") in env.backend.calls
        assert all("not-cloned" not in target for _, target in env.backend.calls)


class TestRepoOperations:
    def test_pull_all_continues_past_failures(self, env) -> None:
        env.svc.use_package("app")
        env.backend.fail_pull.add("lib")
        failures = env.svc.pull_all()
        assert list(failures) == ["lib"]
        assert ("pull", "app") in env.backend.calls

    def test_pull_package_from_upstream(self, env) -> None:
        env.svc.use_package("lib")
        env.svc.pull_package("lib", upstream=True)
        assert ("pull-upstream", "lib") in env.backend.calls

    def test_single_package_failure_raises(self, env) -> None:
        env.svc.use_package("lib")
        env.backend.fail_pull.add("lib")
        with pytest.raises(BackendError):
            env.svc.pull_package("lib")

    def test_shared_repository_handled_once(self, env) -> None:
        env.svc.use_package("multi-core")
        env.svc.use_package("multi-ext")
        assert env.backend.cloned == [("multi", None)]
        assert env.svc.normalize_all() == {}
        assert env.backend.calls.count(("normalize", "multi")) == 1
        assert env.svc.push_all() == {}
        assert env.backend.calls.count(("push", "multi")) == 1

    def test_missing_checkout_reported(self, env) -> None:
        env.svc.declare(["lib"])
        with pytest.raises(BackendError, match="未检出"):
            env.svc.normalize_package("lib")


class TestPrune:
    def test_prune_removes_unregistered_builds(self, env) -> None:
        env.svc.use_package("lib")
        cache = env.session.build_cache
        cache.finalize_build("old", Recipe("old", "old"), [])
        cache.save()
        (Path(env.config.build_dir) / "old").mkdir(parents=True)

        assert env.svc.prune_build() == ["old"]
        assert not (Path(env.config.build_dir) / "old").exists()
        assert (Path(env.config.build_dir) / "lib").exists()
        assert cache.packages() == ["lib"]

    def test_prune_without_registered_packages_is_noop(self, env) -> None:
        assert env.svc.prune_build() == []
