"""Tests for infra/sandbox.py — LocalEnvironment, git bootstrap, the factory and keep-alive."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import pytest

from fakes import FakeEnvironment
from infra.sandbox import (
    GIT_LOCAL_PREFIX,
    CommandResult,
    E2BEnvironment,
    LocalEnvironment,
    SandboxError,
    create_environment,
)


@pytest.fixture
def local_env(tmp_path):
    return LocalEnvironment(tmp_path / "env")


# ═══════════════════════════════════════════════════════════════════════════
# 1. LocalEnvironment
# ═══════════════════════════════════════════════════════════════════════════

class TestLocalEnvironment:
    def test_write_creates_parents_and_read_back(self, local_env):
        local_env.write_file("/home/user/project/a/b/c.txt", "hello")
        assert local_env.read_file("/home/user/project/a/b/c.txt") == "hello"
        assert local_env.host_path("/home/user/project/a/b/c.txt").is_file()

    def test_read_missing_raises(self, local_env):
        with pytest.raises(SandboxError, match="cannot read"):
            local_env.read_file("/home/user/nothing.txt")

    def test_run_returns_exit_code_and_output(self, local_env):
        result = local_env.run("echo out; echo err >&2; exit 3")
        assert result.exit_code == 3
        assert result.stdout.strip() == "out"
        assert result.stderr.strip() == "err"
        assert not result.ok

    def test_paths_mapped_in_commands_and_output(self, local_env):
        local_env.write_file("/home/user/project/x.ts", "x")
        result = local_env.run("ls /home/user/project/x.ts")
        assert result.ok
        assert result.stdout.strip() == "/home/user/project/x.ts"

    def test_cwd(self, local_env):
        local_env.write_file("/home/user/project/marker", "")
        result = local_env.run("ls", cwd="/home/user/project")
        assert "marker" in result.stdout

    def test_timeout(self, local_env):
        result = local_env.run("sleep 5", timeout=0.2)
        assert result.exit_code == 124
        assert "timed out" in result.stderr

    def test_kill_removes_root(self, local_env):
        local_env.write_file("/home/user/f", "x")
        local_env.kill()
        assert not local_env.root.exists()


# ═══════════════════════════════════════════════════════════════════════════
# 2. ensure_git
# ═══════════════════════════════════════════════════════════════════════════

class TestEnsureGit:
    def test_available_git_checked_once(self):
        env = FakeEnvironment(git_ready=False)

        env.ensure_git()
        env.ensure_git()

        assert env.commands == ["git --version"]

    def test_missing_git_is_built_and_put_on_path(self):
        env = FakeEnvironment(git_ready=False, responses=[
            ("make prefix", CommandResult(0, "git version 2.44.0")),
            ("git --version", CommandResult(127, "", "git: not found")),
        ])

        env.ensure_git()
        env.run("git status")

        assert any("make prefix" in c for c in env.commands)
        assert env.commands[-1] == f"export PATH={GIT_LOCAL_PREFIX}/bin:$PATH && git status"

    def test_install_failure_raises(self):
        env = FakeEnvironment(git_ready=False, responses=[
            ("make prefix", CommandResult(2, "", "no compiler")),
            ("git --version", CommandResult(127)),
        ])

        with pytest.raises(SandboxError, match="no compiler"):
            env.ensure_git()

        # Not cached: the next call tries again.
        with pytest.raises(SandboxError):
            env.ensure_git()


# ═══════════════════════════════════════════════════════════════════════════
# 3. Factory
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateEnvironment:
    def test_local_provider(self, tmp_path):
        settings = SimpleNamespace(sandbox_provider="local", local_sandbox_root=str(tmp_path))
        env = create_environment(settings)
        assert isinstance(env, LocalEnvironment)
        assert env.root.parent == tmp_path.resolve()

    def test_each_call_gets_its_own_directory(self, tmp_path):
        settings = SimpleNamespace(sandbox_provider="local", local_sandbox_root=str(tmp_path))
        assert create_environment(settings).root != create_environment(settings).root

    def test_unknown_provider(self):
        with pytest.raises(SandboxError, match="Unknown sandbox provider"):
            create_environment(SimpleNamespace(sandbox_provider="docker"))


# ═══════════════════════════════════════════════════════════════════════════
# 4. Lifetime
# ═══════════════════════════════════════════════════════════════════════════

class TestKeepAlive:
    @pytest.fixture
    def sdk_sandbox(self):
        with patch("e2b.Sandbox") as sandbox_cls:
            sandbox = sandbox_cls.create.return_value
            sandbox.sandbox_id = "sb-1"
            yield sandbox

    def test_e2b_sets_server_timeout(self, sdk_sandbox):
        env = E2BEnvironment(api_key="e2b_test", timeout=1800)

        env.keep_alive(1800.0)

        sdk_sandbox.set_timeout.assert_called_once_with(1800)

    def test_e2b_failure_raises_sandbox_error(self, sdk_sandbox):
        sdk_sandbox.set_timeout.side_effect = RuntimeError("sandbox not found")
        env = E2BEnvironment(api_key="e2b_test")

        with pytest.raises(SandboxError, match="sb-1.*sandbox not found"):
            env.keep_alive(60)

    def test_local_is_a_no_op(self, local_env):
        local_env.keep_alive(60)
        assert local_env.run("true").ok
