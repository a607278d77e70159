"""Tests for infra/workspace.py — the workspace registry and clone.

Covers:
- create / get / evict and the single-workspace-per-project rule
- inactivity expiry driven by a manual scheduler and clock
- busy projects are never expired; busy set works without a workspace
- kill and keep-alive failures are logged, not raised
- every use extends the environment's own lifetime by the TTL
- clone_repository: git check, clone command, failures redacted
"""

from __future__ import annotations

import logging

import pytest

from fakes import FakeClock, FakeEnvironment, ManualScheduler
from infra.sandbox import CommandResult, SandboxError
from infra.workspace import WorkspaceError, WorkspaceRegistry, clone_repository

TTL = 1800


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def environments():
    return []


@pytest.fixture
def registry(scheduler, clock, environments):
    def factory():
        env = FakeEnvironment(git_ready=False)
        environments.append(env)
        return env

    return WorkspaceRegistry(factory, ttl_seconds=TTL, scheduler=scheduler, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# 1. Basic lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestLifecycle:
    def test_create_and_get(self, registry, environments):
        ws = registry.create("p1")

        assert registry.get("p1") is ws
        assert ws.environment is environments[0]
        assert "p1" in registry
        assert len(registry) == 1

    def test_duplicate_create_rejected(self, registry):
        registry.create("p1")
        with pytest.raises(WorkspaceError, match="already exists"):
            registry.create("p1")

    def test_get_unknown_returns_none(self, registry):
        assert registry.get("nope") is None

    def test_get_refreshes_last_used(self, registry, clock):
        ws = registry.create("p1")
        clock.advance(60)
        registry.get("p1")
        assert ws.last_used == clock.now

    def test_get_or_create(self, registry):
        first, created = registry.get_or_create("p1")
        second, created_again = registry.get_or_create("p1")
        assert created and not created_again
        assert first is second

    def test_evict_kills_environment(self, registry, environments, scheduler):
        registry.create("p1")

        assert registry.evict("p1") is True
        assert environments[0].killed
        assert "p1" not in registry
        assert scheduler.timers[0].cancelled

    def test_evict_unknown(self, registry):
        assert registry.evict("nope") is False

    def test_active_ids_sorted(self, registry):
        registry.create("b")
        registry.create("a")
        assert registry.active_ids() == ["a", "b"]

    def test_kill_failure_is_logged(self, scheduler, clock, caplog):
        class UnkillableEnvironment(FakeEnvironment):
            def kill(self):
                raise RuntimeError("sandbox already gone")

        env = UnkillableEnvironment()
        registry = WorkspaceRegistry(lambda: env, ttl_seconds=TTL, scheduler=scheduler, clock=clock)
        registry.create("p1")

        with caplog.at_level(logging.ERROR, logger="forkpilot.infra.workspace"):
            assert registry.evict("p1") is True

        assert "p1" not in registry
        assert "sandbox already gone" in caplog.text


# ═══════════════════════════════════════════════════════════════════════════
# 2. Expiry
# ═══════════════════════════════════════════════════════════════════════════

class TestExpiry:
    def test_expiry_scheduled_with_ttl(self, registry, scheduler):
        registry.create("p1")
        assert [t.delay for t in scheduler.timers] == [TTL]

    def test_idle_workspace_evicted(self, registry, scheduler, clock, environments):
        registry.create("p1")
        clock.advance(TTL)

        scheduler.fire_pending()

        assert "p1" not in registry
        assert environments[0].killed

    def test_recent_use_postpones_expiry(self, registry, scheduler, clock):
        registry.create("p1")
        clock.advance(1000)
        registry.get("p1")
        clock.advance(TTL - 1000)

        scheduler.fire_pending()

        assert "p1" in registry
        assert [t.delay for t in scheduler.timers] == [1000]

        clock.advance(1000)
        scheduler.fire_pending()
        assert "p1" not in registry

    def test_busy_workspace_not_evicted(self, registry, scheduler, clock):
        registry.create("p1")
        assert registry.try_acquire("p1")
        clock.advance(TTL * 3)

        scheduler.fire_pending()

        assert "p1" in registry
        assert [t.delay for t in scheduler.timers] == [TTL]

    def test_release_restarts_idle_window(self, registry, scheduler, clock):
        registry.create("p1")
        registry.try_acquire("p1")
        clock.advance(TTL * 2)
        registry.release("p1")

        scheduler.fire_pending()

        assert "p1" in registry

    def test_get_extends_environment_lifetime(self, registry, environments):
        registry.create("p1")
        registry.get("p1")
        registry.get("p1")

        assert environments[0].lifetimes == [TTL, TTL]

    def test_release_extends_environment_lifetime(self, registry, environments):
        registry.create("p1")
        registry.try_acquire("p1")
        registry.release("p1")

        assert environments[0].lifetimes == [TTL]

    def test_long_busy_request_keeps_environment_alive(self, registry, scheduler, clock, environments):
        registry.create("p1")
        registry.try_acquire("p1")
        clock.advance(TTL)

        scheduler.fire_pending()

        assert environments[0].lifetimes == [TTL]

    def test_keep_alive_failure_is_logged(self, scheduler, clock, caplog):
        class ExpiredEnvironment(FakeEnvironment):
            def keep_alive(self, seconds):
                raise SandboxError("sandbox not found")

        registry = WorkspaceRegistry(ExpiredEnvironment, ttl_seconds=TTL, scheduler=scheduler, clock=clock)
        ws = registry.create("p1")

        with caplog.at_level(logging.WARNING, logger="forkpilot.infra.workspace"):
            assert registry.get("p1") is ws

        assert "sandbox not found" in caplog.text

    def test_stale_timer_ignored_after_recreate(self, registry, scheduler, clock, environments):
        registry.create("p1")
        registry.evict("p1")
        replacement = registry.create("p1")
        clock.advance(TTL)

        # The first (cancelled) timer does not fire; the live one does.
        assert scheduler.fire_pending() == 1
        assert "p1" not in registry
        assert replacement.environment.killed


# ═══════════════════════════════════════════════════════════════════════════
# 3. Per-project lock
# ═══════════════════════════════════════════════════════════════════════════

class TestBusy:
    def test_try_acquire_is_exclusive(self, registry):
        assert registry.try_acquire("p1")
        assert not registry.try_acquire("p1")
        assert registry.is_busy("p1")

    def test_release_frees_project(self, registry):
        registry.try_acquire("p1")
        registry.release("p1")
        assert not registry.is_busy("p1")
        assert registry.try_acquire("p1")

    def test_lock_without_workspace(self, registry):
        assert registry.try_acquire("new")
        assert "new" not in registry

    def test_projects_are_independent(self, registry):
        assert registry.try_acquire("a")
        assert registry.try_acquire("b")


# ═══════════════════════════════════════════════════════════════════════════
# 4. Clone
# ═══════════════════════════════════════════════════════════════════════════

class TestCloneRepository:
    URL = "https://github.com/octo/calc.git"
    TARGET = "/home/user/project"

    def test_clone_replaces_previous_copy(self, registry):
        ws = registry.create("p1")

        path = clone_repository(ws, self.URL, self.TARGET)

        env = ws.environment
        assert path == ws.repo_path == self.TARGET
        assert env.commands[0] == "git --version"
        assert env.commands[1] == f"rm -rf {self.TARGET}"
        assert env.commands[2] == f"git clone {self.URL} {self.TARGET}"

    def test_git_checked_once_per_environment(self, registry):
        ws = registry.create("p1")

        clone_repository(ws, self.URL, self.TARGET)
        clone_repository(ws, self.URL, self.TARGET)

        assert ws.environment.commands.count("git --version") == 1

    def test_clone_failure_redacts_secrets(self, registry):
        ws = registry.create("p1")
        ws.environment.responses = [
            ("git clone", CommandResult(128, "", "fatal: Authentication failed for 'https://tok123@github.com'")),
        ]

        with pytest.raises(WorkspaceError) as excinfo:
            clone_repository(ws, self.URL, self.TARGET, secrets=("tok123",))

        assert "tok123" not in str(excinfo.value)
        assert "Authentication failed" in str(excinfo.value)
        assert ws.repo_path == ""

    def test_git_install_failure(self, registry):
        ws = registry.create("p1")
        ws.environment.responses = [
            ("make prefix", CommandResult(2, "", "cc: not found")),
            ("git --version", CommandResult(127, "", "git: not found")),
        ]

        with pytest.raises(WorkspaceError, match="git installation failed"):
            clone_repository(ws, self.URL, self.TARGET)
