"""Cleanup registry and signal handling tests.

Signal delivery is simulated through ``MockProcess``; only the
``TestHostProcess`` cases touch the real signal table, and they restore it.
"""

import signal
import threading

import pytest

from sandcastle.kernel.sandbox import lifecycle
from sandcastle.kernel.sandbox.lifecycle import (
    CleanupAction,
    CleanupRegistry,
    HostProcess,
    ensure_process_cleanup_handlers,
    get_cleanup_registry,
    register_cleanup,
    unregister_cleanup,
)


def counter():
    calls = []

    def action():
        calls.append(1)

    return action, calls


class TestSignalCleanup:
    def test_sigint_runs_actions_and_exits_130(self, registry, mock_process):
        first, first_calls = counter()
        second, second_calls = counter()
        registry.register(first)
        registry.register(second)
        registry.ensure_handlers(mock_process)

        mock_process.emit("SIGINT")

        assert first_calls == [1]
        assert second_calls == [1]
        assert mock_process.exit_code == 130
        assert mock_process.exit_calls == [130]

    def test_sigterm_exits_143(self, registry, mock_process):
        action, calls = counter()
        registry.register(action)
        registry.ensure_handlers(mock_process)

        mock_process.emit("SIGTERM")

        assert calls == [1]
        assert mock_process.exit_calls == [143]

    def test_existing_exit_code_is_kept(self, registry, mock_process):
        registry.ensure_handlers(mock_process)
        mock_process.exit_code = 3

        mock_process.emit("SIGINT")

        assert mock_process.exit_calls == [3]

    def test_second_signal_does_not_rerun_actions(self, registry, mock_process):
        action, calls = counter()
        registry.register(action)
        registry.ensure_handlers(mock_process)
        listener = mock_process.listeners["SIGINT"][0]

        mock_process.emit("SIGINT")
        mock_process.emit("SIGINT")
        listener()

        assert calls == [1]

    def test_signal_listener_removes_itself(self, registry, mock_process):
        registry.ensure_handlers(mock_process)

        mock_process.emit("SIGTERM")

        assert mock_process.listeners["SIGTERM"] == []
        assert len(mock_process.listeners["SIGINT"]) == 1

    def test_nested_signal_during_cleanup_is_ignored(self, registry, mock_process):
        seen = []

        def interrupted():
            seen.append("first")
            mock_process.emit("SIGINT")

        second, second_calls = counter()
        registry.register(interrupted)
        registry.register(second)
        registry.ensure_handlers(mock_process)

        mock_process.emit("SIGINT")

        assert seen == ["first"]
        assert second_calls == [1]
        assert mock_process.exit_calls == [130]

    def test_failing_action_does_not_stop_the_rest(self, registry, mock_process):
        def broken():
            raise OSError("runtime gone")

        action, calls = counter()
        registry.register(broken)
        registry.register(action)
        registry.ensure_handlers(mock_process)

        mock_process.emit("SIGTERM")

        assert calls == [1]
        assert mock_process.exit_calls == [143]

    def test_signal_is_redelivered_when_target_can_kill(self, registry, killable_process):
        action, calls = counter()
        registry.register(action)
        registry.ensure_handlers(killable_process)

        killable_process.emit("SIGTERM")

        assert calls == [1]
        assert killable_process.kills == [(4242, "SIGTERM")]
        assert killable_process.exit_calls == []
        assert killable_process.exit_code == 143

    def test_failed_redelivery_falls_back_to_exit(self, registry, killable_process):
        killable_process.kill_error = OSError("no such process")
        registry.ensure_handlers(killable_process)

        killable_process.emit("SIGINT")

        assert killable_process.kills == [(4242, "SIGINT")]
        assert killable_process.exit_calls == [130]


class TestRegistry:
    def test_actions_run_in_registration_order(self, registry):
        order = []
        for name in ("a", "b", "c"):
            registry.register(lambda name=name: order.append(name))

        assert registry.run_pending() == 3
        assert order == ["a", "b", "c"]
        assert registry.pending() == []

    def test_registering_twice_keeps_one_entry(self, registry):
        action, calls = counter()
        registry.register(action)
        registry.register(action)

        registry.run_pending()

        assert calls == [1]

    def test_unregistered_action_is_skipped(self, registry, mock_process):
        kept, kept_calls = counter()
        dropped, dropped_calls = counter()
        registry.register(kept)
        registry.register(dropped)
        registry.unregister(dropped)
        registry.ensure_handlers(mock_process)

        mock_process.emit("exit", 0)

        assert kept_calls == [1]
        assert dropped_calls == []
        assert mock_process.exit_calls == []

    def test_action_unregistering_a_later_one(self, registry):
        later, later_calls = counter()
        registry.register(lambda: registry.unregister(later))
        registry.register(later)

        assert registry.run_pending() == 1
        assert later_calls == []

    def test_unregister_unknown_action_is_a_no_op(self, registry):
        registry.unregister(lambda: None)
        assert registry.pending() == []

    def test_reentrant_pass_returns_zero(self, registry):
        results = []
        registry.register(lambda: results.append(registry.run_pending()))

        registry.run_pending()

        assert results == [0]
        assert registry.cleanup_in_progress is False

    def test_exit_event_then_signal_runs_actions_once(self, registry, mock_process):
        action, calls = counter()
        registry.register(action)
        registry.ensure_handlers(mock_process)

        mock_process.emit("exit", 0)
        mock_process.emit("SIGINT")

        assert calls == [1]


class TestEnsureHandlers:
    def test_installs_once_per_target(self, registry, mock_process):
        assert registry.ensure_handlers(mock_process) is True
        assert registry.ensure_handlers(mock_process) is False

        assert len(mock_process.listeners["exit"]) == 1
        assert len(mock_process.listeners["SIGINT"]) == 1
        assert len(mock_process.listeners["SIGTERM"]) == 1

    def test_keyed_by_identity_not_equality(self, registry, mock_process):
        class AlwaysEqual(type(mock_process)):
            def __eq__(self, other):
                return True

            __hash__ = object.__hash__

        first, second = AlwaysEqual(), AlwaysEqual()

        assert registry.ensure_handlers(first) is True
        assert registry.ensure_handlers(second) is True
        assert registry.is_installed(first)
        assert registry.is_installed(second)

    def test_signal_listeners_wait_until_available(self, registry, mock_process):
        available = [False]
        mock_process.signals_available = lambda: available[0]

        assert registry.ensure_handlers(mock_process) is True
        assert len(mock_process.listeners["exit"]) == 1
        assert mock_process.listeners["SIGINT"] == []
        assert not registry.is_installed(mock_process)

        available[0] = True
        assert registry.ensure_handlers(mock_process) is True
        assert registry.is_installed(mock_process)
        assert len(mock_process.listeners["exit"]) == 1
        assert len(mock_process.listeners["SIGINT"]) == 1
        assert len(mock_process.listeners["SIGTERM"]) == 1
        assert registry.ensure_handlers(mock_process) is False

    def test_separate_registries_install_separately(self, mock_process):
        assert CleanupRegistry().ensure_handlers(mock_process) is True
        assert CleanupRegistry().ensure_handlers(mock_process) is True
        assert len(mock_process.listeners["SIGINT"]) == 2


class TestCleanupAction:
    def test_runs_once(self):
        action, calls = counter()
        cleanup = CleanupAction(action, label="sandcastle-abc")

        assert cleanup.has_run is False
        cleanup()
        cleanup()

        assert calls == [1]
        assert cleanup.has_run is True
        assert "sandcastle-abc" in repr(cleanup)

    def test_failure_still_counts_as_run(self):
        def broken():
            raise OSError("boom")

        cleanup = CleanupAction(broken)
        with pytest.raises(OSError):
            cleanup()
        cleanup()
        assert cleanup.has_run is True


class TestDefaultRegistry:
    @pytest.fixture(autouse=True)
    def fresh_singletons(self, monkeypatch):
        monkeypatch.setattr(lifecycle, "_default_registry", None)
        monkeypatch.setattr(lifecycle, "_host_process", None)

    def test_singleton(self):
        assert get_cleanup_registry() is get_cleanup_registry()

    def test_module_helpers_use_default_registry(self, mock_process):
        action, calls = counter()
        register_cleanup(action)
        assert get_cleanup_registry().pending() == [action]

        unregister_cleanup(action)
        assert get_cleanup_registry().pending() == []

        assert ensure_process_cleanup_handlers(mock_process) is True
        assert ensure_process_cleanup_handlers(mock_process) is False


class TestHostProcess:
    def test_signal_handler_installed_and_restored(self):
        process = HostProcess()
        before = signal.getsignal(signal.SIGTERM)
        listener = lambda: None  # noqa: E731

        process.on("SIGTERM", listener)
        try:
            assert signal.getsignal(signal.SIGTERM) == process._dispatch
        finally:
            process.remove_listener("SIGTERM", listener)

        assert signal.getsignal(signal.SIGTERM) == before

    def test_dispatch_calls_listeners(self):
        process = HostProcess()
        calls = []
        listener = lambda: calls.append("SIGTERM")  # noqa: E731

        process.on("SIGTERM", listener)
        try:
            process._dispatch(signal.SIGTERM, None)
        finally:
            process.remove_listener("SIGTERM", listener)

        assert calls == ["SIGTERM"]

    def test_exit_listener_is_an_atexit_hook(self, monkeypatch):
        registered = []
        unregistered = []
        monkeypatch.setattr(lifecycle.atexit, "register", registered.append)
        monkeypatch.setattr(lifecycle.atexit, "unregister", unregistered.append)

        process = HostProcess()
        seen = []
        process.exit_code = 7
        process.on("exit", seen.append)

        assert len(registered) == 1
        registered[0]()
        assert seen == [7]

        process.remove_listener("exit", seen.append)
        assert unregistered == registered

    def test_signal_handlers_skipped_off_main_thread(self):
        process = HostProcess()
        before = signal.getsignal(signal.SIGINT)
        errors = []

        def install():
            try:
                process.on("SIGINT", lambda: None)
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        thread = threading.Thread(target=install)
        thread.start()
        thread.join()

        assert errors == []
        assert signal.getsignal(signal.SIGINT) == before

    def test_worker_thread_install_is_completed_from_main_thread(self, registry, monkeypatch):
        monkeypatch.setattr(lifecycle.atexit, "register", lambda hook: None)
        monkeypatch.setattr(lifecycle.atexit, "unregister", lambda hook: None)
        process = HostProcess()
        before = signal.getsignal(signal.SIGTERM)
        results = []

        thread = threading.Thread(target=lambda: results.append(registry.ensure_handlers(process)))
        thread.start()
        thread.join()

        assert results == [True]
        assert not registry.is_installed(process)
        assert signal.getsignal(signal.SIGTERM) == before

        try:
            assert registry.ensure_handlers(process) is True
            assert registry.is_installed(process)
            assert signal.getsignal(signal.SIGTERM) == process._dispatch
        finally:
            for event in ("SIGINT", "SIGTERM"):
                for listener in list(process._signal_listeners.get(event, [])):
                    process.remove_listener(event, listener)

        assert signal.getsignal(signal.SIGTERM) == before

    def test_unknown_signal_event_is_rejected(self):
        with pytest.raises(ValueError):
            HostProcess().on("SIGNOPE", lambda: None)
